"""
evaluation_extractor.py — How bids will be scored.

Three things come out of this extractor:
  criteria     individual criteria with optional weight (%) and points,
               bucketed technical / commercial / experience / schedule /
               general
  scoring      total points, weight split per category, and the scoring
               method if the notice names one from a fixed vocabulary
  methodology  evaluation stages ("Stage 1: ...", "Technical evaluation:
               ...") in stage order

Criteria are read from an "Evaluation Criteria:" block, from criterion
lines anywhere in the text, and from simple pipe- or tab-separated tables
whose header mentions criterion + weight/points.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from tender_review.extraction import ExtractorContext, FieldExtractor
from tender_review.text_utils import normalize_whitespace

SCORING_METHODS = (
    "lowest cost",
    "best value",
    "technically acceptable",
    "qualification based selection",
    "two-stage evaluation",
    "single stage",
    "multi-stage",
)

_BLOCK_INTRO_RE = re.compile(
    r"(?:evaluation|selection|award|scoring)\s+criteria\s*[:\-]?", re.I,
)
_BLOCK_END_RE = re.compile(r"^\s*(?:section|chapter)\b|^\s*[A-Z][A-Z\s]{2,}:\s*$")
_ITEM_PREFIX_RE = re.compile(r"^\s*(?:[-•*]|\d+[.)]|[a-z][.)])\s*")

_CRITERION_LINE_RES = (
    re.compile(r"technical\s+(?:proposal|evaluation|competence|capability)[:\s]*[^\n]+", re.I),
    re.compile(r"(?:commercial|price|financial)\s+(?:proposal|evaluation)[:\s]*[^\n]+", re.I),
    re.compile(r"(?:experience|past\s+performance)[:\s]*[^\n]+", re.I),
    re.compile(r"methodology[:\s]*[^\n]+", re.I),
)
_TABLE_HEADER_RE = re.compile(
    r"(?:criterion|criteria|factor)\s*[|\t]\s*(?:weight|weighting|points?)", re.I,
)
_TABLE_RULE_RE = re.compile(r"^[\s|:\-+]+$")

_WEIGHT_RE = re.compile(r"(\d+)\s*%")
_POINTS_RE = re.compile(r"(\d+)\s*points?\b", re.I)
_FRACTION_RE = re.compile(r"(\d+)\s*/\s*\d+")
_TOTAL_POINTS_RES = (
    re.compile(r"total\s+(?:of\s+)?(\d+)\s*points?", re.I),
    re.compile(r"maximum\s+(?:of\s+)?(\d+)\s*points?", re.I),
    re.compile(r"(\d+)\s*points?\s+total", re.I),
)
_WEIGHT_SPLIT_RE = re.compile(
    r"\b(technical|commercial|price|financial|experience)"
    r"(?:\s+(?:proposal|evaluation|score|criteria|merit))?\s*[:\-]?\s*(\d+)\s*%",
    re.I,
)
_STAGE_RES = (
    re.compile(r"(?:stage|phase|step)\s+(\d+)[:\s]*([^\n]+)", re.I),
    re.compile(r"(?:first|second|third|initial|final)\s+(?:stage|phase|step)[:\s]*([^\n]+)", re.I),
    re.compile(r"technical\s+evaluation[:\s]*([^\n]+)", re.I),
    re.compile(r"commercial\s+evaluation[:\s]*([^\n]+)", re.I),
    re.compile(r"price\s+evaluation[:\s]*([^\n]+)", re.I),
)


class EvaluationCriteriaExtractor(FieldExtractor):
    key = "evaluationCriteria"
    name = "Evaluation Criteria"
    description = "Extracts evaluation criteria, scoring methodology, and selection criteria"

    keywords = (
        "evaluation criteria", "evaluation", "scoring", "assessment",
        "selection criteria", "award criteria", "evaluation methodology",
        "scoring criteria", "evaluation process", "evaluation factors",
        "weighting", "weights", "points", "scores", "rating",
        "technical evaluation", "commercial evaluation", "price evaluation",
        "technical proposal", "financial proposal", "cost evaluation",
        "best value", "lowest cost", "technically acceptable",
        "qualification based selection", "two-stage evaluation",
    )
    strong_keywords = ("evaluation criteria", "scoring", "selection criteria", "evaluation")
    trace_patterns = (
        re.compile(r"evaluation\s+criteria[:\s]", re.I),
        re.compile(r"selection\s+criteria[:\s]", re.I),
        re.compile(r"award\s+criteria[:\s]", re.I),
        re.compile(r"scoring\s+(?:criteria|methodology)[:\s]", re.I),
        re.compile(r"evaluation\s+(?:methodology|process|factors)[:\s]", re.I),
        re.compile(r"weighting[:\s]", re.I),
        re.compile(r"(?:technical|commercial|price)\s+evaluation[:\s]", re.I),
        re.compile(r"\d+\s*%\s*(?:weight|weighting|points?)", re.I),
        re.compile(r"(?:weight|weighting)[:\s]*\d+\s*%", re.I),
        re.compile(r"\d+\s*/\s*\d+\s*points?", re.I),
        re.compile(r"maximum\s+(?:of\s+)?\d+\s*points?", re.I),
        re.compile(r"past\s+performance", re.I),
    )

    def build_value(self, text: str, ctx: ExtractorContext, matches: int,
                    keywords_found: List[str]) -> Dict[str, Any]:
        criteria = extract_criteria(text)
        scoring = extract_scoring(text)
        methodology = extract_methodology(text)
        return {
            "criteria": criteria,
            "scoring": scoring,
            "methodology": methodology,
            "summary": summarize(criteria, scoring, methodology),
            "matchCount": matches,
        }


def parse_criterion(item: str) -> Optional[Dict[str, Any]]:
    item = normalize_whitespace(item)
    if len(item) < 10:
        return None

    criterion: Dict[str, Any] = {"criterion": item}
    weight = _WEIGHT_RE.search(item)
    if weight:
        criterion["weight"] = int(weight.group(1))
    points = _POINTS_RE.search(item) or _FRACTION_RE.search(item)
    if points:
        criterion["points"] = int(points.group(1))

    lowered = item.lower()
    if any(w in lowered for w in ("technical", "methodology", "approach")):
        criterion["category"] = "technical"
    elif any(w in lowered for w in ("commercial", "price", "cost", "financial")):
        criterion["category"] = "commercial"
    elif any(w in lowered for w in ("experience", "past performance", "track record")):
        criterion["category"] = "experience"
    elif any(w in lowered for w in ("timeline", "schedule", "delivery")):
        criterion["category"] = "schedule"
    else:
        criterion["category"] = "general"
    return criterion


def _block_items(text: str) -> List[str]:
    m = _BLOCK_INTRO_RE.search(text)
    if not m:
        return []
    lines = text[m.end():].split("\n")
    items: List[str] = []
    for index, line in enumerate(lines):
        if not line.strip():
            if items:
                break
            continue
        if index > 0 and _BLOCK_END_RE.match(line):
            break
        items.append(_ITEM_PREFIX_RE.sub("", line).strip())
    return items


def _table_items(text: str) -> List[str]:
    items: List[str] = []
    lines = text.split("\n")
    for index, line in enumerate(lines):
        if not _TABLE_HEADER_RE.search(line):
            continue
        for row in lines[index + 1:]:
            if "|" not in row and "\t" not in row:
                break
            if _TABLE_RULE_RE.match(row):
                continue
            cells = [c.strip() for c in re.split(r"[|\t]", row) if c.strip()]
            if len(cells) >= 2:
                items.append(f"{cells[0]} - {cells[1]}")
    return items


def extract_criteria(text: str) -> List[Dict[str, Any]]:
    candidates: List[str] = list(_block_items(text))
    for pattern in _CRITERION_LINE_RES:
        candidates.extend(m.group(0) for m in pattern.finditer(text))
    candidates.extend(_table_items(text))

    criteria: List[Dict[str, Any]] = []
    seen = set()
    for item in candidates:
        criterion = parse_criterion(item)
        if criterion is None:
            continue
        key = criterion["criterion"].lower()
        if key in seen:
            continue
        seen.add(key)
        criteria.append(criterion)
    return criteria


def extract_scoring(text: str) -> Dict[str, Any]:
    scoring: Dict[str, Any] = {}

    for pattern in _TOTAL_POINTS_RES:
        m = pattern.search(text)
        if m:
            scoring["totalPoints"] = int(m.group(1))
            break

    weights: Dict[str, int] = {}
    for m in _WEIGHT_SPLIT_RE.finditer(text):
        weights[m.group(1).lower()] = int(m.group(2))
    if weights:
        scoring["weightDistribution"] = weights

    lowered = text.lower()
    for method in SCORING_METHODS:
        if method in lowered:
            scoring["scoringMethod"] = method
            break
    return scoring


def extract_methodology(text: str) -> List[Dict[str, Any]]:
    stages: List[Dict[str, Any]] = []
    seen = set()
    for pattern in _STAGE_RES:
        for m in pattern.finditer(text):
            stage: Dict[str, Any] = {
                "stage": normalize_whitespace(m.group(0).split(":")[0]),
                "description": normalize_whitespace(m.group(m.lastindex or 0)),
            }
            if pattern.groups == 2:
                stage["order"] = int(m.group(1))
            key = (stage["stage"].lower(), stage["description"].lower())
            if key in seen:
                continue
            seen.add(key)
            stages.append(stage)
    # Unnumbered stages keep their reading order, after the numbered ones.
    numbered = sorted((s for s in stages if "order" in s), key=lambda s: s["order"])
    return numbered + [s for s in stages if "order" not in s]


def summarize(criteria: List[Dict[str, Any]], scoring: Dict[str, Any],
              methodology: List[Dict[str, Any]]) -> str:
    parts: List[str] = []

    if scoring.get("scoringMethod"):
        parts.append(f"Evaluation Method: {scoring['scoringMethod']}")
    if scoring.get("weightDistribution"):
        split = ", ".join(f"{k}: {v}%" for k, v in scoring["weightDistribution"].items())
        parts.append(f"Weight Distribution: {split}")
    if scoring.get("totalPoints"):
        parts.append(f"Total Points: {scoring['totalPoints']}")

    by_category: Dict[str, List[Dict[str, Any]]] = {}
    for criterion in criteria:
        by_category.setdefault(criterion.get("category", "general"), []).append(criterion)
    for category, items in by_category.items():
        rendered = []
        for c in items[:2]:
            extra = ""
            if c.get("weight"):
                extra += f" ({c['weight']}%)"
            if c.get("points"):
                extra += f" ({c['points']} pts)"
            rendered.append(c["criterion"] + extra)
        parts.append(f"{category.capitalize()}: " + "; ".join(rendered))

    if methodology:
        parts.append("Evaluation Process: " + " → ".join(s["stage"] for s in methodology[:3]))

    return "\n\n".join(parts) or "Evaluation criteria found but require manual review."
