"""
eligibility_extractor.py — Who may bid, and what they must prove.

Requirements are collected from the most specific pattern to the least:
experience ("5 years experience in ..."), financial thresholds, named
certifications, list items under an eligibility heading, and finally any
sentence using requirement language. A later, vaguer hit that repeats an
earlier one (same text, or one containing the other) is dropped, so
"Bidders must have minimum 5 years experience in IT." yields a single
experience requirement, not an experience one plus a sentence one.

Monetary thresholds are normalised to plain numbers:
"million"/"m" → ×1,000,000 and "thousand"/"k" → ×1,000.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from tender_review.extraction import ExtractorContext, FieldExtractor
from tender_review.text_utils import (
    BULLET_ITEM_RE,
    NUMBERED_ITEM_RE,
    collect_list_blocks,
    normalize_whitespace,
)

CATEGORIES = ("experience", "financial", "certification", "legal", "technical", "general")

_EXPERIENCE_RE = re.compile(
    r"(?:minimum\s+(?:of\s+)?)?(\d+)\+?\s+years?\s+(?:of\s+)?experience\s+(?:in|with|of)\s+([^\n,.]+)",
    re.I,
)
_FINANCIAL_RE = re.compile(
    r"(?:annual\s+(?:revenue|turnover)|financial\s+capacity|minimum\s+(?:revenue|turnover))"
    r"\s+[^\d\n]*(\d+(?:,\d{3})*(?:\.\d+)?)\s*(million|thousand|m|k)?\b",
    re.I,
)
_CERTIFICATION_RE = re.compile(
    r"\b(?:iso\s*\d+|certified\s+(?:in|for|by)\s+[^\n,.]+|"
    r"(?:license|licensing)\s+(?:in|for|from)\s+[^\n,.]+|accredited\s+(?:by|with)\s+[^\n,.]+)",
    re.I,
)
_LIST_INTRO_RE = re.compile(r"\b(?:eligibility|qualifications?|requirements?)\b", re.I)
_SENTENCE_RE = re.compile(
    r"([^.\n]*\b(?:eligible|qualified|requirements?|criteria|must\s+(?:have|be|possess))\b[^.\n]*\.)",
    re.I,
)

_UNIT_MULTIPLIERS = {"million": 1_000_000, "m": 1_000_000, "thousand": 1_000, "k": 1_000}


class EligibilityExtractor(FieldExtractor):
    key = "eligibility"
    name = "Eligibility Criteria"
    description = "Extracts eligibility requirements and qualification criteria for bidders"

    keywords = (
        "eligibility", "eligible", "qualification", "qualifications", "qualified",
        "requirements", "criteria", "prerequisites", "minimum requirements",
        "bidder requirements", "vendor requirements", "contractor requirements",
        "participation requirements", "submission requirements",
        "pre-qualified", "prequalified", "certified", "certification",
        "experience required", "minimum experience", "years of experience",
        "financial capacity", "bonding capacity", "insurance requirements",
        "license", "licensed", "registration", "accreditation",
    )
    strong_keywords = ("eligibility", "qualification", "requirements", "eligible")
    trace_patterns = (
        re.compile(r"eligibility\s+(?:criteria|requirements)[:\s]", re.I),
        re.compile(r"qualification\s+(?:criteria|requirements)[:\s]", re.I),
        re.compile(r"minimum\s+requirements[:\s]", re.I),
        re.compile(r"(?:bidder|vendor|contractor)\s+(?:requirements|qualifications)[:\s]", re.I),
        re.compile(r"participation\s+requirements[:\s]", re.I),
        re.compile(r"pre-?qualified?\s+(?:vendors|contractors|bidders)[:\s]", re.I),
        re.compile(r"(?:minimum\s+)?\d+\s+years?\s+(?:of\s+)?experience", re.I),
        re.compile(r"experience\s+(?:of\s+)?(?:at\s+least\s+)?\d+\s+years?", re.I),
        _FINANCIAL_RE,
        _CERTIFICATION_RE,
    )

    def build_value(self, text: str, ctx: ExtractorContext, matches: int,
                    keywords_found: List[str]) -> Dict[str, Any]:
        requirements = extract_requirements(text)
        categories = categorize(requirements)

        years = [r["value"] for r in requirements if r["type"] == "experience" and "value" in r]
        money = [r["value"] for r in requirements if r["type"] == "financial" and "value" in r]

        return {
            "requirements": requirements,
            "categories": categories,
            "minimumExperienceYears": max(years) if years else None,
            "financialThreshold": max(money) if money else None,
            "summary": summarize(categories),
            "matchCount": matches,
        }


def sniff_type(text: str) -> str:
    lowered = text.lower()
    if "experience" in lowered or "years" in lowered:
        return "experience"
    if any(w in lowered for w in ("revenue", "turnover", "financial")):
        return "financial"
    if any(w in lowered for w in ("iso", "certif", "license", "accredit")):
        return "certification"
    return "general"


def parse_amount(number: str, unit: Optional[str]) -> float:
    value = float(number.replace(",", ""))
    if unit:
        value *= _UNIT_MULTIPLIERS.get(unit.lower(), 1)
    return value


def extract_requirements(text: str) -> List[Dict[str, Any]]:
    requirements: List[Dict[str, Any]] = []
    seen: List[str] = []

    def add(entry: Dict[str, Any]) -> None:
        key = normalize_whitespace(entry["requirement"]).lower().rstrip(".")
        if not key:
            return
        for prior in seen:
            if key in prior or prior in key:
                return
        seen.append(key)
        requirements.append(entry)

    for m in _EXPERIENCE_RE.finditer(text):
        add({
            "type": "experience",
            "requirement": normalize_whitespace(m.group(0)),
            "value": int(m.group(1)),
            "subject": m.group(2).strip(),
        })

    for m in _FINANCIAL_RE.finditer(text):
        add({
            "type": "financial",
            "requirement": normalize_whitespace(m.group(0)),
            "value": parse_amount(m.group(1), m.group(2)),
        })

    for m in _CERTIFICATION_RE.finditer(text):
        add({"type": "certification", "requirement": normalize_whitespace(m.group(0))})

    for item_re in (BULLET_ITEM_RE, NUMBERED_ITEM_RE):
        for _, items in collect_list_blocks(text, _LIST_INTRO_RE, item_re):
            for item in items:
                if len(item) > 10:
                    add({"type": sniff_type(item), "requirement": normalize_whitespace(item)})

    for m in _SENTENCE_RE.finditer(text):
        sentence = normalize_whitespace(m.group(1))
        if 20 < len(sentence) < 300:
            add({"type": sniff_type(sentence), "requirement": sentence})

    return requirements


def categorize(requirements: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    categories: Dict[str, List[Dict[str, Any]]] = {c: [] for c in CATEGORIES}
    for req in requirements:
        text = req["requirement"].lower()
        kind = req["type"]
        if kind == "experience" or "experience" in text or "years" in text:
            categories["experience"].append(req)
        elif kind == "financial" or any(w in text for w in ("revenue", "financial", "turnover")):
            categories["financial"].append(req)
        elif kind == "certification" or any(w in text for w in ("iso", "certified", "license", "accredited")):
            categories["certification"].append(req)
        elif any(w in text for w in ("legal", "tax", "registration", "incorporated")):
            categories["legal"].append(req)
        elif any(w in text for w in ("technical", "equipment", "software", "technology")):
            categories["technical"].append(req)
        else:
            categories["general"].append(req)
    return categories


def summarize(categories: Dict[str, List[Dict[str, Any]]]) -> str:
    if not any(categories.values()):
        return "No clear eligibility criteria identified in the document."

    parts = []
    for key, label in (("experience", "Experience"), ("financial", "Financial"),
                       ("certification", "Certifications")):
        if categories[key]:
            parts.append(f"{label}: " + "; ".join(r["requirement"] for r in categories[key][:2]))
    if categories["general"] and len(parts) < 3:
        parts.append("General: " + "; ".join(r["requirement"] for r in categories["general"][:2]))

    return "\n\n".join(parts) or "Eligibility criteria found but require manual review."
