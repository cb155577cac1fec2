"""
scope_extractor.py — Project scope, objectives and deliverables.

Scope text in solicitations shows up three ways, and we tag each hit with
which one it was because reviewers trust them differently:

  section    a "Scope of Work" / "Deliverables" heading and its body
  list       bullet or numbered lines, usually verb-led ("Develop ...")
  paragraph  a free sentence that mentions scope language

The summary is the first five sections (each cut at 200 characters),
which in practice is the heading body plus a few of the list items.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List

from tender_review.config import config
from tender_review.extraction import ExtractorContext, FieldExtractor
from tender_review.text_utils import collect_list_blocks, normalize_whitespace, truncate

_HEADING_RE = re.compile(
    r"^\s*(?:(?:section|chapter|part)\s*)?(?:\d+(?:\.\d+)*[:.)]?\s*)?"
    r"(scope\s+of\s+work|project\s+scope|scope|project\s+objectives|objectives|"
    r"deliverables|requirements|project\s+description)\s*[:.]?\s*$",
    re.I,
)
# A line that starts a new section ends the current heading body.
_NEXT_SECTION_RE = re.compile(
    r"^\s*(?:[Ss]ection|[Cc]hapter|[Pp]art)\b|^\s*\d+(?:\.\d+)*[.)]\s+[A-Z]|^\s*[A-Z][A-Z\s]{2,}:?\s*$",
)

_LIST_INTRO_RE = re.compile(
    r"\b(?:the\s+scope\s+includes?|deliverables\s+include|objectives\s+include|"
    r"requirements\s+include)\b",
    re.I,
)
_ACTION_ITEM_RE = re.compile(
    r"^\s*(?:[-•*]|\d+[.)])\s*((?:develop|design|implement|provide|deliver|install|"
    r"configure|maintain|support|create|build|establish)\b[^\n]+)",
    re.I | re.M,
)
_SENTENCE_RE = re.compile(
    r"([^.\n]*\b(?:scope|objectives?|deliverables?|requirements?|"
    r"project\s+description|purpose|goals?)\b[^.\n]*\.)",
    re.I,
)


class ScopeExtractor(FieldExtractor):
    key = "scope"
    name = "Project Scope"
    description = "Extracts project objectives, deliverables, and scope of work"

    keywords = (
        "scope of work", "project scope", "scope", "objectives", "deliverables",
        "project objectives", "project description", "purpose", "goals",
        "requirements", "specifications", "project requirements",
        "work to be performed", "services required", "services to be provided",
    )
    strong_keywords = ("scope of work", "project scope", "deliverables", "objectives")
    trace_patterns = (
        re.compile(r"scope\s+of\s+work[:\s]", re.I),
        re.compile(r"project\s+scope[:\s]", re.I),
        re.compile(r"project\s+objectives[:\s]", re.I),
        re.compile(r"deliverables[:\s]", re.I),
        re.compile(r"project\s+description[:\s]", re.I),
        re.compile(r"purpose[:\s]", re.I),
        re.compile(r"requirements[:\s]", re.I),
        re.compile(
            r"(?:section|chapter|part)\s*\d+[:.\s]*(?:scope|objectives|deliverables|requirements)",
            re.I,
        ),
        re.compile(r"\d+\.\s*(?:scope|objectives|deliverables|requirements)", re.I),
    )

    def build_value(self, text: str, ctx: ExtractorContext, matches: int,
                    keywords_found: List[str]) -> Dict[str, Any]:
        sections = extract_scope_sections(text)
        return {
            "sections": sections,
            "keywords": keywords_found,
            "summary": summarize_sections(sections),
            "matchCount": matches,
        }


def _heading_sections(text: str) -> List[Dict[str, Any]]:
    sections: List[Dict[str, Any]] = []
    lines = text.split("\n")
    i = 0
    while i < len(lines):
        m = _HEADING_RE.match(lines[i])
        if not m:
            i += 1
            continue
        body: List[str] = []
        j = i + 1
        while j < len(lines):
            line = lines[j]
            if not line.strip():
                if body:
                    break
                j += 1
                continue
            if _HEADING_RE.match(line) or _NEXT_SECTION_RE.match(line):
                break
            body.append(line.strip())
            j += 1
        if body:
            sections.append({
                "type": "section",
                "section": normalize_whitespace(m.group(1)).title(),
                "content": "\n".join(body),
            })
        i = j
    return sections


def extract_scope_sections(text: str) -> List[Dict[str, Any]]:
    """Heading bodies, then list items, then qualifying sentences; no repeats."""
    sections = _heading_sections(text)

    for _, items in collect_list_blocks(text, _LIST_INTRO_RE):
        sections.append({"type": "list", "content": "\n".join(items)})

    for m in _ACTION_ITEM_RE.finditer(text):
        sections.append({"type": "list", "content": m.group(1).strip()})

    for m in _SENTENCE_RE.finditer(text):
        sentence = normalize_whitespace(m.group(1))
        if 50 < len(sentence) < 500:
            sections.append({"type": "paragraph", "content": sentence})

    unique: List[Dict[str, Any]] = []
    seen = set()
    for section in sections:
        key = normalize_whitespace(section["content"]).lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(section)
    return unique


def summarize_sections(sections: List[Dict[str, Any]]) -> str:
    if not sections:
        return "No clear project scope identified in the document."

    cfg = config.extraction
    parts = []
    for section in sections:
        if len(section["content"]) <= 20:
            continue
        prefix = f"{section['section']}: " if section.get("section") else ""
        parts.append(prefix + truncate(section["content"], cfg.summary_section_chars))
        if len(parts) >= cfg.summary_section_limit:
            break

    return "\n\n".join(parts) or "Project scope information found but requires manual review."
