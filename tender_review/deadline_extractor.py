"""
deadline_extractor.py — Submission deadline with date validation.

Candidates come from two passes:
  1. labelled lines ("Submission deadline: ...", "Closing date: ...")
     which carry a type: submission / closing / due / proposal / bid
  2. any other sentence using deadline vocabulary ("no later than",
     "must be received by", ...), untyped

Every candidate is checked against the injected clock (ctx.now) so the
same text always yields the same answer in tests. The primary deadline
is picked by:
  a. valid future dates, first type in TYPE_PRIORITY that has any,
     earliest of that type
  b. otherwise the earliest valid future date
  c. no future date → the latest valid past date
  d. no valid date at all → the first candidate

A valid future date lifts confidence by 0.2 (capped at 1.0); having no
valid date at all halves it.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import date, datetime, time
from typing import Any, Dict, List, Optional

from tender_review.extraction import ExtractorContext, FieldExtractor
from tender_review.text_utils import find_dates, format_date, normalize_whitespace

logger = logging.getLogger(__name__)

TYPE_PRIORITY = ("submission", "due", "closing", "proposal", "bid")

_CONTEXT_RES = (
    ("submission", re.compile(r"submission\s+deadline[:\s]*([^\n]+)", re.I)),
    ("closing", re.compile(r"closing\s+date[:\s]*([^\n]+)", re.I)),
    ("due", re.compile(r"due\s+date[:\s]*([^\n]+)", re.I)),
    ("proposal", re.compile(r"proposals?\s+due[:\s]*([^\n]+)", re.I)),
    ("bid", re.compile(r"bids?\s+due[:\s]*([^\n]+)", re.I)),
)
_SENTENCE_RE = re.compile(
    r"([^.\n]*\b(?:deadline|due\s+date|closing\s+date|final\s+date|last\s+date|"
    r"proposals?\s+due|bids?\s+due|tender\s+closing|no\s+later\s+than|"
    r"must\s+be\s+(?:received|submitted))\b[^.\n]*\.?)",
    re.I,
)
_TIME_RE = re.compile(r"\b(\d{1,2}:\d{2}\s*(?:[ap]\.?m\.?)?)", re.I)
# Stop a labelled value at the next label on the same line.
_NEXT_LABEL_RE = re.compile(
    r"\b(?:submission\s+deadline|closing\s+date|due\s+date|proposals?\s+due|bids?\s+due)\b",
    re.I,
)


class DeadlineSubmissionExtractor(FieldExtractor):
    key = "deadlineSubmission"
    name = "Submission Deadline"
    description = "Extracts submission deadlines and validates future dates"

    keywords = (
        "deadline", "due date", "submission deadline", "closing date",
        "final date", "last date", "expiry date", "cutoff date",
        "submission date", "proposals due", "bids due", "tender closing",
        "closing time", "submission time", "latest submission",
        "no later than", "on or before", "must be received",
        "must be submitted", "latest acceptance",
    )
    strong_keywords = ("deadline", "due date", "closing date", "submission deadline")
    trace_patterns = (
        re.compile(r"submission\s+deadline[:\s]", re.I),
        re.compile(r"closing\s+date[:\s]", re.I),
        re.compile(r"due\s+date[:\s]", re.I),
        re.compile(r"(?:proposals?|bids?)\s+due[:\s]", re.I),
        re.compile(r"tender\s+closing[:\s]", re.I),
        re.compile(r"(?:final|last)\s+date[:\s]", re.I),
        re.compile(r"no\s+later\s+than[:\s]", re.I),
        re.compile(r"must\s+be\s+(?:received|submitted)\s+(?:by|before)[:\s]", re.I),
        re.compile(r"\b\d{4}[/\-]\d{1,2}[/\-]\d{1,2}\b"),
    )

    def build_value(self, text: str, ctx: ExtractorContext, matches: int,
                    keywords_found: List[str]) -> Dict[str, Any]:
        candidates = extract_candidates(text)
        validated = [validate_candidate(c, ctx.now) for c in candidates]
        primary = select_primary(validated)
        return {
            "primaryDeadline": primary,
            "allDeadlines": validated,
            "summary": summarize(primary, validated),
            "matchCount": matches,
            "validDateCount": sum(1 for d in validated if d["isValid"]),
        }

    def adjust_confidence(self, confidence: float, value: Dict[str, Any]) -> float:
        deadlines = value["allDeadlines"]
        if any(d["isValid"] and d["isFuture"] for d in deadlines):
            confidence = min(1.0, confidence + 0.2)
        if not any(d["isValid"] for d in deadlines):
            confidence *= 0.5
        return confidence


def parse_candidate(text: str, kind: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """First date in `text` plus an optional time; None when there is no date."""
    dates = find_dates(text)
    if not dates:
        return None
    offset, found = dates[0]
    time_match = _TIME_RE.search(text, offset)
    return {
        "text": normalize_whitespace(text),
        "date": found.isoformat(),
        "time": time_match.group(1).strip() if time_match else None,
        "type": kind,
    }


def extract_candidates(text: str) -> List[Dict[str, Any]]:
    candidates: List[Dict[str, Any]] = []

    for kind, pattern in _CONTEXT_RES:
        for m in pattern.finditer(text):
            value = m.group(1)
            next_label = _NEXT_LABEL_RE.search(value)
            if next_label:
                value = value[:next_label.start()]
            candidate = parse_candidate(value, kind)
            if candidate:
                candidate["context"] = normalize_whitespace(m.group(0))
                candidates.append(candidate)

    typed_dates = {c["date"] for c in candidates}
    for m in _SENTENCE_RE.finditer(text):
        candidate = parse_candidate(m.group(1))
        if candidate and candidate["date"] not in typed_dates:
            typed_dates.add(candidate["date"])
            candidates.append(candidate)

    return candidates


def validate_candidate(candidate: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    validated = dict(candidate, isValid=False, isFuture=False,
                     daysFromNow=None, validationMessage=None)
    raw = candidate.get("date")
    if not raw:
        validated["validationMessage"] = "No valid date found"
        return validated
    try:
        parsed = date.fromisoformat(raw)
    except ValueError:
        validated["validationMessage"] = "Invalid date format"
        return validated

    days = math.ceil((datetime.combine(parsed, time.min) - now).total_seconds() / 86400)
    validated["isValid"] = True
    validated["isFuture"] = days > 0
    validated["daysFromNow"] = days

    if days < 0:
        validated["validationMessage"] = f"Date is {abs(days)} days in the past"
    elif days == 0:
        validated["validationMessage"] = "Date is today"
    elif days <= 7:
        validated["validationMessage"] = f"Date is in {days} days (urgent)"
    elif days <= 30:
        validated["validationMessage"] = f"Date is in {days} days"
    else:
        validated["validationMessage"] = f"Date is in {days} days ({math.ceil(days / 30)} months)"
    return validated


def select_primary(deadlines: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not deadlines:
        return None

    future = [d for d in deadlines if d["isValid"] and d["isFuture"]]
    if not future:
        valid = [d for d in deadlines if d["isValid"]]
        if not valid:
            return deadlines[0]
        # max() keeps the first of equal dates, which keeps this stable.
        return max(valid, key=lambda d: d["date"])

    for kind in TYPE_PRIORITY:
        typed = [d for d in future if d.get("type") == kind]
        if typed:
            return min(typed, key=lambda d: d["date"])
    return min(future, key=lambda d: d["date"])


def summarize(primary: Optional[Dict[str, Any]], deadlines: List[Dict[str, Any]]) -> str:
    if not primary:
        return "No clear submission deadline identified in the document."

    parts: List[str] = []
    if primary.get("date"):
        when = format_date(primary["date"])
        if primary.get("time"):
            when += f" at {primary['time']}"
        parts.append(f"Primary Deadline: {when}")
        if primary.get("validationMessage"):
            parts.append(f"Status: {primary['validationMessage']}")

    others = [d for d in deadlines if d is not primary and d["isValid"]]
    if others:
        rendered = ", ".join(
            f"{format_date(d['date'], 'short')} ({d.get('type') or 'other'})" for d in others[:2]
        )
        parts.append(f"Other Dates: {rendered}")

    if not primary.get("isFuture") and any(d["isValid"] and not d["isFuture"] for d in deadlines):
        parts.append("Warning: Found deadline(s) in the past")

    days = primary.get("daysFromNow")
    if primary.get("isFuture") and days is not None:
        if days <= 7:
            parts.append("Urgent: Deadline within 1 week")
        elif days <= 30:
            parts.append("Moderate: Deadline within 1 month")

    return "\n".join(parts) or "Deadline information requires manual review."
