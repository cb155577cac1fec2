"""
validation.py — Checks run by the pipeline's validate step.

Hard failures (the run stops, gate never runs):
  - a required field (scope, eligibility, deadlineSubmission) is missing
  - a required field's confidence is below 0.3

Warnings (logged on the run, non-fatal):
  - any field below 0.5 confidence
  - the primary deadline is already in the past
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Mapping, Optional, Sequence

from tender_review.config import config
from tender_review.schemas import FieldExtraction

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.errors


def _deadline_passed(extraction: FieldExtraction, now: datetime) -> Optional[date]:
    primary = (extraction.value or {}).get("primaryDeadline") or {}
    raw = primary.get("date")
    if not raw or not primary.get("isValid", True):
        return None
    try:
        when = date.fromisoformat(str(raw)[:10])
    except ValueError:
        return None
    return when if when < now.date() else None


def validate_fields(
    fields: Mapping[str, FieldExtraction],
    now: Optional[datetime] = None,
    required: Optional[Sequence[str]] = None,
    min_confidence: Optional[float] = None,
    warn_confidence: Optional[float] = None,
) -> ValidationReport:
    cfg = config.validation
    now = now or datetime.now()
    required = cfg.required_fields if required is None else required
    min_confidence = cfg.min_required_confidence if min_confidence is None else min_confidence
    warn_confidence = cfg.warn_confidence if warn_confidence is None else warn_confidence

    report = ValidationReport()

    for key in required:
        extraction = fields.get(key)
        if extraction is None or extraction.value is None:
            report.errors.append(f"Required field '{key}' is missing")
        elif extraction.confidence < min_confidence:
            report.errors.append(
                f"Required field '{key}' confidence {extraction.confidence:.2f} "
                f"is below {min_confidence:.2f}"
            )

    for key, extraction in fields.items():
        if key in required and extraction.confidence < min_confidence:
            continue
        if extraction.confidence < warn_confidence:
            report.warnings.append(
                f"Field '{key}' has low confidence ({extraction.confidence:.2f})"
            )

    deadline = fields.get("deadlineSubmission")
    if deadline is not None:
        passed = _deadline_passed(deadline, now)
        if passed is not None:
            report.warnings.append(f"Submission deadline {passed.isoformat()} has already passed")

    logger.debug("Validation: %d errors, %d warnings", len(report.errors), len(report.warnings))
    return report
