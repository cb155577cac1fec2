"""
checklist.py — Auto-check rules for checklist items.

A rule points at one extracted field and applies one condition to its
value. Conditions are a closed set of operators interpreted right here:

  contains     substring over the text of the value (every string leaf)
  equals       exact equality (case-insensitive for strings by default)
  exists       non-null and non-empty
  matches      regular expression over the text of the value
  date_after   value date >  reference date ("now" or an ISO date)
  date_before  value date <  reference date

`path` narrows the value first ("primaryDeadline.date"), and
`min_confidence` makes a low-confidence field count as "no match".

Outcomes per item:
  field absent              → missing  ("Required field 'x' not found")
  condition matched         → ok, citations inherited from the field
  no match, rule required   → missing
  no match, rule optional   → pending
  condition raised          → pending  (auto-check is best effort)
  no rule for the item      → pending  (manual review)

Approval is gated on validate_checklist(): nothing pending, nothing
missing. It is recomputed from the items every time, never cached.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field

from tender_review.schemas import (
    AuditRecord,
    ChecklistItem,
    ChecklistValidation,
    FieldExtraction,
    FieldKey,
    local_now,
)
from tender_review.templates import ChecklistTemplate, get_checklist_template

logger = logging.getLogger(__name__)

Operator = Literal["contains", "equals", "exists", "matches", "date_after", "date_before"]


class Condition(BaseModel):
    operator: Operator
    value: Any = None
    case_sensitive: bool = False
    path: Optional[str] = None


class AutoCheckRule(BaseModel):
    field: FieldKey
    condition: Condition
    required: bool = True
    min_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ChecklistResult(BaseModel):
    items: List[ChecklistItem]
    metadata: Dict[str, Any]


RULES: Dict[str, AutoCheckRule] = {
    # Bidder compliance
    "tax-certificate": AutoCheckRule(
        field="eligibility", condition=Condition(operator="contains", value="tax")),
    "iso-9001": AutoCheckRule(
        field="eligibility", condition=Condition(operator="contains", value="iso"), required=False),
    "financial-statements": AutoCheckRule(
        field="eligibility", condition=Condition(operator="contains", value="financial")),
    "technical-specifications": AutoCheckRule(
        field="submissionMechanics", condition=Condition(operator="contains", value="technical")),
    "legal-compliance": AutoCheckRule(
        field="eligibility", condition=Condition(operator="contains", value="legal")),
    "insurance-coverage": AutoCheckRule(
        field="eligibility", condition=Condition(operator="contains", value="insurance"),
        required=False),
    "company-registration": AutoCheckRule(
        field="eligibility", condition=Condition(operator="contains", value="registration")),
    "deadline-compliance": AutoCheckRule(
        field="deadlineSubmission",
        condition=Condition(operator="date_after", value="now", path="primaryDeadline.date")),

    # Internal review: is each field actually there?
    "project-scope-clear": AutoCheckRule(
        field="scope", condition=Condition(operator="exists"), min_confidence=0.5),
    "eligibility-requirements": AutoCheckRule(
        field="eligibility", condition=Condition(operator="exists", path="requirements"),
        min_confidence=0.5),
    "evaluation-criteria-defined": AutoCheckRule(
        field="evaluationCriteria", condition=Condition(operator="exists"), min_confidence=0.5),
    "submission-format-specified": AutoCheckRule(
        field="submissionMechanics", condition=Condition(operator="exists"), min_confidence=0.5),
    "deadline-identified": AutoCheckRule(
        field="deadlineSubmission", condition=Condition(operator="exists", path="primaryDeadline.date"),
        min_confidence=0.5),
    "deadline-future": AutoCheckRule(
        field="deadlineSubmission",
        condition=Condition(operator="equals", value=True, path="primaryDeadline.isFuture")),
}


# ── Condition interpreter ─────────────────────────────────────────────────

def select_path(value: Any, path: Optional[str]) -> Any:
    """Follow a dotted path through dicts and lists; None when it breaks."""
    if not path:
        return value
    current = value
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def text_of(value: Any) -> str:
    """Every string and number leaf of a value, one per line."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return ""
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, Mapping):
        return "\n".join(t for t in (text_of(v) for v in value.values()) if t)
    if isinstance(value, (list, tuple)):
        return "\n".join(t for t in (text_of(v) for v in value) if t)
    return str(value)


def has_value(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict)):
        return len(value) > 0
    return True


def _as_date(value: Any, now: datetime) -> Optional[date]:
    if value is None:
        return None
    if value == "now":
        return now.date()
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise TypeError(f"cannot compare {type(value).__name__} as a date")


def evaluate_condition(condition: Condition, value: Any, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now()
    target = select_path(value, condition.path)
    op = condition.operator

    if op == "exists":
        return has_value(target)

    if op == "contains":
        haystack, needle = text_of(target), str(condition.value)
        if not condition.case_sensitive:
            haystack, needle = haystack.lower(), needle.lower()
        return needle in haystack

    if op == "equals":
        if isinstance(target, str) and isinstance(condition.value, str) and not condition.case_sensitive:
            return target.lower() == condition.value.lower()
        return target == condition.value

    if op == "matches":
        flags = 0 if condition.case_sensitive else re.I
        return re.search(str(condition.value), text_of(target), flags) is not None

    if op in ("date_after", "date_before"):
        actual = _as_date(target, now)
        reference = _as_date(condition.value, now)
        if actual is None or reference is None:
            return False
        return actual > reference if op == "date_after" else actual < reference

    raise ValueError(f"Unknown condition operator '{op}'")


# ── Item evaluation ───────────────────────────────────────────────────────

def evaluate_item(
    tender_id: str,
    key: str,
    label: str,
    fields: Mapping[str, FieldExtraction],
    now: Optional[datetime] = None,
    rules: Optional[Mapping[str, AutoCheckRule]] = None,
) -> ChecklistItem:
    rules = RULES if rules is None else rules
    rule = rules.get(key)
    if rule is None:
        return ChecklistItem(
            tender_id=tender_id, key=key, label=label, status="pending",
            notes="Manual review required", auto_checked=False,
        )

    extracted = fields.get(rule.field)
    if extracted is None or extracted.value is None:
        return ChecklistItem(
            tender_id=tender_id, key=key, label=label, status="missing",
            notes=f"Required field '{rule.field}' not found", auto_checked=True,
        )

    try:
        confident = rule.min_confidence is None or extracted.confidence >= rule.min_confidence
        matched = confident and evaluate_condition(rule.condition, extracted.value, now)
    except Exception as e:
        logger.warning("Auto-check '%s' failed for tender %s: %s", key, tender_id, e)
        return ChecklistItem(
            tender_id=tender_id, key=key, label=label, status="pending",
            notes="Auto-check failed, manual review required", auto_checked=False,
        )

    if matched:
        return ChecklistItem(
            tender_id=tender_id, key=key, label=label, status="ok",
            notes=f"Verified against '{rule.field}'", citations=list(extracted.citations),
            auto_checked=True,
        )

    if not confident:
        note = f"'{rule.field}' confidence {extracted.confidence:.0%} is below {rule.min_confidence:.0%}"
    else:
        note = f"Condition not met: {rule.field} {rule.condition.operator}"
        if rule.condition.value is not None:
            note += f" {rule.condition.value!r}"
    return ChecklistItem(
        tender_id=tender_id, key=key, label=label,
        status="missing" if rule.required else "pending",
        notes=note, auto_checked=True,
    )


def generate_checklist(
    tender_id: str,
    template_id: str,
    fields: Mapping[str, FieldExtraction],
    now: Optional[datetime] = None,
    required_only: bool = False,
    template: Optional[ChecklistTemplate] = None,
) -> ChecklistResult:
    template = template or get_checklist_template(template_id)
    items: List[ChecklistItem] = []
    for entry in template.items:
        if required_only and not entry.required:
            continue
        items.append(evaluate_item(tender_id, entry.key, entry.label, fields, now))

    auto_checked = sum(1 for i in items if i.auto_checked)
    metadata = {
        "templateId": template.id,
        "generatedAt": (now or local_now()).isoformat(),
        "totalItems": len(items),
        "autoCheckedItems": auto_checked,
        "requiresManualReview": len(items) - auto_checked,
    }
    logger.info(
        "Checklist %s for tender %s: %d items, %d auto-checked",
        template.id, tender_id, len(items), auto_checked,
    )
    return ChecklistResult(items=items, metadata=metadata)


def evaluate(
    tender_id: str,
    template_id: str,
    fields: Mapping[str, FieldExtraction],
    now: Optional[datetime] = None,
) -> List[ChecklistItem]:
    return generate_checklist(tender_id, template_id, fields, now).items


# ── Approval predicate ────────────────────────────────────────────────────

def validate_checklist(items: List[ChecklistItem]) -> ChecklistValidation:
    stats = {"total": len(items), "ok": 0, "missing": 0, "pending": 0, "not_applicable": 0}
    for item in items:
        stats[item.status] += 1

    pending = [i.key for i in items if i.status == "pending"]
    missing = [i.key for i in items if i.status == "missing"]
    complete = not pending and not missing
    return ChecklistValidation(
        is_complete=complete,
        can_approve=complete,
        pending_items=pending,
        missing_items=missing,
        statistics=stats,
    )


def can_approve(store, tender_id: str) -> bool:
    return validate_checklist(store.list_checklist_items(tender_id)).can_approve


def update_checklist_item(
    store,
    tender_id: str,
    key: str,
    status: str,
    notes: Optional[str] = None,
    actor_id: Optional[str] = None,
) -> ChecklistValidation:
    """Reviewer override of one item; returns the freshly computed validation."""
    item = store.get_checklist_item(tender_id, key)
    before = item.status
    updated = item.model_copy(update={
        "status": status,
        "notes": notes if notes is not None else item.notes,
        "auto_checked": False,
        "updated_at": local_now(),
    })
    # model_copy skips validation; run it so a bad status is rejected here.
    updated = ChecklistItem.model_validate(updated.model_dump())
    store.upsert_checklist_item(updated)
    store.add_audit_record(AuditRecord(
        actor_id=actor_id,
        action="CHECKLIST_ITEM_UPDATED",
        entity="ChecklistItem",
        entity_id=f"{tender_id}:{key}",
        diff={"status": {"from": before, "to": status}},
    ))
    return validate_checklist(store.list_checklist_items(tender_id))
