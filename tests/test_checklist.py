"""
test_checklist.py — Auto-check conditions, checklist generation, approval.

Run with:
    python tests/test_checklist.py
    python -m pytest tests/test_checklist.py -v
"""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

# Make sure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tender_review.checklist import (
    Condition,
    evaluate,
    evaluate_condition,
    evaluate_item,
    generate_checklist,
    update_checklist_item,
    validate_checklist,
)
from tender_review.extraction import DocumentContent, ExtractorContext, field_extractors, run_extractor
from tender_review.schemas import ChecklistItem, FieldExtraction, Tender, TraceLink
from tender_review.store import InMemoryStore

SAMPLE = Path(__file__).resolve().parent / "data" / "sample_tender.txt"
NOW = datetime(2024, 1, 10, 9, 0)
LINK = TraceLink(id="abc123", document_id="doc-1", page=3, snippet="Submission deadline: March 15")


def _sample_fields(tender_id: str = "t-1"):
    doc = DocumentContent(id="doc-1", content=SAMPLE.read_text(encoding="utf-8"))
    ctx = ExtractorContext(document=doc, all_documents=[doc], now=NOW)
    fields = {}
    for extractor in field_extractors():
        result = run_extractor(extractor, ctx)
        fields[extractor.key] = FieldExtraction(
            tender_id=tender_id, key=extractor.key, value=result.value,
            confidence=result.confidence, citations=result.citations,
        )
    return fields


def test_condition_operators():
    value = {"primaryDeadline": {"date": "2024-03-15", "isFuture": True}, "notes": ["ISO 9001 required"]}

    assert evaluate_condition(Condition(operator="contains", value="iso"), value, NOW)
    assert not evaluate_condition(Condition(operator="contains", value="iso", case_sensitive=True), value, NOW)
    assert evaluate_condition(Condition(operator="equals", value=True, path="primaryDeadline.isFuture"), value, NOW)
    assert evaluate_condition(Condition(operator="exists", path="notes"), value, NOW)
    assert not evaluate_condition(Condition(operator="exists", path="primaryDeadline.time"), value, NOW)
    assert evaluate_condition(Condition(operator="matches", value=r"iso\s+\d{4}"), value, NOW)
    assert evaluate_condition(
        Condition(operator="date_after", value="now", path="primaryDeadline.date"), value, NOW)
    assert evaluate_condition(
        Condition(operator="date_before", value="2024-04-01", path="primaryDeadline.date"), value, NOW)
    assert not evaluate_condition(
        Condition(operator="date_after", value="now", path="primaryDeadline.date"),
        value, datetime(2024, 3, 15, 8, 0))
    print("  ✓ test_condition_operators")


def test_item_without_rule_needs_manual_review():
    item = evaluate_item("t-1", "site-visit-attended", "Site visit attended", {}, NOW)
    assert item.status == "pending"
    assert item.notes == "Manual review required"
    assert not item.auto_checked
    print("  ✓ test_item_without_rule_needs_manual_review")


def test_missing_field_is_missing():
    item = evaluate_item("t-1", "tax-certificate", "Tax certificate", {}, NOW)
    assert item.status == "missing"
    assert item.notes == "Required field 'eligibility' not found"
    print("  ✓ test_missing_field_is_missing")


def test_matched_item_inherits_citations():
    fields = {"deadlineSubmission": FieldExtraction(
        tender_id="t-1", key="deadlineSubmission",
        value={"primaryDeadline": {"date": "2024-03-15", "isFuture": True}},
        confidence=0.9, citations=[LINK],
    )}
    item = evaluate_item("t-1", "deadline-compliance", "Deadline can be met", fields, NOW)
    assert item.status == "ok"
    assert item.auto_checked
    assert [c.id for c in item.citations] == ["abc123"]
    print("  ✓ test_matched_item_inherits_citations")


def test_condition_error_degrades_to_pending():
    fields = {"deadlineSubmission": FieldExtraction(
        tender_id="t-1", key="deadlineSubmission",
        value={"primaryDeadline": {"date": "next Tuesday"}}, confidence=0.0,
    )}
    item = evaluate_item("t-1", "deadline-compliance", "Deadline can be met", fields, NOW)
    assert item.status == "pending"
    assert item.notes == "Auto-check failed, manual review required"
    print("  ✓ test_condition_error_degrades_to_pending")


def test_low_confidence_fails_min_confidence():
    fields = {"scope": FieldExtraction(
        tender_id="t-1", key="scope", value={"summary": "Pave roads"},
        confidence=0.2, citations=[LINK],
    )}
    item = evaluate_item("t-1", "project-scope-clear", "Scope clear", fields, NOW)
    assert item.status == "missing"
    assert "below" in item.notes
    print("  ✓ test_low_confidence_fails_min_confidence")


def test_compliance_checklist_on_sample():
    result = generate_checklist("t-1", "checklist-compliance-v1", _sample_fields(), NOW)
    status = {i.key: i.status for i in result.items}
    assert status["tax-certificate"] == "ok"
    assert status["iso-9001"] == "ok"
    assert status["financial-statements"] == "ok"
    assert status["technical-specifications"] == "ok"
    assert status["company-registration"] == "ok"
    assert status["deadline-compliance"] == "ok"
    # Nothing in the notice about legal documents or insurance
    assert status["legal-compliance"] == "missing"
    assert status["insurance-coverage"] == "pending"

    meta = result.metadata
    assert meta["templateId"] == "checklist-compliance-v1"
    assert meta["totalItems"] == 8
    assert meta["autoCheckedItems"] == 8
    assert meta["requiresManualReview"] == 0
    print("  ✓ test_compliance_checklist_on_sample")


def test_required_only_drops_optional_items():
    result = generate_checklist("t-1", "checklist-compliance-v1", _sample_fields(), NOW, required_only=True)
    keys = [i.key for i in result.items]
    assert "iso-9001" not in keys and "insurance-coverage" not in keys
    assert len(keys) == 6
    print("  ✓ test_required_only_drops_optional_items")


def test_internal_checklist_on_sample():
    items = evaluate("t-1", "checklist-internal-v1", _sample_fields(), NOW)
    status = {i.key: i.status for i in items}
    assert status["project-scope-clear"] == "ok"
    assert status["deadline-identified"] == "ok"
    assert status["deadline-future"] == "ok"
    assert status["high-confidence-extractions"] == "pending"
    print("  ✓ test_internal_checklist_on_sample")


def test_unknown_template():
    try:
        generate_checklist("t-1", "checklist-nope", {}, NOW)
        assert False, "expected KeyError"
    except KeyError as e:
        assert "checklist-nope" in str(e)
    print("  ✓ test_unknown_template")


def test_validate_checklist():
    empty = validate_checklist([])
    assert empty.is_complete and empty.can_approve

    items = [
        ChecklistItem(tender_id="t", key="a", label="A", status="ok"),
        ChecklistItem(tender_id="t", key="b", label="B", status="pending"),
        ChecklistItem(tender_id="t", key="c", label="C", status="missing"),
        ChecklistItem(tender_id="t", key="d", label="D", status="not_applicable"),
    ]
    result = validate_checklist(items)
    assert not result.can_approve
    assert result.pending_items == ["b"]
    assert result.missing_items == ["c"]
    assert result.statistics == {"total": 4, "ok": 1, "missing": 1, "pending": 1, "not_applicable": 1}

    settled = validate_checklist([items[0], items[3]])
    assert settled.can_approve
    print("  ✓ test_validate_checklist")


def test_reviewer_override_is_audited():
    store = InMemoryStore()
    tender = Tender(title="Fare system")
    store.upsert_tender(tender)
    store.upsert_checklist_item(ChecklistItem(tender_id=tender.id, key="a", label="A", status="ok"))
    store.upsert_checklist_item(ChecklistItem(tender_id=tender.id, key="b", label="B", status="pending"))

    before = validate_checklist(store.list_checklist_items(tender.id))
    assert not before.can_approve

    after = update_checklist_item(store, tender.id, "b", "not_applicable", notes="No site visit", actor_id="u-7")
    assert after.can_approve
    item = store.get_checklist_item(tender.id, "b")
    assert item.status == "not_applicable" and item.notes == "No site visit"
    assert not item.auto_checked

    records = store.list_audit_records(f"{tender.id}:b")
    assert len(records) == 1
    assert records[0].action == "CHECKLIST_ITEM_UPDATED"
    assert records[0].diff == {"status": {"from": "pending", "to": "not_applicable"}}
    assert records[0].actor_id == "u-7"
    print("  ✓ test_reviewer_override_is_audited")


def test_override_rejects_bad_status():
    store = InMemoryStore()
    store.upsert_checklist_item(ChecklistItem(tender_id="t", key="a", label="A"))
    try:
        update_checklist_item(store, "t", "a", "approved")
        assert False, "expected ValueError"
    except ValueError:
        pass
    assert store.get_checklist_item("t", "a").status == "pending"
    print("  ✓ test_override_rejects_bad_status")


def run_all_tests():
    print("\n═══ Checklist tests ═══\n")
    test_condition_operators()
    test_item_without_rule_needs_manual_review()
    test_missing_field_is_missing()
    test_matched_item_inherits_citations()
    test_condition_error_degrades_to_pending()
    test_low_confidence_fails_min_confidence()
    test_compliance_checklist_on_sample()
    test_required_only_drops_optional_items()
    test_internal_checklist_on_sample()
    test_unknown_template()
    test_validate_checklist()
    test_reviewer_override_is_audited()
    test_override_rejects_bad_status()
    print("\n  All checklist tests passed.\n")


if __name__ == "__main__":
    run_all_tests()
