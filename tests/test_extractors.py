"""
test_extractors.py — The five field extractors against a realistic notice.

tests/data/sample_tender.txt is a short fare-system RFP with one section
per field. "Now" is pinned to 2024-01-10 so the March 2024 deadline is in
the future.

Run with:
    python tests/test_extractors.py
    python -m pytest tests/test_extractors.py -v
"""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

# Make sure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tender_review.extraction import (
    DocumentContent,
    ExtractorContext,
    FieldExtractor,
    extractor_keys,
    field_extractors,
    get_extractor,
    run_extractor,
)
from tender_review.ingestion import paginate_text
from tender_review.schemas import Page

SAMPLE = Path(__file__).resolve().parent / "data" / "sample_tender.txt"
NOW = datetime(2024, 1, 10, 9, 0)


def _ctx(text: str, now: datetime = NOW, pages=None) -> ExtractorContext:
    doc = DocumentContent(id="doc-1", content=text, pages=list(pages or []))
    return ExtractorContext(document=doc, all_documents=[doc], tender_title="Fare system", now=now)


def _sample_ctx(now: datetime = NOW) -> ExtractorContext:
    text = SAMPLE.read_text(encoding="utf-8")
    pages = paginate_text(text, 120)
    return _ctx("\n".join(p.text for p in pages), now, pages)


def test_registry_order():
    assert extractor_keys() == [
        "scope", "eligibility", "evaluationCriteria", "submissionMechanics", "deadlineSubmission",
    ]
    assert get_extractor("nope") is None
    assert get_extractor("scope") is field_extractors()[0]
    print("  ✓ test_registry_order")


def test_every_confident_field_cites():
    ctx = _sample_ctx()
    for extractor in field_extractors():
        result = run_extractor(extractor, ctx)
        assert result.error is None, f"{extractor.key}: {result.error}"
        assert result.confidence > 0, f"{extractor.key} found nothing"
        assert result.citations, f"{extractor.key} has confidence but no citations"
        for link in result.citations:
            assert link.document_id == "doc-1"
            assert link.page >= 1
            assert link.snippet
    print("  ✓ test_every_confident_field_cites")


def test_extraction_is_deterministic():
    first = run_extractor(get_extractor("deadlineSubmission"), _sample_ctx())
    second = run_extractor(get_extractor("deadlineSubmission"), _sample_ctx())
    assert first.model_dump() == second.model_dump()
    print("  ✓ test_extraction_is_deterministic")


def test_scope_sections():
    result = run_extractor(get_extractor("scope"), _sample_ctx())
    sections = result.value["sections"]
    assert sections[0]["type"] == "section"
    assert sections[0]["section"] == "Scope Of Work"
    assert "40 stations" in sections[0]["content"]
    assert "scope of work" in result.value["keywords"]
    assert result.value["summary"].startswith("Scope Of Work: ")
    assert result.confidence >= 0.8
    print("  ✓ test_scope_sections")


def test_eligibility_single_experience_requirement():
    text = "Bidders must have minimum 5 years experience in government IT projects."
    result = run_extractor(get_extractor("eligibility"), _ctx(text))
    experience = [r for r in result.value["requirements"] if r["type"] == "experience"]
    assert len(experience) == 1
    assert experience[0]["value"] == 5
    assert len(result.value["requirements"]) == 1
    assert result.value["minimumExperienceYears"] == 5
    print("  ✓ test_eligibility_single_experience_requirement")


def test_eligibility_on_sample():
    value = run_extractor(get_extractor("eligibility"), _sample_ctx()).value
    assert value["minimumExperienceYears"] == 5
    assert value["financialThreshold"] == 10_000_000
    assert value["categories"]["certification"], "ISO 9001 not picked up"
    assert any("tax clearance" in r["requirement"] for r in value["requirements"])
    print("  ✓ test_eligibility_on_sample")


def test_evaluation_scoring_and_stages():
    value = run_extractor(get_extractor("evaluationCriteria"), _sample_ctx()).value
    scoring = value["scoring"]
    assert scoring["totalPoints"] == 100
    assert scoring["weightDistribution"] == {"technical": 60, "commercial": 30}
    assert scoring["scoringMethod"] == "best value"

    weights = {c["category"]: c.get("weight") for c in value["criteria"] if c.get("weight")}
    assert weights["technical"] == 60
    assert weights["commercial"] == 30

    assert value["methodology"][0]["order"] == 1
    assert value["methodology"][1]["order"] == 2
    print("  ✓ test_evaluation_scoring_and_stages")


def test_submission_delivery_and_format():
    value = run_extractor(get_extractor("submissionMechanics"), _sample_ctx()).value
    assert value["delivery"]["method"] == "email"
    assert value["delivery"]["email"] == "procurement@citytransit.example.gov"
    assert value["format"]["copies"] == 3
    assert value["format"]["originalRequired"] is True
    assert value["format"]["fileFormats"] == ["pdf format"]
    print("  ✓ test_submission_delivery_and_format")


def test_deadline_prefers_submission_type():
    result = run_extractor(get_extractor("deadlineSubmission"), _sample_ctx())
    primary = result.value["primaryDeadline"]
    assert primary["date"] == "2024-03-15"
    assert primary["type"] == "submission"
    assert primary["time"] == "5:00 PM"
    assert primary["isValid"] and primary["isFuture"]
    assert primary["daysFromNow"] == 65

    closing = [d for d in result.value["allDeadlines"] if d["type"] == "closing"]
    assert closing and closing[0]["date"] == "2024-03-01"
    assert result.value["validDateCount"] == 2
    assert result.confidence == 1.0
    print("  ✓ test_deadline_prefers_submission_type")


def test_deadline_all_past_picks_latest():
    result = run_extractor(get_extractor("deadlineSubmission"), _sample_ctx(datetime(2024, 6, 1)))
    primary = result.value["primaryDeadline"]
    assert primary["date"] == "2024-03-15"
    assert primary["isFuture"] is False
    assert "Warning: Found deadline(s) in the past" in result.value["summary"]
    print("  ✓ test_deadline_all_past_picks_latest")


def test_deadline_without_valid_date_is_halved():
    text = "The submission deadline will be announced later by the procurement office."
    result = run_extractor(get_extractor("deadlineSubmission"), _ctx(text))
    assert result.value["primaryDeadline"] is None
    assert result.value["validDateCount"] == 0
    # 2 keyword hits, 2 strong: (0.4 + 0.2) * 0.8 short-doc penalty, then halved
    assert abs(result.confidence - 0.24) < 1e-9
    print("  ✓ test_deadline_without_valid_date_is_halved")


def test_deadline_citation_lands_on_its_page():
    pages = [
        Page(number=1, text="General conditions apply to all bidders."),
        Page(number=2, text="Closing date: 20 February 2024 at 12:00"),
    ]
    text = "\n".join(p.text for p in pages)
    result = run_extractor(get_extractor("deadlineSubmission"), _ctx(text, pages=pages))
    assert result.citations
    assert {c.page for c in result.citations} == {2}
    assert result.value["primaryDeadline"]["time"] == "12:00"
    print("  ✓ test_deadline_citation_lands_on_its_page")


def test_no_keywords_means_zero_confidence():
    result = run_extractor(get_extractor("evaluationCriteria"), _ctx("Lorem ipsum dolor sit amet."))
    assert result.confidence == 0.0
    assert result.citations == []
    assert result.value is not None
    print("  ✓ test_no_keywords_means_zero_confidence")


def test_empty_document():
    result = run_extractor(get_extractor("scope"), _ctx("   "))
    assert result.value is None
    assert result.confidence == 0.0
    print("  ✓ test_empty_document")


def test_extractor_exception_becomes_error_result():
    class Broken(FieldExtractor):
        key = "scope"
        keywords = ("scope",)

        def build_value(self, text, ctx, matches, keywords_found):
            raise RuntimeError("pattern blew up")

    result = run_extractor(Broken(), _ctx("The scope is large."))
    assert result.error == "pattern blew up"
    assert result.confidence == 0.0
    assert result.citations == []
    print("  ✓ test_extractor_exception_becomes_error_result")


def run_all_tests():
    print("\n═══ Field extractor tests ═══\n")
    test_registry_order()
    test_every_confident_field_cites()
    test_extraction_is_deterministic()
    test_scope_sections()
    test_eligibility_single_experience_requirement()
    test_eligibility_on_sample()
    test_evaluation_scoring_and_stages()
    test_submission_delivery_and_format()
    test_deadline_prefers_submission_type()
    test_deadline_all_past_picks_latest()
    test_deadline_without_valid_date_is_halved()
    test_deadline_citation_lands_on_its_page()
    test_no_keywords_means_zero_confidence()
    test_empty_document()
    test_extractor_exception_becomes_error_result()
    print("\n  All field extractor tests passed.\n")


if __name__ == "__main__":
    run_all_tests()
