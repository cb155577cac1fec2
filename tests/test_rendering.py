"""
test_rendering.py — Summary templates, citation markers and block splitting.

Run with:
    python tests/test_rendering.py
    python -m pytest tests/test_rendering.py -v
"""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

# Make sure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tender_review.extraction import DocumentContent, ExtractorContext, field_extractors, run_extractor
from tender_review.rendering import (
    CitationCollector,
    TemplateRenderer,
    format_list,
    percent,
    slugify,
    split_blocks,
    validate_summary,
)
from tender_review.schemas import FieldExtraction, SummaryBlock, Tender, TraceLink
from tender_review.templates import SUMMARY_V1, SummaryTemplate

SAMPLE = Path(__file__).resolve().parent / "data" / "sample_tender.txt"
NOW = datetime(2024, 1, 10, 9, 0)
TENDER = Tender(id="t-1", title="Fare Collection Modernization", agency="City Transit Authority")


def _sample_fields():
    doc = DocumentContent(id="doc-1", content=SAMPLE.read_text(encoding="utf-8"))
    ctx = ExtractorContext(document=doc, all_documents=[doc], now=NOW)
    fields = {}
    for extractor in field_extractors():
        result = run_extractor(extractor, ctx)
        fields[extractor.key] = FieldExtraction(
            tender_id=TENDER.id, key=extractor.key, value=result.value,
            confidence=result.confidence, citations=result.citations,
        )
    return fields


def _renderer(**kwargs) -> TemplateRenderer:
    return TemplateRenderer(clock=lambda: NOW, **kwargs)


def test_helpers():
    assert slugify("Eligibility Criteria") == "eligibility-criteria"
    assert slugify("!!!") == "section"
    assert percent(0.756) == "76%"
    assert percent(None) == "0%"
    assert format_list(["a", "b", "c"]) == "a, b and c"
    assert format_list(["a"]) == "a"
    print("  ✓ test_helpers")


def test_summary_blocks_per_heading():
    blocks = _renderer().render_summary(TENDER, _sample_fields()).blocks
    assert [b.block_key for b in blocks] == [
        "project-scope",
        "eligibility-criteria",
        "evaluation-criteria",
        "submission-requirements",
        "deadline",
    ]
    assert all(b.tender_id == "t-1" for b in blocks)
    # The title above the first heading is not a block
    assert not any("# Tender Summary" in b.content_markdown for b in blocks)

    deadline = blocks[-1]
    assert "**Submission deadline:** March 15, 2024 at 5:00 PM" in deadline.content_markdown
    assert "Generated January 10, 2024 with Standard Tender Summary v1.0" in deadline.content_markdown
    print("  ✓ test_summary_blocks_per_heading")


def test_block_citations_belong_to_their_field():
    fields = _sample_fields()
    blocks = {b.block_key: b for b in _renderer().render_summary(TENDER, fields).blocks}

    scope_ids = {c.id for c in fields["scope"].citations}
    assert blocks["project-scope"].citations
    assert {c.id for c in blocks["project-scope"].citations} <= scope_ids

    deadline_ids = {c.id for c in fields["deadlineSubmission"].citations}
    assert {c.id for c in blocks["deadline"].citations} <= deadline_ids

    for block in blocks.values():
        for link in block.citations:
            assert f"(#trace-{link.id})" in block.content_markdown
    print("  ✓ test_block_citations_belong_to_their_field")


def test_summary_metadata():
    result = _renderer().render_summary(TENDER, _sample_fields())
    meta = result.metadata
    assert meta["templateId"] == "summary-v1"
    assert meta["generatedAt"] == NOW.isoformat()
    assert meta["blockCount"] == 5
    assert meta["totalCitations"] == sum(len(b.citations) for b in result.blocks)
    assert meta["totalCitations"] > 0
    assert meta["wordCount"] == sum(len(b.content_markdown.split()) for b in result.blocks)
    print("  ✓ test_summary_metadata")


def test_validate_summary_on_sample():
    blocks = _renderer().render_summary(TENDER, _sample_fields()).blocks
    check = validate_summary(blocks, SUMMARY_V1.block_keys)
    assert check.missing_blocks == []
    assert check.issues == []
    assert "project-scope" not in check.blocks_without_citations
    print("  ✓ test_validate_summary_on_sample")


def test_validate_summary_reports_problems():
    link = TraceLink(id="x", document_id="d", page=1, snippet="Pave 12 km of road")
    blocks = [
        SummaryBlock(tender_id="t", block_key="project-scope",
                     content_markdown="## Project Scope\nPave roads [p.1](#trace-x)", citations=[link]),
        SummaryBlock(tender_id="t", block_key="deadline", content_markdown="## Deadline"),
    ]
    check = validate_summary(blocks, ["project-scope", "eligibility-criteria", "deadline"])
    assert not check.is_valid
    assert check.missing_blocks == ["eligibility-criteria"]
    assert check.blocks_without_citations == ["deadline"]
    assert check.issues == ["Block 'deadline' has empty content"]

    assert validate_summary(blocks[:1]).is_valid
    print("  ✓ test_validate_summary_reports_problems")


def test_low_confidence_renders_placeholder():
    fields = _sample_fields()
    fields["scope"] = FieldExtraction(
        tender_id="t-1", key="scope", value={"summary": "Vague"}, confidence=0.0,
    )
    blocks = {b.block_key: b for b in _renderer().render_summary(TENDER, fields).blocks}
    scope = blocks["project-scope"]
    assert "*Project scope not clearly identified in the document.*" in scope.content_markdown
    assert scope.citations == []
    print("  ✓ test_low_confidence_renders_placeholder")


def test_threshold_is_per_renderer():
    fields = _sample_fields()
    strict = {b.block_key: b for b in _renderer(low_confidence_threshold=1.0).render_summary(TENDER, fields).blocks}
    lenient = {b.block_key: b for b in _renderer().render_summary(TENDER, fields).blocks}
    assert "not clearly identified" in strict["deadline"].content_markdown
    assert "not clearly identified" not in lenient["deadline"].content_markdown
    print("  ✓ test_threshold_is_per_renderer")


def test_missing_fields_still_render():
    blocks = _renderer().render_summary(TENDER, {}).blocks
    assert len(blocks) == 5
    assert all(not b.citations for b in blocks)
    check = validate_summary(blocks, SUMMARY_V1.block_keys)
    assert not check.is_valid
    assert check.missing_blocks == []
    assert len(check.blocks_without_citations) == 5
    print("  ✓ test_missing_fields_still_render")


def test_brief_template_is_one_block():
    blocks = _renderer().render_summary(TENDER, _sample_fields(), "summary-brief-v1").blocks
    assert [b.block_key for b in blocks] == ["summary"]
    assert blocks[0].content_markdown.startswith("**Fare Collection Modernization**")
    assert blocks[0].citations
    print("  ✓ test_brief_template_is_one_block")


def test_unknown_summary_template():
    try:
        _renderer().render_summary(TENDER, {}, "summary-v9")
        assert False, "expected KeyError"
    except KeyError as e:
        assert "summary-v9" in str(e)
    print("  ✓ test_unknown_summary_template")


def test_cite_rejects_foreign_link():
    link = TraceLink(id="a1", document_id="doc", page=4, snippet="Closing date: 1 March 2024")
    fields = {"deadlineSubmission": FieldExtraction(
        tender_id="t", key="deadlineSubmission", value={}, confidence=0.5, citations=[link],
    )}
    collector = CitationCollector(fields)
    assert collector.cite("deadlineSubmission", "a1") == "[p.4](#trace-a1)"
    assert collector.cite("scope", "a1") == ""
    assert collector.cite("deadlineSubmission", "zz") == ""
    assert [l.id for _, l in collector.emitted] == ["a1"]
    print("  ✓ test_cite_rejects_foreign_link")


def test_custom_template_with_explicit_cite():
    template = SummaryTemplate(
        id="custom",
        name="Custom",
        body=(
            "## Dates\n"
            "{% for c in fields.deadlineSubmission.citations %}"
            "- {{ c.snippet }} {{ cite('deadlineSubmission', c.id) }}\n"
            "{% endfor %}"
            "## Dates\n"
            "{{ cite('deadlineSubmission', 'bogus') }}none\n"
        ),
    )
    fields = _sample_fields()
    blocks = _renderer(templates={"custom": template}).render_summary(TENDER, fields, "custom").blocks
    assert [b.block_key for b in blocks] == ["dates", "dates-2"]
    assert len(blocks[0].citations) == len(fields["deadlineSubmission"].citations)
    assert blocks[1].citations == []
    assert blocks[1].content_markdown == "## Dates\nnone"
    print("  ✓ test_custom_template_with_explicit_cite")


def test_split_blocks_without_headings():
    link = TraceLink(id="x", document_id="d", page=1, snippet="s")
    blocks = split_blocks("t", "Just a paragraph [p.1](#trace-x).\n", [("[p.1](#trace-x)", link)])
    assert len(blocks) == 1
    assert blocks[0].block_key == "summary"
    assert [c.id for c in blocks[0].citations] == ["x"]
    print("  ✓ test_split_blocks_without_headings")


def test_render_checklist_uses_renderer_clock():
    result = _renderer().render_checklist(TENDER, _sample_fields(), "checklist-internal-v1")
    assert result.metadata["generatedAt"] == NOW.isoformat()
    assert result.metadata["totalItems"] == 7
    assert result.metadata["requiresManualReview"] == 1
    print("  ✓ test_render_checklist_uses_renderer_clock")


def run_all_tests():
    print("\n═══ Rendering tests ═══\n")
    test_helpers()
    test_summary_blocks_per_heading()
    test_block_citations_belong_to_their_field()
    test_summary_metadata()
    test_validate_summary_on_sample()
    test_validate_summary_reports_problems()
    test_low_confidence_renders_placeholder()
    test_threshold_is_per_renderer()
    test_missing_fields_still_render()
    test_brief_template_is_one_block()
    test_unknown_summary_template()
    test_cite_rejects_foreign_link()
    test_custom_template_with_explicit_cite()
    test_split_blocks_without_headings()
    test_render_checklist_uses_renderer_clock()
    print("\n  All rendering tests passed.\n")


if __name__ == "__main__":
    run_all_tests()
