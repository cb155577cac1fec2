"""
test_text_utils.py — Snippets, page resolution, keyword confidence and dates.

Everything in text_utils is pure, so these tests use small inline strings
rather than the sample tender.

Run with:
    python tests/test_text_utils.py
    python -m pytest tests/test_text_utils.py -v
"""

from __future__ import annotations

import re
import sys
from datetime import date
from pathlib import Path

# Make sure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from tender_review.schemas import Page, TraceLink
from tender_review.text_utils import (
    BULLET_ITEM_RE,
    calculate_confidence,
    citation_id,
    collect_list_blocks,
    count_keywords,
    dedupe_citations,
    extract_snippet,
    find_dates,
    find_patterns,
    format_date,
    parse_dates,
    resolve_page,
)


def test_snippet_marks_truncated_sides():
    page = "a" * 300 + " KEY " + "b" * 300
    snippet = extract_snippet(page, 301, "KEY")
    assert snippet.startswith("...")
    assert snippet.endswith("...")
    assert "KEY" in snippet
    print("  ✓ test_snippet_marks_truncated_sides")


def test_snippet_strips_edge_punctuation():
    snippet = extract_snippet("-- hello   world --", 3, "hello")
    assert snippet == "hello world"
    print("  ✓ test_snippet_strips_edge_punctuation")


def test_resolve_page_uses_newline_separator():
    pages = [Page(number=1, text="abc"), Page(number=2, text="defg")]
    page, local = resolve_page(4, pages)
    assert page.number == 2 and local == 0
    page, local = resolve_page(2, pages)
    assert page.number == 1 and local == 2
    # Offset 3 is the joining newline itself
    assert resolve_page(3, pages) is None
    assert resolve_page(50, pages) is None
    print("  ✓ test_resolve_page_uses_newline_separator")


def test_find_patterns_attributes_pages():
    pages = [
        Page(number=1, text="Introduction to the notice."),
        Page(number=2, text="Scope of work: build a new depot."),
    ]
    content = "\n".join(p.text for p in pages)
    pattern = re.compile(r"scope\s+of\s+work[:\s]", re.I)

    links = find_patterns(content, [pattern], "doc-1", pages)
    assert len(links) == 1
    assert links[0].page == 2
    assert links[0].document_id == "doc-1"
    assert "Scope of work" in links[0].snippet

    again = find_patterns(content, [pattern], "doc-1", pages)
    assert [l.id for l in again] == [l.id for l in links]
    print("  ✓ test_find_patterns_attributes_pages")


def test_find_patterns_without_pages_is_page_one():
    links = find_patterns("Deadline: soon", [re.compile("Deadline")], "doc-2", [])
    assert len(links) == 1 and links[0].page == 1
    print("  ✓ test_find_patterns_without_pages_is_page_one")


def test_find_patterns_skips_zero_width_matches():
    links = find_patterns("anything", [re.compile(r"(?=x)|\b")], "doc-3", [])
    assert links == []
    print("  ✓ test_find_patterns_skips_zero_width_matches")


def test_citation_id_is_stable():
    a = citation_id("doc", 3, 120, "snippet text")
    b = citation_id("doc", 3, 120, "snippet text")
    c = citation_id("doc", 4, 120, "snippet text")
    assert a == b and a != c
    assert len(a) == 16
    print("  ✓ test_citation_id_is_stable")


def test_dedupe_citations_keeps_order_and_caps():
    links = [
        TraceLink(id="1", document_id="d", page=1, snippet="same"),
        TraceLink(id="2", document_id="d", page=1, snippet="same"),
        TraceLink(id="3", document_id="d", page=2, snippet="same"),
        TraceLink(id="4", document_id="d", page=2, snippet="other"),
    ]
    assert [l.id for l in dedupe_citations(links)] == ["1", "3", "4"]
    assert [l.id for l in dedupe_citations(links, limit=2)] == ["1", "3"]
    print("  ✓ test_dedupe_citations_keeps_order_and_caps")


def test_count_keywords_counts_overlaps():
    text = "Project scope and the Scope  of\nWork are defined."
    matches, strong, found = count_keywords(
        text, ("scope of work", "project scope", "scope", "budget"), ("scope of work",),
    )
    # "scope" also counts inside both phrases
    assert matches == 4
    assert strong == 1
    assert found == ["scope of work", "project scope", "scope"]
    print("  ✓ test_count_keywords_counts_overlaps")


def test_confidence_formula():
    assert calculate_confidence(0, 0, 5000) == 0.0
    assert abs(calculate_confidence(3, 1, 5000) - 0.7) < 1e-9
    # Short documents are penalised
    assert abs(calculate_confidence(10, 0, 500) - 0.64) < 1e-9
    # Clamped to 1
    assert calculate_confidence(10, 5, 5000) == 1.0
    print("  ✓ test_confidence_formula")


def test_find_dates_all_forms_in_reading_order():
    text = (
        "Due 15/03/2024, questions by 2024-04-01, "
        "briefing March 5, 2024 and site visit 7 June 2024. Act of 12/12/1998."
    )
    assert parse_dates(text) == [
        date(2024, 3, 15),
        date(2024, 4, 1),
        date(2024, 3, 5),
        date(2024, 6, 7),
    ]
    offsets = [offset for offset, _ in find_dates(text)]
    assert offsets == sorted(offsets)
    print("  ✓ test_find_dates_all_forms_in_reading_order")


def test_numeric_dates_prefer_day_first():
    assert parse_dates("on 03/04/2025") == [date(2025, 4, 3)]
    # 13 can't be a month, so the month-first reading is used
    assert parse_dates("on 04/13/2025") == [date(2025, 4, 13)]
    assert parse_dates("on 31/02/2025") == []
    print("  ✓ test_numeric_dates_prefer_day_first")


def test_year_window_is_exclusive():
    assert parse_dates("1 January 2020") == []
    assert parse_dates("1 January 2030") == []
    assert parse_dates("1 January 2029") == [date(2029, 1, 1)]
    print("  ✓ test_year_window_is_exclusive")


def test_format_date():
    assert format_date("2024-03-15") == "March 15, 2024"
    assert format_date(date(2024, 3, 15), "short") == "Mar 15"
    assert format_date(None) == ""
    assert format_date("sometime soon") == "sometime soon"
    print("  ✓ test_format_date")


def test_collect_list_blocks():
    text = "Deliverables include:\n- design\n- build\nThen prose.\nDeliverables include: nothing"
    blocks = collect_list_blocks(text, re.compile("deliverables include", re.I), BULLET_ITEM_RE)
    assert len(blocks) == 1
    assert blocks[0][1] == ["design", "build"]
    print("  ✓ test_collect_list_blocks")


def run_all_tests():
    print("\n═══ Text utility tests ═══\n")
    test_snippet_marks_truncated_sides()
    test_snippet_strips_edge_punctuation()
    test_resolve_page_uses_newline_separator()
    test_find_patterns_attributes_pages()
    test_find_patterns_without_pages_is_page_one()
    test_find_patterns_skips_zero_width_matches()
    test_citation_id_is_stable()
    test_dedupe_citations_keeps_order_and_caps()
    test_count_keywords_counts_overlaps()
    test_confidence_formula()
    test_find_dates_all_forms_in_reading_order()
    test_numeric_dates_prefer_day_first()
    test_year_window_is_exclusive()
    test_format_date()
    test_collect_list_blocks()
    print("\n  All text utility tests passed.\n")


if __name__ == "__main__":
    run_all_tests()
