"""
text_utils.py — Shared text-mining primitives for the field extractors.

Everything here is pure and deterministic: same text in, same snippets,
same citation ids, same dates out. The extractors lean on that so a
re-run over an unchanged document yields byte-identical FieldExtractions.

Page resolution works on the concatenated document text. Pages are joined
with a single "\n" (see Document.full_text), so a match at offset N lives
on the page whose cumulative span [start, start + len(page)) contains N,
where each page after the first starts one character later than the sum
of the previous page lengths.

Date parsing is deliberately narrow. We only look for the handful of
forms tender notices actually use, and we drop any year outside the
plausible window. Numeric dates like 03/04/2025 are read day-first; the
month-first reading is used only when day-first is not a real calendar
date (13/04 vs 04/13). That is not locale-aware and should stay visible
to reviewers via the cited snippet.
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import date
from typing import Iterable, List, Optional, Pattern, Sequence, Tuple

from tender_review.config import config
from tender_review.schemas import Page, TraceLink

logger = logging.getLogger(__name__)


MONTHS = (
    "january", "february", "march", "april", "may", "june",
    "july", "august", "september", "october", "november", "december",
)
_MONTH_ALT = "|".join(MONTHS)

_DATE_PATTERNS: Tuple[Tuple[str, Pattern], ...] = (
    ("numeric", re.compile(r"\b(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})\b")),
    ("iso", re.compile(r"\b(\d{4})[/\-](\d{1,2})[/\-](\d{1,2})\b")),
    ("month_first", re.compile(rf"\b({_MONTH_ALT})\s+(\d{{1,2}}),?\s+(\d{{4}})\b", re.I)),
    ("day_first", re.compile(rf"\b(\d{{1,2}})\s+({_MONTH_ALT})\s+(\d{{4}})\b", re.I)),
)

_WS_RE = re.compile(r"\s+")
_EDGE_NONWORD_RE = re.compile(r"^\W+|\W+$")


def normalize_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def truncate(text: str, limit: int) -> str:
    """Cut to `limit` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


BULLET_ITEM_RE = re.compile(r"^\s*[-•*]\s*(.+?)\s*$")
NUMBERED_ITEM_RE = re.compile(r"^\s*\d+[.)]\s*(.+?)\s*$")


def collect_list_blocks(
    text: str,
    intro: Pattern,
    item: Pattern = BULLET_ITEM_RE,
) -> List[Tuple[int, List[str]]]:
    """
    For every `intro` hit, collect the run of list lines that follows it.

    The list may start on the intro line itself ("Requirements: - a") or
    on the next line; it ends at the first line that is not a list item.
    Returns (intro offset, items) pairs, skipping intros with no list.
    """
    blocks: List[Tuple[int, List[str]]] = []
    for m in intro.finditer(text):
        rest = text[m.end():].lstrip(": \t\r\n")
        items: List[str] = []
        for line in rest.split("\n"):
            im = item.match(line)
            if not im:
                break
            items.append(im.group(1))
        if items:
            blocks.append((m.start(), items))
    return blocks


# ── Snippets and citations ────────────────────────────────────────────────

def extract_snippet(
    page_text: str,
    match_index: int,
    match_text: str,
    length: Optional[int] = None,
) -> str:
    """
    Cut a window of `length` characters (half before, half after) around
    a match, collapse whitespace and strip dangling punctuation. A side
    that was cut short gets "..." so reviewers know the quote is partial.
    """
    length = length or config.extraction.snippet_length
    half = length // 2
    start = max(0, match_index - half)
    end = min(len(page_text), match_index + len(match_text) + half)

    snippet = normalize_whitespace(page_text[start:end])
    snippet = _EDGE_NONWORD_RE.sub("", snippet)

    if start > 0:
        snippet = "..." + snippet
    if end < len(page_text):
        snippet = snippet + "..."
    return snippet


def citation_id(document_id: str, page: int, offset: int, snippet: str) -> str:
    """Stable 16-hex id so identical input yields identical citations."""
    raw = f"{document_id}|{page}|{offset}|{snippet}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()[:16]


def resolve_page(offset: int, pages: Sequence[Page]) -> Optional[Tuple[Page, int]]:
    """Map an offset in the joined text to (page, offset within page)."""
    cursor = 0
    for page in pages:
        end = cursor + len(page.text)
        if cursor <= offset < end:
            return page, offset - cursor
        cursor = end + 1
    return None


def find_patterns(
    content: str,
    patterns: Iterable[Pattern],
    document_id: str,
    pages: Sequence[Page],
    section_path: Optional[str] = None,
) -> List[TraceLink]:
    """
    Run every pattern over the full text and turn each hit into a
    TraceLink on the page it falls on.

    Documents with no page segmentation are treated as a single page 1.
    Zero-width matches are skipped; they carry nothing worth quoting.
    """
    if not pages:
        pages = [Page(number=1, text=content)]

    links: List[TraceLink] = []
    for pattern in patterns:
        for match in pattern.finditer(content):
            if match.end() == match.start():
                continue
            located = resolve_page(match.start(), pages)
            if located is None:
                continue
            page, local_index = located
            snippet = extract_snippet(page.text, local_index, match.group(0))
            if not snippet:
                continue
            links.append(TraceLink(
                id=citation_id(document_id, page.number, match.start(), snippet),
                document_id=document_id,
                page=page.number,
                snippet=snippet,
                section_path=section_path,
            ))
    return links


def dedupe_citations(
    citations: Iterable[TraceLink],
    limit: Optional[int] = None,
) -> List[TraceLink]:
    """Drop repeats of the same (document, page, snippet), keep order, cap."""
    limit = limit or config.extraction.max_citations
    seen = set()
    unique: List[TraceLink] = []
    for link in citations:
        key = (link.document_id, link.page, link.snippet)
        if key in seen:
            continue
        seen.add(key)
        unique.append(link)
        if len(unique) >= limit:
            break
    return unique


# ── Keyword counting and confidence ───────────────────────────────────────

def keyword_pattern(keyword: str) -> Pattern:
    """Case-insensitive, whitespace-tolerant, whole-word keyword regex."""
    parts = [re.escape(p) for p in keyword.split()]
    return re.compile(r"\b" + r"\s+".join(parts) + r"\b", re.I)


def count_keywords(
    text: str,
    keywords: Sequence[str],
    strong: Iterable[str] = (),
) -> Tuple[int, int, List[str]]:
    """
    Count keyword hits over `text`.

    Returns (matches, strong_matches, keywords_found). Overlapping
    keywords are counted independently ("project scope" also counts as
    "scope"), which is what the weights were tuned against.
    """
    strong_set = set(strong)
    matches = 0
    strong_matches = 0
    found: List[str] = []
    for keyword in keywords:
        hits = len(keyword_pattern(keyword).findall(text))
        if not hits:
            continue
        matches += hits
        found.append(keyword)
        if keyword in strong_set:
            strong_matches += hits
    return matches, strong_matches, found


def calculate_confidence(matches: int, strong_matches: int, document_length: int) -> float:
    """
    min(cap, matches * weight) + strong * strong_weight, penalised for
    short documents, clamped to [0, 1]. Zero matches is always zero.
    """
    if matches <= 0:
        return 0.0
    cfg = config.extraction
    confidence = min(cfg.match_cap, matches * cfg.match_weight)
    confidence += strong_matches * cfg.strong_match_weight
    if document_length < cfg.short_document_chars:
        confidence *= cfg.short_document_penalty
    return min(1.0, max(0.0, confidence))


# ── Dates ─────────────────────────────────────────────────────────────────

def _plausible(year: int) -> bool:
    cfg = config.extraction
    return cfg.min_plausible_year < year < cfg.max_plausible_year


def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _numeric_date(first: int, second: int, year: int) -> Optional[date]:
    # Day-first wins when both readings are real dates.
    return _safe_date(year, second, first) or _safe_date(year, first, second)


def _month_index(name: str) -> int:
    return MONTHS.index(name.lower()) + 1


def find_dates(text: str) -> List[Tuple[int, date]]:
    """
    All plausible dates in `text` as (offset, date), in reading order.

    Impossible calendar dates and years outside the plausible window are
    dropped silently; a later pattern never re-reads a span an earlier
    one already claimed.
    """
    found: List[Tuple[int, int, date]] = []
    claimed: List[Tuple[int, int]] = []

    for kind, pattern in _DATE_PATTERNS:
        for m in pattern.finditer(text):
            if any(m.start() < end and start < m.end() for start, end in claimed):
                continue
            parsed: Optional[date] = None
            if kind == "numeric":
                parsed = _numeric_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
            elif kind == "iso":
                parsed = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
            elif kind == "month_first":
                parsed = _safe_date(int(m.group(3)), _month_index(m.group(1)), int(m.group(2)))
            elif kind == "day_first":
                parsed = _safe_date(int(m.group(3)), _month_index(m.group(2)), int(m.group(1)))

            if parsed is None or not _plausible(parsed.year):
                continue
            claimed.append((m.start(), m.end()))
            found.append((m.start(), m.end(), parsed))

    found.sort(key=lambda item: item[0])
    return [(start, d) for start, _end, d in found]


def parse_dates(text: str) -> List[date]:
    return [d for _, d in find_dates(text)]


def format_date(value, style: str = "long") -> str:
    """ISO string or date → "March 15, 2024" (long) or "Mar 15" (short)."""
    if value is None or value == "":
        return ""
    if isinstance(value, str):
        try:
            value = date.fromisoformat(value[:10])
        except ValueError:
            return value
    if style == "short":
        return f"{value.strftime('%b')} {value.day}"
    return f"{value.strftime('%B')} {value.day}, {value.year}"
