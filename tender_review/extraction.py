"""
extraction.py — Field extractor base class, context and registry.

Each of the five field extractors (scope, eligibility, evaluation
criteria, submission mechanics, deadline) follows the same shape:

  1. keyword list          → weak signal, counted for confidence
  2. strong keywords       → subset of (1) that earns the +0.1 bonus
  3. trace patterns        → phrase-anchored and structural regexes whose
                             hits become TraceLinks
  4. build_value()         → field-specific structured value, computed
                             independently of the confidence score

The base class owns steps 1-3 and the citation rules so the subclasses
only describe WHAT to look for. Two rules are enforced centrally:

  - no keyword hits → confidence 0 and no citations, whatever the value
    builder managed to find
  - confidence > 0 but no trace-pattern hit → the keyword hits themselves
    are cited, otherwise the FieldExtraction would be unpersistable

run_extractor() is the only way the pipeline calls an extractor. It
converts any exception into a zero-confidence result so one broken
pattern never takes the extract step down with it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Pattern, Sequence

from tender_review.schemas import Document, ExtractionResult, Page, TraceLink
from tender_review.text_utils import (
    calculate_confidence,
    count_keywords,
    dedupe_citations,
    find_patterns,
    keyword_pattern,
)

logger = logging.getLogger(__name__)


@dataclass
class DocumentContent:
    """The read-only view of a document that extractors work over."""
    id: str
    content: str
    pages: List[Page] = field(default_factory=list)

    @classmethod
    def from_document(cls, document: Document) -> "DocumentContent":
        return cls(id=document.id, content=document.full_text, pages=list(document.pages))


@dataclass
class ExtractorContext:
    document: DocumentContent
    all_documents: List[DocumentContent] = field(default_factory=list)
    tender_title: Optional[str] = None
    now: datetime = field(default_factory=datetime.now)


class FieldExtractor:
    """Base class for the pattern-driven field extractors."""

    key: str = ""
    name: str = ""
    description: str = ""

    keywords: Sequence[str] = ()
    strong_keywords: Sequence[str] = ()
    trace_patterns: Sequence[Pattern] = ()

    def build_value(self, text: str, ctx: ExtractorContext, matches: int,
                    keywords_found: List[str]) -> Dict[str, Any]:
        raise NotImplementedError

    def adjust_confidence(self, confidence: float, value: Dict[str, Any]) -> float:
        return confidence

    def extract(self, ctx: ExtractorContext) -> ExtractionResult:
        doc = ctx.document
        text = doc.content or ""
        if not text.strip():
            return ExtractionResult()

        matches, strong, found = count_keywords(text, self.keywords, self.strong_keywords)
        value = self.build_value(text, ctx, matches, found)

        if matches == 0:
            return ExtractionResult(value=value, confidence=0.0, citations=[])

        confidence = calculate_confidence(matches, strong, len(text))
        confidence = min(1.0, max(0.0, self.adjust_confidence(confidence, value)))

        citations = find_patterns(text, self.trace_patterns, doc.id, doc.pages)
        if confidence > 0 and not citations:
            citations = self._keyword_citations(text, doc, found)
            logger.debug(
                "%s: no trace-pattern hits, citing %d keyword hits instead",
                self.key, len(citations),
            )
        citations = dedupe_citations(citations)

        if not citations:
            # Keywords counted but nothing quotable (all zero-width): a
            # confident field without evidence is worse than "not found".
            confidence = 0.0

        return ExtractionResult(value=value, confidence=confidence, citations=citations)

    def _keyword_citations(self, text: str, doc: DocumentContent,
                           found: List[str]) -> List[TraceLink]:
        patterns = [keyword_pattern(k) for k in found]
        return find_patterns(text, patterns, doc.id, doc.pages)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} key={self.key!r}>"


def run_extractor(extractor: FieldExtractor, ctx: ExtractorContext) -> ExtractionResult:
    """Call an extractor; any exception becomes a zero-confidence result."""
    try:
        return extractor.extract(ctx)
    except Exception as e:
        logger.exception("Extractor '%s' failed on document %s", extractor.key, ctx.document.id)
        return ExtractionResult(value=None, confidence=0.0, citations=[], error=str(e))


# ── Registry ──────────────────────────────────────────────────────────────

_registry: Optional[List[FieldExtractor]] = None
_registry_lock = threading.Lock()


def field_extractors() -> List[FieldExtractor]:
    """All extractors in declaration order (scope first, deadline last)."""
    global _registry
    with _registry_lock:
        if _registry is None:
            # Imported here: the extractor modules import this one.
            from tender_review.deadline_extractor import DeadlineSubmissionExtractor
            from tender_review.eligibility_extractor import EligibilityExtractor
            from tender_review.evaluation_extractor import EvaluationCriteriaExtractor
            from tender_review.scope_extractor import ScopeExtractor
            from tender_review.submission_extractor import SubmissionMechanicsExtractor

            _registry = [
                ScopeExtractor(),
                EligibilityExtractor(),
                EvaluationCriteriaExtractor(),
                SubmissionMechanicsExtractor(),
                DeadlineSubmissionExtractor(),
            ]
        return list(_registry)


def get_extractor(key: str) -> Optional[FieldExtractor]:
    for extractor in field_extractors():
        if extractor.key == key:
            return extractor
    return None


def extractor_keys() -> List[str]:
    return [e.key for e in field_extractors()]
