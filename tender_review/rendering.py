"""
rendering.py — Summary and checklist rendering.

TemplateRenderer owns its own Jinja2 Environment. Nothing is registered
globally: two renderers with different thresholds or templates can live
in the same process (the API and the CLI do exactly that in tests).

Citation markers
----------------
Templates emit citations through `cite(field_key, link_id)` or
`cite_all(field_key)`. Both are bound to a per-render CitationCollector
that:
  - refuses ids that don't belong to that field (logged, emits nothing),
    so a template can never cite evidence for the wrong field
  - records every (marker, link) it emitted

After rendering, the output is split at "## " headings into blocks and
each block gets exactly the links whose markers fall inside its span.
The collector's record is the source of truth; the markdown is never
re-parsed for marker syntax.

render_summary returns the blocks with generation metadata (template id,
generated-at, total citations, word count). validate_summary checks a
set of blocks against the keys a template promises.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from jinja2 import DictLoader, Environment
from pydantic import BaseModel

from tender_review.checklist import ChecklistResult, generate_checklist
from tender_review.config import config
from tender_review.schemas import (
    FIELD_KEYS,
    FieldExtraction,
    SummaryBlock,
    SummaryValidation,
    Tender,
    TraceLink,
    local_now,
)
from tender_review.templates import SUMMARY_TEMPLATES, SummaryTemplate
from tender_review.text_utils import format_date

logger = logging.getLogger(__name__)

_HEADING_RE = re.compile(r"^##\s+(.+?)\s*$", re.M)
_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str) -> str:
    return _SLUG_RE.sub("-", text.lower()).strip("-") or "section"


def percent(value: Any) -> str:
    try:
        return f"{round(float(value) * 100)}%"
    except (TypeError, ValueError):
        return "0%"


def format_list(items: Any, separator: str = ", ", last: str = " and ") -> str:
    items = [str(i) for i in (items or []) if i not in (None, "")]
    if len(items) < 2:
        return "".join(items)
    return separator.join(items[:-1]) + last + items[-1]


class SummaryResult(BaseModel):
    blocks: List[SummaryBlock]
    metadata: Dict[str, Any]


class CitationCollector:
    """Per-render record of which citation markers were emitted."""

    def __init__(self, fields: Mapping[str, FieldExtraction]):
        self._by_field: Dict[str, Dict[str, TraceLink]] = {
            key: {link.id: link for link in f.citations} for key, f in fields.items()
        }
        self.emitted: List[Tuple[str, TraceLink]] = []

    @staticmethod
    def marker(link: TraceLink) -> str:
        return f"[p.{link.page}](#trace-{link.id})"

    def cite(self, field_key: str, link_id: str) -> str:
        link = self._by_field.get(field_key, {}).get(link_id)
        if link is None:
            logger.warning("Template cited %s for field '%s' but it has no such citation",
                           link_id, field_key)
            return ""
        marker = self.marker(link)
        self.emitted.append((marker, link))
        return marker

    def cite_all(self, field_key: str, limit: int = 3) -> str:
        links = list(self._by_field.get(field_key, {}).values())[:limit]
        return " ".join(self.cite(field_key, link.id) for link in links)


class TemplateRenderer:
    """Renders summary blocks and checklist items for one tender."""

    def __init__(
        self,
        templates: Optional[Mapping[str, SummaryTemplate]] = None,
        low_confidence_threshold: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
        checklist_template: Optional[str] = None,
    ):
        self.templates: Dict[str, SummaryTemplate] = dict(templates or SUMMARY_TEMPLATES)
        self.low_confidence_threshold = (
            config.rendering.low_confidence_threshold
            if low_confidence_threshold is None else low_confidence_threshold
        )
        self.clock = clock or local_now
        self.checklist_template = checklist_template or config.rendering.default_checklist_template

        self.env = Environment(
            loader=DictLoader({t.id: t.body for t in self.templates.values()}),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
        )
        self.env.filters["format_date"] = format_date
        self.env.filters["percent"] = percent
        self.env.filters["format_list"] = format_list
        self.env.tests["identified"] = self.is_identified

    def is_identified(self, field: Any) -> bool:
        if not field or field.get("value") is None:
            return False
        return float(field.get("confidence") or 0) > self.low_confidence_threshold

    def _field_context(self, fields: Mapping[str, FieldExtraction]) -> Dict[str, Dict[str, Any]]:
        ctx: Dict[str, Dict[str, Any]] = {}
        for key in FIELD_KEYS:
            f = fields.get(key)
            if f is None:
                ctx[key] = {"value": None, "confidence": 0.0, "citations": []}
            else:
                ctx[key] = {
                    "value": f.value,
                    "confidence": f.confidence,
                    "citations": [c.model_dump() for c in f.citations],
                }
        return ctx

    def render_markdown(
        self,
        tender: Tender,
        fields: Mapping[str, FieldExtraction],
        template_id: Optional[str] = None,
    ) -> Tuple[str, CitationCollector]:
        template_id = template_id or config.rendering.default_summary_template
        if template_id not in self.templates:
            raise KeyError(f"Unknown summary template '{template_id}'")
        spec = self.templates[template_id]
        template = self.env.get_template(spec.id)

        collector = CitationCollector(fields)
        trace_links = {
            link.id: link.model_dump() for f in fields.values() for link in f.citations
        }
        markdown = template.render(
            tender=tender.model_dump(),
            fields=self._field_context(fields),
            traceLinks=trace_links,
            metadata={
                "generated_at": self.clock(),
                "template_name": spec.name,
                "version": spec.version,
            },
            cite=collector.cite,
            cite_all=collector.cite_all,
        )
        return markdown, collector

    def render_summary(
        self,
        tender: Tender,
        fields: Mapping[str, FieldExtraction],
        template_id: Optional[str] = None,
    ) -> SummaryResult:
        template_id = template_id or config.rendering.default_summary_template
        markdown, collector = self.render_markdown(tender, fields, template_id)
        blocks = split_blocks(tender.id, markdown, collector.emitted)
        total_citations = sum(len(b.citations) for b in blocks)
        logger.info("Rendered %d summary blocks for tender %s (%d citations)",
                    len(blocks), tender.id, total_citations)
        return SummaryResult(blocks=blocks, metadata={
            "templateId": template_id,
            "generatedAt": self.clock().isoformat(),
            "blockCount": len(blocks),
            "totalCitations": total_citations,
            "wordCount": sum(len(b.content_markdown.split()) for b in blocks),
        })

    def render_checklist(
        self,
        tender: Tender,
        fields: Mapping[str, FieldExtraction],
        schema: Optional[str] = None,
        required_only: bool = False,
    ) -> ChecklistResult:
        return generate_checklist(
            tender.id, schema or self.checklist_template, fields,
            now=self.clock(), required_only=required_only,
        )


def split_blocks(
    tender_id: str,
    markdown: str,
    emitted: List[Tuple[str, TraceLink]],
) -> List[SummaryBlock]:
    """
    One block per "## " heading (text before the first heading is the
    title and is dropped); no headings at all → a single "summary" block.
    """
    headings = list(_HEADING_RE.finditer(markdown))
    if headings:
        spans = []
        for i, m in enumerate(headings):
            end = headings[i + 1].start() if i + 1 < len(headings) else len(markdown)
            spans.append((slugify(m.group(1)), m.start(), end))
    else:
        spans = [("summary", 0, len(markdown))]

    positions: List[Tuple[int, TraceLink]] = []
    for marker, link in dict(emitted).items():
        start = markdown.find(marker)
        while start != -1:
            positions.append((start, link))
            start = markdown.find(marker, start + len(marker))
    positions.sort(key=lambda p: p[0])

    blocks: List[SummaryBlock] = []
    used_keys: Dict[str, int] = {}
    for key, start, end in spans:
        if key in used_keys:
            used_keys[key] += 1
            key = f"{key}-{used_keys[key]}"
        else:
            used_keys[key] = 1

        citations: List[TraceLink] = []
        seen = set()
        for pos, link in positions:
            if start <= pos < end and link.id not in seen:
                seen.add(link.id)
                citations.append(link)

        blocks.append(SummaryBlock(
            tender_id=tender_id,
            block_key=key,
            content_markdown=markdown[start:end].strip(),
            citations=citations,
        ))
    return blocks


def validate_summary(
    blocks: List[SummaryBlock],
    expected_keys: Optional[List[str]] = None,
) -> SummaryValidation:
    """
    Report what a reviewer would otherwise have to spot by eye: expected
    blocks that were never rendered, blocks with no citation, and blocks
    that are only a heading.
    """
    present = {b.block_key for b in blocks}
    missing = [key for key in (expected_keys or []) if key not in present]
    uncited = [b.block_key for b in blocks if not b.citations]

    issues: List[str] = []
    for block in blocks:
        body = _HEADING_RE.sub("", block.content_markdown, count=1)
        if not body.strip():
            issues.append(f"Block '{block.block_key}' has empty content")

    if missing or uncited or issues:
        logger.info("Summary check: %d missing, %d uncited, %d empty block(s)",
                    len(missing), len(uncited), len(issues))
    return SummaryValidation(
        is_valid=not (missing or uncited or issues),
        missing_blocks=missing,
        blocks_without_citations=uncited,
        issues=issues,
    )
