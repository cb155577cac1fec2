"""
steps.py — Step handlers and the step-type lookup table.

A handler is a plain function `(ctx, step) -> StepResult`. The
orchestrator looks the handler up in STEP_HANDLERS by the step's type;
adding a step type means adding an entry, nothing else.

Handlers report failure by returning success=False with an error string.
They may also raise: the orchestrator turns any exception except
PersistenceError into a failed step with the exception message.

All writes go through natural-key upserts, so a retried step overwrites
what its previous attempt wrote instead of duplicating it.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from tender_review.checklist import validate_checklist
from tender_review.config import config
from tender_review.extraction import (
    DocumentContent,
    ExtractorContext,
    extractor_keys,
    get_extractor,
    run_extractor,
)
from tender_review.ingestion import paginate_text
from tender_review.rendering import TemplateRenderer, validate_summary
from tender_review.schemas import (
    AuditRecord,
    Document,
    ExtractionResult,
    FieldExtraction,
    PipelineConfig,
    StepLog,
    StepResult,
    StepSpec,
)
from tender_review.store import Store
from tender_review.validation import validate_fields

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Mutable state threaded through every step of one run."""
    tender_id: str
    run_id: str
    store: Store
    renderer: TemplateRenderer
    pipeline: PipelineConfig
    clock: Callable[[], datetime] = datetime.now
    user_id: Optional[str] = None
    parallel_extractors: bool = False
    results: Dict[str, StepResult] = field(default_factory=dict)
    fields: Dict[str, FieldExtraction] = field(default_factory=dict)
    approval_eligible: bool = False

    def now(self) -> datetime:
        return self.clock()

    def latest(self, step_type: str) -> Optional[StepResult]:
        """Result of the most recent completed step of a given type."""
        found = None
        for step in self.pipeline.steps:
            if step.type == step_type and step.id in self.results:
                found = self.results[step.id]
        return found

    def current_fields(self) -> Dict[str, FieldExtraction]:
        return self.fields or self.store.list_field_extractions(self.tender_id)


def _ok(data: Any = None, logs: Optional[List[StepLog]] = None) -> StepResult:
    return StepResult(success=True, data=data, logs=logs or [])


def _fail(error: str, logs: Optional[List[StepLog]] = None) -> StepResult:
    return StepResult(success=False, error=error, logs=logs or [])


# ── prepare ──────────────────────────────────────────────────────────────

def prepare_step(ctx: RunContext, step: StepSpec) -> StepResult:
    """Load the tender's documents and make sure each one has pages."""
    store = ctx.store
    tender = store.get_tender(ctx.tender_id)
    documents = store.list_documents(ctx.tender_id)
    if not documents:
        return _fail(f"No documents found for tender {ctx.tender_id}")

    words_per_page = int(step.config.get("words_per_page", config.runner.words_per_page))
    logs: List[StepLog] = []
    prepared: List[Document] = []

    for doc in documents:
        if doc.pages and any(p.text.strip() for p in doc.pages):
            prepared.append(doc)
            continue
        if doc.content and doc.content.strip():
            pages = paginate_text(doc.content, words_per_page)
            doc = doc.model_copy(update={"pages": pages, "page_count": len(pages)})
            store.upsert_document(doc)
            prepared.append(doc)
            logs.append(StepLog(level="debug",
                                message=f"Paginated {doc.filename} into {len(pages)} pages"))
            continue
        logs.append(StepLog(level="warn",
                            message=f"Document {doc.filename} has no extractable text, skipped"))

    if not prepared:
        return _fail(f"None of the {len(documents)} documents has extractable text", logs)

    if tender.status == "draft":
        store.upsert_tender(tender.model_copy(update={"status": "processing"}))

    logs.append(StepLog(message=(
        f"Prepared {len(prepared)} document(s), "
        f"{sum(len(d.pages) for d in prepared)} pages; primary is {prepared[0].filename}"
    )))
    return _ok({"documents": prepared, "tender_title": tender.title}, logs)


# ── extract ──────────────────────────────────────────────────────────────

def extract_step(ctx: RunContext, step: StepSpec) -> StepResult:
    """Run the configured extractors over the primary document and upsert."""
    prepared = ctx.latest("prepare")
    if prepared is None or not prepared.data or not prepared.data.get("documents"):
        return _fail("extract needs a completed prepare step")

    keys = step.config.get("fields") or extractor_keys()
    extractors = []
    for key in keys:
        extractor = get_extractor(key)
        if extractor is None:
            return _fail(f"Unknown extractor key '{key}'")
        extractors.append(extractor)

    contents = [DocumentContent.from_document(d) for d in prepared.data["documents"]]
    ectx = ExtractorContext(
        document=contents[0],
        all_documents=contents,
        tender_title=prepared.data.get("tender_title"),
        now=ctx.now(),
    )

    parallel = bool(step.config.get("parallel", ctx.parallel_extractors))
    if parallel and len(extractors) > 1:
        with ThreadPoolExecutor(max_workers=len(extractors)) as pool:
            results: List[ExtractionResult] = list(pool.map(lambda e: run_extractor(e, ectx), extractors))
    else:
        results = [run_extractor(e, ectx) for e in extractors]

    logs: List[StepLog] = []
    summary: Dict[str, Any] = {}
    for extractor, result in zip(extractors, results):
        if result.error:
            logs.append(StepLog(level="warn",
                                message=f"Extractor {extractor.key} failed: {result.error}"))
        confidence = result.confidence
        if confidence > 0 and not result.citations:
            logs.append(StepLog(level="warn",
                                message=f"{extractor.key}: confidence without citations, zeroed"))
            confidence = 0.0

        extraction = FieldExtraction(
            tender_id=ctx.tender_id,
            key=extractor.key,
            value=result.value,
            confidence=confidence,
            citations=result.citations,
            run_id=ctx.run_id,
        )
        ctx.store.upsert_field_extraction(extraction)
        summary[extractor.key] = {"confidence": round(confidence, 3),
                                  "citations": len(result.citations)}
        logs.append(StepLog(message=(
            f"{extractor.key}: confidence {confidence:.2f}, {len(result.citations)} citation(s)"
        )))

    ctx.fields = ctx.store.list_field_extractions(ctx.tender_id)
    return _ok(summary, logs)


# ── template / generate ──────────────────────────────────────────────────

def template_step(ctx: RunContext, step: StepSpec) -> StepResult:
    """Render summary blocks and the checklist from the extracted fields."""
    store = ctx.store
    tender = store.get_tender(ctx.tender_id)
    fields = ctx.current_fields()

    template_id = step.config.get("summary_template") or config.rendering.default_summary_template
    summary = ctx.renderer.render_summary(tender, fields, template_id)
    blocks = summary.blocks
    for block in blocks:
        store.upsert_summary_block(block)
    summary_check = validate_summary(blocks, ctx.renderer.templates[template_id].block_keys)

    checklist = ctx.renderer.render_checklist(
        tender, fields,
        step.config.get("checklist_template"),
        required_only=bool(step.config.get("required_only", False)),
    )
    for item in checklist.items:
        store.upsert_checklist_item(item)

    validation = validate_checklist(store.list_checklist_items(ctx.tender_id))
    logs = [StepLog(message=(
        f"Rendered {len(blocks)} summary block(s) and {len(checklist.items)} checklist item(s); "
        f"{checklist.metadata['requiresManualReview']} need manual review"
    ))]
    if summary_check.missing_blocks:
        logs.append(StepLog(level="warn", message=(
            "Summary is missing block(s): " + ", ".join(summary_check.missing_blocks)
        )))
    if summary_check.blocks_without_citations:
        logs.append(StepLog(level="warn", message=(
            "Summary block(s) without citations: "
            + ", ".join(summary_check.blocks_without_citations)
        )))
    return _ok({
        "blocks": [b.block_key for b in blocks],
        "summary": summary.metadata,
        "summaryValidation": summary_check.model_dump(),
        "checklist": checklist.metadata,
        "canApprove": validation.can_approve,
    }, logs)


# ── validate ─────────────────────────────────────────────────────────────

def validate_step(ctx: RunContext, step: StepSpec) -> StepResult:
    report = validate_fields(
        ctx.current_fields(),
        now=ctx.now(),
        required=step.config.get("required_fields"),
        min_confidence=step.config.get("min_confidence"),
    )
    logs = [StepLog(level="warn", message=w) for w in report.warnings]
    if not report.passed:
        return _fail("Validation failed: " + "; ".join(report.errors), logs)
    logs.append(StepLog(message=f"Validation passed with {len(report.warnings)} warning(s)"))
    return _ok({"warnings": report.warnings}, logs)


# ── gate ─────────────────────────────────────────────────────────────────

def gate_step(ctx: RunContext, step: StepSpec) -> StepResult:
    """Hand the tender to human reviewers. Never approves anything itself."""
    store = ctx.store
    tender = store.get_tender(ctx.tender_id)
    before = tender.status
    store.upsert_tender(tender.model_copy(update={"status": "ready_for_review"}))

    store.add_audit_record(AuditRecord(
        actor_id=ctx.user_id,
        action="TENDER_READY_FOR_REVIEW",
        entity="Tender",
        entity_id=ctx.tender_id,
        diff={
            "runId": ctx.run_id,
            "status": {"from": before, "to": "ready_for_review"},
            "completedAt": ctx.now().isoformat(),
        },
    ))
    ctx.approval_eligible = True

    validation = validate_checklist(store.list_checklist_items(ctx.tender_id))
    logs = [StepLog(message=(
        f"Tender moved {before} -> ready_for_review; checklist "
        f"{'complete' if validation.can_approve else 'incomplete'} "
        f"({len(validation.pending_items)} pending, {len(validation.missing_items)} missing)"
    ))]
    return _ok({
        "status": "ready_for_review",
        "canApprove": validation.can_approve,
        "approverRoles": list(step.config.get("approver_roles", [])),
    }, logs)


StepHandler = Callable[[RunContext, StepSpec], StepResult]

STEP_HANDLERS: Dict[str, StepHandler] = {
    "prepare": prepare_step,
    "extract": extract_step,
    "template": template_step,
    "generate": template_step,
    "validate": validate_step,
    "gate": gate_step,
}
