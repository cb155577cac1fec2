"""
schemas.py — Pydantic v2 models for tenders, extractions and runs.

These models are the contract between the extractors, the renderer, the
orchestrator and whatever store sits behind them. Two invariants are
enforced here rather than in callers, because every write path goes
through these models:

  - a FieldExtraction with confidence > 0 carries at least one citation
  - a Run never leaves a terminal state (completed/failed/cancelled)

Extracted field values stay as plain dicts (camelCase keys, JSON-safe
values, dates as ISO strings). Their shape differs per field key and the
template layer reads them by key, so a typed model per field would only
add a translation layer.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from tender_review.config import config


FieldKey = Literal[
    "scope",
    "eligibility",
    "evaluationCriteria",
    "submissionMechanics",
    "deadlineSubmission",
]
FIELD_KEYS = (
    "scope",
    "eligibility",
    "evaluationCriteria",
    "submissionMechanics",
    "deadlineSubmission",
)

TenderStatus = Literal[
    "draft", "processing", "ready_for_review", "approved", "rejected", "archived"
]
ChecklistStatus = Literal["pending", "ok", "missing", "not_applicable"]
RunStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
LogLevel = Literal["debug", "info", "warn", "error"]

TERMINAL_RUN_STATUSES = frozenset({"completed", "failed", "cancelled"})
ACTIVE_RUN_STATUSES = frozenset({"pending", "running"})

_RUN_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"running", "failed", "cancelled"}),
    "running": frozenset({"completed", "failed", "cancelled"}),
}


def new_id() -> str:
    return uuid.uuid4().hex


def local_now() -> datetime:
    """Naive local time, the same clock deadlines are compared against."""
    return datetime.now()


# ── Tender / documents ────────────────────────────────────────────────────

class Tender(BaseModel):
    """A procurement opportunity under review."""
    id: str = Field(default_factory=new_id)
    title: str
    agency: Optional[str] = None
    status: TenderStatus = "draft"
    published_at: Optional[datetime] = None
    due_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=local_now)


class Page(BaseModel):
    number: int = Field(..., ge=1, description="1-based page number")
    text: str = ""


class Document(BaseModel):
    """
    One ingested file.

    `content` holds raw text for documents that arrived without page
    boundaries; the prepare step paginates it. `pages` is filled either by
    the text provider (PDF) or by the prepare step.
    """
    id: str = Field(default_factory=new_id)
    tender_id: str
    filename: str
    mime_type: str = "text/plain"
    sha256: str = ""
    version: int = Field(default=1, ge=1)
    page_count: int = 0
    content: Optional[str] = None
    pages: List[Page] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=local_now)

    @property
    def full_text(self) -> str:
        # Pages are joined with a single newline; text_utils.find_patterns
        # relies on that separator when it maps offsets back to pages.
        if self.pages:
            return "\n".join(p.text for p in self.pages)
        return self.content or ""


class ParsedDocument(BaseModel):
    """Output of the document text provider."""
    full_text: str
    pages: List[Page] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ── Citations and extracted artifacts ─────────────────────────────────────

class TraceLink(BaseModel):
    """Where in a document an extracted fact came from. Never mutated."""
    model_config = ConfigDict(frozen=True)

    id: str
    document_id: str
    page: int = Field(..., ge=1)
    snippet: str
    section_path: Optional[str] = None


class ExtractionResult(BaseModel):
    """What a single extractor returns: value, confidence, citations."""
    value: Optional[Dict[str, Any]] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    citations: List[TraceLink] = Field(default_factory=list)
    error: Optional[str] = None


class FieldExtraction(BaseModel):
    """The stored result for one (tender, field key)."""
    tender_id: str
    key: FieldKey
    value: Optional[Dict[str, Any]] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    citations: List[TraceLink] = Field(default_factory=list)
    run_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=local_now)

    @model_validator(mode="after")
    def confident_fields_must_cite(self) -> "FieldExtraction":
        if self.confidence > 0 and not self.citations:
            raise ValueError(
                f"field '{self.key}' has confidence {self.confidence:.2f} but no citations"
            )
        return self


class ChecklistItem(BaseModel):
    tender_id: str
    key: str
    label: str
    status: ChecklistStatus = "pending"
    notes: Optional[str] = None
    citations: List[TraceLink] = Field(default_factory=list)
    auto_checked: bool = False
    updated_at: datetime = Field(default_factory=local_now)


class SummaryBlock(BaseModel):
    tender_id: str
    block_key: str
    content_markdown: str
    citations: List[TraceLink] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=local_now)


class ChecklistValidation(BaseModel):
    is_complete: bool
    can_approve: bool
    pending_items: List[str] = Field(default_factory=list)
    missing_items: List[str] = Field(default_factory=list)
    statistics: Dict[str, int] = Field(default_factory=dict)


class SummaryValidation(BaseModel):
    is_valid: bool
    missing_blocks: List[str] = Field(default_factory=list)
    blocks_without_citations: List[str] = Field(default_factory=list)
    issues: List[str] = Field(default_factory=list)


class AuditRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    actor_id: Optional[str] = None
    action: str
    entity: str
    entity_id: str
    diff: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=local_now)


# ── Pipeline configuration ────────────────────────────────────────────────

class RetryPolicy(BaseModel):
    """Exponential backoff: delay = backoff_seconds * multiplier ** (attempt - 1)."""
    max_attempts: int = Field(default=1, ge=1)
    backoff_seconds: float = Field(
        default_factory=lambda: config.runner.default_backoff_seconds, ge=0.0,
    )
    multiplier: float = Field(default=2.0, ge=1.0)


class StepSpec(BaseModel):
    id: str
    type: str
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    retry: Optional[RetryPolicy] = None

    @field_validator("id", "type")
    @classmethod
    def must_not_be_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("step id and type must be non-empty")
        return v.strip()

    @property
    def retryable(self) -> bool:
        return self.retry is not None and self.retry.max_attempts > 1


class PipelineConfig(BaseModel):
    name: str
    version: str
    description: Optional[str] = None
    steps: List[StepSpec]

    @field_validator("name", "version", mode="before")
    @classmethod
    def coerce_and_require(cls, v: Any) -> str:
        # YAML happily parses `version: 1.0` as a float
        if v is None or not str(v).strip():
            raise ValueError("must be non-empty")
        return str(v).strip()

    @field_validator("steps")
    @classmethod
    def steps_non_empty_and_unique(cls, v: List[StepSpec]) -> List[StepSpec]:
        if not v:
            raise ValueError("pipeline must declare at least one step")
        seen = set()
        for step in v:
            if step.id in seen:
                raise ValueError(f"duplicate step id '{step.id}'")
            seen.add(step.id)
        return v


# ── Runs ──────────────────────────────────────────────────────────────────

class StepLog(BaseModel):
    level: LogLevel = "info"
    message: str


class StepResult(BaseModel):
    success: bool
    data: Any = None
    error: Optional[str] = None
    logs: List[StepLog] = Field(default_factory=list)


class RunLogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=local_now)
    level: LogLevel = "info"
    step_id: Optional[str] = None
    message: str


class Run(BaseModel):
    """One execution of a named pipeline against one tender."""
    id: str = Field(default_factory=new_id)
    tender_id: str
    pipeline_name: str
    pipeline_version: Optional[str] = None
    user_id: Optional[str] = None
    status: RunStatus = "pending"
    current_step: Optional[str] = None
    created_at: datetime = Field(default_factory=local_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    logs: List[RunLogEntry] = Field(default_factory=list)
    error: Optional[str] = None
    approval_eligible: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    def transition(
        self,
        status: str,
        at: Optional[datetime] = None,
        error: Optional[str] = None,
    ) -> None:
        """Move along pending → running → {completed|failed|cancelled}."""
        allowed = _RUN_TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise ValueError(f"Run {self.id}: illegal transition {self.status} -> {status}")
        at = at or local_now()
        self.status = status  # type: ignore[assignment]
        if status == "running":
            self.started_at = at
        if status in TERMINAL_RUN_STATUSES:
            self.finished_at = at
            self.current_step = None
        if error is not None:
            self.error = error
