"""
store.py — Persistence contract and the in-memory implementation.

The pipeline only ever needs "find by id" and "upsert by natural key":

  Tender            id
  Document          id, plus lookup by (tender, sha256)
  FieldExtraction   (tender, key)        replaced wholesale, citations too
  ChecklistItem     (tender, key)
  SummaryBlock      (tender, block_key)
  Run               id
  PipelineConfig    name

so any backing store that can do that can sit behind Store. Writes are
last-writer-wins; there is no optimistic versioning.

The one operation that must be atomic is create_run(): checking for an
active run and inserting the new one happen under a single lock, so two
concurrent starts for the same tender can't both succeed.

InMemoryStore hands out copies, never its own objects, so a caller that
mutates a returned Run doesn't silently change stored state.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from tender_review.errors import NotFoundError, RunConflictError
from tender_review.schemas import (
    ACTIVE_RUN_STATUSES,
    AuditRecord,
    ChecklistItem,
    Document,
    FieldExtraction,
    PipelineConfig,
    Run,
    SummaryBlock,
    Tender,
)

logger = logging.getLogger(__name__)


class Store(ABC):
    """Natural-key upsert/find operations used by the pipeline."""

    # Tenders
    @abstractmethod
    def upsert_tender(self, tender: Tender) -> Tender: ...
    @abstractmethod
    def get_tender(self, tender_id: str) -> Tender: ...
    @abstractmethod
    def list_tenders(self) -> List[Tender]: ...

    # Documents
    @abstractmethod
    def upsert_document(self, document: Document) -> Document: ...
    @abstractmethod
    def get_document(self, document_id: str) -> Document: ...
    @abstractmethod
    def list_documents(self, tender_id: str) -> List[Document]: ...
    @abstractmethod
    def find_document_by_hash(self, tender_id: str, sha256: str) -> Optional[Document]: ...

    # Extracted artifacts
    @abstractmethod
    def upsert_field_extraction(self, extraction: FieldExtraction) -> FieldExtraction: ...
    @abstractmethod
    def get_field_extraction(self, tender_id: str, key: str) -> Optional[FieldExtraction]: ...
    @abstractmethod
    def list_field_extractions(self, tender_id: str) -> Dict[str, FieldExtraction]: ...
    @abstractmethod
    def upsert_checklist_item(self, item: ChecklistItem) -> ChecklistItem: ...
    @abstractmethod
    def get_checklist_item(self, tender_id: str, key: str) -> ChecklistItem: ...
    @abstractmethod
    def list_checklist_items(self, tender_id: str) -> List[ChecklistItem]: ...
    @abstractmethod
    def upsert_summary_block(self, block: SummaryBlock) -> SummaryBlock: ...
    @abstractmethod
    def list_summary_blocks(self, tender_id: str) -> List[SummaryBlock]: ...

    # Runs
    @abstractmethod
    def create_run(self, run: Run) -> Run: ...
    @abstractmethod
    def save_run(self, run: Run) -> Run: ...
    @abstractmethod
    def get_run(self, run_id: str) -> Run: ...
    @abstractmethod
    def list_runs(self, tender_id: str) -> List[Run]: ...
    @abstractmethod
    def active_run(self, tender_id: str) -> Optional[Run]: ...

    # Pipeline configs and audit
    @abstractmethod
    def save_pipeline_config(self, pipeline: PipelineConfig) -> PipelineConfig: ...
    @abstractmethod
    def get_pipeline_config(self, name: str) -> Optional[PipelineConfig]: ...
    @abstractmethod
    def add_audit_record(self, record: AuditRecord) -> AuditRecord: ...
    @abstractmethod
    def list_audit_records(self, entity_id: Optional[str] = None) -> List[AuditRecord]: ...


class InMemoryStore(Store):
    """Thread-safe dict-backed store for tests, the CLI and the demo API."""

    def __init__(self):
        self._lock = threading.RLock()
        self._tenders: Dict[str, Tender] = {}
        self._documents: Dict[str, Document] = {}
        self._fields: Dict[Tuple[str, str], FieldExtraction] = {}
        self._checklist: Dict[Tuple[str, str], ChecklistItem] = {}
        self._summary: Dict[Tuple[str, str], SummaryBlock] = {}
        self._runs: Dict[str, Run] = {}
        self._pipelines: Dict[str, PipelineConfig] = {}
        self._audit: List[AuditRecord] = []

    # ── Tenders ──────────────────────────────────────────────────────────

    def upsert_tender(self, tender: Tender) -> Tender:
        with self._lock:
            self._tenders[tender.id] = tender.model_copy(deep=True)
            return tender

    def get_tender(self, tender_id: str) -> Tender:
        with self._lock:
            tender = self._tenders.get(tender_id)
            if tender is None:
                raise NotFoundError(f"Tender {tender_id} not found")
            return tender.model_copy(deep=True)

    def list_tenders(self) -> List[Tender]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._tenders.values()]

    # ── Documents ────────────────────────────────────────────────────────

    def upsert_document(self, document: Document) -> Document:
        with self._lock:
            self._documents[document.id] = document.model_copy(deep=True)
            return document

    def get_document(self, document_id: str) -> Document:
        with self._lock:
            document = self._documents.get(document_id)
            if document is None:
                raise NotFoundError(f"Document {document_id} not found")
            return document.model_copy(deep=True)

    def list_documents(self, tender_id: str) -> List[Document]:
        # Insertion order: the first uploaded document is the primary one.
        with self._lock:
            return [d.model_copy(deep=True) for d in self._documents.values()
                    if d.tender_id == tender_id]

    def find_document_by_hash(self, tender_id: str, sha256: str) -> Optional[Document]:
        with self._lock:
            for d in self._documents.values():
                if d.tender_id == tender_id and d.sha256 == sha256:
                    return d.model_copy(deep=True)
            return None

    # ── Field extractions, checklist, summary ────────────────────────────

    def upsert_field_extraction(self, extraction: FieldExtraction) -> FieldExtraction:
        with self._lock:
            self._fields[(extraction.tender_id, extraction.key)] = extraction.model_copy(deep=True)
            return extraction

    def get_field_extraction(self, tender_id: str, key: str) -> Optional[FieldExtraction]:
        with self._lock:
            found = self._fields.get((tender_id, key))
            return found.model_copy(deep=True) if found else None

    def list_field_extractions(self, tender_id: str) -> Dict[str, FieldExtraction]:
        with self._lock:
            return {k: f.model_copy(deep=True) for (t, k), f in self._fields.items() if t == tender_id}

    def upsert_checklist_item(self, item: ChecklistItem) -> ChecklistItem:
        with self._lock:
            self._checklist[(item.tender_id, item.key)] = item.model_copy(deep=True)
            return item

    def get_checklist_item(self, tender_id: str, key: str) -> ChecklistItem:
        with self._lock:
            item = self._checklist.get((tender_id, key))
            if item is None:
                raise NotFoundError(f"Checklist item '{key}' not found for tender {tender_id}")
            return item.model_copy(deep=True)

    def list_checklist_items(self, tender_id: str) -> List[ChecklistItem]:
        with self._lock:
            return [i.model_copy(deep=True) for (t, _), i in self._checklist.items() if t == tender_id]

    def upsert_summary_block(self, block: SummaryBlock) -> SummaryBlock:
        with self._lock:
            self._summary[(block.tender_id, block.block_key)] = block.model_copy(deep=True)
            return block

    def list_summary_blocks(self, tender_id: str) -> List[SummaryBlock]:
        with self._lock:
            return [b.model_copy(deep=True) for (t, _), b in self._summary.items() if t == tender_id]

    # ── Runs ─────────────────────────────────────────────────────────────

    def create_run(self, run: Run) -> Run:
        with self._lock:
            active = self.active_run(run.tender_id)
            if active is not None:
                raise RunConflictError(run.tender_id, active.id)
            self._runs[run.id] = run.model_copy(deep=True)
            logger.debug("Created run %s for tender %s", run.id, run.tender_id)
            return run

    def save_run(self, run: Run) -> Run:
        with self._lock:
            stored = self._runs.get(run.id)
            if stored is None:
                raise NotFoundError(f"Run {run.id} not found")
            if stored.is_terminal:
                raise ValueError(f"Run {run.id} is {stored.status} and can no longer change")
            self._runs[run.id] = run.model_copy(deep=True)
            return run

    def get_run(self, run_id: str) -> Run:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError(f"Run {run_id} not found")
            return run.model_copy(deep=True)

    def list_runs(self, tender_id: str) -> List[Run]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._runs.values() if r.tender_id == tender_id]

    def active_run(self, tender_id: str) -> Optional[Run]:
        with self._lock:
            for r in self._runs.values():
                if r.tender_id == tender_id and r.status in ACTIVE_RUN_STATUSES:
                    return r.model_copy(deep=True)
            return None

    # ── Pipelines and audit ──────────────────────────────────────────────

    def save_pipeline_config(self, pipeline: PipelineConfig) -> PipelineConfig:
        with self._lock:
            self._pipelines[pipeline.name] = pipeline.model_copy(deep=True)
            return pipeline

    def get_pipeline_config(self, name: str) -> Optional[PipelineConfig]:
        with self._lock:
            found = self._pipelines.get(name)
            return found.model_copy(deep=True) if found else None

    def add_audit_record(self, record: AuditRecord) -> AuditRecord:
        with self._lock:
            self._audit.append(record.model_copy(deep=True))
            return record

    def list_audit_records(self, entity_id: Optional[str] = None) -> List[AuditRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._audit
                    if entity_id is None or r.entity_id == entity_id]
