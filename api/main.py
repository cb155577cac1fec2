"""
api/main.py — HTTP surface over one process-wide store and orchestrator.

Runs execute on daemon threads, so POST /tenders/{id}/runs returns the
pending Run immediately and clients poll GET /runs/{id}.

Run with:
    uvicorn api.main:app --reload
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from tender_review.checklist import update_checklist_item, validate_checklist
from tender_review.errors import NotFoundError, PipelineConfigError, RunConflictError
from tender_review.ingestion import register_upload
from tender_review.main import PipelineOrchestrator
from tender_review.schemas import ChecklistStatus, Tender
from tender_review.store import InMemoryStore

logger = logging.getLogger(__name__)

app = FastAPI(title="Tender Review")
app.add_middleware(CORSMiddleware,
    allow_origins=["http://localhost:5173"],
    allow_methods=["*"], allow_headers=["*"])

store = InMemoryStore()
orchestrator = PipelineOrchestrator(store)


class TenderIn(BaseModel):
    title: str
    agency: Optional[str] = None


class RunIn(BaseModel):
    pipeline: Optional[str] = None
    user_id: Optional[str] = None


class ChecklistUpdateIn(BaseModel):
    status: ChecklistStatus
    notes: Optional[str] = None
    actor_id: Optional[str] = None


def _tender_or_404(tender_id: str) -> Tender:
    try:
        return store.get_tender(tender_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


def execute_run_sync(run_id: str):
    try:
        run = orchestrator.execute_run(run_id)
        logger.info("Run %s finished: %s", run_id, run.status)
    except Exception:
        logger.exception("Run %s crashed", run_id)


@app.post("/tenders", status_code=201)
def create_tender(body: TenderIn):
    tender = Tender(title=body.title, agency=body.agency)
    store.upsert_tender(tender)
    return tender.model_dump(mode="json")


@app.get("/tenders")
def list_tenders():
    return [t.model_dump(mode="json") for t in store.list_tenders()]


@app.get("/tenders/{tender_id}")
def get_tender(tender_id: str):
    tender = _tender_or_404(tender_id)
    documents = [
        {"id": d.id, "filename": d.filename, "version": d.version,
         "mime_type": d.mime_type, "page_count": d.page_count}
        for d in store.list_documents(tender_id)
    ]
    active = store.active_run(tender_id)
    return {
        **tender.model_dump(mode="json"),
        "documents": documents,
        "active_run_id": active.id if active else None,
    }


@app.post("/tenders/{tender_id}/documents", status_code=201)
async def upload_document(tender_id: str, file: UploadFile = File(...)):
    _tender_or_404(tender_id)
    data = await file.read()
    try:
        document, created = register_upload(
            store, tender_id, file.filename or "upload.txt", data, file.content_type or None,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "id": document.id,
        "filename": document.filename,
        "version": document.version,
        "page_count": document.page_count,
        "created": created,
    }


@app.get("/documents/{document_id}/pages/{page}")
def get_document_page(document_id: str, page: int):
    """Page text behind a citation (TraceLink document_id + page)."""
    try:
        document = store.get_document(document_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    for p in document.pages:
        if p.number == page:
            return {"document_id": document.id, "filename": document.filename,
                    "page": p.number, "page_count": document.page_count, "text": p.text}
    raise HTTPException(status_code=404, detail=f"Page {page} not found in {document.filename}")


@app.post("/tenders/{tender_id}/runs", status_code=202)
def start_run(tender_id: str, body: Optional[RunIn] = None):
    body = body or RunIn()
    _tender_or_404(tender_id)
    try:
        run = orchestrator.start_run(tender_id, body.pipeline, user_id=body.user_id)
    except RunConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except PipelineConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    thread = threading.Thread(target=execute_run_sync, args=(run.id,), daemon=True)
    thread.start()
    return run.model_dump(mode="json")


@app.get("/runs/{run_id}")
def get_run(run_id: str):
    try:
        return orchestrator.get_run(run_id).model_dump(mode="json")
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/runs/{run_id}/cancel")
def cancel_run(run_id: str):
    try:
        return orchestrator.cancel_run(run_id).model_dump(mode="json")
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.get("/tenders/{tender_id}/runs")
def list_runs(tender_id: str):
    _tender_or_404(tender_id)
    return [r.model_dump(mode="json") for r in orchestrator.list_runs(tender_id)]


@app.get("/tenders/{tender_id}/fields")
def get_fields(tender_id: str):
    _tender_or_404(tender_id)
    return {k: f.model_dump(mode="json") for k, f in store.list_field_extractions(tender_id).items()}


@app.get("/tenders/{tender_id}/checklist")
def get_checklist(tender_id: str):
    _tender_or_404(tender_id)
    items = store.list_checklist_items(tender_id)
    validation = validate_checklist(items)
    return {
        "items": [i.model_dump(mode="json") for i in items],
        "can_approve": validation.can_approve,
        "validation": validation.model_dump(mode="json"),
    }


@app.patch("/tenders/{tender_id}/checklist/{key}")
def patch_checklist_item(tender_id: str, key: str, body: ChecklistUpdateIn):
    _tender_or_404(tender_id)
    try:
        validation = update_checklist_item(
            store, tender_id, key, body.status, notes=body.notes, actor_id=body.actor_id,
        )
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "item": store.get_checklist_item(tender_id, key).model_dump(mode="json"),
        "can_approve": validation.can_approve,
        "validation": validation.model_dump(mode="json"),
    }


@app.get("/tenders/{tender_id}/summary")
def get_summary(tender_id: str):
    _tender_or_404(tender_id)
    return [b.model_dump(mode="json") for b in store.list_summary_blocks(tender_id)]
