"""
main.py — Pipeline orchestration and the command-line entry point.

PipelineOrchestrator drives one Run through the steps of a pipeline:

    pending → running → completed | failed | cancelled

Guarantees it gives callers:
  - config problems (bad document, unknown step type, bad ordering) raise
    PipelineConfigError before any Run is created
  - at most one pending/running Run per tender; a second start raises
    RunConflictError instead of queueing
  - steps run strictly in declared order; the first failed step ends the
    run as failed with that step's error. Nothing already written is
    rolled back, so a failed run can be inspected and re-run
  - every step log line is persisted on the Run and mirrored to the
    process log as "[run/step] message"
  - cancellation is observed between steps only; an in-flight step is
    never interrupted
  - a PersistenceError propagates to the caller after a best-effort
    attempt to mark the Run failed

Retries apply only to steps that declare a retry policy. The delay for
attempt n is backoff_seconds * multiplier ** (n - 1), capped at
config.runner.max_backoff_seconds.

The clock and sleep function are injectable so tests can pin "now" for
deadline checks and skip real backoff waits.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from tender_review.checklist import validate_checklist
from tender_review.config import config
from tender_review.errors import NotFoundError, PersistenceError, PipelineConfigError
from tender_review.ingestion import load_file, register_upload
from tender_review.pipeline_config import load_pipeline_file, resolve_pipeline, validate_pipeline
from tender_review.rendering import TemplateRenderer, validate_summary
from tender_review.schemas import PipelineConfig, Run, RunLogEntry, StepResult, StepSpec, Tender
from tender_review.steps import STEP_HANDLERS, RunContext, StepHandler
from tender_review.store import InMemoryStore, Store
from tender_review.templates import SUMMARY_TEMPLATES

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


class PipelineOrchestrator:
    """
    Runs pipelines against tenders held in a Store.

    Usage:
        orchestrator = PipelineOrchestrator(InMemoryStore())
        run = orchestrator.run_pipeline(tender.id, "tender-review")
        print(run.status, run.error)
    """

    def __init__(
        self,
        store: Store,
        renderer: Optional[TemplateRenderer] = None,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], None]] = None,
        step_handlers: Optional[Mapping[str, StepHandler]] = None,
        parallel_extractors: Optional[bool] = None,
    ):
        self.store = store
        self.clock = clock or datetime.now
        self.renderer = renderer or TemplateRenderer(clock=self.clock)
        self._sleep = sleep or time.sleep
        self.step_handlers: Dict[str, StepHandler] = dict(step_handlers or STEP_HANDLERS)
        self.parallel_extractors = (
            config.runner.parallel_extractors if parallel_extractors is None else parallel_extractors
        )

        self._lock = threading.Lock()
        self._cancel_events: Dict[str, threading.Event] = {}
        self._executing: Set[str] = set()
        self._pipelines: Dict[str, PipelineConfig] = {}

    # ── Configuration ────────────────────────────────────────────────────

    def load_pipeline(
        self,
        pipeline_name: Optional[str] = None,
        pipeline: Optional[PipelineConfig] = None,
    ) -> PipelineConfig:
        if pipeline is None:
            pipeline = resolve_pipeline(pipeline_name or config.runner.default_pipeline, self.store)
        validate_pipeline(pipeline, self.step_handlers.keys())
        return pipeline

    # ── Run lifecycle ────────────────────────────────────────────────────

    def start_run(
        self,
        tender_id: str,
        pipeline_name: Optional[str] = None,
        user_id: Optional[str] = None,
        pipeline: Optional[PipelineConfig] = None,
    ) -> Run:
        """Validate the pipeline and create a pending Run. Does not execute."""
        cfg = self.load_pipeline(pipeline_name, pipeline)
        self.store.get_tender(tender_id)

        run = Run(
            tender_id=tender_id,
            pipeline_name=cfg.name,
            pipeline_version=cfg.version,
            user_id=user_id,
            created_at=self.clock(),
        )
        self._log(run, "info", None, f"Run created for pipeline {cfg.name} v{cfg.version}")
        self.store.create_run(run)

        with self._lock:
            self._pipelines[run.id] = cfg
            self._cancel_events[run.id] = threading.Event()
        return run

    def execute_run(self, run_id: str) -> Run:
        """Execute a pending Run to a terminal state and return it."""
        with self._lock:
            run = self.store.get_run(run_id)
            if run.status != "pending":
                raise ValueError(f"Run {run_id} is {run.status}, only pending runs can execute")
            self._executing.add(run_id)
            event = self._cancel_events.setdefault(run_id, threading.Event())
            cfg = self._pipelines.pop(run_id, None)

        try:
            if cfg is None:
                try:
                    cfg = self.load_pipeline(run.pipeline_name)
                except PipelineConfigError as e:
                    self._mark_failed(run_id, str(e))
                    return self.store.get_run(run_id)
            return self._execute(run, cfg, event)
        except PersistenceError as e:
            self._mark_failed(run_id, f"Persistence error: {e}")
            raise
        finally:
            with self._lock:
                self._executing.discard(run_id)
                self._cancel_events.pop(run_id, None)

    def run_pipeline(
        self,
        tender_id: str,
        pipeline_name: Optional[str] = None,
        user_id: Optional[str] = None,
        pipeline: Optional[PipelineConfig] = None,
    ) -> Run:
        run = self.start_run(tender_id, pipeline_name, user_id, pipeline)
        return self.execute_run(run.id)

    def cancel_run(self, run_id: str) -> Run:
        """
        Request cancellation. A pending run that isn't executing is cancelled
        right away; a running one stops at its next step boundary.
        """
        with self._lock:
            run = self.store.get_run(run_id)
            if run.is_terminal:
                raise ValueError(f"Run {run_id} is already {run.status}")
            event = self._cancel_events.get(run_id)
            if event is not None:
                event.set()
            if run_id in self._executing:
                logger.info("Cancellation requested for run %s", run_id)
                return run
            if event is None and run.status == "running":
                logger.warning("Run %s is running outside this orchestrator; cannot signal it", run_id)
                return run
            run.transition("cancelled", at=self.clock())
            self._log(run, "info", None, "Run cancelled before execution")
            self._save(run)
            self._cancel_events.pop(run_id, None)
            self._pipelines.pop(run_id, None)
            return run

    # ── Queries ──────────────────────────────────────────────────────────

    def get_run(self, run_id: str) -> Run:
        return self.store.get_run(run_id)

    def list_runs(self, tender_id: str) -> List[Run]:
        return self.store.list_runs(tender_id)

    def active_run(self, tender_id: str) -> Optional[Run]:
        return self.store.active_run(tender_id)

    # ── Internals ────────────────────────────────────────────────────────

    def _execute(self, run: Run, cfg: PipelineConfig, cancel: threading.Event) -> Run:
        run.transition("running", at=self.clock())
        self._log(run, "info", None, f"Pipeline {cfg.name} v{cfg.version} started ({len(cfg.steps)} steps)")
        self._save(run)

        ctx = RunContext(
            tender_id=run.tender_id,
            run_id=run.id,
            store=self.store,
            renderer=self.renderer,
            pipeline=cfg,
            clock=self.clock,
            user_id=run.user_id,
            parallel_extractors=self.parallel_extractors,
        )

        started = time.time()
        for step in cfg.steps:
            if cancel.is_set():
                self._log(run, "warn", step.id, "Run cancelled before this step started")
                run.transition("cancelled", at=self.clock())
                self._save(run)
                return run

            run.current_step = step.id
            self._log(run, "info", step.id, f"Step {step.id} ({step.type}) started")
            self._save(run)

            result = self._run_step(ctx, step, run)
            ctx.results[step.id] = result
            for line in result.logs:
                self._log(run, line.level, step.id, line.message)

            if not result.success:
                error = f"Step '{step.id}' failed: {result.error}"
                self._log(run, "error", step.id, error)
                run.transition("failed", at=self.clock(), error=error)
                self._save(run)
                return run

            self._log(run, "info", step.id, f"Step {step.id} completed")
            self._save(run)

        run.approval_eligible = ctx.approval_eligible
        self._log(run, "info", None, f"Pipeline completed in {time.time() - started:.2f}s")
        run.transition("completed", at=self.clock())
        self._save(run)
        return run

    def _run_step(self, ctx: RunContext, step: StepSpec, run: Run) -> StepResult:
        handler = self.step_handlers[step.type]
        attempts = step.retry.max_attempts if step.retryable else 1

        for attempt in range(1, attempts + 1):
            try:
                result = handler(ctx, step)
            except PersistenceError:
                raise
            except NotFoundError as e:
                result = StepResult(success=False, error=str(e))
            except Exception as e:
                logger.exception("Step %s raised", step.id)
                result = StepResult(success=False, error=f"{type(e).__name__}: {e}")

            if result.success or attempt == attempts:
                return result

            for line in result.logs:
                self._log(run, line.level, step.id, line.message)
            delay = min(
                config.runner.max_backoff_seconds,
                step.retry.backoff_seconds * step.retry.multiplier ** (attempt - 1),
            )
            self._log(run, "warn", step.id,
                      f"Attempt {attempt}/{attempts} failed ({result.error}); retrying in {delay:.1f}s")
            self._save(run)
            self._sleep(delay)

        return result

    def _log(self, run: Run, level: str, step_id: Optional[str], message: str) -> None:
        run.logs.append(RunLogEntry(timestamp=self.clock(), level=level, step_id=step_id, message=message))
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s/%s] %s",
                   run.id[:8], step_id or "-", message)

    def _save(self, run: Run) -> None:
        try:
            self.store.save_run(run)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Could not save run {run.id}: {e}") from e

    def _mark_failed(self, run_id: str, error: str) -> None:
        try:
            run = self.store.get_run(run_id)
            if run.is_terminal:
                return
            run.transition("failed", at=self.clock(), error=error)
            self._log(run, "error", None, error)
            self.store.save_run(run)
        except Exception:
            logger.exception("Could not mark run %s as failed", run_id)


# ── Reporting ────────────────────────────────────────────────────────────

def build_report(store: Store, run: Run, summary_template: Optional[str] = None) -> Dict[str, Any]:
    """Everything a reviewer needs for one run, JSON-ready."""
    tender_id = run.tender_id
    items = store.list_checklist_items(tender_id)
    validation = validate_checklist(items)
    blocks = store.list_summary_blocks(tender_id)
    template = SUMMARY_TEMPLATES.get(summary_template or config.rendering.default_summary_template)
    summary_check = validate_summary(blocks, template.block_keys if template else None)
    return {
        "run": run.model_dump(mode="json"),
        "tender": store.get_tender(tender_id).model_dump(mode="json"),
        "fields": {k: f.model_dump(mode="json")
                   for k, f in store.list_field_extractions(tender_id).items()},
        "summary": [b.model_dump(mode="json") for b in blocks],
        "summary_validation": summary_check.model_dump(mode="json"),
        "checklist": [i.model_dump(mode="json") for i in items],
        "can_approve": validation.can_approve,
        "checklist_validation": validation.model_dump(mode="json"),
    }


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="tender-review",
        description="Build a citation-backed review package from tender documents",
    )
    parser.add_argument("files", nargs="+", help="Tender documents (PDF, DOCX, TXT); the first is primary")
    parser.add_argument("--title", default=None, help="Tender title (default: first file name)")
    parser.add_argument("--agency", default=None, help="Issuing agency")
    parser.add_argument("--pipeline", default=config.runner.default_pipeline,
                        help="Built-in pipeline name (default: %(default)s)")
    parser.add_argument("--pipeline-file", default=None, help="YAML/JSON pipeline document")
    parser.add_argument("--output", "-o", default=None, help="JSON output path (default: stdout)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")

    args = parser.parse_args(argv)

    level = logging.DEBUG if args.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s",
        datefmt="%H:%M:%S",
    )

    store = InMemoryStore()
    tender = Tender(title=args.title or Path(args.files[0]).stem, agency=args.agency)
    store.upsert_tender(tender)

    registered = 0
    for path in args.files:
        try:
            filename, data, mime_type = load_file(path)
            register_upload(store, tender.id, filename, data, mime_type)
            registered += 1
        except (FileNotFoundError, ValueError) as exc:
            logger.warning("Skipping %s: %s", path, exc)
    if not registered:
        logger.error("None of the %d input file(s) could be read", len(args.files))
        return 1

    try:
        pipeline = load_pipeline_file(args.pipeline_file) if args.pipeline_file else None
        orchestrator = PipelineOrchestrator(store)
        run = orchestrator.run_pipeline(tender.id, args.pipeline, pipeline=pipeline)
    except PipelineConfigError as exc:
        logger.error("Invalid pipeline: %s", exc)
        return 1
    except ValueError as exc:
        logger.error("Invalid input: %s", exc)
        return 1

    report = build_report(store, run)
    if args.output:
        os.makedirs(os.path.dirname(args.output) or ".", exist_ok=True)
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(report, f, indent=2, ensure_ascii=False)
        logger.info("Report written to: %s", args.output)
    else:
        print(json.dumps(report, indent=2, ensure_ascii=False))

    if run.status != "completed":
        logger.error("Run %s: %s", run.status, run.error)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
