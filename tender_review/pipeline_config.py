"""
pipeline_config.py — Loading and validating pipeline documents.

A pipeline document is YAML (or JSON, which YAML reads as well):

    name: tender-review
    version: "1.0"
    steps:
      - id: prepare
        type: prepare
      - id: extract
        type: extract
        config: {fields: [scope, eligibility]}
        retry: {max_attempts: 3, backoff_seconds: 0.5}

Every problem is reported as PipelineConfigError before a Run exists:
malformed document, empty name/version/steps, duplicate step ids,
unknown step types, and ordering mistakes (a step that needs prepare or
extract output declared before them).

export_pipeline writes a PipelineConfig back out as YAML or JSON, so a
stored or built-in pipeline can be copied, edited and loaded again.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import yaml
from pydantic import ValidationError

from tender_review.errors import PipelineConfigError
from tender_review.schemas import PipelineConfig

logger = logging.getLogger(__name__)

# Which earlier step types a step type depends on.
STEP_REQUIRES: Dict[str, tuple] = {
    "extract": ("prepare",),
    "template": ("extract",),
    "generate": ("extract",),
    "validate": ("extract",),
    "gate": ("extract",),
}

_BUILTIN_SOURCES = {
    "tender-review": """
name: tender-review
version: "1.0"
description: Full review package, gated for human approval.
steps:
  - id: prepare
    type: prepare
  - id: extract
    type: extract
    retry:
      max_attempts: 2
      backoff_seconds: 1.0
  - id: template
    type: template
    config:
      summary_template: summary-v1
      checklist_template: checklist-internal-v1
  - id: validate
    type: validate
  - id: gate
    type: gate
    config:
      approver_roles: [admin, reviewer]
""",
    "quick-extract": """
name: quick-extract
version: "1.0"
description: Extraction and validation only, no summary and no gate.
steps:
  - id: prepare
    type: prepare
  - id: extract
    type: extract
  - id: validate
    type: validate
""",
}


def parse_pipeline(source: str, fmt: Optional[str] = None) -> PipelineConfig:
    """Parse YAML/JSON text into a PipelineConfig (schema checks only)."""
    try:
        data = json.loads(source) if fmt == "json" else yaml.safe_load(source)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise PipelineConfigError(f"Pipeline document is not valid {fmt or 'YAML'}: {e}") from e
    return pipeline_from_dict(data)


def pipeline_from_dict(data: Any) -> PipelineConfig:
    if not isinstance(data, Mapping):
        raise PipelineConfigError("Pipeline document must be a mapping with name, version and steps")
    try:
        return PipelineConfig.model_validate(dict(data))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'pipeline'}: {err['msg']}"
            for err in e.errors()
        )
        raise PipelineConfigError(f"Invalid pipeline document: {problems}") from e


def export_pipeline(pipeline: PipelineConfig, fmt: str = "yaml") -> str:
    """Dump a pipeline back to a document that parse_pipeline accepts."""
    data = pipeline.model_dump(mode="json", exclude_none=True)
    if fmt == "json":
        return json.dumps(data, indent=2)
    if fmt == "yaml":
        return yaml.safe_dump(data, sort_keys=False)
    raise PipelineConfigError(f"Unknown export format '{fmt}' (use yaml or json)")


def load_pipeline_file(path: str) -> PipelineConfig:
    p = Path(path)
    if not p.exists():
        raise PipelineConfigError(f"Pipeline file not found: {p}")
    fmt = "json" if p.suffix.lower() == ".json" else "yaml"
    return parse_pipeline(p.read_text(encoding="utf-8"), fmt)


def validate_pipeline(pipeline: PipelineConfig, known_types: Iterable[str]) -> None:
    """Check step types against the handler table and step ordering."""
    known = set(known_types)
    seen_types = set()
    for index, step in enumerate(pipeline.steps):
        if step.type not in known:
            raise PipelineConfigError(
                f"Pipeline '{pipeline.name}' step '{step.id}' has unknown type '{step.type}'. "
                f"Known: {sorted(known)}"
            )
        for needed in STEP_REQUIRES.get(step.type, ()):
            if needed not in seen_types:
                raise PipelineConfigError(
                    f"Pipeline '{pipeline.name}' step '{step.id}' ({step.type}) "
                    f"must come after a '{needed}' step"
                )
        seen_types.add(step.type)
    logger.debug("Pipeline %s v%s validated (%d steps)",
                 pipeline.name, pipeline.version, len(pipeline.steps))


def builtin_pipelines() -> Dict[str, PipelineConfig]:
    return {name: parse_pipeline(src) for name, src in _BUILTIN_SOURCES.items()}


def resolve_pipeline(name: str, store=None) -> PipelineConfig:
    """A pipeline saved in the store wins over a built-in of the same name."""
    if store is not None:
        saved = store.get_pipeline_config(name)
        if saved is not None:
            return saved
    if name in _BUILTIN_SOURCES:
        return parse_pipeline(_BUILTIN_SOURCES[name])
    raise PipelineConfigError(
        f"Unknown pipeline '{name}'. Built-in: {sorted(_BUILTIN_SOURCES)}"
    )
