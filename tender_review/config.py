"""
config.py — Central configuration for the tender review pipeline.

Every threshold the extractors, the checklist engine, the renderer and the
orchestrator depend on lives here, so a change to "what counts as low
confidence" is made once. Anything an operator is expected to tune per
deployment reads an environment variable at import time.

The confidence numbers below are the ones the review team signed off on
when the heuristic extractors replaced manual triage:
  - 0.2 per keyword hit, capped at 0.8, plus 0.1 per strong hit
  - x0.8 for documents under 1000 characters (usually a cover letter
    or an addendum, not the full solicitation)
  - 0.3 is the floor below which a field is treated as "not found"
"""

from dataclasses import dataclass, field
import os
import logging

logger = logging.getLogger(__name__)


@dataclass
class ExtractionConfig:
    """
    Pattern-extraction settings shared by all five field extractors.

    Year bounds are exclusive: a parsed date is kept only when
    min_plausible_year < year < max_plausible_year. Anything outside that
    window is almost always a reference number or a regulation year
    ("Act of 1998"), not a tender date.
    """
    snippet_length: int = 200
    short_document_chars: int = 1000
    short_document_penalty: float = 0.8
    match_weight: float = 0.2
    match_cap: float = 0.8
    strong_match_weight: float = 0.1
    min_plausible_year: int = 2020
    max_plausible_year: int = 2030
    max_citations: int = 25
    summary_section_limit: int = 5
    summary_section_chars: int = 200


@dataclass
class ValidationConfig:
    """Thresholds for the validate step."""
    required_fields: tuple = ("scope", "eligibility", "deadlineSubmission")
    min_required_confidence: float = 0.3
    warn_confidence: float = 0.5


@dataclass
class RenderingConfig:
    """
    Summary/checklist rendering.

    Fields at or below low_confidence_threshold render a "not clearly
    identified" placeholder instead of their extracted summary.
    """
    low_confidence_threshold: float = 0.3
    default_summary_template: str = "summary-v1"
    default_checklist_template: str = "checklist-internal-v1"


@dataclass
class RunnerConfig:
    """
    Orchestrator settings.

    words_per_page only applies when a document arrives without explicit
    page boundaries (plain text, DOCX). 500 words is roughly one printed
    page of a typical solicitation.
    """
    words_per_page: int = int(os.getenv("WORDS_PER_PAGE", "500"))
    default_pipeline: str = os.getenv("DEFAULT_PIPELINE", "tender-review")
    default_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    parallel_extractors: bool = os.getenv("PARALLEL_EXTRACTORS", "0") == "1"


@dataclass
class Config:
    """Master config — instantiated once, used everywhere."""
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    rendering: RenderingConfig = field(default_factory=RenderingConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)

    max_file_size_mb: int = 50
    supported_mime_types: tuple = (
        "application/pdf",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "text/plain",
    )
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    def __post_init__(self):
        """Fail fast on nonsense thresholds instead of producing
        silently-wrong confidence scores."""
        for name in ("min_required_confidence", "warn_confidence"):
            value = getattr(self.validation, name)
            if not 0 <= value <= 1:
                raise ValueError(f"validation.{name} must be in [0,1], got {value}")
        if not 0 <= self.rendering.low_confidence_threshold <= 1:
            raise ValueError(
                "rendering.low_confidence_threshold must be in [0,1], "
                f"got {self.rendering.low_confidence_threshold}"
            )
        if self.runner.words_per_page < 1:
            raise ValueError(f"runner.words_per_page must be >= 1, got {self.runner.words_per_page}")
        if self.extraction.min_plausible_year >= self.extraction.max_plausible_year:
            raise ValueError("extraction year bounds are inverted")

        if self.validation.warn_confidence < self.validation.min_required_confidence:
            logger.warning(
                "warn_confidence (%.2f) is below min_required_confidence (%.2f); "
                "low-confidence warnings will never fire for required fields.",
                self.validation.warn_confidence,
                self.validation.min_required_confidence,
            )


# Shared instance imported by every module
config = Config()
