"""Exception types raised across module boundaries."""

from __future__ import annotations


class PipelineConfigError(ValueError):
    """Pipeline document is malformed, names an unknown step type, or
    orders steps so that a step reads data nothing has produced yet."""


class RunConflictError(RuntimeError):
    """A tender already has a pending or running Run."""

    def __init__(self, tender_id: str, active_run_id: str):
        super().__init__(
            f"Tender {tender_id} already has an active run ({active_run_id})"
        )
        self.tender_id = tender_id
        self.active_run_id = active_run_id


class NotFoundError(LookupError):
    """find-by-id miss in the store."""


class PersistenceError(RuntimeError):
    """A store write failed."""
