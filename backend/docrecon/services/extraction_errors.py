"""Failure taxonomy for the extraction pipeline."""

from __future__ import annotations


class ExtractionError(Exception):
    """Base class for failures raised while extracting a document."""

    kind = "transient"

    def __init__(self, message: str, *, partial_items: list | None = None) -> None:
        super().__init__(message)
        # candidates staged before the failure; kept, never discarded
        self.partial_items = list(partial_items or [])


class TransientError(ExtractionError):
    """Network, timeout or model hiccup. Retryable; consumes a job-level retry."""

    kind = "transient"


class PermanentInputError(ExtractionError):
    """Unsupported or malformed document. Never retried, never consumes retry budget."""

    kind = "permanent"


class InvalidJobTransition(ValueError):
    def __init__(self, current: str, new: str) -> None:
        super().__init__(f"Invalid job transition: {current} -> {new}")
        self.current = current
        self.new = new
