"""Document extraction contracts: request/response of the AI extraction call."""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from docrecon.schemas.extraction import ErrorKind


class StagedItemCandidate(BaseModel):
    """One extracted field/value/confidence triple, before it is persisted."""

    field_path: str = Field(..., min_length=1, max_length=255)
    extracted_value: Any = None
    confidence_score: float = 0.0
    source_snippet: Optional[str] = None

    @field_validator("field_path")
    @classmethod
    def _strip_path(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("field_path must not be blank")
        return value

    @field_validator("confidence_score", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            score = float(value)
        except (TypeError, ValueError):
            return 0.0
        if score != score:  # NaN
            return 0.0
        return max(0.0, min(1.0, score))


class ExtractionRequest(BaseModel):
    document_id: str
    file_path: str
    file_type: str = ""
    auto_insert_threshold: float = Field(..., ge=0.0, le=1.0)
    is_retry: bool = False
    retry_attempt: int = Field(default=0, ge=0)


class ExtractionResponse(BaseModel):
    """``success=False`` with non-empty ``staged_items`` is a partial success."""

    success: bool
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    staged_items: list[StagedItemCandidate] = Field(default_factory=list)
    model_version: str = ""

    @classmethod
    def failure(
        cls,
        error: str,
        *,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        staged_items: list[StagedItemCandidate] | None = None,
        model_version: str = "",
    ) -> "ExtractionResponse":
        return cls(
            success=False,
            error=error,
            error_kind=kind,
            staged_items=list(staged_items or []),
            model_version=model_version,
        )
