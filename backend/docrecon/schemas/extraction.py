from datetime import datetime
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    QUEUED = "Queued"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    ERROR = "Error"
    NEEDS_REVIEW = "NeedsReview"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ApprovalAction(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    EDITED = "edited"


class ReviewDecisionType(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    EDIT = "edit"


class ItemReviewState(str, Enum):
    PENDING = "pending"
    AUTO_APPROVED = "auto_approved"
    APPROVED = "approved"
    REJECTED = "rejected"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class ExtractionJobCreate(BaseModel):
    document_id: str
    file_path: str = Field(..., min_length=1, max_length=1024)
    file_type: str = Field(default="", max_length=32)
    auto_insert_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    max_retries: Optional[int] = Field(default=None, ge=0, le=20)


class ExtractionJobOut(BaseModel):
    id: str
    document_id: str
    status: JobStatus
    processing_type: str
    auto_insert_threshold: float
    confidence_score: Optional[float] = None
    ai_model_used: Optional[str] = None
    document_category: Optional[str] = None
    target_table: Optional[str] = None
    suggested_mappings: dict[str, str] = Field(default_factory=dict)
    retry_count: int
    max_retries: int
    last_error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    next_retry_at: Optional[datetime] = None
    processing_start_time: Optional[datetime] = None
    processing_end_time: Optional[datetime] = None
    created_at: Optional[datetime] = None


class StagedItemOut(BaseModel):
    id: str
    job_id: str
    field_path: str
    extracted_value: Any = None
    confidence_score: float
    source_snippet: Optional[str] = None
    attempt: int
    review_state: ItemReviewState
    meets_threshold: bool


class StagedItemListResponse(BaseModel):
    job_id: str
    status: JobStatus
    items: List[StagedItemOut]


class ReviewDecisionIn(BaseModel):
    staged_item_id: str
    decision: ReviewDecisionType
    edited_value: Any = None

    @model_validator(mode="after")
    def ensure_edit_value(self):
        if self.decision == ReviewDecisionType.EDIT and self.edited_value is None:
            raise ValueError("edited_value is required for an edit decision")
        return self


class ReviewBatchSubmit(BaseModel):
    decisions: List[ReviewDecisionIn] = Field(default_factory=list)
    batch_ref: Optional[str] = Field(default=None, max_length=128)
    notes: Optional[str] = Field(default=None, max_length=2000)


class ApprovalLogEntryOut(BaseModel):
    id: str
    batch_ref: str
    job_id: str
    action: ApprovalAction
    items_count: int
    high_confidence_count: int
    rejected_count: int
    edited_count: int
    notes: Optional[str] = None
    created_by: str
    created_at: Optional[datetime] = None


class ReviewBatchResult(BaseModel):
    job_id: str
    status: JobStatus
    advanced: bool
    curated_item_ids: List[str]
    approval_log: ApprovalLogEntryOut


class HealthSnapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    status: HealthStatus
    avg_processing_time: float
    error_rate: float
    success_rate: float
    queue_length: int
    last_processed: Optional[datetime] = None
    total_jobs: int = 0
    issues: List[str] = Field(default_factory=list)


class RetrySweepOut(BaseModel):
    skipped: bool
    due: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0
