"""
Data Models
===========
Pydantic models for frames, paragraphs, jobs and collaborator payloads.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from .steps import JobStep, StepSchema


# ─── Enums ────────────────────────────────────────────────────────────────────


class JobStatus(str, Enum):
    """Lifecycle status of a job."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Kind of work a job record drives."""
    OCR = "ocr"
    SUBTITLE_REMOVAL = "subtitle_removal"


class StepOutcome(str, Enum):
    """Result of running (or attempting) one step."""
    ADVANCED = "advanced"
    SKIPPED = "skipped"
    WAITING = "waiting"
    COMPLETED = "completed"


class BatchStatus(str, Enum):
    """Batch states reported by the recognition provider."""
    VALIDATING = "validating"
    IN_PROGRESS = "in_progress"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"


BATCH_FAILURE_STATUSES = {
    BatchStatus.FAILED,
    BatchStatus.EXPIRED,
    BatchStatus.CANCELLING,
    BatchStatus.CANCELLED,
}


class RecognitionStatus(str, Enum):
    """Per-frame recognition state inside a batch step."""
    PENDING = "pending"
    SUBMITTED = "submitted"
    DONE = "done"
    FAILED = "failed"


# ─── Archive / Frame Models ───────────────────────────────────────────────────


class ContainerEntry(BaseModel):
    """A raw entry as supplied inside the uploaded archive."""
    name: str
    data: bytes = b""


class CanonicalEntry(BaseModel):
    """An entry accepted by the canonical one-file-per-page pass."""
    base_key: str
    original_name: str


class Frame(BaseModel):
    """
    One image of a logical page.
    Continuation frames share the primary frame's base_key.
    """
    original_name: str
    base_key: str
    sequence_index: int = Field(default=0, ge=0)
    should_include_in_zip: bool = False


class ExtractedFrame(Frame):
    """A frame materialized to working storage."""
    index: int = Field(ge=0, description="Global submission order")
    path: str = ""


class RecognizedFrame(Frame):
    """A frame with its recognized text."""
    index: int = Field(ge=0, description="Global submission order")
    text: str = ""


class Paragraph(BaseModel):
    """Ordered text of one logical page."""
    base_key: str
    text: str
    position: int = 0


# ─── Job Models ───────────────────────────────────────────────────────────────


class JobArtifacts(BaseModel):
    """Object-store keys produced by the pipeline for a job."""
    raw_zip_key: Optional[str] = None
    raw_zip_size_bytes: Optional[int] = None
    crops_zip_key: Optional[str] = None
    txt_key: Optional[str] = None
    txt_size_bytes: Optional[int] = None
    docx_key: Optional[str] = None
    docx_size_bytes: Optional[int] = None
    thumbnail_key: Optional[str] = None


class BatchState(BaseModel):
    """Persisted poll record for the external batch wait."""
    batch_id: Optional[str] = None
    last_known_status: Optional[str] = None
    submission_count: int = 0


class Job(BaseModel):
    """A job record as persisted by the job store."""
    id: str
    job_type: JobType = JobType.OCR
    step_schema: StepSchema = StepSchema.FIVE_STEP
    current_step: JobStep
    status: JobStatus = JobStatus.PENDING
    failed_step: Optional[JobStep] = None
    last_error: Optional[str] = None
    zip_key: Optional[str] = None
    artifacts: JobArtifacts = Field(default_factory=JobArtifacts)
    batch: BatchState = Field(default_factory=BatchState)
    parent_job_id: Optional[str] = None
    revision: int = 0
    total_images: int = 0
    processed_images: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    # Raw current_step column value; legacy rows store old step names
    stored_step: Optional[str] = Field(default=None, exclude=True)

    @property
    def guard_step(self) -> str:
        return self.stored_step or self.current_step.value

    @computed_field
    @property
    def progress_percentage(self) -> float:
        if self.total_images == 0:
            return 0.0
        return round(self.processed_images / self.total_images * 100, 2)

    @classmethod
    def from_row(cls, row: dict) -> "Job":
        """Build a Job from a flat `jobs` table row."""
        failed_step = row.get("failed_step")
        return cls(
            id=row["id"],
            job_type=JobType(row.get("job_type") or JobType.OCR.value),
            step_schema=StepSchema(
                row.get("step_schema") or StepSchema.FIVE_STEP.value
            ),
            current_step=JobStep.from_stored(row["current_step"]),
            status=JobStatus(row.get("status") or JobStatus.PENDING.value),
            failed_step=JobStep.from_stored(failed_step) if failed_step else None,
            last_error=row.get("last_error"),
            zip_key=row.get("zip_key"),
            artifacts=JobArtifacts(
                **{k: row.get(k) for k in JobArtifacts.model_fields}
            ),
            batch=BatchState(
                batch_id=row.get("batch_id"),
                last_known_status=row.get("batch_status"),
                submission_count=row.get("batch_submission_count") or 0,
            ),
            parent_job_id=row.get("parent_job_id"),
            revision=row.get("revision") or 0,
            total_images=row.get("total_images") or 0,
            processed_images=row.get("processed_images") or 0,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
            stored_step=row["current_step"],
        )


# ─── Collaborator Payloads ────────────────────────────────────────────────────


class ImageRef(BaseModel):
    """An image handed to the batch recognition provider."""
    frame_ref: str
    filename: str
    data: bytes
    content_type: str = "image/png"


class BatchItemResult(BaseModel):
    """Outcome for one submitted image."""
    frame_ref: str
    text: Optional[str] = None
    error: Optional[str] = None

    @computed_field
    @property
    def ok(self) -> bool:
        return self.error is None


class BatchPollResult(BaseModel):
    """Snapshot of a batch returned by the provider."""
    status: BatchStatus
    items: list[BatchItemResult] = Field(default_factory=list)

    @computed_field
    @property
    def is_terminal_failure(self) -> bool:
        return self.status in BATCH_FAILURE_STATUSES


class SignedUrl(BaseModel):
    """A time-limited URL for direct object access."""
    key: str
    url: str
    expires_at: str
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
