from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class TargetFormat(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    PPTX = "pptx"


class Role(str, Enum):
    EDUCATOR = "educator"
    ADMIN = "admin"


class InputItem(BaseModel):
    name: str
    original_name: str
    byte_size: int
    mime_type: str


class ResultArtifact(BaseModel):
    name: str
    original_name: str
    url: str
    byte_size: int
    mime_type: str
    storage_id: str
    material_id: Optional[str] = None


class JobMetadata(BaseModel):
    image_count: int = 0
    page_count: Optional[int] = None
    placeholder_count: int = 0
    quality: str = "high"
    file_size: Optional[str] = None


class JobEvent(BaseModel):
    timestamp: datetime
    message: str


class JobSummary(BaseModel):
    id: str
    owner: str
    status: JobStatus
    target_format: TargetFormat
    destination: str
    image_count: int
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    processing_duration_ms: Optional[int] = None
    result_url: Optional[str] = None


class JobDetail(JobSummary):
    owner_name: str
    input_items: List[InputItem]
    result_artifact: Optional[ResultArtifact] = None
    error_detail: Optional[str] = None
    started_at: Optional[datetime] = None
    metadata: JobMetadata
    events: List[JobEvent]


class JobStatusView(BaseModel):
    id: str
    status: JobStatus
    result_artifact: Optional[ResultArtifact] = None
    error_detail: Optional[str] = None
    processing_duration_ms: Optional[int] = None


class TrialResult(BaseModel):
    success: bool = True
    message: str = "Test conversion successful"
    original_size: int
    converted_size: int


class APIKeyCreate(BaseModel):
    owner_id: str = Field(min_length=1)
    display_name: str = ""
    role: Role = Role.EDUCATOR


class APIKeyRecord(BaseModel):
    id: str
    prefix: str
    owner_id: str
    display_name: str
    role: Role
    is_active: bool
    created_at: str


class APIKeyCreated(BaseModel):
    api_key: str
    record: APIKeyRecord
