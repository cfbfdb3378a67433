from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List
from datetime import datetime
from app.core.workflow import RunStatus

class StartRequest(BaseModel):
    batch_size: Optional[int] = Field(None, ge=1, le=1000, examples=[100])
    concurrency: Optional[int] = Field(None, ge=1, le=32, examples=[3])
    quality: Optional[int] = Field(None, ge=0, le=100, examples=[70])
    max_width: Optional[int] = Field(None, ge=16, le=10000, examples=[1600])

class RunStatusResponse(BaseModel):
    status: RunStatus
    dispatched: bool = False

class StatusResponse(BaseModel):
    total: int
    processed: int
    pending: int
    claimed: int
    error: int
    run_status: RunStatus
    started_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    average_processing_time_ms: Optional[float] = None
    estimated_seconds_remaining: Optional[int] = None


class ErrorItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    source_ref: str
    file_name: Optional[str] = None
    error_message: Optional[str] = None
    updated_at: datetime


class ErrorsResponse(BaseModel):
    total: int
    items: List[ErrorItem]


class LogEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    item_id: str
    run_token: Optional[str] = None
    status: str
    error_message: Optional[str] = None
    original_size: Optional[int] = None
    processed_size: Optional[int] = None
    processed_width: Optional[int] = None
    processed_height: Optional[int] = None
    processing_time_ms: Optional[int] = None
    processed_at: datetime


class RetryResponse(BaseModel):
    requeued: int


class AssetIn(BaseModel):
    source_ref: str = Field(..., min_length=1, max_length=512, examples=["1AbCdEfGhIjK"])
    file_name: Optional[str] = Field(None, examples=["living-room.jpg"])
    owner_ref: Optional[str] = Field(None, max_length=64)


class RegisterRequest(BaseModel):
    items: List[AssetIn]


class RegisterResponse(BaseModel):
    registered: int
