from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class Status(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"


class BatchType(str, Enum):
    MEDIA = "media"
    DOCUMENT = "document"
    TRANSCRIPTION = "transcription"


class TaskType(str, Enum):
    DOCUMENT_DOWNLOAD = "document_download"
    DOCUMENT_CONVERT = "document_convert"
    DOCUMENT_EXTRACT = "document_extract"
    DOCUMENT_PARSE = "document_parse"
    AGENDA_DOWNLOAD = "agenda_download"
    VIDEO_DOWNLOAD = "video_download"
    VIDEO_PROCESS = "video_process"
    AUDIO_EXTRACT = "audio_extract"
    AUDIO_TRANSCRIBE = "audio_transcribe"
    SPEAKER_DIARIZE = "speaker_diarize"
    TRANSCRIPT_FORMAT = "transcript_format"


class EventType(str, Enum):
    BATCH_CREATED = "batch-created"
    TASK_COMPLETED = "task-completed"
    BATCH_STATUS_CHANGED = "batch-status-changed"
    TASK_READY = "task-ready"


TASK_STATUSES = frozenset({Status.QUEUED, Status.PROCESSING, Status.COMPLETED, Status.FAILED})
TERMINAL_TASK_STATUSES = frozenset({Status.COMPLETED, Status.FAILED})
TERMINAL_BATCH_STATUSES = frozenset({Status.COMPLETED, Status.COMPLETED_WITH_ERRORS, Status.FAILED})
WEBHOOK_EVENT_TYPES = frozenset(
    {EventType.BATCH_CREATED, EventType.TASK_COMPLETED, EventType.BATCH_STATUS_CHANGED}
)


class BatchCounters(BaseModel):
    total: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0


class BatchTaskCreate(BaseModel):
    task_type: TaskType
    input: dict[str, Any] | None = None
    priority: int | None = None
    max_retries: int | None = Field(default=None, ge=0)
    meeting_record_id: str | None = None
    depends_on: list[int] = Field(default_factory=list)
    depends_on_indexes: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_dependencies(self) -> "BatchTaskCreate":
        self.depends_on = _normalize_int_list(self.depends_on)
        self.depends_on_indexes = _normalize_int_list(self.depends_on_indexes)
        return self


class BatchCreate(BaseModel):
    name: str | None = None
    batch_type: BatchType
    priority: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)
    tasks: list[BatchTaskCreate] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_name(self) -> "BatchCreate":
        if self.name is not None:
            self.name = self.name.strip() or None
        return self


class BatchRead(BaseModel):
    id: int
    name: str | None = None
    batch_type: BatchType
    status: Status
    priority: int
    counters: BatchCounters
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str
    updated_at: str


class BatchListResponse(BaseModel):
    items: list[BatchRead]
    total: int
    limit: int
    offset: int


class ActiveBatchesResponse(BaseModel):
    active_batches: dict[str, list[BatchRead]] = Field(default_factory=dict)


class TaskCreate(BaseModel):
    batch_id: int | None = None
    task_type: TaskType
    input: dict[str, Any] | None = None
    priority: int | None = None
    max_retries: int | None = Field(default=None, ge=0)
    meeting_record_id: str | None = None
    depends_on: list[int] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_dependencies(self) -> "TaskCreate":
        self.depends_on = _normalize_int_list(self.depends_on)
        return self


class TaskRead(BaseModel):
    id: int
    batch_id: int | None = None
    task_type: TaskType
    status: Status
    priority: int
    retry_count: int
    max_retries: int
    input: dict[str, Any]
    output: dict[str, Any] | None = None
    error: str | None = None
    meeting_record_id: str | None = None
    depends_on: list[int] = Field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None
    created_at: str
    updated_at: str


class BatchStatusRead(BaseModel):
    batch: BatchRead
    tasks: list[TaskRead] | None = None


class TaskStatusUpdate(BaseModel):
    status: Status
    output: dict[str, Any] | None = None
    error: str | None = None


class TaskStatusUpdateResponse(BaseModel):
    task: TaskRead
    changed: bool
    unblocked_task_ids: list[int] = Field(default_factory=list)


class RetryFailedTasksResponse(BaseModel):
    batch_id: int
    retried_task_ids: list[int]
    retried_count: int


class ProcessTasksRequest(BaseModel):
    limit: int = Field(default=10, ge=1, le=500)
    task_types: list[TaskType] | None = None


class ProcessTasksResponse(BaseModel):
    processed_task_ids: list[int] = Field(default_factory=list)
    completed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0


class WebhookCreate(BaseModel):
    name: str = Field(min_length=1)
    url: str = Field(min_length=1)
    secret: str | None = None
    event_types: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def normalize_fields(self) -> "WebhookCreate":
        self.name = self.name.strip()
        self.url = self.url.strip()
        self.event_types = _normalize_string_list(self.event_types)
        return self


class WebhookUpdate(BaseModel):
    name: str | None = None
    url: str | None = None
    secret: str | None = None
    event_types: list[str] | None = None
    active: bool | None = None

    @model_validator(mode="after")
    def normalize_fields(self) -> "WebhookUpdate":
        if self.name is not None:
            self.name = self.name.strip()
        if self.url is not None:
            self.url = self.url.strip()
        if self.event_types is not None:
            self.event_types = _normalize_string_list(self.event_types)
        return self


class WebhookRead(BaseModel):
    id: int
    name: str
    url: str
    event_types: list[EventType]
    active: bool
    has_secret: bool
    created_at: str
    updated_at: str


class WebhookListResponse(BaseModel):
    items: list[WebhookRead]
    total: int
    limit: int
    offset: int


class WebhookDeliveryRead(BaseModel):
    id: str
    webhook_id: int
    event_id: int | None = None
    event_type: EventType
    payload: dict[str, Any]
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    attempts: int
    successful: bool
    scheduled_for: str
    last_attempted_at: str | None = None
    created_at: str


class WebhookRetryResponse(BaseModel):
    retried_count: int
    success_count: int


class EventRead(BaseModel):
    id: int
    event_type: EventType
    batch_id: int | None = None
    task_id: int | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: str


class EventFlushResponse(BaseModel):
    delivered_count: int


def _normalize_string_list(values: list[str]) -> list[str]:
    normalized: list[str] = []
    for value in values:
        trimmed = value.strip()
        if not trimmed:
            continue
        if trimmed in normalized:
            continue
        normalized.append(trimmed)
    return normalized


def _normalize_int_list(values: list[int]) -> list[int]:
    normalized: list[int] = []
    for value in values:
        if value in normalized:
            continue
        normalized.append(value)
    return normalized
