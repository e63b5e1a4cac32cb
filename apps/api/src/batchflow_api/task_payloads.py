from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from batchflow_api.schemas import BatchType, TaskType
from batchflow_api.store import ValidationError

TranscriptFormat = Literal["json", "txt", "srt", "vtt", "html"]

MEDIA_TASK_TYPES = frozenset({TaskType.VIDEO_DOWNLOAD, TaskType.VIDEO_PROCESS, TaskType.AUDIO_EXTRACT})
DOCUMENT_TASK_TYPES = frozenset(
    {
        TaskType.DOCUMENT_DOWNLOAD,
        TaskType.DOCUMENT_CONVERT,
        TaskType.DOCUMENT_EXTRACT,
        TaskType.DOCUMENT_PARSE,
        TaskType.AGENDA_DOWNLOAD,
    }
)
TRANSCRIPTION_TASK_TYPES = frozenset(
    {TaskType.AUDIO_TRANSCRIBE, TaskType.SPEAKER_DIARIZE, TaskType.TRANSCRIPT_FORMAT}
)

RESOURCE_ID_FIELDS = (
    "id",
    "video_id",
    "audio_id",
    "document_id",
    "transcription_id",
    "diarization_id",
    "audio_file_id",
    "file_id",
)


class _TaskInputBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    meeting_record_id: str | None = None


class MediaOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    extract_audio: bool | None = None


class MediaTaskInput(_TaskInputBase):
    url: str | None = None
    viewer_url: str | None = None
    file_id: str | None = None
    options: MediaOptions | None = None


class DocumentTaskInput(_TaskInputBase):
    url: str | None = None
    title: str | None = None
    file_type: str | None = None


class TranscriptionOptions(BaseModel):
    model_config = ConfigDict(extra="forbid")

    language: str | None = None
    model: str | None = None
    min_speakers: int | None = Field(default=None, ge=1)
    max_speakers: int | None = Field(default=None, ge=1)
    format: TranscriptFormat | None = None


class TranscriptionTaskInput(_TaskInputBase):
    audio_file_id: str | None = None
    transcription_id: str | None = None
    options: TranscriptionOptions | None = None


TaskInput = MediaTaskInput | DocumentTaskInput | TranscriptionTaskInput


class _BatchMetadataBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    source: str | None = None
    description: str | None = None


class MediaBatchMetadata(_BatchMetadataBase):
    file_count: int | None = Field(default=None, ge=0)
    extract_audio: bool | None = None


class DocumentBatchMetadata(_BatchMetadataBase):
    file_count: int | None = Field(default=None, ge=0)
    document_types: list[str] | None = None


class TranscriptionBatchOptions(BaseModel):
    language: str | None = None
    model: str | None = None
    detect_speakers: bool | None = None
    word_timestamps: bool | None = None
    format: TranscriptFormat | None = None


class TranscriptionBatchMetadata(_BatchMetadataBase):
    audio_id: str | None = None
    audio_count: int | None = Field(default=None, ge=0)
    options: TranscriptionBatchOptions | None = None


_BATCH_METADATA_MODELS: dict[BatchType, type[_BatchMetadataBase]] = {
    BatchType.MEDIA: MediaBatchMetadata,
    BatchType.DOCUMENT: DocumentBatchMetadata,
    BatchType.TRANSCRIPTION: TranscriptionBatchMetadata,
}


def task_input_model(task_type: TaskType) -> type[_TaskInputBase]:
    if task_type in MEDIA_TASK_TYPES:
        return MediaTaskInput
    if task_type in DOCUMENT_TASK_TYPES:
        return DocumentTaskInput
    if task_type in TRANSCRIPTION_TASK_TYPES:
        return TranscriptionTaskInput
    raise ValidationError(f"unsupported task type '{task_type}'")


def parse_task_input(task_type: TaskType, raw: dict[str, Any] | None) -> TaskInput:
    if raw is None:
        raise ValidationError("task input is required")
    model = task_input_model(task_type)
    try:
        return model.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid input for task type '{task_type.value}': {_summarize(exc)}") from exc


def parse_batch_metadata(batch_type: BatchType, raw: dict[str, Any] | None) -> dict[str, Any]:
    model = _BATCH_METADATA_MODELS[batch_type]
    try:
        parsed = model.model_validate(raw or {})
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid metadata for batch type '{batch_type.value}': {_summarize(exc)}") from exc
    return parsed.model_dump(exclude_none=True)


def resource_ids(output: dict[str, Any] | None) -> dict[str, str]:
    """Identifier fields of a task output that event consumers can re-query by."""
    if not output:
        return {}
    return {
        key: value
        for key in RESOURCE_ID_FIELDS
        if isinstance(value := output.get(key), str) and value
    }


def _summarize(exc: PydanticValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)
