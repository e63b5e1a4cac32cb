from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware

from batchflow_api.engine import build_engine
from batchflow_api.schemas import (
    ActiveBatchesResponse,
    BatchCreate,
    BatchListResponse,
    BatchRead,
    BatchStatusRead,
    BatchType,
    EventFlushResponse,
    EventRead,
    EventType,
    ProcessTasksRequest,
    ProcessTasksResponse,
    RetryFailedTasksResponse,
    Status,
    TaskCreate,
    TaskRead,
    TaskStatusUpdate,
    TaskStatusUpdateResponse,
    TaskType,
    WebhookCreate,
    WebhookDeliveryRead,
    WebhookListResponse,
    WebhookRead,
    WebhookRetryResponse,
    WebhookUpdate,
)
from batchflow_api.settings import configure_logging, load_settings
from batchflow_api.store import ConflictError, NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)

settings = load_settings()
configure_logging(settings.log_level)

app = FastAPI(title="batchflow api", version="0.1.0")
engine = build_engine(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_origin_regex=settings.cors_allow_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _internal_error(exc: StoreError) -> HTTPException:
    logger.error("api event=internal_error error=%s", exc)
    return HTTPException(status_code=500, detail="internal error")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/batches", response_model=BatchRead)
def create_batch(payload: BatchCreate) -> BatchRead:
    try:
        return engine.lifecycle.create_batch(payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.get("/batches", response_model=BatchListResponse)
def list_batches(
    status: Status | None = None,
    batch_type: BatchType | None = None,
    limit: int = Query(default=10, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> BatchListResponse:
    return engine.lifecycle.list_batches(status=status, batch_type=batch_type, limit=limit, offset=offset)


@app.get("/batches/active", response_model=ActiveBatchesResponse)
def list_active_batches(
    status: Status | None = None,
    limit: int = Query(default=10, ge=1, le=100),
) -> ActiveBatchesResponse:
    return engine.lifecycle.list_active_batches(limit_per_type=limit, status=status)


@app.get("/batches/{batch_id}", response_model=BatchStatusRead)
def get_batch_status(
    batch_id: int,
    include_tasks: bool = False,
    task_status: Status | None = None,
    limit: int = Query(default=100, ge=1, le=1000),
) -> BatchStatusRead:
    try:
        return engine.lifecycle.get_batch_status(
            batch_id,
            include_tasks=include_tasks,
            task_status=task_status,
            limit=limit,
        )
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/batches/{batch_id}/retry", response_model=RetryFailedTasksResponse)
def retry_failed_tasks(batch_id: int, limit: int = Query(default=10, ge=1, le=500)) -> RetryFailedTasksResponse:
    try:
        return engine.lifecycle.retry_failed_tasks(batch_id, limit=limit)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.post("/batches/{batch_id}/cancel", response_model=BatchRead)
def cancel_batch(batch_id: int) -> BatchRead:
    try:
        return engine.lifecycle.cancel_batch(batch_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.post("/tasks", response_model=TaskRead)
def create_task(payload: TaskCreate) -> TaskRead:
    try:
        return engine.lifecycle.create_task(payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.get("/tasks/next", response_model=list[TaskRead])
def list_next_ready_tasks(
    limit: int = Query(default=10, ge=1, le=500),
    task_types: list[TaskType] | None = Query(default=None),
) -> list[TaskRead]:
    return engine.lifecycle.list_next_ready_tasks(limit=limit, task_types=task_types)


@app.post("/tasks/process", response_model=ProcessTasksResponse)
def process_next_tasks(payload: ProcessTasksRequest) -> ProcessTasksResponse:
    try:
        return engine.dispatcher.run_once(limit=payload.limit, task_types=payload.task_types)
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.get("/tasks/{task_id}", response_model=TaskRead)
def get_task(task_id: int) -> TaskRead:
    try:
        return engine.lifecycle.get_task(task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.post("/tasks/{task_id}/claim", response_model=TaskRead)
def claim_task(task_id: int) -> TaskRead:
    try:
        return engine.lifecycle.claim_task(task_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.post("/tasks/{task_id}/status", response_model=TaskStatusUpdateResponse)
def update_task_status(task_id: int, payload: TaskStatusUpdate) -> TaskStatusUpdateResponse:
    try:
        return engine.lifecycle.update_task_status(task_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.post("/webhooks", response_model=WebhookRead)
def register_webhook(payload: WebhookCreate) -> WebhookRead:
    try:
        return engine.webhooks.register_webhook(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.get("/webhooks", response_model=WebhookListResponse)
def list_webhooks(
    active_only: bool = True,
    limit: int = Query(default=10, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> WebhookListResponse:
    return engine.webhooks.list_webhooks(active_only=active_only, limit=limit, offset=offset)


@app.post("/webhooks/retry", response_model=WebhookRetryResponse)
def retry_failed_webhook_deliveries(
    limit: int = Query(default=10, ge=1, le=500),
    max_attempts: int | None = Query(default=None, ge=1, le=50),
) -> WebhookRetryResponse:
    try:
        return engine.webhooks.retry_failed_deliveries(limit=limit, max_attempts=max_attempts)
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.get("/webhooks/deliveries", response_model=list[WebhookDeliveryRead])
def list_webhook_deliveries(
    webhook_id: int | None = None,
    successful: bool | None = None,
    exhausted: bool = False,
    max_attempts: int | None = Query(default=None, ge=1, le=50),
    limit: int = Query(default=50, ge=1, le=500),
) -> list[WebhookDeliveryRead]:
    return engine.webhooks.list_deliveries(
        webhook_id=webhook_id,
        successful=successful,
        exhausted=exhausted,
        max_attempts=max_attempts,
        limit=limit,
    )


@app.get("/webhooks/{webhook_id}", response_model=WebhookRead)
def get_webhook(webhook_id: int) -> WebhookRead:
    try:
        return engine.webhooks.get_webhook(webhook_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@app.patch("/webhooks/{webhook_id}", response_model=WebhookRead)
def update_webhook(webhook_id: int, payload: WebhookUpdate) -> WebhookRead:
    try:
        return engine.webhooks.update_webhook(webhook_id, payload)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.delete("/webhooks/{webhook_id}", status_code=204)
def delete_webhook(webhook_id: int) -> None:
    try:
        engine.webhooks.delete_webhook(webhook_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreError as exc:
        raise _internal_error(exc) from exc


@app.get("/events", response_model=list[EventRead])
def list_events(
    batch_id: int | None = None,
    task_id: int | None = None,
    event_type: EventType | None = None,
    after_id: int = Query(default=0, ge=0),
    limit: int = Query(default=200, ge=1, le=1000),
) -> list[EventRead]:
    return engine.store.list_events(
        batch_id=batch_id,
        task_id=task_id,
        event_type=event_type.value if event_type is not None else None,
        after_id=after_id,
        limit=limit,
    )


@app.post("/events/flush", response_model=EventFlushResponse)
def flush_events() -> EventFlushResponse:
    try:
        return EventFlushResponse(delivered_count=engine.bus.publish_pending())
    except StoreError as exc:
        raise _internal_error(exc) from exc
