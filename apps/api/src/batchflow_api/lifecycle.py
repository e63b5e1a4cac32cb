from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from batchflow_api.dependency_graph import validate_initial_task_graph
from batchflow_api.events import EventBus
from batchflow_api.resolver import DependencyResolver
from batchflow_api.schemas import (
    ActiveBatchesResponse,
    BatchCreate,
    BatchListResponse,
    BatchRead,
    BatchStatusRead,
    BatchType,
    EventType,
    RetryFailedTasksResponse,
    Status,
    TaskCreate,
    TaskRead,
    TaskStatusUpdate,
    TaskStatusUpdateResponse,
    TaskType,
    TERMINAL_BATCH_STATUSES,
    TERMINAL_TASK_STATUSES,
)
from batchflow_api.security import redact_sensitive_text
from batchflow_api.state_machine import (
    apply_counter_delta,
    can_cancel,
    can_retry,
    counters_consistent,
    counters_from_statuses,
    derive_batch_status,
    is_terminal_batch_status,
    validate_task_status,
    validate_transition,
)
from batchflow_api.store import (
    ConflictError,
    InMemoryStore,
    StoreError,
    ValidationError,
    _BatchRecord,
    _TaskRecord,
)
from batchflow_api.task_payloads import TaskInput, parse_batch_metadata, parse_task_input, resource_ids

logger = logging.getLogger(__name__)

CANCELED_ERROR = "Canceled by user"


class TaskLifecycleManager:
    """Creates batches and tasks and moves them through their lifecycle.

    Each operation runs in one store transaction: task row, batch counters, derived
    batch status and the resulting events commit together. Events are handed to the
    bus only after commit. A bus failure is logged and never undoes the change.
    """

    def __init__(
        self,
        store: InMemoryStore,
        bus: EventBus | None = None,
        *,
        resolver: DependencyResolver | None = None,
        default_max_retries: int = 3,
    ) -> None:
        self._store = store
        self._bus = bus
        self._resolver = resolver or DependencyResolver(store)
        self._default_max_retries = default_max_retries

    @property
    def store(self) -> InMemoryStore:
        return self._store

    def create_batch(self, payload: BatchCreate) -> BatchRead:
        metadata = parse_batch_metadata(payload.batch_type, payload.metadata)
        try:
            order = validate_initial_task_graph(payload.tasks)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        inputs = [parse_task_input(task.task_type, task.input) for task in payload.tasks]

        with self._store.transaction():
            batch = self._store.insert_batch(
                name=payload.name,
                batch_type=payload.batch_type.value,
                priority=payload.priority,
                metadata=metadata,
            )
            created: dict[int, _TaskRecord] = {}
            for index in order:
                item = payload.tasks[index]
                created[index] = self._insert_task(
                    batch=batch,
                    task_type=item.task_type,
                    parsed_input=inputs[index],
                    priority=item.priority,
                    max_retries=item.max_retries,
                    meeting_record_id=item.meeting_record_id,
                    depends_on=[*item.depends_on, *(created[position].id for position in item.depends_on_indexes)],
                )

            batch = self._store.get_batch(batch.id)
            self._store.append_event(
                event_type=EventType.BATCH_CREATED,
                batch_id=batch.id,
                payload={
                    "batchId": batch.id,
                    "batchType": batch.batch_type,
                    "taskCount": len(created),
                    "timestamp": batch.created_at,
                },
            )
            for index in sorted(created):
                self._record_ready_if_ready(created[index])

        logger.info(
            "task_lifecycle event=batch_created batch_id=%s batch_type=%s task_count=%s",
            batch.id,
            batch.batch_type,
            len(created),
        )
        self._publish()
        return self._store.to_batch_read(batch)

    def create_task(self, payload: TaskCreate) -> TaskRead:
        parsed_input = parse_task_input(payload.task_type, payload.input)
        with self._store.transaction():
            batch = self._store.get_batch(payload.batch_id) if payload.batch_id is not None else None
            record = self._insert_task(
                batch=batch,
                task_type=payload.task_type,
                parsed_input=parsed_input,
                priority=payload.priority,
                max_retries=payload.max_retries,
                meeting_record_id=payload.meeting_record_id,
                depends_on=payload.depends_on,
            )
            self._record_ready_if_ready(record)
            task = self._store.to_task_read(record)

        logger.info(
            "task_lifecycle event=task_created task_id=%s batch_id=%s task_type=%s depends_on=%s",
            task.id,
            task.batch_id,
            task.task_type.value,
            task.depends_on,
        )
        self._publish()
        return task

    def get_task(self, task_id: int) -> TaskRead:
        return self._store.to_task_read(self._store.get_task(task_id))

    def get_batch_status(
        self,
        batch_id: int,
        *,
        include_tasks: bool = False,
        task_status: Status | None = None,
        limit: int = 100,
    ) -> BatchStatusRead:
        with self._store.locked():
            batch = self._store.get_batch(batch_id)
            tasks: list[TaskRead] | None = None
            if include_tasks:
                statuses = {task_status.value} if task_status is not None else None
                tasks = [
                    self._store.to_task_read(record)
                    for record in self._store.list_batch_tasks(batch_id, statuses=statuses, limit=limit)
                ]
        return BatchStatusRead(batch=self._store.to_batch_read(batch), tasks=tasks)

    def list_batches(
        self,
        *,
        status: Status | None = None,
        batch_type: BatchType | None = None,
        limit: int = 10,
        offset: int = 0,
    ) -> BatchListResponse:
        records, total = self._store.list_batches(
            status=status.value if status is not None else None,
            batch_type=batch_type.value if batch_type is not None else None,
            limit=limit,
            offset=offset,
        )
        return BatchListResponse(
            items=[self._store.to_batch_read(record) for record in records],
            total=total,
            limit=limit,
            offset=offset,
        )

    def list_active_batches(self, *, limit_per_type: int = 10, status: Status | None = None) -> ActiveBatchesResponse:
        """Operator view: batches grouped by type, at most `limit_per_type` each.

        Without a status filter terminal batches are left out.
        """
        records, _ = self._store.list_batches(
            status=status.value if status is not None else None,
            exclude_statuses=None if status is not None else {item.value for item in TERMINAL_BATCH_STATUSES},
            limit=None,
        )
        grouped: dict[str, list[BatchRead]] = {}
        for record in records:
            bucket = grouped.setdefault(record.batch_type, [])
            if len(bucket) < limit_per_type:
                bucket.append(self._store.to_batch_read(record))
        return ActiveBatchesResponse(active_batches=grouped)

    def list_next_ready_tasks(self, *, limit: int = 10, task_types: list[TaskType] | None = None) -> list[TaskRead]:
        return [
            self._store.to_task_read(record)
            for record in self._resolver.next_ready(limit=limit, task_types=task_types)
        ]

    def claim_task(self, task_id: int) -> TaskRead:
        with self._store.transaction():
            current = self._store.get_task(task_id)
            if current.status != Status.QUEUED.value:
                raise ConflictError(f"task {task_id} is not queued (status: {current.status})")
            if not self._resolver.is_ready(task_id):
                raise ConflictError(f"task {task_id} has unsatisfied dependencies")
            claimed = self._store.claim_task(task_id, started_at=_utc_now())
            if claimed is None:
                raise ConflictError(f"task {task_id} was claimed concurrently")
            if claimed.batch_id is not None:
                self._apply_batch_transition(claimed.batch_id, Status.QUEUED, Status.PROCESSING)
            task = self._store.to_task_read(claimed)

        logger.info("task_lifecycle event=task_claimed task_id=%s batch_id=%s", task.id, task.batch_id)
        self._publish()
        return task

    def update_task_status(self, task_id: int, update: TaskStatusUpdate) -> TaskStatusUpdateResponse:
        validate_task_status(update.status)
        with self._store.transaction():
            current = self._store.get_task(task_id)
            previous = Status(current.status)
            if previous == update.status:
                return TaskStatusUpdateResponse(task=self._store.to_task_read(current), changed=False)
            validate_transition(previous, update.status)

            now = _utc_now()
            updated = replace(current, status=update.status.value, updated_at=now)
            if update.status == Status.PROCESSING:
                updated.started_at = current.started_at or now
            if update.status in TERMINAL_TASK_STATUSES:
                updated.completed_at = now
                updated.output = update.output
                updated.error = None
            if update.status == Status.FAILED:
                updated.error = redact_sensitive_text(update.error) or "task failed"
            self._store.put_task(updated)

            if updated.batch_id is not None:
                self._apply_batch_transition(updated.batch_id, previous, update.status)

            unblocked: list[int] = []
            if update.status in TERMINAL_TASK_STATUSES:
                self._record_task_completed(updated)
            if update.status == Status.COMPLETED:
                unblocked = self._resolver.newly_unblocked(task_id)
                for dependent_id in unblocked:
                    self._record_ready(self._store.get_task(dependent_id))
            task = self._store.to_task_read(updated)

        logger.info(
            "task_lifecycle event=task_status_changed task_id=%s batch_id=%s from=%s to=%s unblocked=%s",
            task_id,
            task.batch_id,
            previous.value,
            update.status.value,
            unblocked,
        )
        self._publish()
        return TaskStatusUpdateResponse(task=task, changed=True, unblocked_task_ids=unblocked)

    def retry_failed_tasks(self, batch_id: int, *, limit: int = 10) -> RetryFailedTasksResponse:
        self._store.get_batch(batch_id)
        retried: list[int] = []
        for candidate in self._store.list_batch_tasks(batch_id, statuses={Status.FAILED.value}):
            if len(retried) >= limit:
                break
            if not can_retry(Status(candidate.status), candidate.retry_count, candidate.max_retries):
                continue
            with self._store.transaction():
                current = self._store.get_task(candidate.id)
                if not can_retry(Status(current.status), current.retry_count, current.max_retries):
                    continue
                reset = replace(
                    current,
                    status=Status.QUEUED.value,
                    retry_count=current.retry_count + 1,
                    error=None,
                    output=None,
                    started_at=None,
                    completed_at=None,
                    updated_at=_utc_now(),
                )
                self._store.put_task(reset)
                self._apply_batch_transition(batch_id, Status.FAILED, Status.QUEUED)
                self._record_ready_if_ready(reset)
            retried.append(candidate.id)

        logger.info(
            "task_lifecycle event=tasks_retried batch_id=%s retried_count=%s task_ids=%s",
            batch_id,
            len(retried),
            retried,
        )
        self._publish()
        return RetryFailedTasksResponse(batch_id=batch_id, retried_task_ids=retried, retried_count=len(retried))

    def cancel_batch(self, batch_id: int) -> BatchRead:
        batch = self._store.get_batch(batch_id)
        if is_terminal_batch_status(Status(batch.status)):
            raise ValidationError(f"cannot cancel batch {batch_id} with status {batch.status}")

        canceled = 0
        active = {Status.QUEUED.value, Status.PROCESSING.value}
        for candidate in self._store.list_batch_tasks(batch_id, statuses=active):
            with self._store.transaction():
                current = self._store.get_task(candidate.id)
                previous = Status(current.status)
                if not can_cancel(previous):
                    continue
                now = _utc_now()
                self._store.put_task(
                    replace(
                        current,
                        status=Status.FAILED.value,
                        error=CANCELED_ERROR,
                        completed_at=now,
                        updated_at=now,
                    )
                )
                self._apply_batch_transition(batch_id, previous, Status.FAILED, derive=False)
            canceled += 1

        with self._store.transaction():
            current_batch = self._store.get_batch(batch_id)
            if canceled == 0 and is_terminal_batch_status(Status(current_batch.status)):
                # finished on its own after the first check
                raise ValidationError(f"cannot cancel batch {batch_id} with status {current_batch.status}")
            statuses = [Status(status) for status in self._store.batch_task_statuses(batch_id)]
            counters = counters_from_statuses(statuses)
            final = replace(current_batch.with_counters(counters), status=Status.FAILED.value, updated_at=_utc_now())
            self._store.put_batch(final)
            if current_batch.status != Status.FAILED.value:
                self._record_batch_status_changed(final, Status(current_batch.status))

        logger.info("task_lifecycle event=batch_canceled batch_id=%s canceled_tasks=%s", batch_id, canceled)
        self._publish()
        return self._store.to_batch_read(final)

    def _insert_task(
        self,
        *,
        batch: _BatchRecord | None,
        task_type: TaskType,
        parsed_input: TaskInput,
        priority: int | None,
        max_retries: int | None,
        meeting_record_id: str | None,
        depends_on: list[int],
    ) -> _TaskRecord:
        default_priority = batch.priority if batch is not None else 0
        record = self._store.insert_task(
            batch_id=batch.id if batch is not None else None,
            task_type=task_type.value,
            priority=priority if priority is not None else default_priority,
            max_retries=max_retries if max_retries is not None else self._default_max_retries,
            input=parsed_input.model_dump(exclude_none=True),
            meeting_record_id=meeting_record_id or parsed_input.meeting_record_id,
            depends_on=depends_on,
        )
        if batch is not None:
            self._apply_batch_transition(batch.id, None, Status.QUEUED)
        return record

    def _apply_batch_transition(
        self,
        batch_id: int,
        previous: Status | None,
        current: Status,
        *,
        derive: bool = True,
    ) -> None:
        batch = self._store.get_batch(batch_id)
        counters = apply_counter_delta(batch.counters, previous, current)
        if not counters_consistent(counters):
            logger.error(
                "task_lifecycle event=counter_violation batch_id=%s counters=%s",
                batch_id,
                counters.model_dump(),
            )
            raise StoreError(f"batch {batch_id} counters would become inconsistent")

        status = Status(batch.status)
        if derive:
            status = derive_batch_status(counters, status)
        updated = replace(batch.with_counters(counters), status=status.value, updated_at=_utc_now())
        self._store.put_batch(updated)
        if status.value != batch.status:
            self._record_batch_status_changed(updated, Status(batch.status))

    def _record_batch_status_changed(self, batch: _BatchRecord, previous: Status) -> None:
        self._store.append_event(
            event_type=EventType.BATCH_STATUS_CHANGED,
            batch_id=batch.id,
            payload={
                "batchId": batch.id,
                "status": batch.status,
                "previousStatus": previous.value,
                "taskSummary": batch.counters.model_dump(),
                "timestamp": batch.updated_at,
            },
        )

    def _record_task_completed(self, task: _TaskRecord) -> None:
        payload: dict[str, Any] = {
            "batchId": task.batch_id,
            "taskId": task.id,
            "taskType": task.task_type,
            "success": task.status == Status.COMPLETED.value,
            "errorMessage": task.error,
            "resourceIds": resource_ids(task.output),
            "meetingRecordId": task.meeting_record_id,
            "timestamp": task.completed_at,
        }
        self._store.append_event(
            event_type=EventType.TASK_COMPLETED,
            batch_id=task.batch_id,
            task_id=task.id,
            payload=payload,
        )

    def _record_ready_if_ready(self, task: _TaskRecord) -> None:
        if self._resolver.is_ready(task.id):
            self._record_ready(task)

    def _record_ready(self, task: _TaskRecord) -> None:
        self._store.append_event(
            event_type=EventType.TASK_READY,
            batch_id=task.batch_id,
            task_id=task.id,
            payload={"taskId": task.id, "batchId": task.batch_id, "taskType": task.task_type},
        )

    def _publish(self) -> None:
        if self._bus is None:
            return
        try:
            self._bus.publish_pending()
        except Exception:  # noqa: BLE001
            logger.exception("task_lifecycle event=publish_failed")


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
