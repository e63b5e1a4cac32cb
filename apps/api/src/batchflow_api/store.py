from __future__ import annotations

import json
import logging
import threading
from bisect import bisect_left, insort
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from batchflow_api.schemas import (
    BatchCounters,
    BatchRead,
    EventRead,
    EventType,
    Status,
    TaskRead,
    WebhookDeliveryRead,
    WebhookRead,
)

logger = logging.getLogger(__name__)


class NotFoundError(Exception):
    pass


class ConflictError(Exception):
    pass


class ValidationError(Exception):
    pass


class StoreError(Exception):
    pass


_MISSING = object()


@dataclass
class _BatchRecord:
    id: int
    name: str | None
    batch_type: str
    status: str
    priority: int
    metadata: dict[str, Any]
    created_at: str
    updated_at: str
    total: int = 0
    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def counters(self) -> BatchCounters:
        return BatchCounters(
            total=self.total,
            queued=self.queued,
            processing=self.processing,
            completed=self.completed,
            failed=self.failed,
        )

    def with_counters(self, counters: BatchCounters) -> _BatchRecord:
        return replace(self, **counters.model_dump())


@dataclass
class _TaskRecord:
    id: int
    batch_id: int | None
    task_type: str
    priority: int
    max_retries: int
    input: dict[str, Any]
    created_at: str
    updated_at: str
    status: str = Status.QUEUED.value
    retry_count: int = 0
    output: dict[str, Any] | None = None
    error: str | None = None
    meeting_record_id: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


@dataclass
class _WebhookRecord:
    id: int
    name: str
    url: str
    secret: str | None
    event_types: list[str]
    active: bool
    created_at: str
    updated_at: str


@dataclass
class _DeliveryRecord:
    id: str
    webhook_id: int
    event_id: int | None
    event_type: str
    payload: dict[str, Any]
    scheduled_for: str
    created_at: str
    attempts: int = 0
    successful: bool = False
    response_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    last_attempted_at: str | None = None


@dataclass
class _Transaction:
    undo: list[Callable[[], None]] = field(default_factory=list)
    sequences: dict[str, int] = field(default_factory=dict)


class InMemoryStore:
    """Transactional tables for batches, tasks, webhooks and the event log.

    Every mutation goes through `transaction()`. Mutations are journaled and undone
    in reverse order if the block raises, so readers never observe a partial
    multi-row write. The snapshot file is rewritten when the outermost transaction
    commits.
    """

    def __init__(self, state_file: str | None = None, *, event_retention: int | None = 10_000) -> None:
        self._state_file = Path(state_file).expanduser() if state_file else None
        self._event_retention = event_retention
        self._lock = threading.RLock()
        self._tx: _Transaction | None = None
        self._batches: dict[int, _BatchRecord] = {}
        self._tasks: dict[int, _TaskRecord] = {}
        self._batch_tasks: dict[int, list[int]] = {}
        self._dependencies: dict[int, list[int]] = {}
        self._dependents: dict[int, list[int]] = {}
        self._queued_index: list[tuple[int, str, int]] = []
        self._webhooks: dict[int, _WebhookRecord] = {}
        self._deliveries: dict[str, _DeliveryRecord] = {}
        self._delivery_keys: dict[tuple[int, int], str] = {}
        self._events: list[EventRead] = []
        self._cursors: dict[str, int] = {}
        self._batch_seq = 1
        self._task_seq = 1
        self._webhook_seq = 1
        self._event_seq = 1
        self._load_state()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            if self._tx is not None:
                yield
                return

            self._tx = _Transaction(sequences=self._sequences())
            try:
                yield
                self._persist_state()
            except BaseException:
                self._rollback(self._tx)
                raise
            finally:
                self._tx = None

    @contextmanager
    def locked(self) -> Iterator[None]:
        with self._lock:
            yield

    # batches

    def insert_batch(
        self,
        *,
        name: str | None,
        batch_type: str,
        priority: int,
        metadata: dict[str, Any],
    ) -> _BatchRecord:
        with self.transaction():
            now = self._utc_now()
            record = _BatchRecord(
                id=self._batch_seq,
                name=name,
                batch_type=batch_type,
                status=Status.QUEUED.value,
                priority=priority,
                metadata=dict(metadata),
                created_at=now,
                updated_at=now,
            )
            self._batch_seq += 1
            self._write(self._batches, record.id, record)
            self._write(self._batch_tasks, record.id, [])
            return replace(record)

    def get_batch(self, batch_id: int) -> _BatchRecord:
        record = self.find_batch(batch_id)
        if record is None:
            raise NotFoundError(f"batch {batch_id} not found")
        return record

    def find_batch(self, batch_id: int) -> _BatchRecord | None:
        with self._lock:
            record = self._batches.get(batch_id)
            return replace(record) if record is not None else None

    def put_batch(self, record: _BatchRecord) -> None:
        with self.transaction():
            if record.id not in self._batches:
                raise NotFoundError(f"batch {record.id} not found")
            self._write(self._batches, record.id, replace(record))

    def list_batches(
        self,
        *,
        status: str | None = None,
        exclude_statuses: set[str] | None = None,
        batch_type: str | None = None,
        limit: int | None = 10,
        offset: int = 0,
    ) -> tuple[list[_BatchRecord], int]:
        with self._lock:
            filtered = [
                record
                for record in self._batches.values()
                if (status is None or record.status == status)
                and (exclude_statuses is None or record.status not in exclude_statuses)
                and (batch_type is None or record.batch_type == batch_type)
            ]
        filtered.sort(key=lambda item: (item.created_at, item.id), reverse=True)
        filtered.sort(key=lambda item: item.priority, reverse=True)
        page = filtered[offset:] if limit is None else filtered[offset : offset + limit]
        return [replace(record) for record in page], len(filtered)

    def batch_task_statuses(self, batch_id: int) -> list[str]:
        with self._lock:
            return [self._tasks[task_id].status for task_id in self._batch_tasks.get(batch_id, [])]

    # tasks

    def insert_task(
        self,
        *,
        batch_id: int | None,
        task_type: str,
        priority: int,
        max_retries: int,
        input: dict[str, Any],
        meeting_record_id: str | None = None,
        depends_on: list[int] | None = None,
    ) -> _TaskRecord:
        with self.transaction():
            if batch_id is not None and batch_id not in self._batches:
                raise NotFoundError(f"batch {batch_id} not found")
            dependency_ids: list[int] = []
            for dependency_id in depends_on or []:
                if dependency_id not in self._tasks:
                    raise NotFoundError(f"dependency task {dependency_id} not found")
                if dependency_id not in dependency_ids:
                    dependency_ids.append(dependency_id)

            now = self._utc_now()
            record = _TaskRecord(
                id=self._task_seq,
                batch_id=batch_id,
                task_type=task_type,
                priority=priority,
                max_retries=max_retries,
                input=dict(input),
                meeting_record_id=meeting_record_id,
                created_at=now,
                updated_at=now,
            )
            self._task_seq += 1
            self._write_task(record)
            if batch_id is not None:
                self._append_to(self._batch_tasks, batch_id, record.id)
            for dependency_id in dependency_ids:
                self._append_to(self._dependencies, record.id, dependency_id)
                self._append_to(self._dependents, dependency_id, record.id)
            return replace(record)

    def get_task(self, task_id: int) -> _TaskRecord:
        record = self.find_task(task_id)
        if record is None:
            raise NotFoundError(f"task {task_id} not found")
        return record

    def find_task(self, task_id: int) -> _TaskRecord | None:
        with self._lock:
            record = self._tasks.get(task_id)
            return replace(record) if record is not None else None

    def put_task(self, record: _TaskRecord) -> None:
        with self.transaction():
            if record.id not in self._tasks:
                raise NotFoundError(f"task {record.id} not found")
            self._write_task(replace(record))

    def claim_task(self, task_id: int, *, started_at: str) -> _TaskRecord | None:
        """Conditionally move a QUEUED task to PROCESSING.

        Returns None when the task is no longer QUEUED, which is the losing side of a
        concurrent claim.
        """
        with self.transaction():
            current = self._tasks.get(task_id)
            if current is None:
                raise NotFoundError(f"task {task_id} not found")
            if current.status != Status.QUEUED.value:
                return None
            claimed = replace(
                current,
                status=Status.PROCESSING.value,
                started_at=current.started_at or started_at,
                updated_at=started_at,
            )
            self._write_task(claimed)
            return replace(claimed)

    def list_batch_tasks(
        self,
        batch_id: int,
        *,
        statuses: set[str] | None = None,
        limit: int | None = None,
    ) -> list[_TaskRecord]:
        with self._lock:
            records = [
                self._tasks[task_id]
                for task_id in self._batch_tasks.get(batch_id, [])
                if statuses is None or self._tasks[task_id].status in statuses
            ]
        records.sort(key=self._index_key)
        if limit is not None:
            records = records[:limit]
        return [replace(record) for record in records]

    def iter_queued_tasks(self, task_types: set[str] | None = None) -> Iterator[_TaskRecord]:
        """Yield QUEUED tasks in dispatch order. Callers hold `locked()` while iterating."""
        for _, _, task_id in list(self._queued_index):
            record = self._tasks[task_id]
            if task_types is not None and record.task_type not in task_types:
                continue
            yield record

    def dependencies_of(self, task_id: int) -> list[int]:
        with self._lock:
            return list(self._dependencies.get(task_id, []))

    def dependents_of(self, task_id: int) -> list[int]:
        with self._lock:
            return list(self._dependents.get(task_id, []))

    def task_statuses(self, task_ids: list[int]) -> dict[int, str]:
        with self._lock:
            return {task_id: self._tasks[task_id].status for task_id in task_ids if task_id in self._tasks}

    # webhooks

    def insert_webhook(
        self,
        *,
        name: str,
        url: str,
        secret: str | None,
        event_types: list[str],
    ) -> _WebhookRecord:
        with self.transaction():
            now = self._utc_now()
            record = _WebhookRecord(
                id=self._webhook_seq,
                name=name,
                url=url,
                secret=secret,
                event_types=list(event_types),
                active=True,
                created_at=now,
                updated_at=now,
            )
            self._webhook_seq += 1
            self._write(self._webhooks, record.id, record)
            return replace(record)

    def get_webhook(self, webhook_id: int) -> _WebhookRecord:
        with self._lock:
            record = self._webhooks.get(webhook_id)
            if record is None:
                raise NotFoundError(f"webhook {webhook_id} not found")
            return replace(record)

    def put_webhook(self, record: _WebhookRecord) -> None:
        with self.transaction():
            if record.id not in self._webhooks:
                raise NotFoundError(f"webhook {record.id} not found")
            self._write(self._webhooks, record.id, replace(record))

    def delete_webhook(self, webhook_id: int) -> None:
        with self.transaction():
            if webhook_id not in self._webhooks:
                raise NotFoundError(f"webhook {webhook_id} not found")
            self._write(self._webhooks, webhook_id, _MISSING)

    def list_webhooks(
        self,
        *,
        active_only: bool = True,
        limit: int = 10,
        offset: int = 0,
    ) -> tuple[list[_WebhookRecord], int]:
        with self._lock:
            filtered = [record for record in self._webhooks.values() if record.active or not active_only]
        filtered.sort(key=lambda item: (item.created_at, item.id), reverse=True)
        return [replace(record) for record in filtered[offset : offset + limit]], len(filtered)

    def webhooks_for_event(self, event_type: str) -> list[_WebhookRecord]:
        with self._lock:
            return [
                replace(record)
                for record in sorted(self._webhooks.values(), key=lambda item: item.id)
                if record.active and event_type in record.event_types
            ]

    # webhook deliveries

    def insert_delivery(self, record: _DeliveryRecord) -> None:
        with self.transaction():
            if record.id in self._deliveries:
                raise ConflictError(f"delivery {record.id} already exists")
            if record.event_id is not None:
                key = (record.webhook_id, record.event_id)
                if key in self._delivery_keys:
                    raise ConflictError(
                        f"delivery for webhook {record.webhook_id} and event {record.event_id} already exists"
                    )
                self._write(self._delivery_keys, key, record.id)
            self._write(self._deliveries, record.id, replace(record))

    def put_delivery(self, record: _DeliveryRecord) -> None:
        with self.transaction():
            if record.id not in self._deliveries:
                raise NotFoundError(f"delivery {record.id} not found")
            self._write(self._deliveries, record.id, replace(record))

    def get_delivery(self, delivery_id: str) -> _DeliveryRecord:
        with self._lock:
            record = self._deliveries.get(delivery_id)
            if record is None:
                raise NotFoundError(f"delivery {delivery_id} not found")
            return replace(record)

    def has_delivery_for(self, webhook_id: int, event_id: int) -> bool:
        with self._lock:
            return (webhook_id, event_id) in self._delivery_keys

    def pending_deliveries(self, *, max_attempts: int, limit: int) -> list[_DeliveryRecord]:
        """Unsuccessful deliveries under the attempt ceiling whose webhook is still active."""
        with self._lock:
            candidates = [
                record
                for record in self._deliveries.values()
                if not record.successful
                and record.attempts < max_attempts
                and record.webhook_id in self._webhooks
                and self._webhooks[record.webhook_id].active
            ]
        candidates.sort(key=lambda item: (item.scheduled_for, item.created_at))
        return [replace(record) for record in candidates[:limit]]

    def list_deliveries(
        self,
        *,
        webhook_id: int | None = None,
        successful: bool | None = None,
        min_attempts: int | None = None,
        limit: int = 50,
    ) -> list[_DeliveryRecord]:
        with self._lock:
            filtered = [
                record
                for record in self._deliveries.values()
                if (webhook_id is None or record.webhook_id == webhook_id)
                and (successful is None or record.successful == successful)
                and (min_attempts is None or record.attempts >= min_attempts)
            ]
        filtered.sort(key=lambda item: item.created_at, reverse=True)
        return [replace(record) for record in filtered[:limit]]

    # event log

    def append_event(
        self,
        *,
        event_type: EventType,
        batch_id: int | None = None,
        task_id: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> EventRead:
        with self.transaction():
            event = EventRead(
                id=self._event_seq,
                event_type=event_type,
                batch_id=batch_id,
                task_id=task_id,
                payload=payload or {},
                created_at=self._utc_now(),
            )
            self._event_seq += 1
            self._events.append(event)
            self._journal(self._events.pop)
            return event

    def list_events(
        self,
        *,
        batch_id: int | None = None,
        task_id: int | None = None,
        event_type: str | None = None,
        after_id: int = 0,
        limit: int = 200,
    ) -> list[EventRead]:
        with self._lock:
            start = bisect_left(self._events, after_id + 1, key=lambda event: event.id)
            filtered: list[EventRead] = []
            for event in self._events[start:]:
                if batch_id is not None and event.batch_id != batch_id:
                    continue
                if task_id is not None and event.task_id != task_id:
                    continue
                if event_type is not None and event.event_type != event_type:
                    continue
                filtered.append(event)
                if len(filtered) >= limit:
                    break
            return filtered

    def compact_events(self) -> int:
        """Drop the oldest events every subscriber has consumed, keeping at least `event_retention`."""
        if self._event_retention is None:
            return 0
        with self.transaction():
            excess = len(self._events) - self._event_retention
            if excess <= 0:
                return 0
            consumed = min(self._cursors.values(), default=self._event_seq - 1)
            removable = bisect_left(self._events, consumed + 1, key=lambda event: event.id)
            count = min(excess, removable)
            if count <= 0:
                return 0
            removed = self._events[:count]
            del self._events[:count]
            self._journal(lambda: self._restore_events(removed))
        logger.debug("store event=events_compacted removed=%s retained=%s", count, len(self._events))
        return count

    def last_event_id(self) -> int:
        with self._lock:
            return self._event_seq - 1

    def get_cursor(self, subscriber: str) -> int | None:
        with self._lock:
            return self._cursors.get(subscriber)

    def set_cursor(self, subscriber: str, event_id: int) -> None:
        with self.transaction():
            self._write(self._cursors, subscriber, event_id)

    # converters

    @staticmethod
    def to_batch_read(record: _BatchRecord) -> BatchRead:
        return BatchRead(
            id=record.id,
            name=record.name,
            batch_type=record.batch_type,
            status=record.status,
            priority=record.priority,
            counters=record.counters,
            metadata=record.metadata,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def to_task_read(self, record: _TaskRecord) -> TaskRead:
        return TaskRead(
            id=record.id,
            batch_id=record.batch_id,
            task_type=record.task_type,
            status=record.status,
            priority=record.priority,
            retry_count=record.retry_count,
            max_retries=record.max_retries,
            input=record.input,
            output=record.output,
            error=record.error,
            meeting_record_id=record.meeting_record_id,
            depends_on=self.dependencies_of(record.id),
            started_at=record.started_at,
            completed_at=record.completed_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def to_webhook_read(record: _WebhookRecord) -> WebhookRead:
        return WebhookRead(
            id=record.id,
            name=record.name,
            url=record.url,
            event_types=record.event_types,
            active=record.active,
            has_secret=bool(record.secret),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    @staticmethod
    def to_delivery_read(record: _DeliveryRecord) -> WebhookDeliveryRead:
        return WebhookDeliveryRead(**record.__dict__)

    # internals

    def _journal(self, undo: Callable[[], None]) -> None:
        if self._tx is not None:
            self._tx.undo.append(undo)

    def _write(self, table: dict[Any, Any], key: Any, value: Any) -> None:
        previous = table.get(key, _MISSING)
        self._put_or_delete(table, key, value)
        self._journal(lambda: self._put_or_delete(table, key, previous))

    @staticmethod
    def _put_or_delete(table: dict[Any, Any], key: Any, value: Any) -> None:
        if value is _MISSING:
            table.pop(key, None)
        else:
            table[key] = value

    def _append_to(self, table: dict[int, list[int]], key: int, value: int) -> None:
        items = table.setdefault(key, [])
        items.append(value)
        self._journal(items.pop)

    def _write_task(self, record: _TaskRecord) -> None:
        previous = self._tasks.get(record.id)
        self._swap_task(previous, record)
        self._journal(lambda: self._swap_task(record, previous, task_id=record.id))

    def _swap_task(
        self,
        old: _TaskRecord | None,
        new: _TaskRecord | None,
        *,
        task_id: int | None = None,
    ) -> None:
        if old is not None and old.status == Status.QUEUED.value:
            key = self._index_key(old)
            position = bisect_left(self._queued_index, key)
            if position < len(self._queued_index) and self._queued_index[position] == key:
                del self._queued_index[position]
        if new is None:
            self._tasks.pop(task_id, None)
            return
        self._tasks[new.id] = new
        if new.status == Status.QUEUED.value:
            insort(self._queued_index, self._index_key(new))

    def _rollback(self, tx: _Transaction) -> None:
        for undo in reversed(tx.undo):
            undo()
        self._batch_seq = tx.sequences["batch_seq"]
        self._task_seq = tx.sequences["task_seq"]
        self._webhook_seq = tx.sequences["webhook_seq"]
        self._event_seq = tx.sequences["event_seq"]
        logger.debug("store event=rollback undone_writes=%s", len(tx.undo))

    def _restore_events(self, removed: list[EventRead]) -> None:
        self._events[:0] = removed

    def _sequences(self) -> dict[str, int]:
        return {
            "batch_seq": self._batch_seq,
            "task_seq": self._task_seq,
            "webhook_seq": self._webhook_seq,
            "event_seq": self._event_seq,
        }

    def _persist_state(self) -> None:
        if self._state_file is None:
            return

        snapshot = self._snapshot()
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            tmp_file = self._state_file.with_name(f"{self._state_file.name}.tmp")
            tmp_file.write_text(json.dumps(snapshot, ensure_ascii=True, sort_keys=True), encoding="utf-8")
            tmp_file.replace(self._state_file)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("store event=persist_failed state_file=%s error=%s", self._state_file, exc)
            raise StoreError("failed to persist store state") from exc

    def _load_state(self) -> None:
        if self._state_file is None or not self._state_file.exists():
            return

        raw = self._state_file.read_text(encoding="utf-8")
        data = json.loads(raw)
        self._batches = {
            int(key): _BatchRecord(**value)
            for key, value in data.get("batches", {}).items()
        }
        self._tasks = {
            int(key): _TaskRecord(**value)
            for key, value in data.get("tasks", {}).items()
        }
        self._batch_tasks = {
            int(key): [int(task_id) for task_id in value]
            for key, value in data.get("batch_tasks", {}).items()
        }
        self._dependencies = {
            int(key): [int(task_id) for task_id in value]
            for key, value in data.get("dependencies", {}).items()
        }
        self._dependents = {}
        for dependent_id, dependency_ids in self._dependencies.items():
            for dependency_id in dependency_ids:
                self._dependents.setdefault(dependency_id, []).append(dependent_id)
        self._queued_index = sorted(
            self._index_key(record)
            for record in self._tasks.values()
            if record.status == Status.QUEUED.value
        )
        self._webhooks = {
            int(key): _WebhookRecord(**value)
            for key, value in data.get("webhooks", {}).items()
        }
        self._deliveries = {
            str(key): _DeliveryRecord(**value)
            for key, value in data.get("deliveries", {}).items()
        }
        self._delivery_keys = {
            (record.webhook_id, record.event_id): record.id
            for record in self._deliveries.values()
            if record.event_id is not None
        }
        self._events = [EventRead(**event) for event in data.get("events", [])]
        self._cursors = {str(key): int(value) for key, value in data.get("cursors", {}).items()}

        sequences = data.get("sequences", {})
        self._batch_seq = int(sequences.get("batch_seq", 1))
        self._task_seq = int(sequences.get("task_seq", 1))
        self._webhook_seq = int(sequences.get("webhook_seq", 1))
        self._event_seq = int(sequences.get("event_seq", 1))
        logger.info(
            "store event=state_loaded state_file=%s batches=%s tasks=%s events=%s",
            self._state_file,
            len(self._batches),
            len(self._tasks),
            len(self._events),
        )

    def _snapshot(self) -> dict[str, Any]:
        return {
            "batches": {str(key): value.__dict__ for key, value in self._batches.items()},
            "tasks": {str(key): value.__dict__ for key, value in self._tasks.items()},
            "batch_tasks": {str(key): value for key, value in self._batch_tasks.items()},
            "dependencies": {str(key): value for key, value in self._dependencies.items()},
            "webhooks": {str(key): value.__dict__ for key, value in self._webhooks.items()},
            "deliveries": {key: value.__dict__ for key, value in self._deliveries.items()},
            "events": [event.model_dump(mode="json") for event in self._events],
            "cursors": dict(self._cursors),
            "sequences": self._sequences(),
        }

    @staticmethod
    def _index_key(record: _TaskRecord) -> tuple[int, str, int]:
        return (-record.priority, record.created_at, record.id)

    @staticmethod
    def _utc_now() -> str:
        return datetime.now(timezone.utc).isoformat()
