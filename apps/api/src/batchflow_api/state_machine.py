from __future__ import annotations

from batchflow_api.schemas import TASK_STATUSES, TERMINAL_BATCH_STATUSES, BatchCounters, Status
from batchflow_api.store import ValidationError

_ALLOWED_TRANSITIONS: dict[Status, frozenset[Status]] = {
    Status.QUEUED: frozenset({Status.PROCESSING}),
    Status.PROCESSING: frozenset({Status.COMPLETED, Status.FAILED}),
    Status.COMPLETED: frozenset(),
    Status.FAILED: frozenset(),
}

_CANCELABLE = frozenset({Status.QUEUED, Status.PROCESSING})

_COUNTER_FIELDS: dict[Status, str] = {
    Status.QUEUED: "queued",
    Status.PROCESSING: "processing",
    Status.COMPLETED: "completed",
    Status.FAILED: "failed",
}


def validate_task_status(status: Status) -> None:
    if status not in TASK_STATUSES:
        raise ValidationError(f"status '{status.value}' is not valid for a task")


def validate_transition(current: Status, target: Status) -> None:
    """Reject anything but the forward task lifecycle.

    FAILED -> QUEUED exists only through `can_retry` and the retry operation.
    """
    validate_task_status(target)
    if target not in _ALLOWED_TRANSITIONS[current]:
        raise ValidationError(f"invalid task status transition: {current.value} -> {target.value}")


def can_cancel(status: Status) -> bool:
    return status in _CANCELABLE


def can_retry(status: Status, retry_count: int, max_retries: int) -> bool:
    return status == Status.FAILED and retry_count < max_retries


def apply_counter_delta(counters: BatchCounters, previous: Status | None, current: Status) -> BatchCounters:
    """Move one task between counter buckets; `previous=None` adds a new task."""
    updated = counters.model_copy()
    if previous is None:
        updated.total += 1
    else:
        field_name = _COUNTER_FIELDS[previous]
        setattr(updated, field_name, getattr(updated, field_name) - 1)
    field_name = _COUNTER_FIELDS[current]
    setattr(updated, field_name, getattr(updated, field_name) + 1)
    return updated


def counters_from_statuses(statuses: list[Status]) -> BatchCounters:
    counters = BatchCounters()
    for status in statuses:
        counters = apply_counter_delta(counters, None, status)
    return counters


def counters_consistent(counters: BatchCounters) -> bool:
    parts = (counters.queued, counters.processing, counters.completed, counters.failed)
    return counters.total == sum(parts) and min(parts) >= 0


def derive_batch_status(counters: BatchCounters, current: Status) -> Status:
    finished = counters.completed + counters.failed
    if counters.total > 0 and finished == counters.total:
        if counters.failed == 0:
            return Status.COMPLETED
        if counters.completed == 0:
            return Status.FAILED
        return Status.COMPLETED_WITH_ERRORS

    if current == Status.QUEUED and counters.processing == 0 and finished == 0:
        return Status.QUEUED
    return Status.PROCESSING


def is_terminal_batch_status(status: Status) -> bool:
    return status in TERMINAL_BATCH_STATUSES
