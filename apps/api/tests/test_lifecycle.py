import pytest

from batchflow_api.lifecycle import CANCELED_ERROR, TaskLifecycleManager
from batchflow_api.schemas import (
    BatchCreate,
    BatchTaskCreate,
    BatchType,
    EventType,
    Status,
    TaskCreate,
    TaskStatusUpdate,
    TaskType,
)
from batchflow_api.store import ConflictError, NotFoundError, ValidationError


def _batch(lifecycle: TaskLifecycleManager, batch_type: BatchType = BatchType.MEDIA, priority: int = 0) -> int:
    return lifecycle.create_batch(BatchCreate(name="council meeting", batch_type=batch_type, priority=priority)).id


def _task(
    lifecycle: TaskLifecycleManager,
    batch_id: int | None,
    *,
    depends_on: list[int] | None = None,
    priority: int | None = None,
    max_retries: int | None = None,
) -> int:
    return lifecycle.create_task(
        TaskCreate(
            batch_id=batch_id,
            task_type=TaskType.VIDEO_DOWNLOAD,
            input={"url": "https://media.test/meeting.mp4"},
            depends_on=depends_on or [],
            priority=priority,
            max_retries=max_retries,
        )
    ).id


def _run(lifecycle: TaskLifecycleManager, task_id: int, status: Status, **kwargs) -> None:  # noqa: ANN003
    lifecycle.claim_task(task_id)
    lifecycle.update_task_status(task_id, TaskStatusUpdate(status=status, **kwargs))


def test_create_task_increments_batch_counters(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle, priority=5)
    task_id = _task(lifecycle, batch_id)

    status = lifecycle.get_batch_status(batch_id, include_tasks=True)
    assert status.batch.counters.total == 1
    assert status.batch.counters.queued == 1
    assert status.batch.status == Status.QUEUED
    assert [task.id for task in status.tasks or []] == [task_id]
    assert status.tasks[0].priority == 5
    assert status.tasks[0].max_retries == 3


def test_create_task_requires_existing_batch_and_valid_input(lifecycle: TaskLifecycleManager) -> None:
    with pytest.raises(NotFoundError):
        _task(lifecycle, 999)

    batch_id = _batch(lifecycle)
    with pytest.raises(ValidationError):
        lifecycle.create_task(TaskCreate(batch_id=batch_id, task_type=TaskType.VIDEO_DOWNLOAD, input=None))
    with pytest.raises(ValidationError):
        lifecycle.create_task(
            TaskCreate(batch_id=batch_id, task_type=TaskType.AUDIO_TRANSCRIBE, input={"url": "https://x.test"})
        )

    assert lifecycle.get_batch_status(batch_id).batch.counters.total == 0


def test_create_task_with_unknown_dependency_leaves_no_partial_state(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    with pytest.raises(NotFoundError):
        _task(lifecycle, batch_id, depends_on=[12345])

    batch = lifecycle.get_batch_status(batch_id).batch
    assert batch.counters.total == 0
    assert lifecycle.store.list_events(event_type=EventType.TASK_READY.value) == []


def test_dependent_task_becomes_ready_after_dependency_completes(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    task_a = _task(lifecycle, batch_id)
    task_b = _task(lifecycle, batch_id, depends_on=[task_a])

    assert [task.id for task in lifecycle.list_next_ready_tasks()] == [task_a]

    lifecycle.claim_task(task_a)
    result = lifecycle.update_task_status(
        task_a,
        TaskStatusUpdate(status=Status.COMPLETED, output={"video_id": "vid-1"}),
    )

    assert result.changed is True
    assert result.unblocked_task_ids == [task_b]
    assert [task.id for task in lifecycle.list_next_ready_tasks()] == [task_b]


def test_failed_dependency_blocks_dependent_until_retried(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    task_a = _task(lifecycle, batch_id)
    task_b = _task(lifecycle, batch_id, depends_on=[task_a])

    _run(lifecycle, task_a, Status.FAILED, error="download timed out")
    assert lifecycle.list_next_ready_tasks() == []
    with pytest.raises(ConflictError):
        lifecycle.claim_task(task_b)

    retried = lifecycle.retry_failed_tasks(batch_id)
    assert retried.retried_task_ids == [task_a]
    _run(lifecycle, task_a, Status.COMPLETED)

    assert [task.id for task in lifecycle.list_next_ready_tasks()] == [task_b]


def test_ready_tasks_are_ordered_by_priority_then_creation(lifecycle: TaskLifecycleManager) -> None:
    low = _task(lifecycle, None, priority=1)
    high = _task(lifecycle, None, priority=9)
    low_later = _task(lifecycle, None, priority=1)

    ready = lifecycle.list_next_ready_tasks(limit=2)
    assert [task.id for task in ready] == [high, low]
    assert [task.id for task in lifecycle.list_next_ready_tasks(limit=10)] == [high, low, low_later]


def test_ready_tasks_filter_by_task_type(lifecycle: TaskLifecycleManager) -> None:
    video = _task(lifecycle, None)
    doc = lifecycle.create_task(
        TaskCreate(task_type=TaskType.DOCUMENT_DOWNLOAD, input={"url": "https://docs.test/agenda.pdf"})
    ).id

    ready = lifecycle.list_next_ready_tasks(task_types=[TaskType.DOCUMENT_DOWNLOAD])
    assert [task.id for task in ready] == [doc]
    assert video not in [task.id for task in ready]


@pytest.mark.parametrize(
    ("outcomes", "expected"),
    [
        ([Status.COMPLETED, Status.COMPLETED, Status.FAILED], Status.COMPLETED_WITH_ERRORS),
        ([Status.COMPLETED, Status.COMPLETED, Status.COMPLETED], Status.COMPLETED),
        ([Status.FAILED, Status.FAILED, Status.FAILED], Status.FAILED),
    ],
)
def test_batch_terminal_status_is_derived_from_counters(
    lifecycle: TaskLifecycleManager,
    outcomes: list[Status],
    expected: Status,
) -> None:
    batch_id = _batch(lifecycle)
    task_ids = [_task(lifecycle, batch_id) for _ in outcomes]
    for task_id, outcome in zip(task_ids, outcomes):
        _run(lifecycle, task_id, outcome)

    batch = lifecycle.get_batch_status(batch_id).batch
    assert batch.status == expected
    counters = batch.counters
    assert counters.total == counters.queued + counters.processing + counters.completed + counters.failed
    assert counters.queued == 0 and counters.processing == 0


def test_repeated_status_update_is_a_noop(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    task_id = _task(lifecycle, batch_id)
    _run(lifecycle, task_id, Status.COMPLETED)
    events_before = lifecycle.store.list_events(limit=1000)
    counters_before = lifecycle.get_batch_status(batch_id).batch.counters

    result = lifecycle.update_task_status(task_id, TaskStatusUpdate(status=Status.COMPLETED))

    assert result.changed is False
    assert lifecycle.get_batch_status(batch_id).batch.counters == counters_before
    assert lifecycle.store.list_events(limit=1000) == events_before


def test_invalid_transition_is_rejected_without_side_effects(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    task_id = _task(lifecycle, batch_id)

    with pytest.raises(ValidationError):
        lifecycle.update_task_status(task_id, TaskStatusUpdate(status=Status.COMPLETED))

    assert lifecycle.get_task(task_id).status == Status.QUEUED
    assert lifecycle.get_batch_status(batch_id).batch.counters.queued == 1


def test_claim_is_exclusive(lifecycle: TaskLifecycleManager) -> None:
    task_id = _task(lifecycle, None)
    claimed = lifecycle.claim_task(task_id)

    assert claimed.status == Status.PROCESSING
    assert claimed.started_at is not None
    with pytest.raises(ConflictError):
        lifecycle.claim_task(task_id)


def test_retry_never_exceeds_max_retries(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    task_id = _task(lifecycle, batch_id, max_retries=1)
    _run(lifecycle, task_id, Status.FAILED, error="boom")

    first = lifecycle.retry_failed_tasks(batch_id)
    assert first.retried_task_ids == [task_id]
    task = lifecycle.get_task(task_id)
    assert task.status == Status.QUEUED
    assert task.retry_count == 1
    assert task.error is None
    assert task.completed_at is None
    assert lifecycle.get_batch_status(batch_id).batch.status == Status.PROCESSING

    _run(lifecycle, task_id, Status.FAILED, error="boom again")
    second = lifecycle.retry_failed_tasks(batch_id)

    assert second.retried_count == 0
    assert lifecycle.get_task(task_id).status == Status.FAILED
    assert lifecycle.get_batch_status(batch_id).batch.status == Status.FAILED


def test_cancel_fails_active_tasks_and_batch(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    queued = _task(lifecycle, batch_id)
    processing = _task(lifecycle, batch_id)
    lifecycle.claim_task(processing)

    batch = lifecycle.cancel_batch(batch_id)

    assert batch.status == Status.FAILED
    assert batch.counters.queued == 0
    assert batch.counters.processing == 0
    assert batch.counters.failed == 2
    for task_id in (queued, processing):
        task = lifecycle.get_task(task_id)
        assert task.status == Status.FAILED
        assert task.error == CANCELED_ERROR
    status_events = lifecycle.store.list_events(batch_id=batch_id, event_type=EventType.BATCH_STATUS_CHANGED.value)
    assert status_events[-1].payload["status"] == Status.FAILED.value


def test_cancel_rejects_terminal_batch(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    task_id = _task(lifecycle, batch_id)
    _run(lifecycle, task_id, Status.COMPLETED)

    with pytest.raises(ValidationError):
        lifecycle.cancel_batch(batch_id)


def test_report_after_cancel_is_rejected(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    task_id = _task(lifecycle, batch_id)
    lifecycle.claim_task(task_id)
    lifecycle.cancel_batch(batch_id)

    with pytest.raises(ValidationError):
        lifecycle.update_task_status(task_id, TaskStatusUpdate(status=Status.COMPLETED))


def test_create_batch_with_indexed_initial_tasks(lifecycle: TaskLifecycleManager) -> None:
    batch = lifecycle.create_batch(
        BatchCreate(
            name="transcription run",
            batch_type=BatchType.TRANSCRIPTION,
            metadata={"audio_count": 1, "options": {"language": "en"}},
            tasks=[
                BatchTaskCreate(task_type=TaskType.SPEAKER_DIARIZE, input={}, depends_on_indexes=[1]),
                BatchTaskCreate(task_type=TaskType.AUDIO_TRANSCRIBE, input={"audio_file_id": "audio-7"}),
            ],
        )
    )

    assert batch.counters.total == 2
    assert batch.metadata["audio_count"] == 1
    ready = lifecycle.list_next_ready_tasks()
    assert [task.task_type for task in ready] == [TaskType.AUDIO_TRANSCRIBE]

    status = lifecycle.get_batch_status(batch.id, include_tasks=True)
    diarize = next(task for task in status.tasks or [] if task.task_type == TaskType.SPEAKER_DIARIZE)
    assert diarize.depends_on == [ready[0].id]

    created = lifecycle.store.list_events(batch_id=batch.id, event_type=EventType.BATCH_CREATED.value)
    assert created[0].payload["taskCount"] == 2


def test_create_batch_rejects_cyclic_initial_tasks(lifecycle: TaskLifecycleManager) -> None:
    with pytest.raises(ValidationError):
        lifecycle.create_batch(
            BatchCreate(
                batch_type=BatchType.DOCUMENT,
                tasks=[
                    BatchTaskCreate(task_type=TaskType.DOCUMENT_DOWNLOAD, input={}, depends_on_indexes=[1]),
                    BatchTaskCreate(task_type=TaskType.DOCUMENT_PARSE, input={}, depends_on_indexes=[0]),
                ],
            )
        )

    assert lifecycle.list_batches().total == 0


def test_task_completed_event_carries_resource_ids(lifecycle: TaskLifecycleManager) -> None:
    batch_id = _batch(lifecycle)
    task_id = _task(lifecycle, batch_id)
    _run(
        lifecycle,
        task_id,
        Status.COMPLETED,
        output={"video_id": "vid-9", "audio_id": "aud-9", "duration": 3600},
    )

    events = lifecycle.store.list_events(task_id=task_id, event_type=EventType.TASK_COMPLETED.value)
    assert len(events) == 1
    assert events[0].payload["success"] is True
    assert events[0].payload["resourceIds"] == {"video_id": "vid-9", "audio_id": "aud-9"}


def test_list_batches_filters_and_orders(lifecycle: TaskLifecycleManager) -> None:
    low = _batch(lifecycle, BatchType.MEDIA, priority=1)
    high = _batch(lifecycle, BatchType.DOCUMENT, priority=7)

    listing = lifecycle.list_batches()
    assert [item.id for item in listing.items] == [high, low]
    assert listing.total == 2

    media_only = lifecycle.list_batches(batch_type=BatchType.MEDIA)
    assert [item.id for item in media_only.items] == [low]


def test_cancel_rejects_batch_that_completes_during_cancel(
    lifecycle: TaskLifecycleManager, monkeypatch: pytest.MonkeyPatch
) -> None:
    batch_id = _batch(lifecycle)
    task_id = _task(lifecycle, batch_id)
    lifecycle.claim_task(task_id)
    original = lifecycle.store.list_batch_tasks

    def finish_first(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        monkeypatch.setattr(lifecycle.store, "list_batch_tasks", original)
        lifecycle.update_task_status(task_id, TaskStatusUpdate(status=Status.COMPLETED))
        return original(*args, **kwargs)

    monkeypatch.setattr(lifecycle.store, "list_batch_tasks", finish_first)

    with pytest.raises(ValidationError):
        lifecycle.cancel_batch(batch_id)

    batch = lifecycle.get_batch_status(batch_id).batch
    assert batch.status == Status.COMPLETED
    assert batch.counters.failed == 0
    status_events = lifecycle.store.list_events(batch_id=batch_id, event_type=EventType.BATCH_STATUS_CHANGED.value)
    statuses = [event.payload["status"] for event in status_events]
    assert statuses[-1] == Status.COMPLETED.value
    assert Status.FAILED.value not in statuses


def test_list_active_batches_groups_by_type(lifecycle: TaskLifecycleManager) -> None:
    media_first = _batch(lifecycle, BatchType.MEDIA, priority=1)
    media_second = _batch(lifecycle, BatchType.MEDIA, priority=5)
    _batch(lifecycle, BatchType.MEDIA, priority=0)
    document = _batch(lifecycle, BatchType.DOCUMENT)
    _task(lifecycle, document)
    done = _batch(lifecycle, BatchType.DOCUMENT)
    _run(lifecycle, _task(lifecycle, done), Status.COMPLETED)

    active = lifecycle.list_active_batches(limit_per_type=2).active_batches

    assert sorted(active) == [BatchType.DOCUMENT.value, BatchType.MEDIA.value]
    assert [item.id for item in active[BatchType.MEDIA.value]] == [media_second, media_first]
    assert [item.id for item in active[BatchType.DOCUMENT.value]] == [document]

    completed = lifecycle.list_active_batches(status=Status.COMPLETED).active_batches
    assert {key: [item.id for item in value] for key, value in completed.items()} == {BatchType.DOCUMENT.value: [done]}
