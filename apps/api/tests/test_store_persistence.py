from datetime import datetime, timezone
from pathlib import Path

import pytest

from batchflow_api.engine import build_engine
from batchflow_api.events import EventBus
from batchflow_api.lifecycle import TaskLifecycleManager
from batchflow_api.schemas import (
    BatchCreate,
    BatchTaskCreate,
    BatchType,
    EventRead,
    EventType,
    Status,
    TaskCreate,
    TaskStatusUpdate,
    TaskType,
    WebhookCreate,
)
from batchflow_api.settings import Settings
from batchflow_api.store import InMemoryStore, StoreError


def test_store_restores_snapshot_from_state_file(tmp_path: Path, fake_post) -> None:  # noqa: ANN001
    state_file = tmp_path / "batchflow-state.json"
    fake_post([503])

    first = build_engine(Settings(state_file=str(state_file)))
    webhook = first.webhooks.register_webhook(
        WebhookCreate(name="sink", url="https://hooks.test/in", secret="s3", event_types=["batch-created"])
    )
    batch = first.lifecycle.create_batch(
        BatchCreate(
            name="persisted",
            batch_type=BatchType.MEDIA,
            priority=4,
            tasks=[
                BatchTaskCreate(task_type=TaskType.VIDEO_DOWNLOAD, input={"url": "https://media.test/a.mp4"}),
                BatchTaskCreate(task_type=TaskType.AUDIO_EXTRACT, input={}, depends_on_indexes=[0]),
            ],
        )
    )
    download = first.lifecycle.list_next_ready_tasks()[0]
    first.lifecycle.claim_task(download.id)
    first.lifecycle.update_task_status(
        download.id,
        TaskStatusUpdate(status=Status.COMPLETED, output={"video_id": "vid-1"}),
    )

    second = build_engine(Settings(state_file=str(state_file)))
    status = second.lifecycle.get_batch_status(batch.id, include_tasks=True)

    assert status.batch.name == "persisted"
    assert status.batch.status == Status.PROCESSING
    assert status.batch.counters.completed == 1
    assert status.batch.counters.queued == 1
    extract = next(task for task in status.tasks or [] if task.task_type == TaskType.AUDIO_EXTRACT)
    assert extract.depends_on == [download.id]
    assert [task.id for task in second.lifecycle.list_next_ready_tasks()] == [extract.id]

    restored_webhook = second.webhooks.get_webhook(webhook.id)
    assert restored_webhook.has_secret is True
    deliveries = second.webhooks.list_deliveries(webhook_id=webhook.id)
    assert len(deliveries) == 1
    assert deliveries[0].successful is False
    assert deliveries[0].response_status == 503

    assert second.store.list_events(limit=1000) == first.store.list_events(limit=1000)
    assert second.store.get_cursor("webhooks") == first.store.get_cursor("webhooks")
    # sequences continue after restart
    assert second.lifecycle.create_batch(BatchCreate(batch_type=BatchType.DOCUMENT)).id == batch.id + 1


def test_restarted_bus_does_not_redeliver_consumed_events(tmp_path: Path) -> None:
    state_file = tmp_path / "bus-state.json"
    first_store = InMemoryStore(state_file=str(state_file))
    first_bus = EventBus(first_store)
    seen_first: list[int] = []
    first_bus.subscribe("audit", lambda event: seen_first.append(event.id))
    lifecycle = TaskLifecycleManager(first_store, first_bus)
    lifecycle.create_batch(BatchCreate(batch_type=BatchType.MEDIA))

    second_store = InMemoryStore(state_file=str(state_file))
    second_bus = EventBus(second_store)
    seen_second: list[EventRead] = []
    second_bus.subscribe("audit", seen_second.append)

    assert len(seen_first) == 1
    assert second_bus.publish_pending() == 0
    assert seen_second == []


def test_persist_failure_rolls_back_and_raises_store_error(tmp_path: Path) -> None:
    blocker = tmp_path / "not-a-directory"
    blocker.write_text("x", encoding="utf-8")
    store = InMemoryStore(state_file=str(blocker / "state.json"))

    with pytest.raises(StoreError):
        store.insert_batch(name="lost", batch_type="media", priority=0, metadata={})

    assert store.list_batches() == ([], 0)


def test_unserializable_output_raises_store_error_and_rolls_back(tmp_path: Path) -> None:
    lifecycle = TaskLifecycleManager(InMemoryStore(state_file=str(tmp_path / "state.json")))
    task = lifecycle.create_task(TaskCreate(task_type=TaskType.VIDEO_DOWNLOAD, input={}))
    lifecycle.claim_task(task.id)

    with pytest.raises(StoreError):
        lifecycle.update_task_status(
            task.id,
            TaskStatusUpdate(status=Status.COMPLETED, output={"finished_at": datetime.now(timezone.utc)}),
        )

    assert lifecycle.get_task(task.id).status == Status.PROCESSING
    restored = InMemoryStore(state_file=str(tmp_path / "state.json"))
    assert restored.get_task(task.id).status == Status.PROCESSING.value


def test_compacted_log_keeps_event_ids_across_restart(tmp_path: Path) -> None:
    state_file = str(tmp_path / "state.json")
    store = InMemoryStore(state_file=state_file, event_retention=2)
    for _ in range(4):
        store.append_event(event_type=EventType.BATCH_CREATED, batch_id=1, payload={"batchId": 1})
    store.compact_events()

    restored = InMemoryStore(state_file=state_file, event_retention=2)

    assert [event.id for event in restored.list_events(limit=100)] == [3, 4]
    assert restored.last_event_id() == 4
    assert restored.append_event(event_type=EventType.BATCH_CREATED, batch_id=1, payload={}).id == 5
