import pytest

from batchflow_api.schemas import EventType, Status
from batchflow_api.store import ConflictError, InMemoryStore, NotFoundError, _DeliveryRecord


def _insert_batch(store: InMemoryStore) -> int:
    return store.insert_batch(name="tx", batch_type="media", priority=0, metadata={}).id


def _insert_task(store: InMemoryStore, batch_id: int | None, *, priority: int = 0) -> int:
    return store.insert_task(
        batch_id=batch_id,
        task_type="video_download",
        priority=priority,
        max_retries=3,
        input={"url": "https://media.test/a.mp4"},
    ).id


def test_transaction_rolls_back_every_write_on_error() -> None:
    store = InMemoryStore()
    batch_id = _insert_batch(store)

    with pytest.raises(RuntimeError):
        with store.transaction():
            _insert_task(store, batch_id)
            store.append_event(event_type=EventType.TASK_READY, batch_id=batch_id, payload={})
            raise RuntimeError("abort")

    assert store.list_batch_tasks(batch_id) == []
    assert store.list_events() == []
    assert list(store.iter_queued_tasks()) == []
    # sequences are restored with the rows
    assert _insert_task(store, batch_id) == 1
    assert store.append_event(event_type=EventType.TASK_READY).id == 1


def test_nested_transaction_joins_outer_one() -> None:
    store = InMemoryStore()

    with pytest.raises(ValueError):
        with store.transaction():
            _insert_batch(store)
            with store.transaction():
                _insert_batch(store)
            raise ValueError("outer failure")

    assert store.list_batches() == ([], 0)


def test_claim_returns_none_for_non_queued_task() -> None:
    store = InMemoryStore()
    task_id = _insert_task(store, None)

    first = store.claim_task(task_id, started_at="2026-01-01T00:00:00+00:00")
    second = store.claim_task(task_id, started_at="2026-01-01T00:00:01+00:00")

    assert first is not None
    assert first.status == Status.PROCESSING.value
    assert second is None
    assert list(store.iter_queued_tasks()) == []
    with pytest.raises(NotFoundError):
        store.claim_task(404, started_at="2026-01-01T00:00:00+00:00")


def test_queued_index_orders_by_priority_then_age() -> None:
    store = InMemoryStore()
    first_low = _insert_task(store, None, priority=1)
    high = _insert_task(store, None, priority=5)
    second_low = _insert_task(store, None, priority=1)

    assert [record.id for record in store.iter_queued_tasks()] == [high, first_low, second_low]

    store.claim_task(high, started_at="2026-01-01T00:00:00+00:00")
    assert [record.id for record in store.iter_queued_tasks()] == [first_low, second_low]


def test_insert_task_rejects_unknown_batch_and_dependency() -> None:
    store = InMemoryStore()
    with pytest.raises(NotFoundError):
        _insert_task(store, 77)

    with pytest.raises(NotFoundError):
        store.insert_task(
            batch_id=None,
            task_type="video_download",
            priority=0,
            max_retries=3,
            input={},
            depends_on=[99],
        )

    assert list(store.iter_queued_tasks()) == []


def test_duplicate_delivery_for_same_webhook_and_event_conflicts() -> None:
    store = InMemoryStore()
    webhook = store.insert_webhook(
        name="sink",
        url="https://hooks.test/in",
        secret=None,
        event_types=["batch-created"],
    )

    def _delivery(delivery_id: str) -> _DeliveryRecord:
        return _DeliveryRecord(
            id=delivery_id,
            webhook_id=webhook.id,
            event_id=1,
            event_type="batch-created",
            payload={},
            scheduled_for="2026-01-01T00:00:00+00:00",
            created_at="2026-01-01T00:00:00+00:00",
        )

    store.insert_delivery(_delivery("first"))
    with pytest.raises(ConflictError):
        store.insert_delivery(_delivery("second"))

    assert store.has_delivery_for(webhook.id, 1)
    assert [record.id for record in store.list_deliveries()] == ["first"]
