import json
from datetime import datetime

import httpx
import pytest

from batchflow_api.engine import Engine
from batchflow_api.schemas import BatchCreate, BatchType, WebhookCreate, WebhookUpdate
from batchflow_api.security import verify_signature
from batchflow_api.store import ValidationError
from batchflow_api.webhooks import encode_body, validate_event_types, validate_webhook_url


def _register(engine: Engine, *, secret: str | None = "hook-secret", event_types: list[str] | None = None) -> int:
    return engine.webhooks.register_webhook(
        WebhookCreate(
            name="meeting sink",
            url="https://hooks.test/batches",
            secret=secret,
            event_types=event_types or ["batch-created"],
        )
    ).id


def _create_batch(engine: Engine) -> int:
    return engine.lifecycle.create_batch(BatchCreate(name="weekly", batch_type=BatchType.DOCUMENT)).id


def test_delivery_is_signed_over_exact_body(engine: Engine, fake_post) -> None:  # noqa: ANN001
    post = fake_post()
    _register(engine)
    batch_id = _create_batch(engine)

    assert len(post.calls) == 1
    call = post.calls[0]
    headers = call["headers"]
    assert call["url"] == "https://hooks.test/batches"
    assert call["timeout"] == 10.0
    assert headers["Content-Type"] == "application/json"
    assert headers["X-Event-Type"] == "batch-created"
    assert headers["User-Agent"].startswith("batchflow-webhooks/")
    assert "X-Retry-Count" not in headers
    assert verify_signature(call["content"], "hook-secret", headers["X-Signature"])

    body = json.loads(call["content"])
    assert body["eventType"] == "batch-created"
    assert body["data"]["batchId"] == batch_id
    assert body["data"]["batchType"] == "document"
    assert call["content"] == encode_body(body)


def test_fallback_secret_signs_webhooks_without_own_secret(engine: Engine, fake_post) -> None:  # noqa: ANN001
    post = fake_post()
    _register(engine, secret=None)
    _create_batch(engine)

    call = post.calls[0]
    assert verify_signature(call["content"], "fallback-secret", call["headers"]["X-Signature"])


def test_delivery_only_for_subscribed_event_types(engine: Engine, fake_post) -> None:  # noqa: ANN001
    post = fake_post()
    _register(engine, event_types=["task-completed"])
    _create_batch(engine)

    assert post.calls == []


def test_failed_delivery_is_recorded_and_retried_with_retry_header(engine: Engine, fake_post) -> None:  # noqa: ANN001
    post = fake_post([500, 200])
    webhook_id = _register(engine)
    _create_batch(engine)

    failed = engine.webhooks.list_deliveries(webhook_id=webhook_id)
    assert len(failed) == 1
    assert failed[0].successful is False
    assert failed[0].attempts == 1
    assert failed[0].error == "HTTP 500"
    assert failed[0].response_status == 500
    assert datetime.fromisoformat(failed[0].scheduled_for) > datetime.fromisoformat(failed[0].last_attempted_at)

    result = engine.webhooks.retry_failed_deliveries()

    assert result.retried_count == 1
    assert result.success_count == 1
    retry_headers = post.calls[1]["headers"]
    assert retry_headers["X-Retry-Count"] == "1"
    assert retry_headers["X-Delivery-ID"] == post.calls[0]["headers"]["X-Delivery-ID"]
    assert post.calls[1]["content"] == post.calls[0]["content"]
    delivered = engine.webhooks.list_deliveries(webhook_id=webhook_id)[0]
    assert delivered.successful is True
    assert delivered.attempts == 2


def test_retry_stops_at_attempt_ceiling(engine: Engine, fake_post) -> None:  # noqa: ANN001
    post = fake_post([httpx.ConnectError("connection refused") for _ in range(5)])
    _register(engine)
    _create_batch(engine)

    assert engine.webhooks.retry_failed_deliveries(max_attempts=3).retried_count == 1
    assert engine.webhooks.retry_failed_deliveries(max_attempts=3).retried_count == 1
    assert engine.webhooks.retry_failed_deliveries(max_attempts=3).retried_count == 0

    assert len(post.calls) == 3
    exhausted = engine.webhooks.list_deliveries(exhausted=True)
    assert len(exhausted) == 1
    assert exhausted[0].attempts == 3
    assert exhausted[0].error == "connection refused"


def test_same_event_is_delivered_once_per_webhook(engine: Engine, fake_post) -> None:  # noqa: ANN001
    post = fake_post()
    _register(engine)
    _create_batch(engine)
    event = engine.store.list_events(event_type="batch-created")[0]

    engine.webhooks.handle_event(event)

    assert len(post.calls) == 1
    assert len(engine.webhooks.list_deliveries()) == 1


def test_inactive_and_deleted_webhooks_are_skipped(engine: Engine, fake_post) -> None:  # noqa: ANN001
    post = fake_post([500])
    webhook_id = _register(engine)
    _create_batch(engine)
    engine.webhooks.delete_webhook(webhook_id)

    assert engine.webhooks.retry_failed_deliveries().retried_count == 0

    paused_id = _register(engine)
    engine.webhooks.update_webhook(paused_id, WebhookUpdate(active=False))
    _create_batch(engine)

    assert len(post.calls) == 1
    assert engine.webhooks.list_webhooks().total == 0
    assert engine.webhooks.list_webhooks(active_only=False).total == 1


def test_update_webhook_is_partial(engine: Engine) -> None:
    webhook_id = _register(engine)

    updated = engine.webhooks.update_webhook(webhook_id, WebhookUpdate(name="renamed"))

    assert updated.name == "renamed"
    assert updated.url == "https://hooks.test/batches"
    assert updated.has_secret is True
    assert [item.value for item in updated.event_types] == ["batch-created"]


@pytest.mark.parametrize("url", ["ftp://hooks.test/in", "not a url", "https://", ""])
def test_invalid_webhook_urls_are_rejected(url: str) -> None:
    with pytest.raises(ValidationError):
        validate_webhook_url(url)


def test_event_types_must_be_external_and_non_empty() -> None:
    assert validate_event_types(["batch-created", "task-completed"]) == ["batch-created", "task-completed"]
    with pytest.raises(ValidationError):
        validate_event_types([])
    with pytest.raises(ValidationError):
        validate_event_types(["task-ready"])
    with pytest.raises(ValidationError):
        validate_event_types(["batch-deleted"])
