from __future__ import annotations

import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from batchflow_api.schemas import (
    WEBHOOK_EVENT_TYPES,
    EventRead,
    WebhookCreate,
    WebhookDeliveryRead,
    WebhookListResponse,
    WebhookRead,
    WebhookRetryResponse,
    WebhookUpdate,
)
from batchflow_api.security import redact_sensitive_text, sign_payload
from batchflow_api.store import (
    ConflictError,
    InMemoryStore,
    NotFoundError,
    ValidationError,
    _DeliveryRecord,
    _WebhookRecord,
)

logger = logging.getLogger(__name__)

USER_AGENT = "batchflow-webhooks/0.1"
RESPONSE_BODY_LIMIT = 2000


def encode_body(payload: dict[str, Any]) -> bytes:
    """Canonical JSON bytes; the signature covers exactly these bytes."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def validate_webhook_url(url: str) -> str:
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError) as exc:
        raise ValidationError("invalid URL format") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ValidationError("invalid URL format")
    return url


def validate_event_types(event_types: list[str]) -> list[str]:
    if not event_types:
        raise ValidationError("at least one event type is required")
    allowed = {event_type.value for event_type in WEBHOOK_EVENT_TYPES}
    invalid = [event_type for event_type in event_types if event_type not in allowed]
    if invalid:
        raise ValidationError(f"invalid event types: {', '.join(invalid)}")
    return event_types


class WebhookService:
    """Subscription CRUD plus signed, recorded and retryable event delivery."""

    def __init__(
        self,
        store: InMemoryStore,
        *,
        signing_secret: str | None = None,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_backoff_seconds: float = 30.0,
    ) -> None:
        self._store = store
        self._signing_secret = signing_secret
        self._timeout_seconds = timeout_seconds
        self._max_attempts = max_attempts
        self._retry_backoff_seconds = retry_backoff_seconds

    def register_webhook(self, payload: WebhookCreate) -> WebhookRead:
        record = self._store.insert_webhook(
            name=payload.name,
            url=validate_webhook_url(payload.url),
            secret=payload.secret or None,
            event_types=validate_event_types(payload.event_types),
        )
        logger.info(
            "webhooks event=registered webhook_id=%s event_types=%s",
            record.id,
            record.event_types,
        )
        return self._store.to_webhook_read(record)

    def list_webhooks(self, *, active_only: bool = True, limit: int = 10, offset: int = 0) -> WebhookListResponse:
        records, total = self._store.list_webhooks(active_only=active_only, limit=limit, offset=offset)
        return WebhookListResponse(
            items=[self._store.to_webhook_read(record) for record in records],
            total=total,
            limit=limit,
            offset=offset,
        )

    def get_webhook(self, webhook_id: int) -> WebhookRead:
        return self._store.to_webhook_read(self._store.get_webhook(webhook_id))

    def update_webhook(self, webhook_id: int, payload: WebhookUpdate) -> WebhookRead:
        with self._store.transaction():
            current = self._store.get_webhook(webhook_id)
            updated = replace(current, updated_at=_utc_now())
            if payload.name is not None:
                if not payload.name:
                    raise ValidationError("webhook name must not be empty")
                updated.name = payload.name
            if payload.url is not None:
                updated.url = validate_webhook_url(payload.url)
            if payload.secret is not None:
                updated.secret = payload.secret or None
            if payload.event_types is not None:
                updated.event_types = validate_event_types(payload.event_types)
            if payload.active is not None:
                updated.active = payload.active
            self._store.put_webhook(updated)
        logger.info("webhooks event=updated webhook_id=%s active=%s", webhook_id, updated.active)
        return self._store.to_webhook_read(updated)

    def delete_webhook(self, webhook_id: int) -> None:
        self._store.delete_webhook(webhook_id)
        logger.info("webhooks event=deleted webhook_id=%s", webhook_id)

    def handle_event(self, event: EventRead) -> None:
        """Event bus subscriber. A (webhook, event) pair is delivered at most once here."""
        if event.event_type not in WEBHOOK_EVENT_TYPES:
            return
        body = {
            "eventType": event.event_type.value,
            "timestamp": event.created_at,
            "data": event.payload,
        }
        for webhook in self._store.webhooks_for_event(event.event_type.value):
            if self._store.has_delivery_for(webhook.id, event.id):
                continue
            self.deliver(webhook, body, event_id=event.id)

    def deliver(
        self,
        webhook: _WebhookRecord,
        body: dict[str, Any],
        *,
        event_id: int | None = None,
    ) -> WebhookDeliveryRead | None:
        now = _utc_now()
        delivery = _DeliveryRecord(
            id=str(uuid.uuid4()),
            webhook_id=webhook.id,
            event_id=event_id,
            event_type=str(body["eventType"]),
            payload=body,
            scheduled_for=now,
            created_at=now,
        )
        try:
            self._store.insert_delivery(delivery)
        except ConflictError:
            logger.debug("webhooks event=duplicate_skipped webhook_id=%s event_id=%s", webhook.id, event_id)
            return None
        return self._store.to_delivery_read(self._attempt(webhook, delivery))

    def retry_failed_deliveries(self, *, limit: int = 10, max_attempts: int | None = None) -> WebhookRetryResponse:
        ceiling = max_attempts if max_attempts is not None else self._max_attempts
        retried = 0
        succeeded = 0
        for delivery in self._store.pending_deliveries(max_attempts=ceiling, limit=limit):
            try:
                webhook = self._store.get_webhook(delivery.webhook_id)
            except NotFoundError:
                continue
            if not webhook.active:
                continue
            updated = self._attempt(webhook, delivery)
            retried += 1
            if updated.successful:
                succeeded += 1

        logger.info("webhooks event=retry_sweep retried=%s succeeded=%s ceiling=%s", retried, succeeded, ceiling)
        return WebhookRetryResponse(retried_count=retried, success_count=succeeded)

    def list_deliveries(
        self,
        *,
        webhook_id: int | None = None,
        successful: bool | None = None,
        exhausted: bool = False,
        max_attempts: int | None = None,
        limit: int = 50,
    ) -> list[WebhookDeliveryRead]:
        ceiling = max_attempts if max_attempts is not None else self._max_attempts
        records = self._store.list_deliveries(
            webhook_id=webhook_id,
            successful=False if exhausted else successful,
            min_attempts=ceiling if exhausted else None,
            limit=limit,
        )
        return [self._store.to_delivery_read(record) for record in records]

    def _attempt(self, webhook: _WebhookRecord, delivery: _DeliveryRecord) -> _DeliveryRecord:
        body = encode_body(delivery.payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Event-Type": delivery.event_type,
            "X-Delivery-ID": delivery.id,
        }
        secret = webhook.secret or self._signing_secret
        if secret:
            headers["X-Signature"] = sign_payload(body, secret)
        if delivery.attempts > 0:
            headers["X-Retry-Count"] = str(delivery.attempts)

        response_status: int | None = None
        response_body: str | None = None
        error: str | None = None
        try:
            response = httpx.post(webhook.url, content=body, headers=headers, timeout=self._timeout_seconds)
            response_status = response.status_code
            response_body = response.text[:RESPONSE_BODY_LIMIT]
            if not 200 <= response_status < 300:
                error = f"HTTP {response_status}"
        except Exception as exc:  # noqa: BLE001
            error = redact_sensitive_text(str(exc)) or exc.__class__.__name__

        successful = error is None
        attempted_at = datetime.now(timezone.utc)
        with self._store.transaction():
            latest = self._store.get_delivery(delivery.id)
            attempts = latest.attempts + 1
            next_attempt = attempted_at
            if not successful:
                next_attempt += timedelta(seconds=self._retry_backoff_seconds * (2 ** (attempts - 1)))
            updated = replace(
                latest,
                attempts=attempts,
                successful=successful,
                response_status=response_status,
                response_body=response_body,
                error=error,
                last_attempted_at=attempted_at.isoformat(),
                scheduled_for=next_attempt.isoformat(),
            )
            self._store.put_delivery(updated)

        if successful:
            logger.info(
                "webhooks event=delivered webhook_id=%s delivery_id=%s event_type=%s attempts=%s",
                webhook.id,
                delivery.id,
                delivery.event_type,
                attempts,
            )
        else:
            logger.warning(
                "webhooks event=delivery_failed webhook_id=%s delivery_id=%s event_type=%s attempts=%s error=%s",
                webhook.id,
                delivery.id,
                delivery.event_type,
                attempts,
                error,
            )
        return updated


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
