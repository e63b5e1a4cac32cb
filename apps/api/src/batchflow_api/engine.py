from __future__ import annotations

from dataclasses import dataclass

from batchflow_api.dispatcher import Dispatcher, TaskHandlerRegistry
from batchflow_api.events import EventBus
from batchflow_api.lifecycle import TaskLifecycleManager
from batchflow_api.schemas import WEBHOOK_EVENT_TYPES, EventType
from batchflow_api.settings import Settings
from batchflow_api.store import InMemoryStore
from batchflow_api.webhooks import WebhookService

WEBHOOK_SUBSCRIBER = "webhooks"
DISPATCHER_SUBSCRIBER = "dispatcher"


@dataclass
class Engine:
    store: InMemoryStore
    bus: EventBus
    lifecycle: TaskLifecycleManager
    webhooks: WebhookService
    dispatcher: Dispatcher


def build_engine(
    settings: Settings,
    *,
    registry: TaskHandlerRegistry | None = None,
    store: InMemoryStore | None = None,
) -> Engine:
    store = store if store is not None else InMemoryStore(
        state_file=settings.state_file, event_retention=settings.event_retention
    )
    bus = EventBus(store, max_attempts=settings.event_max_attempts)
    lifecycle = TaskLifecycleManager(store, bus, default_max_retries=settings.default_max_retries)
    webhooks = WebhookService(
        store,
        signing_secret=settings.webhook_signing_secret,
        timeout_seconds=settings.webhook_timeout_seconds,
        max_attempts=settings.webhook_max_attempts,
        retry_backoff_seconds=settings.webhook_retry_backoff_seconds,
    )
    dispatcher = Dispatcher(
        lifecycle,
        registry if registry is not None else TaskHandlerRegistry(),
        poll_seconds=settings.dispatch_poll_seconds,
    )
    bus.subscribe(WEBHOOK_SUBSCRIBER, webhooks.handle_event, event_types=WEBHOOK_EVENT_TYPES)
    bus.subscribe(DISPATCHER_SUBSCRIBER, dispatcher.notify, event_types=[EventType.TASK_READY])
    return Engine(store=store, bus=bus, lifecycle=lifecycle, webhooks=webhooks, dispatcher=dispatcher)
