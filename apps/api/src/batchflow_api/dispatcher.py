from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

from batchflow_api.lifecycle import TaskLifecycleManager
from batchflow_api.schemas import (
    EventRead,
    EventType,
    ProcessTasksResponse,
    Status,
    TaskRead,
    TaskStatusUpdate,
    TaskType,
)
from batchflow_api.security import redact_sensitive_text
from batchflow_api.store import ConflictError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

TaskHandler = Callable[[TaskRead], "dict[str, Any] | None"]


class TaskHandlerRegistry:
    """Task type to handler table, built at startup and passed to the dispatcher."""

    def __init__(self) -> None:
        self._handlers: dict[TaskType, TaskHandler] = {}

    def register(self, task_type: TaskType, handler: TaskHandler) -> None:
        if task_type in self._handlers:
            raise ValueError(f"handler for task type '{task_type.value}' is already registered")
        self._handlers[task_type] = handler

    def get(self, task_type: TaskType) -> TaskHandler | None:
        return self._handlers.get(task_type)

    def task_types(self) -> list[TaskType]:
        return sorted(self._handlers, key=lambda item: item.value)

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers


class Dispatcher:
    """Claims ready tasks and runs their registered handler.

    A handler returns the task output or raises. Exceptions are recorded as a FAILED
    task with a redacted error message and never leave `run_once`.
    """

    def __init__(
        self,
        lifecycle: TaskLifecycleManager,
        registry: TaskHandlerRegistry,
        *,
        poll_seconds: float = 5.0,
    ) -> None:
        self._lifecycle = lifecycle
        self._registry = registry
        self._poll_seconds = poll_seconds
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def registry(self) -> TaskHandlerRegistry:
        return self._registry

    def notify(self, event: EventRead) -> None:
        """Event bus subscriber for task-ready signals."""
        if event.event_type == EventType.TASK_READY:
            self._wake.set()

    def run_once(self, *, limit: int = 10, task_types: list[TaskType] | None = None) -> ProcessTasksResponse:
        registered = self._registry.task_types()
        if task_types is not None:
            registered = [task_type for task_type in registered if task_type in task_types]
        result = ProcessTasksResponse()
        if not registered:
            return result

        for task in self._lifecycle.list_next_ready_tasks(limit=limit, task_types=registered):
            try:
                claimed = self._lifecycle.claim_task(task.id)
            except (ConflictError, NotFoundError):
                result.skipped_count += 1
                continue

            handler = self._registry.get(claimed.task_type)
            if handler is None:
                result.skipped_count += 1
                continue
            result.processed_task_ids.append(claimed.id)
            if self._execute(claimed, handler):
                result.completed_count += 1
            else:
                result.failed_count += 1

        logger.info(
            "dispatcher event=run_once processed=%s completed=%s failed=%s skipped=%s",
            len(result.processed_task_ids),
            result.completed_count,
            result.failed_count,
            result.skipped_count,
        )
        return result

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="batchflow-dispatcher", daemon=True)
        self._thread.start()
        logger.info("dispatcher event=started poll_seconds=%s", self._poll_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("dispatcher event=stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            self._wake.wait(timeout=self._poll_seconds)
            self._wake.clear()
            if self._stop.is_set():
                return
            try:
                while self.run_once().processed_task_ids:
                    if self._stop.is_set():
                        return
            except Exception:  # noqa: BLE001
                logger.exception("dispatcher event=loop_error")

    def _execute(self, task: TaskRead, handler: TaskHandler) -> bool:
        try:
            output = handler(task)
        except Exception as exc:  # noqa: BLE001
            error = redact_sensitive_text(str(exc)) or exc.__class__.__name__
            logger.warning(
                "dispatcher event=handler_failed task_id=%s task_type=%s error=%s",
                task.id,
                task.task_type.value,
                error,
            )
            self._report(task.id, TaskStatusUpdate(status=Status.FAILED, error=error))
            return False

        self._report(task.id, TaskStatusUpdate(status=Status.COMPLETED, output=output or {}))
        return True

    def _report(self, task_id: int, update: TaskStatusUpdate) -> None:
        try:
            self._lifecycle.update_task_status(task_id, update)
        except (ValidationError, NotFoundError) as exc:
            # canceled while running
            logger.info("dispatcher event=report_rejected task_id=%s reason=%s", task_id, exc)
