from __future__ import annotations

from batchflow_api.schemas import Status, TaskType
from batchflow_api.store import InMemoryStore, _TaskRecord

SATISFYING_STATUSES = frozenset({Status.COMPLETED.value, Status.COMPLETED_WITH_ERRORS.value})


class DependencyResolver:
    """Decides which QUEUED tasks may be dispatched.

    A task is ready when every dependency it points at is COMPLETED (or
    COMPLETED_WITH_ERRORS). FAILED dependencies keep dependents blocked until they
    are retried to success.
    """

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store

    def is_ready(self, task_id: int) -> bool:
        with self._store.locked():
            record = self._store.find_task(task_id)
            if record is None or record.status != Status.QUEUED.value:
                return False
            return self._dependencies_satisfied(task_id)

    def next_ready(self, *, limit: int = 10, task_types: list[TaskType] | None = None) -> list[_TaskRecord]:
        """Ready tasks by priority desc, created_at asc; walks the QUEUED index and stops at `limit`."""
        if limit <= 0:
            return []
        type_filter = {task_type.value for task_type in task_types} if task_types else None
        ready: list[_TaskRecord] = []
        with self._store.locked():
            for record in self._store.iter_queued_tasks(type_filter):
                if not self._dependencies_satisfied(record.id):
                    continue
                ready.append(self._store.get_task(record.id))
                if len(ready) >= limit:
                    break
        return ready

    def newly_unblocked(self, task_id: int) -> list[int]:
        """QUEUED dependents of `task_id` whose dependencies are now all satisfied."""
        unblocked: list[int] = []
        with self._store.locked():
            for dependent_id in self._store.dependents_of(task_id):
                if self.is_ready(dependent_id):
                    unblocked.append(dependent_id)
        return unblocked

    def _dependencies_satisfied(self, task_id: int) -> bool:
        dependency_ids = self._store.dependencies_of(task_id)
        if not dependency_ids:
            return True
        statuses = self._store.task_statuses(dependency_ids)
        return all(statuses.get(dependency_id) in SATISFYING_STATUSES for dependency_id in dependency_ids)
