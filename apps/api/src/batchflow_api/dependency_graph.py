from __future__ import annotations

from collections import deque
from typing import Protocol


class IndexedTaskLike(Protocol):
    depends_on_indexes: list[int]


def validate_initial_task_graph(tasks: list[IndexedTaskLike]) -> list[int]:
    """Check index references among a batch's initial tasks and return a creation order.

    Dependencies must be created before their dependents, so the returned order is
    topological. Raises ValueError on out-of-range indexes, self references or cycles.
    """
    count = len(tasks)
    graph: dict[int, list[int]] = {index: [] for index in range(count)}
    indegree: dict[int, int] = {index: 0 for index in range(count)}

    for index, task in enumerate(tasks):
        for dependency in task.depends_on_indexes:
            if dependency < 0 or dependency >= count:
                raise ValueError(f"task #{index} depends on unknown task index {dependency}")
            if dependency == index:
                raise ValueError(f"task #{index} cannot depend on itself")
            graph[dependency].append(index)
            indegree[index] += 1

    queue = deque(index for index in range(count) if indegree[index] == 0)
    order: list[int] = []

    while queue:
        current = queue.popleft()
        order.append(current)
        for next_index in graph[current]:
            indegree[next_index] -= 1
            if indegree[next_index] == 0:
                queue.append(next_index)

    if len(order) != count:
        raise ValueError("batch task graph contains a cycle")
    return order
