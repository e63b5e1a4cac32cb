import pytest

from batchflow_api.dependency_graph import validate_initial_task_graph
from batchflow_api.schemas import BatchTaskCreate, TaskType


def _task(*depends_on_indexes: int) -> BatchTaskCreate:
    return BatchTaskCreate(task_type=TaskType.DOCUMENT_PARSE, input={}, depends_on_indexes=list(depends_on_indexes))


def test_order_places_dependencies_first() -> None:
    order = validate_initial_task_graph([_task(2), _task(0, 2), _task()])

    assert order == [2, 0, 1]


def test_independent_tasks_keep_their_position() -> None:
    assert validate_initial_task_graph([_task(), _task(), _task()]) == [0, 1, 2]
    assert validate_initial_task_graph([]) == []


@pytest.mark.parametrize(
    ("tasks", "message"),
    [
        ([_task(3)], "unknown task index 3"),
        ([_task(-1)], "unknown task index -1"),
        ([_task(0)], "cannot depend on itself"),
        ([_task(1), _task(2), _task(0)], "cycle"),
    ],
)
def test_invalid_graphs_are_rejected(tasks: list[BatchTaskCreate], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        validate_initial_task_graph(tasks)
