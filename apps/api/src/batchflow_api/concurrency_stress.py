from __future__ import annotations

import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from batchflow_api.lifecycle import TaskLifecycleManager
from batchflow_api.schemas import (
    BatchCreate,
    BatchTaskCreate,
    BatchType,
    EventType,
    Status,
    TaskStatusUpdate,
    TaskType,
)
from batchflow_api.state_machine import counters_consistent, counters_from_statuses
from batchflow_api.store import ConflictError, InMemoryStore, ValidationError


@dataclass(frozen=True)
class ConcurrencyStressConfig:
    claim_iterations: int = 4
    claim_parallelism: int = 8
    claim_task_count: int = 24
    completion_iterations: int = 4
    completion_parallelism: int = 8
    completion_task_count: int = 24
    chain_iterations: int = 4
    chain_parallelism: int = 6
    chain_count: int = 4
    chain_length: int = 5
    chain_timeout_seconds: float = 30.0


def run_concurrency_stress_suite(config: ConcurrencyStressConfig | None = None) -> dict[str, Any]:
    cfg = config or ConcurrencyStressConfig()

    claim_iterations = [_run_claim_iteration(index, cfg) for index in range(cfg.claim_iterations)]
    completion_iterations = [_run_completion_iteration(index, cfg) for index in range(cfg.completion_iterations)]
    chain_iterations = [_run_chain_iteration(index, cfg) for index in range(cfg.chain_iterations)]

    scenarios = [
        _scenario_report(
            name="parallel-claim-race",
            objective="Parallel workers claiming the same ready tasks never double-claim.",
            iterations=claim_iterations,
            metric_keys=[
                "attempts_total",
                "claim_success_count",
                "claim_conflict_count",
                "unexpected_error_count",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="concurrent-completion-race",
            objective="Concurrent and duplicate completion reports keep batch counters and events exact.",
            iterations=completion_iterations,
            metric_keys=[
                "reports_total",
                "changed_count",
                "noop_count",
                "rejected_count",
                "unexpected_error_count",
                "duration_ms",
            ],
        ),
        _scenario_report(
            name="dependency-chain-workers",
            objective="Workers draining dependency chains never start a task before its dependencies complete.",
            iterations=chain_iterations,
            metric_keys=[
                "attempts_total",
                "completed_count",
                "claim_conflict_count",
                "order_violation_count",
                "unexpected_error_count",
                "duration_ms",
            ],
        ),
    ]

    invariants_total = 0
    invariants_passed = 0
    for scenario in scenarios:
        invariants_total += len(scenario["invariants"])
        invariants_passed += sum(1 for item in scenario["invariants"] if item["passed"])

    overall_status = "pass" if invariants_total == invariants_passed else "fail"
    return {
        "suite": "batchflow-concurrency-stress",
        "generated_at_utc": datetime.now(tz=timezone.utc).isoformat(),
        "config": {
            "claim_iterations": cfg.claim_iterations,
            "claim_parallelism": cfg.claim_parallelism,
            "claim_task_count": cfg.claim_task_count,
            "completion_iterations": cfg.completion_iterations,
            "completion_parallelism": cfg.completion_parallelism,
            "completion_task_count": cfg.completion_task_count,
            "chain_iterations": cfg.chain_iterations,
            "chain_parallelism": cfg.chain_parallelism,
            "chain_count": cfg.chain_count,
            "chain_length": cfg.chain_length,
            "chain_timeout_seconds": cfg.chain_timeout_seconds,
        },
        "summary": {
            "scenario_count": len(scenarios),
            "invariants_total": invariants_total,
            "invariants_passed": invariants_passed,
            "overall_status": overall_status,
        },
        "scenarios": scenarios,
    }


def _run_claim_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = InMemoryStore()
    lifecycle = TaskLifecycleManager(store)
    batch = lifecycle.create_batch(
        BatchCreate(
            name=f"claim-race-{index}",
            batch_type=BatchType.MEDIA,
            tasks=[
                BatchTaskCreate(task_type=TaskType.VIDEO_DOWNLOAD, input={"url": f"https://media.test/{n}.mp4"})
                for n in range(cfg.claim_task_count)
            ],
        )
    )

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    claims_per_task: Counter[int] = Counter()
    max_attempts = max(cfg.claim_task_count * 50, cfg.claim_parallelism * 10)

    def worker() -> None:
        while True:
            with lock:
                if metrics["attempts_total"] >= max_attempts:
                    return
                metrics["attempts_total"] += 1

            try:
                ready = lifecycle.list_next_ready_tasks(limit=cfg.claim_parallelism)
            except Exception:  # noqa: BLE001
                with lock:
                    metrics["unexpected_error_count"] += 1
                continue
            if not ready:
                return

            for task in ready:
                try:
                    lifecycle.claim_task(task.id)
                    with lock:
                        metrics["claim_success_count"] += 1
                        claims_per_task[task.id] += 1
                except ConflictError:
                    with lock:
                        metrics["claim_conflict_count"] += 1
                except Exception:  # noqa: BLE001
                    with lock:
                        metrics["unexpected_error_count"] += 1

    with ThreadPoolExecutor(max_workers=cfg.claim_parallelism) as executor:
        futures = [executor.submit(worker) for _ in range(cfg.claim_parallelism)]
        for future in as_completed(futures):
            future.result()

    final = store.get_batch(batch.id)
    duration_ms = int((time.perf_counter() - started) * 1000)
    metrics_payload = {
        "attempts_total": int(metrics["attempts_total"]),
        "claim_success_count": int(metrics["claim_success_count"]),
        "claim_conflict_count": int(metrics["claim_conflict_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "task_count": cfg.claim_task_count,
        "unique_claimed_tasks": len(claims_per_task),
        "max_claims_per_task": max(claims_per_task.values(), default=0),
        "counters": final.counters.model_dump(),
        "duration_ms": duration_ms,
    }

    invariants = [
        _invariant(
            "all_tasks_claimed_once",
            "every task was claimed by exactly one worker",
            metrics_payload["claim_success_count"] == cfg.claim_task_count
            and metrics_payload["unique_claimed_tasks"] == cfg.claim_task_count
            and metrics_payload["max_claims_per_task"] == 1,
            expected={"task_count": cfg.claim_task_count, "max_claims_per_task": 1},
            actual={
                "claim_success_count": metrics_payload["claim_success_count"],
                "unique_claimed_tasks": metrics_payload["unique_claimed_tasks"],
                "max_claims_per_task": metrics_payload["max_claims_per_task"],
            },
        ),
        _invariant(
            "counters_track_claims",
            "batch counters show every task processing",
            final.processing == cfg.claim_task_count and final.queued == 0 and counters_consistent(final.counters),
            expected={"processing": cfg.claim_task_count, "queued": 0},
            actual=metrics_payload["counters"],
        ),
        _invariant(
            "no_unexpected_errors",
            "workers did not raise unexpected exceptions",
            metrics_payload["unexpected_error_count"] == 0,
            expected={"unexpected_error_count": 0},
            actual={"unexpected_error_count": metrics_payload["unexpected_error_count"]},
        ),
    ]

    return {
        "iteration": index + 1,
        "metrics": metrics_payload,
        "invariants": invariants,
    }


def _run_completion_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = InMemoryStore()
    lifecycle = TaskLifecycleManager(store)
    batch = lifecycle.create_batch(
        BatchCreate(
            name=f"completion-race-{index}",
            batch_type=BatchType.TRANSCRIPTION,
            tasks=[
                BatchTaskCreate(task_type=TaskType.AUDIO_TRANSCRIBE, input={"audio_file_id": f"audio-{n}"})
                for n in range(cfg.completion_task_count)
            ],
        )
    )
    task_ids = [task.id for task in lifecycle.list_next_ready_tasks(limit=cfg.completion_task_count)]
    for task_id in task_ids:
        lifecycle.claim_task(task_id)

    # every third task fails; each outcome is reported twice to exercise no-op handling
    reports: list[tuple[int, TaskStatusUpdate]] = []
    for position, task_id in enumerate(task_ids):
        if position % 3 == 0:
            update = TaskStatusUpdate(status=Status.FAILED, error="transcoder exited with code 1")
        else:
            update = TaskStatusUpdate(status=Status.COMPLETED, output={"transcription_id": f"tr-{task_id}"})
        reports.extend([(task_id, update), (task_id, update)])

    lock = threading.Lock()
    metrics: Counter[str] = Counter()

    def report(task_id: int, update: TaskStatusUpdate) -> None:
        try:
            result = lifecycle.update_task_status(task_id, update)
            with lock:
                metrics["changed_count" if result.changed else "noop_count"] += 1
        except ValidationError:
            with lock:
                metrics["rejected_count"] += 1
        except Exception:  # noqa: BLE001
            with lock:
                metrics["unexpected_error_count"] += 1

    with ThreadPoolExecutor(max_workers=cfg.completion_parallelism) as executor:
        futures = [executor.submit(report, task_id, update) for task_id, update in reports]
        for future in as_completed(futures):
            future.result()

    final = store.get_batch(batch.id)
    actual_counters = counters_from_statuses([Status(status) for status in store.batch_task_statuses(batch.id)])
    completed_events = store.list_events(batch_id=batch.id, event_type=EventType.TASK_COMPLETED.value, limit=10_000)
    completed_events_per_task = Counter(int(event.task_id) for event in completed_events if event.task_id is not None)
    terminal_events = [
        event
        for event in store.list_events(batch_id=batch.id, event_type=EventType.BATCH_STATUS_CHANGED.value, limit=10_000)
        if event.payload.get("status") == Status.COMPLETED_WITH_ERRORS.value
    ]
    failed_expected = len(range(0, len(task_ids), 3))
    duration_ms = int((time.perf_counter() - started) * 1000)
    metrics_payload = {
        "reports_total": len(reports),
        "changed_count": int(metrics["changed_count"]),
        "noop_count": int(metrics["noop_count"]),
        "rejected_count": int(metrics["rejected_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "batch_status": final.status,
        "counters": final.counters.model_dump(),
        "recounted": actual_counters.model_dump(),
        "max_completed_events_per_task": max(completed_events_per_task.values(), default=0),
        "terminal_status_events": len(terminal_events),
        "duration_ms": duration_ms,
    }

    invariants = [
        _invariant(
            "one_change_per_task",
            "each task changed status exactly once; duplicates were no-ops",
            metrics_payload["changed_count"] == len(task_ids)
            and metrics_payload["noop_count"] == len(task_ids),
            expected={"changed_count": len(task_ids), "noop_count": len(task_ids)},
            actual={"changed_count": metrics_payload["changed_count"], "noop_count": metrics_payload["noop_count"]},
        ),
        _invariant(
            "counters_match_rows",
            "stored counters equal counters recomputed from task rows",
            final.counters == actual_counters and counters_consistent(final.counters),
            expected=metrics_payload["recounted"],
            actual=metrics_payload["counters"],
        ),
        _invariant(
            "mixed_outcome_status",
            "batch finished as completed_with_errors",
            final.status == Status.COMPLETED_WITH_ERRORS.value and final.failed == failed_expected,
            expected={"batch_status": Status.COMPLETED_WITH_ERRORS.value, "failed": failed_expected},
            actual={"batch_status": final.status, "failed": final.failed},
        ),
        _invariant(
            "single_completion_event_per_task",
            "no task produced more than one task-completed event",
            metrics_payload["max_completed_events_per_task"] == 1 and len(completed_events) == len(task_ids),
            expected={"max_completed_events_per_task": 1, "task_completed_events": len(task_ids)},
            actual={
                "max_completed_events_per_task": metrics_payload["max_completed_events_per_task"],
                "task_completed_events": len(completed_events),
            },
        ),
        _invariant(
            "single_terminal_status_event",
            "the terminal batch status was announced once",
            metrics_payload["terminal_status_events"] == 1,
            expected={"terminal_status_events": 1},
            actual={"terminal_status_events": metrics_payload["terminal_status_events"]},
        ),
        _invariant(
            "no_unexpected_errors",
            "reporters did not raise unexpected exceptions",
            metrics_payload["unexpected_error_count"] == 0 and metrics_payload["rejected_count"] == 0,
            expected={"unexpected_error_count": 0, "rejected_count": 0},
            actual={
                "unexpected_error_count": metrics_payload["unexpected_error_count"],
                "rejected_count": metrics_payload["rejected_count"],
            },
        ),
    ]

    return {
        "iteration": index + 1,
        "metrics": metrics_payload,
        "invariants": invariants,
    }


def _run_chain_iteration(index: int, cfg: ConcurrencyStressConfig) -> dict[str, Any]:
    started = time.perf_counter()
    store = InMemoryStore()
    lifecycle = TaskLifecycleManager(store)

    tasks: list[BatchTaskCreate] = []
    for chain in range(cfg.chain_count):
        for step in range(cfg.chain_length):
            position = len(tasks)
            tasks.append(
                BatchTaskCreate(
                    task_type=TaskType.DOCUMENT_DOWNLOAD if step == 0 else TaskType.DOCUMENT_PARSE,
                    input={"url": f"https://docs.test/{chain}/{step}.pdf"},
                    depends_on_indexes=[position - 1] if step > 0 else [],
                )
            )
    batch = lifecycle.create_batch(BatchCreate(name=f"chain-{index}", batch_type=BatchType.DOCUMENT, tasks=tasks))
    task_total = cfg.chain_count * cfg.chain_length

    lock = threading.Lock()
    metrics: Counter[str] = Counter()
    deadline = time.perf_counter() + cfg.chain_timeout_seconds

    def worker() -> None:
        while time.perf_counter() < deadline:
            with lock:
                if metrics["completed_count"] >= task_total:
                    return

            ready = lifecycle.list_next_ready_tasks(limit=1)
            if not ready:
                time.sleep(0.001)
                continue
            task = ready[0]
            with lock:
                metrics["attempts_total"] += 1
            try:
                lifecycle.claim_task(task.id)
            except ConflictError:
                with lock:
                    metrics["claim_conflict_count"] += 1
                continue
            except Exception:  # noqa: BLE001
                with lock:
                    metrics["unexpected_error_count"] += 1
                continue

            dependency_statuses = store.task_statuses(store.dependencies_of(task.id))
            if any(status != Status.COMPLETED.value for status in dependency_statuses.values()):
                with lock:
                    metrics["order_violation_count"] += 1
            try:
                lifecycle.update_task_status(
                    task.id,
                    TaskStatusUpdate(status=Status.COMPLETED, output={"document_id": f"doc-{task.id}"}),
                )
                with lock:
                    metrics["completed_count"] += 1
            except Exception:  # noqa: BLE001
                with lock:
                    metrics["unexpected_error_count"] += 1

    with ThreadPoolExecutor(max_workers=cfg.chain_parallelism) as executor:
        futures = [executor.submit(worker) for _ in range(cfg.chain_parallelism)]
        for future in as_completed(futures):
            future.result()

    final = store.get_batch(batch.id)
    duration_ms = int((time.perf_counter() - started) * 1000)
    metrics_payload = {
        "attempts_total": int(metrics["attempts_total"]),
        "completed_count": int(metrics["completed_count"]),
        "claim_conflict_count": int(metrics["claim_conflict_count"]),
        "order_violation_count": int(metrics["order_violation_count"]),
        "unexpected_error_count": int(metrics["unexpected_error_count"]),
        "task_count": task_total,
        "batch_status": final.status,
        "counters": final.counters.model_dump(),
        "duration_ms": duration_ms,
    }

    invariants = [
        _invariant(
            "all_tasks_completed",
            "every chained task completed exactly once",
            metrics_payload["completed_count"] == task_total and final.completed == task_total,
            expected={"completed": task_total},
            actual={"completed_count": metrics_payload["completed_count"], "counter_completed": final.completed},
        ),
        _invariant(
            "dependency_order_respected",
            "no task was claimed before its dependencies completed",
            metrics_payload["order_violation_count"] == 0,
            expected={"order_violation_count": 0},
            actual={"order_violation_count": metrics_payload["order_violation_count"]},
        ),
        _invariant(
            "batch_completed",
            "batch finished as completed with consistent counters",
            final.status == Status.COMPLETED.value and counters_consistent(final.counters),
            expected={"batch_status": Status.COMPLETED.value},
            actual={"batch_status": final.status, "counters": metrics_payload["counters"]},
        ),
        _invariant(
            "no_unexpected_errors",
            "workers did not raise unexpected exceptions",
            metrics_payload["unexpected_error_count"] == 0,
            expected={"unexpected_error_count": 0},
            actual={"unexpected_error_count": metrics_payload["unexpected_error_count"]},
        ),
    ]

    return {
        "iteration": index + 1,
        "metrics": metrics_payload,
        "invariants": invariants,
    }


def _scenario_report(
    *,
    name: str,
    objective: str,
    iterations: list[dict[str, Any]],
    metric_keys: list[str],
) -> dict[str, Any]:
    aggregates: dict[str, Any] = {}
    for key in metric_keys:
        values = [int(item["metrics"].get(key, 0)) for item in iterations]
        aggregates[key] = {
            "min": min(values) if values else 0,
            "max": max(values) if values else 0,
            "sum": sum(values),
            "avg": round(sum(values) / len(values), 2) if values else 0.0,
        }

    invariant_buckets: dict[str, dict[str, Any]] = {}
    for iteration in iterations:
        for invariant in iteration["invariants"]:
            bucket = invariant_buckets.setdefault(
                invariant["id"],
                {
                    "id": invariant["id"],
                    "description": invariant["description"],
                    "passed": True,
                    "expected": invariant["expected"],
                    "actual_failures": [],
                },
            )
            if not invariant["passed"]:
                bucket["passed"] = False
                bucket["actual_failures"].append(
                    {
                        "iteration": iteration["iteration"],
                        "actual": invariant["actual"],
                    }
                )

    invariants = list(invariant_buckets.values())
    status = "pass" if all(item["passed"] for item in invariants) else "fail"
    return {
        "name": name,
        "objective": objective,
        "status": status,
        "iterations": len(iterations),
        "metrics": aggregates,
        "invariants": invariants,
        "iteration_details": iterations,
    }


def _invariant(
    invariant_id: str,
    description: str,
    passed: bool,
    *,
    expected: dict[str, Any],
    actual: dict[str, Any],
) -> dict[str, Any]:
    return {
        "id": invariant_id,
        "description": description,
        "passed": bool(passed),
        "expected": expected,
        "actual": actual,
    }
