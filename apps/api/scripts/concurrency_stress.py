#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[3]


def _default_evidence_paths() -> tuple[Path, Path]:
    timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    base_dir = _repo_root() / "docs" / "evidence" / "concurrency-stress"
    return (
        base_dir / f"concurrency-stress-{timestamp}.json",
        base_dir / f"concurrency-stress-{timestamp}.md",
    )


def parse_args() -> argparse.Namespace:
    default_json, default_md = _default_evidence_paths()
    parser = argparse.ArgumentParser(description="Run the batch engine concurrency stress suite and write reports.")
    parser.add_argument("--output-json", type=Path, default=default_json, help="path to JSON report output")
    parser.add_argument("--output-md", type=Path, default=default_md, help="path to Markdown report output")
    parser.add_argument("--claim-iterations", type=int, default=4)
    parser.add_argument("--claim-parallelism", type=int, default=8)
    parser.add_argument("--claim-task-count", type=int, default=24)
    parser.add_argument("--completion-iterations", type=int, default=4)
    parser.add_argument("--completion-parallelism", type=int, default=8)
    parser.add_argument("--completion-task-count", type=int, default=24)
    parser.add_argument("--chain-iterations", type=int, default=4)
    parser.add_argument("--chain-parallelism", type=int, default=6)
    parser.add_argument("--chain-count", type=int, default=4)
    parser.add_argument("--chain-length", type=int, default=5)
    return parser.parse_args()


def _render_markdown(report: dict[str, Any], json_path: Path) -> str:
    lines: list[str] = []
    summary = report["summary"]
    lines.append("# Batch Engine Concurrency Stress Report")
    lines.append("")
    lines.append(f"- Generated at (UTC): `{report['generated_at_utc']}`")
    lines.append(f"- Python: `{report['python']}`")
    lines.append(f"- JSON report: `{json_path}`")
    lines.append("")
    lines.append("## Summary")
    lines.append("")
    lines.append(f"- Overall status: `{summary['overall_status']}`")
    lines.append(f"- Scenarios: `{summary['scenario_count']}`")
    lines.append(f"- Invariants passed: `{summary['invariants_passed']}/{summary['invariants_total']}`")
    lines.append("")

    for scenario in report["scenarios"]:
        lines.append(f"## Scenario: {scenario['name']}")
        lines.append("")
        lines.append(f"- Objective: {scenario['objective']}")
        lines.append(f"- Status: `{scenario['status']}`")
        lines.append(f"- Iterations: `{scenario['iterations']}`")
        lines.append("")
        lines.append("| Metric | min | max | avg |")
        lines.append("|---|---|---|---|")
        for key, values in scenario["metrics"].items():
            lines.append(f"| {key} | {values['min']} | {values['max']} | {values['avg']} |")
        lines.append("")
        for invariant in scenario["invariants"]:
            marker = "PASS" if invariant["passed"] else "FAIL"
            lines.append(f"- `{marker}` {invariant['id']}: {invariant['description']}")
            if not invariant["passed"]:
                lines.append(f"  failures: `{invariant['actual_failures']}`")
        lines.append("")

    return "\n".join(lines)


def main() -> int:
    args = parse_args()

    numeric = [
        args.claim_iterations,
        args.claim_parallelism,
        args.claim_task_count,
        args.completion_iterations,
        args.completion_parallelism,
        args.completion_task_count,
        args.chain_iterations,
        args.chain_parallelism,
        args.chain_count,
        args.chain_length,
    ]
    if min(numeric) < 1:
        print("[concurrency-stress] all numeric options must be >= 1", file=sys.stderr)
        return 2

    try:
        from batchflow_api.concurrency_stress import ConcurrencyStressConfig, run_concurrency_stress_suite
    except ModuleNotFoundError as exc:
        print(f"[concurrency-stress] missing dependency: {exc.name}", file=sys.stderr)
        print("[concurrency-stress] install the project before running the suite:", file=sys.stderr)
        print("  python3 -m venv .venv && .venv/bin/pip install -e .[test]", file=sys.stderr)
        return 2

    config = ConcurrencyStressConfig(
        claim_iterations=args.claim_iterations,
        claim_parallelism=args.claim_parallelism,
        claim_task_count=args.claim_task_count,
        completion_iterations=args.completion_iterations,
        completion_parallelism=args.completion_parallelism,
        completion_task_count=args.completion_task_count,
        chain_iterations=args.chain_iterations,
        chain_parallelism=args.chain_parallelism,
        chain_count=args.chain_count,
        chain_length=args.chain_length,
    )
    report = run_concurrency_stress_suite(config)
    report["python"] = platform.python_version()

    args.output_json.parent.mkdir(parents=True, exist_ok=True)
    args.output_md.parent.mkdir(parents=True, exist_ok=True)

    args.output_json.write_text(json.dumps(report, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    args.output_md.write_text(_render_markdown(report, args.output_json) + "\n", encoding="utf-8")

    print(f"[concurrency-stress] report json: {args.output_json}")
    print(f"[concurrency-stress] report md:   {args.output_md}")
    print(f"[concurrency-stress] summary:     {report['summary']}")

    return 0 if report["summary"]["overall_status"] == "pass" else 1


if __name__ == "__main__":
    raise SystemExit(main())
