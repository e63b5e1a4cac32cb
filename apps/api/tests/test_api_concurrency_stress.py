from batchflow_api.concurrency_stress import ConcurrencyStressConfig, run_concurrency_stress_suite


def test_concurrency_stress_suite_report_invariants_pass() -> None:
    report = run_concurrency_stress_suite(
        ConcurrencyStressConfig(
            claim_iterations=2,
            claim_parallelism=4,
            claim_task_count=8,
            completion_iterations=2,
            completion_parallelism=4,
            completion_task_count=9,
            chain_iterations=2,
            chain_parallelism=3,
            chain_count=2,
            chain_length=3,
        )
    )

    assert report["suite"] == "batchflow-concurrency-stress"
    assert report["summary"]["overall_status"] == "pass"
    assert report["summary"]["invariants_total"] == report["summary"]["invariants_passed"]

    scenario_names = {scenario["name"] for scenario in report["scenarios"]}
    assert scenario_names == {
        "parallel-claim-race",
        "concurrent-completion-race",
        "dependency-chain-workers",
    }
    assert all(scenario["status"] == "pass" for scenario in report["scenarios"])
