from __future__ import annotations

from dataclasses import replace
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from aggregator import TOTAL_LATENCY, TTFT, MetricsAggregator
from records import ErrorKind, Outcome, OutcomeStatus, TimingSample
from storage import ReportStorage

MS = 1_000_000


def _outcome(index: int, status: OutcomeStatus = OutcomeStatus.SUCCESS) -> Outcome:
    timing = None
    error_kind = None
    if status is OutcomeStatus.SUCCESS:
        timing = TimingSample(
            ttft_ns=(20 + index) * MS,
            total_ns=(200 + 10 * index) * MS,
            inter_token_ns=(5 * MS,),
            input_tokens=3,
            output_tokens=2,
        )
    elif status is OutcomeStatus.FAILED:
        error_kind = ErrorKind.SERVER_ERROR
    return Outcome(
        request_id=f"req-{index}",
        status=status,
        attempts=1,
        backend="openai",
        model="gpt-4o-mini",
        completed_at_ns=(index + 1) * 100 * MS,
        error_kind=error_kind,
        timing=timing,
    )


def _report(indices: range, failed: int = 0):
    aggregator = MetricsAggregator(started_at_ns=0)
    for index in indices:
        aggregator.ingest(_outcome(index))
    for index in range(failed):
        aggregator.ingest(_outcome(index, OutcomeStatus.FAILED))
    return aggregator.snapshot()


@pytest.fixture
def storage(tmp_path: Path):
    store = ReportStorage(tmp_path / "profile.duckdb")
    yield store
    store.close()


def test_storage_persists_report_and_run_status(storage: ReportStorage) -> None:
    report = _report(range(10), failed=2)
    storage.create_run(run_id="run-1", started_at=0.0, config_json="{}")
    storage.save_report("run-1", report)
    storage.finish_run("run-1", finished_at=2.5)

    loaded = storage.load_report("run-1")
    run = storage.get_run("run-1")

    assert loaded.to_dict(include_buckets=True) == report.to_dict(include_buckets=True)
    assert loaded.failed_by_kind == {"server_error": 2}
    assert run["status"] == "completed"
    assert run["duration_s"] == pytest.approx(2.5)
    assert storage.bucket_counts("run-1", TTFT) == report.histograms[TTFT].buckets


def test_save_report_replaces_previous_snapshot(storage: ReportStorage) -> None:
    storage.create_run(run_id="run-1", started_at=0.0, config_json="{}")
    storage.save_report("run-1", _report(range(3)))
    storage.save_report("run-1", _report(range(6)))

    assert storage.load_report("run-1").success_count == 6
    assert sum(storage.bucket_counts("run-1", TOTAL_LATENCY).values()) == 6


def test_aborted_run_records_reason(storage: ReportStorage) -> None:
    storage.create_run(run_id="run-1", started_at=1.0, config_json="{}")
    storage.finish_run("run-1", finished_at=3.0, status="aborted", abort_reason="interrupted")

    run = storage.get_run("run-1")
    assert run["status"] == "aborted"
    assert run["abort_reason"] == "interrupted"


def test_merge_reports_matches_single_aggregation(storage: ReportStorage) -> None:
    storage.create_run(run_id="run-a", started_at=0.0, config_json="{}")
    storage.create_run(run_id="run-b", started_at=1.0, config_json="{}")
    storage.save_report("run-a", _report(range(0, 5)))
    storage.save_report("run-b", _report(range(5, 12)))

    merged = storage.merge_reports(["run-a", "run-b"])
    whole = _report(range(12))

    assert merged.success_count == 12
    assert merged.histograms[TTFT] == whole.histograms[TTFT]
    assert merged.histograms[TOTAL_LATENCY].buckets == whole.histograms[TOTAL_LATENCY].buckets


def test_list_runs_with_stats_and_latest(storage: ReportStorage) -> None:
    storage.create_run(run_id="run-old", started_at=1.0, config_json="{}")
    storage.create_run(run_id="run-new", started_at=2.0, config_json="{}")
    storage.save_report("run-new", _report(range(4), failed=1))

    runs = storage.list_runs_with_stats()

    assert [run["run_id"] for run in runs] == ["run-new", "run-old"]
    assert runs[0]["request_count"] == 5
    assert runs[0]["failed_count"] == 1
    assert runs[1]["request_count"] == 0
    assert storage.latest_run_id() == "run-new"


def test_delete_run_removes_everything(storage: ReportStorage) -> None:
    storage.create_run(run_id="run-1", started_at=0.0, config_json="{}")
    storage.save_report("run-1", _report(range(3), failed=1))

    assert storage.delete_run("run-1") is True
    assert storage.delete_run("run-1") is False
    assert storage.latest_run_id() is None
    assert storage.bucket_counts("run-1", TTFT) == {}
    with pytest.raises(KeyError):
        storage.load_report("run-1")
    with pytest.raises(KeyError):
        storage.get_run("run-1")


def test_backend_buckets_are_stored_per_scope(storage: ReportStorage) -> None:
    aggregator = MetricsAggregator(started_at_ns=0)
    for index in range(3):
        aggregator.ingest(_outcome(index))
    aggregator.ingest(replace(_outcome(40), backend="openrouter", model="llama"))
    report = aggregator.snapshot()
    storage.create_run(run_id="run-1", started_at=0.0, config_json="{}")
    storage.save_report("run-1", report)

    openai_buckets = storage.bucket_counts("run-1", TTFT, scope="backend:openai")
    openrouter_buckets = storage.bucket_counts("run-1", TTFT, scope="backend:openrouter")

    assert sum(openai_buckets.values()) == 3
    assert openrouter_buckets == report.by_backend["openrouter"].histograms[TTFT].buckets
    assert sum(storage.bucket_counts("run-1", TTFT, scope="model:llama").values()) == 1
    assert sum(storage.bucket_counts("run-1", TTFT).values()) == 4
    loaded = storage.load_report("run-1")
    assert loaded.by_backend["openrouter"].histograms[TTFT] == report.by_backend["openrouter"].histograms[TTFT]
    assert loaded.by_model["gpt-4o-mini"].success_count == 3
