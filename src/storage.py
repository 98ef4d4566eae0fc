from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import duckdb

from aggregator import AggregatedReport


logger = logging.getLogger(__name__)

ALL_SCOPE = "all"


def _scoped_reports(report: AggregatedReport) -> list[tuple[str, AggregatedReport]]:
    scoped = [(ALL_SCOPE, report)]
    scoped.extend((f"backend:{name}", group) for name, group in sorted(report.by_backend.items()))
    scoped.extend((f"model:{name}", group) for name, group in sorted(report.by_model.items()))
    return scoped


class ReportStorage:
    """DuckDB store for run metadata and aggregated report snapshots.

    Histogram buckets are written row-per-bucket next to the JSON snapshot so
    reports can be re-merged (bucket-wise) either in Python or in SQL.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        logger.debug("Opening database: %s", db_path)
        self.connection = duckdb.connect(str(db_path))
        self._init_schema()

    def _init_schema(self) -> None:
        logger.debug("Initializing schema")
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id VARCHAR PRIMARY KEY,
                started_at DOUBLE NOT NULL,
                finished_at DOUBLE,
                duration_s DOUBLE,
                status VARCHAR NOT NULL,
                abort_reason VARCHAR,
                config_json VARCHAR NOT NULL
            );

            CREATE TABLE IF NOT EXISTS run_reports (
                run_id VARCHAR PRIMARY KEY,
                success_count BIGINT NOT NULL,
                failed_count BIGINT NOT NULL,
                cancelled_count BIGINT NOT NULL,
                total_attempts BIGINT NOT NULL,
                total_retries BIGINT NOT NULL,
                input_tokens BIGINT NOT NULL,
                output_tokens BIGINT NOT NULL,
                report_json VARCHAR NOT NULL
            );

            CREATE TABLE IF NOT EXISTS failures (
                run_id VARCHAR NOT NULL,
                error_kind VARCHAR NOT NULL,
                failed_count BIGINT NOT NULL,
                PRIMARY KEY (run_id, error_kind)
            );

            CREATE TABLE IF NOT EXISTS histogram_buckets (
                run_id VARCHAR NOT NULL,
                scope VARCHAR NOT NULL,
                metric VARCHAR NOT NULL,
                bucket_index BIGINT NOT NULL,
                bucket_count BIGINT NOT NULL,
                PRIMARY KEY (run_id, scope, metric, bucket_index)
            );
            """
        )

    def create_run(self, run_id: str, started_at: float, config_json: str) -> None:
        logger.debug("Creating run: %s", run_id)
        self.connection.execute(
            """
            INSERT INTO runs (run_id, started_at, status, config_json)
            VALUES (?, ?, 'running', ?)
            """,
            [run_id, started_at, config_json],
        )

    def finish_run(
        self,
        run_id: str,
        finished_at: float,
        status: str = "completed",
        abort_reason: str | None = None,
    ) -> None:
        logger.debug("Finishing run %s with status %s", run_id, status)
        self.connection.execute(
            """
            UPDATE runs
            SET finished_at = ?, duration_s = ? - started_at, status = ?, abort_reason = ?
            WHERE run_id = ?
            """,
            [finished_at, finished_at, status, abort_reason, run_id],
        )

    def save_report(self, run_id: str, report: AggregatedReport) -> None:
        logger.debug("Saving report for run %s (%d outcomes)", run_id, report.total)
        report_json = json.dumps(report.to_dict(include_buckets=True), ensure_ascii=True)
        self.connection.execute("BEGIN TRANSACTION")
        try:
            for table in ("run_reports", "failures", "histogram_buckets"):
                self.connection.execute(f"DELETE FROM {table} WHERE run_id = ?", [run_id])
            self.connection.execute(
                """
                INSERT INTO run_reports (
                    run_id,
                    success_count,
                    failed_count,
                    cancelled_count,
                    total_attempts,
                    total_retries,
                    input_tokens,
                    output_tokens,
                    report_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    run_id,
                    report.success_count,
                    report.failed_count,
                    report.cancelled_count,
                    report.total_attempts,
                    report.total_retries,
                    report.input_tokens,
                    report.output_tokens,
                    report_json,
                ],
            )
            if report.failed_by_kind:
                self.connection.executemany(
                    "INSERT INTO failures (run_id, error_kind, failed_count) VALUES (?, ?, ?)",
                    [(run_id, kind, count) for kind, count in sorted(report.failed_by_kind.items())],
                )
            bucket_rows = [
                (run_id, scope, metric, index, count)
                for scope, scoped_report in _scoped_reports(report)
                for metric, histogram in sorted(scoped_report.histograms.items())
                for index, count in sorted(histogram.buckets.items())
            ]
            if bucket_rows:
                self.connection.executemany(
                    """
                    INSERT INTO histogram_buckets (run_id, scope, metric, bucket_index, bucket_count)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    bucket_rows,
                )
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning("Error while saving report for run %s, rolling back transaction", run_id, exc_info=True)
            self.connection.execute("ROLLBACK")
            raise

    def load_report(self, run_id: str) -> AggregatedReport:
        row = self.connection.execute(
            "SELECT report_json FROM run_reports WHERE run_id = ?",
            [run_id],
        ).fetchone()
        if row is None:
            raise KeyError(run_id)
        return AggregatedReport.from_dict(json.loads(row[0]))

    def merge_reports(self, run_ids: list[str]) -> AggregatedReport:
        if not run_ids:
            raise ValueError("at least one run id is required")
        merged = self.load_report(run_ids[0])
        for run_id in run_ids[1:]:
            merged = merged.merge(self.load_report(run_id))
        return merged

    def bucket_counts(self, run_id: str, metric: str, scope: str = ALL_SCOPE) -> dict[int, int]:
        """Stored buckets for one metric; ``scope`` is ``all``, ``backend:<name>`` or ``model:<name>``."""
        rows = self.connection.execute(
            """
            SELECT bucket_index, bucket_count
            FROM histogram_buckets
            WHERE run_id = ? AND scope = ? AND metric = ?
            ORDER BY bucket_index
            """,
            [run_id, scope, metric],
        ).fetchall()
        return {int(row[0]): int(row[1]) for row in rows}

    def get_run(self, run_id: str) -> dict[str, Any]:
        row = self.connection.execute(
            """
            SELECT run_id, started_at, finished_at, duration_s, status, abort_reason, config_json
            FROM runs
            WHERE run_id = ?
            """,
            [run_id],
        ).fetchone()
        if row is None:
            raise KeyError(run_id)
        return self._run_row_to_dict(row)

    def latest_run_id(self) -> str | None:
        row = self.connection.execute(
            "SELECT run_id FROM runs ORDER BY started_at DESC LIMIT 1"
        ).fetchone()
        return None if row is None else str(row[0])

    def list_runs_with_stats(self) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            """
            SELECT
                runs.run_id,
                runs.started_at,
                runs.finished_at,
                runs.duration_s,
                runs.status,
                runs.abort_reason,
                runs.config_json,
                COALESCE(run_reports.success_count, 0) AS success_count,
                COALESCE(run_reports.failed_count, 0) AS failed_count,
                COALESCE(run_reports.cancelled_count, 0) AS cancelled_count
            FROM runs
            LEFT JOIN run_reports USING (run_id)
            ORDER BY runs.started_at DESC
            """
        ).fetchall()
        runs = []
        for row in rows:
            run = self._run_row_to_dict(row[:7])
            run["success_count"] = int(row[7] or 0)
            run["failed_count"] = int(row[8] or 0)
            run["cancelled_count"] = int(row[9] or 0)
            run["request_count"] = run["success_count"] + run["failed_count"] + run["cancelled_count"]
            runs.append(run)
        return runs

    def delete_run(self, run_id: str) -> bool:
        existing = self.connection.execute(
            "SELECT 1 FROM runs WHERE run_id = ? LIMIT 1",
            [run_id],
        ).fetchone()
        if existing is None:
            return False

        logger.debug("Deleting run: %s", run_id)
        self.connection.execute("BEGIN TRANSACTION")
        try:
            for table in ("histogram_buckets", "failures", "run_reports", "runs"):
                self.connection.execute(f"DELETE FROM {table} WHERE run_id = ?", [run_id])
            self.connection.execute("COMMIT")
        except Exception:  # noqa: BLE001
            logger.warning("Error during deletion of run %s, rolling back transaction", run_id, exc_info=True)
            self.connection.execute("ROLLBACK")
            raise
        return True

    def close(self) -> None:
        self.connection.close()

    @staticmethod
    def _run_row_to_dict(row: Any) -> dict[str, Any]:
        return {
            "run_id": row[0],
            "started_at": row[1],
            "finished_at": row[2],
            "duration_s": row[3],
            "status": row[4],
            "abort_reason": row[5],
            "config_json": row[6],
        }
