from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import json
import logging
import os
from pathlib import Path
import random
import sys
from threading import Lock
import time
import uuid

import typer

from aggregator import COMPARE_KEYS, AggregatedReport, compare_reports
from backends import LiteLLMBackend
from errors import RunAborted
from orchestrator import RunOrchestrator, Scenario
from providers import ProviderConfig, ProviderRegistry
from records import Outcome, OutcomeStatus, RetryPolicy, RunConfig
from storage import ReportStorage


logger = logging.getLogger(__name__)


def _setup_logging() -> None:
    """Configure root logger from LLM_PROFILE_LOG_LEVEL env var (default: WARNING)."""
    level_name = os.environ.get("LLM_PROFILE_LOG_LEVEL", "WARNING").upper()
    level = getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


app = typer.Typer(no_args_is_help=True, help="LLM latency profiler CLI")
provider_app = typer.Typer(no_args_is_help=True, help="Provider management commands")
report_app = typer.Typer(no_args_is_help=True, help="Report commands")
app.add_typer(provider_app, name="provider")
app.add_typer(report_app, name="report")


DEFAULT_PROVIDER_CONFIG = Path("providers.toml")
DEFAULT_PROFILE_DB = Path("profile.duckdb")
DEFAULT_PROMPT_FILE = Path("prompts.txt")
SUMMARY_KEYS = ("p50", "p90", "p95", "p99", "p999")


@dataclass(slots=True)
class _RunProgress:
    run_id: str
    total_requests: int
    concurrency: int
    enabled: bool = True
    min_update_interval_s: float = 0.2
    completed_requests: int = field(init=False, default=0)
    counts: dict[OutcomeStatus, int] = field(init=False)
    _lock: Lock = field(init=False, repr=False)
    _interactive: bool = field(init=False, repr=False)
    _start_perf: float = field(init=False, repr=False)
    _last_emit_perf: float = field(init=False, default=0.0, repr=False)
    _last_line_len: int = field(init=False, default=0, repr=False)
    _finalized: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        self._lock = Lock()
        self._interactive = bool(self.enabled and sys.stderr.isatty())
        self._start_perf = time.perf_counter()
        self.counts = {status: 0 for status in OutcomeStatus}

    def start(self) -> None:
        if not self.enabled:
            return
        typer.echo(
            f"[run] run_id={self.run_id} total_requests={self.total_requests} concurrency={self.concurrency}",
            err=True,
        )

    def on_outcome(self, outcome: Outcome) -> None:
        if not self.enabled:
            return

        with self._lock:
            self.completed_requests += 1
            self.counts[outcome.status] += 1
            now = time.perf_counter()
            finished = self.completed_requests >= self.total_requests
            if not finished and now - self._last_emit_perf < self.min_update_interval_s:
                return
            self._last_emit_perf = now
            self._emit_progress(now=now, final=finished)

    def finalize(self) -> None:
        if not self.enabled:
            return

        with self._lock:
            if self._finalized:
                return
            self._finalized = True
            if self.completed_requests < self.total_requests:
                self._emit_progress(now=time.perf_counter(), final=True)
            elif self._interactive:
                typer.echo("", err=True)

    def _emit_progress(self, now: float, final: bool) -> None:
        percent = (
            (self.completed_requests / self.total_requests) * 100.0
            if self.total_requests > 0
            else 100.0
        )
        elapsed_s = max(now - self._start_perf, 1e-9)
        line = (
            f"[progress] {self.completed_requests}/{self.total_requests} ({percent:5.1f}%) "
            f"ok={self.counts[OutcomeStatus.SUCCESS]} fail={self.counts[OutcomeStatus.FAILED]} "
            f"cancelled={self.counts[OutcomeStatus.CANCELLED]} "
            f"rps={self.completed_requests / elapsed_s:6.2f}"
        )

        if not self._interactive:
            typer.echo(line, err=True)
            return

        padded_line = line
        if len(line) < self._last_line_len:
            padded_line = line + (" " * (self._last_line_len - len(line)))
        self._last_line_len = len(line)
        typer.echo(f"\r{padded_line}", err=True, nl=final)


def _load_prompts(prompt_file: Path) -> list[str]:
    lines = prompt_file.read_text(encoding="utf-8").splitlines()
    prompts: list[str] = []
    if prompt_file.suffix.lower() == ".jsonl":
        for line_number, raw_line in enumerate(lines, start=1):
            line = raw_line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Invalid JSONL at line {line_number}: {exc.msg}") from exc
            if not isinstance(payload, dict):
                raise ValueError(
                    f"Invalid JSONL at line {line_number}: each row must be an object "
                    "with `prompt` or `content`"
                )

            prompt = payload.get("prompt")
            if prompt is None:
                prompt = payload.get("content")
            if prompt is not None:
                value = str(prompt).strip()
                if value:
                    prompts.append(value)
        return prompts

    for line in lines:
        value = line.strip()
        if value:
            prompts.append(value)
    return prompts


def _select_providers(registry: ProviderRegistry, providers: str | None) -> list[ProviderConfig]:
    if not providers:
        selected = registry.list_providers()
        if not selected:
            typer.echo("No providers configured. Add one with `llm-profile provider add`.")
            raise typer.Exit(1)
        return selected

    provider_names = [name.strip() for name in providers.split(",") if name.strip()]
    if not provider_names:
        typer.echo("No providers specified.")
        raise typer.Exit(1)
    duplicates = sorted({name for name in provider_names if provider_names.count(name) > 1})
    if duplicates:
        typer.echo("Duplicate provider names are not allowed: " + ", ".join(duplicates))
        raise typer.Exit(1)

    selected = []
    for provider_name in provider_names:
        try:
            selected.append(registry.get_provider(provider_name))
        except KeyError:
            typer.echo(f"Provider not found: {provider_name}")
            raise typer.Exit(1)
    return selected


def _build_run_config(defaults: dict[str, object], overrides: dict[str, object | None]) -> RunConfig:
    settings = dict(defaults)
    settings.update({key: value for key, value in overrides.items() if value is not None})
    retry_defaults = RetryPolicy()
    retry = RetryPolicy(
        max_attempts=int(settings.pop("max_attempts", retry_defaults.max_attempts)),
        initial_backoff_s=float(settings.pop("initial_backoff_s", retry_defaults.initial_backoff_s)),
        multiplier=float(settings.pop("backoff_multiplier", retry_defaults.multiplier)),
        max_backoff_s=float(settings.pop("max_backoff_s", retry_defaults.max_backoff_s)),
        jitter=float(settings.pop("jitter", retry_defaults.jitter)),
    )
    return RunConfig(retry=retry, **settings)


def _format_value(value: object, *, unit: str = "") -> str:
    if value is None:
        return "-"
    return f"{float(value):.4f}{unit}"


def _render_summary_line(label: str, summary: dict[str, object], unit: str) -> str:
    count = int(summary.get("count") or 0)
    values = " ".join(f"{key}={_format_value(summary.get(key))}" for key in SUMMARY_KEYS)
    return (
        f"- {label + ' (' + unit + ')':<22} count={count:<6} mean={_format_value(summary.get('mean'))} "
        f"{values} max={_format_value(summary.get('max'))}"
    )


def _render_report(run_ids: list[str], report: AggregatedReport, db: Path) -> str:
    data = report.to_dict()
    requests = data["requests"]
    attempts = data["attempts"]
    latency = data["latency_s"]
    throughput = data["throughput"]
    lines = [
        "Profile summary",
        f"Run ID   : {', '.join(run_ids)}",
        f"DB       : {db}",
        "",
        (
            f"Requests : total={requests['total']} ok={requests['success']} "
            f"failed={requests['failed']} cancelled={requests['cancelled']}"
        ),
        f"Attempts : total={attempts['total']} retries={attempts['retries']}",
    ]
    for kind, count in requests["failed_by_kind"].items():
        lines.append(f"  failed[{kind}]={count}")
    lines.extend(
        [
            "Latency:",
            _render_summary_line("ttft", latency["ttft"], "s"),
            _render_summary_line("total", latency["total_latency"], "s"),
            _render_summary_line("inter_token", latency["inter_token"], "s"),
            "Throughput:",
            _render_summary_line("tokens/s", data["tokens_per_second"], "tok/s"),
            (
                f"- overall rps={_format_value(throughput['rps'])} "
                f"tps={_format_value(throughput['tps'])} duration={_format_value(throughput['duration_s'], unit='s')}"
            ),
        ]
    )
    for title, groups in (("Backends:", report.by_backend), ("Models:", report.by_model)):
        if len(groups) < 2:
            continue
        lines.append(title)
        for name in sorted(groups):
            lines.extend(_render_group(name, groups[name]))
    return "\n".join(lines)


def _render_group(name: str, report: AggregatedReport) -> list[str]:
    latency = report.to_dict()["latency_s"]
    return [
        (
            f"- [{name}] total={report.total} ok={report.success_count} "
            f"failed={report.failed_count} cancelled={report.cancelled_count}"
        ),
        "  " + _render_summary_line("ttft", latency["ttft"], "s"),
        "  " + _render_summary_line("total", latency["total_latency"], "s"),
    ]


def _format_change(label: str, change: dict[str, object], unit: str = "") -> str:
    pct_change = change.get("pct_change")
    pct = "n/a" if pct_change is None else f"{float(pct_change):+.1f}%"
    return (
        f"- {label}: {_format_value(change.get('baseline'), unit=unit)} -> "
        f"{_format_value(change.get('current'), unit=unit)} ({pct})"
    )


def _render_comparison(baseline: str, run_id: str, comparison: dict[str, object]) -> str:
    lines = [
        "Profile comparison",
        f"Baseline : {baseline}",
        f"Run ID   : {run_id}",
        "",
        _format_change("requests", comparison["requests"]),
        _format_change("success_rate", comparison["success_rate"]),
        _format_change("rps", comparison["rps"]),
        "Latency:",
    ]
    for metric, changes in comparison["latency_s"].items():
        for key in COMPARE_KEYS:
            lines.append(_format_change(f"{metric} {key}", changes[key], unit="s"))
    lines.append("Throughput:")
    for key in COMPARE_KEYS:
        lines.append(_format_change(f"tokens/s {key}", comparison["tokens_per_second"][key]))
    by_backend = comparison.get("by_backend") or {}
    if by_backend:
        lines.append("Backends:")
        for name, backend_comparison in by_backend.items():
            for metric in ("ttft", "total_latency"):
                lines.append(
                    _format_change(f"[{name}] {metric} p50", backend_comparison["latency_s"][metric]["p50"], unit="s")
                )
    return "\n".join(lines)


def _parse_config_json(config_json: object) -> dict[str, object]:
    if not isinstance(config_json, str) or not config_json.strip():
        return {}
    try:
        payload = json.loads(config_json)
    except json.JSONDecodeError:
        return {}
    if isinstance(payload, dict):
        return payload
    return {}


def _format_timestamp(value: object) -> str:
    if value is None:
        return "-"
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return "-"
    return datetime.fromtimestamp(numeric).astimezone().isoformat(timespec="seconds")


def _render_report_list(runs: list[dict[str, object]], db: Path) -> str:
    lines = [
        "Profile runs",
        f"Total : {len(runs)}",
        f"DB    : {db}",
        "",
        "Runs:",
    ]
    for run in runs:
        duration_s = run.get("duration_s")
        lines.append(
            (
                f"- {run.get('run_id', '-')} status={run.get('status', '-')} "
                f"started={_format_timestamp(run.get('started_at'))} "
                f"duration={_format_value(duration_s, unit='s') if duration_s is not None else '-'} "
                f"requests={int(run.get('request_count') or 0)} ok={int(run.get('success_count') or 0)} "
                f"fail={int(run.get('failed_count') or 0)} cancelled={int(run.get('cancelled_count') or 0)}"
            )
        )
    return "\n".join(lines)


@provider_app.command("add")
def provider_add(
    name: str = typer.Option(..., "--name", help="Provider name"),
    model: str = typer.Option(..., "--model", help="Model identifier"),
    api_base: str | None = typer.Option(None, "--api-base", help="Provider base URL"),
    api_key_env: str | None = typer.Option(
        None, "--api-key-env", help="Environment variable storing API key"
    ),
    max_tokens: int | None = typer.Option(None, "--max-tokens", min=1, help="Default max tokens"),
    temperature: float | None = typer.Option(None, "--temperature", help="Default temperature"),
    config: Path = typer.Option(
        DEFAULT_PROVIDER_CONFIG, "--config", help="Provider registry file", hidden=True
    ),
) -> None:
    provider = ProviderConfig(
        name=name,
        model=model,
        api_base=api_base,
        api_key_env=api_key_env,
        max_tokens=max_tokens,
        temperature=temperature,
    )

    registry = ProviderRegistry(config)
    registry.save_provider(provider)
    logger.debug("Provider %r added to %s", name, config)
    typer.echo(f"Provider added: {name}")


@provider_app.command("list")
def provider_list(
    config: Path = typer.Option(
        DEFAULT_PROVIDER_CONFIG, "--config", help="Provider registry file", hidden=True
    ),
) -> None:
    registry = ProviderRegistry(config)
    providers = registry.list_providers()
    if not providers:
        typer.echo("No providers configured.")
        return

    for provider in providers:
        api_base = provider.api_base or "-"
        api_key_env = provider.api_key_env or "-"
        typer.echo(f"{provider.name}\t{provider.model}\t{api_base}\t{api_key_env}")


@provider_app.command("remove")
def provider_remove(
    name: str = typer.Option(..., "--name", help="Provider name"),
    config: Path = typer.Option(
        DEFAULT_PROVIDER_CONFIG, "--config", help="Provider registry file", hidden=True
    ),
) -> None:
    registry = ProviderRegistry(config)
    try:
        registry.remove_provider(name)
    except KeyError:
        typer.echo(f"Provider not found: {name}")
        raise typer.Exit(1)
    typer.echo(f"Provider removed: {name}")


@app.command("run")
def run_profile(
    providers: str | None = typer.Option(
        None,
        "--providers",
        help="Comma-separated provider names. Defaults to all configured providers.",
    ),
    prompt_file: Path = typer.Option(
        DEFAULT_PROMPT_FILE, "--prompt-file", help="Prompt file (.txt or .jsonl)"
    ),
    iterations: int | None = typer.Option(
        None, "--iterations", "-n", min=0, help="Measured requests. Defaults to one per prompt and provider."
    ),
    concurrency: int | None = typer.Option(None, "--concurrency", "-c", min=1, help="Max in-flight requests"),
    rate_limit_rps: float | None = typer.Option(None, "--rps", help="Max attempts per second"),
    burst: int | None = typer.Option(None, "--burst", min=1, help="Token bucket burst size"),
    warmup: int | None = typer.Option(None, "--warmup", min=0, help="Unmeasured warmup requests"),
    max_attempts: int | None = typer.Option(None, "--max-attempts", min=1, help="Attempts per request"),
    initial_backoff_s: float | None = typer.Option(None, "--initial-backoff-s", help="First retry delay"),
    backoff_multiplier: float | None = typer.Option(None, "--backoff-multiplier", help="Backoff growth factor"),
    max_backoff_s: float | None = typer.Option(None, "--max-backoff-s", help="Retry delay ceiling"),
    jitter: float | None = typer.Option(None, "--jitter", help="Backoff jitter fraction"),
    timeout_s: float | None = typer.Option(None, "--timeout-s", help="Per-request timeout"),
    run_deadline_s: float | None = typer.Option(None, "--deadline-s", help="Abort the run after this long"),
    stall_timeout_s: float | None = typer.Option(
        None, "--stall-timeout-s", help="Abort when nothing is admitted or finishes for this long"
    ),
    seed: int | None = typer.Option(None, "--seed", help="Seed for backoff jitter"),
    db: Path = typer.Option(DEFAULT_PROFILE_DB, "--db", "-d", help="DuckDB output file"),
    progress: bool = typer.Option(True, "--progress/--no-progress", help="Show live progress on stderr"),
    config: Path = typer.Option(
        DEFAULT_PROVIDER_CONFIG, "--config", help="Provider registry file", hidden=True
    ),
    run_id: str | None = typer.Option(None, "--run-id", help="Optional run id", hidden=True),
) -> None:
    registry = ProviderRegistry(config)
    selected_providers = _select_providers(registry, providers)

    if not prompt_file.exists():
        typer.echo(f"Prompt file not found: {prompt_file}")
        raise typer.Exit(1)
    try:
        prompts = _load_prompts(prompt_file)
    except ValueError as exc:
        typer.echo(f"Failed to load prompts: {exc}")
        raise typer.Exit(1)
    if not prompts:
        typer.echo("Prompt file does not contain usable prompts.")
        raise typer.Exit(1)
    logger.debug("Loaded %d prompts from %s", len(prompts), prompt_file)

    overrides: dict[str, object | None] = {
        "iterations": iterations,
        "concurrency": concurrency,
        "rate_limit_rps": rate_limit_rps,
        "burst": burst,
        "warmup": warmup,
        "timeout_s": timeout_s,
        "run_deadline_s": run_deadline_s,
        "stall_timeout_s": stall_timeout_s,
        "max_attempts": max_attempts,
        "initial_backoff_s": initial_backoff_s,
        "backoff_multiplier": backoff_multiplier,
        "max_backoff_s": max_backoff_s,
        "jitter": jitter,
    }
    try:
        defaults = registry.load_profile_defaults()
        defaults.setdefault("iterations", len(prompts) * len(selected_providers))
        run_config = _build_run_config(defaults, overrides)
    except (TypeError, ValueError) as exc:
        typer.echo(f"Invalid run configuration: {exc}")
        raise typer.Exit(1)

    scenarios = [
        Scenario(
            backend=provider.name,
            model=provider.model,
            prompts=tuple(prompts),
            max_tokens=provider.max_tokens,
            temperature=provider.temperature,
            extra_params=provider.params,
        )
        for provider in selected_providers
    ]

    actual_run_id = run_id or f"run-{uuid.uuid4().hex[:8]}"
    run_progress = _RunProgress(
        run_id=actual_run_id,
        total_requests=run_config.iterations,
        concurrency=run_config.concurrency,
        enabled=progress,
    )
    orchestrator = RunOrchestrator(
        backend=LiteLLMBackend({provider.name: provider for provider in selected_providers}),
        config=run_config,
        rng=random.Random(seed),
        on_outcome=run_progress.on_outcome,
    )

    storage = ReportStorage(db)
    status = "running"
    abort_reason: str | None = None
    try:
        storage.create_run(
            run_id=actual_run_id,
            started_at=time.time(),
            config_json=json.dumps(
                {
                    "providers": [provider.name for provider in selected_providers],
                    "prompt_file": str(prompt_file),
                    **{key: value for key, value in overrides.items() if value is not None},
                    "iterations": run_config.iterations,
                    "concurrency": run_config.concurrency,
                    "seed": seed,
                },
                ensure_ascii=True,
            ),
        )
        run_progress.start()
        try:
            report = orchestrator.run(scenarios)
            status = "completed"
        except RunAborted as exc:
            report = exc.report
            status = "aborted"
            abort_reason = exc.reason
        storage.save_report(actual_run_id, report)
        run_progress.finalize()
        typer.echo(
            json.dumps(
                {
                    "run_id": actual_run_id,
                    "status": status,
                    "abort_reason": abort_reason,
                    "report": report.to_dict(),
                    "db": str(db),
                },
                ensure_ascii=False,
            )
        )
    finally:
        try:
            storage.finish_run(
                run_id=actual_run_id,
                finished_at=time.time(),
                status=status if status != "running" else "failed",
                abort_reason=abort_reason,
            )
        except Exception:  # noqa: BLE001
            logger.warning("Failed to mark run %s as finished during cleanup", actual_run_id, exc_info=True)
        run_progress.finalize()
        storage.close()

    if status == "aborted":
        raise typer.Exit(2)


@report_app.command("summary")
def report_summary(
    run_ids: list[str] | None = typer.Option(
        None, "--run-id", help="Run identifier; repeat to merge runs. Defaults to latest run."
    ),
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_PROFILE_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = ReportStorage(db)
    try:
        selected = list(run_ids or [])
        if not selected:
            latest = storage.latest_run_id()
            if latest is None:
                typer.echo("No runs found.")
                raise typer.Exit(1)
            selected = [latest]

        try:
            report = storage.merge_reports(selected)
        except KeyError as exc:
            typer.echo(f"Report not found for run: {exc.args[0]}")
            raise typer.Exit(1)

        if json_output:
            typer.echo(json.dumps({"run_ids": selected, "report": report.to_dict()}, ensure_ascii=False))
        else:
            typer.echo(_render_report(selected, report, db=db))
    finally:
        storage.close()


@report_app.command("compare")
def report_compare(
    baseline: str = typer.Option(..., "--baseline", help="Run identifier to compare against"),
    run_id: str = typer.Option(..., "--run-id", help="Run identifier to compare"),
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_PROFILE_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = ReportStorage(db)
    try:
        reports: list[AggregatedReport] = []
        for selected in (baseline, run_id):
            try:
                reports.append(storage.load_report(selected))
            except KeyError:
                typer.echo(f"Report not found for run: {selected}")
                raise typer.Exit(1)

        comparison = compare_reports(reports[0], reports[1])
        if json_output:
            typer.echo(
                json.dumps({"baseline": baseline, "run_id": run_id, "comparison": comparison}, ensure_ascii=False)
            )
        else:
            typer.echo(_render_comparison(baseline, run_id, comparison))
    finally:
        storage.close()


@report_app.command("list")
def report_list(
    limit: int | None = typer.Option(None, "--limit", "-n", min=1, help="Maximum number of runs to show"),
    json_output: bool = typer.Option(False, "--json", help="Output machine-readable JSON"),
    db: Path = typer.Option(DEFAULT_PROFILE_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = ReportStorage(db)
    try:
        runs = storage.list_runs_with_stats()
        if not runs:
            typer.echo("No runs found.")
            raise typer.Exit(1)
        if limit is not None:
            runs = runs[:limit]

        output_runs = []
        for run in runs:
            config = _parse_config_json(run.pop("config_json", None))
            run["started_at_iso"] = _format_timestamp(run.get("started_at"))
            run["prompt_file"] = config.get("prompt_file")
            run["providers"] = config.get("providers")
            output_runs.append(run)

        if json_output:
            typer.echo(
                json.dumps({"db": str(db), "total": len(output_runs), "runs": output_runs}, ensure_ascii=False)
            )
            return
        typer.echo(_render_report_list(output_runs, db=db))
    finally:
        storage.close()


@report_app.command("remove")
def report_remove(
    run_id: str = typer.Option(..., "--run-id", help="Run identifier to remove"),
    db: Path = typer.Option(DEFAULT_PROFILE_DB, "--db", "-d", help="DuckDB output file"),
) -> None:
    storage = ReportStorage(db)
    try:
        deleted = storage.delete_run(run_id=run_id)
        if not deleted:
            typer.echo(f"Run not found: {run_id}")
            raise typer.Exit(1)
        typer.echo(f"Run removed: {run_id}")
    finally:
        storage.close()


def main() -> None:
    _setup_logging()
    app()


if __name__ == "__main__":
    main()
