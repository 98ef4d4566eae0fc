from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from itertools import count as count_from
import logging
import random
from threading import Event, Lock
from typing import Callable, Iterator, Mapping, Sequence

from admission import ConcurrencyController
from aggregator import AggregatedReport, MetricsAggregator
from backends import Backend
from classifier import OutcomeClassifier
from clock import Clock, ClockProtocol, ns_to_s, s_to_ns
from errors import RunAborted
from executor import RequestExecutor
from records import Outcome, RequestSpec, RunConfig
from timing import TimingEngine


logger = logging.getLogger(__name__)

OutcomeCallback = Callable[[Outcome], None]


@dataclass(frozen=True, slots=True)
class Scenario:
    backend: str
    model: str
    prompts: tuple[str, ...]
    max_tokens: int | None = None
    temperature: float | None = None
    extra_params: Mapping[str, object] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.prompts:
            raise ValueError(f"Scenario for {self.backend!r} has no prompts")
        object.__setattr__(self, "prompts", tuple(self.prompts))


def expand_requests(
    scenarios: Sequence[Scenario],
    count: int,
    timeout_s: float | None = None,
    prefix: str = "req",
) -> Iterator[RequestSpec]:
    """Lazily yield ``count`` specs, round-robin over scenarios, cycling prompts."""
    if not scenarios:
        raise ValueError("at least one scenario is required")
    for index in range(count):
        scenario = scenarios[index % len(scenarios)]
        round_index = index // len(scenarios)
        yield RequestSpec(
            request_id=f"{scenario.backend}-{prefix}-{index}",
            backend=scenario.backend,
            model=scenario.model,
            prompt=scenario.prompts[round_index % len(scenario.prompts)],
            max_tokens=scenario.max_tokens,
            temperature=scenario.temperature,
            extra_params=scenario.extra_params,
            timeout_s=timeout_s,
        )


class RunOrchestrator:
    def __init__(
        self,
        backend: Backend,
        config: RunConfig,
        clock: ClockProtocol | None = None,
        rng: random.Random | None = None,
        on_outcome: OutcomeCallback | None = None,
        relative_accuracy: float = 0.01,
    ) -> None:
        self.backend = backend
        self.config = config
        # Clock() raises ClockUnavailable here, before any request is issued.
        self.clock = clock or Clock()
        self.rng = rng or random.Random()
        self.on_outcome = on_outcome
        self.relative_accuracy = relative_accuracy
        self.submitted = 0
        self._cancel_event = Event()
        self._controller: ConcurrencyController | None = None
        self._aggregator: MetricsAggregator | None = None
        self._last_progress_ns = 0
        self._state_lock = Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def controller(self) -> ConcurrencyController | None:
        return self._controller

    def cancel(self) -> None:
        if not self._cancel_event.is_set():
            logger.info("Cancelling run")
        self._cancel_event.set()
        controller = self._controller
        if controller is not None:
            controller.wake_all()

    def snapshot(self) -> AggregatedReport:
        """Point-in-time copy of the measured results so far."""
        aggregator = self._aggregator
        if aggregator is None:
            return AggregatedReport(relative_accuracy=self.relative_accuracy)
        return aggregator.snapshot()

    def run(self, scenarios: Scenario | Sequence[Scenario]) -> AggregatedReport:
        if isinstance(scenarios, Scenario):
            scenarios = [scenarios]
        config = self.config
        logger.info(
            "Starting run: iterations=%d warmup=%d concurrency=%d rate_limit_rps=%s burst=%d",
            config.iterations,
            config.warmup,
            config.concurrency,
            config.rate_limit_rps,
            config.burst,
        )

        abort_reason = None
        if config.warmup:
            warmup_specs = expand_requests(scenarios, config.warmup, config.timeout_s, prefix="warmup")
            abort_reason = self._run_phase(
                warmup_specs, config.warmup, MetricsAggregator(self.relative_accuracy), notify=False
            )
            logger.debug("Warmup finished")

        self._aggregator = MetricsAggregator(self.relative_accuracy, started_at_ns=self.clock.now())
        if abort_reason is None:
            measured_specs = expand_requests(scenarios, config.iterations, config.timeout_s)
            abort_reason = self._run_phase(measured_specs, config.iterations, self._aggregator, notify=True)
        report = self._aggregator.snapshot()

        if abort_reason is None and report.total != self.submitted:
            logger.error("Outcome count %d does not match submitted requests %d", report.total, self.submitted)
        logger.info(
            "Run finished: success=%d failed=%d cancelled=%d",
            report.success_count,
            report.failed_count,
            report.cancelled_count,
        )
        if abort_reason is not None:
            logger.warning("Run aborted: %s", abort_reason)
            raise RunAborted(abort_reason, report)
        return report

    def _run_phase(
        self,
        specs: Iterator[RequestSpec],
        request_count: int,
        aggregator: MetricsAggregator,
        notify: bool,
    ) -> str | None:
        if request_count <= 0:
            return None
        config = self.config
        self._controller = controller = ConcurrencyController(
            concurrency=config.concurrency,
            rate_limit_rps=config.rate_limit_rps,
            burst=config.burst,
            clock=self.clock,
            poll_interval_s=config.poll_interval_s,
            on_admit=self._mark_progress,
        )
        if self._cancel_event.is_set():
            controller.wake_all()

        def sink(outcome: Outcome) -> None:
            aggregator.ingest(outcome)
            self._mark_progress(self.clock.now())
            if notify:
                self._notify_outcome(outcome)

        executor = RequestExecutor(
            backend=self.backend,
            controller=controller,
            classifier=OutcomeClassifier(config.retry, self.rng),
            timing_engine=TimingEngine(self.clock),
            sink=sink,
            cancel_event=self._cancel_event,
            clock=self.clock,
            default_timeout_s=config.timeout_s,
        )
        spec_lock = Lock()
        submitted = count_from()

        def worker() -> int:
            processed = 0
            while True:
                with spec_lock:
                    spec = next(specs, None)
                    if spec is None:
                        return processed
                    if notify:
                        self.submitted = next(submitted) + 1
                executor.execute(spec)
                processed += 1

        started_ns = self.clock.now()
        self._mark_progress(started_ns)
        deadline_ns = started_ns + s_to_ns(config.run_deadline_s) if config.run_deadline_s else None
        stall_ns = s_to_ns(config.stall_timeout_s) if config.stall_timeout_s else None
        abort_reason: str | None = None

        worker_count = config.worker_count(request_count)
        logger.debug("Running %d request(s) on %d worker(s)", request_count, worker_count)
        with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="llm-profile") as pool:
            pending = {pool.submit(worker) for _ in range(worker_count)}
            try:
                while pending:
                    done, pending = wait(pending, timeout=config.poll_interval_s, return_when=FIRST_COMPLETED)
                    for future in done:
                        future.result()
                    if abort_reason is not None:
                        continue
                    now_ns = self.clock.now()
                    if deadline_ns is not None and now_ns >= deadline_ns:
                        abort_reason = f"run deadline of {config.run_deadline_s}s elapsed"
                        self.cancel()
                    elif stall_ns is not None and now_ns - self._last_progress_ns >= stall_ns:
                        abort_reason = (
                            f"no request admitted or finished for {ns_to_s(now_ns - self._last_progress_ns):.1f}s"
                        )
                        self.cancel()
            except KeyboardInterrupt:
                abort_reason = "interrupted"
                self.cancel()
            except BaseException:
                # Let the remaining workers drain as cancelled before the pool joins.
                self.cancel()
                raise
        return abort_reason

    def _mark_progress(self, now_ns: int) -> None:
        with self._state_lock:
            if now_ns > self._last_progress_ns:
                self._last_progress_ns = now_ns

    def _notify_outcome(self, outcome: Outcome) -> None:
        if self.on_outcome is None:
            return
        try:
            self.on_outcome(outcome)
        except Exception:  # noqa: BLE001
            logger.debug("on_outcome callback failed", exc_info=True)
