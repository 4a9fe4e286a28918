# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..config.models import KubestrapConfig
from ..errors import (
    EXIT_CANCELLED,
    EXIT_JOIN_ABORTED,
    EXIT_OK,
    EXIT_STEP_FAILED,
    PrerequisitePhaseNotSatisfied,
)
from ..inventory.registry import Host, HostRegistry, Role
from ..join.coordinator import JoinCoordinator
from ..remote.channel import RemoteChannel
from ..state.tracker import Outcome, OutcomeKind, StateTracker
from ..steps.catalog import load_catalog
from ..steps.models import ClusterJoin, Step

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import (
    PhaseFinished,
    PhaseStarted,
    RunCancelled,
    RunStarted,
    RunSummary,
    StepFailed,
    StepSkipped,
    StepStarted,
    StepSucceeded,
    new_ctx,
)
from .executor import StepExecutor
from .phases import Phase, resolve_phase_selection
from .planner import PhasePlanner, PlannedStep

log = logging.getLogger("kubestrap")


@dataclass
class RunOptions:
    force: bool = False
    retries: int = 0
    backoff_seconds: float = 5.0
    step_timeout: Optional[float] = None   # None → step's own timeout or executor default
    max_parallel: int = 10
    probe_hosts: bool = False


@dataclass
class StepReport:
    phase: str
    host: str
    step: str
    outcome: Outcome
    attempts: int = 0

    @property
    def status(self) -> str:
        return self.outcome.kind.value


@dataclass
class RunReport:
    entries: List[StepReport] = field(default_factory=list)
    fatal_error: Optional[str] = None
    cancelled: bool = False

    def add(self, entry: StepReport) -> None:
        self.entries.append(entry)
        if entry.outcome.fatal and self.fatal_error is None:
            self.fatal_error = entry.outcome.reason

    def count(self, *kinds: OutcomeKind) -> int:
        return sum(1 for e in self.entries if e.outcome.kind in kinds)

    @property
    def succeeded(self) -> int:
        return self.count(OutcomeKind.SUCCESS)

    @property
    def already_satisfied(self) -> int:
        return self.count(OutcomeKind.SKIPPED_ALREADY_SATISFIED)

    @property
    def failed(self) -> int:
        return self.count(OutcomeKind.FAILED)

    @property
    def skipped(self) -> int:
        """Skipped for any reason (already satisfied or dependency)."""
        return self.count(OutcomeKind.SKIPPED_ALREADY_SATISFIED, OutcomeKind.SKIPPED_DUE_TO_DEPENDENCY)

    @property
    def dependency_skipped(self) -> int:
        return self.count(OutcomeKind.SKIPPED_DUE_TO_DEPENDENCY)

    @property
    def ok(self) -> bool:
        return all(e.outcome.ok for e in self.entries) and self.fatal_error is None

    @property
    def exit_code(self) -> int:
        if self.fatal_error:
            return EXIT_JOIN_ABORTED
        if self.failed or self.dependency_skipped:
            return EXIT_STEP_FAILED
        if self.cancelled or self.count(OutcomeKind.CANCELLED):
            return EXIT_CANCELLED
        return EXIT_OK

    def for_phase(self, phase: "str | Phase") -> List[StepReport]:
        phase = Phase.parse(phase)
        return [e for e in self.entries if e.phase == phase.value]

    def get(self, host: str, step: str) -> Optional[StepReport]:
        for e in self.entries:
            if e.host == host and e.step == step:
                return e
        return None

    def summary(self) -> str:
        return (
            f"OK={self.succeeded} ALREADY={self.already_satisfied} FAILED={self.failed} "
            f"DEP_SKIPPED={self.dependency_skipped} CANCELLED={self.count(OutcomeKind.CANCELLED)}"
        )


class Orchestrator:
    """
    Runs selected phases in global order against the selected hosts.

    Phases are a barrier: every host finishes phase N before any host starts
    phase N+1, which is what keeps control-plane initialisation ahead of
    worker joins. Inside a phase hosts run in parallel and each host applies
    its steps in declaration order.
    """

    def __init__(
        self,
        registry: HostRegistry,
        planner: PhasePlanner,
        executor: StepExecutor,
        tracker: StateTracker,
        *,
        bus: Optional[EventBus] = None,
        prober: Optional[Callable[[Host], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.registry = registry
        self.planner = planner
        self.executor = executor
        self.tracker = tracker
        self.bus = bus
        self.prober = prober
        self._sleep = sleep
        self._cancel = threading.Event()

    def _publish(self, event_cls, **fields) -> None:
        if self.bus:
            self.bus.publish(event_cls, **fields)

    def cancel(self) -> None:
        """Stop issuing new (host, step) work. In-flight actions finish."""
        if not self._cancel.is_set():
            log.warning("cancellation requested; waiting for in-flight steps")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    # ---------- prerequisite bookkeeping ----------

    def _relevant_hosts(self, hosts: Iterable[Host]) -> List[Host]:
        """``hosts`` plus the control-plane host, which every phase leans on."""
        out: List[Host] = []
        seen: Set[str] = set()
        for h in [*hosts, self.registry.control_plane]:
            if h.id not in seen:
                seen.add(h.id)
                out.append(h)
        return out

    def _unsatisfied(self, phase: Phase, hosts: Sequence[Host]) -> List[Tuple[str, str]]:
        return [
            (h.id, s.id)
            for s in self.planner.steps_for(phase)
            for h in hosts
            if s.applies_to(h.role) and not self.tracker.is_satisfied(h.id, s.id)
        ]

    def _preflight(self, plans: Dict[Phase, List[PlannedStep]]) -> None:
        """
        Every prerequisite of a selected phase must either be recorded as
        satisfied already or be scheduled earlier in this same run.
        """
        for phase, pairs in plans.items():
            if not pairs:
                continue
            relevant = self._relevant_hosts(p.host for p in pairs)
            for prereq in phase.prerequisites:
                scheduled = {(p.host.id, p.step.id) for p in plans.get(prereq, [])}
                missing = [k for k in self._unsatisfied(prereq, relevant) if k not in scheduled]
                if missing:
                    raise PrerequisitePhaseNotSatisfied(phase.value, prereq.value, missing)

    def _blocking_prerequisite(self, phase: Phase, host: Host) -> Optional[str]:
        relevant = self._relevant_hosts([host])
        for prereq in phase.prerequisites:
            if self._unsatisfied(prereq, relevant):
                return prereq.value
        return None

    # ---------- execution ----------

    def _record_skip(self, host: Host, step: Step, outcome: Outcome) -> None:
        self.tracker.record_outcome(host.id, step.id, outcome)
        self._publish(StepSkipped, host=host.id, step=step.id, reason=outcome.reason or "")

    def _apply_with_retry(self, host: Host, step: Step, options: RunOptions) -> Tuple[Outcome, int]:
        attempt = 0
        while True:
            attempt += 1
            self._publish(StepStarted, host=host.id, step=step.id, attempt=attempt)
            t0 = time.time()
            outcome = self.executor.apply(host, step, force=options.force, timeout=options.step_timeout)

            if outcome.kind is OutcomeKind.SUCCESS:
                duration_ms = int((time.time() - t0) * 1000)
                self._publish(StepSucceeded, host=host.id, step=step.id, attempts=attempt, duration_ms=duration_ms)
                return outcome, attempt
            if outcome.kind is OutcomeKind.SKIPPED_ALREADY_SATISFIED:
                self._publish(StepSkipped, host=host.id, step=step.id, reason="already-satisfied")
                return outcome, attempt

            retryable = not outcome.fatal and attempt <= options.retries and not self.cancelled
            if retryable:
                log.info("[%s] %s failed (attempt %d/%d), retrying in %gs",
                         host.id, step.id, attempt, options.retries + 1, options.backoff_seconds)
                self._sleep(options.backoff_seconds)
                continue
            self._publish(StepFailed, host=host.id, step=step.id, attempts=attempt, error=outcome.reason or "")
            return outcome, attempt

    def _run_host(
        self,
        phase: Phase,
        host: Host,
        items: List[Tuple[int, PlannedStep]],
        options: RunOptions,
    ) -> List[Tuple[int, StepReport]]:
        out: List[Tuple[int, StepReport]] = []
        blocked = self._blocking_prerequisite(phase, host)
        if blocked:
            log.warning("[%s] phase %s blocked: prerequisite phase %s not satisfied", host.id, phase.value, blocked)

        for idx, planned in items:
            step = planned.step
            attempts = 0
            if self.cancelled:
                outcome = Outcome.cancelled()
                self._publish(StepSkipped, host=host.id, step=step.id, reason="cancelled")
                out.append((idx, StepReport(phase.value, host.id, step.id, outcome, attempts)))
                continue

            held = self.tracker.is_satisfied(host.id, step.id)
            missing = [r for r in step.requires if not self.tracker.is_satisfied(host.id, r)]
            if held and (host.reachable is False or blocked or missing):
                # a recorded success is never downgraded by a step that did not run
                outcome = Outcome.already_satisfied()
                self._publish(StepSkipped, host=host.id, step=step.id, reason="already-satisfied")
            elif host.reachable is False:
                outcome = Outcome.failed("host unreachable")
                self.tracker.record_outcome(host.id, step.id, outcome)
                self._publish(StepFailed, host=host.id, step=step.id, attempts=0, error=outcome.reason)
            elif blocked:
                outcome = Outcome.dependency_skipped(f"prerequisite phase '{blocked}' not satisfied")
                self._record_skip(host, step, outcome)
            elif missing:
                outcome = Outcome.dependency_skipped(f"requires unsatisfied step(s): {', '.join(missing)}")
                self._record_skip(host, step, outcome)
            else:
                outcome, attempts = self._apply_with_retry(host, step, options)
            out.append((idx, StepReport(phase.value, host.id, step.id, outcome, attempts)))
        return out

    def _run_phase(self, phase: Phase, pairs: List[PlannedStep], options: RunOptions, report: RunReport) -> None:
        self._publish(PhaseStarted, phase=phase.value)
        log.info("=== phase %s: %d step(s) ===", phase.value, len(pairs))

        by_host: Dict[str, Tuple[Host, List[Tuple[int, PlannedStep]]]] = {}
        for idx, planned in enumerate(pairs):
            by_host.setdefault(planned.host.id, (planned.host, []))[1].append((idx, planned))

        results: Dict[int, StepReport] = {}
        if by_host:
            workers = max(1, min(len(by_host), options.max_parallel))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"kubestrap-{phase.value}") as pool:
                futures = [
                    pool.submit(self._run_host, phase, host, items, options)
                    for host, items in by_host.values()
                ]
                for fut in futures:
                    for idx, entry in fut.result():
                        results[idx] = entry

        entries = [results[i] for i in sorted(results)]
        for e in entries:
            report.add(e)
        self._publish(
            PhaseFinished,
            phase=phase.value,
            ok=sum(1 for e in entries if e.outcome.ok),
            failed=sum(1 for e in entries if e.outcome.kind is OutcomeKind.FAILED),
            skipped=sum(1 for e in entries if e.outcome.kind is OutcomeKind.SKIPPED_DUE_TO_DEPENDENCY),
        )

    def run(
        self,
        phases: Optional[Iterable[str]] = None,
        host_filter: Optional[Iterable[str]] = None,
        options: Optional[RunOptions] = None,
    ) -> RunReport:
        """
        Pre-flight errors (unknown phase/host, unmet prerequisite phase)
        raise before any remote action. Everything after that is reported,
        never raised.
        """
        options = options or RunOptions()
        self._cancel.clear()
        if self.executor.coordinator is not None:
            self.executor.coordinator.begin_run()

        selected = resolve_phase_selection(list(phases) if phases is not None else None)
        targets = self.registry.select(list(host_filter) if host_filter is not None else None)
        plans = {p: self.planner.resolve(p, targets) for p in selected}
        self._preflight(plans)

        self._publish(RunStarted, phases=[p.value for p in selected], hosts=[h.id for h in targets])

        if options.probe_hosts and self.prober is not None:
            self.registry.probe(self.prober, targets)

        report = RunReport()
        for phase in selected:
            self._run_phase(phase, plans[phase], options, report)

        if self.cancelled:
            report.cancelled = True
            self._publish(RunCancelled, pending=report.count(OutcomeKind.CANCELLED))

        self._publish(
            RunSummary,
            ok=report.succeeded + report.already_satisfied,
            failed=report.failed,
            skipped=report.dependency_skipped,
            cancelled=report.count(OutcomeKind.CANCELLED),
            fatal_error=report.fatal_error,
        )
        log.info("run finished: %s", report.summary())
        return report

    # ---------- reset pass ----------

    def reset_workers(self, host_filter: Optional[Iterable[str]] = None) -> Dict[str, bool]:
        """
        Wipe join state on the selected workers and forget their worker-join
        records so the next run re-attempts the join.
        """
        coordinator = self.executor.coordinator
        join_steps = [s for s in self.planner.steps_for(Phase.WORKER_JOIN) if isinstance(s, ClusterJoin)]
        targets = [h for h in self.registry.select(list(host_filter) if host_filter is not None else None)
                   if h.role is Role.WORKER]
        results: Dict[str, bool] = {}
        for host in targets:
            step = self.planner.render(join_steps[0], host) if join_steps else None
            ok = coordinator.reset_worker(host, step) if coordinator is not None else False
            dropped = self.tracker.clear(host.id, [s.id for s in self.planner.steps_for(Phase.WORKER_JOIN)])
            log.info("[%s] cleared %d worker-join record(s)", host.id, dropped)
            results[host.id] = ok
        return results


def build_orchestrator(
    cfg: KubestrapConfig,
    channel: RemoteChannel,
    *,
    bus: Optional[EventBus] = None,
    tracker: Optional[StateTracker] = None,
    steps: Optional[Sequence[Step]] = None,
    auto_reset: bool = False,
    prober: Optional[Callable[[Host], bool]] = None,
) -> Orchestrator:
    """Wire registry, planner, tracker, coordinator and executor from config."""
    registry = HostRegistry.load(cfg.inventory, default_connection=cfg.connection)
    bus = bus or EventBus([], ctx=new_ctx(cluster=cfg.cluster.name))
    steps = list(steps) if steps is not None else load_catalog(cfg.steps_file)
    tracker = tracker or StateTracker(cfg.state_file)
    planner = PhasePlanner(steps, registry, cfg.variables(), bus=bus)

    coordinator = JoinCoordinator(
        channel,
        registry.control_plane,
        bus=bus,
        token_ttl=cfg.cluster.token_ttl_seconds,
        api_port=cfg.cluster.api_port,
        admin_kubeconfig=cfg.cluster.admin_kubeconfig,
        reachability_timeout=cfg.run.reachability_timeout,
        poll_interval=cfg.run.poll_interval,
        auto_reset=auto_reset,
    )
    executor = StepExecutor(channel, tracker, coordinator=coordinator, default_timeout=cfg.run.step_timeout)
    return Orchestrator(registry, planner, executor, tracker, bus=bus, prober=prober)
