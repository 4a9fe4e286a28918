import pytest

from fakes import (
    Capture,
    FakeChannel,
    MARKER_PROBE,
    make_orchestrator,
    make_registry,
)

from kubestrap.deploy.orchestrator import RunOptions
from kubestrap.errors import (
    CommandTimeout,
    PrerequisitePhaseNotSatisfied,
    UnknownPhaseError,
)
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import (
    PhaseFinished,
    PhaseStarted,
    RunCancelled,
    RunStarted,
    RunSummary,
    StepStarted,
)
from kubestrap.state.tracker import OutcomeKind, StateTracker, Status

CP, W1, W2 = "10.0.0.1", "10.0.0.2", "10.0.0.3"


def _kinds(report):
    return {(e.host, e.step): e.outcome.kind for e in report.entries}


def test_full_run_single_worker_joins_after_control_plane():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry())
    seen_at_join = {}

    def on_join(host, command):
        if command.startswith("kubeadm join"):
            seen_at_join["cp-init"] = orch.tracker.is_satisfied(CP, "cp-init")
            seen_at_join["cni"] = orch.tracker.is_satisfied(CP, "cni")

    ch.hooks.append(on_join)
    report = orch.run()

    assert report.exit_code == 0
    assert report.ok
    assert seen_at_join == {"cp-init": True, "cni": True}
    assert ch.count("kubeadm token create") == 1
    assert report.get(W1, "join").outcome.kind is OutcomeKind.SUCCESS
    assert orch.tracker.get(CP, "cp-init").status is Status.SUCCESS
    # control-plane-only steps never reach the worker
    assert "do-cp-init" not in ch.runs(W1)


def test_two_workers_share_one_join_token():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry(workers=(W1, W2)))
    report = orch.run()

    assert report.exit_code == 0
    assert ch.count("kubeadm token create") == 1
    assert orch.executor.coordinator.token_requests == 1
    assert report.get(W1, "join").outcome.kind is OutcomeKind.SUCCESS
    assert report.get(W2, "join").outcome.kind is OutcomeKind.SUCCESS
    assert orch.executor.coordinator.token.consumed_by == {W1, W2}
    assert ch.nodes == {W1, W2}


def test_rerun_skips_recorded_success_without_touching_hosts():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry(workers=(W1, W2)))
    assert orch.run().exit_code == 0

    ch.calls.clear()
    report = orch.run()

    assert ch.calls == []
    assert report.exit_code == 0
    assert set(_kinds(report).values()) == {OutcomeKind.SKIPPED_ALREADY_SATISFIED}
    # already-satisfied keeps the recorded status
    assert orch.tracker.get(W1, "deps-a").status is Status.SUCCESS


def test_resume_from_state_file(tmp_path):
    state = tmp_path / "state.json"
    ch = FakeChannel()
    ch.fail("do-cni")
    first = make_orchestrator(ch, make_registry(), tracker=StateTracker(state)).run()
    assert first.exit_code == 1
    assert first.get(W1, "join").outcome.kind is OutcomeKind.SKIPPED_DUE_TO_DEPENDENCY

    ch.failing.clear()
    ch.calls.clear()
    second = make_orchestrator(ch, make_registry(), tracker=StateTracker(state)).run()

    assert second.exit_code == 0
    assert second.get(CP, "deps-a").outcome.kind is OutcomeKind.SKIPPED_ALREADY_SATISFIED
    assert second.get(CP, "cni").outcome.kind is OutcomeKind.SUCCESS
    assert second.get(W1, "join").outcome.kind is OutcomeKind.SUCCESS
    assert "do-deps-a" not in ch.runs()


def test_worker_join_alone_requires_control_plane_init():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry())

    with pytest.raises(PrerequisitePhaseNotSatisfied) as exc:
        orch.run(phases=["worker-join"])

    assert exc.value.exit_code == 13
    assert exc.value.phase == "worker-join"
    assert ch.calls == []


def test_worker_join_alone_runs_once_prerequisites_are_recorded():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry(workers=(W1, W2)))
    assert orch.run(phases=["dependencies", "control-plane-init", "network"]).exit_code == 0

    report = orch.run(phases=["worker-join"], host_filter=[W2])

    assert report.exit_code == 0
    assert [(e.host, e.step) for e in report.entries] == [(W2, "join")]
    assert ch.nodes == {W2}


def test_host_filter_reports_missing_prerequisites_for_that_host():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry(workers=(W1, W2)))
    orch.run(phases=["dependencies"], host_filter=[CP, W1])
    orch.run(phases=["control-plane-init", "network"])
    ch.calls.clear()

    with pytest.raises(PrerequisitePhaseNotSatisfied) as exc:
        orch.run(phases=["worker-join"], host_filter=[W2])

    assert exc.value.prerequisite == "dependencies"
    assert (W2, "deps-a") in exc.value.missing
    assert ch.calls == []


def test_unknown_phase_is_preflight():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry())
    with pytest.raises(UnknownPhaseError):
        orch.run(phases=["dependencies", "kubelet"])
    assert ch.calls == []


def test_phase_without_matching_hosts_is_empty_success():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry(workers=()))
    report = orch.run()

    assert report.exit_code == 0
    assert report.for_phase("worker-join") == []
    assert ch.count("kubeadm token create") == 0


def test_failed_step_skips_dependents_on_same_host_only():
    ch = FakeChannel()
    ch.fail("do-deps-a", host=W1)
    orch = make_orchestrator(ch, make_registry())
    report = orch.run(phases=["dependencies"])

    assert report.get(W1, "deps-a").outcome.kind is OutcomeKind.FAILED
    assert report.get(W1, "deps-b").outcome.kind is OutcomeKind.SKIPPED_DUE_TO_DEPENDENCY
    assert report.get(CP, "deps-b").outcome.kind is OutcomeKind.SUCCESS
    assert "do-deps-b" not in ch.runs(W1)
    assert orch.tracker.get(W1, "deps-b").status is Status.SKIPPED
    assert report.exit_code == 1


def test_failed_dependency_phase_blocks_later_phases_for_that_host():
    ch = FakeChannel()
    ch.fail("do-deps-a", host=W1)
    orch = make_orchestrator(ch, make_registry())
    report = orch.run()

    assert report.get(CP, "cni").outcome.kind is OutcomeKind.SUCCESS
    join = report.get(W1, "join")
    assert join.outcome.kind is OutcomeKind.SKIPPED_DUE_TO_DEPENDENCY
    assert "dependencies" in join.outcome.reason
    assert ch.count("kubeadm token create") == 0


def test_timeout_is_recorded_as_failed_and_other_hosts_continue():
    ch = FakeChannel()
    ch.fail("do-deps-a", CommandTimeout(CP, "do-deps-a", 30), host=CP)
    orch = make_orchestrator(ch, make_registry())
    report = orch.run(phases=["dependencies"])

    entry = report.get(CP, "deps-a")
    assert entry.outcome.kind is OutcomeKind.FAILED
    assert entry.outcome.timed_out
    assert entry.outcome.reason.startswith("Timeout")
    assert report.get(W1, "deps-b").outcome.kind is OutcomeKind.SUCCESS


def test_failed_step_is_retried_with_backoff():
    ch = FakeChannel()
    ch.fail("do-deps-a", host=CP)
    seen = []

    def flaky(host, command):
        if host.id == CP and command == "do-deps-a":
            seen.append(command)
            if len(seen) == 2:
                ch.failing.pop((CP, "do-deps-a"))

    ch.hooks.append(flaky)
    cap = Capture()
    orch = make_orchestrator(ch, make_registry(), bus=EventBus([cap]))
    report = orch.run(phases=["dependencies"], options=RunOptions(retries=2, backoff_seconds=0))

    entry = report.get(CP, "deps-a")
    assert entry.outcome.kind is OutcomeKind.SUCCESS
    assert entry.attempts == 2
    starts = [e for e in cap.of(StepStarted) if e.host == CP and e.step == "deps-a"]
    assert [e.attempt for e in starts] == [1, 2]


def test_unreachable_control_plane_aborts_join_for_every_worker():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry(workers=(W1, W2)), reachable=False)
    report = orch.run()

    for w in (W1, W2):
        entry = report.get(w, "join")
        assert entry.outcome.kind is OutcomeKind.FAILED
        assert entry.outcome.fatal
    assert "not reachable" in report.fatal_error
    assert report.exit_code == 2
    assert ch.count("kubeadm token create") == 1
    assert ch.count("kubeadm join") == 0


def test_token_failure_is_not_requested_again():
    ch = FakeChannel()
    ch.token_rc = 1
    orch = make_orchestrator(ch, make_registry(workers=(W1, W2)))
    report = orch.run()

    assert report.exit_code == 2
    assert ch.count("kubeadm token create") == 1
    assert report.get(W2, "join").outcome.fatal


def test_next_run_requests_a_fresh_token_after_an_abort():
    ch = FakeChannel()
    ch.token_rc = 1
    orch = make_orchestrator(ch, make_registry())
    assert orch.run().exit_code == 2

    ch.token_rc = 0
    report = orch.run()

    assert report.exit_code == 0
    assert report.fatal_error is None
    assert ch.count("kubeadm token create") == 2
    assert report.get(W1, "join").outcome.kind is OutcomeKind.SUCCESS


def test_already_joined_worker_is_not_joined_again():
    ch = FakeChannel()
    ch.satisfy(W1, MARKER_PROBE)
    ch.nodes.add(W1)
    orch = make_orchestrator(ch, make_registry())
    report = orch.run()

    assert report.get(W1, "join").outcome.kind is OutcomeKind.SKIPPED_ALREADY_SATISFIED
    assert ch.count("kubeadm join") == 0
    assert ch.count("kubeadm token create") == 0


def test_stale_membership_fails_without_rejoining():
    ch = FakeChannel()
    ch.satisfy(W1, MARKER_PROBE)
    orch = make_orchestrator(ch, make_registry())
    report = orch.run()

    entry = report.get(W1, "join")
    assert entry.outcome.kind is OutcomeKind.FAILED
    assert "kubestrap reset" in entry.outcome.reason
    assert not entry.outcome.fatal
    assert ch.count("kubeadm join") == 0
    assert report.exit_code == 1


def test_auto_reset_recovers_stale_membership():
    ch = FakeChannel()
    ch.satisfy(W1, MARKER_PROBE)
    orch = make_orchestrator(ch, make_registry(), auto_reset=True)
    report = orch.run()

    assert report.get(W1, "join").outcome.kind is OutcomeKind.SUCCESS
    assert ch.count("kubeadm reset") == 1
    assert ch.count("kubeadm join") == 1


def test_force_reapplies_satisfied_steps():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry())
    orch.run(phases=["dependencies"])
    report = orch.run(phases=["dependencies"], options=RunOptions(force=True))

    assert report.get(CP, "deps-a").outcome.kind is OutcomeKind.SUCCESS
    assert ch.runs(CP).count("do-deps-a") == 2


def test_steps_run_in_declared_order_per_host():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry())
    orch.run()
    assert ch.runs(CP)[:4] == ["do-deps-a", "do-deps-b", "do-cp-init", "do-cni"]


def test_unreachable_host_fails_without_remote_actions():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry(), prober=lambda h: h.id != W1)
    report = orch.run(phases=["dependencies"], options=RunOptions(probe_hosts=True))

    assert report.get(W1, "deps-a").outcome.reason == "host unreachable"
    assert ch.touched(W1) == []
    assert report.get(CP, "deps-a").outcome.kind is OutcomeKind.SUCCESS


def test_unreachable_host_keeps_its_recorded_success():
    ch = FakeChannel()
    down = set()
    orch = make_orchestrator(ch, make_registry(), prober=lambda h: h.id not in down)
    assert orch.run().exit_code == 0

    down.add(W1)
    ch.calls.clear()
    report = orch.run(options=RunOptions(probe_hosts=True))

    assert report.exit_code == 0
    assert report.get(W1, "join").outcome.kind is OutcomeKind.SKIPPED_ALREADY_SATISFIED
    assert orch.tracker.get(W1, "deps-a").status is Status.SUCCESS
    assert orch.tracker.get(W1, "join").status is Status.SUCCESS
    assert ch.touched(W1) == []


def test_blocked_steps_keep_their_recorded_success():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry())
    assert orch.run().exit_code == 0

    ch.fail("do-deps-a", host=W1)
    report = orch.run(options=RunOptions(force=True))

    assert report.get(W1, "deps-a").outcome.kind is OutcomeKind.FAILED
    assert report.get(W1, "deps-b").outcome.kind is OutcomeKind.SKIPPED_ALREADY_SATISFIED
    assert report.get(W1, "join").outcome.kind is OutcomeKind.SKIPPED_ALREADY_SATISFIED
    assert orch.tracker.get(W1, "deps-b").status is Status.SUCCESS
    assert orch.tracker.get(W1, "join").status is Status.SUCCESS
    assert ch.count("kubeadm join") == 1
    assert report.exit_code == 1


def test_cancel_stops_new_work_and_leaves_pending():
    ch = FakeChannel()
    orch = make_orchestrator(ch, make_registry())

    def cancel_on_first(host, command):
        if command == "do-deps-a":
            orch.cancel()

    ch.hooks.append(cancel_on_first)
    cap = Capture()
    orch.bus = EventBus([cap])
    report = orch.run(options=RunOptions(max_parallel=1))

    # the in-flight action finishes, nothing new starts
    assert report.get(CP, "deps-a").outcome.kind is OutcomeKind.SUCCESS
    assert report.get(CP, "deps-b").outcome.kind is OutcomeKind.CANCELLED
    assert report.get(W1, "join").outcome.kind is OutcomeKind.CANCELLED
    assert ch.runs() == ["do-deps-a"]
    assert report.cancelled
    assert report.exit_code == 3
    assert orch.tracker.get(W1, "deps-a").status is Status.PENDING
    assert len(cap.of(RunCancelled)) == 1


def test_run_emits_lifecycle_events():
    ch = FakeChannel()
    cap = Capture()
    orch = make_orchestrator(ch, make_registry(), bus=EventBus([cap]))
    orch.run()

    assert len(cap.of(RunStarted)) == 1
    assert [e.phase for e in cap.of(PhaseStarted)] == [
        "dependencies", "control-plane-init", "network", "worker-join",
    ]
    finished = cap.of(PhaseFinished)
    assert all(e.failed == 0 for e in finished)
    summary = cap.of(RunSummary)[-1]
    assert summary.failed == 0 and summary.fatal_error is None
