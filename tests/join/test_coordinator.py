import logging
import threading

import pytest

from fakes import Capture, FakeChannel, MARKER, MARKER_PROBE, make_registry

from kubestrap.errors import JoinError, JoinTokenError, StaleMembershipError, UnreachableControlPlane
from kubestrap.join.coordinator import JoinCoordinator
from kubestrap.observers.dispatcher import EventBus
from kubestrap.observers.events import (
    ControlPlaneUnreachable,
    JoinTokenIssued,
    StaleNodeRemoved,
    WorkerReset,
)
from kubestrap.steps.models import ClusterJoin

JOIN = ClusterJoin(id="join", phase="worker-join", marker=MARKER)


def _coord(ch, reg, **kw):
    kw.setdefault("wait", lambda *a: True)
    return JoinCoordinator(ch, reg.control_plane, **kw)


def test_join_requests_token_once_and_registers_node():
    ch = FakeChannel()
    reg = make_registry(workers=("10.0.0.2", "10.0.0.3"))
    cap = Capture()
    coord = _coord(ch, reg, bus=EventBus([cap]))

    for w in reg.filter("worker"):
        coord.join(w, JOIN)

    assert coord.token_requests == 1
    assert ch.count("kubeadm token create") == 1
    assert ch.nodes == {"10.0.0.2", "10.0.0.3"}
    assert all(coord.is_joined(w, JOIN) for w in reg.filter("worker"))
    # the token is requested on the control plane, joins run on workers
    assert "kubeadm token create --ttl 7200s --print-join-command" in ch.runs("10.0.0.1")
    assert ch.count("--node-name 10.0.0.2") == 1
    issued = cap.of(JoinTokenIssued)
    assert len(issued) == 1 and issued[0].issued_by == "10.0.0.1"
    assert "0123456789abcdef" not in repr(issued[0])


def test_concurrent_workers_share_one_token():
    ch = FakeChannel()
    workers = tuple(f"10.0.1.{i}" for i in range(1, 9))
    reg = make_registry(workers=workers)
    coord = _coord(ch, reg)

    threads = [threading.Thread(target=coord.join, args=(w, JOIN)) for w in reg.filter("worker")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert coord.token_requests == 1
    assert coord.token.consumed_by == set(workers)


def test_expired_token_is_reissued():
    ch = FakeChannel()
    reg = make_registry(workers=("10.0.0.2", "10.0.0.3"))
    now = [1000.0]
    coord = _coord(ch, reg, token_ttl=600, clock=lambda: now[0])
    w1, w2 = reg.filter("worker")

    coord.join(w1, JOIN)
    now[0] += 3600
    coord.join(w2, JOIN)

    assert coord.token_requests == 2


def test_zero_ttl_warns(caplog):
    ch = FakeChannel()
    reg = make_registry()
    coord = _coord(ch, reg, token_ttl=0)
    with caplog.at_level(logging.WARNING, logger="kubestrap"):
        coord.ensure_ready()
    assert "never expires" in caplog.text
    assert "--ttl 0s" in ch.runs("10.0.0.1")[0]


def test_unreachable_api_is_cached():
    ch = FakeChannel()
    reg = make_registry(workers=("10.0.0.2", "10.0.0.3"))
    cap = Capture()
    probes = []
    coord = _coord(ch, reg, bus=EventBus([cap]), wait=lambda *a: probes.append(a) or False,
                   reachability_timeout=5)
    w1, w2 = reg.filter("worker")

    with pytest.raises(UnreachableControlPlane):
        coord.join(w1, JOIN)
    with pytest.raises(UnreachableControlPlane):
        coord.join(w2, JOIN)

    assert len(probes) == 1
    assert probes[0][:3] == ("10.0.0.1", 6443, 5)
    assert coord.token_requests == 1
    assert ch.count("kubeadm join") == 0
    assert cap.of(ControlPlaneUnreachable)[0].endpoint == "10.0.0.1:6443"


def test_token_failure_aborts():
    ch = FakeChannel()
    ch.token_output = "failed to load admin kubeconfig"
    coord = _coord(ch, make_registry())
    with pytest.raises(JoinTokenError):
        coord.ensure_ready()
    with pytest.raises(JoinTokenError):
        coord.ensure_ready()
    assert coord.token_requests == 1


def test_stale_membership_without_auto_reset():
    ch = FakeChannel()
    reg = make_registry()
    w = reg.filter("worker")[0]
    ch.satisfy(w.id, MARKER_PROBE)
    coord = _coord(ch, reg)

    assert coord.has_local_membership(w, JOIN)
    assert not coord.is_joined(w, JOIN)
    with pytest.raises(StaleMembershipError):
        coord.join(w, JOIN)
    assert ch.count("kubeadm join") == 0


def test_auto_reset_wipes_and_rejoins():
    ch = FakeChannel()
    reg = make_registry()
    w = reg.filter("worker")[0]
    ch.satisfy(w.id, MARKER_PROBE)
    cap = Capture()
    coord = _coord(ch, reg, auto_reset=True, bus=EventBus([cap]))

    coord.join(w, JOIN)

    runs = ch.runs(w.id)
    assert runs[0].startswith("kubeadm reset -f")
    assert runs[-1].startswith("kubeadm join")
    assert cap.of(WorkerReset)[0].ok
    assert coord.is_joined(w, JOIN)


def test_stale_node_removal_failure_is_tolerated(caplog):
    ch = FakeChannel()
    reg = make_registry()
    w = reg.filter("worker")[0]
    ch.fail(
        "kubectl --kubeconfig /etc/kubernetes/admin.conf delete node 10.0.0.2 --ignore-not-found",
        1,
    )
    cap = Capture()
    coord = _coord(ch, reg, bus=EventBus([cap]))

    with caplog.at_level(logging.WARNING, logger="kubestrap"):
        coord.join(w, JOIN)

    removed = cap.of(StaleNodeRemoved)[0]
    assert removed.ok is False
    assert "could not remove node" in caplog.text
    assert coord.is_joined(w, JOIN)


def test_failed_join_raises_join_error():
    ch = FakeChannel()
    ch.join_rc = 1
    ch.join_leaves_marker = True
    reg = make_registry()
    w = reg.filter("worker")[0]
    coord = _coord(ch, reg)

    with pytest.raises(JoinError, match="kubeadm join failed"):
        coord.join(w, JOIN)
    # partial local state is left behind and is not membership
    assert coord.has_local_membership(w, JOIN)
    assert not coord.is_joined(w, JOIN)
    with pytest.raises(StaleMembershipError):
        coord.join(w, JOIN)
