# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/join/coordinator.py
from __future__ import annotations

import logging
import shlex
import threading
import time
from typing import Callable, Optional

from ..errors import (
    JoinError,
    JoinPhaseAborted,
    JoinTokenError,
    KubestrapError,
    RemoteError,
    StaleMembershipError,
    UnreachableControlPlane,
)
from ..inventory.registry import Host
from ..remote.channel import RemoteChannel
from ..steps.conditions import FileExists
from ..steps.models import ClusterJoin
from ..utils.readiness import wait_for_port

from ..observers.dispatcher import EventBus
from ..observers.events import (
    ControlPlaneReachable,
    ControlPlaneUnreachable,
    JoinTokenIssued,
    StaleNodeRemoved,
    WorkerReset,
)
from .token import JoinToken

log = logging.getLogger("kubestrap")

WaitFn = Callable[[str, int, float, float], bool]


def _default_wait(address: str, port: int, timeout: float, interval: float) -> bool:
    return wait_for_port(address, port, timeout, interval)


class JoinCoordinator:
    """
    Two-sided handshake that admits workers into the cluster.

    The join credential is requested from the control-plane host at most once
    per run (again only if it expires) and the API reachability probe runs
    once; both happen under a single lock so concurrently joining workers
    share one token. If either fails, every later join in the run fails fast
    with the same error and no new token request is made.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        control_plane: Host,
        *,
        bus: Optional[EventBus] = None,
        token_ttl: int = 7200,
        api_port: int = 6443,
        admin_kubeconfig: str = "/etc/kubernetes/admin.conf",
        reachability_timeout: float = 60.0,
        poll_interval: float = 2.0,
        command_timeout: float = 120.0,
        auto_reset: bool = False,
        wait: WaitFn = _default_wait,
        clock: Callable[[], float] = time.time,
    ):
        self.channel = channel
        self.control_plane = control_plane
        self.bus = bus
        self.token_ttl = token_ttl
        self.api_port = api_port
        self.admin_kubeconfig = admin_kubeconfig
        self.reachability_timeout = reachability_timeout
        self.poll_interval = poll_interval
        self.command_timeout = command_timeout
        self.auto_reset = auto_reset
        self._wait = wait
        self._clock = clock

        self._lock = threading.Lock()
        self._token: Optional[JoinToken] = None
        self._reachable = False
        self._aborted: Optional[JoinPhaseAborted] = None
        self.token_requests = 0

    def _publish(self, event_cls, **fields) -> None:
        if self.bus:
            self.bus.publish(event_cls, **fields)

    def _kubectl(self, args: str) -> str:
        return f"kubectl --kubeconfig {shlex.quote(self.admin_kubeconfig)} {args}"

    # ---------- protocol steps 1-2 (shared, once per run) ----------

    def _request_token(self) -> JoinToken:
        if self.token_ttl == 0:
            log.warning(
                "join token TTL is 0: the credential never expires and grants "
                "indefinite admission if leaked"
            )
        self.token_requests += 1
        cmd = f"kubeadm token create --ttl {self.token_ttl}s --print-join-command"
        try:
            res = self.channel.run(self.control_plane, cmd, timeout=self.command_timeout)
        except RemoteError as e:
            raise JoinTokenError(f"Join token request to {self.control_plane.id} failed: {e}") from e
        if not res.ok:
            raise JoinTokenError(
                f"Join token request to {self.control_plane.id} failed: {res.brief()}"
            )
        token = JoinToken.parse(res.stdout, self.control_plane.id, self.token_ttl, issued_at=self._clock())
        log.info("[join] token %s issued by %s (ttl=%ss)", token.token_id, token.issued_by, self.token_ttl)
        self._publish(JoinTokenIssued, issued_by=token.issued_by, ttl_seconds=self.token_ttl)
        return token

    def _probe_api(self) -> None:
        endpoint = f"{self.control_plane.address}:{self.api_port}"
        log.info("[join] waiting up to %gs for API server at %s", self.reachability_timeout, endpoint)
        if not self._wait(self.control_plane.address, self.api_port, self.reachability_timeout, self.poll_interval):
            self._publish(ControlPlaneUnreachable, endpoint=endpoint, timeout_s=self.reachability_timeout)
            raise UnreachableControlPlane(
                f"Control-plane API {endpoint} not reachable after {self.reachability_timeout:g}s"
            )
        self._publish(ControlPlaneReachable, endpoint=endpoint)

    def begin_run(self) -> None:
        """Forget the token, reachability and abort of a previous run."""
        with self._lock:
            self._token = None
            self._reachable = False
            self._aborted = None

    def ensure_ready(self) -> JoinToken:
        """Token + reachability, computed once and shared by every worker."""
        with self._lock:
            if self._aborted is not None:
                raise self._aborted
            try:
                if self._token is None or self._token.expired(self._clock()):
                    self._token = self._request_token()
                if not self._reachable:
                    self._probe_api()
                    self._reachable = True
            except JoinPhaseAborted as e:
                self._aborted = e
                raise
            return self._token

    @property
    def token(self) -> Optional[JoinToken]:
        return self._token

    # ---------- membership queries ----------

    def has_local_membership(self, worker: Host, step: ClusterJoin) -> bool:
        return self.channel.check(worker, FileExists(path=step.marker), timeout=self.command_timeout)

    def is_registered(self, worker: Host) -> bool:
        res = self.channel.run(
            self.control_plane,
            self._kubectl(f"get node {shlex.quote(worker.node_name)}"),
            timeout=self.command_timeout,
        )
        return res.ok

    def is_joined(self, worker: Host, step: ClusterJoin) -> bool:
        """Joined means local membership state AND a node object on the control plane."""
        return self.has_local_membership(worker, step) and self.is_registered(worker)

    # ---------- protocol steps 3-4 (best effort) ----------

    def remove_stale_node(self, worker: Host) -> bool:
        cmd = self._kubectl(f"delete node {shlex.quote(worker.node_name)} --ignore-not-found")
        try:
            res = self.channel.run(self.control_plane, cmd, timeout=self.command_timeout)
            ok, err = res.ok, (None if res.ok else res.brief())
        except KubestrapError as e:
            ok, err = False, str(e)
        if ok:
            log.debug("[%s] no stale node object for %s left on control plane", worker.id, worker.node_name)
        else:
            log.warning("[%s] could not remove node %s from control plane: %s", worker.id, worker.node_name, err)
        self._publish(StaleNodeRemoved, host=worker.id, node=worker.node_name, ok=ok, error=err)
        return ok

    def reset_worker(self, worker: Host, step: Optional[ClusterJoin] = None) -> bool:
        """
        Wipe local membership state on ``worker`` and its node object on the
        control plane so a later join starts clean.
        """
        marker = step.marker if step else "/etc/kubernetes/kubelet.conf"
        cmd = (
            "kubeadm reset -f"
            f" && rm -rf /etc/cni/net.d {shlex.quote(marker)}"
            " && systemctl restart containerd"
        )
        try:
            res = self.channel.run(worker, cmd, timeout=self.command_timeout)
            ok, err = res.ok, (None if res.ok else res.brief())
        except KubestrapError as e:
            ok, err = False, str(e)
        if ok:
            log.info("[%s] local cluster membership reset", worker.id)
        else:
            log.warning("[%s] reset of local membership failed: %s", worker.id, err)
        self._publish(WorkerReset, host=worker.id, ok=ok, error=err)
        self.remove_stale_node(worker)
        return ok

    # ---------- protocol step 5 ----------

    def join(self, worker: Host, step: ClusterJoin, timeout: Optional[float] = None) -> None:
        """
        Admit ``worker``. The caller has already established it is not
        joined. Raises JoinPhaseAborted (fatal for the phase) or JoinError.
        """
        token = self.ensure_ready()

        if self.has_local_membership(worker, step):
            # membership marker without a node object: half-completed join
            if not self.auto_reset:
                raise StaleMembershipError(
                    f"{worker.id} has local membership state ({step.marker}) but is not "
                    f"registered with the control plane; run 'kubestrap reset' first"
                )
            log.info("[%s] stale membership state found, resetting before rejoin", worker.id)
            self.reset_worker(worker, step)
        else:
            self.remove_stale_node(worker)

        log.info("[%s] joining cluster via %s", worker.id, self.control_plane.id)
        res = self.channel.run(
            worker,
            token.join_command(worker.node_name),
            timeout=timeout,
            display=token.redacted_command(worker.node_name),
        )
        if not res.ok:
            raise JoinError(f"kubeadm join failed on {worker.id}: {res.brief()}")
        token.consume(worker.id)
