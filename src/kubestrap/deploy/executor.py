# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import logging
import time
from typing import Optional

from ..errors import CommandTimeout, JoinPhaseAborted, KubestrapError
from ..inventory.registry import Host
from ..join.coordinator import JoinCoordinator
from ..remote.channel import RemoteChannel
from ..state.tracker import Outcome, StateTracker
from ..steps.models import ClusterJoin, Step

log = logging.getLogger("kubestrap")


class StepExecutor:
    """
    Applies one step to one host.

    Order of business for every call:
      1. recorded ``success`` in the state tracker → already satisfied, the
         channel is not touched
      2. post-condition holds on the host → already satisfied
      3. run the action (uploads, then commands) under one deadline
      4. post-condition must now hold, otherwise the step failed

    Exactly one execution record is written per call. There is no retry
    here; that is the orchestrator's call.
    """

    def __init__(
        self,
        channel: RemoteChannel,
        tracker: StateTracker,
        *,
        coordinator: Optional[JoinCoordinator] = None,
        default_timeout: float = 600.0,
    ):
        self.channel = channel
        self.tracker = tracker
        self.coordinator = coordinator
        self.default_timeout = default_timeout

    def apply(self, host: Host, step: Step, *, force: bool = False, timeout: Optional[float] = None) -> Outcome:
        if timeout is None:
            timeout = step.timeout or self.default_timeout
        outcome = self._apply(host, step, force=force, timeout=timeout)
        self.tracker.record_outcome(host.id, step.id, outcome)
        if outcome.ok:
            log.info("[%s] %s: %s", host.id, step.id, outcome.kind.value)
        else:
            log.error("[%s] %s: %s (%s)", host.id, step.id, outcome.kind.value, outcome.reason)
        return outcome

    # ---------- internals ----------

    def _apply(self, host: Host, step: Step, *, force: bool, timeout: float) -> Outcome:
        try:
            if not force and self.tracker.is_satisfied(host.id, step.id):
                return Outcome.already_satisfied()
            # a join is never forced onto a node that is already a member
            if (not force or isinstance(step, ClusterJoin)) and self._satisfied(host, step, timeout):
                return Outcome.already_satisfied()

            self._run_action(host, step, timeout)

            if not self._satisfied(host, step, timeout):
                return Outcome.failed(f"post-condition not met after apply: {self._describe(step)}")
            return Outcome.success()

        except CommandTimeout as e:
            return Outcome.failed(str(e), timed_out=True)
        except JoinPhaseAborted as e:
            return Outcome.failed(str(e), fatal=True)
        except KubestrapError as e:
            return Outcome.failed(str(e))

    def _satisfied(self, host: Host, step: Step, timeout: float) -> bool:
        if isinstance(step, ClusterJoin):
            return self._coordinator().is_joined(host, step)
        return self.channel.check(host, step.postcondition(), timeout=timeout)

    def _coordinator(self) -> JoinCoordinator:
        if self.coordinator is None:
            raise KubestrapError("cluster-join step needs a join coordinator")
        return self.coordinator

    def _run_action(self, host: Host, step: Step, timeout: float) -> None:
        if isinstance(step, ClusterJoin):
            self._coordinator().join(host, step, timeout=timeout)
            return

        deadline = time.monotonic() + timeout
        for content, remote_path, mode in step.uploads():
            self.channel.put_text(host, content, remote_path, mode=mode, sudo=step.sudo)

        for cmd in step.commands():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise CommandTimeout(host.id, cmd, timeout)
            log.debug("[%s] %s $ %s", host.id, step.id, cmd)
            res = self.channel.run(host, cmd, timeout=remaining, sudo=step.sudo)
            if not res.ok:
                raise KubestrapError(f"command `{cmd}` exited {res.rc}: {res.brief()}")

    @staticmethod
    def _describe(step: Step) -> str:
        if isinstance(step, ClusterJoin):
            return f"node registered and {step.marker} present"
        return step.postcondition().kind
