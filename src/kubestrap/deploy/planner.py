# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence

from ..inventory.registry import Host, HostRegistry
from ..steps.models import Step
from ..utils.templating import TemplateRenderer

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import PlanComputed

from .phases import Phase


class PlannedStep(NamedTuple):
    host: Host
    step: Step

    @property
    def key(self) -> str:
        return f"{self.host.id}:{self.step.id}"


class PhasePlanner:
    """
    Turns a phase name into concrete (host, step) pairs.

    Steps keep their declaration order; within a step, hosts keep registry
    order. Each step is rendered per host so templates can see
    ``node_name``, ``host_address`` and the control-plane identity.
    """

    def __init__(
        self,
        steps: Sequence[Step],
        registry: HostRegistry,
        variables: Optional[Mapping[str, Any]] = None,
        bus: Optional[EventBus] = None,
    ):
        self.steps = list(steps)
        self.registry = registry
        self.bus = bus
        cp = registry.control_plane
        base = dict(variables or {})
        base.setdefault("control_plane_address", cp.address)
        base.setdefault("control_plane_node", cp.node_name)
        self.renderer = TemplateRenderer(base)

    def steps_for(self, phase: "str | Phase") -> List[Step]:
        phase = Phase.parse(phase)
        return [s for s in self.steps if s.phase is phase]

    def render(self, step: Step, host: Host) -> Step:
        return self.renderer.render_model(step, self.host_vars(host))

    @staticmethod
    def host_vars(host: Host) -> Dict[str, Any]:
        return {"host_id": host.id, "host_address": host.address, "node_name": host.node_name}

    def resolve(self, phase_name: "str | Phase", hosts: Sequence[Host]) -> List[PlannedStep]:
        """
        Raises UnknownPhaseError for unrecognised names. A phase with no
        matching hosts resolves to an empty list.
        """
        phase = Phase.parse(phase_name)
        pairs: List[PlannedStep] = []
        for step in self.steps_for(phase):
            for host in hosts:
                if step.applies_to(host.role):
                    pairs.append(PlannedStep(host, self.render(step, host)))
        if self.bus:
            self.bus.publish(PlanComputed, phase=phase.value, pairs=[p.key for p in pairs])
        return pairs
