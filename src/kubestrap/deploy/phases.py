# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from ..errors import UnknownPhaseError


class Phase(str, Enum):
    DEPENDENCIES = "dependencies"
    CONTROL_PLANE_INIT = "control-plane-init"
    NETWORK = "network"
    WORKER_JOIN = "worker-join"

    @property
    def index(self) -> int:
        return PHASE_ORDER.index(self)

    @property
    def prerequisites(self) -> Tuple["Phase", ...]:
        return PREREQUISITES[self]

    @classmethod
    def parse(cls, name: "str | Phase") -> "Phase":
        if isinstance(name, Phase):
            return name
        try:
            return cls(name.strip())
        except ValueError:
            raise UnknownPhaseError(
                f"Unknown phase '{name}'. Valid phases: {', '.join(p.value for p in PHASE_ORDER)}"
            ) from None


# Global execution order. Never reordered at runtime.
PHASE_ORDER: List[Phase] = [
    Phase.DEPENDENCIES,
    Phase.CONTROL_PLANE_INIT,
    Phase.NETWORK,
    Phase.WORKER_JOIN,
]

PREREQUISITES: Dict[Phase, Tuple[Phase, ...]] = {
    Phase.DEPENDENCIES: (),
    Phase.CONTROL_PLANE_INIT: (Phase.DEPENDENCIES,),
    Phase.NETWORK: (Phase.CONTROL_PLANE_INIT,),
    Phase.WORKER_JOIN: (Phase.DEPENDENCIES, Phase.CONTROL_PLANE_INIT, Phase.NETWORK),
}


def resolve_phase_selection(selection: Optional[Iterable[str]]) -> List[Phase]:
    """
    Resolve a phase selector into phases in global order.

    Rules (same as the CLI's --phases flag):
    - None / empty → every phase
    - "all" anywhere → every phase
    - otherwise → only the named phases, de-duplicated
    """
    if not selection:
        return list(PHASE_ORDER)
    names = [s.strip() for s in selection if s and s.strip()]
    if not names or "all" in names:
        return list(PHASE_ORDER)
    chosen = {Phase.parse(n) for n in names}
    return [p for p in PHASE_ORDER if p in chosen]
