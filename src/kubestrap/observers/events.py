# src/kubestrap/observers/events.py

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single orchestrator invocation
    cluster: str      # cluster name from config

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def now_ts() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_ctx(cluster: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": now_ts(),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
    }


# ---------------------------------------------------------------------
# Run / planner
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunStarted(BaseEvent):
    phases: List[str]
    hosts: List[str]

@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    phase: str
    pairs: List[str]          # "<host>:<step>"

@dataclass(frozen=True)
class PhaseStarted(BaseEvent):
    phase: str

@dataclass(frozen=True)
class PhaseFinished(BaseEvent):
    phase: str
    ok: int
    failed: int
    skipped: int


# ---------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class StepStarted(BaseEvent):
    host: str
    step: str
    attempt: int

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    host: str
    step: str
    attempts: int
    duration_ms: int

@dataclass(frozen=True)
class StepSkipped(BaseEvent):
    host: str
    step: str
    reason: str       # "already-satisfied", "cancelled" or why a dependency blocked it

@dataclass(frozen=True)
class StepFailed(BaseEvent):
    host: str
    step: str
    attempts: int
    error: str


# ---------------------------------------------------------------------
# Join protocol
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class JoinTokenIssued(BaseEvent):
    issued_by: str
    ttl_seconds: int

@dataclass(frozen=True)
class ControlPlaneReachable(BaseEvent):
    endpoint: str

@dataclass(frozen=True)
class ControlPlaneUnreachable(BaseEvent):
    endpoint: str
    timeout_s: float

@dataclass(frozen=True)
class StaleNodeRemoved(BaseEvent):
    host: str
    node: str
    ok: bool
    error: Optional[str] = None

@dataclass(frozen=True)
class WorkerReset(BaseEvent):
    host: str
    ok: bool
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RunCancelled(BaseEvent):
    pending: int

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    ok: int
    failed: int
    skipped: int
    cancelled: int
    fatal_error: Optional[str] = None
