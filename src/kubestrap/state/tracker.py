# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

"""Durable per-(host, step) execution records.

State is persisted to a single human-readable JSON file after every write so
that a crashed run can be resumed: steps recorded ``success`` are skipped,
``failed``/``pending``/``skipped`` ones are attempted again.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

from ..errors import ConfigError

log = logging.getLogger("kubestrap")


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED_ALREADY_SATISFIED = "skipped-already-satisfied"
    SKIPPED_DUE_TO_DEPENDENCY = "skipped-due-to-dependency"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    reason: Optional[str] = None
    timed_out: bool = False
    fatal: bool = False     # aborts the remainder of the phase (join protocol only)

    @classmethod
    def success(cls) -> "Outcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def already_satisfied(cls) -> "Outcome":
        return cls(OutcomeKind.SKIPPED_ALREADY_SATISFIED)

    @classmethod
    def failed(cls, reason: str, *, timed_out: bool = False, fatal: bool = False) -> "Outcome":
        return cls(OutcomeKind.FAILED, reason=reason, timed_out=timed_out, fatal=fatal)

    @classmethod
    def dependency_skipped(cls, reason: str) -> "Outcome":
        return cls(OutcomeKind.SKIPPED_DUE_TO_DEPENDENCY, reason=reason)

    @classmethod
    def cancelled(cls) -> "Outcome":
        return cls(OutcomeKind.CANCELLED, reason="run cancelled")

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.SKIPPED_ALREADY_SATISFIED)


class Status(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


# An already-satisfied step is as done as a freshly applied one, so both map
# to ``success``; re-applying a step never changes its recorded status.
_STATUS_FOR = {
    OutcomeKind.SUCCESS: Status.SUCCESS,
    OutcomeKind.SKIPPED_ALREADY_SATISFIED: Status.SUCCESS,
    OutcomeKind.FAILED: Status.FAILED,
    OutcomeKind.SKIPPED_DUE_TO_DEPENDENCY: Status.SKIPPED,
    OutcomeKind.CANCELLED: Status.PENDING,
}


@dataclass
class ExecutionRecord:
    host: str
    step: str
    status: Status = Status.PENDING
    outcome: Optional[str] = None
    timestamp: Optional[float] = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status.value, "attempts": self.attempts}
        if self.outcome is not None:
            d["outcome"] = self.outcome
        if self.timestamp is not None:
            d["timestamp"] = self.timestamp
        if self.error is not None:
            d["error"] = self.error
        return d

    @classmethod
    def from_dict(cls, host: str, step: str, data: Dict[str, Any]) -> "ExecutionRecord":
        return cls(
            host=host,
            step=step,
            status=Status(data.get("status", "pending")),
            outcome=data.get("outcome"),
            timestamp=data.get("timestamp"),
            error=data.get("error"),
            attempts=int(data.get("attempts", 0)),
        )


class StateTracker:
    """
    Single source of truth for resumability.

    Layout on disk::

        {"version": 1, "records": {"<host>": {"<step>": {"status": ..., ...}}}}

    Writes are serialized by an in-process lock and land atomically
    (temp file + rename), so concurrent host tasks never corrupt the file.
    """

    VERSION = 1

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._records: Dict[str, Dict[str, ExecutionRecord]] = {}
        if self.path is not None and self.path.exists():
            self._load()

    # ---------- persistence ----------

    def _load(self) -> None:
        assert self.path is not None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Corrupt state file {self.path}: {e}") from e
        for host, steps in (data.get("records") or {}).items():
            self._records[host] = {
                step: ExecutionRecord.from_dict(host, step, rec) for step, rec in steps.items()
            }
        log.debug("Loaded state for %d hosts from %s", len(self._records), self.path)

    def _save_locked(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {"version": self.VERSION, "records": self._snapshot_locked()}
        fd, tmp = tempfile.mkstemp(prefix=".state.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    # ---------- API ----------

    def record_outcome(self, host: str, step: str, outcome: Outcome) -> ExecutionRecord:
        with self._lock:
            rec = self._records.setdefault(host, {}).get(step)
            if rec is None:
                rec = ExecutionRecord(host=host, step=step)
                self._records[host][step] = rec
            rec.status = _STATUS_FOR[outcome.kind]
            rec.outcome = outcome.kind.value
            rec.timestamp = time.time()
            rec.error = outcome.reason if not outcome.ok else None
            if outcome.kind in (OutcomeKind.SUCCESS, OutcomeKind.FAILED):
                rec.attempts += 1
            self._save_locked()
            return rec

    def get(self, host: str, step: str) -> ExecutionRecord:
        with self._lock:
            rec = self._records.get(host, {}).get(step)
            if rec is None:
                return ExecutionRecord(host=host, step=step)
            return ExecutionRecord(**vars(rec))

    def is_satisfied(self, host: str, step: str) -> bool:
        return self.get(host, step).status is Status.SUCCESS

    def clear(self, host: str, steps: Optional[Iterable[str]] = None) -> int:
        """Forget records for ``host`` (all, or only ``steps``). Returns how many were dropped."""
        with self._lock:
            bucket = self._records.get(host)
            if not bucket:
                return 0
            if steps is None:
                dropped = len(bucket)
                del self._records[host]
            else:
                dropped = 0
                for s in steps:
                    if bucket.pop(s, None) is not None:
                        dropped += 1
                if not bucket:
                    del self._records[host]
            self._save_locked()
            return dropped

    def _snapshot_locked(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        return {
            host: {step: rec.to_dict() for step, rec in steps.items()}
            for host, steps in self._records.items()
        }

    def snapshot(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        with self._lock:
            return self._snapshot_locked()
