# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/errors.py
from __future__ import annotations

# In-run exit codes (1-9)
EXIT_OK = 0
EXIT_STEP_FAILED = 1
EXIT_JOIN_ABORTED = 2
EXIT_CANCELLED = 3


class KubestrapError(RuntimeError):
    """Base class for every error kubestrap raises on purpose."""

    exit_code: int = EXIT_STEP_FAILED


# ----- pre-flight (10-19) -----

class PreflightError(KubestrapError):
    exit_code = 10


class ConfigError(PreflightError):
    exit_code = 10


class TopologyError(PreflightError):
    exit_code = 11


class UnknownPhaseError(PreflightError):
    exit_code = 12


class PrerequisitePhaseNotSatisfied(PreflightError):
    exit_code = 13

    def __init__(self, phase: str, prerequisite: str, missing: list[tuple[str, str]]):
        self.phase = phase
        self.prerequisite = prerequisite
        self.missing = missing
        pairs = ", ".join(f"{h}:{s}" for h, s in missing[:5])
        more = f" (+{len(missing) - 5} more)" if len(missing) > 5 else ""
        super().__init__(
            f"Phase '{phase}' requires phase '{prerequisite}' to have succeeded; "
            f"not satisfied: {pairs}{more}"
        )


# ----- remote channel -----

class RemoteError(KubestrapError):
    """Connection, authentication or transfer failure against a host."""


class CommandTimeout(RemoteError):
    def __init__(self, host: str, command: str, timeout: float):
        self.host = host
        self.command = command
        self.timeout = timeout
        super().__init__(f"Timeout: command on {host} exceeded {timeout:g}s")


# ----- join protocol -----

class JoinPhaseAborted(KubestrapError):
    """Fatal for the worker-join phase only."""

    exit_code = EXIT_JOIN_ABORTED


class UnreachableControlPlane(JoinPhaseAborted):
    pass


class JoinTokenError(JoinPhaseAborted):
    pass


class JoinError(KubestrapError):
    """The worker's local join procedure did not complete."""


class StaleMembershipError(JoinError):
    """Local membership state exists but the node is not a cluster member."""
