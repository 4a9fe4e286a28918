# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from ..inventory.registry import Host
from ..steps.conditions import PostCondition


@dataclass(frozen=True)
class CommandResult:
    rc: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.rc == 0

    def brief(self, limit: int = 300) -> str:
        text = (self.stderr or self.stdout).strip()
        return text[-limit:] if text else f"exit {self.rc}"


class RemoteChannel(Protocol):
    """
    The only boundary to the hosts being provisioned.

    ``run`` raises ``CommandTimeout`` when ``timeout`` elapses and
    ``RemoteError`` when the host cannot be reached; a non-zero exit status is
    returned, not raised. When ``display`` is given it replaces ``command`` in
    logs and errors; commands carrying credentials must pass one.
    """

    def run(
        self,
        host: Host,
        command: str,
        *,
        timeout: Optional[float] = None,
        sudo: bool = True,
        display: Optional[str] = None,
    ) -> CommandResult: ...

    def put_text(self, host: Host, content: str, remote_path: str, *, mode: int = 0o644, sudo: bool = True) -> None: ...

    def check(self, host: Host, condition: PostCondition, *, timeout: Optional[float] = None) -> bool: ...

    def close(self) -> None: ...
