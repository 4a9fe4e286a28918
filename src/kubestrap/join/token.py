# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import re
import shlex
import threading
import time
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Set

from ..errors import JoinTokenError

_TOKEN_RE = re.compile(r"--token\s+([a-z0-9]{6})\.[a-z0-9]{16}")
_SECRET_RE = re.compile(r"(--token\s+[a-z0-9]{6})\.[a-z0-9]{16}")
_CA_HASH_RE = re.compile(r"--discovery-token-ca-cert-hash\s+\S+")

# Treat a token as expired slightly early so a join never races its TTL.
EXPIRY_MARGIN_SECONDS = 30


@dataclass
class JoinToken:
    """
    Join credential issued by the control-plane host.

    ``command`` is the full ``kubeadm join ...`` line and is a secret; it is
    kept out of ``repr`` so it never reaches logs or events.
    """
    command: str = field(repr=False)
    issued_by: str
    ttl_seconds: int
    issued_at: float = field(default_factory=time.time)
    _consumed_by: Set[str] = field(default_factory=set, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def parse(cls, output: str, issued_by: str, ttl_seconds: int, issued_at: Optional[float] = None) -> "JoinToken":
        lines = [ln.strip() for ln in output.splitlines() if ln.strip().startswith("kubeadm join")]
        if not lines or "--token" not in lines[-1]:
            raise JoinTokenError(f"Control plane {issued_by} did not print a usable join command")
        return cls(
            command=lines[-1],
            issued_by=issued_by,
            ttl_seconds=ttl_seconds,
            issued_at=issued_at if issued_at is not None else time.time(),
        )

    @property
    def token_id(self) -> str:
        """Public half of the bootstrap token, safe to log."""
        m = _TOKEN_RE.search(self.command)
        return m.group(1) if m else "?"

    def expired(self, now: Optional[float] = None) -> bool:
        if self.ttl_seconds == 0:
            return False
        now = time.time() if now is None else now
        return now >= self.issued_at + self.ttl_seconds - EXPIRY_MARGIN_SECONDS

    def join_command(self, node_name: str) -> str:
        return f"{self.command} --node-name {shlex.quote(node_name)}"

    def redacted_command(self, node_name: str) -> str:
        """``join_command`` with the token secret and CA hash masked."""
        masked = _SECRET_RE.sub(r"\1.****************", self.command)
        masked = _CA_HASH_RE.sub("--discovery-token-ca-cert-hash ****", masked)
        return f"{masked} --node-name {shlex.quote(node_name)}"

    def consume(self, host_id: str) -> None:
        with self._lock:
            self._consumed_by.add(host_id)

    @property
    def consumed_by(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(self._consumed_by)
