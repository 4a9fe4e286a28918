# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/remote/ssh.py
from __future__ import annotations

import logging
import os
import threading
import time
from itertools import count
from typing import Dict, Optional

import paramiko

from ..config.models import ConnectionSpec
from ..errors import CommandTimeout, RemoteError
from ..inventory.registry import Host
from ..steps.conditions import PostCondition
from ..utils.retry import RetryError, retry
from .channel import CommandResult

log = logging.getLogger("kubestrap")

_tmp_counter = count(1)


def _q(s: str) -> str:
    """Quote for bash -c."""
    return "'" + s.replace("'", "'\"'\"'") + "'"


def _secret(env_name: Optional[str]) -> Optional[str]:
    if not env_name:
        return None
    value = os.environ.get(env_name)
    if value is None:
        log.warning("environment variable %s is referenced but not set", env_name)
    return value


def _load_pkey(path) -> Optional[paramiko.PKey]:
    if not path:
        return None
    key_path = os.path.expanduser(str(path))
    for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.SSHException:
            continue
    raise RemoteError(f"Unsupported private key format for {key_path}")


class SSHRunner:
    """Commands and uploads over one paramiko client."""

    def __init__(self, client: paramiko.SSHClient, host: Host):
        self.client = client
        self.host = host
        self._lock = threading.Lock()

    def run(
        self, cmd: str, *, sudo: bool = False, timeout: Optional[float] = None, display: Optional[str] = None
    ) -> CommandResult:
        shown = cmd if display is None else display
        become = _secret(self.host.connection.become_password_env)
        if sudo:
            cmd = f"sudo -S -H -p '' bash -c {_q(cmd)}"
        else:
            cmd = f"bash -c {_q(cmd)}"

        with self._lock:
            stdin, stdout, stderr = self.client.exec_command(cmd, timeout=timeout)
            if sudo and become:
                stdin.write(become + "\n")
                stdin.flush()
            chan = stdout.channel
            deadline = time.monotonic() + timeout if timeout else None
            out, err = [], []
            while True:
                while chan.recv_ready():
                    out.append(chan.recv(65536))
                while chan.recv_stderr_ready():
                    err.append(chan.recv_stderr(65536))
                if chan.exit_status_ready() and not chan.recv_ready() and not chan.recv_stderr_ready():
                    break
                if deadline is not None and time.monotonic() > deadline:
                    chan.close()
                    raise CommandTimeout(self.host.id, shown, timeout)
                time.sleep(0.05)
            rc = chan.recv_exit_status()

        return CommandResult(
            rc=rc,
            stdout=b"".join(out).decode("utf-8", errors="replace"),
            stderr=b"".join(err).decode("utf-8", errors="replace"),
        )

    def put_text(self, content: str, remote_path: str, *, mode: int = 0o644, sudo: bool = False) -> None:
        """
        Upload to a temp path, then ``install`` into place so root-owned
        targets keep the right owner and mode.
        """
        tmp = f"/tmp/.kubestrap.tmp.{os.getpid()}.{next(_tmp_counter)}"
        with self._lock:
            sftp = self.client.open_sftp()
            try:
                with sftp.open(tmp, "w") as f:
                    f.write(content)
            finally:
                sftp.close()
        res = self.run(f"install -m {oct(mode)[2:]} {tmp} {remote_path} ; rc=$? ; rm -f {tmp} ; exit $rc", sudo=sudo)
        if not res.ok:
            raise RemoteError(f"[{self.host.id}] upload to {remote_path} failed: {res.brief()}")

    def close(self) -> None:
        self.client.close()


def open_ssh(host: Host, *, connect_retries: int = 3, retry_delay: float = 5.0) -> SSHRunner:
    conn: ConnectionSpec = host.connection

    @retry(
        retries=connect_retries,
        delay=retry_delay,
        retry_on=(paramiko.SSHException, OSError),
        on_retry=lambda attempt, exc: log.info(
            "[%s] SSH not ready (attempt %d/%d, %s: %s)",
            host.id, attempt, connect_retries, type(exc).__name__, exc,
        ),
    )
    def _connect() -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        pkey = _load_pkey(conn.pkey_path)
        client.connect(
            hostname=host.address,
            port=conn.port,
            username=conn.username,
            password=_secret(conn.password_env) if not pkey else None,
            pkey=pkey,
            timeout=conn.connect_timeout,
            allow_agent=pkey is None,
            look_for_keys=pkey is None,
        )
        return client

    try:
        return SSHRunner(_connect(), host)
    except RetryError as e:
        raise RemoteError(f"Failed to SSH into {host.address} as '{conn.username}': {e.__cause__}") from e


class ParamikoChannel:
    """RemoteChannel over SSH, one lazily opened connection per host."""

    def __init__(self, *, connect_retries: int = 3, retry_delay: float = 5.0):
        self.connect_retries = connect_retries
        self.retry_delay = retry_delay
        self._runners: Dict[str, SSHRunner] = {}
        self._lock = threading.Lock()

    def _runner(self, host: Host) -> SSHRunner:
        with self._lock:
            runner = self._runners.get(host.id)
        if runner is not None:
            return runner
        runner = open_ssh(host, connect_retries=self.connect_retries, retry_delay=self.retry_delay)
        with self._lock:
            existing = self._runners.setdefault(host.id, runner)
        if existing is not runner:
            runner.close()
        return existing

    def run(
        self,
        host: Host,
        command: str,
        *,
        timeout: Optional[float] = None,
        sudo: bool = True,
        display: Optional[str] = None,
    ) -> CommandResult:
        log.debug("[%s] $ %s", host.id, command if display is None else display)
        try:
            res = self._runner(host).run(command, sudo=sudo, timeout=timeout, display=display)
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise RemoteError(f"[{host.id}] command failed to run: {e}") from e
        log.debug("[%s] exit %d", host.id, res.rc)
        return res

    def put_text(self, host: Host, content: str, remote_path: str, *, mode: int = 0o644, sudo: bool = True) -> None:
        log.debug("[%s] upload %d bytes to %s", host.id, len(content), remote_path)
        try:
            self._runner(host).put_text(content, remote_path, mode=mode, sudo=sudo)
        except (paramiko.SSHException, OSError) as e:
            raise RemoteError(f"[{host.id}] upload to {remote_path} failed: {e}") from e

    def check(self, host: Host, condition: PostCondition, *, timeout: Optional[float] = None) -> bool:
        return self.run(host, condition.probe(), timeout=timeout).ok

    def close(self) -> None:
        with self._lock:
            runners, self._runners = list(self._runners.values()), {}
        for r in runners:
            try:
                r.close()
            except Exception:
                log.debug("error closing SSH connection to %s", r.host.id, exc_info=True)
