# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

"""TCP reachability checks used before touching hosts."""

from __future__ import annotations

import logging
import socket
import time
from typing import Callable

log = logging.getLogger("kubestrap")


def port_open(address: str, port: int, timeout: float = 3.0) -> bool:
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_for_port(
    address: str,
    port: int,
    timeout: float = 60.0,
    interval: float = 2.0,
    *,
    check: Callable[[str, int, float], bool] = port_open,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """
    Poll ``address:port`` until it accepts a TCP connection or ``timeout``
    seconds pass. Returns whether it became reachable.
    """
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        if check(address, port, min(interval, 5.0) or 1.0):
            log.debug("%s:%d reachable after %d attempt(s)", address, port, attempt)
            return True
        if clock() >= deadline:
            return False
        sleep(interval)
