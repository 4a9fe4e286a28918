# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/observers/logger.py
from __future__ import annotations

import logging

from .events import BaseEvent
from .interface import Observer

_CONTEXT = ("ts", "run_id", "cluster")


class LoggerObserver(Observer):
    """
    Writes every event to the run log at DEBUG. The console observer already
    shows events on screen, so at the default console level they only reach
    the per-run log file.
    """

    def __init__(self, logger: logging.Logger, level: int = logging.DEBUG):
        self.logger = logger
        self.level = level

    def notify(self, event: BaseEvent) -> None:
        fields = ", ".join(f"{k}={v}" for k, v in event.dict().items() if k not in _CONTEXT)
        self.logger.log(self.level, "[event] %s: %s", type(event).__name__, fields)
