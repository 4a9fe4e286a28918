# src/kubestrap/observers/dispatcher.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Type

from .events import BaseEvent, new_ctx, now_ts
from .interface import Observer

log = logging.getLogger("kubestrap")


class EventBus:
    def __init__(self, observers: Optional[List[Observer]] = None, ctx: Optional[Dict[str, Any]] = None):
        self._observers = observers or []
        self.ctx = ctx or new_ctx(cluster="kubernetes")

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception:
                # observers must not break runs
                log.debug("observer %r failed on %s", ob, type(event).__name__, exc_info=True)

    def publish(self, event_cls: Type[BaseEvent], **fields: Any) -> None:
        """Build ``event_cls`` with the run context and a fresh timestamp, then emit it."""
        self.emit(event_cls(**{**self.ctx, "ts": now_ts(), **fields}))
