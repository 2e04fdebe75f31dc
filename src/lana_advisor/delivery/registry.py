"""Registry of requesters currently holding a live result connection."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

ResultSink = Callable[[dict[str, Any]], None]


class ConnectionRegistry(Protocol):
    def is_live(self, requester_id: str) -> bool: ...

    def push_to(self, requester_id: str, payload: dict[str, Any]) -> None: ...


class InMemoryConnectionRegistry:
    """Thread-safe map of requester -> live sinks.

    Sinks are registered and unregistered by whoever owns the connections.
    A sink that raises while pushing is dropped.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sinks: dict[str, list[ResultSink]] = {}

    def register(self, requester_id: str, sink: ResultSink) -> None:
        with self._lock:
            self._sinks.setdefault(requester_id, []).append(sink)

    def unregister(self, requester_id: str, sink: ResultSink) -> None:
        with self._lock:
            sinks = self._sinks.get(requester_id)
            if not sinks:
                return
            if sink in sinks:
                sinks.remove(sink)
            if not sinks:
                del self._sinks[requester_id]

    def is_live(self, requester_id: str) -> bool:
        with self._lock:
            return bool(self._sinks.get(requester_id))

    def push_to(self, requester_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            sinks = list(self._sinks.get(requester_id, []))
        for sink in sinks:
            try:
                sink(payload)
            except Exception:  # noqa: BLE001
                logger.warning("Dropping broken result sink for %s", requester_id[:16], exc_info=True)
                self.unregister(requester_id, sink)
