#!/usr/bin/env python3
"""
events.py — Minimal observer registry used by the link and calibration services.

    conn.measurement.connect(on_measurement)
    conn.state_changed.connect(lambda state: print(state))

Handlers run synchronously on the emitting thread, in registration order.
"""

from __future__ import annotations

import threading
from typing import Callable, List


class Event:
    """A named list of callbacks."""

    def __init__(self, name: str = ""):
        self.name = name
        self._handlers: List[Callable[..., None]] = []
        self._lock = threading.Lock()

    def connect(self, handler: Callable[..., None]) -> Callable[..., None]:
        with self._lock:
            if handler not in self._handlers:
                self._handlers.append(handler)
        return handler

    def disconnect(self, handler: Callable[..., None]) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def emit(self, *args) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for h in handlers:
            h(*args)

    def __len__(self) -> int:
        return len(self._handlers)

    def __repr__(self) -> str:
        return f"Event({self.name!r}, handlers={len(self._handlers)})"
