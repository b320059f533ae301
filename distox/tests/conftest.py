#!/usr/bin/env python3
"""
conftest.py -- Shared fakes: an in-memory transport and a manual timer.
"""

import os
import sys

import pytest

# Allow running from repo root
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from distox.config import Settings
from distox.connection import ConnectionManager
from distox.errors import DistoXConnectionError, NotConnected, TransportError
from distox.transport import DistoXDevice, Transport


class FakeTransport(Transport):
    """Records sends; connect fails while ``fail`` is set."""

    def __init__(self):
        super().__init__()
        self.fail = False
        self.send_error = False
        self.connected = False
        self.sent = []
        self.connect_calls = []
        self.bonded = []
        self.on_connect = None

    def get_bonded_devices(self):
        return list(self.bonded)

    def connect(self, address, timeout=10.0):
        self.connect_calls.append(address)
        if self.on_connect is not None:
            self.on_connect()
        if self.fail:
            raise DistoXConnectionError(f"Cannot open {address}")
        self.connected = True

    def disconnect(self):
        self.connected = False

    def send(self, data):
        if not self.connected:
            raise NotConnected("Not connected")
        if self.send_error:
            raise TransportError("Broken pipe")
        self.sent.append(bytes(data))

    @property
    def is_connected(self):
        return self.connected


class FakeTimer:
    def __init__(self, delay, fn):
        self.delay = delay
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.fn()


class TimerFactory:
    def __init__(self):
        self.timers = []

    def __call__(self, delay, fn):
        t = FakeTimer(delay, fn)
        self.timers.append(t)
        return t


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def timers():
    return TimerFactory()


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def conn(transport, timers, settings):
    return ConnectionManager(transport, settings=settings, timer_factory=timers)


@pytest.fixture
def device():
    return DistoXDevice(name="DistoX-1234", address="00:13:43:00:12:34")
