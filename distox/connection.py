#!/usr/bin/env python3
"""
connection.py — DistoX link state machine, frame reassembly and ACKs.

  DISCONNECTED ──connect()──▶ CONNECTING ──ok──▶ CONNECTED
        ▲                         │                  │
        │                       fail            link lost
        │                         ▼                  ▼
        └──── timer, auto off ── RECONNECTING ◀── (auto-reconnect on,
                                   │                device selected)
                                   └── timer fires ──▶ connect()

Inbound bytes are buffered and consumed 8 at a time, strictly in arrival
order.  Every consumed frame is acknowledged exactly once, whatever it
decodes to (duplicates, unknown types and undecodable frames included).
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Iterator, List, Optional

from .config import Settings
from .errors import FramingError, NotConnected, TransportError
from .events import Event
from .protocol import (
    PKT_LEN, DistoXProtocol, PacketType, build_ack, classify,
    decode_memory_reply, decode_sensor, hexdump, sequence_bit,
)
from .transport import CONNECT_TIMEOUT, DistoXDevice, Transport

logger = logging.getLogger(__name__)

RECONNECT_DELAY = 5.0   # s


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def _daemon_timer(delay: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(delay, fn)
    t.daemon = True
    return t


class ConnectionManager:
    """
    Owns one :class:`Transport` and drives the DistoX protocol over it.

    Events
    ------
    state_changed(ConnectionState)
    connected(DistoXDevice)
    measurement(DistoXMeasurement)     new (non-duplicate) survey shots
    sensor_packet(SensorPacket)        calibration G / M triads
    memory_reply(MemoryReply)
    """

    def __init__(self,
                 transport: Transport,
                 settings: Optional[Settings] = None,
                 protocol: Optional[DistoXProtocol] = None,
                 reconnect_delay: float = RECONNECT_DELAY,
                 connect_timeout: float = CONNECT_TIMEOUT,
                 timer_factory: Callable[[float, Callable[[], None]], object] = _daemon_timer):
        self.transport = transport
        self.settings = settings or Settings()
        self.protocol = protocol or DistoXProtocol()
        self.reconnect_delay = reconnect_delay
        self.connect_timeout = connect_timeout
        self._timer_factory = timer_factory

        self.state_changed = Event("state_changed")
        self.connected = Event("connected")
        self.measurement = Event("measurement")
        self.sensor_packet = Event("sensor_packet")
        self.memory_reply = Event("memory_reply")

        self._state = ConnectionState.DISCONNECTED
        self._lock = threading.RLock()       # state, timer, device fields
        self._io_lock = threading.Lock()     # serializes transport operations
        self._rx_lock = threading.RLock()    # frame buffer
        self._buffer = bytearray()
        self._reconnect_timer = None
        self._generation = 0
        self._subscribed = False

        self.selected_device: Optional[DistoXDevice] = None
        self.connected_device: Optional[DistoXDevice] = None
        self.last_error: Optional[str] = None

    # ── Properties ───────────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def auto_reconnect(self) -> bool:
        return self.settings.auto_connect

    def set_auto_reconnect(self, value: bool) -> None:
        self.settings.auto_connect = value
        if not value:
            with self._lock:
                if self._state is ConnectionState.RECONNECTING:
                    self._cancel_reconnect()
                    self._set_state(ConnectionState.DISCONNECTED)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state
        self.state_changed.emit(state)

    # ── Device discovery (pass-through) ──────────────────────────────────────

    def get_bonded_devices(self) -> List[DistoXDevice]:
        return self.transport.get_bonded_devices()

    def start_discovery(self) -> Iterator[DistoXDevice]:
        return self.transport.start_discovery()

    def stop_discovery(self) -> None:
        self.transport.stop_discovery()

    def select_device(self, device: Optional[DistoXDevice]) -> None:
        with self._lock:
            self.selected_device = device

    # ── Connect / disconnect ─────────────────────────────────────────────────

    def connect(self, device: DistoXDevice) -> bool:
        """
        Open a link to *device*.  Blocks until the transport succeeds, fails
        or times out.  Returns False immediately if a connect is in progress.
        """
        with self._lock:
            if self._state is ConnectionState.CONNECTING:
                return False
            self._cancel_reconnect()
            self.last_error = None
            self.selected_device = device
            generation = self._generation
            self._set_state(ConnectionState.CONNECTING)

        logger.info("Connecting to %s", device)
        try:
            with self._io_lock:
                self.transport.connect(device.address, timeout=self.connect_timeout)
        except OSError as e:
            self._connect_failed(device, e)
            return False

        with self._lock:
            if generation != self._generation:
                # disconnect() ran while we were connecting
                logger.info("Connect to %s superseded by disconnect", device)
                with self._io_lock:
                    self.transport.disconnect()
                return False
            self.protocol.reset()
            with self._rx_lock:
                self._buffer.clear()
            self.connected_device = device
            self._subscribe()
            self.settings.last_device_address = device.address
            self.settings.last_device_name = device.name
            self._set_state(ConnectionState.CONNECTED)

        logger.info("Connected to %s", device)
        self.connected.emit(device)
        return True

    def _connect_failed(self, device: DistoXDevice, exc: Exception) -> None:
        logger.warning("Connection to %s failed: %s", device, exc)
        with self._lock:
            self.last_error = str(exc)
            self.connected_device = None
            self._set_state(ConnectionState.DISCONNECTED)
            if self.auto_reconnect:
                self._schedule_reconnect()

    def disconnect(self) -> None:
        """Close the link and cancel any pending reconnect.  Idempotent."""
        with self._lock:
            self._cancel_reconnect()
            self._generation += 1
            self._unsubscribe()
            self.connected_device = None
            self._set_state(ConnectionState.DISCONNECTED)
        with self._io_lock:
            self.transport.disconnect()
        with self._rx_lock:
            self._buffer.clear()

    def try_auto_connect(self, address: Optional[str], name: Optional[str] = None) -> bool:
        """
        Reconnect to a previously used device.

        Returns True if a connection attempt was made.  The outcome is
        reported through ``connected`` / ``state_changed``.
        """
        if not address:
            logger.info("Auto-connect: no stored device address")
            return False
        if not self.transport.is_available():
            logger.info("Auto-connect: transport not available")
            return False
        if not self.transport.is_enabled():
            logger.info("Auto-connect: transport not enabled")
            return False

        target = next((d for d in self.transport.get_bonded_devices()
                       if d.address == address), None)
        if target is None:
            logger.info("Auto-connect: %s not in bonded list, trying anyway", address)
            target = DistoXDevice(name=name or "DistoX", address=address)

        self.set_auto_reconnect(True)
        self.connect(target)
        return True

    # ── Reconnect timer ──────────────────────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        with self._lock:
            if self._reconnect_timer is not None or self.selected_device is None:
                return
            self._set_state(ConnectionState.RECONNECTING)
            logger.info("Reconnecting to %s in %.0f s", self.selected_device,
                        self.reconnect_delay)
            timer = self._timer_factory(self.reconnect_delay, self._reconnect_fired)
            self._reconnect_timer = timer
            timer.start()

    def _reconnect_fired(self) -> None:
        with self._lock:
            if self._reconnect_timer is None:
                return      # cancelled after firing began
            self._reconnect_timer = None
            device = self.selected_device
            if not (self.auto_reconnect and device is not None):
                logger.info("Reconnect skipped (auto-reconnect off or no device)")
                self._set_state(ConnectionState.DISCONNECTED)
                return
        self.connect(device)

    def _cancel_reconnect(self) -> None:
        timer, self._reconnect_timer = self._reconnect_timer, None
        if timer is not None:
            timer.cancel()

    # ── Transport subscriptions ──────────────────────────────────────────────

    def _subscribe(self) -> None:
        if not self._subscribed:
            self.transport.data_received.connect(self._on_data)
            self.transport.connection_state.connect(self._on_link_state)
            self._subscribed = True

    def _unsubscribe(self) -> None:
        if self._subscribed:
            self.transport.data_received.disconnect(self._on_data)
            self.transport.connection_state.disconnect(self._on_link_state)
            self._subscribed = False

    def _on_link_state(self, up: bool) -> None:
        if not up and self._state is ConnectionState.CONNECTED:
            self._on_link_lost()

    def _on_link_lost(self) -> None:
        logger.info("DistoX disconnected")
        with self._lock:
            self._unsubscribe()
            self.connected_device = None
            with self._rx_lock:
                self._buffer.clear()
            self._set_state(ConnectionState.DISCONNECTED)
            if self.auto_reconnect and self.selected_device is not None:
                self._schedule_reconnect()

    # ── Sending ──────────────────────────────────────────────────────────────

    def send_command(self, data: bytes) -> None:
        """Send a host command.  Raises :class:`NotConnected` without a link."""
        if not self.is_connected:
            raise NotConnected("Not connected to DistoX")
        with self._io_lock:
            self.transport.send(data)

    def _acknowledge(self, seq: int) -> None:
        try:
            self.send_command(build_ack(seq))
        except TransportError as e:
            logger.warning("Failed to send ACK (seq %d): %s", seq, e)
        else:
            logger.debug("Sent ACK for seq bit %d", seq)

    # ── Receiving ────────────────────────────────────────────────────────────

    def _on_data(self, chunk: bytes) -> None:
        logger.debug("Received %d bytes: %s", len(chunk), hexdump(chunk))
        with self._rx_lock:
            self._buffer.extend(chunk)
            frames = []
            while len(self._buffer) >= PKT_LEN:
                frames.append(bytes(self._buffer[:PKT_LEN]))
                del self._buffer[:PKT_LEN]
            for frame in frames:
                self._handle_frame(frame)

    def feed(self, chunk: bytes) -> None:
        """Inject inbound bytes as if they came from the transport."""
        self._on_data(chunk)

    def _handle_frame(self, frame: bytes) -> None:
        kind = classify(frame)
        self._acknowledge(sequence_bit(frame))

        try:
            if kind is PacketType.MEASUREMENT:
                m = self.protocol.decode_measurement(frame)
                if m is None:
                    logger.debug("Duplicate packet ignored (seq bit %d)", sequence_bit(frame))
                else:
                    logger.debug("Received %s", m)
                    self.measurement.emit(m)
            elif kind in (PacketType.CALIBRATION_ACCEL, PacketType.CALIBRATION_MAG):
                self.sensor_packet.emit(decode_sensor(frame))
            elif kind is PacketType.MEMORY_REPLY:
                self.memory_reply.emit(decode_memory_reply(frame))
            elif kind is PacketType.VECTOR:
                logger.debug("Vector packet ignored: %s", hexdump(frame))
            else:
                logger.debug("Unknown packet type 0x%02x ignored", kind)
        except FramingError as e:
            logger.warning("Failed to decode frame %s: %s", hexdump(frame), e)
        except Exception:
            logger.exception("Packet handler failed for frame %s", hexdump(frame))
