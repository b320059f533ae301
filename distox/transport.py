#!/usr/bin/env python3
"""
transport.py — Physical link abstraction + pyserial implementation.

A :class:`Transport` moves raw bytes; it knows nothing about frames or
acknowledgements.  The embedding application picks the implementation and
passes it to :class:`~distox.connection.ConnectionManager`:

  SerialTransport   Bluetooth SPP / rfcomm or USB-serial port via pyserial

Inbound bytes are published on ``data_received`` (one ``bytes`` chunk per
emit, arrival order) and link changes on ``connection_state`` (bool).
"""

from __future__ import annotations

import abc
import glob
import logging
import threading
import time
from dataclasses import dataclass
from typing import Iterator, List, Optional

import serial
import serial.tools.list_ports

from .errors import DistoXConnectionError, NotConnected, TransportError
from .events import Event

logger = logging.getLogger(__name__)

BAUD            = 9600
CONNECT_TIMEOUT = 10.0      # s
READ_TIMEOUT    = 0.5       # s, reader thread poll
NAME_PREFIXES   = ("DistoX", "Disto")


@dataclass(frozen=True)
class DistoXDevice:
    """A DistoX the host can connect to.  Equality is by address."""
    name: str
    address: str
    is_bonded: bool = False

    def __eq__(self, other) -> bool:
        return isinstance(other, DistoXDevice) and other.address == self.address

    def __hash__(self) -> int:
        return hash(self.address)

    def __str__(self) -> str:
        return f"DistoXDevice({self.name}, {self.address})"


def is_distox_name(name: Optional[str]) -> bool:
    """True for device names like ``DistoX-1234`` / ``DistoX2-0815``."""
    return bool(name) and name.startswith(NAME_PREFIXES)


class Transport(abc.ABC):
    """Byte-level link to one device at a time."""

    def __init__(self) -> None:
        self.data_received = Event("data_received")        # (bytes,)
        self.connection_state = Event("connection_state")  # (bool,)

    # ── Adapter capabilities ─────────────────────────────────────────────────

    def is_available(self) -> bool:
        return True

    def is_enabled(self) -> bool:
        return True

    def request_enable(self) -> bool:
        return self.is_enabled()

    @abc.abstractmethod
    def get_bonded_devices(self) -> List[DistoXDevice]:
        """Paired devices whose name passes :func:`is_distox_name`."""

    def start_discovery(self) -> Iterator[DistoXDevice]:
        """Lazily yield discovered DistoX devices."""
        yield from self.get_bonded_devices()

    def stop_discovery(self) -> None:
        pass

    # ── Link ─────────────────────────────────────────────────────────────────

    @abc.abstractmethod
    def connect(self, address: str, timeout: float = CONNECT_TIMEOUT) -> None:
        """Open the link.  Raises :class:`DistoXConnectionError` on failure."""

    @abc.abstractmethod
    def disconnect(self) -> None:
        """Close the link.  Must be safe to call when not connected."""

    @abc.abstractmethod
    def send(self, data: bytes) -> None:
        """Write *data*.  Raises :class:`TransportError` on failure."""

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool:
        ...


# ── pyserial transport ─────────────────────────────────────────────────────

def find_port() -> Optional[str]:
    """Auto-detect the serial port a DistoX is bound to."""
    for p in serial.tools.list_ports.comports():
        d = ((p.description or "") + (p.manufacturer or "") + (p.name or "")).lower()
        if any(k in d for k in ("distox", "disto", "rfcomm")):
            return p.device
    rfcomm = sorted(glob.glob("/dev/rfcomm*"))
    return rfcomm[0] if rfcomm else None


class SerialTransport(Transport):
    """
    DistoX over a serial port (Bluetooth SPP bound to rfcomm, or USB-serial).

    A daemon reader thread pushes every chunk read from the port onto
    ``data_received``.  A read error or a closed port ends the thread and
    reports ``connection_state(False)``.
    """

    def __init__(self, baud: int = BAUD, read_timeout: float = READ_TIMEOUT):
        super().__init__()
        self.baud = baud
        self.read_timeout = read_timeout
        self._ser: Optional[serial.Serial] = None
        self._reader: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._write_lock = threading.Lock()

    def get_bonded_devices(self) -> List[DistoXDevice]:
        devices = []
        for p in serial.tools.list_ports.comports():
            name = p.description or p.name or ""
            if is_distox_name(name) or is_distox_name(p.name):
                devices.append(DistoXDevice(name=name, address=p.device, is_bonded=True))
        return devices

    @property
    def is_connected(self) -> bool:
        return self._ser is not None and self._ser.is_open

    def connect(self, address: str, timeout: float = CONNECT_TIMEOUT) -> None:
        self.disconnect()
        deadline = time.monotonic() + timeout
        last_exc: Optional[Exception] = None
        # rfcomm ports can refuse the first open while the radio pages the device
        while True:
            try:
                ser = serial.Serial(address, self.baud, timeout=self.read_timeout,
                                    write_timeout=timeout)
                break
            except serial.SerialException as e:
                last_exc = e
                if time.monotonic() >= deadline:
                    raise DistoXConnectionError(f"Cannot open {address}: {last_exc}") from e
                time.sleep(0.5)

        ser.reset_input_buffer()
        self._ser = ser
        self._stop.clear()
        self._reader = threading.Thread(target=self._read_loop, args=(ser,),
                                        name=f"distox-rx-{address}", daemon=True)
        self._reader.start()
        logger.info("Serial port %s open @ %d baud", address, self.baud)

    def disconnect(self) -> None:
        ser, self._ser = self._ser, None
        self._stop.set()
        if ser is not None:
            try:
                ser.close()
            except serial.SerialException as e:
                logger.debug("Error closing port: %s", e)
        reader, self._reader = self._reader, None
        if reader is not None and reader is not threading.current_thread():
            reader.join(timeout=2 * self.read_timeout + 0.5)

    def send(self, data: bytes) -> None:
        ser = self._ser
        if ser is None or not ser.is_open:
            raise NotConnected("Not connected")
        with self._write_lock:
            try:
                ser.write(data)
                ser.flush()
            except (serial.SerialException, OSError) as e:
                raise TransportError(f"Send failed: {e}") from e

    def _deliver(self, chunk: bytes) -> None:
        try:
            self.data_received.emit(chunk)
        except Exception:
            logger.exception("Data handler failed on %d bytes", len(chunk))

    def _read_loop(self, ser: serial.Serial) -> None:
        lost = False
        try:
            while not self._stop.is_set():
                waiting = ser.in_waiting
                chunk = ser.read(max(waiting, 1))
                if chunk:
                    self._deliver(bytes(chunk))
        except (serial.SerialException, OSError, TypeError) as e:
            # pyserial raises TypeError when the fd is closed under a blocking read
            lost = not self._stop.is_set()
            if lost:
                logger.warning("Serial link lost: %s", e)
        if lost:
            self._ser = None
            try:
                ser.close()
            except serial.SerialException as e:
                logger.debug("Error closing lost port: %s", e)
            self.connection_state.emit(False)
