#!/usr/bin/env python3
"""
session.py — Calibration workflow: collect, solve, validate, write back.

Phases (re-evaluated after every solve):

  COLLECTING_INITIAL  < 16 enabled measurements, or nothing solved yet
  COLLECTING_GUIDED   solved, but not all 56 slots filled
  CORRECTING          all slots filled, some measurement bad
                      (error ≥ 0.5° or detected direction ≠ its group)
  COMPLETE            all slots filled, nothing bad

The device sends a G packet followed by an M packet carrying the same
measurement number; each matching pair becomes one
:class:`CalibrationMeasurement`.  A new measurement replaces the pending
retake (CORRECTING), fills the gap of a manual delete, or is appended.
Each new measurement is assigned the currently suggested slot s
(index s + 1, group s // 4); a retake keeps the slot it replaces.

Coefficients live in device memory at 0x8010..0x803F and are moved as
twelve 4-byte memory commands with a short pause between commands and one
overall deadline for the replies.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .calibration import (
    COEFF_LEN, N_POSITIONS, CalibrationCoefficients, CalibrationMeasurement,
    CalibrationOutput, CalibrationResult, default_group,
)
from .errors import InsufficientData, MemoryExchangeTimeout, TransportError
from .events import Event
from .positions import (
    CalibrationPosition, PositionMatch, find_closest, next_position, reference_bearing,
)
from .protocol import (
    MEM_DATA_LEN, MemoryReply, PacketType, SensorPacket, build_read_memory,
    build_start_calibration, build_stop_calibration, build_write_memory,
)
from .solver import CalibrationSolver

logger = logging.getLogger(__name__)

MEMORY_BASE     = 0x8010
MEMORY_TIMEOUT  = 5.0     # s, for all 12 replies
MEMORY_OP_DELAY = 0.05    # s, between memory commands
ERROR_THRESHOLD = 0.5     # deg
N_MEMORY_OPS    = COEFF_LEN // MEM_DATA_LEN


class CalibrationPhase(str, Enum):
    COLLECTING_INITIAL = "collectingInitial"
    COLLECTING_GUIDED = "collectingGuided"
    CORRECTING = "correcting"
    COMPLETE = "complete"


class CalibrationState(str, Enum):
    IDLE = "idle"
    MEASURING = "measuring"
    COMPUTING = "computing"
    WRITING = "writing"
    READING = "reading"


class _MemoryExchange:
    """Collects the replies of one 12-command read or write."""

    def __init__(self, reading: bool):
        self.reading = reading
        self.future: concurrent.futures.Future = concurrent.futures.Future()
        self._buffer = bytearray(COEFF_LEN)
        self._seen = set()
        self._count = 0

    def on_reply(self, reply: MemoryReply) -> None:
        if self.future.done():
            return
        if self.reading:
            offset = reply.address - MEMORY_BASE
            if not (0 <= offset < COEFF_LEN and offset % MEM_DATA_LEN == 0):
                logger.debug("Memory reply 0x%04x outside coefficient block", reply.address)
                return
            self._buffer[offset:offset + MEM_DATA_LEN] = reply.data
            self._seen.add(offset)
            if len(self._seen) == N_MEMORY_OPS:
                self.future.set_result(bytes(self._buffer))
        else:
            self._count += 1
            if self._count >= N_MEMORY_OPS:
                self.future.set_result(None)


class CalibrationSession:
    """
    Stateful calibration workflow on top of a :class:`ConnectionManager`.

    Everything observable changes under ``changed`` (no arguments).
    Failures of user-triggered operations are stored in ``last_error``.
    """

    def __init__(self,
                 connection,
                 solver: Optional[CalibrationSolver] = None,
                 memory_timeout: float = MEMORY_TIMEOUT,
                 op_delay: float = MEMORY_OP_DELAY,
                 error_threshold: float = ERROR_THRESHOLD,
                 sleep: Callable[[float], None] = time.sleep):
        self.connection = connection
        self.solver = solver or CalibrationSolver()
        self.memory_timeout = memory_timeout
        self.op_delay = op_delay
        self.error_threshold = error_threshold
        self._sleep = sleep

        self.changed = Event("changed")

        self.state = CalibrationState.IDLE
        self.phase = CalibrationPhase.COLLECTING_INITIAL
        self.measurements: List[CalibrationMeasurement] = []
        self.results: Optional[List[Optional[CalibrationResult]]] = None
        self.detected: List[Optional[PositionMatch]] = []
        self.misaligned: List[bool] = []
        self.coefficients: Optional[CalibrationCoefficients] = None
        self.rms_error: Optional[float] = None
        self.iterations: Optional[int] = None
        self.reference_bearing: Optional[float] = None
        self.retake_index: Optional[int] = None
        self.insert_position: Optional[int] = None
        self.last_error: Optional[str] = None
        self.last_warning: Optional[str] = None

        self._pending_accel: Optional[SensorPacket] = None
        self._exchange: Optional[_MemoryExchange] = None
        self._lock = threading.RLock()
        self._memory_lock = threading.Lock()

        connection.sensor_packet.connect(self.on_sensor_packet)
        connection.memory_reply.connect(self.on_memory_reply)

    def close(self) -> None:
        self.connection.sensor_packet.disconnect(self.on_sensor_packet)
        self.connection.memory_reply.disconnect(self.on_memory_reply)

    # ── Properties ───────────────────────────────────────────────────────────

    @property
    def is_connected(self) -> bool:
        return self.connection.is_connected

    @property
    def measurement_count(self) -> int:
        return len(self.measurements)

    @property
    def enabled_count(self) -> int:
        return sum(1 for m in self.measurements if m.enabled)

    @property
    def has_results(self) -> bool:
        return bool(self.results)

    def filled_slots(self) -> set:
        return {m.index - 1 for m in self.measurements if 1 <= m.index <= N_POSITIONS}

    def suggested_position(self) -> Optional[CalibrationPosition]:
        return next_position(self.filled_slots())

    def _fail(self, message: str) -> None:
        logger.warning(message)
        self.last_error = message
        self.changed.emit()

    # ── Device mode ──────────────────────────────────────────────────────────

    def start_calibration(self) -> bool:
        if not self.is_connected:
            self._fail("Not connected to DistoX")
            return False
        self.state = CalibrationState.MEASURING
        self.last_error = None
        self.changed.emit()
        try:
            self.connection.send_command(build_start_calibration())
        except TransportError as e:
            self.state = CalibrationState.IDLE
            self._fail(f"Failed to start calibration: {e}")
            return False
        logger.info("Calibration mode started")
        return True

    def stop_calibration(self) -> None:
        try:
            self.connection.send_command(build_stop_calibration())
        except TransportError as e:
            logger.warning("Failed to stop calibration: %s", e)
        self.state = CalibrationState.IDLE
        self._pending_accel = None
        self.changed.emit()

    # ── Editing ──────────────────────────────────────────────────────────────

    def clear(self) -> None:
        with self._lock:
            self.measurements = []
            self.coefficients = None
            self.rms_error = None
            self.iterations = None
            self.reference_bearing = None
            self.last_error = None
            self._pending_accel = None
            self.retake_index = None
            self.insert_position = None
            self._drop_results()
            self.phase = CalibrationPhase.COLLECTING_INITIAL
        self.changed.emit()

    def delete_measurement(self, i: int) -> None:
        """Remove entry *i*; the next measurement is inserted in its place."""
        with self._lock:
            if not 0 <= i < len(self.measurements):
                return
            del self.measurements[i]
            self.insert_position = i
            self.retake_index = None
        self.changed.emit()
        self._reevaluate()

    def toggle_enabled(self, i: int) -> None:
        with self._lock:
            if not 0 <= i < len(self.measurements):
                return
            m = self.measurements[i]
            self.measurements[i] = m.copy(enabled=not m.enabled)
        self.changed.emit()
        self._reevaluate()

    def cycle_group(self, i: int) -> None:
        """Toggle entry *i* between ungrouped and the default group of its slot."""
        with self._lock:
            if not 0 <= i < len(self.measurements):
                return
            m = self.measurements[i]
            group = None if m.group is not None else default_group(m.index)
            self.measurements[i] = m.copy(group=group)
        self.changed.emit()
        self._reevaluate()

    def _drop_results(self) -> None:
        self.results = None
        self.detected = []
        self.misaligned = []

    def _reevaluate(self) -> None:
        if self.enabled_count >= self.solver.min_measurements:
            self.evaluate()
        else:
            with self._lock:
                self._drop_results()
                self.retake_index = None
                self._update_phase()
            self.changed.emit()

    # ── Packet input ─────────────────────────────────────────────────────────

    def on_sensor_packet(self, packet: SensorPacket) -> None:
        if packet.kind is PacketType.CALIBRATION_ACCEL:
            logger.debug("G packet #%d (%d, %d, %d)", packet.number, packet.x, packet.y, packet.z)
            self._pending_accel = packet
            return

        logger.debug("M packet #%d (%d, %d, %d)", packet.number, packet.x, packet.y, packet.z)
        accel, self._pending_accel = self._pending_accel, None
        if accel is None:
            logger.warning("M packet #%d without preceding G packet", packet.number)
            return
        if accel.number != packet.number:
            logger.warning("G/M measurement number mismatch (%d != %d), dropped",
                           accel.number, packet.number)
            return
        self._place(accel, packet)
        self._reevaluate()

    def _place(self, g: SensorPacket, m: SensorPacket) -> None:
        with self._lock:
            if self.retake_index is not None:
                pos, mode = self.retake_index, "replaced"
                index = self.measurements[pos].index
            else:
                if self.insert_position is not None:
                    pos, mode = self.insert_position, "inserted"
                else:
                    pos, mode = len(self.measurements), "added"
                target = self.suggested_position()
                if target is not None:
                    index = target.slot_index + 1
                else:
                    index = max((x.index for x in self.measurements), default=0) + 1

            measurement = CalibrationMeasurement(
                gx=g.x, gy=g.y, gz=g.z, mx=m.x, my=m.y, mz=m.z,
                index=index, enabled=True, group=default_group(index))

            if mode == "replaced":
                self.measurements[pos] = measurement
                self.retake_index = None
            elif mode == "inserted":
                self.measurements.insert(pos, measurement)
                self.insert_position = None
            else:
                self.measurements.append(measurement)
        logger.info("Calibration measurement %s at position %d (slot %d)", mode, pos, index - 1)
        self.changed.emit()


    # ── Solving ──────────────────────────────────────────────────────────────

    def evaluate(self) -> Optional[CalibrationOutput]:
        """Solve, then refresh diagnostics, retake index and phase."""
        if not self.measurements:
            self._fail("No measurements to evaluate")
            return None

        previous = self.state
        self.state = CalibrationState.COMPUTING
        self.last_error = None
        self.changed.emit()

        with self._lock:
            measurements = list(self.measurements)
        try:
            out = self.solver.compute(measurements)
        except InsufficientData as e:
            self._fail(str(e))
            return None
        finally:
            self.state = previous

        with self._lock:
            self.coefficients = out.coefficients
            self.rms_error = out.rms_error
            self.iterations = out.iterations
            it = iter(out.results)
            self.results = [next(it) if m.enabled else None for m in measurements]
            self._validate(measurements)
            self._update_phase()
        logger.info("Calibration phase %s (rms %.3f°, %d iterations)",
                    self.phase.value, out.rms_error, out.iterations)
        self.changed.emit()
        return out

    def _validate(self, measurements: List[CalibrationMeasurement]) -> None:
        self.reference_bearing = reference_bearing(
            None if r is None else (r.azimuth, r.inclination) for r in self.results)

        self.detected = []
        self.misaligned = []
        for m, r in zip(measurements, self.results):
            match = None
            if r is not None and self.reference_bearing is not None:
                match = find_closest(r.azimuth, r.inclination, r.roll,
                                     reference_bearing=self.reference_bearing)
            self.detected.append(match)
            self.misaligned.append(match is not None and m.group is not None
                                   and match.position.group_id != m.group)

        self.retake_index = None
        if len(self.filled_slots()) >= N_POSITIONS:
            bad = [i for i, m in enumerate(measurements) if m.enabled and self.is_bad(i)]
            misaligned = [i for i in bad if self.misaligned[i]]
            if misaligned:
                self.retake_index = misaligned[0]
            elif bad:
                self.retake_index = max(bad, key=lambda i: self.results[i].error)
            if self.retake_index is not None:
                logger.info("Next measurement will replace position %d", self.retake_index)

    def is_bad(self, i: int) -> bool:
        """Error at or above threshold, or detected in another direction."""
        if self.results is None or i >= len(self.results) or self.results[i] is None:
            return False
        return self.results[i].error >= self.error_threshold or self.misaligned[i]

    def _update_phase(self) -> None:
        if self.coefficients is None or self.enabled_count < self.solver.min_measurements:
            self.phase = CalibrationPhase.COLLECTING_INITIAL
        elif len(self.filled_slots()) < N_POSITIONS:
            self.phase = CalibrationPhase.COLLECTING_GUIDED
        elif any(self.is_bad(i) for i in range(len(self.measurements))):
            self.phase = CalibrationPhase.CORRECTING
        else:
            self.phase = CalibrationPhase.COMPLETE

    # ── Device memory ────────────────────────────────────────────────────────

    def on_memory_reply(self, reply: MemoryReply) -> None:
        exchange = self._exchange
        if exchange is None:
            logger.debug("Unsolicited memory reply at 0x%04x", reply.address)
            return
        exchange.on_reply(reply)

    def _exchange_memory(self, reading: bool, payload: bytes = b"") -> concurrent.futures.Future:
        exchange = _MemoryExchange(reading)
        self._exchange = exchange
        for i in range(N_MEMORY_OPS):
            address = MEMORY_BASE + i * MEM_DATA_LEN
            if reading:
                cmd = build_read_memory(address)
            else:
                cmd = build_write_memory(address, payload[i * MEM_DATA_LEN:(i + 1) * MEM_DATA_LEN])
            self.connection.send_command(cmd)
            self._sleep(self.op_delay)
        return exchange.future

    def write_coefficients(self) -> bool:
        """
        Write the solved coefficients to the device.

        A missing confirmation is only a warning (``last_warning``); the
        write has most likely taken effect.
        """
        if self.coefficients is None:
            self._fail("No coefficients to write")
            return False
        if not self.is_connected:
            self._fail("Not connected to DistoX")
            return False

        with self._memory_lock:
            self.state = CalibrationState.WRITING
            self.last_error = None
            self.last_warning = None
            self.changed.emit()
            try:
                future = self._exchange_memory(False, self.coefficients.to_bytes())
                future.result(timeout=self.memory_timeout)
            except concurrent.futures.TimeoutError:
                self.last_warning = "Write confirmation timeout (may still have succeeded)"
                logger.warning(self.last_warning)
            except TransportError as e:
                self.state = CalibrationState.IDLE
                self._exchange = None
                self._fail(f"Failed to write coefficients: {e}")
                return False
            self._exchange = None
            self.state = CalibrationState.IDLE
        logger.info("Calibration coefficients written to device")
        self.changed.emit()
        return True

    def read_coefficients(self) -> Optional[CalibrationCoefficients]:
        """
        Read the coefficients currently stored on the device.

        Returns None when not connected or a send fails.  Raises
        :class:`MemoryExchangeTimeout` if the 12 replies do not arrive.
        """
        if not self.is_connected:
            self._fail("Not connected to DistoX")
            return None

        with self._memory_lock:
            self.state = CalibrationState.READING
            self.last_error = None
            self.changed.emit()
            try:
                future = self._exchange_memory(True)
                data = future.result(timeout=self.memory_timeout)
            except concurrent.futures.TimeoutError as e:
                self.state = CalibrationState.IDLE
                self._exchange = None
                self._fail("Timed out reading coefficients")
                raise MemoryExchangeTimeout("Timed out reading coefficients") from e
            except TransportError as e:
                self.state = CalibrationState.IDLE
                self._exchange = None
                self._fail(f"Failed to read coefficients: {e}")
                return None
            self._exchange = None
            self.state = CalibrationState.IDLE
        coeff = CalibrationCoefficients.from_bytes(data)
        logger.info("Read calibration coefficients from device")
        self.changed.emit()
        return coeff

    # ── Persistence ──────────────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {"measurements": [m.to_dict() for m in self.measurements]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any], connection, **kwargs) -> "CalibrationSession":
        session = cls(connection, **kwargs)
        session.measurements = [CalibrationMeasurement.from_dict(d)
                                for d in data.get("measurements", [])]
        session._reevaluate()
        return session
