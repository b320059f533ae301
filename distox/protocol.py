#!/usr/bin/env python3
"""
protocol.py — Encode / decode the DistoX binary link protocol.

Device → host frames are always 8 bytes:

  byte 0      [SEQ][D16][TYPE:6]      sequence bit, distance bit 16, packet type
  measurement [DL][DH][AL][AH][IL][IH][ROLL]
  calib G/M   [XL][XH][YL][YH][ZL][ZH][N]          N = measurement number 1..56
  mem reply   [ADL][ADH][D0][D1][D2][D3][--]

Host → device commands are 1..7 bytes (opcode, optional LE address, data).

Every frame the device sends must be acknowledged with ``(seq << 7) | 0x55``
or the device keeps retransmitting it.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional, Tuple, Union

from .errors import FramingError, InvalidArgument


# ── Wire constants ──────────────────────────────────────────────────────────
PKT_LEN      = 8
TYPE_MASK    = 0x3F
ACK_BYTE     = 0x55
ANGLE_SCALE  = 180.0 / 32768.0   # 16-bit angle LSB → degrees
ROLL_SCALE   = 180.0 / 128.0     #  8-bit roll  LSB → degrees
MEM_DATA_LEN = 4

_MEAS   = struct.Struct("<xHHhb")     # dist(lo16), azimuth, inclination, roll
_CALIB  = struct.Struct("<xhhhB")     # x, y, z, measurement number
_MEMREP = struct.Struct("<xH4sx")     # address, 4 data bytes


class PacketType(IntEnum):
    """Packet type carried in the low 6 bits of byte 0."""
    MEASUREMENT       = 0x01
    CALIBRATION_ACCEL = 0x02
    CALIBRATION_MAG   = 0x03
    VECTOR            = 0x04
    MEMORY_REPLY      = 0x38


class Command(IntEnum):
    """Host → device opcodes."""
    STOP_CALIBRATION  = 0x30
    START_CALIBRATION = 0x31
    STOP_SILENT       = 0x32
    START_SILENT      = 0x33
    READ_MEMORY       = 0x38
    WRITE_MEMORY      = 0x39


@dataclass(frozen=True)
class DistoXMeasurement:
    """One decoded survey measurement."""
    distance: float       # m
    azimuth: float        # deg, 0 = north, clockwise
    inclination: float    # deg, positive = up
    roll: float           # deg
    sequence_bit: int

    def __str__(self) -> str:
        return (f"DistoXMeasurement(dist: {self.distance:.2f}m, "
                f"azi: {self.azimuth:.1f}°, incl: {self.inclination:.1f}°)")


@dataclass(frozen=True)
class SensorPacket:
    """Raw accelerometer (G) or magnetometer (M) triad from calibration mode."""
    kind: PacketType      # CALIBRATION_ACCEL or CALIBRATION_MAG
    x: int
    y: int
    z: int
    number: int           # 1-based measurement number, pairs G with M
    sequence_bit: int


@dataclass(frozen=True)
class MemoryReply:
    """Reply to a read- or write-memory command."""
    address: int
    data: bytes           # always 4 bytes


# ── Frame inspection ────────────────────────────────────────────────────────

def classify(frame: bytes) -> Union[PacketType, int]:
    """Return the :class:`PacketType` of *frame*, or the raw type for unknown ones."""
    if not frame:
        raise FramingError("Empty frame")
    raw = frame[0] & TYPE_MASK
    try:
        return PacketType(raw)
    except ValueError:
        return raw


def sequence_bit(frame: bytes) -> int:
    return (frame[0] >> 7) & 0x01


def _check(frame: bytes, *kinds: PacketType) -> None:
    if len(frame) != PKT_LEN:
        raise FramingError(f"Frame must be {PKT_LEN} bytes, got {len(frame)}")
    t = frame[0] & TYPE_MASK
    if t not in kinds:
        raise FramingError(f"Unexpected packet type 0x{t:02x}")


# ── Decoders ────────────────────────────────────────────────────────────────

class DistoXProtocol:
    """
    Stateful measurement decoder.

    The only state is what is needed to drop retransmissions: the last
    sequence bit and the last raw (distance, azimuth, inclination) words.
    Call :meth:`reset` whenever a new link is established.
    """

    def __init__(self) -> None:
        self._last_seq: Optional[int] = None
        self._last_raw: Optional[Tuple[int, int, int]] = None

    def reset(self) -> None:
        self._last_seq = None
        self._last_raw = None

    def decode_measurement(self, frame: bytes) -> Optional[DistoXMeasurement]:
        """
        Decode an 8-byte measurement frame.

        Returns ``None`` when the frame is a retransmission of the previous
        measurement (same sequence bit, identical payload).  The caller must
        still acknowledge it.
        """
        _check(frame, PacketType.MEASUREMENT)
        seq = sequence_bit(frame)
        d_lo, azi_r, inc_r, roll_r = _MEAS.unpack(frame)
        dist_mm = ((frame[0] >> 6) & 0x01) << 16 | d_lo
        raw = (dist_mm, azi_r, inc_r)

        if seq == self._last_seq and raw == self._last_raw:
            return None

        self._last_seq = seq
        self._last_raw = raw
        return DistoXMeasurement(
            distance=dist_mm / 1000.0,
            azimuth=azi_r * ANGLE_SCALE,
            inclination=inc_r * ANGLE_SCALE,
            roll=roll_r * ROLL_SCALE,
            sequence_bit=seq,
        )


def decode_sensor(frame: bytes) -> SensorPacket:
    """Decode a calibration accelerometer or magnetometer frame."""
    _check(frame, PacketType.CALIBRATION_ACCEL, PacketType.CALIBRATION_MAG)
    x, y, z, number = _CALIB.unpack(frame)
    return SensorPacket(kind=PacketType(frame[0] & TYPE_MASK),
                        x=x, y=y, z=z, number=number,
                        sequence_bit=sequence_bit(frame))


def decode_calibration_accel(frame: bytes) -> SensorPacket:
    _check(frame, PacketType.CALIBRATION_ACCEL)
    return decode_sensor(frame)


def decode_calibration_mag(frame: bytes) -> SensorPacket:
    _check(frame, PacketType.CALIBRATION_MAG)
    return decode_sensor(frame)


def decode_memory_reply(frame: bytes) -> MemoryReply:
    _check(frame, PacketType.MEMORY_REPLY)
    address, data = _MEMREP.unpack(frame)
    return MemoryReply(address=address, data=data)


# ── Command builders ────────────────────────────────────────────────────────

def build_ack(seq: int) -> bytes:
    """Acknowledge byte for a frame carrying sequence bit *seq*."""
    return bytes([((seq & 0x01) << 7) | ACK_BYTE])


def build_start_calibration() -> bytes:
    return bytes([Command.START_CALIBRATION])


def build_stop_calibration() -> bytes:
    return bytes([Command.STOP_CALIBRATION])


def build_start_silent() -> bytes:
    return bytes([Command.START_SILENT])


def build_stop_silent() -> bytes:
    return bytes([Command.STOP_SILENT])


def _check_address(address: int) -> None:
    if not 0 <= address <= 0xFFFF:
        raise InvalidArgument(f"Address out of range: 0x{address:x}")


def build_read_memory(address: int) -> bytes:
    """3-byte read command: opcode, address (LE)."""
    _check_address(address)
    return struct.pack("<BH", Command.READ_MEMORY, address)


def build_write_memory(address: int, data: bytes) -> bytes:
    """7-byte write command: opcode, address (LE), 4 data bytes."""
    _check_address(address)
    if len(data) != MEM_DATA_LEN:
        raise InvalidArgument(
            f"Write data must be exactly {MEM_DATA_LEN} bytes, got {len(data)}")
    return struct.pack("<BH", Command.WRITE_MEMORY, address) + bytes(data)


def hexdump(data: bytes) -> str:
    return " ".join(f"{b:02x}" for b in data)
