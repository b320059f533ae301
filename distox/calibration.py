#!/usr/bin/env python3
"""
calibration.py — Calibration data model and the 48-byte coefficient format.

The device corrects each raw sensor triad with

    calibrated = A · raw + B

independently for the accelerometer (G) and magnetometer (M).  Raw values
are handled in full-scale units (counts / 24000), so a well-behaved sensor
has A ≈ I, B ≈ 0 and |calibrated| ≈ 1.

Coefficient memory image (12 int16 LE per triad, G first, then M):

    [B.x][A00][A01][A02] [B.y][A10][A11][A12] [B.z][A20][A21][A22]

with B scaled by 24000 and A by 16384, each value rounded and clamped to
the int16 range.
"""

from __future__ import annotations

import dataclasses
import math
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .errors import InvalidArgument

# ── Fixed-point format ──────────────────────────────────────────────────────
FV = 24000.0          # bias / raw full-scale factor
FM = 16384.0          # matrix element factor
COEFF_LEN = 48
N_POSITIONS = 56
ROLLS_PER_DIRECTION = 4

_TRIAD = struct.Struct("<12h")


def default_group(index: int) -> Optional[str]:
    """Direction group for 1-based *index*: 1-4 → "0", ..., 53-56 → "13"."""
    if index < 1 or index > N_POSITIONS:
        return None
    return str((index - 1) // ROLLS_PER_DIRECTION)


@dataclass
class CalibrationMeasurement:
    """One accelerometer + magnetometer pair in raw sensor counts."""
    gx: int
    gy: int
    gz: int
    mx: int
    my: int
    mz: int
    index: int                     # 1-based position in the working list
    enabled: bool = True
    group: Optional[str] = None    # direction id "0".."13"

    @property
    def g_vector(self) -> np.ndarray:
        return np.array([self.gx, self.gy, self.gz], dtype=float)

    @property
    def m_vector(self) -> np.ndarray:
        return np.array([self.mx, self.my, self.mz], dtype=float)

    def copy(self, **changes) -> "CalibrationMeasurement":
        return dataclasses.replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        d = {"gx": self.gx, "gy": self.gy, "gz": self.gz,
             "mx": self.mx, "my": self.my, "mz": self.mz,
             "index": self.index, "enabled": self.enabled}
        if self.group is not None:
            d["group"] = self.group
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CalibrationMeasurement":
        return cls(gx=int(d["gx"]), gy=int(d["gy"]), gz=int(d["gz"]),
                   mx=int(d["mx"]), my=int(d["my"]), mz=int(d["mz"]),
                   index=int(d["index"]),
                   enabled=bool(d.get("enabled", True)),
                   group=d.get("group"))

    def __str__(self) -> str:
        return (f"CalibrationMeasurement(#{self.index}, "
                f"G=({self.gx},{self.gy},{self.gz}), M=({self.mx},{self.my},{self.mz}), "
                f"enabled={self.enabled}, group={self.group})")


@dataclass(frozen=True)
class CalibrationResult:
    """Diagnostics for one measurement after applying the solved transform."""
    error: float          # deg, deviation from its group consensus
    g_magnitude: float    # ≈ 1
    m_magnitude: float    # ≈ 1
    alpha: float          # deg, angle between G and M
    azimuth: float        # deg
    inclination: float    # deg
    roll: float           # deg

    def __str__(self) -> str:
        return (f"CalibrationResult(err={self.error:.2f}°, |G|={self.g_magnitude:.3f}, "
                f"|M|={self.m_magnitude:.3f}, alpha={self.alpha:.1f}°)")


def _to_int16(value: float) -> int:
    return max(-32768, min(32767, int(round(value))))


def _pack_triad(a: np.ndarray, b: np.ndarray) -> bytes:
    values = []
    for row in range(3):
        values.append(_to_int16(b[row] * FV))
        values.extend(_to_int16(a[row, col] * FM) for col in range(3))
    return _TRIAD.pack(*values)


def _unpack_triad(data: bytes) -> Tuple[np.ndarray, np.ndarray]:
    v = _TRIAD.unpack(data)
    a = np.empty((3, 3))
    b = np.empty(3)
    for row in range(3):
        b[row] = v[row * 4] / FV
        a[row] = [x / FM for x in v[row * 4 + 1:row * 4 + 4]]
    return a, b


def compute_angles(g: np.ndarray, m: np.ndarray) -> Tuple[float, float, float]:
    """
    (azimuth, inclination, roll) in degrees from calibrated G and M.

    The laser points along device +Z.  Inclination is the elevation of +Z,
    azimuth the bearing of +Z measured from the horizontal component of M,
    roll the rotation about +Z (0° when the device X axis points up).
    """
    gn = g / np.linalg.norm(g)
    mn = m / np.linalg.norm(m)

    inclination = math.degrees(math.asin(float(np.clip(-gn[2], -1.0, 1.0))))

    north = mn - gn * float(np.dot(mn, gn))
    north /= np.linalg.norm(north)
    east = np.cross(gn, north)
    azimuth = math.degrees(math.atan2(east[2], north[2])) % 360.0

    roll = math.degrees(math.atan2(gn[1], -gn[0]))
    return azimuth, inclination, roll


def angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Angle between two (not necessarily unit) vectors in degrees."""
    c = float(np.dot(a, b)) / (np.linalg.norm(a) * np.linalg.norm(b))
    return math.degrees(math.acos(max(-1.0, min(1.0, c))))


@dataclass
class CalibrationCoefficients:
    """Two 3×3 matrices + two bias vectors, plus optional non-linear term."""
    a_g: np.ndarray = field(default_factory=lambda: np.eye(3))
    b_g: np.ndarray = field(default_factory=lambda: np.zeros(3))
    a_m: np.ndarray = field(default_factory=lambda: np.eye(3))
    b_m: np.ndarray = field(default_factory=lambda: np.zeros(3))
    nl: Optional[np.ndarray] = None     # not part of the 48-byte image

    @classmethod
    def identity(cls) -> "CalibrationCoefficients":
        return cls()

    # ── Binary format ────────────────────────────────────────────────────────

    def to_bytes(self) -> bytes:
        return _pack_triad(self.a_g, self.b_g) + _pack_triad(self.a_m, self.b_m)

    @classmethod
    def from_bytes(cls, data: bytes) -> "CalibrationCoefficients":
        if len(data) < COEFF_LEN:
            raise InvalidArgument(
                f"Need at least {COEFF_LEN} bytes for coefficients, got {len(data)}")
        a_g, b_g = _unpack_triad(bytes(data[:24]))
        a_m, b_m = _unpack_triad(bytes(data[24:48]))
        return cls(a_g=a_g, b_g=b_g, a_m=a_m, b_m=b_m)

    # ── Application ──────────────────────────────────────────────────────────

    def apply(self, m: CalibrationMeasurement) -> Tuple[np.ndarray, np.ndarray]:
        """Calibrated (G, M) for a raw measurement."""
        g = self.a_g @ (m.g_vector / FV) + self.b_g
        mm = self.a_m @ (m.m_vector / FV) + self.b_m
        return g, mm

    def angles(self, m: CalibrationMeasurement) -> Tuple[float, float, float]:
        return compute_angles(*self.apply(m))

    def summary(self) -> str:
        def rows(a, b):
            return "\n".join(
                f"    [{a[i, 0]:+.4f} {a[i, 1]:+.4f} {a[i, 2]:+.4f}]  {b[i]:+.4f}"
                for i in range(3))
        return (
            f"Calibration coefficients\n"
            f"  G (A | B):\n{rows(self.a_g, self.b_g)}\n"
            f"  M (A | B):\n{rows(self.a_m, self.b_m)}\n"
        )


@dataclass
class CalibrationOutput:
    """Solver output: coefficients, per-measurement diagnostics and fit quality."""
    coefficients: CalibrationCoefficients
    results: List[CalibrationResult]     # one per enabled measurement, input order
    rms_error: float                     # deg
    iterations: int
    dip: float = 0.0                     # deg, estimated magnetic dip

    def summary(self) -> str:
        worst = max((r.error for r in self.results), default=0.0)
        return (
            f"Calibration ({len(self.results)} measurements, "
            f"{self.iterations} iterations)\n"
            f"  RMS error : {self.rms_error:.3f}°\n"
            f"  Max error : {worst:.3f}°\n"
            f"  Dip       : {self.dip:.2f}°\n"
        ) + self.coefficients.summary()
