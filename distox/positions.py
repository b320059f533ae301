#!/usr/bin/env python3
"""
positions.py — The 56 canonical calibration orientations.

14 directions × 4 rolls.  Directions are bearings relative to a reference
bearing (the first roughly horizontal shot) plus an inclination:

    0-3    horizontal    forward, right, back, left
    4-7    up 45°        between adjacent horizontals
    8-11   down 45°      between adjacent horizontals
    12-13  up / down 80°

Roll index r expects a roll of r·90 − 180 degrees.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from .smart_shot import angle_between, direction_vector

N_DIRECTIONS       = 14
N_ROLLS            = 4
N_SLOTS            = N_DIRECTIONS * N_ROLLS
DIRECTION_TOLERANCE = 25.0   # deg
ROLL_TOLERANCE      = 35.0   # deg
HORIZONTAL_LIMIT    = 30.0   # deg, |incl| for the reference shot

RELATIVE_DIRECTIONS: Tuple[Tuple[float, float], ...] = (
    (0.0, 0.0), (90.0, 0.0), (180.0, 0.0), (270.0, 0.0),
    (45.0, 45.0), (135.0, 45.0), (225.0, 45.0), (315.0, 45.0),
    (45.0, -45.0), (135.0, -45.0), (225.0, -45.0), (315.0, -45.0),
    (0.0, 80.0), (0.0, -80.0),
)


@dataclass(frozen=True)
class CalibrationPosition:
    direction: int        # 0..13
    roll_index: int       # 0..3
    bearing: float        # deg, relative to the reference bearing
    inclination: float    # deg

    @property
    def expected_roll(self) -> float:
        return self.roll_index * 90.0 - 180.0

    @property
    def slot_index(self) -> int:
        return self.direction * N_ROLLS + self.roll_index

    @property
    def group_id(self) -> str:
        return str(self.direction)

    def __str__(self) -> str:
        return (f"Position(dir={self.direction}, roll={self.roll_index}, "
                f"bearing={self.bearing:.0f}°, incl={self.inclination:.0f}°)")


@dataclass(frozen=True)
class PositionMatch:
    position: CalibrationPosition
    direction_error: float    # deg
    roll_error: float         # deg


def _position(direction: int, roll_index: int) -> CalibrationPosition:
    bearing, inclination = RELATIVE_DIRECTIONS[direction]
    return CalibrationPosition(direction, roll_index, bearing, inclination)


def all_positions() -> List[CalibrationPosition]:
    return [_position(d, r) for d in range(N_DIRECTIONS) for r in range(N_ROLLS)]


def for_direction(direction: int) -> List[CalibrationPosition]:
    if not 0 <= direction < N_DIRECTIONS:
        return []
    return [_position(direction, r) for r in range(N_ROLLS)]


def by_slot(slot: int) -> Optional[CalibrationPosition]:
    if not 0 <= slot < N_SLOTS:
        return None
    return _position(slot // N_ROLLS, slot % N_ROLLS)


def angle_diff(a: float, b: float) -> float:
    """a − b wrapped to [-180, 180]."""
    d = (a - b) % 360.0
    return d - 360.0 if d > 180.0 else d


def direction_error(b1: float, i1: float, b2: float, i2: float) -> float:
    """Great-circle angle between two (bearing, inclination) directions."""
    return angle_between(direction_vector(b1, i1), direction_vector(b2, i2))


def find_closest(bearing: float, inclination: float, roll: float,
                 reference_bearing: Optional[float] = None,
                 direction_tolerance: float = DIRECTION_TOLERANCE,
                 roll_tolerance: float = ROLL_TOLERANCE) -> Optional[PositionMatch]:
    """
    Canonical position nearest to a solved (bearing, inclination, roll).

    Returns None when the best direction is further than
    *direction_tolerance* or its best roll further than *roll_tolerance*.
    """
    relative = (bearing - (reference_bearing or 0.0)) % 360.0

    best_dir, best_err = 0, math.inf
    for d, (b, i) in enumerate(RELATIVE_DIRECTIONS):
        err = direction_error(relative, inclination, b, i)
        if err < best_err:
            best_dir, best_err = d, err
    if best_err > direction_tolerance:
        return None

    rolls = [abs(angle_diff(roll, r * 90.0 - 180.0)) for r in range(N_ROLLS)]
    best_roll = min(range(N_ROLLS), key=rolls.__getitem__)
    if rolls[best_roll] > roll_tolerance:
        return None
    return PositionMatch(_position(best_dir, best_roll), best_err, rolls[best_roll])


def reference_bearing(angles: Iterable[Optional[Tuple[float, float]]]) -> Optional[float]:
    """Azimuth of the first (azimuth, inclination) with |inclination| ≤ 30°."""
    for a in angles:
        if a is not None and abs(a[1]) <= HORIZONTAL_LIMIT:
            return a[0]
    return None


def next_position(filled_slots: Iterable[int]) -> Optional[CalibrationPosition]:
    """
    Position to measure next.

    Completes a partially filled direction first (lowest missing roll),
    otherwise starts the first empty direction at roll 0.  None when all
    56 slots are filled.
    """
    filled = set(filled_slots)
    counts = [sum(1 for r in range(N_ROLLS) if d * N_ROLLS + r in filled)
              for d in range(N_DIRECTIONS)]

    for d, n in enumerate(counts):
        if 0 < n < N_ROLLS:
            r = next(r for r in range(N_ROLLS) if d * N_ROLLS + r not in filled)
            return _position(d, r)
    for d, n in enumerate(counts):
        if n == 0:
            return _position(d, 0)
    return None
