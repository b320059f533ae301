#!/usr/bin/env python3
"""
smart_shot.py — Splay / survey-shot classification ("smart mode").

Every measurement is surfaced as a splay the moment it arrives.  The last
three measurements are kept in a window; when all three agree within

  * 5 cm in distance, and
  * 1.7° in direction (angle between unit vectors),

they are additionally emitted as one averaged survey shot and the window is
cleared, so triples never overlap.  Directions are averaged as vectors, which
takes care of the 0°/360° azimuth wraparound.
"""

from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from itertools import combinations
from typing import Deque, List, Tuple

import numpy as np

from .events import Event

MAX_DISTANCE_DIFF = 0.05   # m
MAX_ANGLE_DIFF    = 1.7    # deg
WINDOW            = 3


@dataclass(frozen=True)
class RawMeasurement:
    distance: float            # m
    azimuth: float             # deg
    inclination: float         # deg
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def direction(self) -> np.ndarray:
        """Unit vector [east, north, up]."""
        return direction_vector(self.azimuth, self.inclination)


class ShotType(str, Enum):
    SPLAY = "splay"
    SURVEY_SHOT = "surveyShot"


@dataclass(frozen=True)
class DetectedShot:
    type: ShotType
    distance: float
    azimuth: float
    inclination: float
    raw_measurements: Tuple[RawMeasurement, ...]


def direction_vector(azimuth: float, inclination: float) -> np.ndarray:
    az = math.radians(azimuth)
    inc = math.radians(inclination)
    h = math.cos(inc)
    return np.array([h * math.sin(az), h * math.cos(az), math.sin(inc)])


def angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Angle between two unit vectors (deg)."""
    return math.degrees(math.acos(float(np.clip(np.dot(a, b), -1.0, 1.0))))


def vector_to_angles(v: np.ndarray) -> Tuple[float, float]:
    """[east, north, up] → (azimuth in [0, 360), inclination) in degrees."""
    v = v / np.linalg.norm(v)
    azimuth = math.degrees(math.atan2(v[0], v[1])) % 360.0
    inclination = math.degrees(math.asin(float(np.clip(v[2], -1.0, 1.0))))
    return azimuth, inclination


def is_triple(a: RawMeasurement, b: RawMeasurement, c: RawMeasurement,
              max_distance: float = MAX_DISTANCE_DIFF,
              max_angle: float = MAX_ANGLE_DIFF) -> bool:
    """True if all three pairs agree in distance and direction."""
    trio = (a, b, c)
    for p, q in combinations(trio, 2):
        if abs(p.distance - q.distance) >= max_distance:
            return False
    for p, q in combinations(trio, 2):
        if angle_between(p.direction, q.direction) >= max_angle:
            return False
    return True


def average_shot(measurements: List[RawMeasurement]) -> DetectedShot:
    """Average distance arithmetically, direction as a renormalised vector sum."""
    total = np.sum([m.direction for m in measurements], axis=0)
    azimuth, inclination = vector_to_angles(total)
    distance = sum(m.distance for m in measurements) / len(measurements)
    return DetectedShot(
        type=ShotType.SURVEY_SHOT,
        distance=distance,
        azimuth=azimuth,
        inclination=inclination,
        raw_measurements=tuple(measurements),
    )


class SmartShotDetector:
    """Sliding three-measurement window that spots survey-shot triples."""

    def __init__(self,
                 max_distance: float = MAX_DISTANCE_DIFF,
                 max_angle: float = MAX_ANGLE_DIFF):
        self.max_distance = max_distance
        self.max_angle = max_angle
        self._window: Deque[RawMeasurement] = deque(maxlen=WINDOW)
        self.shot_detected = Event("shot_detected")

    @property
    def pending_count(self) -> int:
        return len(self._window)

    def clear(self) -> None:
        self._window.clear()

    def add_measurement(self, m: RawMeasurement) -> List[DetectedShot]:
        """
        Feed one measurement.

        Returns the shots emitted for it: always the splay, followed by the
        averaged survey shot when *m* completes a triple.
        """
        splay = DetectedShot(
            type=ShotType.SPLAY,
            distance=m.distance,
            azimuth=m.azimuth,
            inclination=m.inclination,
            raw_measurements=(m,),
        )
        shots = [splay]
        self.shot_detected.emit(splay)

        self._window.append(m)
        if len(self._window) == WINDOW and is_triple(*self._window,
                                                     max_distance=self.max_distance,
                                                     max_angle=self.max_angle):
            survey = average_shot(list(self._window))
            self._window.clear()
            shots.append(survey)
            self.shot_detected.emit(survey)
        return shots
