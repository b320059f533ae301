#!/usr/bin/env python3
"""
measurement.py — Turns incoming shots into survey legs with station names.

  DistoX measurement ─▶ smart mode? ─yes─▶ SmartShotDetector
                                │              ├─ splay  ─▶ cross_section_ready(leg)
                                │              └─ triple ─▶ triple_replace(3, leg)
                                └─no──▶ stretch_ready(leg) / cross_section_ready(leg)

Survey legs run from ``current_station`` to ``next_station``; after each
one the stations advance (``current = next``, ``next = next + 1``).  With
``ShotDirection.BACKWARD`` the emitted leg has from/to swapped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .config import Settings, ShotDirection
from .events import Event
from .protocol import DistoXMeasurement
from .smart_shot import DetectedShot, RawMeasurement, ShotType, SmartShotDetector

logger = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class Station:
    """Station name ``series.point``."""
    series: int
    point: int

    def next(self) -> "Station":
        return Station(self.series, self.point + 1)

    def __str__(self) -> str:
        return f"{self.series}.{self.point}"


@dataclass(frozen=True)
class Leg:
    """One measured distance; ``to`` is None for a splay / cross-section."""
    from_station: Station
    to_station: Optional[Station]
    distance: float       # m
    azimuth: float        # deg
    inclination: float    # deg

    @property
    def is_splay(self) -> bool:
        return self.to_station is None

    def __str__(self) -> str:
        to = "-" if self.to_station is None else str(self.to_station)
        return (f"{self.from_station!s:>6} {to:>6} {self.distance:8.2f} "
                f"{self.azimuth:7.1f} {self.inclination:+7.1f}")


class MeasurementService:
    """
    Events
    ------
    cross_section_ready(Leg)       splay from the current station
    stretch_ready(Leg)             survey leg (smart mode off)
    triple_replace(int, Leg)       drop the last *n* splays, add survey leg
    """

    def __init__(self, settings: Optional[Settings] = None,
                 detector: Optional[SmartShotDetector] = None,
                 cross_section_detector: Optional[SmartShotDetector] = None):
        self.settings = settings or Settings()
        self._stretch_detector = detector or SmartShotDetector()
        self._cross_detector = cross_section_detector or SmartShotDetector()
        self._current = Station(1, 0)
        self._next = Station(1, 1)

        self.cross_section_ready = Event("cross_section_ready")
        self.stretch_ready = Event("stretch_ready")
        self.triple_replace = Event("triple_replace")

    # ── Stations ─────────────────────────────────────────────────────────────

    @property
    def current_station(self) -> Station:
        return self._current

    @current_station.setter
    def current_station(self, station: Station) -> None:
        if station != self._current:
            self.clear()
            self._current = station

    @property
    def next_station(self) -> Station:
        return self._next

    @next_station.setter
    def next_station(self, station: Station) -> None:
        self._next = station

    def start_new_series(self, station: Station, next_series: int = 1) -> None:
        self.clear()
        self._current = station
        self._next = Station(next_series, 1)

    def continue_from(self, station: Station) -> None:
        self.clear()
        self._current = station
        self._next = station.next()

    # ── Input ────────────────────────────────────────────────────────────────

    def attach(self, connection) -> None:
        """Receive measurements from a :class:`ConnectionManager`."""
        connection.measurement.connect(self.on_distox_measurement)

    def detach(self, connection) -> None:
        connection.measurement.disconnect(self.on_distox_measurement)

    def on_distox_measurement(self, m: DistoXMeasurement) -> None:
        logger.debug("DistoX measurement received: %s", m)
        self.add_measurement(m.distance, m.azimuth, m.inclination, is_stretch=True)

    def add_measurement(self, distance: float, azimuth: float, inclination: float,
                        is_stretch: bool = True,
                        timestamp: Optional[datetime] = None) -> None:
        if not self.settings.smart_mode:
            if is_stretch:
                self._emit_survey(self.stretch_ready, distance, azimuth, inclination)
            else:
                self._emit_splay(distance, azimuth, inclination)
            return

        raw = RawMeasurement(distance, azimuth, inclination, timestamp or datetime.now())
        detector = self._stretch_detector if is_stretch else self._cross_detector
        for shot in detector.add_measurement(raw):
            self._on_shot(shot, is_stretch)

    def _on_shot(self, shot: DetectedShot, is_stretch: bool) -> None:
        if shot.type is ShotType.SPLAY:
            self._emit_splay(shot.distance, shot.azimuth, shot.inclination)
        elif is_stretch:
            self._emit_survey(self.triple_replace, shot.distance, shot.azimuth,
                              shot.inclination, replace=len(shot.raw_measurements))

    # ── Output ───────────────────────────────────────────────────────────────

    def _emit_splay(self, distance: float, azimuth: float, inclination: float) -> None:
        self.cross_section_ready.emit(Leg(self._current, None, distance, azimuth, inclination))

    def _emit_survey(self, event: Event, distance: float, azimuth: float,
                     inclination: float, replace: Optional[int] = None) -> None:
        from_st, to_st = self._current, self._next
        if self.settings.shot_direction is ShotDirection.BACKWARD:
            from_st, to_st = to_st, from_st
        leg = Leg(from_st, to_st, distance, azimuth, inclination)
        logger.info("Survey leg %s", leg)

        self._current = self._next
        self._next = self._next.next()
        if replace is None:
            event.emit(leg)
        else:
            event.emit(replace, leg)

    # ── Pending state ────────────────────────────────────────────────────────

    def clear(self) -> None:
        self._stretch_detector.clear()
        self._cross_detector.clear()

    @property
    def pending_count(self) -> int:
        return self._stretch_detector.pending_count

    @property
    def pending_cross_sections(self) -> int:
        return self._cross_detector.pending_count
