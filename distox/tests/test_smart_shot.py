#!/usr/bin/env python3
"""
test_smart_shot.py -- Splay / survey-shot triple detection.

Run:  python3 -m pytest distox/tests/test_smart_shot.py -v
"""

import math

import numpy as np
import pytest

from distox.smart_shot import (
    RawMeasurement, ShotType, SmartShotDetector, angle_between, average_shot,
    direction_vector, is_triple, vector_to_angles,
)


def _m(distance, azimuth=45.0, inclination=5.0) -> RawMeasurement:
    return RawMeasurement(distance=distance, azimuth=azimuth, inclination=inclination)


def _wrap_diff(a: float, b: float) -> float:
    d = abs(a - b) % 360.0
    return min(d, 360.0 - d)


# ── Geometry ───────────────────────────────────────────────────────────────

class TestGeometry:
    def test_direction_vector_axes(self):
        np.testing.assert_allclose(direction_vector(0, 0), [0, 1, 0], atol=1e-12)
        np.testing.assert_allclose(direction_vector(90, 0), [1, 0, 0], atol=1e-12)
        np.testing.assert_allclose(direction_vector(0, 90), [0, 0, 1], atol=1e-12)

    def test_vector_to_angles_inverse(self):
        az, inc = vector_to_angles(direction_vector(250.0, -30.0) * 3.0)
        assert az == pytest.approx(250.0)
        assert inc == pytest.approx(-30.0)

    def test_angle_between(self):
        assert angle_between(direction_vector(0, 0), direction_vector(90, 0)) == pytest.approx(90.0)
        assert angle_between(direction_vector(10, 0), direction_vector(10, 0)) == pytest.approx(0.0, abs=1e-6)


# ── Triple predicate ───────────────────────────────────────────────────────

class TestIsTriple:
    def test_matching(self):
        assert is_triple(_m(10.00), _m(10.02), _m(10.04))

    def test_distance_outlier(self):
        assert not is_triple(_m(10.00), _m(10.02), _m(10.06))

    def test_direction_outlier(self):
        assert not is_triple(_m(10.0), _m(10.0, azimuth=45.5), _m(10.0, azimuth=47.0))

    def test_inclination_outlier(self):
        assert not is_triple(_m(10.0), _m(10.0), _m(10.0, inclination=7.0))

    def test_azimuth_wraparound(self):
        assert is_triple(_m(5.0, azimuth=359.5), _m(5.0, azimuth=0.3), _m(5.0, azimuth=0.8))


class TestAverageShot:
    def test_average(self):
        shot = average_shot([_m(10.00), _m(10.02), _m(10.04)])
        assert shot.type is ShotType.SURVEY_SHOT
        assert shot.distance == pytest.approx(10.02)
        assert shot.azimuth == pytest.approx(45.0)
        assert shot.inclination == pytest.approx(5.0)
        assert len(shot.raw_measurements) == 3

    def test_wraparound_average(self):
        shot = average_shot([_m(5.0, 359.5, 0.0), _m(5.0, 0.3, 0.0), _m(5.0, 0.8, 0.0)])
        assert _wrap_diff(shot.azimuth, 0.2) < 0.01
        assert 0.0 <= shot.azimuth < 360.0


# ── Detector ───────────────────────────────────────────────────────────────

class TestDetector:
    def test_every_measurement_is_a_splay(self):
        det = SmartShotDetector()
        shots = det.add_measurement(_m(3.0))
        assert [s.type for s in shots] == [ShotType.SPLAY]
        assert shots[0].distance == 3.0
        assert det.pending_count == 1

    def test_triple_emits_survey_shot(self):
        det = SmartShotDetector()
        det.add_measurement(_m(10.00))
        det.add_measurement(_m(10.02))
        shots = det.add_measurement(_m(10.04))
        assert [s.type for s in shots] == [ShotType.SPLAY, ShotType.SURVEY_SHOT]
        assert shots[1].distance == pytest.approx(10.02)
        assert det.pending_count == 0

    def test_outlier_never_gives_survey_shot(self):
        det = SmartShotDetector()
        types = []
        for d in (10.00, 10.02, 10.06):
            types += [s.type for s in det.add_measurement(_m(d))]
        assert ShotType.SURVEY_SHOT not in types

    def test_sliding_window(self):
        det = SmartShotDetector()
        det.add_measurement(_m(2.0, azimuth=180.0))     # unrelated splay
        det.add_measurement(_m(10.00))
        det.add_measurement(_m(10.01))
        shots = det.add_measurement(_m(10.02))
        assert shots[-1].type is ShotType.SURVEY_SHOT
        assert shots[-1].distance == pytest.approx(10.01)

    def test_triples_do_not_overlap(self):
        det = SmartShotDetector()
        surveys = 0
        for _ in range(5):
            surveys += sum(s.type is ShotType.SURVEY_SHOT for s in det.add_measurement(_m(10.0)))
        assert surveys == 1
        assert det.pending_count == 2

    def test_event_order(self):
        det = SmartShotDetector()
        seen = []
        det.shot_detected.connect(lambda s: seen.append(s.type))
        for d in (10.00, 10.01, 10.02):
            det.add_measurement(_m(d))
        assert seen == [ShotType.SPLAY, ShotType.SPLAY, ShotType.SPLAY, ShotType.SURVEY_SHOT]

    def test_clear(self):
        det = SmartShotDetector()
        det.add_measurement(_m(10.0))
        det.add_measurement(_m(10.0))
        det.clear()
        assert det.pending_count == 0
        shots = det.add_measurement(_m(10.0))
        assert len(shots) == 1

    def test_custom_thresholds(self):
        det = SmartShotDetector(max_distance=0.2, max_angle=math.inf)
        det.add_measurement(_m(10.0, azimuth=0.0))
        det.add_measurement(_m(10.1, azimuth=90.0))
        shots = det.add_measurement(_m(10.15, azimuth=180.0))
        assert shots[-1].type is ShotType.SURVEY_SHOT
