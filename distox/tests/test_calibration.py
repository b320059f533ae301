#!/usr/bin/env python3
"""
test_calibration.py -- Calibration data model and the 48-byte coefficient image.

Run:  python3 -m pytest distox/tests/test_calibration.py -v
"""

import struct

import numpy as np
import pytest

from distox.calibration import (
    COEFF_LEN, CalibrationCoefficients, CalibrationMeasurement, compute_angles,
    default_group,
)
from distox.errors import InvalidArgument
from distox.tests.synthetic import device_vectors


def _words(data: bytes):
    return struct.unpack("<24h", data)


# ── Groups ─────────────────────────────────────────────────────────────────

class TestDefaultGroup:
    def test_groups_of_four(self):
        assert default_group(1) == "0"
        assert default_group(4) == "0"
        assert default_group(5) == "1"
        assert default_group(56) == "13"

    def test_out_of_range(self):
        assert default_group(0) is None
        assert default_group(57) is None


# ── Measurement model ──────────────────────────────────────────────────────

class TestMeasurement:
    def test_vectors(self):
        m = CalibrationMeasurement(1, 2, 3, 4, 5, 6, index=1)
        np.testing.assert_array_equal(m.g_vector, [1, 2, 3])
        np.testing.assert_array_equal(m.m_vector, [4, 5, 6])

    def test_dict_round_trip(self):
        m = CalibrationMeasurement(1, -2, 3, -4, 5, -6, index=9, enabled=False, group="2")
        assert CalibrationMeasurement.from_dict(m.to_dict()) == m

    def test_dict_omits_missing_group(self):
        d = CalibrationMeasurement(0, 0, 0, 0, 0, 0, index=1).to_dict()
        assert "group" not in d
        assert CalibrationMeasurement.from_dict(d).enabled is True

    def test_copy(self):
        m = CalibrationMeasurement(0, 0, 0, 0, 0, 0, index=1, group="0")
        c = m.copy(group=None)
        assert c.group is None and m.group == "0"


# ── Coefficient image ──────────────────────────────────────────────────────

class TestCoefficientBytes:
    def test_identity_image(self):
        data = CalibrationCoefficients.identity().to_bytes()
        assert len(data) == COEFF_LEN
        w = _words(data)
        assert w[0] == 0 and w[1] == 16384 and w[2] == 0 and w[3] == 0
        assert w[6] == 16384 and w[11] == 16384
        assert w[12:] == w[:12]

    def test_interleaved_layout(self):
        c = CalibrationCoefficients.identity()
        c.b_g = np.array([0.5, -0.25, 0.125])
        c.a_g[1, 2] = 0.5
        c.b_m = np.array([0.0, 0.0, -0.25])
        w = _words(c.to_bytes())
        assert w[0] == 12000       # bG.x
        assert w[4] == -6000       # bG.y
        assert w[8] == 3000        # bG.z
        assert w[7] == 8192        # aG[1][2]
        assert w[20] == -6000      # bM.z

    def test_clamping(self):
        c = CalibrationCoefficients.identity()
        c.a_m[0, 0] = 3.0
        c.b_g[0] = -2.0
        w = _words(c.to_bytes())
        assert w[13] == 32767
        assert w[0] == -32768

    def test_round_trip_within_quantization(self):
        rng = np.random.default_rng(7)
        c = CalibrationCoefficients(
            a_g=np.eye(3) + rng.uniform(-0.1, 0.1, (3, 3)),
            b_g=rng.uniform(-0.1, 0.1, 3),
            a_m=np.eye(3) + rng.uniform(-0.1, 0.1, (3, 3)),
            b_m=rng.uniform(-0.1, 0.1, 3),
        )
        d = CalibrationCoefficients.from_bytes(c.to_bytes())
        for name in ("a_g", "b_g", "a_m", "b_m"):
            np.testing.assert_allclose(getattr(d, name), getattr(c, name), atol=1e-3)

    def test_from_bytes_ignores_extra(self):
        data = CalibrationCoefficients.identity().to_bytes() + b"\xff\xff"
        np.testing.assert_allclose(CalibrationCoefficients.from_bytes(data).a_g, np.eye(3))

    def test_from_bytes_too_short(self):
        with pytest.raises(InvalidArgument):
            CalibrationCoefficients.from_bytes(bytes(47))


# ── Applying coefficients ──────────────────────────────────────────────────

class TestAngles:
    @pytest.mark.parametrize("az,inc,roll", [
        (30.0, 0.0, 0.0),
        (200.0, 45.0, -90.0),
        (315.0, -45.0, 90.0),
        (10.0, 80.0, 0.0),
    ])
    def test_compute_angles(self, az, inc, roll):
        g, m = device_vectors(az, inc, roll, dip=60.0)
        a, i, r = compute_angles(g * 1.3, m * 0.7)
        assert a == pytest.approx(az, abs=1e-6)
        assert i == pytest.approx(inc, abs=1e-6)
        assert r == pytest.approx(roll, abs=1e-6)

    def test_apply_identity(self):
        m = CalibrationMeasurement(24000, 0, -12000, 0, 6000, 0, index=1)
        g, mm = CalibrationCoefficients.identity().apply(m)
        np.testing.assert_allclose(g, [1.0, 0.0, -0.5])
        np.testing.assert_allclose(mm, [0.0, 0.25, 0.0])
