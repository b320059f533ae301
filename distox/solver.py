#!/usr/bin/env python3
"""
solver.py -- Iterative least-squares sensor calibration (Beat Heeb's method).

Model, per triad (G = accelerometer, M = magnetometer):

    calibrated = A · raw + B        raw in full-scale units (counts / 24000)

The only geometric knowledge used is:

  * **Groups** -- measurements sharing a ``group`` id were taken in the same
    laser direction and differ only by a rotation about the laser axis
    (device +Z).  Their calibrated G and M must agree after undoing that roll.

  * **Dip** -- the angle between G and M is the same for every measurement.

Each iteration:

  1. Transform and normalise all grouped vectors with the current (A, B).
  2. Estimate the G-M angle from sa = sum |g x m|, ca = sum g . m.
  3. Per group, roll every member onto the first one, sum, and replace the
     sum by the closest G/M pair that honours the G-M angle (consensus).
  4. Roll the consensus back into each member's orientation (targets).
  5. Least-squares fit raw -> target for each triad using moments of the
     raw data; the raw covariance inverse is computed once up front.
  6. Force A_G[1,2] == A_G[2,1].

Iteration stops when no element of A_G or A_M changed by more than
``eps`` or after ``max_iterations``.  Ungrouped measurements do not steer
the fit; they are only diagnosed.
"""

from __future__ import annotations

import logging
import math
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from .calibration import (
    FV, CalibrationCoefficients, CalibrationMeasurement, CalibrationOutput,
    CalibrationResult, angle_between, compute_angles,
)
from .errors import InsufficientData, SingularMatrix
from .smart_shot import direction_vector

logger = logging.getLogger(__name__)

# ── Tunables ─────────────────────────────────────────────────────────────────
MAX_ITERATIONS   = 200
CONVERGENCE_EPS  = 1e-6
MIN_MEASUREMENTS = 16
SINGULAR_COND    = 1e12


# ── Vector helpers ───────────────────────────────────────────────────────────

def _normalize(v: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(v)
    return v / n if n > 1e-12 else v


def _normalize_rows(v: np.ndarray) -> np.ndarray:
    n = np.linalg.norm(v, axis=1, keepdims=True)
    return v / np.where(n > 1e-12, n, 1.0)


def _turn_z(v: np.ndarray, s: float, c: float) -> np.ndarray:
    """Rotate *v* about +Z by the angle with sine *s* and cosine *c*."""
    return np.array([c * v[0] - s * v[1], s * v[0] + c * v[1], v[2]])


def _turn_angle(g_ref: np.ndarray, m_ref: np.ndarray,
                g: np.ndarray, m: np.ndarray) -> Tuple[float, float]:
    """(sin, cos) of the Z rotation that best maps (g, m) onto (g_ref, m_ref)."""
    s = (g_ref[1] * g[0] - g_ref[0] * g[1]) + (m_ref[1] * m[0] - m_ref[0] * m[1])
    c = (g_ref[0] * g[0] + g_ref[1] * g[1]) + (m_ref[0] * m[0] + m_ref[1] * m[1])
    d = math.hypot(s, c)
    if d < 1e-12:
        return 0.0, 1.0
    return s / d, c / d


def _opt_vectors(gr: np.ndarray, mr: np.ndarray,
                 s: float, c: float) -> Tuple[np.ndarray, np.ndarray]:
    """Unit G/M pair closest to (gr, mr) whose mutual angle has sine s, cosine c."""
    no = _normalize(np.cross(gr, mr))
    gx = _normalize(mr * c + np.cross(mr, no) * s + gr)
    mx = gx * c + np.cross(no, gx) * s
    return gx, mx


def _dip(g: np.ndarray, m: np.ndarray) -> Tuple[float, float]:
    """Normalised (sin, cos) of the mean G-M angle over unit vectors."""
    sa = float(np.linalg.norm(np.cross(g, m), axis=1).sum())
    ca = float(np.einsum("ij,ij->i", g, m).sum())
    d = math.hypot(sa, ca)
    if d < 1e-12:
        return 1.0, 0.0
    return sa / d, ca / d


def _laser_error(g: np.ndarray, m: np.ndarray,
                 tg: np.ndarray, tm: np.ndarray) -> float:
    """Angle (deg) between the shot directions implied by two G/M pairs."""
    az1, inc1, _ = compute_angles(g, m)
    az2, inc2, _ = compute_angles(tg, tm)
    return angle_between(direction_vector(az1, inc1), direction_vector(az2, inc2))


# ── Solver ───────────────────────────────────────────────────────────────────

class CalibrationSolver:
    """
    Stateless solver; one instance can be reused across sessions and threads.

    Parameters
    ----------
    max_iterations : int
        Hard iteration cap.
    eps : float
        Convergence threshold on the largest change of any A_G / A_M element.
    min_measurements : int
        Minimum number of enabled measurements.
    """

    def __init__(self,
                 max_iterations: int = MAX_ITERATIONS,
                 eps: float = CONVERGENCE_EPS,
                 min_measurements: int = MIN_MEASUREMENTS):
        self.max_iterations = max_iterations
        self.eps = eps
        self.min_measurements = min_measurements

    # ── Public interface ─────────────────────────────────────────────────────

    def compute(self, measurements: Sequence[CalibrationMeasurement]) -> CalibrationOutput:
        """
        Solve coefficients from the enabled entries of *measurements*.

        Raises :class:`InsufficientData` with fewer than ``min_measurements``
        enabled entries.  Results are returned for enabled entries only, in
        input order.
        """
        data = [m for m in measurements if m.enabled]
        if len(data) < self.min_measurements:
            raise InsufficientData(len(data), self.min_measurements)

        raw_g = np.array([m.g_vector for m in data]) / FV
        raw_m = np.array([m.m_vector for m in data]) / FV
        groups = self._partition(data)
        grouped = [i for members in groups.values() for i in members]

        a_g, b_g = np.eye(3), np.zeros(3)
        a_m, b_m = np.eye(3), np.zeros(3)
        inv_g = self._inverse_cov(raw_g[grouped], "G")
        inv_m = self._inverse_cov(raw_m[grouped], "M")

        iterations = 0
        if grouped and (inv_g is not None or inv_m is not None):
            for iterations in range(1, self.max_iterations + 1):
                g = _normalize_rows(raw_g @ a_g.T + b_g)
                m = _normalize_rows(raw_m @ a_m.T + b_m)
                s, c = _dip(g[grouped], m[grouped])
                tg, tm = self._targets(g, m, groups, s, c)

                new_a_g, new_b_g = a_g, b_g
                if inv_g is not None:
                    new_a_g, new_b_g = self._fit(raw_g[grouped], tg[grouped], inv_g,
                                                 symmetric=True)
                new_a_m, new_b_m = a_m, b_m
                if inv_m is not None:
                    new_a_m, new_b_m = self._fit(raw_m[grouped], tm[grouped], inv_m)

                delta = max(float(np.abs(new_a_g - a_g).max()),
                            float(np.abs(new_a_m - a_m).max()))
                a_g, b_g, a_m, b_m = new_a_g, new_b_g, new_a_m, new_b_m
                if delta < self.eps:
                    break
            else:
                logger.warning("Calibration did not converge in %d iterations",
                               self.max_iterations)

        coeff = CalibrationCoefficients(a_g=a_g, b_g=b_g, a_m=a_m, b_m=b_m)
        results, dip = self._results(raw_g, raw_m, coeff, groups, grouped)
        rms = math.sqrt(sum(r.error ** 2 for r in results) / len(results))
        logger.info("Calibration solved: rms %.3f° after %d iterations (%d measurements)",
                    rms, iterations, len(data))
        return CalibrationOutput(coefficients=coeff, results=results,
                                 rms_error=rms, iterations=iterations, dip=dip)

    # ── Grouping ─────────────────────────────────────────────────────────────

    @staticmethod
    def _partition(data: List[CalibrationMeasurement]) -> Dict[str, List[int]]:
        groups: Dict[str, List[int]] = OrderedDict()
        for i, m in enumerate(data):
            if m.group is not None:
                groups.setdefault(m.group, []).append(i)
        return groups

    @staticmethod
    def _targets(g: np.ndarray, m: np.ndarray, groups: Dict[str, List[int]],
                 s: float, c: float) -> Tuple[np.ndarray, np.ndarray]:
        """Per-measurement consensus G/M targets for all grouped rows."""
        tg = np.zeros_like(g)
        tm = np.zeros_like(m)
        for members in groups.values():
            first = members[0]
            turns = {}
            g_sum = np.zeros(3)
            m_sum = np.zeros(3)
            for j in members:
                sj, cj = _turn_angle(g[first], m[first], g[j], m[j])
                turns[j] = (sj, cj)
                g_sum += _turn_z(g[j], sj, cj)
                m_sum += _turn_z(m[j], sj, cj)
            gx, mx = _opt_vectors(g_sum, m_sum, s, c)
            for j in members:
                sj, cj = turns[j]
                tg[j] = _turn_z(gx, -sj, cj)
                tm[j] = _turn_z(mx, -sj, cj)
        return tg, tm

    # ── Least squares ────────────────────────────────────────────────────────

    @staticmethod
    def _covariance_inverse(raw: np.ndarray) -> np.ndarray:
        sum_r = raw.sum(axis=0)
        cov = raw.T @ raw - np.outer(sum_r, sum_r / len(raw))
        cond = np.linalg.cond(cov) if np.all(np.isfinite(cov)) else np.inf
        if not np.isfinite(cond) or cond > SINGULAR_COND:
            raise SingularMatrix("Raw covariance matrix is singular")
        return np.linalg.inv(cov)

    def _inverse_cov(self, raw: np.ndarray, name: str) -> Optional[np.ndarray]:
        if len(raw) == 0:
            logger.warning("No grouped %s measurements, using identity transform", name)
            return None
        try:
            return self._covariance_inverse(raw)
        except (SingularMatrix, np.linalg.LinAlgError) as e:
            logger.warning("%s: %s, using identity transform", name, e)
            return None

    @staticmethod
    def _fit(raw: np.ndarray, target: np.ndarray, inv_cov: np.ndarray,
             symmetric: bool = False) -> Tuple[np.ndarray, np.ndarray]:
        sum_r = raw.sum(axis=0)
        avg_r = sum_r / len(raw)
        avg_t = target.mean(axis=0)
        a = (target.T @ raw - np.outer(avg_t, sum_r)) @ inv_cov
        if symmetric:
            a[1, 2] = a[2, 1] = 0.5 * (a[1, 2] + a[2, 1])
        b = avg_t - a @ avg_r
        return a, b

    # ── Diagnostics ──────────────────────────────────────────────────────────

    def _results(self, raw_g: np.ndarray, raw_m: np.ndarray,
                 coeff: CalibrationCoefficients, groups: Dict[str, List[int]],
                 grouped: List[int]) -> Tuple[List[CalibrationResult], float]:
        g_cal = raw_g @ coeff.a_g.T + coeff.b_g
        m_cal = raw_m @ coeff.a_m.T + coeff.b_m
        g = _normalize_rows(g_cal)
        m = _normalize_rows(m_cal)

        basis = grouped if grouped else list(range(len(g)))
        s, c = _dip(g[basis], m[basis])
        tg, tm = self._targets(g, m, groups, s, c)
        grouped_set = set(grouped)

        results = []
        for i in range(len(g)):
            if i in grouped_set:
                target = (tg[i], tm[i])
            else:
                target = _opt_vectors(g[i], m[i], s, c)
            azimuth, inclination, roll = compute_angles(g_cal[i], m_cal[i])
            results.append(CalibrationResult(
                error=_laser_error(g[i], m[i], *target),
                g_magnitude=float(np.linalg.norm(g_cal[i])),
                m_magnitude=float(np.linalg.norm(m_cal[i])),
                alpha=angle_between(g_cal[i], m_cal[i]),
                azimuth=azimuth,
                inclination=inclination,
                roll=roll,
            ))
        dip = 90.0 - math.degrees(math.atan2(s, c))
        return results, dip
