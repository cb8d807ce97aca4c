from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

import numpy as np
from numpy.typing import NDArray

from .field import ConvergenceStructures, FloatArray, IntArray, VectorField2D

# Label of streamlines that did not reach any convergence structure.
NO_LABEL = -1


class Termination(IntEnum):
    """Reason a single-direction integration stopped."""
    NUMERICAL_FAILURE = -1
    REACHED_STRUCTURE = 0
    DOMAIN_BOUNDARY = 1
    MAX_STEPS = 2


@dataclass(slots=True)
class StructureHit:
    """Earliest structure event per step segment.

    t: segment parameter of the event in [0, 1], inf where nothing was hit
    label: id of the structure, NO_LABEL where nothing was hit
    position: closest approach (points) or crossing point (lines)
    distance: residual distance from ``position`` to the structure
    """
    t: FloatArray
    label: IntArray
    position: FloatArray
    distance: FloatArray

    @property
    def hit(self) -> NDArray[np.bool_]:
        return np.isfinite(self.t)


def _cross(a: FloatArray, b: FloatArray) -> FloatArray:
    return a[..., 0] * b[..., 1] - a[..., 1] * b[..., 0]


def _point_segment_distance(x: FloatArray, a: FloatArray, b: FloatArray) -> FloatArray:
    """Distances (m,L) from points x (m,2) to segments a->b (L,2)."""
    e = b - a                                             # (L,2)
    w = x[:, None, :] - a[None, :, :]                     # (m,L,2)
    ee = np.sum(e * e, axis=1)                            # (L,)
    s = np.clip(np.sum(w * e[None, :, :], axis=2) / ee[None, :], 0.0, 1.0)
    r = w - s[..., None] * e[None, :, :]
    return np.sqrt(np.sum(r * r, axis=2))


class Classifier:
    """Assigns convergence structures to streamline steps and endpoints."""

    def __init__(self, structures: ConvergenceStructures, capture_radius: float) -> None:
        if not (np.isfinite(capture_radius) and capture_radius > 0.0):
            raise ValueError("capture_radius must be positive.")
        self._structures = structures
        self._r = float(capture_radius)
        self._r2 = self._r * self._r
        self._points = structures.points
        self._point_ids = structures.point_ids
        self._a = structures.lines[:, 0, :] if len(structures.lines) else np.zeros((0, 2))
        self._b = structures.lines[:, 1, :] if len(structures.lines) else np.zeros((0, 2))
        self._line_ids = structures.line_ids

    @property
    def capture_radius(self) -> float: return self._r

    @property
    def structures(self) -> ConvergenceStructures: return self._structures

    # -------- step segments --------
    def first_hit(self, p0: FloatArray, p1: FloatArray) -> StructureHit:
        """Earliest event along each segment p0->p1 (m,2).

        Entering a point's capture disk counts at the entry parameter; the
        reported position is the closest approach on the segment. Crossing a
        line counts at the crossing parameter with zero residual distance.
        Equal parameters resolve to the lowest index, points before lines.
        """
        m = p0.shape[0]
        d = p1 - p0
        t_best = np.full(m, np.inf)
        label = np.full(m, NO_LABEL, dtype=np.int64)
        pos = p1.copy()
        dist = np.zeros(m, dtype=np.float64)

        if self._points.shape[0] and m:
            q = self._points                                  # (P,2)
            f = p0[:, None, :] - q[None, :, :]                # (m,P,2)
            a = np.sum(d * d, axis=1)[:, None]                # (m,1)
            b = np.sum(f * d[:, None, :], axis=2)             # (m,P) half of the usual b
            c = np.sum(f * f, axis=2) - self._r2              # (m,P)
            disc = b * b - a * c
            with np.errstate(divide="ignore", invalid="ignore"):
                t_in = np.where(c <= 0.0, 0.0, (-b - np.sqrt(np.maximum(disc, 0.0))) / a)
            enters = (c <= 0.0) | ((a > 0.0) & (disc >= 0.0) & (t_in >= 0.0) & (t_in <= 1.0))
            t_in = np.where(enters, t_in, np.inf)

            k = np.argmin(t_in, axis=1)
            rows = np.arange(m)
            t_pt = t_in[rows, k]
            sel = np.isfinite(t_pt)
            if sel.any():
                with np.errstate(divide="ignore", invalid="ignore"):
                    s = np.where(a[:, 0] > 0.0, -b[rows, k] / a[:, 0], 0.0)
                s = np.clip(s, 0.0, 1.0)
                closest = p0 + s[:, None] * d
                t_best = np.where(sel, t_pt, t_best)
                label = np.where(sel, self._point_ids[k], label)
                pos = np.where(sel[:, None], closest, pos)
                r = closest - q[k]
                dist = np.where(sel, np.sqrt(np.sum(r * r, axis=1)), dist)

        if self._a.shape[0] and m:
            e = self._b - self._a                                     # (L,2)
            w = self._a[None, :, :] - p0[:, None, :]                  # (m,L,2)
            denom = _cross(d[:, None, :], e[None, :, :])              # (m,L)
            with np.errstate(divide="ignore", invalid="ignore"):
                t = _cross(w, e[None, :, :]) / denom
                u = _cross(w, d[:, None, :]) / denom
            crosses = (denom != 0.0) & (t >= 0.0) & (t <= 1.0) & (u >= 0.0) & (u <= 1.0)
            t = np.where(crosses, t, np.inf)

            k = np.argmin(t, axis=1)
            rows = np.arange(m)
            t_ln = t[rows, k]
            sel = t_ln < t_best
            if sel.any():
                t_best = np.where(sel, t_ln, t_best)
                label = np.where(sel, self._line_ids[k], label)
                pos = np.where(sel[:, None], p0 + np.where(np.isfinite(t_ln), t_ln, 0.0)[:, None] * d, pos)
                dist = np.where(sel, 0.0, dist)

        return StructureHit(t=t_best, label=label, position=pos, distance=dist)

    # -------- endpoints --------
    def nearest(self, x: FloatArray) -> tuple[IntArray, FloatArray]:
        """Label and distance of the nearest structure to each point (m,2)."""
        m = x.shape[0]
        best = np.full(m, np.inf)
        label = np.full(m, NO_LABEL, dtype=np.int64)
        if m == 0:
            return label, np.zeros(0)
        if self._points.shape[0]:
            r = x[:, None, :] - self._points[None, :, :]
            dp = np.sqrt(np.sum(r * r, axis=2))
            k = np.argmin(dp, axis=1)
            best = dp[np.arange(m), k]
            label = self._point_ids[k].copy()
        if self._a.shape[0]:
            dl = _point_segment_distance(x, self._a, self._b)
            k = np.argmin(dl, axis=1)
            dk = dl[np.arange(m), k]
            closer = dk < best
            best = np.where(closer, dk, best)
            label = np.where(closer, self._line_ids[k], label)
        best = np.where(np.isfinite(best), best, 0.0)
        return label, best

    def classify(
        self,
        end_position: FloatArray,
        termination: NDArray[np.integer],
        field: VectorField2D | None = None,
    ) -> tuple[IntArray, FloatArray, NDArray[np.integer]]:
        """(label, distance, termination) for finished trajectory endpoints.

        Boundary terminations carry NO_LABEL and the distance to the domain
        boundary (zero for particles placed on it). Reached structures carry
        the nearest structure within the capture radius. Everything else is
        labelled by the nearest structure.
        """
        x = np.atleast_2d(np.asarray(end_position, dtype=np.float64))
        reason = np.atleast_1d(np.asarray(termination)).astype(np.int8)
        label, dist = self.nearest(x)

        at_boundary = reason == Termination.DOMAIN_BOUNDARY
        if at_boundary.any():
            bdist = np.zeros(x.shape[0])
            if field is not None:
                lo, hi = field.lower, field.upper
                bdist = np.maximum(np.min(np.concatenate([x - lo, hi - x], axis=1), axis=1), 0.0)
            label = np.where(at_boundary, NO_LABEL, label)
            dist = np.where(at_boundary, bdist, dist)

        return label, dist, reason
