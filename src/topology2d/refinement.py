from __future__ import annotations

import logging

import numpy as np
from numpy.typing import NDArray
from scipy.spatial import Delaunay, QhullError

from .field import FloatArray, IntArray

logger = logging.getLogger(__name__)


class MeshRefiner:
    """Delaunay triangulation of the finalised nodes, grown by incremental insertion.

    Vertex ``i`` of the triangulation is the ``i``-th inserted node. Until
    three non-collinear nodes exist the nodes are only buffered and the
    triangle list is empty.
    """

    def __init__(self, positions: FloatArray | None = None) -> None:
        self._points: FloatArray = np.zeros((0, 2), dtype=np.float64)
        self._tri: Delaunay | None = None
        self._known: set[tuple[float, float]] = set()
        if positions is not None and len(positions):
            self.insert(positions)

    def __len__(self) -> int:
        return int(self._points.shape[0])

    @property
    def points(self) -> FloatArray:
        return self._points

    @property
    def simplices(self) -> NDArray[np.int64]:
        """Triangle vertex indices (T,3); empty while the node set is degenerate."""
        if self._tri is None:
            return np.zeros((0, 3), dtype=np.int64)
        return np.asarray(self._tri.simplices, dtype=np.int64)

    def contains(self, x: FloatArray) -> NDArray[np.bool_]:
        return np.array([(float(p[0]), float(p[1])) in self._known for p in x], dtype=bool)

    def insert(self, positions: FloatArray) -> None:
        """Append nodes; positions already in the mesh are rejected."""
        x = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        if x.shape[0] == 0:
            return
        keys = [(float(p[0]), float(p[1])) for p in x]
        if len(set(keys)) != len(keys) or any(k in self._known for k in keys):
            raise ValueError("nodes must not duplicate existing mesh positions.")
        self._known.update(keys)
        self._points = np.vstack([self._points, x])

        if self._tri is not None:
            self._tri.add_points(x)
            return
        try:
            self._tri = Delaunay(self._points, incremental=True)
        except QhullError:
            # fewer than three non-collinear nodes so far
            logger.debug("Triangulation deferred: %d degenerate node(s).", self._points.shape[0])
            self._tri = None

    def edges(self) -> NDArray[np.int64]:
        """Unique undirected triangle edges (E,2), lower index first."""
        tris = self.simplices
        if tris.shape[0] == 0:
            return np.zeros((0, 2), dtype=np.int64)
        e = np.concatenate([tris[:, [0, 1]], tris[:, [1, 2]], tris[:, [2, 0]]], axis=0)
        e = np.sort(e, axis=1)
        return np.unique(e, axis=0)

    def refine(
        self,
        labels_forward: IntArray,
        labels_backward: IntArray,
        distances_forward: FloatArray,
        distances_backward: FloatArray,
        *,
        refinement_threshold: float,
        refine_at_labels: bool,
        distance_difference_threshold: float,
    ) -> FloatArray:
        """Midpoints of edges whose endpoints disagree, as new seed positions (k,2).

        An edge is split when it is longer than ``refinement_threshold`` and
        either (``refine_at_labels`` and the labels differ in one direction) or
        the distances differ by more than ``distance_difference_threshold``
        in one direction. Edges at or below the threshold are never split.
        """
        n = self._points.shape[0]
        for name, arr in (
            ("labels_forward", labels_forward), ("labels_backward", labels_backward),
            ("distances_forward", distances_forward), ("distances_backward", distances_backward),
        ):
            if len(arr) != n:
                raise ValueError(f"{name} has length {len(arr)}, expected {n}.")

        e = self.edges()
        if e.shape[0] == 0:
            return np.zeros((0, 2), dtype=np.float64)
        i, j = e[:, 0], e[:, 1]
        pi, pj = self._points[i], self._points[j]
        r = pj - pi
        length = np.sqrt(r[:, 0] * r[:, 0] + r[:, 1] * r[:, 1])

        split = np.zeros(e.shape[0], dtype=bool)
        if refine_at_labels:
            split |= (labels_forward[i] != labels_forward[j]) | (labels_backward[i] != labels_backward[j])
        split |= np.abs(distances_forward[i] - distances_forward[j]) > distance_difference_threshold
        split |= np.abs(distances_backward[i] - distances_backward[j]) > distance_difference_threshold
        split &= length > refinement_threshold

        mid = 0.5 * (pi[split] + pj[split])
        if mid.shape[0] == 0:
            return mid
        _, first = np.unique(mid, axis=0, return_index=True)
        mid = mid[np.sort(first)]
        mid = mid[~self.contains(mid)]
        logger.debug("Refinement split %d of %d edges.", mid.shape[0], e.shape[0])
        return mid
