from __future__ import annotations

from collections.abc import Callable, Sequence

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float64]
IntArray = NDArray[np.int64]
ArrayLike1D = np.ndarray | Sequence[float]

# Positions may sit this far outside the rectangle (relative to its extent)
# and still count as samples of the domain.
_DOMAIN_TOL = 1e-9


# ---------------------------
# Utility
# ---------------------------
def _as_float_array1(x: ArrayLike1D, name: str, *, finite: bool = True) -> FloatArray:
    arr = np.asarray(x, dtype=np.float64)
    if arr.ndim != 1:
        raise ValueError(f"{name} must be a flat 1-D array.")
    if finite and not np.isfinite(arr).all():
        raise ValueError(f"{name} contains non-finite values.")
    return np.ascontiguousarray(arr)


def _as_id_array(x: np.ndarray | Sequence[int], name: str) -> IntArray:
    arr = np.asarray(x)
    if arr.size == 0:
        return np.zeros(0, dtype=np.int64)
    if arr.ndim != 1:
        raise ValueError(f"{name} must be 1-D.")
    if not np.issubdtype(arr.dtype, np.integer):
        if not np.issubdtype(arr.dtype, np.floating) or not np.all(np.mod(arr, 1.0) == 0.0):
            raise ValueError(f"{name} must contain integer ids.")
    return np.ascontiguousarray(arr.astype(np.int64))


def _readonly(arr: np.ndarray) -> np.ndarray:
    arr.setflags(write=False)
    return arr


# ---------------------------
# Vector field
# ---------------------------
class VectorField2D:
    """Steady 2D vector field sampled on a regular grid.

    resolution: (nx, ny) number of samples per axis
    domain: (xmin, xmax, ymin, ymax) rectangle spanned by the samples
    positions, vectors: flattened (x, y) pairs, x index running fastest

    Vectors may hold non-finite entries for masked cells; particles that hit
    them terminate with a numerical failure.
    """

    def __init__(
        self,
        resolution: tuple[int, int],
        domain: tuple[float, float, float, float],
        positions: ArrayLike1D,
        vectors: ArrayLike1D,
    ) -> None:
        if len(resolution) != 2:
            raise ValueError("resolution must be a pair (nx, ny).")
        nx, ny = int(resolution[0]), int(resolution[1])
        if nx < 2 or ny < 2:
            raise ValueError("resolution must be at least 2 in each direction.")
        if len(domain) != 4:
            raise ValueError("domain must be (xmin, xmax, ymin, ymax).")
        xmin, xmax, ymin, ymax = (float(v) for v in domain)
        if not np.isfinite([xmin, xmax, ymin, ymax]).all():
            raise ValueError("domain must be finite.")
        if not (xmin < xmax and ymin < ymax):
            raise ValueError("domain must satisfy xmin < xmax and ymin < ymax.")

        pos = _as_float_array1(positions, "positions")
        vec = _as_float_array1(vectors, "vectors", finite=False)
        if pos.shape[0] != 2 * nx * ny:
            raise ValueError(f"positions has length {pos.shape[0]}, expected 2*nx*ny = {2 * nx * ny}.")
        if vec.shape[0] != 2 * nx * ny:
            raise ValueError(f"vectors has length {vec.shape[0]}, expected 2*nx*ny = {2 * nx * ny}.")

        pos2 = pos.reshape(-1, 2)
        tol = _DOMAIN_TOL * max(xmax - xmin, ymax - ymin)
        inside = (
            (pos2[:, 0] >= xmin - tol) & (pos2[:, 0] <= xmax + tol)
            & (pos2[:, 1] >= ymin - tol) & (pos2[:, 1] <= ymax + tol)
        )
        if not inside.all():
            raise ValueError("positions must lie inside the domain rectangle.")

        self._nx = nx
        self._ny = ny
        self._domain = (xmin, xmax, ymin, ymax)
        self._dx = (xmax - xmin) / (nx - 1)
        self._dy = (ymax - ymin) / (ny - 1)
        self._lo = np.array([xmin, ymin], dtype=np.float64)
        self._hi = np.array([xmax, ymax], dtype=np.float64)
        self._seeds: FloatArray = _readonly(np.clip(pos2, self._lo, self._hi))
        self._grid: FloatArray = _readonly(vec.reshape(ny, nx, 2).copy())

    # -------- properties --------
    @property
    def resolution(self) -> tuple[int, int]: return (self._nx, self._ny)

    @property
    def domain(self) -> tuple[float, float, float, float]: return self._domain

    @property
    def spacing(self) -> tuple[float, float]: return (self._dx, self._dy)

    @property
    def diagonal(self) -> float:
        xmin, xmax, ymin, ymax = self._domain
        return float(np.sqrt((xmax - xmin) ** 2 + (ymax - ymin) ** 2))

    @property
    def seeds(self) -> FloatArray:
        """Sample positions as (nx*ny, 2); the initial node set of a computation."""
        return self._seeds

    @property
    def vectors(self) -> FloatArray:
        return self._grid

    @property
    def lower(self) -> FloatArray: return self._lo

    @property
    def upper(self) -> FloatArray: return self._hi

    # -------- queries --------
    def contains(self, x: FloatArray) -> NDArray[np.bool_]:
        """Inside-or-on-boundary mask for points (m,2)."""
        return (
            (x[:, 0] >= self._lo[0]) & (x[:, 0] <= self._hi[0])
            & (x[:, 1] >= self._lo[1]) & (x[:, 1] <= self._hi[1])
        )

    def sample(self, x: FloatArray) -> FloatArray:
        """Bilinear interpolation of the grid at query points (m,2).

        Queries are clamped to the rectangle. Non-finite queries return NaN.
        """
        finite = np.isfinite(x).all(axis=1)
        xs = np.where(finite[:, None], x, self._lo)
        gx = np.clip((xs[:, 0] - self._lo[0]) / self._dx, 0.0, self._nx - 1.0)
        gy = np.clip((xs[:, 1] - self._lo[1]) / self._dy, 0.0, self._ny - 1.0)
        ix = np.minimum(np.floor(gx).astype(np.intp), self._nx - 2)
        iy = np.minimum(np.floor(gy).astype(np.intp), self._ny - 2)
        tx = (gx - ix)[:, None]
        ty = (gy - iy)[:, None]

        A = self._grid
        u = (
            (1.0 - tx) * (1.0 - ty) * A[iy, ix]
            + tx * (1.0 - ty) * A[iy, ix + 1]
            + (1.0 - tx) * ty * A[iy + 1, ix]
            + tx * ty * A[iy + 1, ix + 1]
        )
        u[~finite] = np.nan
        return np.asarray(u, dtype=np.float64)

    # --------- Initialization helpers ---------
    @classmethod
    def from_function(
        cls,
        func: Callable[[FloatArray, FloatArray], tuple[FloatArray, FloatArray]],
        domain: tuple[float, float, float, float],
        nx: int,
        ny: int,
    ) -> VectorField2D:
        """Sample ``func(X, Y) -> (U, V)`` on a regular nx-by-ny grid."""
        xmin, xmax, ymin, ymax = domain
        xs = np.linspace(xmin, xmax, nx)
        ys = np.linspace(ymin, ymax, ny)
        X, Y = np.meshgrid(xs, ys, indexing="xy")
        U, V = func(X, Y)
        U = np.broadcast_to(np.asarray(U, dtype=np.float64), X.shape)
        V = np.broadcast_to(np.asarray(V, dtype=np.float64), X.shape)
        positions = np.stack([X.ravel(), Y.ravel()], axis=1).ravel()
        vectors = np.stack([U.ravel(), V.ravel()], axis=1).ravel()
        return cls((nx, ny), domain, positions, vectors)


# ---------------------------
# Convergence structures
# ---------------------------
class ConvergenceStructures:
    """Labelled points and line segments that streamlines can terminate at.

    points: flattened (x, y) pairs, one per point in ``point_ids``
    lines:  flattened (x0, y0, x1, y1) quadruples, one per segment in ``line_ids``
    """

    def __init__(
        self,
        points: ArrayLike1D = (),
        point_ids: np.ndarray | Sequence[int] = (),
        lines: ArrayLike1D = (),
        line_ids: np.ndarray | Sequence[int] = (),
    ) -> None:
        p = _as_float_array1(np.ravel(np.asarray(points, dtype=np.float64)), "points")
        pid = _as_id_array(point_ids, "point_ids")
        seg = _as_float_array1(np.ravel(np.asarray(lines, dtype=np.float64)), "lines")
        lid = _as_id_array(line_ids, "line_ids")

        if p.shape[0] % 2 != 0:
            raise ValueError("points must hold (x, y) pairs.")
        if pid.shape[0] != p.shape[0] // 2:
            raise ValueError("point_ids must match the number of points.")
        if seg.shape[0] % 4 != 0:
            raise ValueError("lines must hold (x0, y0, x1, y1) quadruples.")
        if lid.shape[0] != seg.shape[0] // 4:
            raise ValueError("line_ids must match the number of lines.")

        seg3 = seg.reshape(-1, 2, 2)
        if seg3.shape[0] and (np.linalg.norm(seg3[:, 1] - seg3[:, 0], axis=1) == 0.0).any():
            raise ValueError("lines must not contain zero-length segments.")

        self._points: FloatArray = _readonly(p.reshape(-1, 2).copy())
        self._point_ids: IntArray = _readonly(pid.copy())
        self._lines: FloatArray = _readonly(seg3.copy())
        self._line_ids: IntArray = _readonly(lid.copy())

    @property
    def points(self) -> FloatArray: return self._points

    @property
    def point_ids(self) -> IntArray: return self._point_ids

    @property
    def lines(self) -> FloatArray: return self._lines

    @property
    def line_ids(self) -> IntArray: return self._line_ids

    @property
    def labels(self) -> IntArray:
        return np.unique(np.concatenate([self._point_ids, self._line_ids]))

    def __len__(self) -> int:
        return int(self._points.shape[0] + self._lines.shape[0])

    def __repr__(self) -> str:
        return f"ConvergenceStructures(points={self._points.shape[0]}, lines={self._lines.shape[0]})"
