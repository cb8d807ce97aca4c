from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import numpy as np

from .field import VectorField2D
from .integrator import Direction
from .results import (
    ComputationSnapshot,
    ComputationState,
    PendingDirection,
    PendingParticles,
)

logger = logging.getLogger(__name__)


# ----------------------
# Snapshot I/O (.npz)
# ----------------------

_SCHEMA_VERSION = 1

_NODE_ARRAYS = (
    "vertices", "indices",
    "labels_forward", "labels_backward",
    "distances_forward", "distances_backward",
    "terminations_forward", "terminations_backward",
)
_PARTICLE_ARRAYS = ("position", "arclength", "steps", "timestep", "done", "label", "distance", "termination")


def save_npz(snapshot: ComputationSnapshot, path: str, metadata: Mapping[str, Any] | None = None) -> None:
    """Save a snapshot to .npz with schema versioning and basic metadata.

    Arrays stored:
      - vertices: float64 [N,2], indices: int64 [T,3]
      - labels_*, distances_*, terminations_*: [N] per direction
      - pending_seeds [M,2] and pending_<direction>_<field> for the round in progress
    Scalars:
      - state (dict), finished, cancelled, sequence, schema_version
    """
    data: dict[str, Any] = {name: getattr(snapshot, name) for name in _NODE_ARRAYS}
    data["pending_seeds"] = snapshot.pending.seeds
    for d in Direction:
        part = snapshot.pending.forward if d is Direction.FORWARD else snapshot.pending.backward
        for name in _PARTICLE_ARRAYS:
            data[f"pending_{d.name.lower()}_{name}"] = getattr(part, name)
    data["state"] = np.array(snapshot.state.to_dict(), dtype=object)
    data["finished"] = bool(snapshot.finished)
    data["cancelled"] = bool(snapshot.cancelled)
    data["sequence"] = int(snapshot.sequence)
    data["schema_version"] = int(_SCHEMA_VERSION)
    if snapshot.error is not None:
        data["error"] = np.array(snapshot.error, dtype=object)
    if metadata:
        data["metadata"] = np.array(dict(metadata), dtype=object)

    np.savez(path, **data)


def load_npz(path: str) -> ComputationSnapshot:
    """Load a snapshot from .npz.

    Unknown/extra fields are ignored. Requires a compatible schema_version.
    """
    with np.load(path, allow_pickle=True) as npz:
        schema = int(npz.get("schema_version", np.array(0)))
        if schema != _SCHEMA_VERSION:
            raise ValueError(f"Incompatible schema_version {schema}; expected {_SCHEMA_VERSION}.")

        arrays = {name: np.asarray(npz[name]) for name in _NODE_ARRAYS}
        parts = {}
        for d in Direction:
            parts[d] = PendingDirection(**{
                name: _readonly(np.asarray(npz[f"pending_{d.name.lower()}_{name}"]))
                for name in _PARTICLE_ARRAYS
            })
        pending = PendingParticles(
            seeds=_readonly(np.asarray(npz["pending_seeds"], dtype=np.float64).reshape(-1, 2)),
            forward=parts[Direction.FORWARD],
            backward=parts[Direction.BACKWARD],
        )
        state = ComputationState.from_dict(dict(npz["state"].item()))
        error = str(npz["error"].item()) if "error" in npz else None

        return ComputationSnapshot.build(
            **arrays,
            state=state,
            pending=pending,
            finished=bool(npz.get("finished", False)),
            cancelled=bool(npz.get("cancelled", False)),
            error=error,
            sequence=int(npz.get("sequence", 0)),
        )


def load_metadata(path: str) -> dict[str, Any]:
    with np.load(path, allow_pickle=True) as npz:
        if "metadata" not in npz:
            return {}
        return dict(npz["metadata"].item())


def _readonly(arr: np.ndarray) -> np.ndarray:
    out = np.array(arr, copy=True)
    out.setflags(write=False)
    return out


class NpzResultWriter:
    """Listener that saves published snapshots to .npz files.

    ``path_pattern`` may contain ``{sequence}``; without it every save
    overwrites the same file. The final snapshot is always written.
    """

    def __init__(self, path_pattern: str, every: int = 1, metadata: Mapping[str, Any] | None = None) -> None:
        if every <= 0:
            raise ValueError("every must be positive.")
        self.path_pattern = path_pattern
        self.every = int(every)
        self.metadata = dict(metadata) if metadata else None
        self.last_path: str | None = None
        self.num_written = 0
        self._count = 0

    def _write(self, snapshot: ComputationSnapshot) -> None:
        path = self.path_pattern.format(sequence=snapshot.sequence)
        save_npz(snapshot, path, self.metadata)
        self.last_path = path
        self.num_written += 1
        logger.debug("Saved snapshot %d to %s", snapshot.sequence, path)

    def on_snapshot(self, snapshot: ComputationSnapshot) -> None:
        self._count += 1
        if self._count % self.every == 0:
            self._write(snapshot)

    def on_finished(self, snapshot: ComputationSnapshot) -> None:
        self._write(snapshot)


# ----------------------
# Field builders
# ----------------------

def linear_field(
    matrix: Any,
    offset: tuple[float, float] = (0.0, 0.0),
    domain: tuple[float, float, float, float] = (-1.0, 1.0, -1.0, 1.0),
    nx: int = 33,
    ny: int = 33,
) -> VectorField2D:
    """Affine field v(x) = A x + b, exact under bilinear interpolation."""
    A = np.asarray(matrix, dtype=np.float64)
    if A.shape != (2, 2):
        raise ValueError("matrix must be 2x2.")
    b0, b1 = float(offset[0]), float(offset[1])
    return VectorField2D.from_function(
        lambda X, Y: (A[0, 0] * X + A[0, 1] * Y + b0, A[1, 0] * X + A[1, 1] * Y + b1),
        domain, nx, ny,
    )


def sink_field(
    center: tuple[float, float] = (0.0, 0.0),
    domain: tuple[float, float, float, float] = (-1.0, 1.0, -1.0, 1.0),
    nx: int = 33,
    ny: int = 33,
) -> VectorField2D:
    """Radial field pointing at ``center`` with speed growing linearly with distance."""
    cx, cy = center
    return linear_field(-np.eye(2), (cx, cy), domain, nx, ny)


def uniform_field(
    velocity: tuple[float, float],
    domain: tuple[float, float, float, float] = (-1.0, 1.0, -1.0, 1.0),
    nx: int = 2,
    ny: int = 2,
) -> VectorField2D:
    return linear_field(np.zeros((2, 2)), velocity, domain, nx, ny)
