from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any

import numpy as np
from numpy.typing import NDArray

from .classifier import Termination
from .field import FloatArray, IntArray
from .integrator import Direction, IntegrationConfig, IntegrationMethod, ParticleBatch

# Terminations whose label does not describe a basin.
_INVALID_TERMINATIONS = (
    int(Termination.NUMERICAL_FAILURE),
    int(Termination.DOMAIN_BOUNDARY),
    int(Termination.MAX_STEPS),
)


def _frozen(arr: np.ndarray, dtype: Any) -> np.ndarray:
    out = np.array(arr, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


# ---------------------------
# Computation state
# ---------------------------
@dataclass(frozen=True, slots=True)
class ComputationState:
    """Serializable integrator state; paired with a snapshot it allows an exact resume.

    The step bounds and capture radius are stored resolved, so a resumed run
    integrates with exactly the settings of the run it continues.
    ``round_sizes`` holds the node count of every finalised round in order;
    replaying those insertions rebuilds the same triangulation.
    """
    method: IntegrationMethod = IntegrationMethod.RK4
    integration_timestep: float = 0.01
    max_integration_error: float = 1e-6
    min_timestep: float | None = None
    max_timestep: float | None = None
    capture_radius: float | None = None
    num_integration_steps_performed: int = 0
    num_rounds: int = 0
    round_sizes: tuple[int, ...] = ()

    @classmethod
    def from_config(cls, config: IntegrationConfig, capture_radius: float, **counters: Any) -> ComputationState:
        return cls(
            method=config.method,
            integration_timestep=config.timestep,
            max_integration_error=config.max_error,
            min_timestep=config.dt_min,
            max_timestep=config.dt_max,
            capture_radius=float(capture_radius),
            **counters,
        )

    def integration_config(self) -> IntegrationConfig:
        return IntegrationConfig(
            method=self.method,
            timestep=self.integration_timestep,
            max_error=self.max_integration_error,
            min_timestep=self.min_timestep,
            max_timestep=self.max_timestep,
            capture_radius=self.capture_radius,
        )

    def to_dict(self) -> dict[str, Any]:
        def opt(v: float | None) -> float | None:
            return None if v is None else float(v)

        return {
            "method": self.method.value,
            "integration_timestep": float(self.integration_timestep),
            "max_integration_error": float(self.max_integration_error),
            "min_timestep": opt(self.min_timestep),
            "max_timestep": opt(self.max_timestep),
            "capture_radius": opt(self.capture_radius),
            "num_integration_steps_performed": int(self.num_integration_steps_performed),
            "num_rounds": int(self.num_rounds),
            "round_sizes": [int(n) for n in self.round_sizes],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> ComputationState:
        def opt(key: str) -> float | None:
            v = d.get(key)
            return None if v is None else float(v)

        return cls(
            method=IntegrationMethod(d.get("method", IntegrationMethod.RK4.value)),
            integration_timestep=float(d["integration_timestep"]),
            max_integration_error=float(d["max_integration_error"]),
            min_timestep=opt("min_timestep"),
            max_timestep=opt("max_timestep"),
            capture_radius=opt("capture_radius"),
            num_integration_steps_performed=int(d.get("num_integration_steps_performed", 0)),
            num_rounds=int(d.get("num_rounds", 0)),
            round_sizes=tuple(int(n) for n in d.get("round_sizes", ())),
        )


# ---------------------------
# Particles of the round in progress
# ---------------------------
@dataclass(frozen=True, slots=True)
class PendingDirection:
    """Read-only copy of one direction's particle arrays."""
    position: FloatArray
    arclength: FloatArray
    steps: NDArray[np.int64]
    timestep: FloatArray
    done: NDArray[np.bool_]
    label: IntArray
    distance: FloatArray
    termination: NDArray[np.int8]

    @classmethod
    def from_batch(cls, batch: ParticleBatch) -> PendingDirection:
        return cls(
            position=_frozen(batch.position, np.float64),
            arclength=_frozen(batch.arclength, np.float64),
            steps=_frozen(batch.steps, np.int64),
            timestep=_frozen(batch.timestep, np.float64),
            done=_frozen(batch.done, bool),
            label=_frozen(batch.label, np.int64),
            distance=_frozen(batch.distance, np.float64),
            termination=_frozen(batch.termination, np.int8),
        )

    def to_batch(self, seeds: FloatArray, direction: Direction) -> ParticleBatch:
        return ParticleBatch(
            direction=direction,
            seed=np.array(seeds, dtype=np.float64),
            position=np.array(self.position, dtype=np.float64),
            arclength=np.array(self.arclength, dtype=np.float64),
            steps=np.array(self.steps, dtype=np.int64),
            timestep=np.array(self.timestep, dtype=np.float64),
            done=np.array(self.done, dtype=bool),
            label=np.array(self.label, dtype=np.int64),
            distance=np.array(self.distance, dtype=np.float64),
            termination=np.array(self.termination, dtype=np.int8),
        )

    def __len__(self) -> int:
        return int(self.position.shape[0])


@dataclass(frozen=True, slots=True)
class PendingParticles:
    """Seeds of the unfinished round with the particle state of both directions."""
    seeds: FloatArray
    forward: PendingDirection
    backward: PendingDirection

    @classmethod
    def empty(cls) -> PendingParticles:
        return cls.capture(
            ParticleBatch.seed_at(np.zeros((0, 2)), Direction.FORWARD, 1.0),
            ParticleBatch.seed_at(np.zeros((0, 2)), Direction.BACKWARD, 1.0),
        )

    @classmethod
    def capture(cls, forward: ParticleBatch, backward: ParticleBatch) -> PendingParticles:
        return cls(
            seeds=_frozen(forward.seed, np.float64),
            forward=PendingDirection.from_batch(forward),
            backward=PendingDirection.from_batch(backward),
        )

    def restore(self) -> tuple[ParticleBatch, ParticleBatch]:
        return (
            self.forward.to_batch(self.seeds, Direction.FORWARD),
            self.backward.to_batch(self.seeds, Direction.BACKWARD),
        )

    def __len__(self) -> int:
        return int(self.seeds.shape[0])

    @property
    def num_unresolved(self) -> int:
        return int((~self.forward.done).sum() + (~self.backward.done).sum())


# ---------------------------
# Snapshot
# ---------------------------
@dataclass(frozen=True, slots=True)
class ComputationSnapshot:
    """Immutable, internally consistent copy of the computed mesh and node results.

    Only finalised nodes appear in ``vertices``; the particles of a round in
    progress are kept in ``pending``.
    """
    vertices: FloatArray
    indices: NDArray[np.int64]
    labels_forward: IntArray
    labels_backward: IntArray
    distances_forward: FloatArray
    distances_backward: FloatArray
    terminations_forward: NDArray[np.int8]
    terminations_backward: NDArray[np.int8]
    state: ComputationState
    pending: PendingParticles = field(default_factory=PendingParticles.empty)
    finished: bool = False
    cancelled: bool = False
    error: str | None = None
    sequence: int = 0

    def __post_init__(self) -> None:
        n = self.vertices.shape[0]
        if self.vertices.ndim != 2 or self.vertices.shape[1] != 2:
            raise ValueError("vertices must have shape (N,2).")
        for name in (
            "labels_forward", "labels_backward", "distances_forward",
            "distances_backward", "terminations_forward", "terminations_backward",
        ):
            if getattr(self, name).shape != (n,):
                raise ValueError(f"{name} must have shape ({n},).")
        if self.indices.ndim != 2 or self.indices.shape[1] != 3:
            raise ValueError("indices must have shape (T,3).")
        if self.indices.size and (self.indices.min() < 0 or self.indices.max() >= n):
            raise ValueError("indices refer to missing vertices.")
        m = len(self.pending)
        if len(self.pending.forward) != m or len(self.pending.backward) != m:
            raise ValueError("pending particle arrays must match the pending seeds.")

    @classmethod
    def build(
        cls,
        *,
        vertices: FloatArray,
        indices: NDArray[np.integer],
        labels_forward: IntArray,
        labels_backward: IntArray,
        distances_forward: FloatArray,
        distances_backward: FloatArray,
        terminations_forward: NDArray[np.integer],
        terminations_backward: NDArray[np.integer],
        state: ComputationState,
        pending: PendingParticles | None = None,
        finished: bool = False,
        cancelled: bool = False,
        error: str | None = None,
        sequence: int = 0,
    ) -> ComputationSnapshot:
        """Copy the given arrays into a new read-only snapshot."""
        return cls(
            vertices=_frozen(np.reshape(vertices, (-1, 2)), np.float64),
            indices=_frozen(np.reshape(indices, (-1, 3)), np.int64),
            labels_forward=_frozen(labels_forward, np.int64),
            labels_backward=_frozen(labels_backward, np.int64),
            distances_forward=_frozen(distances_forward, np.float64),
            distances_backward=_frozen(distances_backward, np.float64),
            terminations_forward=_frozen(terminations_forward, np.int8),
            terminations_backward=_frozen(terminations_backward, np.int8),
            state=state,
            pending=pending if pending is not None else PendingParticles.empty(),
            finished=bool(finished),
            cancelled=bool(cancelled),
            error=error,
            sequence=int(sequence),
        )

    @property
    def num_nodes(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def num_triangles(self) -> int:
        return int(self.indices.shape[0])

    # -------- derived outputs --------
    def combined_labels(self) -> IntArray:
        """One label per (forward, backward) combination.

        The pair is keyed by its sorted (min, max) value and numbered in
        order of first appearance along the vertex array.
        """
        out = np.empty(self.num_nodes, dtype=np.int64)
        combos: dict[tuple[int, int], int] = {}
        for i, (lf, lb) in enumerate(zip(self.labels_forward.tolist(), self.labels_backward.tolist())):
            key = (lf, lb) if lf <= lb else (lb, lf)
            if key not in combos:
                combos[key] = len(combos)
            out[i] = combos[key]
        return out

    def num_combined_labels(self) -> int:
        if self.num_nodes == 0:
            return 0
        return int(self.combined_labels().max()) + 1

    def combined_distances(self) -> FloatArray:
        df = self.distances_forward
        db = self.distances_backward
        return np.sqrt(df * df + db * db) / np.sqrt(2.0)

    def gradients(self) -> dict[str, FloatArray]:
        """Largest distance difference per unit length over incident triangle edges."""
        n = self.num_nodes
        grad = {"forward": np.zeros(n), "backward": np.zeros(n)}
        if self.indices.shape[0]:
            t = self.indices
            e = np.concatenate([t[:, [0, 1]], t[:, [0, 2]], t[:, [1, 2]]], axis=0)
            r = self.vertices[e[:, 0]] - self.vertices[e[:, 1]]
            length = np.sqrt(np.sum(r * r, axis=1))
            length = np.where(length > 0.0, length, np.inf)
            for key, dist in (("forward", self.distances_forward), ("backward", self.distances_backward)):
                g = np.abs(dist[e[:, 0]] - dist[e[:, 1]]) / length
                np.maximum.at(grad[key], e[:, 0], g)
                np.maximum.at(grad[key], e[:, 1], g)
        grad["combined"] = np.maximum(grad["forward"], grad["backward"])
        return grad

    def validity_masks(self) -> dict[str, NDArray[np.bool_]]:
        """Nodes whose label describes a basin, per direction and combined."""
        fwd = ~np.isin(self.terminations_forward, _INVALID_TERMINATIONS)
        bwd = ~np.isin(self.terminations_backward, _INVALID_TERMINATIONS)
        return {"forward": fwd, "backward": bwd, "all": fwd & bwd, "one": fwd | bwd}


# ---------------------------
# Result channel
# ---------------------------
class ResultChannel:
    """Single-slot handoff of the latest snapshot from the worker to a consumer.

    Publishing replaces the slot; reading never observes a partial snapshot
    because snapshots are immutable and the reference is swapped under a lock.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._latest: ComputationSnapshot | None = None

    def publish(self, snapshot: ComputationSnapshot) -> None:
        with self._cond:
            self._latest = snapshot
            self._cond.notify_all()

    def clear(self) -> None:
        with self._cond:
            self._latest = None

    def peek(self) -> ComputationSnapshot | None:
        with self._cond:
            return self._latest

    def get(self, newer_than: int | None = None, timeout: float = 0.0) -> ComputationSnapshot | None:
        """Latest snapshot, or one with ``sequence > newer_than``, waiting at most ``timeout`` seconds.

        Returns None when nothing (newer) is available in time.
        """
        def ready() -> bool:
            s = self._latest
            return s is not None and (newer_than is None or s.sequence > newer_than)

        with self._cond:
            if not ready() and timeout > 0.0:
                self._cond.wait_for(ready, timeout=timeout)
            return self._latest if ready() else None
