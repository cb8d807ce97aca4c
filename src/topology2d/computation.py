from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import numpy as np

from .classifier import Classifier, Termination
from .field import ConvergenceStructures, FloatArray, VectorField2D
from .integrator import Direction, IntegrationConfig, ParticleBatch, StreamlineIntegrator
from .performance import PerformanceRecorder
from .refinement import MeshRefiner
from .results import (
    ComputationSnapshot,
    ComputationState,
    PendingParticles,
    ResultChannel,
)

logger = logging.getLogger(__name__)

_VALID_TERMINATIONS = np.array([int(t) for t in Termination], dtype=np.int8)


# ---------------------------
# Run configuration
# ---------------------------
@dataclass(frozen=True, slots=True)
class RunConfig:
    """Parameters of one run, validated once and passed to the worker.

    step_budget: maximum number of integration steps per streamline
    refinement_threshold: edges at or below this length are never split
    refine_at_labels: split edges whose endpoint labels differ
    distance_difference_threshold: split edges whose endpoint distances differ by more
    particles_per_batch: particles advanced between two cancellation checks
    steps_per_batch: sub-steps per particle before a snapshot is published
    """
    step_budget: int = 10000
    refinement_threshold: float = 0.00024
    refine_at_labels: bool = True
    distance_difference_threshold: float = 0.00025
    particles_per_batch: int = 10000
    steps_per_batch: int = 10000

    def __post_init__(self) -> None:
        for name in ("step_budget", "particles_per_batch", "steps_per_batch"):
            v = getattr(self, name)
            if isinstance(v, bool) or not isinstance(v, (int, np.integer)) or v <= 0:
                raise ValueError(f"{name} must be a positive integer.")
        if not (np.isfinite(self.refinement_threshold) and self.refinement_threshold > 0.0):
            raise ValueError("refinement_threshold must be positive.")
        if not (np.isfinite(self.distance_difference_threshold) and self.distance_difference_threshold >= 0.0):
            raise ValueError("distance_difference_threshold must be non-negative.")


@runtime_checkable
class ComputationListener(Protocol):
    """Collaborator notified on the worker thread."""

    def on_snapshot(self, snapshot: ComputationSnapshot) -> None: ...

    def on_finished(self, snapshot: ComputationSnapshot) -> None: ...


# ---------------------------
# Controller
# ---------------------------
class TopologyComputation:
    """Computes basins of a 2D vector field on an adaptively refined mesh.

    A single background worker advects forward and backward streamlines from
    every mesh node, labels each node by the convergence structure its
    streamlines reach, and refines the mesh where neighbouring labels or
    distances disagree. Progress is published as immutable snapshots.

    Control methods (``start``, ``terminate``, ``reset``) are meant to be
    called from one thread.

    Example
    -------
    >>> comp = TopologyComputation(field, structures)
    >>> comp.start(refinement_threshold=0.05)
    >>> snap = comp.latest_snapshot(timeout=0.001)
    """

    def __init__(
        self,
        field: VectorField2D,
        structures: ConvergenceStructures,
        integration: IntegrationConfig | None = None,
        *,
        listeners: Iterable[ComputationListener] = (),
        performance: PerformanceRecorder | None = None,
        _resume: ComputationSnapshot | None = None,
    ) -> None:
        if not isinstance(field, VectorField2D):
            raise TypeError("field must be a VectorField2D.")
        if not isinstance(structures, ConvergenceStructures):
            raise TypeError("structures must be ConvergenceStructures.")
        self._field = field
        self._structures = structures
        self._integration = integration or IntegrationConfig()
        self._capture_radius = self._integration.resolve_capture_radius(field)
        self._listeners: list[ComputationListener] = list(listeners)
        self.performance = performance or PerformanceRecorder()
        self._origin = _resume

        self._channel = ResultChannel()
        self._cancel = threading.Event()
        self._thread: threading.Thread | None = None
        self._failed = False
        self._sequence = 0
        self._load(_resume)

    @classmethod
    def from_snapshot(
        cls,
        field: VectorField2D,
        structures: ConvergenceStructures,
        snapshot: ComputationSnapshot,
        *,
        listeners: Iterable[ComputationListener] = (),
        performance: PerformanceRecorder | None = None,
    ) -> TopologyComputation:
        """Continue a computation from a published (or loaded) snapshot.

        The integration settings are taken from ``snapshot.state``.
        """
        if not isinstance(snapshot, ComputationSnapshot):
            raise TypeError("snapshot must be a ComputationSnapshot.")
        integration = snapshot.state.integration_config()
        return cls(
            field, structures, integration,
            listeners=listeners, performance=performance, _resume=snapshot,
        )

    # -------- worker-owned state --------
    def _load(self, snapshot: ComputationSnapshot | None) -> None:
        self._classifier = Classifier(self._structures, self._capture_radius)
        self._integrator = StreamlineIntegrator(self._field, self._classifier, self._integration)

        if snapshot is None:
            self._vertices = np.zeros((0, 2))
            self._labels = {d: np.zeros(0, dtype=np.int64) for d in Direction}
            self._distances = {d: np.zeros(0) for d in Direction}
            self._terminations = {d: np.zeros(0, dtype=np.int8) for d in Direction}
            self._refiner = MeshRefiner()
            self._round_sizes: list[int] = []
            self._steps_performed = 0
            self._rounds = 0
            self._forward, self._backward = self._seed(self._field.seeds)
            self.performance.add_particles(len(self._forward))
            return

        self._check_resumable(snapshot)
        self._vertices = np.array(snapshot.vertices)
        self._labels = {
            Direction.FORWARD: np.array(snapshot.labels_forward),
            Direction.BACKWARD: np.array(snapshot.labels_backward),
        }
        self._distances = {
            Direction.FORWARD: np.array(snapshot.distances_forward),
            Direction.BACKWARD: np.array(snapshot.distances_backward),
        }
        self._terminations = {
            Direction.FORWARD: np.array(snapshot.terminations_forward),
            Direction.BACKWARD: np.array(snapshot.terminations_backward),
        }
        # replay the insertions round by round; a one-shot rebuild can pick
        # other diagonals for cocircular nodes
        self._round_sizes = list(snapshot.state.round_sizes)
        self._refiner = MeshRefiner()
        lo = 0
        for n in self._round_sizes:
            self._refiner.insert(self._vertices[lo:lo + n])
            lo += n
        self._steps_performed = snapshot.state.num_integration_steps_performed
        self._rounds = snapshot.state.num_rounds
        self._sequence = snapshot.sequence
        self._forward, self._backward = snapshot.pending.restore()

    def _check_resumable(self, snapshot: ComputationSnapshot) -> None:
        if snapshot.error is not None:
            raise ValueError(f"cannot resume from a failed computation: {snapshot.error}")
        for arr in (snapshot.terminations_forward, snapshot.terminations_backward):
            if not np.isin(arr, _VALID_TERMINATIONS).all():
                raise ValueError("snapshot nodes must carry a termination reason.")
        for arr in (snapshot.distances_forward, snapshot.distances_backward):
            if (arr < 0.0).any():
                raise ValueError("snapshot distances must be non-negative.")
        if not self._field.contains(snapshot.vertices).all():
            raise ValueError("snapshot vertices lie outside the field domain.")
        if len(snapshot.pending) and not self._field.contains(snapshot.pending.seeds).all():
            raise ValueError("pending seeds lie outside the field domain.")
        sizes = snapshot.state.round_sizes
        if len(sizes) != snapshot.state.num_rounds or sum(sizes) != snapshot.num_nodes or min(sizes, default=1) <= 0:
            raise ValueError("snapshot round sizes do not match its rounds and nodes.")

    def _seed(self, positions: FloatArray) -> tuple[ParticleBatch, ParticleBatch]:
        x = np.asarray(positions, dtype=np.float64).reshape(-1, 2)
        if x.shape[0]:
            _, first = np.unique(x, axis=0, return_index=True)
            x = x[np.sort(first)]
            x = x[~self._refiner.contains(x)]
        dt = self._integration.timestep
        return (
            ParticleBatch.seed_at(x, Direction.FORWARD, dt),
            ParticleBatch.seed_at(x, Direction.BACKWARD, dt),
        )

    # -------- properties --------
    @property
    def field(self) -> VectorField2D: return self._field

    @property
    def structures(self) -> ConvergenceStructures: return self._structures

    @property
    def integration(self) -> IntegrationConfig: return self._integration

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def failed(self) -> bool:
        return self._failed

    def add_listener(self, listener: ComputationListener) -> None:
        if self.running:
            raise RuntimeError("listeners cannot be added while the computation runs.")
        self._listeners.append(listener)

    # -------- control --------
    def start(self, config: RunConfig | None = None, **params: Any) -> None:
        """Launch the worker and return immediately.

        Keyword parameters override fields of ``config`` (or of the defaults).
        Starting again after ``terminate`` continues where the run stopped.
        """
        if self.running:
            raise RuntimeError("computation is already running.")
        if self._failed:
            raise RuntimeError("computation failed; call reset() before starting again.")
        cfg = config or RunConfig()
        if params:
            unknown = set(params) - {f.name for f in dataclasses.fields(RunConfig)}
            if unknown:
                raise ValueError(f"unknown run parameter(s): {', '.join(sorted(unknown))}.")
            cfg = dataclasses.replace(cfg, **params)

        self._cancel.clear()
        self._thread = threading.Thread(
            target=self._run,
            args=(cfg,),
            name="TopologyComputation",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Started topology computation (%d nodes, %d pending seeds, method %s).",
            self._vertices.shape[0], len(self._forward), self._integration.method.value,
        )

    def terminate(self, timeout: float | None = None) -> bool:
        """Request cancellation and wait for the worker; True once it has exited."""
        if self._thread is None:
            return True
        self._cancel.set()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Topology computation did not stop within %s s", timeout)
            return False
        self._thread = None
        return True

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the run to end on its own; True once the worker has exited."""
        if self._thread is None:
            return True
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            return False
        self._thread = None
        return True

    def reset(self) -> None:
        """Stop, discard all progress and failure state, and rewind to the initial input."""
        self.terminate()
        self._failed = False
        self._sequence = 0
        self._channel.clear()
        self.performance.reset()
        self._load(self._origin)
        logger.info("Topology computation reset.")

    def latest_snapshot(self, timeout: float = 0.0, newer_than: int | None = None) -> ComputationSnapshot | None:
        """Most recently published snapshot, or None if nothing (newer) arrived in time."""
        return self._channel.get(newer_than=newer_than, timeout=timeout)

    # -------- worker --------
    def _unresolved(self) -> bool:
        return not (self._forward.all_done and self._backward.all_done)

    def _advect_batch(self, cfg: RunConfig) -> None:
        for particles in (self._forward, self._backward):
            active = particles.active
            for lo in range(0, active.size, cfg.particles_per_batch):
                if self._cancel.is_set():
                    return
                steps = self._integrator.advance(
                    particles, active[lo:lo + cfg.particles_per_batch],
                    cfg.steps_per_batch, cfg.step_budget,
                )
                self._steps_performed += steps
                self.performance.add_steps(steps)

    def _finalize_round(self) -> None:
        fwd, bwd = self._forward, self._backward
        # allocate everything before touching the node arrays so a failure
        # leaves them mutually consistent
        vertices = np.concatenate([self._vertices, fwd.seed], axis=0)
        labels, distances, terminations = {}, {}, {}
        for d, batch in ((Direction.FORWARD, fwd), (Direction.BACKWARD, bwd)):
            labels[d] = np.concatenate([self._labels[d], batch.label])
            distances[d] = np.concatenate([self._distances[d], batch.distance])
            terminations[d] = np.concatenate([self._terminations[d], batch.termination])
        self._refiner.insert(fwd.seed)
        self._vertices = vertices
        self._labels, self._distances, self._terminations = labels, distances, terminations
        self._round_sizes.append(len(fwd))
        self._rounds += 1
        self.performance.add_round()
        logger.info(
            "Refinement round %d resolved: %d new nodes, %d nodes, %d triangles.",
            self._rounds, len(fwd), self._vertices.shape[0], self._refiner.simplices.shape[0],
        )
        self._forward, self._backward = self._seed(np.zeros((0, 2)))

    def _refine(self, cfg: RunConfig) -> FloatArray:
        return self._refiner.refine(
            self._labels[Direction.FORWARD], self._labels[Direction.BACKWARD],
            self._distances[Direction.FORWARD], self._distances[Direction.BACKWARD],
            refinement_threshold=cfg.refinement_threshold,
            refine_at_labels=cfg.refine_at_labels,
            distance_difference_threshold=cfg.distance_difference_threshold,
        )

    def _snapshot(self, *, finished: bool = False, cancelled: bool = False, error: str | None = None) -> ComputationSnapshot:
        self._sequence += 1
        state = ComputationState.from_config(
            self._integration, self._capture_radius,
            num_integration_steps_performed=self._steps_performed,
            num_rounds=self._rounds,
            round_sizes=tuple(self._round_sizes),
        )
        return ComputationSnapshot.build(
            vertices=self._vertices,
            indices=self._refiner.simplices,
            labels_forward=self._labels[Direction.FORWARD],
            labels_backward=self._labels[Direction.BACKWARD],
            distances_forward=self._distances[Direction.FORWARD],
            distances_backward=self._distances[Direction.BACKWARD],
            terminations_forward=self._terminations[Direction.FORWARD],
            terminations_backward=self._terminations[Direction.BACKWARD],
            state=state,
            pending=PendingParticles.capture(self._forward, self._backward),
            finished=finished,
            cancelled=cancelled,
            error=error,
            sequence=self._sequence,
        )

    def _failure_snapshot(self, error: str) -> ComputationSnapshot:
        """Final error snapshot; falls back to the last published one if the current state cannot be captured."""
        try:
            return self._snapshot(finished=True, error=error)
        except Exception:
            logger.error("Could not capture the failed state; reporting the last published snapshot.", exc_info=True)
        self._sequence += 1
        last = self._channel.peek()
        if last is None:
            state = ComputationState.from_config(self._integration, self._capture_radius)
            return ComputationSnapshot.build(
                vertices=np.zeros((0, 2)), indices=np.zeros((0, 3), dtype=np.int64),
                labels_forward=np.zeros(0, dtype=np.int64), labels_backward=np.zeros(0, dtype=np.int64),
                distances_forward=np.zeros(0), distances_backward=np.zeros(0),
                terminations_forward=np.zeros(0, dtype=np.int8), terminations_backward=np.zeros(0, dtype=np.int8),
                state=state, finished=True, error=error, sequence=self._sequence,
            )
        return dataclasses.replace(last, finished=True, cancelled=False, error=error, sequence=self._sequence)

    def _notify(self, snapshot: ComputationSnapshot, final: bool) -> None:
        for listener in self._listeners:
            try:
                if final:
                    listener.on_finished(snapshot)
                else:
                    listener.on_snapshot(snapshot)
            except Exception as e:
                logger.error("Error in computation listener %r: %s", listener, e, exc_info=True)

    def _publish(self, snapshot: ComputationSnapshot, final: bool = False) -> None:
        self._channel.publish(snapshot)
        self._notify(snapshot, final)

    def _run(self, cfg: RunConfig) -> None:
        perf = self.performance
        perf.run_started()
        finished = False
        try:
            while not self._cancel.is_set():
                if self._unresolved():
                    with perf.measure("integration"):
                        self._advect_batch(cfg)
                if not self._cancel.is_set() and not self._unresolved():
                    with perf.measure("refinement"):
                        if len(self._forward):
                            self._finalize_round()
                        seeds = self._refine(cfg)
                        if seeds.shape[0]:
                            self._forward, self._backward = self._seed(seeds)
                            perf.add_particles(len(self._forward))
                            logger.debug("Armed %d refinement seeds.", len(self._forward))
                    if not seeds.shape[0]:
                        finished = True
                        break
                self._publish(self._snapshot())
        except Exception as e:
            logger.exception("Topology computation failed")
            self._failed = True
            perf.run_stopped()
            self._publish(self._failure_snapshot(f"{type(e).__name__}: {e}"), final=True)
            return

        perf.run_stopped()
        cancelled = not finished
        if cancelled:
            logger.info("Topology computation cancelled after %d rounds.", self._rounds)
        else:
            logger.info(
                "Topology computation finished: %d nodes, %d rounds, %d integration steps.",
                self._vertices.shape[0], self._rounds, self._steps_performed,
            )
        perf.log_summary()
        self._publish(self._snapshot(finished=finished, cancelled=cancelled), final=True)
