from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np
from numpy.typing import NDArray

from .classifier import NO_LABEL, Classifier, Termination
from .field import ConvergenceStructures, FloatArray, IntArray, VectorField2D

# Termination code of particles that are still being integrated.
UNRESOLVED = -2

# Accepted RK45 steps with an error below tol / 2**5 double the next step.
_GROW_FACTOR = 32.0


class IntegrationMethod(str, Enum):
    RK4 = "rk4"
    RK45 = "rk45"


class Direction(int, Enum):
    FORWARD = 1
    BACKWARD = -1


# ---------------------------
# Configuration
# ---------------------------
@dataclass(frozen=True, slots=True)
class IntegrationConfig:
    """Stream line integration options, fixed for the lifetime of a computation.

    timestep: (initial) integration step
    max_error: local error tolerance of the adaptive method
    min_timestep, max_timestep: bounds for the adaptive step (None -> timestep/1024, timestep*1024)
    capture_radius: radius around convergence points (None -> 1e-3 of the domain diagonal)
    """
    method: IntegrationMethod = IntegrationMethod.RK4
    timestep: float = 0.01
    max_error: float = 1e-6
    min_timestep: float | None = None
    max_timestep: float | None = None
    capture_radius: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", IntegrationMethod(self.method))
        if not (np.isfinite(self.timestep) and self.timestep > 0.0):
            raise ValueError("timestep must be positive.")
        if not (np.isfinite(self.max_error) and self.max_error > 0.0):
            raise ValueError("max_error must be positive.")
        if self.min_timestep is not None and not (0.0 < self.min_timestep <= self.timestep):
            raise ValueError("min_timestep must lie in (0, timestep].")
        if self.max_timestep is not None and not (self.max_timestep >= self.timestep):
            raise ValueError("max_timestep must be at least timestep.")
        if self.capture_radius is not None and not (self.capture_radius > 0.0):
            raise ValueError("capture_radius must be positive.")

    @property
    def dt_min(self) -> float:
        return self.timestep / 1024.0 if self.min_timestep is None else float(self.min_timestep)

    @property
    def dt_max(self) -> float:
        return self.timestep * 1024.0 if self.max_timestep is None else float(self.max_timestep)

    def resolve_capture_radius(self, vector_field: VectorField2D) -> float:
        if self.capture_radius is not None:
            return float(self.capture_radius)
        return 1e-3 * vector_field.diagonal


# ---------------------------
# Particle state
# ---------------------------
@dataclass(slots=True)
class ParticleBatch:
    """Mutable per-direction state of the particles of one refinement round."""
    direction: Direction
    seed: FloatArray
    position: FloatArray
    arclength: FloatArray
    steps: NDArray[np.int64]
    timestep: FloatArray
    done: NDArray[np.bool_]
    label: IntArray
    distance: FloatArray
    termination: NDArray[np.int8]

    @classmethod
    def seed_at(cls, seeds: FloatArray, direction: Direction, timestep: float) -> ParticleBatch:
        x = np.array(seeds, dtype=np.float64).reshape(-1, 2)
        n = x.shape[0]
        return cls(
            direction=Direction(direction),
            seed=x.copy(),
            position=x.copy(),
            arclength=np.zeros(n),
            steps=np.zeros(n, dtype=np.int64),
            timestep=np.full(n, float(timestep)),
            done=np.zeros(n, dtype=bool),
            label=np.full(n, NO_LABEL, dtype=np.int64),
            distance=np.zeros(n),
            termination=np.full(n, UNRESOLVED, dtype=np.int8),
        )

    def __len__(self) -> int:
        return int(self.seed.shape[0])

    @property
    def active(self) -> NDArray[np.intp]:
        return np.flatnonzero(~self.done)

    @property
    def all_done(self) -> bool:
        return bool(self.done.all())

    def copy(self) -> ParticleBatch:
        return ParticleBatch(
            direction=self.direction,
            seed=self.seed.copy(),
            position=self.position.copy(),
            arclength=self.arclength.copy(),
            steps=self.steps.copy(),
            timestep=self.timestep.copy(),
            done=self.done.copy(),
            label=self.label.copy(),
            distance=self.distance.copy(),
            termination=self.termination.copy(),
        )


# ---------------------------
# Integrator
# ---------------------------
class StreamlineIntegrator:
    """Advects particles through a steady field until they terminate.

    All arithmetic is element-wise per particle, so a trajectory does not
    depend on which other particles share its batch.
    """

    # Runge-Kutta-Fehlberg 4(5)
    _A = (
        (),
        (1 / 4,),
        (3 / 32, 9 / 32),
        (1932 / 2197, -7200 / 2197, 7296 / 2197),
        (439 / 216, -8.0, 3680 / 513, -845 / 4104),
        (-8 / 27, 2.0, -3544 / 2565, 1859 / 4104, -11 / 40),
    )
    _B4 = (25 / 216, 0.0, 1408 / 2565, 2197 / 4104, -1 / 5, 0.0)
    _B5 = (16 / 135, 0.0, 6656 / 12825, 28561 / 56430, -9 / 50, 2 / 55)

    def __init__(
        self,
        vector_field: VectorField2D,
        classifier: Classifier,
        config: IntegrationConfig | None = None,
    ) -> None:
        self._field = vector_field
        self._classifier = classifier
        self._cfg = config or IntegrationConfig()

    @property
    def config(self) -> IntegrationConfig: return self._cfg

    @property
    def field(self) -> VectorField2D: return self._field

    @property
    def classifier(self) -> Classifier: return self._classifier

    # -------- steppers --------
    def _rk4(self, x0: FloatArray, dt: FloatArray, sign: float) -> FloatArray:
        h = (sign * dt)[:, None]
        k1 = self._field.sample(x0)
        k2 = self._field.sample(x0 + 0.5 * h * k1)
        k3 = self._field.sample(x0 + 0.5 * h * k2)
        k4 = self._field.sample(x0 + h * k3)
        return x0 + (h / 6.0) * (k1 + 2 * k2 + 2 * k3 + k4)

    def _rk45(self, x0: FloatArray, dt: FloatArray, sign: float) -> tuple[FloatArray, FloatArray]:
        h = (sign * dt)[:, None]
        ks: list[FloatArray] = []
        for coeffs in self._A:
            xs = x0
            for a, k in zip(coeffs, ks):
                xs = xs + h * a * k
            ks.append(self._field.sample(xs))
        x4 = x0
        x5 = x0
        for b4, b5, k in zip(self._B4, self._B5, ks):
            x4 = x4 + h * b4 * k
            x5 = x5 + h * b5 * k
        r = x5 - x4
        err = np.sqrt(r[:, 0] * r[:, 0] + r[:, 1] * r[:, 1])
        return x4, err

    def _boundary_exit(self, p0: FloatArray, p1: FloatArray) -> FloatArray:
        """Segment parameter where p0->p1 leaves the rectangle, inf if it stays inside."""
        lo, hi = self._field.lower, self._field.upper
        d = p1 - p0
        t = np.full(p0.shape[0], np.inf)
        with np.errstate(divide="ignore", invalid="ignore"):
            for ax in (0, 1):
                over = p1[:, ax] > hi[ax]
                under = p1[:, ax] < lo[ax]
                t = np.where(over, np.minimum(t, (hi[ax] - p0[:, ax]) / d[:, ax]), t)
                t = np.where(under, np.minimum(t, (lo[ax] - p0[:, ax]) / d[:, ax]), t)
        return np.clip(t, 0.0, np.inf)

    # -------- advection --------
    def _finish(self, particles: ParticleBatch, idx: NDArray[np.intp], reason: Termination) -> None:
        if idx.size == 0:
            return
        x = particles.position[idx]
        codes = np.full(idx.size, int(reason), dtype=np.int8)
        label, dist, codes = self._classifier.classify(x, codes, self._field)
        particles.label[idx] = label
        particles.distance[idx] = dist
        particles.termination[idx] = codes
        particles.done[idx] = True

    def advance(
        self,
        particles: ParticleBatch,
        indices: NDArray[np.intp] | None,
        num_steps: int,
        step_budget: int,
    ) -> int:
        """Advance the unresolved particles among ``indices`` by up to ``num_steps`` sub-steps.

        Returns the number of accepted particle steps.
        """
        idx = particles.active if indices is None else np.asarray(indices, dtype=np.intp)
        idx = idx[~particles.done[idx]]
        sign = float(particles.direction.value)
        adaptive = self._cfg.method is IntegrationMethod.RK45
        tol = self._cfg.max_error
        dt_min, dt_max = self._cfg.dt_min, self._cfg.dt_max
        accepted_total = 0

        self._finish(particles, idx[particles.steps[idx] >= step_budget], Termination.MAX_STEPS)
        idx = idx[~particles.done[idx]]

        for _ in range(num_steps):
            if idx.size == 0:
                break
            x0 = particles.position[idx]
            dt = particles.timestep[idx]

            if adaptive:
                x1, err = self._rk45(x0, dt, sign)
                too_big = ~(err <= tol)  # NaN errors count as too big
                underflow = too_big & (dt <= dt_min)
                retry = too_big & ~underflow
                accepted = ~too_big
                particles.timestep[idx[retry]] = np.maximum(dt[retry] * 0.5, dt_min)
                grow = accepted & (err < tol / _GROW_FACTOR)
                particles.timestep[idx[grow]] = np.minimum(dt[grow] * 2.0, dt_max)
            else:
                x1 = self._rk4(x0, dt, sign)
                underflow = np.zeros(idx.size, dtype=bool)
                accepted = np.ones(idx.size, dtype=bool)

            finite = np.isfinite(x1).all(axis=1)
            failed = underflow | (accepted & ~finite)
            self._finish(particles, idx[failed], Termination.NUMERICAL_FAILURE)

            ok = accepted & finite
            if ok.any():
                sub = idx[ok]
                p0 = x0[ok]
                p1 = x1[ok]
                hit = self._classifier.first_hit(p0, p1)
                t_exit = self._boundary_exit(p0, p1)
                reached = hit.hit & (hit.t <= t_exit)
                leaves = ~reached & np.isfinite(t_exit)

                t_end = np.where(reached, hit.t, np.where(leaves, np.minimum(t_exit, 1.0), 1.0))
                d = p1 - p0
                seg = np.sqrt(d[:, 0] * d[:, 0] + d[:, 1] * d[:, 1])
                end = np.where(
                    reached[:, None], hit.position,
                    np.where(leaves[:, None], np.clip(p0 + t_end[:, None] * d, self._field.lower, self._field.upper), p1),
                )
                if reached.any():
                    # closest approach may lie past the entry point
                    r = hit.position - p0
                    t_end = np.where(reached, np.sqrt(r[:, 0] * r[:, 0] + r[:, 1] * r[:, 1]) / np.where(seg > 0.0, seg, 1.0), t_end)

                particles.position[sub] = end
                particles.arclength[sub] += t_end * seg
                particles.steps[sub] += 1
                accepted_total += int(sub.size)

                r_idx = sub[reached]
                particles.label[r_idx] = hit.label[reached]
                particles.distance[r_idx] = hit.distance[reached]
                particles.termination[r_idx] = Termination.REACHED_STRUCTURE
                particles.done[r_idx] = True

                self._finish(particles, sub[leaves], Termination.DOMAIN_BOUNDARY)

                budget = ~particles.done[sub] & (particles.steps[sub] >= step_budget)
                self._finish(particles, sub[budget], Termination.MAX_STEPS)

            idx = idx[~particles.done[idx]]
        return accepted_total


def advect(
    vector_field: VectorField2D,
    start: FloatArray | tuple[float, float],
    direction: Direction,
    structures: ConvergenceStructures,
    config: IntegrationConfig | None = None,
    *,
    step_budget: int = 10000,
) -> tuple[FloatArray, float, int, Termination, int, float]:
    """Integrate one particle to completion.

    Returns (end_position, arclength, steps_used, termination, label, distance).
    """
    cfg = config or IntegrationConfig()
    classifier = Classifier(structures, cfg.resolve_capture_radius(vector_field))
    integrator = StreamlineIntegrator(vector_field, classifier, cfg)
    particles = ParticleBatch.seed_at(np.asarray(start, dtype=np.float64), direction, cfg.timestep)
    while not particles.all_done:
        integrator.advance(particles, None, step_budget, step_budget)
    return (
        particles.position[0].copy(),
        float(particles.arclength[0]),
        int(particles.steps[0]),
        Termination(int(particles.termination[0])),
        int(particles.label[0]),
        float(particles.distance[0]),
    )
