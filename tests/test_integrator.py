from __future__ import annotations

import math

import numpy as np
import pytest

from topology2d import (
    NO_LABEL,
    Classifier,
    ConvergenceStructures,
    Direction,
    IntegrationConfig,
    IntegrationMethod,
    ParticleBatch,
    StreamlineIntegrator,
    Termination,
    VectorField2D,
    advect,
    linear_field,
    sink_field,
    uniform_field,
)

ROTATION = [[0.0, -1.0], [1.0, 0.0]]


def rotated(x0: np.ndarray, angle: float) -> np.ndarray:
    c, s = math.cos(angle), math.sin(angle)
    return np.array([c * x0[0] - s * x0[1], s * x0[0] + c * x0[1]])


def swirl_field() -> VectorField2D:
    return VectorField2D.from_function(
        lambda X, Y: (-Y + 0.3 * np.sin(3.0 * X), X - 0.2 * Y + 0.1 * np.cos(2.0 * Y)),
        (-1.0, 1.0, -1.0, 1.0), 41, 41,
    )


def test_config_validation_and_defaults():
    cfg = IntegrationConfig(method="rk45")
    assert cfg.method is IntegrationMethod.RK45
    assert cfg.timestep == 0.01
    assert cfg.max_error == 1e-6
    assert cfg.dt_min == pytest.approx(0.01 / 1024)
    assert cfg.dt_max == pytest.approx(0.01 * 1024)
    assert IntegrationConfig().resolve_capture_radius(uniform_field((1.0, 0.0))) == pytest.approx(1e-3 * math.sqrt(8.0))
    for bad in (dict(timestep=0.0), dict(max_error=-1.0), dict(min_timestep=1.0),
                dict(max_timestep=0.001), dict(capture_radius=0.0), dict(method="euler")):
        with pytest.raises(ValueError):
            IntegrationConfig(**bad)


@pytest.mark.parametrize("direction,sign", [(Direction.FORWARD, 1.0), (Direction.BACKWARD, -1.0)])
def test_rk4_temporal_order(direction: Direction, sign: float) -> None:
    field = linear_field(ROTATION, nx=5, ny=5)
    x0 = np.array([0.5, 0.1])
    T = 1.0

    def run(dt: float) -> float:
        n = int(round(T / dt))
        end, _, steps, reason, label, _ = advect(
            field, x0, direction, ConvergenceStructures(), IntegrationConfig(timestep=dt), step_budget=n,
        )
        assert steps == n
        assert reason is Termination.MAX_STEPS
        assert label == NO_LABEL
        return float(np.linalg.norm(end - rotated(x0, sign * n * dt)))

    e1 = run(0.2)
    e2 = run(0.1)
    observed_order = math.log(e1 / max(e2, 1e-15), 2)
    assert observed_order > 3.4, observed_order


def test_arclength_follows_the_circle():
    field = linear_field(ROTATION, nx=5, ny=5)
    _, arclength, steps, _, _, _ = advect(
        field, (0.5, 0.0), Direction.FORWARD, ConvergenceStructures(),
        IntegrationConfig(timestep=0.01), step_budget=100,
    )
    assert steps == 100
    assert arclength == pytest.approx(0.5 * 1.0, rel=1e-3)


@pytest.mark.parametrize("method", ["rk4", "rk45"])
def test_sink_reaches_point_structure(method: str) -> None:
    field = sink_field((0.1, -0.2))
    structures = ConvergenceStructures(points=[0.1, -0.2], point_ids=[4])
    cfg = IntegrationConfig(method=method)
    radius = cfg.resolve_capture_radius(field)
    for start in [(0.8, 0.3), (-1.0, -1.0), (1.0, 1.0)]:
        _, _, steps, reason, label, distance = advect(field, start, Direction.FORWARD, structures, cfg)
        assert reason is Termination.REACHED_STRUCTURE
        assert label == 4
        assert 0.0 <= distance <= radius
        assert steps < 2000


def test_rk45_takes_fewer_steps_than_rk4():
    field = sink_field()
    structures = ConvergenceStructures(points=[0.0, 0.0], point_ids=[1])
    _, _, n4, _, _, _ = advect(field, (0.9, 0.7), Direction.FORWARD, structures, IntegrationConfig(method="rk4"))
    _, _, n45, r45, _, _ = advect(field, (0.9, 0.7), Direction.FORWARD, structures, IntegrationConfig(method="rk45"))
    assert r45 is Termination.REACHED_STRUCTURE
    assert n45 < n4


def test_line_structure_is_reached_by_crossing():
    field = uniform_field((1.0, 0.0))
    structures = ConvergenceStructures(lines=[0.5, -1.0, 0.5, 1.0], line_ids=[11])
    end, arclength, _, reason, label, distance = advect(
        field, (0.0, 0.3), Direction.FORWARD, structures, IntegrationConfig(timestep=0.07),
    )
    assert reason is Termination.REACHED_STRUCTURE
    assert label == 11
    assert distance == 0.0
    np.testing.assert_allclose(end, [0.5, 0.3], atol=1e-12)
    assert arclength == pytest.approx(0.5)


def test_leaving_the_domain_is_a_boundary_termination():
    field = uniform_field((1.0, 0.0))
    structures = ConvergenceStructures(points=[-0.5, 0.0], point_ids=[1])
    end, arclength, _, reason, label, distance = advect(
        field, (0.9, 0.0), Direction.FORWARD, structures, IntegrationConfig(timestep=0.03),
    )
    assert reason is Termination.DOMAIN_BOUNDARY
    assert label == NO_LABEL
    assert end[0] == pytest.approx(1.0, abs=1e-12)
    assert distance == pytest.approx(0.0, abs=1e-12)
    assert arclength == pytest.approx(0.1, abs=1e-12)


def test_seed_on_boundary_with_outward_field_terminates_immediately():
    field = uniform_field((1.0, 0.0))
    end, arclength, steps, reason, label, distance = advect(
        field, (1.0, 0.2), Direction.FORWARD, ConvergenceStructures(), IntegrationConfig(),
    )
    assert reason is Termination.DOMAIN_BOUNDARY
    assert label == NO_LABEL
    assert distance == 0.0
    assert arclength == 0.0
    assert steps <= 1
    np.testing.assert_array_equal(end, [1.0, 0.2])


def test_backward_integration_follows_the_reversed_field():
    field = uniform_field((1.0, 0.0))
    structures = ConvergenceStructures(lines=[-0.5, -1.0, -0.5, 1.0], line_ids=[2])
    _, _, _, reason, label, _ = advect(field, (0.0, 0.0), Direction.BACKWARD, structures)
    assert reason is Termination.REACHED_STRUCTURE
    assert label == 2


def test_masked_cells_cause_numerical_failure():
    field = VectorField2D.from_function(
        lambda X, Y: (np.where(X > 0.25, np.nan, 1.0), np.zeros_like(Y)),
        (-1.0, 1.0, -1.0, 1.0), 9, 9,
    )
    end, _, _, reason, label, distance = advect(
        field, (-0.5, 0.0), Direction.FORWARD, ConvergenceStructures(), IntegrationConfig(timestep=0.05),
    )
    assert reason is Termination.NUMERICAL_FAILURE
    assert label == NO_LABEL
    assert distance == 0.0
    assert np.isfinite(end).all()


def test_rk45_step_underflow_is_a_numerical_failure():
    field = linear_field(ROTATION, nx=5, ny=5)
    cfg = IntegrationConfig(method="rk45", timestep=0.1, max_error=1e-300, min_timestep=0.05)
    end, _, steps, reason, _, _ = advect(field, (0.5, 0.0), Direction.FORWARD, ConvergenceStructures(), cfg)
    assert reason is Termination.NUMERICAL_FAILURE
    assert steps == 0
    np.testing.assert_array_equal(end, [0.5, 0.0])


@pytest.mark.parametrize("method", ["rk4", "rk45"])
def test_trajectories_do_not_depend_on_batch_composition(method: str) -> None:
    field = swirl_field()
    structures = ConvergenceStructures(points=[0.2, 0.1], point_ids=[1], lines=[0.7, -0.2, 0.9, 0.4], line_ids=[2])
    cfg = IntegrationConfig(method=method, timestep=0.02, max_error=1e-7)
    classifier = Classifier(structures, cfg.resolve_capture_radius(field))
    integrator = StreamlineIntegrator(field, classifier, cfg)
    rng = np.random.default_rng(3)
    seeds = rng.uniform(-0.9, 0.9, size=(12, 2))

    together = ParticleBatch.seed_at(seeds, Direction.FORWARD, cfg.timestep)
    while not together.all_done:
        integrator.advance(together, None, 50, 300)

    chunked = ParticleBatch.seed_at(seeds, Direction.FORWARD, cfg.timestep)
    while not chunked.all_done:
        for lo in range(0, 12, 5):
            integrator.advance(chunked, np.arange(lo, min(lo + 5, 12)), 7, 300)

    for name in ("position", "arclength", "steps", "timestep", "label", "distance", "termination"):
        np.testing.assert_array_equal(getattr(together, name), getattr(chunked, name), err_msg=name)

    for i in range(12):
        end, arclength, steps, reason, label, distance = advect(
            field, seeds[i], Direction.FORWARD, structures, cfg, step_budget=300,
        )
        np.testing.assert_array_equal(end, together.position[i])
        assert arclength == together.arclength[i]
        assert steps == together.steps[i]
        assert int(reason) == together.termination[i]
        assert label == together.label[i]
        assert distance == together.distance[i]


def test_advance_counts_accepted_steps_and_skips_finished_particles():
    field = linear_field(ROTATION, nx=5, ny=5)
    cfg = IntegrationConfig(timestep=0.01)
    integrator = StreamlineIntegrator(field, Classifier(ConvergenceStructures(), 0.01), cfg)
    batch = ParticleBatch.seed_at(np.array([[0.5, 0.0], [0.0, 0.5]]), Direction.FORWARD, cfg.timestep)
    assert integrator.advance(batch, None, 10, 15) == 20
    assert integrator.advance(batch, None, 10, 15) == 10
    assert batch.all_done
    assert batch.steps.tolist() == [15, 15]
    assert integrator.advance(batch, None, 10, 15) == 0
