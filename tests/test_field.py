from __future__ import annotations

import numpy as np
import pytest

from topology2d import ConvergenceStructures, VectorField2D, linear_field


def _grid(nx: int, ny: int, domain=(-1.0, 1.0, -1.0, 1.0)) -> np.ndarray:
    xs = np.linspace(domain[0], domain[1], nx)
    ys = np.linspace(domain[2], domain[3], ny)
    X, Y = np.meshgrid(xs, ys, indexing="xy")
    return np.stack([X.ravel(), Y.ravel()], axis=1).ravel()


def test_from_function_layout():
    f = VectorField2D.from_function(lambda X, Y: (X, 2.0 * Y), (0.0, 2.0, 0.0, 1.0), 3, 2)
    assert f.resolution == (3, 2)
    assert f.spacing == (1.0, 1.0)
    assert f.seeds.shape == (6, 2)
    # x index runs fastest
    np.testing.assert_allclose(f.seeds[:3, 1], 0.0)
    np.testing.assert_allclose(f.seeds[:3, 0], [0.0, 1.0, 2.0])
    assert f.vectors.shape == (2, 3, 2)
    np.testing.assert_allclose(f.vectors[1, 2], [2.0, 2.0])


def test_bilinear_sampling_is_exact_for_affine_fields():
    f = linear_field([[0.5, -1.0], [2.0, 0.25]], (0.1, -0.3), nx=7, ny=5)
    rng = np.random.default_rng(1)
    x = rng.uniform(-1.0, 1.0, size=(50, 2))
    expected = x @ np.array([[0.5, -1.0], [2.0, 0.25]]).T + np.array([0.1, -0.3])
    np.testing.assert_allclose(f.sample(x), expected, atol=1e-12)


def test_sample_clamps_and_propagates_nan():
    f = linear_field(np.eye(2), nx=3, ny=3)
    u = f.sample(np.array([[5.0, 0.0], [np.nan, 0.0]]))
    np.testing.assert_allclose(u[0], [1.0, 0.0])
    assert np.isnan(u[1]).all()


def test_contains_includes_boundary():
    f = linear_field(np.eye(2), nx=2, ny=2)
    mask = f.contains(np.array([[1.0, 1.0], [1.0 + 1e-9, 0.0], [0.0, -1.0]]))
    assert mask.tolist() == [True, False, True]


def test_arrays_are_read_only():
    f = linear_field(np.eye(2), nx=2, ny=2)
    with pytest.raises(ValueError):
        f.seeds[0, 0] = 3.0
    with pytest.raises(ValueError):
        f.vectors[0, 0, 0] = 3.0


def test_masked_vectors_are_accepted():
    pos = _grid(2, 2)
    vec = np.array([1.0, 0.0, np.nan, np.nan, 1.0, 0.0, 1.0, 0.0])
    f = VectorField2D((2, 2), (-1.0, 1.0, -1.0, 1.0), pos, vec)
    assert np.isnan(f.vectors[0, 1]).all()


@pytest.mark.parametrize(
    "resolution,domain,npos,nvec",
    [
        ((1, 3), (-1.0, 1.0, -1.0, 1.0), 6, 6),
        ((2, 2), (1.0, -1.0, -1.0, 1.0), 8, 8),
        ((2, 2), (-1.0, 1.0, -1.0, np.inf), 8, 8),
        ((2, 2), (-1.0, 1.0, -1.0, 1.0), 6, 8),
        ((2, 2), (-1.0, 1.0, -1.0, 1.0), 8, 10),
    ],
)
def test_malformed_fields_are_rejected(resolution, domain, npos, nvec):
    with pytest.raises(ValueError):
        VectorField2D(resolution, domain, np.zeros(npos), np.zeros(nvec))


def test_positions_outside_domain_are_rejected():
    pos = _grid(2, 2)
    pos[0] = -1.5
    with pytest.raises(ValueError):
        VectorField2D((2, 2), (-1.0, 1.0, -1.0, 1.0), pos, np.zeros(8))


def test_structures_shapes_and_labels():
    s = ConvergenceStructures(
        points=[0.0, 0.0, 0.5, 0.5], point_ids=[4, 2],
        lines=[-1.0, 0.0, 1.0, 0.0], line_ids=[4],
    )
    assert s.points.shape == (2, 2)
    assert s.lines.shape == (1, 2, 2)
    assert s.labels.tolist() == [2, 4]
    assert len(s) == 3


def test_empty_structures():
    s = ConvergenceStructures()
    assert s.points.shape == (0, 2)
    assert s.lines.shape == (0, 2, 2)
    assert len(s) == 0


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(points=[0.0, 0.0, 1.0], point_ids=[1]),
        dict(points=[0.0, 0.0], point_ids=[1, 2]),
        dict(points=[0.0, 0.0], point_ids=[1.5]),
        dict(lines=[0.0, 0.0, 1.0], line_ids=[1]),
        dict(lines=[0.0, 0.0, 1.0, 1.0], line_ids=[]),
        dict(lines=[0.5, 0.5, 0.5, 0.5], line_ids=[1]),
        dict(points=[np.nan, 0.0], point_ids=[1]),
    ],
)
def test_malformed_structures_are_rejected(kwargs):
    with pytest.raises(ValueError):
        ConvergenceStructures(**kwargs)
