from __future__ import annotations

import numpy as np
import pytest

from topology2d import (
    ComputationSnapshot,
    ComputationState,
    ConvergenceStructures,
    Direction,
    IntegrationMethod,
    NpzResultWriter,
    ParticleBatch,
    PendingParticles,
    TopologyComputation,
    linear_field,
    load_metadata,
    load_npz,
    save_npz,
    sink_field,
    uniform_field,
)


def make_snapshot() -> ComputationSnapshot:
    seeds = np.array([[0.25, 0.75], [0.5, 0.5]])
    fwd = ParticleBatch.seed_at(seeds, Direction.FORWARD, 0.01)
    bwd = ParticleBatch.seed_at(seeds, Direction.BACKWARD, 0.01)
    fwd.position[1] = [0.55, 0.45]
    fwd.steps[1] = 5
    fwd.done[0] = True
    fwd.termination[0] = 1
    return ComputationSnapshot.build(
        vertices=np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]),
        indices=np.array([[0, 1, 2]]),
        labels_forward=np.array([1, 2, -1]),
        labels_backward=np.array([-1, -1, 3]),
        distances_forward=np.array([0.0, 0.001, 0.0]),
        distances_backward=np.array([0.0, 0.0, 0.25]),
        terminations_forward=np.array([0, 0, 1]),
        terminations_backward=np.array([1, 1, 2]),
        state=ComputationState(
            method=IntegrationMethod.RK45, integration_timestep=0.02, max_integration_error=1e-7,
            min_timestep=0.001, max_timestep=1.0, capture_radius=0.004,
            num_integration_steps_performed=321, num_rounds=2, round_sizes=(2, 1),
        ),
        pending=PendingParticles.capture(fwd, bwd),
        cancelled=True,
        sequence=17,
    )


def test_npz_round_trip(tmp_path):
    snap = make_snapshot()
    path = str(tmp_path / "snap.npz")
    save_npz(snap, path, metadata={"case": "unit"})
    back = load_npz(path)

    for name in ("vertices", "indices", "labels_forward", "labels_backward", "distances_forward",
                 "distances_backward", "terminations_forward", "terminations_backward"):
        np.testing.assert_array_equal(getattr(back, name), getattr(snap, name), err_msg=name)
        assert not getattr(back, name).flags.writeable
    assert back.state == snap.state
    assert back.cancelled and not back.finished
    assert back.error is None
    assert back.sequence == 17
    np.testing.assert_array_equal(back.pending.seeds, snap.pending.seeds)
    for name in ("position", "steps", "done", "termination", "timestep"):
        np.testing.assert_array_equal(getattr(back.pending.forward, name), getattr(snap.pending.forward, name))
    assert back.pending.forward.steps.dtype == np.int64
    assert load_metadata(path) == {"case": "unit"}


def test_error_is_persisted(tmp_path):
    snap = ComputationSnapshot.build(
        vertices=np.zeros((0, 2)), indices=np.zeros((0, 3), dtype=int),
        labels_forward=np.zeros(0, dtype=int), labels_backward=np.zeros(0, dtype=int),
        distances_forward=np.zeros(0), distances_backward=np.zeros(0),
        terminations_forward=np.zeros(0, dtype=int), terminations_backward=np.zeros(0, dtype=int),
        state=ComputationState(), finished=True, error="MemoryError: out of memory",
    )
    path = str(tmp_path / "failed.npz")
    save_npz(snap, path)
    back = load_npz(path)
    assert back.finished
    assert back.error == "MemoryError: out of memory"
    assert load_metadata(path) == {}


def test_incompatible_schema_is_rejected(tmp_path):
    path = str(tmp_path / "old.npz")
    np.savez(path, schema_version=99)
    with pytest.raises(ValueError):
        load_npz(path)


def test_writer_saves_every_nth_snapshot_and_the_final_one(tmp_path):
    comp = TopologyComputation(
        sink_field(nx=3, ny=3), ConvergenceStructures(points=[0.0, 0.0], point_ids=[1]),
    )
    writer = NpzResultWriter(str(tmp_path / "result_{sequence:04d}.npz"), every=2, metadata={"run": 1})
    comp.add_listener(writer)
    comp.start(refinement_threshold=0.5, distance_difference_threshold=1.0, steps_per_batch=10)
    try:
        assert comp.join(timeout=60.0)
    finally:
        comp.terminate()

    final = comp.latest_snapshot()
    assert writer.last_path.endswith(f"result_{final.sequence:04d}.npz")
    # every second in-run snapshot plus the final one
    assert writer.num_written == (final.sequence - 1) // 2 + 1
    back = load_npz(writer.last_path)
    assert back.finished
    np.testing.assert_array_equal(back.vertices, final.vertices)
    assert load_metadata(writer.last_path) == {"run": 1}
    if final.sequence >= 3:
        assert load_metadata(str(tmp_path / "result_0002.npz")) == {"run": 1}


def test_writer_rejects_non_positive_interval(tmp_path):
    with pytest.raises(ValueError):
        NpzResultWriter(str(tmp_path / "x.npz"), every=0)


def test_field_builders():
    f = linear_field([[0.0, 1.0], [-1.0, 0.0]], nx=3, ny=3)
    np.testing.assert_allclose(f.sample(np.array([[0.5, 0.25]])), [[0.25, -0.5]])
    s = sink_field((0.2, 0.1))
    np.testing.assert_allclose(s.sample(np.array([[0.2, 0.1]])), [[0.0, 0.0]], atol=1e-15)
    u = uniform_field((0.3, -0.4))
    assert u.resolution == (2, 2)
    np.testing.assert_allclose(u.sample(np.array([[0.9, -0.9]])), [[0.3, -0.4]])
    with pytest.raises(ValueError):
        linear_field(np.eye(3))
