from __future__ import annotations

import numpy as np

from topology2d import ConvergenceStructures, NpzResultWriter, TopologyComputation, VectorField2D, setup_logging
from topology2d.plotting import PlotConfig, watch_computation


def two_sinks(X: np.ndarray, Y: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Two spiralling sinks at (+-0.4, 0) separated by the y axis."""
    cx = np.where(X >= 0.0, 0.4, -0.4)
    dx, dy = X - cx, Y
    return -dx - 0.5 * dy, -dy + 0.5 * dx


def main() -> None:
    setup_logging()

    field = VectorField2D.from_function(two_sinks, (-1.0, 1.0, -0.75, 0.75), 81, 61)
    structures = ConvergenceStructures(points=[-0.4, 0.0, 0.4, 0.0], point_ids=[1, 2])
    comp = TopologyComputation(field, structures)
    comp.add_listener(NpzResultWriter("two_sinks_{sequence:04d}.npz", every=10))
    comp.start(refinement_threshold=0.002, particles_per_batch=2000, steps_per_batch=200)
    try:
        watch_computation(comp, config=PlotConfig(quantity="distances", cmap="magma", show_mesh=True))
    finally:
        comp.terminate()


if __name__ == "__main__":
    main()
