from __future__ import annotations

from topology2d import ConvergenceStructures, IntegrationConfig, TopologyComputation, linear_field, setup_logging
from topology2d.plotting import plot_snapshot


def main() -> None:
    setup_logging()

    # saddle at the origin: forward streamlines leave along x, backward along y
    field = linear_field([[1.0, 0.0], [0.0, -1.0]], nx=17, ny=17)
    structures = ConvergenceStructures(
        lines=[
            0.95, -1.0, 0.95, 1.0,
            -0.95, -1.0, -0.95, 1.0,
            -1.0, 0.95, 1.0, 0.95,
            -1.0, -0.95, 1.0, -0.95,
        ],
        line_ids=[1, 2, 3, 4],
    )
    comp = TopologyComputation(field, structures, IntegrationConfig(method="rk45", timestep=0.02))
    comp.start(refinement_threshold=0.01, distance_difference_threshold=0.05)
    comp.join()

    snap = comp.latest_snapshot()
    print(
        f"{snap.num_nodes} nodes, {snap.num_triangles} triangles, "
        f"{snap.num_combined_labels()} combined labels after {snap.state.num_rounds} rounds"
    )
    plot_snapshot(snap, "labels", structures=structures)


if __name__ == "__main__":
    main()
