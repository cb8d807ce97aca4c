from __future__ import annotations

import argparse
import logging
import sys
import tracemalloc

from topology2d import ConvergenceStructures, IntegrationConfig, TopologyComputation, setup_logging, sink_field


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--n", type=int, default=33, help="field resolution per axis")
    ap.add_argument("--method", choices=["rk4", "rk45"], default="rk4")
    ap.add_argument("--threshold", type=float, default=0.01)
    ap.add_argument("--particles-per-batch", type=int, default=10_000)
    ap.add_argument("--steps-per-batch", type=int, default=10_000)
    ap.add_argument("--csv", action="store_true", help="write the performance record as CSV to stdout")
    args = ap.parse_args()

    setup_logging(logging.DEBUG)
    field = sink_field((0.2, -0.1), nx=args.n, ny=args.n)
    structures = ConvergenceStructures(points=[0.2, -0.1], point_ids=[1], lines=[-1.0, 0.3, 1.0, 0.5], line_ids=[2])
    comp = TopologyComputation(field, structures, IntegrationConfig(method=args.method))

    tracemalloc.start()
    comp.start(
        refinement_threshold=args.threshold,
        particles_per_batch=args.particles_per_batch,
        steps_per_batch=args.steps_per_batch,
    )
    comp.join()
    current, peak = tracemalloc.get_traced_memory()
    tracemalloc.stop()

    snap = comp.latest_snapshot()
    print(f"run(n={args.n}, method={args.method}) nodes={snap.num_nodes} peak={peak/1e6:.1f} MB")
    if args.csv:
        comp.performance.write_csv(sys.stdout)

if __name__ == "__main__":
    main()
