from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any

import numpy as np
import matplotlib.pyplot as plt
from matplotlib import animation
from matplotlib.tri import Triangulation

from .field import ConvergenceStructures, FloatArray
from .results import ComputationSnapshot

if TYPE_CHECKING:
    from .computation import TopologyComputation

QUANTITIES = (
    "labels",
    "labels_forward",
    "labels_backward",
    "distances",
    "distances_forward",
    "distances_backward",
    "terminations_forward",
    "terminations_backward",
    "gradients",
)


def snapshot_quantity(snapshot: ComputationSnapshot, quantity: str) -> FloatArray:
    """Per-vertex values of ``quantity`` as float64 (N,)."""
    if quantity == "labels":
        values = snapshot.combined_labels()
    elif quantity == "distances":
        values = snapshot.combined_distances()
    elif quantity == "gradients":
        values = snapshot.gradients()["combined"]
    elif quantity in QUANTITIES:
        values = getattr(snapshot, quantity)
    else:
        raise ValueError(f"Unknown quantity {quantity!r}; expected one of {QUANTITIES}.")
    return np.asarray(values, dtype=np.float64)


@dataclass(slots=True)
class PlotConfig:
    quantity: str = "labels"
    cmap: str = "viridis"
    show_mesh: bool = False
    show_structures: bool = True
    figsize: tuple[float, float] = (7.0, 6.0)


def _draw(ax: Any, snapshot: ComputationSnapshot, config: PlotConfig) -> Any:
    values = snapshot_quantity(snapshot, config.quantity)
    x = snapshot.vertices
    if snapshot.num_triangles:
        tri = Triangulation(x[:, 0], x[:, 1], snapshot.indices)
        artist = ax.tripcolor(tri, values, shading="gouraud", cmap=config.cmap)
        if config.show_mesh:
            ax.triplot(tri, color="k", linewidth=0.2, alpha=0.4)
    else:
        artist = ax.scatter(x[:, 0], x[:, 1], c=values, s=12.0, cmap=config.cmap)
    return artist


def _draw_structures(ax: Any, structures: ConvergenceStructures) -> None:
    p = structures.points
    if p.shape[0]:
        ax.scatter(p[:, 0], p[:, 1], s=40.0, c="white", edgecolors="k", linewidths=0.8, zorder=3)
    for seg in structures.lines:
        ax.plot(seg[:, 0], seg[:, 1], color="white", linewidth=2.0, zorder=3)
        ax.plot(seg[:, 0], seg[:, 1], color="k", linewidth=0.8, zorder=3)


def plot_snapshot(
    snapshot: ComputationSnapshot,
    quantity: str = "labels",
    ax: Any | None = None,
    show: bool = True,
    *,
    structures: ConvergenceStructures | None = None,
    config: PlotConfig | None = None,
) -> Any:
    """Color the snapshot mesh by a per-vertex quantity; returns the axes."""
    cfg = replace(config or PlotConfig(), quantity=quantity)
    if ax is None:
        fig, ax = plt.subplots(figsize=cfg.figsize)
    else:
        fig = ax.figure

    artist = _draw(ax, snapshot, cfg)
    fig.colorbar(artist, ax=ax, fraction=0.046, pad=0.04).set_label(quantity)
    if structures is not None and cfg.show_structures:
        _draw_structures(ax, structures)

    ax.set_aspect("equal", adjustable="box")
    ax.set_title(
        f"{quantity}: {snapshot.num_nodes} nodes, round {snapshot.state.num_rounds}"
        + (" (finished)" if snapshot.finished else "")
    )
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    if show:
        plt.show()
    return ax


def watch_computation(
    computation: TopologyComputation,
    *,
    config: PlotConfig | None = None,
    frames: int | None = None,
    interval_ms: int = 200,
    poll_timeout: float = 0.001,
    save_path: str | None = None,
    fps: int = 5,
    show: bool = True,
) -> animation.FuncAnimation:
    """Animate the snapshots of a running computation.

    Each frame polls ``latest_snapshot`` with a short timeout and redraws
    only when a newer snapshot has been published.
    """
    cfg = config or PlotConfig()
    xmin, xmax, ymin, ymax = computation.field.domain

    fig, ax = plt.subplots(figsize=cfg.figsize)
    ax.set_xlim(xmin, xmax)
    ax.set_ylim(ymin, ymax)
    ax.set_aspect("equal", adjustable="box")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    ttl = ax.set_title("waiting for results")
    if cfg.show_structures:
        _draw_structures(ax, computation.structures)

    last: dict[str, Any] = {"sequence": None, "artists": []}

    def _update(_i: int) -> list[Any]:
        snap = computation.latest_snapshot(timeout=poll_timeout, newer_than=last["sequence"])
        if snap is None or snap.num_nodes == 0:
            return [ttl]
        for artist in last["artists"]:
            artist.remove()
        before = set(ax.collections) | set(ax.lines)
        _draw(ax, snap, cfg)
        last["artists"] = [a for a in list(ax.collections) + list(ax.lines) if a not in before]
        last["sequence"] = snap.sequence
        state = "finished" if snap.finished else ("cancelled" if snap.cancelled else "running")
        ttl.set_text(f"{cfg.quantity}: {snap.num_nodes} nodes, round {snap.state.num_rounds} ({state})")
        return [ttl]

    anim = animation.FuncAnimation(
        fig, _update, frames=frames, interval=interval_ms, blit=False, cache_frame_data=False,
    )

    if save_path:
        if frames is None:
            raise ValueError("frames must be given when saving an animation.")
        if save_path.lower().endswith(".mp4"):
            writer = animation.FFMpegWriter(fps=fps, metadata={"artist": "topology2d"}, bitrate=1800)
            anim.save(save_path, writer=writer, dpi=150)
        elif save_path.lower().endswith(".gif"):
            anim.save(save_path, writer="pillow", fps=fps, dpi=100)
        else:
            raise ValueError("Unsupported extension. Use .mp4 or .gif")
    if show:
        plt.show()
    return anim
