import logging
from typing import Any, Optional

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402

from geometry.mesh import Mesh  # noqa: E402

logger = logging.getLogger("device_solver")


def plot_mesh(
    mesh: Mesh,
    ax=None,
    y_inverse: bool = False,
    region_colors: Optional[dict[str, Any]] = None,
    edge_color: str = "k",
    no_axes: bool = False,
    output: str | None = None,
):
    """
    Draw a 2D triangle mesh with one face color per region.

    Parameters
    ----------
    mesh :
        The :class:`~geometry.mesh.Mesh` instance to draw.
    ax : matplotlib.axes.Axes, optional
        Axis to draw into. A new figure is created when omitted.
    y_inverse : bool, optional
        If ``True``, the y axis points downward (process-simulator convention).
    region_colors : dict[str, Any], optional
        Optional mapping ``region name -> color``.
    edge_color :
        Color used for cell edges.
    no_axes : bool, optional
        If ``True``, hide axis decorations.
    output : str, optional
        When given, the figure is written to this path.

    Returns
    -------
    matplotlib.figure.Figure or None
        The figure drawn into, or ``None`` when the mesh is not 2D.
    """
    if mesh.dimension != 2:
        logger.warning("Mesh plotting is only available for 2D meshes.")
        return None
    if mesh.n_cells == 0:
        logger.warning("Mesh has no cells to plot.")
        return None

    if ax is None:
        fig, ax = plt.subplots(figsize=(6, 6))
    else:
        fig = ax.figure

    cmap = plt.get_cmap("tab10")
    for ridx, info in enumerate(mesh.regions):
        tris = mesh.cells[mesh.cell_region == ridx]
        if len(tris) == 0:
            continue
        color = (region_colors or {}).get(info.name, cmap(ridx % 10))
        ax.tripcolor(
            mesh.points[:, 0],
            mesh.points[:, 1],
            tris,
            facecolors=np.zeros(len(tris)),
            cmap=matplotlib.colors.ListedColormap([color]),
            edgecolors=edge_color,
            linewidth=0.3,
        )
        centroid = mesh.points[np.unique(tris)].mean(axis=0)
        ax.annotate(info.name, centroid, ha="center", va="center", fontsize=8)

    ax.set_aspect("equal")
    ax.set_xlabel("x [um]")
    ax.set_ylabel("y [um]")
    if y_inverse:
        ax.invert_yaxis()
    if no_axes:
        ax.set_axis_off()

    if output:
        fig.savefig(output, bbox_inches="tight")
        logger.info("Saved mesh plot to %s", output)
    return fig
