"""
Visualization utilities for SfM reconstructions using Plotly.
"""

from __future__ import annotations

import plotly.graph_objs as go
import numpy as np

from seqsfm.sfm_inc.data_structures import ReconstructionState


def plot_reconstruction(state: ReconstructionState) -> go.Figure:
    """
    Create a 3D Plotly visualization of the SfM reconstruction.

    Args:
        state: ReconstructionState containing poses and landmarks.

    Returns:
        Plotly Figure object with 3D scatter plots of points and camera centers.
    """
    track_ids = sorted(state.landmarks)
    points_xyz = np.array([state.landmarks[t].X for t in track_ids]).reshape(-1, 3)
    # Color points by the number of views observing them.
    track_lengths = np.array([len(state.landmarks[t].observations) for t in track_ids])

    view_ids = sorted(state.poses)
    camera_centers = np.array([state.poses[v].center for v in view_ids]).reshape(-1, 3)

    fig = go.Figure()

    if len(points_xyz) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=points_xyz[:, 0],
                y=points_xyz[:, 1],
                z=points_xyz[:, 2],
                mode="markers",
                marker=dict(
                    size=2,
                    color=track_lengths,
                    colorscale="Viridis",
                    colorbar=dict(title="Views"),
                    opacity=0.8,
                ),
                name="3D Points",
                text=[f"Track {t}" for t in track_ids],
            )
        )

    if len(camera_centers) > 0:
        fig.add_trace(
            go.Scatter3d(
                x=camera_centers[:, 0],
                y=camera_centers[:, 1],
                z=camera_centers[:, 2],
                mode="markers",
                marker=dict(
                    size=8,
                    color=["orange" if v == state.reference_view_id else "red" for v in view_ids],
                    symbol="diamond",
                ),
                name="Camera Centers",
                text=[f"View {v}" for v in view_ids],
            )
        )

    fig.update_layout(
        title="SfM 3D Reconstruction",
        scene=dict(
            xaxis_title="X",
            yaxis_title="Y",
            zaxis_title="Z",
            aspectmode="data",
        ),
        width=800,
        height=600,
    )

    return fig


__all__ = ["plot_reconstruction"]
