"""
Track-level triangulation: new landmarks and extra observations after resection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Mapping, Optional

import numpy as np

from seqsfm.config import SequentialSfMConfig
from seqsfm.errors import TriangulationFailure
from seqsfm.geometry.camera import bearing_vectors, max_parallax_deg
from seqsfm.geometry.triangulation import triangulate_track
from seqsfm.sfm_inc.data_structures import Landmark, ReconstructionState, Track
from seqsfm.sfm_inc.tracks import SharedTrackVisibilityHelper

logger = logging.getLogger(__name__)


@dataclass
class TriangulationReport:
    added: int = 0
    extended: int = 0
    rejected: int = 0


def _squared_residual(state: ReconstructionState, features, view_id: int, feat_idx: int, X: np.ndarray):
    pose = state.poses[view_id]
    if pose.depth(X)[0] <= 0.0:
        return np.inf
    projected = state.intrinsic_of(view_id).project(pose, X)[0]
    observed = features[view_id][feat_idx]
    return float(np.sum((projected - observed) ** 2))


def triangulate_landmark(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    track: Track,
    config: SequentialSfMConfig,
) -> Optional[Landmark]:
    """
    Triangulate a track from its posed views and keep the consistent observations.

    Returns:
        The landmark, or None when fewer than two observations survive their
        view thresholds or the parallax is below the minimum angle.

    Raises:
        TriangulationFailure: Degenerate geometry or cheirality violation.
    """
    posed = sorted(view_id for view_id in track if view_id in state.poses)
    if len(posed) < 2:
        raise TriangulationFailure(f"track seen by {len(posed)} posed views")

    bearings = []
    for view_id in posed:
        pixel = features[view_id][track[view_id]].reshape(1, 2)
        bearings.append(bearing_vectors(state.intrinsic_of(view_id).normalize(pixel))[0])
    X = triangulate_track(
        [state.poses[v].R for v in posed],
        [state.poses[v].t for v in posed],
        np.asarray(bearings),
        method=config.triangulation_method,
    )

    observations: Dict[int, int] = {}
    for view_id in posed:
        if _squared_residual(state, features, view_id, track[view_id], X) <= state.thresholds[view_id]:
            observations[view_id] = track[view_id]
    if len(observations) < 2:
        return None
    centers = np.array([state.poses[v].center for v in observations])
    if max_parallax_deg(centers, X) < config.min_triangulation_angle_deg:
        return None
    return Landmark(X=X, observations=observations)


def triangulate_new_tracks(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    view_ids: Iterable[int],
    config: SequentialSfMConfig,
) -> TriangulationReport:
    """
    Triangulate the tracks of newly posed views.

    Tracks without a landmark that are also seen by another posed view are
    triangulated. Existing landmarks gain the new views' observations whose
    residual is within the view threshold.
    """
    report = TriangulationReport()
    view_ids = sorted(set(view_ids))
    visited = set()

    for view_id in view_ids:
        for track_id in sorted(visibility.tracks_in_view(view_id)):
            track = state.tracks[track_id]
            landmark = state.landmarks.get(track_id)

            if landmark is not None:
                if view_id in landmark.observations:
                    continue
                feat_idx = track[view_id]
                if _squared_residual(state, features, view_id, feat_idx, landmark.X) <= state.thresholds[view_id]:
                    landmark.observations[view_id] = feat_idx
                    report.extended += 1
                continue

            if track_id in visited:
                continue
            visited.add(track_id)
            if sum(1 for v in track if v in state.poses) < 2:
                continue
            try:
                new_landmark = triangulate_landmark(state, features, track, config)
            except TriangulationFailure as e:
                logger.debug(f"Track {track_id}: {e}")
                report.rejected += 1
                continue
            if new_landmark is None:
                report.rejected += 1
                continue
            state.landmarks[track_id] = new_landmark
            report.added += 1

    logger.info(
        f"Triangulation for views {view_ids}: {report.added} added, "
        f"{report.extended} extended, {report.rejected} rejected"
    )
    return report


__all__ = ["TriangulationReport", "triangulate_landmark", "triangulate_new_tracks"]
