"""
Resection of new views against the current landmarks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Tuple

import numpy as np

from seqsfm.config import SequentialSfMConfig
from seqsfm.errors import ResectionFailure
from seqsfm.geometry.pnp import MINIMUM_SAMPLES, estimate_camera_pose_pnp, refine_camera_pose
from seqsfm.sfm_inc.data_structures import Pose, ReconstructionState
from seqsfm.sfm_inc.residuals import a_contrario_threshold, image_area_for
from seqsfm.sfm_inc.tracks import SharedTrackVisibilityHelper

logger = logging.getLogger(__name__)


def rank_resection_candidates(
    state: ReconstructionState,
    visibility: SharedTrackVisibilityHelper,
    min_tracks: int = 6,
) -> List[Tuple[int, int]]:
    """
    Remaining views ordered by how many triangulated tracks they observe.

    Returns:
        (view id, count) for views with count >= ``min_tracks``, sorted by
        descending count then ascending view id.
    """
    ranked = []
    for view_id in state.remaining_view_ids:
        count = sum(1 for track_id in visibility.tracks_in_view(view_id) if track_id in state.landmarks)
        if count >= min_tracks:
            ranked.append((view_id, count))
    ranked.sort(key=lambda item: (-item[1], item[0]))
    return ranked


def find_images_with_possible_resection(
    state: ReconstructionState,
    visibility: SharedTrackVisibilityHelper,
    min_tracks: int = 6,
) -> List[int]:
    """View ids worth attempting next; empty when growth is over."""
    return [view_id for view_id, _ in rank_resection_candidates(state, visibility, min_tracks)]


def gather_correspondences(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    view_id: int,
) -> Tuple[List[int], np.ndarray, np.ndarray]:
    """
    2D-3D correspondences of a view: its tracks that already have a landmark.

    Returns:
        (track ids, world points (N, 3), pixel positions (N, 2)).
    """
    track_ids = sorted(t for t in visibility.tracks_in_view(view_id) if t in state.landmarks)
    if not track_ids:
        return [], np.zeros((0, 3)), np.zeros((0, 2))
    points_3d = np.array([state.landmarks[t].X for t in track_ids])
    feat_idx = np.array([state.tracks[t][view_id] for t in track_ids], dtype=np.int64)
    points_2d = np.asarray(features[view_id], dtype=np.float64)[feat_idx]
    return track_ids, points_3d, points_2d


@dataclass
class ResectionResult:
    view_id: int
    pose: Pose
    # Squared reprojection error bound (pixels^2) derived for this view.
    threshold: float
    track_ids: List[int]
    inlier_mask: np.ndarray

    @property
    def num_correspondences(self) -> int:
        return len(self.track_ids)

    @property
    def num_inliers(self) -> int:
        return int(np.sum(self.inlier_mask))

    @property
    def inlier_track_ids(self) -> List[int]:
        return [t for t, keep in zip(self.track_ids, self.inlier_mask) if keep]


def _squared_residuals(state: ReconstructionState, view_id: int, pose: Pose, points_3d, points_2d):
    projected = state.intrinsic_of(view_id).project(pose, points_3d)
    squared = np.sum((projected - points_2d) ** 2, axis=1)
    depth = pose.depth(points_3d)
    squared[~np.isfinite(squared)] = np.inf
    return squared, depth


def resect(
    view_id: int,
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    config: SequentialSfMConfig,
    rng: Optional[np.random.Generator] = None,
) -> ResectionResult:
    """
    Estimate the pose of a remaining view from its 2D-3D correspondences.

    The provisional RANSAC threshold only selects a pose hypothesis. The final
    inliers use the a-contrario threshold computed from the residuals of this
    view under that pose.

    Raises:
        ResectionFailure: Too few correspondences or inliers, or no solver result.
    """
    if view_id not in state.remaining_view_ids:
        raise ResectionFailure(view_id, "view is not waiting for resection")
    intrinsic = state.intrinsic_of(view_id)
    if not intrinsic.is_valid():
        raise ResectionFailure(view_id, "invalid intrinsic")

    method = config.resection_method
    sample_size = MINIMUM_SAMPLES[method]
    track_ids, points_3d, points_2d = gather_correspondences(state, features, visibility, view_id)
    if len(track_ids) < max(config.min_resection_tracks, sample_size):
        raise ResectionFailure(view_id, f"only {len(track_ids)} 2D-3D correspondences")

    result = estimate_camera_pose_pnp(
        intrinsic.K,
        intrinsic.dist,
        points_3d,
        points_2d,
        method=method,
        reprojection_error=config.resection_ransac_threshold_px,
        max_iterations=config.max_resection_ransac_iterations,
        rng=rng,
    )
    if result is None:
        raise ResectionFailure(view_id, f"{method.value} solver found no pose")

    lower = config.min_threshold_px ** 2
    upper = config.max_threshold_px ** 2
    area = image_area_for(state, view_id, features.get(view_id))

    def classify(pose: Pose) -> Tuple[float, np.ndarray]:
        squared, depth = _squared_residuals(state, view_id, pose, points_3d, points_2d)
        in_front = depth > 0
        ac = a_contrario_threshold(squared[in_front], sample_size, area, lower=lower, upper=upper)
        threshold = ac.threshold if ac is not None else upper
        return threshold, in_front & (squared <= threshold)

    pose = Pose(result.R, result.t)
    threshold, inliers = classify(pose)
    if inliers.sum() < config.min_resection_inliers:
        raise ResectionFailure(
            view_id, f"{int(inliers.sum())} inliers below {config.min_resection_inliers}"
        )

    R, t = refine_camera_pose(intrinsic.K, intrinsic.dist, pose.R, pose.t, points_3d[inliers], points_2d[inliers])
    refined = Pose(R, t)
    refined_threshold, refined_inliers = classify(refined)
    if refined_inliers.sum() >= inliers.sum():
        pose, threshold, inliers = refined, refined_threshold, refined_inliers

    logger.debug(
        f"Resection of view {view_id}: {int(inliers.sum())}/{len(track_ids)} inliers, "
        f"threshold {np.sqrt(threshold):.3f}px"
    )
    return ResectionResult(
        view_id=view_id,
        pose=pose,
        threshold=threshold,
        track_ids=track_ids,
        inlier_mask=inliers,
    )


def apply_resection(state: ReconstructionState, result: ResectionResult) -> None:
    """Record the pose and threshold, then attach the inlier observations."""
    state.add_pose(result.view_id, result.pose, result.threshold)
    for track_id in result.inlier_track_ids:
        state.landmarks[track_id].observations[result.view_id] = state.tracks[track_id][result.view_id]


__all__ = [
    "rank_resection_candidates",
    "find_images_with_possible_resection",
    "gather_correspondences",
    "ResectionResult",
    "resect",
    "apply_resection",
]
