"""
Seed selection and initial reconstruction from a pair or a triplet of views.

A good seed has many shared tracks and a wide baseline. Candidate pairs are
scored by the number of well-conditioned triangulated tracks, discounted when
the median parallax is below a reference angle.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

import numpy as np

from seqsfm.config import SequentialSfMConfig
from seqsfm.errors import ResectionFailure, SeedGeometryFailure, SeedSelectionFailure, TriangulationFailure
from seqsfm.geometry.camera import bearing_vectors, ray_angle_deg
from seqsfm.geometry.essential import estimate_relative_pose
from seqsfm.geometry.triangulation import triangulate_track
from seqsfm.sfm_inc.data_structures import Landmark, Pair, Pose, ReconstructionState, Triplet
from seqsfm.sfm_inc.resection import apply_resection, resect
from seqsfm.sfm_inc.residuals import a_contrario_threshold, image_area_for
from seqsfm.sfm_inc.structure import triangulate_new_tracks
from seqsfm.sfm_inc.tracks import SharedTrackVisibilityHelper

logger = logging.getLogger(__name__)

# Minimal sample of the five-point solver and the number of essential
# matrices it can return.
ESSENTIAL_SAMPLE_SIZE = 5
ESSENTIAL_MAX_MODELS = 10


def is_pair_set(pair: Optional[Sequence[int]]) -> bool:
    """A pinned pair is unset when missing or equal to (0, 0)."""
    return pair is not None and tuple(pair) != (0, 0)


def is_triplet_set(triplet: Optional[Sequence[int]]) -> bool:
    """A pinned triplet is unset when missing or when its third view is 0."""
    return triplet is not None and triplet[2] != 0


@dataclass
class PairGeometry:
    """Two-view reconstruction of a candidate seed pair."""

    pair: Pair
    # Pose of the second view; the first one is at R = I, t = 0.
    R: np.ndarray
    t: np.ndarray
    # Tracks kept after cheirality, residual and parallax checks.
    track_ids: List[int]
    points: np.ndarray
    # Squared reprojection error bound (pixels^2) of both views.
    threshold: float
    median_angle_deg: float
    num_shared: int

    @property
    def num_inliers(self) -> int:
        return len(self.track_ids)


@dataclass
class SeedCandidate:
    views: Tuple[int, ...]
    score: float
    num_shared: int


def _pair_score(geometry: PairGeometry, reference_angle_deg: float) -> float:
    return geometry.num_inliers * min(1.0, geometry.median_angle_deg / reference_angle_deg)


def estimate_pair_geometry(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    pair: Pair,
    config: SequentialSfMConfig,
) -> PairGeometry:
    """
    Relative pose and triangulated tracks of a view pair; the state is not modified.

    Raises:
        SeedGeometryFailure: Invalid intrinsics, too few shared tracks, no
            relative pose, or fewer than ``min_seed_inliers`` kept tracks.
    """
    view_a, view_b = pair
    intrinsic_a = state.intrinsic_of(view_a)
    intrinsic_b = state.intrinsic_of(view_b)
    if not (intrinsic_a.is_valid() and intrinsic_b.is_valid()):
        raise SeedGeometryFailure(f"Pair {pair}: invalid intrinsics")

    shared = visibility.get_tracks_in_images(pair)
    if len(shared) < max(ESSENTIAL_SAMPLE_SIZE, config.min_seed_inliers):
        raise SeedGeometryFailure(f"Pair {pair}: only {len(shared)} shared tracks")

    track_ids = list(shared)
    pix_a = features[view_a][np.array([shared[t][view_a] for t in track_ids])]
    pix_b = features[view_b][np.array([shared[t][view_b] for t in track_ids])]
    x_a = intrinsic_a.normalize(pix_a)
    x_b = intrinsic_b.normalize(pix_b)

    focal = np.sqrt(intrinsic_a.focal * intrinsic_b.focal)
    relative = estimate_relative_pose(
        x_a,
        x_b,
        threshold=config.seed_ransac_threshold_px / focal,
        max_iterations=config.max_seed_ransac_iterations,
    )
    if relative is None:
        raise SeedGeometryFailure(f"Pair {pair}: no relative pose")

    pose_a = Pose.identity()
    pose_b = Pose(relative.R, relative.t)
    f_a = bearing_vectors(x_a)
    f_b = bearing_vectors(x_b)

    candidates = []
    for i in np.flatnonzero(relative.inlier_mask):
        try:
            X = triangulate_track(
                [pose_a.R, pose_b.R],
                [pose_a.t, pose_b.t],
                np.array([f_a[i], f_b[i]]),
                method=config.triangulation_method,
            )
        except TriangulationFailure:
            continue
        res_a = np.sum((intrinsic_a.project(pose_a, X)[0] - pix_a[i]) ** 2)
        res_b = np.sum((intrinsic_b.project(pose_b, X)[0] - pix_b[i]) ** 2)
        angle = ray_angle_deg(pose_a.center, pose_b.center, X)
        candidates.append((i, X, max(res_a, res_b), angle))

    if len(candidates) <= ESSENTIAL_SAMPLE_SIZE:
        raise SeedGeometryFailure(f"Pair {pair}: {len(candidates)} triangulated tracks")

    squared = np.array([c[2] for c in candidates])
    ac = a_contrario_threshold(
        squared,
        ESSENTIAL_SAMPLE_SIZE,
        image_area_for(state, view_a, features.get(view_a)),
        n_models=ESSENTIAL_MAX_MODELS,
        lower=config.min_threshold_px ** 2,
        upper=config.max_threshold_px ** 2,
    )
    threshold = ac.threshold if ac is not None else config.max_threshold_px ** 2

    kept = [
        (i, X, angle)
        for i, X, res, angle in candidates
        if res <= threshold and angle >= config.min_triangulation_angle_deg
    ]
    if len(kept) < config.min_seed_inliers:
        raise SeedGeometryFailure(
            f"Pair {pair}: {len(kept)} well-conditioned tracks below {config.min_seed_inliers}"
        )

    return PairGeometry(
        pair=(view_a, view_b),
        R=pose_b.R,
        t=pose_b.t,
        track_ids=[track_ids[i] for i, _, _ in kept],
        points=np.array([X for _, X, _ in kept]),
        threshold=threshold,
        median_angle_deg=float(np.median([angle for _, _, angle in kept])),
        num_shared=len(shared),
    )


def rank_seed_pairs(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    config: SequentialSfMConfig,
) -> List[SeedCandidate]:
    """
    Score every view pair sharing enough tracks.

    Returns:
        Candidates sorted by descending score, ties broken by the smaller view ids.
    """
    view_ids = sorted(v for v in visibility.view_ids() if v in state.remaining_view_ids)
    ranked = []
    for pair in itertools.combinations(view_ids, 2):
        num_shared = visibility.shared_track_count(pair)
        if num_shared < config.min_seed_tracks:
            continue
        if not (state.intrinsic_of(pair[0]).is_valid() and state.intrinsic_of(pair[1]).is_valid()):
            continue
        try:
            geometry = estimate_pair_geometry(state, features, visibility, pair, config)
        except SeedGeometryFailure as e:
            logger.debug(str(e))
            continue
        score = _pair_score(geometry, config.seed_reference_angle_deg)
        logger.debug(
            f"Seed pair {pair}: {geometry.num_inliers}/{num_shared} tracks, "
            f"median angle {geometry.median_angle_deg:.2f} deg, score {score:.1f}"
        )
        ranked.append(SeedCandidate(views=pair, score=score, num_shared=num_shared))
    ranked.sort(key=lambda c: (-c.score, c.views))
    return ranked


def rank_seed_triplets(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    config: SequentialSfMConfig,
    pairs: Optional[List[SeedCandidate]] = None,
) -> List[SeedCandidate]:
    """
    Extend each ranked pair with the view sharing the most of its tracks.

    The triplet score is the pair score times the fraction of the pair's
    tracks that the third view also observes.
    """
    if pairs is None:
        pairs = rank_seed_pairs(state, features, visibility, config)
    view_ids = sorted(v for v in visibility.view_ids() if v in state.remaining_view_ids)
    ranked = []
    seen = set()
    for candidate in pairs:
        view_a, view_b = candidate.views
        best_view, best_count = None, 0
        for view_c in view_ids:
            if view_c in candidate.views:
                continue
            count = visibility.shared_track_count((view_a, view_b, view_c))
            if count > best_count:
                best_view, best_count = view_c, count
        if best_view is None or best_count < config.min_resection_inliers:
            continue
        if not state.intrinsic_of(best_view).is_valid():
            continue
        triplet = (view_a, view_b, best_view)
        if frozenset(triplet) in seen:
            continue
        seen.add(frozenset(triplet))
        score = candidate.score * best_count / candidate.num_shared
        ranked.append(SeedCandidate(views=triplet, score=score, num_shared=best_count))
    ranked.sort(key=lambda c: (-c.score, c.views))
    return ranked


def _check_pinned(state: ReconstructionState, views: Tuple[int, ...]) -> None:
    missing = [v for v in views if v not in state.views]
    if missing:
        raise SeedSelectionFailure(f"Pinned seed {views} references unknown views {missing}")
    if len(set(views)) != len(views):
        raise SeedSelectionFailure(f"Pinned seed {views} repeats a view")


def seed_candidates(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    config: SequentialSfMConfig,
) -> List[Tuple[int, ...]]:
    """
    Seeds to try, best first. A pinned triplet or pair is the only candidate.

    Raises:
        SeedSelectionFailure: Invalid pinned seed, or no qualifying candidate.
    """
    if is_triplet_set(config.initial_triplet):
        _check_pinned(state, config.initial_triplet)
        return [tuple(config.initial_triplet)]
    if is_pair_set(config.initial_pair):
        _check_pinned(state, config.initial_pair)
        return [tuple(config.initial_pair)]

    ranked = rank_seed_pairs(state, features, visibility, config)
    if config.use_triplet_seed:
        ranked = rank_seed_triplets(state, features, visibility, config, ranked)
    if not ranked:
        raise SeedSelectionFailure(
            f"No {'triplet' if config.use_triplet_seed else 'pair'} with at least "
            f"{config.min_seed_tracks} shared tracks and {config.min_seed_inliers} "
            f"well-conditioned tracks"
        )
    return [c.views for c in ranked]


def choose_seed(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    config: SequentialSfMConfig,
) -> Tuple[int, ...]:
    """Best seed pair or triplet."""
    return seed_candidates(state, features, visibility, config)[0]


def make_initial_pair_3d(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    pair: Pair,
    config: SequentialSfMConfig,
) -> PairGeometry:
    """
    Initialise the reconstruction from a view pair.

    The first view becomes the reference view at R = I, t = 0. Nothing is
    written to the state when the pair is rejected.

    Raises:
        SeedGeometryFailure: The pair cannot be initialised.
    """
    view_a, view_b = pair
    for view_id in pair:
        if view_id not in state.remaining_view_ids:
            raise SeedGeometryFailure(f"Pair {pair}: view {view_id} is not waiting for resection")

    geometry = estimate_pair_geometry(state, features, visibility, pair, config)

    state.reference_view_id = view_a
    state.add_pose(view_a, Pose.identity(), geometry.threshold)
    state.add_pose(view_b, Pose(geometry.R, geometry.t), geometry.threshold)
    for track_id, X in zip(geometry.track_ids, geometry.points):
        track = state.tracks[track_id]
        state.landmarks[track_id] = Landmark(X=X, observations={view_a: track[view_a], view_b: track[view_b]})

    logger.info(
        f"Initial pair {pair}: {geometry.num_inliers}/{geometry.num_shared} tracks, "
        f"median angle {geometry.median_angle_deg:.2f} deg, "
        f"threshold {np.sqrt(geometry.threshold):.3f}px"
    )
    return geometry


def make_initial_triplet_3d(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    visibility: SharedTrackVisibilityHelper,
    triplet: Triplet,
    config: SequentialSfMConfig,
    rng: Optional[np.random.Generator] = None,
) -> PairGeometry:
    """
    Initialise the reconstruction from three views.

    The first two views are initialised as a pair, the third is resected
    against their landmarks and the remaining triplet tracks are triangulated.
    Every step shares the seed iteration cap. The state is only updated when
    all steps succeed.

    Raises:
        SeedGeometryFailure: Any step fails.
    """
    view_a, view_b, view_c = triplet
    scratch = state.copy()
    geometry = make_initial_pair_3d(scratch, features, visibility, (view_a, view_b), config)

    seed_config = config.replace(max_resection_ransac_iterations=config.max_seed_ransac_iterations)
    try:
        result = resect(view_c, scratch, features, visibility, seed_config, rng)
    except ResectionFailure as e:
        raise SeedGeometryFailure(f"Triplet {triplet}: {e}") from e
    apply_resection(scratch, result)
    triangulate_new_tracks(scratch, features, visibility, [view_c], config)

    state.restore(scratch)
    logger.info(f"Initial triplet {triplet}: third view with {result.num_inliers} inliers")
    return geometry


__all__ = [
    "ESSENTIAL_SAMPLE_SIZE",
    "ESSENTIAL_MAX_MODELS",
    "is_pair_set",
    "is_triplet_set",
    "PairGeometry",
    "SeedCandidate",
    "estimate_pair_geometry",
    "rank_seed_pairs",
    "rank_seed_triplets",
    "seed_candidates",
    "choose_seed",
    "make_initial_pair_3d",
    "make_initial_triplet_3d",
]
