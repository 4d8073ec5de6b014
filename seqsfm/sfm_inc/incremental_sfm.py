"""
Sequential (incremental) Structure-from-Motion engine.

The engine owns the reconstruction state and drives
tracks -> seed -> grow (resection, triangulation, bundle adjustment) -> done.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import cv2
import numpy as np

from seqsfm.ba.bundle_adjustment import BundleAdjustmentOptions, BundleAdjustmentReport, refine, reject_outliers
from seqsfm.config import SequentialSfMConfig
from seqsfm.errors import (
    BundleAdjustmentDivergence,
    ResectionFailure,
    SeedGeometryFailure,
    SfMError,
)
from seqsfm.sfm_inc.data_structures import Intrinsic, Pair, ReconstructionState, Triplet, View
from seqsfm.sfm_inc.providers import DiagnosticsSink, FeatureSource, MatchSource
from seqsfm.sfm_inc.resection import apply_resection, rank_resection_candidates, resect
from seqsfm.sfm_inc.residuals import ResidualHistogram, compute_residuals_histogram, estimate_view_thresholds
from seqsfm.sfm_inc.seed import (
    is_pair_set,
    is_triplet_set,
    make_initial_pair_3d,
    make_initial_triplet_3d,
    seed_candidates,
)
from seqsfm.sfm_inc.structure import triangulate_new_tracks
from seqsfm.sfm_inc.tracks import SharedTrackVisibilityHelper, build_tracks

logger = logging.getLogger(__name__)


class EngineState(Enum):
    EMPTY = "empty"
    TRACKS_BUILT = "tracks_built"
    SEEDED = "seeded"
    GROWING = "growing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ReconstructionSummary:
    """Outcome of a run. ``error`` is set when the run FAILED."""

    status: EngineState
    reconstruction: ReconstructionState
    seed: Optional[Tuple[int, ...]]
    num_views: int
    num_resected_views: int
    num_landmarks: int
    num_observations: int
    # Mean squared reprojection error (pixels^2); -1.0 without observations.
    mse: float
    histogram: Optional[ResidualHistogram]
    # view id -> squared reprojection error bound (pixels^2)
    thresholds: Dict[int, float] = field(default_factory=dict)
    unresected_view_ids: List[int] = field(default_factory=list)
    error: Optional[SfMError] = None

    @property
    def success(self) -> bool:
        return self.status is EngineState.DONE


def _by_id(items: Union[Mapping[int, Any], Iterable[Any]]) -> Dict[int, Any]:
    if isinstance(items, Mapping):
        return dict(items)
    return {item.id: item for item in items}


class SequentialSfMEngine:
    """
    Incremental reconstruction from features and pairwise matches.

    Usage:
        engine = SequentialSfMEngine(views, intrinsics, features, matches, config)
        summary = engine.run()
    """

    def __init__(
        self,
        views: Union[Mapping[int, View], Iterable[View]],
        intrinsics: Union[Mapping[int, Intrinsic], Iterable[Intrinsic]],
        feature_source: FeatureSource,
        match_source: MatchSource,
        config: Optional[SequentialSfMConfig] = None,
        diagnostics: Optional[DiagnosticsSink] = None,
    ) -> None:
        self.config = config if config is not None else SequentialSfMConfig()
        views = _by_id(views)
        intrinsics = {
            k: intrinsic.resolved(self.config.unknown_camera_type)
            for k, intrinsic in _by_id(intrinsics).items()
        }
        for view in views.values():
            if view.intrinsic_id not in intrinsics:
                raise ValueError(f"View {view.id} references unknown intrinsic {view.intrinsic_id}")

        self._feature_source = feature_source
        self._match_source = match_source
        self._diagnostics = diagnostics
        self._state = ReconstructionState.from_views(views, intrinsics)
        self._features: Dict[int, np.ndarray] = {}
        self._visibility: Optional[SharedTrackVisibilityHelper] = None
        self._status = EngineState.EMPTY
        self._seed: Optional[Tuple[int, ...]] = None
        self._error: Optional[SfMError] = None
        self._summary: Optional[ReconstructionSummary] = None

        self._rng = np.random.default_rng(self.config.random_seed)
        if self.config.random_seed is not None:
            cv2.setRNGSeed(int(self.config.random_seed))
        self._resection_config = self.config
        self._ba_options = BundleAdjustmentOptions.from_config(self.config)
        # view id -> correspondence count when its resection last failed
        self._failed_views: Dict[int, int] = {}
        self._views_since_ba = 0
        self._ba_failures = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    @property
    def reconstruction(self) -> ReconstructionState:
        return self._state

    @property
    def status(self) -> EngineState:
        return self._status

    @property
    def error(self) -> Optional[SfMError]:
        return self._error

    @property
    def visibility(self) -> Optional[SharedTrackVisibilityHelper]:
        return self._visibility

    def diagnostics(self) -> Optional[DiagnosticsSink]:
        return self._diagnostics

    def set_initial_pair(self, pair: Optional[Pair]) -> None:
        self.config = self.config.replace(initial_pair=pair)

    def set_initial_triplet(self, triplet: Optional[Triplet]) -> None:
        self.config = self.config.replace(initial_triplet=triplet)

    def has_initial_pair(self) -> bool:
        return is_pair_set(self.config.initial_pair)

    def has_initial_triplet(self) -> bool:
        return is_triplet_set(self.config.initial_triplet)

    def _record(self, event: str, **payload: Any) -> None:
        if self._diagnostics is not None:
            self._diagnostics.record(event, payload)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    def init_landmark_tracks(self) -> int:
        """
        Load features and build the tracks (EMPTY -> TRACKS_BUILT).

        Returns:
            Number of tracks.

        Raises:
            TrackBuildFailure: No valid track could be built.
        """
        if self._status is not EngineState.EMPTY:
            raise RuntimeError(f"Tracks can only be built from EMPTY, engine is {self._status.value}")

        for view_id in sorted(self._state.views):
            try:
                view_features = self._feature_source.get_features(view_id)
            except KeyError:
                logger.warning(f"No features for view {view_id}, its matches are ignored")
                view_features = np.empty((0, 2))
            self._features[view_id] = np.asarray(view_features, dtype=np.float64).reshape(-1, 2)

        matches = {}
        for (view_a, view_b), pair_matches in self._match_source.get_matches().items():
            if view_a not in self._state.views or view_b not in self._state.views:
                logger.warning(f"Ignoring matches of unknown view pair ({view_a}, {view_b})")
                continue
            pair_matches = np.asarray(pair_matches, dtype=np.int64).reshape(-1, 2)
            in_range = (
                (pair_matches >= 0).all(axis=1)
                & (pair_matches[:, 0] < len(self._features[view_a]))
                & (pair_matches[:, 1] < len(self._features[view_b]))
            )
            if not in_range.all():
                logger.warning(
                    f"Dropping {int((~in_range).sum())} out-of-range matches of pair ({view_a}, {view_b})"
                )
            matches[(view_a, view_b)] = pair_matches[in_range]

        tracks = build_tracks(
            matches,
            self._feature_source,
            self.config.multiview_match_constraint,
            self.config.orientation_histogram_bins,
            self.config.orientation_kept_bins,
        )
        self._state.tracks = tracks
        self._visibility = SharedTrackVisibilityHelper(tracks)
        self._status = EngineState.TRACKS_BUILT
        self._record(
            "tracks_built",
            num_tracks=len(tracks),
            num_views=len(self._visibility.view_ids()),
        )
        return len(tracks)

    def make_initial_reconstruction(self) -> Tuple[int, ...]:
        """
        Select and initialise the seed (TRACKS_BUILT -> SEEDED).

        Candidates are tried best first; a candidate whose geometry or first
        bundle adjustment fails is discarded.

        Raises:
            SeedSelectionFailure: No qualifying candidate.
            SeedGeometryFailure: Every candidate failed.
        """
        if self._status is not EngineState.TRACKS_BUILT:
            raise RuntimeError(f"Seeding requires TRACKS_BUILT, engine is {self._status.value}")

        candidates = seed_candidates(self._state, self._features, self._visibility, self.config)
        self._record("seed_selected", views=list(candidates[0]), num_candidates=len(candidates))
        logger.info(f"Seed candidates: {len(candidates)}, best {candidates[0]}")

        last_error: Optional[SfMError] = None
        for views in candidates:
            snapshot = self._state.copy()
            try:
                if len(views) == 3:
                    make_initial_triplet_3d(
                        self._state, self._features, self._visibility, views, self.config, self._rng
                    )
                else:
                    make_initial_pair_3d(self._state, self._features, self._visibility, views, self.config)
                report = self._bundle_adjust()
            except (SeedGeometryFailure, BundleAdjustmentDivergence) as e:
                logger.warning(f"Seed {views} rejected: {e}")
                self._state.restore(snapshot)
                last_error = e
                continue

            self._seed = tuple(views)
            self._status = EngineState.SEEDED
            self._record(
                "seed_initialized",
                views=list(views),
                num_landmarks=len(self._state.landmarks),
                mse=report.final_mse,
            )
            return self._seed

        raise SeedGeometryFailure(
            f"None of the {len(candidates)} seed candidates could be initialised: {last_error}"
        )

    def _bundle_adjust(self) -> BundleAdjustmentReport:
        """Bundle adjustment, threshold re-derivation and outlier rejection."""
        report = refine(self._state, self._features, self._ba_options)
        estimate_view_thresholds(self._state, self._features, self._resection_config)
        removed_obs, removed_landmarks = reject_outliers(
            self._state, self._features, self.config.min_triangulation_angle_deg
        )
        self._record(
            "bundle_adjustment",
            num_cameras=report.num_cameras,
            num_points=report.num_points,
            initial_mse=report.initial_mse,
            final_mse=report.final_mse,
            nfev=report.nfev,
            removed_observations=removed_obs,
            removed_landmarks=removed_landmarks,
        )
        return report

    def _tighten_resection(self) -> None:
        c = self._resection_config
        self._resection_config = c.replace(
            resection_ransac_threshold_px=max(c.min_threshold_px, c.resection_ransac_threshold_px / 2.0),
            max_threshold_px=max(c.min_threshold_px, c.max_threshold_px / 2.0),
        )
        logger.info(
            f"Resection thresholds tightened to {self._resection_config.resection_ransac_threshold_px:.3f}px "
            f"(RANSAC) and {self._resection_config.max_threshold_px:.3f}px (upper bound)"
        )

    def _eligible_candidates(self) -> List[Tuple[int, int]]:
        ranked = rank_resection_candidates(self._state, self._visibility, self.config.min_resection_tracks)
        # A view that failed is retried only once it sees more landmarks.
        return [
            (view_id, count)
            for view_id, count in ranked
            if view_id not in self._failed_views or count > self._failed_views[view_id]
        ]

    def grow(self) -> None:
        """
        Resect views until no candidate remains (SEEDED -> GROWING).

        Raises:
            BundleAdjustmentDivergence: More consecutive divergences than allowed.
        """
        if self._status not in (EngineState.SEEDED, EngineState.GROWING):
            raise RuntimeError(f"Growth requires a seed, engine is {self._status.value}")
        self._status = EngineState.GROWING

        while True:
            eligible = self._eligible_candidates()
            if not eligible:
                break
            best_count = eligible[0][1]
            group = [(v, c) for v, c in eligible if c >= self.config.resection_group_ratio * best_count]

            snapshot = self._state.copy()
            views_since_ba = self._views_since_ba
            added = []
            for view_id, count in group:
                try:
                    result = resect(
                        view_id, self._state, self._features, self._visibility, self._resection_config, self._rng
                    )
                except ResectionFailure as e:
                    self._failed_views[view_id] = count
                    logger.warning(f"Resection failed for {e}")
                    self._record("resection_failed", view_id=view_id, reason=e.reason, num_correspondences=count)
                    continue

                apply_resection(self._state, result)
                self._failed_views.pop(view_id, None)
                logger.info(
                    f"Resected view {view_id}: {result.num_inliers}/{result.num_correspondences} inliers, "
                    f"threshold {np.sqrt(result.threshold):.3f}px"
                )
                self._record(
                    "resection",
                    view_id=view_id,
                    num_correspondences=result.num_correspondences,
                    num_inliers=result.num_inliers,
                    threshold=result.threshold,
                )
                tri = triangulate_new_tracks(self._state, self._features, self._visibility, [view_id], self.config)
                self._record(
                    "triangulation",
                    view_id=view_id,
                    added=tri.added,
                    extended=tri.extended,
                    rejected=tri.rejected,
                )
                added.append(view_id)

            if not added:
                continue

            self._views_since_ba += len(added)
            mse, _ = compute_residuals_histogram(self._state, self._features)
            if self._views_since_ba < self.config.bundle_adjustment_interval and mse <= self.config.mse_drift_threshold:
                continue
            if mse > self.config.mse_drift_threshold:
                logger.info(f"Residual mse {mse:.4g} px^2 above drift threshold, refining early")

            try:
                self._bundle_adjust()
            except BundleAdjustmentDivergence as e:
                self._ba_failures += 1
                self._state.restore(snapshot)
                self._views_since_ba = views_since_ba
                logger.warning(f"Bundle adjustment diverged ({e}); rolled back views {added}")
                self._record("rollback", views=added, reason=str(e), failures=self._ba_failures)
                if self._ba_failures > self.config.max_bundle_adjustment_failures:
                    raise
                self._tighten_resection()
                continue
            self._views_since_ba = 0
            self._ba_failures = 0

    def finalize(self) -> ReconstructionSummary:
        """Final bundle adjustment and statistics (GROWING -> DONE)."""
        snapshot = self._state.copy()
        try:
            self._bundle_adjust()
        except BundleAdjustmentDivergence as e:
            logger.warning(f"Final bundle adjustment diverged ({e}); keeping the previous state")
            self._state.restore(snapshot)
            self._record("rollback", views=[], reason=str(e), failures=self._ba_failures + 1)
        self._status = EngineState.DONE
        return self._make_summary()

    def run(self) -> ReconstructionSummary:
        """
        Run every remaining stage. Never raises reconstruction failures: they
        end the run in FAILED and are reported in the summary.
        """
        if self._summary is not None:
            return self._summary
        try:
            if self._status is EngineState.EMPTY:
                self.init_landmark_tracks()
            if self._status is EngineState.TRACKS_BUILT:
                self.make_initial_reconstruction()
            self.grow()
            return self.finalize()
        except SfMError as e:
            logger.error(f"Reconstruction failed ({e.kind}): {e}")
            self._error = e
            self._status = EngineState.FAILED
            return self._make_summary()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def find_images_with_possible_resection(self) -> List[int]:
        if self._visibility is None:
            return []
        return [
            view_id
            for view_id, _ in rank_resection_candidates(
                self._state, self._visibility, self.config.min_resection_tracks
            )
        ]

    def compute_residuals_histogram(
        self, histogram: Optional[ResidualHistogram] = None
    ) -> Tuple[float, Optional[ResidualHistogram]]:
        return compute_residuals_histogram(self._state, self._features, histogram)

    def final_statistics(self) -> Dict[str, Any]:
        state = self._state
        mse, _ = compute_residuals_histogram(state, self._features)
        track_lengths = [len(lm.observations) for lm in state.landmarks.values()]
        return {
            "status": self._status.value,
            "seed": list(self._seed) if self._seed is not None else None,
            "num_views": len(state.views),
            "num_resected_views": len(state.poses),
            "num_landmarks": len(state.landmarks),
            "num_observations": state.num_observations(),
            "mean_track_length": float(np.mean(track_lengths)) if track_lengths else 0.0,
            "mse": mse,
            "unresected_view_ids": sorted(state.remaining_view_ids),
            "error": str(self._error) if self._error is not None else None,
        }

    def _make_summary(self) -> ReconstructionSummary:
        state = self._state
        mse, histogram = compute_residuals_histogram(state, self._features)
        stats = self.final_statistics()
        logger.info(
            f"Reconstruction {stats['status']}: {stats['num_resected_views']}/{stats['num_views']} views, "
            f"{stats['num_landmarks']} landmarks, mse {mse:.4g} px^2"
        )
        if histogram is not None:
            logger.debug("Residual histogram:\n" + histogram.to_string())
        self._record("final_statistics", **stats)
        self._summary = ReconstructionSummary(
            status=self._status,
            reconstruction=state,
            seed=self._seed,
            num_views=len(state.views),
            num_resected_views=len(state.poses),
            num_landmarks=len(state.landmarks),
            num_observations=state.num_observations(),
            mse=mse,
            histogram=histogram,
            thresholds=dict(state.thresholds),
            unresected_view_ids=sorted(state.remaining_view_ids),
            error=self._error,
        )
        return self._summary


__all__ = ["EngineState", "ReconstructionSummary", "SequentialSfMEngine"]
