"""Configuration for the sequential Structure from Motion engine."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple


class MultiviewMatchConstraint(Enum):
    """Filtering applied to pairwise matches before building tracks."""

    NONE = "none"
    ORIENTATION = "orientation"


class TriangulationMethod(Enum):
    """Two-view triangulation algorithms."""

    DIRECT_LINEAR_TRANSFORM = "direct_linear_transform"
    L1_ANGULAR = "l1_angular"
    LINF_ANGULAR = "linf_angular"
    INVERSE_DEPTH_WEIGHTED_MIDPOINT = "inverse_depth_weighted_midpoint"
    DEFAULT = "inverse_depth_weighted_midpoint"


class ResectionMethod(Enum):
    """Minimal solvers used for camera resection."""

    DLT_6POINTS = "dlt_6points"
    P3P = "p3p"
    AP3P = "ap3p"
    EPNP = "epnp"
    SQPNP = "sqpnp"
    DEFAULT = "p3p"


class IntrinsicType(Enum):
    """Lens models. UNKNOWN is replaced by the configured default."""

    UNKNOWN = "unknown"
    PINHOLE = "pinhole"
    PINHOLE_RADIAL1 = "pinhole_radial1"
    PINHOLE_RADIAL3 = "pinhole_radial3"
    PINHOLE_BROWN_T2 = "pinhole_brown_t2"


@dataclass
class SequentialSfMConfig:
    """Configuration for the sequential SfM engine.

    Modify the default values here for experimentation. Enum fields also accept
    their string values (e.g. ``triangulation_method="l1_angular"``).
    """

    # Tracks
    multiview_match_constraint: MultiviewMatchConstraint = MultiviewMatchConstraint.NONE
    """Orientation-consistency filtering of pairwise matches"""

    orientation_histogram_bins: int = 30
    """Number of bins of the orientation difference histogram"""

    orientation_kept_bins: int = 3
    """Most populated orientation bins whose matches are kept"""

    # Cameras
    unknown_camera_type: IntrinsicType = IntrinsicType.PINHOLE_RADIAL3
    """Lens model used for intrinsics declared UNKNOWN"""

    # Seed
    initial_pair: Optional[Tuple[int, int]] = None
    """Pinned initial pair; bypasses automatic seed selection"""

    initial_triplet: Optional[Tuple[int, int, int]] = None
    """Pinned initial triplet; takes precedence over the initial pair"""

    use_triplet_seed: bool = False
    """Select a triplet instead of a pair when nothing is pinned"""

    max_seed_ransac_iterations: int = 100
    """RANSAC iteration cap for the seed geometry"""

    seed_ransac_threshold_px: float = 4.0
    """Epipolar RANSAC threshold of the seed estimation (pixels)"""

    min_seed_tracks: int = 30
    """Minimum number of shared tracks for a seed candidate"""

    min_seed_inliers: int = 20
    """Minimum number of well-conditioned seed tracks"""

    seed_reference_angle_deg: float = 5.0
    """Median parallax above which a seed's baseline is considered ideal"""

    # Triangulation
    triangulation_method: TriangulationMethod = TriangulationMethod.DEFAULT
    """Two-view triangulation algorithm"""

    min_triangulation_angle_deg: float = 2.0
    """Minimum parallax of a triangulated point"""

    # Resection
    resection_method: ResectionMethod = ResectionMethod.DEFAULT
    """Minimal solver used for resection"""

    max_resection_ransac_iterations: int = 4096
    """RANSAC iteration cap for resection"""

    resection_ransac_threshold_px: float = 8.0
    """Provisional reprojection threshold of the resection RANSAC (pixels)"""

    min_resection_tracks: int = 6
    """Triangulated tracks a view must observe to be a resection candidate"""

    min_resection_inliers: int = 12
    """Minimum number of resection inliers"""

    resection_group_ratio: float = 0.75
    """Candidates with at least this fraction of the best count are tried in one pass"""

    # A-contrario thresholds
    min_threshold_px: float = 0.5
    """Lower clamp of the adaptive per-camera threshold (pixels)"""

    max_threshold_px: float = 4.0
    """Upper clamp of the adaptive per-camera threshold (pixels)"""

    # Bundle adjustment
    bundle_adjustment_interval: int = 1
    """Number of added views between two bundle adjustments"""

    mse_drift_threshold: float = 4.0
    """Residual MSE (pixels^2) that forces an early bundle adjustment"""

    refine_intrinsics: bool = False
    """Refine focal length, principal point and distortion"""

    ba_max_nfev: int = 100
    """Maximum number of function evaluations per bundle adjustment"""

    ba_loss: str = "soft_l1"
    """Robust loss passed to scipy.optimize.least_squares"""

    max_bundle_adjustment_failures: int = 1
    """Consecutive divergences tolerated before the run fails"""

    random_seed: Optional[int] = 0
    """Seed of the RANSAC samplers; None for non-deterministic runs"""

    def __post_init__(self) -> None:
        self.multiview_match_constraint = MultiviewMatchConstraint(self.multiview_match_constraint)
        self.unknown_camera_type = IntrinsicType(self.unknown_camera_type)
        self.triangulation_method = TriangulationMethod(self.triangulation_method)
        self.resection_method = ResectionMethod(self.resection_method)

        if self.unknown_camera_type is IntrinsicType.UNKNOWN:
            raise ValueError("unknown_camera_type must name a concrete lens model")
        if self.initial_pair is not None:
            self.initial_pair = tuple(int(v) for v in self.initial_pair)
            if len(self.initial_pair) != 2:
                raise ValueError(f"initial_pair must have 2 views, got {self.initial_pair}")
        if self.initial_triplet is not None:
            self.initial_triplet = tuple(int(v) for v in self.initial_triplet)
            if len(self.initial_triplet) != 3:
                raise ValueError(f"initial_triplet must have 3 views, got {self.initial_triplet}")

        for name in (
            "max_seed_ransac_iterations",
            "max_resection_ransac_iterations",
            "bundle_adjustment_interval",
            "ba_max_nfev",
            "orientation_histogram_bins",
            "orientation_kept_bins",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}")
        if not 0.0 < self.min_threshold_px <= self.max_threshold_px:
            raise ValueError(
                f"Invalid threshold clamps: min={self.min_threshold_px}, max={self.max_threshold_px}"
            )
        if not 0.0 < self.resection_group_ratio <= 1.0:
            raise ValueError(f"resection_group_ratio must be in (0, 1], got {self.resection_group_ratio}")
        if self.min_resection_tracks < 3:
            raise ValueError("min_resection_tracks must be >= 3")
        if self.max_bundle_adjustment_failures < 0:
            raise ValueError("max_bundle_adjustment_failures must be >= 0")

    def replace(self, **changes) -> "SequentialSfMConfig":
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **changes)


__all__ = [
    "MultiviewMatchConstraint",
    "TriangulationMethod",
    "ResectionMethod",
    "IntrinsicType",
    "SequentialSfMConfig",
]
