"""
Shared core data structures for the sequential SfM engine.

These dataclasses are simple containers used across:
- track building and seed selection
- resection and triangulation
- bundle adjustment
- visualization and I/O
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional, Set, Tuple

import numpy as np

from seqsfm.config import IntrinsicType
from seqsfm.geometry.camera import camera_center, project_points, undistort_to_normalized

# A track maps a view id to the index of the feature observed in that view.
Track = Dict[int, int]
Pair = Tuple[int, int]
Triplet = Tuple[int, int, int]

# Distortion coefficients [k1, k2, p1, p2, k3] that each lens model may use.
DISTORTION_MASKS: Dict[IntrinsicType, Tuple[bool, ...]] = {
    IntrinsicType.UNKNOWN: (False, False, False, False, False),
    IntrinsicType.PINHOLE: (False, False, False, False, False),
    IntrinsicType.PINHOLE_RADIAL1: (True, False, False, False, False),
    IntrinsicType.PINHOLE_RADIAL3: (True, True, False, False, True),
    IntrinsicType.PINHOLE_BROWN_T2: (True, True, True, True, True),
}


@dataclass
class Intrinsic:
    """
    Lens / projection model shared by one or more views.

    K - intrinsic matrix (3x3):
        [fx  0  cx]
        [0  fy  cy]
        [0   0   1]

    dist - distortion coefficients [k1, k2, p1, p2, k3]
    """

    id: int
    K: np.ndarray
    dist: np.ndarray = field(default_factory=lambda: np.zeros(5))
    # Image size in pixels; 0 when unknown.
    width: int = 0
    height: int = 0
    type: IntrinsicType = IntrinsicType.PINHOLE

    def __post_init__(self) -> None:
        self.K = np.asarray(self.K, dtype=np.float64).reshape(3, 3)
        dist = np.zeros(5)
        given = np.asarray(self.dist, dtype=np.float64).ravel()[:5]
        dist[: len(given)] = given
        self.dist = dist
        self.type = IntrinsicType(self.type)

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def fy(self) -> float:
        return float(self.K[1, 1])

    @property
    def focal(self) -> float:
        """Mean focal length in pixels."""
        return 0.5 * (self.fx + self.fy)

    def is_valid(self) -> bool:
        return (
            self.type is not IntrinsicType.UNKNOWN
            and bool(np.all(np.isfinite(self.K)))
            and self.fx > 0
            and self.fy > 0
        )

    def resolved(self, default_type: IntrinsicType) -> "Intrinsic":
        """Return this intrinsic with an UNKNOWN type replaced by ``default_type``."""
        if self.type is not IntrinsicType.UNKNOWN:
            return self
        dist = np.where(DISTORTION_MASKS[default_type], self.dist, 0.0)
        return Intrinsic(self.id, self.K.copy(), dist, self.width, self.height, default_type)

    def image_area(self) -> Optional[float]:
        if self.width > 0 and self.height > 0:
            return float(self.width * self.height)
        return None

    def project(self, pose: "Pose", X: np.ndarray) -> np.ndarray:
        """Project world points (N, 3) into pixel coordinates (N, 2)."""
        return project_points(self.K, self.dist, pose.R, pose.t, X)

    def normalize(self, points: np.ndarray) -> np.ndarray:
        """Undistorted normalized coordinates (N, 2) of pixel points (N, 2)."""
        return undistort_to_normalized(self.K, self.dist, points)


@dataclass
class Pose:
    """
    Camera pose in world coordinates

    R - rotation matrix (3x3): world to camera
    t - translation vector (3,): world to camera

    Transform: X_camera = R @ X_world + t
    """

    R: np.ndarray
    t: np.ndarray

    def __post_init__(self) -> None:
        self.R = np.asarray(self.R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(self.t, dtype=np.float64).reshape(3)

    @property
    def center(self) -> np.ndarray:
        """Camera center in world coordinates: C = -R^T @ t"""
        return camera_center(self.R, self.t)

    def transform(self, X: np.ndarray) -> np.ndarray:
        """Transform points (N, 3) from world to camera frame"""
        return np.asarray(X, dtype=np.float64).reshape(-1, 3) @ self.R.T + self.t

    def depth(self, X: np.ndarray) -> np.ndarray:
        return self.transform(X)[:, 2]

    @staticmethod
    def identity() -> "Pose":
        """Create identity pose (camera at origin)"""
        return Pose(R=np.eye(3), t=np.zeros(3))


@dataclass
class View:
    """An image with its intrinsic id. The pose lives in ReconstructionState.poses."""

    id: int
    intrinsic_id: int


@dataclass
class Landmark:
    """A triangulated track: 3D position plus the observations supporting it."""

    X: np.ndarray
    # view id -> feature index; always a subset of the originating track.
    observations: Dict[int, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.X = np.asarray(self.X, dtype=np.float64).reshape(3)


@dataclass
class ReconstructionState:
    """
    Global container for views, tracks, poses, landmarks and thresholds.

    Owned by the engine; components receive it per call and never keep it.
    Landmarks are keyed by the id of the track they were triangulated from.
    """

    views: Dict[int, View] = field(default_factory=dict)
    intrinsics: Dict[int, Intrinsic] = field(default_factory=dict)
    tracks: Dict[int, Track] = field(default_factory=dict)
    poses: Dict[int, Pose] = field(default_factory=dict)
    landmarks: Dict[int, Landmark] = field(default_factory=dict)
    # view id -> squared reprojection error bound (pixels^2)
    thresholds: Dict[int, float] = field(default_factory=dict)
    remaining_view_ids: Set[int] = field(default_factory=set)
    # View fixed at {R=I, t=0} by the seed; held constant by bundle adjustment.
    reference_view_id: Optional[int] = None

    @classmethod
    def from_views(
        cls,
        views: Dict[int, View],
        intrinsics: Dict[int, Intrinsic],
    ) -> "ReconstructionState":
        return cls(
            views=dict(views),
            intrinsics=dict(intrinsics),
            remaining_view_ids=set(views),
        )

    @property
    def resected_view_ids(self) -> Set[int]:
        return set(self.poses)

    def intrinsic_of(self, view_id: int) -> Intrinsic:
        return self.intrinsics[self.views[view_id].intrinsic_id]

    def add_pose(self, view_id: int, pose: Pose, threshold: float) -> None:
        """Record a resected view, its pose and its adaptive threshold."""
        if view_id not in self.remaining_view_ids:
            raise ValueError(f"View {view_id} is not waiting for resection")
        if not threshold > 0.0:
            raise ValueError(f"Threshold of view {view_id} must be positive, got {threshold}")
        self.poses[view_id] = pose
        self.thresholds[view_id] = float(threshold)
        self.remaining_view_ids.discard(view_id)

    def iter_observations(self) -> Iterator[Tuple[int, int, int]]:
        """Yield (track_id, view_id, feature_idx) for every landmark observation."""
        for track_id, landmark in self.landmarks.items():
            for view_id, feat_idx in landmark.observations.items():
                yield track_id, view_id, feat_idx

    def num_observations(self) -> int:
        return sum(len(lm.observations) for lm in self.landmarks.values())

    def copy(self) -> "ReconstructionState":
        """Deep copy used as a rollback snapshot."""
        return copy.deepcopy(self)

    def restore(self, snapshot: "ReconstructionState") -> None:
        """Overwrite this state in place with the content of ``snapshot``."""
        snapshot = snapshot.copy()
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(snapshot, name))

    def validate(self) -> None:
        """
        Check the state invariants.

        Raises:
            ValueError: If any invariant is violated.
        """
        all_views = set(self.views)
        resected = set(self.poses)
        if resected & self.remaining_view_ids:
            raise ValueError(f"Views both resected and remaining: {resected & self.remaining_view_ids}")
        if resected | self.remaining_view_ids != all_views:
            raise ValueError("Resected and remaining views do not cover all views")

        for track_id, landmark in self.landmarks.items():
            track = self.tracks.get(track_id)
            if track is None:
                raise ValueError(f"Landmark {track_id} has no track")
            for view_id, feat_idx in landmark.observations.items():
                if view_id not in resected:
                    raise ValueError(f"Landmark {track_id} observed by unresected view {view_id}")
                if track.get(view_id) != feat_idx:
                    raise ValueError(
                        f"Landmark {track_id} feature {feat_idx} in view {view_id} "
                        f"differs from track feature {track.get(view_id)}"
                    )

        for view_id in resected:
            threshold = self.thresholds.get(view_id)
            if threshold is None or not threshold > 0.0:
                raise ValueError(f"View {view_id} has no positive threshold")


__all__ = [
    "Track",
    "Pair",
    "Triplet",
    "DISTORTION_MASKS",
    "Intrinsic",
    "Pose",
    "View",
    "Landmark",
    "ReconstructionState",
]
