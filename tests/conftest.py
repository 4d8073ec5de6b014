"""
Synthetic scenes shared by the tests.

Points live in a box in front of the cameras; every camera looks at the box
center. Features are exact projections stored in a per-view shuffled order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pytest

from seqsfm.config import SequentialSfMConfig
from seqsfm.geometry.camera import project_points
from seqsfm.sfm_inc.data_structures import Intrinsic, Landmark, Pose, ReconstructionState, View
from seqsfm.sfm_inc.incremental_sfm import SequentialSfMEngine
from seqsfm.sfm_inc.providers import InMemoryFeatureSource, InMemoryMatchSource, RecordingDiagnosticsSink
from seqsfm.sfm_inc.tracks import SharedTrackVisibilityHelper, build_tracks

K = np.array([[800.0, 0.0, 320.0], [0.0, 800.0, 240.0], [0.0, 0.0, 1.0]])
WIDTH, HEIGHT = 640, 480
TARGET = np.array([0.0, 0.0, 5.0])


def look_at(center: Sequence[float], target: np.ndarray = TARGET) -> Pose:
    """World-to-camera pose of a camera at ``center`` looking at ``target`` (y down)."""
    center = np.asarray(center, dtype=np.float64)
    z = target - center
    z /= np.linalg.norm(z)
    x = np.cross(np.array([0.0, 1.0, 0.0]), z)
    x /= np.linalg.norm(x)
    y = np.cross(z, x)
    R = np.vstack([x, y, z])
    return Pose(R, -R @ center)


@dataclass
class SyntheticScene:
    points: np.ndarray
    poses: Dict[int, Pose]
    # view id -> ids of the visible points
    visible: Dict[int, np.ndarray]
    features: Dict[int, np.ndarray]
    # view id -> point id of each feature index
    point_of: Dict[int, np.ndarray]
    matches: Dict[Tuple[int, int], np.ndarray]
    intrinsic: Intrinsic
    orientations: Dict[int, np.ndarray] = field(default_factory=dict)

    @property
    def view_ids(self) -> List[int]:
        return sorted(self.poses)

    @property
    def views(self) -> List[View]:
        return [View(v, self.intrinsic.id) for v in self.view_ids]

    @property
    def intrinsics(self) -> List[Intrinsic]:
        return [self.intrinsic]

    def feature_source(self) -> InMemoryFeatureSource:
        return InMemoryFeatureSource(self.features, self.orientations)

    def match_source(self) -> InMemoryMatchSource:
        return InMemoryMatchSource(self.matches)

    def feature_of(self, view_id: int, point_id: int) -> int:
        return int(np.flatnonzero(self.point_of[view_id] == point_id)[0])


def make_scene(
    noise_px: float = 0.0,
    seed: int = 42,
    centers: Optional[Dict[int, Sequence[float]]] = None,
    visibility: Optional[Dict[int, np.ndarray]] = None,
) -> SyntheticScene:
    """
    Default scene: 240 points, four views.

    Views 0 and 1 see points 0-199, view 2 sees 0-149 and 200-239, view 3
    sees 50-239. Pair (0, 1) has the largest overlap.
    """
    rng = np.random.default_rng(seed)
    n_points = 240
    points = np.column_stack(
        [
            rng.uniform(-1.0, 1.0, n_points),
            rng.uniform(-1.0, 1.0, n_points),
            rng.uniform(4.0, 6.0, n_points),
        ]
    )
    if centers is None:
        centers = {0: (-1.0, 0.0, 0.0), 1: (1.0, 0.0, 0.0), 2: (-0.3, 0.5, 0.0), 3: (0.4, -0.5, 0.0)}
    if visibility is None:
        visibility = {
            0: np.arange(0, 200),
            1: np.arange(0, 200),
            2: np.concatenate([np.arange(0, 150), np.arange(200, 240)]),
            3: np.arange(50, 240),
        }

    intrinsic = Intrinsic(id=0, K=K.copy(), width=WIDTH, height=HEIGHT)
    poses = {v: look_at(c) for v, c in centers.items()}
    features, point_of = {}, {}
    for view_id, pose in poses.items():
        ids = rng.permutation(np.asarray(visibility[view_id]))
        uv = project_points(K, intrinsic.dist, pose.R, pose.t, points[ids])
        if noise_px > 0:
            uv = uv + rng.normal(0.0, noise_px, uv.shape)
        features[view_id] = uv
        point_of[view_id] = ids

    matches = {}
    view_ids = sorted(poses)
    for i, view_a in enumerate(view_ids):
        for view_b in view_ids[i + 1:]:
            common = np.intersect1d(point_of[view_a], point_of[view_b])
            if len(common) == 0:
                continue
            index_a = {p: k for k, p in enumerate(point_of[view_a])}
            index_b = {p: k for k, p in enumerate(point_of[view_b])}
            matches[(view_a, view_b)] = np.array([[index_a[p], index_b[p]] for p in common], dtype=np.int64)

    return SyntheticScene(
        points=points,
        poses=poses,
        visible={v: np.sort(point_of[v]) for v in poses},
        features=features,
        point_of=point_of,
        matches=matches,
        intrinsic=intrinsic,
    )


def make_state(scene: SyntheticScene) -> Tuple[ReconstructionState, SharedTrackVisibilityHelper]:
    """Unposed state with the scene tracks built."""
    state = ReconstructionState.from_views({v.id: v for v in scene.views}, {0: scene.intrinsic})
    state.tracks = build_tracks(scene.matches)
    return state, SharedTrackVisibilityHelper(state.tracks)


def track_point_id(scene: SyntheticScene, track: Dict[int, int]) -> int:
    view_id, feat_idx = next(iter(track.items()))
    return int(scene.point_of[view_id][feat_idx])


def make_posed_state(
    scene: SyntheticScene,
    view_ids: Sequence[int],
    threshold: float = 0.25,
) -> Tuple[ReconstructionState, SharedTrackVisibilityHelper]:
    """State with ground-truth poses and landmarks for the given views."""
    state, visibility = make_state(scene)
    state.reference_view_id = view_ids[0]
    for view_id in view_ids:
        state.add_pose(view_id, scene.poses[view_id], threshold)
    for track_id, track in state.tracks.items():
        observations = {v: f for v, f in track.items() if v in view_ids}
        if len(observations) >= 2:
            state.landmarks[track_id] = Landmark(scene.points[track_point_id(scene, track)], observations)
    return state, visibility


def make_engine(scene: SyntheticScene, **overrides) -> Tuple[SequentialSfMEngine, RecordingDiagnosticsSink]:
    sink = RecordingDiagnosticsSink()
    engine = SequentialSfMEngine(
        scene.views,
        scene.intrinsics,
        scene.feature_source(),
        scene.match_source(),
        SequentialSfMConfig(**overrides),
        diagnostics=sink,
    )
    return engine, sink


@pytest.fixture
def scene() -> SyntheticScene:
    return make_scene()


@pytest.fixture
def noisy_scene() -> SyntheticScene:
    return make_scene(noise_px=0.3)
