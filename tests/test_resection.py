import numpy as np
import pytest

from seqsfm.config import ResectionMethod, SequentialSfMConfig
from seqsfm.errors import ResectionFailure
from seqsfm.sfm_inc.resection import (
    apply_resection,
    find_images_with_possible_resection,
    gather_correspondences,
    rank_resection_candidates,
    resect,
)
from seqsfm.sfm_inc.structure import triangulate_new_tracks

from conftest import make_posed_state, make_scene


def test_candidates_are_ranked_and_stable(scene):
    state, visibility = make_posed_state(scene, [0, 1])
    assert rank_resection_candidates(state, visibility) == [(2, 150), (3, 150)]
    first = find_images_with_possible_resection(state, visibility)
    assert first == [2, 3]
    # Querying twice without changes gives the same answer.
    assert find_images_with_possible_resection(state, visibility) == first


def test_views_with_few_tracks_are_not_candidates():
    visibility = {
        0: np.arange(0, 200),
        1: np.arange(0, 200),
        2: np.concatenate([np.arange(0, 4), np.arange(200, 240)]),
        3: np.arange(50, 240),
    }
    scene = make_scene(visibility=visibility)
    state, helper = make_posed_state(scene, [0, 1])
    assert find_images_with_possible_resection(state, helper) == [3]
    assert find_images_with_possible_resection(state, helper, min_tracks=4) == [3, 2]


def test_gather_correspondences(scene):
    state, visibility = make_posed_state(scene, [0, 1])
    track_ids, points_3d, points_2d = gather_correspondences(state, scene.features, visibility, 2)
    assert len(track_ids) == 150
    assert points_3d.shape == (150, 3)
    projected = scene.intrinsic.project(scene.poses[2], points_3d)
    np.testing.assert_allclose(projected, points_2d, atol=1e-6)


@pytest.mark.parametrize("method", [ResectionMethod.P3P, ResectionMethod.EPNP, ResectionMethod.DLT_6POINTS])
def test_resect_recovers_pose(scene, method):
    state, visibility = make_posed_state(scene, [0, 1])
    config = SequentialSfMConfig(resection_method=method)
    result = resect(2, state, scene.features, visibility, config, np.random.default_rng(0))

    assert result.view_id == 2
    assert result.num_correspondences == 150
    assert result.num_inliers == 150
    np.testing.assert_allclose(result.pose.R, scene.poses[2].R, atol=1e-6)
    np.testing.assert_allclose(result.pose.t, scene.poses[2].t, atol=1e-6)
    assert config.min_threshold_px ** 2 <= result.threshold <= config.max_threshold_px ** 2
    # Resection alone does not touch the state.
    assert 2 in state.remaining_view_ids


def test_resect_rejects_outlier_correspondences(scene):
    state, visibility = make_posed_state(scene, [0, 1])
    features = {v: f.copy() for v, f in scene.features.items()}
    track_ids, _, _ = gather_correspondences(state, features, visibility, 2)
    corrupted = track_ids[:20]
    rng = np.random.default_rng(5)
    for track_id in corrupted:
        features[2][state.tracks[track_id][2]] += rng.uniform(30.0, 60.0, 2)

    result = resect(2, state, features, visibility, SequentialSfMConfig(), np.random.default_rng(0))
    assert result.num_inliers == 130
    assert not set(corrupted) & set(result.inlier_track_ids)


def test_apply_resection_updates_state(scene):
    state, visibility = make_posed_state(scene, [0, 1])
    result = resect(2, state, scene.features, visibility, SequentialSfMConfig(), np.random.default_rng(0))
    apply_resection(state, result)

    assert 2 in state.poses
    assert 2 not in state.remaining_view_ids
    assert state.thresholds[2] == result.threshold
    assert find_images_with_possible_resection(state, visibility) == [3]
    for track_id in result.inlier_track_ids:
        assert 2 in state.landmarks[track_id].observations
    state.validate()


def test_resection_failures_carry_view_id(scene):
    state, visibility = make_posed_state(scene, [0, 1])

    with pytest.raises(ResectionFailure) as excinfo:
        resect(0, state, scene.features, visibility, SequentialSfMConfig())
    assert excinfo.value.view_id == 0

    with pytest.raises(ResectionFailure) as excinfo:
        resect(2, state, scene.features, visibility, SequentialSfMConfig(min_resection_inliers=151))
    assert excinfo.value.view_id == 2
    assert 2 in state.remaining_view_ids


def test_resection_with_too_few_correspondences():
    visibility = {
        0: np.arange(0, 200),
        1: np.arange(0, 200),
        2: np.concatenate([np.arange(0, 4), np.arange(200, 240)]),
        3: np.arange(50, 240),
    }
    scene = make_scene(visibility=visibility)
    state, helper = make_posed_state(scene, [0, 1])
    with pytest.raises(ResectionFailure, match="correspondences"):
        resect(2, state, scene.features, helper, SequentialSfMConfig())


def test_triangulation_after_resection(scene):
    state, visibility = make_posed_state(scene, [0, 1])
    config = SequentialSfMConfig()
    for view_id in (2, 3):
        apply_resection(state, resect(view_id, state, scene.features, visibility, config, np.random.default_rng(0)))

    n_before = len(state.landmarks)
    report = triangulate_new_tracks(state, scene.features, visibility, [3], config)
    # Points 200-239 are only seen by views 2 and 3.
    assert report.added == 40
    assert report.rejected == 0
    assert len(state.landmarks) == n_before + 40
    for landmark in state.landmarks.values():
        for view_id, feat_idx in landmark.observations.items():
            projected = state.intrinsic_of(view_id).project(state.poses[view_id], landmark.X)[0]
            assert np.sum((projected - scene.features[view_id][feat_idx]) ** 2) <= state.thresholds[view_id]
    state.validate()
