import numpy as np
import pytest

from seqsfm.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import ReconstructionState
from seqsfm.sfm_inc.residuals import (
    ResidualHistogram,
    a_contrario_threshold,
    compute_residuals,
    compute_residuals_histogram,
    estimate_view_thresholds,
)

from conftest import make_posed_state


def test_a_contrario_separates_inliers_from_outliers():
    rng = np.random.default_rng(0)
    inliers = rng.uniform(1e-4, 1e-2, 100)
    outliers = rng.uniform(100.0, 10000.0, 50)
    squared = rng.permutation(np.concatenate([inliers, outliers]))

    ac = a_contrario_threshold(squared, sample_size=4, image_area=640 * 480)
    assert ac is not None
    assert ac.num_inliers == 100
    assert inliers.max() <= ac.threshold < 100.0
    assert ac.meaningful


def test_a_contrario_threshold_is_clamped():
    squared = np.full(50, 1e-8)
    ac = a_contrario_threshold(squared, 4, 640 * 480, lower=0.25, upper=16.0)
    assert ac.threshold == 0.25
    assert ac.num_inliers == 50

    squared = np.linspace(0.0, 400.0, 60)
    ac = a_contrario_threshold(squared, 4, 10.0, lower=0.25, upper=16.0)
    assert ac.threshold <= 16.0


def test_a_contrario_needs_more_than_sample_size():
    assert a_contrario_threshold(np.ones(4), 4, 100.0) is None
    assert a_contrario_threshold(np.ones(5), 4, 100.0) is not None


def test_histogram_counts_values():
    histogram = ResidualHistogram(0.0, 1.0, n_bins=4)
    histogram.add(np.array([0.1, 0.3, 0.3, 0.9, 1.0, 2.0, -1.0]))
    assert histogram.counts.tolist() == [1, 2, 0, 2]
    assert histogram.n_over == 1
    assert histogram.n_under == 1
    assert histogram.total == 7
    assert "outside range" in histogram.to_string()


def test_residuals_histogram_without_observations():
    mse, histogram = compute_residuals_histogram(ReconstructionState(), {})
    assert mse == -1.0
    assert histogram is None


def test_residuals_histogram_reports_mse(scene):
    state, _ = make_posed_state(scene, [0, 1])
    n_obs = state.num_observations()
    mse, histogram = compute_residuals_histogram(state, scene.features)
    assert mse == pytest.approx(0.0, abs=1e-12)
    assert histogram.total == 2 * n_obs
    assert histogram.counts.sum() == 2 * n_obs

    # Shift one observation by (3, 4) pixels.
    track_id = min(state.landmarks)
    view_id, feat_idx = next(iter(state.landmarks[track_id].observations.items()))
    features = {v: f.copy() for v, f in scene.features.items()}
    features[view_id][feat_idx] += [3.0, 4.0]
    mse, _ = compute_residuals_histogram(state, features)
    assert mse == pytest.approx(25.0 / n_obs, rel=1e-6)


def test_caller_histogram_keeps_its_range(scene):
    state, _ = make_posed_state(scene, [0, 1])
    histogram = ResidualHistogram(0.0, 10.0, n_bins=10)
    _, filled = compute_residuals_histogram(state, scene.features, histogram)
    assert filled is histogram
    assert filled.lower == 0.0 and filled.upper == 10.0
    assert filled.counts[0] == 2 * state.num_observations()


def test_compute_residuals_groups_by_view(scene):
    state, _ = make_posed_state(scene, [0, 1, 2])
    per_view = compute_residuals(state, scene.features)
    assert set(per_view) == {0, 1, 2}
    track_ids, vectors = per_view[2]
    assert len(track_ids) == vectors.shape[0] == 150


def test_view_thresholds_are_rederived_and_positive(scene, noisy_scene):
    config = SequentialSfMConfig()
    state, _ = make_posed_state(scene, [0, 1, 2])
    state.thresholds = {0: 9.0, 1: 9.0, 2: 9.0}
    thresholds = estimate_view_thresholds(state, scene.features, config)
    assert thresholds == {0: 0.25, 1: 0.25, 2: 0.25}
    assert state.thresholds == thresholds

    noisy, _ = make_posed_state(noisy_scene, [0, 1, 2])
    thresholds = estimate_view_thresholds(noisy, noisy_scene.features, config)
    for value in thresholds.values():
        assert config.min_threshold_px ** 2 <= value <= config.max_threshold_px ** 2
