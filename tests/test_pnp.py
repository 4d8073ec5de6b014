import numpy as np
import pytest

from seqsfm.config import ResectionMethod
from seqsfm.geometry.camera import project_points
from seqsfm.geometry.pnp import estimate_camera_pose_pnp, refine_camera_pose

from conftest import K, look_at


def _correspondences(n_points=120, n_outliers=20, noise_px=0.0, seed=3):
    rng = np.random.default_rng(seed)
    points_3d = np.column_stack(
        [rng.uniform(-1.0, 1.0, n_points), rng.uniform(-1.0, 1.0, n_points), rng.uniform(4.0, 6.0, n_points)]
    )
    pose = look_at((0.5, -0.3, 0.2))
    points_2d = project_points(K, np.zeros(5), pose.R, pose.t, points_3d)
    if noise_px > 0:
        points_2d += rng.normal(0.0, noise_px, points_2d.shape)
    outliers = rng.choice(n_points, size=n_outliers, replace=False)
    points_2d[outliers] = rng.uniform([0.0, 0.0], [640.0, 480.0], (n_outliers, 2))
    return pose, points_3d, points_2d, outliers


@pytest.mark.parametrize("method", list(ResectionMethod))
def test_pose_is_recovered_with_outliers(method):
    pose, points_3d, points_2d, outliers = _correspondences()
    result = estimate_camera_pose_pnp(
        K, np.zeros(5), points_3d, points_2d, method=method,
        reprojection_error=2.0, rng=np.random.default_rng(0),
    )
    assert result is not None
    np.testing.assert_allclose(result.R, pose.R, atol=1e-6)
    np.testing.assert_allclose(result.t, pose.t, atol=1e-6)
    assert result.inlier_mask.sum() >= len(points_3d) - len(outliers)
    # Uniformly drawn outliers can land close to the true projection by chance.
    assert result.inlier_mask[outliers].sum() <= 2


def test_dlt_with_noise():
    pose, points_3d, points_2d, _ = _correspondences(noise_px=0.5)
    result = estimate_camera_pose_pnp(
        K, np.zeros(5), points_3d, points_2d, method=ResectionMethod.DLT_6POINTS,
        reprojection_error=4.0, rng=np.random.default_rng(1),
    )
    assert result is not None
    assert np.linalg.norm(result.R.T @ result.t - pose.R.T @ pose.t) < 0.05


def test_too_few_points():
    _, points_3d, points_2d, _ = _correspondences(n_points=10, n_outliers=0)
    assert estimate_camera_pose_pnp(K, np.zeros(5), points_3d[:5], points_2d[:5], ResectionMethod.DLT_6POINTS) is None
    assert estimate_camera_pose_pnp(K, np.zeros(5), points_3d[:3], points_2d[:3], ResectionMethod.P3P) is None


def test_refine_moves_perturbed_pose_back():
    pose, points_3d, points_2d, outliers = _correspondences(n_outliers=0)
    t_off = pose.t + np.array([0.02, -0.01, 0.03])
    R, t = refine_camera_pose(K, np.zeros(5), pose.R, t_off, points_3d, points_2d)
    np.testing.assert_allclose(t, pose.t, atol=1e-6)
    np.testing.assert_allclose(R, pose.R, atol=1e-6)

    # Too few points: returned as is.
    R, t = refine_camera_pose(K, np.zeros(5), pose.R, t_off, points_3d[:3], points_2d[:3])
    np.testing.assert_allclose(t, t_off)
