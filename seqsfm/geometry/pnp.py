"""
Perspective-n-Point (PnP) pose estimation with selectable minimal solvers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np

from seqsfm.config import ResectionMethod
from seqsfm.geometry.camera import project_points, rotation_to_rvec, rvec_to_rotation

logger = logging.getLogger(__name__)

_OPENCV_FLAGS = {
    ResectionMethod.P3P: cv2.SOLVEPNP_P3P,
    ResectionMethod.AP3P: cv2.SOLVEPNP_AP3P,
    ResectionMethod.EPNP: cv2.SOLVEPNP_EPNP,
    ResectionMethod.SQPNP: cv2.SOLVEPNP_SQPNP,
}

# Minimal sample size of each solver, as used by the a-contrario threshold.
MINIMUM_SAMPLES = {
    ResectionMethod.DLT_6POINTS: 6,
    ResectionMethod.P3P: 4,
    ResectionMethod.AP3P: 4,
    ResectionMethod.EPNP: 5,
    ResectionMethod.SQPNP: 3,
}


@dataclass
class PnPResult:
    # Rotation (3x3) and translation (3,) from world to camera coordinates.
    R: np.ndarray
    t: np.ndarray
    # Boolean (N,) RANSAC inlier mask.
    inlier_mask: np.ndarray


def _dlt_camera_matrix(points_3d: np.ndarray, points_norm: np.ndarray) -> Optional[np.ndarray]:
    """Linear estimate of P = [R|t] (up to scale) from >= 6 normalized correspondences."""
    n = len(points_3d)
    A = np.zeros((2 * n, 12))
    X_h = np.hstack([points_3d, np.ones((n, 1))])
    A[0::2, 0:4] = X_h
    A[0::2, 8:12] = -points_norm[:, 0:1] * X_h
    A[1::2, 4:8] = X_h
    A[1::2, 8:12] = -points_norm[:, 1:2] * X_h
    _, S, Vt = np.linalg.svd(A)
    if S[-2] < 1e-12:
        return None
    return Vt[-1].reshape(3, 4)


def _decompose_calibrated(P: np.ndarray) -> Optional[tuple]:
    """Nearest rotation and translation of a calibrated camera matrix s * [R|t]."""
    M = P[:, :3]
    if np.linalg.det(M) < 0:
        P = -P
        M = -M
    U, S, Vt = np.linalg.svd(M)
    scale = float(np.mean(S))
    if scale < 1e-12:
        return None
    R = U @ Vt
    if np.linalg.det(R) < 0:
        return None
    t = P[:, 3] / scale
    return R, t


def _dlt_ransac(
    points_3d: np.ndarray,
    points_norm: np.ndarray,
    threshold_norm: float,
    confidence: float,
    max_iterations: int,
    rng: np.random.Generator,
) -> Optional[PnPResult]:
    n = len(points_3d)
    sample_size = MINIMUM_SAMPLES[ResectionMethod.DLT_6POINTS]
    best_mask = None
    best_count = 0
    n_required = max_iterations
    iteration = 0

    while iteration < min(n_required, max_iterations):
        iteration += 1
        sample = rng.choice(n, size=sample_size, replace=False)
        P = _dlt_camera_matrix(points_3d[sample], points_norm[sample])
        if P is None:
            continue
        pose = _decompose_calibrated(P)
        if pose is None:
            continue
        R, t = pose
        X_cam = points_3d @ R.T + t
        with np.errstate(divide="ignore", invalid="ignore"):
            err = np.linalg.norm(X_cam[:, :2] / X_cam[:, 2:3] - points_norm, axis=1)
        mask = (X_cam[:, 2] > 0) & (err < threshold_norm)
        count = int(mask.sum())
        if count > best_count:
            best_count = count
            best_mask = mask
            # Adaptive number of iterations for the requested confidence.
            inlier_ratio = count / n
            if inlier_ratio >= 1.0:
                n_required = iteration
            else:
                denom = np.log(1.0 - inlier_ratio ** sample_size)
                if denom < 0:
                    n_required = int(np.ceil(np.log(1.0 - confidence) / denom))

    if best_mask is None or best_count < sample_size:
        return None

    # Final linear fit on all inliers.
    P = _dlt_camera_matrix(points_3d[best_mask], points_norm[best_mask])
    if P is None:
        return None
    pose = _decompose_calibrated(P)
    if pose is None:
        return None
    R, t = pose
    logger.debug(f"DLT RANSAC: {iteration} iterations, {best_count}/{n} inliers")
    return PnPResult(R=R, t=t, inlier_mask=best_mask)


def refine_camera_pose(
    K: np.ndarray,
    dist: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
) -> tuple:
    """
    Levenberg-Marquardt refinement of a pose on its inlier correspondences.

    Returns the input pose unchanged with fewer than 4 correspondences.
    """
    t = np.asarray(t, dtype=np.float64).ravel()
    if len(points_3d) < 4:
        return R, t
    rvec, tvec = cv2.solvePnPRefineLM(
        np.ascontiguousarray(points_3d, dtype=np.float64).reshape(-1, 1, 3),
        np.ascontiguousarray(points_2d, dtype=np.float64).reshape(-1, 1, 2),
        K,
        dist,
        rotation_to_rvec(R).reshape(3, 1).copy(),
        t.reshape(3, 1).copy(),
    )
    return rvec_to_rotation(rvec), np.asarray(tvec, dtype=np.float64).ravel()


def estimate_camera_pose_pnp(
    K: np.ndarray,
    dist: np.ndarray,
    points_3d: np.ndarray,
    points_2d: np.ndarray,
    method: ResectionMethod = ResectionMethod.DEFAULT,
    reprojection_error: float = 8.0,
    max_iterations: int = 4096,
    confidence: float = 0.99,
    rng: Optional[np.random.Generator] = None,
) -> Optional[PnPResult]:
    """
    Estimate camera pose from 3D-2D correspondences using PnP RANSAC.

    Args:
        K: Intrinsic camera matrix (3x3).
        dist: Distortion coefficients (5,).
        points_3d: 3D points in world coordinates (N, 3).
        points_2d: Corresponding 2D points in pixel coordinates (N, 2).
        method: Minimal solver used inside RANSAC.
        reprojection_error: Inlier threshold in pixels.
        max_iterations: Hard cap on RANSAC iterations.
        confidence: RANSAC confidence level.
        rng: Random generator of the DLT sampler.

    Returns:
        PnPResult, or None if no pose could be estimated.
    """
    method = ResectionMethod(method)
    points_3d = np.ascontiguousarray(points_3d, dtype=np.float64).reshape(-1, 3)
    points_2d = np.ascontiguousarray(points_2d, dtype=np.float64).reshape(-1, 2)
    if len(points_3d) < max(MINIMUM_SAMPLES[method], 4):
        return None

    if method is ResectionMethod.DLT_6POINTS:
        points_norm = cv2.undistortPoints(points_2d.reshape(-1, 1, 2), K, dist).reshape(-1, 2)
        focal = 0.5 * (K[0, 0] + K[1, 1])
        result = _dlt_ransac(
            points_3d,
            points_norm,
            reprojection_error / focal,
            confidence,
            max_iterations,
            rng if rng is not None else np.random.default_rng(),
        )
        if result is None:
            return None
        rvec = rotation_to_rvec(result.R)
        tvec = result.t.reshape(3, 1)
        inlier_mask = result.inlier_mask
    else:
        success, rvec, tvec, inliers = cv2.solvePnPRansac(
            points_3d.reshape(-1, 1, 3),
            points_2d.reshape(-1, 1, 2),
            K,
            dist,
            flags=_OPENCV_FLAGS[method],
            reprojectionError=reprojection_error,
            confidence=confidence,
            iterationsCount=max_iterations,
        )
        if not success or inliers is None or len(inliers) == 0:
            return None
        inlier_mask = np.zeros(len(points_3d), dtype=bool)
        inlier_mask[inliers.ravel()] = True

    R, t = refine_camera_pose(
        K, dist, rvec_to_rotation(rvec), tvec, points_3d[inlier_mask], points_2d[inlier_mask]
    )
    if not (np.all(np.isfinite(R)) and np.all(np.isfinite(t))):
        return None

    # Recompute the inlier mask under the refined pose.
    projected = project_points(K, dist, R, t, points_3d)
    depth = (points_3d @ R.T + t)[:, 2]
    err = np.linalg.norm(projected - points_2d, axis=1)
    inlier_mask = (depth > 0) & (err < reprojection_error)

    C = -R.T @ t
    logger.debug(
        f"PnP ({method.value}): center {np.round(C, 3)}, "
        f"{int(inlier_mask.sum())}/{len(points_3d)} inliers"
    )
    return PnPResult(R=R, t=t, inlier_mask=inlier_mask)


__all__ = ["MINIMUM_SAMPLES", "PnPResult", "refine_camera_pose", "estimate_camera_pose_pnp"]
