"""
Robust relative pose between two calibrated views (essential matrix).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import cv2
import numpy as np


@dataclass
class RelativePose:
    """Relative motion of the second camera w.r.t. the first one."""

    # Rotation (3x3) and unit-norm translation (3,) from first to second camera.
    R: np.ndarray
    t: np.ndarray
    # Boolean (N,) mask of correspondences consistent with the motion
    # (RANSAC inliers that also pass the cheirality test).
    inlier_mask: np.ndarray

    @property
    def num_inliers(self) -> int:
        return int(np.sum(self.inlier_mask))


def estimate_relative_pose(
    x0: np.ndarray,
    x1: np.ndarray,
    threshold: float,
    confidence: float = 0.999,
    max_iterations: int = 100,
) -> Optional[RelativePose]:
    """
    Estimate the relative pose from normalized correspondences with RANSAC.

    Args:
        x0: Normalized (undistorted) coordinates in the first view (N, 2).
        x1: Normalized (undistorted) coordinates in the second view (N, 2).
        threshold: RANSAC epipolar threshold in normalized units
            (pixel threshold divided by the focal length).
        confidence: RANSAC confidence level.
        max_iterations: Hard cap on RANSAC iterations.

    Returns:
        RelativePose, or None if no model could be estimated.
    """
    if len(x0) < 5 or len(x1) < 5:
        return None

    x0 = np.ascontiguousarray(x0, dtype=np.float64).reshape(-1, 2)
    x1 = np.ascontiguousarray(x1, dtype=np.float64).reshape(-1, 2)
    E, mask = cv2.findEssentialMat(
        x0,
        x1,
        cameraMatrix=np.eye(3),
        method=cv2.RANSAC,
        prob=confidence,
        threshold=threshold,
        maxIters=max_iterations,
    )
    if E is None or mask is None or E.shape[0] < 3:
        return None
    # Several solutions may be stacked vertically; the first is the best scored.
    E = E[:3, :3]

    _, R, t, pose_mask = cv2.recoverPose(E, x0, x1, np.eye(3), mask=mask.copy())

    # OpenCV returns masks as uint8 (0 or 255). Convert to boolean mask of shape (N,).
    inlier_mask = pose_mask.ravel().astype(bool)
    if not np.any(inlier_mask):
        return None

    return RelativePose(R=R, t=t.ravel(), inlier_mask=inlier_mask)


__all__ = ["RelativePose", "estimate_relative_pose"]
