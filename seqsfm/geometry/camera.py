"""
Camera projection helpers shared by resection, triangulation and bundle adjustment.

Poses are world-to-camera: ``X_cam = R @ X_world + t``. Distortion follows the
OpenCV model with coefficients ``[k1, k2, p1, p2, k3]``.
"""

from __future__ import annotations

import cv2
import numpy as np


def distort_normalized(xy: np.ndarray, dist: np.ndarray) -> np.ndarray:
    """
    Apply radial and tangential distortion to normalized image coordinates.

    Args:
        xy: Normalized coordinates (N, 2).
        dist: Distortion coefficients (5,) or (N, 5) for per-point coefficients.

    Returns:
        Distorted normalized coordinates (N, 2).
    """
    dist = np.asarray(dist, dtype=np.float64)
    if dist.ndim == 1:
        dist = np.broadcast_to(dist, (xy.shape[0], 5))
    k1, k2, p1, p2, k3 = (dist[:, i] for i in range(5))

    x = xy[:, 0]
    y = xy[:, 1]
    r2 = x * x + y * y
    radial = 1.0 + k1 * r2 + k2 * r2 * r2 + k3 * r2 * r2 * r2
    x_d = x * radial + 2.0 * p1 * x * y + p2 * (r2 + 2.0 * x * x)
    y_d = y * radial + p1 * (r2 + 2.0 * y * y) + 2.0 * p2 * x * y
    return np.column_stack([x_d, y_d])


def project_points(
    K: np.ndarray,
    dist: np.ndarray,
    R: np.ndarray,
    t: np.ndarray,
    X: np.ndarray,
) -> np.ndarray:
    """
    Project world points into pixel coordinates.

    Args:
        K: Intrinsic camera matrix (3x3).
        dist: Distortion coefficients (5,).
        R: Rotation (3x3), world to camera.
        t: Translation (3,) or (3, 1), world to camera.
        X: World points (N, 3).

    Returns:
        Pixel coordinates (N, 2). Points at zero depth project to inf.
    """
    X = np.asarray(X, dtype=np.float64).reshape(-1, 3)
    X_cam = X @ R.T + np.asarray(t, dtype=np.float64).reshape(1, 3)
    with np.errstate(divide="ignore", invalid="ignore"):
        xy = X_cam[:, :2] / X_cam[:, 2:3]
    xy_d = distort_normalized(xy, dist)
    u = K[0, 0] * xy_d[:, 0] + K[0, 1] * xy_d[:, 1] + K[0, 2]
    v = K[1, 1] * xy_d[:, 1] + K[1, 2]
    return np.column_stack([u, v])


def undistort_to_normalized(K: np.ndarray, dist: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Remove the lens model from pixel coordinates.

    Args:
        K: Intrinsic camera matrix (3x3).
        dist: Distortion coefficients (5,).
        points: Pixel coordinates (N, 2).

    Returns:
        Normalized image coordinates (N, 2) on the z=1 plane.
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
    if len(points) == 0:
        return np.zeros((0, 2))
    if not np.any(dist):
        ones = np.ones((len(points), 1))
        return (np.hstack([points, ones]) @ np.linalg.inv(K).T)[:, :2]
    undistorted = cv2.undistortPoints(points.reshape(-1, 1, 2), K, dist)
    return undistorted.reshape(-1, 2)


def bearing_vectors(normalized: np.ndarray) -> np.ndarray:
    """Unit-norm viewing rays (N, 3) from normalized coordinates (N, 2)."""
    rays = np.hstack([normalized, np.ones((len(normalized), 1))])
    return rays / np.linalg.norm(rays, axis=1, keepdims=True)


def camera_center(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Camera center in world coordinates: C = -R^T @ t."""
    return -R.T @ np.asarray(t, dtype=np.float64).ravel()


def ray_angle_deg(center_a: np.ndarray, center_b: np.ndarray, X: np.ndarray) -> float:
    """Angle (degrees) between the rays from two camera centers to a point."""
    ray_a = X - center_a
    ray_b = X - center_b
    norm = np.linalg.norm(ray_a) * np.linalg.norm(ray_b)
    if norm < 1e-12:
        return 0.0
    cos_angle = float(np.dot(ray_a, ray_b) / norm)
    return float(np.degrees(np.arccos(np.clip(cos_angle, -1.0, 1.0))))


def max_parallax_deg(centers: np.ndarray, X: np.ndarray) -> float:
    """Largest pairwise ray angle (degrees) among the given camera centers."""
    best = 0.0
    for i in range(len(centers)):
        for j in range(i + 1, len(centers)):
            best = max(best, ray_angle_deg(centers[i], centers[j], X))
    return best


def rotation_to_rvec(R: np.ndarray) -> np.ndarray:
    rvec, _ = cv2.Rodrigues(np.asarray(R, dtype=np.float64))
    return rvec.ravel()


def rvec_to_rotation(rvec: np.ndarray) -> np.ndarray:
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    return R


def rotate_points(rvecs: np.ndarray, points: np.ndarray) -> np.ndarray:
    """
    Rotate each point by its own axis-angle vector (Rodrigues formula).

    Args:
        rvecs: Rotation vectors (N, 3).
        points: Points (N, 3).

    Returns:
        Rotated points (N, 3).
    """
    theta = np.linalg.norm(rvecs, axis=1)[:, np.newaxis]
    with np.errstate(invalid="ignore", divide="ignore"):
        v = rvecs / theta
    v = np.nan_to_num(v)
    dot = np.sum(points * v, axis=1)[:, np.newaxis]
    cos_theta = np.cos(theta)
    sin_theta = np.sin(theta)
    return cos_theta * points + sin_theta * np.cross(v, points) + dot * (1.0 - cos_theta) * v


__all__ = [
    "distort_normalized",
    "project_points",
    "undistort_to_normalized",
    "bearing_vectors",
    "camera_center",
    "ray_angle_deg",
    "max_parallax_deg",
    "rotation_to_rvec",
    "rvec_to_rotation",
    "rotate_points",
]
