"""
3D point triangulation from two or more posed views.

Rays are given as unit bearing vectors in each camera frame, so the methods
are independent of the lens model. Two-view methods follow Lee & Civera
("Triangulation: Why Optimize?", BMVC 2019; "Closed-Form Optimal Two-View
Triangulation Based on Angular Errors", ICCV 2019).
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import cv2
import numpy as np

from seqsfm.config import TriangulationMethod
from seqsfm.errors import TriangulationFailure
from seqsfm.geometry.camera import ray_angle_deg

# Rays whose cross product falls below this are treated as parallel.
_PARALLEL_EPS = 1e-9


def _relative_motion(
    R0: np.ndarray, t0: np.ndarray, R1: np.ndarray, t1: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """Motion (R, t) mapping camera-0 coordinates to camera-1 coordinates."""
    R = R1 @ R0.T
    t = t1 - R @ t0
    return R, t


def _intersect_rays(p: np.ndarray, q: np.ndarray, t: np.ndarray) -> Optional[np.ndarray]:
    """
    Inverse-depth weighted midpoint of the rays ``t + l0 * p`` and ``l1 * q``.

    All vectors are expressed in camera-1 coordinates; ``t`` is the center of
    camera 0. Returns None for parallel rays or a point behind either camera.
    """
    p = p / np.linalg.norm(p)
    q = q / np.linalg.norm(q)
    p_x_q = np.linalg.norm(np.cross(p, q))
    if p_x_q < _PARALLEL_EPS:
        return None
    lambda0 = np.linalg.norm(np.cross(q, t)) / p_x_q
    lambda1 = np.linalg.norm(np.cross(p, t)) / p_x_q
    if lambda0 + lambda1 < _PARALLEL_EPS:
        return None
    a = t + lambda0 * p
    b = lambda1 * q

    # Cheirality: the closest approach has to use positive depths on both rays.
    gap = np.sum((a - b) ** 2)
    if gap >= min(
        np.sum((t + lambda0 * p + b) ** 2),
        np.sum((t - lambda0 * p - b) ** 2),
        np.sum((t - lambda0 * p + b) ** 2),
    ):
        return None
    X1 = (lambda1 * a + lambda0 * b) / (lambda0 + lambda1)
    if np.dot(X1 - t, p) <= 0.0 or np.dot(X1, q) <= 0.0:
        return None
    return X1


def _l1_angular_rays(Rf0: np.ndarray, f1: np.ndarray, t: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    m0 = np.cross(Rf0, t)
    m1 = np.cross(f1, t)
    if np.linalg.norm(m0) <= np.linalg.norm(m1):
        n1 = m1 / np.linalg.norm(m1)
        return Rf0 - np.dot(Rf0, n1) * n1, f1
    n0 = m0 / np.linalg.norm(m0)
    return Rf0, f1 - np.dot(f1, n0) * n0


def _linf_angular_rays(Rf0: np.ndarray, f1: np.ndarray, t: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    Rf0_n = Rf0 / np.linalg.norm(Rf0)
    f1_n = f1 / np.linalg.norm(f1)
    na = np.cross(Rf0_n + f1_n, t)
    nb = np.cross(Rf0_n - f1_n, t)
    n = na if np.linalg.norm(na) >= np.linalg.norm(nb) else nb
    n = n / np.linalg.norm(n)
    return Rf0 - np.dot(Rf0, n) * n, f1 - np.dot(f1, n) * n


def _dlt_two_view(
    R0: np.ndarray, t0: np.ndarray, R1: np.ndarray, t1: np.ndarray, f0: np.ndarray, f1: np.ndarray
) -> Optional[np.ndarray]:
    P0 = np.hstack([R0, t0.reshape(3, 1)])
    P1 = np.hstack([R1, t1.reshape(3, 1)])
    x0 = (f0[:2] / f0[2]).reshape(2, 1)
    x1 = (f1[:2] / f1[2]).reshape(2, 1)
    X_h = cv2.triangulatePoints(P0, P1, x0, x1).ravel()
    if abs(X_h[3]) < 1e-12:
        return None
    return X_h[:3] / X_h[3]


def triangulate_two_view(
    method: TriangulationMethod,
    R0: np.ndarray,
    t0: np.ndarray,
    R1: np.ndarray,
    t1: np.ndarray,
    f0: np.ndarray,
    f1: np.ndarray,
) -> Optional[np.ndarray]:
    """
    Triangulate one point from two posed views.

    Args:
        method: Triangulation algorithm.
        R0, t0: World-to-camera pose of the first view.
        R1, t1: World-to-camera pose of the second view.
        f0, f1: Bearing vectors (3,) of the observation in each camera frame.

    Returns:
        World point (3,), or None for degenerate geometry or cheirality failure.
    """
    t0 = np.asarray(t0, dtype=np.float64).ravel()
    t1 = np.asarray(t1, dtype=np.float64).ravel()
    method = TriangulationMethod(method)

    if method is TriangulationMethod.DIRECT_LINEAR_TRANSFORM:
        X = _dlt_two_view(R0, t0, R1, t1, f0, f1)
        if X is None:
            return None
        if np.dot(R0 @ X + t0, f0) <= 0.0 or np.dot(R1 @ X + t1, f1) <= 0.0:
            return None
        return X

    R, t = _relative_motion(R0, t0, R1, t1)
    if np.linalg.norm(t) < _PARALLEL_EPS:
        return None
    Rf0 = R @ f0
    if method is TriangulationMethod.L1_ANGULAR:
        if np.linalg.norm(np.cross(Rf0, t)) < _PARALLEL_EPS or np.linalg.norm(np.cross(f1, t)) < _PARALLEL_EPS:
            return None
        p, q = _l1_angular_rays(Rf0, f1, t)
    elif method is TriangulationMethod.LINF_ANGULAR:
        p, q = _linf_angular_rays(Rf0, f1, t)
    else:
        p, q = Rf0, f1

    X1 = _intersect_rays(p, q, t)
    if X1 is None:
        return None
    return R1.T @ (X1 - t1)


def triangulate_n_view(
    rotations: Sequence[np.ndarray],
    translations: Sequence[np.ndarray],
    bearings: np.ndarray,
) -> Optional[np.ndarray]:
    """
    Linear (DLT) triangulation of one point from N >= 2 views.

    Returns:
        World point (3,), or None when the homogeneous solution is at infinity.
    """
    A = []
    for R, t, f in zip(rotations, translations, bearings):
        P = np.hstack([R, np.asarray(t, dtype=np.float64).reshape(3, 1)])
        x, y = f[0] / f[2], f[1] / f[2]
        A.append(x * P[2, :] - P[0, :])
        A.append(y * P[2, :] - P[1, :])
    _, _, Vt = np.linalg.svd(np.asarray(A))
    X_h = Vt[-1]
    if abs(X_h[3]) < 1e-12:
        return None
    return X_h[:3] / X_h[3]


def triangulate_track(
    rotations: Sequence[np.ndarray],
    translations: Sequence[np.ndarray],
    bearings: np.ndarray,
    method: TriangulationMethod = TriangulationMethod.DEFAULT,
    min_angle_deg: float = 0.0,
) -> np.ndarray:
    """
    Triangulate a track observed by two or more posed views.

    Two views use the configured two-view method. More views use the N-view DLT
    for DIRECT_LINEAR_TRANSFORM, otherwise the two-view method on the pair with
    the widest ray angle.

    Args:
        rotations: World-to-camera rotations of the observing views.
        translations: World-to-camera translations of the observing views.
        bearings: Bearing vectors (N, 3) of the observations.
        method: Triangulation algorithm.
        min_angle_deg: Reject points whose maximal parallax is below this.

    Returns:
        World point (3,).

    Raises:
        TriangulationFailure: Near-parallel rays, degenerate system or a point
            behind one of the cameras.
    """
    n_views = len(rotations)
    if n_views < 2:
        raise TriangulationFailure(f"need at least 2 posed views, got {n_views}")
    method = TriangulationMethod(method)
    translations = [np.asarray(t, dtype=np.float64).ravel() for t in translations]
    centers = [-R.T @ t for R, t in zip(rotations, translations)]
    # World-frame ray directions, used for the parallax of each view pair.
    world_rays = [R.T @ f for R, f in zip(rotations, bearings)]

    def ray_angle(i: int, j: int) -> float:
        a, b = world_rays[i], world_rays[j]
        cos_angle = np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b))
        return float(np.degrees(np.arccos(np.clip(cos_angle, -1.0, 1.0))))

    if n_views == 2 or method is not TriangulationMethod.DIRECT_LINEAR_TRANSFORM:
        best = (0, 1)
        if n_views > 2:
            pairs = [(i, j) for i in range(n_views) for j in range(i + 1, n_views)]
            best = max(pairs, key=lambda ij: ray_angle(*ij))
        i, j = best
        X = triangulate_two_view(
            method, rotations[i], translations[i], rotations[j], translations[j], bearings[i], bearings[j]
        )
    else:
        X = triangulate_n_view(rotations, translations, bearings)

    if X is None or not np.all(np.isfinite(X)):
        raise TriangulationFailure("degenerate geometry (parallel rays or point at infinity)")

    for R, t, f in zip(rotations, translations, bearings):
        if np.dot(R @ X + t, f) <= 0.0:
            raise TriangulationFailure("cheirality violation")

    if min_angle_deg > 0.0:
        parallax = max(
            ray_angle_deg(centers[i], centers[j], X)
            for i in range(n_views)
            for j in range(i + 1, n_views)
        )
        if parallax < min_angle_deg:
            raise TriangulationFailure(f"parallax {parallax:.3f} deg below {min_angle_deg} deg")
    return X


__all__ = [
    "triangulate_two_view",
    "triangulate_n_view",
    "triangulate_track",
]
