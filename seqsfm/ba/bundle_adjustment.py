"""
Bundle adjustment for refining camera poses, 3D point positions and optionally
camera intrinsics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from seqsfm.config import SequentialSfMConfig
from seqsfm.errors import BundleAdjustmentDivergence
from seqsfm.geometry.camera import distort_normalized, max_parallax_deg, rotate_points, rotation_to_rvec, rvec_to_rotation
from seqsfm.sfm_inc.data_structures import DISTORTION_MASKS, Pose, ReconstructionState

logger = logging.getLogger(__name__)

# Relative cost increase tolerated before a run is reported as diverged.
_COST_TOLERANCE = 1e-9


@dataclass
class BundleAdjustmentOptions:
    refine_intrinsics: bool = False
    max_nfev: int = 100
    loss: str = "soft_l1"
    # Residual scale (pixels) where the robust loss starts to act.
    f_scale: float = 1.0
    # least_squares verbosity (0, 1 or 2).
    verbose: int = 0

    @classmethod
    def from_config(cls, config: SequentialSfMConfig) -> "BundleAdjustmentOptions":
        return cls(
            refine_intrinsics=config.refine_intrinsics,
            max_nfev=config.ba_max_nfev,
            loss=config.ba_loss,
            f_scale=config.max_threshold_px,
        )


@dataclass
class BundleAdjustmentReport:
    num_cameras: int
    num_points: int
    num_observations: int
    num_parameters: int
    initial_cost: float
    final_cost: float
    # Mean squared reprojection error (pixels^2) before and after.
    initial_mse: float
    final_mse: float
    nfev: int
    status: int
    message: str = ""
    refined_intrinsic_ids: List[int] = field(default_factory=list)


@dataclass
class _Problem:
    """Observation index arrays shared by the residual and sparsity functions."""

    view_ids: List[int]
    free_view_ids: List[int]
    track_ids: List[int]
    intrinsic_ids: List[int]
    # Per observation: index into view_ids, track_ids and intrinsic_ids.
    obs_view: np.ndarray
    obs_point: np.ndarray
    obs_intrinsic: np.ndarray
    observed: np.ndarray
    # Fixed values used when a block is not optimized.
    rvecs: np.ndarray
    tvecs: np.ndarray
    intrinsics: np.ndarray
    # Per intrinsic: boolean mask over [fx, fy, cx, cy, k1, k2, p1, p2, k3].
    intrinsic_masks: np.ndarray
    skews: np.ndarray


def _build_problem(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    refine_intrinsics: bool,
) -> _Problem:
    view_ids = sorted(state.poses)
    view_index = {v: i for i, v in enumerate(view_ids)}
    free_view_ids = [v for v in view_ids if v != state.reference_view_id]
    track_ids = sorted(state.landmarks)
    point_index = {t: i for i, t in enumerate(track_ids)}
    intrinsic_ids = sorted({state.views[v].intrinsic_id for v in view_ids})
    intrinsic_index = {k: i for i, k in enumerate(intrinsic_ids)}

    obs_view, obs_point, obs_intrinsic, observed = [], [], [], []
    for track_id, view_id, feat_idx in state.iter_observations():
        obs_view.append(view_index[view_id])
        obs_point.append(point_index[track_id])
        obs_intrinsic.append(intrinsic_index[state.views[view_id].intrinsic_id])
        observed.append(features[view_id][feat_idx])

    intrinsics = np.zeros((len(intrinsic_ids), 9))
    masks = np.zeros((len(intrinsic_ids), 9), dtype=bool)
    skews = np.zeros(len(intrinsic_ids))
    for i, intrinsic_id in enumerate(intrinsic_ids):
        intrinsic = state.intrinsics[intrinsic_id]
        K = intrinsic.K
        intrinsics[i] = [K[0, 0], K[1, 1], K[0, 2], K[1, 2], *intrinsic.dist]
        skews[i] = K[0, 1]
        if refine_intrinsics:
            masks[i, :4] = True
            masks[i, 4:] = DISTORTION_MASKS[intrinsic.type]

    return _Problem(
        view_ids=view_ids,
        free_view_ids=free_view_ids,
        track_ids=track_ids,
        intrinsic_ids=intrinsic_ids,
        obs_view=np.asarray(obs_view, dtype=np.int64),
        obs_point=np.asarray(obs_point, dtype=np.int64),
        obs_intrinsic=np.asarray(obs_intrinsic, dtype=np.int64),
        observed=np.asarray(observed, dtype=np.float64).reshape(-1, 2),
        rvecs=np.array([rotation_to_rvec(state.poses[v].R) for v in view_ids]).reshape(-1, 3),
        tvecs=np.array([state.poses[v].t for v in view_ids]).reshape(-1, 3),
        intrinsics=intrinsics,
        intrinsic_masks=masks,
        skews=skews,
    )


def pack_parameters(problem: _Problem, state: ReconstructionState) -> Tuple[np.ndarray, Dict]:
    """
    Pack free camera extrinsics, 3D points and free intrinsics into a 1D vector.

    Returns:
        Tuple of (params, meta) where meta holds the start index of each block:
        - meta["camera_params_start"]: 6 per free view (rvec (3) + t (3))
        - meta["point_params_start"]: 3 per landmark
        - meta["intrinsic_params_start"]: masked entries of each intrinsic
    """
    view_index = {v: i for i, v in enumerate(problem.view_ids)}
    free = [view_index[v] for v in problem.free_view_ids]
    cameras = np.hstack([problem.rvecs[free], problem.tvecs[free]]).ravel()
    points = np.array([state.landmarks[t].X for t in problem.track_ids]).ravel()
    intrinsics = problem.intrinsics[problem.intrinsic_masks]

    meta = {
        "camera_params_start": 0,
        "point_params_start": cameras.size,
        "intrinsic_params_start": cameras.size + points.size,
        "free_view_index": np.asarray(free, dtype=np.int64),
    }
    return np.concatenate([cameras, points, intrinsics]), meta


def _unpack_arrays(params: np.ndarray, problem: _Problem, meta: Dict):
    p0 = meta["point_params_start"]
    i0 = meta["intrinsic_params_start"]
    rvecs = problem.rvecs.copy()
    tvecs = problem.tvecs.copy()
    free = meta["free_view_index"]
    camera_params = params[:p0].reshape(-1, 6)
    rvecs[free] = camera_params[:, :3]
    tvecs[free] = camera_params[:, 3:]
    points = params[p0:i0].reshape(-1, 3)
    intrinsics = problem.intrinsics.copy()
    intrinsics[problem.intrinsic_masks] = params[i0:]
    return rvecs, tvecs, points, intrinsics


def unpack_parameters(params: np.ndarray, problem: _Problem, state: ReconstructionState, meta: Dict) -> None:
    """Write optimized parameters back into the state in place."""
    rvecs, tvecs, points, intrinsics = _unpack_arrays(params, problem, meta)
    for i, view_id in enumerate(problem.view_ids):
        if view_id == state.reference_view_id:
            continue
        state.poses[view_id] = Pose(rvec_to_rotation(rvecs[i]), tvecs[i])
    for i, track_id in enumerate(problem.track_ids):
        state.landmarks[track_id].X = points[i].copy()
    for i, intrinsic_id in enumerate(problem.intrinsic_ids):
        if not problem.intrinsic_masks[i].any():
            continue
        intrinsic = state.intrinsics[intrinsic_id]
        fx, fy, cx, cy = intrinsics[i, :4]
        intrinsic.K = np.array([[fx, problem.skews[i], cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])
        intrinsic.dist = intrinsics[i, 4:].copy()


def reprojection_residuals(params: np.ndarray, problem: _Problem, meta: Dict) -> np.ndarray:
    """
    Compute reprojection residuals for all observations.

    Returns:
        1D array of residuals (2 per observation: [du, dv]).
    """
    rvecs, tvecs, points, intrinsics = _unpack_arrays(params, problem, meta)
    X_cam = rotate_points(rvecs[problem.obs_view], points[problem.obs_point]) + tvecs[problem.obs_view]
    with np.errstate(divide="ignore", invalid="ignore"):
        xy = X_cam[:, :2] / X_cam[:, 2:3]
    k = intrinsics[problem.obs_intrinsic]
    xy_d = distort_normalized(xy, k[:, 4:])
    u = k[:, 0] * xy_d[:, 0] + problem.skews[problem.obs_intrinsic] * xy_d[:, 1] + k[:, 2]
    v = k[:, 1] * xy_d[:, 1] + k[:, 3]
    return (np.column_stack([u, v]) - problem.observed).ravel()


def bundle_adjustment_sparsity(problem: _Problem, meta: Dict, n_params: int) -> lil_matrix:
    """Jacobian sparsity pattern: each residual depends on one camera, point and intrinsic."""
    n_obs = len(problem.observed)
    A = lil_matrix((2 * n_obs, n_params), dtype=int)
    rows = np.arange(n_obs)

    free_position = -np.ones(len(problem.view_ids), dtype=np.int64)
    free_position[meta["free_view_index"]] = np.arange(len(meta["free_view_index"]))
    cam = free_position[problem.obs_view]
    has_cam = cam >= 0
    for s in range(6):
        col = meta["camera_params_start"] + cam[has_cam] * 6 + s
        A[2 * rows[has_cam], col] = 1
        A[2 * rows[has_cam] + 1, col] = 1

    for s in range(3):
        col = meta["point_params_start"] + problem.obs_point * 3 + s
        A[2 * rows, col] = 1
        A[2 * rows + 1, col] = 1

    offsets = np.concatenate([[0], np.cumsum(problem.intrinsic_masks.sum(axis=1))])
    for i in range(len(problem.intrinsic_ids)):
        n_free = offsets[i + 1] - offsets[i]
        if n_free == 0:
            continue
        obs = rows[problem.obs_intrinsic == i]
        for s in range(n_free):
            col = meta["intrinsic_params_start"] + offsets[i] + s
            A[2 * obs, col] = 1
            A[2 * obs + 1, col] = 1
    return A


def _robust_cost(residuals: np.ndarray, loss: str, f_scale: float) -> float:
    """Cost 0.5 * C^2 * sum(rho(f^2 / C^2)) with scipy's loss definitions."""
    z = (residuals / f_scale) ** 2
    if loss == "linear":
        rho = z
    elif loss == "soft_l1":
        rho = 2.0 * (np.sqrt(1.0 + z) - 1.0)
    elif loss == "huber":
        rho = np.where(z <= 1.0, z, 2.0 * np.sqrt(z) - 1.0)
    elif loss == "cauchy":
        rho = np.log1p(z)
    elif loss == "arctan":
        rho = np.arctan(z)
    else:
        raise ValueError(f"Unsupported loss: {loss}")
    return float(0.5 * f_scale ** 2 * np.sum(rho))


def _mse(residuals: np.ndarray) -> float:
    return float(np.mean(np.sum(residuals.reshape(-1, 2) ** 2, axis=1)))


def refine(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    options: Optional[BundleAdjustmentOptions] = None,
) -> BundleAdjustmentReport:
    """
    Run bundle adjustment over all posed views and landmarks.

    The reference view stays fixed. The state is only updated on success.

    Raises:
        BundleAdjustmentDivergence: Nothing to optimize, non-finite residuals,
            improper solver input or a final cost above the initial one.
    """
    if options is None:
        options = BundleAdjustmentOptions()
    if not state.poses or not state.landmarks:
        raise BundleAdjustmentDivergence("Nothing to optimize")

    problem = _build_problem(state, features, options.refine_intrinsics)
    params, meta = pack_parameters(problem, state)
    n_obs = len(problem.observed)
    if n_obs == 0 or params.size == 0:
        raise BundleAdjustmentDivergence("Nothing to optimize")
    if 2 * n_obs < params.size:
        raise BundleAdjustmentDivergence(
            f"Underdetermined problem: {2 * n_obs} residuals for {params.size} parameters"
        )

    initial = reprojection_residuals(params, problem, meta)
    if not np.all(np.isfinite(initial)):
        raise BundleAdjustmentDivergence("Non-finite initial residuals")
    initial_cost = _robust_cost(initial, options.loss, options.f_scale)

    logger.debug(
        f"Starting bundle adjustment with {len(problem.view_ids)} cameras, "
        f"{len(problem.track_ids)} points, {n_obs} observations, {params.size} parameters, "
        f"max_nfev={options.max_nfev}"
    )
    try:
        result = least_squares(
            reprojection_residuals,
            params,
            args=(problem, meta),
            jac_sparsity=bundle_adjustment_sparsity(problem, meta, params.size),
            method="trf",
            x_scale="jac",
            loss=options.loss,
            f_scale=options.f_scale,
            verbose=options.verbose,
            max_nfev=options.max_nfev,
        )
    except ValueError as e:
        raise BundleAdjustmentDivergence(str(e)) from e
    if result.status == -1:
        raise BundleAdjustmentDivergence(f"Improper solver input: {result.message}")

    final = reprojection_residuals(result.x, problem, meta)
    if not np.all(np.isfinite(final)):
        raise BundleAdjustmentDivergence("Non-finite residuals after optimization")
    final_cost = _robust_cost(final, options.loss, options.f_scale)
    if final_cost > initial_cost * (1.0 + _COST_TOLERANCE) + _COST_TOLERANCE:
        raise BundleAdjustmentDivergence(
            f"Cost increased from {initial_cost:.6g} to {final_cost:.6g}"
        )

    unpack_parameters(result.x, problem, state, meta)
    report = BundleAdjustmentReport(
        num_cameras=len(problem.view_ids),
        num_points=len(problem.track_ids),
        num_observations=n_obs,
        num_parameters=params.size,
        initial_cost=initial_cost,
        final_cost=final_cost,
        initial_mse=_mse(initial),
        final_mse=_mse(final),
        nfev=int(result.nfev),
        status=int(result.status),
        message=str(result.message),
        refined_intrinsic_ids=[
            k for i, k in enumerate(problem.intrinsic_ids) if problem.intrinsic_masks[i].any()
        ],
    )
    logger.info(
        f"Bundle adjustment: {report.num_cameras} cameras, {report.num_points} points, "
        f"mse {report.initial_mse:.4g} -> {report.final_mse:.4g} px^2, nfev={report.nfev}"
    )
    return report


def reject_outliers(
    state: ReconstructionState,
    features: Mapping[int, np.ndarray],
    min_angle_deg: float,
) -> Tuple[int, int]:
    """
    Remove observations above their view threshold and weak landmarks.

    A landmark is removed when fewer than two observations remain or its
    maximal parallax falls below ``min_angle_deg``. Poses are never removed.

    Returns:
        (removed observations, removed landmarks).
    """
    removed_observations = 0
    removed_landmarks = 0
    for track_id in sorted(state.landmarks):
        landmark = state.landmarks[track_id]
        for view_id in sorted(landmark.observations):
            feat_idx = landmark.observations[view_id]
            pose = state.poses[view_id]
            projected = state.intrinsic_of(view_id).project(pose, landmark.X)[0]
            squared = float(np.sum((projected - features[view_id][feat_idx]) ** 2))
            if pose.depth(landmark.X)[0] <= 0.0 or not squared <= state.thresholds[view_id]:
                del landmark.observations[view_id]
                removed_observations += 1

        drop = len(landmark.observations) < 2
        if not drop:
            centers = np.array([state.poses[v].center for v in landmark.observations])
            drop = max_parallax_deg(centers, landmark.X) < min_angle_deg
        if drop:
            removed_observations += len(landmark.observations)
            del state.landmarks[track_id]
            removed_landmarks += 1

    if removed_observations or removed_landmarks:
        logger.info(
            f"Outlier rejection: {removed_observations} observations, "
            f"{removed_landmarks} landmarks removed"
        )
    return removed_observations, removed_landmarks


__all__ = [
    "BundleAdjustmentOptions",
    "BundleAdjustmentReport",
    "pack_parameters",
    "unpack_parameters",
    "reprojection_residuals",
    "bundle_adjustment_sparsity",
    "refine",
    "reject_outliers",
]
