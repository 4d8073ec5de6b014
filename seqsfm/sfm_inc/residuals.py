"""
Reprojection residual statistics and adaptive (a-contrario) inlier thresholds.

The a-contrario threshold of a camera is the residual radius minimizing the
number of false alarms (Moisan & Stival, "A probabilistic criterion to detect
rigid point matches between two images", IJCV 2004): the number of inliers a
background model of uniformly distributed errors would produce by chance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from scipy.special import gammaln

from seqsfm.config import SequentialSfMConfig
from seqsfm.sfm_inc.data_structures import ReconstructionState

logger = logging.getLogger(__name__)

# Residuals are clipped to this value before taking logarithms.
_MIN_SQUARED_RESIDUAL = 1e-20


@dataclass
class ResidualHistogram:
    """Fixed-range histogram of residual values."""

    lower: float
    upper: float
    n_bins: int = 10
    counts: np.ndarray = field(init=False)
    # Values outside [lower, upper].
    n_under: int = field(default=0, init=False)
    n_over: int = field(default=0, init=False)

    def __post_init__(self) -> None:
        if self.n_bins < 1:
            raise ValueError("n_bins must be >= 1")
        if self.upper <= self.lower:
            self.upper = self.lower + 1e-12
        self.counts = np.zeros(self.n_bins, dtype=np.int64)

    @property
    def bin_edges(self) -> np.ndarray:
        return np.linspace(self.lower, self.upper, self.n_bins + 1)

    @property
    def total(self) -> int:
        return int(self.counts.sum()) + self.n_under + self.n_over

    def add(self, values: np.ndarray) -> None:
        values = np.asarray(values, dtype=np.float64).ravel()
        self.n_under += int(np.sum(values < self.lower))
        self.n_over += int(np.sum(values > self.upper))
        inside = values[(values >= self.lower) & (values <= self.upper)]
        counts, _ = np.histogram(inside, bins=self.bin_edges)
        self.counts += counts

    def to_string(self) -> str:
        edges = self.bin_edges
        lines = [
            f"{edges[i]:10.4f} - {edges[i + 1]:10.4f}: {int(self.counts[i])}"
            for i in range(self.n_bins)
        ]
        if self.n_under or self.n_over:
            lines.append(f"outside range: {self.n_under} below, {self.n_over} above")
        return "\n".join(lines)


@dataclass
class AContrarioThreshold:
    # Squared residual bound (pixels^2) after clamping.
    threshold: float
    # Number of residuals below the bound.
    num_inliers: int
    # log10 of the number of false alarms at the optimum (< 0 is meaningful).
    log_nfa: float

    @property
    def meaningful(self) -> bool:
        return self.log_nfa < 0.0


def _log10_binomial(n, k) -> np.ndarray:
    return (gammaln(n + 1) - gammaln(k + 1) - gammaln(n - k + 1)) / np.log(10.0)


def a_contrario_threshold(
    squared_residuals: np.ndarray,
    sample_size: int,
    image_area: float,
    n_models: int = 1,
    lower: Optional[float] = None,
    upper: Optional[float] = None,
) -> Optional[AContrarioThreshold]:
    """
    Derive an inlier threshold from the distribution of squared residuals.

    NFA(k) = n_models * (n - p) * C(n, k) * C(k, p) * alpha_k^(k - p), with
    alpha_k = pi * r_k^2 / area the probability for a uniformly distributed
    point to fall within the k-th smallest residual.

    Args:
        squared_residuals: Squared reprojection errors (pixels^2).
        sample_size: Minimal sample size p of the estimated model.
        image_area: Area (pixels^2) of the image domain.
        n_models: Number of models a minimal sample can produce.
        lower: Lower clamp of the returned squared threshold.
        upper: Upper clamp of the returned squared threshold.

    Returns:
        AContrarioThreshold, or None with no more residuals than the sample size.
    """
    r = np.sort(np.maximum(np.asarray(squared_residuals, dtype=np.float64).ravel(), _MIN_SQUARED_RESIDUAL))
    r = r[np.isfinite(r)]
    n = len(r)
    if n <= sample_size:
        return None

    k = np.arange(sample_size + 1, n + 1, dtype=np.float64)
    log_alpha = np.log10(np.pi / image_area) + np.log10(r[sample_size:])
    log_nfa = (
        np.log10(n_models * (n - sample_size))
        + _log10_binomial(n, k)
        + _log10_binomial(k, sample_size)
        + (k - sample_size) * log_alpha
    )
    best = int(np.argmin(log_nfa))
    threshold = float(r[sample_size + best])
    if lower is not None:
        threshold = max(threshold, lower)
    if upper is not None:
        threshold = min(threshold, upper)
    num_inliers = int(np.sum(r <= threshold))
    return AContrarioThreshold(threshold=threshold, num_inliers=num_inliers, log_nfa=float(log_nfa[best]))


def image_area_for(state: ReconstructionState, view_id: int, points: Optional[np.ndarray] = None) -> float:
    """Image area of a view; falls back to the bounding box of its features."""
    area = state.intrinsic_of(view_id).image_area()
    if area is not None:
        return area
    if points is not None and len(points) > 0:
        extent = np.ptp(points, axis=0)
        return float(max(extent[0], 1.0) * max(extent[1], 1.0))
    return 1.0


def compute_residuals(
    state: ReconstructionState,
    features: Dict[int, np.ndarray],
) -> Dict[int, Tuple[List[int], np.ndarray]]:
    """
    Reprojection residuals of every landmark observation, grouped by view.

    Returns:
        view id -> (track ids, residual vectors (N, 2) in pixels).
    """
    per_view: Dict[int, Tuple[List[int], List[np.ndarray], List[int]]] = {}
    for track_id, view_id, feat_idx in state.iter_observations():
        ids, points, feats = per_view.setdefault(view_id, ([], [], []))
        ids.append(track_id)
        points.append(state.landmarks[track_id].X)
        feats.append(feat_idx)

    residuals = {}
    for view_id, (ids, points, feats) in per_view.items():
        projected = state.intrinsic_of(view_id).project(state.poses[view_id], np.asarray(points))
        observed = features[view_id][np.asarray(feats, dtype=np.int64)]
        residuals[view_id] = (ids, projected - observed)
    return residuals


def compute_residuals_histogram(
    state: ReconstructionState,
    features: Dict[int, np.ndarray],
    histogram: Optional[ResidualHistogram] = None,
    n_bins: int = 10,
) -> Tuple[float, Optional[ResidualHistogram]]:
    """
    Mean squared reprojection error and a histogram of residual components.

    Args:
        state: Reconstruction to evaluate.
        features: view id -> feature positions (N, 2).
        histogram: Histogram to fill; a new one spanning [min, max] of the
            absolute residual components is created when None.
        n_bins: Number of bins of a newly created histogram.

    Returns:
        (mse in pixels^2, histogram). mse is -1.0 when there is no observation.
    """
    per_view = compute_residuals(state, features)
    if not per_view:
        return -1.0, histogram

    vectors = np.vstack([res for _, res in per_view.values()])
    mse = float(np.mean(np.sum(vectors ** 2, axis=1)))
    components = np.abs(vectors).ravel()
    if histogram is None:
        histogram = ResidualHistogram(float(components.min()), float(components.max()), n_bins)
    histogram.add(components)
    logger.debug(
        f"Residuals: {len(vectors)} observations, mse={mse:.4g}, "
        f"min={components.min():.4g}, max={components.max():.4g}, "
        f"median={np.median(components):.4g}"
    )
    return mse, histogram


def estimate_view_thresholds(
    state: ReconstructionState,
    features: Dict[int, np.ndarray],
    config: SequentialSfMConfig,
    sample_size: int = 4,
) -> Dict[int, float]:
    """
    Re-derive the adaptive threshold of every posed view from its own residuals.

    Views without enough observations keep the upper clamp. The state's
    threshold map is replaced by the result.
    """
    lower = config.min_threshold_px ** 2
    upper = config.max_threshold_px ** 2
    per_view = compute_residuals(state, features)
    thresholds = {}
    for view_id in state.poses:
        ac = None
        if view_id in per_view:
            _, vectors = per_view[view_id]
            squared = np.sum(vectors ** 2, axis=1)
            area = image_area_for(state, view_id, features.get(view_id))
            ac = a_contrario_threshold(squared, sample_size, area, lower=lower, upper=upper)
        thresholds[view_id] = ac.threshold if ac is not None else upper
    state.thresholds = thresholds
    return thresholds


__all__ = [
    "ResidualHistogram",
    "AContrarioThreshold",
    "a_contrario_threshold",
    "image_area_for",
    "compute_residuals",
    "compute_residuals_histogram",
    "estimate_view_thresholds",
]
