"""
Failure taxonomy of the sequential SfM engine.

Per-view failures (resection, triangulation) are local and only skip the view
or track. Track building and seed failures end the run. Bundle adjustment
divergence triggers a rollback of the last growth step.
"""

from __future__ import annotations

from typing import Optional


class SfMError(Exception):
    """Base class of every reconstruction failure."""

    kind = "sfm_error"


class TrackBuildFailure(SfMError):
    """No valid multi-view correspondence could be built from the matches."""

    kind = "track_build_failure"


class SeedSelectionFailure(SfMError):
    """No pair or triplet meets the overlap and baseline criteria."""

    kind = "seed_selection_failure"


class SeedGeometryFailure(SfMError):
    """Robust estimation of the seed geometry failed."""

    kind = "seed_geometry_failure"


class ResectionFailure(SfMError):
    """Insufficient or degenerate 2D-3D inliers for a candidate view."""

    kind = "resection_failure"

    def __init__(self, view_id: int, reason: str) -> None:
        super().__init__(f"view {view_id}: {reason}")
        self.view_id = view_id
        self.reason = reason


class TriangulationFailure(SfMError):
    """Cheirality violation or near-parallel rays."""

    kind = "triangulation_failure"

    def __init__(self, reason: str, track_id: Optional[int] = None) -> None:
        prefix = f"track {track_id}: " if track_id is not None else ""
        super().__init__(prefix + reason)
        self.track_id = track_id
        self.reason = reason


class BundleAdjustmentDivergence(SfMError):
    """The least-squares solver did not converge or the problem is degenerate."""

    kind = "bundle_adjustment_divergence"


__all__ = [
    "SfMError",
    "TrackBuildFailure",
    "SeedSelectionFailure",
    "SeedGeometryFailure",
    "ResectionFailure",
    "TriangulationFailure",
    "BundleAdjustmentDivergence",
]
