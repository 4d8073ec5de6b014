"""
Capabilities the engine consumes: feature and match sources plus an optional
diagnostics sink.

The engine holds non-owning references to the sources; they must outlive the
run. Both are read once, before growth begins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple, runtime_checkable

import numpy as np


@runtime_checkable
class FeatureSource(Protocol):
    def get_features(self, view_id: int) -> np.ndarray:
        """Feature positions (N, 2) in pixels, addressed by feature index."""
        ...

    def get_orientations(self, view_id: int) -> Optional[np.ndarray]:
        """Feature orientations (N,) in radians, or None if not available."""
        ...


@runtime_checkable
class MatchSource(Protocol):
    def get_matches(self) -> Mapping[Tuple[int, int], np.ndarray]:
        """(view_a, view_b) -> (M, 2) array of (feature_in_a, feature_in_b)."""
        ...


@runtime_checkable
class DiagnosticsSink(Protocol):
    def record(self, event: str, payload: Mapping[str, Any]) -> None:
        ...


@dataclass
class InMemoryFeatureSource:
    """Feature source backed by per-view arrays."""

    features: Dict[int, np.ndarray]
    orientations: Dict[int, np.ndarray] = field(default_factory=dict)

    def get_features(self, view_id: int) -> np.ndarray:
        return np.asarray(self.features[view_id], dtype=np.float64).reshape(-1, 2)

    def get_orientations(self, view_id: int) -> Optional[np.ndarray]:
        if view_id not in self.orientations:
            return None
        return np.asarray(self.orientations[view_id], dtype=np.float64).ravel()


@dataclass
class InMemoryMatchSource:
    """Match source backed by a dictionary of pairwise index arrays."""

    matches: Dict[Tuple[int, int], np.ndarray]

    def get_matches(self) -> Mapping[Tuple[int, int], np.ndarray]:
        return {
            (int(a), int(b)): np.asarray(m, dtype=np.int64).reshape(-1, 2)
            for (a, b), m in self.matches.items()
        }


class RecordingDiagnosticsSink:
    """Diagnostics sink keeping every event in memory, in emission order."""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    def record(self, event: str, payload: Mapping[str, Any]) -> None:
        self.events.append((event, dict(payload)))

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


__all__ = [
    "FeatureSource",
    "MatchSource",
    "DiagnosticsSink",
    "InMemoryFeatureSource",
    "InMemoryMatchSource",
    "RecordingDiagnosticsSink",
]
