"""
Multi-view track building from pairwise feature matches.

Matches are edges between (view, feature) nodes; every connected component is
a candidate track. Components where a view contributes two different features
are ambiguous and discarded.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Hashable, Iterable, List, Mapping, Optional, Set, Tuple

import numpy as np

from seqsfm.config import MultiviewMatchConstraint
from seqsfm.errors import TrackBuildFailure
from seqsfm.sfm_inc.data_structures import Track
from seqsfm.sfm_inc.providers import FeatureSource

logger = logging.getLogger(__name__)

Node = Tuple[int, int]


class UnionFind:
    """Disjoint-set forest over hashable nodes (path halving, union by size)."""

    def __init__(self) -> None:
        self.parent: Dict[Hashable, Hashable] = {}
        self.size: Dict[Hashable, int] = {}

    def add(self, x: Hashable) -> None:
        if x not in self.parent:
            self.parent[x] = x
            self.size[x] = 1

    def find(self, x: Hashable) -> Hashable:
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a: Hashable, b: Hashable) -> Hashable:
        self.add(a)
        self.add(b)
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self.size[ra] < self.size[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        self.size[ra] += self.size[rb]
        return ra

    def components(self) -> List[List[Hashable]]:
        groups: Dict[Hashable, List[Hashable]] = defaultdict(list)
        for x in self.parent:
            groups[self.find(x)].append(x)
        return list(groups.values())


def filter_matches_by_orientation(
    matches: np.ndarray,
    orientations_a: np.ndarray,
    orientations_b: np.ndarray,
    n_bins: int = 30,
    kept_bins: int = 3,
) -> np.ndarray:
    """
    Keep matches whose orientation change agrees with the dominant rotation.

    Args:
        matches: (M, 2) feature index pairs.
        orientations_a: Feature orientations (radians) of the first view.
        orientations_b: Feature orientations (radians) of the second view.
        n_bins: Number of histogram bins over 360 degrees.
        kept_bins: Number of most populated bins kept.

    Returns:
        The consistent subset of ``matches``.
    """
    if len(matches) == 0:
        return matches
    delta = orientations_b[matches[:, 1]] - orientations_a[matches[:, 0]]
    delta = np.mod(delta, 2.0 * np.pi)
    bins = np.minimum((delta / (2.0 * np.pi) * n_bins).astype(int), n_bins - 1)
    counts = np.bincount(bins, minlength=n_bins)
    # Stable sort so equally populated bins are chosen deterministically.
    order = np.argsort(-counts, kind="stable")
    keep = [b for b in order[:kept_bins] if counts[b] > 0]
    return matches[np.isin(bins, keep)]


class TracksBuilder:
    """Builds tracks with a union-find over (view, feature) nodes."""

    def __init__(self) -> None:
        self._uf = UnionFind()
        self._tracks: List[List[Node]] = []

    def build(self, matches: Mapping[Tuple[int, int], np.ndarray]) -> None:
        n_edges = 0
        for (view_a, view_b), pair_matches in sorted(matches.items()):
            if view_a == view_b:
                logger.debug(f"Skipping self pair ({view_a}, {view_b})")
                continue
            pair_matches = np.asarray(pair_matches, dtype=np.int64).reshape(-1, 2)
            for feat_a, feat_b in pair_matches:
                self._uf.union((int(view_a), int(feat_a)), (int(view_b), int(feat_b)))
                n_edges += 1
        self._tracks = [sorted(nodes) for nodes in self._uf.components()]
        logger.debug(f"Union-find: {n_edges} edges, {len(self._tracks)} components")

    def filter(self, min_track_length: int = 2) -> int:
        """
        Drop ambiguous components and components spanning too few views.

        Returns:
            Number of discarded components.
        """
        kept = []
        for nodes in self._tracks:
            views = [view_id for view_id, _ in nodes]
            if len(set(views)) != len(views):
                continue
            if len(views) < min_track_length:
                continue
            kept.append(nodes)
        removed = len(self._tracks) - len(kept)
        self._tracks = kept
        return removed

    @property
    def nb_tracks(self) -> int:
        return len(self._tracks)

    def export_tracks(self) -> Dict[int, Track]:
        ordered = sorted(self._tracks, key=lambda nodes: nodes[0])
        return {
            track_id: {view_id: feat_idx for view_id, feat_idx in nodes}
            for track_id, nodes in enumerate(ordered)
        }


def build_tracks(
    matches: Mapping[Tuple[int, int], np.ndarray],
    features: Optional[FeatureSource] = None,
    constraint: MultiviewMatchConstraint = MultiviewMatchConstraint.NONE,
    n_bins: int = 30,
    kept_bins: int = 3,
) -> Dict[int, Track]:
    """
    Build multi-view tracks from pairwise matches.

    Args:
        matches: (view_a, view_b) -> (M, 2) feature index pairs.
        features: Feature source; required for the ORIENTATION constraint.
        constraint: Multiview match constraint applied before building.
        n_bins: Orientation histogram bins.
        kept_bins: Orientation bins kept.

    Returns:
        track id -> {view id: feature index}.

    Raises:
        TrackBuildFailure: If no valid track remains.
        ValueError: If ORIENTATION is requested without feature orientations.
    """
    if constraint is MultiviewMatchConstraint.ORIENTATION:
        if features is None:
            raise ValueError("ORIENTATION constraint requires a feature source")
        filtered = {}
        for (view_a, view_b), pair_matches in matches.items():
            ori_a = features.get_orientations(view_a)
            ori_b = features.get_orientations(view_b)
            if ori_a is None or ori_b is None:
                raise ValueError(
                    f"ORIENTATION constraint requires orientations for views {view_a} and {view_b}"
                )
            pair_matches = np.asarray(pair_matches, dtype=np.int64).reshape(-1, 2)
            filtered[(view_a, view_b)] = filter_matches_by_orientation(
                pair_matches, ori_a, ori_b, n_bins, kept_bins
            )
            logger.debug(
                f"Orientation filter ({view_a}, {view_b}): "
                f"{len(pair_matches)} -> {len(filtered[(view_a, view_b)])} matches"
            )
        matches = filtered

    builder = TracksBuilder()
    builder.build(matches)
    removed = builder.filter(min_track_length=2)
    tracks = builder.export_tracks()

    if not tracks:
        raise TrackBuildFailure(
            f"No valid track from {len(matches)} match lists ({removed} components discarded)"
        )

    lengths = np.array([len(track) for track in tracks.values()])
    logger.info(
        f"Built {len(tracks)} tracks ({removed} discarded); "
        f"length min={lengths.min()}, mean={lengths.mean():.2f}, max={lengths.max()}"
    )
    return tracks


class SharedTrackVisibilityHelper:
    """Index of the tracks each view participates in."""

    def __init__(self, tracks: Mapping[int, Track]) -> None:
        self._tracks = tracks
        self._view_to_tracks: Dict[int, Set[int]] = defaultdict(set)
        for track_id, track in tracks.items():
            for view_id in track:
                self._view_to_tracks[view_id].add(track_id)

    def tracks_in_view(self, view_id: int) -> Set[int]:
        return self._view_to_tracks.get(view_id, set())

    def shared_track_ids(self, view_ids: Iterable[int]) -> Set[int]:
        view_ids = list(view_ids)
        if not view_ids:
            return set()
        shared = set(self.tracks_in_view(view_ids[0]))
        for view_id in view_ids[1:]:
            shared &= self.tracks_in_view(view_id)
        return shared

    def shared_track_count(self, view_ids: Iterable[int]) -> int:
        return len(self.shared_track_ids(view_ids))

    def get_tracks_in_images(self, view_ids: Iterable[int]) -> Dict[int, Track]:
        """Tracks visible in every given view, restricted to those views."""
        view_ids = list(view_ids)
        return {
            track_id: {view_id: self._tracks[track_id][view_id] for view_id in view_ids}
            for track_id in sorted(self.shared_track_ids(view_ids))
        }

    def view_ids(self) -> List[int]:
        return sorted(self._view_to_tracks)


__all__ = [
    "UnionFind",
    "filter_matches_by_orientation",
    "TracksBuilder",
    "build_tracks",
    "SharedTrackVisibilityHelper",
]
