import numpy as np
import pytest

from seqsfm.config import MultiviewMatchConstraint
from seqsfm.errors import TrackBuildFailure
from seqsfm.sfm_inc.providers import InMemoryFeatureSource
from seqsfm.sfm_inc.tracks import (
    SharedTrackVisibilityHelper,
    TracksBuilder,
    UnionFind,
    build_tracks,
    filter_matches_by_orientation,
)

from conftest import track_point_id


def test_union_find_components():
    uf = UnionFind()
    uf.union("a", "b")
    uf.union("c", "d")
    uf.union("b", "d")
    uf.add("e")
    components = sorted(sorted(c) for c in uf.components())
    assert components == [["a", "b", "c", "d"], ["e"]]


def test_scene_tracks_are_valid(scene):
    tracks = build_tracks(scene.matches)
    assert len(tracks) == 240
    for track in tracks.values():
        assert len(track) >= 2
        # Each track follows a single scene point.
        point_ids = {int(scene.point_of[v][f]) for v, f in track.items()}
        assert len(point_ids) == 1


def test_track_views_match_point_visibility(scene):
    tracks = build_tracks(scene.matches)
    for track in tracks.values():
        point_id = track_point_id(scene, track)
        expected = {v for v in scene.view_ids if point_id in scene.visible[v]}
        assert set(track) == expected


def test_ambiguous_components_are_dropped():
    matches = {
        # Features 0 and 1 of view 0 both match feature 0 of view 1.
        (0, 1): np.array([[0, 0], [1, 0], [2, 2]]),
    }
    tracks = build_tracks(matches)
    assert tracks == {0: {0: 2, 1: 2}}


def test_self_pairs_only_fail():
    matches = {(0, 0): np.array([[0, 1], [2, 3]]), (1, 1): np.array([[0, 0]])}
    with pytest.raises(TrackBuildFailure):
        build_tracks(matches)


def test_empty_match_lists_are_skipped():
    matches = {(0, 1): np.zeros((0, 2), dtype=int), (1, 2): np.array([[4, 5]])}
    assert build_tracks(matches) == {0: {1: 4, 2: 5}}


def test_track_ids_are_deterministic(scene):
    reversed_matches = dict(reversed(list(scene.matches.items())))
    assert build_tracks(scene.matches) == build_tracks(reversed_matches)


def test_builder_filter_reports_removed():
    builder = TracksBuilder()
    builder.build({(0, 1): np.array([[0, 0], [1, 0], [3, 3]])})
    assert builder.filter(min_track_length=2) == 1
    assert builder.nb_tracks == 1


def test_orientation_filter_keeps_dominant_bins():
    # Orientation change per match: 20 at 0.1 rad, 4 at pi, 3 at 2.0, 2 at 4.0, 1 at 5.0.
    deltas = np.array([0.1] * 20 + [np.pi] * 4 + [2.0] * 3 + [4.0] * 2 + [5.0])
    n = len(deltas)
    matches = np.column_stack([np.arange(n), np.arange(n)])
    ori_a = np.zeros(n)
    ori_b = deltas
    kept = filter_matches_by_orientation(matches, ori_a, ori_b, n_bins=30, kept_bins=3)
    assert len(kept) == 27
    assert set(kept[:, 0]) == set(range(27))


def test_orientation_constraint_in_build_tracks():
    matches = {(0, 1): np.column_stack([np.arange(6), np.arange(6)])}
    features = InMemoryFeatureSource(
        features={0: np.zeros((6, 2)), 1: np.zeros((6, 2))},
        orientations={0: np.zeros(6), 1: np.array([0.1, 0.1, 0.1, 0.1, 2.0, 4.0])},
    )
    tracks = build_tracks(matches, features, MultiviewMatchConstraint.ORIENTATION, n_bins=30, kept_bins=1)
    assert sorted(t[0] for t in tracks.values()) == [0, 1, 2, 3]


def test_orientation_constraint_requires_orientations():
    matches = {(0, 1): np.array([[0, 0], [1, 1]])}
    features = InMemoryFeatureSource(features={0: np.zeros((2, 2)), 1: np.zeros((2, 2))})
    with pytest.raises(ValueError):
        build_tracks(matches, features, MultiviewMatchConstraint.ORIENTATION)


def test_shared_track_visibility(scene):
    tracks = build_tracks(scene.matches)
    visibility = SharedTrackVisibilityHelper(tracks)
    assert len(visibility.tracks_in_view(0)) == 200
    assert visibility.shared_track_count([0, 1]) == 200
    assert visibility.shared_track_count([2, 3]) == 140
    assert visibility.shared_track_count([0, 1, 2]) == 150

    restricted = visibility.get_tracks_in_images([2, 3])
    assert len(restricted) == 140
    assert all(set(track) == {2, 3} for track in restricted.values())
    assert visibility.view_ids() == [0, 1, 2, 3]
