import numpy as np
import pytest

from seqsfm.ba import bundle_adjustment
from seqsfm.config import IntrinsicType, SequentialSfMConfig
from seqsfm.errors import BundleAdjustmentDivergence, SeedGeometryFailure, TrackBuildFailure
from seqsfm.sfm_inc import incremental_sfm
from seqsfm.sfm_inc.data_structures import Intrinsic, View
from seqsfm.sfm_inc.incremental_sfm import EngineState, SequentialSfMEngine
from seqsfm.sfm_inc.providers import InMemoryFeatureSource, InMemoryMatchSource, RecordingDiagnosticsSink

from conftest import K, make_engine


def _diverge(*args, **kwargs):
    raise BundleAdjustmentDivergence("forced divergence")


def test_full_run(scene):
    engine, sink = make_engine(scene)
    summary = engine.run()

    assert summary.success
    assert engine.status is EngineState.DONE
    assert summary.seed == (0, 1)
    assert summary.num_resected_views == 4
    assert summary.unresected_view_ids == []
    assert summary.num_landmarks == 240
    assert summary.mse < 1e-3
    assert summary.error is None
    engine.reconstruction.validate()

    names = [name for name, _ in sink.events]
    assert names[0] == "tracks_built"
    assert names[-1] == "final_statistics"
    assert names.index("seed_selected") < names.index("seed_initialized") < names.index("resection")
    assert {e["view_id"] for e in sink.named("resection")} == {2, 3}
    assert sum(e["added"] for e in sink.named("triangulation")) == 40
    assert sink.named("tracks_built")[0]["num_tracks"] == 240
    assert not sink.named("rollback")
    # run() is idempotent once finished.
    assert engine.run() is summary


def test_every_landmark_is_consistent(scene):
    engine, _ = make_engine(scene)
    engine.run()
    state = engine.reconstruction
    for landmark in state.landmarks.values():
        assert len(landmark.observations) >= 2
        for view_id, feat_idx in landmark.observations.items():
            projected = state.intrinsic_of(view_id).project(state.poses[view_id], landmark.X)[0]
            residual = np.sum((projected - scene.features[view_id][feat_idx]) ** 2)
            assert residual <= state.thresholds[view_id]


def test_reference_view_stays_at_origin(scene):
    engine, _ = make_engine(scene)
    engine.run()
    reference = engine.reconstruction.poses[engine.reconstruction.reference_view_id]
    np.testing.assert_allclose(reference.R, np.eye(3))
    np.testing.assert_allclose(reference.t, np.zeros(3))


def test_noisy_scene(noisy_scene):
    engine, _ = make_engine(noisy_scene)
    summary = engine.run()
    assert summary.success
    assert summary.num_resected_views == 4
    assert summary.mse < 1.0
    for threshold in summary.thresholds.values():
        assert 0.25 <= threshold <= 16.0


def test_stages_step_by_step(scene):
    engine, _ = make_engine(scene)
    assert engine.find_images_with_possible_resection() == []
    assert engine.init_landmark_tracks() == 240
    assert engine.status is EngineState.TRACKS_BUILT

    assert engine.make_initial_reconstruction() == (0, 1)
    assert engine.status is EngineState.SEEDED
    assert engine.find_images_with_possible_resection() == [2, 3]
    mse, histogram = engine.compute_residuals_histogram()
    assert mse < 1e-3
    assert histogram.total == 2 * engine.reconstruction.num_observations()

    engine.grow()
    assert engine.status is EngineState.GROWING
    assert engine.find_images_with_possible_resection() == []

    summary = engine.finalize()
    assert summary.status is EngineState.DONE
    stats = engine.final_statistics()
    assert stats["num_resected_views"] == 4
    assert stats["seed"] == [0, 1]


def test_stages_out_of_order(scene):
    engine, _ = make_engine(scene)
    with pytest.raises(RuntimeError):
        engine.make_initial_reconstruction()
    with pytest.raises(RuntimeError):
        engine.grow()
    engine.init_landmark_tracks()
    with pytest.raises(RuntimeError):
        engine.init_landmark_tracks()


def test_self_pairs_fail_track_building(scene):
    sink = RecordingDiagnosticsSink()
    engine = SequentialSfMEngine(
        scene.views,
        scene.intrinsics,
        scene.feature_source(),
        InMemoryMatchSource({(0, 0): np.array([[0, 1], [2, 3]])}),
        diagnostics=sink,
    )
    summary = engine.run()
    assert summary.status is EngineState.FAILED
    assert isinstance(summary.error, TrackBuildFailure)
    assert engine.error is summary.error
    assert not sink.named("seed_selected")
    assert summary.num_resected_views == 0
    assert summary.mse == -1.0


def test_out_of_range_and_unknown_view_matches_are_ignored(scene):
    matches = dict(scene.matches)
    matches[(0, 9)] = np.array([[0, 0]])
    matches[(0, 1)] = np.vstack([matches[(0, 1)], [[10_000, 0]]])
    engine = SequentialSfMEngine(scene.views, scene.intrinsics, scene.feature_source(), InMemoryMatchSource(matches))
    assert engine.init_landmark_tracks() == 240


def test_initial_pair_sentinels(scene):
    engine, _ = make_engine(scene)
    assert not engine.has_initial_pair()
    engine.set_initial_pair((0, 0))
    assert not engine.has_initial_pair()
    engine.set_initial_pair((1, 0))
    assert engine.has_initial_pair()

    assert not engine.has_initial_triplet()
    engine.set_initial_triplet((1, 2, 0))
    assert not engine.has_initial_triplet()
    engine.set_initial_triplet((1, 2, 3))
    assert engine.has_initial_triplet()


def test_pinned_pair(scene):
    engine, _ = make_engine(scene, initial_pair=(1, 0))
    summary = engine.run()
    assert summary.success
    assert summary.seed == (1, 0)
    assert engine.reconstruction.reference_view_id == 1
    assert summary.num_resected_views == 4


def test_triplet_seed(scene):
    engine, sink = make_engine(scene, use_triplet_seed=True)
    summary = engine.run()
    assert summary.success
    assert summary.seed == (0, 1, 2)
    assert {e["view_id"] for e in sink.named("resection")} == {3}
    assert summary.num_resected_views == 4


@pytest.mark.parametrize("overrides", [{"resection_method": "dlt_6points"}, {"triangulation_method": "l1_angular"}])
def test_alternative_methods(scene, overrides):
    engine, _ = make_engine(scene, **overrides)
    summary = engine.run()
    assert summary.success
    assert summary.num_resected_views == 4
    assert summary.mse < 1e-3


def test_unknown_intrinsic_type_is_resolved(scene):
    intrinsic = Intrinsic(0, K, type=IntrinsicType.UNKNOWN, width=640, height=480)
    engine = SequentialSfMEngine(
        scene.views, [intrinsic], scene.feature_source(), scene.match_source(),
        SequentialSfMConfig(unknown_camera_type="pinhole_radial1"),
    )
    assert engine.reconstruction.intrinsics[0].type is IntrinsicType.PINHOLE_RADIAL1


def test_unknown_intrinsic_id_raises(scene):
    with pytest.raises(ValueError):
        SequentialSfMEngine([View(0, 5)], scene.intrinsics, scene.feature_source(), scene.match_source())


def test_seed_fails_when_every_bundle_adjustment_diverges(scene, monkeypatch):
    monkeypatch.setattr(incremental_sfm, "refine", _diverge)
    engine, sink = make_engine(scene)
    summary = engine.run()
    assert summary.status is EngineState.FAILED
    assert isinstance(summary.error, SeedGeometryFailure)
    assert not sink.named("seed_initialized")
    # Every rejected candidate was rolled back.
    assert engine.reconstruction.poses == {}
    assert engine.reconstruction.landmarks == {}


def test_growth_divergence_rolls_back_then_fails(scene, monkeypatch):
    calls = []

    def refine_once(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            return bundle_adjustment.refine(*args, **kwargs)
        raise BundleAdjustmentDivergence("forced divergence")

    monkeypatch.setattr(incremental_sfm, "refine", refine_once)
    engine, sink = make_engine(scene, max_bundle_adjustment_failures=1)
    summary = engine.run()

    assert summary.status is EngineState.FAILED
    assert isinstance(summary.error, BundleAdjustmentDivergence)
    rollbacks = sink.named("rollback")
    assert [r["failures"] for r in rollbacks] == [1, 2]
    # The state is the one before the diverged growth step.
    assert engine.reconstruction.resected_view_ids == {0, 1}
    engine.reconstruction.validate()


def test_final_divergence_keeps_previous_state(scene, monkeypatch):
    calls = []

    def refine_seed_only(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            return bundle_adjustment.refine(*args, **kwargs)
        raise BundleAdjustmentDivergence("forced divergence")

    monkeypatch.setattr(incremental_sfm, "refine", refine_seed_only)
    engine, sink = make_engine(scene, bundle_adjustment_interval=100)
    summary = engine.run()

    assert summary.status is EngineState.DONE
    assert summary.num_resected_views == 4
    assert len(sink.named("rollback")) == 1
    assert sink.named("rollback")[0]["views"] == []


def test_run_with_in_memory_sources(scene):
    features = InMemoryFeatureSource({v: f for v, f in scene.features.items()})
    engine = SequentialSfMEngine(
        {v.id: v for v in scene.views}, {0: scene.intrinsic}, features, scene.match_source()
    )
    assert engine.run().success
    assert engine.diagnostics() is None


def test_tightened_thresholds_survive_bundle_adjustment(noisy_scene):
    engine, _ = make_engine(noisy_scene)
    engine.init_landmark_tracks()
    engine.make_initial_reconstruction()
    for _ in range(5):
        engine._tighten_resection()
    tightened = engine._resection_config
    # Both bounds stop at the lower clamp.
    assert tightened.resection_ransac_threshold_px == tightened.min_threshold_px
    assert tightened.max_threshold_px == tightened.min_threshold_px

    engine._bundle_adjust()
    for threshold in engine.reconstruction.thresholds.values():
        assert threshold == pytest.approx(tightened.max_threshold_px ** 2)


def test_view_without_features_is_skipped(scene):
    features = InMemoryFeatureSource({v: f for v, f in scene.features.items() if v != 3})
    engine = SequentialSfMEngine(scene.views, scene.intrinsics, features, scene.match_source())
    summary = engine.run()
    assert summary.success
    assert summary.unresected_view_ids == [3]
    assert summary.num_resected_views == 3
