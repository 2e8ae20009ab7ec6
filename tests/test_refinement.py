import numpy as np

from config import SfMConfig
from conftest import NoopAdjuster
from refinement import (
    RefinementStage,
    bad_track_rejector,
    compute_residuals_histogram,
    compute_track_lengths_histogram,
)
from resection import PoseResectioner
from sfm import ReconstructionLoop
from triangulation import make_initial_pair_3d


def seeded_state(synthetic, cfg, views=(2, 3)):
    state = synthetic.make_state()
    make_initial_pair_3d(state, (0, 1), cfg)
    PoseResectioner(cfg).robust_resection_of_images(state, list(views))
    return state


def test_histograms(synthetic, cfg):
    state = synthetic.make_state()
    make_initial_pair_3d(state, (0, 1), cfg)

    mse, hist = compute_residuals_histogram(state)
    assert 0 < mse < 1.0
    assert sum(hist.counts) == state.landmarks.num_observations
    assert len(hist.bin_edges) == len(hist.counts) + 1

    mean_length, lengths = compute_track_lengths_histogram(state)
    assert mean_length == 2.0
    assert sum(lengths.counts) == state.landmarks.size


def test_gross_outlier_removed_and_never_reappears(synthetic):
    cfg = SfMConfig(run_ba=False, initial_pair=(0, 1))
    loop = ReconstructionLoop(synthetic.make_scene(), synthetic.features, synthetic.matches, cfg)
    loop.build_tracks()
    loop.make_seed()
    state = loop.state

    track_id = state.landmarks.track_ids()[0]
    feature_id = state.landmarks[track_id].observations[1]
    # 100x the rejection precision
    state.features[1][feature_id] += 100 * cfg.outlier_precision

    assert bad_track_rejector(state, cfg.outlier_precision) >= 1
    assert track_id not in state.landmarks
    assert track_id in state.discarded_tracks
    assert (1, feature_id) in state.rejected_observations

    while loop.grow_round():
        assert track_id not in state.landmarks
    loop.finalize()
    assert track_id not in state.landmarks


def test_landmarks_keep_two_observations(synthetic, cfg):
    state = seeded_state(synthetic, cfg)
    track_id = next(tid for tid, lm in state.landmarks.items() if {2, 3} <= set(lm.observations))
    for view_id in (2, 3):
        feature_id = state.landmarks[track_id].observations[view_id]
        state.features[view_id][feature_id] += 50.0

    bad_track_rejector(state, cfg.outlier_precision)
    assert set(state.landmarks[track_id].observations) == {0, 1}
    for _, landmark in state.landmarks.items():
        assert len(landmark.observations) >= 2
        assert set(landmark.observations) <= state.reconstructed


def test_angle_rejection(synthetic, cfg):
    state = synthetic.make_state()
    make_initial_pair_3d(state, (0, 1), cfg)
    n = state.landmarks.size
    # views 0 and 1 are 10 degrees apart
    assert bad_track_rejector(state, cfg.outlier_precision, min_angle=45.0) == n
    assert state.landmarks.size == 0
    assert len(state.discarded_tracks) == n


def test_refinement_is_idempotent(synthetic, cfg):
    state = seeded_state(synthetic, cfg, views=(2, 3, 4, 5))
    stage = RefinementStage(cfg, NoopAdjuster())
    stage.run(state)
    size = state.landmarks.size

    report = stage.run(state)
    assert report.removed == 0
    assert report.iterations == 1
    assert state.landmarks.size == size


def test_failed_bundle_adjustment_keeps_state(synthetic, cfg):
    state = seeded_state(synthetic, cfg)
    poses = {vid: (state.scene[vid].R.copy(), state.scene[vid].t.copy()) for vid in state.reconstructed}
    size = state.landmarks.size

    adjuster = NoopAdjuster(success=False)
    report = RefinementStage(cfg, adjuster).run(state)

    assert report.ba_failed
    assert report.iterations == 1
    assert report.removed == 0
    assert adjuster.calls == 1
    assert state.landmarks.size == size
    for vid, (R, t) in poses.items():
        np.testing.assert_array_equal(state.scene[vid].R, R)
        np.testing.assert_array_equal(state.scene[vid].t, t)


def test_refinement_iteration_cap(synthetic):
    cfg = SfMConfig(run_ba=False, max_refine_iterations=2, outlier_count=-1)
    state = seeded_state(synthetic, cfg)
    adjuster = NoopAdjuster()
    report = RefinementStage(cfg, adjuster).run(state)
    assert report.iterations == 2
    assert adjuster.calls == 2
