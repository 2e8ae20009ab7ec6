import pytest

from config import SfMConfig
from refinement import compute_residuals
from resection import PoseResectioner
from triangulation import make_initial_pair_3d


@pytest.fixture
def seeded(synthetic, cfg):
    state = synthetic.make_state()
    make_initial_pair_3d(state, (0, 1), cfg)
    return state


def test_batch_resection(seeded, cfg):
    reconstructed, rejected = PoseResectioner(cfg).robust_resection_of_images(seeded, [2, 3])

    assert reconstructed == {2, 3}
    assert rejected == set()
    assert seeded.reconstructed == {0, 1, 2, 3}
    assert seeded.is_consistent()
    assert seeded.scene[2].has_pose and seeded.scene[3].has_pose

    observed = [tid for tid, lm in seeded.landmarks.items() if 2 in lm.observations]
    assert len(observed) >= 0.9 * seeded.landmarks.size
    residuals = [r for _, vid, r in compute_residuals(seeded) if vid in (2, 3)]
    assert max(residuals) < cfg.ransac_threshold


def test_parallel_resection_matches_sequential(seeded):
    cfg = SfMConfig(run_ba=False, num_workers=4)
    reconstructed, rejected = PoseResectioner(cfg).robust_resection_of_images(seeded, [2, 3, 4, 5])
    assert reconstructed == {2, 3, 4, 5}
    assert rejected == set()
    assert seeded.remaining == set()


def test_failed_view_is_deferred(seeded, cfg):
    strict = PoseResectioner(SfMConfig(min_points_per_pose=10_000))
    with pytest.raises(ValueError):
        strict.resection(seeded, 2)

    reconstructed, rejected = strict.robust_resection_of_images(seeded, [2])
    assert reconstructed == set()
    assert rejected == {2}
    assert 2 in seeded.remaining
    assert not seeded.scene[2].has_pose
    assert seeded.is_deferred(2)

    # structure grew: the view may be tried again
    PoseResectioner(cfg).robust_resection_of_images(seeded, [3])
    assert not seeded.is_deferred(2)


def test_view_failing_next_to_a_success_is_not_blocked(seeded, cfg, monkeypatch):
    resectioner = PoseResectioner(cfg)
    resection = resectioner.resection

    def fail_view_2(state, view_id):
        if view_id == 2:
            raise ValueError("degenerate configuration")
        return resection(state, view_id)

    monkeypatch.setattr(resectioner, "resection", fail_view_2)
    reconstructed, rejected = resectioner.robust_resection_of_images(seeded, [2, 3])

    assert reconstructed == {3}
    assert rejected == {2}
    # view 3 grew the structure in the same batch
    assert not seeded.is_deferred(2)


def test_resection_leaves_scene_untouched(seeded, cfg):
    result = PoseResectioner(cfg).resection(seeded, 4)
    assert result.view_id == 4
    assert len(result.track_ids) == len(result.inliers)
    assert not seeded.scene[4].has_pose
    assert 4 in seeded.remaining
