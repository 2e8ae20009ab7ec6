import pytest

from config import SfMConfig
from conftest import SyntheticScene, make_scorer
from geometry import count_homography_inliers
from selection import InitialPairSelector, ResectionBatchSelector, ViewConnectivityRanker
from triangulation import make_initial_pair_3d
from utils import ViewConnectionScore


def never_called(message):
    raise AssertionError("prompt should not be called")


def test_two_views_fifty_shared_tracks():
    synthetic = SyntheticScene(n_views=2, n_points=50)
    cfg = SfMConfig(run_ba=False)
    state = synthetic.make_state()
    selector = InitialPairSelector(cfg, make_scorer(cfg, state), prompt=never_called)

    pair = selector.choose_pair(state)
    assert pair == (0, 1)
    assert make_initial_pair_3d(state, pair, cfg) >= 45
    assert state.landmarks.size >= 45


def test_candidates_sorted_and_within_baseline(synthetic, cfg):
    state = synthetic.make_state()
    candidates = InitialPairSelector(cfg, make_scorer(cfg, state)).get_best_initial_image_pairs(state)
    assert candidates
    scores = [c.score for c in candidates]
    assert scores == sorted(scores, reverse=True)
    for c in candidates:
        assert cfg.min_init_pair_angle <= c.angle <= cfg.max_init_pair_angle
        assert c.num_inliers >= cfg.min_init_pair_tracks


def test_disjoint_views_have_no_initial_pair(cfg):
    synthetic = SyntheticScene(n_views=4, visibility={0: [], 1: [], 2: [], 3: []})
    state = synthetic.make_state()
    selector = InitialPairSelector(cfg, make_scorer(cfg, state), prompt=never_called)
    assert selector.get_best_initial_image_pairs(state) == []
    assert selector.choose_pair(state) is None


def test_baseline_too_small_is_rejected():
    synthetic = SyntheticScene(n_views=2, step_deg=0.5)
    cfg = SfMConfig(run_ba=False)
    state = synthetic.make_state()
    assert InitialPairSelector(cfg, make_scorer(cfg, state)).choose_pair(state) is None


def test_homography_explains_small_baseline_only():
    narrow = SyntheticScene(n_views=2, step_deg=0.5)
    wide = SyntheticScene(n_views=2, step_deg=20.0)
    n = len(narrow.points)
    assert count_homography_inliers(narrow.features[0], narrow.features[1]) >= 0.9 * n
    assert count_homography_inliers(wide.features[0], wide.features[1]) < 0.5 * n
    assert count_homography_inliers(wide.features[0][:3], wide.features[1][:3]) == 0


def test_explicit_pair_is_used(synthetic):
    cfg = SfMConfig(run_ba=False, initial_pair=(2, 4))
    state = synthetic.make_state()
    selector = InitialPairSelector(cfg, make_scorer(cfg, state), prompt=never_called)
    assert selector.choose_pair(state) == (2, 4)


def test_interactive_prompt_without_candidates():
    synthetic = SyntheticScene(n_views=3, visibility={0: [], 1: [], 2: []})
    cfg = SfMConfig(run_ba=False, interactive=True)
    state = synthetic.make_state()
    messages = []

    def prompt(message):
        messages.append(message)
        return "2 0"

    assert InitialPairSelector(cfg, make_scorer(cfg, state), prompt=prompt).choose_pair(state) == (2, 0)
    assert len(messages) == 1


def test_interactive_invalid_answer_falls_back():
    synthetic = SyntheticScene(n_views=3, visibility={0: [], 1: [], 2: []})
    cfg = SfMConfig(run_ba=False, interactive=True)
    state = synthetic.make_state()
    selector = InitialPairSelector(cfg, make_scorer(cfg, state), prompt=lambda message: "seven")
    assert selector.choose_pair(state) is None


def test_connected_views_ranked(synthetic, cfg):
    state = synthetic.make_state()
    make_initial_pair_3d(state, (0, 1), cfg)
    connected = ViewConnectivityRanker(make_scorer(cfg, state)).find_connected_views(state)

    assert {s.view_id for s in connected} == state.remaining
    keys = [(-s.spatial_score, -s.shared_count, s.view_id) for s in connected]
    assert keys == sorted(keys)
    for s in connected:
        assert s.shared_count == len(s.track_ids)
        assert all(tid in state.landmarks for tid in s.track_ids)
        assert s.intrinsics_known


def test_unconnected_views_are_not_ranked(cfg):
    # view 2 only shares tracks with view 3, neither is connected to the seed
    visibility = {0: range(100), 1: range(100), 2: range(100, 150), 3: range(100, 150)}
    synthetic = SyntheticScene(n_views=4, visibility=visibility)
    state = synthetic.make_state()
    make_initial_pair_3d(state, (0, 1), cfg)
    assert ViewConnectivityRanker(make_scorer(cfg, state)).find_connected_views(state) == []


def score(view_id, shared_count, spatial_score=0):
    return ViewConnectionScore(view_id, shared_count, spatial_score, True)


def test_view_below_min_points_never_batched(synthetic, cfg):
    state = synthetic.make_state()
    selector = ResectionBatchSelector(cfg)
    assert selector.select(state, [score(3, 10, 100), score(2, 40, 50)]) == [2]
    assert selector.select(state, [score(3, 10, 100)]) == []


def test_batch_capped_and_skips_deferred(synthetic):
    cfg = SfMConfig(run_ba=False, max_batch_size=2)
    state = synthetic.make_state()
    state.defer(2)
    connected = [score(v, 50, 100 - v) for v in (1, 2, 3, 4, 5)]
    assert ResectionBatchSelector(cfg).select(state, connected) == [1, 3]


@pytest.mark.parametrize("answer, expected", [("0", None), ("1 3", (1, 3))])
def test_interactive_answer_parsing(synthetic, answer, expected):
    cfg = SfMConfig(run_ba=False, interactive=True)
    state = synthetic.make_state()
    selector = InitialPairSelector(cfg, make_scorer(cfg, state), prompt=lambda message: answer)
    candidates = selector.get_best_initial_image_pairs(state)
    pair = selector._ask_user(state, candidates)
    assert pair == (expected or candidates[0].pair)
