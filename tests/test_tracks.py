import numpy as np

from tracks import TrackIndex


def m(*pairs):
    return np.array(pairs, dtype=np.int64)


def test_matches_chain_transitively_into_tracks():
    index = TrackIndex.build({(0, 1): m([0, 3]), (1, 2): m([3, 5])})
    assert index.size == 1
    assert index[0].observations == {0: 0, 1: 3, 2: 5}
    assert index[0].length == 3
    assert index[0].view_ids == [0, 1, 2]


def test_conflicting_track_is_discarded():
    # (0, 0) - (1, 0) - (2, 0) and (0, 0) - (2, 1): two features of view 2 in one track
    index = TrackIndex.build({(0, 1): m([0, 0]), (1, 2): m([0, 0]), (0, 2): m([0, 1], [4, 4])})
    assert index.size == 1
    assert index[0].observations == {0: 4, 2: 4}


def test_short_tracks_are_discarded():
    matches = {(0, 1): m([0, 0], [1, 1]), (1, 2): m([0, 0])}
    assert TrackIndex.build(matches, min_track_length=2).size == 2
    index = TrackIndex.build(matches, min_track_length=3)
    assert index.size == 1
    assert index[0].observations == {0: 0, 1: 0, 2: 0}


def test_inverted_index_and_shared_tracks():
    matches = {(0, 1): m([0, 0], [1, 1], [2, 2]), (1, 2): m([2, 7]), (2, 3): m([9, 9])}
    index = TrackIndex.build(matches)
    assert index.views_with_tracks() == [0, 1, 2, 3]
    assert len(index.view_tracks(0)) == 3
    assert index.view_tracks(42) == []

    shared = index.shared_tracks(0, 2)
    assert len(shared) == 1
    assert index[shared[0]].observations == {0: 2, 1: 2, 2: 7}
    assert index.shared_tracks(0, 3) == []


def test_no_matches_no_tracks():
    index = TrackIndex.build({})
    assert index.size == 0
    assert index.views_with_tracks() == []
