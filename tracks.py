"""Multi-view tracks built from pairwise feature matches."""

import logging
from dataclasses import dataclass, field

from utils import KPKey, NDArrayInt, ViewPair

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Track:
    track_id: int
    observations: dict[int, int] = field(default_factory=dict)  # view_id -> feature_id

    @property
    def length(self) -> int:
        return len(self.observations)

    @property
    def view_ids(self) -> list[int]:
        return sorted(self.observations)


class _UnionFind:
    def __init__(self):
        self.parent: dict[KPKey, KPKey] = {}

    def find(self, key: KPKey) -> KPKey:
        root = self.parent.setdefault(key, key)
        while root != self.parent[root]:
            root = self.parent[root]
        # path compression
        while key != root:
            self.parent[key], key = root, self.parent[key]
        return root

    def union(self, a: KPKey, b: KPKey) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            # keep the smallest key as root so track ids are deterministic
            if rb < ra:
                ra, rb = rb, ra
            self.parent[rb] = ra


class TrackIndex:
    """Tracks and the inverted per-view index (`tracks_per_view`).

    Both are built once by `build` and never modified afterwards.
    """

    def __init__(self, tracks: dict[int, Track]):
        self.tracks = tracks
        self.tracks_per_view: dict[int, list[int]] = {}
        for track_id in sorted(tracks):
            for view_id in tracks[track_id].observations:
                self.tracks_per_view.setdefault(view_id, []).append(track_id)

    @classmethod
    def build(cls, pairwise_matches: dict[ViewPair, NDArrayInt], min_track_length: int = 2) -> "TrackIndex":
        """Chain pairwise matches transitively into tracks.

        Connected components holding two features of the same view are conflicting and discarded,
        as are tracks observed by fewer than `min_track_length` views.
        """
        uf = _UnionFind()
        for (view_i, view_j), matches in sorted(pairwise_matches.items()):
            if view_i == view_j:
                continue
            for feat_i, feat_j in matches:
                uf.union((view_i, int(feat_i)), (view_j, int(feat_j)))

        components: dict[KPKey, list[KPKey]] = {}
        for kp_key in uf.parent:
            components.setdefault(uf.find(kp_key), []).append(kp_key)

        tracks: dict[int, Track] = {}
        n_conflicts, n_short = 0, 0
        for root in sorted(components):
            kp_keys = components[root]
            observations = dict(kp_keys)
            if len(observations) != len(kp_keys):
                # one track owns at most one observation per view
                n_conflicts += 1
                continue
            if len(observations) < min_track_length:
                n_short += 1
                continue
            track_id = len(tracks)
            tracks[track_id] = Track(track_id, dict(sorted(observations.items())))

        logger.info(
            f"Built {len(tracks)} tracks from {len(pairwise_matches)} view pairs "
            f"({n_conflicts} conflicting, {n_short} too short discarded)"
        )
        return cls(tracks)

    @property
    def size(self) -> int:
        return len(self.tracks)

    def __getitem__(self, track_id: int) -> Track:
        return self.tracks[track_id]

    def view_tracks(self, view_id: int) -> list[int]:
        return self.tracks_per_view.get(view_id, [])

    def shared_tracks(self, view_i: int, view_j: int) -> list[int]:
        """Ids of the tracks observed by both views."""
        tracks_j = set(self.view_tracks(view_j))
        return [track_id for track_id in self.view_tracks(view_i) if track_id in tracks_j]

    def views_with_tracks(self) -> list[int]:
        return sorted(view_id for view_id, track_ids in self.tracks_per_view.items() if track_ids)
