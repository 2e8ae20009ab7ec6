"""Choice of the seed pair and of the views to add at each round."""

import logging
from dataclasses import dataclass
from itertools import combinations
from typing import Callable

import numpy as np

from config import SfMConfig
from geometry import count_homography_inliers, depths, estimate_relative_pose, ray_angles, triangulate_dlt
from pyramid import PyramidScorer
from utils import ReconstructionState, ViewConnectionScore, ViewPair

logger = logging.getLogger(__name__)

# Top two initial pair scores closer than this ratio are ambiguous
AMBIGUITY_RATIO = 0.95
# Pairs where a homography explains this share of the essential matrix inliers have no usable parallax
MAX_HOMOGRAPHY_RATIO = 0.8


@dataclass(frozen=True)
class InitialPairCandidate:
    pair: ViewPair
    score: float
    angle: float  # triangulation angle (deg) of the shared inliers
    num_inliers: int


class InitialPairSelector:
    """Scores view pairs by baseline (triangulation angle) and spatial spread of their shared tracks."""

    def __init__(self, cfg: SfMConfig, scorer: PyramidScorer, prompt: Callable[[str], str] | None = None):
        self.cfg = cfg
        self.scorer = scorer
        self.prompt = prompt

    def _score_pair(self, state: ReconstructionState, view_a: int, view_b: int) -> InitialPairCandidate | None:
        track_ids = state.tracks.shared_tracks(view_a, view_b)
        if len(track_ids) < self.cfg.min_init_pair_tracks:
            return None

        cam_a, cam_b = state.scene.camera_of(view_a), state.scene.camera_of(view_b)
        feat_a = [state.tracks[tid].observations[view_a] for tid in track_ids]
        feat_b = [state.tracks[tid].observations[view_b] for tid in track_ids]
        pts_a = np.asarray(state.features[view_a], dtype=np.float64)[feat_a]
        pts_b = np.asarray(state.features[view_b], dtype=np.float64)[feat_b]
        try:
            R, t, inliers = estimate_relative_pose(pts_a, pts_b, cam_a, cam_b, threshold=self.cfg.ransac_threshold)
        except ValueError as e:
            logger.debug(f"Pair ({view_a}, {view_b}) rejected: {e}")
            return None
        if inliers.sum() < self.cfg.min_init_pair_tracks:
            return None

        n_homography = count_homography_inliers(pts_a, pts_b, threshold=self.cfg.ransac_threshold)
        if n_homography >= MAX_HOMOGRAPHY_RATIO * inliers.sum():
            logger.debug(
                f"Pair ({view_a}, {view_b}) rejected: homography explains {n_homography}/{int(inliers.sum())} inliers"
            )
            return None

        norm_a, norm_b = cam_a.normalize(pts_a[inliers]), cam_b.normalize(pts_b[inliers])
        P_a = np.hstack((np.eye(3), np.zeros((3, 1))))
        P_b = np.hstack((R, t.reshape(3, 1)))
        centers = np.array([np.zeros(3), -R.T @ t])
        angles = []
        for xa, xb in zip(norm_a, norm_b):
            try:
                X = triangulate_dlt(np.array([xa, xb]), [P_a, P_b])
            except ValueError:
                continue
            if depths(np.eye(3), np.zeros(3), X)[0] <= 0 or depths(R, t, X)[0] <= 0:
                continue
            angles.append(ray_angles(centers, X)[0])
        if not angles:
            return None

        angle = float(np.percentile(angles, 66))
        if not self.cfg.min_init_pair_angle <= angle <= self.cfg.max_init_pair_angle:
            logger.debug(f"Pair ({view_a}, {view_b}) rejected: triangulation angle {angle:.1f} deg")
            return None

        inlier_tracks = [tid for tid, ok in zip(track_ids, inliers) if ok]
        spatial = self.scorer.compute_score(view_a, inlier_tracks) + self.scorer.compute_score(view_b, inlier_tracks)
        return InitialPairCandidate((view_a, view_b), spatial * angle, angle, len(inlier_tracks))

    def get_best_initial_image_pairs(self, state: ReconstructionState) -> list[InitialPairCandidate]:
        """Candidate initial pairs, best first (ties broken by lower combined view id)."""
        candidates = []
        for view_a, view_b in combinations(state.tracks.views_with_tracks(), 2):
            candidate = self._score_pair(state, view_a, view_b)
            if candidate is not None:
                candidates.append(candidate)
        candidates.sort(key=lambda c: (-c.score, c.pair[0] + c.pair[1], c.pair))
        logger.info(f"{len(candidates)} initial pair candidates")
        for c in candidates[:3]:
            logger.info(f"  {c.pair}: {c.num_inliers} inliers, angle={c.angle:.1f} deg, score={c.score:.0f}")
        return candidates

    def _ask_user(self, state: ReconstructionState, candidates: list[InitialPairCandidate]) -> ViewPair | None:
        assert self.prompt is not None
        listing = "\n".join(
            f"  [{i}] {c.pair[0]} {c.pair[1]} (angle={c.angle:.1f} deg, score={c.score:.0f})"
            for i, c in enumerate(candidates[:10])
        )
        message = "Choose the initial pair: a candidate index or two view ids"
        answer = self.prompt(f"{listing}\n{message}" if candidates else message).split()
        try:
            values = [int(v) for v in answer]
        except ValueError:
            values = []
        if len(values) == 1 and 0 <= values[0] < min(len(candidates), 10):
            return candidates[values[0]].pair
        if len(values) == 2 and values[0] != values[1] and all(v in state.scene.views for v in values):
            return values[0], values[1]
        logger.warning(f"Invalid initial pair answer: {' '.join(answer)!r}")
        return candidates[0].pair if candidates else None

    def choose_pair(self, state: ReconstructionState) -> ViewPair | None:
        """Initial pair: the user-provided one, else the best automatic candidate.

        Returns None when no pair satisfies the shared-track and baseline thresholds.
        """
        if self.cfg.initial_pair is not None:
            logger.info(f"Using the provided initial pair {self.cfg.initial_pair}")
            return self.cfg.initial_pair

        candidates = self.get_best_initial_image_pairs(state)
        ambiguous = not candidates or (
            len(candidates) > 1 and candidates[1].score >= AMBIGUITY_RATIO * candidates[0].score
        )
        if self.cfg.interactive and self.prompt is not None and ambiguous:
            return self._ask_user(state, candidates)
        if not candidates:
            return None
        return candidates[0].pair


class ViewConnectivityRanker:
    """Ranks unreconstructed views by their connection to the current landmarks."""

    def __init__(self, scorer: PyramidScorer):
        self.scorer = scorer

    def find_connected_views(
        self, state: ReconstructionState, remaining_view_ids: set[int] | None = None
    ) -> list[ViewConnectionScore]:
        """Views sharing at least one track with a landmark, sorted by (spatial score, shared count) desc.

        An empty list means no remaining view is connected to the reconstruction.
        """
        if remaining_view_ids is None:
            remaining_view_ids = state.remaining
        scores = []
        for view_id in sorted(remaining_view_ids):
            shared = [tid for tid in state.tracks.view_tracks(view_id) if tid in state.landmarks]
            if not shared:
                continue
            scores.append(
                ViewConnectionScore(
                    view_id=view_id,
                    shared_count=len(shared),
                    spatial_score=self.scorer.compute_score(view_id, shared),
                    intrinsics_known=not state.scene.camera_of(view_id).unknown,
                    track_ids=tuple(shared),
                )
            )
        scores.sort(key=lambda s: (-s.spatial_score, -s.shared_count, s.view_id))
        return scores


class ResectionBatchSelector:
    """Picks the views that can be resectioned safely this round."""

    def __init__(self, cfg: SfMConfig):
        self.min_points_per_pose = cfg.min_points_per_pose
        self.max_batch_size = cfg.max_batch_size

    def select(self, state: ReconstructionState, connected: list[ViewConnectionScore]) -> list[int]:
        """Best-ranked views with enough 2D-3D correspondences; empty when none clears the bar.

        Views that failed resection are skipped until the structure has grown.
        """
        eligible = [
            s.view_id
            for s in connected
            if s.shared_count >= self.min_points_per_pose and not state.is_deferred(s.view_id)
        ]
        return eligible[: self.max_batch_size]
