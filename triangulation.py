import logging

import numpy as np

from config import SfMConfig
from geometry import depths, estimate_relative_pose, max_ray_angle, reprojection_errors, triangulate_dlt
from utils import Landmark, NDArrayFloat, ReconstructionError, ReconstructionState

logger = logging.getLogger(__name__)

Pose = tuple[NDArrayFloat, NDArrayFloat]  # (R, t)


class Triangulator:
    """Creates landmarks from tracks seen by at least two reconstructed views."""

    def __init__(self, cfg: SfMConfig):
        self.precision = cfg.triangulation_precision
        self.min_angle = cfg.min_triangulation_angle
        self.min_views = max(2, cfg.min_track_length)

    def triangulate_track(
        self, state: ReconstructionState, track_id: int, view_ids: list[int], poses: dict[int, Pose] | None = None
    ) -> Landmark | None:
        """Triangulate a track from its observations in `view_ids`.

        Returns None when the point is not in front of every view, reprojects further than the
        precision, or is seen under a too small angle.
        """
        if poses is None:
            poses = {vid: (state.scene[vid].R, state.scene[vid].t) for vid in view_ids}
        track = state.tracks[track_id]
        cameras = [state.scene.camera_of(vid) for vid in view_ids]
        points_2d = [state.feature_point(vid, track.observations[vid]) for vid in view_ids]
        normalized = np.vstack([cam.normalize(pt[None]) for cam, pt in zip(cameras, points_2d)])

        try:
            X = triangulate_dlt(normalized, [np.hstack((poses[vid][0], poses[vid][1].reshape(3, 1))) for vid in view_ids])
        except ValueError:
            return None

        for vid, cam, pt in zip(view_ids, cameras, points_2d):
            R, t = poses[vid]
            if depths(R, t, X)[0] <= 0:
                return None
            if reprojection_errors(cam, R, t, X[None], pt[None])[0] >= self.precision:
                return None

        centers = np.array([-poses[vid][0].T @ poses[vid][1] for vid in view_ids])
        if max_ray_angle(centers, X) < self.min_angle:
            return None

        return Landmark(track_id, X, {vid: track.observations[vid] for vid in view_ids})

    def triangulate(self, state: ReconstructionState, previous_views: set[int], new_views: set[int]) -> int:
        """Triangulate the tracks newly made visible by `new_views`.

        A candidate track has no landmark yet and is observed by at least one new view and
        by at least `min_views` reconstructed views overall.
        """
        reconstructed = previous_views | new_views
        candidates = sorted({tid for vid in new_views for tid in state.tracks.view_tracks(vid)})

        landmarks = []
        for track_id in candidates:
            if track_id in state.landmarks or track_id in state.discarded_tracks:
                continue
            view_ids = [
                vid
                for vid, fid in state.tracks[track_id].observations.items()
                if vid in reconstructed and state.is_active(vid, fid)
            ]
            if len(view_ids) < self.min_views or not new_views.intersection(view_ids):
                continue
            landmark = self.triangulate_track(state, track_id, view_ids)
            if landmark is not None:
                landmarks.append(landmark)

        # merged once every candidate was computed from the same scene
        for landmark in landmarks:
            state.landmarks.add(landmark)
        logger.info(f"Triangulated {len(landmarks)}/{len(candidates)} candidate tracks")
        return len(landmarks)


def make_initial_pair_3d(state: ReconstructionState, pair: tuple[int, int], cfg: SfMConfig) -> int:
    """Create the initial 3D seed: first view at the origin, second by the 5-point algorithm.

    Raises ReconstructionError when the pose cannot be estimated or too few points triangulate.
    """
    view_a, view_b = pair
    for vid in pair:
        if vid not in state.remaining:
            raise ReconstructionError(f"Initial pair view {vid} is unknown or already reconstructed")

    track_ids = [tid for tid in state.tracks.shared_tracks(view_a, view_b) if tid not in state.discarded_tracks]
    cam_a, cam_b = state.scene.camera_of(view_a), state.scene.camera_of(view_b)
    pts_a = np.array([state.feature_point(view_a, state.tracks[tid].observations[view_a]) for tid in track_ids])
    pts_b = np.array([state.feature_point(view_b, state.tracks[tid].observations[view_b]) for tid in track_ids])
    logger.info(f"Establishing baseline from views {view_a} and {view_b} ({len(track_ids)} shared tracks)")

    try:
        R, t, inliers = estimate_relative_pose(pts_a, pts_b, cam_a, cam_b, threshold=cfg.ransac_threshold)
    except ValueError as e:
        raise ReconstructionError(f"Initial pair ({view_a}, {view_b}): relative pose estimation failed: {e}") from e

    poses = {view_a: (np.eye(3), np.zeros(3)), view_b: (R, t)}
    triangulator = Triangulator(cfg)
    landmarks = []
    for track_id, is_inlier in zip(track_ids, inliers):
        if not is_inlier:
            continue
        landmark = triangulator.triangulate_track(state, track_id, [view_a, view_b], poses)
        if landmark is not None:
            landmarks.append(landmark)

    if len(landmarks) < cfg.min_init_landmarks:
        raise ReconstructionError(
            f"Initial pair ({view_a}, {view_b}): only {len(landmarks)} valid points triangulated "
            f"(min {cfg.min_init_landmarks})"
        )

    state.scene[view_a].set_pose(*poses[view_a])
    state.scene[view_b].set_pose(*poses[view_b])
    state.mark_reconstructed(view_a)
    state.mark_reconstructed(view_b)
    state.seed_view = view_a
    for landmark in landmarks:
        state.landmarks.add(landmark)

    logger.info(f"Baseline constructed with {len(landmarks)} 3D points ({int(inliers.sum())} pose inliers)")
    return len(landmarks)
