import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

import numpy as np

from config import SfMConfig
from geometry import estimate_absolute_pose
from utils import NDArrayFloat, ReconstructionState

logger = logging.getLogger(__name__)


@dataclass
class ResectionResult:
    view_id: int
    R: NDArrayFloat
    t: NDArrayFloat
    track_ids: list[int]
    inliers: NDArrayFloat  # boolean mask over track_ids


class PoseResectioner:
    """Localizes views from their observations of existing landmarks."""

    def __init__(self, cfg: SfMConfig):
        self.min_points_per_pose = cfg.min_points_per_pose
        self.threshold = cfg.ransac_threshold
        self.num_workers = cfg.num_workers

    def resection(self, state: ReconstructionState, view_id: int) -> ResectionResult:
        """Estimate the pose of one view without touching the scene.

        Raises ValueError when the pose cannot be estimated.
        """
        track_ids = [tid for tid in state.tracks.view_tracks(view_id) if tid in state.landmarks]
        if len(track_ids) < self.min_points_per_pose:
            raise ValueError(
                f"only {len(track_ids)} 2D-3D correspondences (min {self.min_points_per_pose})"
            )

        object_points = state.landmarks.get_points_as_array(track_ids)
        feature_ids = [state.tracks[tid].observations[view_id] for tid in track_ids]
        image_points = np.asarray(state.features[view_id], dtype=np.float64)[feature_ids]

        assert np.isfinite(object_points).all(), "Object points must be finite"
        assert np.isfinite(image_points).all(), "Image points must be finite"

        R, t, inliers = estimate_absolute_pose(
            object_points, image_points, state.scene.camera_of(view_id), threshold=self.threshold
        )
        return ResectionResult(view_id, R, t, track_ids, inliers)

    def _try_resection(self, state: ReconstructionState, view_id: int) -> ResectionResult | None:
        try:
            return self.resection(state, view_id)
        except ValueError as e:
            logger.info(f"Failed to resection view {view_id}: {e}")
            return None

    def robust_resection_of_images(self, state: ReconstructionState, view_ids: list[int]) -> tuple[set[int], set[int]]:
        """Resection a batch of views; returns (reconstructed view ids, rejected view ids).

        Poses are estimated independently from the same scene, then merged once all are done.
        Rejected views stay in `remaining` and are deferred until the structure grows.
        """
        if self.num_workers > 1 and len(view_ids) > 1:
            with ThreadPoolExecutor(max_workers=self.num_workers) as pool:
                results = list(pool.map(lambda vid: self._try_resection(state, vid), view_ids))
        else:
            results = [self._try_resection(state, vid) for vid in view_ids]
        # structure the batch was attempted against
        generation = state.generation

        reconstructed, rejected = set(), set()
        for view_id, result in zip(view_ids, results):
            if result is None:
                rejected.add(view_id)
                continue
            state.scene[view_id].set_pose(result.R, result.t)
            state.mark_reconstructed(view_id)
            for track_id, is_inlier in zip(result.track_ids, result.inliers):
                feature_id = state.tracks[track_id].observations[view_id]
                if is_inlier:
                    state.landmarks[track_id].observations[view_id] = feature_id
                else:
                    state.reject_observation(view_id, feature_id)
            reconstructed.add(view_id)
            logger.info(
                f"Resectioned view {view_id}: {int(result.inliers.sum())}/{len(result.track_ids)} inliers"
            )

        for view_id in rejected:
            state.defer(view_id, generation)
        return reconstructed, rejected
