"""Spatial-distribution scoring of views over a multi-resolution grid.

Inspired by "Structure-from-Motion Revisited" (Schonberger & Frahm, 2016): a view whose
observations are spread over the image scores higher than one where they are clustered.
"""

import logging

import numpy as np

from config import PyramidParams
from tracks import TrackIndex
from utils import NDArrayFloat, NDArrayInt, Scene

logger = logging.getLogger(__name__)


class PyramidScorer:
    def __init__(self, params: PyramidParams):
        self.params = params
        # view_id -> (track_id -> row in `_cells[view_id]`)
        self._rows: dict[int, dict[int, int]] = {}
        # view_id -> (n_tracks, depth) cell index of every track observation at every level
        self._cells: dict[int, NDArrayInt] = {}

    def cell_indices(self, points: NDArrayFloat, width: float, height: float) -> NDArrayInt:
        """Cell index of each point (N, 2) at every pyramid level -> (N, depth)."""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        cells = np.zeros((len(points), self.params.depth), dtype=np.int64)
        for level in range(self.params.depth):
            n = self.params.cells_per_axis(level)
            col = np.clip(np.floor(points[:, 0] / width * n), 0, n - 1).astype(np.int64)
            row = np.clip(np.floor(points[:, 1] / height * n), 0, n - 1).astype(np.int64)
            cells[:, level] = row * n + col
        return cells

    def precompute(self, scene: Scene, features: dict[int, NDArrayFloat], tracks: TrackIndex) -> None:
        """Cache the pyramid cell of every track observation of every view."""
        for view_id in scene.view_ids:
            track_ids = tracks.view_tracks(view_id)
            if not track_ids:
                continue
            cam = scene.camera_of(view_id)
            feats = np.asarray(features[view_id], dtype=np.float64).reshape(-1, 2)
            points = feats[[tracks[tid].observations[view_id] for tid in track_ids]]
            # fall back on the extent of the features when the image size is unknown
            width = cam.width if cam.width > 0 else max(float(feats[:, 0].max()) + 1.0, 1.0)
            height = cam.height if cam.height > 0 else max(float(feats[:, 1].max()) + 1.0, 1.0)
            self._rows[view_id] = {tid: row for row, tid in enumerate(track_ids)}
            self._cells[view_id] = self.cell_indices(points, width, height)
        logger.debug(f"Pyramid cache computed for {len(self._cells)} views")

    def compute_score(self, view_id: int, track_ids: list[int]) -> int:
        """Score of a view restricted to a subset of its tracks.

        At each level, every observation adds `weights[level]` while the number of observations
        already counted in its cell is below `threshold`.
        """
        if view_id not in self._cells or not track_ids:
            return 0
        rows = self._rows[view_id]
        cells = self._cells[view_id][[rows[tid] for tid in track_ids]]
        score = 0
        for level, weight in enumerate(self.params.weights):
            _, counts = np.unique(cells[:, level], return_counts=True)
            score += weight * int(np.minimum(counts, self.params.threshold).sum())
        return score
