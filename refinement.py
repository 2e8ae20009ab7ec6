"""Global refinement: bundle adjustment alternated with outlier rejection."""

import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np

from ba import BundleAdjustmentResult
from config import SfMConfig
from geometry import depths, max_ray_angle, reprojection_errors
from report import Histogram
from utils import ReconstructionState

logger = logging.getLogger(__name__)

Adjuster = Callable[[ReconstructionState, bool], BundleAdjustmentResult]


def compute_residuals(state: ReconstructionState) -> list[tuple[int, int, float]]:
    """Reprojection residual of every landmark observation as (track_id, view_id, residual).

    Observations behind their camera get an infinite residual.
    """
    per_view: dict[int, list[int]] = {}
    for track_id, lm in state.landmarks.items():
        for view_id in lm.observations:
            per_view.setdefault(view_id, []).append(track_id)

    residuals = []
    for view_id in sorted(per_view):
        view = state.scene[view_id]
        track_ids = per_view[view_id]
        X = state.landmarks.get_points_as_array(track_ids)
        feature_ids = [state.landmarks[tid].observations[view_id] for tid in track_ids]
        observed = np.asarray(state.features[view_id], dtype=np.float64)[feature_ids]
        errors = reprojection_errors(state.scene.camera_of(view_id), view.R, view.t, X, observed)  # ty:ignore[invalid-argument-type]
        errors[depths(view.R, view.t, X) <= 0] = np.inf  # ty:ignore[invalid-argument-type]
        residuals += [(tid, view_id, float(err)) for tid, err in zip(track_ids, errors)]
    return residuals


def compute_residuals_histogram(state: ReconstructionState, bins: int = 10) -> tuple[float, Histogram]:
    """Return MSE (Mean Square Error) and a histogram of residual values."""
    errors = np.array([r for _, _, r in compute_residuals(state)])
    errors = errors[np.isfinite(errors)]
    if len(errors) == 0:
        return 0.0, Histogram.from_values(errors, bins)
    return float(np.mean(errors**2)), Histogram.from_values(errors, bins)


def compute_track_lengths_histogram(state: ReconstructionState) -> tuple[float, Histogram]:
    """Return the mean track length and a histogram of landmark track lengths."""
    lengths = np.array([len(lm.observations) for _, lm in state.landmarks.items()])
    if len(lengths) == 0:
        return 0.0, Histogram.from_values(lengths, 1)
    edges = np.arange(lengths.min(), lengths.max() + 2) - 0.5
    return float(lengths.mean()), Histogram.from_values(lengths, edges)


def bad_track_rejector(state: ReconstructionState, precision: float, min_angle: float = 0.0) -> int:
    """Discard observations with too large residual error, and the landmarks they invalidate.

    Landmarks left with fewer than 2 observations, or seen under less than `min_angle` degrees,
    are removed for good. Returns the number of rejected observations and angle outliers.
    """
    n_residual = 0
    for track_id, view_id, residual in compute_residuals(state):
        if residual > precision:
            feature_id = state.landmarks[track_id].observations.pop(view_id)
            state.reject_observation(view_id, feature_id)
            n_residual += 1

    n_angle, n_short = 0, 0
    for track_id, lm in list(state.landmarks.items()):
        if len(lm.observations) < 2:
            state.discard_landmark(track_id)
            n_short += 1
            continue
        centers = np.array([state.scene[vid].center for vid in lm.observations])
        if max_ray_angle(centers, lm.X) < min_angle:
            state.discard_landmark(track_id)
            n_angle += 1

    if n_residual or n_angle:
        logger.info(
            f"Rejected {n_residual} observations above {precision} px, {n_angle} landmarks below "
            f"{min_angle} deg ({n_short} landmarks left with < 2 observations)"
        )
    return n_residual + n_angle


@dataclass(frozen=True)
class RefinementReport:
    iterations: int
    removed: int
    ba_failed: bool
    mse: float


class RefinementStage:
    """Alternates bundle adjustment and outlier rejection until no outlier is left."""

    def __init__(self, cfg: SfMConfig, adjuster: Adjuster | None = None):
        self.cfg = cfg
        self.adjuster = adjuster

    def run(self, state: ReconstructionState, fixed_intrinsics: bool | None = None) -> RefinementReport:
        if fixed_intrinsics is None:
            fixed_intrinsics = self.cfg.fixed_intrinsics

        removed, ba_failed, iterations = 0, False, 0
        for iterations in range(1, self.cfg.max_refine_iterations + 1):
            if self.adjuster is not None:
                result = self.adjuster(state, fixed_intrinsics)
                if not result.success:
                    # keep the round's poses and points unrefined
                    logger.warning(f"Bundle adjustment did not converge, skipping refinement: {result.message}")
                    ba_failed = True
                    break
                logger.info(f"Bundle adjustment: cost {result.initial_cost:.4g} -> {result.final_cost:.4g}")

            n_removed = bad_track_rejector(state, self.cfg.outlier_precision, self.cfg.min_triangulation_angle)
            removed += n_removed
            if n_removed <= self.cfg.outlier_count:
                break

        mse, _ = compute_residuals_histogram(state)
        logger.info(f"Refinement: {iterations} iteration(s), {removed} outliers removed, MSE {mse:.4g}")
        return RefinementReport(iterations, removed, ba_failed, mse)
