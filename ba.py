import logging
from dataclasses import dataclass

import numpy as np
import pyceres
import pycolmap
import pycolmap._core.cost_functions as cost_functions

from utils import ReconstructionState

logger = logging.getLogger(__name__)


@dataclass
class BundleAdjustmentResult:
    success: bool
    initial_cost: float = 0.0
    final_cost: float = 0.0
    num_residuals: int = 0
    message: str = ""


def pose_to_params(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """cam_from_world as the 7-vector [qx, qy, qz, qw, tx, ty, tz] used by pycolmap cost functions."""
    quat = pycolmap.Rotation3d(np.asarray(R, dtype=np.float64)).quat
    return np.concatenate((quat, np.asarray(t, dtype=np.float64).ravel()))


def params_to_pose(params: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    rotation = pycolmap.Rotation3d(params[:4].copy())
    rotation.normalize()
    return rotation.matrix(), params[4:].copy()


class CeresBundleAdjuster:
    """Bundle adjustment of all reconstructed views and landmarks using pycolmap cost functions."""

    def __init__(self, max_num_iterations: int = 100, loss_scale: float = 1.0, num_threads: int = -1, verbose=False):
        self.max_num_iterations = max_num_iterations
        self.loss_scale = loss_scale
        self.num_threads = num_threads
        self.verbose = verbose

    def _build_problem(self, state, pose_params, cam_params, point_params, fixed_intrinsics):
        scene = state.scene
        cam_models = {
            cam_id: getattr(pycolmap.CameraModelId, scene.intrinsics[cam_id].model)  # ty:ignore[invalid-argument-type]
            for cam_id in cam_params
        }

        problem = pyceres.Problem()
        loss = pyceres.HuberLoss(self.loss_scale)  # Robust loss for outliers

        num_residuals = 0
        for track_id, lm in state.landmarks.items():
            for view_id, feature_id in lm.observations.items():
                if view_id not in pose_params:
                    continue
                cam = scene.camera_of(view_id)
                observed_pt = state.feature_point(view_id, feature_id)
                cost = cost_functions.ReprojErrorCost(cam_models[cam.idx], observed_pt)
                # Parameter order: [point_3d, cam_from_world, camera_params]
                problem.add_residual_block(
                    cost, loss, [point_params[track_id], pose_params[view_id], cam_params[cam.idx]]
                )
                num_residuals += 1
        if num_residuals == 0:
            return problem, 0

        if fixed_intrinsics:
            for params in cam_params.values():
                problem.set_parameter_block_constant(params)

        # Fix the seed camera (to avoid gauge freedom)
        gauge_view = state.seed_view if state.seed_view in pose_params else min(pose_params)
        problem.set_parameter_block_constant(pose_params[gauge_view])
        return problem, num_residuals

    def __call__(self, state: ReconstructionState, fixed_intrinsics: bool = False) -> BundleAdjustmentResult:
        scene = state.scene

        # The quaternion part of each pose block drifts off the unit sphere; it is normalized on write back
        pose_params = {view.idx: pose_to_params(view.R, view.t) for view in scene.iter_views_with_pose()}

        # Intrinsics groups used by the reconstructed views, in the COLMAP layout of their model
        cam_params = {}
        for view_id in pose_params:
            cam = scene.camera_of(view_id)
            if cam.idx not in cam_params:
                cam_params[cam.idx] = cam.to_colmap_params()

        point_params = {track_id: np.asarray(lm.X, dtype=np.float64).copy() for track_id, lm in state.landmarks.items()}

        options = pyceres.SolverOptions()
        options.linear_solver_type = pyceres.LinearSolverType.SPARSE_SCHUR
        options.minimizer_progress_to_stdout = self.verbose
        options.max_num_iterations = self.max_num_iterations
        options.num_threads = self.num_threads

        summary = pyceres.SolverSummary()
        num_residuals = 0
        try:
            problem, num_residuals = self._build_problem(state, pose_params, cam_params, point_params, fixed_intrinsics)
            if num_residuals == 0:
                return BundleAdjustmentResult(False, message="no observations to adjust")
            pyceres.solve(options, problem, summary)
        except (RuntimeError, ValueError, TypeError) as e:
            logger.warning(f"Bundle adjustment failed: {e}")
            return BundleAdjustmentResult(False, num_residuals=num_residuals, message=str(e))
        logger.debug(summary.BriefReport())

        if not summary.IsSolutionUsable():
            return BundleAdjustmentResult(
                False, summary.initial_cost, summary.final_cost, num_residuals, summary.BriefReport()
            )

        # Update camera poses with optimized values
        for view_id, params in pose_params.items():
            scene[view_id].refine_pose(*params_to_pose(params))

        for track_id, point_3d in point_params.items():
            state.landmarks[track_id].X = point_3d

        if not fixed_intrinsics:
            for cam_id, params in cam_params.items():
                scene.intrinsics[cam_id].set_colmap_params(params)
                scene.intrinsics[cam_id].unknown = False

        return BundleAdjustmentResult(
            True, summary.initial_cost, summary.final_cost, num_residuals, summary.BriefReport()
        )
