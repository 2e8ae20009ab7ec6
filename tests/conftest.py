"""Synthetic scenes: cameras on an arc looking at a random point cloud."""

import logging

import cv2 as cv
import numpy as np
import pytest

from ba import BundleAdjustmentResult
from config import PyramidParams, SfMConfig
from pyramid import PyramidScorer
from tracks import TrackIndex
from utils import Camera, ReconstructionState, Scene, View

WIDTH, HEIGHT = 1024, 768
FOCAL = 800.0


def look_at_pose(angle_deg: float, radius: float = 10.0):
    """World -> camera pose of a camera on a horizontal arc around the origin, looking at it."""
    a = np.radians(angle_deg)
    center = radius * np.array([np.sin(a), 0.0, -np.cos(a)])
    z = -center / np.linalg.norm(center)
    down = np.array([0.0, 1.0, 0.0])
    x = np.cross(down, z)
    x /= np.linalg.norm(x)
    y = np.cross(z, x)
    R = np.vstack((x, y, z))
    return R, -R @ center


class SyntheticScene:
    def __init__(self, n_views=6, n_points=150, step_deg=10.0, noise=0.2, visibility=None, model="PINHOLE", seed=0):
        rng = np.random.default_rng(seed)
        self.points = rng.uniform(-2.0, 2.0, size=(n_points, 3))
        K = np.array([[FOCAL, 0.0, WIDTH / 2], [0.0, FOCAL, HEIGHT / 2], [0.0, 0.0, 1.0]])
        self.camera = Camera(0, K, width=WIDTH, height=HEIGHT, model=model)
        angles = [step_deg * (i - (n_views - 1) / 2) for i in range(n_views)]
        self.poses = {i: look_at_pose(a) for i, a in enumerate(angles)}

        # feature id == point index in every view
        self.features = {}
        for view_id, (R, t) in self.poses.items():
            uv = self.camera.project(self.points, R, t)
            self.features[view_id] = uv + rng.normal(scale=noise, size=uv.shape)

        if visibility is None:
            visibility = {view_id: np.arange(n_points) for view_id in self.poses}
        self.visibility = {view_id: set(int(p) for p in pts) for view_id, pts in visibility.items()}

        self.matches = {}
        for i in self.poses:
            for j in self.poses:
                if i >= j:
                    continue
                common = sorted(self.visibility[i] & self.visibility[j])
                if common:
                    self.matches[(i, j)] = np.array([[p, p] for p in common], dtype=np.int64)

    def make_scene(self) -> Scene:
        cam = Camera(0, self.camera.K.copy(), width=WIDTH, height=HEIGHT, model=self.camera.model)
        return Scene([View(i, 0) for i in self.poses], [cam])

    def make_state(self, min_track_length: int = 2) -> ReconstructionState:
        tracks = TrackIndex.build(self.matches, min_track_length)
        return ReconstructionState(self.make_scene(), self.features, tracks)


class NoopAdjuster:
    """Bundle adjuster stand-in that leaves the state untouched."""

    def __init__(self, success=True):
        self.success = success
        self.calls = 0

    def __call__(self, state, fixed_intrinsics=False):
        self.calls += 1
        if not self.success:
            return BundleAdjustmentResult(False, message="did not converge")
        n = state.landmarks.num_observations
        return BundleAdjustmentResult(True, 1.0, 1.0, n, "noop")


def make_scorer(cfg: SfMConfig, state: ReconstructionState) -> PyramidScorer:
    scorer = PyramidScorer(PyramidParams.from_config(cfg))
    scorer.precompute(state.scene, state.features, state.tracks)
    return scorer


@pytest.fixture
def synthetic():
    return SyntheticScene()


@pytest.fixture
def cfg():
    return SfMConfig(run_ba=False)


@pytest.fixture(autouse=True)
def seed_opencv():
    # RANSAC in findEssentialMat, findHomography and solvePnPRansac
    cv.setRNGSeed(0)


@pytest.fixture(autouse=True)
def restore_logging():
    # the CLI replaces the root handlers
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)
