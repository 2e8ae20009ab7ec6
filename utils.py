import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Any, Iterable, Literal

import cv2 as cv
import numpy as np
import pandas as pd
from numpy.typing import NDArray

NDArrayFloat = NDArray[np.floating[Any]]
NDArrayInt = NDArray[np.integer[Any]]
Point3D = Annotated[NDArrayFloat, Literal[3]]
KPKey = tuple[int, int]  # Keypoint observation (view_id, feature_id)
ViewPair = tuple[int, int]

logger = logging.getLogger(__name__)

# Distortion coefficients (k1, k2, p1, p2, k3) each camera model can represent
_MODEL_DIST_MASK = {
    "PINHOLE": np.array([0, 0, 0, 0, 0], dtype=bool),
    "SIMPLE_RADIAL": np.array([1, 0, 0, 0, 0], dtype=bool),
    "RADIAL": np.array([1, 1, 0, 0, 0], dtype=bool),
    "OPENCV": np.array([1, 1, 1, 1, 0], dtype=bool),
}


class ReconstructionError(RuntimeError):
    """Fatal failure: there is no seed to grow a reconstruction from."""


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# camera frame: center, then the image plane square at unit depth
FRUSTUM_CORNERS = np.array(
    [[0.0, 0.0, 0.0], [0.5, 0.5, 1.0], [0.5, -0.5, 1.0], [-0.5, -0.5, 1.0], [-0.5, 0.5, 1.0]]
)
# center to corners, then around the square
FRUSTUM_EDGES = np.array([[0, 1], [0, 2], [0, 3], [0, 4], [1, 2], [2, 3], [3, 4], [4, 1]])


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> logging.Logger:
    """Configure console (and optional file) logging for the reconstruction modules."""
    if level.upper() not in LOG_LEVELS:
        raise ValueError(f"Unknown log level '{level}', expected one of {', '.join(LOG_LEVELS)}")
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    root.handlers = []

    # [2025-10-31 10:15:30] [INFO] [sfm] Message
    formatter = logging.Formatter("[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, mode="a")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    return root


@dataclass
class Camera:
    """Intrinsics group shared by zero or more views.

    K - intrinsic matrix (3x3)
    dist - OpenCV distortion coefficients [k1, k2, p1, p2, k3]
    """

    idx: int
    K: NDArrayFloat
    dist: NDArrayFloat = field(default_factory=lambda: np.zeros(5))
    width: int = 0
    height: int = 0
    model: str | None = None
    # Intrinsics only guessed (e.g. focal from image size) until refined
    unknown: bool = False

    def __post_init__(self):
        self.K = np.asarray(self.K, dtype=np.float64).reshape(3, 3)
        dist = np.asarray(self.dist, dtype=np.float64).ravel()
        self.dist = np.pad(dist, (0, 5 - len(dist))) if len(dist) < 5 else dist[:5]

    @property
    def fx(self) -> float:
        return float(self.K[0, 0])

    @property
    def fy(self) -> float:
        return float(self.K[1, 1])

    @property
    def cx(self) -> float:
        return float(self.K[0, 2])

    @property
    def cy(self) -> float:
        return float(self.K[1, 2])

    @property
    def focal(self) -> float:
        return 0.5 * (self.fx + self.fy)

    def project(self, points_3d: NDArrayFloat, R: NDArrayFloat, t: NDArrayFloat) -> NDArrayFloat:
        """Project world points (N, 3) into the image of a camera with pose (R, t)."""
        if len(points_3d) == 0:
            return np.zeros((0, 2))
        rvec = cv.Rodrigues(np.asarray(R, dtype=np.float64))[0]
        uv, _ = cv.projectPoints(
            np.asarray(points_3d, dtype=np.float64).reshape(-1, 1, 3),
            rvec,
            np.asarray(t, dtype=np.float64).reshape(3, 1),
            self.K,
            self.dist,
        )
        return uv.reshape(-1, 2)

    def normalize(self, points_2d: NDArrayFloat) -> NDArrayFloat:
        """Undistort pixel coordinates (N, 2) into normalized image coordinates."""
        if len(points_2d) == 0:
            return np.zeros((0, 2))
        pts = np.asarray(points_2d, dtype=np.float64).reshape(-1, 1, 2)
        return cv.undistortPoints(pts, self.K, self.dist).reshape(-1, 2)

    def to_colmap_params(self) -> NDArrayFloat:
        """Camera parameters in the COLMAP layout of `self.model`."""
        k1, k2, p1, p2, _ = self.dist
        if self.model == "PINHOLE":
            params = [self.fx, self.fy, self.cx, self.cy]
        elif self.model == "SIMPLE_RADIAL":
            params = [self.focal, self.cx, self.cy, k1]
        elif self.model == "RADIAL":
            params = [self.focal, self.cx, self.cy, k1, k2]
        elif self.model == "OPENCV":
            params = [self.fx, self.fy, self.cx, self.cy, k1, k2, p1, p2]
        else:
            raise ValueError(f"Camera {self.idx} has no camera model")
        return np.array(params, dtype=np.float64)

    def set_colmap_params(self, params: NDArrayFloat):
        """Update K and dist from parameters in the COLMAP layout of `self.model`."""
        params = np.asarray(params, dtype=np.float64)
        dist = np.zeros(5)
        if self.model in ("PINHOLE", "OPENCV"):
            fx, fy, cx, cy = params[:4]
            dist[: len(params) - 4] = params[4:]
        else:
            fx = fy = params[0]
            cx, cy = params[1:3]
            dist[: len(params) - 3] = params[3:]
        self.K = np.array([[fx, 0.0, cx], [0.0, fy, cy], [0.0, 0.0, 1.0]])
        self.dist = dist

    def apply_model(self, model: str):
        """Set the camera model, dropping distortion terms it cannot represent."""
        if model not in _MODEL_DIST_MASK:
            raise ValueError(f"Unknown camera model: {model}")
        self.model = model
        self.dist = np.where(_MODEL_DIST_MASK[model], self.dist, 0.0)


@dataclass
class View:
    idx: int
    intrinsics_id: int
    path: Path | None = None
    # Estimated pose (world -> camera): X_cam = R @ X_world + t
    R: NDArrayFloat | None = None
    t: NDArrayFloat | None = None

    def set_pose(self, R, t):
        """Attach the pose of a newly localized view."""
        if self.has_pose:
            raise ValueError(f"View {self.idx} already has a pose")
        self.R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(t, dtype=np.float64).ravel()

    def refine_pose(self, R, t):
        if not self.has_pose:
            raise ValueError(f"View {self.idx} has no pose to refine")
        self.R = np.asarray(R, dtype=np.float64).reshape(3, 3)
        self.t = np.asarray(t, dtype=np.float64).ravel()

    @property
    def has_pose(self) -> bool:
        return self.R is not None and self.t is not None

    @property
    def pose_matrix(self) -> NDArrayFloat:
        return np.hstack((self.R, self.t[:, None]))  # ty:ignore[not-subscriptable]

    @property
    def center(self) -> NDArrayFloat:
        """Camera center in world coordinates: C = -R^T @ t"""
        return -self.R.T @ self.t  # ty:ignore[unresolved-attribute]


class Scene:
    """Views and intrinsics groups of a reconstruction."""

    def __init__(self, views: Iterable[View], intrinsics: Iterable[Camera]):
        self.views: dict[int, View] = {view.idx: view for view in views}
        self.intrinsics: dict[int, Camera] = {cam.idx: cam for cam in intrinsics}
        for view in self.views.values():
            if view.intrinsics_id not in self.intrinsics:
                raise ValueError(f"View {view.idx} references unknown intrinsics group {view.intrinsics_id}")

    @property
    def size(self) -> int:
        return len(self.views)

    @property
    def view_ids(self) -> list[int]:
        return sorted(self.views)

    def __getitem__(self, view_id: int) -> View:
        return self.views[view_id]

    def camera_of(self, view_id: int) -> Camera:
        return self.intrinsics[self.views[view_id].intrinsics_id]

    def iter_views_with_pose(self) -> Iterable[View]:
        """Yield views for which we have a pose estimate."""
        yield from (self.views[idx] for idx in self.view_ids if self.views[idx].has_pose)

    def set_unknown_camera_type(self, model: str) -> int:
        """Give every intrinsics group without a camera model the default one."""
        count = 0
        for cam in self.intrinsics.values():
            if cam.model is None:
                cam.apply_model(model)
                count += 1
        if count:
            logger.info(f"Using camera model {model} for {count} intrinsics group(s) of unknown type")
        return count


@dataclass
class Landmark:
    track_id: int
    X: Point3D
    observations: dict[int, int] = field(default_factory=dict)  # view_id -> feature_id


class PointCloud:
    """Landmarks of the reconstruction, keyed by the id of their track."""

    def __init__(self):
        self._data: dict[int, Landmark] = {}

    @property
    def size(self) -> int:
        return len(self._data)

    def __contains__(self, track_id: int) -> bool:
        return track_id in self._data

    def __getitem__(self, track_id: int) -> Landmark:
        return self._data[track_id]

    def add(self, landmark: Landmark) -> None:
        assert landmark.track_id not in self._data, f"Landmark for track {landmark.track_id} already exists"
        self._data[landmark.track_id] = landmark

    def remove(self, track_id: int) -> None:
        del self._data[track_id]

    def track_ids(self) -> list[int]:
        return sorted(self._data)

    def get_points_as_array(self, track_ids: list[int] | None = None) -> NDArrayFloat:
        if track_ids is None:
            track_ids = self.track_ids()
        if not track_ids:
            return np.zeros((0, 3))
        return np.array([self._data[track_id].X for track_id in track_ids], dtype=np.float64)

    def items(self) -> Iterable[tuple[int, Landmark]]:
        yield from sorted(self._data.items())

    @property
    def num_observations(self) -> int:
        return sum(len(lm.observations) for lm in self._data.values())


@dataclass(frozen=True)
class ViewConnectionScore:
    view_id: int
    shared_count: int
    spatial_score: int
    intrinsics_known: bool
    track_ids: tuple[int, ...] = ()


class ReconstructionState:
    """Single owner of the evolving reconstruction.

    Invariant: `reconstructed` and `remaining` partition the view ids of the scene.
    """

    def __init__(self, scene: Scene, features: dict[int, NDArrayFloat], tracks):
        self.scene = scene
        self.features = features
        self.tracks = tracks  # tracks.TrackIndex
        self.landmarks = PointCloud()
        self.reconstructed: set[int] = set()
        self.remaining: set[int] = set(scene.view_ids)
        # Observations flagged as outliers; the track keeps them but they are no longer used
        self.rejected_observations: set[KPKey] = set()
        # Tracks whose landmark was invalidated; never triangulated again
        self.discarded_tracks: set[int] = set()
        # view_id -> generation at which its resection failed
        self.deferred: dict[int, int] = {}
        # Number of views localized so far, used to retry deferred views once structure grew
        self.generation = 0
        self.seed_view: int | None = None

    def mark_reconstructed(self, view_id: int) -> None:
        if view_id not in self.remaining:
            raise ValueError(f"View {view_id} is not waiting for reconstruction")
        self.remaining.remove(view_id)
        self.reconstructed.add(view_id)
        self.deferred.pop(view_id, None)
        self.generation += 1

    def defer(self, view_id: int, generation: int | None = None) -> None:
        """Block `view_id` until the structure grows past `generation` (default: the current one)."""
        self.deferred[view_id] = self.generation if generation is None else generation

    def is_deferred(self, view_id: int) -> bool:
        return view_id in self.deferred and self.deferred[view_id] >= self.generation

    def is_consistent(self) -> bool:
        all_views = set(self.scene.view_ids)
        return not (self.reconstructed & self.remaining) and (self.reconstructed | self.remaining) == all_views

    def feature_point(self, view_id: int, feature_id: int) -> NDArrayFloat:
        return np.asarray(self.features[view_id][feature_id], dtype=np.float64)

    def is_active(self, view_id: int, feature_id: int) -> bool:
        return (view_id, feature_id) not in self.rejected_observations

    def reject_observation(self, view_id: int, feature_id: int) -> None:
        self.rejected_observations.add((view_id, feature_id))

    def discard_landmark(self, track_id: int) -> None:
        self.landmarks.remove(track_id)
        self.discarded_tracks.add(track_id)


class ReconIO:
    """Handles loading of the reconstruction inputs and saving of scene snapshots (PLY / JSON)."""

    SCENE_FILENAME = "scene.json"
    FEATURES_FILENAME = "features.npz"
    MATCHES_FILENAME = "matches.npz"

    def __init__(self, state: ReconstructionState):
        self.state = state

    @classmethod
    def load_inputs(
        cls, input_dir: Path
    ) -> tuple[Scene, dict[int, NDArrayFloat], dict[ViewPair, NDArrayInt]]:
        """Load the scene container, features per view and pairwise matches from a directory."""
        scene_path = input_dir / cls.SCENE_FILENAME
        if not scene_path.exists():
            raise FileNotFoundError(f"Scene file not found: {scene_path}")
        with open(scene_path) as f:
            data = json.load(f)

        intrinsics = [
            Camera(
                idx=int(cam["id"]),
                K=np.array(cam["K"], dtype=np.float64),
                dist=np.array(cam.get("dist", []), dtype=np.float64),
                width=int(cam.get("width", 0)),
                height=int(cam.get("height", 0)),
                model=cam.get("model"),
                unknown=bool(cam.get("unknown", False)),
            )
            for cam in data["intrinsics"]
        ]
        views = [
            View(
                idx=int(v["id"]),
                intrinsics_id=int(v["intrinsics_id"]),
                path=Path(v["path"]) if v.get("path") else None,
            )
            for v in data["views"]
        ]
        scene = Scene(views, intrinsics)

        with np.load(input_dir / cls.FEATURES_FILENAME) as npz:
            features = {int(key): npz[key].astype(np.float64).reshape(-1, 2) for key in npz.files}
        with np.load(input_dir / cls.MATCHES_FILENAME) as npz:
            matches = {}
            for key in npz.files:
                i, j = (int(s) for s in key.split("_"))
                matches[(i, j)] = npz[key].astype(np.int64).reshape(-1, 2)

        logger.info(
            f"Loaded {scene.size} views, {len(intrinsics)} intrinsics groups and {len(matches)} matched pairs "
            f"from {input_dir}"
        )
        return scene, features, matches

    @classmethod
    def save_inputs(
        cls,
        output_dir: Path,
        scene: Scene,
        features: dict[int, NDArrayFloat],
        matches: dict[ViewPair, NDArrayInt],
    ) -> None:
        """Write inputs in the layout read by `load_inputs`."""
        output_dir.mkdir(parents=True, exist_ok=True)
        data = {
            "intrinsics": [
                {
                    "id": cam.idx,
                    "K": cam.K.tolist(),
                    "dist": cam.dist.tolist(),
                    "width": cam.width,
                    "height": cam.height,
                    "model": cam.model,
                    "unknown": cam.unknown,
                }
                for cam in scene.intrinsics.values()
            ],
            "views": [
                {"id": v.idx, "intrinsics_id": v.intrinsics_id, "path": str(v.path) if v.path else None}
                for v in scene.views.values()
            ],
        }
        with open(output_dir / cls.SCENE_FILENAME, "w") as f:
            json.dump(data, f, indent=2)
        np.savez(output_dir / cls.FEATURES_FILENAME, **{str(k): v for k, v in features.items()})
        np.savez(output_dir / cls.MATCHES_FILENAME, **{f"{i}_{j}": m for (i, j), m in matches.items()})

    @staticmethod
    def camera_frustums(views: Iterable[View], scale: float = 0.1) -> tuple[pd.DataFrame, pd.DataFrame]:
        """Frustum vertices (5 per view, world frame) and edges (8 per view, indices into the vertices)."""
        vertices, edges = [], []
        for i, view in enumerate(views):
            # Xw = R^T (Xc - t), row-wise
            vertices.append((scale * FRUSTUM_CORNERS - view.t) @ view.R)
            edges.append(FRUSTUM_EDGES + len(FRUSTUM_CORNERS) * i)
        xyz = np.vstack(vertices) if vertices else np.zeros((0, 3))
        pairs = np.vstack(edges) if edges else np.zeros((0, 2), dtype=np.int64)
        return pd.DataFrame(xyz, columns=["x", "y", "z"]), pd.DataFrame(pairs, columns=["vertex1", "vertex2"])

    def save_ply(self, filename: Path, fields: Iterable[str] = ("extrinsics", "structure")) -> None:
        """Write landmarks (gray) and camera frustums (red) as an ASCII PLY file.

        Only the `structure` and `extrinsics` fields have a PLY representation.
        """
        fields = set(fields)
        xyz = self.state.landmarks.get_points_as_array() if "structure" in fields else np.zeros((0, 3))
        points = pd.DataFrame(xyz, columns=["x", "y", "z"]).assign(red=128, green=128, blue=128)

        views = self.state.scene.iter_views_with_pose() if "extrinsics" in fields else []
        cameras, edges = self.camera_frustums(views)
        cameras = cameras.assign(red=255, green=0, blue=0)
        # edges index into the vertex table, after the points
        edges = (edges + len(points)).assign(red=255, green=0, blue=0)
        vertices = pd.concat([points, cameras], ignore_index=True)

        filename.parent.mkdir(exist_ok=True, parents=True)
        with open(filename, "w") as f:
            f.write("ply\n")
            f.write("format ascii 1.0\n")
            f.write(f"element vertex {len(vertices)}\n")
            f.write("property float x\n")
            f.write("property float y\n")
            f.write("property float z\n")
            f.write("property uchar red\n")
            f.write("property uchar green\n")
            f.write("property uchar blue\n")
            f.write(f"element edge {len(edges)}\n")
            f.write("property int vertex1\n")
            f.write("property int vertex2\n")
            f.write("property uchar red\n")
            f.write("property uchar green\n")
            f.write("property uchar blue\n")
            f.write("end_header\n")
            vertices.to_csv(f, sep=" ", header=False, index=False, lineterminator="\n")
            edges.to_csv(f, sep=" ", header=False, index=False, lineterminator="\n")
        logger.debug(f"Wrote {len(points)} points and {len(cameras) // len(FRUSTUM_CORNERS)} cameras to {filename}")

    def to_dict(self, fields: Iterable[str]) -> dict:
        """Scene as a JSON-serializable dict restricted to the given fields."""
        fields = set(fields)
        scene = self.state.scene
        out: dict[str, Any] = {
            "views": [
                {"id": v.idx, "intrinsics_id": v.intrinsics_id, "path": str(v.path) if v.path else None}
                for v in scene.views.values()
            ]
        }
        if "intrinsics" in fields:
            out["intrinsics"] = [
                {
                    "id": cam.idx,
                    "model": cam.model,
                    "K": cam.K.tolist(),
                    "dist": cam.dist.tolist(),
                    "width": cam.width,
                    "height": cam.height,
                    "unknown": cam.unknown,
                }
                for cam in scene.intrinsics.values()
            ]
        if "extrinsics" in fields:
            out["poses"] = {
                str(v.idx): {"R": v.R.tolist(), "t": v.t.tolist()}  # ty:ignore[unresolved-attribute]
                for v in scene.iter_views_with_pose()
            }
        if "structure" in fields or "observations" in fields:
            landmarks = []
            for track_id, lm in self.state.landmarks.items():
                entry: dict[str, Any] = {"track_id": track_id}
                if "structure" in fields:
                    entry["X"] = np.asarray(lm.X).tolist()
                if "observations" in fields:
                    entry["observations"] = {str(v): int(f) for v, f in sorted(lm.observations.items())}
                landmarks.append(entry)
            out["landmarks"] = landmarks
        return out

    def save_json(self, filename: Path, fields: Iterable[str]) -> None:
        filename.parent.mkdir(exist_ok=True, parents=True)
        with open(filename, "w") as f:
            json.dump(self.to_dict(fields), f)

    def save_snapshot(self, filename: Path, fields: Iterable[str], fmt: Literal["ply", "json"] = "ply") -> Path:
        filename = filename.with_suffix(f".{fmt}")
        if fmt == "ply":
            self.save_ply(filename, fields)
        else:
            self.save_json(filename, fields)
        return filename
