"""Configuration for the incremental Structure from Motion loop."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

CameraModel = Literal["PINHOLE", "SIMPLE_RADIAL", "RADIAL", "OPENCV"]
SnapshotField = Literal["extrinsics", "intrinsics", "structure", "observations"]

CAMERA_MODELS: tuple[str, ...] = ("PINHOLE", "SIMPLE_RADIAL", "RADIAL", "OPENCV")
SNAPSHOT_FIELDS: tuple[str, ...] = ("extrinsics", "intrinsics", "structure", "observations")


@dataclass
class SfMConfig:
    """Configuration for the incremental reconstruction.

    Modify the default values here for experimentation.
    Command-line overrides: see `sfm.py --help`
    """

    # Initialization
    initial_pair: tuple[int, int] | None = None
    """Explicit seed pair of view ids; skips the automatic pair selection"""

    interactive: bool = False
    """Prompt the user when the automatic initial pair choice is ambiguous"""

    min_init_pair_tracks: int = 30
    """Minimum number of shared tracks for a candidate initial pair"""

    min_init_pair_angle: float = 3.0
    """Minimum triangulation angle (deg) of a candidate initial pair"""

    max_init_pair_angle: float = 60.0
    """Maximum triangulation angle (deg) of a candidate initial pair"""

    min_init_landmarks: int = 20
    """Minimum number of landmarks the seed pair must triangulate"""

    # Cameras
    default_camera_model: CameraModel = "SIMPLE_RADIAL"
    """Camera model used for intrinsics groups whose model is unknown"""

    fixed_intrinsics: bool = False
    """Keep intrinsics constant during bundle adjustment"""

    # Tracks
    min_input_track_length: int = 2
    """Tracks observed by fewer views are discarded when the track index is built"""

    min_track_length: int = 2
    """Minimum number of reconstructed views needed to triangulate a track"""

    # Resection
    min_points_per_pose: int = 30
    """Minimum number of 2D-3D correspondences to try the pose estimation of a view"""

    max_batch_size: int = 30
    """Maximum number of views resectioned in one round"""

    ransac_threshold: float = 4.0
    """Inlier threshold (px) of the robust pose estimators"""

    num_workers: int = 1
    """Threads used for per-view resection within a round"""

    # Triangulation & outliers
    triangulation_precision: float = 4.0
    """Maximum reprojection error (px) of a newly triangulated point"""

    min_triangulation_angle: float = 2.0
    """Minimum angle (deg) between the rays of a landmark"""

    outlier_precision: float = 4.0
    """Residual (px) above which an observation is rejected"""

    outlier_count: int = 0
    """Refinement stops once a rejection pass removes no more than this many outliers"""

    # Refinement
    run_ba: bool = True
    """Run bundle adjustment during refinement (otherwise rejection only)"""

    refine_every: int = 1
    """Number of growth rounds between two refinement passes"""

    max_refine_iterations: int = 5
    """Maximum number of bundle adjustment / rejection alternations per pass"""

    # Pyramid scoring
    pyramid_base: int = 2
    """Subdivision factor per axis between two pyramid levels"""

    pyramid_depth: int = 5
    """Number of pyramid levels (level 0 is the whole image)"""

    pyramid_threshold: int = 1
    """Number of observations a cell accepts before it is saturated"""

    # Output
    snapshot_dir: Path | None = None
    """Directory for intermediate scenes written after each refinement pass"""

    snapshot_format: Literal["ply", "json"] = "ply"
    """File format of the intermediate scenes"""

    snapshot_fields: tuple[SnapshotField, ...] = field(default_factory=lambda: SNAPSHOT_FIELDS)  # type: ignore[arg-type]
    """Scene fields written to the intermediate scenes"""

    def __post_init__(self):
        if self.default_camera_model not in CAMERA_MODELS:
            raise ValueError(f"default_camera_model must be one of {CAMERA_MODELS}, got '{self.default_camera_model}'")
        if self.snapshot_format not in ("ply", "json"):
            raise ValueError(f"snapshot_format must be 'ply' or 'json', got '{self.snapshot_format}'")
        unknown_fields = set(self.snapshot_fields) - set(SNAPSHOT_FIELDS)
        if unknown_fields:
            raise ValueError(f"Unknown snapshot fields: {sorted(unknown_fields)}")
        if self.min_input_track_length < 2:
            raise ValueError(f"min_input_track_length must be >= 2, got {self.min_input_track_length}")
        if self.min_track_length < 2:
            raise ValueError(f"min_track_length must be >= 2, got {self.min_track_length}")
        if self.min_points_per_pose < 6:
            raise ValueError(f"min_points_per_pose must be >= 6, got {self.min_points_per_pose}")
        if self.max_batch_size < 1 or self.refine_every < 1 or self.max_refine_iterations < 1:
            raise ValueError("max_batch_size, refine_every and max_refine_iterations must be positive")
        if self.pyramid_base < 2 or self.pyramid_depth < 1 or self.pyramid_threshold < 1:
            raise ValueError("pyramid_base must be >= 2, pyramid_depth and pyramid_threshold >= 1")
        if self.initial_pair is not None:
            if len(self.initial_pair) != 2 or self.initial_pair[0] == self.initial_pair[1]:
                raise ValueError(f"initial_pair must hold two distinct view ids, got {self.initial_pair}")
            self.initial_pair = (int(self.initial_pair[0]), int(self.initial_pair[1]))
        self.snapshot_fields = tuple(self.snapshot_fields)
        if self.snapshot_dir is not None:
            self.snapshot_dir = Path(self.snapshot_dir)


@dataclass(frozen=True)
class PyramidParams:
    """Pyramid scoring parameters, computed once from the configuration."""

    base: int
    depth: int
    threshold: int
    weights: tuple[int, ...]

    @classmethod
    def from_config(cls, cfg: SfMConfig) -> "PyramidParams":
        # finer levels are worth more: w_l = base^l
        weights = tuple(cfg.pyramid_base**level for level in range(cfg.pyramid_depth))
        return cls(cfg.pyramid_base, cfg.pyramid_depth, cfg.pyramid_threshold, weights)

    def cells_per_axis(self, level: int) -> int:
        return self.base**level
