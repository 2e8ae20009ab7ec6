"""Run statistics: immutable records filled at the end of each stage, and their JSON export."""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path

import numpy as np

from utils import NDArrayFloat

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Histogram:
    bin_edges: tuple[float, ...]
    counts: tuple[int, ...]

    @classmethod
    def from_values(cls, values: NDArrayFloat, bins) -> "Histogram":
        if len(values) == 0:
            return cls((), ())
        counts, edges = np.histogram(values, bins=bins)
        return cls(tuple(float(e) for e in edges), tuple(int(c) for c in counts))


@dataclass(frozen=True)
class StageStatistics:
    name: str
    duration: float  # seconds
    num_reconstructed: int
    num_landmarks: int
    num_removed: int = 0
    ba_failed: bool = False


@dataclass(frozen=True)
class RunStatistics:
    success: bool
    num_views: int
    reconstructed_view_ids: tuple[int, ...]
    unreconstructed_view_ids: tuple[int, ...]
    num_tracks: int
    num_landmarks: int
    num_observations: int
    num_rejected_observations: int
    num_discarded_tracks: int
    mse: float
    mean_track_length: float
    residuals_histogram: Histogram
    track_lengths_histogram: Histogram
    stages: tuple[StageStatistics, ...] = field(default_factory=tuple)
    error: str | None = None


def export_statistics(stats: RunStatistics, path: Path) -> None:
    """Write the run statistics as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(asdict(stats), f, indent=2)
    logger.info(f"Statistics written to {path}")
