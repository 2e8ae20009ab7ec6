import logging
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

import typer

from ba import CeresBundleAdjuster
from config import CAMERA_MODELS, SNAPSHOT_FIELDS, PyramidParams, SfMConfig
from pyramid import PyramidScorer
from refinement import Adjuster, RefinementStage, compute_residuals_histogram, compute_track_lengths_histogram
from report import Histogram, RunStatistics, StageStatistics, export_statistics
from resection import PoseResectioner
from selection import InitialPairSelector, ResectionBatchSelector, ViewConnectivityRanker
from tracks import TrackIndex
from triangulation import Triangulator, make_initial_pair_3d
from utils import (
    LOG_LEVELS,
    NDArrayFloat,
    NDArrayInt,
    ReconIO,
    ReconstructionError,
    ReconstructionState,
    Scene,
    ViewPair,
    setup_logging,
)

logger = logging.getLogger(__name__)

app = typer.Typer()

# Consecutive rounds without an eligible batch before the loop gives up
MAX_STALLED_ROUNDS = 2


class Phase(Enum):
    INIT = "init"
    TRACKS_BUILT = "tracks_built"
    SEED = "seed"
    GROW = "grow"
    DONE = "done"


@dataclass
class ReconstructionResult:
    success: bool
    error: str | None
    state: ReconstructionState | None
    unreconstructed: list[int]
    statistics: RunStatistics


class ReconstructionLoop:
    """Incremental reconstruction: seed from the best pair, then grow and refine until no view can be added."""

    def __init__(
        self,
        scene: Scene,
        features: dict[int, NDArrayFloat],
        matches: dict[ViewPair, NDArrayInt],
        cfg: SfMConfig | None = None,
        adjuster: Adjuster | None = None,
        prompt: Callable[[str], str] | None = None,
    ):
        self.scene = scene
        self.features = features
        self.matches = matches
        self.cfg = cfg if cfg is not None else SfMConfig()

        if self.cfg.run_ba and adjuster is None:
            adjuster = CeresBundleAdjuster()
        self.refinement = RefinementStage(self.cfg, adjuster if self.cfg.run_ba else None)

        self.scorer = PyramidScorer(PyramidParams.from_config(self.cfg))
        self.pair_selector = InitialPairSelector(self.cfg, self.scorer, prompt=prompt)
        self.ranker = ViewConnectivityRanker(self.scorer)
        self.batch_selector = ResectionBatchSelector(self.cfg)
        self.resectioner = PoseResectioner(self.cfg)
        self.triangulator = Triangulator(self.cfg)

        self.phase = Phase.INIT
        self.state: ReconstructionState | None = None
        self.rounds = 0
        self.stalled_rounds = 0
        self.stages: list[StageStatistics] = []

    def _record_stage(self, name: str, start: float, num_removed: int = 0, ba_failed: bool = False):
        assert self.state is not None
        self.stages.append(
            StageStatistics(
                name=name,
                duration=time.perf_counter() - start,
                num_reconstructed=len(self.state.reconstructed),
                num_landmarks=self.state.landmarks.size,
                num_removed=num_removed,
                ba_failed=ba_failed,
            )
        )

    def _snapshot(self, name: str):
        if self.cfg.snapshot_dir is None:
            return
        assert self.state is not None
        path = ReconIO(self.state).save_snapshot(
            self.cfg.snapshot_dir / name, self.cfg.snapshot_fields, self.cfg.snapshot_format
        )
        logger.debug(f"Snapshot written to {path}")

    def _refine(self, name: str):
        start = time.perf_counter()
        report = self.refinement.run(self.state)  # ty:ignore[invalid-argument-type]
        self._record_stage(name, start, num_removed=report.removed, ba_failed=report.ba_failed)
        self._snapshot(name)

    def build_tracks(self):
        start = time.perf_counter()
        tracks = TrackIndex.build(self.matches, self.cfg.min_input_track_length)
        unknown_views = set(tracks.views_with_tracks()) - set(self.scene.views)
        if unknown_views:
            raise ReconstructionError(f"Matches reference views missing from the scene: {sorted(unknown_views)}")
        if len(tracks.views_with_tracks()) < 2:
            raise ReconstructionError(f"Only {len(tracks.views_with_tracks())} view(s) have tracks, need at least 2")

        self.scene.set_unknown_camera_type(self.cfg.default_camera_model)
        self.state = ReconstructionState(self.scene, self.features, tracks)
        self.scorer.precompute(self.scene, self.features, tracks)
        self.phase = Phase.TRACKS_BUILT
        self._record_stage("tracks", start)

    def make_seed(self):
        assert self.phase == Phase.TRACKS_BUILT and self.state is not None
        start = time.perf_counter()
        pair = self.pair_selector.choose_pair(self.state)
        if pair is None:
            raise ReconstructionError("No initial pair satisfies the shared track and baseline thresholds")
        make_initial_pair_3d(self.state, pair, self.cfg)
        self._record_stage("seed", start)
        self.phase = Phase.SEED
        self._refine("seed_refinement")

    def grow_round(self) -> bool:
        """Add one batch of views; returns False once no further view can be added."""
        assert self.phase in (Phase.SEED, Phase.GROW) and self.state is not None
        self.phase = Phase.GROW
        state = self.state

        connected = self.ranker.find_connected_views(state)
        if not connected:
            logger.info(f"No remaining view is connected to the reconstruction ({len(state.remaining)} left)")
            return False

        batch = self.batch_selector.select(state, connected)
        if not batch:
            self.stalled_rounds += 1
            logger.info(
                f"No view has {self.cfg.min_points_per_pose} correspondences "
                f"({self.stalled_rounds}/{MAX_STALLED_ROUNDS} stalled rounds)"
            )
            return self.stalled_rounds < MAX_STALLED_ROUNDS
        self.stalled_rounds = 0

        start = time.perf_counter()
        self.rounds += 1
        previous = set(state.reconstructed)
        logger.info(f"Round {self.rounds}: resectioning views {batch}")
        new_views, rejected = self.resectioner.robust_resection_of_images(state, batch)
        if new_views:
            self.triangulator.triangulate(state, previous, new_views)
        self._record_stage(f"round_{self.rounds:03d}", start)
        logger.info(
            f"Round {self.rounds}: {len(new_views)} added, {len(rejected)} deferred, "
            f"{len(state.reconstructed)}/{state.scene.size} views, {state.landmarks.size} landmarks"
        )

        if new_views and self.rounds % self.cfg.refine_every == 0:
            self._refine(f"round_{self.rounds:03d}_refinement")
        return True

    def finalize(self) -> RunStatistics:
        assert self.state is not None
        self._refine("final_refinement")
        self.phase = Phase.DONE
        return self.statistics(success=True)

    def statistics(self, success: bool, error: str | None = None) -> RunStatistics:
        state = self.state
        if state is None:
            return RunStatistics(
                success=success,
                num_views=self.scene.size,
                reconstructed_view_ids=(),
                unreconstructed_view_ids=tuple(self.scene.view_ids),
                num_tracks=0,
                num_landmarks=0,
                num_observations=0,
                num_rejected_observations=0,
                num_discarded_tracks=0,
                mse=0.0,
                mean_track_length=0.0,
                residuals_histogram=Histogram((), ()),
                track_lengths_histogram=Histogram((), ()),
                stages=tuple(self.stages),
                error=error,
            )

        mse, residuals_hist = compute_residuals_histogram(state)
        mean_length, lengths_hist = compute_track_lengths_histogram(state)
        return RunStatistics(
            success=success,
            num_views=state.scene.size,
            reconstructed_view_ids=tuple(sorted(state.reconstructed)),
            unreconstructed_view_ids=tuple(sorted(state.remaining)),
            num_tracks=state.tracks.size,
            num_landmarks=state.landmarks.size,
            num_observations=state.landmarks.num_observations,
            num_rejected_observations=len(state.rejected_observations),
            num_discarded_tracks=len(state.discarded_tracks),
            mse=mse,
            mean_track_length=mean_length,
            residuals_histogram=residuals_hist,
            track_lengths_histogram=lengths_hist,
            stages=tuple(self.stages),
            error=error,
        )

    def process(self) -> ReconstructionResult:
        """Run the whole reconstruction; fatal failures are returned as an unsuccessful result."""
        try:
            self.build_tracks()
            self.make_seed()
            while self.grow_round():
                pass
            stats = self.finalize()
        except ReconstructionError as e:
            logger.error(f"Reconstruction failed: {e}")
            return ReconstructionResult(False, str(e), self.state, self.scene.view_ids, self.statistics(False, str(e)))

        assert self.state is not None
        unreconstructed = sorted(self.state.remaining)
        if unreconstructed:
            logger.warning(f"{len(unreconstructed)} view(s) could not be reconstructed: {unreconstructed}")
        return ReconstructionResult(True, None, self.state, unreconstructed, stats)


def _parse_ids(value: str, option: str) -> list[int]:
    try:
        return [int(v) for v in value.replace(",", " ").split()]
    except ValueError:
        typer.echo(f"Error: {option} expects integers, got '{value}'", err=True)
        raise typer.Exit(code=1)


@app.command()
def main(
    input_dir: Path = typer.Argument(..., help="Directory with scene.json, features.npz and matches.npz"),
    out_dir: Path = typer.Option(Path("out"), "--output", "-o", help="Output directory"),
    initial_pair: str | None = typer.Option(
        None, "--initial-pair", "-p", help="Two view ids of the initial pair, e.g. '3,7' (automatic if omitted)"
    ),
    camera_model: str = typer.Option(
        "SIMPLE_RADIAL",
        "--camera-model",
        "-c",
        help=f"Camera model for intrinsics of unknown type: {', '.join(CAMERA_MODELS)}",
    ),
    min_input_track_length: int = typer.Option(
        2, "--min-input-track-length", help="Discard input tracks observed by fewer views"
    ),
    min_track_length: int = typer.Option(
        2, "--min-track-length", help="Minimum number of reconstructed views to triangulate a track"
    ),
    min_points_per_pose: int = typer.Option(
        30, "--min-points-per-pose", help="Minimum number of 2D-3D correspondences to resection a view"
    ),
    max_batch_size: int = typer.Option(30, "--max-batch-size", help="Maximum number of views added per round"),
    refine_every: int = typer.Option(1, "--refine-every", help="Rounds between two refinement passes"),
    interactive: bool = typer.Option(
        False, "--interactive/--non-interactive", help="Ask for the initial pair when the choice is ambiguous"
    ),
    snapshots: bool = typer.Option(
        False, "--snapshots/--no-snapshots", help="Write the scene after each refinement pass"
    ),
    snapshot_format: str = typer.Option("ply", "--snapshot-format", help="Snapshot format: ply or json"),
    snapshot_fields: str = typer.Option(
        ",".join(SNAPSHOT_FIELDS), "--snapshot-fields", help="Comma-separated scene fields written to snapshots"
    ),
    run_ba: bool = typer.Option(
        True,
        "--bundle-adjustment/--no-bundle-adjustment",
        help="Refine with bundle adjustment (otherwise outlier rejection only)",
    ),
    fixed_intrinsics: bool = typer.Option(False, "--fixed-intrinsics", help="Do not refine camera intrinsics"),
    num_workers: int = typer.Option(1, "--num-workers", "-j", help="Threads used for resection"),
    log_level: str = typer.Option("INFO", "--log-level", help="Logging level"),
):
    """Incremental Structure from Motion from precomputed features and matches."""
    if log_level.upper() not in LOG_LEVELS:
        typer.echo(f"Error: --log-level expects one of {', '.join(LOG_LEVELS)}, got '{log_level}'", err=True)
        raise typer.Exit(code=1)

    pair = None
    if initial_pair is not None:
        ids = _parse_ids(initial_pair, "--initial-pair")
        if len(ids) != 2:
            typer.echo(f"Error: --initial-pair expects two view ids, got '{initial_pair}'", err=True)
            raise typer.Exit(code=1)
        pair = (ids[0], ids[1])

    try:
        cfg = SfMConfig(
            initial_pair=pair,
            interactive=interactive,
            default_camera_model=camera_model.upper(),  # type: ignore[arg-type]
            fixed_intrinsics=fixed_intrinsics,
            min_input_track_length=min_input_track_length,
            min_track_length=min_track_length,
            min_points_per_pose=min_points_per_pose,
            max_batch_size=max_batch_size,
            num_workers=num_workers,
            run_ba=run_ba,
            refine_every=refine_every,
            snapshot_dir=out_dir / "snapshots" if snapshots else None,
            snapshot_format=snapshot_format,  # type: ignore[arg-type]
            snapshot_fields=tuple(f.strip() for f in snapshot_fields.split(",") if f.strip()),  # type: ignore[arg-type]
        )
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    setup_logging(log_level, out_dir / "sfm.log")

    # Display configuration
    typer.echo("Configuration:")
    typer.echo(f"  Input: {input_dir}")
    typer.echo(f"  Initial pair: {cfg.initial_pair or 'automatic'}")
    typer.echo(f"  Camera model: {cfg.default_camera_model}")
    typer.echo(f"  Min points per pose: {cfg.min_points_per_pose}")
    typer.echo(f"  Bundle adjustment: {cfg.run_ba}")
    typer.echo()

    try:
        scene, features, matches = ReconIO.load_inputs(input_dir)
    except (FileNotFoundError, KeyError, ValueError) as e:
        typer.echo(f"Error: cannot load inputs from {input_dir}: {e}", err=True)
        raise typer.Exit(code=1)

    prompt = typer.prompt if interactive else None
    loop = ReconstructionLoop(scene, features, matches, cfg, prompt=prompt)
    result = loop.process()
    export_statistics(result.statistics, out_dir / "statistics.json")

    if not result.success:
        typer.echo(f"Error: {result.error}", err=True)
        raise typer.Exit(code=1)

    assert result.state is not None
    exporter = ReconIO(result.state)
    typer.echo(f"Saving reconstruction to {out_dir / 'reconstruction.ply'}...")
    exporter.save_ply(out_dir / "reconstruction.ply", SNAPSHOT_FIELDS)
    exporter.save_json(out_dir / "reconstruction.json", SNAPSHOT_FIELDS)

    typer.echo(f"Reconstructed views: {len(result.state.reconstructed)}/{scene.size}")
    typer.echo(f"Landmarks: {result.state.landmarks.size}")
    if result.unreconstructed:
        typer.echo(f"Unreconstructed views: {result.unreconstructed}")
    typer.echo("Done!")


if __name__ == "__main__":
    app()
