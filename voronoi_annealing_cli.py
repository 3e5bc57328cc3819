#!/usr/bin/env python3

"""
voronoi_annealing_cli.py

CLI tools for approximating an image with an annealed Voronoi diagram.

This module loads a target image, builds the Voronoi engine and the
annealing driver, and runs one annealing iteration per frame until the
configured duration elapses. Progress is appended to a CSV file, PNG
snapshots are written at a fixed interval, and the diagram can optionally be
mirrored in an OpenCV window (SPACE pauses/resumes, q or ESC stops).

Typical usage:
    $ python3 voronoi_annealing_cli.py run -i ./res/homer.jpg -n 200 -d 30m
    $ python3 voronoi_annealing_cli.py run --config config.yaml --pretty

Outputs per run (in ``outdir``):
  - <image>_<seeds>-seeds.csv                               (elapsed_seconds, temperature)
  - <image>_<seeds>-seeds_<movreduction>-movreduction_<s>.png (periodic snapshots)
and prints a JSON summary to stdout (optionally pretty).

The public entry point is :func:`main`.
"""

from __future__ import annotations
import argparse, json, os, re, sys, time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
import numpy as np
import cv2
import yaml

from voronoi_engine import ConfigurationError, VoronoiEngine, announce, ensure_bool
from simulated_annealing import DEFAULT_PERCENT_THRESHOLD, SimulatedAnnealing

# =========================
# Configurable constants
# =========================
DEFAULT_IMAGE_NAME = "homer"
DEFAULT_TARGET_IMAGE = f"./res/{DEFAULT_IMAGE_NAME}.jpg"
DEFAULT_NUM_SEEDS = 50
DEFAULT_SIMULATION_DURATION = "3h"
DEFAULT_SNAPSHOTS_INTERVAL = "1m"
DEFAULT_MOVEMENT_REDUCTION_FACTOR = 4
DEFAULT_OUTDIR = "./res"

WINDOW_TITLE = "Voronoi Simulated Annealing ({} seeds)"
KEY_PAUSE = 32                   # SPACE
KEYS_QUIT = {ord("q"), 27}       # q, ESC
PAUSE_POLL_SECONDS = 0.05

# OpenCV conversion to RGBA by channel count (gray, BGR, BGRA)
TO_RGBA = {1: cv2.COLOR_GRAY2RGBA, 3: cv2.COLOR_BGR2RGBA, 4: cv2.COLOR_BGRA2RGBA}

CONFIG_KEYS = {
    "target_image", "num_seeds", "simulation_duration", "snapshots_interval",
    "movement_reduction_factor", "percent_threshold", "random_seed",
    "output_size", "outdir", "show", "max_iterations",
}

# Stop reasons reported by FrameDriver.run()
STOP_DURATION = "duration_elapsed"
STOP_MAX_FRAMES = "max_iterations"
STOP_USER = "user_quit"


class SimulationCompleted(Exception):
    """Raised by the frame driver once the configured duration has elapsed."""


@dataclass
class TargetImage:
    name: str
    pixels: np.ndarray    # flat row-major RGBA, uint8
    width: int
    height: int


# =========================
# Durations
# =========================
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 1e-3, "us": 1e-6, "ns": 1e-9}
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|us|ns|h|m|s)")

def parse_duration(value: Any) -> float:
    """Seconds from a number or a Go-style duration string ("3h", "1m30s", "250ms")."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ensure_bool(value >= 0, f"Duration must not be negative: {value}", ConfigurationError)
        return float(value)
    s = str(value).strip()
    try:
        return parse_duration(float(s))
    except ValueError:
        pass
    pos, total = 0, 0.0
    for m in _DURATION_RE.finditer(s):
        ensure_bool(m.start() == pos, f"Bad duration: {value!r}", ConfigurationError)
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    ensure_bool(pos == len(s) and pos > 0, f"Bad duration: {value!r}", ConfigurationError)
    return total


# =========================
# Image & file helpers
# =========================
def load_target_image(img_path: str, output_size: Optional[Tuple[int, int]] = None) -> TargetImage:
    """
    Read an image with OpenCV and return its RGBA pixels.

    Args:
        img_path: Path of any format OpenCV decodes (JPG, PNG, ...).
        output_size: Optional (width, height) to resize to before annealing.

    Returns:
        TargetImage with the file stem as name.

    Raises:
        OSError: The file is missing or could not be decoded.
    """
    announce("LOAD_IMAGE", {"img_path": img_path, "output_size": output_size})
    img = cv2.imread(img_path, cv2.IMREAD_UNCHANGED)
    ensure_bool(img is not None, f"Image loading failed for path: {img_path}", OSError)
    if img.dtype != np.uint8:
        # 16-bit PNG/TIFF: keep the high byte
        img = (img >> 8).astype(np.uint8) if img.dtype == np.uint16 else img.astype(np.uint8)

    if output_size is not None:
        width, height = int(output_size[0]), int(output_size[1])
        ensure_bool(width > 0 and height > 0, f"output_size must be positive, got {output_size}", ConfigurationError)
        img = cv2.resize(img, (width, height), interpolation=cv2.INTER_AREA)

    channels = 1 if img.ndim == 2 else img.shape[2]
    ensure_bool(channels in TO_RGBA, f"Unsupported channel count {channels} in {img_path}", OSError)
    rgba = cv2.cvtColor(img, TO_RGBA[channels])
    h, w = rgba.shape[:2]
    name = os.path.splitext(os.path.basename(img_path))[0]
    print(f"[OK] Image loaded: {name} ({w}x{h}).")
    return TargetImage(name=name, pixels=np.ascontiguousarray(rgba).reshape(-1), width=w, height=h)

def stat_file_path(outdir: str, image_name: str, num_seeds: int) -> str:
    return os.path.join(outdir, f"{image_name}_{num_seeds}-seeds.csv")

def snapshot_path(outdir: str, image_name: str, num_seeds: int,
                  movement_reduction_factor: int, elapsed_seconds: float) -> str:
    return os.path.join(
        outdir,
        f"{image_name}_{num_seeds}-seeds_{movement_reduction_factor}-movreduction_{int(elapsed_seconds)}.png",
    )

def write_snapshot(path: str, image: np.ndarray) -> str:
    """Encode a BGRA snapshot as PNG. Raises OSError when OpenCV cannot write it."""
    announce("SAVE_SNAPSHOT", {"path": path, "size": (image.shape[1], image.shape[0])})
    ok = cv2.imwrite(path, image)
    ensure_bool(ok, f"Failed to save snapshot image: {path}", OSError)
    return path


# =========================
# Frame driver
# =========================
class FrameDriver:
    """
    Calls the annealing once per frame, owns pause/resume and the stop condition.

    Args:
        annealing: Driver exposing ``iterate()``, ``to_pixels()`` and ``get_snapshot()``.
        simulation_duration: Seconds after which :meth:`update` raises
            :class:`SimulationCompleted`.
        snapshots_interval: Seconds between two snapshots.
        snapshot_writer: ``f(image, elapsed_seconds) -> path``; None disables snapshots.
        clock: Monotonic time source in seconds.
    """

    def __init__(self, annealing, simulation_duration: float, snapshots_interval: float,
                 snapshot_writer: Optional[Callable[[np.ndarray, float], str]] = None,
                 clock=time.monotonic, sleep=time.sleep):
        self.annealing = annealing
        self.simulation_duration = float(simulation_duration)
        self.snapshots_interval = float(snapshots_interval)
        self.snapshot_writer = snapshot_writer
        self.clock = clock
        self.sleep = sleep

        self.running = True
        self.frames = 0
        self.snapshots: List[str] = []
        self.simulation_start = self.clock()
        self.last_snapshot = self.simulation_start

    def elapsed(self) -> float:
        return self.clock() - self.simulation_start

    def pause(self):
        self.running = False

    def resume(self):
        self.running = True

    def toggle_pause(self):
        self.running = not self.running

    def update(self) -> Optional[str]:
        """
        Compute one frame.

        Returns:
            The iteration outcome, or None while paused.

        Raises:
            SimulationCompleted: The simulation duration has elapsed.
        """
        if self.elapsed() > self.simulation_duration:
            raise SimulationCompleted(f"Simulation completed after {self.elapsed():.1f}s")

        if not self.running:
            return None

        self.save_snapshot()
        self.frames += 1
        return self.annealing.iterate()

    def save_snapshot(self, force: bool = False) -> Optional[str]:
        if self.snapshot_writer is None:
            return None
        now = self.clock()
        if not force and not (now - self.last_snapshot > self.snapshots_interval):
            return None
        path = self.snapshot_writer(self.annealing.get_snapshot(), now - self.simulation_start)
        self.snapshots.append(path)
        self.last_snapshot = now
        return path

    def run(self, max_frames: Optional[int] = None, show: bool = False,
            window_title: str = "Voronoi Simulated Annealing") -> str:
        """
        Loop :meth:`update` until the duration elapses, ``max_frames`` frames
        were computed, or the user quits the live window.

        Returns:
            One of ``STOP_DURATION``, ``STOP_MAX_FRAMES``, ``STOP_USER``.
        """
        if show:
            cv2.namedWindow(window_title, cv2.WINDOW_AUTOSIZE)
        try:
            while True:
                if max_frames is not None and self.frames >= max_frames:
                    return STOP_MAX_FRAMES
                try:
                    self.update()
                except SimulationCompleted as e:
                    print(f"[OK] {e}")
                    return STOP_DURATION

                if show:
                    key = self._draw(window_title)
                    if key == KEY_PAUSE:
                        self.toggle_pause()
                        print("[INFO] Paused." if not self.running else "[INFO] Resumed.")
                    elif key in KEYS_QUIT:
                        return STOP_USER
                elif not self.running:
                    self.sleep(PAUSE_POLL_SECONDS)
        finally:
            if show:
                cv2.destroyWindow(window_title)

    def _draw(self, window_title: str) -> int:
        w, h = self.annealing.engine.width, self.annealing.engine.height
        rgba = np.frombuffer(self.annealing.to_pixels(mark_seeds=True), dtype=np.uint8).reshape(h, w, 4)
        cv2.imshow(window_title, cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGR))
        return cv2.waitKey(1) & 0xFF


# =========================
# Configuration
# =========================
def load_config(path: Optional[str]) -> Dict[str, Any]:
    """Read a YAML config file. Unknown keys are reported and ignored."""
    if not path:
        return {}
    with open(path, "r") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to read config: {e}") from e
    ensure_bool(isinstance(cfg, dict), f"Config file must contain a mapping: {path}", ConfigurationError)
    for key in sorted(set(cfg) - CONFIG_KEYS):
        print(f"[WARN] Ignoring unknown config key: {key}")
    return {k: v for k, v in cfg.items() if k in CONFIG_KEYS}

def resolve_settings(args: argparse.Namespace) -> Dict[str, Any]:
    """Merge defaults, YAML config and command-line flags (flags win)."""
    cfg = load_config(getattr(args, "config", None))

    def pick(key, flag_value, default):
        if flag_value is not None:
            return flag_value
        return cfg.get(key, default)

    def convert(key, value, kind):
        if value is None:
            return None
        try:
            return kind(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value for {key}: {value!r}") from e

    output_size = pick("output_size", args.output_size, None)
    if output_size is not None:
        ensure_bool(isinstance(output_size, (list, tuple)) and len(output_size) == 2,
                    "output_size must be (width, height).", ConfigurationError)
        output_size = (convert("output_size", output_size[0], int),
                       convert("output_size", output_size[1], int))

    show = cfg.get("show", False)
    ensure_bool(isinstance(show, bool), f"Invalid value for show: {show!r} (expected true/false)",
                ConfigurationError)

    settings = {
        "target_image": convert("target_image", pick("target_image", args.target_image, DEFAULT_TARGET_IMAGE), str),
        "num_seeds": convert("num_seeds", pick("num_seeds", args.seeds_number, DEFAULT_NUM_SEEDS), int),
        "simulation_duration": parse_duration(pick("simulation_duration", args.simulation_duration,
                                                   DEFAULT_SIMULATION_DURATION)),
        "snapshots_interval": parse_duration(pick("snapshots_interval", args.snapshots_interval,
                                                  DEFAULT_SNAPSHOTS_INTERVAL)),
        "movement_reduction_factor": convert("movement_reduction_factor",
                                             pick("movement_reduction_factor", args.movement_reduction_factor,
                                                  DEFAULT_MOVEMENT_REDUCTION_FACTOR), int),
        "percent_threshold": convert("percent_threshold",
                                     pick("percent_threshold", args.percent_threshold,
                                          DEFAULT_PERCENT_THRESHOLD), float),
        "random_seed": convert("random_seed", pick("random_seed", args.seed, None), int),
        "output_size": output_size,
        "outdir": convert("outdir", pick("outdir", args.outdir, DEFAULT_OUTDIR), str),
        "show": args.show or show,
        "max_iterations": convert("max_iterations", pick("max_iterations", args.max_iterations, None), int),
    }
    return settings


# =========================
# Main pipeline
# =========================
def run_simulated_annealing(settings: Dict[str, Any], clock=time.monotonic) -> Dict[str, Any]:
    """
    Build the engine, the annealing driver and the frame driver, and run them.

    Returns:
        JSON-friendly summary of the run.

    Raises:
        ConfigurationError: Invalid sizes or parameters.
        OSError: Image, CSV or snapshot I/O failed.
    """
    target = load_target_image(settings["target_image"], settings["output_size"])
    num_seeds = settings["num_seeds"]
    mov = settings["movement_reduction_factor"]
    outdir = settings["outdir"]
    os.makedirs(outdir, exist_ok=True)

    # one generator seeds both components so a fixed random_seed reproduces the run
    root_rng = np.random.default_rng(settings["random_seed"])
    engine_rng, annealing_rng = root_rng.spawn(2)

    announce("BUILD_ENGINE", {"size": (target.width, target.height), "num_seeds": num_seeds,
                              "movement_reduction_factor": mov})
    engine = VoronoiEngine(target.width, target.height, num_seeds, mov, rng=engine_rng)

    csv_path = stat_file_path(outdir, target.name, num_seeds)
    with open(csv_path, "w", newline="") as stat_file:
        annealing = SimulatedAnnealing(
            engine, target.pixels, stat_file,
            percent_threshold=settings["percent_threshold"],
            rng=annealing_rng, clock=clock,
        )

        def snapshot_writer(image, elapsed_seconds):
            return write_snapshot(snapshot_path(outdir, target.name, num_seeds, mov, elapsed_seconds), image)

        driver = FrameDriver(annealing, settings["simulation_duration"], settings["snapshots_interval"],
                             snapshot_writer=snapshot_writer, clock=clock)
        announce("RUN", {"duration_s": settings["simulation_duration"],
                         "snapshots_interval_s": settings["snapshots_interval"],
                         "max_iterations": settings["max_iterations"], "show": settings["show"]})
        reason = driver.run(max_frames=settings["max_iterations"], show=settings["show"],
                            window_title=WINDOW_TITLE.format(num_seeds))
        final_snapshot = driver.save_snapshot(force=True)

    print(f"[OK] Progress log saved: {csv_path}")
    stats = annealing.stats()
    return {
        "target_image": settings["target_image"],
        "image_size": [target.width, target.height],
        "num_seeds": num_seeds,
        "stop_reason": reason,
        "csv_log": csv_path,
        "snapshots": driver.snapshots,
        "final_snapshot": final_snapshot,
        **stats,
    }


# =========================
# CLI
# =========================
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="voronoi-annealing",
        description="Simulated Annealing approximation of an image using Voronoi diagrams.",
    )
    sub = p.add_subparsers(dest="command")
    run = sub.add_parser("run", aliases=["r"], help="Runs the simulated annealing.")
    run.add_argument("--config", help="Path to YAML config file (e.g., config.yaml).")
    run.add_argument("-i", "--targetImage", dest="target_image",
                     help="Path to the input image FILE used as annealing target.")
    run.add_argument("-n", "--seedsNumber", dest="seeds_number", type=int,
                     help="Number of seeds (cells) used in the voronoi diagram.")
    run.add_argument("-d", "--simulationDuration", dest="simulation_duration",
                     help="Duration of the simulation (e.g. 3h, 45m, 90s).")
    run.add_argument("-s", "--snapshotsInterval", dest="snapshots_interval",
                     help="Time between two PNG snapshots (e.g. 1m).")
    run.add_argument("-m", "--movementReduction", dest="movement_reduction_factor", type=int,
                     help="Divisor of the maximum seed jump per perturbation.")
    run.add_argument("-p", "--percentThreshold", dest="percent_threshold", type=float,
                     help="Drift above the best temperature (percent) that triggers a rollback.")
    run.add_argument("--seed", type=int, help="Random seed for a reproducible run.")
    run.add_argument("--output-size", dest="output_size", type=int, nargs=2, metavar=("W", "H"),
                     help="Resize the target image before annealing.")
    run.add_argument("--outdir", help="Directory for the CSV log and the snapshots.")
    run.add_argument("--max-iterations", dest="max_iterations", type=int,
                     help="Stop after this many frames even if time is left.")
    run.add_argument("--show", action="store_true", help="Show the diagram live (SPACE pauses, q quits).")
    run.add_argument("--pretty", action="store_true", help="Pretty-print JSON output.")
    return p

def main(argv: Optional[List[str]] = None) -> int:
    """
    Entry point for the command-line interface.

    Parses arguments, merges them with the optional YAML config, runs the
    annealing and prints a JSON summary (or ``{"error": ...}``) to stdout.

    Returns:
        Process exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    try:
        settings = resolve_settings(args)
        result = run_simulated_annealing(settings)
    except (ConfigurationError, OSError) as e:
        print(json.dumps({"error": str(e)}))
        return 1

    print(json.dumps(result, indent=2 if args.pretty else None))
    return 0


if __name__ == "__main__":
    sys.exit(main())
