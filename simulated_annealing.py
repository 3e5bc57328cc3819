"""
simulated_annealing.py

Annealing driver for the Voronoi approximation of a target image.

"Temperature" here is the normalized color distance between the current
rendering and the target (0 = pixel-exact match, 1 = every channel maximally
wrong). It is not a schedule that cools over time: higher means a worse fit,
and a worse fit triggers more simultaneous perturbations.

One call to :meth:`SimulatedAnnealing.iterate` perturbs the seeds,
re-tessellates, scores the result and then commits it, rejects it (back to
the previous seeds) or rolls back to the best state seen so far when the
accepted state drifted too far from it.
"""

from __future__ import annotations
import csv, math, time
from typing import Any, Dict, Optional, TextIO
import numpy as np

from voronoi_engine import (
    ConfigurationError, PixelGrid, VoronoiEngine, announce, ensure_bool,
)

# =========================
# Configurable constants
# =========================
DEFAULT_PERCENT_THRESHOLD = 10    # drift allowed above the best temperature (percent)
INITIAL_TEMPERATURE = 1.0
PERTURBATION_DIVISOR = 3          # at t = 1.0 a third of the seeds move
SIGMOID_STEEPNESS = 10
CHANNELS = 4
CHANNEL_MAX = 255

STAT_FIELDS = ["elapsed_seconds", "temperature"]

# Outcomes of iterate()
ITERATION_COMMITTED = "committed"
ITERATION_REJECTED = "rejected"
ITERATION_ROLLED_BACK = "rolled_back"


def sigmoid(z: float) -> float:
    """Logistic curve rescaled to [0, 1) for z >= 0: 2 / (1 + e^-z) - 1."""
    return 2.0 / (1.0 + math.exp(-z)) - 1.0

def compute_temperature(current: Any, target: np.ndarray, max_heat: float) -> float:
    """Sum of absolute channel differences between two RGBA buffers, divided by ``max_heat``."""
    cur = np.frombuffer(current, dtype=np.uint8) if isinstance(current, (bytes, bytearray)) \
        else np.asarray(current, dtype=np.uint8).reshape(-1)
    heat = np.abs(target.astype(np.int64) - cur.astype(np.int64)).sum()
    return float(heat) / max_heat


class SimulatedAnnealing:
    """
    Drives a :class:`VoronoiEngine` towards a target image.

    Args:
        engine: Engine owning the seed store.
        target: Row-major RGBA buffer (bytes or uint8 array) of length
            ``engine.width * engine.height * 4``.
        stat_file: Optional text sink receiving ``elapsed_seconds,temperature``
            rows for every committed iteration. The header is written here.
        percent_threshold: Drift allowed above the best temperature before a
            rollback, in percent of the best temperature.
        rng: Optional ``numpy.random.Generator`` for seed picking and
            acceptance draws; built from ``random_seed`` when omitted.
        clock: Monotonic time source in seconds.
        verbose: Print a progress line per committed iteration.
    """

    def __init__(self, engine: VoronoiEngine, target: Any,
                 stat_file: Optional[TextIO] = None,
                 percent_threshold: float = DEFAULT_PERCENT_THRESHOLD,
                 rng: Optional[np.random.Generator] = None,
                 random_seed: Optional[int] = None,
                 clock=time.monotonic,
                 verbose: bool = True):
        target_arr = np.frombuffer(target, dtype=np.uint8) if isinstance(target, (bytes, bytearray)) \
            else np.asarray(target, dtype=np.uint8).reshape(-1)
        expected = engine.width * engine.height * CHANNELS
        ensure_bool(target_arr.size == expected,
                    f"Target image has {target_arr.size} bytes, expected {expected} "
                    f"({engine.width}x{engine.height} RGBA).", ConfigurationError)
        ensure_bool(percent_threshold > 0,
                    f"percent_threshold must be positive, got {percent_threshold}.", ConfigurationError)

        self.engine = engine
        self.target = target_arr
        self.stat_file = stat_file
        self._stat_writer = csv.writer(stat_file, lineterminator="\n") if stat_file is not None else None
        self.percent_threshold = float(percent_threshold)
        self.rng = rng if rng is not None else np.random.default_rng(random_seed)
        self.clock = clock
        self.verbose = verbose

        # theoretical maximum distance: every channel of every pixel off by 255
        self.max_heat = float(CHANNELS * CHANNEL_MAX * engine.width * engine.height)
        self.temperature = INITIAL_TEMPERATURE
        self.best_temperature = INITIAL_TEMPERATURE

        if verbose:
            announce("INITIAL_TESSELLATION", {"size": (engine.width, engine.height), "seeds": engine.num_seeds})
        self.grid: PixelGrid = engine.tessellate()
        self.best_seeds = engine.get_seeds()
        self.best_grid = self.grid

        self.iterations = 0
        self.commits = 0
        self.rejections = 0
        self.rollbacks = 0

        if self._stat_writer is not None:
            self._stat_writer.writerow(STAT_FIELDS)
        self.starting_time = self.clock()

    # ---- core loop ----
    def perturbation_count(self) -> int:
        n = int(math.floor(self.temperature * self.engine.num_seeds / PERTURBATION_DIVISOR))
        return max(1, n)

    def iterate(self) -> str:
        """
        Run one perturb / tessellate / score / decide step.

        Returns:
            ``ITERATION_COMMITTED``, ``ITERATION_REJECTED`` or
            ``ITERATION_ROLLED_BACK``.

        Raises:
            OSError: The progress sink failed; the run should stop.
        """
        self.iterations += 1
        previous_seeds = self.engine.get_seeds()

        for _ in range(self.perturbation_count()):
            idx = int(self.rng.integers(self.engine.num_seeds))
            self.engine.perturbate(idx, self.temperature)

        grid = self.engine.tessellate()
        new_temperature = self.compute_temperature(grid)

        if not self.is_acceptable(new_temperature):
            self.engine.with_seeds(previous_seeds)
            self.rejections += 1
            return ITERATION_REJECTED

        # accepted but running away from the best solution: restart from it
        if new_temperature - self.best_temperature > self.best_temperature * self.percent_threshold / 100:
            if self.verbose:
                print(f"[WARN] Current temperature exceeded {self.percent_threshold:g} percent threshold, "
                      f"restarting from the best solution so far: {self.best_temperature:.10f}")
            self.engine.with_seeds(self.best_seeds)
            self.grid = self.best_grid
            self.temperature = self.best_temperature
            self.rollbacks += 1
            return ITERATION_ROLLED_BACK

        self.temperature = new_temperature
        self.grid = grid
        self.log_iteration()
        self.commits += 1

        if self.temperature < self.best_temperature:
            self.best_temperature = self.temperature
            self.best_seeds = self.engine.get_seeds()
            self.best_grid = grid

        return ITERATION_COMMITTED

    def compute_temperature(self, grid: Optional[PixelGrid] = None) -> float:
        """Normalized distance of ``grid`` (default: current grid) from the target, in [0, 1]."""
        if grid is None:
            grid = self.grid
        return compute_temperature(self.engine.pixel_array(grid), self.target, self.max_heat)

    def is_acceptable(self, temperature: float) -> bool:
        """
        Always accept an improvement (or a tie). A worse temperature is accepted
        with a probability that shrinks quickly with the relative degradation.
        """
        if temperature <= self.temperature:
            return True
        if self.temperature == 0:
            return False

        draw = self.rng.random()
        perc_diff = (temperature - self.temperature) * 100 / self.temperature
        return draw > sigmoid(SIGMOID_STEEPNESS * perc_diff)

    def elapsed(self) -> float:
        return self.clock() - self.starting_time

    def log_iteration(self):
        elapsed = self.elapsed()
        if self.verbose:
            print(f"Current temperature: {self.temperature:.10f}, time passed: {elapsed:.3f}s")
        if self._stat_writer is not None:
            self._stat_writer.writerow([f"{elapsed:.0f}", f"{self.temperature:.10f}"])

    # ---- outputs ----
    def to_pixels(self, mark_seeds: bool = False) -> bytes:
        """RGBA bytes of the current solution."""
        seeds = self.engine.get_seeds() if mark_seeds else None
        return self.engine.to_pixels(self.grid, seeds)

    def get_snapshot(self) -> np.ndarray:
        """BGRA image of the current solution, ready for ``cv2.imwrite``."""
        return self.engine.to_image(self.grid)

    def stats(self) -> Dict[str, Any]:
        return {
            "iterations": self.iterations,
            "commits": self.commits,
            "rejections": self.rejections,
            "rollbacks": self.rollbacks,
            "temperature": self.temperature,
            "best_temperature": self.best_temperature,
            "elapsed_seconds": self.elapsed(),
        }
