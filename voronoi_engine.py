"""
voronoi_engine.py

Incremental Voronoi tessellation on a pixel grid.

Every seed grows outwards one diamond-shaped layer per round. A pixel
reached by a ring is claimed when no strictly nearer seed already owns it,
so the grid converges to the nearest-seed assignment without comparing every
pixel with every seed. Squared distances come from a table that is computed
once per engine.

Typical usage:
    engine = VoronoiEngine(width=200, height=150, num_seeds=50,
                           movement_reduction_factor=4, random_seed=7)
    grid = engine.tessellate()
    rgba = engine.to_pixels(grid)

Ties: a pixel equidistant from several seeds goes to the seed whose ring
reaches it last within the round (store order). This is order-dependent and
kept on purpose so runs are reproducible.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Tuple, Dict, Any, Optional, Sequence
import numpy as np

# =========================
# Configurable constants
# =========================
SEED_COLOR = (0, 0, 0, 255)          # initial color of every seed (opaque black)
UNASSIGNED_PIXEL = (0, 0, 0, 0)      # to_pixels() value for unclaimed cells
UNASSIGNED_IMAGE = (0, 0, 0, 255)    # to_image() value for unclaimed cells
CHANNEL_MAX = 255

# Distance table side = DISTANCE_WIDTH_MULT * width + height
DISTANCE_WIDTH_MULT = 3

# Perturbation modes, drawn uniformly
PERTURB_POSITION = 0
PERTURB_COLOR = 1
PERTURB_BOTH = 2


# =========================
# Errors & utility helpers
# =========================
class ConfigurationError(ValueError):
    """Raised when an engine or driver is built with an unusable configuration."""


def announce(step: str, inputs: Dict[str, Any]):
    """
    Log a structured event to stdout before a significant call.
    """
    print(f"[STEP] {step} | inputs: " + ", ".join(f"{k}={v}" for k, v in inputs.items()))

def ensure_bool(cond: bool, msg: str, exc: type = RuntimeError):
    if not cond:
        raise exc(msg)


# =========================
# Data model
# =========================
@dataclass(frozen=True)
class Seed:
    """A colored point of the diagram. ``color`` is an (R, G, B, A) tuple."""
    x: int
    y: int
    color: Tuple[int, int, int, int] = SEED_COLOR


class DistanceTable:
    """Squared distances ``dx*dx + dy*dy`` for ``0 <= dx, dy < bound``."""

    def __init__(self, bound: int):
        ensure_bool(bound > 0, f"Distance table bound must be positive, got {bound}.", ConfigurationError)
        self.bound = int(bound)
        axis = np.arange(self.bound, dtype=np.int64)
        self.table = axis[:, None] * axis[:, None] + axis[None, :] * axis[None, :]

    def squared_distance(self, dx: int, dy: int) -> int:
        return int(self.table[abs(dx), abs(dy)])

    def lookup(self, dxs: np.ndarray, dys: np.ndarray) -> np.ndarray:
        """Vectorized lookup over arrays of offsets."""
        return self.table[np.abs(dxs), np.abs(dys)]


class PixelGrid:
    """
    Pixel-assignment grid, indexed ``[y, x]``.

    ``assigned`` is the per-cell tag. ``distance`` and ``owner`` are only
    meaningful where ``assigned`` is True.
    """

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self.assigned = np.zeros((height, width), dtype=bool)
        self.distance = np.zeros((height, width), dtype=np.int64)
        self.owner = np.zeros((height, width), dtype=np.int64)
        self.color = np.zeros((height, width, 4), dtype=np.uint8)

    def cell(self, x: int, y: int) -> Optional[Dict[str, Any]]:
        """Return ``{'distance', 'owner', 'color'}`` for a claimed cell, None otherwise."""
        if not self.assigned[y, x]:
            return None
        return {
            "distance": int(self.distance[y, x]),
            "owner": int(self.owner[y, x]),
            "color": tuple(int(v) for v in self.color[y, x]),
        }

    def is_complete(self) -> bool:
        return bool(self.assigned.all())


# =========================
# Ring geometry
# =========================
def ring_offsets(radius: int) -> List[Tuple[int, int]]:
    """
    Offsets of the diamond layer at ``radius`` (all (dx, dy) with |dx|+|dy| == radius).

    Walks one octant from (radius, 0) towards the diagonal and reflects each
    step into the 8 symmetric positions. Points on the axes and on the
    diagonal appear more than once; order is significant for tie-breaking.
    """
    offsets: List[Tuple[int, int]] = []
    dx, dy = radius, 0
    while dx >= dy:
        offsets.extend([
            (dx, dy), (dx, -dy), (-dx, dy), (-dx, -dy),
            (dy, dx), (dy, -dx), (-dy, dx), (-dy, -dx),
        ])
        dx -= 1
        dy += 1
    return offsets


# =========================
# Growth engine
# =========================
class VoronoiEngine:
    """
    Seed store plus the wavefront tessellation that renders it.

    Args:
        width: Grid width in pixels.
        height: Grid height in pixels.
        num_seeds: Number of seeds, fixed for the engine lifetime.
        movement_reduction_factor: Divides the maximum position jump of a
            perturbation (larger -> smaller moves).
        rng: Optional ``numpy.random.Generator``; built from ``random_seed``
            when omitted.
        random_seed: Seed for the generator created when ``rng`` is None.
    """

    def __init__(self, width: int, height: int, num_seeds: int,
                 movement_reduction_factor: int = 4,
                 rng: Optional[np.random.Generator] = None,
                 random_seed: Optional[int] = None):
        ensure_bool(width > 0 and height > 0,
                    f"Canvas size must be positive, got {width}x{height}.", ConfigurationError)
        ensure_bool(num_seeds > 0, f"Number of seeds must be positive, got {num_seeds}.", ConfigurationError)
        ensure_bool(num_seeds <= width * height,
                    "Number of seeds cannot be more than the pixels in the canvas "
                    f"({num_seeds} > {width * height}).", ConfigurationError)
        ensure_bool(movement_reduction_factor > 0,
                    f"movement_reduction_factor must be positive, got {movement_reduction_factor}.",
                    ConfigurationError)

        self.width = int(width)
        self.height = int(height)
        self.num_seeds = int(num_seeds)
        self.movement_reduction_factor = int(movement_reduction_factor)
        self.rng = rng if rng is not None else np.random.default_rng(random_seed)

        self.distances = DistanceTable(DISTANCE_WIDTH_MULT * self.width + self.height)
        self.seeds: List[Seed] = []
        self._rings: Dict[int, Tuple[np.ndarray, np.ndarray, np.ndarray]] = {}
        self.init_seeds()

    # ---- seed store ----
    def init_seeds(self):
        """Place every seed uniformly at random, colored opaque black."""
        xs = self.rng.integers(0, self.width, size=self.num_seeds)
        ys = self.rng.integers(0, self.height, size=self.num_seeds)
        self.seeds = [Seed(int(x), int(y), SEED_COLOR) for x, y in zip(xs, ys)]

    def get_seeds(self) -> List[Seed]:
        return list(self.seeds)

    def with_seeds(self, seeds: Sequence[Seed]):
        ensure_bool(len(seeds) == self.num_seeds,
                    f"Expected {self.num_seeds} seeds, got {len(seeds)}.", ConfigurationError)
        self._check_bounds(seeds)
        self.seeds = list(seeds)

    def _check_bounds(self, seeds: Sequence[Seed]):
        for i, s in enumerate(seeds):
            ensure_bool(0 <= s.x < self.width and 0 <= s.y < self.height,
                        f"Seed {i} at ({s.x}, {s.y}) is outside the {self.width}x{self.height} canvas.",
                        ConfigurationError)

    # ---- tessellation ----
    def _ring(self, radius: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        ring = self._rings.get(radius)
        if ring is None:
            offs = np.array(ring_offsets(radius), dtype=np.int64)
            dxs, dys = offs[:, 0], offs[:, 1]
            ring = (dxs, dys, self.distances.lookup(dxs, dys))
            self._rings[radius] = ring
        return ring

    def tessellate(self, seeds: Optional[Sequence[Seed]] = None) -> PixelGrid:
        """
        Compute the nearest-seed assignment of every pixel.

        Each round widens the radius by one and lets every active seed try to
        claim its ring. A seed whose ring claims nothing drops out; the pass
        ends when no seed is active.
        """
        if seeds is None:
            seeds = self.seeds
        self._check_bounds(seeds)

        w, h = self.width, self.height
        grid = PixelGrid(w, h)
        colors = [np.array(s.color, dtype=np.uint8) for s in seeds]

        for idx, s in enumerate(seeds):
            grid.assigned[s.y, s.x] = True
            grid.distance[s.y, s.x] = 0
            grid.owner[s.y, s.x] = idx
            grid.color[s.y, s.x] = colors[idx]

        active = list(range(len(seeds)))
        radius = 0
        while active:
            radius += 1
            dxs, dys, ring_dist = self._ring(radius)
            still_active = []

            for idx in active:
                s = seeds[idx]
                xs = s.x + dxs
                ys = s.y + dys
                inside = (xs >= 0) & (xs < w) & (ys >= 0) & (ys < h)
                if not inside.any():
                    continue
                xs, ys, cand = xs[inside], ys[inside], ring_dist[inside]

                # claim unless the pixel already holds a strictly smaller distance
                claim = ~grid.assigned[ys, xs] | ~(grid.distance[ys, xs] < cand)
                if not claim.any():
                    continue
                xs, ys, cand = xs[claim], ys[claim], cand[claim]
                grid.assigned[ys, xs] = True
                grid.distance[ys, xs] = cand
                grid.owner[ys, xs] = idx
                grid.color[ys, xs] = colors[idx]
                still_active.append(idx)

            active = still_active

        return grid

    # ---- perturbation ----
    def perturbate(self, seed_index: int, temperature: float = 1.0):
        """
        Replace one seed with a randomly moved and/or recolored copy.

        Position, color, or both are perturbed with equal probability. Does
        not re-tessellate. ``temperature`` is accepted for symmetry with the
        annealing driver; the jump sizes depend only on the canvas size, the
        movement reduction factor and the channel range.
        """
        seed = self.seeds[seed_index]
        choice = int(self.rng.integers(3))

        x, y, color = seed.x, seed.y, seed.color
        if choice in (PERTURB_POSITION, PERTURB_BOTH):
            x = self._perturbate_coordinate(x, self.width)
            y = self._perturbate_coordinate(y, self.height)
        if choice in (PERTURB_COLOR, PERTURB_BOTH):
            color = (
                self._perturbate_tint(color[0]),
                self._perturbate_tint(color[1]),
                self._perturbate_tint(color[2]),
                CHANNEL_MAX,
            )

        self.seeds[seed_index] = Seed(x, y, color)

    def _sign(self) -> int:
        return int(self.rng.integers(2)) * 2 - 1

    def _perturbate_coordinate(self, current: int, extent: int) -> int:
        movement = self.rng.random() * extent / self.movement_reduction_factor
        value = current + int(self._sign() * movement)
        return max(0, min(extent - 1, value))

    def _perturbate_tint(self, current: int) -> int:
        movement = self.rng.random() * CHANNEL_MAX
        value = int(current) + int(self._sign() * movement)
        return max(0, min(CHANNEL_MAX, value))

    # ---- projections ----
    def pixel_array(self, grid: PixelGrid) -> np.ndarray:
        """RGBA array (H x W x 4) of a grid, unclaimed cells transparent black."""
        out = grid.color.copy()
        out[~grid.assigned] = UNASSIGNED_PIXEL
        return out

    def to_pixels(self, grid: PixelGrid, seeds: Optional[Sequence[Seed]] = None) -> bytes:
        """
        Row-major RGBA bytes of ``grid``.

        When ``seeds`` is given each seed's own pixel is painted transparent
        black, which makes the seeds visible in a live window.
        """
        out = self.pixel_array(grid)
        if seeds is not None:
            for s in seeds:
                out[s.y, s.x] = UNASSIGNED_PIXEL
        return out.tobytes()

    def to_image(self, grid: PixelGrid) -> np.ndarray:
        """BGRA snapshot (H x W x 4) for ``cv2.imwrite``; unclaimed cells are opaque black."""
        rgba = grid.color.copy()
        rgba[~grid.assigned] = UNASSIGNED_IMAGE
        return rgba[:, :, [2, 1, 0, 3]]
