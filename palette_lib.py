"""
Adaptive palette construction: color histogram, 3D prefix sums, median-cut
box splitting and the ranked nearest-color lookup table.

Color space is quantized to 5 bits per channel (32 levels) throughout, so
every table in this module has 32 x 32 x 32 cells indexed [r, g, b].
"""

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np
from scipy.spatial import KDTree

from parallel import SerialExecutor, chunked, split_range

__all__ = [
    'HIST_LEVELS',
    'LUT_SENTINEL',
    'srgb_to_linear',
    'quantize_to_cells',
    'downsample_2x',
    'build_histogram',
    'PrefixSum3D',
    'ColorBox',
    'MedianCutSplitter',
    'box_colors',
    'PaletteLUT',
    'build_adaptive_palette',
]

HIST_LEVELS = 32
HIST_MAX = HIST_LEVELS - 1
LUT_SENTINEL = -1

# G over R over B on equal ranges.
_AXIS_PREFERENCE = (1, 0, 2)

logger = logging.getLogger(__name__)


# -------------------- Transfer Functions --------------------

def srgb_to_linear(c: np.ndarray) -> np.ndarray:
    """Inverse sRGB transfer function on values in [0, 1]."""
    c = np.asarray(c, dtype=np.float32)
    low = (c <= 0.04045)
    out = np.empty_like(c, dtype=np.float32)
    out[low] = c[low] / 12.92
    out[~low] = ((c[~low] + 0.055) / 1.055)**2.4
    return out


def _rgb_only(pixels: np.ndarray) -> np.ndarray:
    if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
        raise ValueError(f"Expected an (H, W, 3|4) pixel grid, got shape {pixels.shape}")
    return pixels[..., :3]


def quantize_to_cells(rgb: np.ndarray) -> np.ndarray:
    """
    Map 8-bit channels to 5-bit histogram coordinates: round(c * 31), clamped.

    Args:
        rgb: uint8 array of shape (..., 3)

    Returns:
        int32 array of the same shape holding values in [0, 31]
    """
    scaled = rgb.astype(np.float32) * (HIST_MAX / 255.0)
    return np.clip(np.floor(scaled + 0.5), 0, HIST_MAX).astype(np.int32)


def downsample_2x(pixels: np.ndarray) -> np.ndarray:
    """
    Box-filter each 2x2 block into one pixel. An odd trailing row or column
    is dropped; grids smaller than 2x2 are returned unchanged.
    """
    h, w = pixels.shape[:2]
    if h < 2 or w < 2:
        return pixels
    h2, w2 = h - h % 2, w - w % 2
    blocks = pixels[:h2, :w2].astype(np.uint16)
    summed = (blocks[0::2, 0::2] + blocks[1::2, 0::2] +
              blocks[0::2, 1::2] + blocks[1::2, 1::2])
    return ((summed + 2) // 4).astype(np.uint8)


# -------------------- Histogram --------------------

def _saturation_weights(rgb: np.ndarray) -> np.ndarray:
    norm = rgb.astype(np.float32) / 255.0
    mx = norm.max(axis=-1)
    mn = norm.min(axis=-1)
    sat = np.where(mx > 1e-6, (mx - mn) / np.maximum(mx, 1e-6), 0.0)
    return np.floor(1.0 + 3.0 * sat)


def _partial_histogram(rgb: np.ndarray, saturation_boost: bool) -> np.ndarray:
    cells = quantize_to_cells(rgb).reshape(-1, 3)
    flat = (cells[:, 0] * HIST_LEVELS + cells[:, 1]) * HIST_LEVELS + cells[:, 2]
    if saturation_boost:
        weights = _saturation_weights(rgb).reshape(-1)
        counts = np.bincount(flat, weights=weights, minlength=HIST_LEVELS**3)
        return counts.astype(np.int64)
    return np.bincount(flat, minlength=HIST_LEVELS**3).astype(np.int64)


def build_histogram(pixels: np.ndarray,
                    saturation_boost: bool = False,
                    executor=None) -> np.ndarray:
    """
    Bin a pixel grid into a 32x32x32 color histogram.

    Rows are partitioned across the executor's workers; each worker fills a
    private partial histogram and the partials are summed afterwards, so the
    result does not depend on scheduling order.

    Args:
        pixels: uint8 grid of shape (H, W, 3) or (H, W, 4); alpha is ignored
        saturation_boost: Weight each pixel by floor(1 + 3 * HSV saturation)
        executor: Parallel-for strategy, serial when omitted

    Returns:
        int64 array of shape (32, 32, 32) indexed [r, g, b]
    """
    executor = executor or SerialExecutor()
    rgb = _rgb_only(pixels)
    spans = split_range(rgb.shape[0], executor.workers)
    partials = executor.map(
        lambda span: _partial_histogram(rgb[span[0]:span[1]], saturation_boost),
        spans)
    total = np.zeros(HIST_LEVELS**3, dtype=np.int64)
    for part in partials:
        total += part
    return total.reshape(HIST_LEVELS, HIST_LEVELS, HIST_LEVELS)


# -------------------- Prefix Sums --------------------

class PrefixSum3D:
    """
    Integral image over a 3D histogram: cell (r, g, b) holds the sum of every
    histogram cell with coordinates <= (r, g, b) component-wise.
    """

    def __init__(self, table: np.ndarray):
        self.table = table
        self.table.setflags(write=False)

    @classmethod
    def build(cls, histogram: np.ndarray, executor=None) -> "PrefixSum3D":
        """
        Three cumulative-sum passes, R then G then B. Each pass is split across
        its perpendicular lines; the next pass starts only after ``map`` returns.
        """
        executor = executor or SerialExecutor()
        table = np.array(histogram, dtype=np.int64, copy=True)
        n = table.shape[0]

        def scan(axis: int):
            # Slice along an axis other than the scan axis so every task owns
            # whole lines and writes a disjoint block.
            other = 1 if axis == 0 else 0

            def run(span):
                index = [slice(None)] * 3
                index[other] = slice(span[0], span[1])
                index = tuple(index)
                table[index] = np.cumsum(table[index], axis=axis)
            executor.map(run, split_range(n, executor.workers))

        for axis in (0, 1, 2):
            scan(axis)
        return cls(table)

    @property
    def total(self) -> int:
        return int(self.table[-1, -1, -1])

    def _at(self, r: int, g: int, b: int) -> int:
        if r < 0 or g < 0 or b < 0:
            return 0
        return int(self.table[r, g, b])

    def box_sum(self, lo: Sequence[int], hi: Sequence[int]) -> int:
        """Sum of histogram cells in the inclusive box [lo, hi]."""
        r0, g0, b0 = lo[0] - 1, lo[1] - 1, lo[2] - 1
        r1, g1, b1 = hi
        if r1 <= r0 or g1 <= g0 or b1 <= b0:
            return 0
        return (self._at(r1, g1, b1)
                - self._at(r0, g1, b1) - self._at(r1, g0, b1) - self._at(r1, g1, b0)
                + self._at(r0, g0, b1) + self._at(r0, g1, b0) + self._at(r1, g0, b0)
                - self._at(r0, g0, b0))


# -------------------- Median Cut --------------------

@dataclass(frozen=True)
class ColorBox:
    """Axis-aligned inclusive region of quantized color space."""

    min_coord: Tuple[int, int, int]
    max_coord: Tuple[int, int, int]
    count: int

    def axis_range(self, axis: int) -> int:
        return self.max_coord[axis] - self.min_coord[axis]

    def clipped(self, axis: int, lo: int, hi: int) -> Tuple[Tuple[int, int, int], Tuple[int, int, int]]:
        """Bounds of this box with ``axis`` narrowed to [lo, hi]."""
        mn = list(self.min_coord)
        mx = list(self.max_coord)
        mn[axis], mx[axis] = lo, hi
        return tuple(mn), tuple(mx)

    @property
    def midpoint(self) -> Tuple[float, float, float]:
        return tuple((a + b) / 2.0 for a, b in zip(self.min_coord, self.max_coord))


class MedianCutSplitter:
    """
    Level-by-level median cut over a prefix-summed histogram.

    Level L holds 2**L boxes. Boxes of one level split independently (and in
    parallel); a level finishes completely before the next one starts.
    """

    def __init__(self, histogram: np.ndarray, prefix: PrefixSum3D, executor=None):
        self.histogram = histogram
        self.prefix = prefix
        self.executor = executor or SerialExecutor()
        # (parent, first child, second child) for every split performed
        self.history: List[Tuple[ColorBox, ColorBox, ColorBox]] = []

    def initial_box(self) -> ColorBox:
        """Box spanning the occupied histogram range, or the whole cube if empty."""
        occupied = np.nonzero(self.histogram)
        if len(occupied[0]) == 0:
            lo, hi = (0, 0, 0), (HIST_MAX, HIST_MAX, HIST_MAX)
        else:
            lo = tuple(int(axis.min()) for axis in occupied)
            hi = tuple(int(axis.max()) for axis in occupied)
        return ColorBox(lo, hi, self.prefix.box_sum(lo, hi))

    def choose_axis(self, box: ColorBox) -> int:
        return max(_AXIS_PREFERENCE, key=box.axis_range)

    def split_box(self, box: ColorBox) -> Tuple[ColorBox, ColorBox]:
        axis = self.choose_axis(box)
        if box.axis_range(axis) == 0:
            # Single cell along every axis: clone.
            return box, box

        axis_min, axis_max = box.min_coord[axis], box.max_coord[axis]
        half = box.count / 2.0
        lo, hi = axis_min + 1, axis_max
        while lo < hi:
            mid = (lo + hi) // 2
            below = self.prefix.box_sum(*box.clipped(axis, axis_min, mid))
            if below >= half:
                hi = mid
            else:
                lo = mid + 1
        cut = min(max(lo, axis_min + 1), axis_max)

        first_lo, first_hi = box.clipped(axis, axis_min, cut - 1)
        second_lo, second_hi = box.clipped(axis, cut, axis_max)
        first = ColorBox(first_lo, first_hi, self.prefix.box_sum(first_lo, first_hi))
        second = ColorBox(second_lo, second_hi, self.prefix.box_sum(second_lo, second_hi))
        return first, second

    def split(self, palette_size: int) -> List[ColorBox]:
        """
        Split until ``palette_size`` boxes exist.

        Args:
            palette_size: Power of two in [2, 256]

        Returns:
            Boxes in palette order (children of box i sit at 2i and 2i + 1)
        """
        if palette_size < 2 or palette_size > 256 or palette_size & (palette_size - 1):
            raise ValueError(f"Palette size must be a power of two in [2, 256], got {palette_size}")

        boxes = [self.initial_box()]
        self.history = []
        level = 0
        while len(boxes) < palette_size:
            pairs = self.executor.map(self.split_box, boxes)
            next_boxes = []
            for parent, (first, second) in zip(boxes, pairs):
                self.history.append((parent, first, second))
                next_boxes.extend((first, second))
            boxes = next_boxes
            level += 1
            logger.debug("Median cut level %d: %d boxes", level, len(boxes))
        return boxes


def _box_color(histogram: np.ndarray, box: ColorBox) -> Tuple[int, int, int]:
    (r0, g0, b0), (r1, g1, b1) = box.min_coord, box.max_coord
    sub = histogram[r0:r1 + 1, g0:g1 + 1, b0:b1 + 1].astype(np.float64)
    total = sub.sum()
    if total <= 0:
        centre = np.array(box.midpoint)
    else:
        centre = np.array([
            (sub.sum(axis=(1, 2)) * np.arange(r0, r1 + 1)).sum(),
            (sub.sum(axis=(0, 2)) * np.arange(g0, g1 + 1)).sum(),
            (sub.sum(axis=(0, 1)) * np.arange(b0, b1 + 1)).sum(),
        ]) / total
    rgb = np.clip(np.floor(centre * (255.0 / HIST_MAX) + 0.5), 0, 255)
    return tuple(int(c) for c in rgb)


def box_colors(histogram: np.ndarray, boxes: Sequence[ColorBox], executor=None) -> np.ndarray:
    """
    Representative color per box: weighted centroid of the box's histogram
    cells, or its geometric midpoint when the box is empty.

    Returns:
        uint8 array of shape (len(boxes), 3)
    """
    executor = executor or SerialExecutor()
    groups = chunked(list(boxes), executor.workers)
    colors = executor.map(lambda group: [_box_color(histogram, b) for b in group], groups)
    return np.array([c for group in colors for c in group], dtype=np.uint8).reshape(-1, 3)


# -------------------- Palette LUT --------------------

def _cell_centres_linear() -> np.ndarray:
    steps = np.arange(HIST_LEVELS, dtype=np.float32) / HIST_MAX
    rr, gg, bb = np.meshgrid(steps, steps, steps, indexing="ij")
    grid = np.stack([rr, gg, bb], axis=-1).reshape(-1, 3)
    return srgb_to_linear(grid)


class PaletteLUT:
    """
    For every quantized color cell, the K palette entries nearest to the cell
    centre in linear light, ranked ascending. Slots beyond the palette length
    hold LUT_SENTINEL.
    """

    def __init__(self, palette: np.ndarray, indices: np.ndarray):
        self.palette = palette
        self.palette_linear = srgb_to_linear(palette.astype(np.float32) / 255.0)
        self.indices = indices
        self.indices.setflags(write=False)

    @property
    def k(self) -> int:
        return self.indices.shape[-1]

    @classmethod
    def build(cls, palette: np.ndarray, k: int = 8, executor=None) -> "PaletteLUT":
        """
        Args:
            palette: uint8 array of shape (N, 3), sRGB
            k: Candidates per cell (8 for the full dither, 2 for the simplified one)
            executor: Parallel-for strategy, serial when omitted

        Returns:
            PaletteLUT whose ``indices`` has shape (32, 32, 32, k)
        """
        if k < 1:
            raise ValueError(f"k must be positive, got {k}")
        palette = np.asarray(palette, dtype=np.uint8).reshape(-1, 3)
        if len(palette) == 0:
            raise ValueError("Cannot build a lookup table for an empty palette")

        executor = executor or SerialExecutor()
        palette_lin = srgb_to_linear(palette.astype(np.float32) / 255.0)
        tree = KDTree(palette_lin)
        kk = min(k, len(palette))
        cells = _cell_centres_linear()

        def query(span):
            _, idx = tree.query(cells[span[0]:span[1]], k=kk)
            return np.asarray(idx).reshape(span[1] - span[0], kk)

        ranked = np.concatenate(executor.map(query, split_range(len(cells), executor.workers)))
        indices = np.full((len(cells), k), LUT_SENTINEL, dtype=np.int16)
        indices[:, :kk] = ranked
        return cls(palette, indices.reshape(HIST_LEVELS, HIST_LEVELS, HIST_LEVELS, k))

    def lookup(self, cells: np.ndarray) -> np.ndarray:
        """Candidate indices for an (..., 3) array of cell coordinates."""
        return self.indices[cells[..., 0], cells[..., 1], cells[..., 2]]


def build_adaptive_palette(pixels: np.ndarray,
                           palette_size: int,
                           saturation_boost: bool = False,
                           downsample: bool = True,
                           executor=None) -> Tuple[np.ndarray, List[ColorBox], np.ndarray]:
    """
    Histogram -> prefix sums -> median cut -> representative colors.

    Returns:
        (palette uint8 (N, 3), final boxes, histogram)
    """
    executor = executor or SerialExecutor()
    source = downsample_2x(pixels) if downsample else pixels
    histogram = build_histogram(source, saturation_boost, executor)
    prefix = PrefixSum3D.build(histogram, executor)
    boxes = MedianCutSplitter(histogram, prefix, executor).split(palette_size)
    palette = box_colors(histogram, boxes, executor)
    return palette, boxes, histogram
