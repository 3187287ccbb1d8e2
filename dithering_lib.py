"""
Ordered-dither quantization of camera frames: threshold matrices, uniform
per-channel quantization, palette-based multi-color dithering and the
FrameQuantizer that runs the whole palette pipeline for one frame.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from palette_lib import (LUT_SENTINEL, ColorBox, PaletteLUT, build_adaptive_palette,
                         quantize_to_cells, srgb_to_linear)
from parallel import SerialExecutor, split_range

__all__ = [
    'DitherType',
    'DitherUtils',
    'CaptureParams',
    'QuantizationError',
    'AllocationFailure',
    'UniformQuantizeStrategy',
    'PaletteDitherStrategy',
    'TwoColorDitherStrategy',
    'QuantizedFrame',
    'WorkingSet',
    'FrameQuantizer',
    'generate_blue_noise',
]

logger = logging.getLogger(__name__)

DEFAULT_DAMPING = 0.9
WEIGHT_EPSILON = 0.01


# -------------------- Enumerations --------------------

class DitherType(Enum):
    BAYER = "bayer"
    BAYER8x8 = "bayer8x8"
    BLUE_NOISE = "blue_noise"

    @property
    def label(self) -> str:
        return {
            DitherType.BAYER: "Bayer",
            DitherType.BAYER8x8: "Bayer 8x8",
            DitherType.BLUE_NOISE: "Blue Noise",
        }[self]


class QuantizationError(Exception):
    """A frame could not be quantized; the caller skips this frame."""


class AllocationFailure(QuantizationError):
    """Intermediate buffers for a frame could not be allocated."""


# -------------------- Threshold Matrices --------------------

def _bayer_matrix(size: int) -> np.ndarray:
    m = np.zeros((1, 1), dtype=np.int32)
    while m.shape[0] < size:
        m = np.block([[4 * m, 4 * m + 2],
                      [4 * m + 3, 4 * m + 1]])
    return (m / float(size * size)).astype(np.float32)


def generate_blue_noise(size: int = 16, seed: int = 42) -> np.ndarray:
    """
    Blue-noise threshold matrix with values i / size**2 in [0, 1).

    Each rank goes to the free cell farthest from every already-ranked cell,
    with distances measured on a torus so the tile repeats seamlessly.
    """
    rng = np.random.RandomState(seed)
    BN = np.zeros((size, size), dtype=np.float32)
    min_dist = np.full((size, size), np.inf, dtype=np.float32)
    taken = np.zeros((size, size), dtype=bool)
    rows, cols = np.indices((size, size))
    # Random tie-breaking without disturbing the distance ranking.
    jitter = rng.random_sample((size, size)).astype(np.float32) * 1e-3
    for i in range(size * size):
        score = np.where(taken, -np.inf, min_dist + jitter)
        br, bc = np.unravel_index(int(np.argmax(score)), score.shape)
        BN[br, bc] = i / float(size * size)
        taken[br, bc] = True
        dr = np.abs(rows - br)
        dc = np.abs(cols - bc)
        dr = np.minimum(dr, size - dr)
        dc = np.minimum(dc, size - dc)
        min_dist = np.minimum(min_dist, (dr**2 + dc**2).astype(np.float32))
    return BN


class DitherUtils:
    """
    Threshold matrices (process-wide, read-only) and helpers for tiling them.
    """

    BAYER8x8 = _bayer_matrix(8)
    BAYER16x16 = _bayer_matrix(16)
    BAYER8x8.setflags(write=False)
    BAYER16x16.setflags(write=False)

    _blue_noise = None
    _blue_noise_lock = threading.Lock()

    @classmethod
    def blue_noise(cls) -> np.ndarray:
        with cls._blue_noise_lock:
            if cls._blue_noise is None:
                bn = generate_blue_noise(16, 42)
                bn.setflags(write=False)
                cls._blue_noise = bn
        return cls._blue_noise

    @staticmethod
    def get_threshold_matrix(dither_type: DitherType) -> np.ndarray:
        if dither_type == DitherType.BAYER:
            return DitherUtils.BAYER16x16
        elif dither_type == DitherType.BAYER8x8:
            return DitherUtils.BAYER8x8
        elif dither_type == DitherType.BLUE_NOISE:
            return DitherUtils.blue_noise()
        else:
            raise ValueError(f"Unsupported dither type: {dither_type}")

    @staticmethod
    def tile(matrix: np.ndarray, h: int, w: int) -> np.ndarray:
        """Threshold per pixel for an h x w grid (matrix tiled modulo its size)."""
        th_h, th_w = matrix.shape
        tiled = np.tile(matrix, ((h + th_h - 1)//th_h, (w + th_w - 1)//th_w))
        return tiled[:h, :w]


# -------------------- Capture Parameters --------------------

@dataclass(frozen=True)
class CaptureParams:
    """Per-capture quantization settings."""

    bits_per_pixel: int = 12
    dither_enabled: bool = True
    dither_type: DitherType = DitherType.BAYER
    adaptive_palette: bool = False
    saturation_boost: bool = False
    linear_dither: bool = False
    lut_candidates: int = 8
    downsample_histogram: bool = True
    damping: float = DEFAULT_DAMPING

    def __post_init__(self):
        if not (3 <= self.bits_per_pixel <= 24):
            raise ValueError(f"bits_per_pixel must be 3-24, got {self.bits_per_pixel}")
        if self.lut_candidates not in (2, 8):
            raise ValueError(f"lut_candidates must be 2 or 8, got {self.lut_candidates}")
        if not isinstance(self.dither_type, DitherType):
            object.__setattr__(self, 'dither_type', DitherType(self.dither_type))
        if not (0.0 <= self.damping <= 1.0):
            raise ValueError(f"damping must be within [0, 1], got {self.damping}")

    @property
    def bits_per_channel(self) -> int:
        return max(1, self.bits_per_pixel // 3)

    @property
    def uses_adaptive_palette(self) -> bool:
        return self.adaptive_palette and self.bits_per_pixel <= 8

    @property
    def palette_size(self) -> int:
        return 2 ** min(self.bits_per_pixel, 8)

    @property
    def dither_label(self) -> str:
        return self.dither_type.label if self.dither_enabled else "Off"

    def tag_text(self) -> str:
        """Free-text description stored in the encoded file's lens-model field."""
        text = f"Smolcam | {self.bits_per_pixel}-bit | {self.dither_label}"
        if self.uses_adaptive_palette:
            text += " | Adaptive"
        return text


# -------------------- Quantize Strategies --------------------

class BaseQuantizeStrategy:
    """
    Maps an (h, w, 3) uint8 band to its quantized (h, w, 3) uint8 band.
    ``thresholds`` is the (h, w) slice of the tiled dither matrix, or None
    when dithering is off.
    """
    def quantize(self, rgb: np.ndarray, thresholds: Optional[np.ndarray]) -> np.ndarray:
        raise NotImplementedError


class UniformQuantizeStrategy(BaseQuantizeStrategy):
    """
    Each channel independently snapped to 2**bits levels.

    With dithering the matrix threshold, centred and damped, is added before
    flooring. In linear mode the two neighbouring sRGB levels are chosen by
    comparing the linear-light position between them against the threshold.
    """

    def __init__(self, bits_per_channel: int, damping: float = DEFAULT_DAMPING,
                 linear: bool = False):
        if not (1 <= bits_per_channel <= 8):
            raise ValueError(f"bits_per_channel must be 1-8, got {bits_per_channel}")
        self.bits_per_channel = bits_per_channel
        self.max_level = (1 << bits_per_channel) - 1
        self.damping = damping
        self.linear = linear

    def levels(self) -> np.ndarray:
        """The 8-bit values this strategy can emit."""
        steps = np.arange(self.max_level + 1, dtype=np.float32) / self.max_level
        return np.floor(steps * 255.0 + 0.5).astype(np.uint8)

    def _to_u8(self, level: np.ndarray) -> np.ndarray:
        return np.floor(level.astype(np.float32) * (255.0 / self.max_level) + 0.5).astype(np.uint8)

    def quantize(self, rgb: np.ndarray, thresholds: Optional[np.ndarray]) -> np.ndarray:
        L = self.max_level
        v = rgb.astype(np.float32) / 255.0
        if thresholds is None:
            level = np.floor(v * L + 0.5)
        else:
            t = 0.5 + (thresholds[..., None] - 0.5) * self.damping
            if self.linear:
                lo = np.minimum(np.floor(v * L), L - 1)
                lo_lin = srgb_to_linear(lo / L)
                hi_lin = srgb_to_linear((lo + 1) / L)
                span = hi_lin - lo_lin
                frac = np.where(span > 0, (srgb_to_linear(v) - lo_lin) / np.where(span > 0, span, 1.0), 0.0)
                level = lo + (frac > t)
            else:
                level = np.floor(v * L + t)
        return self._to_u8(np.clip(level, 0, L))


class PaletteDitherStrategy(BaseQuantizeStrategy):
    """
    Multi-color ordered dither over the K ranked LUT candidates.

    Candidates get inverse-square-distance weights in linear light; the one
    whose cumulative weight bucket contains the pixel's threshold wins.
    Without dithering the nearest candidate is emitted.
    """

    def __init__(self, lut: PaletteLUT, epsilon: float = WEIGHT_EPSILON):
        self.lut = lut
        self.epsilon = epsilon

    def _candidates(self, rgb: np.ndarray):
        cand = self.lut.lookup(quantize_to_cells(rgb)).astype(np.int32)
        valid = cand != LUT_SENTINEL
        safe = np.where(valid, cand, 0)
        return cand, valid, safe

    def quantize(self, rgb: np.ndarray, thresholds: Optional[np.ndarray]) -> np.ndarray:
        cand, valid, safe = self._candidates(rgb)
        if thresholds is None:
            return self.lut.palette[safe[..., 0]]

        pixel_lin = srgb_to_linear(rgb.astype(np.float32) / 255.0)
        diff = self.lut.palette_linear[safe] - pixel_lin[..., None, :]
        dist = np.sqrt(np.sum(diff**2, axis=-1))
        weights = np.where(valid, 1.0 / (dist + self.epsilon)**2, 0.0)
        weights /= weights.sum(axis=-1, keepdims=True)
        cdf = np.cumsum(weights, axis=-1)

        choice = np.sum(cdf <= thresholds[..., None], axis=-1)
        choice = np.minimum(choice, valid.sum(axis=-1) - 1)
        picked = np.take_along_axis(safe, choice[..., None], axis=-1)[..., 0]
        return self.lut.palette[picked]


class TwoColorDitherStrategy(PaletteDitherStrategy):
    """
    Simplified variant: nearest vs second-nearest candidate, decided by the
    squared distance ratio d1 / (d1 + d2) against the threshold.
    """

    def quantize(self, rgb: np.ndarray, thresholds: Optional[np.ndarray]) -> np.ndarray:
        cand, valid, safe = self._candidates(rgb)
        if thresholds is None or cand.shape[-1] < 2:
            return self.lut.palette[safe[..., 0]]

        pixel_lin = srgb_to_linear(rgb.astype(np.float32) / 255.0)
        d = np.sum((self.lut.palette_linear[safe[..., :2]] - pixel_lin[..., None, :])**2, axis=-1)
        dist_nearest = d[..., 0]
        dist_second = d[..., 1]
        total_dist = dist_nearest + dist_second
        factor = np.where(total_dist == 0, 0.0, dist_nearest / np.where(total_dist == 0, 1.0, total_dist))
        use_nearest = (factor <= thresholds) | ~valid[..., 1]
        final_indices = np.where(use_nearest, safe[..., 0], safe[..., 1])
        return self.lut.palette[final_indices]


# -------------------- Frame Quantizer --------------------

@dataclass
class QuantizedFrame:
    """Quantizer output: same size as the input frame, RGB only."""

    pixels: np.ndarray
    params: CaptureParams
    palette: Optional[np.ndarray] = None
    boxes: List[ColorBox] = field(default_factory=list)
    elapsed_ms: float = 0.0


@dataclass
class WorkingSet:
    """
    Per-frame intermediates. Exactly one frame computation holds a working
    set at a time; it is handed back only when that computation succeeded.
    """

    histogram: Optional[np.ndarray] = None
    boxes: List[ColorBox] = field(default_factory=list)
    palette: Optional[np.ndarray] = None
    lut: Optional[PaletteLUT] = None

    def reset(self):
        self.histogram = None
        self.boxes = []
        self.palette = None
        self.lut = None


class FrameQuantizer:
    """
    Orchestrates palette building (adaptive mode) plus quantization and
    dithering for whole frames.
    """

    def __init__(self, params: CaptureParams, executor=None):
        self.params = params
        self.executor = executor or SerialExecutor()
        self._spare: Optional[WorkingSet] = WorkingSet()
        self._lock = threading.Lock()

    @contextmanager
    def _borrow_working_set(self):
        with self._lock:
            ws, self._spare = self._spare, None
        if ws is None:
            ws = WorkingSet()
        ws.reset()
        yield ws
        # Only reached on success; a failed frame's working set is dropped.
        with self._lock:
            if self._spare is None:
                self._spare = ws

    def _get_strategy(self, ws: WorkingSet, frame: np.ndarray) -> BaseQuantizeStrategy:
        params = self.params
        if not params.uses_adaptive_palette:
            return UniformQuantizeStrategy(params.bits_per_channel, params.damping,
                                           linear=params.linear_dither)

        ws.palette, ws.boxes, ws.histogram = build_adaptive_palette(
            frame, params.palette_size,
            saturation_boost=params.saturation_boost,
            downsample=params.downsample_histogram,
            executor=self.executor)
        ws.lut = PaletteLUT.build(ws.palette, params.lut_candidates, self.executor)
        if params.lut_candidates == 2:
            return TwoColorDitherStrategy(ws.lut)
        return PaletteDitherStrategy(ws.lut)

    def quantize(self, frame: np.ndarray) -> QuantizedFrame:
        """
        Args:
            frame: uint8 grid of shape (H, W, 3) or (H, W, 4), sRGB

        Returns:
            QuantizedFrame at full input resolution

        Raises:
            AllocationFailure: intermediate buffers could not be allocated
        """
        frame = np.asarray(frame)
        if frame.dtype != np.uint8 or frame.ndim != 3 or frame.shape[2] not in (3, 4):
            raise ValueError(f"Expected a uint8 (H, W, 3|4) frame, got {frame.dtype} {frame.shape}")

        start = time.perf_counter()
        try:
            with self._borrow_working_set() as ws:
                strategy = self._get_strategy(ws, frame)
                pixels = self._run_strategy(strategy, frame[..., :3])
                result = QuantizedFrame(pixels=pixels, params=self.params,
                                        palette=ws.palette, boxes=list(ws.boxes))
        except MemoryError as e:
            raise AllocationFailure(f"Out of memory quantizing {frame.shape[1]}x{frame.shape[0]} frame") from e

        result.elapsed_ms = (time.perf_counter() - start) * 1000.0
        logger.debug("Quantized %dx%d frame (%s) in %.1f ms",
                     frame.shape[1], frame.shape[0], self.params.tag_text(), result.elapsed_ms)
        return result

    def _run_strategy(self, strategy: BaseQuantizeStrategy, rgb: np.ndarray) -> np.ndarray:
        h, w = rgb.shape[:2]
        out = np.empty((h, w, 3), dtype=np.uint8)
        thresholds = None
        if self.params.dither_enabled:
            matrix = DitherUtils.get_threshold_matrix(self.params.dither_type)
            thresholds = DitherUtils.tile(matrix, h, w)

        def run(span: Tuple[int, int]):
            r0, r1 = span
            band_th = None if thresholds is None else thresholds[r0:r1]
            out[r0:r1] = strategy.quantize(rgb[r0:r1], band_th)

        self.executor.map(run, split_range(h, self.executor.workers * 4))
        return out
