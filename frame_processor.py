"""
Frame-level driver for the quantization pipeline.

Takes frames from whatever supplies them (camera loop, image files), keeps
the most recent preview in a single slot, and turns capture requests into
encoded PNG bytes for the caller to store.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Optional, Tuple

import numpy as np

from dithering_lib import CaptureParams, FrameQuantizer, QuantizationError, QuantizedFrame
from png_encoder import encode_image

__all__ = [
    'Orientation',
    'rotate_for_save',
    'LatestFrameSlot',
    'FrameProcessor',
]

logger = logging.getLogger(__name__)


class Orientation(Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"


def rotate_for_save(pixels: np.ndarray, orientation: Orientation) -> np.ndarray:
    """
    Rotate a captured grid so it is upright for the device orientation at
    capture time. Left means 90 degrees counter-clockwise, right 90 clockwise.
    """
    if orientation == Orientation.DOWN:
        return np.ascontiguousarray(np.rot90(pixels, 2))
    if orientation == Orientation.LEFT:
        return np.ascontiguousarray(np.rot90(pixels, 1))
    if orientation == Orientation.RIGHT:
        return np.ascontiguousarray(np.rot90(pixels, -1))
    return pixels


class LatestFrameSlot:
    """
    Single-slot handoff of the newest quantized frame. A result is only
    stored if no newer frame has been published already.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._generation = 0
        self._frame: Optional[QuantizedFrame] = None

    def publish(self, generation: int, frame: QuantizedFrame) -> bool:
        with self._lock:
            if generation <= self._generation:
                return False
            self._generation = generation
            self._frame = frame
            return True

    def get(self) -> Tuple[int, Optional[QuantizedFrame]]:
        with self._lock:
            return self._generation, self._frame


class FrameProcessor:
    """
    Handles preview and capture processing for a stream of frames.
    """

    def __init__(self,
                 params: CaptureParams,
                 executor=None,
                 progress_callback: Optional[Callable[[float, str], None]] = None):
        """
        Args:
            params: Initial capture parameters
            executor: Parallel-for strategy shared by every stage
            progress_callback: Function to call with (progress_fraction, status_message)
        """
        self.executor = executor
        self.progress_callback = progress_callback
        self.slot = LatestFrameSlot()
        self.dropped_frames = 0
        self.last_capture: Optional[bytes] = None

        self._lock = threading.Lock()
        self._in_flight = 0
        self._generation = 0
        self._capture_requested: Optional[Orientation] = None
        self._background: Optional[ThreadPoolExecutor] = None
        self.set_params(params)

    def _report_progress(self, fraction: float, message: str):
        """Report progress if callback is set."""
        if self.progress_callback:
            self.progress_callback(fraction, message)

    @property
    def params(self) -> CaptureParams:
        return self._quantizer.params

    def set_params(self, params: CaptureParams):
        """Switch settings; frames already in flight finish with the old ones."""
        self._quantizer = FrameQuantizer(params, self.executor)
        logger.debug("Capture settings: %s", params.tag_text())

    def request_capture(self, orientation: Orientation = Orientation.UP):
        """Capture the next frame that arrives."""
        with self._lock:
            self._capture_requested = orientation

    @property
    def latest_preview(self) -> Optional[QuantizedFrame]:
        return self.slot.get()[1]

    def capture(self, frame: np.ndarray, orientation: Orientation = Orientation.UP) -> bytes:
        """
        Quantize one frame at full resolution, rotate it upright and encode it.

        Raises:
            QuantizationError: the frame could not be quantized
            EncodeError: the container could not be produced
        """
        quantizer = self._quantizer
        self._report_progress(0.0, "Quantizing frame...")
        quantized = quantizer.quantize(frame)
        upright = rotate_for_save(quantized.pixels, orientation)
        self._report_progress(0.6, "Encoding...")
        data = encode_image(upright, quantizer.params.bits_per_pixel, quantizer.params.tag_text())
        self._report_progress(1.0, "Capture complete")
        logger.debug("Captured %dx%d frame: %d bytes", upright.shape[1], upright.shape[0], len(data))
        return data

    def on_frame(self, frame: np.ndarray) -> Optional[bytes]:
        """
        Process one incoming frame: refresh the preview and, if a capture was
        requested, encode this frame.

        Preview-only frames arriving while another frame is being processed
        are dropped. Capture errors propagate.

        Returns:
            Encoded PNG bytes when this frame was captured, otherwise None
        """
        with self._lock:
            orientation = self._capture_requested
            if orientation is None and self._in_flight:
                self.dropped_frames += 1
                return None
            self._capture_requested = None
            self._in_flight += 1
            self._generation += 1
            generation = self._generation

        try:
            try:
                preview = self._quantizer.quantize(frame)
            except QuantizationError as e:
                logger.warning("Skipping preview update: %s", e)
            else:
                if not self.slot.publish(generation, preview):
                    logger.debug("Discarded stale preview for frame %d", generation)

            if orientation is None:
                return None
            data = self.capture(frame, orientation)
            self.last_capture = data
            return data
        finally:
            with self._lock:
                self._in_flight -= 1

    def submit_frame(self, frame: np.ndarray) -> Future:
        """Run ``on_frame`` on a background thread."""
        if self._background is None:
            self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="smolcam-frame")
        return self._background.submit(self.on_frame, frame)

    def close(self):
        if self._background is not None:
            self._background.shutdown(wait=True)
            self._background = None
