"""Tests for orientation handling, the latest-frame slot and frame processing."""

import io
import threading

import numpy as np
from PIL import Image

from dithering_lib import CaptureParams, QuantizedFrame
from frame_processor import FrameProcessor, LatestFrameSlot, Orientation, rotate_for_save
from parallel import SerialExecutor


def _frame(h=6, w=4):
    rng = np.random.RandomState(0)
    frame = rng.randint(0, 256, size=(h, w, 4)).astype(np.uint8)
    frame[..., 3] = 255
    return frame


def test_rotate_for_save():
    grid = np.arange(6).reshape(2, 3)
    assert rotate_for_save(grid, Orientation.UP) is grid
    assert rotate_for_save(grid, Orientation.DOWN).tolist() == [[5, 4, 3], [2, 1, 0]]
    # Left: 90 degrees counter-clockwise
    assert rotate_for_save(grid, Orientation.LEFT).tolist() == [[2, 5], [1, 4], [0, 3]]
    # Right: 90 degrees clockwise
    assert rotate_for_save(grid, Orientation.RIGHT).tolist() == [[3, 0], [4, 1], [5, 2]]


def test_slot_rejects_stale_results():
    slot = LatestFrameSlot()
    params = CaptureParams()
    newer = QuantizedFrame(pixels=np.zeros((1, 1, 3), dtype=np.uint8), params=params)
    older = QuantizedFrame(pixels=np.ones((1, 1, 3), dtype=np.uint8), params=params)
    assert slot.publish(2, newer)
    assert not slot.publish(1, older)
    assert slot.get() == (2, newer)


def test_on_frame_updates_preview_without_capture():
    processor = FrameProcessor(CaptureParams(bits_per_pixel=6), SerialExecutor())
    assert processor.on_frame(_frame()) is None
    preview = processor.latest_preview
    assert preview is not None
    assert preview.pixels.shape == (6, 4, 3)


def test_capture_request_produces_rotated_png():
    params = CaptureParams(bits_per_pixel=6, adaptive_palette=True)
    progress = []
    processor = FrameProcessor(params, SerialExecutor(),
                               progress_callback=lambda f, m: progress.append(f))
    processor.request_capture(Orientation.LEFT)
    data = processor.on_frame(_frame())
    assert data is not None
    assert processor.last_capture == data
    assert progress[-1] == 1.0
    with Image.open(io.BytesIO(data)) as img:
        assert img.size == (6, 4)
        assert img.mode == "P"
    # Request is consumed by the frame that served it.
    assert processor.on_frame(_frame()) is None


def test_preview_frames_dropped_while_busy():
    processor = FrameProcessor(CaptureParams(bits_per_pixel=3), SerialExecutor())
    entered = threading.Event()
    release = threading.Event()
    real_quantize = processor._quantizer.quantize

    def slow_quantize(frame):
        entered.set()
        release.wait(5)
        return real_quantize(frame)

    processor._quantizer.quantize = slow_quantize
    future = processor.submit_frame(_frame())
    assert entered.wait(5)

    assert processor.on_frame(_frame()) is None
    assert processor.dropped_frames == 1

    release.set()
    future.result(timeout=5)
    processor.close()
    assert processor.latest_preview is not None


def test_capture_is_never_dropped():
    processor = FrameProcessor(CaptureParams(bits_per_pixel=12), SerialExecutor())
    with processor._lock:
        processor._in_flight = 1
    processor.request_capture()
    data = processor.on_frame(_frame())
    assert data is not None
    assert processor.dropped_frames == 0
    with Image.open(io.BytesIO(data)) as img:
        assert img.mode == "RGB"


def test_set_params_changes_tag():
    processor = FrameProcessor(CaptureParams(bits_per_pixel=6), SerialExecutor())
    processor.set_params(CaptureParams(bits_per_pixel=4, dither_enabled=False))
    assert processor.params.tag_text() == "Smolcam | 4-bit | Off"
