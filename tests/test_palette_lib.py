"""Tests for histogram, prefix sums, median cut and the palette LUT."""

import numpy as np
import pytest
from palette_lib import (HIST_LEVELS, LUT_SENTINEL, ColorBox, MedianCutSplitter, PaletteLUT,
                         PrefixSum3D, box_colors, build_adaptive_palette, build_histogram,
                         downsample_2x, quantize_to_cells, srgb_to_linear)
from parallel import SerialExecutor, ThreadedExecutor


def _solid(h, w, rgb):
    frame = np.zeros((h, w, 4), dtype=np.uint8)
    frame[..., :3] = rgb
    frame[..., 3] = 255
    return frame


def test_quantize_to_cells_rounds_to_31_levels():
    cells = quantize_to_cells(np.array([[0, 128, 255]], dtype=np.uint8))
    assert cells.tolist() == [[0, 16, 31]]


def test_histogram_single_red_frame():
    """A 2x2 pure red frame lands entirely in cell (31, 0, 0)."""
    hist = build_histogram(_solid(2, 2, (255, 0, 0)))
    assert hist.shape == (HIST_LEVELS, HIST_LEVELS, HIST_LEVELS)
    assert hist[31, 0, 0] == 4
    assert hist.sum() == 4


def test_histogram_saturation_boost_weights_saturated_pixels():
    boosted = build_histogram(_solid(2, 2, (255, 0, 0)), saturation_boost=True)
    assert boosted[31, 0, 0] == 16
    grey = build_histogram(_solid(2, 2, (128, 128, 128)), saturation_boost=True)
    assert grey.sum() == 4


def test_histogram_independent_of_executor():
    rng = np.random.RandomState(0)
    frame = rng.randint(0, 256, size=(37, 23, 3)).astype(np.uint8)
    with ThreadedExecutor(4) as executor:
        threaded = build_histogram(frame, executor=executor)
    assert np.array_equal(threaded, build_histogram(frame, executor=SerialExecutor()))
    assert threaded.sum() == 37 * 23


def test_downsample_2x_drops_odd_edges():
    frame = np.zeros((3, 3, 3), dtype=np.uint8)
    frame[:2, :2] = [[[0, 0, 0], [100, 100, 100]], [[100, 100, 100], [201, 201, 201]]]
    out = downsample_2x(frame)
    assert out.shape == (1, 1, 3)
    assert out[0, 0, 0] == (0 + 100 + 100 + 201 + 2) // 4
    tiny = np.zeros((1, 5, 3), dtype=np.uint8)
    assert downsample_2x(tiny) is tiny


def test_prefix_box_sum_matches_brute_force():
    rng = np.random.RandomState(1)
    hist = rng.randint(0, 5, size=(HIST_LEVELS,) * 3).astype(np.int64)
    with ThreadedExecutor(3) as executor:
        prefix = PrefixSum3D.build(hist, executor)
    assert prefix.total == hist.sum()
    for _ in range(20):
        lo = rng.randint(0, HIST_LEVELS, size=3)
        hi = np.maximum(lo, rng.randint(0, HIST_LEVELS, size=3))
        expected = hist[lo[0]:hi[0] + 1, lo[1]:hi[1] + 1, lo[2]:hi[2] + 1].sum()
        assert prefix.box_sum(tuple(lo), tuple(hi)) == expected


def test_prefix_table_is_read_only():
    prefix = PrefixSum3D.build(np.ones((HIST_LEVELS,) * 3, dtype=np.int64))
    assert prefix.table[31, 31, 31] == HIST_LEVELS ** 3
    with pytest.raises(ValueError):
        prefix.table[0, 0, 0] = 5


def test_median_cut_splits_at_median():
    hist = np.zeros((HIST_LEVELS,) * 3, dtype=np.int64)
    hist[5, 0, 0] = 10
    hist[20, 0, 0] = 10
    splitter = MedianCutSplitter(hist, PrefixSum3D.build(hist))
    first, second = splitter.split_box(splitter.initial_box())
    assert first == ColorBox((5, 0, 0), (5, 0, 0), 10)
    assert second == ColorBox((6, 0, 0), (20, 0, 0), 10)


def test_median_cut_prefers_green_on_ties():
    splitter = MedianCutSplitter(np.zeros((HIST_LEVELS,) * 3, dtype=np.int64),
                                 PrefixSum3D.build(np.zeros((HIST_LEVELS,) * 3, dtype=np.int64)))
    assert splitter.choose_axis(ColorBox((0, 0, 0), (4, 4, 4), 0)) == 1
    assert splitter.choose_axis(ColorBox((0, 0, 0), (4, 2, 4), 0)) == 0
    assert splitter.choose_axis(ColorBox((0, 0, 0), (1, 2, 5), 0)) == 2


def test_median_cut_single_color_clones_boxes():
    """A one-color frame produces identical boxes and identical palette entries."""
    palette, boxes, _ = build_adaptive_palette(_solid(2, 2, (255, 0, 0)), 2, downsample=False)
    assert len(boxes) == 2
    assert boxes[0] == boxes[1]
    assert palette.tolist() == [[255, 0, 0], [255, 0, 0]]


def test_median_cut_conserves_counts():
    rng = np.random.RandomState(2)
    frame = rng.randint(0, 256, size=(64, 64, 3)).astype(np.uint8)
    hist = build_histogram(frame)
    splitter = MedianCutSplitter(hist, PrefixSum3D.build(hist))
    boxes = splitter.split(16)
    assert len(boxes) == 16
    assert len(splitter.history) == 15
    for parent, first, second in splitter.history:
        assert first.count + second.count == parent.count
    assert sum(b.count for b in boxes) == 64 * 64


def test_median_cut_empty_histogram_uses_whole_cube():
    hist = np.zeros((HIST_LEVELS,) * 3, dtype=np.int64)
    splitter = MedianCutSplitter(hist, PrefixSum3D.build(hist))
    assert splitter.initial_box() == ColorBox((0, 0, 0), (31, 31, 31), 0)
    boxes = splitter.split(4)
    assert all(b.count == 0 for b in boxes)
    assert len(box_colors(hist, boxes)) == 4


def test_median_cut_rejects_bad_palette_size():
    hist = np.zeros((HIST_LEVELS,) * 3, dtype=np.int64)
    splitter = MedianCutSplitter(hist, PrefixSum3D.build(hist))
    for size in (1, 3, 512):
        with pytest.raises(ValueError):
            splitter.split(size)


def test_box_colors_weighted_centroid_and_midpoint():
    hist = np.zeros((HIST_LEVELS,) * 3, dtype=np.int64)
    hist[0, 0, 0] = 1
    hist[2, 0, 0] = 3
    boxes = [ColorBox((0, 0, 0), (2, 0, 0), 4), ColorBox((4, 4, 4), (4, 6, 4), 0)]
    colors = box_colors(hist, boxes)
    # r centroid = 1.5 cells -> 1.5 * 255 / 31
    assert colors[0].tolist() == [12, 0, 0]
    assert colors[1].tolist() == [33, 41, 33]


def test_lut_pads_with_sentinel_and_ranks_ascending():
    palette = np.array([[0, 0, 0], [255, 255, 255], [255, 0, 0]], dtype=np.uint8)
    lut = PaletteLUT.build(palette, k=8)
    assert lut.indices.shape == (HIST_LEVELS, HIST_LEVELS, HIST_LEVELS, 8)
    assert np.all(lut.indices[..., 3:] == LUT_SENTINEL)
    assert lut.indices[0, 0, 0, 0] == 0
    assert lut.indices[31, 31, 31, 0] == 1
    assert lut.indices[31, 0, 0, 0] == 2

    rng = np.random.RandomState(3)
    for cell in rng.randint(0, HIST_LEVELS, size=(10, 3)):
        centre = srgb_to_linear(cell.astype(np.float32) / 31.0)
        ranked = lut.indices[tuple(cell)][:3]
        dists = [np.linalg.norm(lut.palette_linear[i] - centre) for i in ranked]
        assert all(a <= b + 1e-6 for a, b in zip(dists, dists[1:]))


def test_lut_two_candidates():
    palette = np.array([[0, 0, 0], [255, 255, 255], [255, 0, 0]], dtype=np.uint8)
    with ThreadedExecutor(2) as executor:
        lut = PaletteLUT.build(palette, k=2, executor=executor)
    assert lut.k == 2
    assert np.all(lut.indices >= 0)
