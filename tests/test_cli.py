"""Tests for the command-line job runner."""

import io
import json
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from smolcam_cli import (ConfigValidationError, build_capture_params, detect_mode, load_config,
                         main, validate_config)


def _write_image(path: Path, seed: int = 0):
    rng = np.random.RandomState(seed)
    Image.fromarray(rng.randint(0, 256, size=(10, 14, 3)).astype(np.uint8)).save(path)


def _write_config(path: Path, config: dict) -> Path:
    path.write_text(json.dumps(config))
    return path


def test_validate_config_reports_every_problem(tmp_path):
    config = {
        "mode": "video",
        "orientation": "sideways",
        "capture": {"bits_per_pixel": 30, "dither_type": "floyd", "lut_candidates": 3, "zoom": 2},
        "pipeline": {"executor": "gpu", "workers": 0},
    }
    with pytest.raises(ConfigValidationError) as excinfo:
        validate_config(config, tmp_path / "job.json")
    message = str(excinfo.value)
    for fragment in ("'input'", "'output'", "video", "sideways", "between 3 and 24",
                     "floyd", "2 or 8", "zoom", "gpu", "positive"):
        assert fragment in message


def test_validate_config_resolves_paths_and_fills_defaults(tmp_path):
    _write_image(tmp_path / "in.png")
    config = validate_config({"input": "in.png", "output": "out/in.png",
                              "capture": {"bits_per_pixel": 6}},
                             tmp_path / "job.json")
    assert Path(config["input"]) == (tmp_path / "in.png").resolve()
    assert config["capture"]["bits_per_pixel"] == 6
    assert config["capture"]["dither_type"] == "bayer"
    assert config["pipeline"]["executor"] == "thread"
    assert config["orientation"] == "up"
    assert config["mode"] is None


def test_validate_config_missing_input(tmp_path):
    with pytest.raises(ConfigValidationError, match="not found"):
        validate_config({"input": "nope.png", "output": "out.png"}, tmp_path / "job.json")


def test_load_config_invalid_json(tmp_path):
    path = tmp_path / "job.json"
    path.write_text("{broken")
    with pytest.raises(ConfigValidationError, match="Invalid JSON"):
        load_config(path)


def test_detect_mode(tmp_path):
    image = tmp_path / "a.jpg"
    image.write_bytes(b"")
    assert detect_mode(image) == "image"
    assert detect_mode(tmp_path) == "folder"
    with pytest.raises(ConfigValidationError):
        detect_mode(tmp_path / "clip.mp4")


def test_build_capture_params():
    params = build_capture_params({"bits_per_pixel": 6, "dither_type": "blue_noise",
                                   "adaptive_palette": True})
    assert params.tag_text() == "Smolcam | 6-bit | Blue Noise | Adaptive"


def test_main_single_image(tmp_path):
    _write_image(tmp_path / "in.png")
    cfg = _write_config(tmp_path / "job.json", {
        "input": "in.png",
        "output": "out/result",
        "orientation": "down",
        "capture": {"bits_per_pixel": 6, "adaptive_palette": True},
        "pipeline": {"executor": "serial"},
    })
    with pytest.raises(SystemExit) as excinfo:
        main(["-q", str(cfg)])
    assert excinfo.value.code == 0

    data = (tmp_path / "out" / "result.png").read_bytes()
    with Image.open(io.BytesIO(data)) as img:
        assert img.mode == "P"
        assert img.size == (14, 10)
        lens = img.getexif().get_ifd(0x8769)[0xA434]
    assert lens == "Smolcam | 6-bit | Bayer | Adaptive"


def test_main_folder(tmp_path):
    src = tmp_path / "frames"
    src.mkdir()
    for i in range(3):
        _write_image(src / f"frame{i}.png", seed=i)
    (src / "notes.txt").write_text("skip me")
    cfg = _write_config(tmp_path / "job.json", {
        "input": "frames",
        "output": "encoded",
        "capture": {"bits_per_pixel": 9},
        "pipeline": {"executor": "thread", "workers": 2},
    })
    with pytest.raises(SystemExit) as excinfo:
        main(["-q", str(cfg)])
    assert excinfo.value.code == 0
    assert sorted(p.name for p in (tmp_path / "encoded").iterdir()) == \
        ["frame0.png", "frame1.png", "frame2.png"]


def test_main_invalid_config_exits_nonzero(tmp_path):
    cfg = _write_config(tmp_path / "job.json", {"output": "x.png"})
    with pytest.raises(SystemExit) as excinfo:
        main(["-q", str(cfg)])
    assert excinfo.value.code == 1


def test_main_example_config():
    with pytest.raises(SystemExit) as excinfo:
        main(["--example-config"])
    assert excinfo.value.code == 0


def test_main_records_outputs_in_defaults(tmp_path):
    _write_image(tmp_path / "in.png")
    defaults = tmp_path / "defaults.json"
    defaults.write_text(json.dumps({"capture": {"bits_per_pixel": 4}}))
    cfg = _write_config(tmp_path / "job.json", {"input": "in.png", "output": "out/shot.png"})
    with pytest.raises(SystemExit) as excinfo:
        main(["-q", "--defaults", str(defaults), str(cfg)])
    assert excinfo.value.code == 0

    output = (tmp_path / "out" / "shot.png").resolve()
    saved = json.loads(defaults.read_text())
    assert saved["recent_files"] == [str(output)]
    assert saved["paths"]["last_output_dir"] == str(output.parent)
    assert saved["capture"]["bits_per_pixel"] == 4
    with Image.open(output) as img:
        assert img.getexif().get_ifd(0x8769)[0xA434].startswith("Smolcam | 4-bit")

    with pytest.raises(SystemExit) as excinfo:
        main(["-q", "--defaults", str(defaults), "--recent"])
    assert excinfo.value.code == 0


def test_main_missing_defaults_file_is_not_created(tmp_path):
    _write_image(tmp_path / "in.png")
    defaults = tmp_path / "missing.json"
    cfg = _write_config(tmp_path / "job.json", {"input": "in.png", "output": "out.png"})
    with pytest.raises(SystemExit) as excinfo:
        main(["-q", "--defaults", str(defaults), str(cfg)])
    assert excinfo.value.code == 1
    assert not defaults.exists()
    assert not (tmp_path / "out.png").exists()
