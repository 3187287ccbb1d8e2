#!/usr/bin/env python3
"""
CLI module for smolcam - Command-Line Interface

Feeds image files through the capture pipeline (palette, ordered dither,
PNG encoding) and writes the encoded bytes to disk. Uses Rich for terminal
output.
"""

import sys
import logging
import argparse
import json
from pathlib import Path
from typing import Optional, Dict, Any

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, TaskProgressColumn
from rich.panel import Panel

from config_manager import ConfigManager
from dithering_lib import CaptureParams, DitherType
from frame_processor import FrameProcessor, Orientation
from parallel import make_executor
from utils import IMAGE_EXTENSIONS, list_image_files, load_frame


# Initialize Rich console
console = Console()

logger = logging.getLogger('smolcam')


def setup_logging(verbose: bool = False, quiet: bool = False, log_file: Optional[str] = None):
    """
    Setup logging with Rich handler.

    Args:
        verbose: Enable verbose (DEBUG) logging
        quiet: Suppress all but ERROR messages
        log_file: Optional path to log file
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    handlers = []

    rich_handler = RichHandler(
        console=console,
        show_time=True,
        show_path=False,
        markup=True,
        rich_tracebacks=True
    )
    handlers.append(rich_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setFormatter(
            logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True
    )

    logger.setLevel(level)
    return logger


class CLIProgressCallback:
    """
    Rich progress bar driven by (fraction, message) updates.
    """

    def __init__(self, description: str = "Processing..."):
        self.description = description
        self.progress = None
        self.task = None

    def __enter__(self):
        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console
        )
        self.progress.__enter__()
        self.task = self.progress.add_task(self.description, total=100)
        return self

    def __exit__(self, *args):
        if self.progress:
            self.progress.__exit__(*args)

    def update(self, fraction: float, message: str):
        if self.progress and self.task is not None:
            self.progress.update(self.task, completed=fraction * 100, description=message)

    def finish(self):
        if self.progress and self.task is not None:
            self.progress.update(self.task, completed=100, description="Complete!")


# ==================== Config Schema & Validation ====================

VALID_MODES = ["image", "folder"]
VALID_DITHER_TYPES = [t.value for t in DitherType]
VALID_ORIENTATIONS = [o.value for o in Orientation]
VALID_EXECUTORS = ["thread", "serial"]
CAPTURE_FIELDS = {
    "bits_per_pixel": int,
    "dither_enabled": bool,
    "dither_type": str,
    "adaptive_palette": bool,
    "saturation_boost": bool,
    "linear_dither": bool,
    "lut_candidates": int,
    "downsample_histogram": bool,
}


class ConfigValidationError(Exception):
    """Raised when config validation fails."""
    pass


def validate_config(config: Dict[str, Any], config_path: Path,
                    defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Validate a job configuration and return it normalized.

    Args:
        config: Raw config dictionary
        config_path: Path to config file (for resolving relative paths)
        defaults: Persisted defaults (ConfigManager layout); built-in defaults if omitted

    Returns:
        Validated and normalized config

    Raises:
        ConfigValidationError: If validation fails
    """
    defaults = defaults or ConfigManager.DEFAULT_CONFIG
    errors = []

    if "input" not in config:
        errors.append("Missing required field: 'input'")

    if "output" not in config:
        errors.append("Missing required field: 'output'")

    mode = config.get("mode")
    if mode and mode not in VALID_MODES:
        errors.append(f"Invalid mode: '{mode}'. Must be one of: {VALID_MODES}")

    orientation = config.get("orientation", "up")
    if orientation not in VALID_ORIENTATIONS:
        errors.append(f"Invalid orientation: '{orientation}'. Must be one of: {VALID_ORIENTATIONS}")

    capture = config.get("capture", {})
    if not isinstance(capture, dict):
        errors.append("'capture' must be an object/dictionary")
        capture = {}
    for key, value in capture.items():
        if key.startswith("_"):
            continue
        expected = CAPTURE_FIELDS.get(key)
        if expected is None:
            errors.append(f"Unknown capture setting: '{key}'")
        elif expected is int and (isinstance(value, bool) or not isinstance(value, int)):
            errors.append(f"'capture.{key}' must be an integer")
        elif not isinstance(value, expected):
            errors.append(f"'capture.{key}' must be of type {expected.__name__}")

    if isinstance(capture.get("bits_per_pixel"), int) and not 3 <= capture["bits_per_pixel"] <= 24:
        errors.append("'capture.bits_per_pixel' must be between 3 and 24")
    if "dither_type" in capture and capture["dither_type"] not in VALID_DITHER_TYPES:
        errors.append(f"Invalid dither type: '{capture['dither_type']}'. Must be one of: {VALID_DITHER_TYPES}")
    if "lut_candidates" in capture and capture["lut_candidates"] not in (2, 8):
        errors.append("'capture.lut_candidates' must be 2 or 8")

    pipeline = config.get("pipeline", {})
    if not isinstance(pipeline, dict):
        errors.append("'pipeline' must be an object/dictionary")
        pipeline = {}
    if "executor" in pipeline and pipeline["executor"] not in VALID_EXECUTORS:
        errors.append(f"Invalid executor: '{pipeline['executor']}'. Must be one of: {VALID_EXECUTORS}")
    if pipeline.get("workers") is not None:
        try:
            if int(pipeline["workers"]) <= 0:
                errors.append("'pipeline.workers' must be positive")
        except (ValueError, TypeError):
            errors.append("'pipeline.workers' must be an integer")

    if errors:
        error_msg = "Configuration validation failed:\n" + "\n".join(f"  • {e}" for e in errors)
        raise ConfigValidationError(error_msg)

    # Normalize paths (resolve relative to config file)
    config_dir = config_path.parent
    for key in ("input", "output"):
        path = Path(config[key])
        if not path.is_absolute():
            path = (config_dir / path).resolve()
        config[key] = str(path)

    if not Path(config["input"]).exists():
        raise ConfigValidationError(f"Input file/directory not found: {config['input']}")

    merged_capture = dict(defaults.get("capture", {}))
    merged_capture.update({k: v for k, v in capture.items() if not k.startswith("_")})
    merged_pipeline = dict(defaults.get("pipeline", {}))
    merged_pipeline.update(pipeline)

    config["capture"] = merged_capture
    config["pipeline"] = merged_pipeline
    config.setdefault("mode", None)  # Will be auto-detected
    config["orientation"] = orientation
    return config


def load_config(config_path: Path, defaults: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Load and validate a job configuration from a JSON file.

    Raises:
        ConfigValidationError: If the file cannot be read or validation fails
    """
    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigValidationError(f"Invalid JSON in config file:\n  Line {e.lineno}: {e.msg}")
    except OSError as e:
        raise ConfigValidationError(f"Failed to load config file: {e}")

    if not isinstance(config, dict):
        raise ConfigValidationError("Config file must contain a JSON object")
    return validate_config(config, config_path, defaults)


def detect_mode(input_path: Path) -> str:
    """
    Auto-detect processing mode based on input path.

    Returns:
        "image" or "folder"
    """
    if input_path.is_dir():
        return "folder"

    ext = input_path.suffix.lower()
    if ext in IMAGE_EXTENSIONS:
        return "image"
    raise ConfigValidationError(f"Cannot determine mode for file extension: {ext}")


def build_capture_params(capture: Dict[str, Any]) -> CaptureParams:
    """CaptureParams from a validated capture section."""
    try:
        return CaptureParams(**capture)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"Invalid capture settings: {e}")


# ==================== Processing ====================

def _output_file(path: Path) -> Path:
    return path if path.suffix.lower() == ".png" else path.with_suffix(".png")


def record_output(history: Optional[ConfigManager], input_path: Path, output_path: Path):
    """Remember a written file in the persisted defaults, if any."""
    if history is None:
        return
    history.add_recent_file(str(output_path))
    history.update_last_path("input", str(input_path))
    history.update_last_path("output", str(output_path))


def process_single_image(config: Dict[str, Any], processor: FrameProcessor,
                         history: Optional[ConfigManager] = None) -> bool:
    """
    Quantize and encode one image file.

    Args:
        config: Validated configuration dictionary
        processor: FrameProcessor configured with the job's capture settings
        history: Persisted defaults to record the written file in

    Returns:
        True if successful, False otherwise
    """
    try:
        input_path = Path(config["input"])
        output_path = _output_file(Path(config["output"]))

        logger.info(f"Loading image: [cyan]{input_path.name}[/]")
        frame = load_frame(str(input_path))
        logger.info(f"Frame size: [cyan]{frame.shape[1]}x{frame.shape[0]}[/]")

        data = processor.capture(frame, Orientation(config["orientation"]))

        output_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Saving to: [cyan]{output_path}[/]")
        output_path.write_bytes(data)
        record_output(history, input_path, output_path)

        size_kb = len(data) / 1024
        logger.info(f"[bold green]✓ Image saved successfully![/] ({size_kb:.1f} KB)")
        return True

    except Exception as e:
        logger.error(f"Failed to process image: {e}", exc_info=True)
        return False


def process_folder(config: Dict[str, Any], processor: FrameProcessor,
                   history: Optional[ConfigManager] = None) -> bool:
    """
    Quantize and encode every image in a folder into the output folder.

    Returns:
        True if every image succeeded, False otherwise
    """
    input_dir = Path(config["input"])
    output_dir = Path(config["output"])
    files = list_image_files(str(input_dir))
    if not files:
        logger.error(f"No images found in: {input_dir}")
        return False

    output_dir.mkdir(parents=True, exist_ok=True)
    orientation = Orientation(config["orientation"])
    failed = []

    logger.info(f"Processing {len(files)} images...")
    with CLIProgressCallback("Processing images...") as progress:
        for i, path in enumerate(files):
            try:
                frame = load_frame(str(path))
                data = processor.capture(frame, orientation)
                output_path = output_dir / f"{path.stem}.png"
                output_path.write_bytes(data)
                record_output(history, path, output_path)
            except Exception as e:
                logger.error(f"Failed to process {path.name}: {e}", exc_info=True)
                failed.append(path)
            progress.update((i + 1) / len(files), f"Processed {i + 1}/{len(files)} images")
        progress.finish()

    if failed:
        logger.error(f"{len(failed)} of {len(files)} images failed")
        return False
    logger.info(f"[bold green]✓ {len(files)} images saved to[/] [cyan]{output_dir}[/]")
    return True


def show_banner():
    """Display application banner."""
    banner = """
[bold cyan]╔═══════════════════════════════════════╗[/]
[bold cyan]║[/]        [bold white]smolcam CLI[/] [dim]- v1.0[/]           [bold cyan]║[/]
[bold cyan]║[/]   Low color-depth capture pipeline    [bold cyan]║[/]
[bold cyan]╚═══════════════════════════════════════╝[/]
"""
    console.print(banner)


def show_help():
    """Display detailed help information."""
    help_text = """
[bold cyan]smolcam CLI - Usage[/]

[bold]Basic Usage:[/]
  smolcam <config.json>             Process with JSON config
  smolcam --help                    Show this help
  smolcam --example-config          Generate example config

[bold]Options:[/]
  --verbose, -v     Enable verbose output
  --quiet, -q       Suppress all but error messages
  --log-file FILE   Write log to file
  --defaults FILE   Persisted defaults (capture and pipeline sections);
                    written files are recorded in it
  --recent          List recent outputs from the defaults file

[bold]Examples:[/]
  # Encode a single photo at 6 bits per pixel with an adaptive palette
  smolcam configs/photo_6bit.json

  # Batch process a folder of frames with verbose output
  smolcam -v configs/folder.json

[bold]Available Dither Types:[/]
"""
    console.print(help_text)
    for dither_type in DitherType:
        console.print(f"    • [cyan]{dither_type.value}[/] ({dither_type.label})")
    console.print()


def generate_example_config():
    """Print an example configuration file."""
    example = {
        "_comment": "smolcam CLI Configuration",
        "input": "path/to/input.png",
        "output": "path/to/output.png",
        "mode": "image",
        "orientation": "up",
        "capture": {
            "_comment_bits": "Indexed PNG up to 8 bits per pixel, truecolor above",
            "bits_per_pixel": 6,
            "dither_enabled": True,
            "dither_type": "bayer",
            "_comment_adaptive": "Median-cut palette, only used up to 8 bits per pixel",
            "adaptive_palette": True,
            "saturation_boost": False,
            "linear_dither": False,
            "lut_candidates": 8,
            "downsample_histogram": True
        },
        "pipeline": {
            "executor": "thread",
            "workers": None
        }
    }

    example_json = json.dumps(example, indent=4)

    console.print("\n[bold cyan]Example Configuration:[/]\n")
    console.print(Panel(example_json, title="config.json", border_style="cyan"))
    console.print("\n[dim]Save this to a .json file and modify as needed.[/]\n")


def show_recent(history: ConfigManager):
    """List recently written files that still exist."""
    recent = history.get_recent_files()
    last_dir = history.get_last_path("output")
    if last_dir:
        console.print(f"[bold]Last output folder:[/] [cyan]{last_dir}[/]")
    if not recent:
        console.print("[dim]No recent outputs.[/]")
        return
    console.print("[bold]Recent outputs:[/]")
    for path in recent:
        console.print(f"    • [cyan]{path}[/]")


def run_job(config: Dict[str, Any], history: Optional[ConfigManager] = None) -> bool:
    """Run a validated job config; returns True on success."""
    params = build_capture_params(config["capture"])
    pipeline = config["pipeline"]
    workers = pipeline.get("workers")
    with make_executor(pipeline.get("executor", "thread"),
                       int(workers) if workers is not None else None) as executor:
        processor = FrameProcessor(params, executor)
        if config["mode"] == "image":
            return process_single_image(config, processor, history)
        return process_folder(config, processor, history)


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="smolcam CLI - low color-depth capture pipeline",
        add_help=False
    )

    parser.add_argument('config', nargs='?', help='Path to JSON configuration file')
    parser.add_argument('--help', '-h', action='store_true', help='Show help')
    parser.add_argument('--example-config', action='store_true', help='Generate example config')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')
    parser.add_argument('--quiet', '-q', action='store_true', help='Quiet mode (errors only)')
    parser.add_argument('--log-file', type=str, help='Log to file')
    parser.add_argument('--defaults', type=str, help='Persisted defaults file')
    parser.add_argument('--recent', action='store_true', help='List recent outputs')

    args = parser.parse_args(argv)

    if args.help:
        show_banner()
        show_help()
        sys.exit(0)

    if args.example_config:
        show_banner()
        generate_example_config()
        sys.exit(0)

    setup_logging(verbose=args.verbose, quiet=args.quiet, log_file=args.log_file)

    if not args.quiet:
        show_banner()

    history = None
    if args.defaults:
        if not Path(args.defaults).is_file():
            logger.error(f"Defaults file not found: {args.defaults}")
            sys.exit(1)
        history = ConfigManager(args.defaults)

    if args.recent:
        if history is None:
            logger.error("--recent needs --defaults FILE")
            sys.exit(1)
        show_recent(history)
        sys.exit(0)

    if not args.config:
        console.print("[bold red]Error:[/] No configuration file specified.\n")
        console.print("Usage: smolcam <config.json>")
        console.print("       smolcam --help\n")
        sys.exit(1)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error(f"Configuration file not found: {config_path}")
        sys.exit(1)

    logger.info(f"Loading configuration from: [cyan]{config_path}[/]")
    try:
        config = load_config(config_path, history.config if history else None)
        if not config["mode"]:
            config["mode"] = detect_mode(Path(config["input"]))
            logger.info(f"Auto-detected mode: [cyan]{config['mode']}[/]")
        params = build_capture_params(config["capture"])
    except ConfigValidationError as e:
        logger.error(f"[bold red]{e}[/]")
        sys.exit(1)

    logger.info("[green]✓[/] Configuration validated")
    logger.info(f"Input:  [cyan]{config['input']}[/]")
    logger.info(f"Output: [cyan]{config['output']}[/]")
    logger.info(f"Mode:   [cyan]{config['mode']}[/]")
    logger.info(f"Tag:    [yellow]{params.tag_text()}[/]")
    if params.adaptive_palette and not params.uses_adaptive_palette:
        logger.warning("Adaptive palette ignored above 8 bits per pixel")

    success = run_job(config, history)
    if history is not None:
        history.save()

    if success:
        logger.info("[bold green]✓ Processing complete![/]")
        sys.exit(0)
    else:
        logger.error("[bold red]✗ Processing failed![/]")
        sys.exit(1)


if __name__ == "__main__":
    main()
