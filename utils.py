"""
Utility functions for loading frames and listing input files.
"""

from pathlib import Path
from typing import List

import numpy as np
from PIL import Image, ImageOps

__all__ = [
    'IMAGE_EXTENSIONS',
    'load_frame',
    'list_image_files',
    'ensure_rgba',
]

IMAGE_EXTENSIONS = {'.png', '.jpg', '.jpeg', '.gif', '.bmp', '.tiff', '.webp'}


def ensure_rgba(image: Image.Image) -> Image.Image:
    """
    Ensure image is in RGBA mode.

    Args:
        image: PIL Image

    Returns:
        Image in RGBA mode
    """
    if image.mode != 'RGBA':
        return image.convert('RGBA')
    return image


def load_frame(filepath: str) -> np.ndarray:
    """
    Load an image file as an RGBA8 frame, honouring its EXIF orientation.

    Args:
        filepath: Path to image file

    Returns:
        uint8 array of shape (H, W, 4)
    """
    with Image.open(filepath) as img:
        img = ImageOps.exif_transpose(img)
        return np.array(ensure_rgba(img), dtype=np.uint8)


def list_image_files(directory: str) -> List[Path]:
    """Image files directly inside ``directory``, sorted by name."""
    return sorted(p for p in Path(directory).iterdir()
                  if p.is_file() and p.suffix.lower() in IMAGE_EXTENSIONS)

