"""
PNG serialization for quantized frames.

Frames with at most 8 bits per pixel are written as indexed PNGs by hand so
the palette, index packing and chunk order are exactly under our control.
Deeper frames are flattened to RGB and handed to Pillow. Both variants carry
an eXIf chunk whose only payload is a free-text description of the
quantization settings.

The description is stored in the Exif LensModel field (0xA434). That field is
reused purely as a text channel; it does not describe an actual lens.
"""

import io
import logging
import struct
import zlib
from typing import Iterator, List, Tuple

import numpy as np
from PIL import Image

__all__ = [
    'PNG_SIGNATURE',
    'EncodeError',
    'CompressionFailure',
    'EncoderUnavailable',
    'ChunkError',
    'crc32',
    'make_chunk',
    'iter_chunks',
    'zlib_compress',
    'build_exif_lens_model',
    'build_palette',
    'pack_indices',
    'encode_indexed',
    'encode_truecolor',
    'encode_image',
]

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
ZLIB_HEADER = b"\x78\x9c"  # deflate, 32K window, default level

COLOR_TYPE_INDEXED = 3

TIFF_TYPE_ASCII = 2
TIFF_TYPE_LONG = 4
TAG_EXIF_IFD_POINTER = 0x8769
TAG_LENS_MODEL = 0xA434


class EncodeError(Exception):
    """Encoding failed; no output was produced."""


class CompressionFailure(EncodeError):
    pass


class EncoderUnavailable(EncodeError):
    pass


class ChunkError(EncodeError):
    """A PNG byte stream failed structural or CRC validation."""


# -------------------- Chunk Framing --------------------

def crc32(data: bytes) -> int:
    """CRC-32 with the reflected polynomial 0xEDB88320 and final inversion."""
    return zlib.crc32(data) & 0xFFFFFFFF


def make_chunk(chunk_type: bytes, data: bytes) -> bytes:
    """[length][type][data][crc32(type + data)], all big-endian."""
    if len(chunk_type) != 4:
        raise ValueError(f"Chunk type must be 4 bytes, got {chunk_type!r}")
    return (struct.pack(">I", len(data)) + chunk_type + data +
            struct.pack(">I", crc32(chunk_type + data)))


def iter_chunks(png: bytes) -> Iterator[Tuple[bytes, bytes]]:
    """
    Yield (type, data) for every chunk of a PNG byte stream, validating the
    signature, chunk bounds and every CRC.

    Raises:
        ChunkError: on any structural or checksum problem
    """
    if not png.startswith(PNG_SIGNATURE):
        raise ChunkError("Missing PNG signature")
    pos = len(PNG_SIGNATURE)
    while pos < len(png):
        if pos + 8 > len(png):
            raise ChunkError(f"Truncated chunk header at offset {pos}")
        length, chunk_type = struct.unpack(">I4s", png[pos:pos + 8])
        end = pos + 8 + length + 4
        if end > len(png):
            raise ChunkError(f"Chunk {chunk_type!r} overruns the buffer")
        data = png[pos + 8:pos + 8 + length]
        (stored,) = struct.unpack(">I", png[end - 4:end])
        if stored != crc32(chunk_type + data):
            raise ChunkError(f"CRC mismatch in chunk {chunk_type!r}")
        yield chunk_type, data
        pos = end


def zlib_compress(raw: bytes, level: int = 6) -> bytes:
    """
    Raw DEFLATE wrapped in zlib framing: 0x78 0x9C header, deflate body,
    big-endian Adler-32 of the uncompressed bytes.

    Raises:
        CompressionFailure: the compressor produced no output
    """
    try:
        compressor = zlib.compressobj(level, zlib.DEFLATED, -15)
        body = compressor.compress(raw) + compressor.flush()
    except zlib.error as e:
        raise CompressionFailure(f"DEFLATE failed: {e}") from e
    if not body:
        raise CompressionFailure("DEFLATE produced no output")
    return ZLIB_HEADER + body + struct.pack(">I", zlib.adler32(raw) & 0xFFFFFFFF)


# -------------------- Exif --------------------

def build_exif_lens_model(text: str) -> bytes:
    """
    Minimal big-endian TIFF/Exif block: IFD0 with a single Exif-IFD pointer,
    Exif IFD with a single LensModel ASCII entry holding ``text``.

    Strings of at most four bytes (terminator included) sit inline in the
    entry; longer ones follow the Exif IFD.
    """
    value = text.encode("utf-8") + b"\x00"
    exif_ifd_offset = 8 + 2 + 12 + 4
    string_offset = exif_ifd_offset + 2 + 12 + 4

    out = bytearray(b"MM\x00\x2a")
    out += struct.pack(">I", 8)
    out += struct.pack(">HHHII", 1, TAG_EXIF_IFD_POINTER, TIFF_TYPE_LONG, 1, exif_ifd_offset)
    out += struct.pack(">I", 0)
    out += struct.pack(">HHHI", 1, TAG_LENS_MODEL, TIFF_TYPE_ASCII, len(value))
    if len(value) <= 4:
        out += value.ljust(4, b"\x00")
    else:
        out += struct.pack(">I", string_offset)
    out += struct.pack(">I", 0)
    if len(value) > 4:
        out += value
    return bytes(out)


# -------------------- Indexed Path --------------------

def _rgb_grid(pixels: np.ndarray) -> np.ndarray:
    pixels = np.asarray(pixels)
    if pixels.dtype != np.uint8 or pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
        raise EncodeError(f"Expected a uint8 (H, W, 3|4) grid, got {pixels.dtype} {pixels.shape}")
    if pixels.shape[0] == 0 or pixels.shape[1] == 0:
        raise EncodeError("Cannot encode an empty grid")
    return pixels[..., :3]


def build_palette(rgb: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Palette of the colors actually used, in first-seen (row-major) order.

    Returns:
        (palette uint8 (N, 3), per-pixel index array (H, W))
    """
    h, w = rgb.shape[:2]
    flat = rgb.reshape(-1, 3).astype(np.uint32)
    keys = (flat[:, 0] << 16) | (flat[:, 1] << 8) | flat[:, 2]
    uniq, first, inverse = np.unique(keys, return_index=True, return_inverse=True)
    order = np.argsort(first, kind="stable")
    rank = np.empty(len(order), dtype=np.int64)
    rank[order] = np.arange(len(order))
    palette_keys = uniq[order]
    palette = np.stack([(palette_keys >> 16) & 0xFF,
                        (palette_keys >> 8) & 0xFF,
                        palette_keys & 0xFF], axis=-1).astype(np.uint8)
    return palette, rank[inverse.reshape(-1)].reshape(h, w)


def pack_indices(indices: np.ndarray, bit_depth: int) -> bytes:
    """
    Scanlines for an indexed PNG: a zero filter byte per row followed by the
    row's indices at 4 bits (high nibble first, trailing nibble zero-padded)
    or 8 bits each.
    """
    h, w = indices.shape
    idx = indices.astype(np.uint8)
    if bit_depth == 8:
        rows = idx
    elif bit_depth == 4:
        if w % 2:
            idx = np.hstack([idx, np.zeros((h, 1), dtype=np.uint8)])
        rows = (idx[:, 0::2] << 4) | idx[:, 1::2]
    else:
        raise ValueError(f"Unsupported index bit depth: {bit_depth}")
    filters = np.zeros((h, 1), dtype=np.uint8)
    return np.hstack([filters, rows]).tobytes()


def encode_indexed(pixels: np.ndarray, text: str, bit_depth: int = 8) -> bytes:
    """
    Indexed-color PNG with PLTE, eXIf, IDAT and IEND chunks.

    Args:
        pixels: uint8 grid (H, W, 3|4); alpha is ignored
        text: Description for the LensModel field
        bit_depth: 4 or 8 bits per index; widened to 8 if the grid uses
            more than 16 colors

    Raises:
        EncodeError: more than 256 colors, or an invalid grid
        CompressionFailure: DEFLATE produced no output
    """
    rgb = _rgb_grid(pixels)
    h, w = rgb.shape[:2]
    palette, indices = build_palette(rgb)
    if len(palette) > 256:
        raise EncodeError(f"Indexed PNG holds at most 256 colors, grid uses {len(palette)}")
    if len(palette) > (1 << bit_depth):
        logger.debug("%d colors do not fit %d-bit indices, widening to 8", len(palette), bit_depth)
        bit_depth = 8

    raw = pack_indices(indices, bit_depth)
    compressed = zlib_compress(raw)

    ihdr = struct.pack(">IIBBBBB", w, h, bit_depth, COLOR_TYPE_INDEXED, 0, 0, 0)
    chunks: List[bytes] = [
        make_chunk(b"IHDR", ihdr),
        make_chunk(b"PLTE", palette.tobytes()),
        make_chunk(b"eXIf", build_exif_lens_model(text)),
        make_chunk(b"IDAT", compressed),
        make_chunk(b"IEND", b""),
    ]
    png = PNG_SIGNATURE + b"".join(chunks)
    logger.debug("Indexed PNG %dx%d: %d colors, %d-bit, %d bytes",
                 w, h, len(palette), bit_depth, len(png))
    return png


# -------------------- Truecolor Path --------------------

def encode_truecolor(pixels: np.ndarray, text: str) -> bytes:
    """
    RGB PNG (alpha stripped) written by Pillow, with the same eXIf payload.

    Raises:
        EncoderUnavailable: Pillow could not write the destination buffer
    """
    rgb = np.ascontiguousarray(_rgb_grid(pixels))
    buffer = io.BytesIO()
    try:
        Image.fromarray(rgb).save(buffer, format="PNG",
                                 exif=build_exif_lens_model(text))
    except (OSError, ValueError) as e:
        raise EncoderUnavailable(f"PNG writer failed: {e}") from e
    data = buffer.getvalue()
    if not data:
        raise EncoderUnavailable("PNG writer produced no output")
    return data


def encode_image(pixels: np.ndarray, bits_per_pixel: int, text: str) -> bytes:
    """
    Pick the container variant for a quantized grid: indexed (4-bit indices
    up to 4 bits per pixel, 8-bit up to 8) or truecolor beyond that.
    """
    if bits_per_pixel <= 8:
        return encode_indexed(pixels, text, bit_depth=4 if bits_per_pixel <= 4 else 8)
    return encode_truecolor(pixels, text)
