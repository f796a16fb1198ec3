"""Uncompressed 24-bit BMP encoder.

Pillow can write BMP files, but this encoder pins the exact layout: a
top-down BITMAPINFOHEADER image with BGR pixels, no alpha and rows padded to
four bytes. Output is a pure function of the pixel buffer.
"""

from __future__ import annotations

import struct

FILE_HEADER_SIZE = 14
INFO_HEADER_SIZE = 40
PIXEL_DATA_OFFSET = FILE_HEADER_SIZE + INFO_HEADER_SIZE
BITS_PER_PIXEL = 24
PIXELS_PER_METER_72_DPI = 2835

_FILE_HEADER = struct.Struct("<2sIHHI")
_INFO_HEADER = struct.Struct("<IiiHHIIiiII")


def row_padding(width: int) -> int:
    return (4 - (width * 3) % 4) % 4


def bmp_file_size(width: int, height: int) -> int:
    return PIXEL_DATA_OFFSET + height * (width * 3 + row_padding(width))


def encode_bmp(pixels: bytes, width: int, height: int) -> bytes:
    """Encode an RGBA pixel buffer (row-major, top row first) as a BMP file."""

    if width <= 0 or height <= 0:
        raise ValueError(f"BMP dimensions must be positive, got {width}x{height}")
    if len(pixels) != width * height * 4:
        raise ValueError(
            f"Expected {width * height * 4} bytes of RGBA data for {width}x{height}, got {len(pixels)}"
        )

    padding = row_padding(width)
    row_size = width * 3 + padding
    file_size = bmp_file_size(width, height)

    buffer = bytearray(file_size)
    _FILE_HEADER.pack_into(buffer, 0, b"BM", file_size, 0, 0, PIXEL_DATA_OFFSET)
    _INFO_HEADER.pack_into(
        buffer,
        FILE_HEADER_SIZE,
        INFO_HEADER_SIZE,
        width,
        -height,  # negative height: rows stored top-down
        1,
        BITS_PER_PIXEL,
        0,  # BI_RGB
        0,
        PIXELS_PER_METER_72_DPI,
        PIXELS_PER_METER_72_DPI,
        0,
        0,
    )

    source = bytes(pixels)
    stride = width * 4
    bgr = bytearray(width * 3)
    offset = PIXEL_DATA_OFFSET
    for y in range(height):
        row = source[y * stride:(y + 1) * stride]
        bgr[0::3] = row[2::4]
        bgr[1::3] = row[1::4]
        bgr[2::3] = row[0::4]
        buffer[offset:offset + width * 3] = bgr
        # padding bytes are already zero
        offset += row_size

    return bytes(buffer)
