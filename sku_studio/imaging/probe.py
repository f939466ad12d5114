"""Read image dimensions and format from file headers without decoding."""

import struct
from dataclasses import dataclass
from typing import Optional

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"

# Start-of-frame markers carrying dimensions (baseline, extended, progressive)
JPEG_SOF_MARKERS = {0xC0, 0xC1, 0xC2}


@dataclass(frozen=True)
class ImageHeader:
    format: str  # png, jpeg, webp
    width: int
    height: int

    @property
    def content_type(self) -> str:
        return f"image/{self.format}"


def _probe_png(data: bytes) -> Optional[ImageHeader]:
    if len(data) < 24 or data[12:16] != b"IHDR":
        return None
    width, height = struct.unpack(">II", data[16:24])
    return ImageHeader("png", width, height)


def _probe_jpeg(data: bytes) -> Optional[ImageHeader]:
    offset = 2
    while offset + 9 < len(data):
        if data[offset] != 0xFF:
            offset += 1
            continue
        marker = data[offset + 1]
        if marker in JPEG_SOF_MARKERS:
            height, width = struct.unpack(">HH", data[offset + 5:offset + 9])
            return ImageHeader("jpeg", width, height)
        if marker == 0xD8 or 0xD0 <= marker <= 0xD7 or marker == 0x01 or marker == 0xFF:
            offset += 2 if marker != 0xFF else 1
            continue
        (segment_length,) = struct.unpack(">H", data[offset + 2:offset + 4])
        if segment_length < 2:
            return None
        offset += 2 + segment_length
    return None


def _probe_webp(data: bytes) -> Optional[ImageHeader]:
    if len(data) < 30:
        return None
    chunk = data[12:16]
    if chunk == b"VP8 ":
        width, height = struct.unpack("<HH", data[26:30])
        return ImageHeader("webp", width & 0x3FFF, height & 0x3FFF)
    if chunk == b"VP8L":
        b0, b1, b2, b3 = data[21:25]
        width = 1 + (((b1 & 0x3F) << 8) | b0)
        height = 1 + (((b3 & 0x0F) << 10) | (b2 << 2) | ((b1 & 0xC0) >> 6))
        return ImageHeader("webp", width, height)
    if chunk == b"VP8X":
        width = 1 + int.from_bytes(data[24:27], "little")
        height = 1 + int.from_bytes(data[27:30], "little")
        return ImageHeader("webp", width, height)
    return None


def probe_image(data: bytes) -> Optional[ImageHeader]:
    """
    Identify an image from its first bytes.

    Args:
        data: Raw file bytes (the full buffer or at least its header)

    Returns:
        ImageHeader, or None for unknown or truncated data
    """
    if not data:
        return None
    try:
        if data.startswith(PNG_SIGNATURE):
            return _probe_png(data)
        if data[:2] == b"\xff\xd8":
            return _probe_jpeg(data)
        if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
            return _probe_webp(data)
    except (struct.error, ValueError):
        return None
    return None
