"""Composite product images onto a square white studio canvas."""

import io
import logging
from dataclasses import dataclass

from PIL import Image

logger = logging.getLogger(__name__)

BACKGROUND = (255, 255, 255)


class OutputMode:
    STUDIO = "studio"
    COMPRESSED = "compressed"


@dataclass(frozen=True)
class CanvasSpec:
    size: int
    margin: float  # Fraction of the canvas left empty on each side
    format: str  # Pillow format name
    content_type: str
    extension: str
    upscale: bool  # Whether this mode pays for super-resolution

    @property
    def product_area(self) -> int:
        return int(self.size * (1 - 2 * self.margin))


CANVAS_SPECS = {
    OutputMode.STUDIO: CanvasSpec(
        size=2000, margin=0.08, format="PNG", content_type="image/png", extension="png", upscale=True
    ),
    OutputMode.COMPRESSED: CanvasSpec(
        size=1000, margin=0.10, format="JPEG", content_type="image/jpeg", extension="jpg", upscale=False
    ),
}


def get_canvas_spec(mode: str) -> CanvasSpec:
    try:
        return CANVAS_SPECS[mode]
    except KeyError:
        raise ValueError(f"Unknown output mode: {mode!r}") from None


def fit_size(width: int, height: int, area: int) -> tuple[int, int]:
    """Scale (width, height) to fit inside a square of ``area`` keeping aspect ratio."""
    scale = min(area / width, area / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


def compose_on_canvas(data: bytes, spec: CanvasSpec) -> bytes:
    """
    Center an image on a pure white square canvas.

    Transparent areas become white. The product is scaled (up or down) to
    fill the canvas minus the margin.

    Args:
        data: Encoded source image
        spec: Canvas geometry and encoding

    Returns:
        Encoded canvas image

    Raises:
        OSError / ValueError: undecodable source
    """
    with Image.open(io.BytesIO(data)) as source:
        source.load()
        image = source.convert("RGBA")

    fit_w, fit_h = fit_size(image.width, image.height, spec.product_area)
    image = image.resize((fit_w, fit_h), Image.Resampling.LANCZOS)

    canvas = Image.new("RGB", (spec.size, spec.size), BACKGROUND)
    offset = ((spec.size - fit_w) // 2, (spec.size - fit_h) // 2)
    canvas.paste(image, offset, mask=image)

    out = io.BytesIO()
    if spec.format == "JPEG":
        canvas.save(out, format="JPEG", quality=85, optimize=True)
    else:
        canvas.save(out, format="PNG", compress_level=6)

    logger.debug(f"Canvas {spec.size}x{spec.size}: product area {fit_w}x{fit_h}, {out.tell() / 1024:.1f}KB")
    return out.getvalue()
