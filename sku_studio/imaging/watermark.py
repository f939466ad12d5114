"""Pixel-analysis watermark detection.

Scores how likely an image carries an overlay watermark, anywhere in the
frame. Five heuristics contribute to a 0-100 confidence:

1. 3x3 grid scan: cells with thin high-contrast edges but modest variance
   (overlay text rather than broad texture).
2. Center desaturation: a semi-transparent white overlay pulls the center's
   colour toward grey compared with an outer corner sample.
3. Center contrast: the same overlay flattens the center's dynamic range.
4. Horizontal edge bands: isolated rows of high edge activity (text lines).
5. Periodicity: several elevated cells spread over rows and columns
   (tiled watermark).

Runs on numpy arrays decoded by Pillow; no network calls.
"""

import io
import logging
from dataclasses import dataclass

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

MIN_ANALYSIS_DIMENSION = 100
ANALYSIS_WIDTH = 500
GRID_SIZE = 3

CELL_EDGE_THRESHOLD = 30
ROW_EDGE_THRESHOLD = 40
BAND_WINDOW = 5
SATURATION_SAMPLE = 500


@dataclass
class WatermarkResult:
    score: int  # 0-100 confidence
    reason: str


def _gradient(grey: np.ndarray) -> np.ndarray:
    """|dx| + |dy| central differences; border pixels are zero."""
    grad = np.zeros_like(grey)
    grad[1:-1, 1:-1] = (
        np.abs(grey[1:-1, 2:] - grey[1:-1, :-2])
        + np.abs(grey[2:, 1:-1] - grey[:-2, 1:-1])
    )
    return grad


def _saturation(pixels: np.ndarray) -> float:
    """Mean (max-min)/max saturation of up to SATURATION_SAMPLE pixels, near-black counted as 0."""
    flat = pixels.reshape(-1, 3)
    if flat.size == 0:
        return 0.0
    step = max(1, len(flat) // SATURATION_SAMPLE)
    sample = flat[::step]
    high = sample.max(axis=1)
    low = sample.min(axis=1)
    sat = np.where(high > 10, (high - low) / np.maximum(high, 1) * 100.0, 0.0)
    return float(sat.mean())


def _grid_cells(grey: np.ndarray, grad: np.ndarray) -> tuple[list[float], list[float]]:
    height, width = grey.shape
    cell_h, cell_w = height // GRID_SIZE, width // GRID_SIZE
    densities: list[float] = []
    variances: list[float] = []

    for row in range(GRID_SIZE):
        for col in range(GRID_SIZE):
            y0, x0 = row * cell_h, col * cell_w
            cell = grey[y0:y0 + cell_h, x0:x0 + cell_w]
            variances.append(float(cell.var()) if cell.size else 0.0)

            inner = grad[y0 + 1:min(y0 + cell_h - 1, height - 1), x0 + 1:min(x0 + cell_w - 1, width - 1)]
            densities.append(float((inner > CELL_EDGE_THRESHOLD).mean()) if inner.size else 0.0)

    return densities, variances


def _count_edge_bands(grad: np.ndarray) -> int:
    # Every second column, interior rows only
    row_edges = (grad[1:-1, 1:-1:2] > ROW_EDGE_THRESHOLD).sum(axis=1).astype(float)
    if len(row_edges) == 0:
        return 0
    average = row_edges.mean()

    bands = 0
    for i in range(BAND_WINDOW, len(row_edges) - BAND_WINDOW):
        surround = (
            row_edges[i - BAND_WINDOW:i].sum() + row_edges[i + 1:i + 1 + BAND_WINDOW].sum()
        ) / (BAND_WINDOW * 2)
        if row_edges[i] > surround * 2 and row_edges[i] > average * 1.5:
            bands += 1
    return bands


def _analyze(image: Image.Image) -> tuple[int, list[str]]:
    width, height = image.size
    scale = min(1.0, ANALYSIS_WIDTH / width)
    size = (max(1, round(width * scale)), max(1, round(height * scale)))
    resized = image.resize(size)
    grey = np.asarray(resized.convert("L"), dtype=np.float64)
    colour = np.asarray(resized.convert("RGB"), dtype=np.float64)
    a_h, a_w = grey.shape

    score = 0
    reasons: list[str] = []
    grad = _gradient(grey)

    # Grid scan
    densities, variances = _grid_cells(grey, grad)
    avg_density = sum(densities) / len(densities)
    avg_variance = sum(variances) / len(variances)
    anomalous = sum(
        1 for d, v in zip(densities, variances)
        if d > avg_density * 1.6 and v < avg_variance * 1.3
    )
    if anomalous >= 3:
        score += 30
        reasons.append(f"{anomalous}/9 grid cells with text-like edge patterns")
    elif anomalous >= 2:
        score += 15
        reasons.append(f"{anomalous}/9 grid cells with text-like edge patterns")

    # Center zone vs outer corner
    cy, cx = int(a_h * 0.3), int(a_w * 0.3)
    ch, cw = int(a_h * 0.4), int(a_w * 0.4)
    center_sat = _saturation(colour[cy:cy + ch, cx:cx + cw])
    outer_sat = _saturation(colour[:int(a_h * 0.25), :int(a_w * 0.25)])
    if outer_sat > 15 and center_sat < outer_sat * 0.65:
        score += 25
        reasons.append(f"center desaturated vs outer ({center_sat:.1f} vs {outer_sat:.1f})")

    center_contrast = float(grey[cy:cy + ch, cx:cx + cw].std()) if ch and cw else 0.0
    full_contrast = float(grey.reshape(-1)[::3].std())
    if full_contrast > 20 and center_contrast < full_contrast * 0.6:
        score += 20
        reasons.append(f"center contrast reduced ({center_contrast:.1f} vs {full_contrast:.1f} full)")

    # Text-line banding
    bands = _count_edge_bands(grad)
    if bands > 15:
        score += 25
        reasons.append(f"{bands} horizontal edge bands (text-like)")
    elif bands > 8:
        score += 15
        reasons.append(f"{bands} horizontal edge bands")

    # Tiling
    elevated = [i for i, d in enumerate(densities) if d > avg_density * 1.3]
    if len(elevated) >= 4:
        rows = {i // GRID_SIZE for i in elevated}
        cols = {i % GRID_SIZE for i in elevated}
        if len(rows) >= 2 and len(cols) >= 2:
            score += 20
            reasons.append(
                f"repeating pattern: {len(elevated)} elevated cells across {len(rows)} rows, {len(cols)} cols"
            )

    return min(100, score), reasons


def detect_watermark(data: bytes) -> WatermarkResult:
    """
    Estimate watermark confidence for an encoded image.

    Never raises: undecodable input scores 0 with the error as the reason.

    Args:
        data: Encoded image bytes (any format Pillow reads)

    Returns:
        WatermarkResult with a 0-100 score and "; "-joined reasons ("clean" if none)
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            width, height = image.size
            if width < MIN_ANALYSIS_DIMENSION or height < MIN_ANALYSIS_DIMENSION:
                return WatermarkResult(0, "image too small for watermark detection")
            score, reasons = _analyze(image)
    except Exception as e:
        logger.debug(f"Watermark detection failed: {e}")
        return WatermarkResult(0, f"error: {e}")

    reason = "; ".join(reasons) if reasons else "clean"
    if score >= 30:
        logger.info(f"Watermark score {score}: {reason}")
    return WatermarkResult(score, reason)
