"""Heuristic image quality scoring and selection.

Scores are a pure function of the candidate's bytes and metadata: a base of
50 plus the deltas of every rule in SCORING_RULES that applies, clamped to
0-100. Pixel-statistics and watermark rules only run when the imaging
capabilities include pixel analysis; without it the score degrades to the
size, dimension, aspect-ratio and URL rules, with dimensions read from file
headers.
"""

import io
import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional

from PIL import Image, ImageStat

from sku_studio.config import settings
from sku_studio.imaging.probe import probe_image
from sku_studio.imaging.watermark import detect_watermark

logger = logging.getLogger(__name__)

BASE_SCORE = 50

PRODUCT_URL_KEYWORDS = (
    "product", "item", "perfume", "fragrance", "cologne", "eau", "spray",
    "bottle", "main", "hero", "primary", "large", "zoom", "full", "hires",
)

# "Already HQ": big enough to skip upscaling
HQ_MIN_DIMENSION = 1500
HQ_MIN_KB = 80


@dataclass(frozen=True)
class ImagingCapabilities:
    """What the scorer may rely on when analysing bytes."""

    pixel_analysis: bool = True

    @classmethod
    def from_settings(cls) -> "ImagingCapabilities":
        return cls(pixel_analysis=settings.pixel_analysis_enabled)


@dataclass
class CandidateImage:
    """A downloaded, not yet selected image. Never persisted."""

    source_url: str
    store_name: str
    data: bytes
    content_type: str
    width: int = 0
    height: int = 0
    quality_score: int = 0
    watermark_score: int = 0

    @property
    def size_kb(self) -> float:
        return len(self.data) / 1024

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0


@dataclass(frozen=True)
class ImageFeatures:
    """Everything a scoring rule can look at."""

    url: str
    size_kb: float
    width: int
    height: int
    channel_mean: Optional[float] = None
    channel_std: Optional[float] = None
    watermark_score: Optional[int] = None

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.height else 0.0


@dataclass(frozen=True)
class ScoringRule:
    name: str
    applies: Callable[[ImageFeatures], bool]
    delta: int
    requires_pixels: bool = False


def _has_dims(f: ImageFeatures) -> bool:
    return f.width > 0 and f.height > 0


def _url_has_product_keyword(f: ImageFeatures) -> bool:
    url = f.url.lower()
    return any(keyword in url for keyword in PRODUCT_URL_KEYWORDS)


def _small_side(f: ImageFeatures) -> bool:
    return _has_dims(f) and (f.width < 200 or f.height < 200)


SCORING_RULES: list[ScoringRule] = [
    # File size brackets
    ScoringRule("tiny_file", lambda f: f.size_kb < 5, -50),
    ScoringRule("small_file", lambda f: 5 <= f.size_kb < 15, -20),
    ScoringRule("sizeable_file", lambda f: 50 <= f.size_kb < 100, 15),
    ScoringRule("large_file", lambda f: f.size_kb >= 100, 25),
    # Dimension brackets
    ScoringRule("small_dimensions", _small_side, -40),
    ScoringRule(
        "medium_dimensions",
        lambda f: not _small_side(f) and f.width >= 500 and f.height >= 500
        and not (f.width >= 800 and f.height >= 800),
        15,
    ),
    ScoringRule("large_dimensions", lambda f: f.width >= 800 and f.height >= 800, 30),
    # Bottles photograph square or portrait
    ScoringRule("near_square", lambda f: _has_dims(f) and 0.6 <= f.aspect_ratio <= 1.2, 20),
    ScoringRule(
        "extreme_aspect",
        lambda f: _has_dims(f) and (f.aspect_ratio > 2.5 or f.aspect_ratio < 0.4),
        -30,
    ),
    ScoringRule("product_url", _url_has_product_keyword, 5),
    # Pixel statistics
    ScoringRule(
        "flat_pixels",
        lambda f: f.channel_std is not None and f.channel_std < 10,
        -30,
        requires_pixels=True,
    ),
    ScoringRule(
        "detailed_pixels",
        lambda f: f.channel_std is not None and f.channel_std > 40,
        10,
        requires_pixels=True,
    ),
    ScoringRule(
        "bright_product_shot",
        lambda f: f.channel_mean is not None and f.channel_std is not None
        and f.channel_mean > 200 and f.channel_std > 30,
        15,
        requires_pixels=True,
    ),
    # Watermark penalty
    ScoringRule(
        "likely_watermark",
        lambda f: f.watermark_score is not None and f.watermark_score >= 60,
        -40,
        requires_pixels=True,
    ),
    ScoringRule(
        "possible_watermark",
        lambda f: f.watermark_score is not None and 40 <= f.watermark_score < 60,
        -20,
        requires_pixels=True,
    ),
]


def applied_rules(features: ImageFeatures, capabilities: ImagingCapabilities) -> list[ScoringRule]:
    return [
        rule for rule in SCORING_RULES
        if (capabilities.pixel_analysis or not rule.requires_pixels) and rule.applies(features)
    ]


def score_image(features: ImageFeatures, capabilities: Optional[ImagingCapabilities] = None) -> int:
    """Base score plus applicable rule deltas, clamped to 0-100."""
    capabilities = capabilities or ImagingCapabilities()
    total = BASE_SCORE + sum(rule.delta for rule in applied_rules(features, capabilities))
    return max(0, min(100, total))


def extract_features(
    candidate: CandidateImage, capabilities: ImagingCapabilities
) -> ImageFeatures:
    """
    Measure a candidate for scoring.

    With pixel analysis the image is decoded with Pillow for dimensions,
    channel statistics and the watermark score; otherwise dimensions come
    from the file header only.

    Args:
        candidate: Downloaded candidate
        capabilities: Imaging capability flags

    Returns:
        ImageFeatures
    """
    features = ImageFeatures(
        url=candidate.source_url,
        size_kb=candidate.size_kb,
        width=candidate.width,
        height=candidate.height,
    )

    if not capabilities.pixel_analysis:
        if not _has_dims(features):
            header = probe_image(candidate.data)
            if header:
                features = replace(features, width=header.width, height=header.height)
        return features

    try:
        with Image.open(io.BytesIO(candidate.data)) as image:
            rgb = image.convert("RGB")
            stat = ImageStat.Stat(rgb)
            features = replace(
                features,
                width=image.width,
                height=image.height,
                channel_mean=sum(stat.mean) / len(stat.mean),
                channel_std=sum(stat.stddev) / len(stat.stddev),
            )
    except Exception as e:
        logger.debug(f"Pixel stats unavailable for {candidate.source_url[:60]}: {e}")
        return features

    return replace(features, watermark_score=detect_watermark(candidate.data).score)


def is_already_hq(candidate: CandidateImage) -> bool:
    """Large enough on one side and heavy enough to skip super-resolution."""
    return (
        (candidate.width >= HQ_MIN_DIMENSION or candidate.height >= HQ_MIN_DIMENSION)
        and candidate.size_kb >= HQ_MIN_KB
    )


def dedupe_by_aspect_ratio(candidates: list[CandidateImage], tolerance: float) -> list[CandidateImage]:
    """Drop candidates whose aspect ratio is within ``tolerance`` of one already kept."""
    kept: list[CandidateImage] = []
    for candidate in candidates:
        if candidate.height and any(
            k.height and abs(candidate.aspect_ratio - k.aspect_ratio) <= tolerance for k in kept
        ):
            continue
        kept.append(candidate)
    return kept


def select_images(
    candidates: list[CandidateImage],
    capabilities: Optional[ImagingCapabilities] = None,
    min_score: Optional[int] = None,
    limit: Optional[int] = None,
    max_scored: Optional[int] = None,
    dedupe_tolerance: Optional[float] = None,
    watermark_reject: Optional[int] = None,
) -> list[CandidateImage]:
    """
    Score candidates and choose the ones to deliver.

    Only the first ``max_scored`` candidates are scored. Those at or above
    ``min_score`` and below ``watermark_reject`` are ranked by score; when
    none qualify, every scored candidate is ranked by size instead so an
    identifier with downloads never ends up empty. Near-identical aspect
    ratios are then collapsed and the top ``limit`` kept.

    Args:
        candidates: Downloaded candidates in discovery order
        capabilities: Imaging capability flags (settings when None)
        min_score: Quality bar
        limit: Images to keep
        max_scored: Candidates to score
        dedupe_tolerance: Aspect ratio tolerance for near-duplicates
        watermark_reject: Watermark score that disqualifies a candidate

    Returns:
        Selected candidates with quality and watermark scores filled in
    """
    capabilities = capabilities or ImagingCapabilities.from_settings()
    min_score = settings.min_quality_score if min_score is None else min_score
    limit = settings.max_images_per_identifier if limit is None else limit
    max_scored = settings.max_candidates_scored if max_scored is None else max_scored
    if dedupe_tolerance is None:
        dedupe_tolerance = settings.aspect_ratio_dedupe_tolerance
    if watermark_reject is None:
        watermark_reject = settings.watermark_reject_threshold

    scored: list[CandidateImage] = []
    for candidate in candidates[:max_scored]:
        features = extract_features(candidate, capabilities)
        candidate.width, candidate.height = features.width, features.height
        candidate.watermark_score = features.watermark_score or 0
        candidate.quality_score = score_image(features, capabilities)
        logger.debug(
            f"Scored {candidate.source_url[:60]}: {candidate.quality_score} "
            f"({candidate.width}x{candidate.height}, {candidate.size_kb:.0f}KB)"
        )
        scored.append(candidate)

    qualifying = sorted(
        (c for c in scored if c.quality_score >= min_score and c.watermark_score < watermark_reject),
        key=lambda c: c.quality_score,
        reverse=True,
    )
    if not qualifying and scored:
        logger.info(f"No candidate reached score {min_score}; falling back to largest downloads")
        qualifying = sorted(scored, key=lambda c: len(c.data), reverse=True)

    return dedupe_by_aspect_ratio(qualifying, dedupe_tolerance)[:limit]
