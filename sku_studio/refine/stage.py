"""Turn a selected candidate into a deliverable studio image."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from sku_studio.config import settings
from sku_studio.errors import UpscaleError
from sku_studio.imaging.quality import CandidateImage, is_already_hq
from sku_studio.refine.canvas import CanvasSpec, compose_on_canvas, get_canvas_spec
from sku_studio.refine.upscaler import ReplicateUpscaler, choose_upscale_factor

logger = logging.getLogger(__name__)


@dataclass
class RefinedImage:
    data: bytes
    content_type: str
    extension: str
    width: int
    height: int
    was_upscaled: bool = False
    upscale_factor: int = 0
    cost: float = 0.0

    @property
    def size_kb(self) -> int:
        return round(len(self.data) / 1024)


class RefinementStage:
    """Optional super-resolution followed by canvas compositing.

    The output mode is fixed per stage instance. Compressed output never
    calls the upscaler.
    """

    def __init__(
        self,
        mode: Optional[str] = None,
        upscaler: Optional[ReplicateUpscaler] = None,
        cost_per_upscale: Optional[float] = None,
    ):
        self.mode = mode or settings.output_mode
        self.spec: CanvasSpec = get_canvas_spec(self.mode)
        self.upscaler = upscaler or ReplicateUpscaler()
        self.cost_per_upscale = (
            settings.upscale_cost_per_image if cost_per_upscale is None else cost_per_upscale
        )

    def upscale_factor_for(self, candidate: CandidateImage) -> int:
        if not self.spec.upscale or not self.upscaler.enabled or is_already_hq(candidate):
            return 0
        return choose_upscale_factor(candidate.width, candidate.height)

    async def refine(self, candidate: CandidateImage, steps: Optional[list[str]] = None) -> Optional[RefinedImage]:
        """
        Upscale (when worthwhile) and composite one candidate.

        Upscaler failures fall back to the original bytes. Returns None only
        when the image cannot be composited at all, in which case the caller
        delivers the original download.

        Args:
            candidate: Selected candidate with dimensions filled in
            steps: Optional processing trail to append to

        Returns:
            RefinedImage or None
        """
        steps = steps if steps is not None else []
        source = candidate.data
        factor = self.upscale_factor_for(candidate)
        upscaled = False

        if factor:
            try:
                source = await self.upscaler.upscale(candidate.source_url, factor)
                upscaled = True
                steps.append(f"Upscaled {candidate.width}x{candidate.height} by {factor}x")
            except UpscaleError as e:
                logger.warning(f"Upscale failed for {candidate.source_url[:60]}, using original: {e}")
                steps.append(f"Upscale failed ({e}); kept original")
        elif self.spec.upscale and is_already_hq(candidate):
            steps.append(f"Already HQ at {candidate.width}x{candidate.height}")

        try:
            data = await asyncio.to_thread(compose_on_canvas, source, self.spec)
        except (OSError, ValueError) as e:
            if not upscaled:
                logger.warning(f"Could not composite {candidate.source_url[:60]}: {e}")
                return None
            # Upscaled output unreadable, retry with the original download
            logger.warning(f"Upscaled image unreadable, compositing original: {e}")
            upscaled = False
            try:
                data = await asyncio.to_thread(compose_on_canvas, candidate.data, self.spec)
            except (OSError, ValueError) as e2:
                logger.warning(f"Could not composite {candidate.source_url[:60]}: {e2}")
                return None

        steps.append(f"Composited onto {self.spec.size}x{self.spec.size} {self.mode} canvas")
        return RefinedImage(
            data=data,
            content_type=self.spec.content_type,
            extension=self.spec.extension,
            width=self.spec.size,
            height=self.spec.size,
            was_upscaled=upscaled,
            upscale_factor=factor if upscaled else 0,
            cost=self.cost_per_upscale if upscaled else 0.0,
        )
