"""Per-identifier fetch, score, refine and store pipeline."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

from sku_studio import metrics
from sku_studio.db.models import ItemStatus
from sku_studio.db.repository import StoredImage
from sku_studio.errors import StorageError
from sku_studio.imaging.quality import CandidateImage, ImagingCapabilities, select_images
from sku_studio.ingest.scrape_coordinator import ScrapeCoordinator
from sku_studio.refine.stage import RefinedImage, RefinementStage
from sku_studio.storage.object_store import ObjectStorage, image_key

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


@dataclass
class Deliverable:
    """A stored image plus the bytes the order archive needs."""

    stored: StoredImage
    data: bytes
    extension: str


@dataclass
class IdentifierResult:
    identifier: str
    deliverables: list[Deliverable] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    processing_steps: list[str] = field(default_factory=list)
    estimated_cost: float = 0.0

    @property
    def images(self) -> list[StoredImage]:
        return [d.stored for d in self.deliverables]

    @property
    def images_found(self) -> int:
        return len(self.deliverables)

    @property
    def status(self) -> str:
        return ItemStatus.COMPLETED if self.deliverables else ItemStatus.FAILED

    @property
    def error_message(self) -> Optional[str]:
        if self.deliverables:
            return "; ".join(self.errors) or None
        if self.errors:
            return "No images found. " + "; ".join(self.errors)
        return "No images found"


class IdentifierPipeline:
    """Scrape Coordinator -> Scorer -> Refinement Stage -> object storage."""

    def __init__(
        self,
        coordinator: ScrapeCoordinator,
        refinement: RefinementStage,
        storage: ObjectStorage,
        capabilities: Optional[ImagingCapabilities] = None,
    ):
        self.coordinator = coordinator
        self.refinement = refinement
        self.storage = storage
        self.capabilities = capabilities or ImagingCapabilities.from_settings()

    async def _deliver(
        self, identifier: str, index: int, candidate: CandidateImage, refined: Optional[RefinedImage]
    ) -> Deliverable:
        if refined is not None:
            data, content_type, extension = refined.data, refined.content_type, refined.extension
            width, height, size_kb = refined.width, refined.height, refined.size_kb
        else:
            data, content_type = candidate.data, candidate.content_type
            extension = _EXTENSIONS.get(content_type, "jpg")
            width, height, size_kb = candidate.width, candidate.height, round(candidate.size_kb)

        key = image_key(identifier, candidate.store_name, index, extension)
        url = await self.storage.put(key, data, content_type)
        stored = StoredImage(
            storage_key=key,
            url=url,
            width=width,
            height=height,
            size_kb=size_kb,
            source_url=candidate.source_url,
            store_name=candidate.store_name,
            is_high_quality=candidate.quality_score >= 60,
            was_upscaled=bool(refined and refined.was_upscaled),
            quality_score=candidate.quality_score,
            watermark_score=candidate.watermark_score,
        )
        return Deliverable(stored=stored, data=data, extension=extension)

    async def process(self, identifier: str) -> IdentifierResult:
        """
        Produce the deliverable images for one identifier.

        Store, download, upscale and per-image storage failures are recovered
        here and show up as error strings; anything else propagates to the
        job runner.

        Args:
            identifier: SKU/UPC/EAN

        Returns:
            IdentifierResult (completed when at least one image was stored)
        """
        result = IdentifierResult(identifier=identifier)
        steps = result.processing_steps

        scrape = await self.coordinator.scrape_identifier(identifier)
        result.errors.extend(scrape.errors)
        if scrape.product is not None and scrape.product.found:
            steps.append(f"Identified as {scrape.product.product_name} ({scrape.product.brand})")
        steps.append(
            f"Scraped {len(scrape.store_results)} stores: {scrape.unique_urls} unique URLs, "
            f"{len(scrape.candidates)} downloads passed"
        )

        if not scrape.candidates:
            metrics.record_identifier(ItemStatus.FAILED)
            return result

        selected = await asyncio.to_thread(select_images, scrape.candidates, self.capabilities)
        steps.append(
            "Selected " + ", ".join(f"{c.store_name} ({c.quality_score})" for c in selected)
        )

        refined = await asyncio.gather(
            *(self.refinement.refine(candidate, steps) for candidate in selected)
        )

        for index, (candidate, refined_image) in enumerate(zip(selected, refined), start=1):
            try:
                deliverable = await self._deliver(identifier, index, candidate, refined_image)
            except StorageError as e:
                logger.warning(f"[{identifier}] Could not store image from {candidate.store_name}: {e}")
                result.errors.append(str(e))
                continue
            result.deliverables.append(deliverable)
            if refined_image is not None:
                result.estimated_cost += refined_image.cost

        steps.append(f"Stored {result.images_found} image(s), estimated cost ${result.estimated_cost:.4f}")
        metrics.record_identifier(result.status)
        logger.info(f"[{identifier}] {result.images_found} image(s) delivered")
        return result
