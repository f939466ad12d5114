"""Zip archive of an order's delivered images."""

import asyncio
import io
import logging
import zipfile
from pathlib import PurePosixPath
from typing import Iterable, Optional

from sku_studio.db.models import OrderItem
from sku_studio.db.repository import StoredImage
from sku_studio.errors import StorageError
from sku_studio.storage.object_store import ObjectStorage, archive_key, safe_key_part
from sku_studio.worker.pipeline import Deliverable, IdentifierResult

logger = logging.getLogger(__name__)


def build_order_archive(results: Iterable[IdentifierResult]) -> Optional[bytes]:
    """
    Zip every delivered image, one folder per identifier.

    Args:
        results: Identifier results of the job

    Returns:
        Zip bytes, or None when no identifier delivered an image
    """
    buffer = io.BytesIO()
    files = 0
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=5) as archive:
        for result in results:
            if not result.deliverables:
                continue
            folder = safe_key_part(result.identifier)
            counters: dict[str, int] = {}
            for deliverable in result.deliverables:
                store = safe_key_part(deliverable.stored.store_name or "image")
                counters[store] = counters.get(store, 0) + 1
                archive.writestr(f"{folder}/{store}_{counters[store]}.{deliverable.extension}", deliverable.data)
                files += 1

    if not files:
        return None
    logger.info(f"Built order archive with {files} file(s), {buffer.tell() / 1024:.1f}KB")
    return buffer.getvalue()


async def restore_result(item: OrderItem, storage: ObjectStorage) -> IdentifierResult:
    """
    Rebuild a finished item's deliverables from its stored images.

    Used for items completed by an earlier attempt of a retried order. An
    image that can no longer be read is left out of the result.
    """
    result = IdentifierResult(identifier=item.identifier)
    for image in sorted(item.images, key=lambda image: image.id):
        try:
            data = await storage.get(image.storage_key)
        except StorageError as e:
            logger.warning(f"Item {item.identifier}: stored image unavailable, leaving it out of the archive: {e}")
            result.errors.append(str(e))
            continue
        stored = StoredImage(
            storage_key=image.storage_key,
            url=image.url,
            width=image.width,
            height=image.height,
            size_kb=image.size_kb,
            source_url=image.source_url,
            store_name=image.store_name,
            is_high_quality=image.is_high_quality,
            was_upscaled=image.was_upscaled,
            quality_score=image.quality_score,
            watermark_score=image.watermark_score,
        )
        extension = PurePosixPath(image.storage_key).suffix.lstrip(".") or "jpg"
        result.deliverables.append(Deliverable(stored=stored, data=data, extension=extension))
    return result


async def package_order(
    order_id: int,
    results: list[IdentifierResult],
    storage: ObjectStorage,
    carried_items: Iterable[OrderItem] = (),
) -> Optional[str]:
    """
    Build and upload the archive.

    Args:
        order_id: Order being packaged
        results: Identifier results of this run
        storage: Where the archive (and earlier images) live
        carried_items: Items completed by earlier attempts, packaged ahead of ``results``

    Returns:
        The archive URL, or None if there was nothing to package
    """
    carried = [await restore_result(item, storage) for item in carried_items]
    data = await asyncio.to_thread(build_order_archive, carried + list(results))
    if data is None:
        return None
    return await storage.put(archive_key(order_id), data, "application/zip")
