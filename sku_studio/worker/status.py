"""Terminal order status from aggregate item outcomes."""

from sku_studio.db.models import OrderStatus


def compute_order_status(total_items: int, failed_items: int, total_images: int) -> str:
    """
    Resolve an order's terminal status.

    Zero images is checked first: an order that delivered nothing is failed
    even if no item reported a failure.

    Args:
        total_items: Items attempted (skipped items excluded)
        failed_items: Items that ended failed
        total_images: Images delivered across the order

    Returns:
        failed, partial or completed
    """
    if total_images == 0:
        return OrderStatus.FAILED
    if failed_items >= total_items:
        return OrderStatus.FAILED
    if failed_items > 0:
        return OrderStatus.PARTIAL
    return OrderStatus.COMPLETED
