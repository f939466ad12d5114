"""Exception types shared across the pipeline."""

from typing import Optional


class StudioSourcingError(Exception):
    """Base class for pipeline errors."""


class InsufficientBalanceError(StudioSourcingError):
    """User cannot afford a single identifier."""

    def __init__(self, balance, price):
        self.balance = balance
        self.price = price
        super().__init__(
            f"Insufficient balance. You need at least ${price} to process 1 identifier. "
            f"Current balance: ${balance}"
        )


class OrderNotFoundError(StudioSourcingError):
    def __init__(self, order_id: int):
        self.order_id = order_id
        super().__init__(f"Order {order_id} not found")


class OrderStateError(StudioSourcingError):
    """Operation not allowed in the order's current status."""


class StoreScrapeError(StudioSourcingError):
    """Labelled per-store failure; never fails the identifier."""

    def __init__(self, store_name: str, reason: str):
        self.store_name = store_name
        self.reason = reason
        super().__init__(f"{store_name}: {reason}")


class ImageDownloadError(StudioSourcingError):
    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Download failed for {url[:80]}: {reason}")


class UpscaleError(StudioSourcingError):
    """Super-resolution call failed."""


class UpscaleRateLimitedError(UpscaleError):
    """Inference service answered 429."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class StorageError(StudioSourcingError):
    """Object storage write failed."""
