"""Order submission and retry on top of the repository and job runner."""

import logging
import re
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Optional

from sku_studio.config import settings
from sku_studio.db.repository import OrderRepository, RetryPlan
from sku_studio.errors import InsufficientBalanceError
from sku_studio.worker.job_runner import JobResult, ScrapeJobRunner

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\n\r,;\t]+")
_IDENTIFIER = re.compile(r"\d{8,14}")


def parse_identifiers(text: str) -> list[str]:
    """
    Extract SKU/UPC/EAN codes from free text.

    The text is split on newlines, commas, semicolons and tabs, and every run
    of 8-14 digits in each part is taken. Duplicates are dropped, first
    occurrence wins.
    """
    found: list[str] = []
    for part in _SEPARATORS.split(text):
        part = part.strip()
        if part:
            found.extend(_IDENTIFIER.findall(part))
    return list(dict.fromkeys(found))


@dataclass
class SubmittedOrder:
    order_id: int
    identifiers_to_process: list[str]
    skipped: int
    charged_amount: Decimal

    @property
    def is_partial(self) -> bool:
        return self.skipped > 0

    @property
    def message(self) -> str:
        processing = len(self.identifiers_to_process)
        if self.is_partial:
            total = processing + self.skipped
            return f"Processing {processing} of {total} identifiers due to insufficient balance."
        return f"Processing {processing} identifiers."


class OrderService:
    """Charges, creates and retries orders; hands the work to the job runner."""

    def __init__(
        self,
        repository: OrderRepository,
        runner: Optional[ScrapeJobRunner] = None,
        price: Optional[Decimal] = None,
    ):
        self.repository = repository
        self.runner = runner
        self.price = Decimal(price if price is not None else settings.price_per_identifier)

    def affordable_count(self, balance: Decimal) -> int:
        return int((Decimal(balance) / self.price).to_integral_value(rounding=ROUND_FLOOR))

    async def submit_order(self, user_id: int, identifiers: list[str]) -> SubmittedOrder:
        """
        Create an order for as many identifiers as the balance covers.

        Args:
            user_id: Paying user
            identifiers: Identifiers in submission order (must not be empty);
                repeats are dropped, first occurrence wins

        Returns:
            SubmittedOrder

        Raises:
            ValueError: no identifiers
            InsufficientBalanceError: not even one identifier is affordable
        """
        identifiers = list(dict.fromkeys(identifiers))
        if not identifiers:
            raise ValueError("At least one identifier is required")

        balance = await self.repository.get_balance(user_id)
        affordable = min(self.affordable_count(balance), len(identifiers))
        if affordable == 0:
            raise InsufficientBalanceError(balance, self.price)

        order = await self.repository.create_order(user_id, identifiers, affordable, self.price)
        return SubmittedOrder(
            order_id=order.id,
            identifiers_to_process=list(identifiers[:affordable]),
            skipped=len(identifiers) - affordable,
            charged_amount=Decimal(order.charged_amount),
        )

    async def retry_order(self, order_id: int) -> RetryPlan:
        """Reset a finished order's unfinished items and return what to re-run."""
        return await self.repository.reset_for_retry(order_id, self.price)

    async def run_order(self, order_id: int, identifiers: list[str]) -> JobResult:
        """Run the scrape job for an order; meant to be scheduled in the background."""
        if self.runner is None:
            raise RuntimeError("OrderService has no job runner")

        async def log_progress(processed: int, total: int) -> None:
            logger.info(f"Order {order_id}: processed {processed}/{total} identifiers")

        return await self.runner.run_scrape_job(order_id, identifiers, on_progress=log_progress)
