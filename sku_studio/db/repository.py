"""Order, item and balance persistence operations.

Every public method opens its own short session so that callers (the job
runner, the sweeper, request handlers) can retry individual writes without
sharing transaction state. Status transitions are compare-and-set updates and
balance changes are single atomic UPDATE statements.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from sku_studio.db.models import (
    BalanceTransaction,
    ItemStatus,
    OrderItem,
    OrderStatus,
    ProcessedImage,
    ScrapeOrder,
    TransactionType,
    User,
)
from sku_studio.errors import InsufficientBalanceError, OrderNotFoundError, OrderStateError

logger = logging.getLogger(__name__)


@dataclass
class StoredImage:
    """Image already written to object storage, ready to be recorded."""

    storage_key: str
    url: str
    width: int
    height: int
    size_kb: int
    source_url: Optional[str] = None
    store_name: Optional[str] = None
    is_high_quality: bool = False
    was_upscaled: bool = False
    quality_score: int = 0
    watermark_score: int = 0


@dataclass
class RetryPlan:
    """Outcome of resetting an order for another attempt."""

    order_id: int
    attempt: int
    identifiers: list[str]
    charged: Decimal


async def _debit(db: AsyncSession, user_id: int, amount: Decimal) -> bool:
    """Conditionally decrement a balance; False when funds are short."""
    result = await db.execute(
        update(User)
        .where(User.id == user_id, User.balance >= amount)
        .values(balance=User.balance - amount)
    )
    return result.rowcount == 1


async def _credit(db: AsyncSession, user_id: int, amount: Decimal) -> None:
    await db.execute(
        update(User).where(User.id == user_id).values(balance=User.balance + amount)
    )


class OrderRepository:
    """Persistence operations used by the order service, job runner and sweeper."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Users and balance
    # ------------------------------------------------------------------

    async def create_user(self, email: str, balance: Decimal = Decimal("0.00")) -> User:
        async with self._session_factory() as db:
            user = User(email=email, balance=balance)
            db.add(user)
            await db.commit()
            await db.refresh(user)
            return user

    async def get_balance(self, user_id: int) -> Decimal:
        async with self._session_factory() as db:
            balance = await db.scalar(select(User.balance).where(User.id == user_id))
            if balance is None:
                raise LookupError(f"User {user_id} not found")
            return Decimal(balance)

    async def top_up(self, user_id: int, amount: Decimal, description: str = "Top-up") -> None:
        """Credit a balance and record the ledger entry in one transaction."""
        async with self._session_factory() as db:
            await _credit(db, user_id, amount)
            db.add(BalanceTransaction(
                user_id=user_id,
                type=TransactionType.TOPUP,
                amount=amount,
                description=description,
            ))
            await db.commit()

    # ------------------------------------------------------------------
    # Orders
    # ------------------------------------------------------------------

    async def create_order(
        self,
        user_id: int,
        identifiers: list[str],
        affordable: int,
        price: Decimal,
    ) -> ScrapeOrder:
        """Create an order in ``processing`` and charge for the affordable items.

        Repeated identifiers collapse into one item.
        Items past ``affordable`` are created as ``skipped`` and never run.

        Raises:
            InsufficientBalanceError: if the balance dropped below the charge
                between the affordability check and the debit.
        """
        identifiers = list(dict.fromkeys(identifiers))
        affordable = min(affordable, len(identifiers))
        charge = price * affordable
        async with self._session_factory() as db:
            if not await _debit(db, user_id, charge):
                await db.rollback()
                balance = await db.scalar(select(User.balance).where(User.id == user_id))
                raise InsufficientBalanceError(balance, price)

            now = datetime.utcnow()
            order = ScrapeOrder(
                user_id=user_id,
                identifiers=list(identifiers),
                status=OrderStatus.PROCESSING,
                total_items=len(identifiers),
                processed_items=0,
                total_amount=price * len(identifiers),
                charged_amount=charge,
                attempt=1,
                started_at=now,
            )
            order.items = [
                OrderItem(
                    position=i,
                    identifier=identifier,
                    status=ItemStatus.PENDING if i < affordable else ItemStatus.SKIPPED,
                    error_message=None if i < affordable else "Insufficient balance",
                )
                for i, identifier in enumerate(identifiers)
            ]
            db.add(order)
            await db.flush()

            db.add(BalanceTransaction(
                user_id=user_id,
                order_id=order.id,
                attempt=1,
                type=TransactionType.CHARGE,
                amount=charge,
                description=f"Order #{order.id}: {affordable} identifier(s)",
            ))
            await db.commit()
            await db.refresh(order, ["items"])

            logger.info(
                f"Created order {order.id} for user {user_id}: "
                f"{affordable}/{len(identifiers)} identifiers charged ${charge}"
            )
            return order

    async def get_order(self, order_id: int) -> ScrapeOrder:
        async with self._session_factory() as db:
            order = await db.scalar(
                select(ScrapeOrder)
                .where(ScrapeOrder.id == order_id)
                .options(selectinload(ScrapeOrder.items).selectinload(OrderItem.images))
            )
            if order is None:
                raise OrderNotFoundError(order_id)
            return order

    async def get_items(self, order_id: int) -> list[OrderItem]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderItem)
                .where(OrderItem.order_id == order_id)
                .order_by(OrderItem.position)
            )
            return list(result.scalars().all())

    async def transition_order(self, order_id: int, new_status: str, **fields) -> bool:
        """Move an order out of ``processing``.

        Compare-and-set: only succeeds while the order is still ``processing``,
        so a late writer can never overwrite a terminal state.

        Returns:
            True if this call performed the transition
        """
        values = {"status": new_status, **fields}
        if new_status in OrderStatus.TERMINAL:
            values.setdefault("completed_at", datetime.utcnow())

        async with self._session_factory() as db:
            result = await db.execute(
                update(ScrapeOrder)
                .where(
                    ScrapeOrder.id == order_id,
                    ScrapeOrder.status == OrderStatus.PROCESSING,
                )
                .values(**values)
            )
            await db.commit()
            return result.rowcount == 1

    async def set_progress(self, order_id: int, processed_items: int, total_images: int) -> None:
        async with self._session_factory() as db:
            await db.execute(
                update(ScrapeOrder)
                .where(
                    ScrapeOrder.id == order_id,
                    ScrapeOrder.status == OrderStatus.PROCESSING,
                )
                .values(processed_items=processed_items, total_images=total_images)
            )
            await db.commit()

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def mark_item_processing(self, order_id: int, identifier: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(OrderItem)
                .where(
                    OrderItem.order_id == order_id,
                    OrderItem.identifier == identifier,
                    OrderItem.status == ItemStatus.PENDING,
                )
                .values(status=ItemStatus.PROCESSING)
            )
            await db.commit()
            return result.rowcount > 0

    async def finish_item(
        self,
        order_id: int,
        identifier: str,
        status: str,
        images_found: int,
        error_message: Optional[str] = None,
        processing_steps: Optional[list] = None,
        estimated_cost: float = 0.0,
    ) -> bool:
        """Record an item's outcome.

        Only open (pending/processing) items are updated, which keeps items
        that a timeout or the sweeper already failed from being resurrected.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(OrderItem)
                .where(
                    OrderItem.order_id == order_id,
                    OrderItem.identifier == identifier,
                    OrderItem.status.in_(ItemStatus.OPEN),
                )
                .values(
                    status=status,
                    images_found=images_found,
                    error_message=error_message,
                    processing_steps=processing_steps,
                    estimated_cost=estimated_cost,
                    completed_at=datetime.utcnow(),
                )
            )
            await db.commit()
            return result.rowcount > 0

    async def save_images(self, order_id: int, identifier: str, images: Iterable[StoredImage]) -> int:
        images = list(images)
        if not images:
            return 0
        async with self._session_factory() as db:
            item_id = await db.scalar(
                select(OrderItem.id).where(
                    OrderItem.order_id == order_id,
                    OrderItem.identifier == identifier,
                )
            )
            if item_id is None:
                raise LookupError(f"Order {order_id} has no item {identifier}")
            for image in images:
                db.add(ProcessedImage(
                    order_item_id=item_id,
                    storage_key=image.storage_key,
                    url=image.url,
                    source_url=image.source_url,
                    store_name=image.store_name,
                    width=image.width,
                    height=image.height,
                    size_kb=image.size_kb,
                    is_high_quality=image.is_high_quality,
                    was_upscaled=image.was_upscaled,
                    quality_score=image.quality_score,
                    watermark_score=image.watermark_score,
                ))
            await db.commit()
            return len(images)

    async def fail_open_items(self, order_id: int, error_message: str) -> int:
        """Fail every pending/processing item of an order."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(OrderItem)
                .where(
                    OrderItem.order_id == order_id,
                    OrderItem.status.in_(ItemStatus.OPEN),
                )
                .values(
                    status=ItemStatus.FAILED,
                    error_message=error_message,
                    completed_at=datetime.utcnow(),
                )
            )
            await db.commit()
            return result.rowcount

    # ------------------------------------------------------------------
    # Refunds and recovery
    # ------------------------------------------------------------------

    async def refund_order(self, order_id: int, reason: str = "Order failed") -> Optional[Decimal]:
        """Credit back what the current attempt of a failed order charged.

        Idempotent per (order, attempt): the ledger's unique constraint
        rejects a second refund row, in which case nothing is credited.

        Returns:
            The refunded amount, or None when no refund was issued
        """
        async with self._session_factory() as db:
            order = await db.get(ScrapeOrder, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            if order.status != OrderStatus.FAILED:
                logger.warning(f"Refusing refund for order {order_id} in status {order.status}")
                return None

            amount = Decimal(order.charged_amount or 0)
            if amount <= 0:
                return None

            existing = await db.scalar(
                select(BalanceTransaction.id).where(
                    BalanceTransaction.order_id == order_id,
                    BalanceTransaction.attempt == order.attempt,
                    BalanceTransaction.type == TransactionType.REFUND,
                )
            )
            if existing is not None:
                logger.info(f"Order {order_id} attempt {order.attempt} already refunded")
                return None

            try:
                db.add(BalanceTransaction(
                    user_id=order.user_id,
                    order_id=order_id,
                    attempt=order.attempt,
                    type=TransactionType.REFUND,
                    amount=amount,
                    description=f"Refund for order #{order_id}: {reason}",
                ))
                await db.flush()
                await _credit(db, order.user_id, amount)
                order.refunded_at = datetime.utcnow()
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info(f"Order {order_id} refund lost the race to a concurrent refund")
                return None

            logger.info(f"Refunded ${amount} to user {order.user_id} for order {order_id}")
            return amount

    async def count_refunds(self, order_id: int) -> int:
        async with self._session_factory() as db:
            return await db.scalar(
                select(func.count(BalanceTransaction.id)).where(
                    BalanceTransaction.order_id == order_id,
                    BalanceTransaction.type == TransactionType.REFUND,
                )
            )

    async def find_stuck_orders(self, threshold_seconds: int) -> list[int]:
        """Orders still ``processing`` whose current attempt started too long ago."""
        cutoff = datetime.utcnow() - timedelta(seconds=threshold_seconds)
        async with self._session_factory() as db:
            result = await db.execute(
                select(ScrapeOrder.id).where(
                    ScrapeOrder.status == OrderStatus.PROCESSING,
                    func.coalesce(ScrapeOrder.started_at, ScrapeOrder.created_at) < cutoff,
                )
            )
            return list(result.scalars().all())

    async def reset_for_retry(self, order_id: int, price: Decimal) -> RetryPlan:
        """Put a terminal order back into ``processing`` for another attempt.

        Exactly the pending/processing/failed items are reset to pending;
        completed and skipped items are untouched and no rows are added. If
        the previous attempt was refunded, the reset items are charged again.

        Raises:
            OrderNotFoundError: unknown order
            OrderStateError: order still running or has nothing to retry
            InsufficientBalanceError: a re-charge is needed and funds are short
        """
        async with self._session_factory() as db:
            order = await db.scalar(
                select(ScrapeOrder)
                .where(ScrapeOrder.id == order_id)
                .options(selectinload(ScrapeOrder.items))
            )
            if order is None:
                raise OrderNotFoundError(order_id)
            if not order.is_terminal:
                raise OrderStateError(f"Order {order_id} is {order.status}; only finished orders can be retried")

            to_reset = [item for item in order.items if item.status in ItemStatus.RETRYABLE]
            if not to_reset:
                raise OrderStateError(f"Order {order_id} has no failed items to retry")

            attempt = order.attempt + 1
            charge = Decimal("0.00")
            if order.refunded_at is not None:
                charge = price * len(to_reset)
                if not await _debit(db, order.user_id, charge):
                    await db.rollback()
                    balance = await db.scalar(select(User.balance).where(User.id == order.user_id))
                    raise InsufficientBalanceError(balance, price)
                db.add(BalanceTransaction(
                    user_id=order.user_id,
                    order_id=order_id,
                    attempt=attempt,
                    type=TransactionType.CHARGE,
                    amount=charge,
                    description=f"Retry of order #{order_id}: {len(to_reset)} identifier(s)",
                ))

            for item in to_reset:
                item.status = ItemStatus.PENDING
                item.images_found = 0
                item.error_message = None
                item.completed_at = None

            completed = [item for item in order.items if item.status == ItemStatus.COMPLETED]
            order.status = OrderStatus.PROCESSING
            order.attempt = attempt
            order.charged_amount = charge
            order.refunded_at = None
            order.error_message = None
            order.completed_at = None
            order.started_at = datetime.utcnow()
            order.processed_items = len(completed)
            await db.commit()

            identifiers = [item.identifier for item in sorted(to_reset, key=lambda i: i.position)]
            logger.info(f"Order {order_id} reset for attempt {attempt}: {len(identifiers)} identifier(s)")
            return RetryPlan(order_id=order_id, attempt=attempt, identifiers=identifiers, charged=charge)
