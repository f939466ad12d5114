"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class OrderStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    TERMINAL = (COMPLETED, PARTIAL, FAILED)


class ItemStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    OPEN = (PENDING, PROCESSING)
    RETRYABLE = (PENDING, PROCESSING, FAILED)


class TransactionType:
    TOPUP = "topup"
    CHARGE = "charge"
    REFUND = "refund"


class User(Base):
    """Account holding a prepaid balance."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    orders: Mapped[list["ScrapeOrder"]] = relationship("ScrapeOrder", back_populates="user")


class ScrapeOrder(Base):
    """Batch of identifiers submitted together."""

    __tablename__ = "scrape_orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    identifiers: Mapped[list] = mapped_column(JSON, nullable=False)  # Submission order
    status: Mapped[str] = mapped_column(
        String(20), default=OrderStatus.PENDING, nullable=False, index=True
    )  # pending, processing, completed, partial, failed

    # Progress tracking
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_images: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Money
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    charged_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Results
    artifact_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # Packaged zip
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # Current attempt
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    user: Mapped["User"] = relationship("User", back_populates="orders")
    items: Mapped[list["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.position",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in OrderStatus.TERMINAL

    @property
    def progress_percent(self) -> float:
        """Calculate progress percentage."""
        if self.total_items == 0:
            return 0.0
        return (self.processed_items / self.total_items) * 100


class OrderItem(Base):
    """One identifier within an order."""

    __tablename__ = "order_items"
    __table_args__ = (UniqueConstraint("order_id", "position", name="uq_order_item_position"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("scrape_orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    identifier: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ItemStatus.PENDING, nullable=False
    )  # pending, processing, completed, failed, skipped
    images_found: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Diagnostics
    processing_steps: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    estimated_cost: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    order: Mapped["ScrapeOrder"] = relationship("ScrapeOrder", back_populates="items")
    images: Mapped[list["ProcessedImage"]] = relationship(
        "ProcessedImage", back_populates="item", cascade="all, delete-orphan"
    )


class ProcessedImage(Base):
    """Deliverable image stored in object storage."""

    __tablename__ = "processed_images"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    order_item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("order_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    source_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    store_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    size_kb: Mapped[int] = mapped_column(Integer, nullable=False)
    is_high_quality: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    was_upscaled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quality_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    watermark_score: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    item: Mapped["OrderItem"] = relationship("OrderItem", back_populates="images")


class BalanceTransaction(Base):
    """Append-only balance ledger.

    At most one charge and one refund exist per (order, attempt); the unique
    constraint is what makes refunds idempotent across concurrent callers.
    """

    __tablename__ = "balance_transactions"
    __table_args__ = (
        UniqueConstraint("order_id", "attempt", "type", name="uq_balance_tx_order_attempt_type"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("scrape_orders.id"), nullable=True, index=True
    )
    attempt: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)  # topup, charge, refund
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
