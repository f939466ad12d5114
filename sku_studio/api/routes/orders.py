"""Order API endpoints."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field

from sku_studio.api.deps import get_order_service, get_repository
from sku_studio.db.repository import OrderRepository
from sku_studio.errors import InsufficientBalanceError, OrderNotFoundError, OrderStateError
from sku_studio.worker.order_service import OrderService, parse_identifiers

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])


# Request/response models
class ParseRequest(BaseModel):
    text: str


class ParseResponse(BaseModel):
    identifiers: List[str]
    total_cost: Decimal
    price_per_identifier: Decimal


class CreateOrderRequest(BaseModel):
    user_id: int
    identifiers: List[str] = Field(..., min_length=1)


class CreateOrderResponse(BaseModel):
    order_id: int
    identifiers_to_process: int
    identifiers_skipped: int
    charged_amount: Decimal
    is_partial: bool
    message: str


class ProcessedImageResponse(BaseModel):
    id: int
    url: str
    source_url: Optional[str]
    store_name: Optional[str]
    width: int
    height: int
    size_kb: int
    is_high_quality: bool
    was_upscaled: bool
    quality_score: int
    watermark_score: int

    class Config:
        from_attributes = True


class OrderItemResponse(BaseModel):
    id: int
    position: int
    identifier: str
    status: str
    images_found: int
    error_message: Optional[str]
    processing_steps: Optional[List[str]]
    estimated_cost: float
    completed_at: Optional[datetime]
    images: List[ProcessedImageResponse] = []

    class Config:
        from_attributes = True


class OrderResponse(BaseModel):
    id: int
    user_id: int
    status: str
    attempt: int
    total_items: int
    processed_items: int
    total_images: int
    progress_percent: float
    total_amount: Decimal
    charged_amount: Decimal
    refunded_at: Optional[datetime]
    artifact_url: Optional[str]
    error_message: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    items: List[OrderItemResponse] = []

    class Config:
        from_attributes = True


class RetryResponse(BaseModel):
    order_id: int
    attempt: int
    identifiers: List[str]
    charged_amount: Decimal


@router.post("/parse", response_model=ParseResponse)
async def parse_order_text(
    request: ParseRequest,
    service: OrderService = Depends(get_order_service),
):
    """Extract identifiers from pasted text and quote the cost."""
    identifiers = parse_identifiers(request.text)
    return ParseResponse(
        identifiers=identifiers,
        total_cost=service.price * len(identifiers),
        price_per_identifier=service.price,
    )


@router.post("", response_model=CreateOrderResponse, status_code=201)
async def create_order(
    request: CreateOrderRequest,
    background_tasks: BackgroundTasks,
    service: OrderService = Depends(get_order_service),
):
    """
    Charge for and start an order.

    Identifiers beyond what the balance covers are recorded as skipped.
    The scrape job runs in the background; poll the order for progress.
    """
    try:
        submitted = await service.submit_order(request.user_id, request.identifiers)
    except InsufficientBalanceError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except LookupError:
        raise HTTPException(status_code=404, detail="User not found")

    background_tasks.add_task(service.run_order, submitted.order_id, submitted.identifiers_to_process)

    return CreateOrderResponse(
        order_id=submitted.order_id,
        identifiers_to_process=len(submitted.identifiers_to_process),
        identifiers_skipped=submitted.skipped,
        charged_amount=submitted.charged_amount,
        is_partial=submitted.is_partial,
        message=submitted.message,
    )


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(order_id: int, repository: OrderRepository = Depends(get_repository)):
    """Get an order with its items and delivered images."""
    try:
        return await repository.get_order(order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")


@router.post("/{order_id}/retry", response_model=RetryResponse)
async def retry_order(
    order_id: int,
    background_tasks: BackgroundTasks,
    service: OrderService = Depends(get_order_service),
):
    """Re-run the unfinished items of a completed, partial or failed order."""
    try:
        plan = await service.retry_order(order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")
    except OrderStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except InsufficientBalanceError as e:
        raise HTTPException(status_code=400, detail=str(e))

    background_tasks.add_task(service.run_order, plan.order_id, plan.identifiers)

    return RetryResponse(
        order_id=plan.order_id,
        attempt=plan.attempt,
        identifiers=plan.identifiers,
        charged_amount=plan.charged,
    )
