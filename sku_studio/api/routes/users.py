"""User balance endpoints."""

from decimal import Decimal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from sku_studio.api.deps import get_repository
from sku_studio.db.repository import OrderRepository

router = APIRouter(prefix="/api/users", tags=["users"])


class CreateUserRequest(BaseModel):
    email: str
    balance: Decimal = Field(default=Decimal("0.00"), ge=0)


class TopUpRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    description: str = "Top-up"


class BalanceResponse(BaseModel):
    user_id: int
    balance: Decimal


@router.post("", response_model=BalanceResponse, status_code=201)
async def create_user(request: CreateUserRequest, repository: OrderRepository = Depends(get_repository)):
    try:
        user = await repository.create_user(request.email, request.balance)
    except IntegrityError:
        raise HTTPException(status_code=409, detail="Email already registered")
    return BalanceResponse(user_id=user.id, balance=user.balance)


@router.get("/{user_id}/balance", response_model=BalanceResponse)
async def get_balance(user_id: int, repository: OrderRepository = Depends(get_repository)):
    try:
        balance = await repository.get_balance(user_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="User not found")
    return BalanceResponse(user_id=user_id, balance=balance)


@router.post("/{user_id}/top-up", response_model=BalanceResponse)
async def top_up(user_id: int, request: TopUpRequest, repository: OrderRepository = Depends(get_repository)):
    """Credit a user's balance."""
    try:
        await repository.get_balance(user_id)
    except LookupError:
        raise HTTPException(status_code=404, detail="User not found")

    await repository.top_up(user_id, request.amount, request.description)
    return BalanceResponse(user_id=user_id, balance=await repository.get_balance(user_id))
