"""Tests for stuck order recovery."""

from decimal import Decimal

import pytest

from sku_studio.config import settings
from sku_studio.db.models import ItemStatus, OrderStatus
from sku_studio.worker.job_runner import fail_order_and_refund
from sku_studio.worker.scheduler import setup_scheduler, stuck_order_check
from sku_studio.worker.stuck_sweeper import sweep_stuck_orders

PRICE = Decimal("10.00")


async def _processing_order(repository):
    user = await repository.create_user("stuck@example.com", Decimal("30.00"))
    order = await repository.create_order(user.id, ["111111111111", "222222222222"], 2, PRICE)
    await repository.finish_item(order.id, "111111111111", ItemStatus.COMPLETED, 1)
    await repository.mark_item_processing(order.id, "222222222222")
    return user, order


@pytest.mark.asyncio
async def test_sweep_fails_open_items_and_refunds(repository):
    user, order = await _processing_order(repository)

    recovered = await sweep_stuck_orders(repository, threshold_seconds=0)

    assert recovered == [order.id]
    stored = await repository.get_order(order.id)
    assert stored.status == OrderStatus.FAILED
    assert stored.error_message.startswith("Stuck job")
    items = {item.identifier: item for item in stored.items}
    assert items["111111111111"].status == ItemStatus.COMPLETED
    assert items["222222222222"].status == ItemStatus.FAILED
    assert await repository.get_balance(user.id) == Decimal("30.00")


@pytest.mark.asyncio
async def test_sweep_leaves_fresh_orders_alone(repository):
    _, order = await _processing_order(repository)

    assert await sweep_stuck_orders(repository, threshold_seconds=3600) == []
    assert (await repository.get_order(order.id)).status == OrderStatus.PROCESSING


@pytest.mark.asyncio
async def test_sweeper_and_runner_refund_once(repository):
    user, order = await _processing_order(repository)

    await sweep_stuck_orders(repository, threshold_seconds=0)
    moved = await fail_order_and_refund(repository, order.id, "Job timed out", source="timeout")

    assert moved is False
    assert await repository.count_refunds(order.id) == 1
    assert await repository.get_balance(user.id) == Decimal("30.00")
    # The first writer's reason stays
    assert (await repository.get_order(order.id)).error_message.startswith("Stuck job")


def test_scheduler_registers_single_instance_sweep():
    scheduler = setup_scheduler()

    job = scheduler.get_job("stuck_order_sweep")

    assert job.func is stuck_order_check
    assert job.max_instances == 1
    assert job.coalesce is True
    assert job.trigger.interval.total_seconds() == settings.stuck_job_check_interval_seconds
