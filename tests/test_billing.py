"""Billing ledger tests: pricing, balance pre-check and debit."""

from uuid import uuid4

import pytest

from nero.models.user import User
from nero.services.billing import BillingLedger
from nero.services.exceptions import InsufficientBalanceError, UserNotFoundError


def test_quote_charges_free_users():
    assert BillingLedger(generation_cost=2).quote(User(stars=0, subscription="free")) == 2


@pytest.mark.parametrize("subscription", ["pro", "premium"])
def test_quote_is_zero_for_unlimited_subscriptions(subscription):
    assert BillingLedger(generation_cost=2).quote(User(subscription=subscription)) == 0


@pytest.mark.asyncio
class TestBillingLedger:
    async def test_ensure_can_afford_returns_balance(self, uow_factory, make_user):
        user = await make_user(stars=4)
        ledger = BillingLedger()

        async with await uow_factory() as uow:
            assert await ledger.ensure_can_afford(uow, user.id, 4) == 4

    async def test_insufficient_balance(self, uow_factory, make_user):
        user = await make_user(stars=0)
        ledger = BillingLedger()

        with pytest.raises(InsufficientBalanceError) as exc_info:
            async with await uow_factory() as uow:
                await ledger.ensure_can_afford(uow, user.id, 1)

        assert exc_info.value.required == 1
        assert exc_info.value.available == 0
        assert str(exc_info.value) == "Insufficient balance: 1 stars required, 0 available"

    async def test_zero_cost_always_affordable(self, uow_factory, make_user):
        user = await make_user(stars=0, subscription="pro")

        async with await uow_factory() as uow:
            assert await BillingLedger().ensure_can_afford(uow, user.id, 0) == 0

    async def test_unknown_user(self, uow_factory):
        with pytest.raises(UserNotFoundError):
            async with await uow_factory() as uow:
                await BillingLedger().ensure_can_afford(uow, uuid4(), 1)

    async def test_debit_and_credit(self, uow_factory, make_user):
        user = await make_user(stars=5)
        ledger = BillingLedger()

        async with await uow_factory() as uow:
            await ledger.debit(uow, user.id, 2, task_id="task-1")
            await ledger.credit(uow, user.id, 1)

        async with await uow_factory() as uow:
            assert await uow.users.get_stars(user.id) == 4

    async def test_debit_of_zero_is_noop(self, uow_factory, make_user):
        user = await make_user(stars=5)

        async with await uow_factory() as uow:
            await BillingLedger().debit(uow, user.id, 0, task_id="task-1")

        async with await uow_factory() as uow:
            assert await uow.users.get_stars(user.id) == 5

    async def test_credit_unknown_user(self, uow_factory):
        with pytest.raises(UserNotFoundError):
            async with await uow_factory() as uow:
                await BillingLedger().credit(uow, uuid4(), 5)
