"""Star balance ledger.

Stars are checked before a task is submitted and charged only after the
reconciler has stored the result of a successful task. The pre-check and the
submission are not one transaction: two concurrent submissions by the same
user can both pass it, in which case the later debit bottoms out at zero.
"""

from uuid import UUID

import structlog

from nero.models.user import User
from nero.services.exceptions import InsufficientBalanceError, UserNotFoundError
from nero.uow import UnitOfWork

logger = structlog.get_logger(__name__)


class BillingLedger:
    """Pricing, pre-check and debit of the per-user star balance."""

    def __init__(self, generation_cost: int = 1):
        """Initialize ledger.

        Args:
            generation_cost: Stars charged per completed generation
        """
        self.generation_cost = generation_cost

    def quote(self, user: User) -> int:
        """Stars a generation will cost this user (0 for unlimited subscriptions)."""
        if user.is_unlimited:
            return 0
        return self.generation_cost

    async def ensure_can_afford(self, uow: UnitOfWork, user_id: UUID, cost: int) -> int:
        """Verify the user's balance covers cost.

        Args:
            uow: Active unit of work
            user_id: User about to submit
            cost: Stars the operation will cost on success

        Returns:
            Current balance

        Raises:
            UserNotFoundError: If the user does not exist
            InsufficientBalanceError: If balance < cost
        """
        available = await uow.users.get_stars(user_id)
        if available is None:
            raise UserNotFoundError(user_id)

        if available < cost:
            logger.info(
                "billing.insufficient_balance",
                user_id=str(user_id),
                required=cost,
                available=available,
            )
            raise InsufficientBalanceError(required=cost, available=available)

        return available

    async def debit(self, uow: UnitOfWork, user_id: UUID, amount: int, task_id: str) -> None:
        """Charge amount stars for a completed task.

        Must run inside the unit of work that performs the task's terminal
        write, so the charge commits or rolls back together with it.
        """
        if amount <= 0:
            return

        charged = await uow.users.debit_stars(user_id, amount)
        if not charged:
            logger.warning("billing.debit_skipped", user_id=str(user_id), task_id=task_id)
            return

        logger.info("billing.debited", user_id=str(user_id), amount=amount, task_id=task_id)

    async def credit(self, uow: UnitOfWork, user_id: UUID, amount: int) -> None:
        """Add stars to a user's balance (top-ups).

        Raises:
            UserNotFoundError: If the user does not exist
        """
        if not await uow.users.credit_stars(user_id, amount):
            raise UserNotFoundError(user_id)
        logger.info("billing.credited", user_id=str(user_id), amount=amount)
