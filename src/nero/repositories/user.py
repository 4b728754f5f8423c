"""User repository for Nero backend.

Star balance changes are single atomic UPDATE statements; the balance is never
read-modified-written in Python.
"""

from uuid import UUID

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nero.models.user import User


class UserRepository:
    """Repository for User entities and their star balance."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, user: User) -> User:
        """Persist new user to database."""
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_by_id(self, user_id: UUID) -> User | None:
        """Retrieve user by UUID (fresh from the database)."""
        result = await self.session.execute(
            select(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_stars(self, user_id: UUID) -> int | None:
        """Current star balance, or None if the user does not exist."""
        result = await self.session.execute(
            select(User.stars).where(User.id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def debit_stars(self, user_id: UUID, amount: int) -> bool:
        """Atomically subtract amount from the balance, clamping at zero.

        Concurrent submissions are not serialized against the balance pre-check,
        so the balance may be short by the time a debit lands; it then bottoms
        out at zero instead of going negative.

        Args:
            user_id: User to charge
            amount: Stars to subtract (must be positive)

        Returns:
            True if the user exists and was charged
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        result = await self.session.execute(
            update(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .values(
                stars=case(
                    (User.stars >= amount, User.stars - amount),  # type: ignore[operator]
                    else_=0,
                )
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]

    async def credit_stars(self, user_id: UUID, amount: int) -> bool:
        """Atomically add amount to the balance.

        Returns:
            True if the user exists
        """
        if amount <= 0:
            raise ValueError("amount must be positive")

        result = await self.session.execute(
            update(User)
            .where(User.id == user_id)  # type: ignore[arg-type]
            .values(stars=User.stars + amount)  # type: ignore[operator]
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1  # type: ignore[attr-defined]
