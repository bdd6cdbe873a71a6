"""Atomic transaction utilities for money-moving ledger operations"""

import logging
from contextlib import asynccontextmanager
from typing import Optional, AsyncGenerator

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import AsyncSessionLocal

logger = logging.getLogger(__name__)


@asynccontextmanager
async def async_atomic_transaction(
    session: Optional[AsyncSession] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Async context manager for atomic database transactions with proper rollback.

    With no session a fresh one is opened and closed here. With a provided
    session the nesting depth is tracked on it so only the outermost block
    commits; any error rolls the whole transaction back.
    """
    owns_session = session is None
    if owns_session:
        session = AsyncSessionLocal()

    transaction_depth = getattr(session, "_atomic_transaction_depth", 0)
    try:
        setattr(session, "_atomic_transaction_depth", transaction_depth + 1)

        if transaction_depth > 0:
            logger.debug(f"Nested async transaction detected (depth: {transaction_depth + 1})")

        yield session

        if transaction_depth == 0:
            await session.commit()
            logger.debug("Outermost async transaction committed successfully")
        else:
            logger.debug(f"Nested async transaction completed (depth: {transaction_depth + 1}), deferring commit to outermost")

    except Exception as e:
        await session.rollback()
        logger.error(f"Async transaction rolled back due to error (depth: {transaction_depth + 1}): {e}")
        raise
    finally:
        current_depth = getattr(session, "_atomic_transaction_depth", 1)
        setattr(session, "_atomic_transaction_depth", max(0, current_depth - 1))
        if owns_session:
            await session.close()


async def lock_user_row(session: AsyncSession, user_id: int):
    """
    SELECT ... FOR UPDATE on a user row so balance changes serialise.

    Returns the locked User, or None when the user does not exist.
    """
    from models import User

    try:
        result = await session.execute(
            select(User).where(User.user_id == user_id).with_for_update()
        )
        user = result.scalar_one_or_none()
        if user is not None:
            logger.debug(f"🔒 Row lock acquired for user {user_id}")
        return user
    except SQLAlchemyError as e:
        logger.error(f"Database error locking user {user_id}: {e}")
        raise
