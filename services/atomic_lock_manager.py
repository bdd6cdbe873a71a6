"""
Atomic Lock Manager Service
Provides atomic lease locks using a database unique constraint on lock_name
"""

import logging
import os
import uuid
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager
from datetime import timedelta

from sqlalchemy import select, delete, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from database import AsyncSessionLocal
from models import DistributedLock
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class AtomicLockManager:
    """
    Database-backed lease lock manager.

    The INSERT of a row with a unique lock_name is the compare-and-swap: it
    succeeds for exactly one contender. Expired leases are taken over so a
    crashed holder cannot wedge a lock forever.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.default_lock_timeout = 60
        self.max_lock_duration = 3600

        self.metrics = {
            'locks_acquired': 0,
            'locks_failed': 0,
            'locks_released': 0,
            'lock_contentions': 0,
            'expired_takeovers': 0,
        }

    async def acquire_lock(
        self,
        lock_name: str,
        timeout_seconds: int = None,
        _retry_expired: bool = True,
    ) -> Optional[str]:
        """
        Acquire a lease lock.

        Returns the owner token if acquired, None if another holder has it.
        """
        timeout = timeout_seconds or self.default_lock_timeout
        if timeout > self.max_lock_duration:
            timeout = self.max_lock_duration
            logger.warning(f"Lock timeout capped at {self.max_lock_duration}s for {lock_name}")

        owner_token = str(uuid.uuid4())
        now = get_naive_utc_now()

        async with self.session_factory() as session:
            try:
                session.add(DistributedLock(
                    lock_name=lock_name,
                    owner_token=owner_token,
                    process_id=os.getpid(),
                    acquired_at=now,
                    expires_at=now + timedelta(seconds=timeout),
                ))
                await session.commit()

                self.metrics['locks_acquired'] += 1
                logger.info(
                    f"🔒 ATOMIC_LOCK_ACQUIRED: {lock_name} token={owner_token[:8]}... expires_in={timeout}s"
                )
                return owner_token

            except IntegrityError:
                # Lock already exists - this is the atomic guarantee in action
                await session.rollback()
                self.metrics['lock_contentions'] += 1

                if _retry_expired and await self._delete_if_expired(session, lock_name):
                    self.metrics['expired_takeovers'] += 1
                    logger.info(f"🔄 ATOMIC_LOCK_EXPIRED: Took over stale lease for {lock_name}")
                    return await self.acquire_lock(lock_name, timeout_seconds, _retry_expired=False)

                logger.debug(f"⏳ ATOMIC_LOCK_CONTENTION: {lock_name} already held")
                self.metrics['locks_failed'] += 1
                return None

            except SQLAlchemyError as e:
                await session.rollback()
                self.metrics['locks_failed'] += 1
                logger.error(f"❌ ATOMIC_LOCK_ERROR: Failed to acquire {lock_name}: {e}")
                raise

    async def _delete_if_expired(self, session: AsyncSession, lock_name: str) -> bool:
        result = await session.execute(
            delete(DistributedLock).where(
                and_(
                    DistributedLock.lock_name == lock_name,
                    DistributedLock.expires_at < get_naive_utc_now(),
                )
            )
        )
        await session.commit()
        return (result.rowcount or 0) > 0

    async def release_lock(self, lock_name: str, owner_token: str) -> bool:
        """Release a lock; only the token holder can release it"""
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    delete(DistributedLock).where(
                        and_(
                            DistributedLock.lock_name == lock_name,
                            DistributedLock.owner_token == owner_token,
                        )
                    )
                )
                await session.commit()

                if (result.rowcount or 0) > 0:
                    self.metrics['locks_released'] += 1
                    logger.info(f"🔓 ATOMIC_LOCK_RELEASED: {lock_name} token={owner_token[:8]}...")
                    return True

                logger.warning(f"⚠️ ATOMIC_LOCK_NOT_FOUND: Cannot release {lock_name} token={owner_token[:8]}...")
                return False

            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"❌ ATOMIC_LOCK_RELEASE_ERROR: {lock_name}: {e}")
                return False

    @asynccontextmanager
    async def atomic_lock_context(self, lock_name: str, timeout_seconds: int = None):
        """
        Context manager yielding the lock token, or None when the lock is held elsewhere.

        Usage:
            async with atomic_lock_manager.atomic_lock_context("job:deposit_scan") as token:
                if token:
                    ...
        """
        lock_token = await self.acquire_lock(lock_name, timeout_seconds)
        try:
            yield lock_token
        finally:
            if lock_token:
                await self.release_lock(lock_name, lock_token)

    async def get_lock_status(self, lock_name: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DistributedLock).where(DistributedLock.lock_name == lock_name)
            )
            lock = result.scalar_one_or_none()
            if lock is None:
                return None
            return {
                'lock_name': lock.lock_name,
                'owner_token': lock.owner_token[:8] + '...',
                'process_id': lock.process_id,
                'acquired_at': lock.acquired_at.isoformat(),
                'expires_at': lock.expires_at.isoformat(),
                'is_expired': lock.expires_at < get_naive_utc_now(),
            }

    def get_metrics(self) -> Dict[str, Any]:
        return dict(self.metrics)


atomic_lock_manager = AtomicLockManager()
