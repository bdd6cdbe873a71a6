"""
Single-flight guard for recurring jobs.

A job body runs only when its in-process lock is free and, when distributed
locks are enabled, when this process also holds the job's database lease. A
tick that finds the job already running is a silent no-op. Errors raised by
the body are logged here and never reach the scheduler.
"""

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from config import Config
from services.atomic_lock_manager import AtomicLockManager, atomic_lock_manager

logger = logging.getLogger(__name__)

SKIPPED = {"status": "skipped"}


class JobGuard:
    """Per-job owned lock plus optional database lease"""

    def __init__(
        self,
        name: str,
        use_lease: Optional[bool] = None,
        lease_ttl: Optional[int] = None,
        lock_manager: Optional[AtomicLockManager] = None,
    ):
        self.name = name
        self.use_lease = use_lease
        self.lease_ttl = lease_ttl
        self.lock_manager = lock_manager or atomic_lock_manager
        self._lock = asyncio.Lock()
        self.runs = 0
        self.skips = 0

    @property
    def lock_name(self) -> str:
        return f"job:{self.name}"

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def _lease_enabled(self) -> bool:
        return Config.ENABLE_DISTRIBUTED_JOB_LOCKS if self.use_lease is None else self.use_lease

    async def run(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Dict[str, Any]:
        # locked() and acquire() run without an await between them, so this is the compare-and-swap
        if self._lock.locked():
            self.skips += 1
            logger.debug(f"⏭️ JOB_SKIPPED: {self.name} is already running")
            return dict(SKIPPED)

        async with self._lock:
            token = None
            if self._lease_enabled():
                try:
                    token = await self.lock_manager.acquire_lock(
                        self.lock_name, timeout_seconds=self.lease_ttl or Config.JOB_LOCK_TTL_SECONDS
                    )
                except Exception as e:
                    logger.error(f"❌ JOB_LEASE_ERROR: {self.name}: {e}")
                    return {"status": "error", "error": str(e)}
                if token is None:
                    self.skips += 1
                    logger.info(f"⏭️ JOB_SKIPPED: {self.name} lease held by another process")
                    return dict(SKIPPED)

            self.runs += 1
            try:
                result = await func(*args, **kwargs)
                return {"status": "success", "result": result}
            except Exception as e:
                logger.exception(f"❌ JOB_FAILED: {self.name}: {e}")
                return {"status": "error", "error": str(e)}
            finally:
                if token is not None:
                    try:
                        await self.lock_manager.release_lock(self.lock_name, token)
                    except Exception as e:
                        # The lease expires on its own after the TTL
                        logger.warning(f"⚠️ JOB_LEASE_RELEASE_FAILED: {self.name}: {e}")


_guards: Dict[str, JobGuard] = {}


def get_job_guard(name: str) -> JobGuard:
    guard = _guards.get(name)
    if guard is None:
        guard = _guards[name] = JobGuard(name)
    return guard


def single_flight(name: str):
    """Decorator running an async job body through the named guard"""
    def decorator(func):
        guard = get_job_guard(name)

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await guard.run(func, *args, **kwargs)

        wrapper.guard = guard
        return wrapper
    return decorator
