"""
Per-wallet nonce arena.

The chain nonce is read once per reservation and the reserved block of
nonces is handed out in order, so a multi-leg sweep never re-queries the
provider between legs and a dropped first leg cannot make the second leg
reuse a stale nonce.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Dict, List

logger = logging.getLogger(__name__)


class NonceManager:
    """Tracks the next unused nonce per wallet address"""

    def __init__(self):
        self._next_nonce: Dict[str, int] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    @staticmethod
    def _key(address: str) -> str:
        return (address or "").lower()

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def reserve(self, address: str, count: int,
                      fetch_chain_nonce: Callable[[str], Awaitable[int]]) -> List[int]:
        """
        Reserve ``count`` consecutive nonces for ``address``.

        The block starts at the larger of the chain's transaction count and the
        next nonce already handed out locally.
        """
        if count < 0:
            raise ValueError("count must not be negative")
        if count == 0:
            return []

        key = self._key(address)
        async with self._lock_for(key):
            chain_nonce = int(await fetch_chain_nonce(address))
            start = max(chain_nonce, self._next_nonce.get(key, 0))
            self._next_nonce[key] = start + count

        nonces = list(range(start, start + count))
        logger.debug(f"🔢 NONCE_RESERVED: {key} {nonces} (chain={chain_nonce})")
        return nonces

    def peek(self, address: str) -> int:
        return self._next_nonce.get(self._key(address), 0)

    def reset(self, address: str) -> None:
        """Forget local state so the next reservation trusts the chain again"""
        if self._next_nonce.pop(self._key(address), None) is not None:
            logger.info(f"🔄 NONCE_RESET: {self._key(address)}")


nonce_manager = NonceManager()
