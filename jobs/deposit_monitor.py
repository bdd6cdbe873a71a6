"""
Deposit Monitor Job
Runs the deposit scanner on a short interval. A tick where the chain head has
not moved past the cursor (plus finality buffer) does no work.
"""

import logging
from typing import Any, Dict, Optional

from jobs.job_guard import single_flight
from services.chain_gateway import get_chain_gateway
from services.deposit_scanner import DepositScanner

logger = logging.getLogger(__name__)


class DepositMonitor:
    """Scheduler-facing wrapper around DepositScanner"""

    def __init__(self, scanner: Optional[DepositScanner] = None):
        self._scanner = scanner

    @property
    def scanner(self) -> DepositScanner:
        if self._scanner is None:
            self._scanner = DepositScanner(get_chain_gateway())
        return self._scanner

    @scanner.setter
    def scanner(self, scanner: DepositScanner):
        self._scanner = scanner

    async def run_scan(self, from_block: Optional[int] = None, to_block: Optional[int] = None) -> Dict[str, Any]:
        result = await self.scanner.scan(from_block=from_block, to_block=to_block)
        if result.credited or result.failed:
            logger.info(
                f"💰 DEPOSIT_MONITOR: blocks {result.from_block}-{result.to_block} "
                f"credited={result.credited} duplicates={result.duplicates} failed={result.failed}"
            )
        return {
            "from_block": result.from_block,
            "to_block": result.to_block,
            "credited": result.credited,
            "duplicates": result.duplicates,
            "failed": result.failed,
            "failed_tx_hashes": result.failed_tx_hashes,
            "cursor": result.cursor,
        }


deposit_monitor = DepositMonitor()


@single_flight("deposit_scan")
async def run_deposit_scan(from_block: Optional[int] = None, to_block: Optional[int] = None):
    """Scheduler and operator entry point for deposit scanning"""
    return await deposit_monitor.run_scan(from_block=from_block, to_block=to_block)
