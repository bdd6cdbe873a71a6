"""
Withdrawal Queue Job
Processes at most one queued withdrawal per tick. Before that it settles any
withdrawals still waiting for a confirmation and reports items left in
``processing`` by an interrupted run.
"""

import logging
from typing import Any, Dict, Optional

from jobs.job_guard import single_flight
from services.chain_gateway import get_chain_gateway
from services.gas_cushion import get_gas_manager
from services.withdrawal_processor import WithdrawalQueueProcessor

logger = logging.getLogger(__name__)


class WithdrawalMonitor:

    def __init__(self, processor: Optional[WithdrawalQueueProcessor] = None):
        self._processor = processor

    @property
    def processor(self) -> WithdrawalQueueProcessor:
        if self._processor is None:
            self._processor = WithdrawalQueueProcessor(get_chain_gateway(), get_gas_manager())
        return self._processor

    @processor.setter
    def processor(self, processor: WithdrawalQueueProcessor):
        self._processor = processor

    async def run_once(self) -> Dict[str, Any]:
        reconciled = await self.processor.reconcile_sent_withdrawals()

        stuck = await self.processor.list_stuck_items()
        if stuck:
            logger.critical(
                f"🚨 WITHDRAWAL_ITEMS_STUCK: {len(stuck)} item(s) left in processing, "
                f"reconcile by tx hash before requeueing: {stuck}"
            )

        outcome = await self.processor.process_next()
        return {
            "action": outcome.action,
            "item_id": outcome.item_id,
            "tx_hash": outcome.tx_hash,
            "detail": outcome.detail,
            "reconciled": reconciled,
            "stuck_items": stuck,
        }


withdrawal_monitor = WithdrawalMonitor()


@single_flight("withdrawal_queue")
async def run_withdrawal_queue():
    return await withdrawal_monitor.run_once()
