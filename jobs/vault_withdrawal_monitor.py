"""
Vault Withdrawal Jobs
Two pipelines over vault withdrawal requests: verifying the funding sweeps
(every few hours) and settling confirmed requests into user balances.
"""

import logging
from dataclasses import asdict
from typing import Any, Dict, Optional

from jobs.job_guard import single_flight
from services.chain_gateway import get_chain_gateway
from services.withdrawal_settlement import VaultWithdrawalSettlement

logger = logging.getLogger(__name__)


class VaultWithdrawalMonitor:

    def __init__(self, settlement: Optional[VaultWithdrawalSettlement] = None):
        self._settlement = settlement

    @property
    def settlement(self) -> VaultWithdrawalSettlement:
        if self._settlement is None:
            self._settlement = VaultWithdrawalSettlement(get_chain_gateway())
        return self._settlement

    @settlement.setter
    def settlement(self, settlement: VaultWithdrawalSettlement):
        self._settlement = settlement

    async def verify(self) -> Dict[str, Any]:
        report = await self.settlement.verify_withdrawal_sweeps()
        logger.info(
            f"🔍 WITHDRAWAL_SWEEP_VERIFICATION: confirmed={len(report.confirmed)} "
            f"failed={len(report.failed)} waiting={len(report.waiting)} "
            f"errors={len(report.errors)}"
        )
        return asdict(report)

    async def settle(self) -> Dict[str, Any]:
        report = await self.settlement.settle_vault_withdrawals()
        if report.completed or report.failed or report.errors:
            logger.info(
                f"🏦 VAULT_WITHDRAWAL_SETTLEMENT: completed={len(report.completed)} failed={len(report.failed)} "
                f"errors={len(report.errors)}"
            )
        return asdict(report)


vault_withdrawal_monitor = VaultWithdrawalMonitor()


@single_flight("verify_withdrawal_sweeps")
async def run_withdrawal_sweep_verification():
    return await vault_withdrawal_monitor.verify()


@single_flight("vault_withdrawal_settlement")
async def run_vault_withdrawal_settlement():
    return await vault_withdrawal_monitor.settle()
