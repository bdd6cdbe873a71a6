"""
Capital Sweep Job
Moves PENDING_SWEEP vault deposits from custodial wallets to the trading desk
and devops wallets, one entry at a time.
"""

import logging
from typing import Any, Dict, Optional

from jobs.job_guard import single_flight
from services.capital_sweep import CapitalSweepEngine
from services.chain_gateway import get_chain_gateway
from services.gas_cushion import get_gas_manager

logger = logging.getLogger(__name__)


class SweepMonitor:

    def __init__(self, engine: Optional[CapitalSweepEngine] = None):
        self._engine = engine

    @property
    def engine(self) -> CapitalSweepEngine:
        if self._engine is None:
            self._engine = CapitalSweepEngine(get_chain_gateway(), get_gas_manager())
        return self._engine

    @engine.setter
    def engine(self, engine: CapitalSweepEngine):
        self._engine = engine

    async def run_sweeps(self) -> Dict[str, Any]:
        result = await self.engine.run()
        if result.failed:
            logger.critical(f"🚨 SWEEP_MONITOR: entries needing operator attention: {result.failed}")
        return {"swept": result.swept, "failed": result.failed, "deferred": result.deferred}

    async def resolve(self, entry_id: int, devops_tx_hash: str,
                      trading_desk_tx_hash: Optional[str] = None) -> Dict[str, Any]:
        sweep = await self.engine.resolve_failed_sweep(entry_id, devops_tx_hash, trading_desk_tx_hash)
        return {"entry_id": sweep.entry_id, "status": sweep.status}


sweep_monitor = SweepMonitor()


@single_flight("capital_sweep")
async def run_capital_sweeps():
    return await sweep_monitor.run_sweeps()
