"""
Settlement Job Scheduler

Registers every recurring settlement pipeline on one AsyncIOScheduler:
- Deposit scan: short interval, acts as the new-block trigger
- Withdrawal queue: one item every 45 seconds
- Capital sweep: every 10 minutes
- Withdrawal sweep verification: every 4 hours (cron)
- Vault withdrawal settlement: every 5 minutes
- Reward accrual (optional callable): daily

Each job body is already wrapped by its single-flight guard, so a manual run
and a scheduled tick never overlap.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Config
from jobs.deposit_monitor import run_deposit_scan
from jobs.job_guard import single_flight
from jobs.sweep_monitor import run_capital_sweeps
from jobs.vault_withdrawal_monitor import run_vault_withdrawal_settlement, run_withdrawal_sweep_verification
from jobs.withdrawal_monitor import run_withdrawal_queue

logger = logging.getLogger(__name__)


class SettlementScheduler:
    """APScheduler registration of the settlement pipelines"""

    def __init__(self, reward_accrual: Optional[Callable[[], Awaitable]] = None):
        self.reward_accrual = reward_accrual

        jobstores = {
            'default': MemoryJobStore()
        }
        executors = {
            'default': AsyncIOExecutor()
        }
        job_defaults = {
            'coalesce': True,  # Collapse missed runs into one
            'max_instances': 1,
            'misfire_grace_time': 60
        }

        self.scheduler = AsyncIOScheduler(
            jobstores=jobstores,
            executors=executors,
            job_defaults=job_defaults,
            timezone='UTC'
        )

    def _staggered_start(self, second: int) -> datetime:
        return datetime.now().replace(second=second, microsecond=0)

    def setup_jobs(self):
        """Register all jobs, replacing any previously registered copies"""
        for job in self.scheduler.get_jobs():
            self.scheduler.remove_job(job.id)
            logger.info(f"🧹 Removed existing job: {job.id}")

        # ===== DEPOSIT SCAN =====
        self.scheduler.add_job(
            run_deposit_scan,
            trigger=IntervalTrigger(seconds=Config.DEPOSIT_SCAN_INTERVAL_SECONDS, start_date=self._staggered_start(0)),
            id="deposit_scan",
            name="💰 Deposit Scan - Credit Inbound Transfers",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=30,
            replace_existing=True
        )
        logger.info(f"✅ Deposit Scan scheduled every {Config.DEPOSIT_SCAN_INTERVAL_SECONDS} seconds")

        # ===== WITHDRAWAL QUEUE =====
        self.scheduler.add_job(
            run_withdrawal_queue,
            trigger=IntervalTrigger(seconds=Config.WITHDRAWAL_QUEUE_INTERVAL_SECONDS, start_date=self._staggered_start(10)),
            id="withdrawal_queue",
            name="💸 Withdrawal Queue - One Payout Per Tick",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            replace_existing=True
        )
        logger.info(f"✅ Withdrawal Queue scheduled every {Config.WITHDRAWAL_QUEUE_INTERVAL_SECONDS} seconds")

        # ===== CAPITAL SWEEP =====
        self.scheduler.add_job(
            run_capital_sweeps,
            trigger=IntervalTrigger(seconds=Config.SWEEP_INTERVAL_SECONDS, start_date=self._staggered_start(20)),
            id="capital_sweep",
            name="🧹 Capital Sweep - Trading Desk & DevOps Transfers",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
            replace_existing=True
        )
        logger.info(f"✅ Capital Sweep scheduled every {Config.SWEEP_INTERVAL_SECONDS} seconds")

        # ===== WITHDRAWAL SWEEP VERIFICATION =====
        self.scheduler.add_job(
            run_withdrawal_sweep_verification,
            trigger=CronTrigger(hour="*/4", minute=0),
            id="verify_withdrawal_sweeps",
            name="🔍 Withdrawal Sweep Verification (every 4 hours)",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=600,
            replace_existing=True
        )
        logger.info("✅ Withdrawal Sweep Verification scheduled every 4 hours")

        # ===== VAULT WITHDRAWAL SETTLEMENT =====
        self.scheduler.add_job(
            run_vault_withdrawal_settlement,
            trigger=IntervalTrigger(
                seconds=Config.VAULT_WITHDRAWAL_SETTLEMENT_INTERVAL_SECONDS, start_date=self._staggered_start(40)
            ),
            id="vault_withdrawal_settlement",
            name="🏦 Vault Withdrawal Settlement",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=120,
            replace_existing=True
        )
        logger.info(
            f"✅ Vault Withdrawal Settlement scheduled every {Config.VAULT_WITHDRAWAL_SETTLEMENT_INTERVAL_SECONDS} seconds"
        )

        # ===== REWARD ACCRUAL =====
        if self.reward_accrual is not None:
            self.scheduler.add_job(
                single_flight("reward_accrual")(self.reward_accrual),
                trigger=CronTrigger(hour=0, minute=5),
                id="reward_accrual",
                name="🎁 Reward Accrual (daily)",
                max_instances=1,
                coalesce=True,
                misfire_grace_time=3600,
                replace_existing=True
            )
            logger.info("✅ Reward Accrual scheduled daily at 00:05 UTC")
        else:
            logger.info("🚫 REWARD_ACCRUAL: No accrual callable registered")

        jobs = self.scheduler.get_jobs()
        logger.info(f"🎯 SCHEDULER_READY: {len(jobs)} settlement jobs registered")

    def start(self):
        self.setup_jobs()
        self.scheduler.start()
        logger.info("🚀 Settlement scheduler started")

        for job in self.scheduler.get_jobs():
            logger.info(f"   - {job.name}: next run {job.next_run_time}")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("📴 Settlement scheduler stopped")


_global_scheduler = None


def get_scheduler_instance(reward_accrual: Optional[Callable[[], Awaitable]] = None) -> SettlementScheduler:
    """Get the global scheduler instance"""
    global _global_scheduler
    if _global_scheduler is None:
        _global_scheduler = SettlementScheduler(reward_accrual)
    return _global_scheduler
