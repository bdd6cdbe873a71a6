"""
Test settlement scheduler registration and the manual job runner's argument parsing
"""

from datetime import timedelta

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from jobs.scheduler import SettlementScheduler
from scripts.run_job import build_parser


class TestSettlementScheduler:
    """Jobs are registered with the expected triggers; the scheduler is never started"""

    def test_all_pipelines_registered(self):
        scheduler = SettlementScheduler()
        scheduler.setup_jobs()

        job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
        assert job_ids == {
            "deposit_scan", "withdrawal_queue", "capital_sweep",
            "verify_withdrawal_sweeps", "vault_withdrawal_settlement",
        }

    def test_intervals(self):
        scheduler = SettlementScheduler()
        scheduler.setup_jobs()

        withdrawal = scheduler.scheduler.get_job("withdrawal_queue")
        sweep = scheduler.scheduler.get_job("capital_sweep")
        settlement = scheduler.scheduler.get_job("vault_withdrawal_settlement")

        assert isinstance(withdrawal.trigger, IntervalTrigger)
        assert withdrawal.trigger.interval == timedelta(seconds=45)
        assert sweep.trigger.interval == timedelta(minutes=10)
        assert settlement.trigger.interval == timedelta(minutes=5)
        assert withdrawal.max_instances == 1 and withdrawal.coalesce

    def test_verification_runs_on_cron(self):
        scheduler = SettlementScheduler()
        scheduler.setup_jobs()

        verify = scheduler.scheduler.get_job("verify_withdrawal_sweeps")
        assert isinstance(verify.trigger, CronTrigger)

    def test_reward_accrual_is_optional(self):
        async def accrue():
            return 0

        scheduler = SettlementScheduler(reward_accrual=accrue)
        scheduler.setup_jobs()
        scheduler.setup_jobs()  # re-registration replaces, never duplicates

        jobs = scheduler.scheduler.get_jobs()
        assert len(jobs) == 6
        assert scheduler.scheduler.get_job("reward_accrual") is not None


class TestRunJobParser:

    def test_rescan_range(self):
        args = build_parser().parse_args(["deposits", "--from-block", "100", "--to-block", "900"])
        assert (args.command, args.from_block, args.to_block) == ("deposits", 100, 900)

    def test_resolve_sweep_arguments(self):
        args = build_parser().parse_args(["resolve-sweep", "42", "0xabc", "--trading-desk-tx-hash", "0xdef"])
        assert args.entry_id == 42
        assert args.tx_hash == "0xabc"
        assert args.trading_desk_tx_hash == "0xdef"

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])
