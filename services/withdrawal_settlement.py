"""
Vault Withdrawal Settlement
Verifies the on-chain sweeps that fund vault withdrawal requests and settles
confirmed requests back into the user's available balance.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, and_

from config import Config
from database import async_managed_session
from models import (
    UserActivity, ActivityType, WithdrawalRequestStatus, LedgerEntryType, LedgerEntryStatus,
)
from services.chain_gateway import ChainGateway, ChainGatewayError
from services.ledger_service import LedgerService, LedgerError, ledger_service as default_ledger
from utils.amounts import TokenAmount
from utils.atomic_transactions import async_atomic_transaction, lock_user_row

logger = logging.getLogger(__name__)


@dataclass
class SettlementReport:
    confirmed: List[int] = field(default_factory=list)
    completed: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    waiting: List[int] = field(default_factory=list)
    errors: List[int] = field(default_factory=list)  # skipped after an unexpected error


class VaultWithdrawalSettlement:
    """Sweep verification and settlement for vault withdrawal requests"""

    def __init__(self, gateway: Optional[ChainGateway] = None, ledger: Optional[LedgerService] = None,
                 required_confirmations: Optional[int] = None):
        self.gateway = gateway
        self.ledger = ledger or default_ledger
        self.required_confirmations = required_confirmations or Config.REQUIRED_SWEEP_CONFIRMATIONS

    async def _activity_ids(self, status: WithdrawalRequestStatus) -> list:
        async with async_managed_session() as session:
            result = await session.execute(
                select(UserActivity.activity_id, UserActivity.related_sweep_tx_hash)
                .where(
                    and_(
                        UserActivity.activity_type == ActivityType.VAULT_WITHDRAWAL_REQUEST.value,
                        UserActivity.status == status.value,
                    )
                )
                .order_by(UserActivity.created_at, UserActivity.activity_id)
            )
            return result.all()

    async def verify_withdrawal_sweeps(self) -> SettlementReport:
        """PENDING_CONFIRMATION requests move to SWEEP_CONFIRMED once their sweep has enough confirmations"""
        if self.gateway is None:
            raise ValueError("A chain gateway is required to verify sweeps")

        report = SettlementReport()
        for activity_id, tx_hash in await self._activity_ids(WithdrawalRequestStatus.PENDING_CONFIRMATION):
            try:
                await self._verify_activity(activity_id, tx_hash, report)
            except Exception as e:
                logger.exception(f"❌ SWEEP_VERIFICATION_ERROR: activity #{activity_id}: {e}")
                report.errors.append(activity_id)
        return report

    async def _verify_activity(self, activity_id: int, tx_hash: Optional[str], report: SettlementReport) -> None:
        if not tx_hash:
            await self.ledger.transition_activity_status(
                activity_id, WithdrawalRequestStatus.FAILED, error_message="No sweep transaction recorded"
            )
            report.failed.append(activity_id)
            return

        try:
            receipt = await self.gateway.get_receipt(tx_hash)
        except ChainGatewayError as e:
            logger.warning(f"⏳ SWEEP_VERIFICATION_DEFERRED: activity #{activity_id} tx={tx_hash}: {e}")
            report.waiting.append(activity_id)
            return

        if receipt is None or not receipt.succeeded:
            reason = "Sweep transaction not found" if receipt is None else "Sweep transaction reverted"
            await self.ledger.transition_activity_status(
                activity_id, WithdrawalRequestStatus.FAILED, error_message=f"{reason}: {tx_hash}"
            )
            logger.critical(f"🚨 WITHDRAWAL_SWEEP_FAILED: activity #{activity_id} {reason.lower()} tx={tx_hash}")
            report.failed.append(activity_id)
            return

        if receipt.confirmations < self.required_confirmations:
            logger.info(
                f"⏳ SWEEP_AWAITING_CONFIRMATIONS: activity #{activity_id} "
                f"{receipt.confirmations}/{self.required_confirmations}"
            )
            report.waiting.append(activity_id)
            return

        await self.ledger.transition_activity_status(activity_id, WithdrawalRequestStatus.SWEEP_CONFIRMED)
        logger.info(f"✅ WITHDRAWAL_SWEEP_CONFIRMED: activity #{activity_id} tx={tx_hash}")
        report.confirmed.append(activity_id)

    async def settle_activity(self, activity_id: int) -> bool:
        """
        Credit a SWEEP_CONFIRMED request to the user's balance.

        The balance credit, the negative WITHDRAWAL_REQUEST entry and the
        COMPLETED status are written in one transaction. Returns False when the
        request could not be settled and was marked FAILED instead.
        """
        try:
            async with async_atomic_transaction() as session:
                result = await session.execute(
                    select(UserActivity).where(UserActivity.activity_id == activity_id).with_for_update()
                )
                activity = result.scalar_one()
                amount = TokenAmount.to_decimal(activity.amount_primary or 0)
                if amount <= 0:
                    raise LedgerError(f"Invalid withdrawal amount {activity.amount_primary}")

                capital = await self.ledger.get_vault_capital(activity.user_id, activity.vault_id, session=session)
                if capital < amount:
                    raise LedgerError(f"Vault capital {capital} cannot cover withdrawal of {amount}")

                user = await lock_user_row(session, activity.user_id)
                if user is None:
                    raise LedgerError(f"User {activity.user_id} not found")
                user.balance = Decimal(user.balance) + amount

                await self.ledger.insert_entry(
                    session, activity.user_id, activity.vault_id, LedgerEntryType.WITHDRAWAL_REQUEST, -amount,
                    LedgerEntryStatus.COMPLETED, tx_hash=activity.related_sweep_tx_hash,
                    notes=f"Vault withdrawal request #{activity_id}",
                )
                await self.ledger.adjust_position(session, activity.user_id, activity.vault_id, -amount)
                await self.ledger.transition_activity_status(
                    activity_id, WithdrawalRequestStatus.COMPLETED, session=session
                )
        except LedgerError as e:
            logger.error(f"❌ VAULT_WITHDRAWAL_SETTLEMENT_FAILED: activity #{activity_id}: {e}")
            await self.ledger.transition_activity_status(
                activity_id, WithdrawalRequestStatus.FAILED, error_message=str(e)
            )
            return False

        logger.info(
            f"✅ VAULT_WITHDRAWAL_SETTLED: activity #{activity_id} user={activity.user_id} "
            f"vault={activity.vault_id} amount={amount}"
        )
        return True

    async def settle_vault_withdrawals(self) -> SettlementReport:
        report = SettlementReport()
        for activity_id, _ in await self._activity_ids(WithdrawalRequestStatus.SWEEP_CONFIRMED):
            try:
                settled = await self.settle_activity(activity_id)
            except Exception as e:
                logger.exception(f"❌ VAULT_WITHDRAWAL_SETTLEMENT_ERROR: activity #{activity_id}: {e}")
                report.errors.append(activity_id)
                continue
            if settled:
                report.completed.append(activity_id)
            else:
                report.failed.append(activity_id)
        return report
