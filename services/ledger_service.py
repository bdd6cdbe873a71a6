"""
Ledger Service
==============

Typed access to the vault ledger. Every money-moving operation runs inside a
single atomic transaction together with the audit entries it creates, and all
status changes go through LedgerStateMachine so invariants are checked here
rather than at each call site.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from config import Config
from models import (
    LedgerEntry, LedgerEntryType, LedgerEntryStatus, User, Vault, VaultStatus,
    UserVaultPosition, PositionStatus, UserActivity, ActivityType, WithdrawalRequestStatus,
    WithdrawalQueueItem, WithdrawalQueueStatus,
)
from services.ledger_state_machine import (
    LedgerStateMachine, LedgerError, InvalidTransitionError, InsufficientFundsError,
)
from utils.amounts import TokenAmount, split_deposit_fee
from utils.atomic_transactions import async_atomic_transaction, lock_user_row

logger = logging.getLogger(__name__)

__all__ = [
    "LedgerService", "ledger_service",
    "LedgerError", "InvalidTransitionError", "InsufficientFundsError",
]

DISTRIBUTION_TYPES = {
    LedgerEntryType.PNL_DISTRIBUTION,
    LedgerEntryType.PERFORMANCE_FEE,
    LedgerEntryType.DEPOSIT_BUYBACK,
}

OPEN_ACTIVITY_STATUSES = [
    WithdrawalRequestStatus.PENDING.value,
    WithdrawalRequestStatus.PENDING_APPROVAL.value,
    WithdrawalRequestStatus.APPROVED.value,
    WithdrawalRequestStatus.PENDING_FUNDING.value,
    WithdrawalRequestStatus.PENDING_CONFIRMATION.value,
    WithdrawalRequestStatus.SWEEP_CONFIRMED.value,
]

QUEUED_WITHDRAWAL_STATUSES = [WithdrawalQueueStatus.QUEUED.value, WithdrawalQueueStatus.PROCESSING.value]


class LedgerService:
    """Ledger entry insertion, status transitions and ledger reads"""

    def __init__(self, fee_percentage: Optional[Decimal] = None, token_decimals: Optional[int] = None):
        self.fee_percentage = fee_percentage if fee_percentage is not None else Config.DEPOSIT_FEE_PERCENTAGE
        self.token_decimals = token_decimals if token_decimals is not None else Config.USDC_DECIMALS

    # ------------------------------------------------------------------
    # Primitive operations
    # ------------------------------------------------------------------

    async def insert_entry(
        self,
        session: AsyncSession,
        user_id: int,
        vault_id: int,
        entry_type,
        amount,
        status,
        fee_amount=None,
        tx_hash: Optional[str] = None,
        related_entry_id: Optional[int] = None,
        counterparty_vault_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> LedgerEntry:
        """Append a validated entry to the ledger within the caller's transaction"""
        amount = TokenAmount.to_decimal(amount, "ledger amount")
        entry_type, status = LedgerStateMachine.validate_new_entry(
            entry_type, status, amount, related_entry_id=related_entry_id
        )
        if fee_amount is not None:
            fee_amount = TokenAmount.to_decimal(fee_amount, "fee amount")
            if fee_amount < 0:
                raise LedgerError(f"Fee amount must not be negative, got {fee_amount}")

        entry = LedgerEntry(
            user_id=user_id,
            vault_id=vault_id,
            entry_type=entry_type.value,
            amount=amount,
            fee_amount=fee_amount,
            status=status.value,
            tx_hash=tx_hash,
            related_entry_id=related_entry_id,
            counterparty_vault_id=counterparty_vault_id,
            notes=notes,
        )
        session.add(entry)
        await session.flush()

        logger.info(
            f"📒 LEDGER_ENTRY_CREATED: #{entry.entry_id} {entry_type.value} user={user_id} "
            f"vault={vault_id} amount={amount} status={status.value}"
        )
        return entry

    async def transition_status(self, session: AsyncSession, entry_id: int, new_status) -> LedgerEntry:
        """Advance an entry's status under a row lock; raises InvalidTransitionError on illegal moves"""
        result = await session.execute(
            select(LedgerEntry).where(LedgerEntry.entry_id == entry_id).with_for_update()
        )
        entry = result.scalar_one_or_none()
        if entry is None:
            raise LedgerError(f"Ledger entry {entry_id} not found")

        old_status = entry.status
        new_type = LedgerStateMachine.validate_entry_transition(
            entry.entry_type, entry.status, new_status, entry_id=entry_id
        )
        entry.status = LedgerStateMachine.coerce(LedgerEntryStatus, new_status).value
        entry.entry_type = new_type.value
        await session.flush()

        logger.info(f"🔁 LEDGER_STATUS_CHANGED: #{entry_id} {old_status} -> {entry.status} ({entry.entry_type})")
        return entry

    # ------------------------------------------------------------------
    # Investment and administrative operations
    # ------------------------------------------------------------------

    async def _require_active_vault(self, session: AsyncSession, vault_id: int) -> Vault:
        vault = await session.get(Vault, vault_id)
        if vault is None:
            raise LedgerError(f"Vault {vault_id} not found")
        if vault.status != VaultStatus.ACTIVE.value:
            raise LedgerError(f"Vault {vault_id} is not accepting capital (status={vault.status})")
        return vault

    async def _lock_position(self, session: AsyncSession, user_id: int, vault_id: int) -> Optional[UserVaultPosition]:
        result = await session.execute(
            select(UserVaultPosition)
            .where(and_(UserVaultPosition.user_id == user_id, UserVaultPosition.vault_id == vault_id))
            .with_for_update()
        )
        return result.scalar_one_or_none()

    async def adjust_position(self, session: AsyncSession, user_id: int, vault_id: int, delta: Decimal,
                              mark_active: bool = False) -> UserVaultPosition:
        position = await self._lock_position(session, user_id, vault_id)
        if position is None:
            position = UserVaultPosition(
                user_id=user_id,
                vault_id=vault_id,
                tradable_capital=delta,
                status=PositionStatus.ACTIVE.value,
            )
            session.add(position)
        else:
            position.tradable_capital = Decimal(position.tradable_capital) + delta
            if mark_active and position.status == PositionStatus.IN_TRADE.value:
                LedgerStateMachine.validate_position_transition(position.status, PositionStatus.ACTIVE)
                position.status = PositionStatus.ACTIVE.value
        await session.flush()
        return position

    async def allocate_to_vault(self, user_id: int, vault_id: int, gross_amount, session: AsyncSession = None) -> LedgerEntry:
        """
        Move available balance into a vault.

        The configured deposit fee is split off into ``fee_amount``; the DEPOSIT
        entry carries the net amount and waits in PENDING_SWEEP for the sweep engine.
        """
        gross = TokenAmount.to_decimal(gross_amount, "allocation amount")
        net, fee = split_deposit_fee(gross, self.fee_percentage, self.token_decimals)

        async with async_atomic_transaction(session) as tx:
            await self._require_active_vault(tx, vault_id)
            user = await lock_user_row(tx, user_id)
            if user is None:
                raise LedgerError(f"User {user_id} not found")

            balance = Decimal(user.balance)
            available = balance - await self.get_reserved_for_withdrawals(user_id, session=tx)
            if available < gross:
                raise InsufficientFundsError(
                    f"User {user_id} available balance {available} is below allocation amount {gross}"
                )
            user.balance = balance - gross

            entry = await self.insert_entry(
                tx, user_id, vault_id, LedgerEntryType.DEPOSIT, net, LedgerEntryStatus.PENDING_SWEEP,
                fee_amount=fee,
            )
            await self.adjust_position(tx, user_id, vault_id, net, mark_active=True)

        logger.info(f"💰 VAULT_ALLOCATION: user={user_id} vault={vault_id} gross={gross} net={net} fee={fee}")
        return entry

    async def activate_deposit(self, entry_id: int, session: AsyncSession = None) -> LedgerEntry:
        """Administrative PENDING_SWEEP -> ACTIVE_IN_POOL"""
        async with async_atomic_transaction(session) as tx:
            return await self.transition_status(tx, entry_id, LedgerEntryStatus.ACTIVE_IN_POOL)

    async def request_vault_transfer(self, user_id: int, from_vault_id: int, to_vault_id: int, amount,
                                     session: AsyncSession = None) -> LedgerEntry:
        """Place a negative TRANSFER_FUNDS_HELD hold against the source vault"""
        amount = TokenAmount.to_decimal(amount, "transfer amount")
        if amount <= 0:
            raise LedgerError(f"Transfer amount must be positive, got {amount}")
        if from_vault_id == to_vault_id:
            raise LedgerError("Source and destination vaults must differ")

        async with async_atomic_transaction(session) as tx:
            await self._require_active_vault(tx, to_vault_id)
            position = await self._lock_position(tx, user_id, from_vault_id)
            if position is None:
                raise InsufficientFundsError(f"User {user_id} has no position in vault {from_vault_id}")

            capital = await self.get_vault_capital(user_id, from_vault_id, session=tx)
            if capital < amount:
                raise InsufficientFundsError(
                    f"Vault {from_vault_id} capital {capital} is below transfer amount {amount}"
                )

            hold = await self.insert_entry(
                tx, user_id, from_vault_id, LedgerEntryType.TRANSFER_FUNDS_HELD, -amount,
                LedgerEntryStatus.PENDING, counterparty_vault_id=to_vault_id,
            )
            position.tradable_capital = Decimal(position.tradable_capital) - amount
        return hold

    async def _load_hold(self, tx: AsyncSession, entry_id: int) -> LedgerEntry:
        hold = await tx.get(LedgerEntry, entry_id)
        if hold is None:
            raise LedgerError(f"Ledger entry {entry_id} not found")
        if hold.entry_type != LedgerEntryType.TRANSFER_FUNDS_HELD.value:
            raise LedgerError(f"Ledger entry {entry_id} is not a transfer hold ({hold.entry_type})")
        return hold

    async def complete_vault_transfer(self, entry_id: int, session: AsyncSession = None) -> LedgerEntry:
        """Finalize a hold: it becomes VAULT_TRANSFER_OUT and the destination is credited"""
        async with async_atomic_transaction(session) as tx:
            hold = await self._load_hold(tx, entry_id)
            hold = await self.transition_status(tx, entry_id, LedgerEntryStatus.COMPLETED)
            credit = -Decimal(hold.amount)

            transfer_in = await self.insert_entry(
                tx, hold.user_id, hold.counterparty_vault_id, LedgerEntryType.VAULT_TRANSFER_IN, credit,
                LedgerEntryStatus.COMPLETED, related_entry_id=hold.entry_id,
                counterparty_vault_id=hold.vault_id,
            )
            await self.adjust_position(tx, hold.user_id, hold.counterparty_vault_id, credit)

        logger.info(
            f"✅ VAULT_TRANSFER_COMPLETED: hold #{entry_id} vault {hold.vault_id} -> "
            f"{hold.counterparty_vault_id} amount={credit}"
        )
        return transfer_in

    async def reject_vault_transfer(self, entry_id: int, session: AsyncSession = None) -> LedgerEntry:
        """Reverse a hold with an offsetting positive entry on the source vault"""
        async with async_atomic_transaction(session) as tx:
            hold = await self._load_hold(tx, entry_id)
            hold = await self.transition_status(tx, entry_id, LedgerEntryStatus.REVERSED)
            refund = -Decimal(hold.amount)

            reversal = await self.insert_entry(
                tx, hold.user_id, hold.vault_id, LedgerEntryType.TRANSFER_FUNDS_HELD, refund,
                LedgerEntryStatus.REVERSED, related_entry_id=hold.entry_id,
                notes=f"Reversal of transfer hold #{hold.entry_id}",
            )
            await self.adjust_position(tx, hold.user_id, hold.vault_id, refund)

        logger.info(f"↩️ VAULT_TRANSFER_REVERSED: hold #{entry_id} amount={refund}")
        return reversal

    async def record_distribution(self, user_id: int, vault_id: int, entry_type, amount,
                                  session: AsyncSession = None, notes: Optional[str] = None) -> LedgerEntry:
        """PNL distribution, performance fee or buyback entry; always COMPLETED"""
        entry_type = LedgerStateMachine.coerce(LedgerEntryType, entry_type)
        if entry_type not in DISTRIBUTION_TYPES:
            raise LedgerError(f"{entry_type.value} is not a distribution entry type")

        async with async_atomic_transaction(session) as tx:
            await self._require_active_vault(tx, vault_id)
            entry = await self.insert_entry(
                tx, user_id, vault_id, entry_type, amount, LedgerEntryStatus.COMPLETED, notes=notes,
            )
            await self.adjust_position(tx, user_id, vault_id, Decimal(entry.amount))
        return entry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_vault_capital(self, user_id: int, vault_id: int, session: AsyncSession = None) -> Decimal:
        """Signed sum of a user's entries for a vault"""
        async with async_atomic_transaction(session) as tx:
            result = await tx.execute(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    and_(LedgerEntry.user_id == user_id, LedgerEntry.vault_id == vault_id)
                )
            )
            return TokenAmount.to_decimal(result.scalar_one())

    async def get_entry_history(self, user_id: int, vault_id: Optional[int] = None,
                                session: AsyncSession = None) -> List[LedgerEntry]:
        async with async_atomic_transaction(session) as tx:
            stmt = select(LedgerEntry).where(LedgerEntry.user_id == user_id)
            if vault_id is not None:
                stmt = stmt.where(LedgerEntry.vault_id == vault_id)
            result = await tx.execute(stmt.order_by(LedgerEntry.created_at, LedgerEntry.entry_id))
            return list(result.scalars().all())

    async def get_user_balance(self, user_id: int, session: AsyncSession = None) -> Decimal:
        async with async_atomic_transaction(session) as tx:
            user = await tx.get(User, user_id)
            if user is None:
                raise LedgerError(f"User {user_id} not found")
            return TokenAmount.to_decimal(user.balance)

    async def get_reserved_for_withdrawals(self, user_id: int, session: AsyncSession = None) -> Decimal:
        """Balance already promised to queued on-chain withdrawals"""
        async with async_atomic_transaction(session) as tx:
            result = await tx.execute(
                select(func.coalesce(func.sum(WithdrawalQueueItem.amount), 0)).where(
                    and_(
                        WithdrawalQueueItem.user_id == user_id,
                        WithdrawalQueueItem.status.in_(QUEUED_WITHDRAWAL_STATUSES),
                    )
                )
            )
            return TokenAmount.to_decimal(result.scalar_one())

    async def get_capital_in_transit(self, user_id: int, session: AsyncSession = None) -> Decimal:
        """Capital allocated but still waiting in the user's wallet for a sweep"""
        async with async_atomic_transaction(session) as tx:
            result = await tx.execute(
                select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
                    and_(
                        LedgerEntry.user_id == user_id,
                        LedgerEntry.entry_type == LedgerEntryType.DEPOSIT.value,
                        LedgerEntry.status == LedgerEntryStatus.PENDING_SWEEP.value,
                    )
                )
            )
            return TokenAmount.to_decimal(result.scalar_one())

    # ------------------------------------------------------------------
    # Vault withdrawal requests (activity log)
    # ------------------------------------------------------------------

    async def request_vault_withdrawal(self, user_id: int, vault_id: int, amount,
                                       session: AsyncSession = None) -> UserActivity:
        """Open a PENDING withdrawal request, bounded by capital not already being withdrawn"""
        amount = TokenAmount.to_decimal(amount, "withdrawal amount")
        if amount <= 0:
            raise LedgerError(f"Withdrawal amount must be positive, got {amount}")

        async with async_atomic_transaction(session) as tx:
            position = await self._lock_position(tx, user_id, vault_id)
            if position is None:
                raise InsufficientFundsError(f"User {user_id} has no position in vault {vault_id}")

            capital = await self.get_vault_capital(user_id, vault_id, session=tx)
            result = await tx.execute(
                select(func.coalesce(func.sum(UserActivity.amount_primary), 0)).where(
                    and_(
                        UserActivity.user_id == user_id,
                        UserActivity.vault_id == vault_id,
                        UserActivity.activity_type == ActivityType.VAULT_WITHDRAWAL_REQUEST.value,
                        UserActivity.status.in_(OPEN_ACTIVITY_STATUSES),
                    )
                )
            )
            already_requested = TokenAmount.to_decimal(result.scalar_one())
            if capital - already_requested < amount:
                raise InsufficientFundsError(
                    f"Vault {vault_id} capital {capital} minus open requests {already_requested} "
                    f"cannot cover {amount}"
                )

            activity = UserActivity(
                user_id=user_id,
                vault_id=vault_id,
                activity_type=ActivityType.VAULT_WITHDRAWAL_REQUEST.value,
                status=WithdrawalRequestStatus.PENDING.value,
                amount_primary=amount,
            )
            tx.add(activity)
            await tx.flush()

        logger.info(f"📝 VAULT_WITHDRAWAL_REQUESTED: activity #{activity.activity_id} user={user_id} vault={vault_id} amount={amount}")
        return activity

    async def transition_activity_status(self, activity_id: int, new_status, error_message: Optional[str] = None,
                                         session: AsyncSession = None) -> UserActivity:
        async with async_atomic_transaction(session) as tx:
            result = await tx.execute(
                select(UserActivity).where(UserActivity.activity_id == activity_id).with_for_update()
            )
            activity = result.scalar_one_or_none()
            if activity is None:
                raise LedgerError(f"Activity {activity_id} not found")

            old_status = activity.status
            target = LedgerStateMachine.validate_activity_transition(activity.status, new_status)
            activity.status = target.value
            if error_message is not None:
                activity.error_message = error_message[:1000]
            await tx.flush()

        logger.info(f"🔁 ACTIVITY_STATUS_CHANGED: #{activity_id} {old_status} -> {activity.status}")
        return activity

    async def record_withdrawal_sweep(self, activity_id: int, tx_hash: str, session: AsyncSession = None) -> UserActivity:
        """Attach the broadcast sweep hash: PENDING_FUNDING -> PENDING_CONFIRMATION"""
        if not tx_hash:
            raise LedgerError("A sweep transaction hash is required")
        async with async_atomic_transaction(session) as tx:
            activity = await self.transition_activity_status(
                activity_id, WithdrawalRequestStatus.PENDING_CONFIRMATION, session=tx
            )
            activity.related_sweep_tx_hash = tx_hash
        return activity


ledger_service = LedgerService()
