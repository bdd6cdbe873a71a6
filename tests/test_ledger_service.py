"""
Test ledger service
Vault allocations, transfers, distributions and withdrawal requests
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from database import async_managed_session
from models import (
    LedgerEntry, LedgerEntryType, LedgerEntryStatus, UserVaultPosition, PositionStatus,
    VaultStatus, WithdrawalQueueItem, WithdrawalRequestStatus,
)
from services.ledger_service import LedgerService, LedgerError, InsufficientFundsError, InvalidTransitionError


@pytest.fixture
def ledger():
    return LedgerService(fee_percentage=Decimal("20"), token_decimals=6)


async def _position(user_id, vault_id):
    async with async_managed_session() as session:
        result = await session.execute(
            select(UserVaultPosition).where(
                UserVaultPosition.user_id == user_id, UserVaultPosition.vault_id == vault_id
            )
        )
        return result.scalar_one_or_none()


class TestVaultAllocation:
    """Allocating balance into a vault"""

    @pytest.mark.asyncio
    async def test_deposit_entry_carries_net_and_fee(self, ledger, make_user, make_vault):
        """100 USDC at a 20% fee becomes an 80 DEPOSIT entry with a 20 fee, awaiting sweep"""
        user, _ = await make_user(balance="150")
        vault = await make_vault()

        entry = await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal("100"))

        assert entry.entry_type == LedgerEntryType.DEPOSIT.value
        assert Decimal(entry.amount) == Decimal("80")
        assert Decimal(entry.fee_amount) == Decimal("20")
        assert entry.status == LedgerEntryStatus.PENDING_SWEEP.value
        assert await ledger.get_user_balance(user.user_id) == Decimal("50")

        position = await _position(user.user_id, vault.vault_id)
        assert Decimal(position.tradable_capital) == Decimal("80")
        assert position.status == PositionStatus.ACTIVE.value
        assert await ledger.get_capital_in_transit(user.user_id) == Decimal("80")

    @pytest.mark.asyncio
    async def test_insufficient_balance_rolls_back(self, ledger, make_user, make_vault):
        user, _ = await make_user(balance="20")
        vault = await make_vault()

        with pytest.raises(InsufficientFundsError):
            await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal("100"))

        assert await ledger.get_user_balance(user.user_id) == Decimal("20")
        assert await ledger.get_entry_history(user.user_id) == []

    @pytest.mark.asyncio
    async def test_queued_withdrawals_are_reserved(self, ledger, make_user, make_vault):
        """Balance promised to a queued withdrawal cannot be allocated again"""
        user, _ = await make_user(balance="100")
        vault = await make_vault()
        async with async_managed_session() as session:
            session.add(WithdrawalQueueItem(
                user_id=user.user_id, to_address="0x" + "cc" * 20, amount=Decimal("80"), token="USDC",
            ))

        with pytest.raises(InsufficientFundsError):
            await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal("50"))

    @pytest.mark.asyncio
    async def test_closed_vault_rejects_capital(self, ledger, make_user, make_vault):
        user, _ = await make_user(balance="100")
        vault = await make_vault(status=VaultStatus.CLOSED)

        with pytest.raises(LedgerError):
            await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal("10"))

    @pytest.mark.asyncio
    async def test_activate_deposit_then_no_way_back(self, ledger, make_user, make_vault):
        user, _ = await make_user(balance="100")
        vault = await make_vault()
        entry = await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal("100"))

        activated = await ledger.activate_deposit(entry.entry_id)
        assert activated.status == LedgerEntryStatus.ACTIVE_IN_POOL.value

        async with async_managed_session() as session:
            with pytest.raises(InvalidTransitionError):
                await ledger.transition_status(session, entry.entry_id, LedgerEntryStatus.PENDING_SWEEP)


class TestVaultTransfers:
    """Transfer holds between vaults"""

    @pytest.mark.asyncio
    async def test_completed_transfer_moves_capital(self, ledger, make_user, make_vault):
        user, _ = await make_user(balance="100")
        source = await make_vault("Source")
        destination = await make_vault("Destination")
        await ledger.allocate_to_vault(user.user_id, source.vault_id, Decimal("100"))

        hold = await ledger.request_vault_transfer(user.user_id, source.vault_id, destination.vault_id, Decimal("20"))
        assert hold.entry_type == LedgerEntryType.TRANSFER_FUNDS_HELD.value
        assert Decimal(hold.amount) == Decimal("-20")
        assert await ledger.get_vault_capital(user.user_id, source.vault_id) == Decimal("60")

        credit = await ledger.complete_vault_transfer(hold.entry_id)
        assert credit.entry_type == LedgerEntryType.VAULT_TRANSFER_IN.value
        assert await ledger.get_vault_capital(user.user_id, destination.vault_id) == Decimal("20")

        history = await ledger.get_entry_history(user.user_id, source.vault_id)
        retyped = next(e for e in history if e.entry_id == hold.entry_id)
        assert retyped.entry_type == LedgerEntryType.VAULT_TRANSFER_OUT.value
        assert retyped.status == LedgerEntryStatus.COMPLETED.value
        assert Decimal(retyped.amount) == Decimal("-20")

    @pytest.mark.asyncio
    async def test_rejected_transfer_restores_capital(self, ledger, make_user, make_vault):
        user, _ = await make_user(balance="100")
        source = await make_vault("Source")
        destination = await make_vault("Destination")
        await ledger.allocate_to_vault(user.user_id, source.vault_id, Decimal("100"))
        hold = await ledger.request_vault_transfer(user.user_id, source.vault_id, destination.vault_id, Decimal("20"))

        reversal = await ledger.reject_vault_transfer(hold.entry_id)

        assert reversal.related_entry_id == hold.entry_id
        assert Decimal(reversal.amount) == Decimal("20")
        assert await ledger.get_vault_capital(user.user_id, source.vault_id) == Decimal("80")
        position = await _position(user.user_id, source.vault_id)
        assert Decimal(position.tradable_capital) == Decimal("80")

    @pytest.mark.asyncio
    async def test_transfer_cannot_exceed_capital(self, ledger, make_user, make_vault):
        user, _ = await make_user(balance="100")
        source = await make_vault("Source")
        destination = await make_vault("Destination")
        await ledger.allocate_to_vault(user.user_id, source.vault_id, Decimal("100"))

        with pytest.raises(InsufficientFundsError):
            await ledger.request_vault_transfer(user.user_id, source.vault_id, destination.vault_id, Decimal("100"))

    @pytest.mark.asyncio
    async def test_status_changes_never_touch_amounts(self, ledger, make_user, make_vault):
        """The signed sum for a (user, vault) pair only moves when entries are inserted"""
        user, _ = await make_user(balance="100")
        source = await make_vault("Source")
        destination = await make_vault("Destination")
        entry = await ledger.allocate_to_vault(user.user_id, source.vault_id, Decimal("100"))
        hold = await ledger.request_vault_transfer(user.user_id, source.vault_id, destination.vault_id, Decimal("20"))
        before = await ledger.get_vault_capital(user.user_id, source.vault_id)

        async with async_managed_session() as session:
            await ledger.transition_status(session, entry.entry_id, LedgerEntryStatus.SWEPT)
            await ledger.transition_status(session, hold.entry_id, LedgerEntryStatus.COMPLETED)

        assert await ledger.get_vault_capital(user.user_id, source.vault_id) == before


class TestDistributionsAndRequests:

    @pytest.mark.asyncio
    async def test_record_distribution(self, ledger, make_user, make_vault):
        user, _ = await make_user(balance="100")
        vault = await make_vault()
        await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal("100"))

        await ledger.record_distribution(user.user_id, vault.vault_id, LedgerEntryType.PNL_DISTRIBUTION, Decimal("0.5"))
        await ledger.record_distribution(user.user_id, vault.vault_id, "PERFORMANCE_FEE", Decimal("-0.25"))

        assert await ledger.get_vault_capital(user.user_id, vault.vault_id) == Decimal("80.25")

    @pytest.mark.asyncio
    async def test_distribution_rejects_other_types(self, ledger, make_user, make_vault):
        user, _ = await make_user()
        vault = await make_vault()
        with pytest.raises(LedgerError):
            await ledger.record_distribution(user.user_id, vault.vault_id, LedgerEntryType.DEPOSIT, Decimal("1"))

    @pytest.mark.asyncio
    async def test_withdrawal_requests_bounded_by_open_requests(self, ledger, make_user, make_vault):
        user, _ = await make_user(balance="100")
        vault = await make_vault()
        await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal("100"))

        activity = await ledger.request_vault_withdrawal(user.user_id, vault.vault_id, Decimal("50"))
        assert activity.status == WithdrawalRequestStatus.PENDING.value

        with pytest.raises(InsufficientFundsError):
            await ledger.request_vault_withdrawal(user.user_id, vault.vault_id, Decimal("50"))

    @pytest.mark.asyncio
    async def test_record_withdrawal_sweep_requires_funding_stage(self, ledger, make_user, make_vault):
        user, _ = await make_user(balance="100")
        vault = await make_vault()
        await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal("100"))
        activity = await ledger.request_vault_withdrawal(user.user_id, vault.vault_id, Decimal("20"))

        with pytest.raises(InvalidTransitionError):
            await ledger.record_withdrawal_sweep(activity.activity_id, "0xabc")

        await ledger.transition_activity_status(activity.activity_id, WithdrawalRequestStatus.APPROVED)
        await ledger.transition_activity_status(activity.activity_id, WithdrawalRequestStatus.PENDING_FUNDING)
        updated = await ledger.record_withdrawal_sweep(activity.activity_id, "0xabc")

        assert updated.status == WithdrawalRequestStatus.PENDING_CONFIRMATION.value
        assert updated.related_sweep_tx_hash == "0xabc"
