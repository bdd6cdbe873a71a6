"""
Test capital sweep engine
Two-leg sweeps, partial failure handling and manual resolution
"""

from decimal import Decimal

import pytest
from sqlalchemy import select

from database import async_managed_session
from models import (
    CapitalSweep, CapitalSweepStatus, HotWalletFundingLog, LedgerEntry, LedgerEntryStatus,
    UserVaultPosition, PositionStatus, User,
)
from services.capital_sweep import CapitalSweepEngine, SweepError, PartialSweepError
from services.chain_gateway import TransientProviderError, normalize_address
from services.ledger_service import LedgerService
from tests.conftest import TRADING_DESK_ADDRESS, DEVOPS_ADDRESS


@pytest.fixture
def ledger():
    return LedgerService(fee_percentage=Decimal("20"), token_decimals=6)


@pytest.fixture
def engine(gateway, gas_manager, key_store, nonces, ledger):
    return CapitalSweepEngine(
        gateway, gas_manager, key_store=key_store, nonce_manager=nonces, ledger=ledger,
        token_symbol="USDC", inter_position_delay=0,
    )


@pytest.fixture
def allocated(make_user, make_vault, ledger, gateway):
    """A user with 100 allocated into a vault and enough gas to sweep"""
    async def _allocated(amount="100", vault=None):
        user, account = await make_user(balance=amount)
        vault = vault or await make_vault()
        entry = await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal(amount))
        gateway.set_balance(user.eth_address, 10 ** 17)
        return user, vault, entry
    return _allocated


async def _sweep_record(entry_id):
    async with async_managed_session() as session:
        result = await session.execute(select(CapitalSweep).where(CapitalSweep.entry_id == entry_id))
        return result.scalar_one_or_none()


async def _entry(entry_id):
    async with async_managed_session() as session:
        return await session.get(LedgerEntry, entry_id)


async def _position_status(user_id, vault_id):
    async with async_managed_session() as session:
        result = await session.execute(
            select(UserVaultPosition.status).where(
                UserVaultPosition.user_id == user_id, UserVaultPosition.vault_id == vault_id
            )
        )
        return result.scalar_one()


class TestSuccessfulSweep:
    """Both legs confirm"""

    @pytest.mark.asyncio
    async def test_sweep_moves_net_and_fee(self, engine, allocated, gateway):
        user, vault, entry = await allocated("100")

        result = await engine.run()

        assert result.swept == [entry.entry_id]
        sends = gateway.token_sends
        assert [s["to"] for s in sends] == [TRADING_DESK_ADDRESS, DEVOPS_ADDRESS]
        assert [s["raw_amount"] for s in sends] == [80_000_000, 20_000_000]
        assert [s["nonce"] for s in sends] == [0, 1]

        sweep = await _sweep_record(entry.entry_id)
        assert sweep.status == CapitalSweepStatus.COMPLETED.value
        assert sweep.trading_desk_tx_hash == sends[0]["tx_hash"]
        assert sweep.devops_tx_hash == sends[1]["tx_hash"]
        assert (await _entry(entry.entry_id)).status == LedgerEntryStatus.SWEPT.value
        assert await _position_status(user.user_id, vault.vault_id) == PositionStatus.IN_TRADE.value

    @pytest.mark.asyncio
    async def test_swept_entries_are_not_picked_up_again(self, engine, allocated, gateway):
        await allocated("100")
        await engine.run()

        assert await engine.find_pending_sweeps() == []
        result = await engine.run()
        assert result.swept == []
        assert len(gateway.token_sends) == 2

    @pytest.mark.asyncio
    async def test_low_gas_wallet_is_topped_up_first(self, engine, allocated, gateway):
        user, _, entry = await allocated("100")
        gateway.set_balance(user.eth_address, 0)

        result = await engine.run()

        assert result.swept == [entry.entry_id]
        assert len(gateway.native_sends) == 1
        assert normalize_address(gateway.native_sends[0]["to"]) == user.eth_address
        async with async_managed_session() as session:
            log = (await session.execute(select(HotWalletFundingLog))).scalar_one()
        assert log.purpose == "sweep"
        assert log.user_id == user.user_id

    @pytest.mark.asyncio
    async def test_positions_are_spaced_by_the_configured_delay(self, gateway, gas_manager, key_store, nonces,
                                                                ledger, allocated):
        delays = []

        async def record_sleep(seconds):
            delays.append(seconds)

        engine = CapitalSweepEngine(
            gateway, gas_manager, key_store=key_store, nonce_manager=nonces, ledger=ledger,
            token_symbol="USDC", inter_position_delay=2, sleep=record_sleep,
        )
        for _ in range(3):
            await allocated("10")

        result = await engine.run()

        assert len(result.swept) == 3
        assert delays == [2, 2]

    @pytest.mark.asyncio
    async def test_nonces_read_once_per_sweep(self, engine, allocated, gateway, monkeypatch):
        """A lagging node still yields consecutive nonces for both legs"""
        user, _, _ = await allocated("100")
        reads = []

        async def lagging_count(address):
            reads.append(normalize_address(address))
            return 5

        monkeypatch.setattr(gateway, "get_transaction_count", lagging_count)

        await engine.run()

        assert reads.count(normalize_address(user.eth_address)) == 1
        assert [s["nonce"] for s in gateway.token_sends] == [5, 6]


class TestFailedSweeps:
    """Partial and early failures"""

    @pytest.mark.asyncio
    async def test_devops_leg_failure_keeps_first_leg_hash(self, engine, allocated, gateway):
        user, vault, entry = await allocated("100")
        gateway.fail_sends_to[normalize_address(DEVOPS_ADDRESS)] = TransientProviderError("rpc timeout")

        candidates = await engine.find_pending_sweeps()
        with pytest.raises(PartialSweepError) as exc_info:
            await engine.sweep_entry(candidates[0])

        first_leg_hash = gateway.token_sends[0]["tx_hash"]
        assert exc_info.value.trading_desk_tx_hash == first_leg_hash

        sweep = await _sweep_record(entry.entry_id)
        assert sweep.status == CapitalSweepStatus.SWEEP_FAILED.value
        assert sweep.trading_desk_tx_hash == first_leg_hash
        assert sweep.devops_tx_hash is None
        assert "devops" in sweep.error_message
        assert (await _entry(entry.entry_id)).status == LedgerEntryStatus.PENDING_SWEEP.value
        assert await _position_status(user.user_id, vault.vault_id) == PositionStatus.SWEEP_FAILED.value

    @pytest.mark.asyncio
    async def test_failed_sweep_is_not_retried(self, engine, allocated, gateway):
        _, _, entry = await allocated("100")
        gateway.fail_sends_to[normalize_address(DEVOPS_ADDRESS)] = TransientProviderError("rpc timeout")
        first = await engine.run()
        assert first.failed == [entry.entry_id]

        gateway.fail_sends_to.clear()
        second = await engine.run()

        assert second.swept == [] and second.failed == []
        assert len(gateway.token_sends) == 1

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(self, engine, allocated):
        _, _, first = await allocated("100")
        _, _, second = await allocated("100")
        async with async_managed_session() as session:
            user = await session.get(User, first.user_id)
            user.eth_private_key_encrypted = "00:11:22"

        result = await engine.run()

        assert result.failed == [first.entry_id]
        assert result.swept == [second.entry_id]
        failed = await _sweep_record(first.entry_id)
        assert failed.status == CapitalSweepStatus.SWEEP_FAILED.value
        assert "decryption" in failed.error_message.lower()

    @pytest.mark.asyncio
    async def test_gas_funding_failure_defers_without_record(self, engine, allocated, gateway):
        user, _, entry = await allocated("100")
        gateway.set_balance(user.eth_address, 0)
        gateway.fail_sends_to[user.eth_address] = TransientProviderError("hot wallet rpc down")

        result = await engine.run()

        assert result.deferred == [entry.entry_id]
        assert await _sweep_record(entry.entry_id) is None
        assert gateway.token_sends == []


class TestResolveFailedSweep:
    """Manual close-out after an operator sends the missing leg"""

    @pytest.mark.asyncio
    async def test_resolve_marks_everything_complete(self, engine, allocated, gateway):
        user, vault, entry = await allocated("100")
        gateway.fail_sends_to[normalize_address(DEVOPS_ADDRESS)] = TransientProviderError("rpc timeout")
        await engine.run()

        sweep = await engine.resolve_failed_sweep(entry.entry_id, "0x" + "de" * 32)

        assert sweep.status == CapitalSweepStatus.COMPLETED.value
        assert sweep.devops_tx_hash == "0x" + "de" * 32
        assert (await _entry(entry.entry_id)).status == LedgerEntryStatus.SWEPT.value
        assert await _position_status(user.user_id, vault.vault_id) == PositionStatus.IN_TRADE.value

    @pytest.mark.asyncio
    async def test_resolve_requires_failed_sweep(self, engine, allocated):
        _, _, entry = await allocated("100")
        await engine.run()

        with pytest.raises(SweepError):
            await engine.resolve_failed_sweep(entry.entry_id, "0x" + "de" * 32)

    @pytest.mark.asyncio
    async def test_resolve_requires_trading_desk_hash_when_missing(self, engine, allocated, gateway):
        _, _, entry = await allocated("100")
        gateway.fail_sends_to[normalize_address(TRADING_DESK_ADDRESS)] = TransientProviderError("rpc timeout")
        await engine.run()

        with pytest.raises(SweepError):
            await engine.resolve_failed_sweep(entry.entry_id, "0x" + "de" * 32)

        sweep = await engine.resolve_failed_sweep(
            entry.entry_id, "0x" + "de" * 32, trading_desk_tx_hash="0x" + "ad" * 32
        )
        assert sweep.trading_desk_tx_hash == "0x" + "ad" * 32

    @pytest.mark.asyncio
    async def test_position_stays_failed_while_sibling_sweep_unresolved(self, engine, allocated, gateway):
        user, vault, first = await allocated("100")
        await _allocate_again(user, vault, engine.ledger)
        gateway.fail_sends_to[normalize_address(DEVOPS_ADDRESS)] = TransientProviderError("rpc timeout")
        result = await engine.run()
        assert len(result.failed) == 2

        await engine.resolve_failed_sweep(first.entry_id, "0x" + "de" * 32)

        assert await _position_status(user.user_id, vault.vault_id) == PositionStatus.SWEEP_FAILED.value


async def _allocate_again(user, vault, ledger):
    async with async_managed_session() as session:
        db_user = await session.get(User, user.user_id)
        db_user.balance = Decimal("100")
    return await ledger.allocate_to_vault(user.user_id, vault.vault_id, Decimal("100"))
