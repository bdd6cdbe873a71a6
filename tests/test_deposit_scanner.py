"""
Test deposit scanner
Scan range computation, idempotent crediting and cursor handling
"""

from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from database import async_managed_session
from models import DepositRecord, User
from services.deposit_scanner import DepositScanner, compute_scan_range


def usdc(amount: str) -> int:
    return int(Decimal(amount) * 10 ** 6)


async def _deposit_count() -> int:
    async with async_managed_session() as session:
        return (await session.execute(select(func.count(DepositRecord.id)))).scalar_one()


async def _balance(user_id: int) -> Decimal:
    async with async_managed_session() as session:
        return Decimal((await session.get(User, user_id)).balance)


class TestComputeScanRange:
    """Range selection from cursor, head, buffer and chunk size"""

    def test_large_range_is_truncated_to_chunk(self):
        scan_range = compute_scan_range(None, 100_015, 5, 500, from_override=100, to_override=100_010)
        assert (scan_range.from_block, scan_range.to_block) == (100, 599)
        assert scan_range.truncated

    def test_cursor_plus_one_to_head_minus_buffer(self):
        scan_range = compute_scan_range(1000, 1010, 5, 500)
        assert (scan_range.from_block, scan_range.to_block) == (1001, 1005)
        assert not scan_range.truncated

    def test_nothing_new_returns_none(self):
        assert compute_scan_range(1005, 1010, 5, 500) is None

    def test_first_run_uses_start_block(self):
        scan_range = compute_scan_range(None, 1010, 5, 500, start_block=900)
        assert (scan_range.from_block, scan_range.to_block) == (900, 1005)

    def test_first_run_without_start_block_scans_only_latest_final_block(self):
        scan_range = compute_scan_range(None, 1010, 5, 500)
        assert (scan_range.from_block, scan_range.to_block) == (1005, 1005)


class TestDepositScanner:
    """Crediting inbound transfers"""

    @pytest.fixture
    def scanner(self, gateway):
        return DepositScanner(gateway, token_symbol="USDC", finality_buffer=5, max_chunk=500)

    @pytest.mark.asyncio
    async def test_scan_credits_and_advances_cursor(self, scanner, gateway, make_user):
        user, _ = await make_user()
        await scanner.set_cursor(990)
        gateway.add_transfer(user.eth_address, usdc("100"), block_number=993)
        gateway.add_transfer("0x" + "99" * 20, usdc("5"), block_number=994)  # not a custodial wallet

        result = await scanner.scan()

        assert result.credited == 1
        assert (result.from_block, result.to_block) == (991, 995)
        assert await scanner.get_cursor() == 995
        assert await _balance(user.user_id) == Decimal("100")

    @pytest.mark.asyncio
    async def test_scan_chunked_backlog(self, gateway, make_user):
        """Cursor advances by one chunk per tick"""
        scanner = DepositScanner(gateway, finality_buffer=5, max_chunk=500)
        gateway.block_number = 100_015
        await scanner.set_cursor(99)
        await make_user()

        result = await scanner.scan()

        assert (result.from_block, result.to_block) == (100, 599)
        assert await scanner.get_cursor() == 599

    @pytest.mark.asyncio
    async def test_rescan_of_same_range_creates_no_new_records(self, scanner, gateway, make_user):
        user, _ = await make_user()
        gateway.add_transfer(user.eth_address, usdc("20"), block_number=950)
        gateway.add_transfer(user.eth_address, usdc("0.5"), block_number=960)

        first = await scanner.scan(from_block=900, to_block=990)
        second = await scanner.scan(from_block=900, to_block=990)

        assert first.credited == 2
        assert second.credited == 0
        assert second.duplicates == 2
        assert await _deposit_count() == 2
        assert await _balance(user.user_id) == Decimal("20.5")

    @pytest.mark.asyncio
    async def test_override_scan_leaves_cursor_alone(self, scanner, gateway, make_user):
        await make_user()
        await scanner.set_cursor(995)

        await scanner.scan(from_block=10, to_block=1200)

        assert await scanner.get_cursor() == 995
        assert gateway.transfer_queries[0] == (10, 509)
        assert gateway.transfer_queries[-1][1] == 1200

    @pytest.mark.asyncio
    async def test_failed_credit_holds_cursor_before_failing_block(self, scanner, gateway, make_user):
        user, _ = await make_user()
        await scanner.set_cursor(990)
        gateway.add_transfer(user.eth_address, usdc("1"), block_number=991)
        bad = gateway.add_transfer(user.eth_address, usdc("2"), block_number=993)

        original = scanner.credit_transfer

        async def flaky(user_id, transfer):
            if transfer.tx_hash == bad.tx_hash:
                raise RuntimeError("database unavailable")
            return await original(user_id, transfer)

        with patch.object(scanner, "credit_transfer", side_effect=flaky):
            result = await scanner.scan()

        assert result.credited == 1
        assert result.failed_tx_hashes == [bad.tx_hash]
        assert await scanner.get_cursor() == 992

        # The next tick picks the failed transfer up again
        result = await scanner.scan()
        assert result.credited == 1
        assert await _balance(user.user_id) == Decimal("3")

    @pytest.mark.asyncio
    async def test_range_level_error_aborts_without_moving_cursor(self, scanner, gateway, make_user):
        await make_user()
        await scanner.set_cursor(990)

        with patch.object(gateway, "get_transfers", side_effect=ConnectionError("rpc down")):
            with pytest.raises(ConnectionError):
                await scanner.scan()

        assert await scanner.get_cursor() == 990

    @pytest.mark.asyncio
    async def test_idle_when_head_has_not_moved(self, scanner, gateway, make_user):
        await make_user()
        await scanner.set_cursor(995)

        result = await scanner.scan()

        assert result.credited == 0
        assert gateway.transfer_queries == []
