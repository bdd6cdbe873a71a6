"""
Deposit Scanner
===============

Polls the chain for token transfers into custodial wallets and credits each
transaction hash exactly once. The persisted block cursor gives at-least-once
scanning; the unique ``deposits.tx_hash`` constraint turns that into
effectively-once crediting.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from config import Config
from database import async_managed_session
from models import DepositRecord, SystemState, User
from services.chain_gateway import ChainGateway, TokenTransfer, normalize_address
from utils.amounts import TokenAmount
from utils.atomic_transactions import async_atomic_transaction, lock_user_row

logger = logging.getLogger(__name__)

CURSOR_KEY = "last_scanned_block"


@dataclass(frozen=True)
class ScanRange:
    from_block: int
    to_block: int
    truncated: bool = False


@dataclass
class ScanResult:
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    credited: int = 0
    duplicates: int = 0
    failed: int = 0
    cursor: Optional[int] = None
    failed_tx_hashes: List[str] = field(default_factory=list)


def compute_scan_range(
    cursor: Optional[int],
    latest_block: int,
    finality_buffer: int,
    max_chunk: int,
    from_override: Optional[int] = None,
    to_override: Optional[int] = None,
    start_block: int = 0,
) -> Optional[ScanRange]:
    """
    Block range for the next scan, or None when there is nothing new.

    ``from`` is cursor + 1 and ``to`` is the head minus the finality buffer,
    either replaced by an explicit override. Ranges longer than ``max_chunk``
    are truncated so backlogs drain over several ticks.
    """
    to_block = to_override if to_override is not None else latest_block - finality_buffer

    if from_override is not None:
        from_block = from_override
    elif cursor is not None:
        from_block = cursor + 1
    else:
        # First run with no cursor: start from the configured block, else only new blocks
        from_block = start_block if start_block > 0 else to_block

    if from_block > to_block:
        return None

    truncated = False
    if to_block - from_block + 1 > max_chunk:
        to_block = from_block + max_chunk - 1
        truncated = True

    return ScanRange(from_block, to_block, truncated)


class DepositScanner:
    """Credits inbound token transfers to custodial users"""

    def __init__(
        self,
        gateway: ChainGateway,
        token_symbol: Optional[str] = None,
        finality_buffer: Optional[int] = None,
        max_chunk: Optional[int] = None,
        start_block: Optional[int] = None,
    ):
        self.gateway = gateway
        self.token_symbol = (token_symbol or Config.DEPOSIT_TOKEN).upper()
        token = Config.get_token(self.token_symbol)
        self.token_address = token["address"]
        self.token_decimals = token["decimals"]
        self.finality_buffer = Config.FINALITY_BUFFER_BLOCKS if finality_buffer is None else finality_buffer
        self.max_chunk = max_chunk or Config.MAX_SCAN_CHUNK_BLOCKS
        self.start_block = Config.DEPOSIT_SCAN_START_BLOCK if start_block is None else start_block

    async def get_cursor(self) -> Optional[int]:
        async with async_managed_session() as session:
            state = await session.get(SystemState, CURSOR_KEY)
            return int(state.value) if state is not None else None

    async def set_cursor(self, block_number: int) -> None:
        async with async_managed_session() as session:
            state = await session.get(SystemState, CURSOR_KEY)
            if state is None:
                session.add(SystemState(key=CURSOR_KEY, value=str(block_number)))
            else:
                state.value = str(block_number)
        logger.info(f"📍 SCAN_CURSOR_ADVANCED: {CURSOR_KEY}={block_number}")

    async def _load_address_map(self) -> Dict[str, int]:
        async with async_managed_session() as session:
            result = await session.execute(select(User.user_id, User.eth_address))
            return {normalize_address(address): user_id for user_id, address in result.all()}

    async def credit_transfer(self, user_id: int, transfer: TokenTransfer) -> bool:
        """
        Record one deposit and credit the user in a single transaction.

        Returns False when the hash was already credited.
        """
        amount = TokenAmount.from_base_units(transfer.value, self.token_decimals)
        try:
            async with async_atomic_transaction() as session:
                existing = await session.execute(
                    select(DepositRecord.id).where(DepositRecord.tx_hash == transfer.tx_hash)
                )
                if existing.scalar_one_or_none() is not None:
                    return False

                session.add(DepositRecord(
                    user_id=user_id,
                    amount=amount,
                    token=self.token_symbol,
                    tx_hash=transfer.tx_hash,
                    block_number=transfer.block_number,
                ))
                await session.flush()

                user = await lock_user_row(session, user_id)
                if user is None:
                    raise LookupError(f"User {user_id} disappeared while crediting {transfer.tx_hash}")
                user.balance = TokenAmount.to_decimal(user.balance) + amount
        except IntegrityError:
            # A concurrent scan credited the same hash first
            logger.info(f"🔁 DEPOSIT_DUPLICATE: {transfer.tx_hash} already credited")
            return False

        logger.info(
            f"✅ DEPOSIT_CREDITED: user={user_id} amount={amount} {self.token_symbol} "
            f"tx={transfer.tx_hash} block={transfer.block_number}"
        )
        return True

    async def _process_range(self, scan_range: ScanRange, address_map: Dict[str, int], result: ScanResult) -> Optional[int]:
        """Credit every matching transfer in the range; returns the lowest block with a failure"""
        transfers = await self.gateway.get_transfers(
            address_map.keys(), self.token_address, scan_range.from_block, scan_range.to_block
        )
        logger.info(
            f"🔎 DEPOSIT_SCAN: blocks {scan_range.from_block}-{scan_range.to_block} "
            f"returned {len(transfers)} transfer(s)"
        )

        first_failed_block = None
        for transfer in transfers:
            user_id = address_map.get(normalize_address(transfer.to_address))
            if user_id is None:
                continue
            try:
                if await self.credit_transfer(user_id, transfer):
                    result.credited += 1
                else:
                    result.duplicates += 1
            except Exception as e:
                result.failed += 1
                result.failed_tx_hashes.append(transfer.tx_hash)
                if first_failed_block is None or transfer.block_number < first_failed_block:
                    first_failed_block = transfer.block_number
                logger.error(f"❌ DEPOSIT_CREDIT_FAILED: tx={transfer.tx_hash} user={user_id}: {e}")
        return first_failed_block

    async def scan(self, from_block: Optional[int] = None, to_block: Optional[int] = None) -> ScanResult:
        """
        Run one scan.

        A normal scan processes at most one chunk from the cursor and then
        advances it. An override scan (administrative rescan) walks the whole
        requested range chunk by chunk and leaves the cursor alone. Range-level
        errors propagate and abort the scan without touching the cursor.
        """
        is_override = from_block is not None or to_block is not None
        latest = await self.gateway.get_block_number()
        cursor = await self.get_cursor()
        result = ScanResult(cursor=cursor)

        scan_range = compute_scan_range(
            cursor, latest, self.finality_buffer, self.max_chunk,
            from_override=from_block, to_override=to_block, start_block=self.start_block,
        )
        if scan_range is None:
            logger.debug(f"⏸️ DEPOSIT_SCAN_IDLE: cursor={cursor} head={latest}")
            return result

        address_map = await self._load_address_map()
        if not address_map:
            logger.info("ℹ️ DEPOSIT_SCAN: No custodial addresses registered")

        result.from_block = scan_range.from_block

        if not is_override:
            first_failed_block = await self._process_range(scan_range, address_map, result)
            result.to_block = scan_range.to_block
            # Never advance past a transfer that failed so the next scan retries it
            new_cursor = scan_range.to_block if first_failed_block is None else first_failed_block - 1
            if cursor is None or new_cursor > cursor:
                await self.set_cursor(new_cursor)
                result.cursor = new_cursor
            return result

        end_block = to_block if to_block is not None else latest - self.finality_buffer
        current = scan_range
        while current is not None:
            await self._process_range(current, address_map, result)
            result.to_block = current.to_block
            if current.to_block >= end_block:
                break
            current = compute_scan_range(
                None, latest, self.finality_buffer, self.max_chunk,
                from_override=current.to_block + 1, to_override=end_block,
            )

        logger.info(
            f"🛠️ DEPOSIT_RESCAN_COMPLETE: blocks {result.from_block}-{result.to_block} "
            f"credited={result.credited} duplicates={result.duplicates} failed={result.failed}"
        )
        return result
