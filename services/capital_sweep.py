"""
Capital Sweep Engine
====================

Moves allocated capital out of depositors' custodial wallets in two fixed
legs: the net amount to the trading desk wallet, then the fee to the devops
wallet. Each leg's hash is committed as soon as it is broadcast, so a
failure after the first leg always leaves an operator-visible
``sweep_failed`` record that still carries the first leg's hash. Such
sweeps are never retried automatically; ``resolve_failed_sweep`` closes
them out once an operator has repaired the chain side.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import select, and_, func
from sqlalchemy.exc import IntegrityError

from config import Config
from database import async_managed_session
from models import (
    LedgerEntry, LedgerEntryType, LedgerEntryStatus, User, UserVaultPosition, PositionStatus,
    CapitalSweep, CapitalSweepStatus, FundingPurpose,
)
from services.chain_gateway import ChainGateway, ChainGatewayError
from services.gas_cushion import GasCushionManager, GasFundingError
from services.key_store import KeyStore, DecryptionError, get_key_store
from services.ledger_service import LedgerService, ledger_service as default_ledger_service
from services.ledger_state_machine import LedgerStateMachine, LedgerError
from services.nonce_manager import NonceManager, nonce_manager as default_nonce_manager
from utils.amounts import TokenAmount
from utils.atomic_transactions import async_atomic_transaction

logger = logging.getLogger(__name__)


class SweepError(Exception):
    """Raised when a capital sweep cannot be completed"""

    def __init__(self, entry_id: int, message: str):
        self.entry_id = entry_id
        super().__init__(message)


class PartialSweepError(SweepError):
    """Raised when a leg failed after an earlier leg had already been broadcast"""

    def __init__(self, entry_id: int, trading_desk_tx_hash: str, message: str):
        self.trading_desk_tx_hash = trading_desk_tx_hash
        super().__init__(entry_id, message)


@dataclass
class SweepCandidate:
    entry_id: int
    user_id: int
    vault_id: int
    amount: Decimal
    fee_amount: Decimal
    eth_address: str
    encrypted_private_key: str

    def __repr__(self) -> str:
        return f"SweepCandidate(entry_id={self.entry_id}, user_id={self.user_id}, amount={self.amount})"


@dataclass
class SweepBatchResult:
    swept: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)
    deferred: List[int] = field(default_factory=list)


@dataclass
class _Leg:
    name: str
    to_address: str
    amount: Decimal
    hash_column: str


class CapitalSweepEngine:
    """Sweeps PENDING_SWEEP deposit entries into the platform wallets"""

    def __init__(
        self,
        gateway: ChainGateway,
        gas_manager: GasCushionManager,
        key_store: Optional[KeyStore] = None,
        nonce_manager: Optional[NonceManager] = None,
        ledger: Optional[LedgerService] = None,
        trading_desk_address: Optional[str] = None,
        devops_address: Optional[str] = None,
        token_symbol: Optional[str] = None,
        inter_position_delay: Optional[float] = None,
        confirmation_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.gas_manager = gas_manager
        self._key_store = key_store
        self.nonce_manager = nonce_manager or default_nonce_manager
        self.ledger = ledger or default_ledger_service
        self.trading_desk_address = trading_desk_address or Config.TRADING_DESK_WALLET_ADDRESS
        self.devops_address = devops_address or Config.HS_DEVOPS_WALLET_ADDRESS
        token = Config.get_token(token_symbol or Config.DEPOSIT_TOKEN)
        self.token_address = token["address"]
        self.token_decimals = token["decimals"]
        self.inter_position_delay = (
            Config.SWEEP_INTER_POSITION_DELAY_SECONDS if inter_position_delay is None else inter_position_delay
        )
        self.confirmation_timeout = confirmation_timeout or Config.SWEEP_CONFIRMATION_TIMEOUT_SECONDS
        self._sleep = sleep

    @property
    def key_store(self) -> KeyStore:
        if self._key_store is None:
            self._key_store = get_key_store()
        return self._key_store

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    async def find_pending_sweeps(self) -> List[SweepCandidate]:
        """
        PENDING_SWEEP deposit entries in creation order.

        Entries that already have a sweep record are excluded: a record is
        only created right before the first broadcast, so its presence means
        funds may have moved and the entry needs an operator, not a retry.
        """
        async with async_managed_session() as session:
            stmt = (
                select(LedgerEntry, User.eth_address, User.eth_private_key_encrypted)
                .join(User, User.user_id == LedgerEntry.user_id)
                .outerjoin(CapitalSweep, CapitalSweep.entry_id == LedgerEntry.entry_id)
                .where(
                    and_(
                        LedgerEntry.entry_type == LedgerEntryType.DEPOSIT.value,
                        LedgerEntry.status == LedgerEntryStatus.PENDING_SWEEP.value,
                        CapitalSweep.id.is_(None),
                    )
                )
                .order_by(LedgerEntry.created_at, LedgerEntry.entry_id)
            )
            rows = (await session.execute(stmt)).all()

        return [
            SweepCandidate(
                entry_id=entry.entry_id,
                user_id=entry.user_id,
                vault_id=entry.vault_id,
                amount=TokenAmount.to_decimal(entry.amount),
                fee_amount=TokenAmount.to_decimal(entry.fee_amount or 0),
                eth_address=address,
                encrypted_private_key=encrypted_key,
            )
            for entry, address, encrypted_key in rows
        ]

    # ------------------------------------------------------------------
    # Persistence helpers (each its own short transaction)
    # ------------------------------------------------------------------

    async def _open_sweep_record(self, candidate: SweepCandidate) -> None:
        async with async_managed_session() as session:
            session.add(CapitalSweep(
                entry_id=candidate.entry_id,
                user_id=candidate.user_id,
                vault_id=candidate.vault_id,
                status=CapitalSweepStatus.IN_PROGRESS.value,
                trading_desk_amount=candidate.amount,
                devops_amount=candidate.fee_amount,
            ))

    async def _record_leg_hash(self, entry_id: int, column: str, tx_hash: str) -> None:
        async with async_managed_session() as session:
            sweep = await self._get_sweep(session, entry_id)
            setattr(sweep, column, tx_hash)

    async def _get_sweep(self, session, entry_id: int, lock: bool = False) -> Optional[CapitalSweep]:
        stmt = select(CapitalSweep).where(CapitalSweep.entry_id == entry_id)
        if lock:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    async def _set_position_status(self, session, user_id: int, vault_id: int, target: PositionStatus) -> None:
        result = await session.execute(
            select(UserVaultPosition)
            .where(and_(UserVaultPosition.user_id == user_id, UserVaultPosition.vault_id == vault_id))
            .with_for_update()
        )
        position = result.scalar_one_or_none()
        if position is None or position.status == target.value:
            return

        if target == PositionStatus.IN_TRADE and position.status == PositionStatus.SWEEP_FAILED.value:
            # Another sweep for this position is still unresolved
            outstanding = await session.execute(
                select(func.count(CapitalSweep.id)).where(
                    and_(
                        CapitalSweep.user_id == user_id,
                        CapitalSweep.vault_id == vault_id,
                        CapitalSweep.status == CapitalSweepStatus.SWEEP_FAILED.value,
                    )
                )
            )
            if outstanding.scalar_one() > 0:
                return

        LedgerStateMachine.validate_position_transition(position.status, target)
        position.status = target.value

    async def _mark_sweep_failed(self, candidate: SweepCandidate, error: str, create: bool = False) -> None:
        async with async_atomic_transaction() as session:
            sweep = await self._get_sweep(session, candidate.entry_id, lock=True)
            if sweep is None:
                if not create:
                    raise LedgerError(f"No sweep record for entry {candidate.entry_id}")
                sweep = CapitalSweep(
                    entry_id=candidate.entry_id,
                    user_id=candidate.user_id,
                    vault_id=candidate.vault_id,
                    status=CapitalSweepStatus.SWEEP_FAILED.value,
                    trading_desk_amount=candidate.amount,
                    devops_amount=candidate.fee_amount,
                )
                session.add(sweep)
            else:
                LedgerStateMachine.validate_sweep_transition(sweep.status, CapitalSweepStatus.SWEEP_FAILED)
                sweep.status = CapitalSweepStatus.SWEEP_FAILED.value
            sweep.error_message = error[:1000]
            await self._set_position_status(session, candidate.user_id, candidate.vault_id, PositionStatus.SWEEP_FAILED)

        logger.critical(
            f"🚨 SWEEP_FAILED: entry #{candidate.entry_id} user={candidate.user_id} "
            f"vault={candidate.vault_id} requires operator attention: {error}"
        )

    async def _complete_sweep(self, entry_id: int, user_id: int, vault_id: int) -> None:
        async with async_atomic_transaction() as session:
            sweep = await self._get_sweep(session, entry_id, lock=True)
            LedgerStateMachine.validate_sweep_transition(sweep.status, CapitalSweepStatus.COMPLETED)
            sweep.status = CapitalSweepStatus.COMPLETED.value
            sweep.error_message = None
            await self.ledger.transition_status(session, entry_id, LedgerEntryStatus.SWEPT)
            await self._set_position_status(session, user_id, vault_id, PositionStatus.IN_TRADE)

    # ------------------------------------------------------------------
    # Sweeping
    # ------------------------------------------------------------------

    def _legs_for(self, candidate: SweepCandidate) -> List[_Leg]:
        legs = [
            _Leg("trading_desk", self.trading_desk_address, candidate.amount, "trading_desk_tx_hash"),
            _Leg("devops", self.devops_address, candidate.fee_amount, "devops_tx_hash"),
        ]
        return [leg for leg in legs if leg.amount > 0]

    async def _required_gas(self, leg_count: int) -> int:
        gas_price = await self.gateway.get_gas_price()
        return leg_count * Config.TOKEN_TRANSFER_GAS_LIMIT * gas_price

    async def sweep_entry(self, candidate: SweepCandidate) -> bool:
        """
        Sweep one entry.

        Returns True when both legs confirmed, False when the attempt was
        deferred before anything was broadcast. Raises SweepError (or
        PartialSweepError) after recording a sweep_failed state.
        """
        if not self.trading_desk_address or not self.devops_address:
            raise SweepError(candidate.entry_id, "Trading desk and devops wallet addresses must be configured")

        legs = self._legs_for(candidate)
        if not legs:
            raise SweepError(candidate.entry_id, f"Entry {candidate.entry_id} has nothing to sweep")

        address = candidate.eth_address

        # Nothing below has touched funds yet: failures here are retried next tick
        try:
            required = await self._required_gas(len(legs))
            await self.gas_manager.ensure_gas_cushion(
                candidate.user_id, address, required_wei=required, purpose=FundingPurpose.SWEEP
            )
        except (GasFundingError, ChainGatewayError) as e:
            logger.warning(f"⏳ SWEEP_DEFERRED: entry #{candidate.entry_id} gas not ready: {e}")
            return False

        try:
            private_key = self.key_store.decrypt(candidate.encrypted_private_key)
        except DecryptionError as e:
            await self._mark_sweep_failed(candidate, f"Key decryption failed: {e}", create=True)
            raise SweepError(candidate.entry_id, f"Key decryption failed for entry {candidate.entry_id}") from e

        try:
            nonces = await self.nonce_manager.reserve(address, len(legs), self.gateway.get_transaction_count)
        except ChainGatewayError as e:
            logger.warning(f"⏳ SWEEP_DEFERRED: entry #{candidate.entry_id} nonce read failed: {e}")
            return False

        try:
            await self._open_sweep_record(candidate)
        except IntegrityError:
            self.nonce_manager.reset(address)
            logger.warning(f"⏳ SWEEP_DEFERRED: entry #{candidate.entry_id} already has a sweep record")
            return False

        broadcast_hash = None
        current_leg = legs[0].name
        try:
            for leg, nonce in zip(legs, nonces):
                current_leg = leg.name
                raw_amount = TokenAmount.to_base_units(leg.amount, self.token_decimals)
                handle = await self.gateway.send_token_transfer(
                    private_key, self.token_address, leg.to_address, raw_amount,
                    nonce=nonce, gas_limit=Config.TOKEN_TRANSFER_GAS_LIMIT,
                )
                await self._record_leg_hash(candidate.entry_id, leg.hash_column, handle.tx_hash)
                if leg.name == "trading_desk":
                    broadcast_hash = handle.tx_hash
                logger.info(
                    f"📤 SWEEP_LEG_SENT: entry #{candidate.entry_id} {leg.name} "
                    f"{leg.amount} -> {leg.to_address} nonce={nonce} tx={handle.tx_hash}"
                )
                await self.gateway.wait_for_confirmations(handle.tx_hash, 1, timeout=self.confirmation_timeout)
                logger.info(f"✅ SWEEP_LEG_CONFIRMED: entry #{candidate.entry_id} {leg.name} tx={handle.tx_hash}")
        except Exception as e:
            self.nonce_manager.reset(address)
            message = f"{current_leg} leg failed: {e}"
            await self._mark_sweep_failed(candidate, message)
            if broadcast_hash and current_leg != "trading_desk":
                raise PartialSweepError(candidate.entry_id, broadcast_hash, message) from e
            raise SweepError(candidate.entry_id, message) from e
        finally:
            private_key = None

        await self._complete_sweep(candidate.entry_id, candidate.user_id, candidate.vault_id)
        logger.info(f"🏦 SWEEP_COMPLETED: entry #{candidate.entry_id} user={candidate.user_id} vault={candidate.vault_id}")
        return True

    async def run(self) -> SweepBatchResult:
        """Sweep every pending entry, one at a time, pausing between entries"""
        result = SweepBatchResult()
        candidates = await self.find_pending_sweeps()
        if not candidates:
            logger.debug("No ledger entries awaiting sweep")
            return result

        logger.info(f"🧹 SWEEP_BATCH: {len(candidates)} entr(ies) awaiting sweep")
        for index, candidate in enumerate(candidates):
            if index > 0 and self.inter_position_delay:
                await self._sleep(self.inter_position_delay)
            try:
                if await self.sweep_entry(candidate):
                    result.swept.append(candidate.entry_id)
                else:
                    result.deferred.append(candidate.entry_id)
            except SweepError as e:
                result.failed.append(candidate.entry_id)
                logger.error(f"❌ SWEEP_ERROR: entry #{candidate.entry_id}: {e}")
            except Exception as e:
                result.failed.append(candidate.entry_id)
                logger.exception(f"❌ SWEEP_UNEXPECTED_ERROR: entry #{candidate.entry_id}: {e}")

        logger.info(
            f"🧹 SWEEP_BATCH_DONE: swept={len(result.swept)} failed={len(result.failed)} "
            f"deferred={len(result.deferred)}"
        )
        return result

    async def resolve_failed_sweep(self, entry_id: int, devops_tx_hash: str,
                                   trading_desk_tx_hash: Optional[str] = None) -> CapitalSweep:
        """
        Close out a sweep_failed record after an operator completed the missing leg by hand.

        Records the supplied hash(es), marks the sweep completed, the entry
        SWEPT and the position in_trade, all in one transaction.
        """
        if not devops_tx_hash:
            raise SweepError(entry_id, "The devops leg transaction hash is required")

        async with async_atomic_transaction() as session:
            sweep = await self._get_sweep(session, entry_id, lock=True)
            if sweep is None:
                raise SweepError(entry_id, f"No sweep record for entry {entry_id}")
            if sweep.status != CapitalSweepStatus.SWEEP_FAILED.value:
                raise SweepError(entry_id, f"Sweep for entry {entry_id} is {sweep.status}, not sweep_failed")

            if trading_desk_tx_hash:
                sweep.trading_desk_tx_hash = trading_desk_tx_hash
            if not sweep.trading_desk_tx_hash and TokenAmount.to_decimal(sweep.trading_desk_amount) > 0:
                raise SweepError(entry_id, "Trading desk leg hash is missing; supply it to resolve")

            sweep.devops_tx_hash = devops_tx_hash
            LedgerStateMachine.validate_sweep_transition(sweep.status, CapitalSweepStatus.COMPLETED)
            sweep.status = CapitalSweepStatus.COMPLETED.value
            sweep.error_message = None
            await session.flush()

            await self.ledger.transition_status(session, entry_id, LedgerEntryStatus.SWEPT)
            await self._set_position_status(session, sweep.user_id, sweep.vault_id, PositionStatus.IN_TRADE)

        logger.info(f"🛠️ SWEEP_RESOLVED: entry #{entry_id} devops_tx={devops_tx_hash}")
        return sweep
