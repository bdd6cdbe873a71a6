"""
Withdrawal Queue Processor
==========================

Serial settlement of user payouts. Each tick claims the single oldest
``queued`` item, makes sure the user's custodial wallet can pay for gas and
broadcasts the token transfer. The permanent Withdrawal row, the balance
debit and the queue deletion are committed together straight after the
broadcast returns a hash.

Known gap: a crash between broadcast and that commit leaves the item in
``processing``. Such items are never picked up again automatically; they are
reported every tick for manual reconciliation by transaction hash. Errors
raised before the broadcast put the item back in the queue.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select
from web3 import Web3

from config import Config
from database import async_managed_session
from models import (
    User, WithdrawalQueueItem, WithdrawalQueueStatus, Withdrawal, WithdrawalStatus, FundingPurpose,
)
from services.chain_gateway import ChainGateway, ChainGatewayError, TransactionFailedError, TransientProviderError
from services.gas_cushion import GasCushionManager, GasFundingError, GasQuote
from services.key_store import KeyStore, DecryptionError, get_key_store
from services.ledger_service import InsufficientFundsError, ledger_service
from services.nonce_manager import NonceManager, nonce_manager as default_nonce_manager
from utils.amounts import TokenAmount
from utils.atomic_transactions import async_atomic_transaction, lock_user_row
from utils.datetime_helpers import get_naive_utc_now, has_elapsed

logger = logging.getLogger(__name__)


class WithdrawalQueueError(Exception):
    """Raised for invalid withdrawal requests and non-retryable queue item failures"""
    pass


@dataclass
class QueueOutcome:
    action: str  # idle | broadcast | funding_requested | deferred | requeued | failed
    item_id: Optional[int] = None
    tx_hash: Optional[str] = None
    detail: Optional[str] = None


@dataclass
class PreparedTransfer:
    user: User
    token_address: str
    raw_amount: int
    quote: GasQuote


class WithdrawalQueueProcessor:
    """Withdrawal intake and the one-item-per-tick queue processor"""

    def __init__(
        self,
        gateway: ChainGateway,
        gas_manager: GasCushionManager,
        key_store: Optional[KeyStore] = None,
        nonce_manager: Optional[NonceManager] = None,
        cooldown_seconds: Optional[int] = None,
        confirmation_timeout: Optional[float] = None,
    ):
        self.gateway = gateway
        self.gas_manager = gas_manager
        self._key_store = key_store
        self.nonce_manager = nonce_manager or default_nonce_manager
        self.cooldown_seconds = Config.GAS_FUND_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        self.confirmation_timeout = confirmation_timeout or Config.WITHDRAWAL_CONFIRMATION_TIMEOUT_SECONDS

    @property
    def key_store(self) -> KeyStore:
        if self._key_store is None:
            self._key_store = get_key_store()
        return self._key_store

    # ------------------------------------------------------------------
    # Intake
    # ------------------------------------------------------------------

    async def queue_withdrawal(self, user_id: int, to_address: str, amount, token: str) -> WithdrawalQueueItem:
        """Validate and enqueue a withdrawal against the user's unreserved balance"""
        if not to_address or not Web3.is_address(to_address):
            raise WithdrawalQueueError(f"Invalid destination address: {to_address!r}")
        try:
            token_info = Config.get_token(token)
        except ValueError as e:
            raise WithdrawalQueueError(str(e)) from e

        amount = TokenAmount.to_decimal(amount, "withdrawal amount")
        if amount <= 0:
            raise WithdrawalQueueError(f"Withdrawal amount must be positive, got {amount}")
        if amount != TokenAmount.quantize(amount, token_info["decimals"]):
            raise WithdrawalQueueError(f"Amount {amount} has more than {token_info['decimals']} decimals")

        async with async_atomic_transaction() as session:
            user = await lock_user_row(session, user_id)
            if user is None:
                raise WithdrawalQueueError(f"User {user_id} not found")

            reserved = await ledger_service.get_reserved_for_withdrawals(user_id, session=session)
            available = TokenAmount.to_decimal(user.balance) - reserved
            if available < amount:
                raise InsufficientFundsError(
                    f"User {user_id} has {available} available, cannot withdraw {amount}"
                )

            item = WithdrawalQueueItem(
                user_id=user_id,
                to_address=Web3.to_checksum_address(to_address),
                amount=amount,
                token=token.upper(),
                status=WithdrawalQueueStatus.QUEUED.value,
                gas_funded=False,
                retries=0,
            )
            session.add(item)
            await session.flush()

        logger.info(f"📥 WITHDRAWAL_QUEUED: item #{item.id} user={user_id} {amount} {token.upper()} -> {item.to_address}")
        return item

    # ------------------------------------------------------------------
    # Queue state helpers
    # ------------------------------------------------------------------

    async def claim_next_item(self) -> Optional[WithdrawalQueueItem]:
        """Mark the oldest queued item processing and return it"""
        async with async_managed_session() as session:
            result = await session.execute(
                select(WithdrawalQueueItem)
                .where(WithdrawalQueueItem.status == WithdrawalQueueStatus.QUEUED.value)
                .order_by(WithdrawalQueueItem.created_at, WithdrawalQueueItem.id)
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            item = result.scalar_one_or_none()
            if item is not None:
                item.status = WithdrawalQueueStatus.PROCESSING.value
        return item

    async def _update_item(self, item_id: int, **values) -> None:
        async with async_managed_session() as session:
            item = await session.get(WithdrawalQueueItem, item_id)
            if item is None:
                return
            for key, value in values.items():
                setattr(item, key, value)

    async def _requeue(self, item_id: int, reason: str) -> QueueOutcome:
        await self._update_item(item_id, status=WithdrawalQueueStatus.QUEUED.value)
        logger.info(f"🔁 WITHDRAWAL_REQUEUED: item #{item_id}: {reason}")
        return QueueOutcome("requeued", item_id, detail=reason)

    async def _fail(self, item_id: int, reason: str) -> QueueOutcome:
        await self._update_item(item_id, status=WithdrawalQueueStatus.FAILED.value, error_message=reason[:1000])
        logger.error(f"❌ WITHDRAWAL_FAILED: item #{item_id}: {reason}")
        return QueueOutcome("failed", item_id, detail=reason)

    async def list_stuck_items(self) -> List[int]:
        """Items left in processing by an interrupted tick"""
        async with async_managed_session() as session:
            result = await session.execute(
                select(WithdrawalQueueItem.id).where(
                    WithdrawalQueueItem.status == WithdrawalQueueStatus.PROCESSING.value
                )
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def _record_broadcast(self, item: WithdrawalQueueItem, tx_hash: str) -> Withdrawal:
        async with async_atomic_transaction() as session:
            withdrawal = Withdrawal(
                user_id=item.user_id,
                to_address=item.to_address,
                amount=item.amount,
                token=item.token,
                tx_hash=tx_hash,
                status=WithdrawalStatus.SENT.value,
            )
            session.add(withdrawal)

            user = await lock_user_row(session, item.user_id)
            user.balance = TokenAmount.to_decimal(user.balance) - TokenAmount.to_decimal(item.amount)

            queued = await session.get(WithdrawalQueueItem, item.id)
            await session.delete(queued)
            await session.flush()

        logger.info(
            f"💸 WITHDRAWAL_BROADCAST: item #{item.id} user={item.user_id} {item.amount} {item.token} "
            f"-> {item.to_address} tx={tx_hash}"
        )
        return withdrawal

    async def _finalize_withdrawal(self, withdrawal_id: int, succeeded: bool) -> None:
        """Mark a sent withdrawal confirmed, or reverted with the debit given back"""
        async with async_atomic_transaction() as session:
            result = await session.execute(
                select(Withdrawal).where(Withdrawal.id == withdrawal_id).with_for_update()
            )
            withdrawal = result.scalar_one()
            if withdrawal.status != WithdrawalStatus.SENT.value:
                return

            if succeeded:
                withdrawal.status = WithdrawalStatus.CONFIRMED.value
                logger.info(f"✅ WITHDRAWAL_CONFIRMED: #{withdrawal.id} tx={withdrawal.tx_hash}")
                return

            withdrawal.status = WithdrawalStatus.REVERTED.value
            user = await lock_user_row(session, withdrawal.user_id)
            user.balance = TokenAmount.to_decimal(user.balance) + TokenAmount.to_decimal(withdrawal.amount)
            logger.critical(
                f"🚨 WITHDRAWAL_REVERTED: #{withdrawal.id} tx={withdrawal.tx_hash} "
                f"user={withdrawal.user_id} refunded {withdrawal.amount}"
            )

    async def confirm_withdrawal(self, withdrawal: Withdrawal) -> str:
        """Wait for one confirmation; a timeout leaves the withdrawal 'sent' for the next reconciliation"""
        try:
            await self.gateway.wait_for_confirmations(withdrawal.tx_hash, 1, timeout=self.confirmation_timeout)
        except TransactionFailedError:
            await self._finalize_withdrawal(withdrawal.id, succeeded=False)
            return WithdrawalStatus.REVERTED.value
        except ChainGatewayError as e:
            logger.warning(f"⏳ WITHDRAWAL_UNCONFIRMED: #{withdrawal.id} tx={withdrawal.tx_hash}: {e}")
            return WithdrawalStatus.SENT.value
        await self._finalize_withdrawal(withdrawal.id, succeeded=True)
        return WithdrawalStatus.CONFIRMED.value

    async def reconcile_sent_withdrawals(self) -> int:
        """Settle 'sent' withdrawals whose receipts are now available; returns how many changed"""
        async with async_managed_session() as session:
            result = await session.execute(
                select(Withdrawal.id, Withdrawal.tx_hash).where(Withdrawal.status == WithdrawalStatus.SENT.value)
            )
            pending = result.all()

        changed = 0
        for withdrawal_id, tx_hash in pending:
            try:
                receipt = await self.gateway.get_receipt(tx_hash)
            except ChainGatewayError as e:
                logger.warning(f"⏳ WITHDRAWAL_RECEIPT_UNAVAILABLE: #{withdrawal_id}: {e}")
                continue
            if receipt is None or receipt.confirmations < 1:
                continue
            await self._finalize_withdrawal(withdrawal_id, succeeded=receipt.succeeded)
            changed += 1
        return changed

    async def process_next(self) -> QueueOutcome:
        """Settle, fund or defer the oldest queued withdrawal"""
        item = await self.claim_next_item()
        if item is None:
            return QueueOutcome("idle")

        logger.info(f"⚙️ WITHDRAWAL_PROCESSING: item #{item.id} user={item.user_id} {item.amount} {item.token}")

        try:
            prepared = await self._prepare_transfer(item)
        except Exception as e:
            # Nothing has been broadcast yet, so the item is safe to retry
            logger.exception(f"❌ WITHDRAWAL_PREPARE_ERROR: item #{item.id}: {e}")
            return await self._requeue(item.id, f"unexpected error before broadcast: {e}")

        if isinstance(prepared, QueueOutcome):
            return prepared
        return await self._broadcast(item, prepared)

    async def _prepare_transfer(self, item: WithdrawalQueueItem):
        """Validation and gas check; returns a QueueOutcome when the item cannot be sent this tick"""
        async with async_managed_session() as session:
            user = await session.get(User, item.user_id)
        if user is None:
            return await self._fail(item.id, f"User {item.user_id} not found")

        try:
            token = Config.get_token(item.token)
        except ValueError as e:
            return await self._fail(item.id, str(e))

        if TokenAmount.to_decimal(user.balance) < TokenAmount.to_decimal(item.amount):
            return await self._fail(item.id, f"Balance {user.balance} no longer covers {item.amount}")

        raw_amount = TokenAmount.to_base_units(item.amount, token["decimals"])

        try:
            quote = await self.gas_manager.quote_token_transfer(
                token["address"], user.eth_address, item.to_address, raw_amount
            )
            balance_wei = await self.gateway.get_balance(user.eth_address)
        except ChainGatewayError as e:
            return await self._requeue(item.id, f"gas check unavailable: {e}")

        if balance_wei < quote.required_wei:
            return await self._handle_insufficient_gas(item, user, quote.required_wei, balance_wei)

        return PreparedTransfer(user, token["address"], raw_amount, quote)

    async def _broadcast(self, item: WithdrawalQueueItem, prepared: PreparedTransfer) -> QueueOutcome:
        user = prepared.user
        try:
            private_key = self.key_store.decrypt(user.eth_private_key_encrypted)
        except DecryptionError as e:
            return await self._fail(item.id, f"Key decryption failed: {e}")

        try:
            nonce, = await self.nonce_manager.reserve(user.eth_address, 1, self.gateway.get_transaction_count)
            # Same limit and price the balance was checked against
            handle = await self.gateway.send_token_transfer(
                private_key, prepared.token_address, item.to_address, prepared.raw_amount, nonce=nonce,
                gas_limit=prepared.quote.gas_limit, gas_price=prepared.quote.gas_price,
            )
        except TransientProviderError as e:
            self.nonce_manager.reset(user.eth_address)
            return await self._requeue(item.id, f"broadcast failed: {e}")
        except ChainGatewayError as e:
            self.nonce_manager.reset(user.eth_address)
            return await self._fail(item.id, f"broadcast rejected: {e}")
        finally:
            private_key = None

        withdrawal = await self._record_broadcast(item, handle.tx_hash)
        await self.confirm_withdrawal(withdrawal)
        return QueueOutcome("broadcast", item.id, tx_hash=handle.tx_hash)

    async def _handle_insufficient_gas(self, item: WithdrawalQueueItem, user: User,
                                       required_wei: int, balance_wei: int) -> QueueOutcome:
        now = get_naive_utc_now()
        if not has_elapsed(item.last_gas_fund_attempt, self.cooldown_seconds, now=now):
            # A top-up is already in flight: back off without touching the bookkeeping
            await self._update_item(item.id, status=WithdrawalQueueStatus.QUEUED.value)
            logger.info(
                f"⏸️ WITHDRAWAL_DEFERRED: item #{item.id} waiting for gas funding "
                f"(last attempt {item.last_gas_fund_attempt})"
            )
            return QueueOutcome("deferred", item.id, detail="gas funding cooldown")

        shortfall = required_wei - balance_wei
        try:
            tx_hash = await self.gas_manager.fund_wallet(
                item.user_id, user.eth_address, shortfall, FundingPurpose.WITHDRAWAL, wait=False
            )
        except GasFundingError as e:
            await self._update_item(
                item.id,
                status=WithdrawalQueueStatus.QUEUED.value,
                last_gas_fund_attempt=now,
                retries=item.retries + 1,
                error_message=str(e)[:1000],
            )
            logger.error(f"❌ WITHDRAWAL_GAS_FUNDING_FAILED: item #{item.id}: {e}")
            return QueueOutcome("requeued", item.id, detail=str(e))

        await self._update_item(
            item.id,
            status=WithdrawalQueueStatus.QUEUED.value,
            gas_funded=True,
            last_gas_fund_attempt=now,
            retries=item.retries + 1,
        )
        logger.info(
            f"⛽ WITHDRAWAL_GAS_REQUESTED: item #{item.id} funded {TokenAmount.wei_to_eth(shortfall)} ETH tx={tx_hash}"
        )
        return QueueOutcome("funding_requested", item.id, tx_hash=tx_hash)
