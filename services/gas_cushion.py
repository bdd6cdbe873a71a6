"""
Gas Cushion Manager
Keeps custodial wallets holding enough native currency for their next transfer,
topping them up from the platform hot wallet when they run short.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from eth_account import Account
from sqlalchemy.exc import SQLAlchemyError

from config import Config
from database import async_managed_session
from models import HotWalletFundingLog, FundingPurpose
from services.chain_gateway import ChainGateway, ChainGatewayError, get_chain_gateway
from services.nonce_manager import NonceManager, nonce_manager as default_nonce_manager
from utils.amounts import TokenAmount, with_buffer

logger = logging.getLogger(__name__)


class GasFundingError(Exception):
    """Raised when a wallet could not be topped up, or the top-up did not confirm in time"""
    pass


@dataclass
class GasQuote:
    gas_limit: int
    gas_price: int

    @property
    def required_wei(self) -> int:
        return self.gas_limit * self.gas_price


class GasCushionManager:
    """Gas estimation and hot wallet top-ups"""

    def __init__(
        self,
        gateway: ChainGateway,
        hot_wallet_private_key: Optional[str] = None,
        nonce_manager: Optional[NonceManager] = None,
        cushion_eth: Optional[Decimal] = None,
        buffer_percent: Optional[Decimal] = None,
        funding_timeout: Optional[int] = None,
    ):
        self.gateway = gateway
        self._hot_wallet_key = hot_wallet_private_key or Config.HOT_WALLET_PRIVATE_KEY
        self.nonce_manager = nonce_manager or default_nonce_manager
        self.cushion_wei = TokenAmount.eth_to_wei(cushion_eth if cushion_eth is not None else Config.GAS_CUSHION_ETH)
        self.buffer_percent = buffer_percent if buffer_percent is not None else Config.WITHDRAWAL_GAS_BUFFER_PERCENT
        self.funding_timeout = funding_timeout or Config.GAS_FUNDING_TIMEOUT_SECONDS
        self._hot_wallet_address = None

    @property
    def hot_wallet_address(self) -> str:
        if self._hot_wallet_address is None:
            if not self._hot_wallet_key:
                raise GasFundingError("HOT_WALLET_PRIVATE_KEY is not configured")
            self._hot_wallet_address = Account.from_key(self._hot_wallet_key).address
        return self._hot_wallet_address

    async def quote_token_transfer(self, token_address: str, from_address: str,
                                   to_address: str, raw_amount: int) -> GasQuote:
        """
        Price one token transfer.

        The buffer is applied to the gas limit itself, and the same limit and
        price must be used for the broadcast: the node checks the sender holds
        ``gas_limit * gas_price`` before accepting it.
        """
        estimate = await self.gateway.estimate_token_transfer_gas(token_address, from_address, to_address, raw_amount)
        gas_price = await self.gateway.get_gas_price()
        quote = GasQuote(gas_limit=with_buffer(estimate, self.buffer_percent), gas_price=gas_price)
        logger.info(
            f"⛽ GAS_ESTIMATE: {from_address} needs {TokenAmount.wei_to_eth(quote.required_wei)} ETH "
            f"(estimate={estimate}, limit={quote.gas_limit}, price={gas_price}, buffer={self.buffer_percent}%)"
        )
        return quote

    async def fund_wallet(self, user_id: Optional[int], address: str, wei: int,
                          purpose: FundingPurpose, wait: bool = False) -> str:
        """
        Send ``wei`` from the hot wallet and record it in the funding log.

        With ``wait`` the call returns only after one confirmation.
        """
        if wei <= 0:
            raise GasFundingError(f"Funding amount must be positive, got {wei} wei")

        try:
            nonce, = await self.nonce_manager.reserve(
                self.hot_wallet_address, 1, self.gateway.get_transaction_count
            )
            handle = await self.gateway.send_native(self._hot_wallet_key, address, wei, nonce=nonce)
        except ChainGatewayError as e:
            self.nonce_manager.reset(self.hot_wallet_address)
            logger.error(f"❌ GAS_FUNDING_FAILED: user={user_id} address={address}: {e}")
            raise GasFundingError(f"Hot wallet transfer to {address} failed: {e}") from e

        try:
            async with async_managed_session() as session:
                session.add(HotWalletFundingLog(
                    user_id=user_id,
                    to_address=address.lower(),
                    amount_eth=TokenAmount.wei_to_eth(wei),
                    tx_hash=handle.tx_hash,
                    purpose=purpose.value,
                ))
        except SQLAlchemyError as e:
            # The ETH has already left the hot wallet; callers still need the hash
            logger.error(f"❌ GAS_FUNDING_LOG_FAILED: tx={handle.tx_hash} user={user_id}: {e}")

        logger.info(
            f"⛽ GAS_FUNDING_SENT: user={user_id} address={address} "
            f"amount={TokenAmount.wei_to_eth(wei)} ETH purpose={purpose.value} tx={handle.tx_hash}"
        )

        if wait:
            try:
                await self.gateway.wait_for_confirmations(handle.tx_hash, 1, timeout=self.funding_timeout)
            except ChainGatewayError as e:
                logger.error(f"❌ GAS_FUNDING_UNCONFIRMED: tx={handle.tx_hash}: {e}")
                raise GasFundingError(f"Gas funding {handle.tx_hash} did not confirm: {e}") from e
            logger.info(f"✅ GAS_FUNDING_CONFIRMED: tx={handle.tx_hash}")

        return handle.tx_hash

    async def ensure_gas_cushion(self, user_id: Optional[int], address: str,
                                 required_wei: Optional[int] = None,
                                 purpose: FundingPurpose = FundingPurpose.SWEEP) -> Optional[str]:
        """
        Top the wallet up to the gas cushion (or ``required_wei`` if larger) and
        block until the top-up confirms.

        Returns the funding tx hash, or None when the wallet already had enough.
        Raises GasFundingError if funding fails or times out.
        """
        target = max(self.cushion_wei, int(required_wei or 0))
        try:
            balance = await self.gateway.get_balance(address)
        except ChainGatewayError as e:
            raise GasFundingError(f"Could not read balance of {address}: {e}") from e

        if balance >= target:
            logger.debug(f"✅ GAS_SUFFICIENT: user={user_id} balance={TokenAmount.wei_to_eth(balance)} ETH")
            return None

        shortfall = target - balance
        logger.info(
            f"⛽ GAS_CUSHION_LOW: user={user_id} balance={TokenAmount.wei_to_eth(balance)} ETH, "
            f"topping up {TokenAmount.wei_to_eth(shortfall)} ETH"
        )
        return await self.fund_wallet(user_id, address, shortfall, purpose, wait=True)


_gas_manager: Optional[GasCushionManager] = None


def get_gas_manager() -> GasCushionManager:
    global _gas_manager
    if _gas_manager is None:
        _gas_manager = GasCushionManager(get_chain_gateway())
    return _gas_manager
