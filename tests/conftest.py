"""
Shared fixtures for the settlement engine test suite.

Provides:
1. An in-memory SQLite database (aiosqlite + StaticPool) with the full schema
2. FakeChainGateway, an in-memory stand-in for the web3 gateway
3. A key store with a fixed test encryption key
4. Factories for users, vaults and pre-built services
"""

import itertools
import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import pytest
import pytest_asyncio
from eth_account import Account
from sqlalchemy.pool import StaticPool

import database
from config import Config
from models import User, Vault, VaultStatus
from services.chain_gateway import (
    ChainGateway, ChainGatewayError, TokenTransfer, TxHandle, TxReceipt, TransactionFailedError,
    TransientProviderError, normalize_address,
)
from services.gas_cushion import GasCushionManager
from services.key_store import KeyStore
from services.nonce_manager import NonceManager

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

TEST_ENCRYPTION_KEY = "0123456789abcdef0123456789abcdef"
HOT_WALLET_KEY = "0x" + "11" * 32
TRADING_DESK_ADDRESS = "0x" + "aa" * 20
DEVOPS_ADDRESS = "0x" + "bb" * 20
GWEI = 10 ** 9


class FakeChainGateway(ChainGateway):
    """
    In-memory chain.

    Every broadcast mines immediately into the current block. Failures are
    injected per destination address (``fail_sends_to``) or per transaction
    (``revert_hashes``); ``receipts_missing`` hides receipts entirely. With
    ``enforce_gas_funds`` set, token sends are rejected like a node would when
    the sender cannot cover gas limit times gas price.
    """

    def __init__(self, block_number: int = 1000, gas_price: int = 20 * GWEI, gas_estimate: int = 65000):
        self.block_number = block_number
        self.gas_price = gas_price
        self.gas_estimate = gas_estimate
        self.transfers: List[TokenTransfer] = []
        self.native_balances: Dict[str, int] = {}
        self.tx_counts: Dict[str, int] = {}
        self.token_sends: List[dict] = []
        self.native_sends: List[dict] = []
        self.receipts: Dict[str, TxReceipt] = {}
        self.fail_sends_to: Dict[str, Exception] = {}
        self.revert_hashes = set()
        self.receipts_missing = set()
        self.enforce_gas_funds = False
        self.transfer_queries: List[tuple] = []
        self._counter = itertools.count(1)

    # -- test helpers ---------------------------------------------------

    def add_transfer(self, to_address: str, value: int, block_number: int, tx_hash: Optional[str] = None,
                     from_address: str = "0x" + "ee" * 20) -> TokenTransfer:
        transfer = TokenTransfer(
            tx_hash=tx_hash or self._next_hash(),
            from_address=from_address,
            to_address=to_address,
            value=value,
            block_number=block_number,
        )
        self.transfers.append(transfer)
        return transfer

    def set_balance(self, address: str, wei: int):
        self.native_balances[normalize_address(address)] = wei

    def mine(self, blocks: int = 1):
        self.block_number += blocks

    def _next_hash(self) -> str:
        return "0x" + format(next(self._counter), "064x")

    def _mined(self, from_address: str, nonce: int) -> TxHandle:
        tx_hash = self._next_hash()
        status = 1
        self.receipts[tx_hash] = TxReceipt(tx_hash, status, self.block_number, 1)
        key = normalize_address(from_address)
        self.tx_counts[key] = max(self.tx_counts.get(key, 0), nonce + 1)
        return TxHandle(tx_hash, from_address, nonce)

    # -- ChainGateway ---------------------------------------------------

    async def get_block_number(self) -> int:
        return self.block_number

    async def get_transfers(self, addresses: Iterable[str], token_address: str,
                            from_block: int, to_block: int) -> List[TokenTransfer]:
        wanted = {normalize_address(a) for a in addresses}
        self.transfer_queries.append((from_block, to_block))
        return [
            t for t in self.transfers
            if from_block <= t.block_number <= to_block and normalize_address(t.to_address) in wanted
        ]

    async def get_balance(self, address: str) -> int:
        return self.native_balances.get(normalize_address(address), 0)

    async def get_gas_price(self) -> int:
        return self.gas_price

    async def estimate_token_transfer_gas(self, token_address: str, from_address: str,
                                          to_address: str, raw_amount: int) -> int:
        return self.gas_estimate

    async def get_transaction_count(self, address: str) -> int:
        return self.tx_counts.get(normalize_address(address), 0)

    async def send_token_transfer(self, private_key: str, token_address: str, to_address: str,
                                  raw_amount: int, nonce: Optional[int] = None,
                                  gas_limit: Optional[int] = None, gas_price: Optional[int] = None) -> TxHandle:
        error = self.fail_sends_to.get(normalize_address(to_address))
        if error is not None:
            raise error
        from_address = Account.from_key(private_key).address
        gas_limit = gas_limit or Config.TOKEN_TRANSFER_GAS_LIMIT
        gas_price = gas_price or self.gas_price
        if self.enforce_gas_funds and await self.get_balance(from_address) < gas_limit * gas_price:
            raise ChainGatewayError("insufficient funds for gas * price + value")
        if nonce is None:
            nonce = await self.get_transaction_count(from_address)
        handle = self._mined(from_address, nonce)
        self.token_sends.append({
            "from": from_address, "to": to_address, "raw_amount": raw_amount,
            "nonce": nonce, "tx_hash": handle.tx_hash, "token": token_address,
            "gas_limit": gas_limit, "gas_price": gas_price,
        })
        return handle

    async def send_native(self, private_key: str, to_address: str, wei: int,
                          nonce: Optional[int] = None) -> TxHandle:
        error = self.fail_sends_to.get(normalize_address(to_address))
        if error is not None:
            raise error
        from_address = Account.from_key(private_key).address
        if nonce is None:
            nonce = await self.get_transaction_count(from_address)
        handle = self._mined(from_address, nonce)
        key = normalize_address(to_address)
        self.native_balances[key] = self.native_balances.get(key, 0) + wei
        self.native_sends.append({"to": to_address, "wei": wei, "nonce": nonce, "tx_hash": handle.tx_hash})
        return handle

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        if tx_hash in self.receipts_missing:
            return None
        receipt = self.receipts.get(tx_hash)
        if receipt is None:
            return None
        status = 0 if tx_hash in self.revert_hashes else receipt.status
        confirmations = max(0, self.block_number - receipt.block_number + 1)
        return TxReceipt(tx_hash, status, receipt.block_number, confirmations)

    async def wait_for_confirmations(self, tx_hash: str, confirmations: int = 1,
                                     timeout: Optional[float] = None) -> TxReceipt:
        receipt = await self.get_receipt(tx_hash)
        if receipt is None:
            raise TransientProviderError(f"Timed out waiting for {tx_hash}")
        if not receipt.succeeded:
            raise TransactionFailedError(tx_hash)
        return receipt


@pytest.fixture(autouse=True)
def settlement_config(monkeypatch):
    """Deterministic configuration for every test"""
    monkeypatch.setattr(Config, "ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)
    monkeypatch.setattr(Config, "HOT_WALLET_PRIVATE_KEY", HOT_WALLET_KEY)
    monkeypatch.setattr(Config, "TRADING_DESK_WALLET_ADDRESS", TRADING_DESK_ADDRESS)
    monkeypatch.setattr(Config, "HS_DEVOPS_WALLET_ADDRESS", DEVOPS_ADDRESS)
    monkeypatch.setattr(Config, "DEPOSIT_FEE_PERCENTAGE", Decimal("20"))
    monkeypatch.setattr(Config, "ENABLE_DISTRIBUTED_JOB_LOCKS", False)
    monkeypatch.setattr(Config, "SWEEP_INTER_POSITION_DELAY_SECONDS", 0)
    yield


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test"""
    database.configure_database(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await database.create_tables()
    yield
    await database.dispose_engine()


@pytest.fixture
def gateway():
    return FakeChainGateway()


@pytest.fixture
def key_store():
    return KeyStore(TEST_ENCRYPTION_KEY)


@pytest.fixture
def nonces():
    return NonceManager()


@pytest.fixture
def gas_manager(gateway, nonces):
    return GasCushionManager(gateway, hot_wallet_private_key=HOT_WALLET_KEY, nonce_manager=nonces)


@pytest.fixture
def make_user(db, key_store):
    """Create a custodial user with a real encrypted key; returns (user, private_key)"""
    async def _make_user(balance="0", username=None):
        account = Account.create()
        async with database.async_managed_session() as session:
            user = User(
                username=username,
                eth_address=account.address.lower(),
                eth_private_key_encrypted=key_store.encrypt(account.key.hex()),
                balance=Decimal(balance),
            )
            session.add(user)
        return user, account
    return _make_user


@pytest.fixture
def make_vault(db):
    async def _make_vault(name="Alpha Vault", status=VaultStatus.ACTIVE):
        async with database.async_managed_session() as session:
            vault = Vault(name=name, status=status.value)
            session.add(vault)
        return vault
    return _make_vault
