"""
Chain Gateway
=============

Contract the settlement pipelines use to read from and write to the chain,
plus its web3.py implementation. web3's HTTP provider is blocking, so every
call is pushed to a worker thread with ``asyncio.to_thread``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted, TransactionNotFound

from config import Config

logger = logging.getLogger(__name__)

ERC20_ABI = [
    {
        "constant": False,
        "inputs": [
            {"name": "_to", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [{"name": "", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "type": "function",
    },
]

TRANSFER_EVENT_TOPIC = "0x" + Web3.keccak(text="Transfer(address,address,uint256)").hex().removeprefix("0x")

# eth_getLogs caps the number of OR'ed topic values providers accept
MAX_ADDRESSES_PER_LOG_QUERY = 100


class ChainGatewayError(Exception):
    """Raised when the chain provider rejects or fails a request"""
    pass


class TransientProviderError(ChainGatewayError):
    """Timeouts, rate limits and dropped connections; retried on the next tick"""
    pass


class TransactionFailedError(ChainGatewayError):
    """Raised when a mined transaction reverted"""

    def __init__(self, tx_hash: str, message: str = None):
        self.tx_hash = tx_hash
        super().__init__(message or f"Transaction {tx_hash} reverted on-chain")


@dataclass(frozen=True)
class TokenTransfer:
    tx_hash: str
    from_address: str
    to_address: str
    value: int  # base units
    block_number: int
    log_index: int = 0


@dataclass(frozen=True)
class TxHandle:
    tx_hash: str
    from_address: str
    nonce: int


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int
    block_number: int
    confirmations: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def normalize_address(address: str) -> str:
    return (address or "").strip().lower()


def _address_topic(address: str) -> str:
    return "0x" + "0" * 24 + normalize_address(address).removeprefix("0x")


def _hex(value) -> str:
    text = value.hex() if hasattr(value, "hex") else str(value)
    return text if text.startswith("0x") else "0x" + text


class ChainGateway(ABC):
    """Everything the engine needs from a chain provider"""

    @abstractmethod
    async def get_block_number(self) -> int: ...

    @abstractmethod
    async def get_transfers(self, addresses: Iterable[str], token_address: str,
                            from_block: int, to_block: int) -> List[TokenTransfer]: ...

    @abstractmethod
    async def get_balance(self, address: str) -> int: ...

    @abstractmethod
    async def get_gas_price(self) -> int: ...

    @abstractmethod
    async def estimate_token_transfer_gas(self, token_address: str, from_address: str,
                                          to_address: str, raw_amount: int) -> int: ...

    @abstractmethod
    async def get_transaction_count(self, address: str) -> int: ...

    @abstractmethod
    async def send_token_transfer(self, private_key: str, token_address: str, to_address: str,
                                  raw_amount: int, nonce: Optional[int] = None,
                                  gas_limit: Optional[int] = None, gas_price: Optional[int] = None) -> TxHandle: ...

    @abstractmethod
    async def send_native(self, private_key: str, to_address: str, wei: int,
                          nonce: Optional[int] = None) -> TxHandle: ...

    @abstractmethod
    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]: ...

    @abstractmethod
    async def wait_for_confirmations(self, tx_hash: str, confirmations: int = 1,
                                     timeout: Optional[float] = None) -> TxReceipt: ...


class Web3ChainGateway(ChainGateway):
    """ChainGateway backed by a web3.py HTTP provider"""

    def __init__(self, rpc_url: Optional[str] = None, timeout: Optional[int] = None,
                 poll_interval: float = 5.0):
        rpc_url = rpc_url or Config.RPC_URL
        if not rpc_url:
            raise ChainGatewayError("RPC_URL environment variable is required")
        self.w3 = Web3(Web3.HTTPProvider(
            rpc_url, request_kwargs={"timeout": timeout or Config.RPC_TIMEOUT_SECONDS}
        ))
        self.poll_interval = poll_interval
        self.default_confirmation_timeout = Config.SWEEP_CONFIRMATION_TIMEOUT_SECONDS

    async def _call(self, description: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError, TimeExhausted) as e:
            logger.warning(f"⏳ PROVIDER_TRANSIENT: {description}: {e}")
            raise TransientProviderError(f"{description}: {e}") from e
        except requests.exceptions.HTTPError as e:
            status = getattr(e.response, "status_code", None)
            if status == 429 or (status is not None and status >= 500):
                logger.warning(f"⏳ PROVIDER_TRANSIENT: {description}: HTTP {status}")
                raise TransientProviderError(f"{description}: HTTP {status}") from e
            raise ChainGatewayError(f"{description}: {e}") from e
        except ChainGatewayError:
            raise
        except Exception as e:
            logger.error(f"❌ PROVIDER_ERROR: {description}: {e}")
            raise ChainGatewayError(f"{description}: {e}") from e

    def _token(self, token_address: str):
        return self.w3.eth.contract(Web3.to_checksum_address(token_address), abi=ERC20_ABI)

    async def get_block_number(self) -> int:
        return int(await self._call("get_block_number", lambda: self.w3.eth.block_number))

    async def get_transfers(self, addresses: Iterable[str], token_address: str,
                            from_block: int, to_block: int) -> List[TokenTransfer]:
        """ERC-20 Transfer logs into any of ``addresses`` within the block range"""
        wanted = sorted({normalize_address(a) for a in addresses if a})
        if not wanted or from_block > to_block:
            return []

        transfers: List[TokenTransfer] = []
        for start in range(0, len(wanted), MAX_ADDRESSES_PER_LOG_QUERY):
            batch = wanted[start:start + MAX_ADDRESSES_PER_LOG_QUERY]
            params = {
                "fromBlock": from_block,
                "toBlock": to_block,
                "address": Web3.to_checksum_address(token_address),
                "topics": [TRANSFER_EVENT_TOPIC, None, [_address_topic(a) for a in batch]],
            }
            logs = await self._call(f"get_logs {from_block}-{to_block}", self.w3.eth.get_logs, params)
            for log in logs:
                topics = log["topics"]
                if len(topics) < 3:
                    continue
                data = log["data"]
                raw_value = int(_hex(data), 16) if data else 0
                transfers.append(TokenTransfer(
                    tx_hash=_hex(log["transactionHash"]).lower(),
                    from_address="0x" + _hex(topics[1])[-40:].lower(),
                    to_address="0x" + _hex(topics[2])[-40:].lower(),
                    value=raw_value,
                    block_number=int(log["blockNumber"]),
                    log_index=int(log.get("logIndex", 0)),
                ))

        transfers.sort(key=lambda t: (t.block_number, t.log_index))
        return transfers

    async def get_balance(self, address: str) -> int:
        return int(await self._call(
            f"get_balance {address}", self.w3.eth.get_balance, Web3.to_checksum_address(address)
        ))

    async def get_gas_price(self) -> int:
        return int(await self._call("gas_price", lambda: self.w3.eth.gas_price))

    async def estimate_token_transfer_gas(self, token_address: str, from_address: str,
                                          to_address: str, raw_amount: int) -> int:
        fn = self._token(token_address).functions.transfer(Web3.to_checksum_address(to_address), int(raw_amount))
        return int(await self._call(
            "estimate_gas transfer", fn.estimate_gas, {"from": Web3.to_checksum_address(from_address)}
        ))

    async def get_transaction_count(self, address: str) -> int:
        return int(await self._call(
            f"get_transaction_count {address}",
            self.w3.eth.get_transaction_count, Web3.to_checksum_address(address), "latest",
        ))

    async def _sign_and_send(self, account, tx: dict, description: str) -> TxHandle:
        signed = account.sign_transaction(tx)
        tx_hash = await self._call(description, self.w3.eth.send_raw_transaction, signed.raw_transaction)
        handle = TxHandle(tx_hash=_hex(tx_hash).lower(), from_address=account.address, nonce=tx["nonce"])
        logger.info(f"📤 TX_BROADCAST: {description} hash={handle.tx_hash} nonce={handle.nonce}")
        return handle

    async def send_token_transfer(self, private_key: str, token_address: str, to_address: str,
                                  raw_amount: int, nonce: Optional[int] = None,
                                  gas_limit: Optional[int] = None, gas_price: Optional[int] = None) -> TxHandle:
        account = Account.from_key(private_key)
        if nonce is None:
            nonce = await self.get_transaction_count(account.address)
        if gas_price is None:
            gas_price = await self.get_gas_price()
        fn = self._token(token_address).functions.transfer(Web3.to_checksum_address(to_address), int(raw_amount))
        tx = await self._call("build_transaction transfer", fn.build_transaction, {
            "from": account.address,
            "nonce": nonce,
            "gas": gas_limit or Config.TOKEN_TRANSFER_GAS_LIMIT,
            "gasPrice": gas_price,
            "chainId": Config.CHAIN_ID,
        })
        return await self._sign_and_send(account, tx, f"token transfer -> {to_address}")

    async def send_native(self, private_key: str, to_address: str, wei: int,
                          nonce: Optional[int] = None) -> TxHandle:
        account = Account.from_key(private_key)
        if nonce is None:
            nonce = await self.get_transaction_count(account.address)
        gas_price = await self.get_gas_price()
        tx = {
            "to": Web3.to_checksum_address(to_address),
            "value": int(wei),
            "gas": 21000,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": Config.CHAIN_ID,
        }
        return await self._sign_and_send(account, tx, f"native transfer -> {to_address}")

    async def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        def _fetch():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = await self._call(f"get_receipt {tx_hash}", _fetch)
        if receipt is None:
            return None
        head = await self.get_block_number()
        block_number = int(receipt["blockNumber"])
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=block_number,
            confirmations=max(0, head - block_number + 1),
        )

    async def wait_for_confirmations(self, tx_hash: str, confirmations: int = 1,
                                     timeout: Optional[float] = None) -> TxReceipt:
        """Poll until the transaction has ``confirmations`` blocks; raises on revert or timeout"""
        timeout = timeout or self.default_confirmation_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            receipt = await self.get_receipt(tx_hash)
            if receipt is not None:
                if not receipt.succeeded:
                    raise TransactionFailedError(tx_hash)
                if receipt.confirmations >= confirmations:
                    return receipt
            if loop.time() >= deadline:
                raise TransientProviderError(
                    f"Timed out after {timeout}s waiting for {confirmations} confirmation(s) of {tx_hash}"
                )
            await asyncio.sleep(self.poll_interval)


_chain_gateway: Optional[ChainGateway] = None


def get_chain_gateway() -> ChainGateway:
    global _chain_gateway
    if _chain_gateway is None:
        _chain_gateway = Web3ChainGateway()
    return _chain_gateway

