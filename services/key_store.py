"""
Custodial Key Store
Encrypts custodial wallet private keys at rest with AES-256-GCM
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_account import Account

from config import Config

logger = logging.getLogger(__name__)

IV_LENGTH = 12  # recommended nonce length for GCM
TAG_LENGTH = 16


class DecryptionError(Exception):
    """Raised when an encrypted key is tampered with, corrupted or malformed"""
    pass


class KeyStoreConfigurationError(Exception):
    """Raised when the encryption key is missing or has the wrong length"""
    pass


@dataclass
class GeneratedWallet:
    address: str
    encrypted_private_key: str

    def __repr__(self) -> str:
        return f"GeneratedWallet(address={self.address!r})"


class KeyStore:
    """
    AES-256-GCM key store.

    Stored format is ``iv:tag:ciphertext`` in hex, so keys written by earlier
    deployments keep decrypting. Decrypted keys are returned to the caller and
    never logged or cached here.
    """

    def __init__(self, encryption_key: Optional[Union[str, bytes]] = None):
        key = encryption_key if encryption_key is not None else Config.ENCRYPTION_KEY
        if not key:
            raise KeyStoreConfigurationError("ENCRYPTION_KEY environment variable is missing")
        key_bytes = key.encode("utf-8") if isinstance(key, str) else bytes(key)
        if len(key_bytes) != 32:
            raise KeyStoreConfigurationError("ENCRYPTION_KEY must be 32 bytes long")
        self._aesgcm = AESGCM(key_bytes)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, encrypted: str) -> str:
        """Decrypt a stored key; raises DecryptionError without echoing any key material"""
        try:
            iv_hex, tag_hex, ciphertext_hex = (encrypted or "").split(":")
            iv = bytes.fromhex(iv_hex)
            tag = bytes.fromhex(tag_hex)
            ciphertext = bytes.fromhex(ciphertext_hex)
        except ValueError:
            logger.error("🔐 DECRYPTION_FAILED: Encrypted key is malformed")
            raise DecryptionError("Encrypted key is malformed")

        if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
            logger.error("🔐 DECRYPTION_FAILED: Encrypted key has invalid IV or tag length")
            raise DecryptionError("Encrypted key has invalid IV or tag length")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            logger.error("🔐 DECRYPTION_FAILED: Authentication tag mismatch (tampered or wrong key)")
            raise DecryptionError("Encrypted key failed authentication")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptionError("Decrypted key is not valid text")

    def generate_wallet(self) -> GeneratedWallet:
        """Create a fresh custodial wallet and return its address with the encrypted key"""
        account = Account.create()
        encrypted = self.encrypt(account.key.hex())
        logger.info(f"🆕 WALLET_GENERATED: {account.address}")
        return GeneratedWallet(address=account.address, encrypted_private_key=encrypted)


_key_store: Optional[KeyStore] = None


def get_key_store() -> KeyStore:
    global _key_store
    if _key_store is None:
        _key_store = KeyStore()
    return _key_store
