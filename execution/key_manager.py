"""
Key Manager - AES-256-GCM custody of user private keys.

Private keys of custodial wallets are stored encrypted. A plaintext key
only ever exists inside with_signer(), for the duration of one
transaction-submission call, and is wiped on every exit path.

Usage:
    key_manager = AESKeyManager(os.getenv("KEY_ENCRYPTION_SECRET"), chain_id=80002)

    # At registration
    address, encrypted = key_manager.generate_wallet()

    # When signing
    receipt = await key_manager.with_signer(
        encrypted,
        lambda signer: submitter.submit(signer, call, fees),
    )
"""

import base64
import binascii
import hashlib
import logging
import secrets
from typing import Awaitable, Callable, Optional, Tuple, TypeVar, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_account import Account

from .errors import KeyCustodyError

logger = logging.getLogger(__name__)

# AES-256-GCM parameters
KEY_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits (recommended for GCM)
TAG_SIZE = 16  # 128 bits authentication tag

# secp256k1 private key length
PRIVATE_KEY_SIZE = 32

T = TypeVar("T")


class LocalSigner:
    """
    Signs transactions for one custodial wallet on one chain.

    Only handed out by AESKeyManager.with_signer(); unusable once the
    scope that created it has exited.
    """

    def __init__(self, account, chain_id: int):
        self._account = account
        self.address: str = account.address
        self.chain_id = chain_id

    def sign_transaction(self, tx: dict) -> bytes:
        """Sign a transaction dict and return the raw serialized bytes."""
        if self._account is None:
            raise KeyCustodyError("Signer used outside of its custody scope")

        tx = dict(tx)
        tx.setdefault("chainId", self.chain_id)
        signed = self._account.sign_transaction(tx)
        return bytes(signed.raw_transaction)

    def _discard(self) -> None:
        self._account = None


class AESKeyManager:
    """
    Manages encryption/decryption of private keys using AES-256-GCM.

    Security Features:
    - AES-256-GCM provides authenticated encryption (confidentiality + integrity)
    - Unique random nonce for each encryption operation
    - Tampered or truncated ciphertext raises KeyCustodyError, never misdecrypts

    Storage Format:
    - base64: nonce (12 bytes) || ciphertext || tag (16 bytes)
    """

    def __init__(self, encryption_secret: str, chain_id: int):
        """
        Initialize the key manager with a master encryption secret.

        Args:
            encryption_secret: Master secret for key derivation (from env var)
            chain_id: Chain the produced signers are bound to

        Raises:
            ValueError: If secret is missing or too weak
        """
        if not encryption_secret:
            raise ValueError(
                "KEY_ENCRYPTION_SECRET is required. "
                "Set it in your .env file or environment."
            )

        if len(encryption_secret) < 16:
            raise ValueError(
                "KEY_ENCRYPTION_SECRET must be at least 16 characters. "
                "Use a strong, random secret."
            )

        self._cipher = AESGCM(self._derive_key(encryption_secret))
        self.chain_id = chain_id

        logger.info("AES Key Manager initialized")

    def _derive_key(self, secret: str) -> bytes:
        """Derive a 256-bit key from the master secret."""
        domain = b"marketplace-settlement:key-encryption:v1"
        return hashlib.sha256(domain + secret.encode("utf-8")).digest()

    def encrypt(self, private_key: Union[bytes, str]) -> str:
        """
        Encrypt a private key for storage.

        Args:
            private_key: Raw 32-byte key, or its 0x-prefixed hex form

        Returns:
            Base64-encoded encrypted data (nonce || ciphertext || tag)
        """
        if isinstance(private_key, str):
            try:
                private_key = bytes.fromhex(private_key[2:] if private_key.startswith("0x") else private_key)
            except ValueError:
                raise KeyCustodyError("Private key is not valid hex")

        if len(private_key) != PRIVATE_KEY_SIZE:
            raise KeyCustodyError(f"Private key must be {PRIVATE_KEY_SIZE} bytes")

        nonce = secrets.token_bytes(NONCE_SIZE)
        ciphertext = self._cipher.encrypt(nonce, bytes(private_key), None)
        return base64.b64encode(nonce + ciphertext).decode("utf-8")

    def decrypt(self, encrypted: Optional[str]) -> bytes:
        """
        Decrypt a stored private key.

        Raises:
            KeyCustodyError: Missing, malformed, or tampered ciphertext
        """
        buffer = self._decrypt_to_buffer(encrypted)
        try:
            return bytes(buffer)
        finally:
            _wipe(buffer)

    def check(self, encrypted: Optional[str]) -> None:
        """Authenticate a stored key without keeping the plaintext."""
        _wipe(self._decrypt_to_buffer(encrypted))

    async def with_signer(
        self,
        encrypted: Optional[str],
        fn: Callable[[LocalSigner], Awaitable[T]],
    ) -> T:
        """
        Run fn with a signer for the wallet whose key is `encrypted`.

        The plaintext buffer is wiped and the signer disabled when fn
        returns, raises, or is cancelled.
        """
        buffer = self._decrypt_to_buffer(encrypted)
        signer = None
        try:
            try:
                account = Account.from_key(bytes(buffer))
            except (ValueError, binascii.Error) as e:
                raise KeyCustodyError(f"Decrypted key is not a valid private key: {e}")
            signer = LocalSigner(account, self.chain_id)
            del account
            return await fn(signer)
        finally:
            if signer is not None:
                signer._discard()
            _wipe(buffer)

    def generate_wallet(self) -> Tuple[str, str]:
        """
        Generate a new custodial wallet.

        Returns:
            Tuple of (checksum address, encrypted private key)
        """
        account = Account.create()
        buffer = bytearray(account.key)
        try:
            encrypted = self.encrypt(bytes(buffer))
        finally:
            _wipe(buffer)
        address = account.address
        del account

        logger.info(f"Generated custodial wallet: {address[:10]}...")
        return address, encrypted

    def _decrypt_to_buffer(self, encrypted: Optional[str]) -> bytearray:
        if not encrypted:
            raise KeyCustodyError("No encrypted key stored for this wallet")

        try:
            data = base64.b64decode(encrypted, validate=True)
        except (binascii.Error, ValueError):
            raise KeyCustodyError("Encrypted key is not valid base64")

        if len(data) < NONCE_SIZE + TAG_SIZE:
            raise KeyCustodyError("Encrypted key too short")

        try:
            plaintext = self._cipher.decrypt(data[:NONCE_SIZE], data[NONCE_SIZE:], None)
        except InvalidTag:
            logger.error("Key decryption failed: authentication tag mismatch")
            raise KeyCustodyError(
                "Failed to decrypt key. Possible causes: wrong secret, corrupted data."
            )

        return bytearray(plaintext)


def _wipe(buffer: bytearray) -> None:
    for i in range(len(buffer)):
        buffer[i] = 0


def generate_encryption_secret() -> str:
    """Generate a cryptographically secure random secret for KEY_ENCRYPTION_SECRET."""
    return secrets.token_urlsafe(32)
