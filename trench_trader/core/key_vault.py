"""
Key Vault
Authenticated encryption of bot wallet keys at rest
"""

import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import logging

from .errors import KeyVaultError, ConfigurationInvalid

logger = logging.getLogger(__name__)

BLOB_VERSION = "v1"
SALT_BYTES = 16
NONCE_BYTES = 12
KDF_ITERATIONS = 200_000


class KeyVault:
    """
    Seals and unseals secrets with AES-256-GCM

    Blob format: ``v1:<salt hex>:<nonce hex>:<ciphertext+tag hex>``. The key
    is derived from the server secret with PBKDF2-HMAC-SHA256 and a fresh
    random salt; every seal also draws a fresh nonce. Any tampering or a
    wrong server secret raises KeyVaultError.
    """

    def __init__(self, server_secret: str, iterations: int = KDF_ITERATIONS):
        if not server_secret:
            raise ConfigurationInvalid("Key vault requires a non-empty server secret")
        self._secret = server_secret.encode("utf-8")
        self.iterations = iterations

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._secret)

    def seal(self, secret: str) -> str:
        """
        Encrypt a secret

        Args:
            secret: Plaintext (e.g. base58 wallet key)

        Returns:
            Sealed blob string
        """
        salt = os.urandom(SALT_BYTES)
        nonce = os.urandom(NONCE_BYTES)
        aead = AESGCM(self._derive_key(salt))
        ciphertext = aead.encrypt(nonce, secret.encode("utf-8"), BLOB_VERSION.encode("ascii"))
        return ":".join([BLOB_VERSION, salt.hex(), nonce.hex(), ciphertext.hex()])

    def unseal(self, blob: Optional[str]) -> str:
        """
        Decrypt a sealed blob

        Raises:
            KeyVaultError: malformed blob, tampering or wrong server secret
        """
        parts = (blob or "").split(":")
        if len(parts) != 4 or parts[0] != BLOB_VERSION:
            raise KeyVaultError("Malformed sealed blob")

        try:
            salt = bytes.fromhex(parts[1])
            nonce = bytes.fromhex(parts[2])
            ciphertext = bytes.fromhex(parts[3])
        except ValueError:
            raise KeyVaultError("Malformed sealed blob")

        if len(salt) != SALT_BYTES or len(nonce) != NONCE_BYTES or not ciphertext:
            raise KeyVaultError("Malformed sealed blob")

        aead = AESGCM(self._derive_key(salt))
        try:
            plaintext = aead.decrypt(nonce, ciphertext, BLOB_VERSION.encode("ascii"))
        except InvalidTag:
            raise KeyVaultError("Sealed blob failed authentication")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise KeyVaultError("Sealed blob is not valid text")
