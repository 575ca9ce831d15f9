"""
Encryption of channel secret tokens at rest.

Security properties:
  - Key derivation: PBKDF2-HMAC-SHA256 with 600K iterations + application salt
  - Encryption: AES-256-GCM with random 12-byte nonce
  - Authenticated data: user_id bound as AAD (a token row copied to another user fails to decrypt)
"""
import base64
import os
from typing import Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives import hashes

from reecher.config import settings

# Fixed application salt. Not a secret, only domain separation.
_APP_SALT = b"reecher-channel-token-encryption-salt"

# OWASP 2024 recommendation for PBKDF2-HMAC-SHA256
_KDF_ITERATIONS = 600_000

_NONCE_BYTES = 12


class TokenEncryption:
    """AES-256-GCM encryption for channel tokens."""

    def __init__(self, secret: Optional[str] = None):
        self.aesgcm = AESGCM(self._derive_key(secret or settings.ENCRYPTION_KEY))

    def _derive_key(self, password: str) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=_APP_SALT,
            iterations=_KDF_ITERATIONS,
        )
        return kdf.derive(password.encode("utf-8"))

    def encrypt(self, plaintext: str, aad: str) -> str:
        """
        Encrypt plaintext and return base64(nonce + ciphertext).

        Args:
            plaintext: The channel token.
            aad: The owning user id. Decryption fails if a different aad is given.
        """
        nonce = os.urandom(_NONCE_BYTES)
        ciphertext = self.aesgcm.encrypt(nonce, plaintext.encode("utf-8"), aad.encode("utf-8"))
        return base64.b64encode(nonce + ciphertext).decode("utf-8")

    def decrypt(self, encrypted: str, aad: str) -> str:
        data = base64.b64decode(encrypted.encode("utf-8"))
        nonce, ciphertext = data[:_NONCE_BYTES], data[_NONCE_BYTES:]
        plaintext = self.aesgcm.decrypt(nonce, ciphertext, aad.encode("utf-8"))
        return plaintext.decode("utf-8")


_token_encryption: Optional[TokenEncryption] = None


def get_token_encryption() -> TokenEncryption:
    """Lazy-init the process-wide instance (PBKDF2 takes a noticeable fraction of a second)."""
    global _token_encryption
    if _token_encryption is None:
        _token_encryption = TokenEncryption()
    return _token_encryption
