"""
Gateway secret encryption.

AES-256-GCM with a random 12-byte IV per value. Ciphertext and IV are stored
hex-encoded next to each other on the credential row. The master key comes
from RAZORPAY_ENCRYPTION_KEY (64 hex chars) and never leaves the server.
"""

import os
import logging
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from config import settings

logger = logging.getLogger(__name__)

IV_LENGTH = 12


class CredentialEncryptionError(Exception):
    """Raised when encryption/decryption fails."""
    pass


def _load_key(hex_key: Optional[str] = None) -> bytes:
    hex_key = hex_key if hex_key is not None else settings.RAZORPAY_ENCRYPTION_KEY
    if not hex_key:
        raise CredentialEncryptionError("RAZORPAY_ENCRYPTION_KEY is not configured")
    try:
        key = bytes.fromhex(hex_key)
    except ValueError:
        raise CredentialEncryptionError("RAZORPAY_ENCRYPTION_KEY must be hex encoded")
    if len(key) != 32:
        raise CredentialEncryptionError("RAZORPAY_ENCRYPTION_KEY must be 32 bytes (64 hex chars)")
    return key


def encrypt_secret(plaintext: str, hex_key: Optional[str] = None) -> Tuple[str, str]:
    """
    Encrypt a key secret.

    Returns:
        (ciphertext_hex, iv_hex)
    """
    key = _load_key(hex_key)
    iv = os.urandom(IV_LENGTH)
    ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return ciphertext.hex(), iv.hex()


def decrypt_secret(ciphertext_hex: str, iv_hex: str, hex_key: Optional[str] = None) -> str:
    key = _load_key(hex_key)
    try:
        plaintext = AESGCM(key).decrypt(bytes.fromhex(iv_hex), bytes.fromhex(ciphertext_hex), None)
    except (InvalidTag, ValueError) as e:
        # Never include the ciphertext or key material in the message
        logger.error(f"Credential decryption failed: {type(e).__name__}")
        raise CredentialEncryptionError("Failed to decrypt stored credential") from e
    return plaintext.decode("utf-8")


def mask_key_id(key_id: str) -> str:
    """rzp_live_AbCdEf123456 -> rzp_live_****3456"""
    if not key_id:
        return ""
    prefix_end = key_id.rfind("_") + 1
    if len(key_id) - prefix_end <= 4:
        return key_id[:prefix_end] + "****"
    return f"{key_id[:prefix_end]}****{key_id[-4:]}"
