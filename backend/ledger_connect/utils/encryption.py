"""
Encryption utilities for secure credential storage.

Implements AES-256-GCM encryption for OAuth tokens at rest, plus the HMAC
primitives used for webhook signatures and API keys.

SECURITY:
- Uses AES-256-GCM for authenticated encryption
- Each encryption uses a unique random nonce
- Key is derived once from the master secret with PBKDF2-HMAC-SHA256
- Decryption fails closed: any tampering or wrong key raises DecryptionFailed
- Signature comparisons are constant-time (length check, then compare_digest)

Usage:
    from ledger_connect.utils.encryption import CipherBox

    cipher = CipherBox(secret=os.environ["ENCRYPTION_KEY"])

    token = cipher.encrypt("access-token")
    assert cipher.decrypt(token) == "access-token"

    signature = cipher.sign(raw_body, secret=webhook_secret)
    cipher.verify_signature(raw_body, signature, secret=webhook_secret)
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ledger_connect.platform.errors import ConfigurationError, DecryptionFailed, EmptyInput, ErrorCode

logger = logging.getLogger(__name__)


# AES-GCM constants
NONCE_SIZE = 12  # 96 bits, recommended for AES-GCM
TAG_SIZE = 16    # 128 bits, standard for AES-GCM
KEY_SIZE = 32    # 256 bits for AES-256

KDF_SALT = b"ledger-connect-salt"
DEFAULT_KDF_ITERATIONS = 600000

API_KEY_PREFIX = "ttya"
API_KEY_RANDOM_BYTES = 24

BytesLike = Union[str, bytes]


def _to_bytes(data: BytesLike) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else data


def _urlsafe_b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def constant_time_equals(a: BytesLike, b: BytesLike) -> bool:
    """
    Compare two secrets without leaking the position of the first mismatch.

    Unequal lengths are rejected before any byte comparison; equal-length
    inputs are compared over the full buffer.
    """
    left = _to_bytes(a)
    right = _to_bytes(b)
    if len(left) != len(right):
        return False
    return hmac.compare_digest(left, right)


def derive_key(secret: str, iterations: int = DEFAULT_KDF_ITERATIONS) -> bytes:
    """
    Derive the 256-bit cipher key from the master secret.

    Args:
        secret: Master secret string (ENCRYPTION_KEY)
        iterations: PBKDF2 iterations (default: 600000)

    Returns:
        32-byte derived key
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=KDF_SALT,
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


class CipherBox:
    """
    AES-256-GCM cipher and HMAC signer for credential storage.

    The key is derived once at construction; every encrypt call draws a
    fresh nonce. Serialized form is base64(nonce || tag || ciphertext).

    SECURITY:
    - Never reuse nonces with the same key
    - Store the master secret securely (never in code or logs)
    """

    def __init__(self, secret: str, iterations: int = DEFAULT_KDF_ITERATIONS):
        """
        Initialize cipher with the master secret.

        Raises:
            ConfigurationError: If the secret is empty
        """
        if not secret:
            raise ConfigurationError(
                "Encryption key is required",
                code=ErrorCode.SYSTEM_CONFIG_MISSING,
            )
        self._key = derive_key(secret, iterations)
        self._aesgcm = AESGCM(self._key)

    def __repr__(self) -> str:
        return "CipherBox(key='[REDACTED]')"

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Returns:
            base64(nonce || tag || ciphertext)

        Raises:
            EmptyInput: If plaintext is empty
        """
        if not plaintext:
            raise EmptyInput()

        nonce = secrets.token_bytes(NONCE_SIZE)
        # AESGCM.encrypt returns ciphertext + tag concatenated
        ciphertext_with_tag = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext = ciphertext_with_tag[:-TAG_SIZE]
        auth_tag = ciphertext_with_tag[-TAG_SIZE:]

        return base64.b64encode(nonce + auth_tag + ciphertext).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a value produced by encrypt().

        Raises:
            EmptyInput: If token is empty
            DecryptionFailed: On tampering, wrong key, bad encoding or short input
        """
        if not token:
            raise EmptyInput("Cannot decrypt an empty value")

        try:
            raw = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError):
            logger.error("Decryption failed: invalid base64 payload")
            raise DecryptionFailed()

        if len(raw) < NONCE_SIZE + TAG_SIZE:
            logger.error("Decryption failed: payload too short")
            raise DecryptionFailed()

        nonce = raw[:NONCE_SIZE]
        auth_tag = raw[NONCE_SIZE:NONCE_SIZE + TAG_SIZE]
        ciphertext = raw[NONCE_SIZE + TAG_SIZE:]

        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext + auth_tag, None)
        except InvalidTag:
            logger.error("Decryption failed: authentication tag mismatch")
            raise DecryptionFailed("Decryption failed: data may have been tampered with")

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            logger.error("Decryption failed: plaintext is not valid UTF-8")
            raise DecryptionFailed()

    def encrypt_object(self, data: Dict[str, Any]) -> str:
        """Encrypt a JSON-serializable dictionary."""
        return self.encrypt(json.dumps(data))

    def decrypt_object(self, token: str) -> Dict[str, Any]:
        """
        Decrypt a value produced by encrypt_object().

        Raises:
            DecryptionFailed: If decryption fails or the plaintext is not JSON
        """
        plaintext = self.decrypt(token)
        try:
            return json.loads(plaintext)
        except json.JSONDecodeError:
            logger.error("Decryption failed: plaintext is not valid JSON")
            raise DecryptionFailed("Decrypted data is not valid JSON")

    def sign(self, data: BytesLike, secret: Optional[BytesLike] = None) -> str:
        """HMAC-SHA256 of data as lowercase hex. Defaults to the derived key."""
        key = _to_bytes(secret) if secret is not None else self._key
        return hmac.new(key, _to_bytes(data), hashlib.sha256).hexdigest()

    def verify_signature(
        self,
        data: BytesLike,
        signature: str,
        secret: Optional[BytesLike] = None,
    ) -> bool:
        """Check an HMAC-SHA256 hex signature in constant time."""
        if not signature:
            return False
        return constant_time_equals(self.sign(data, secret), signature)

    @staticmethod
    def random_token(num_bytes: int = 32) -> str:
        """Cryptographically secure random token, hex encoded."""
        return secrets.token_hex(num_bytes)

    @staticmethod
    def hash(data: BytesLike) -> str:
        """SHA-256 hex digest."""
        return hashlib.sha256(_to_bytes(data)).hexdigest()

    def _api_key_signature(self, random_part: str) -> str:
        digest = hmac.new(self._key, random_part.encode("ascii"), hashlib.sha256).digest()
        return _urlsafe_b64(digest)

    def generate_api_key(self, prefix: str = API_KEY_PREFIX) -> str:
        """
        Generate a self-verifying API key.

        Format: {prefix}_{random}.{signature} where both parts are urlsafe
        base64 and the signature is an HMAC of the random part.
        """
        random_part = _urlsafe_b64(secrets.token_bytes(API_KEY_RANDOM_BYTES))
        return f"{prefix}_{random_part}.{self._api_key_signature(random_part)}"

    def verify_api_key(self, api_key: str) -> bool:
        """Return True if the key was produced by this cipher. Malformed keys are False."""
        if not api_key or "_" not in api_key or "." not in api_key:
            return False

        _, _, body = api_key.partition("_")
        random_part, _, signature = body.rpartition(".")
        if not random_part or not signature:
            return False

        try:
            expected = self._api_key_signature(random_part)
        except UnicodeEncodeError:
            return False
        return constant_time_equals(expected, signature)
