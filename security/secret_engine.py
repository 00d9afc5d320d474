"""
Secret Engine.

============================================================
PURPOSE
============================================================
Authenticated encryption of exchange API credentials, keyed
hashing for equality lookup, display masking, and generation of
internal credentials.

============================================================
CIPHERTEXT FORMAT
============================================================
URL-safe base64 of:

    version (1) | key id (4) | nonce (12) | ciphertext + GCM tag

- AES-256-GCM with a fresh random nonce per call
- The AES key is derived from the master key with PBKDF2-SHA256
- key id is a fingerprint of the derived key so a wrong master key
  is reported as BadKeyError rather than corruption
- The empty string stands for an absent credential and maps to
  itself in both directions

============================================================
KEY HANDLING
============================================================
Master and signing keys live in process memory only. They never
appear in log records, repr() or exception context.

============================================================
"""

import base64
import hashlib
import hmac
import logging
import secrets
import string
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from core.config import MIN_MASTER_KEY_LENGTH, Settings
from core.exceptions import (
    BadKeyError,
    ConfigurationError,
    CorruptCiphertextError,
    ValidationError,
)


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

KDF_SALT = b"account-store-secret-engine-v1"
KDF_ITERATIONS = 100_000

FORMAT_VERSION = 1
KEY_ID_SIZE = 4
NONCE_SIZE = 12
TAG_SIZE = 16
HEADER_SIZE = 1 + KEY_ID_SIZE + NONCE_SIZE

URL_SAFE_ALPHABET = string.ascii_letters + string.digits + "-_"
MIN_GENERATED_LENGTH = 32
SIGNATURE_LENGTH = 8


class KeyClass(str, Enum):
    """Human-readable class tags for generated credentials."""

    EXCHANGE = "txc_"
    USER = "usr_"
    SERVICE = "svc_"
    WEBHOOK = "whk_"


@dataclass(frozen=True)
class SealedCredentials:
    """Encrypted credential pair plus the lookup hash of the key."""

    encrypted_api_key: str
    encrypted_api_secret: str
    api_key_hash: str


# ============================================================
# SECRET ENGINE
# ============================================================

class SecretEngine:
    """
    Symmetric credential protection for the account store.

    All operations are CPU-only and safe to share across threads.

    Usage:
        engine = SecretEngine.from_settings(settings)
        token = engine.encrypt("api-key")
        engine.decrypt(token) == "api-key"
    """

    def __init__(
        self,
        master_key: str,
        signing_key: str,
        iterations: int = KDF_ITERATIONS,
    ) -> None:
        """
        Initialize the engine.

        Args:
            master_key: Encryption master key (>= 32 characters)
            signing_key: Key for the lookup MAC, distinct from master_key
            iterations: PBKDF2 iteration count

        Raises:
            ConfigurationError: If a key is empty or the master key is short
        """
        if not master_key:
            raise ConfigurationError(
                "encryption master key is empty",
                config_key="ENCRYPTION_MASTER_KEY",
            )
        if len(master_key) < MIN_MASTER_KEY_LENGTH:
            raise ConfigurationError(
                f"encryption master key must be at least {MIN_MASTER_KEY_LENGTH} characters",
                config_key="ENCRYPTION_MASTER_KEY",
            )
        if not signing_key:
            raise ConfigurationError(
                "hash signing key is empty",
                config_key="HASH_SIGNING_KEY",
            )

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=KDF_SALT,
            iterations=iterations,
        )
        derived = kdf.derive(master_key.encode("utf-8"))

        self._aead = AESGCM(derived)
        self._key_id = hashlib.sha256(derived).digest()[:KEY_ID_SIZE]
        self._signing_key = signing_key.encode("utf-8")

        logger.debug("Secret engine initialized")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretEngine":
        return cls(settings.master_key, settings.signing_key)

    def __repr__(self) -> str:
        return "SecretEngine(keys=<redacted>)"

    # =========================================================
    # ENCRYPTION
    # =========================================================

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret.

        Args:
            plaintext: Secret to protect ("" means absent)

        Returns:
            Opaque URL-safe ciphertext, or "" for empty input
        """
        if not plaintext:
            return ""

        nonce = secrets.token_bytes(NONCE_SIZE)
        header = bytes([FORMAT_VERSION]) + self._key_id + nonce
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), header[:1 + KEY_ID_SIZE])
        return base64.urlsafe_b64encode(header + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a secret produced by encrypt().

        Args:
            ciphertext: Value from encrypt()

        Returns:
            The plaintext, or "" for empty input

        Raises:
            CorruptCiphertextError: Truncated, malformed or tampered input
            BadKeyError: Produced under a different master key
        """
        if not ciphertext:
            return ""

        try:
            raw = base64.b64decode(ciphertext.encode("ascii"), altchars=b"-_", validate=True)
        except ValueError as e:
            raise CorruptCiphertextError("ciphertext is not valid base64") from e

        if len(raw) < HEADER_SIZE + TAG_SIZE:
            raise CorruptCiphertextError(
                "ciphertext is truncated",
                context={"length": len(raw)},
            )
        if raw[0] != FORMAT_VERSION:
            raise CorruptCiphertextError(
                "unknown ciphertext version",
                context={"version": raw[0]},
            )

        key_id = raw[1:1 + KEY_ID_SIZE]
        if not hmac.compare_digest(key_id, self._key_id):
            raise BadKeyError("ciphertext was encrypted under a different key")

        nonce = raw[1 + KEY_ID_SIZE:HEADER_SIZE]
        try:
            plaintext = self._aead.decrypt(nonce, raw[HEADER_SIZE:], raw[:1 + KEY_ID_SIZE])
        except InvalidTag as e:
            raise CorruptCiphertextError("ciphertext failed authentication") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CorruptCiphertextError("decrypted payload is not text") from e

    # =========================================================
    # HASHING AND MASKING
    # =========================================================

    def hash(self, api_key: str) -> str:
        """Keyed, deterministic lookup hash (64 lowercase hex chars)."""
        return hmac.new(self._signing_key, api_key.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify_hash(self, api_key: str, expected: str) -> bool:
        return hmac.compare_digest(self.hash(api_key), expected)

    @staticmethod
    def mask(plaintext: str, n: int = 4) -> str:
        """
        Mask a secret for display.

        Returns first n + "..." + last n characters. Inputs shorter
        than 2n become "***"; the empty string stays empty.
        """
        if n < 1:
            raise ValidationError("mask width must be positive", field="n")
        if not plaintext:
            return ""
        if len(plaintext) < 2 * n:
            return "***"
        return f"{plaintext[:n]}...{plaintext[-n:]}"

    # =========================================================
    # GENERATION
    # =========================================================

    def generate(
        self,
        prefix: Union[KeyClass, str] = KeyClass.EXCHANGE,
        length: int = MIN_GENERATED_LENGTH,
    ) -> str:
        """
        Generate a new credential.

        Format is prefix + body + "." + signature, where body is
        uniformly random over the URL-safe alphabet and signature is
        the first 8 hex characters of the keyed hash of prefix + body.

        Args:
            prefix: Class tag (KeyClass or custom)
            length: Body length, at least 32

        Returns:
            The generated credential
        """
        tag = prefix.value if isinstance(prefix, KeyClass) else prefix
        if not tag or "." in tag:
            raise ValidationError("credential prefix must be non-empty and contain no '.'", field="prefix")
        if length < MIN_GENERATED_LENGTH:
            raise ValidationError(
                f"credential length must be at least {MIN_GENERATED_LENGTH}",
                field="length",
            )

        body = "".join(secrets.choice(URL_SAFE_ALPHABET) for _ in range(length))
        return f"{tag}{body}.{self._signature(tag + body)}"

    def verify_generated(self, credential: str, prefix: Optional[Union[KeyClass, str]] = None) -> bool:
        """Check the signature (and optionally the class tag) of a generated credential."""
        unsigned, sep, signature = credential.rpartition(".")
        if not sep or len(signature) != SIGNATURE_LENGTH:
            return False
        if prefix is not None:
            tag = prefix.value if isinstance(prefix, KeyClass) else prefix
            if not unsigned.startswith(tag):
                return False
        return hmac.compare_digest(self._signature(unsigned), signature)

    def _signature(self, unsigned: str) -> str:
        return self.hash(unsigned)[:SIGNATURE_LENGTH]

    # =========================================================
    # CREDENTIAL PAIRS
    # =========================================================

    def seal_credentials(self, api_key: str, api_secret: str) -> SealedCredentials:
        """
        Encrypt an API key/secret pair and compute the key's lookup hash.

        Raises:
            ValidationError: If either value is empty
        """
        if not api_key or not api_secret:
            raise ValidationError("API key and secret are both required", field="api_key")
        return SealedCredentials(
            encrypted_api_key=self.encrypt(api_key),
            encrypted_api_secret=self.encrypt(api_secret),
            api_key_hash=self.hash(api_key),
        )

    def open_credentials(self, encrypted_api_key: str, encrypted_api_secret: str) -> Tuple[str, str]:
        """Decrypt an API key/secret pair."""
        return self.decrypt(encrypted_api_key), self.decrypt(encrypted_api_secret)
