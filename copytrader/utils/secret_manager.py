"""
Secret access and API-key encryption.

DATABASE_URL and ENCRYPTION_KEY are read lazily from the environment.
Exchange API keys are stored AES-256-GCM encrypted as
base64(nonce || ciphertext || tag); the 32-byte key is given as 64 hex chars.
"""
import base64
import os
import time
from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from copytrader.domain.models import ExchangeCredentials, User
from copytrader.exceptions import StartupError
from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)

NONCE_BYTES = 12


def get_secret_with_retry(
    secret_name: str,
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 5.0,
    backoff_factor: float = 1.5,
    validator: Optional[Callable[[str], bool]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    """
    Get a secret from the environment, waiting briefly for late injection.

    Raises:
        StartupError: If the secret is missing or invalid after all retries
    """
    delay = initial_delay
    for attempt in range(max_retries):
        value = os.getenv(secret_name)
        if value and value.strip():
            if validator is None or validator(value.strip()):
                if attempt > 0:
                    logger.info(
                        f"Secret {secret_name} became available after {attempt} retries",
                        total_attempts=attempt + 1,
                    )
                return value.strip()
            raise StartupError(
                f"Secret {secret_name} failed validation. "
                "Check the value in your environment configuration."
            )

        if attempt < max_retries - 1:
            logger.warning(
                f"Secret {secret_name} not available, retrying",
                attempt=attempt + 1,
                max_retries=max_retries,
                next_retry_seconds=delay,
            )
            sleep(delay)
            delay = min(delay * backoff_factor, max_delay)

    raise StartupError(
        f"Secret {secret_name} is required but not set. "
        f"Set it in your environment or .env.local file.\n"
        f"Example: export {secret_name}=your_value"
    )


def get_database_url() -> str:
    """DATABASE_URL (PostgreSQL or SQLite)."""
    def validate_db_url(url: str) -> bool:
        return url.startswith(("postgresql://", "postgresql+psycopg2://", "sqlite"))

    return get_secret_with_retry("DATABASE_URL", validator=validate_db_url)


def get_encryption_key() -> str:
    """ENCRYPTION_KEY as 64 hex characters."""
    return get_secret_with_retry("ENCRYPTION_KEY", validator=is_valid_hex_key)


def is_valid_hex_key(value: str) -> bool:
    if len(value) != 64:
        return False
    try:
        bytes.fromhex(value)
    except ValueError:
        return False
    return True


class CredentialCipher:
    """AES-256-GCM encryption of API keys and secrets."""

    def __init__(self, hex_key: str):
        if not is_valid_hex_key(hex_key):
            raise StartupError("Encryption key must be 64 hex characters (32 bytes) for AES-256")
        self._aesgcm = AESGCM(bytes.fromhex(hex_key))

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt plaintext.

        Returns:
            Base64-encoded nonce + ciphertext + tag
        """
        nonce = os.urandom(NONCE_BYTES)
        # AESGCM appends the 16-byte tag to the ciphertext
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, encoded: str) -> str:
        """
        Decrypt a value produced by encrypt().

        Raises:
            ValueError: If the payload is malformed or fails authentication
        """
        try:
            data = base64.b64decode(encoded.encode("ascii"), validate=True)
        except (ValueError, UnicodeEncodeError) as e:
            raise ValueError(f"Encrypted value is not valid base64: {e}") from e
        if len(data) <= NONCE_BYTES + 16:
            raise ValueError("Encrypted value is too short")

        nonce, ciphertext = data[:NONCE_BYTES], data[NONCE_BYTES:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise ValueError("Encrypted value could not be decrypted (wrong key?)") from e
        return plaintext.decode("utf-8")


class CredentialStore:
    """Resolves a user's decrypted exchange credentials."""

    def __init__(self, cipher: CredentialCipher):
        self.cipher = cipher

    @classmethod
    def from_env(cls) -> "CredentialStore":
        return cls(CredentialCipher(get_encryption_key()))

    def for_user(self, user: User) -> Optional[ExchangeCredentials]:
        """Decrypted credentials, or None when the user has not stored keys."""
        if not user.has_credentials:
            return None
        return ExchangeCredentials(
            api_key=self.cipher.decrypt(user.api_key_encrypted),
            api_secret=self.cipher.decrypt(user.api_secret_encrypted),
        )
