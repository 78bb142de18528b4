"""
Credential protection for RecipeVault.

This module covers the two secrets the engine handles:

    - Cloud provider OAuth tokens, encrypted at rest with Fernet symmetric
      encryption before they reach the database
    - Account passwords, stored as salted PBKDF2-SHA256 hashes and checked
      before destructive operations (replace-mode imports, restores)

Security Design:
    - Tokens are never stored or logged in plaintext
    - The Fernet key comes from RECIPEVAULT_TOKEN_KEY or a key file created
      with owner-only permissions (0600)
    - Password hashes use a random 256-bit salt and 600,000 iterations
    - Password comparison uses the KDF's constant-time verify
"""

import base64
import binascii
import os
import secrets
from pathlib import Path

from cryptography.exceptions import InvalidKey
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

# OWASP 2023 recommends 600,000 iterations for PBKDF2-SHA256
PBKDF2_ITERATIONS = 600_000
SALT_LENGTH = 32  # 256 bits
HASH_ALGORITHM = "pbkdf2_sha256"
TOKEN_KEY_FILENAME = "token.key"


class CredentialError(Exception):
    """Base exception for credential-related errors."""

    pass


class TokenDecryptionError(CredentialError):
    """Raised when an encrypted token cannot be decrypted with the current key."""

    pass


class TokenCipher:
    """
    Encrypts and decrypts opaque credential strings.

    Example:
        cipher = TokenCipher(Fernet.generate_key())
        stored = cipher.encrypt(access_token)
        access_token = cipher.decrypt(stored)
    """

    def __init__(self, key: str | bytes) -> None:
        """
        Initialize the cipher.

        Args:
            key: URL-safe base64 encoded 32-byte Fernet key.

        Raises:
            CredentialError: If the key is malformed.
        """
        if isinstance(key, str):
            key = key.encode()
        try:
            self._fernet = Fernet(key)
        except (ValueError, binascii.Error) as e:
            raise CredentialError(
                "Token key must be a URL-safe base64 encoded 32-byte key"
            ) from e

    def encrypt(self, value: str) -> str:
        """Encrypt a plaintext credential."""
        return self._fernet.encrypt(value.encode()).decode()

    def decrypt(self, value: str) -> str:
        """
        Decrypt a stored credential.

        Raises:
            TokenDecryptionError: If the value was not produced with this key.
        """
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except InvalidToken as e:
            raise TokenDecryptionError(
                "Stored token cannot be decrypted. Was the token key rotated?"
            ) from e

    @staticmethod
    def generate_key() -> str:
        """Generate a new random Fernet key."""
        return Fernet.generate_key().decode()


def load_or_create_token_key(data_dir: Path, configured_key: str = "") -> str:
    """
    Resolve the token encryption key.

    A key supplied through configuration wins. Otherwise the key file in the
    data directory is read, and created on first use.

    Args:
        data_dir: Directory holding the key file.
        configured_key: Key from settings or RECIPEVAULT_TOKEN_KEY.

    Returns:
        The Fernet key as a string.
    """
    if configured_key:
        return configured_key

    key_path = data_dir / TOKEN_KEY_FILENAME
    if key_path.exists():
        return key_path.read_text().strip()

    data_dir.mkdir(parents=True, exist_ok=True)
    key = TokenCipher.generate_key()
    _write_secure_file(key_path, key.encode())
    return key


def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    """
    Hash a password for storage.

    Returns:
        String of the form ``pbkdf2_sha256$<iterations>$<salt>$<hash>``.
    """
    salt = secrets.token_bytes(SALT_LENGTH)
    derived = _kdf(salt, iterations).derive(password.encode())
    return "$".join(
        [
            HASH_ALGORITHM,
            str(iterations),
            base64.b64encode(salt).decode(),
            base64.b64encode(derived).decode(),
        ]
    )


def verify_password(password: str, encoded: str) -> bool:
    """
    Check a password against a stored hash.

    Args:
        password: Candidate password.
        encoded: Value produced by hash_password().

    Returns:
        True if the password matches.
    """
    try:
        algorithm, iterations, salt_b64, hash_b64 = encoded.split("$")
        if algorithm != HASH_ALGORITHM:
            return False
        salt = base64.b64decode(salt_b64)
        expected = base64.b64decode(hash_b64)
        _kdf(salt, int(iterations)).verify(password.encode(), expected)
    except (ValueError, binascii.Error, InvalidKey):
        return False
    return True


def _kdf(salt: bytes, iterations: int) -> PBKDF2HMAC:
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )


def _write_secure_file(path: Path, data: bytes) -> None:
    """
    Write data to file with restrictive permissions.

    Uses atomic write (write to temp, then rename) to prevent
    partial writes from corrupting the file.
    """
    temp_path = path.with_suffix(".tmp")

    try:
        temp_path.write_bytes(data)

        try:
            os.chmod(temp_path, 0o600)
        except OSError:
            # Windows or permission error - continue anyway
            pass

        temp_path.rename(path)

    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise
