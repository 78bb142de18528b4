"""
Configuration management for RecipeVault.

This module handles loading, validating, and saving configuration settings,
as well as token encryption at rest and account password hashing.
"""

from recipevault.config.credentials import (
    CredentialError,
    TokenCipher,
    TokenDecryptionError,
    hash_password,
    load_or_create_token_key,
    verify_password,
)
from recipevault.config.settings import (
    ConfigurationError,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    # Settings
    "Settings",
    "load_config",
    "save_config",
    "ConfigurationError",
    # Credentials
    "TokenCipher",
    "CredentialError",
    "TokenDecryptionError",
    "hash_password",
    "verify_password",
    "load_or_create_token_key",
]
