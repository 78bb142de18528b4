"""Tests for configuration modules (credentials and settings)."""

import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from cryptography.fernet import Fernet

from recipevault.config.credentials import (
    TOKEN_KEY_FILENAME,
    CredentialError,
    TokenCipher,
    TokenDecryptionError,
    hash_password,
    load_or_create_token_key,
    verify_password,
)
from recipevault.config.settings import (
    DEFAULT_MAX_FILE_SIZE,
    ConfigurationError,
    Settings,
    _apply_environment_overrides,
    _set_nested_attr,
    _settings_to_dict,
    _validate_config,
    get_config_path,
    load_config,
    save_config,
)

# Low iteration count keeps the hashing tests fast
FAST_ITERATIONS = 1_000


class TestTokenCipher(unittest.TestCase):
    """Tests for TokenCipher."""

    def test_encrypt_decrypt(self) -> None:
        """Test that encrypted tokens decrypt to the original value."""
        cipher = TokenCipher(Fernet.generate_key())
        stored = cipher.encrypt("sl.access-token")

        self.assertNotEqual(stored, "sl.access-token")
        self.assertEqual(cipher.decrypt(stored), "sl.access-token")

    def test_accepts_string_key(self) -> None:
        """Test that a str key is accepted."""
        cipher = TokenCipher(TokenCipher.generate_key())
        self.assertEqual(cipher.decrypt(cipher.encrypt("x")), "x")

    def test_invalid_key(self) -> None:
        """Test that a malformed key is rejected."""
        with self.assertRaises(CredentialError):
            TokenCipher("not-a-key")

    def test_decrypt_with_other_key(self) -> None:
        """Test that a value from another key fails to decrypt."""
        stored = TokenCipher(Fernet.generate_key()).encrypt("secret")
        other = TokenCipher(Fernet.generate_key())

        with self.assertRaises(TokenDecryptionError):
            other.decrypt(stored)


class TestTokenKey(unittest.TestCase):
    """Tests for load_or_create_token_key."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.data_dir = Path(self.temp_dir) / "data"

    def tearDown(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_configured_key_wins(self) -> None:
        """Test that a configured key is returned without touching disk."""
        key = TokenCipher.generate_key()
        self.assertEqual(load_or_create_token_key(self.data_dir, key), key)
        self.assertFalse((self.data_dir / TOKEN_KEY_FILENAME).exists())

    def test_creates_and_reuses_key_file(self) -> None:
        """Test that the key file is created once and then reused."""
        first = load_or_create_token_key(self.data_dir)
        second = load_or_create_token_key(self.data_dir)

        self.assertEqual(first, second)
        key_path = self.data_dir / TOKEN_KEY_FILENAME
        self.assertTrue(key_path.exists())
        if os.name != "nt":
            self.assertEqual(key_path.stat().st_mode & 0o777, 0o600)
        # The stored key must be usable
        TokenCipher(first)


class TestPasswordHashing(unittest.TestCase):
    """Tests for password hashing."""

    def test_hash_and_verify(self) -> None:
        """Test that the right password verifies."""
        encoded = hash_password("correct horse", iterations=FAST_ITERATIONS)

        self.assertTrue(encoded.startswith("pbkdf2_sha256$1000$"))
        self.assertTrue(verify_password("correct horse", encoded))

    def test_wrong_password(self) -> None:
        """Test that a wrong password does not verify."""
        encoded = hash_password("correct horse", iterations=FAST_ITERATIONS)
        self.assertFalse(verify_password("battery staple", encoded))

    def test_salted(self) -> None:
        """Test that hashing the same password twice differs."""
        first = hash_password("pw", iterations=FAST_ITERATIONS)
        second = hash_password("pw", iterations=FAST_ITERATIONS)
        self.assertNotEqual(first, second)

    def test_malformed_hash(self) -> None:
        """Test that malformed hashes never verify."""
        self.assertFalse(verify_password("pw", ""))
        self.assertFalse(verify_password("pw", "md5$1$abc$def"))
        self.assertFalse(verify_password("pw", "pbkdf2_sha256$x$y$z"))


class TestSettings(unittest.TestCase):
    """Tests for Settings defaults."""

    def test_defaults(self) -> None:
        """Test default values."""
        settings = Settings()

        self.assertEqual(settings.log_level, "INFO")
        self.assertEqual(settings.imports.max_file_size, DEFAULT_MAX_FILE_SIZE)
        self.assertFalse(settings.imports.reject_malicious_content)
        self.assertEqual(settings.scheduler.tick_interval_seconds, 3600)
        self.assertEqual(settings.scheduler.batch_size, 5)
        self.assertEqual(settings.scheduler.max_failures, 3)
        self.assertTrue(settings.providers.local.enabled)
        self.assertFalse(settings.providers.dropbox.enabled)
        self.assertEqual(settings.providers.google_drive.folder_name, "Recipe Book Backups")


class TestLoadConfig(unittest.TestCase):
    """Tests for loading and saving configuration."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.mkdtemp()
        self.config_path = Path(self.temp_dir) / "config.yaml"
        self.env_patcher = patch.dict(os.environ, {}, clear=False)
        self.env_patcher.start()
        for key in list(os.environ):
            if key.startswith("RECIPEVAULT_"):
                del os.environ[key]

    def tearDown(self) -> None:
        self.env_patcher.stop()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_file_gives_defaults(self) -> None:
        """Test that a missing file yields default settings."""
        settings = load_config(self.config_path)
        self.assertEqual(settings.scheduler.batch_size, 5)

    def test_save_and_load(self) -> None:
        """Test saving then loading configuration."""
        settings = Settings()
        settings.log_level = "DEBUG"
        settings.imports.reject_malicious_content = True
        settings.scheduler.batch_size = 2
        settings.providers.dropbox.enabled = True
        settings.providers.dropbox.client_id = "app-key"
        settings.providers.google_drive.folder_name = "Backups"

        save_config(settings, self.config_path)
        loaded = load_config(self.config_path)

        self.assertEqual(loaded.log_level, "DEBUG")
        self.assertTrue(loaded.imports.reject_malicious_content)
        self.assertEqual(loaded.scheduler.batch_size, 2)
        self.assertTrue(loaded.providers.dropbox.enabled)
        self.assertEqual(loaded.providers.dropbox.client_id, "app-key")
        self.assertEqual(loaded.providers.google_drive.folder_name, "Backups")

    def test_token_key_never_saved(self) -> None:
        """Test that the token key is not written to the config file."""
        settings = Settings()
        settings.security.token_key = "secret-key"
        save_config(settings, self.config_path)

        self.assertNotIn("secret-key", self.config_path.read_text())
        self.assertNotIn("token_key", _settings_to_dict(settings)["security"])

    def test_invalid_yaml(self) -> None:
        """Test that invalid YAML raises ConfigurationError."""
        self.config_path.write_text("recipevault: [unclosed")
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_non_mapping(self) -> None:
        """Test that a top-level list is rejected."""
        self.config_path.write_text("- a\n- b\n")
        with self.assertRaises(ConfigurationError):
            load_config(self.config_path)

    def test_config_path_from_environment(self) -> None:
        """Test RECIPEVAULT_CONFIG overrides the default path."""
        os.environ["RECIPEVAULT_CONFIG"] = str(self.config_path)
        self.assertEqual(get_config_path(), self.config_path)

    def test_environment_overrides(self) -> None:
        """Test environment variable overrides."""
        os.environ["RECIPEVAULT_LOG_LEVEL"] = "warning"
        os.environ["RECIPEVAULT_MAX_FILE_SIZE"] = "1024"
        os.environ["RECIPEVAULT_REJECT_MALICIOUS"] = "yes"
        os.environ["RECIPEVAULT_TOKEN_KEY"] = "k"

        settings = _apply_environment_overrides(Settings())

        self.assertEqual(settings.log_level, "WARNING")
        self.assertEqual(settings.imports.max_file_size, 1024)
        self.assertTrue(settings.imports.reject_malicious_content)
        self.assertEqual(settings.security.token_key, "k")

    def test_invalid_environment_value(self) -> None:
        """Test that a non-numeric size override is rejected."""
        os.environ["RECIPEVAULT_MAX_FILE_SIZE"] = "big"
        with self.assertRaises(ConfigurationError):
            _apply_environment_overrides(Settings())

    def test_set_nested_attr(self) -> None:
        """Test dotted attribute assignment."""
        settings = Settings()
        _set_nested_attr(settings, "providers.local.root", "/srv/backups")
        self.assertEqual(settings.providers.local.root, "/srv/backups")


class TestValidateConfig(unittest.TestCase):
    """Tests for configuration validation."""

    def test_valid_defaults(self) -> None:
        """Test that defaults validate."""
        _validate_config(Settings())

    def test_invalid_log_level(self) -> None:
        settings = Settings()
        settings.log_level = "LOUD"
        with self.assertRaises(ConfigurationError):
            _validate_config(settings)

    def test_invalid_batch_size(self) -> None:
        settings = Settings()
        settings.scheduler.batch_size = 0
        with self.assertRaises(ConfigurationError):
            _validate_config(settings)

    def test_invalid_max_failures(self) -> None:
        settings = Settings()
        settings.scheduler.max_failures = 0
        with self.assertRaises(ConfigurationError):
            _validate_config(settings)

    def test_invalid_max_file_size(self) -> None:
        settings = Settings()
        settings.imports.max_file_size = 0
        with self.assertRaises(ConfigurationError):
            _validate_config(settings)


if __name__ == "__main__":
    unittest.main()
