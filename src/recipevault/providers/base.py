"""
Cloud provider capability interface.

This module defines the abstract CloudProvider every storage adapter
implements, the records adapters exchange with the rest of RecipeVault, and
the ProviderRegistry that resolves a ProviderKind to its adapter. Nothing
outside the adapters compares provider names; callers look the adapter up
by kind and use the interface.

Design Principles:
    - Adapters hold no per-account state; the ProviderConnection is passed in
    - Tokens stay encrypted except inside the adapter call that needs them
    - Every adapter failure surfaces as ProviderError
    - Transient HTTP failures are retried with exponential backoff
"""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from recipevault.interchange.errors import ProviderError
from recipevault.storage.models import ProviderConnection, ProviderKind

logger = logging.getLogger(__name__)

BACKUP_FILENAME_PREFIX = "recipe-book-"

# Filename infix for each backup type
_TYPE_PREFIXES = {"manual": "manual", "automatic": "auto"}

# Called with the connection after its tokens were refreshed and re-encrypted
TokenRefreshCallback = Callable[[ProviderConnection], None]


# -----------------------------------------------------------------------------
# Error Classes
# -----------------------------------------------------------------------------


class TransientProviderError(ProviderError):
    """
    Raised for provider failures worth retrying (timeouts, 429, 5xx).

    Attributes:
        retry_after: Seconds to wait before retrying (if the API said so).
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider=provider)
        self.retry_after = retry_after


# -----------------------------------------------------------------------------
# Data Classes
# -----------------------------------------------------------------------------


@dataclass
class UploadedBackup:
    """A bundle archive stored at a provider."""

    id: str
    name: str
    size: int
    path: str

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "size": self.size, "path": self.path}


@dataclass
class RemoteBackup:
    """
    One entry of a provider's backup listing.

    Attributes:
        id: Provider identifier used for download and delete.
        filename: Stored file name.
        size: Size in bytes.
        timestamp: When the backup was stored.
        type: "manual" or "automatic", derived from the filename.
    """

    id: str
    filename: str
    size: int
    timestamp: datetime
    type: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "size": self.size,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type,
        }


@dataclass
class TokenGrant:
    """
    Tokens returned by an OAuth code exchange, in plaintext.

    The service encrypts them before they are stored.
    """

    access_token: str
    refresh_token: str = ""
    expires_in: int | None = None
    account_email: str = ""
    account_name: str = ""


def remote_filename(backup_type: str, now: datetime) -> str:
    """Name under which a backup is stored at a provider."""
    prefix = _TYPE_PREFIXES.get(backup_type, "manual")
    return f"{BACKUP_FILENAME_PREFIX}{prefix}-backup-{now.strftime('%Y-%m-%dT%H-%M-%S')}.zip"


def backup_type_from_filename(filename: str) -> str:
    """Recover the backup type from a stored filename."""
    return "automatic" if re.search(r"-(auto|automatic)-", filename) else "manual"


def is_backup_filename(filename: str) -> bool:
    """Check whether a stored file looks like a RecipeVault backup."""
    return filename.startswith(BACKUP_FILENAME_PREFIX) and filename.endswith(".zip")


# -----------------------------------------------------------------------------
# Base Provider
# -----------------------------------------------------------------------------


class CloudProvider(ABC):
    """
    Abstract base class for cloud storage adapters.

    Retry Logic:
        Wrap remote calls in _with_retry() to retry TransientProviderError
        with exponential backoff. Other ProviderErrors are raised at once.

    Example:
        provider = registry.get(ProviderKind.DROPBOX)
        uploaded = provider.upload_backup(connection, backup.path, "manual")
        backups = provider.list_backups(connection, limit=10)
    """

    kind: ProviderKind

    default_max_retries: int = 3
    default_retry_base_delay: float = 1.0
    default_retry_max_delay: float = 30.0

    def __init__(self) -> None:
        self._max_retries = self.default_max_retries
        self._retry_base_delay = self.default_retry_base_delay
        self._retry_max_delay = self.default_retry_max_delay

    @abstractmethod
    def upload_backup(
        self, connection: ProviderConnection, local_path: Path, backup_type: str
    ) -> UploadedBackup:
        """
        Store a local bundle archive at the provider.

        Raises:
            ProviderError: If the upload fails.
        """

    @abstractmethod
    def list_backups(self, connection: ProviderConnection, limit: int = 10) -> list[RemoteBackup]:
        """
        List stored backups, newest first.

        Raises:
            ProviderError: If the listing fails.
        """

    @abstractmethod
    def download_backup(self, connection: ProviderConnection, backup_id: str) -> Path:
        """
        Download a stored backup into a local temporary file.

        The caller owns the returned file and must delete it.

        Raises:
            ProviderError: If the download fails.
        """

    @abstractmethod
    def delete_backup(self, connection: ProviderConnection, backup_id: str) -> None:
        """
        Delete a stored backup.

        Raises:
            ProviderError: If the deletion fails.
        """

    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """Build the URL that starts the provider's consent flow."""

    @abstractmethod
    def exchange_code(self, code: str) -> TokenGrant:
        """
        Exchange an authorization code for tokens.

        Raises:
            ProviderError: If the exchange fails.
        """

    def _error(self, message: str, code: str | None = None) -> ProviderError:
        return ProviderError(message, provider=self.kind.value, code=code)

    def _with_retry(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Execute a function with retry logic and exponential backoff.

        Only TransientProviderError is retried.

        Returns:
            The return value of the function.

        Raises:
            The last exception if all retries are exhausted.
        """
        last_exception: TransientProviderError | None = None

        for attempt in range(self._max_retries + 1):
            try:
                return func(*args, **kwargs)
            except TransientProviderError as e:
                last_exception = e
                delay = e.retry_after or min(
                    self._retry_base_delay * (2**attempt),
                    self._retry_max_delay,
                )
                if attempt < self._max_retries:
                    logger.warning(
                        f"{self.kind.value}: transient failure, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self._max_retries}): {e.message}"
                    )
                    time.sleep(delay)

        if last_exception:
            raise last_exception
        raise self._error("Unknown error during retry")


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------


class ProviderRegistry:
    """
    Maps provider kinds to configured adapter instances.

    Example:
        registry = ProviderRegistry()
        registry.register(LocalFolderProvider(root))
        provider = registry.get(ProviderKind.LOCAL)
    """

    def __init__(self, providers: list[CloudProvider] | None = None) -> None:
        self._providers: dict[ProviderKind, CloudProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: CloudProvider) -> CloudProvider:
        """Register an adapter under its kind, replacing any previous one."""
        self._providers[provider.kind] = provider
        logger.debug(f"Registered provider: {provider.kind.value} -> {type(provider).__name__}")
        return provider

    def get(self, kind: ProviderKind | str) -> CloudProvider:
        """
        Resolve a provider kind to its adapter.

        Raises:
            ProviderError: If the kind is unknown or not configured.
        """
        try:
            kind = ProviderKind.from_string(kind) if isinstance(kind, str) else kind
        except ValueError as e:
            raise ProviderError(str(e), code="UNSUPPORTED_PROVIDER") from e

        provider = self._providers.get(kind)
        if provider is None:
            raise ProviderError(
                f"Provider not configured: {kind.value}. "
                f"Available: {', '.join(k.value for k in self.kinds()) or 'none'}",
                code="UNSUPPORTED_PROVIDER",
            )
        return provider

    def kinds(self) -> list[ProviderKind]:
        """Configured provider kinds, in registration order."""
        return list(self._providers)

    def __contains__(self, kind: object) -> bool:
        return kind in self._providers
