"""
Cloud storage providers for RecipeVault backups.

Each adapter implements the CloudProvider interface; ProviderRegistry maps
a ProviderKind to the configured adapter.

Available providers:
    - local: Directory tree on local or mounted storage
    - dropbox: Dropbox app folder (OAuth 2, offline refresh tokens)
    - google_drive: Google Drive folder (OAuth 2, drive.file scope)
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from recipevault.config.credentials import TokenCipher
from recipevault.config.settings import Settings
from recipevault.providers.base import (
    CloudProvider,
    ProviderRegistry,
    RemoteBackup,
    TokenGrant,
    TokenRefreshCallback,
    TransientProviderError,
    UploadedBackup,
)
from recipevault.providers.dropbox import DropboxProvider
from recipevault.providers.google_drive import GoogleDriveProvider
from recipevault.providers.local import LocalFolderProvider
from recipevault.storage.models import ProviderKind, utc_now

__all__ = [
    "CloudProvider",
    "ProviderKind",
    "ProviderRegistry",
    "RemoteBackup",
    "TokenGrant",
    "TokenRefreshCallback",
    "TransientProviderError",
    "UploadedBackup",
    "LocalFolderProvider",
    "DropboxProvider",
    "GoogleDriveProvider",
    "build_registry",
]


def build_registry(
    settings: Settings,
    cipher: TokenCipher,
    on_tokens_refreshed: TokenRefreshCallback | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> ProviderRegistry:
    """
    Create a registry holding every provider enabled in the settings.

    Args:
        settings: Loaded settings.
        cipher: Cipher for stored provider tokens.
        on_tokens_refreshed: Persists refreshed tokens.
        clock: Source of the current time.

    Returns:
        ProviderRegistry with the enabled adapters.
    """
    providers = settings.providers
    download_dir = str(Path(settings.work_dir).expanduser() / "downloads")
    registry = ProviderRegistry()

    if providers.local.enabled:
        registry.register(
            LocalFolderProvider(providers.local.root, download_dir=download_dir, clock=clock)
        )
    if providers.dropbox.enabled:
        registry.register(
            DropboxProvider(
                providers.dropbox.client_id,
                providers.dropbox.client_secret,
                providers.dropbox.redirect_uri,
                cipher,
                on_tokens_refreshed=on_tokens_refreshed,
                timeout=providers.request_timeout,
                download_dir=download_dir,
                clock=clock,
                folder=providers.dropbox.folder,
            )
        )
    if providers.google_drive.enabled:
        registry.register(
            GoogleDriveProvider(
                providers.google_drive.client_id,
                providers.google_drive.client_secret,
                providers.google_drive.redirect_uri,
                cipher,
                on_tokens_refreshed=on_tokens_refreshed,
                timeout=providers.request_timeout,
                download_dir=download_dir,
                clock=clock,
                folder_name=providers.google_drive.folder_name,
            )
        )
    return registry
