"""
Dropbox storage provider.

Talks to the Dropbox HTTP API v2 with requests. Backups live in the app
folder (default "/Apps/Recipe Book"); access tokens are short-lived and
refreshed through the offline refresh token granted at connect time.

API Endpoints Used:
    - POST /2/files/upload - Store an archive
    - POST /2/files/list_folder - List stored archives
    - POST /2/files/download - Fetch an archive
    - POST /2/files/delete_v2 - Remove an archive
    - POST /2/users/get_current_account - Connected account details
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from recipevault.interchange.errors import ProviderError
from recipevault.providers.base import (
    RemoteBackup,
    UploadedBackup,
    backup_type_from_filename,
    is_backup_filename,
    remote_filename,
)
from recipevault.providers.oauth import OAuthProvider
from recipevault.storage.models import (
    ProviderConnection,
    ProviderKind,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

API_URL = "https://api.dropboxapi.com/2"
CONTENT_URL = "https://content.dropboxapi.com/2"

# Dropbox caps list_folder pages at 2000 entries
MAX_LIST_LIMIT = 2000


class DropboxProvider(OAuthProvider):
    """
    Stores backups in a Dropbox app folder.

    Example:
        provider = DropboxProvider(
            client_id="...", client_secret="...",
            redirect_uri="https://example.com/cloud/callback/dropbox",
            cipher=cipher, on_tokens_refreshed=persist_tokens,
        )
        backups = provider.list_backups(connection)
    """

    kind = ProviderKind.DROPBOX
    authorize_url = "https://www.dropbox.com/oauth2/authorize"
    token_url = "https://api.dropboxapi.com/oauth2/token"

    def __init__(self, *args: Any, folder: str = "/Apps/Recipe Book", **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.folder = "/" + folder.strip("/")

    def authorization_params(self) -> dict[str, str]:
        # Offline access yields a refresh token
        return {"token_access_type": "offline"}

    def _fetch_account_info(self, access_token: str) -> tuple[str, str]:
        try:
            response = self._with_retry(
                self._request,
                "POST",
                f"{API_URL}/users/get_current_account",
                access_token=access_token,
            )
            info = response.json()
            return info.get("email", ""), (info.get("name") or {}).get("display_name", "")
        except (ProviderError, ValueError) as e:
            logger.warning(f"Could not read Dropbox account details: {e}")
            return "", ""

    def upload_backup(
        self, connection: ProviderConnection, local_path: Path, backup_type: str
    ) -> UploadedBackup:
        access_token = self._access_token(connection)
        filename = remote_filename(backup_type, self._clock())
        dropbox_path = f"{self.folder}/{filename}"

        try:
            content = Path(local_path).read_bytes()
        except OSError as e:
            raise self._error(f"Cannot read backup file: {e}") from e

        logger.info(f"Uploading backup to Dropbox: {filename} ({len(content):,} bytes)")
        try:
            response = self._with_retry(
                self._request,
                "POST",
                f"{CONTENT_URL}/files/upload",
                access_token=access_token,
                headers={
                    "Content-Type": "application/octet-stream",
                    "Dropbox-API-Arg": json.dumps(
                        {"path": dropbox_path, "mode": "add", "autorename": True}
                    ),
                },
                data=content,
            )
            result = response.json()
        except ValueError as e:
            raise self._error(f"Backup upload failed: {e}") from e

        logger.info(f"Backup uploaded to Dropbox: {result.get('name')}")
        return UploadedBackup(
            id=result["id"],
            name=result["name"],
            size=int(result.get("size", len(content))),
            path=result.get("path_display", dropbox_path),
        )

    def list_backups(self, connection: ProviderConnection, limit: int = 10) -> list[RemoteBackup]:
        access_token = self._access_token(connection)
        try:
            response = self._with_retry(
                self._request,
                "POST",
                f"{API_URL}/files/list_folder",
                access_token=access_token,
                json={"path": self.folder, "limit": min(max(limit, 1), MAX_LIST_LIMIT)},
            )
            entries = response.json().get("entries", [])
        except ProviderError as e:
            # 409 path/not_found: nothing uploaded yet
            if e.details.get("status") == 409:
                logger.info("Dropbox backup folder does not exist yet")
                return []
            raise
        except ValueError as e:
            raise self._error(f"Failed to list backups: {e}") from e

        backups = [
            RemoteBackup(
                id=entry["id"],
                filename=entry["name"],
                size=int(entry.get("size", 0)),
                timestamp=_entry_time(entry),
                type=backup_type_from_filename(entry["name"]),
            )
            for entry in entries
            if entry.get(".tag") == "file" and is_backup_filename(entry.get("name", ""))
        ]
        backups.sort(key=lambda b: b.timestamp, reverse=True)
        return backups[:limit]

    def download_backup(self, connection: ProviderConnection, backup_id: str) -> Path:
        access_token = self._access_token(connection)
        logger.info(f"Downloading backup from Dropbox: {backup_id}")
        response = self._with_retry(
            self._request,
            "POST",
            f"{CONTENT_URL}/files/download",
            access_token=access_token,
            headers={"Dropbox-API-Arg": json.dumps({"path": backup_id})},
            stream=True,
        )
        return self._save_download(response)

    def delete_backup(self, connection: ProviderConnection, backup_id: str) -> None:
        access_token = self._access_token(connection)
        logger.info(f"Deleting backup from Dropbox: {backup_id}")
        self._with_retry(
            self._request,
            "POST",
            f"{API_URL}/files/delete_v2",
            access_token=access_token,
            json={"path": backup_id},
        )


def _entry_time(entry: dict[str, Any]) -> datetime:
    value = entry.get("client_modified") or entry.get("server_modified")
    return parse_timestamp(value) or utc_now()
