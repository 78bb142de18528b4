"""
Google Drive storage provider.

Talks to the Drive API v3 with requests, using the drive.file scope so the
application only sees files it created. Backups live in a dedicated folder
(default "Recipe Book Backups") that is created on first upload.

API Endpoints Used:
    - GET /drive/v3/files - Find the backup folder, list archives
    - POST /drive/v3/files - Create the backup folder
    - POST /upload/drive/v3/files?uploadType=multipart - Store an archive
    - GET /drive/v3/files/{id}?alt=media - Fetch an archive
    - DELETE /drive/v3/files/{id} - Remove an archive
    - GET /drive/v3/about?fields=user - Connected account details
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import timedelta
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

DRIVE_URL = "https://www.googleapis.com/drive/v3"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3/files"
DRIVE_SCOPE = "https://www.googleapis.com/auth/drive.file"
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
ZIP_MIME_TYPE = "application/zip"


class GoogleDriveProvider(OAuthProvider):
    """
    Stores backups in a Google Drive folder.

    Example:
        provider = GoogleDriveProvider(
            client_id="...", client_secret="...",
            redirect_uri="https://example.com/cloud/callback/google_drive",
            cipher=cipher,
        )
        uploaded = provider.upload_backup(connection, backup.path, "automatic")
    """

    kind = ProviderKind.GOOGLE_DRIVE
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"
    expiry_buffer = timedelta(minutes=5)

    def __init__(
        self, *args: Any, folder_name: str = "Recipe Book Backups", **kwargs: Any
    ) -> None:
        super().__init__(*args, **kwargs)
        self.folder_name = folder_name

    def authorization_params(self) -> dict[str, str]:
        # Consent prompt forces Google to issue a refresh token every time
        return {"scope": DRIVE_SCOPE, "access_type": "offline", "prompt": "consent"}

    def _fetch_account_info(self, access_token: str) -> tuple[str, str]:
        try:
            response = self._with_retry(
                self._request,
                "GET",
                f"{DRIVE_URL}/about",
                access_token=access_token,
                params={"fields": "user"},
            )
            user = response.json().get("user") or {}
            return user.get("emailAddress", ""), user.get("displayName", "")
        except (ProviderError, ValueError) as e:
            logger.warning(f"Could not read Google Drive account details: {e}")
            return "", ""

    def _folder_query(self) -> str:
        name = self.folder_name.replace("'", "\\'")
        return f"name='{name}' and mimeType='{FOLDER_MIME_TYPE}' and trashed=false"

    def _find_folder(self, access_token: str) -> str | None:
        response = self._with_retry(
            self._request,
            "GET",
            f"{DRIVE_URL}/files",
            access_token=access_token,
            params={"q": self._folder_query(), "fields": "files(id, name)", "spaces": "drive"},
        )
        files = response.json().get("files", [])
        return files[0]["id"] if files else None

    def _ensure_folder(self, access_token: str) -> str:
        folder_id = self._find_folder(access_token)
        if folder_id:
            return folder_id

        logger.info(f"Creating Google Drive folder: {self.folder_name}")
        response = self._with_retry(
            self._request,
            "POST",
            f"{DRIVE_URL}/files",
            access_token=access_token,
            params={"fields": "id"},
            json={"name": self.folder_name, "mimeType": FOLDER_MIME_TYPE},
        )
        return response.json()["id"]

    def upload_backup(
        self, connection: ProviderConnection, local_path: Path, backup_type: str
    ) -> UploadedBackup:
        access_token = self._access_token(connection)
        filename = remote_filename(backup_type, self._clock())

        try:
            content = Path(local_path).read_bytes()
        except OSError as e:
            raise self._error(f"Cannot read backup file: {e}") from e

        try:
            folder_id = self._ensure_folder(access_token)
            metadata = {"name": filename, "parents": [folder_id], "mimeType": ZIP_MIME_TYPE}
            boundary = f"recipevault-{uuid.uuid4().hex}"
            body = _multipart_related(boundary, metadata, content)

            logger.info(f"Uploading backup to Google Drive: {filename} ({len(content):,} bytes)")
            response = self._with_retry(
                self._request,
                "POST",
                UPLOAD_URL,
                access_token=access_token,
                params={"uploadType": "multipart", "fields": "id, name, size, createdTime"},
                headers={"Content-Type": f"multipart/related; boundary={boundary}"},
                data=body,
            )
            result = response.json()
        except (KeyError, ValueError) as e:
            raise self._error(f"Backup upload failed: {e}") from e

        logger.info(f"Backup uploaded to Google Drive: {result.get('name')}")
        return UploadedBackup(
            id=result["id"],
            name=result.get("name", filename),
            size=int(result.get("size") or len(content)),
            path=f"{self.folder_name}/{result.get('name', filename)}",
        )

    def list_backups(self, connection: ProviderConnection, limit: int = 10) -> list[RemoteBackup]:
        access_token = self._access_token(connection)
        try:
            folder_id = self._find_folder(access_token)
            if folder_id is None:
                logger.info("Google Drive backup folder does not exist yet")
                return []

            response = self._with_retry(
                self._request,
                "GET",
                f"{DRIVE_URL}/files",
                access_token=access_token,
                params={
                    "q": (
                        f"'{folder_id}' in parents and trashed=false "
                        f"and mimeType='{ZIP_MIME_TYPE}'"
                    ),
                    "orderBy": "createdTime desc",
                    "pageSize": max(limit, 1),
                    "fields": "files(id, name, size, createdTime)",
                },
            )
            files = response.json().get("files", [])
        except (KeyError, ValueError) as e:
            raise self._error(f"Failed to list backups: {e}") from e

        backups = [
            RemoteBackup(
                id=f["id"],
                filename=f["name"],
                size=int(f.get("size") or 0),
                timestamp=parse_timestamp(f.get("createdTime")) or utc_now(),
                type=backup_type_from_filename(f["name"]),
            )
            for f in files
            if is_backup_filename(f.get("name", ""))
        ]
        backups.sort(key=lambda b: b.timestamp, reverse=True)
        return backups[:limit]

    def download_backup(self, connection: ProviderConnection, backup_id: str) -> Path:
        access_token = self._access_token(connection)
        logger.info(f"Downloading backup from Google Drive: {backup_id}")
        response = self._with_retry(
            self._request,
            "GET",
            f"{DRIVE_URL}/files/{backup_id}",
            access_token=access_token,
            params={"alt": "media"},
            stream=True,
        )
        return self._save_download(response)

    def delete_backup(self, connection: ProviderConnection, backup_id: str) -> None:
        access_token = self._access_token(connection)
        logger.info(f"Deleting backup from Google Drive: {backup_id}")
        self._with_retry(
            self._request,
            "DELETE",
            f"{DRIVE_URL}/files/{backup_id}",
            access_token=access_token,
        )


def _multipart_related(boundary: str, metadata: dict[str, Any], content: bytes) -> bytes:
    """Build a multipart/related body: JSON metadata part, then the file."""
    return b"".join(
        [
            f"--{boundary}\r\n".encode(),
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            json.dumps(metadata).encode(),
            f"\r\n--{boundary}\r\n".encode(),
            f"Content-Type: {ZIP_MIME_TYPE}\r\n\r\n".encode(),
            content,
            f"\r\n--{boundary}--\r\n".encode(),
        ]
    )
