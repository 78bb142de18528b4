"""
Local folder storage provider.

Stores bundle archives under a directory on local or mounted storage, one
subdirectory per account. Useful for self-hosted installs and as the
provider exercised by tests. There is no consent flow; the authorization
step completes immediately.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path

from recipevault.providers.base import (
    CloudProvider,
    RemoteBackup,
    TokenGrant,
    UploadedBackup,
    backup_type_from_filename,
    is_backup_filename,
    remote_filename,
)
from recipevault.storage.models import ProviderConnection, ProviderKind, utc_now

logger = logging.getLogger(__name__)


class LocalFolderProvider(CloudProvider):
    """
    Keeps backups in a local directory tree.

    Layout:
        <root>/<account_id>/recipe-book-manual-backup-2026-01-01T02-00-00.zip

    Example:
        provider = LocalFolderProvider(Path("~/.recipevault/cloud").expanduser())
        uploaded = provider.upload_backup(connection, backup.path, "manual")
    """

    kind = ProviderKind.LOCAL

    def __init__(
        self,
        root: Path | str,
        download_dir: Path | str | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__()
        self.root = Path(root).expanduser()
        self.download_dir = Path(download_dir) if download_dir else None
        self._clock = clock

    def _account_dir(self, connection: ProviderConnection) -> Path:
        if not connection.account_id:
            raise self._error("Connection has no owning account")
        return self.root / connection.account_id

    def _resolve(self, connection: ProviderConnection, backup_id: str) -> Path:
        # Identifiers are bare filenames; anything else could escape the account dir
        if not backup_id or Path(backup_id).name != backup_id:
            raise self._error(f"Invalid backup id: {backup_id}", code="BACKUP_NOT_FOUND")
        path = self._account_dir(connection) / backup_id
        if not path.is_file():
            raise self._error(f"Backup not found: {backup_id}", code="BACKUP_NOT_FOUND")
        return path

    def upload_backup(
        self, connection: ProviderConnection, local_path: Path, backup_type: str
    ) -> UploadedBackup:
        account_dir = self._account_dir(connection)
        filename = remote_filename(backup_type, self._clock())
        target = account_dir / filename

        # Same-second uploads get a numbered name instead of overwriting
        counter = 1
        while target.exists():
            target = account_dir / f"{Path(filename).stem} ({counter}).zip"
            counter += 1

        try:
            account_dir.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(local_path, target)
        except OSError as e:
            raise self._error(f"Backup upload failed: {e}") from e

        size = target.stat().st_size
        logger.info(f"Backup stored in local folder: {target} ({size:,} bytes)")
        return UploadedBackup(id=target.name, name=target.name, size=size, path=str(target))

    def list_backups(self, connection: ProviderConnection, limit: int = 10) -> list[RemoteBackup]:
        account_dir = self._account_dir(connection)
        if not account_dir.is_dir():
            return []

        backups = []
        try:
            for path in account_dir.iterdir():
                if not path.is_file() or not is_backup_filename(path.name):
                    continue
                stat = path.stat()
                backups.append(
                    RemoteBackup(
                        id=path.name,
                        filename=path.name,
                        size=stat.st_size,
                        timestamp=datetime.fromtimestamp(stat.st_mtime, tz=UTC),
                        type=backup_type_from_filename(path.name),
                    )
                )
        except OSError as e:
            raise self._error(f"Failed to list backups: {e}") from e

        backups.sort(key=lambda b: (b.timestamp, b.filename), reverse=True)
        return backups[:limit]

    def download_backup(self, connection: ProviderConnection, backup_id: str) -> Path:
        source = self._resolve(connection, backup_id)
        if self.download_dir:
            self.download_dir.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(
            prefix="download-",
            suffix=".zip",
            dir=str(self.download_dir) if self.download_dir else None,
        )
        target = Path(name)
        try:
            with open(fd, "wb") as out, open(source, "rb") as src:
                shutil.copyfileobj(src, out)
        except OSError as e:
            target.unlink(missing_ok=True)
            raise self._error(f"Backup download failed: {e}") from e

        logger.info(f"Backup copied from local folder: {backup_id}")
        return target

    def delete_backup(self, connection: ProviderConnection, backup_id: str) -> None:
        path = self._resolve(connection, backup_id)
        try:
            path.unlink()
        except OSError as e:
            raise self._error(f"Backup deletion failed: {e}") from e
        logger.info(f"Deleted local backup: {backup_id}")

    def authorization_url(self, state: str) -> str:
        return f"local://authorize?state={state}"

    def exchange_code(self, code: str) -> TokenGrant:
        return TokenGrant(access_token="", account_name=f"Local folder ({self.root})")
