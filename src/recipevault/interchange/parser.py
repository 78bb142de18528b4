"""
Bundle archive parsing for RecipeVault.

Reads a bundle archive produced by BackupGenerator (or an older client),
checks the container and top-level fields, rejects bundles written by a
newer major version, and returns the decoded document. The archive is
extracted into a private temporary directory that is removed on every exit
path.
"""

from __future__ import annotations

import json
import logging
import shutil
import tempfile
import zipfile
from pathlib import Path
from typing import Any

from recipevault.config.settings import DEFAULT_MAX_FILE_SIZE
from recipevault.interchange.bundle import (
    BUNDLE_ENTRY_NAME,
    CURRENT_VERSION_MAJOR,
    ENTITY_KEYS,
    entity_counts,
    parse_version,
    snapshot_id,
)
from recipevault.interchange.errors import FileFormatError, SchemaError

logger = logging.getLogger(__name__)

ZIP_SIGNATURE = b"PK\x03\x04"
ZIP_SUFFIX = ".zip"
JSON_SUFFIX = ".json"


def is_zip_bytes(raw: bytes) -> bool:
    """Check for the ZIP local file header signature."""
    return raw[:4] == ZIP_SIGNATURE


def _as_list(value: Any) -> list[Any]:
    # Preview runs before content validation, so nested fields may be any type
    return value if isinstance(value, list) else []


class BundleParser:
    """
    Decodes bundle archives.

    Example:
        parser = BundleParser()
        bundle = parser.parse(Path("recipe-book-manual-backup.zip"))
        summary = parser.preview(Path("recipe-book-manual-backup.zip"))

    Attributes:
        max_file_size: Largest accepted uncompressed document, in bytes.
    """

    def __init__(
        self,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        temp_dir: Path | str | None = None,
    ) -> None:
        self.max_file_size = max_file_size
        self.temp_dir = str(temp_dir) if temp_dir else None

    def parse(self, path: Path | str) -> dict[str, Any]:
        """
        Extract and decode a bundle archive.

        Args:
            path: Path to the ZIP archive.

        Returns:
            Decoded bundle document.

        Raises:
            FileFormatError: If the file is missing, not a ZIP archive, too
                large, empty, or not valid JSON.
            SchemaError: If required fields are missing, the version is
                unreadable or newer than supported, or an entity field is
                not an array.
        """
        path = Path(path)
        if not path.is_file():
            raise FileFormatError(f"Backup file not found: {path}", code="NO_FILE")
        if not zipfile.is_zipfile(path):
            raise FileFormatError(
                "Backup file must be a ZIP archive", code="INVALID_FILE_TYPE"
            )

        if self.temp_dir:
            Path(self.temp_dir).mkdir(parents=True, exist_ok=True)
        extract_dir = Path(tempfile.mkdtemp(prefix="recipevault-extract-", dir=self.temp_dir))
        try:
            document_path = self._extract(path, extract_dir)
            data = self._decode(document_path.read_bytes())
        finally:
            shutil.rmtree(extract_dir, ignore_errors=True)

        self._check_required(data)
        logger.debug(f"Parsed backup {path.name} (version {data['version']})")
        return data

    def parse_bytes(self, raw: bytes, filename: str | None = None) -> dict[str, Any]:
        """
        Decode an uploaded file that is either a ZIP archive or raw JSON.

        Args:
            raw: Uploaded content.
            filename: Original file name. When given, its suffix decides the
                container: ".zip" must carry the ZIP signature, ".json" is
                decoded as JSON, and any other suffix is rejected. Without a
                name the content is sniffed.

        Raises:
            FileFormatError: For empty, oversized, mistyped or undecodable
                uploads.
        """
        if not raw:
            raise FileFormatError("Uploaded file is empty", code="EMPTY_FILE")
        if len(raw) > self.max_file_size:
            raise FileFormatError(
                f"File exceeds maximum size of {self.max_file_size} bytes",
                code="FILE_TOO_LARGE",
                details={"maxSize": self.max_file_size},
            )

        is_zip = is_zip_bytes(raw)
        if filename is not None:
            suffix = Path(filename).suffix.lower()
            if suffix == ZIP_SUFFIX and not is_zip:
                raise FileFormatError(
                    "Backup file must be a ZIP archive", code="INVALID_FILE_TYPE"
                )
            if suffix == JSON_SUFFIX:
                is_zip = False
            elif suffix != ZIP_SUFFIX:
                raise FileFormatError(
                    f"Unsupported file type: {filename}", code="INVALID_FILE_TYPE"
                )

        if not is_zip:
            data = self._decode(raw)
            self._check_required(data)
            return data

        if self.temp_dir:
            Path(self.temp_dir).mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix="upload-", suffix=".zip", dir=self.temp_dir)
        upload_path = Path(name)
        try:
            with open(fd, "wb") as f:
                f.write(raw)
            return self.parse(upload_path)
        finally:
            upload_path.unlink(missing_ok=True)

    def preview(
        self,
        path: Path | str,
        include_details: bool = True,
        max_recipes: int = 100,
        max_collection_recipes: int = 10,
    ) -> dict[str, Any]:
        """
        Summarize a bundle archive without importing it.

        Args:
            path: Path to the ZIP archive.
            include_details: Include per-entity name lists.
            max_recipes: Cap on listed recipes.
            max_collection_recipes: Cap on recipe ids listed per collection.

        Returns:
            Dictionary with version, exportDate, type, statistics and
            (optionally) details.
        """
        data = self.parse(path)
        if "recipes" not in data and isinstance(data.get("data"), dict):
            data = {**data, **data["data"]}

        preview: dict[str, Any] = {
            "version": data["version"],
            "exportDate": data["exportDate"],
            "type": data.get("type") or "manual",
            "statistics": entity_counts(data),
        }
        if isinstance(data.get("statistics"), dict) and data["statistics"]:
            preview["statistics"] = data["statistics"]
        if not include_details:
            return preview

        preview["details"] = {
            "recipes": [
                {"id": snapshot_id(r), "title": r.get("title")}
                for r in _as_list(data.get("recipes"))[:max_recipes]
                if isinstance(r, dict)
            ],
            "collections": [
                {
                    "name": c.get("name"),
                    "recipeCount": len(
                        _as_list(c.get("recipeIds")) or _as_list(c.get("recipes"))
                    ),
                    "recipeIds": _as_list(c.get("recipeIds"))[:max_collection_recipes],
                }
                for c in _as_list(data.get("collections"))
                if isinstance(c, dict)
            ],
            "mealPlans": [
                {
                    "name": m.get("name"),
                    "startDate": m.get("startDate") or m.get("date"),
                    "endDate": m.get("endDate") or m.get("startDate") or m.get("date"),
                    "mealCount": len(_as_list(m.get("meals"))),
                }
                for m in _as_list(data.get("mealPlans"))
                if isinstance(m, dict)
            ],
            "shoppingLists": [
                {"name": s.get("name"), "itemCount": len(_as_list(s.get("items")))}
                for s in _as_list(data.get("shoppingLists"))
                if isinstance(s, dict)
            ],
        }
        return preview

    def _extract(self, path: Path, extract_dir: Path) -> Path:
        try:
            with zipfile.ZipFile(path) as archive:
                entries = [info for info in archive.infolist() if not info.is_dir()]
                if not entries:
                    raise FileFormatError("Backup archive is empty", code="EMPTY_FILE")

                entry = next((e for e in entries if e.filename == BUNDLE_ENTRY_NAME), None)
                if entry is None:
                    json_entries = [e for e in entries if e.filename.endswith(".json")]
                    if len(json_entries) != 1:
                        raise FileFormatError(
                            f"Backup archive does not contain {BUNDLE_ENTRY_NAME}",
                            code="INVALID_STRUCTURE",
                        )
                    entry = json_entries[0]

                if entry.file_size > self.max_file_size:
                    raise FileFormatError(
                        f"Backup document exceeds maximum size of {self.max_file_size} bytes",
                        code="FILE_TOO_LARGE",
                        details={"maxSize": self.max_file_size},
                    )

                # extract() sanitizes entry names, so the target stays inside extract_dir
                return Path(archive.extract(entry, path=extract_dir))
        except zipfile.BadZipFile as e:
            raise FileFormatError(
                f"Backup archive is corrupted: {e}", code="INVALID_FILE_TYPE"
            ) from e

    def _decode(self, raw: bytes) -> Any:
        if not raw.strip():
            raise FileFormatError("Backup document is empty", code="EMPTY_FILE")
        try:
            return json.loads(raw.decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FileFormatError(
                f"Backup document is not valid JSON: {e}", code="INVALID_JSON"
            ) from e

    def _check_required(self, data: Any) -> None:
        if not isinstance(data, dict):
            raise FileFormatError(
                "Backup document must be a JSON object", code="INVALID_STRUCTURE"
            )

        for field_name in ("version", "exportDate"):
            if data.get(field_name) in (None, ""):
                raise SchemaError(
                    f"Missing required field: {field_name}",
                    code="MISSING_FIELD",
                    details={"field": field_name},
                )

        # Version gate runs before the entity arrays are looked at
        try:
            version = parse_version(data["version"])
        except ValueError as e:
            raise SchemaError(
                f"Invalid version format: {data['version']}",
                code="INVALID_VERSION",
                details={"version": str(data["version"])},
            ) from e
        if version.major > CURRENT_VERSION_MAJOR:
            raise SchemaError(
                f"Backup version {version} is from a newer release; "
                f"this version supports up to {CURRENT_VERSION_MAJOR}.x",
                code="INCOMPATIBLE_VERSION",
                details={"version": str(data["version"])},
            )

        arrays = data
        if "recipes" not in data and isinstance(data.get("data"), dict):
            arrays = data["data"]

        if not isinstance(arrays.get("recipes"), list):
            raise SchemaError(
                "Missing required field: recipes",
                code="MISSING_FIELD",
                details={"field": "recipes"},
            )
        for key in ENTITY_KEYS:
            if key in arrays and not isinstance(arrays[key], list):
                raise SchemaError(
                    f"Field '{key}' must be an array",
                    code="INVALID_STRUCTURE",
                    details={"field": key},
                )
