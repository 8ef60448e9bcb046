import json
import logging
import os
import secrets
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


STORAGE_ROOT = _resolve_env_path("FILESHARE_STORAGE_ROOT", BASE_DIR)
DATA_DIR = _resolve_env_path("FILESHARE_DATA_DIR", STORAGE_ROOT / "data")
UPLOADS_DIR = _resolve_env_path("FILESHARE_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("FILESHARE_LOGS_DIR", STORAGE_ROOT / "logs")
DB_PATH = DATA_DIR / "database.json"

RETENTION_PERIOD = timedelta(days=7)
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
MAX_UPLOAD_SIZE_MB = 100
ID_ENTROPY_BYTES = 9

logger = logging.getLogger("fileshare.storage")


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("fileshare.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


DEFAULT_PORT = _safe_int_env("PORT", 3000)


def ensure_directories() -> None:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
    UPLOADS_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def generate_id() -> str:
    """Return a short URL-safe token; collisions are left to the entropy."""

    return secrets.token_urlsafe(ID_ENTROPY_BYTES)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def isoformat_utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: str) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class NotFoundError(LookupError):
    """Raised when a record or its blob does not exist."""


class BlobNotFoundError(NotFoundError):
    """Raised when a stored blob is missing from the uploads directory."""


class BlobTooLargeError(ValueError):
    """Raised when an incoming stream exceeds the permitted size."""

    def __init__(self, limit: int) -> None:
        super().__init__(f"Blob exceeds limit of {limit} bytes")
        self.limit = limit


@dataclass
class FileRecord:
    id: str
    filename: str
    stored_name: str
    size: int
    mime_type: str
    upload_date: datetime
    expires_at: datetime
    download_count: int = 0

    @classmethod
    def create(
        cls,
        filename: str,
        stored_name: str,
        size: int,
        mime_type: Optional[str],
        file_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "FileRecord":
        uploaded_at = now or utcnow()
        return cls(
            id=file_id or generate_id(),
            filename=filename,
            stored_name=stored_name,
            size=size,
            mime_type=mime_type or "application/octet-stream",
            upload_date=uploaded_at,
            expires_at=uploaded_at + RETENTION_PERIOD,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utcnow())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "filename": self.filename,
            "storedName": self.stored_name,
            "size": self.size,
            "mimeType": self.mime_type,
            "uploadDate": isoformat_utc(self.upload_date),
            "downloadCount": self.download_count,
            "expiresAt": isoformat_utc(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        if not isinstance(data, dict):
            raise ValueError("record entry must be an object")
        try:
            return cls(
                id=str(data["id"]),
                filename=str(data["filename"]),
                stored_name=str(data["storedName"]),
                size=int(data["size"]),
                mime_type=str(data.get("mimeType") or "application/octet-stream"),
                upload_date=parse_timestamp(data["uploadDate"]),
                expires_at=parse_timestamp(data["expiresAt"]),
                download_count=int(data.get("downloadCount", 0)),
            )
        except KeyError as error:
            raise ValueError(f"record entry missing field {error}") from error
        except (TypeError, ValueError) as error:
            raise ValueError(f"record entry invalid: {error}") from error


class MetadataStore:
    """In-memory record store; every operation holds a single lock."""

    def __init__(self) -> None:
        self._records: List[FileRecord] = []
        self._lock = threading.RLock()

    def load(self) -> Tuple[bool, Optional[str]]:
        return True, None

    def save(self) -> None:
        """Persist the current sequence; a no-op for the in-memory store."""

    def insert(self, record: FileRecord, position: Optional[int] = None) -> FileRecord:
        with self._lock:
            if position is None:
                self._records.append(record)
            else:
                self._records.insert(position, record)
            try:
                self.save()
            except Exception:
                self._records.remove(record)
                raise
        return record

    def find_by_id(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            for record in self._records:
                if record.id == file_id:
                    return record
        return None

    def increment_download(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            record = self.find_by_id(file_id)
            if record is None:
                return None
            record.download_count += 1
            try:
                self.save()
            except Exception:
                record.download_count -= 1
                raise
            return record

    def position_of(self, file_id: str) -> Optional[int]:
        with self._lock:
            for index, record in enumerate(self._records):
                if record.id == file_id:
                    return index
        return None

    def delete(self, file_id: str) -> Optional[FileRecord]:
        with self._lock:
            for index, record in enumerate(self._records):
                if record.id == file_id:
                    del self._records[index]
                    try:
                        self.save()
                    except Exception:
                        self._records.insert(index, record)
                        raise
                    return record
        return None

    def list_records(self) -> List[FileRecord]:
        with self._lock:
            return list(self._records)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class JsonMetadataStore(MetadataStore):
    """Metadata store mirrored to a single JSON document on disk."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)

    def load(self) -> Tuple[bool, Optional[str]]:
        """Replace the in-memory records with the document's contents.

        A missing document is a clean start. A malformed one leaves the store
        empty and returns ``(False, reason)`` so the caller can report it; the
        document itself is only overwritten by the next mutation.
        """

        with self._lock:
            self._records = []
            try:
                raw = self.path.read_bytes()
            except FileNotFoundError:
                return True, None
            except OSError as error:
                return False, f"unreadable: {error}"

            try:
                payload = json.loads(raw.decode("utf-8"))
            except UnicodeDecodeError as error:
                return False, f"invalid encoding: {error}"
            except json.JSONDecodeError as error:
                return False, f"invalid JSON: {error}"
            if not isinstance(payload, list):
                return False, "document root is not a list"

            try:
                records = [FileRecord.from_dict(entry) for entry in payload]
            except ValueError as error:
                return False, str(error)

            self._records = records
            logger.info("store_loaded path=%s records=%d", self.path, len(records))
            return True, None

    def save(self) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            payload = [record.to_dict() for record in self._records]
            with self.path.open("w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)


class BlobStore:
    """Uploaded file bytes kept flat inside one directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def make_stored_name(original_filename: str) -> str:
        extension = os.path.splitext(original_filename or "")[1]
        # Keep the extension from escaping the flat layout.
        if "/" in extension or "\\" in extension:
            extension = ""
        return f"{generate_id()}{extension}"

    def path_for(self, stored_name: str) -> Path:
        candidate = self.root / stored_name
        if (
            not stored_name
            or stored_name in {".", ".."}
            or candidate.parent.resolve() != self.root.resolve()
        ):
            raise BlobNotFoundError(stored_name)
        return candidate

    def exists(self, stored_name: str) -> bool:
        try:
            return self.path_for(stored_name).is_file()
        except BlobNotFoundError:
            return False

    def write(self, stream: BinaryIO, stored_name: str, max_bytes: Optional[int] = None) -> int:
        self.ensure()
        target = self.path_for(stored_name)
        temp_path = target.with_name(f"{target.name}.tmp")
        written = 0
        try:
            with temp_path.open("wb") as destination:
                while True:
                    chunk = stream.read(CHUNK_SIZE_BYTES)
                    if not chunk:
                        break
                    if max_bytes is not None and written + len(chunk) > max_bytes:
                        raise BlobTooLargeError(max_bytes)
                    destination.write(chunk)
                    written += len(chunk)
            temp_path.replace(target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        logger.debug("blob_written stored_name=%s size=%d", stored_name, written)
        return written

    def open(self, stored_name: str) -> BinaryIO:
        path = self.path_for(stored_name)
        try:
            return path.open("rb")
        except (FileNotFoundError, IsADirectoryError) as error:
            raise BlobNotFoundError(stored_name) from error

    def delete(self, stored_name: str) -> bool:
        try:
            path = self.path_for(stored_name)
        except BlobNotFoundError:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("blob_deleted stored_name=%s", stored_name)
        return True
