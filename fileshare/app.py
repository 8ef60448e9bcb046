import logging
import os
import re
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple
from urllib.parse import quote

from flask import (
    Flask,
    Response,
    g,
    has_request_context,
    jsonify,
    render_template,
    request,
    url_for,
)
from werkzeug.datastructures import FileStorage
from werkzeug.wsgi import wrap_file

from .storage import (
    BYTES_PER_MB,
    CHUNK_SIZE_BYTES,
    DB_PATH,
    DEFAULT_PORT,
    LOGS_DIR,
    MAX_UPLOAD_SIZE_MB,
    RETENTION_PERIOD,
    UPLOADS_DIR,
    BlobNotFoundError,
    BlobStore,
    BlobTooLargeError,
    FileRecord,
    JsonMetadataStore,
    MetadataStore,
    NotFoundError,
    ensure_directories,
    isoformat_utc,
    utcnow,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
MAX_UPLOAD_BYTES = MAX_UPLOAD_SIZE_MB * BYTES_PER_MB
# Headroom for multipart boundaries and headers; BlobStore.write caps the file itself.
MULTIPART_OVERHEAD_BYTES = 64 * 1024
DOWNLOAD_COUNTDOWN_SECONDS = 5
RETENTION_DAYS = RETENTION_PERIOD.days

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


class ClientInputError(ValueError):
    """Raised when a request is missing required input."""


class ExpiredError(Exception):
    """Raised when a record is past its retention window."""

    def __init__(self, record: FileRecord) -> None:
        super().__init__(f"File {record.id} expired at {isoformat_utc(record.expires_at)}")
        self.record = record


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


class RequestAwareLogger(logging.LoggerAdapter):
    """Logger adapter that prefixes messages with the current request ID."""

    def __init__(self, logger: logging.Logger) -> None:
        super().__init__(logger, {})

    def process(self, msg, kwargs):
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {msg}", kwargs
        return msg, kwargs


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

_base_lifecycle_logger = logging.getLogger("fileshare.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


def _open_metadata_store() -> MetadataStore:
    store = JsonMetadataStore(DB_PATH)
    ok, reason = store.load()
    if not ok:
        logging.getLogger("fileshare.storage").warning(
            "store_load_failed path=%s reason=%s - starting with an empty store",
            DB_PATH,
            sanitize_log_value(reason),
        )
    return store


file_store: MetadataStore = _open_metadata_store()
blob_store = BlobStore(UPLOADS_DIR)
blob_store.ensure()

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_BYTES + MULTIPART_OVERHEAD_BYTES
app.logger.setLevel(numeric_level)


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        stream = getattr(file_storage, "stream", None)
        if stream is not None:
            try:
                stream.close()
            except OSError as error:
                lifecycle_logger.warning(
                    "stream_close_failed filename=%s error=%s",
                    sanitize_log_value(file_storage.filename or "unknown"),
                    sanitize_log_value(str(error)),
                )


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _render_message(
    title: str,
    heading: str,
    message: str,
    status: int,
    tone: str = "error",
) -> Tuple[str, int]:
    return (
        render_template(
            "message.html", title=title, heading=heading, message=message, tone=tone
        ),
        status,
    )


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d size=%s",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
        response.content_length or 0,
    )
    return response


@app.after_request
def add_cors_headers(response: Response):
    """Allow any origin to call the API."""

    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = "GET, POST, DELETE, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, X-Request-ID"
    response.headers["Access-Control-Expose-Headers"] = "Content-Disposition, X-Request-ID"
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(404)
def not_found(error):
    if _is_api_request():
        return jsonify({"error": "Not found"}), 404
    return _render_message(
        "File Not Found",
        "File Not Found",
        "The requested page doesn't exist.",
        404,
    )


@app.errorhandler(405)
def method_not_allowed(error):
    if _is_api_request():
        return jsonify({"error": "Method not allowed"}), 405
    return _render_message("Not Allowed", "Not Allowed", "This action is not supported.", 405)


@app.errorhandler(413)
def handle_file_too_large(error):
    lifecycle_logger.warning(
        "upload_rejected_too_large content_length=%s limit=%d",
        request.content_length,
        MAX_UPLOAD_BYTES,
    )
    return jsonify({"error": "File too large", "limit_mb": MAX_UPLOAD_SIZE_MB}), 413


@app.errorhandler(500)
def handle_server_error(error):
    original = getattr(error, "original_exception", None)
    lifecycle_logger.error(
        "request_failed path=%s error=%s",
        sanitize_log_value(request.path),
        sanitize_log_value(str(original or error)),
    )
    if _is_api_request():
        return jsonify({"error": "Internal server error"}), 500
    return _render_message(
        "Server Error", "Something went wrong", "Internal server error", 500
    )


@app.context_processor
def inject_limits():
    return {"retention_days": RETENTION_DAYS, "max_upload_mb": MAX_UPLOAD_SIZE_MB}


@app.template_filter("human_filesize")
def format_bytes(num: int, decimals: int = 2) -> str:
    """Format a byte count with 1024-based units, trimming trailing zeros."""

    if not num:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(num)
    index = 0
    while abs(value) >= 1024 and index < len(units) - 1:
        value /= 1024.0
        index += 1
    rendered = f"{value:.{max(decimals, 0)}f}"
    if "." in rendered:
        rendered = rendered.rstrip("0").rstrip(".")
    return f"{rendered} {units[index]}"


@app.template_filter("human_datetime")
def human_datetime(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def landing_url(file_id: str) -> str:
    return url_for("landing_page", file_id=file_id, _external=True)


def direct_download_url(file_id: str) -> str:
    return url_for("direct_download", file_id=file_id, _external=True)


def public_file_payload(record: FileRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "filename": record.filename,
        "size": record.size,
        "uploadDate": isoformat_utc(record.upload_date),
        "downloadCount": record.download_count,
        "expiresAt": isoformat_utc(record.expires_at),
        "downloadUrl": landing_url(record.id),
    }


def get_active_record(file_id: str, now: Optional[datetime] = None) -> FileRecord:
    """Return the record for *file_id* or raise if it is missing or expired."""

    record = file_store.find_by_id(file_id)
    if record is None:
        raise NotFoundError(file_id)
    if record.is_expired(now or utcnow()):
        raise ExpiredError(record)
    return record


def store_upload(upload: FileStorage) -> FileRecord:
    """Persist the upload's bytes and register its record.

    The blob is removed again if the record cannot be stored, so a failed
    upload leaves neither half behind.
    """

    if not isinstance(upload, FileStorage) or not upload.filename:
        raise ClientInputError("No file uploaded")

    stored_name = blob_store.make_stored_name(upload.filename)
    with upload_stream_handler(upload):
        size = blob_store.write(upload.stream, stored_name, max_bytes=MAX_UPLOAD_BYTES)
    try:
        record = FileRecord.create(
            filename=upload.filename,
            stored_name=stored_name,
            size=size,
            mime_type=upload.content_type,
        )
        file_store.insert(record)
    except Exception:
        blob_store.delete(stored_name)
        raise
    return record


@app.route("/")
def index():
    return render_template("index.html")


@app.route("/health")
def health_check():
    return jsonify({"status": "healthy", "files": len(file_store)})


@app.route("/api/upload", methods=["POST"])
def upload_file():
    # Oversize bodies raise 413 here, before any bytes are stored.
    upload = request.files.get("file")
    try:
        record = store_upload(upload)
    except ClientInputError as error:
        app.logger.warning("upload_failed reason=no_file")
        return jsonify({"error": str(error)}), 400
    except BlobTooLargeError:
        lifecycle_logger.warning("upload_rejected_too_large limit=%d", MAX_UPLOAD_BYTES)
        return jsonify({"error": "File too large", "limit_mb": MAX_UPLOAD_SIZE_MB}), 413
    except Exception as error:
        lifecycle_logger.exception("file_upload_failed")
        return jsonify({"error": "Upload failed", "details": str(error)}), 500

    lifecycle_logger.info(
        "upload_registered file_id=%s filename=%s size=%d mime_type=%s expires_at=%s",
        record.id,
        sanitize_log_value(record.filename),
        record.size,
        sanitize_log_value(record.mime_type),
        isoformat_utc(record.expires_at),
    )
    return jsonify(
        {
            "success": True,
            "message": "File uploaded successfully",
            "file": record.to_dict(),
            "downloadUrl": landing_url(record.id),
            "directDownloadUrl": direct_download_url(record.id),
        }
    )


@app.route("/d/<file_id>")
def landing_page(file_id: str):
    try:
        get_active_record(file_id)
        record = file_store.increment_download(file_id)
        if record is None:
            raise NotFoundError(file_id)
    except ExpiredError as error:
        lifecycle_logger.info(
            "file_landing_blocked_expired file_id=%s expires_at=%s",
            file_id,
            isoformat_utc(error.record.expires_at),
        )
        return _render_message(
            "File Expired",
            "File Expired",
            f"This file has expired ({RETENTION_DAYS}-day limit).",
            410,
            tone="warning",
        )
    except NotFoundError:
        lifecycle_logger.warning("file_landing_missing file_id=%s", sanitize_log_value(file_id))
        return _render_message(
            "File Not Found",
            "File Not Found",
            "The requested file doesn't exist or has expired.",
            404,
        )
    except OSError as error:
        lifecycle_logger.exception(
            "file_landing_count_failed file_id=%s error=%s",
            sanitize_log_value(file_id),
            sanitize_log_value(str(error)),
        )
        return _render_message(
            "Server Error",
            "Something went wrong",
            "The download page could not be prepared. Please try again.",
            500,
        )

    lifecycle_logger.info(
        "file_landing_viewed file_id=%s download_count=%d", record.id, record.download_count
    )
    return render_template(
        "download.html",
        record=record,
        download_url=url_for("direct_download", file_id=record.id),
        countdown_seconds=DOWNLOAD_COUNTDOWN_SECONDS,
    )


@app.route("/api/download/<file_id>")
def direct_download(file_id: str):
    try:
        record = get_active_record(file_id)
        handle = blob_store.open(record.stored_name)
    except ExpiredError:
        lifecycle_logger.info("file_download_blocked_expired file_id=%s", file_id)
        return jsonify({"error": "File expired"}), 410
    except BlobNotFoundError:
        lifecycle_logger.warning(
            "file_download_missing_blob file_id=%s stored_name=%s",
            file_id,
            sanitize_log_value(record.stored_name),
        )
        return jsonify({"error": "File not found on server"}), 404
    except NotFoundError:
        lifecycle_logger.warning("file_download_missing file_id=%s", sanitize_log_value(file_id))
        return jsonify({"error": "File not found"}), 404

    lifecycle_logger.info("file_downloaded file_id=%s size=%d", record.id, record.size)
    response = Response(
        wrap_file(request.environ, handle, CHUNK_SIZE_BYTES),
        content_type=record.mime_type,
        direct_passthrough=True,
    )
    response.call_on_close(handle.close)
    response.headers["Content-Disposition"] = (
        f'attachment; filename="{quote(record.filename, safe="")}"'
    )
    response.headers["Content-Length"] = str(record.size)
    return response


@app.route("/api/files")
def list_uploaded_files():
    records = file_store.list_records()
    return jsonify(
        {
            "success": True,
            "count": len(records),
            "files": [public_file_payload(record) for record in records],
        }
    )


@app.route("/api/files/<file_id>", methods=["DELETE"])
def delete_uploaded_file(file_id: str):
    record = file_store.find_by_id(file_id)
    if record is None:
        lifecycle_logger.warning("file_delete_missing file_id=%s", sanitize_log_value(file_id))
        return jsonify({"error": "File not found"}), 404

    position = file_store.position_of(file_id)
    try:
        file_store.delete(file_id)
    except OSError as error:
        lifecycle_logger.exception(
            "file_delete_failed file_id=%s error=%s",
            file_id,
            sanitize_log_value(str(error)),
        )
        return jsonify({"error": "Delete failed"}), 500

    try:
        removed_blob = blob_store.delete(record.stored_name)
    except OSError as error:
        file_store.insert(record, position)
        lifecycle_logger.exception(
            "file_delete_failed file_id=%s error=%s",
            file_id,
            sanitize_log_value(str(error)),
        )
        return jsonify({"error": "Delete failed"}), 500

    lifecycle_logger.info(
        "file_deleted file_id=%s stored_name=%s blob_removed=%s",
        file_id,
        sanitize_log_value(record.stored_name),
        removed_blob,
    )
    return jsonify({"success": True, "message": "File deleted successfully"})


if __name__ == "__main__":
    lifecycle_logger.info(
        "server_starting port=%d uploads_dir=%s log_path=%s", DEFAULT_PORT, UPLOADS_DIR, APP_LOG_PATH
    )
    app.run(host="0.0.0.0", port=DEFAULT_PORT, debug=False)
