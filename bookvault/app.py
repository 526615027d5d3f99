import atexit
import os
import time
import unicodedata
import uuid
from functools import wraps
from secrets import compare_digest
from typing import Any, Callable, Dict, Iterator, Optional
from urllib.parse import quote

from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, g, jsonify, request, stream_with_context
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from . import config
from .b2 import B2Client
from .errors import AdminNotConfigured, BookVaultError, NotFound, Unauthorized, ValidationError
from .logging_utils import configure_file_logging, get_logger, numeric_level, sanitize_log_value
from .storage import FileRepository
from .uploads import (
    cleanup_pending,
    commit_upload,
    create_cover_intent,
    create_upload_intent,
    delete_file,
    get_downloadable_record,
    list_ready_files,
    proxy_upload,
    update_file_metadata,
)


APP_LOG_PATH = configure_file_logging()
lifecycle_logger = get_logger("bookvault.lifecycle")

CORS_ALLOW_HEADERS = "Content-Type, Authorization, Range, X-Admin-Key, X-Request-ID"
CORS_ALLOW_METHODS = "GET, POST, PATCH, DELETE, OPTIONS"
CORS_EXPOSE_HEADERS = "Content-Disposition, Content-Length, Content-Range, Accept-Ranges, X-Request-ID"
COVER_CACHE_CONTROL = "public, max-age=3600"

repository = FileRepository(config.DB_PATH)
object_store = B2Client.from_config()

app = Flask(__name__)
app.logger.setLevel(numeric_level)
# Room for the multipart envelope around a proxied upload.
app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES + 1024 * 1024

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=config.RATE_LIMIT_STORAGE,
)


def intent_rate_limit_string() -> str:
    return f"{config.RATE_LIMIT_INTENTS_PER_HOUR} per hour"


def download_rate_limit_string() -> str:
    return f"{config.RATE_LIMIT_DOWNLOADS_PER_MINUTE} per minute"


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Expected a JSON object")
    return payload


def _field(payload: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in payload:
            return payload[name]
    return None


def _admin_key_valid() -> bool:
    expected = config.ADMIN_API_KEY
    if not expected:
        raise AdminNotConfigured("Server admin key not set")
    provided = request.headers.get("X-Admin-Key", "")
    return bool(provided) and compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def require_admin(view: Callable) -> Callable:
    @wraps(view)
    def wrapped(*args, **kwargs):
        try:
            valid = _admin_key_valid()
        except AdminNotConfigured:
            lifecycle_logger.warning("admin_auth_unconfigured endpoint=%s", request.endpoint)
            raise Unauthorized("Unauthorized")
        if not valid:
            lifecycle_logger.warning(
                "admin_auth_failed endpoint=%s ip=%s",
                request.endpoint,
                request.remote_addr or "unknown",
            )
            raise Unauthorized("Unauthorized")
        return view(*args, **kwargs)

    return wrapped


def content_disposition(filename: str, inline: bool = False) -> str:
    """Build a Content-Disposition value with an RFC 5987 ``filename*``."""

    disposition = "inline" if inline else "attachment"
    fallback = (
        unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
    )
    fallback = fallback.replace("\\", "_").replace('"', "_").strip() or "download"
    encoded = quote(filename, safe="!#$&+-.^_`|~")
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{encoded}"


def _iter_upstream(upstream) -> Iterator[bytes]:
    try:
        for chunk in upstream.iter_content(chunk_size=config.CHUNK_SIZE_BYTES):
            if chunk:
                yield chunk
    finally:
        upstream.close()


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def add_cors_headers(response: Response):
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Methods"] = CORS_ALLOW_METHODS
    response.headers["Access-Control-Allow-Headers"] = CORS_ALLOW_HEADERS
    response.headers["Access-Control-Expose-Headers"] = CORS_EXPOSE_HEADERS
    return response


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(BookVaultError)
def handle_bookvault_error(error: BookVaultError):
    if error.status_code >= 500:
        lifecycle_logger.error(
            "request_failed reason=%s message=%s", error.reason, sanitize_log_value(error.message)
        )
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    payload = {
        "ok": False,
        "reason": (error.name or "error").lower().replace(" ", "_"),
        "message": error.description or error.name,
    }
    return jsonify(payload), error.code or 500


@app.route("/api/health")
@limiter.exempt
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        checks["metadata_records"] = repository.ping()
        checks["metadata_store"] = "ok"
    except Exception as error:
        checks["metadata_store"] = f"error: {str(error)[:100]}"
        healthy = False

    checks["storage_configured"] = bool(
        config.B2_APPLICATION_KEY_ID and config.B2_APPLICATION_KEY and config.B2_BUCKET_ID
    )
    if scheduler is not None:
        job = scheduler.get_job("cleanup_pending")
        checks["cleanup"] = "scheduled" if job and job.next_run_time else "not_scheduled"
        if job and job.next_run_time:
            checks["cleanup_next_run"] = job.next_run_time.isoformat()
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["cleanup"] = "manual"
        checks["scheduler_running"] = False

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "timestamp": time.time(),
            "checks": checks,
        }
    ), 200 if healthy else 503


@app.route("/api/upload-intent", methods=["POST"])
@limiter.limit(lambda: intent_rate_limit_string())
def upload_intent():
    payload = _json_body()
    result = create_upload_intent(
        repository,
        object_store,
        filename=_field(payload, "filename"),
        original_filename=_field(payload, "original_filename", "originalFilename"),
        content_type=_field(payload, "content_type", "contentType"),
        size=_field(payload, "size"),
    )
    return jsonify(result), 200


@app.route("/api/upload-direct", methods=["POST"])
@limiter.limit(lambda: intent_rate_limit_string())
def upload_direct():
    upload = request.files.get("file")
    result = proxy_upload(
        repository,
        object_store,
        object_name=_field(request.form, "object_name", "b2FileName"),
        upload_url=_field(request.form, "upload_url", "uploadUrl"),
        authorization_token=_field(request.form, "authorization_token", "authToken"),
        stream=upload.stream if upload is not None else None,
        content_type=upload.mimetype if upload is not None else None,
    )
    return jsonify(result), 200


@app.route("/api/commit", methods=["POST"])
def commit():
    payload = _json_body()
    return jsonify(commit_upload(repository, object_store, _field(payload, "id"))), 200


@app.route("/api/files", methods=["GET"])
def list_files():
    return jsonify(list_ready_files(repository))


@app.route("/api/download/<file_id>", methods=["GET"])
@limiter.limit(lambda: download_rate_limit_string())
def download(file_id: str):
    record = get_downloadable_record(repository, file_id)
    inline = request.args.get("inline") in {"1", "true", "yes"}
    upstream = object_store.open_object(
        record["object_name"],
        range_header=request.headers.get("Range"),
        ttl_seconds=config.DOWNLOAD_TTL_SECONDS,
    )

    if upstream.status_code == 404:
        upstream.close()
        lifecycle_logger.warning(
            "file_download_missing_object file_id=%s object_name=%s",
            file_id,
            record["object_name"],
        )
        raise NotFound("File not present in storage")

    if upstream.status_code == 416:
        content_range = upstream.headers.get("Content-Range")
        upstream.close()
        response = jsonify({"ok": False, "reason": "range_not_satisfiable", "message": "Requested range not satisfiable"})
        response.status_code = 416
        if content_range:
            response.headers["Content-Range"] = content_range
        return response

    headers = {
        "Content-Type": record.get("content_type")
        or upstream.headers.get("Content-Type", "application/octet-stream"),
        "Content-Disposition": content_disposition(
            record.get("display_name") or record.get("original_name") or record["object_name"],
            inline=inline,
        ),
        "Accept-Ranges": "bytes",
        "Cache-Control": "private, max-age=0",
    }
    for name in ("Content-Length", "Content-Range", "ETag", "Last-Modified"):
        if upstream.headers.get(name):
            headers[name] = upstream.headers[name]

    lifecycle_logger.info(
        "file_downloaded file_id=%s status=%d inline=%s",
        file_id,
        upstream.status_code,
        inline,
    )
    return Response(
        stream_with_context(_iter_upstream(upstream)),
        status=upstream.status_code,
        headers=headers,
        direct_passthrough=True,
    )


@app.route("/api/files/<file_id>", methods=["DELETE"])
@require_admin
def delete(file_id: str):
    record = delete_file(repository, object_store, file_id)
    lifecycle_logger.info(
        "file_deleted_admin file_id=%s ip=%s", file_id, request.remote_addr or "unknown"
    )
    return jsonify({"ok": True, "id": record["id"], "message": "File deleted successfully"})


@app.route("/api/files/<file_id>", methods=["PATCH"])
@require_admin
def update(file_id: str):
    record = update_file_metadata(repository, file_id, _json_body())
    return jsonify({"ok": True, "file": record})


@app.route("/api/cover-intent", methods=["POST"])
@limiter.limit(lambda: intent_rate_limit_string())
def cover_intent():
    payload = _json_body()
    result = create_cover_intent(
        repository,
        object_store,
        file_id=_field(payload, "id"),
        original_filename=_field(payload, "original_filename", "originalFilename"),
        content_type=_field(payload, "content_type", "contentType"),
    )
    return jsonify(result), 200


@app.route("/api/cover/<file_id>", methods=["GET"])
@limiter.limit(lambda: download_rate_limit_string())
def cover(file_id: str):
    record = repository.get_record(file_id)
    if record is None or not record.get("cover_object_name"):
        raise NotFound("Not Found")

    upstream = object_store.open_object(
        record["cover_object_name"], ttl_seconds=config.DOWNLOAD_TTL_SECONDS
    )
    if upstream.status_code != 200:
        upstream.close()
        raise NotFound("Not Found")

    headers = {
        "Content-Type": record.get("cover_content_type")
        or upstream.headers.get("Content-Type", "image/jpeg"),
        "Cache-Control": upstream.headers.get("Cache-Control") or COVER_CACHE_CONTROL,
    }
    if upstream.headers.get("Content-Length"):
        headers["Content-Length"] = upstream.headers["Content-Length"]
    return Response(
        stream_with_context(_iter_upstream(upstream)),
        status=200,
        headers=headers,
        direct_passthrough=True,
    )


@app.route("/api/admin/status", methods=["GET"])
@limiter.exempt
def admin_status():
    if not _admin_key_valid():
        return jsonify({"ok": False}), 401
    return jsonify({"ok": True})


@app.route("/api/admin/cleanup", methods=["POST"])
@limiter.exempt
@require_admin
def admin_cleanup():
    payload = _json_body()
    threshold_ms = _field(payload, "threshold_ms", "thresholdMs")
    threshold_seconds: Optional[float] = None
    if isinstance(threshold_ms, (int, float)) and not isinstance(threshold_ms, bool) and threshold_ms > 0:
        threshold_seconds = threshold_ms / 1000.0

    summary = cleanup_pending(repository, object_store, threshold_seconds=threshold_seconds)
    lifecycle_logger.info(
        "admin_cleanup_run scanned=%d removed=%d", summary["scanned"], summary["removed"]
    )
    return jsonify({"ok": True, **summary})


def run_scheduled_cleanup() -> None:
    try:
        cleanup_pending(repository, object_store)
    except BookVaultError as error:
        lifecycle_logger.error("scheduled_cleanup_failed reason=%s message=%s", error.reason, error.message)


scheduler: Optional[BackgroundScheduler] = None
if config.CLEANUP_INTERVAL_MINUTES > 0:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=run_scheduled_cleanup,
        trigger="interval",
        minutes=config.CLEANUP_INTERVAL_MINUTES,
        id="cleanup_pending",
        name="Reconcile stale pending uploads",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
