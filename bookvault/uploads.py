"""Upload intent, commit, cleanup sweep and the other metadata mutations.

Every mutation reads the file list, talks to the object store, and then
applies its decision through :meth:`FileRepository.atomic_update` against a
fresh read. Network calls never happen inside the metadata transaction, and a
decision only touches the ids it judged.
"""

import hashlib
import re
import time
import uuid
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Set
from urllib.parse import urlparse

from . import config
from .b2 import B2Client
from .errors import BookVaultError, NotFound, ObjectMissing, SizeMismatch, ValidationError
from .logging_utils import get_logger, sanitize_log_value
from .storage import FileRepository, Record, is_ready


logger = get_logger("bookvault.uploads")

MAX_FILENAME_LENGTH = 255
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_EXTENSION_PATTERN = re.compile(r"[^a-z0-9]")

EDITABLE_FIELDS = {"display_name", "cover_object_name", "cover_content_type"}
DEFAULT_COVER_CONTENT_TYPE = "image/jpeg"


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: Any) -> Optional[float]:
    """Return epoch seconds for an ISO-8601 string (or a number), else ``None``."""

    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def human_filesize(num: float) -> str:
    if num < 1024:
        return f"{int(num)} B"
    for unit in ["KB", "MB", "GB", "TB"]:
        num /= 1024.0
        if abs(num) < 1024.0:
            return f"{num:g} {unit}" if float(num).is_integer() else f"{num:.2f} {unit}"
    return f"{num:.2f} PB"


def clean_display_name(name: str) -> str:
    cleaned = _CONTROL_CHAR_PATTERN.sub("", name).strip()
    return cleaned[:MAX_FILENAME_LENGTH]


def object_extension(filename: str) -> str:
    """Lowercased alphanumeric extension of *filename*, or ``""``."""

    suffix = PurePosixPath(filename.replace("\\", "/")).suffix
    return _EXTENSION_PATTERN.sub("", suffix.lower())


def build_object_name(file_id: str, original_filename: str) -> str:
    extension = object_extension(original_filename)
    return f"{file_id}.{extension}" if extension else file_id


def _require_text(payload: Dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Missing {key}")
    return value


def _coerce_size(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("size must be a non-negative integer")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValidationError("size must be a non-negative integer")
    return value


def _remove_if_pending(file_id: str):
    def mutate(records: List[Record]) -> List[Record]:
        return [
            record
            for record in records
            if record.get("id") != file_id or is_ready(record)
        ]

    return mutate


def create_upload_intent(
    repository: FileRepository,
    store: B2Client,
    *,
    filename: Any,
    original_filename: Any = None,
    content_type: Any = None,
    size: Any,
    max_size: Optional[int] = None,
    allowed_extensions: Optional[Iterable[str]] = None,
    now: Optional[float] = None,
) -> Dict[str, Any]:
    """Issue an upload ticket and record a pending row for it.

    Validation and the object store calls happen before the metadata write,
    so a failure here leaves the file list untouched.
    """

    display_source = _require_text({"filename": filename}, "filename")
    original = original_filename if isinstance(original_filename, str) and original_filename.strip() else display_source
    declared_size = _coerce_size(size)

    limit = config.MAX_UPLOAD_BYTES if max_size is None else max_size
    if declared_size > limit:
        logger.warning(
            "upload_intent_rejected_size size=%d limit=%d", declared_size, limit
        )
        raise ValidationError(f"File too large. Maximum size is {human_filesize(limit)}.")

    allowed: Set[str] = set(
        config.ALLOWED_EXTENSIONS if allowed_extensions is None else allowed_extensions
    )
    extension = object_extension(original)
    if allowed and extension not in allowed:
        raise ValidationError(
            f"File type '.{extension}' is not allowed" if extension else "File has no extension"
        )

    display_name = clean_display_name(display_source)
    if not display_name:
        raise ValidationError("Missing filename")

    file_id = str(uuid.uuid4())
    object_name = build_object_name(file_id, original)

    ticket = store.get_upload_ticket()

    record: Record = {
        "id": file_id,
        "object_name": object_name,
        "display_name": display_name,
        "original_name": clean_display_name(original),
        "content_type": content_type if isinstance(content_type, str) and content_type else "application/octet-stream",
        "size": declared_size,
        "uploaded_at": isoformat_utc(time.time() if now is None else now),
        "ready": False,
    }
    repository.atomic_update(lambda records: records + [record])

    logger.info(
        "upload_intent_created file_id=%s object_name=%s size=%d display_name=%s",
        file_id,
        object_name,
        declared_size,
        sanitize_log_value(display_name),
    )
    return {
        "id": file_id,
        "object_name": object_name,
        "upload_url": ticket.upload_url,
        "authorization_token": ticket.authorization_token,
    }


def _sha1_of(stream: BinaryIO) -> str:
    digest = hashlib.sha1()
    for chunk in iter(lambda: stream.read(config.CHUNK_SIZE_BYTES), b""):
        digest.update(chunk)
    stream.seek(0)
    return digest.hexdigest()


def proxy_upload(
    repository: FileRepository,
    store: B2Client,
    *,
    object_name: Any,
    upload_url: Any,
    authorization_token: Any,
    stream: Optional[BinaryIO],
    content_type: Optional[str] = None,
) -> Dict[str, Any]:
    """Relay bytes to an issued upload URL for clients that cannot reach it.

    Only names the service handed out are accepted: the object of a pending
    upload, or a record's cover. Readiness is still decided by commit.
    """

    fields = {
        "object_name": object_name,
        "upload_url": upload_url,
        "authorization_token": authorization_token,
    }
    for key in fields:
        _require_text(fields, key)
    if stream is None:
        raise ValidationError("Missing file")
    if urlparse(upload_url).scheme not in ("http", "https"):
        raise ValidationError("upload_url must be an http(s) URL")

    expected = None
    for record in repository.list_records():
        if record.get("object_name") == object_name and not is_ready(record):
            expected = record
            break
        if record.get("cover_object_name") == object_name:
            expected = record
            break
    if expected is None:
        raise NotFound("No upload is waiting for this object")

    stored = store.upload_object(
        upload_url,
        authorization_token,
        object_name,
        stream,
        content_type=content_type,
        content_sha1=_sha1_of(stream),
    )
    logger.info(
        "upload_proxied file_id=%s object_name=%s size=%s",
        expected.get("id"),
        object_name,
        stored.size,
    )
    return {"ok": True, "id": expected.get("id"), "object_name": stored.name, "size": stored.size}


def commit_upload(repository: FileRepository, store: B2Client, file_id: Any) -> Dict[str, Any]:
    """Promote a pending record once its object is confirmed in storage.

    Raises:
        ValidationError: *file_id* is empty.
        NotFound: no record with *file_id*.
        ObjectMissing: nothing stored under the record's object name; the
            record is removed.
        SizeMismatch: the stored object has a different size; the object and
            the record are removed.
    """

    if not isinstance(file_id, str) or not file_id:
        raise ValidationError("Missing id")

    record = repository.get_record(file_id)
    if record is None:
        raise NotFound("Not found")
    if is_ready(record):
        return {"ok": True, "already": True}

    auth = store.authorize()
    stored = store.find_by_exact_name(record.get("object_name") or "", auth=auth)

    if stored is None:
        repository.atomic_update(_remove_if_pending(file_id))
        logger.warning(
            "commit_object_missing file_id=%s object_name=%s",
            file_id,
            record.get("object_name"),
        )
        raise ObjectMissing("File not present in storage; restart the upload")

    declared = record.get("size")
    if isinstance(declared, int) and stored.size is not None and stored.size != declared:
        store.delete_object(stored.file_id, stored.name, auth=auth)
        repository.atomic_update(_remove_if_pending(file_id))
        logger.warning(
            "commit_size_mismatch file_id=%s declared=%d stored=%d",
            file_id,
            declared,
            stored.size,
        )
        raise SizeMismatch(
            f"Stored size {stored.size} does not match declared size {declared}"
        )

    def promote(records: List[Record]) -> List[Record]:
        for index, current in enumerate(records):
            if current.get("id") == file_id:
                records[index] = {**current, "ready": True}
                return records
        raise NotFound("Not found")

    repository.atomic_update(promote)
    logger.info("commit_succeeded file_id=%s size=%s", file_id, stored.size)
    return {"ok": True}


def cleanup_pending(
    repository: FileRepository,
    store: B2Client,
    *,
    threshold_seconds: Optional[float] = None,
    now: Optional[float] = None,
) -> Dict[str, int]:
    """Reconcile stale pending rows against the object store.

    Rows pending for at least *threshold_seconds* are dropped when their
    object is missing, dropped (and the object deleted) on size mismatch, and
    promoted when the object is present with the declared size. Ready, legacy
    and young rows are kept. A row whose check fails unexpectedly is kept.
    """

    if threshold_seconds is None or threshold_seconds <= 0:
        threshold_seconds = config.pending_threshold_seconds()
    current_time = time.time() if now is None else now

    records = repository.list_records()
    summary = {"scanned": 0, "kept": 0, "removed": 0, "promoted": 0, "deleted_from_b2": 0}
    summary["scanned"] = len(records)

    stale: List[Record] = []
    for record in records:
        if is_ready(record):
            continue
        uploaded_at = parse_timestamp(record.get("uploaded_at"))
        if uploaded_at is not None and current_time - uploaded_at < threshold_seconds:
            continue
        stale.append(record)

    drop: Set[str] = set()
    promote: Set[str] = set()
    if stale:
        auth = store.authorize()
        for record in stale:
            file_id = record.get("id")
            try:
                stored = store.find_by_exact_name(record.get("object_name") or "", auth=auth)
                if stored is None:
                    drop.add(file_id)
                    continue
                declared = record.get("size")
                if isinstance(declared, int) and stored.size is not None and stored.size != declared:
                    if store.delete_object(stored.file_id, stored.name, auth=auth):
                        summary["deleted_from_b2"] += 1
                    drop.add(file_id)
                    continue
                promote.add(file_id)
            except Exception as error:  # row is kept unchanged
                logger.warning(
                    "cleanup_check_failed file_id=%s error=%s", file_id, error
                )

    if drop or promote:
        def apply(fresh: List[Record]) -> List[Record]:
            summary["removed"] = 0
            summary["promoted"] = 0
            kept: List[Record] = []
            for current in fresh:
                current_id = current.get("id")
                if current_id in drop and not is_ready(current):
                    summary["removed"] += 1
                    continue
                if current_id in promote and not is_ready(current):
                    current = {**current, "ready": True}
                    summary["promoted"] += 1
                kept.append(current)
            return kept

        repository.atomic_update(apply)

    summary["kept"] = summary["scanned"] - summary["removed"]
    logger.info(
        "cleanup_completed scanned=%d kept=%d removed=%d promoted=%d deleted_from_b2=%d",
        summary["scanned"],
        summary["kept"],
        summary["removed"],
        summary["promoted"],
        summary["deleted_from_b2"],
    )
    return summary


def delete_file(repository: FileRepository, store: B2Client, file_id: str) -> Record:
    """Remove a record; deleting its objects from storage is best effort."""

    record = repository.get_record(file_id)
    if record is None:
        raise NotFound("File not found")

    names = [record.get("object_name"), record.get("cover_object_name")]
    names = [name for name in names if name]
    if names:
        try:
            auth = store.authorize()
        except BookVaultError as error:  # storage cleanup never blocks metadata removal
            logger.warning("file_delete_storage_skipped file_id=%s error=%s", file_id, error)
        else:
            for name in names:
                if not store.delete_by_name(name, auth=auth):
                    logger.warning(
                        "file_delete_object_not_removed file_id=%s object_name=%s",
                        file_id,
                        name,
                    )

    repository.atomic_update(
        lambda records: [item for item in records if item.get("id") != file_id]
    )
    logger.info(
        "file_deleted file_id=%s object_name=%s display_name=%s",
        file_id,
        record.get("object_name"),
        sanitize_log_value(record.get("display_name") or ""),
    )
    return record


def create_cover_intent(
    repository: FileRepository,
    store: B2Client,
    *,
    file_id: Any,
    original_filename: Any,
    content_type: Any = None,
) -> Dict[str, Any]:
    """Issue an upload ticket for a cover image and attach its name to the record."""

    if not isinstance(file_id, str) or not file_id:
        raise ValidationError("Missing id or originalFilename")
    if not isinstance(original_filename, str) or not original_filename.strip():
        raise ValidationError("Missing id or originalFilename")
    if repository.get_record(file_id) is None:
        raise NotFound("File not found")

    cover_name = f"{file_id}.cover.{object_extension(original_filename) or 'jpg'}"
    cover_type = content_type if isinstance(content_type, str) and content_type else DEFAULT_COVER_CONTENT_TYPE

    ticket = store.get_upload_ticket()

    def attach(records: List[Record]) -> List[Record]:
        for index, current in enumerate(records):
            if current.get("id") == file_id:
                records[index] = {
                    **current,
                    "cover_object_name": cover_name,
                    "cover_content_type": cover_type,
                }
                return records
        raise NotFound("File not found")

    repository.atomic_update(attach)
    logger.info("cover_intent_created file_id=%s cover_object_name=%s", file_id, cover_name)
    return {
        "ok": True,
        "upload_url": ticket.upload_url,
        "authorization_token": ticket.authorization_token,
        "cover_object_name": cover_name,
    }


def update_file_metadata(
    repository: FileRepository, file_id: str, changes: Dict[str, Any]
) -> Record:
    if not isinstance(changes, dict):
        raise ValidationError("Expected a JSON object")
    updates: Dict[str, Any] = {}
    for key, value in changes.items():
        if key not in EDITABLE_FIELDS:
            continue
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{key} must be a string")
        if key == "display_name":
            value = clean_display_name(value or "")
            if not value:
                raise ValidationError("display_name cannot be empty")
        updates[key] = value
    if not updates:
        raise ValidationError(
            "No editable fields supplied; allowed: " + ", ".join(sorted(EDITABLE_FIELDS))
        )

    updated: Dict[str, Record] = {}

    def merge(records: List[Record]) -> List[Record]:
        for index, current in enumerate(records):
            if current.get("id") == file_id:
                records[index] = {**current, **updates}
                updated["record"] = records[index]
                return records
        raise NotFound("Not found")

    repository.atomic_update(merge)
    logger.info("file_metadata_updated file_id=%s fields=%s", file_id, ",".join(sorted(updates)))
    return updated["record"]


def list_ready_files(repository: FileRepository) -> List[Record]:
    """Records safe to show: committed rows plus legacy rows without ``ready``."""

    return [record for record in repository.list_records() if is_ready(record)]


def get_downloadable_record(repository: FileRepository, file_id: str) -> Record:
    record = repository.get_record(file_id)
    if record is None or not is_ready(record) or not record.get("object_name"):
        raise NotFound("File not found")
    return record
