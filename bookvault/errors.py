"""Error taxonomy shared by the object store client, repository and handlers."""

from typing import Any, Dict, Optional


class BookVaultError(Exception):
    """Base error carrying the HTTP status and a stable reason code."""

    status_code = 500
    reason = "internal_error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.reason.replace("_", " ").capitalize()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": False, "reason": self.reason, "message": self.message}


class AuthError(BookVaultError):
    """Upstream object store rejected our credentials (or none are configured)."""

    status_code = 502
    reason = "storage_auth_failed"


class ObjectStoreError(BookVaultError):
    status_code = 502
    reason = "storage_unavailable"


class NotFound(BookVaultError):
    status_code = 404
    reason = "not_found"


class ObjectMissing(BookVaultError):
    """Commit found no object under the record's storage name."""

    status_code = 409
    reason = "object_missing"


class SizeMismatch(BookVaultError):
    """Commit found an object whose size differs from the declared size."""

    status_code = 422
    reason = "size_mismatch"


class Unauthorized(BookVaultError):
    status_code = 401
    reason = "unauthorized"


class AdminNotConfigured(BookVaultError):
    status_code = 500
    reason = "admin_key_not_configured"


class ValidationError(BookVaultError):
    status_code = 400
    reason = "invalid_request"


class MetadataCorrupt(BookVaultError):
    """The stored file list could not be decoded; writes are refused."""

    status_code = 500
    reason = "metadata_corrupt"
