"""Thin client for the Backblaze B2 native API.

Only the calls the upload protocol needs are wrapped. Every public operation
accepts an optional :class:`B2Authorization`; when omitted, a fresh
authorization is requested, so tokens are never cached across requests.
"""

import logging
from typing import Any, BinaryIO, Dict, NamedTuple, Optional
from urllib.parse import quote

import requests

from . import config
from .errors import AuthError, BookVaultError, ObjectStoreError


logger = logging.getLogger("bookvault.b2")

API_VERSION_PATH = "/b2api/v2"


class B2Authorization(NamedTuple):
    token: str
    api_url: str
    download_url: str


class UploadTicket(NamedTuple):
    upload_url: str
    authorization_token: str


class StoredObject(NamedTuple):
    file_id: str
    name: str
    size: Optional[int]


class B2Client:
    def __init__(
        self,
        key_id: str,
        application_key: str,
        bucket_id: str,
        bucket_name: str,
        *,
        api_url: str = "https://api.backblazeb2.com",
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.key_id = key_id
        self.application_key = application_key
        self.bucket_id = bucket_id
        self.bucket_name = bucket_name
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls) -> "B2Client":
        return cls(
            config.B2_APPLICATION_KEY_ID,
            config.B2_APPLICATION_KEY,
            config.B2_BUCKET_ID,
            config.B2_BUCKET_NAME,
            api_url=config.B2_API_URL,
            timeout=config.B2_TIMEOUT_SECONDS,
        )

    def authorize(self) -> B2Authorization:
        """Exchange the application key for an account authorization token.

        Raises:
            AuthError: credentials are missing or were rejected upstream.
            ObjectStoreError: the authorization endpoint could not be reached.
        """

        if not self.key_id or not self.application_key or not self.bucket_id:
            raise AuthError("Backblaze B2 credentials not configured")

        try:
            response = self.session.get(
                f"{self.api_url}{API_VERSION_PATH}/b2_authorize_account",
                auth=(self.key_id, self.application_key),
                timeout=self.timeout,
            )
        except requests.RequestException as error:
            logger.error("b2_authorize_unreachable error=%s", error)
            raise ObjectStoreError("Failed to reach Backblaze B2") from error

        if response.status_code in (401, 403):
            logger.error("b2_authorize_rejected status=%d", response.status_code)
            raise AuthError("Failed to authorize with Backblaze B2")
        if not response.ok:
            logger.error("b2_authorize_failed status=%d", response.status_code)
            raise ObjectStoreError(
                f"Backblaze B2 authorization failed with HTTP {response.status_code}"
            )

        payload = response.json()
        return B2Authorization(
            token=payload["authorizationToken"],
            api_url=payload["apiUrl"].rstrip("/"),
            download_url=payload["downloadUrl"].rstrip("/"),
        )

    def _call(self, auth: B2Authorization, operation: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(
                f"{auth.api_url}{API_VERSION_PATH}/{operation}",
                headers={"Authorization": auth.token},
                json=body,
                timeout=self.timeout,
            )
        except requests.RequestException as error:
            logger.error("b2_call_unreachable operation=%s error=%s", operation, error)
            raise ObjectStoreError(f"Failed to reach Backblaze B2 ({operation})") from error

        if response.status_code == 401:
            logger.error("b2_call_unauthorized operation=%s", operation)
            raise AuthError(f"Backblaze B2 rejected the authorization token ({operation})")
        if not response.ok:
            logger.error(
                "b2_call_failed operation=%s status=%d", operation, response.status_code
            )
            raise ObjectStoreError(
                f"Backblaze B2 {operation} failed with HTTP {response.status_code}"
            )
        return response.json()

    def get_upload_ticket(self, auth: Optional[B2Authorization] = None) -> UploadTicket:
        auth = auth or self.authorize()
        payload = self._call(auth, "b2_get_upload_url", {"bucketId": self.bucket_id})
        return UploadTicket(
            upload_url=payload["uploadUrl"],
            authorization_token=payload["authorizationToken"],
        )

    def upload_object(
        self,
        upload_url: str,
        authorization_token: str,
        name: str,
        stream: BinaryIO,
        *,
        content_type: Optional[str] = None,
        content_sha1: str = "do_not_verify",
    ) -> StoredObject:
        """Send *stream* to a previously issued upload URL.

        Used when the browser cannot reach the upload URL itself. The object
        stays invisible to listings until the upload is committed.
        """

        headers = {
            "Authorization": authorization_token,
            "X-Bz-File-Name": quote(name, safe="/"),
            "Content-Type": content_type or "b2/x-auto",
            "X-Bz-Content-Sha1": content_sha1,
        }
        try:
            response = self.session.post(
                upload_url, headers=headers, data=stream, timeout=self.timeout
            )
        except requests.RequestException as error:
            logger.error("b2_upload_unreachable file_name=%s error=%s", name, error)
            raise ObjectStoreError("Failed to reach Backblaze B2 upload endpoint") from error

        if not response.ok:
            logger.error("b2_upload_failed file_name=%s status=%d", name, response.status_code)
            raise ObjectStoreError(f"Backblaze B2 upload failed with HTTP {response.status_code}")

        payload = response.json()
        size = payload.get("contentLength")
        logger.info("b2_object_uploaded file_name=%s size=%s", name, size)
        return StoredObject(
            file_id=payload.get("fileId", ""),
            name=payload.get("fileName", name),
            size=size if isinstance(size, int) else None,
        )

    def find_by_exact_name(
        self, name: str, auth: Optional[B2Authorization] = None
    ) -> Optional[StoredObject]:
        """Return the object stored under exactly *name*, or ``None``.

        ``b2_list_file_names`` answers with the first name >= ``startFileName``,
        so a hit on any other name is a miss.
        """

        if not name:
            return None
        auth = auth or self.authorize()
        payload = self._call(
            auth,
            "b2_list_file_names",
            {"bucketId": self.bucket_id, "startFileName": name, "maxFileCount": 1},
        )
        for item in payload.get("files") or []:
            if item.get("fileName") != name:
                continue
            size = item.get("contentLength", item.get("size"))
            return StoredObject(
                file_id=item.get("fileId", ""),
                name=item["fileName"],
                size=size if isinstance(size, int) else None,
            )
        return None

    def delete_object(
        self, file_id: str, name: str, auth: Optional[B2Authorization] = None
    ) -> bool:
        """Best-effort delete of one object version. Never raises."""

        try:
            auth = auth or self.authorize()
            self._call(
                auth, "b2_delete_file_version", {"fileId": file_id, "fileName": name}
            )
        except BookVaultError as error:
            logger.warning(
                "b2_delete_failed file_name=%s file_id=%s error=%s", name, file_id, error
            )
            return False
        logger.info("b2_object_deleted file_name=%s file_id=%s", name, file_id)
        return True

    def delete_by_name(self, name: str, auth: Optional[B2Authorization] = None) -> bool:
        """Look up *name* and delete it if present. Never raises."""

        try:
            auth = auth or self.authorize()
            stored = self.find_by_exact_name(name, auth=auth)
        except BookVaultError as error:
            logger.warning("b2_delete_lookup_failed file_name=%s error=%s", name, error)
            return False
        if stored is None:
            return False
        return self.delete_object(stored.file_id, stored.name, auth=auth)

    def get_download_authorization(
        self, prefix: str, ttl_seconds: int, auth: Optional[B2Authorization] = None
    ) -> str:
        auth = auth or self.authorize()
        payload = self._call(
            auth,
            "b2_get_download_authorization",
            {
                "bucketId": self.bucket_id,
                "fileNamePrefix": prefix,
                "validDurationInSeconds": int(ttl_seconds),
            },
        )
        return payload["authorizationToken"]

    def download_url_for(self, auth: B2Authorization, name: str) -> str:
        return f"{auth.download_url}/file/{quote(self.bucket_name)}/{quote(name)}"

    def open_object(
        self,
        name: str,
        *,
        range_header: Optional[str] = None,
        ttl_seconds: int = 3600,
    ) -> requests.Response:
        """Open a streaming GET for *name* scoped by a download authorization.

        The caller owns the returned response and must close it. A 404 from the
        download endpoint is returned as-is so the caller can map it.
        """

        auth = self.authorize()
        token = self.get_download_authorization(name, ttl_seconds, auth=auth)
        headers = {"Authorization": token}
        if range_header:
            headers["Range"] = range_header
        try:
            response = self.session.get(
                self.download_url_for(auth, name),
                headers=headers,
                stream=True,
                timeout=self.timeout,
            )
        except requests.RequestException as error:
            logger.error("b2_download_unreachable file_name=%s error=%s", name, error)
            raise ObjectStoreError("Failed to reach Backblaze B2 download endpoint") from error

        if response.status_code in (200, 206, 404, 416):
            return response
        response.close()
        logger.error(
            "b2_download_failed file_name=%s status=%d", name, response.status_code
        )
        if response.status_code == 401:
            raise AuthError("Backblaze B2 rejected the download authorization")
        raise ObjectStoreError(
            f"Backblaze B2 download failed with HTTP {response.status_code}"
        )
