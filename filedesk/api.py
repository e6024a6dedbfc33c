"""Client for the storage service REST backend.

Each public method maps to one backend endpoint. Responses are normalised
into plain dictionaries with snake_case keys regardless of whether the
server answered in snake_case or camelCase.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import requests
from flask import g, has_request_context

from .paths import display_name

logger = logging.getLogger("filedesk.api")

UNKNOWN_ERROR = "An unknown error occurred"
ACCESS_READ_ONLY = "read_only"
ACCESS_READ_AND_DOWNLOAD = "read_and_download"
ACCESS_TYPES = (ACCESS_READ_ONLY, ACCESS_READ_AND_DOWNLOAD)
ARCHIVE_CONTENT_TYPES = ("application/zip", "application/x-zip-compressed", "application/octet-stream")

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])([A-Z])")


class APIError(Exception):
    """Raised when the backend rejects a request or cannot be reached."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}

    @property
    def unauthorized(self) -> bool:
        return self.status_code == 401

    def to_payload(self) -> dict:
        return {"error": self.message}


@dataclass
class ArchivePlan:
    """What the backend returned for an archive request.

    Either ``data`` holds a ready zip archive, or ``entries`` lists the
    presigned URLs the console has to fetch and pack itself.
    """

    data: Optional[bytes] = None
    entries: List[Dict[str, str]] = field(default_factory=list)

    @property
    def ready(self) -> bool:
        return self.data is not None


def snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub(r"_\1", name).lower()


def _snake_keys(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {snake_case(str(key)): value for key, value in payload.items()}


def _coerce_id(value: Any) -> Any:
    # Digit strings stay strings so large identifiers survive untouched.
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, (int, str)):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return str(value)


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def normalize_permission(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = _snake_keys(raw or {})
    return {
        "id": _coerce_id(data.get("id")),
        "user_id": _coerce_id(data.get("user_id")),
        "admin_id": _coerce_id(data.get("admin_id")),
        "folder_prefix": data.get("folder_prefix") or "",
        "created_at": data.get("created_at"),
    }


def normalize_user(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = _snake_keys(raw or {})
    permissions = data.get("permissions") or []
    return {
        "id": _coerce_id(data.get("id")),
        "username": data.get("username") or "",
        "alias": data.get("alias") or "",
        "email": data.get("email") or "",
        "is_admin": _coerce_bool(data.get("is_admin")),
        "notify_by_email": _coerce_bool(data.get("notify_by_email")),
        "created_at": data.get("created_at"),
        "updated_at": data.get("updated_at"),
        "permissions": [
            normalize_permission(entry) for entry in permissions if isinstance(entry, dict)
        ],
    }


def normalize_access_entry(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = _snake_keys(raw or {})
    return {
        "username": data.get("username") or "",
        "alias": data.get("alias") or "",
        "last_viewed_at": data.get("last_viewed_at"),
    }


def normalize_file(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, str):
        raw = {"key": raw}
    data = _snake_keys(raw or {})
    key = data.get("key") or ""
    access_type = data.get("access_type") or ACCESS_READ_AND_DOWNLOAD
    if access_type not in ACCESS_TYPES:
        access_type = ACCESS_READ_AND_DOWNLOAD
    access_list = data.get("access_list") or []
    return {
        "key": key,
        "name": display_name(key),
        "url": data.get("url") or None,
        "created_at": data.get("created_at"),
        "access_type": access_type,
        "access_list": [
            normalize_access_entry(entry) for entry in access_list if isinstance(entry, dict)
        ],
    }


def _error_message(response: requests.Response, fallback: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = {"error": UNKNOWN_ERROR}
    if not isinstance(payload, dict):
        payload = {"error": UNKNOWN_ERROR}
    return str(payload.get("details") or payload.get("error") or fallback)


class StorageAPIClient:
    """Thin wrapper over the storage backend's ``/api/v1`` endpoints."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                headers["X-Request-ID"] = request_id
        return headers

    def _request(
        self,
        method: str,
        path: str,
        fallback: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=self._headers(),
                timeout=self.timeout,
            )
        except requests.RequestException as error:
            logger.error("backend_unreachable method=%s path=%s error=%s", method, path, error)
            raise APIError(f"{fallback}: {error}") from error

        if not response.ok:
            message = _error_message(response, fallback)
            logger.warning(
                "backend_error method=%s path=%s status=%d message=%s",
                method,
                path,
                response.status_code,
                message,
            )
            response.close()
            raise APIError(message, response.status_code)
        return response

    def _json(self, method: str, path: str, fallback: str, **kwargs) -> Any:
        response = self._request(method, path, fallback, **kwargs)
        try:
            return response.json()
        except ValueError as error:
            raise APIError(fallback, response.status_code) from error

    def _message(self, method: str, path: str, fallback: str, **kwargs) -> str:
        response = self._request(method, path, fallback, **kwargs)
        try:
            payload = response.json()
        except ValueError:
            return ""
        if isinstance(payload, dict):
            return str(payload.get("message") or "")
        return ""

    # Authentication

    def login(self, username: str, password: str) -> str:
        payload = self._json(
            "POST",
            "/auth/login",
            "Failed to login",
            json={"username": username, "password": password},
        )
        token = payload.get("token") if isinstance(payload, dict) else None
        if not token:
            raise APIError("Failed to login")
        return token

    # Users

    def list_users(self) -> List[Dict[str, Any]]:
        payload = self._json("GET", "/admin/users", "Failed to fetch users")
        if isinstance(payload, dict):
            payload = payload.get("users") or []
        return [normalize_user(entry) for entry in payload if isinstance(entry, dict)]

    def get_user(self, user_id: Any) -> Dict[str, Any]:
        payload = self._json("GET", f"/admin/users/{user_id}", "Failed to fetch user")
        return normalize_user(payload)

    def create_user(
        self,
        username: str,
        password: str,
        alias: str,
        is_admin: bool = False,
        email: str = "",
        notify_by_email: bool = False,
    ) -> Dict[str, Any]:
        body = {
            "username": username,
            "password": password,
            "alias": alias,
            "is_admin": is_admin,
            "email": email,
            "notify_by_email": notify_by_email,
        }
        payload = _snake_keys(self._json("POST", "/admin/users", "Failed to create user", json=body))
        return {
            "message": payload.get("message") or "",
            "user_id": _coerce_id(payload.get("user_id")),
            "password": payload.get("password") or None,
        }

    def update_user(
        self, user_id: Any, alias: str, email: str, notify_by_email: bool
    ) -> str:
        body = {"alias": alias, "email": email, "notify_by_email": notify_by_email}
        return self._message("PUT", f"/admin/users/{user_id}", "Failed to update user", json=body)

    def reset_user_password(self, user_id: Any, password: str) -> Dict[str, Any]:
        payload = _snake_keys(
            self._json(
                "POST",
                f"/admin/users/{user_id}/password",
                "Failed to reset password",
                json={"password": password},
            )
        )
        return {"message": payload.get("message") or "", "password": payload.get("password") or None}

    def delete_user(self, user_id: Any) -> str:
        return self._message("DELETE", f"/admin/users/{user_id}", "Failed to delete user")

    def update_admin_self(self, username: str = "", password: str = "") -> str:
        body: Dict[str, str] = {}
        if username:
            body["username"] = username
        if password:
            body["password"] = password
        return self._message("PUT", "/admin/self", "Failed to update admin account", json=body)

    # Permissions

    def assign_permission(self, user_id: Any, folder_prefix: str) -> str:
        body = {"user_id": user_id, "folder_prefix": folder_prefix}
        return self._message("POST", "/admin/permissions", "Failed to assign permission", json=body)

    def revoke_permission(self, permission_id: Any) -> str:
        return self._message(
            "DELETE", f"/admin/permissions/{permission_id}", "Failed to revoke permission"
        )

    # Files

    def list_files(self, path: str = "") -> Dict[str, Any]:
        params = {"path": path} if path else None
        payload = _snake_keys(self._json("GET", "/files", "Failed to fetch files", params=params))
        return {
            "path": payload.get("path") or path,
            "folders": [entry for entry in payload.get("folders") or [] if isinstance(entry, str)],
            "files": [normalize_file(entry) for entry in payload.get("files") or []],
        }

    def list_all_folders(self) -> List[str]:
        payload = self._json("GET", "/admin/storage/folders", "Failed to fetch folders")
        if isinstance(payload, dict):
            payload = payload.get("folders") or []
        return [entry for entry in payload if isinstance(entry, str)]

    def generate_upload_url(self, key: str, content_type: str) -> str:
        payload = _snake_keys(
            self._json(
                "POST",
                "/files/generate-upload-url",
                "Failed to get upload URL",
                json={"key": key, "content_type": content_type},
            )
        )
        url = payload.get("url") or payload.get("upload_url")
        if not url:
            raise APIError("Failed to get upload URL")
        return url

    def presign(self, key: str) -> Dict[str, Any]:
        payload = _snake_keys(
            self._json("GET", "/files/presign", "Failed to get file URL", params={"key": key})
        )
        pages = payload.get("pages") or []
        return {
            "url": payload.get("url") or None,
            "status": payload.get("status") or None,
            "pages": [page for page in pages if isinstance(page, str)],
        }

    # Storage administration

    def create_folder(self, path: str) -> str:
        return self._message(
            "POST", "/admin/storage/folders", "Failed to create folder", json={"path": path}
        )

    def move_items(self, sources: Iterable[str], destination: str) -> str:
        body = {"sources": list(sources), "destination": destination}
        return self._message("POST", "/admin/storage/move", "Failed to move items", json=body)

    def copy_items(self, sources: Iterable[str], destination: str) -> str:
        body = {"sources": list(sources), "destination": destination}
        return self._message("POST", "/admin/storage/copy", "Failed to copy items", json=body)

    def delete_items(self, keys: Iterable[str], folders: Iterable[str]) -> str:
        body = {"keys": list(keys), "folders": list(folders)}
        return self._message("DELETE", "/admin/storage/items", "Failed to delete items", json=body)

    def set_access_type(self, keys: Iterable[str], access_type: str) -> str:
        body = {"keys": list(keys), "access_type": access_type}
        return self._message(
            "PUT", "/admin/storage/permissions", "Failed to update access type", json=body
        )

    def request_archive(self, keys: Iterable[str], folders: Iterable[str]) -> ArchivePlan:
        body = {"keys": list(keys), "folders": list(folders)}
        response = self._request("POST", "/archive", "Failed to download archive", json=body)
        content_type = (response.headers.get("Content-Type") or "").split(";")[0].strip().lower()
        if content_type in ARCHIVE_CONTENT_TYPES:
            return ArchivePlan(data=response.content)

        try:
            payload = response.json()
        except ValueError as error:
            raise APIError("Failed to download archive", response.status_code) from error

        if isinstance(payload, dict):
            payload = payload.get("files") or payload.get("urls") or []
        entries = []
        for entry in payload:
            if not isinstance(entry, dict):
                continue
            data = _snake_keys(entry)
            if data.get("key") and data.get("url"):
                entries.append({"key": data["key"], "url": data["url"]})
        return ArchivePlan(entries=entries)
