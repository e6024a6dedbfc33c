import re
from typing import Any, Dict, Iterable, Optional

from .api import ACCESS_TYPES
from .paths import is_folder_key, normalize_folder, parent_folder

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_MIN_LENGTH = 8
MAX_FOLDER_NAME_LENGTH = 255


class ValidationError(ValueError):
    """Raised when user input is rejected before contacting the backend."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.field:
            payload["field"] = self.field
        return payload


def validate_username(username: str) -> str:
    candidate = (username or "").strip()
    if not candidate:
        raise ValidationError("Username is required.", "username")
    if not USERNAME_PATTERN.match(candidate):
        raise ValidationError(
            "Username may contain only Latin letters, digits, '_' and '-'.", "username"
        )
    return candidate


def validate_email(email: str, notify_by_email: bool) -> str:
    """Return the trimmed email; it is mandatory when notifications are on."""

    candidate = (email or "").strip()
    if not candidate:
        if notify_by_email:
            raise ValidationError("Email is required to receive notifications.", "email")
        return ""
    if not EMAIL_PATTERN.match(candidate):
        raise ValidationError("Email address is not valid.", "email")
    return candidate


def validate_password(password: str, required: bool = False) -> str:
    """Check an admin-supplied password; empty lets the server generate one."""

    if not password:
        if required:
            raise ValidationError("Password is required.", "password")
        return ""
    if len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(
            f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.", "password"
        )
    return password


def validate_folder_name(name: str) -> str:
    candidate = (name or "").strip()
    if not candidate:
        raise ValidationError("Folder name is required.", "name")
    if "/" in candidate or ".." in candidate:
        raise ValidationError("Folder name must not contain '/' or '..'.", "name")
    if len(candidate) > MAX_FOLDER_NAME_LENGTH:
        raise ValidationError("Folder name is too long.", "name")
    return candidate


def validate_folder_prefix(prefix: str, user: Optional[Dict[str, Any]] = None) -> str:
    """Normalise a permission prefix and reject duplicates for *user*."""

    if ".." in (prefix or ""):
        raise ValidationError("Folder prefix must not contain '..'.", "folder_prefix")
    candidate = normalize_folder(prefix)
    if not candidate:
        raise ValidationError("Folder prefix is required.", "folder_prefix")
    if user is not None:
        existing = {
            normalize_folder(entry.get("folder_prefix", ""))
            for entry in user.get("permissions") or []
        }
        if candidate in existing:
            raise ValidationError("Permission already exists.", "folder_prefix")
    return candidate


def validate_access_type(access_type: str) -> str:
    if access_type not in ACCESS_TYPES:
        raise ValidationError(
            f"Access type must be one of: {', '.join(ACCESS_TYPES)}.", "access_type"
        )
    return access_type


def validate_destination(sources: Iterable[str], destination: str) -> str:
    """Reject moves or copies that target a source, its descendant or its own folder."""

    target = normalize_folder(destination)
    for source in sources:
        if is_folder_key(source):
            folder = normalize_folder(source)
            if target == folder:
                raise ValidationError(
                    f"Cannot move '{folder}' into itself.", "destination"
                )
            if target.startswith(folder):
                raise ValidationError(
                    f"Cannot move '{folder}' into its own subfolder.", "destination"
                )
        if target == parent_folder(source):
            raise ValidationError(
                f"'{source}' is already in the destination folder.", "destination"
            )
    return target
