"""Helpers for treating flat object keys as a folder hierarchy.

Folders do not exist in the object store; a folder is any key prefix that
ends with ``/``. The root folder is the empty string.
"""

import re
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlparse, urlunparse

_DUPLICATE_SLASHES = re.compile(r"/{2,}")


def normalize_folder(path: Optional[str]) -> str:
    """Return *path* as a folder prefix: no leading slash, one trailing slash."""

    cleaned = _DUPLICATE_SLASHES.sub("/", (path or "").strip()).lstrip("/")
    if not cleaned:
        return ""
    if not cleaned.endswith("/"):
        cleaned += "/"
    return cleaned


def is_folder_key(key: str) -> bool:
    return key.endswith("/")


def display_name(key: str) -> str:
    parts = [part for part in key.split("/") if part]
    return parts[-1] if parts else ""


def parent_folder(key: str) -> str:
    """Return the folder that directly contains *key* (a file or a folder)."""

    parts = [part for part in key.split("/") if part]
    if len(parts) <= 1:
        return ""
    return "/".join(parts[:-1]) + "/"


def join_folder(parent: str, name: str) -> str:
    return normalize_folder(normalize_folder(parent) + name.strip().strip("/"))


def breadcrumbs(path: str) -> List[Tuple[str, str]]:
    """Return ``(label, folder)`` pairs from the root down to *path*."""

    crumbs: List[Tuple[str, str]] = [("/", "")]
    current = ""
    for part in normalize_folder(path).split("/"):
        if not part:
            continue
        current += part + "/"
        crumbs.append((part, current))
    return crumbs


def relative_key(key: str, base: str) -> str:
    """Return *key* relative to folder *base*, falling back to the full key."""

    base = normalize_folder(base)
    if base and key.startswith(base) and len(key) > len(base):
        return key[len(base):]
    return key.lstrip("/")


def to_proxy(url: str, hosts: Iterable[str], prefix: str) -> str:
    """Rewrite storage URLs so the browser fetches them through the console."""

    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    if not parsed.scheme or (parsed.hostname or "").lower() not in {host.lower() for host in hosts}:
        return url
    proxied = f"{prefix}{parsed.path or '/'}"
    if parsed.query:
        proxied += f"?{parsed.query}"
    return proxied


def proxy_target(path: str, query: str, host: str) -> str:
    """Rebuild the storage URL for a request received on the proxy route."""

    return urlunparse(("https", host, "/" + path.lstrip("/"), "", query, ""))
