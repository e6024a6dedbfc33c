"""Batch operations over a selection of files and folders."""

import io
import logging
import zipfile
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

import requests

from .api import APIError, ArchivePlan, StorageAPIClient
from .paths import display_name, is_folder_key, normalize_folder, relative_key
from .validation import ValidationError, validate_access_type, validate_destination

archive_logger = logging.getLogger("filedesk.archive")

FAILED_MANIFEST_NAME = "_failed.txt"
DOWNLOAD_CHUNK_BYTES = 1024 * 1024
DEFAULT_FETCH_TIMEOUT = 30.0


@dataclass
class Selection:
    keys: List[str] = field(default_factory=list)
    folders: List[str] = field(default_factory=list)

    @classmethod
    def from_values(cls, values: Iterable[str]) -> "Selection":
        """Split submitted item values into file keys and folder prefixes."""

        selection = cls()
        for value in values:
            item = (value or "").strip()
            if not item:
                continue
            if is_folder_key(item):
                folder = normalize_folder(item)
                if folder and folder not in selection.folders:
                    selection.folders.append(folder)
            elif item not in selection.keys:
                selection.keys.append(item)
        return selection

    @classmethod
    def from_parts(cls, keys: Iterable[str], folders: Iterable[str]) -> "Selection":
        return cls.from_values(list(keys) + [normalize_folder(folder) for folder in folders if folder])

    @property
    def items(self) -> List[str]:
        return self.folders + self.keys

    @property
    def count(self) -> int:
        return len(self.keys) + len(self.folders)

    def __bool__(self) -> bool:
        return self.count > 0

    def require(self) -> "Selection":
        if not self:
            raise ValidationError("Select at least one item first.", "items")
        return self


@dataclass
class ArchiveResult:
    data: bytes
    added: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)


def move_selection(client: StorageAPIClient, selection: Selection, destination: str) -> str:
    selection.require()
    target = validate_destination(selection.items, destination)
    return client.move_items(selection.items, target)


def copy_selection(client: StorageAPIClient, selection: Selection, destination: str) -> str:
    selection.require()
    target = validate_destination(selection.items, destination)
    return client.copy_items(selection.items, target)


def delete_selection(client: StorageAPIClient, selection: Selection) -> str:
    selection.require()
    return client.delete_items(selection.keys, selection.folders)


def assign_access_type(client: StorageAPIClient, selection: Selection, access_type: str) -> str:
    selection.require()
    validate_access_type(access_type)
    if selection.folders:
        raise ValidationError("Access type can only be set on files.", "items")
    return client.set_access_type(selection.keys, access_type)


def archive_filename(selection: Selection) -> str:
    if len(selection.folders) == 1 and not selection.keys:
        name = display_name(selection.folders[0])
        if name:
            return f"{name}.zip"
    return "archive.zip"


def fetch_object(session: requests.Session, url: str, timeout: float) -> bytes:
    """Download one presigned URL into memory."""

    response = session.get(url, timeout=timeout, stream=True)
    try:
        response.raise_for_status()
        buffer = io.BytesIO()
        for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_BYTES):
            if chunk:
                buffer.write(chunk)
        return buffer.getvalue()
    finally:
        response.close()


def _unique_name(name: str, emitted: Set[str]) -> str:
    if name not in emitted:
        return name
    stem, dot, suffix = name.rpartition(".")
    counter = 1
    while True:
        candidate = f"{stem}-{counter}.{suffix}" if dot else f"{name}-{counter}"
        if candidate not in emitted:
            return candidate
        counter += 1


def build_archive(
    plan: ArchivePlan,
    base_path: str = "",
    fetch: Optional[Callable[[str], bytes]] = None,
    max_files: Optional[int] = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
) -> ArchiveResult:
    """Pack the presigned URLs of *plan* into a zip archive.

    Files are fetched one after another. A file that cannot be fetched is
    recorded in ``failed`` and skipped; the remaining files still proceed.
    """

    if plan.ready:
        return ArchiveResult(data=plan.data or b"")

    if fetch is not None:
        return _pack_entries(plan.entries, base_path, fetch, max_files)

    session = requests.Session()
    try:
        return _pack_entries(
            plan.entries,
            base_path,
            lambda url: fetch_object(session, url, timeout=timeout),
            max_files,
        )
    finally:
        session.close()


def _pack_entries(
    entries: List[Dict[str, str]],
    base_path: str,
    fetch: Callable[[str], bytes],
    max_files: Optional[int],
) -> ArchiveResult:
    failed: List[Tuple[str, str]] = []
    if max_files is not None and len(entries) > max_files:
        for entry in entries[max_files:]:
            failed.append((entry["key"], "archive file limit reached"))
        entries = entries[:max_files]

    added: List[str] = []
    emitted: Set[str] = {FAILED_MANIFEST_NAME}
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for entry in entries:
            key = entry["key"]
            if is_folder_key(key):
                continue
            try:
                content = fetch(entry["url"])
            except (requests.RequestException, OSError) as error:
                archive_logger.warning("archive_fetch_failed key=%s error=%s", key, error)
                failed.append((key, str(error)))
                continue

            name = _unique_name(relative_key(key, base_path), emitted)
            emitted.add(name)
            archive.writestr(name, content)
            added.append(key)

        if failed:
            lines = [f"{key}\t{reason}" for key, reason in failed]
            archive.writestr(FAILED_MANIFEST_NAME, "\n".join(lines) + "\n")

    if not added and failed:
        raise APIError(f"None of the {len(failed)} selected files could be downloaded")

    archive_logger.info(
        "archive_built files=%d failed=%d bytes=%d",
        len(added),
        len(failed),
        buffer.tell(),
    )
    return ArchiveResult(data=buffer.getvalue(), added=added, failed=failed)


def download_selection(
    client: StorageAPIClient,
    selection: Selection,
    base_path: str = "",
    fetch: Optional[Callable[[str], bytes]] = None,
    max_files: Optional[int] = None,
    timeout: float = DEFAULT_FETCH_TIMEOUT,
) -> ArchiveResult:
    selection.require()
    plan = client.request_archive(selection.keys, selection.folders)
    if not plan.ready and not plan.entries:
        raise APIError("Nothing to download")
    return build_archive(plan, base_path=base_path, fetch=fetch, max_files=max_files, timeout=timeout)
