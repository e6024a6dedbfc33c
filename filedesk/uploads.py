"""Uploads through presigned PUT URLs with per-upload progress records."""

import logging
import re
import threading
import time
import uuid
from typing import IO, Any, Dict, Iterator, List, Optional

import requests
from werkzeug.utils import secure_filename

from .api import APIError, StorageAPIClient
from .paths import normalize_folder

logger = logging.getLogger("filedesk.uploads")

UPLOAD_CHUNK_BYTES = 256 * 1024
MAX_FILENAME_LENGTH = 255

_PATH_SEPARATORS = re.compile(r"[\\/]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")

STATUS_PENDING = "pending"
STATUS_UPLOADING = "uploading"
STATUS_DONE = "done"
STATUS_FAILED = "failed"
FINISHED_STATUSES = {STATUS_DONE, STATUS_FAILED}


def upload_key(folder: str, filename: str) -> str:
    """Build the object key for *filename* inside *folder*.

    ASCII names go through ``secure_filename``. It drops every non-ASCII
    character, so other names only lose path components and control characters.
    """
    raw = filename or ""
    if raw.isascii():
        cleaned = secure_filename(raw)
    else:
        cleaned = _CONTROL_CHARS.sub("", _PATH_SEPARATORS.split(raw)[-1]).strip()
        if cleaned in {".", ".."}:
            cleaned = ""
    if not cleaned:
        raise ValueError("Filename is empty")
    if len(cleaned) > MAX_FILENAME_LENGTH:
        raise ValueError(f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters")
    return normalize_folder(folder) + cleaned


class UploadTracker:
    """Thread-safe registry of in-flight and recently finished uploads."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def create(self, owner: Optional[str], filename: str, key: str, size: Optional[int]) -> Dict[str, Any]:
        record = {
            "id": uuid.uuid4().hex,
            "owner": owner,
            "filename": filename,
            "key": key,
            "size": size,
            "uploaded": 0,
            "progress": 0,
            "status": STATUS_PENDING,
            "error": None,
            "created_at": time.time(),
            "finished_at": None,
        }
        with self._lock:
            self._records[record["id"]] = record
        return dict(record)

    def get(self, upload_id: str, owner: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(upload_id)
            if record is None or (owner is not None and record["owner"] != owner):
                return None
            return dict(record)

    def list(self, owner: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            records = [
                dict(record)
                for record in self._records.values()
                if owner is None or record["owner"] == owner
            ]
        return sorted(records, key=lambda record: record["created_at"])

    def set_size(self, upload_id: str, size: int) -> None:
        with self._lock:
            record = self._records.get(upload_id)
            if record is not None:
                record["size"] = size

    def advance(self, upload_id: str, amount: int) -> None:
        with self._lock:
            record = self._records.get(upload_id)
            if record is None:
                return
            record["status"] = STATUS_UPLOADING
            record["uploaded"] += amount
            size = record["size"]
            if size:
                # Hold at 99 until the storage confirms the upload.
                record["progress"] = min(99, int(record["uploaded"] * 100 / size))

    def finish(self, upload_id: str, error: Optional[str] = None) -> None:
        with self._lock:
            record = self._records.get(upload_id)
            if record is None:
                return
            record["finished_at"] = time.time()
            if error:
                record["status"] = STATUS_FAILED
                record["error"] = error
            else:
                record["status"] = STATUS_DONE
                record["progress"] = 100
                if record["size"] is None:
                    record["size"] = record["uploaded"]

    def prune(self, ttl_seconds: float, now: Optional[float] = None) -> int:
        """Drop finished records older than *ttl_seconds*; return how many."""

        cutoff = (time.time() if now is None else now) - ttl_seconds
        with self._lock:
            stale = [
                upload_id
                for upload_id, record in self._records.items()
                if record["status"] in FINISHED_STATUSES
                and (record["finished_at"] or 0) <= cutoff
            ]
            for upload_id in stale:
                del self._records[upload_id]
        if stale:
            logger.info("upload_records_pruned count=%d", len(stale))
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class ProgressReader:
    """File-like wrapper that reports every chunk read to the tracker.

    Exposing ``__len__`` makes ``requests`` send a ``Content-Length`` header
    instead of chunked encoding, which presigned PUT URLs do not accept.
    """

    def __init__(self, stream: IO[bytes], size: int, tracker: "UploadTracker", upload_id: str) -> None:
        self._stream = stream
        self._size = size
        self._tracker = tracker
        self._upload_id = upload_id

    def __len__(self) -> int:
        return self._size

    def read(self, size: int = -1) -> bytes:
        chunk = self._stream.read(size if size and size > 0 else UPLOAD_CHUNK_BYTES)
        if chunk:
            self._tracker.advance(self._upload_id, len(chunk))
        return chunk

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.read(UPLOAD_CHUNK_BYTES)
            if not chunk:
                break
            yield chunk


def stream_size(stream: IO[bytes]) -> Optional[int]:
    """Return the remaining size of a seekable stream, or ``None``."""

    try:
        position = stream.tell()
        stream.seek(0, 2)
        end = stream.tell()
        stream.seek(position)
    except (AttributeError, OSError, ValueError):
        return None
    return end - position


def upload_file(
    client: StorageAPIClient,
    tracker: UploadTracker,
    record: Dict[str, Any],
    stream: IO[bytes],
    content_type: str = "application/octet-stream",
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Send *stream* to the presigned PUT URL for ``record["key"]``."""

    upload_id = record["id"]
    try:
        url = client.generate_upload_url(record["key"], content_type)
    except APIError as error:
        tracker.finish(upload_id, error.message)
        raise

    size = record.get("size")
    if size is None:
        size = stream_size(stream)
    if size is None:
        tracker.finish(upload_id, "Upload size is unknown")
        raise APIError("Upload size is unknown")
    tracker.set_size(upload_id, size)
    headers = {"Content-Type": content_type}

    try:
        response = requests.put(
            url,
            data=ProgressReader(stream, size, tracker, upload_id),
            headers=headers,
            timeout=timeout or client.timeout,
        )
    except requests.RequestException as error:
        logger.error("upload_failed key=%s error=%s", record["key"], error)
        tracker.finish(upload_id, str(error))
        raise APIError(f"Upload failed: {error}") from error

    try:
        if not response.ok:
            message = f"Storage rejected the upload (HTTP {response.status_code})"
            logger.error("upload_rejected key=%s status=%d", record["key"], response.status_code)
            tracker.finish(upload_id, message)
            raise APIError(message, response.status_code)
    finally:
        response.close()

    tracker.finish(upload_id)
    logger.info("upload_completed key=%s bytes=%d", record["key"], size)
    return tracker.get(upload_id) or record
