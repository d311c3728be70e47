# Persistence backends for the AI response cache.
# A backend is a plain key -> bytes store; CacheStore owns the record encoding
# and is the only component that writes through it.

import base64
import hashlib
import json
import logging
import os
import sqlite3
import threading
import time
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Union

from luggage_cache.cache.models import CacheEntry
from luggage_cache.errors import CacheStoreIOError

logger = logging.getLogger(__name__)

_COMPRESSED_MARKER = b"z"


def encode_record(entry: CacheEntry, compress_threshold: Optional[int] = None) -> bytes:
    """Serialize an entry; records at or above ``compress_threshold`` bytes are zlib-compressed."""
    raw = entry.model_dump_json().encode("utf-8")
    if compress_threshold is not None and len(raw) >= compress_threshold:
        return _COMPRESSED_MARKER + zlib.compress(raw)
    return raw


def decode_record(data: bytes) -> CacheEntry:
    try:
        if data[:1] == _COMPRESSED_MARKER:
            data = zlib.decompress(data[1:])
        return CacheEntry.model_validate_json(data)
    except Exception as exc:
        raise CacheStoreIOError(f"Corrupted cache record: {exc}") from exc


class CachePersistence(ABC):
    """Durable key-value byte store used by CacheStore to survive restarts."""

    @abstractmethod
    def read_all(self) -> Dict[str, bytes]:
        ...

    @abstractmethod
    def write_entry(self, key: str, data: bytes) -> None:
        ...

    @abstractmethod
    def delete_entry(self, key: str) -> None:
        ...

    @abstractmethod
    def delete_all(self) -> None:
        ...

    def close(self) -> None:
        return None


class InMemoryPersistence(CachePersistence):
    """Dict-backed persistence; survives CacheStore instances, not processes."""

    def __init__(self) -> None:
        self._records: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def read_all(self) -> Dict[str, bytes]:
        with self._lock:
            return dict(self._records)

    def write_entry(self, key: str, data: bytes) -> None:
        with self._lock:
            self._records[key] = data

    def delete_entry(self, key: str) -> None:
        with self._lock:
            self._records.pop(key, None)

    def delete_all(self) -> None:
        with self._lock:
            self._records.clear()


class SQLitePersistence(CachePersistence):
    """SQLite-backed record table shared safely across threads."""

    def __init__(self, db_path: Union[str, Path] = "ai_cache.db") -> None:
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self.conn: Optional[sqlite3.Connection] = None
        try:
            if self.db_path != ":memory:":
                Path(self.db_path).resolve().parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            self._create_tables()
        except (sqlite3.Error, OSError) as exc:
            if self.conn is not None:
                self.conn.close()
                self.conn = None
            raise CacheStoreIOError(f"Unable to open cache database {self.db_path}: {exc}") from exc

    def _create_tables(self) -> None:
        cursor = self.conn.cursor()
        if self.db_path != ":memory:":
            cursor.execute("PRAGMA journal_mode = WAL;")
        cursor.execute("PRAGMA busy_timeout = 30000;")
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                record BLOB NOT NULL,
                updated_at REAL
            )
            """
        )
        self.conn.commit()

    def read_all(self) -> Dict[str, bytes]:
        with self._lock:
            try:
                rows = self.conn.execute("SELECT key, record FROM cache_entries").fetchall()
            except sqlite3.Error as exc:
                raise CacheStoreIOError(f"Failed to read cache entries: {exc}") from exc
        return {key: bytes(record) for key, record in rows}

    def write_entry(self, key: str, data: bytes) -> None:
        with self._lock:
            try:
                self.conn.execute(
                    "INSERT OR REPLACE INTO cache_entries (key, record, updated_at) VALUES (?, ?, ?)",
                    (key, sqlite3.Binary(data), time.time()),
                )
                self.conn.commit()
            except sqlite3.Error as exc:
                raise CacheStoreIOError(f"Failed to write cache entry {key!r}: {exc}") from exc

    def delete_entry(self, key: str) -> None:
        with self._lock:
            try:
                self.conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                self.conn.commit()
            except sqlite3.Error as exc:
                raise CacheStoreIOError(f"Failed to delete cache entry {key!r}: {exc}") from exc

    def delete_all(self) -> None:
        with self._lock:
            try:
                self.conn.execute("DELETE FROM cache_entries")
                self.conn.commit()
            except sqlite3.Error as exc:
                raise CacheStoreIOError(f"Failed to clear cache entries: {exc}") from exc

    def close(self) -> None:
        with self._lock:
            if self.conn:
                self.conn.close()


class JsonDirectoryPersistence(CachePersistence):
    """One JSON file per entry, named after the SHA-256 of the key."""

    def __init__(self, cache_dir: Union[str, Path] = ".cache") -> None:
        self.cache_dir = Path(cache_dir)
        self._lock = threading.RLock()
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheStoreIOError(f"Unable to create cache directory {self.cache_dir}: {exc}") from exc

    def _path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}.json"

    def read_all(self) -> Dict[str, bytes]:
        records: Dict[str, bytes] = {}
        with self._lock:
            try:
                paths = sorted(self.cache_dir.glob("*.json"))
            except OSError as exc:
                raise CacheStoreIOError(f"Failed to list {self.cache_dir}: {exc}") from exc
            for path in paths:
                try:
                    with open(path, "r", encoding="utf-8") as handle:
                        data = json.load(handle)
                    records[data["key"]] = base64.b64decode(data["record"])
                except (OSError, ValueError, KeyError, TypeError) as exc:
                    # Unreadable file: drop it so it does not shadow future writes.
                    logger.warning("Discarding unreadable cache file %s: %s", path.name, exc)
                    try:
                        path.unlink(missing_ok=True)
                    except OSError as unlink_exc:
                        logger.warning("Could not remove cache file %s: %s", path.name, unlink_exc)
        return records

    def write_entry(self, key: str, data: bytes) -> None:
        path = self._path_for(key)
        tmp_path = path.with_suffix(".tmp")
        document = {"key": key, "record": base64.b64encode(data).decode("ascii")}
        with self._lock:
            try:
                with open(tmp_path, "w", encoding="utf-8") as handle:
                    json.dump(document, handle, ensure_ascii=False)
                os.replace(tmp_path, path)
            except OSError as exc:
                raise CacheStoreIOError(f"Failed to write cache file for {key!r}: {exc}") from exc

    def delete_entry(self, key: str) -> None:
        with self._lock:
            try:
                self._path_for(key).unlink(missing_ok=True)
            except OSError as exc:
                raise CacheStoreIOError(f"Failed to delete cache file for {key!r}: {exc}") from exc

    def delete_all(self) -> None:
        with self._lock:
            try:
                for path in self.cache_dir.glob("*.json"):
                    path.unlink(missing_ok=True)
            except OSError as exc:
                raise CacheStoreIOError(f"Failed to clear {self.cache_dir}: {exc}") from exc
