"""Durable event store used for attack history and block records.

Two interchangeable backends share one small interface: a local JSON document
written atomically (the default) and a Firebase Realtime Database reached over
its REST API. Every backend failure surfaces as ``StoreUnavailable`` so callers
can degrade instead of failing a poll.
"""

from __future__ import annotations

import itertools
import json
import os
import tempfile
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

STORE_PATH = os.path.abspath(
    os.environ.get("EVE_MONITOR_STORE", os.path.join(os.path.dirname(__file__), "data", "store.json"))
)
MAX_RECORDS = int(os.environ.get("EVE_MONITOR_MAX_RECORDS", "1000"))
FIREBASE_URL = os.environ.get("EVE_MONITOR_FIREBASE_URL", "")
FIREBASE_AUTH = os.environ.get("EVE_MONITOR_FIREBASE_AUTH", "")
STORE_TIMEOUT = float(os.environ.get("EVE_MONITOR_STORE_TIMEOUT", "5"))


class StoreUnavailable(Exception):
    """The durable store could not be read or written."""


def write_json_atomic(path: str, payload: Any) -> None:
    """Write payload to path using a temp file + atomic rename to avoid corruption."""
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix="store-", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        try:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
        except OSError:
            pass


_key_counter = itertools.count()


def _new_key() -> str:
    # millis + sequence keeps lexical order equal to insertion order
    return f"{int(time.time() * 1000):013d}{next(_key_counter) % 1000000:06d}"


class JsonFileStore:
    """Collections of keyed records kept in a single JSON document on disk."""

    def __init__(self, path: str = STORE_PATH, max_records: int = MAX_RECORDS) -> None:
        self.path = path
        self.max_records = max_records
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except json.JSONDecodeError:
            # a truncated document is treated as empty rather than fatal
            return {}
        except (OSError, UnicodeDecodeError, RecursionError) as exc:
            # left untouched on disk; appends are skipped until someone looks at it
            raise StoreUnavailable(f"cannot read {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            return {}
        return {name: records for name, records in data.items() if isinstance(records, dict)}

    def _save(self, data: Dict[str, Dict[str, Any]]) -> None:
        try:
            write_json_atomic(self.path, data)
        except OSError as exc:
            raise StoreUnavailable(f"cannot write {self.path}: {exc}") from exc

    def append(self, collection: str, record: Dict[str, Any]) -> str:
        key = _new_key()
        with self._lock:
            data = self._load()
            records = data.setdefault(collection, {})
            records[key] = record
            if self.max_records > 0 and len(records) > self.max_records:
                for stale in sorted(records)[: len(records) - self.max_records]:
                    del records[stale]
            self._save(data)
        return key

    def read_latest(self, collection: str, limit: int) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            records = self._load().get(collection) or {}
        keys = sorted(records)
        if limit > 0:
            keys = keys[-limit:]
        return [(key, records[key]) for key in keys]

    def read_all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return dict(self._load().get(collection) or {})

    def update_fields(self, updates: Dict[str, Any]) -> None:
        """Apply ``{"collection/key/field": value}`` updates; ``None`` deletes the field."""
        if not updates:
            return
        with self._lock:
            data = self._load()
            for path, value in updates.items():
                parts = [part for part in path.split("/") if part]
                if not parts:
                    continue
                node: Dict[str, Any] = data
                for part in parts[:-1]:
                    child = node.get(part)
                    if not isinstance(child, dict):
                        child = {}
                        node[part] = child
                    node = child
                if value is None:
                    node.pop(parts[-1], None)
                else:
                    node[parts[-1]] = value
            self._save(data)

    def delete(self, path: str) -> None:
        parts = [part for part in path.split("/") if part]
        if not parts:
            return
        with self._lock:
            data = self._load()
            node: Any = data
            for part in parts[:-1]:
                node = node.get(part) if isinstance(node, dict) else None
                if node is None:
                    return
            if isinstance(node, dict):
                node.pop(parts[-1], None)
            self._save(data)


class FirebaseStore:
    """Firebase Realtime Database accessed through its REST endpoints."""

    def __init__(
        self,
        base_url: str = FIREBASE_URL,
        auth: str = FIREBASE_AUTH,
        timeout: float = STORE_TIMEOUT,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        path = path.strip("/")
        return f"{self.base_url}/{path}.json" if path else f"{self.base_url}/.json"

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        params = dict(kwargs.pop("params", {}) or {})
        if self.auth:
            params["auth"] = self.auth
        try:
            response = self.session.request(
                method, self._url(path), params=params, timeout=self.timeout, **kwargs
            )
            response.raise_for_status()
            return response.json()
        except (requests.RequestException, ValueError) as exc:
            raise StoreUnavailable(f"{method} {path or '/'} failed: {exc}") from exc

    def append(self, collection: str, record: Dict[str, Any]) -> str:
        payload = self._request("POST", collection, json=record) or {}
        return str(payload.get("name", ""))

    def read_latest(self, collection: str, limit: int) -> List[Tuple[str, Dict[str, Any]]]:
        params: Dict[str, Any] = {"orderBy": json.dumps("$key")}
        if limit > 0:
            params["limitToLast"] = limit
        data = self._request("GET", collection, params=params) or {}
        if not isinstance(data, dict):
            return []
        return [(key, data[key]) for key in sorted(data)]

    def read_all(self, collection: str) -> Dict[str, Dict[str, Any]]:
        data = self._request("GET", collection) or {}
        return data if isinstance(data, dict) else {}

    def update_fields(self, updates: Dict[str, Any]) -> None:
        if updates:
            self._request("PATCH", "", json=updates)

    def delete(self, path: str) -> None:
        self._request("DELETE", path)


def make_store() -> Any:
    """Pick the Firebase backend when a database URL is configured."""
    if FIREBASE_URL:
        return FirebaseStore()
    return JsonFileStore()
