"""
============================================================
FLOW-PRESSURE v1.0 - Entity Store
============================================================
CRUD access to the entity backend (StockPressure, AutoTrade,
AccountState, ...), local or remote.

Two implementations share one contract:
- LocalEntityStore: one JSON file per entity under DATA_DIR,
  atomic writes guarded by a cross-platform file lock.
- RemoteEntityStore: REST calls against a hosted entity backend
  (BAAS_BASE_URL), retried with exponential backoff.

Record shape:
    Every record is a plain dict carrying ``id``, ``created_date`` and
    ``updated_date`` in addition to its entity fields.

Sorting:
    ``sort="field"`` ascending, ``sort="-field"`` descending,
    e.g. ``store.list("StockPressure", sort="-created_date", limit=50)``.

Usage:
    from entity_store import get_store

    store = get_store()
    trade = store.create("AutoTrade", {"symbol": "AAPL", "status": "OPEN"})
    store.update("AutoTrade", trade["id"], {"status": "CLOSED"})
    open_trades = store.filter("AutoTrade", {"status": "OPEN"})
============================================================
"""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

import requests
from filelock import FileLock
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import get_logger, get_settings

logger = get_logger(__name__)
settings = get_settings()

Record = Dict[str, Any]

_ENTITY_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


# ──────────────────────────────────────────────────────────
# ERRORS
# ──────────────────────────────────────────────────────────


class EntityStoreError(Exception):
    """Raised when the entity backend cannot complete an operation."""


class EntityNotFoundError(EntityStoreError):
    """Raised when a record id does not exist for an entity."""

    def __init__(self, entity: str, record_id: str) -> None:
        super().__init__(f"{entity} record not found: {record_id}")
        self.entity = entity
        self.record_id = record_id


# ──────────────────────────────────────────────────────────
# HELPERS
# ──────────────────────────────────────────────────────────


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _check_entity_name(entity: str) -> str:
    if not entity or not _ENTITY_NAME_RE.match(entity):
        raise EntityStoreError(f"Invalid entity name: {entity!r}")
    return entity


def sort_records(records: Iterable[Record], sort: Optional[str]) -> List[Record]:
    """
    Sort records by a field name, ``-field`` for descending.

    Records missing the field sort after those that have it in both
    directions.
    """
    rows = list(records)
    if not sort:
        return rows

    descending = sort.startswith("-")
    field_name = sort.lstrip("-+")

    present = [r for r in rows if r.get(field_name) is not None]
    missing = [r for r in rows if r.get(field_name) is None]
    present.sort(key=lambda r: r[field_name], reverse=descending)
    return present + missing


def matches(record: Record, query: Dict[str, Any]) -> bool:
    """Return True when every key in ``query`` equals the record value."""
    return all(record.get(key) == value for key, value in query.items())


@contextmanager
def file_lock(file_path: Path, timeout: float = 30.0) -> Iterator[FileLock]:
    """
    Context manager providing an exclusive cross-process file lock.

    Uses a separate ".lock" file alongside the target file.

    Args:
        file_path: Path for which to acquire the lock.
        timeout: Seconds to wait before giving up.

    Yields:
        The held FileLock instance.
    """
    lock_path = file_path.parent / f"{file_path.name}.lock"
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock = FileLock(str(lock_path), timeout=timeout)
    with lock:
        yield lock


def atomic_write_json(file_path: Path, data: Any) -> None:
    """
    Write JSON atomically to a file to prevent corruption.

    Serializes into a temp file in the same directory, fsyncs it and
    atomically replaces the target with os.replace.

    Raises:
        IOError: If the write or replace operation fails.
    """
    file_path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_path = tempfile.mkstemp(
        dir=str(file_path.parent),
        prefix=f".{file_path.name}.",
        suffix=".tmp",
    )
    tmp_file = Path(tmp_path)

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False, default=str)
            fh.flush()
            os.fsync(fh.fileno())

        os.replace(tmp_file, file_path)
    except Exception as exc:  # noqa: BLE001
        tmp_file.unlink(missing_ok=True)
        raise IOError(f"Failed to atomically write {file_path}: {exc}") from exc


# ──────────────────────────────────────────────────────────
# STORE CONTRACT
# ──────────────────────────────────────────────────────────


class EntityStore:
    """
    Base class describing the entity backend contract.

    Subclasses implement the storage primitives; ``filter`` and
    ``bulk_create`` have generic implementations built on them.
    """

    def list(
        self,
        entity: str,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        raise NotImplementedError

    def filter(
        self,
        entity: str,
        query: Dict[str, Any],
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        rows = [r for r in self.list(entity, sort=sort) if matches(r, query)]
        return rows[:limit] if limit else rows

    def get(self, entity: str, record_id: str) -> Record:
        raise NotImplementedError

    def create(self, entity: str, data: Dict[str, Any]) -> Record:
        raise NotImplementedError

    def bulk_create(self, entity: str, rows: Iterable[Dict[str, Any]]) -> List[Record]:
        return [self.create(entity, row) for row in rows]

    def update(self, entity: str, record_id: str, data: Dict[str, Any]) -> Record:
        raise NotImplementedError

    def delete(self, entity: str, record_id: str) -> None:
        raise NotImplementedError

    def first(
        self,
        entity: str,
        query: Optional[Dict[str, Any]] = None,
        sort: str = "-created_date",
    ) -> Optional[Record]:
        """Return the first record matching ``query`` under ``sort``, or None."""
        rows = self.filter(entity, query or {}, sort=sort, limit=1)
        return rows[0] if rows else None


# ──────────────────────────────────────────────────────────
# LOCAL JSON STORE
# ──────────────────────────────────────────────────────────


class LocalEntityStore(EntityStore):
    """
    File-backed entity store.

    Layout: ``<root>/<Entity>.json`` holding a JSON list of records.
    Every mutation is a read-modify-write under the entity's file lock,
    so the scheduler and the dashboard may share one data directory.
    """

    def __init__(self, root: Optional[str] = None) -> None:
        self.root = Path(root or settings.data_dir)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, entity: str) -> Path:
        return self.root / f"{_check_entity_name(entity)}.json"

    def _read(self, path: Path) -> List[Record]:
        if not path.exists():
            return []
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except json.JSONDecodeError as exc:
            raise EntityStoreError(f"Corrupt entity file {path}: {exc}") from exc
        if not isinstance(data, list):
            raise EntityStoreError(f"Entity file {path} does not hold a list.")
        return data

    def list(
        self,
        entity: str,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        rows = sort_records(self._read(self._path(entity)), sort)
        return rows[:limit] if limit else rows

    def get(self, entity: str, record_id: str) -> Record:
        for row in self._read(self._path(entity)):
            if row.get("id") == record_id:
                return row
        raise EntityNotFoundError(entity, record_id)

    def create(self, entity: str, data: Dict[str, Any]) -> Record:
        path = self._path(entity)
        now = utc_now_iso()
        record = dict(data)
        record["id"] = record.get("id") or uuid.uuid4().hex
        record.setdefault("created_date", now)
        record["updated_date"] = now

        with file_lock(path):
            rows = self._read(path)
            rows.append(record)
            atomic_write_json(path, rows)

        logger.debug("Created %s %s", entity, record["id"])
        return record

    def bulk_create(self, entity: str, rows: Iterable[Dict[str, Any]]) -> List[Record]:
        path = self._path(entity)
        now = utc_now_iso()
        created: List[Record] = []
        for data in rows:
            record = dict(data)
            record["id"] = record.get("id") or uuid.uuid4().hex
            record.setdefault("created_date", now)
            record["updated_date"] = now
            created.append(record)

        with file_lock(path):
            existing = self._read(path)
            existing.extend(created)
            atomic_write_json(path, existing)

        logger.debug("Bulk created %d %s records", len(created), entity)
        return created

    def update(self, entity: str, record_id: str, data: Dict[str, Any]) -> Record:
        path = self._path(entity)
        with file_lock(path):
            rows = self._read(path)
            for idx, row in enumerate(rows):
                if row.get("id") == record_id:
                    merged = {**row, **data}
                    merged["id"] = record_id
                    merged["created_date"] = row.get("created_date")
                    merged["updated_date"] = utc_now_iso()
                    rows[idx] = merged
                    atomic_write_json(path, rows)
                    return merged
        raise EntityNotFoundError(entity, record_id)

    def delete(self, entity: str, record_id: str) -> None:
        path = self._path(entity)
        with file_lock(path):
            rows = self._read(path)
            remaining = [r for r in rows if r.get("id") != record_id]
            if len(remaining) == len(rows):
                raise EntityNotFoundError(entity, record_id)
            atomic_write_json(path, remaining)
        logger.debug("Deleted %s %s", entity, record_id)

    # ──────────────────────────────────────────────────────
    # BACKUP & RESTORE
    # ──────────────────────────────────────────────────────

    def backup(self, backup_dir: Optional[str] = None) -> Optional[Path]:
        """
        Copy every entity file into a timestamped backup directory.

        Returns:
            Path of the backup directory, or None when nothing was copied.
        """
        files = sorted(self.root.glob("*.json"))
        if not files:
            logger.warning("No entity files under %s; backup skipped.", self.root)
            return None

        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
        target = Path(backup_dir or settings.backup_dir) / f"entities_{timestamp}"
        target.mkdir(parents=True, exist_ok=True)

        for path in files:
            with file_lock(path):
                shutil.copy2(path, target / path.name)

        logger.info("Backed up %d entity files to %s.", len(files), target)
        return target

    def restore(self, backup_path: Path) -> bool:
        """
        Restore entity files from a backup directory.

        The current state is backed up first.

        Returns:
            True if restore succeeded; False if the backup does not exist.
        """
        backup_path = Path(backup_path)
        if not backup_path.is_dir():
            logger.error("Backup directory not found: %s", backup_path)
            return False

        self.backup()
        for source in sorted(backup_path.glob("*.json")):
            dest = self.root / source.name
            with file_lock(dest):
                shutil.copy2(source, dest)

        logger.info("Entity store restored from %s.", backup_path)
        return True


# ──────────────────────────────────────────────────────────
# REMOTE REST STORE
# ──────────────────────────────────────────────────────────


_RETRYABLE = (requests.exceptions.ConnectionError, requests.exceptions.Timeout)


class RemoteEntityStore(EntityStore):
    """
    Entity store backed by a hosted REST entity service.

    Endpoints:
        GET    {base}/apps/{app_id}/entities/{Entity}?sort=&limit=&q=
        GET    {base}/apps/{app_id}/entities/{Entity}/{id}
        POST   {base}/apps/{app_id}/entities/{Entity}
        POST   {base}/apps/{app_id}/entities/{Entity}/bulk
        PUT    {base}/apps/{app_id}/entities/{Entity}/{id}
        DELETE {base}/apps/{app_id}/entities/{Entity}/{id}
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        app_id: Optional[str] = None,
        api_key: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = (base_url or settings.baas_base_url or "").rstrip("/")
        self.app_id = app_id or settings.baas_app_id
        if not self.base_url or not self.app_id:
            raise EntityStoreError("Remote entity store requires a base URL and app id.")

        self.session = session or requests.Session()
        key = api_key or settings.baas_api_key
        if key:
            self.session.headers.update({"api_key": key})
        self.session.headers.update({"Content-Type": "application/json"})
        self.timeout = settings.request_timeout_seconds

    def _url(self, entity: str, suffix: str = "") -> str:
        url = f"{self.base_url}/apps/{self.app_id}/entities/{_check_entity_name(entity)}"
        return f"{url}/{suffix}" if suffix else url

    @retry(
        retry=retry_if_exception_type(_RETRYABLE),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as exc:
            logger.error("Entity backend %s %s failed: %s", method, url, exc)
            raise EntityStoreError(str(exc)) from exc
        if not response.content:
            return None
        return response.json()

    def list(
        self,
        entity: str,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        params: Dict[str, Any] = {}
        if sort:
            params["sort"] = sort
        if limit:
            params["limit"] = limit
        return self._request("GET", self._url(entity), params=params) or []

    def filter(
        self,
        entity: str,
        query: Dict[str, Any],
        sort: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        params: Dict[str, Any] = {"q": json.dumps(query)}
        if sort:
            params["sort"] = sort
        if limit:
            params["limit"] = limit
        return self._request("GET", self._url(entity), params=params) or []

    def get(self, entity: str, record_id: str) -> Record:
        record = self._request("GET", self._url(entity, record_id))
        if record is None:
            raise EntityNotFoundError(entity, record_id)
        return record

    def create(self, entity: str, data: Dict[str, Any]) -> Record:
        return self._request("POST", self._url(entity), json=data)

    def bulk_create(self, entity: str, rows: Iterable[Dict[str, Any]]) -> List[Record]:
        return self._request("POST", self._url(entity, "bulk"), json=list(rows)) or []

    def update(self, entity: str, record_id: str, data: Dict[str, Any]) -> Record:
        record = self._request("PUT", self._url(entity, record_id), json=data)
        if record is None:
            raise EntityNotFoundError(entity, record_id)
        return record

    def delete(self, entity: str, record_id: str) -> None:
        self._request("DELETE", self._url(entity, record_id))


# ──────────────────────────────────────────────────────────
# FACTORY
# ──────────────────────────────────────────────────────────


_STORE: Optional[EntityStore] = None


def get_store() -> EntityStore:
    """
    Return the process-wide entity store.

    Remote when BAAS_BASE_URL is configured, local JSON files otherwise.
    """
    global _STORE
    if _STORE is None:
        if settings.baas_base_url:
            _STORE = RemoteEntityStore()
            logger.info("Using remote entity store at %s.", settings.baas_base_url)
        else:
            _STORE = LocalEntityStore()
            logger.info("Using local entity store at %s.", settings.data_dir)
    return _STORE


def set_store(store: Optional[EntityStore]) -> None:
    """Replace the process-wide store (tests, alternate backends)."""
    global _STORE
    _STORE = store


def log_error(
    store: EntityStore,
    source: str,
    message: str,
    severity: str = "MEDIUM",
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Record an ErrorLog entry.

    Failures to write the log are themselves only logged, never raised,
    so the calling trade flow can report its own error.
    """
    try:
        store.create(
            "ErrorLog",
            {
                "timestamp": utc_now_iso(),
                "source": source,
                "message": message,
                "severity": severity,
                "details": json.dumps(details, default=str) if details else None,
            },
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("Failed to write ErrorLog (%s: %s): %s", source, message, exc)
