# src/position_ledger/ledger/store.py

import abc
import copy
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from position_ledger.logging_config import structured_log_extra

from .exceptions import LedgerSchemaError, StorageError
from .migrations import _ensure_meta_table, _set_schema_version, run_migrations

logger = logging.getLogger(__name__)

CURRENT_SCHEMA_VERSION = 2

Document = Dict[str, Any]


@dataclass
class SchemaStatus:
    version: int
    migrated: bool
    initialized: bool

    @property
    def changed(self) -> bool:
        return self.migrated or self.initialized


def ensure_ledger_schema(
    conn: sqlite3.Connection, target_version: int = CURRENT_SCHEMA_VERSION, migrate: bool = True
) -> SchemaStatus:
    """Ensure the ledger DB matches the expected schema version.

    Missing schema metadata initializes the DB to ``target_version``.
    If ``migrate`` is True, migrations will be applied when the stored
    version is behind. A schema ahead of ``target_version`` raises
    :class:`LedgerSchemaError`.
    """

    _ensure_meta_table(conn)
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()

    if row is None:
        _set_schema_version(conn, target_version)
        return SchemaStatus(version=target_version, migrated=False, initialized=True)

    try:
        stored_version = int(row[0])
    except (TypeError, ValueError) as exc:
        logger.exception(
            "Invalid schema version stored in ledger DB",
            extra=structured_log_extra(event="ledger_schema_invalid"),
        )
        raise LedgerSchemaError(found=row[0], expected=target_version) from exc

    if stored_version > target_version:
        raise LedgerSchemaError(found=stored_version, expected=target_version)

    migrated = False
    if migrate and stored_version < target_version:
        try:
            run_migrations(conn, stored_version, target_version)
        except (sqlite3.Error, ValueError) as exc:
            logger.exception(
                "Failed to run ledger migrations from v%s to v%s",
                stored_version,
                target_version,
                extra=structured_log_extra(
                    event="ledger_migration_failed", from_version=stored_version, to_version=target_version
                ),
            )
            raise LedgerSchemaError(found=stored_version, expected=target_version) from exc
        migrated = True
        stored_version = target_version

    return SchemaStatus(version=stored_version, migrated=migrated, initialized=False)


def ensure_ledger_tables(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            key TEXT NOT NULL,
            data_json TEXT NOT NULL,
            updated_at REAL,
            PRIMARY KEY (collection, key)
        )
        """
    )
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)")
    conn.commit()


class DocumentStore(abc.ABC):
    """Minimal document database used by the ledger.

    Documents are plain JSON-compatible dicts addressed by ``(collection, key)``.
    Returned documents always carry their key under ``"id"``.
    """

    @abc.abstractmethod
    def get(self, collection: str, key: str) -> Optional[Document]:
        """Return the document or ``None`` when it does not exist."""
        pass

    @abc.abstractmethod
    def set(self, collection: str, key: str, doc: Mapping[str, Any], merge: bool = False) -> None:
        """Write a document, replacing it or merging top-level fields into it."""
        pass

    @abc.abstractmethod
    def query(self, collection: str, filters: Optional[Mapping[str, Any]] = None) -> List[Document]:
        """Return every document whose fields equal all ``filters``, ordered by key."""
        pass

    @abc.abstractmethod
    def delete(self, collection: str, key: str) -> bool:
        """Remove a document, returning whether it existed."""
        pass


def _with_id(key: str, doc: Mapping[str, Any]) -> Document:
    result = dict(doc)
    if result.get("id") is None:
        result["id"] = key
    return result


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe dict-backed store; documents are copied on the way in and out."""

    def __init__(self):
        self._lock = threading.Lock()
        self._collections: Dict[str, Dict[str, Document]] = {}

    def get(self, collection, key):
        with self._lock:
            doc = self._collections.get(collection, {}).get(key)
            return _with_id(key, copy.deepcopy(doc)) if doc is not None else None

    def set(self, collection, key, doc, merge=False):
        with self._lock:
            docs = self._collections.setdefault(collection, {})
            existing = docs.get(key)
            if merge and existing is not None:
                merged = dict(existing)
                merged.update(copy.deepcopy(dict(doc)))
                docs[key] = merged
            else:
                docs[key] = copy.deepcopy(dict(doc))

    def query(self, collection, filters=None):
        filters = dict(filters or {})
        with self._lock:
            docs = self._collections.get(collection, {})
            return [
                _with_id(key, copy.deepcopy(doc))
                for key, doc in sorted(docs.items())
                if all(doc.get(field) == value for field, value in filters.items())
            ]

    def delete(self, collection, key):
        with self._lock:
            return self._collections.get(collection, {}).pop(key, None) is not None


class SQLiteDocumentStore(DocumentStore):
    def __init__(self, db_path: str = "ledger.db", auto_migrate: bool = True):
        self.db_path = str(Path(db_path).expanduser())
        self.auto_migrate = auto_migrate
        self._init_db()

    def _init_db(self):
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            status = ensure_ledger_schema(conn, CURRENT_SCHEMA_VERSION, migrate=self.auto_migrate)
            if status.version != CURRENT_SCHEMA_VERSION:
                raise LedgerSchemaError(found=status.version, expected=CURRENT_SCHEMA_VERSION)
            ensure_ledger_tables(conn)

        if status.changed:
            logger.info(
                "Ledger DB schema at v%s",
                status.version,
                extra=structured_log_extra(
                    event="ledger_schema_ready",
                    schema_version=status.version,
                    migrated=status.migrated,
                    initialized=status.initialized,
                ),
            )

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"Unable to open ledger DB at {self.db_path}: {exc}") from exc

        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error(
                "Ledger DB operation failed: %s",
                exc,
                extra=structured_log_extra(event="ledger_storage_error", db_path=self.db_path),
            )
            raise StorageError(f"Ledger DB operation failed: {exc}") from exc
        finally:
            conn.close()

    def get_schema_version(self) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
        if row is None:
            return None
        try:
            return int(row[0])
        except (TypeError, ValueError):
            logger.warning(
                "Non-integer schema version stored in ledger DB", extra=structured_log_extra(event="schema_unknown")
            )
            return None

    def get(self, collection, key):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT data_json FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()
        return _with_id(key, json.loads(row[0])) if row is not None else None

    def set(self, collection, key, doc, merge=False):
        data = dict(doc)
        with self._connect() as conn:
            if merge:
                row = conn.execute(
                    "SELECT data_json FROM documents WHERE collection = ? AND key = ?",
                    (collection, key),
                ).fetchone()
                if row is not None:
                    existing = json.loads(row[0])
                    existing.update(data)
                    data = existing
            conn.execute(
                """
                INSERT INTO documents (collection, key, data_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(collection, key) DO UPDATE SET
                    data_json=excluded.data_json,
                    updated_at=excluded.updated_at
                """,
                (collection, key, json.dumps(data), time.time()),
            )

    def query(self, collection, filters=None):
        sql = "SELECT key, data_json FROM documents WHERE collection = ?"
        params: List[Any] = [collection]
        for field, value in (filters or {}).items():
            path = '$."{}"'.format(field.replace('"', '\\"'))
            if value is None:
                sql += " AND json_extract(data_json, ?) IS NULL"
                params.append(path)
            else:
                sql += " AND json_extract(data_json, ?) = ?"
                params.extend([path, value])
        sql += " ORDER BY key"

        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_with_id(key, json.loads(data_json)) for key, data_json in rows]

    def delete(self, collection, key):
        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM documents WHERE collection = ? AND key = ?",
                (collection, key),
            )
            return cursor.rowcount > 0
