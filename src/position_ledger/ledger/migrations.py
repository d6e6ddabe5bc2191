"""Database migrations for the ledger SQLite backend."""

from __future__ import annotations

import sqlite3
from typing import Callable, Dict


Migration = Callable[[sqlite3.Connection], None]


def _ensure_meta_table(conn: sqlite3.Connection) -> None:
    cursor = conn.cursor()
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """
    )
    conn.commit()


def _ensure_schema_version_row(conn: sqlite3.Connection, version: int) -> None:
    cursor = conn.cursor()
    cursor.execute(
        "INSERT OR IGNORE INTO meta (key, value) VALUES ('schema_version', ?)",
        (str(version),),
    )
    conn.commit()


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    cursor = conn.cursor()
    cursor.execute(
        """
        INSERT INTO meta (key, value)
        VALUES ('schema_version', ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value
        """,
        (str(version),),
    )
    conn.commit()


def _column_names(conn: sqlite3.Connection, table: str) -> set:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def migrate_1_to_2(conn: sqlite3.Connection) -> None:
    """Track write times on documents and index them by collection."""
    cursor = conn.cursor()
    # Version 1 layout, for databases that recorded the version before any write.
    cursor.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
            collection TEXT NOT NULL,
            key TEXT NOT NULL,
            data_json TEXT NOT NULL,
            PRIMARY KEY (collection, key)
        )
        """
    )
    if "updated_at" not in _column_names(conn, "documents"):
        cursor.execute("ALTER TABLE documents ADD COLUMN updated_at REAL")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)")


def run_migrations(conn: sqlite3.Connection, from_version: int, to_version: int) -> None:
    """Run ledger schema migrations sequentially."""
    if from_version == to_version:
        return

    if from_version > to_version:
        raise ValueError("from_version cannot be greater than to_version")

    _ensure_meta_table(conn)
    _ensure_schema_version_row(conn, from_version)

    migrations: Dict[int, Migration] = {
        1: migrate_1_to_2,
    }

    for version in range(from_version, to_version):
        migrate = migrations.get(version)
        if migrate is None:
            raise ValueError(f"No migration path from version {version} to {version + 1}")

        migrate(conn)
        _set_schema_version(conn, version + 1)
