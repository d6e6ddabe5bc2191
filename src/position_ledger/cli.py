"""Command line interface for position_ledger utilities."""

from __future__ import annotations

import argparse
import json
import shutil
import sqlite3
import sys
from contextlib import closing
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable

from position_ledger.config import AppConfig, load_config
from position_ledger.ledger.exceptions import LedgerError, LedgerSchemaError
from position_ledger.ledger.models import Position
from position_ledger.ledger.service import LedgerService
from position_ledger.ledger.store import (
    CURRENT_SCHEMA_VERSION,
    SchemaStatus,
    SQLiteDocumentStore,
    ensure_ledger_schema,
    ensure_ledger_tables,
)
from position_ledger.logging_config import configure_logging

DEFAULT_DB_PATH = "ledger.db"


def _add_db_path_argument(subparser: argparse.ArgumentParser) -> None:
    """Attach the standard --db-path argument to a database maintenance subparser."""

    subparser.add_argument(
        "--db-path",
        default=DEFAULT_DB_PATH,
        help=f"Path to the SQLite ledger store (defaults to {DEFAULT_DB_PATH})",
    )


def _add_ledger_arguments(subparser: argparse.ArgumentParser) -> None:
    """Attach --config and an optional --db-path override to a ledger subparser."""

    subparser.add_argument("--config", type=Path, help="Path to config.yaml (defaults to the user config dir)")
    subparser.add_argument("--db-path", help="Override the ledger DB path from the configuration")


def _db_path_exists(db_path: str) -> bool:
    """Return whether the given DB path exists on disk."""

    return Path(db_path).expanduser().resolve().exists()


def _print_error(message: str) -> int:
    """Print an error message and return a non-zero exit code."""

    print(message)
    return 1


def _schema_error_text(prefix: str, exc: LedgerSchemaError) -> str:
    return f"{prefix}: stored schema version {exc.found} is incompatible with expected {exc.expected}."


def _load_app_config(args: argparse.Namespace) -> AppConfig:
    config = load_config(args.config)
    if args.db_path:
        config = replace(config, ledger=replace(config.ledger, db_path=args.db_path))
    return config


def _open_service(args: argparse.Namespace) -> LedgerService:
    config = _load_app_config(args)
    store = SQLiteDocumentStore(db_path=config.ledger.db_path, auto_migrate=config.ledger.auto_migrate_schema)
    return LedgerService(store, config.ledger)


def _print_position(position: Position) -> None:
    print(json.dumps(position.to_document(), indent=2, sort_keys=True))


def _get_schema_version(db_path: str) -> int | None:
    """Fetch the stored schema version from the ledger meta table, if present."""

    conn = sqlite3.connect(db_path)
    try:
        has_meta = (
            conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='meta'").fetchone()
            is not None
        )
        if not has_meta:
            return None
        row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    finally:
        conn.close()

    if row is None:
        return None

    try:
        return int(row[0])
    except (TypeError, ValueError):
        raise LedgerSchemaError(found=row[0], expected=CURRENT_SCHEMA_VERSION)


def run_migrate_db(db_path: str) -> SchemaStatus:
    """Run migrations for the SQLite ledger store at ``db_path``."""

    with closing(sqlite3.connect(db_path)) as conn:
        status = ensure_ledger_schema(conn, CURRENT_SCHEMA_VERSION, migrate=True)
        ensure_ledger_tables(conn)
        conn.commit()

    return status


def print_schema_version(db_path: str) -> SchemaStatus:
    """Ensure metadata exists and return the stored ledger schema version."""

    with closing(sqlite3.connect(db_path)) as conn:
        status = ensure_ledger_schema(conn, CURRENT_SCHEMA_VERSION, migrate=False)
        conn.commit()

    return status


def _migrate_db_command(args: argparse.Namespace) -> int:
    """Run ledger schema migrations for the SQLite store at --db-path."""

    print(f"Starting migration for {args.db_path}")

    try:
        stored_version = _get_schema_version(args.db_path)
    except LedgerSchemaError as exc:
        return _print_error(_schema_error_text("Migration failed", exc))
    except sqlite3.Error as exc:
        return _print_error(f"Migration failed: {exc}")

    version_text = stored_version if stored_version is not None else "unknown"
    print(f"Stored schema version: {version_text}; target version: {CURRENT_SCHEMA_VERSION}")

    try:
        status = run_migrate_db(args.db_path)
    except LedgerSchemaError as exc:
        return _print_error(_schema_error_text("Migration failed", exc))
    except sqlite3.Error as exc:
        return _print_error(f"Migration failed: {exc}")

    print(f"Migration completed successfully to version {status.version}.")
    return 0


def _schema_version_command(args: argparse.Namespace) -> int:
    """Display the current ledger schema version stored at --db-path."""

    resolved_path = Path(args.db_path).expanduser().resolve()

    try:
        status = print_schema_version(resolved_path.as_posix())
    except LedgerSchemaError as exc:
        return _print_error(_schema_error_text("Failed to read schema version", exc))
    except sqlite3.Error as exc:
        return _print_error(f"Failed to read schema version: {exc}")

    if status.initialized:
        print("Schema version not set; meta table or schema_version row is missing.")
        return 0

    print(f"Schema version: {status.version}")
    return 0


def _db_backup_command(args: argparse.Namespace) -> int:
    """Create a timestamped backup of the ledger database at --db-path."""

    db_path = Path(args.db_path).expanduser().resolve()

    if not _db_path_exists(db_path.as_posix()):
        return _print_error(f"DB file not found: {db_path}")

    timestamp = datetime.now().strftime("%Y%m%d%H%M")
    backup_path = db_path.with_name(f"{db_path.name}.{timestamp}.bak")

    try:
        shutil.copy2(db_path, backup_path)
    except OSError as exc:
        return _print_error(f"Failed to create backup: {exc}")

    print(f"Backup created at {backup_path}")

    if args.keep is None or args.keep <= 0:
        return 0

    prefix = f"{db_path.name}."
    backups = []
    for candidate in db_path.parent.glob(f"{db_path.name}.*.bak"):
        timestamp_part = candidate.name[len(prefix) : -4]
        if len(timestamp_part) != 12 or not timestamp_part.isdigit():
            continue
        backups.append((timestamp_part, candidate))

    backups.sort(key=lambda item: item[0], reverse=True)
    removals = backups[args.keep :]

    if not removals:
        print("No old backups removed.")
        return 0

    print("Removed old backups:")
    for _, backup in removals:
        try:
            backup.unlink()
        except OSError as exc:
            return _print_error(f"Failed to remove old backup {backup}: {exc}")
        print(f"- {backup}")

    return 0


def _db_info_command(args: argparse.Namespace) -> int:
    """Display schema version and document counts for the ledger database at --db-path."""

    resolved_path = Path(args.db_path).expanduser().resolve()

    if not _db_path_exists(resolved_path.as_posix()):
        return _print_error(f"DB file not found: {resolved_path}")

    try:
        schema_version = _get_schema_version(resolved_path.as_posix())
    except LedgerSchemaError as exc:
        return _print_error(_schema_error_text("Failed to read schema version", exc))
    except sqlite3.Error as exc:
        return _print_error(f"Failed to read schema version: {exc}")

    try:
        with closing(sqlite3.connect(resolved_path.as_posix())) as conn:
            existing_tables = {
                row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            }

            version_text = schema_version if schema_version is not None else "unknown"
            print(f"DB path: {resolved_path}")
            print(f"Schema version: {version_text}")

            if "documents" not in existing_tables:
                print("documents: (missing)")
                return 0

            rows = conn.execute(
                "SELECT collection, COUNT(*) FROM documents GROUP BY collection ORDER BY collection"
            ).fetchall()
    except sqlite3.Error as exc:
        return _print_error(f"Failed to read DB info: {exc}")

    if not rows:
        print("documents: 0 rows")
    for collection, count in rows:
        print(f"{collection}: {count} documents")
    return 0


def _db_check_command(args: argparse.Namespace) -> int:
    """Run PRAGMA integrity_check against the ledger database at --db-path."""

    resolved_path = Path(args.db_path).expanduser().resolve()

    if not _db_path_exists(resolved_path.as_posix()):
        return _print_error(f"DB file not found: {resolved_path}")

    try:
        with closing(sqlite3.connect(resolved_path.as_posix())) as conn:
            row = conn.execute("PRAGMA integrity_check").fetchone()
    except sqlite3.Error as exc:
        return _print_error(f"Failed to run integrity check: {exc}")

    result = row[0] if row else None
    print(f"PRAGMA integrity_check: {result}")

    return 0 if result == "ok" else 1


def _recalculate_command(args: argparse.Namespace) -> int:
    """Rebuild one position from the full transaction ledger."""

    try:
        position = _open_service(args).recalculate_position(args.user, args.asset)
    except LedgerError as exc:
        return _print_error(f"Recalculation failed: {exc}")

    _print_position(position)
    return 0


def _rebuild_command(args: argparse.Namespace) -> int:
    """Recalculate every position of a user."""

    try:
        positions = _open_service(args).rebuild_positions(args.user)
    except LedgerError as exc:
        return _print_error(f"Rebuild failed: {exc}")

    for position in positions:
        print(f"{position.id}: {position.status.value} size={position.current_size} avg={position.avg_entry_price}")
    print(f"Rebuilt {len(positions)} positions for {args.user}.")
    return 0


def _show_position_command(args: argparse.Namespace) -> int:
    """Print the open position for a user and asset."""

    try:
        position = _open_service(args).get_open_position(args.user, args.asset)
    except LedgerError as exc:
        return _print_error(f"Failed to load position: {exc}")

    if position is None:
        print(f"No open position for {args.user}/{args.asset.upper()}.")
        return 0

    _print_position(position)
    return 0


def _migrate_transactions_command(args: argparse.Namespace) -> int:
    """Upgrade legacy transaction documents of a user."""

    try:
        migrated = _open_service(args).migrate_transactions(args.user)
    except LedgerError as exc:
        return _print_error(f"Transaction migration failed: {exc}")

    print(f"Migrated {migrated} transaction documents for {args.user}.")
    return 0


def _serve_command(args: argparse.Namespace) -> int:
    """Serve the HTTP API with uvicorn."""

    import uvicorn

    from position_ledger.api.api import create_api
    from position_ledger.api.context import build_app_context

    config = _load_app_config(args)
    configure_logging(env=config.env)
    if not config.api.enabled:
        return _print_error("The HTTP API is disabled in the configuration (api.enabled).")

    try:
        context = build_app_context(config)
    except LedgerError as exc:
        return _print_error(f"Failed to open ledger: {exc}")

    uvicorn.run(
        create_api(context),
        host=args.host or config.api.host,
        port=args.port or config.api.port,
        log_config=None,
    )
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="position-ledger", description="Position ledger utilities")
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser("migrate-db", help="Run ledger DB migrations against the SQLite store")
    _add_db_path_argument(migrate_parser)
    migrate_parser.set_defaults(func=_migrate_db_command)

    version_parser = subparsers.add_parser(
        "db-schema-version", help="Show the stored schema version for the SQLite ledger DB"
    )
    _add_db_path_argument(version_parser)
    version_parser.set_defaults(func=_schema_version_command)

    backup_parser = subparsers.add_parser("db-backup", help="Create a timestamped backup of the SQLite ledger DB")
    _add_db_path_argument(backup_parser)
    backup_parser.add_argument(
        "--keep",
        type=int,
        help="Retain only the N most recent backups (older backups will be deleted)",
    )
    backup_parser.set_defaults(func=_db_backup_command)

    db_info_parser = subparsers.add_parser(
        "db-info", help="Show schema version and document counts for the SQLite ledger DB"
    )
    _add_db_path_argument(db_info_parser)
    db_info_parser.set_defaults(func=_db_info_command)

    db_check_parser = subparsers.add_parser("db-check", help="Run PRAGMA integrity_check against the SQLite ledger DB")
    _add_db_path_argument(db_check_parser)
    db_check_parser.set_defaults(func=_db_check_command)

    recalculate_parser = subparsers.add_parser(
        "recalculate", help="Rebuild one position from its full transaction history"
    )
    _add_ledger_arguments(recalculate_parser)
    recalculate_parser.add_argument("--user", required=True)
    recalculate_parser.add_argument("--asset", required=True)
    recalculate_parser.set_defaults(func=_recalculate_command)

    rebuild_parser = subparsers.add_parser("rebuild", help="Recalculate every position of a user")
    _add_ledger_arguments(rebuild_parser)
    rebuild_parser.add_argument("--user", required=True)
    rebuild_parser.set_defaults(func=_rebuild_command)

    show_parser = subparsers.add_parser("show-position", help="Print the open position for a user and asset")
    _add_ledger_arguments(show_parser)
    show_parser.add_argument("--user", required=True)
    show_parser.add_argument("--asset", required=True)
    show_parser.set_defaults(func=_show_position_command)

    migrate_tx_parser = subparsers.add_parser(
        "migrate-transactions", help="Upgrade legacy transaction documents of a user"
    )
    _add_ledger_arguments(migrate_tx_parser)
    migrate_tx_parser.add_argument("--user", required=True)
    migrate_tx_parser.set_defaults(func=_migrate_transactions_command)

    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP API with uvicorn")
    _add_ledger_arguments(serve_parser)
    serve_parser.add_argument("--host", help="Override the configured API host")
    serve_parser.add_argument("--port", type=int, help="Override the configured API port")
    serve_parser.set_defaults(func=_serve_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point for the `position-ledger` console script."""

    parser = _build_parser()
    args = parser.parse_args(argv)
    command: Callable[[argparse.Namespace], int] = getattr(args, "func")
    return command(args)


if __name__ == "__main__":
    sys.exit(main())
