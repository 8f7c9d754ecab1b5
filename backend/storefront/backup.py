"""
Database Backup
===============

Admin snapshot and restore of the storefront database.

Both directions use SQLite's online backup API on a connection from the
engine's own pool, so they work on a live database without closing the
engine:

    dump:    live db --backup()--> temp file --> bytes (download)
    restore: bytes (upload) --> temp file --check--> --backup()--> live db

Only SQLite is supported; other dialects raise BackupNotSupported.
"""

import os
import sqlite3
import tempfile

import structlog

from storefront.errors import BackupNotSupported, InvalidUpload

logger = structlog.get_logger(__name__)

SQLITE_HEADER = b"SQLite format 3\x00"

# a file without these is not a storefront database
REQUIRED_TABLES = {"users", "products", "orders", "order_items", "payments"}


def _require_sqlite(engine) -> None:
    if engine.dialect.name != "sqlite":
        raise BackupNotSupported()


def backup_filename(timestamp_ms: int) -> str:
    return f"backup_{timestamp_ms}.db"


def dump(engine) -> bytes:
    """
    Snapshot the whole database into the bytes of a standalone SQLite file.

    Raises:
        BackupNotSupported: the engine is not SQLite
    """
    _require_sqlite(engine)
    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "snapshot.db")
        target = sqlite3.connect(path)
        raw = engine.raw_connection()
        try:
            raw.driver_connection.backup(target)
        finally:
            raw.close()
            target.close()
        with open(path, "rb") as fh:
            data = fh.read()

    logger.info("database_dumped", size=len(data))
    return data


def restore(engine, data: bytes) -> None:
    """
    Replace the live database with the SQLite file in ``data``.

    The file is checked before anything is overwritten: it must carry the
    SQLite header, open cleanly and hold the storefront tables.

    Raises:
        BackupNotSupported: the engine is not SQLite
        InvalidUpload: ``data`` is not a storefront SQLite database
    """
    _require_sqlite(engine)
    if not data.startswith(SQLITE_HEADER):
        raise InvalidUpload("Backup file is not a SQLite database")

    with tempfile.TemporaryDirectory() as tmp:
        path = os.path.join(tmp, "restore.db")
        with open(path, "wb") as fh:
            fh.write(data)

        source = sqlite3.connect(path)
        try:
            tables = {row[0] for row in source.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}
            missing = REQUIRED_TABLES - tables
            if missing:
                raise InvalidUpload(f"Backup file is missing tables: {', '.join(sorted(missing))}")

            raw = engine.raw_connection()
            try:
                source.backup(raw.driver_connection)
            finally:
                raw.close()
        except sqlite3.DatabaseError as exc:
            raise InvalidUpload("Backup file is not a readable SQLite database") from exc
        finally:
            source.close()

    logger.info("database_restored", size=len(data))
