"""
Tobby - Database Migration Runner

This module handles automatic schema migrations for the SQLite database.
Migrations are SQL files in tobby/migrations/ that are applied in order.

Migration files should be named: 001_description.sql, 002_description.sql, etc.

The schema_version table tracks which migrations have been applied.
"""

import re
import logging
import sqlite3
from pathlib import Path

from . import config

logger = logging.getLogger(__name__)

MIGRATION_PATTERN = re.compile(r'^(\d{3})_(.+)\.sql$')


def get_migrations_path():
    """Return the path to the migrations folder"""
    return Path(__file__).parent / "migrations"


def get_current_version(conn):
    """
    Get the current schema version from the database.

    Returns:
        int: The highest migration version applied, or 0 if no migrations
    """
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT MAX(version) FROM schema_version")
        result = cursor.fetchone()
        return result[0] if result[0] is not None else 0
    except sqlite3.OperationalError:
        # schema_version table doesn't exist yet (fresh database)
        return 0


def get_migrations(migrations_path=None):
    """
    List every migration file in version order.

    Returns:
        list: List of tuples (version, filepath, description)
    """
    migrations_path = Path(migrations_path) if migrations_path else get_migrations_path()

    migrations = []
    if migrations_path.exists():
        for file in sorted(migrations_path.glob('*.sql')):
            match = MIGRATION_PATTERN.match(file.name)
            if match:
                version = int(match.group(1))
                description = match.group(2).replace('_', ' ')
                migrations.append((version, file, description))

    return migrations


def apply_migration(conn, version, filepath, description):
    """
    Apply a single migration file to the database.

    Args:
        conn: SQLite connection
        version (int): Migration version number
        filepath (Path): Path to the migration SQL file
        description (str): Human-readable description

    Returns:
        bool: True if successful, False otherwise
    """
    cursor = conn.cursor()

    try:
        logger.info("[MIGRATION] Applying migration %03d: %s", version, description)

        with open(filepath, 'r', encoding='utf-8') as f:
            sql = f.read()

        # May contain multiple statements
        cursor.executescript(sql)

        cursor.execute("""
            INSERT INTO schema_version (version, description)
            VALUES (?, ?)
        """, (version, description))

        conn.commit()
        return True

    except sqlite3.Error as e:
        logger.error("[MIGRATION] Migration %03d failed: %s", version, e)
        conn.rollback()
        return False


def run_all_pending(db_path=None, migrations_path=None):
    """
    Run all pending migrations.

    Returns:
        int: Number of migrations applied, or -1 if a migration failed
    """
    db_path = Path(db_path) if db_path else config.get_db_path()

    if not db_path.exists():
        logger.warning("[MIGRATION] Database %s does not exist. Run 'tobby init-db' first.", db_path)
        return 0

    conn = sqlite3.connect(str(db_path))
    conn.execute("PRAGMA foreign_keys = ON;")

    try:
        current_version = get_current_version(conn)
        pending = [m for m in get_migrations(migrations_path) if m[0] > current_version]

        if not pending:
            return 0

        logger.info("[MIGRATION] Found %d pending migration(s)", len(pending))

        applied = 0
        for version, filepath, description in pending:
            if not apply_migration(conn, version, filepath, description):
                logger.error("[MIGRATION] Stopping at migration %03d", version)
                return -1
            applied += 1

        return applied

    finally:
        conn.close()


def list_migrations(db_path=None, migrations_path=None):
    """
    Report every migration and whether it has been applied.

    Returns:
        tuple: (current_version, [(version, description, applied bool), ...])
    """
    db_path = Path(db_path) if db_path else config.get_db_path()

    current_version = 0
    if db_path.exists():
        conn = sqlite3.connect(str(db_path))
        try:
            current_version = get_current_version(conn)
        finally:
            conn.close()

    return current_version, [
        (version, description, version <= current_version)
        for version, _, description in get_migrations(migrations_path)
    ]
