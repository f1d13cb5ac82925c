"""
Schema Migrations for RWE

Ordered, versioned schema changes applied against the ``schema_migrations``
tracking table. Every statement is idempotent ("IF NOT EXISTS",
"INSERT OR IGNORE") so a batch can be re-run after a partial history.

Usage:
    from database.migrations import run_migrations

    conn = sqlite3.connect('main.db')
    applied = run_migrations(conn)
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import List, Optional

from core.errors import MigrationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """A single schema change."""
    version: int
    name: str
    up_sql: str


# =============================================================================
# Registry
# =============================================================================

MIGRATIONS: List[Migration] = [
    Migration(
        version=1,
        name='initial_schema',
        up_sql='''
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                summary TEXT,
                notes TEXT
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                seq INTEGER NOT NULL,
                FOREIGN KEY(conversation_id) REFERENCES conversations(id)
            );

            CREATE TABLE IF NOT EXISTS mindmaps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                conversation_id INTEGER NOT NULL UNIQUE,
                title TEXT NOT NULL,
                nodes TEXT NOT NULL,
                connections TEXT NOT NULL,
                theme TEXT DEFAULT 'default',
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY(conversation_id) REFERENCES conversations(id)
            );

            CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);
            CREATE INDEX IF NOT EXISTS idx_messages_seq ON messages(seq);
            CREATE INDEX IF NOT EXISTS idx_mindmaps_conversation ON mindmaps(conversation_id);
        ''',
    ),
    Migration(
        version=2,
        name='add_user_preferences',
        up_sql='''
            CREATE TABLE IF NOT EXISTS user_preferences (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT UNIQUE NOT NULL,
                value TEXT,
                created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
            );

            INSERT OR IGNORE INTO user_preferences (key, value) VALUES ('theme', 'system');
            INSERT OR IGNORE INTO user_preferences (key, value) VALUES ('app_version', '1.0.0');
        ''',
    ),
]


MIGRATION_TABLE_SQL = '''
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version INTEGER PRIMARY KEY,
        name TEXT NOT NULL,
        applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
    )
'''


# =============================================================================
# Runner
# =============================================================================

def get_current_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version, 0 when none (or no table)."""
    try:
        row = conn.execute('SELECT MAX(version) FROM schema_migrations').fetchone()
    except sqlite3.OperationalError:
        return 0
    return row[0] or 0


def run_migrations(
    conn: sqlite3.Connection,
    migrations: Optional[List[Migration]] = None
) -> List[int]:
    """
    Bring the schema up to date.

    Args:
        conn: Open sqlite3 connection
        migrations: Registry to apply (default: MIGRATIONS)

    Returns:
        Versions applied by this run, ascending

    Raises:
        MigrationError: a statement failed; the failing version is not recorded
    """
    migrations = sorted(migrations if migrations is not None else MIGRATIONS,
                        key=lambda m: m.version)

    try:
        conn.execute(MIGRATION_TABLE_SQL)
        conn.commit()
    except sqlite3.Error as e:
        raise MigrationError(
            f'Cannot create schema_migrations table: {e}',
            operation='run_migrations'
        ) from e

    current_version = get_current_version(conn)
    applied = []

    for migration in migrations:
        if migration.version <= current_version:
            continue

        logger.info(f'Running migration {migration.version}: {migration.name}')
        try:
            conn.executescript(migration.up_sql)
            conn.execute(
                'INSERT INTO schema_migrations (version, name) VALUES (?, ?)',
                (migration.version, migration.name)
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise MigrationError(
                f'Migration {migration.version} ({migration.name}) failed: {e}',
                operation='run_migrations',
                version=migration.version,
                name=migration.name
            ) from e

        applied.append(migration.version)
        logger.info(f'Migration {migration.version} completed')

    return applied
