"""
Tests for the schema migration registry.
"""

import sqlite3
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import MigrationError
from database.migrations import MIGRATIONS, Migration, get_current_version, run_migrations


def _schema(conn):
    rows = conn.execute(
        "SELECT type, name, sql FROM sqlite_master WHERE name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return [tuple(row) for row in rows]


class TestRunMigrations:
    """Tests for run_migrations."""

    @pytest.fixture
    def conn(self, tmp_path):
        conn = sqlite3.connect(str(tmp_path / "main.db"))
        yield conn
        conn.close()

    def test_fresh_store_applies_all(self, conn):
        applied = run_migrations(conn)

        assert applied == [m.version for m in MIGRATIONS]
        assert get_current_version(conn) == MIGRATIONS[-1].version

    def test_creates_expected_tables_and_indexes(self, conn):
        run_migrations(conn)
        names = {row[1] for row in _schema(conn)}

        for table in ("conversations", "messages", "mindmaps", "user_preferences", "schema_migrations"):
            assert table in names
        for index in ("idx_messages_conversation", "idx_messages_seq", "idx_mindmaps_conversation"):
            assert index in names

    def test_second_run_is_noop(self, conn):
        run_migrations(conn)
        schema_before = _schema(conn)
        prefs_before = conn.execute("SELECT key, value FROM user_preferences ORDER BY key").fetchall()

        applied = run_migrations(conn)

        assert applied == []
        assert _schema(conn) == schema_before
        assert conn.execute("SELECT key, value FROM user_preferences ORDER BY key").fetchall() == prefs_before
        assert conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0] == len(MIGRATIONS)

    def test_rerun_after_lost_history_keeps_single_seed_rows(self, conn):
        run_migrations(conn)
        conn.execute("DELETE FROM schema_migrations")
        conn.commit()

        applied = run_migrations(conn)

        assert applied == [m.version for m in MIGRATIONS]
        count = conn.execute(
            "SELECT COUNT(*) FROM user_preferences WHERE key = 'theme'"
        ).fetchone()[0]
        assert count == 1

    def test_seeds_default_preferences(self, conn):
        run_migrations(conn)
        prefs = dict(conn.execute("SELECT key, value FROM user_preferences").fetchall())

        assert prefs["theme"] == "system"
        assert prefs["app_version"] == "1.0.0"

    def test_records_name_for_each_version(self, conn):
        run_migrations(conn)
        rows = conn.execute("SELECT version, name FROM schema_migrations ORDER BY version").fetchall()

        assert rows == [(1, "initial_schema"), (2, "add_user_preferences")]

    def test_only_newer_versions_run(self, conn):
        run_migrations(conn, MIGRATIONS[:1])
        assert get_current_version(conn) == 1

        applied = run_migrations(conn)
        assert applied == [2]

    def test_failed_migration_is_not_recorded(self, conn):
        broken = MIGRATIONS + [
            Migration(version=3, name="broken", up_sql="CREATE TABLE oops (;")
        ]

        with pytest.raises(MigrationError) as exc_info:
            run_migrations(conn, broken)

        assert exc_info.value.details["version"] == 3
        assert get_current_version(conn) == 2

    def test_version_zero_without_table(self, conn):
        assert get_current_version(conn) == 0
