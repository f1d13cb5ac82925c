"""
SQLite Database Repository for RWE

Provides typed storage for:
- Conversations, their ordered messages and mind-maps
- Key/value user preferences
- Analytics aggregation and database introspection

All operations share one connection guarded by a lock. Each public method
holds the lock for its whole statement sequence and runs inside a single
transaction, so multi-step operations (conversation delete, mind-map
upsert) never interleave with another caller's write.

Usage:
    from database.repository import ConversationRepository

    repo = ConversationRepository('main.db')
    convo_id = repo.create_conversation('Trip planning', 'Notes for June')
    repo.save_message(convo_id, 'user', 'Where should we go?')
"""

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Union

from core import __version__
from core.errors import (
    InvalidArgumentError, LockContentionError, StorageError, translate_sqlite_error,
)
from database.migrations import get_current_version, run_migrations
from database.models import (
    AnalyticsData, Conversation, DatabaseInfo, Message, MindMapData,
)

logger = logging.getLogger(__name__)

API_KEY_PREFERENCE = 'gemini_api_key'
DEFAULT_THEME = 'default'

# Timestamps written from Python use SQLite's text layout with microseconds
# so DATE()/strftime() still parse them.
TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S.%f'

ANALYTICS_QUERIES = {
    'day': '''
        SELECT
            DATE(created_at) as date,
            COUNT(*) as count
        FROM conversations
        WHERE created_at >= DATE('now', '-30 days')
        GROUP BY DATE(created_at)
        ORDER BY date DESC
    ''',
    'week': '''
        SELECT
            DATE(created_at, 'weekday 0', '-6 days') as date,
            COUNT(*) as count
        FROM conversations
        WHERE created_at >= DATE('now', '-84 days')
        GROUP BY DATE(created_at, 'weekday 0', '-6 days')
        ORDER BY date DESC
    ''',
    'month': '''
        SELECT
            DATE(created_at, 'start of month') as date,
            COUNT(*) as count
        FROM conversations
        WHERE created_at >= DATE('now', '-12 months')
        GROUP BY DATE(created_at, 'start of month')
        ORDER BY date DESC
    ''',
}

CONVERSATION_COLUMNS = 'id, name, created_at, summary, notes'
MESSAGE_COLUMNS = 'id, conversation_id, role, content, seq'
MINDMAP_COLUMNS = 'id, conversation_id, title, nodes, connections, theme, created_at, updated_at'


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _utc_timestamp(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    return moment.strftime(TIMESTAMP_FORMAT)


class ConversationRepository:
    """
    Repository for conversation storage and retrieval.

    Owns a single sqlite3 connection; every public operation acquires the
    connection lock, runs in one transaction and releases the lock on every
    exit path.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        lock_timeout: float = 30.0,
        migrate: bool = True
    ):
        """
        Initialize the repository.

        Args:
            db_path: Path to the SQLite store (``:memory:`` is accepted)
            lock_timeout: Seconds to wait for the connection lock
            migrate: Run schema migrations before returning
        """
        self.db_path = Path(db_path) if str(db_path) != ':memory:' else None
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()

        if self.db_path is not None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            str(self.db_path) if self.db_path else ':memory:',
            timeout=lock_timeout,
            check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row

        if migrate:
            self.migrate()

    # =========================================================================
    # Connection Handling
    # =========================================================================

    @contextmanager
    def _session(self, operation: str):
        """Hold the connection lock and one transaction for ``operation``."""
        if not self._lock.acquire(timeout=self.lock_timeout):
            logger.error(f'{operation}: connection lock timeout', extra={'operation': operation})
            raise LockContentionError(
                f'{operation} failed: connection lock not acquired within '
                f'{self.lock_timeout}s',
                operation=operation
            )
        try:
            if self._conn is None:
                raise StorageError(f'{operation} failed: repository is closed', operation=operation)
            with self._conn:
                yield self._conn
        except sqlite3.Error as e:
            logger.error(f'{operation} failed: {e}', extra={'operation': operation})
            raise translate_sqlite_error(operation, e) from e
        finally:
            self._lock.release()

    def migrate(self) -> List[int]:
        """Apply pending schema migrations. Failures are fatal."""
        if not self._lock.acquire(timeout=self.lock_timeout):
            raise LockContentionError('migrate failed: connection lock not acquired', operation='migrate')
        try:
            return run_migrations(self._conn)
        finally:
            self._lock.release()

    def close(self):
        """Close the underlying connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def check_connection(self) -> bool:
        """Verify the store answers a trivial query."""
        with self._session('check_connection') as conn:
            conn.execute('SELECT 1').fetchone()
        return True

    # =========================================================================
    # Conversations
    # =========================================================================

    def create_conversation(self, name: str, summary: Optional[str] = None) -> int:
        """
        Create a conversation.

        Returns:
            The new conversation id
        """
        if not name or not name.strip():
            raise InvalidArgumentError('Conversation name must not be empty')

        with self._session('create_conversation') as conn:
            cursor = conn.execute(
                'INSERT INTO conversations (name, summary) VALUES (?, ?)',
                (name, summary)
            )
            return cursor.lastrowid

    def get_conversations(self) -> List[Conversation]:
        """All conversations, newest first."""
        with self._session('get_conversations') as conn:
            rows = conn.execute(
                f'SELECT {CONVERSATION_COLUMNS} FROM conversations '
                f'ORDER BY created_at DESC, id DESC'
            ).fetchall()
        return [Conversation.from_row(row, 'get_conversations') for row in rows]

    def get_conversations_paginated(self, limit: int, offset: int) -> List[Conversation]:
        """A page of conversations, newest first."""
        if limit < 0 or offset < 0:
            raise InvalidArgumentError('limit and offset must be non-negative',
                                       limit=limit, offset=offset)

        with self._session('get_conversations_paginated') as conn:
            rows = conn.execute(
                f'SELECT {CONVERSATION_COLUMNS} FROM conversations '
                f'ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?',
                (limit, offset)
            ).fetchall()
        return [Conversation.from_row(row, 'get_conversations_paginated') for row in rows]

    def get_conversations_count(self) -> int:
        with self._session('get_conversations_count') as conn:
            return conn.execute('SELECT COUNT(*) FROM conversations').fetchone()[0]

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        """
        Get a conversation by ID.

        Returns:
            Conversation or None
        """
        with self._session('get_conversation') as conn:
            row = conn.execute(
                f'SELECT {CONVERSATION_COLUMNS} FROM conversations WHERE id = ?',
                (conversation_id,)
            ).fetchone()

        if row is None:
            return None
        return Conversation.from_row(row, 'get_conversation')

    def delete_conversation(self, conversation_id: int) -> bool:
        """
        Delete a conversation with its messages and mind-map.

        Messages, then the mind-map, then the conversation row are removed in
        one transaction; a failing step rolls back the earlier ones.

        Returns:
            True if a conversation with that id existed
        """
        with self._session('delete_conversation') as conn:
            conn.execute('DELETE FROM messages WHERE conversation_id = ?', (conversation_id,))
            conn.execute('DELETE FROM mindmaps WHERE conversation_id = ?', (conversation_id,))
            cursor = conn.execute('DELETE FROM conversations WHERE id = ?', (conversation_id,))
            deleted = cursor.rowcount > 0

        logger.info('Conversation deleted' if deleted else 'Conversation not found for delete',
                    extra={'conversation_id': conversation_id})
        return deleted

    def update_conversation_notes(self, conversation_id: int, notes: str) -> bool:
        with self._session('update_conversation_notes') as conn:
            cursor = conn.execute(
                'UPDATE conversations SET notes = ? WHERE id = ?',
                (notes, conversation_id)
            )
            return cursor.rowcount > 0

    def update_conversation_summary(self, conversation_id: int, summary: str) -> bool:
        with self._session('update_conversation_summary') as conn:
            cursor = conn.execute(
                'UPDATE conversations SET summary = ? WHERE id = ?',
                (summary, conversation_id)
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Messages
    # =========================================================================

    def save_message(self, conversation_id: int, role: str, content: str) -> int:
        """
        Append a message to a conversation.

        The sequence number is the wall clock in milliseconds, raised past the
        conversation's current maximum when the clock has not moved (or went
        backwards) since the previous save.

        Returns:
            The new message id
        """
        with self._session('save_message') as conn:
            last_seq = conn.execute(
                'SELECT MAX(seq) FROM messages WHERE conversation_id = ?',
                (conversation_id,)
            ).fetchone()[0]

            seq = _now_ms()
            if last_seq is not None and seq <= last_seq:
                seq = last_seq + 1

            cursor = conn.execute(
                'INSERT INTO messages (conversation_id, role, content, seq) VALUES (?, ?, ?, ?)',
                (conversation_id, role, content, seq)
            )
            return cursor.lastrowid

    def get_messages(self, conversation_id: int) -> List[Message]:
        """Messages of a conversation in sequence order."""
        with self._session('get_messages') as conn:
            rows = conn.execute(
                f'SELECT {MESSAGE_COLUMNS} FROM messages WHERE conversation_id = ? '
                f'ORDER BY seq ASC, id ASC',
                (conversation_id,)
            ).fetchall()
        return [Message.from_row(row, 'get_messages') for row in rows]

    # =========================================================================
    # Mind-maps
    # =========================================================================

    def get_mindmap_data(self, conversation_id: int) -> Optional[MindMapData]:
        with self._session('get_mindmap_data') as conn:
            row = conn.execute(
                f'SELECT {MINDMAP_COLUMNS} FROM mindmaps WHERE conversation_id = ?',
                (conversation_id,)
            ).fetchone()

        if row is None:
            return None
        return MindMapData.from_row(row, 'get_mindmap_data')

    def save_mindmap_data(
        self,
        conversation_id: int,
        title: str,
        nodes: str,
        connections: str,
        theme: Optional[str] = None
    ) -> int:
        """
        Insert or update the mind-map of a conversation.

        ``nodes`` and ``connections`` are stored as given. Every save moves
        ``updated_at`` strictly forward.

        Returns:
            The mind-map id
        """
        theme = theme or DEFAULT_THEME

        with self._session('save_mindmap_data') as conn:
            existing = conn.execute(
                'SELECT id, updated_at FROM mindmaps WHERE conversation_id = ?',
                (conversation_id,)
            ).fetchone()

            now = datetime.now(timezone.utc)
            if existing is None:
                stamp = _utc_timestamp(now)
                cursor = conn.execute(
                    'INSERT INTO mindmaps '
                    '(conversation_id, title, nodes, connections, theme, created_at, updated_at) '
                    'VALUES (?, ?, ?, ?, ?, ?, ?)',
                    (conversation_id, title, nodes, connections, theme, stamp, stamp)
                )
                return cursor.lastrowid

            stamp = _utc_timestamp(now)
            previous = existing['updated_at']
            if previous is not None and stamp <= previous:
                stamp = _utc_timestamp(_parse_timestamp(previous) + timedelta(microseconds=1))

            conn.execute(
                'UPDATE mindmaps SET title = ?, nodes = ?, connections = ?, theme = ?, '
                'updated_at = ? WHERE conversation_id = ?',
                (title, nodes, connections, theme, stamp, conversation_id)
            )
            return existing['id']

    # =========================================================================
    # Preferences
    # =========================================================================

    def get_preference(self, key: str) -> Optional[str]:
        with self._session('get_preference') as conn:
            row = conn.execute(
                'SELECT value FROM user_preferences WHERE key = ?', (key,)
            ).fetchone()
        return None if row is None else row['value']

    def set_preference(self, key: str, value: Optional[str]):
        """Insert the preference, or update value and timestamp on key conflict."""
        with self._session('set_preference') as conn:
            conn.execute(
                '''
                INSERT INTO user_preferences (key, value, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                ''',
                (key, value)
            )

    def get_api_key(self) -> Optional[str]:
        return self.get_preference(API_KEY_PREFERENCE)

    def set_api_key(self, api_key: str):
        self.set_preference(API_KEY_PREFERENCE, api_key)

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_conversation_analytics(self, period: str) -> List[AnalyticsData]:
        """
        Conversation counts per calendar bucket, newest bucket first.

        Args:
            period: 'day' (last 30 days), 'week' (last 12 weeks, Monday
                buckets) or 'month' (last 12 months)
        """
        query = ANALYTICS_QUERIES.get(period)
        if query is None:
            raise InvalidArgumentError(
                "Invalid period. Use 'day', 'week', or 'month'", period=period
            )

        with self._session('get_conversation_analytics') as conn:
            rows = conn.execute(query).fetchall()
        return [AnalyticsData.from_row(row, 'get_conversation_analytics') for row in rows]

    def get_database_info(self, app_version: str = __version__) -> DatabaseInfo:
        """Schema version, row counts and on-disk size of the store."""
        with self._session('get_database_info') as conn:
            schema_version = get_current_version(conn)
            conversations_count = conn.execute('SELECT COUNT(*) FROM conversations').fetchone()[0]
            messages_count = conn.execute('SELECT COUNT(*) FROM messages').fetchone()[0]
            size = conn.execute(
                'SELECT page_count * page_size FROM pragma_page_count(), pragma_page_size()'
            ).fetchone()[0]

        return DatabaseInfo(
            schema_version=schema_version,
            conversations_count=conversations_count,
            messages_count=messages_count,
            database_size_bytes=size or 0,
            app_version=app_version,
        )

    # =========================================================================
    # Maintenance
    # =========================================================================

    def backup_to(self, target_path: Union[str, Path]) -> Path:
        """
        Copy the live store to ``target_path`` with the online backup API.

        Runs under the connection lock so no write lands mid-copy.
        """
        target_path = Path(target_path)
        target_path.parent.mkdir(parents=True, exist_ok=True)

        with self._session('backup_database') as conn:
            dest = sqlite3.connect(str(target_path))
            try:
                conn.backup(dest)
            finally:
                dest.close()

        return target_path

    def run_in_session(self, operation: str, func):
        """Run ``func(conn)`` under the connection lock and one transaction."""
        with self._session(operation) as conn:
            return func(conn)


def _parse_timestamp(value: str) -> datetime:
    for fmt in (TIMESTAMP_FORMAT, '%Y-%m-%d %H:%M:%S'):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise StorageError(f'Unrecognised timestamp: {value!r}', operation='save_mindmap_data')
