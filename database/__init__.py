"""
Database Layer for RWE

SQLite-based storage for conversations, messages, mind-maps and preferences,
with a versioned migration registry.

Usage:
    from database import open_repository

    repo = open_repository(config)
    convo_id = repo.create_conversation('Reading list', 'Books for 2026')
"""

from .migrations import MIGRATIONS, Migration, run_migrations
from .models import AnalyticsData, Conversation, DatabaseInfo, Message, MindMapData
from .repository import ConversationRepository


def open_repository(config) -> ConversationRepository:
    """
    Open the store described by ``config`` and migrate it.

    Raises MigrationError when the schema cannot be brought up to date.
    """
    config.data_dir.mkdir(parents=True, exist_ok=True)
    return ConversationRepository(config.db_path, lock_timeout=config.lock_timeout)


__all__ = [
    'AnalyticsData',
    'Conversation',
    'ConversationRepository',
    'DatabaseInfo',
    'MIGRATIONS',
    'Message',
    'Migration',
    'MindMapData',
    'open_repository',
    'run_migrations',
]
