"""
Content Search for RWE

Searches message bodies and conversation summaries with a substring match,
scores every candidate, then merges both sources into one ranked list.

Features:
- Two candidate sources (messages, conversation summaries)
- Per-candidate snippet and heuristic relevance score
- Global re-ranking and truncation

Usage:
    from search.content_search import ContentSearcher

    searcher = ContentSearcher(repo)
    for result in searcher.search("budget spreadsheet"):
        print(f"{result.relevance_score:.2f} - {result.conversation_name}")
"""

import logging
import sqlite3
from dataclasses import dataclass, asdict
from typing import List

from core.logging_config import log_performance
from search.relevance import calculate_relevance_score, create_snippet

logger = logging.getLogger(__name__)

MESSAGE_CANDIDATE_LIMIT = 50
CONVERSATION_CANDIDATE_LIMIT = 30
RESULT_LIMIT = 50

CONVERSATION_CONTENT_TYPE = 'conversation'

MESSAGE_CANDIDATES_SQL = '''
    SELECT
        m.id,
        m.conversation_id,
        c.name as conversation_name,
        m.content,
        m.role,
        c.created_at
    FROM messages m
    JOIN conversations c ON m.conversation_id = c.id
    WHERE LOWER(m.content) LIKE ?
    ORDER BY c.created_at DESC, m.seq ASC
    LIMIT ?
'''

CONVERSATION_CANDIDATES_SQL = '''
    SELECT
        id,
        id as conversation_id,
        name as conversation_name,
        summary as content,
        created_at
    FROM conversations
    WHERE (LOWER(name) LIKE ? OR LOWER(summary) LIKE ?)
        AND summary IS NOT NULL AND summary != ''
    ORDER BY created_at DESC
    LIMIT ?
'''


@dataclass
class SearchResult:
    """A scored search hit."""
    id: int
    conversation_id: int
    conversation_name: str
    content_type: str
    content: str
    snippet: str
    relevance_score: float
    created_at: str

    def to_dict(self) -> dict:
        return asdict(self)


class ContentSearcher:
    """
    Substring search over messages and conversation summaries.

    Both candidate queries run under one hold of the repository lock;
    scoring and ranking happen afterwards, in process.
    """

    def __init__(self, repository, result_limit: int = RESULT_LIMIT):
        self.repository = repository
        self.result_limit = result_limit

    @log_performance('rwe.search')
    def search(self, query: str) -> List[SearchResult]:
        """
        Search all content.

        Args:
            query: Free text; split on whitespace into terms

        Returns:
            Results sorted by relevance, highest first (empty for a blank query)
        """
        if not query or not query.strip():
            return []

        query_terms = query.split()
        pattern = f'%{query.lower()}%'

        message_rows, conversation_rows = self.repository.run_in_session(
            'search_content',
            lambda conn: self._fetch_candidates(conn, pattern)
        )

        results = [self._message_result(row, query_terms) for row in message_rows]
        results.extend(self._conversation_result(row, query_terms) for row in conversation_rows)

        # sorted() is stable, so equal scores keep source order
        ranked = sorted(results, key=lambda r: r.relevance_score, reverse=True)

        logger.debug(
            'Search completed',
            extra={
                'term_count': len(query_terms),
                'candidates': len(results),
                'results_count': min(len(ranked), self.result_limit),
            }
        )
        return ranked[:self.result_limit]

    def _fetch_candidates(self, conn: sqlite3.Connection, pattern: str):
        message_rows = conn.execute(
            MESSAGE_CANDIDATES_SQL, (pattern, MESSAGE_CANDIDATE_LIMIT)
        ).fetchall()
        conversation_rows = conn.execute(
            CONVERSATION_CANDIDATES_SQL, (pattern, pattern, CONVERSATION_CANDIDATE_LIMIT)
        ).fetchall()
        return message_rows, conversation_rows

    def _message_result(self, row: sqlite3.Row, query_terms: List[str]) -> SearchResult:
        content = row['content']
        return SearchResult(
            id=row['id'],
            conversation_id=row['conversation_id'],
            conversation_name=row['conversation_name'],
            content_type=f"message_{row['role']}",
            content=content,
            snippet=create_snippet(content, query_terms),
            relevance_score=calculate_relevance_score(content, query_terms),
            created_at=row['created_at'],
        )

    def _conversation_result(self, row: sqlite3.Row, query_terms: List[str]) -> SearchResult:
        content = row['content']
        return SearchResult(
            id=row['id'],
            conversation_id=row['conversation_id'],
            conversation_name=row['conversation_name'],
            content_type=CONVERSATION_CONTENT_TYPE,
            content=content,
            snippet=create_snippet(content, query_terms),
            relevance_score=calculate_relevance_score(content, query_terms),
            created_at=row['created_at'],
        )


# =============================================================================
# Search Utilities
# =============================================================================

def search_content(query: str, repository) -> List[SearchResult]:
    """Convenience function for one-off searches."""
    return ContentSearcher(repository).search(query)
