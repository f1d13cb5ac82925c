"""
Search System for RWE

Provides:
- Substring search across messages and conversation summaries
- Heuristic term-frequency relevance scoring
- Match-centred snippets

Usage:
    from search import ContentSearcher

    searcher = ContentSearcher(repo)
    results = searcher.search("quarterly report")
"""

from .content_search import ContentSearcher, SearchResult, search_content
from .relevance import calculate_relevance_score, create_snippet

__all__ = [
    'ContentSearcher',
    'SearchResult',
    'calculate_relevance_score',
    'create_snippet',
    'search_content',
]
