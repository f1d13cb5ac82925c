"""
Relevance scoring and snippet extraction for content search.

Scoring is a term-frequency heuristic:
- 2.0 per non-overlapping occurrence of a term
- 5.0 when the content starts with the term
- 3.0 when the term appears right after a space
The sum is divided by max(1, log10(size)) to damp long documents, where
size is the UTF-8 byte length of the content.
"""

import math
import re
from typing import Sequence

OCCURRENCE_WEIGHT = 2.0
PREFIX_BONUS = 5.0
WORD_START_BONUS = 3.0

SNIPPET_CONTEXT = 80
SNIPPET_MAX_LENGTH = 200
ELLIPSIS = '...'


def calculate_relevance_score(content: str, query_terms: Sequence[str]) -> float:
    """Heuristic relevance of ``content`` for ``query_terms``; always finite and >= 0."""
    content_lower = content.lower()
    score = 0.0

    for term in query_terms:
        term_lower = term.lower()
        if not term_lower:
            continue

        score += content_lower.count(term_lower) * OCCURRENCE_WEIGHT

        if content_lower.startswith(term_lower):
            score += PREFIX_BONUS

        if f' {term_lower}' in content_lower:
            score += WORD_START_BONUS

    size = len(content.encode('utf-8'))
    length_factor = max(1.0, math.log10(size)) if size else 1.0
    return score / length_factor


def create_snippet(
    content: str,
    query_terms: Sequence[str],
    max_length: int = SNIPPET_MAX_LENGTH
) -> str:
    """
    Excerpt of ``content`` around the first query term found.

    The window spans SNIPPET_CONTEXT characters either side of the match,
    with ellipses marking cut edges. Falls back to the head of the content
    when no term matches. The result never exceeds ``max_length``.
    """
    for term in query_terms:
        if not term:
            continue

        # offsets index the original text, not a lower-cased copy
        match = re.search(re.escape(term), content, re.IGNORECASE)
        if match is None:
            continue

        start = max(0, match.start() - SNIPPET_CONTEXT)
        end = min(len(content), match.end() + SNIPPET_CONTEXT)

        snippet = content[start:end]
        if start > 0:
            snippet = ELLIPSIS + snippet
        if end < len(content):
            snippet = snippet + ELLIPSIS

        if len(snippet) > max_length:
            return _truncate(snippet, max_length)
        return snippet

    if len(content) > max_length:
        return _truncate(content, max_length)
    return content


def _truncate(text: str, max_length: int) -> str:
    # str slicing works on code points, so a character is never split
    return text[:max(0, max_length - len(ELLIPSIS))] + ELLIPSIS
