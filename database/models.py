"""
Record types returned by the storage layer.

Each record decodes itself from a ``sqlite3.Row`` by column name and checks
that the row carries exactly the declared columns with compatible types.
Records are plain dataclasses, so callers never share state with the store.
"""

import sqlite3
from dataclasses import dataclass, asdict, fields
from typing import Optional, Union, get_args, get_origin, get_type_hints

from core.errors import RowDecodeError


def _accepted_types(annotation):
    if get_origin(annotation) is Union:
        return tuple(t for t in get_args(annotation))
    return (annotation,)


class RowRecord:
    """Mixin providing checked decoding from sqlite3 rows."""

    @classmethod
    def columns(cls):
        return [f.name for f in fields(cls)]

    @classmethod
    def from_row(cls, row: sqlite3.Row, operation: str = 'decode'):
        expected = cls.columns()
        actual = list(row.keys())
        if actual != expected:
            raise RowDecodeError(
                f'{operation}: {cls.__name__} expects columns {expected}, got {actual}',
                operation=operation
            )

        hints = get_type_hints(cls)
        values = {}
        for name in expected:
            value = row[name]
            accepted = _accepted_types(hints[name])
            if value is None and type(None) not in accepted:
                raise RowDecodeError(
                    f'{operation}: {cls.__name__}.{name} is NULL',
                    operation=operation
                )
            if value is not None and not isinstance(value, accepted):
                raise RowDecodeError(
                    f'{operation}: {cls.__name__}.{name} has type '
                    f'{type(value).__name__}',
                    operation=operation
                )
            values[name] = value
        return cls(**values)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Conversation(RowRecord):
    id: int
    name: str
    created_at: str
    summary: Optional[str]
    notes: Optional[str]


@dataclass
class Message(RowRecord):
    id: int
    conversation_id: int
    role: str
    content: str
    seq: int


@dataclass
class MindMapData(RowRecord):
    id: int
    conversation_id: int
    title: str
    nodes: str
    connections: str
    theme: str
    created_at: str
    updated_at: str


@dataclass
class AnalyticsData(RowRecord):
    """Conversation count for one calendar bucket."""
    date: str
    count: int


@dataclass
class DatabaseInfo:
    schema_version: int
    conversations_count: int
    messages_count: int
    database_size_bytes: int
    app_version: str

    def to_dict(self) -> dict:
        return asdict(self)
