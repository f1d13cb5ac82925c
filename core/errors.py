"""
RWE Error Handling

Provides:
- Exception taxonomy for the storage, search and maintenance layers
- Translation of sqlite3 failures into that taxonomy
- Retry decorator with paced attempts (used by the backup copy)

Usage:
    from core.errors import StorageError, translate_sqlite_error

    try:
        conn.execute(sql, params)
    except sqlite3.Error as e:
        raise translate_sqlite_error('get_messages', e) from e
"""

import logging
import sqlite3
import time
from functools import wraps

logger = logging.getLogger('rwe.errors')


# =============================================================================
# Custom Exceptions
# =============================================================================

class RWEError(Exception):
    """Base exception for RWE errors."""

    status_code = 500
    error_type = 'internal_error'
    message = 'An unexpected error occurred'

    def __init__(self, message=None, **kwargs):
        super().__init__(message or self.message)
        self.message = message or self.message
        self.details = kwargs

    def to_dict(self):
        return {
            'error': self.error_type,
            'message': self.message,
            'details': self.details
        }


class ConfigurationError(RWEError):
    """Configuration file could not be read or is malformed."""
    error_type = 'configuration_error'
    message = 'Configuration error'


class InvalidArgumentError(RWEError):
    """Request rejected before touching the store."""
    status_code = 400
    error_type = 'invalid_argument'
    message = 'Invalid argument'


class NotFoundError(RWEError):
    """Resource not found (HTTP surface only; storage returns None)."""
    status_code = 404
    error_type = 'not_found'
    message = 'Resource not found'


class StorageError(RWEError):
    """Database operation failed."""
    error_type = 'storage_error'
    message = 'Database operation failed'

    def __init__(self, message=None, operation=None, **kwargs):
        if operation:
            kwargs['operation'] = operation
        super().__init__(message, **kwargs)
        self.operation = operation


class LockContentionError(StorageError):
    """Connection lock or database file lock unavailable."""
    status_code = 503
    error_type = 'lock_contention'
    message = 'Database is busy'


class StatementPrepareError(StorageError):
    """Malformed SQL or schema mismatch."""
    error_type = 'statement_prepare_error'
    message = 'Failed to prepare statement'


class StatementExecuteError(StorageError):
    """Constraint violation or I/O failure while executing."""
    error_type = 'statement_execute_error'
    message = 'Failed to execute statement'


class RowDecodeError(StorageError):
    """A row did not match the record shape it was decoded into."""
    error_type = 'row_decode_error'
    message = 'Failed to decode row'


class MigrationError(StorageError):
    """A schema migration failed; the store must not be used."""
    error_type = 'migration_error'
    message = 'Schema migration failed'


class BackupError(RWEError):
    """Backup, export or import failed."""
    error_type = 'backup_error'
    message = 'Backup operation failed'


# =============================================================================
# sqlite3 Translation
# =============================================================================

_LOCK_MARKERS = ('database is locked', 'database is busy', 'database table is locked')


def translate_sqlite_error(operation, error):
    """
    Map a sqlite3 exception onto the storage taxonomy.

    Args:
        operation: Name of the storage operation that failed
        error: The sqlite3 exception

    Returns:
        A StorageError subclass instance (caller raises it ``from error``)
    """
    text = str(error)
    message = f'{operation} failed: {text}'

    if isinstance(error, sqlite3.OperationalError):
        if any(marker in text.lower() for marker in _LOCK_MARKERS):
            return LockContentionError(message, operation=operation)
        return StatementPrepareError(message, operation=operation)

    if isinstance(error, sqlite3.ProgrammingError):
        return StatementPrepareError(message, operation=operation)

    if isinstance(error, sqlite3.InterfaceError):
        return RowDecodeError(message, operation=operation)

    return StatementExecuteError(message, operation=operation)


# =============================================================================
# Error Recovery Utilities
# =============================================================================

def with_retry(max_retries=3, delay=1.0, backoff=2.0, exceptions=(Exception,)):
    """
    Decorator for retrying operations with paced attempts.

    Usage:
        @with_retry(max_retries=5, delay=0.25, backoff=1.0,
                    exceptions=(LockContentionError,))
        def copy_store():
            ...
    """
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            last_exception = None
            current_delay = delay

            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    last_exception = e
                    logger.warning(
                        f'Retry {attempt + 1}/{max_retries} for {func.__name__}: {str(e)}',
                        extra={
                            'function': func.__name__,
                            'attempt': attempt + 1,
                            'max_retries': max_retries
                        }
                    )

                    if attempt < max_retries - 1:
                        time.sleep(current_delay)
                        current_delay *= backoff

            logger.error(
                f'All retries exhausted for {func.__name__}',
                extra={'function': func.__name__, 'max_retries': max_retries}
            )
            raise last_exception

        return wrapper
    return decorator
