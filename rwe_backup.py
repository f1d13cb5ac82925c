#!/usr/bin/env python3
"""
RWE Backup & Maintenance

Provides file-level maintenance for the single SQLite store:
- Point-in-time backups of the live database
- Export / import of user data
- Pre-update safety copies
- Backup listing, verification and cleanup

Usage:
    # Create backup
    rwe-backup backup

    # List backups
    rwe-backup list

    # Verify a backup
    rwe-backup verify backup_20261018_120000.db

    # Import another store (current data is backed up first)
    rwe-backup import ~/Desktop/RWE_Export_20261018_120000.db
"""

import argparse
import json
import logging
import shutil
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from core.config import AppConfig, load_config
from core.errors import BackupError, LockContentionError, RWEError, with_retry
from core.logging_config import setup_logging
from database import open_repository
from database.migrations import get_current_version

logger = logging.getLogger(__name__)

SQLITE_HEADER = b'SQLite format 3\x00'


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')


def _unique_path(path: Path) -> Path:
    """Append a counter when two copies land in the same second."""
    candidate = path
    counter = 1
    while candidate.exists():
        candidate = path.with_name(f'{path.stem}_{counter}{path.suffix}')
        counter += 1
    return candidate


def _discard(path: Path):
    """Remove a partially written copy."""
    if path.exists():
        path.unlink()


def is_sqlite_file(path: Path) -> bool:
    """True when ``path`` starts with the SQLite file header."""
    try:
        with open(path, 'rb') as f:
            return f.read(len(SQLITE_HEADER)) == SQLITE_HEADER
    except OSError:
        return False


# =============================================================================
# Backup Operations
# =============================================================================

def backup_database(repository, config: AppConfig) -> str:
    """
    Create a point-in-time copy of the live store.

    The copy is retried while the writer holds the database
    (``config.backup_attempts`` tries, ``config.backup_retry_delay`` apart).

    Returns:
        Path of the new backup file
    """
    backup_path = _unique_path(config.backup_dir / f'backup_{_timestamp()}.db')

    @with_retry(
        max_retries=config.backup_attempts,
        delay=config.backup_retry_delay,
        backoff=1.0,
        exceptions=(LockContentionError,)
    )
    def copy_store():
        return repository.backup_to(backup_path)

    try:
        copy_store()
    except LockContentionError as e:
        _discard(backup_path)
        raise BackupError(f'Backup failed: {e}', path=str(backup_path)) from e
    except (RWEError, OSError):
        _discard(backup_path)
        raise

    logger.info('Backup created', extra={
        'backup_path': str(backup_path),
        'size_bytes': backup_path.stat().st_size,
    })
    return str(backup_path)


def export_user_data(config: AppConfig) -> str:
    """
    Copy the store file to the export directory.

    Returns:
        Path of the exported file
    """
    if not config.data_dir.exists():
        raise BackupError('No data directory found', path=str(config.data_dir))
    if not config.db_path.exists():
        raise BackupError('No database found', path=str(config.db_path))

    config.export_dir.mkdir(parents=True, exist_ok=True)
    export_path = _unique_path(config.export_dir / f'RWE_Export_{_timestamp()}.db')

    try:
        shutil.copy2(config.db_path, export_path)
    except OSError as e:
        raise BackupError(f'Failed to export data: {e}', path=str(export_path)) from e

    logger.info('Data export completed', extra={'export_path': str(export_path)})
    return str(export_path)


def import_user_data(import_path: str, config: AppConfig) -> bool:
    """
    Replace the store with ``import_path``.

    The current store, if any, is first copied to
    ``backups/pre_import_backup_<ts>.db``. The repository must be closed
    by the caller and reopened afterwards so migrations run on the import.

    Returns:
        True on success
    """
    source = Path(import_path).expanduser()
    if not source.exists():
        raise BackupError(f'Import file not found: {source}', path=str(source))
    if not is_sqlite_file(source):
        raise BackupError(f'Not a SQLite database: {source}', path=str(source))

    config.data_dir.mkdir(parents=True, exist_ok=True)
    target = config.db_path

    try:
        if target.exists():
            config.backup_dir.mkdir(parents=True, exist_ok=True)
            safety = _unique_path(config.backup_dir / f'pre_import_backup_{_timestamp()}.db')
            shutil.copy2(target, safety)
            logger.info('Safety backup created', extra={'backup_path': str(safety)})

        shutil.copy2(source, target)
    except OSError as e:
        raise BackupError(f'Failed to import data: {e}', path=str(source)) from e

    logger.info('Data import completed', extra={'source': str(source)})
    return True


def prepare_for_update(config: AppConfig) -> str:
    """
    Copy the store to ``backups/pre_update_backup_<ts>.db`` before an upgrade.

    Returns:
        Path of the safety copy
    """
    if not config.db_path.exists():
        raise BackupError('No database found to backup', path=str(config.db_path))

    config.backup_dir.mkdir(parents=True, exist_ok=True)
    backup_path = _unique_path(config.backup_dir / f'pre_update_backup_{_timestamp()}.db')

    try:
        shutil.copy2(config.db_path, backup_path)
    except OSError as e:
        raise BackupError(f'Failed to create pre-update backup: {e}', path=str(backup_path)) from e

    logger.info('Pre-update backup created', extra={'backup_path': str(backup_path)})
    return str(backup_path)


def get_data_directory(config: AppConfig) -> str:
    return str(config.data_dir)


def list_backups(config: AppConfig) -> List[Dict]:
    """List backup files, newest first."""
    if not config.backup_dir.exists():
        return []

    backups = []
    files = sorted(config.backup_dir.glob('*.db'), key=lambda p: p.stat().st_mtime, reverse=True)
    for backup_file in files:
        stat = backup_file.stat()
        backups.append({
            'name': backup_file.name,
            'path': str(backup_file),
            'size_bytes': stat.st_size,
            'size_mb': round(stat.st_size / 1024 / 1024, 2),
            'created': datetime.fromtimestamp(stat.st_mtime).isoformat(),
        })

    return backups


def verify_backup(backup_path: str) -> Tuple[bool, Dict]:
    """
    Verify backup integrity.

    Returns:
        Tuple of (is_valid, details)
    """
    backup_file = Path(backup_path)
    if not backup_file.exists():
        return False, {'error': 'Backup file not found'}
    if not is_sqlite_file(backup_file):
        return False, {'error': 'Not a SQLite database'}

    result = {
        'path': str(backup_file),
        'size_bytes': backup_file.stat().st_size,
    }

    conn = sqlite3.connect(f'{backup_file.resolve().as_uri()}?mode=ro', uri=True)
    try:
        integrity = conn.execute('PRAGMA integrity_check').fetchone()[0]
        result['integrity'] = integrity
        result['schema_version'] = get_current_version(conn)
        tables = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' ORDER BY name"
        ).fetchall()
        result['tables'] = [row[0] for row in tables]
    except sqlite3.DatabaseError as e:
        return False, {'error': f'Verification failed: {e}'}
    finally:
        conn.close()

    return integrity == 'ok', result


def cleanup_old_backups(config: AppConfig, keep: Optional[int] = None) -> int:
    """
    Remove old backups, keeping the most recent ones.

    Returns:
        Number of backups removed
    """
    keep = config.backup_keep if keep is None else keep
    backups = list_backups(config)

    if len(backups) <= keep:
        return 0

    removed = 0
    for backup in backups[keep:]:
        try:
            Path(backup['path']).unlink()
            removed += 1
            logger.info(f"Removed backup: {backup['name']}")
        except OSError as e:
            logger.warning(f"Failed to remove {backup['name']}: {e}")

    return removed


# =============================================================================
# CLI
# =============================================================================

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="RWE Backup & Maintenance",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--config', '-c', help='Path to config.yaml')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    subparsers.add_parser('backup', help='Create a point-in-time backup')
    subparsers.add_parser('list', help='List available backups')

    verify_parser = subparsers.add_parser('verify', help='Verify backup integrity')
    verify_parser.add_argument('backup', help='Backup file to verify')

    cleanup_parser = subparsers.add_parser('cleanup', help='Remove old backups')
    cleanup_parser.add_argument('--keep', '-k', type=int, help='Number of backups to keep')

    subparsers.add_parser('export', help='Export the database to the export directory')

    import_parser = subparsers.add_parser('import', help='Replace the database with a file')
    import_parser.add_argument('file', help='Database file to import')

    subparsers.add_parser('prepare-update', help='Create a pre-update safety copy')
    subparsers.add_parser('info', help='Show database information')

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        setup_logging(config.log_level, json_format=config.json_logs)

        if args.command == 'backup':
            with open_repository(config) as repo:
                print(backup_database(repo, config))

        elif args.command == 'list':
            backups = list_backups(config)
            if not backups:
                print("No backups found.")
            for b in backups:
                print(f"  {b['name']}  {b['size_mb']} MB  {b['created']}")

        elif args.command == 'verify':
            backup_path = args.backup
            if not Path(backup_path).exists():
                backup_path = str(config.backup_dir / args.backup)
            is_valid, details = verify_backup(backup_path)
            print(json.dumps(details, indent=2))
            return 0 if is_valid else 1

        elif args.command == 'cleanup':
            removed = cleanup_old_backups(config, keep=args.keep)
            print(f"Removed {removed} old backup(s)")

        elif args.command == 'export':
            print(export_user_data(config))

        elif args.command == 'import':
            import_user_data(args.file, config)
            # Reopen so the imported store is migrated to the current schema
            with open_repository(config):
                pass
            print("Import completed")

        elif args.command == 'prepare-update':
            print(prepare_for_update(config))

        elif args.command == 'info':
            with open_repository(config) as repo:
                info = repo.get_database_info(app_version=config.app_version)
            print(json.dumps(info.to_dict(), indent=2))

        else:
            parser.print_help()
            return 1

    except RWEError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
