"""
Backup archive management.

This module creates, lists, verifies, prunes, deletes and restores the
compressed snapshots of the application directory that guard every update
and rollback.

Archives are named ``backup-<UTC timestamp>Z-<kind>.tar.gz`` so that name
order is creation order. The same ``preserve_paths`` patterns (plus the
backup directory and the runtime configuration directory) are excluded from
archives and left untouched when a rollback clears the tree.
"""

import os
import re
import hashlib
import logging
import tarfile
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set, Tuple

from ..config_loader import get_updater_config, get_config_base_dir
from .errors import BackupError, BackupNotFoundError, InvalidBackupNameError

logger = logging.getLogger(__name__)

BACKUP_NAME_PATTERN = re.compile(r'^[A-Za-z0-9._-]+\.tar\.gz$')
BACKUP_TIMESTAMP_PATTERN = re.compile(r'^backup-(\d{8}T\d{12})Z-')
TIMESTAMP_FORMAT = '%Y%m%dT%H%M%S%f'
BACKUP_KINDS = ('manual', 'update', 'rollback')
ALWAYS_PRESERVED = ('.git',)
READ_CHUNK = 1024 * 1024


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _from_timestamp(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, timezone.utc).replace(tzinfo=None)


def is_safe_backup_name(name: Optional[str]) -> bool:
    """Check a backup file name without touching the filesystem."""
    if not isinstance(name, str) or not name:
        return False
    if name.startswith('.') or Path(name).name != name:
        return False
    return BACKUP_NAME_PATTERN.match(name) is not None


def resolve_backup_path(name: Optional[str], must_exist: bool = True) -> Path:
    """
    Resolve a backup name to a path inside the backup directory.

    Raises:
        InvalidBackupNameError: If the name could point outside the directory
        BackupNotFoundError: If must_exist is set and no such archive exists
    """
    if not is_safe_backup_name(name):
        logger.warning(f"Rejected backup name: {name!r}")
        raise InvalidBackupNameError(f"Invalid backup file name: {name!r}")

    base = Path(get_updater_config()['backup_dir']).resolve()
    path = base / name
    if path.resolve().parent != base:
        logger.warning(f"Rejected backup name resolving outside {base}: {name!r}")
        raise InvalidBackupNameError(f"Invalid backup file name: {name!r}")

    if must_exist and (path.is_symlink() or not path.is_file()):
        raise BackupNotFoundError(f"Backup file not found: {name}")
    return path


def backup_timestamp(name: str) -> Optional[datetime]:
    """Parse the creation time embedded in a backup name."""
    match = BACKUP_TIMESTAMP_PATTERN.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(match.group(1), TIMESTAMP_FORMAT)
    except ValueError:
        return None


def _backup_files(backup_dir: Path) -> List[Path]:
    if not backup_dir.is_dir():
        return []
    files = [
        item for item in backup_dir.iterdir()
        if is_safe_backup_name(item.name) and item.is_file() and not item.is_symlink()
    ]

    def sort_key(item: Path):
        created = backup_timestamp(item.name)
        if created is None:
            created = _from_timestamp(item.stat().st_mtime)
        return created, item.name

    return sorted(files, key=sort_key)


def _next_backup_name(backup_dir: Path, kind: str) -> str:
    """Build a name that sorts after every existing archive."""
    stamp = _utcnow()
    existing = [backup_timestamp(item.name) for item in _backup_files(backup_dir)]
    existing = [ts for ts in existing if ts is not None]
    if existing and stamp <= max(existing):
        stamp = max(existing) + timedelta(microseconds=1)
    return f"backup-{stamp.strftime(TIMESTAMP_FORMAT)}Z-{kind}.tar.gz"


# --- Preserved paths ---

def _excluded_relpaths(app_dir: str, config: Dict) -> Set[str]:
    """Backup and config directories, as paths relative to the app dir."""
    excluded = set()
    app_real = os.path.realpath(app_dir)
    for directory in (config['backup_dir'], get_config_base_dir()):
        rel = os.path.relpath(os.path.realpath(directory), app_real)
        if rel != '.' and rel != '..' and not rel.startswith('..' + os.sep):
            excluded.add(rel.replace(os.sep, '/'))
    return excluded


def _preserve_rules(config: Dict) -> Tuple[List[str], Set[str]]:
    patterns = list(ALWAYS_PRESERVED) + [p for p in config.get('preserve_paths') or [] if p]
    return patterns, _excluded_relpaths(config['app_dir'], config)


def is_preserved(rel_path: str, patterns: List[str], excluded: Set[str] = frozenset()) -> bool:
    """
    Check whether a path (relative to the app dir, '/'-separated) is preserved.

    A pattern matches either the whole relative path or the entry name, so
    'node_modules' covers every node_modules directory in the tree.
    """
    if rel_path in excluded:
        return True
    name = rel_path.rsplit('/', 1)[-1]
    return any(fnmatch(rel_path, pattern) or fnmatch(name, pattern) for pattern in patterns)


def iter_backup_members(app_dir: str, patterns: List[str], excluded: Set[str]) -> Iterator[Tuple[str, str]]:
    """Yield (absolute path, archive name) for everything that gets archived."""
    for root, dirs, files in os.walk(app_dir, topdown=True, followlinks=False):
        rel_root = os.path.relpath(root, app_dir).replace(os.sep, '/')
        prefix = '' if rel_root == '.' else rel_root + '/'

        kept_dirs = []
        for name in sorted(dirs):
            rel = prefix + name
            if is_preserved(rel, patterns, excluded):
                continue
            yield os.path.join(root, name), rel
            if not os.path.islink(os.path.join(root, name)):
                kept_dirs.append(name)
        dirs[:] = kept_dirs

        for name in sorted(files):
            rel = prefix + name
            if not is_preserved(rel, patterns, excluded):
                yield os.path.join(root, name), rel


# --- Archive operations ---

def _read_archive_fully(path) -> int:
    """Read every member of an archive, returning the member count."""
    count = 0
    with tarfile.open(path, 'r:gz') as tar:
        for member in tar:
            count += 1
            if member.isfile():
                handle = tar.extractfile(member)
                while handle.read(READ_CHUNK):
                    pass
    return count


def _extraction_problem(member: tarfile.TarInfo, app_dir: str) -> Optional[str]:
    """Return why the 'data' extraction filter would refuse a member, if it would."""
    try:
        tarfile.data_filter(member, app_dir)
    except tarfile.FilterError as e:
        return str(e)
    return None


def find_unrestorable_members(path, app_dir: str) -> List[str]:
    """List the members of an archive that extract_backup() would refuse."""
    problems = []
    with tarfile.open(path, 'r:gz') as tar:
        for member in tar:
            problem = _extraction_problem(member, app_dir)
            if problem:
                problems.append(f"{member.name}: {problem}")
    return problems


def backup_item_payload(file_path: Path, include_hash: bool = False) -> Dict:
    """Describe a backup archive for API responses."""
    stat_info = file_path.stat()
    created = backup_timestamp(file_path.name)
    modified = _from_timestamp(stat_info.st_mtime)
    match = re.search(r'Z-([a-z]+)\.tar\.gz$', file_path.name)
    payload = {
        'filename': file_path.name,
        'sizeBytes': stat_info.st_size,
        'createdAt': (created or modified).isoformat() + 'Z',
        'modified': modified.isoformat() + 'Z',
        'kind': match.group(1) if match else None,
    }
    if include_hash:
        digest = hashlib.sha256()
        with file_path.open('rb') as handle:
            for chunk in iter(lambda: handle.read(READ_CHUNK), b''):
                digest.update(chunk)
        payload['sha256'] = digest.hexdigest()
    return payload


def create_backup(kind: str = 'manual') -> Dict:
    """
    Create a backup archive of the application directory.

    The archive is written under a hidden temporary name, fsynced and read
    back in full before being renamed into place, so a failed or partial
    write never shows up in list_backups().

    Entries the extractor would refuse on restore, such as symlinks pointing
    outside the application directory, are left out and listed under
    'skipped' in the result.

    Args:
        kind: 'manual', 'update' or 'rollback'

    Returns:
        dict: Backup archive description

    Raises:
        BackupError: If the archive could not be written or verified
    """
    if kind not in BACKUP_KINDS:
        raise ValueError(f"Unknown backup kind: {kind}")

    config = get_updater_config()
    app_dir = os.path.abspath(config['app_dir'])
    backup_dir = Path(config['backup_dir']).resolve()

    if not os.path.isdir(app_dir):
        raise BackupError(f"Application directory does not exist: {app_dir}")

    try:
        backup_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise BackupError(f"Cannot create backup directory {backup_dir}: {e}")

    name = _next_backup_name(backup_dir, kind)
    final_path = backup_dir / name
    tmp_path = backup_dir / f".{name}.partial"
    patterns, excluded = _preserve_rules(config)

    logger.info(f"Creating backup {final_path} from {app_dir}")
    members = 0
    skipped = []
    try:
        with open(tmp_path, 'wb') as raw:
            with tarfile.open(fileobj=raw, mode='w:gz') as tar:
                for abs_path, arcname in iter_backup_members(app_dir, patterns, excluded):
                    info = tar.gettarinfo(abs_path, arcname=arcname)
                    if info is None:
                        # Sockets and other special files
                        continue
                    problem = _extraction_problem(info, app_dir)
                    if problem:
                        logger.warning(f"Not archiving {arcname}, it could not be restored: {problem}")
                        skipped.append(arcname)
                        continue
                    if info.isreg():
                        with open(abs_path, 'rb') as handle:
                            tar.addfile(info, handle)
                    else:
                        tar.addfile(info)
                    members += 1
            raw.flush()
            os.fsync(raw.fileno())

        verified = _read_archive_fully(tmp_path)
        if verified != members:
            raise BackupError(f"Archive verification failed: expected {members} members, read {verified}")

        os.replace(tmp_path, final_path)
    except (OSError, tarfile.TarError, EOFError, BackupError) as e:
        logger.error(f"Error creating backup {name}: {e}")
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as cleanup_error:
            logger.error(f"Could not remove partial archive {tmp_path}: {cleanup_error}")
        if isinstance(e, BackupError):
            raise
        raise BackupError(f"Failed to create backup {name}: {e}")

    logger.info(f"Created backup {name} with {members} entries")
    payload = backup_item_payload(final_path)
    payload['skipped'] = skipped
    return payload


def list_backups() -> List[Dict]:
    """List backup archives, oldest first."""
    backup_dir = Path(get_updater_config()['backup_dir']).resolve()
    return [backup_item_payload(path) for path in _backup_files(backup_dir)]


def get_backup_path(name: str) -> Path:
    """Return the path of an existing archive for download."""
    return resolve_backup_path(name)


def delete_backup(name: str):
    """Delete a backup archive from the backup directory."""
    path = resolve_backup_path(name)
    path.unlink()
    logger.info(f"Deleted backup {name}")


def verify_backup(name: str) -> Dict:
    """Check that an archive is non-empty, readable end to end and restorable."""
    path = resolve_backup_path(name)
    payload = backup_item_payload(path, include_hash=True)
    issues = []
    if payload['sizeBytes'] <= 0:
        issues.append('empty_file')
    else:
        try:
            payload['members'] = _read_archive_fully(path)
            app_dir = os.path.abspath(get_updater_config()['app_dir'])
            issues.extend(f"unrestorable:{problem}" for problem in find_unrestorable_members(path, app_dir))
        except (OSError, tarfile.TarError, EOFError) as e:
            issues.append(f"unreadable_archive:{e}")
    payload['valid'] = not issues
    payload['issues'] = issues
    return payload


def prune_backups(
    keep_count: Optional[int] = None,
    max_age_days: Optional[int] = None,
    protect: Tuple[str, ...] = (),
) -> Dict:
    """
    Remove archives beyond the newest keep_count and older than max_age_days.

    Args:
        keep_count: Number of newest archives to keep (None or 0 = unlimited)
        max_age_days: Maximum archive age in days (None = unlimited)
        protect: Archive names that are never removed

    Returns:
        dict: Summary with scanned/removed/failed counts
    """
    backup_dir = Path(get_updater_config()['backup_dir']).resolve()
    files = _backup_files(backup_dir)
    now = _utcnow()

    doomed = []
    if keep_count:
        doomed.extend(files[:-keep_count] if len(files) > keep_count else [])
    if max_age_days:
        cutoff = now - timedelta(days=max_age_days)
        for path in files:
            created = backup_timestamp(path.name) or _from_timestamp(path.stat().st_mtime)
            if created < cutoff and path not in doomed:
                doomed.append(path)

    removed_files = []
    errors = []
    for path in doomed:
        if path.name in protect:
            continue
        try:
            path.unlink()
            removed_files.append(path.name)
        except OSError as e:
            errors.append({'filename': path.name, 'error': str(e)})

    if removed_files:
        logger.info(f"Pruned {len(removed_files)} backup(s): {', '.join(removed_files)}")

    return {
        'keep_count': keep_count,
        'max_age_days': max_age_days,
        'scanned': len(files),
        'removed': len(removed_files),
        'failed': len(errors),
        'removed_files': removed_files,
        'errors': errors,
    }


def apply_retention(protect: Tuple[str, ...] = ()) -> Optional[Dict]:
    """Apply the configured retention policy, if any."""
    config = get_updater_config()
    keep_count = config.get('backup_retention_count') or None
    max_age_days = config.get('backup_retention_days') or None
    if not keep_count and not max_age_days:
        return None
    return prune_backups(keep_count=keep_count, max_age_days=max_age_days, protect=protect)


def clear_app_dir() -> int:
    """
    Remove everything in the application directory except preserved paths.

    Directories that still contain preserved entries are kept.

    Returns:
        int: Number of removed filesystem entries
    """
    config = get_updater_config()
    app_dir = os.path.abspath(config['app_dir'])
    patterns, excluded = _preserve_rules(config)
    removed = 0

    def _clear(directory: str, rel_dir: str) -> bool:
        nonlocal removed
        empty = True
        with os.scandir(directory) as entries:
            entries = list(entries)
        for entry in entries:
            rel = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
            if is_preserved(rel, patterns, excluded):
                empty = False
                continue
            if entry.is_dir(follow_symlinks=False):
                if _clear(entry.path, rel):
                    os.rmdir(entry.path)
                    removed += 1
                else:
                    empty = False
            else:
                os.unlink(entry.path)
                removed += 1
        return empty

    logger.info(f"Clearing {app_dir} (preserving {', '.join(patterns + sorted(excluded))})")
    _clear(app_dir, '')
    return removed


def check_restorable(name: str) -> int:
    """
    Read an archive end to end and run the extraction filter over every
    member without writing anything.

    Returns:
        int: Number of members

    Raises:
        BackupError: If the archive is unreadable or holds members that
            extract_backup() would refuse
    """
    path = resolve_backup_path(name)
    app_dir = os.path.abspath(get_updater_config()['app_dir'])
    try:
        members = _read_archive_fully(path)
        problems = find_unrestorable_members(path, app_dir)
    except (OSError, tarfile.TarError, EOFError) as e:
        raise BackupError(f"Backup {name} is unreadable: {e}")
    if problems:
        logger.error(f"Backup {name} cannot be restored: {'; '.join(problems)}")
        raise BackupError(f"Backup {name} cannot be restored: {'; '.join(problems)}")
    return members


def extract_backup(name: str) -> int:
    """
    Extract a backup archive over the application directory.

    The 'data' extraction filter refuses absolute paths, parent references
    and links that would land outside the application directory.

    Returns:
        int: Number of extracted members
    """
    path = resolve_backup_path(name)
    app_dir = os.path.abspath(get_updater_config()['app_dir'])
    try:
        with tarfile.open(path, 'r:gz') as tar:
            members = tar.getmembers()
            tar.extractall(path=app_dir, filter='data')
    except (OSError, tarfile.TarError, EOFError) as e:
        logger.error(f"Failed to extract {name}: {e}")
        raise BackupError(f"Failed to extract backup {name}: {e}")
    logger.info(f"Extracted {len(members)} entries from {name} into {app_dir}")
    return len(members)
