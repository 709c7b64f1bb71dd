"""
Version reading and update checks.

This module reads the identity of the installed checkout and compares the
local HEAD against the remote tracking branch using git.
"""

import os
import logging
import subprocess
from datetime import datetime
from typing import AsyncIterator, Dict, Optional, Tuple

from ..config_loader import get_updater_config, update_state
from .errors import UpdaterError
from .process import run_command, stream_command
from .state import UpdateStatus

logger = logging.getLogger(__name__)

UNKNOWN_VERSION = {'title': 'unknown', 'hash': 'unknown', 'description': ''}


def validate_git_repo(repo_path: Optional[str] = None) -> bool:
    """
    Validates that the path points to a git working tree.

    Args:
        repo_path: Optional path to check. Uses the configured app dir if not provided.

    Returns:
        bool: True if valid git repository
    """
    try:
        path = repo_path or get_updater_config()['app_dir']
        if not os.path.isdir(path):
            return False
        result = subprocess.run(
            ['git', 'rev-parse', '--is-inside-work-tree'],
            cwd=path,
            capture_output=True,
            text=True,
            timeout=5
        )
        return result.returncode == 0 and result.stdout.strip() == 'true'
    except (OSError, subprocess.SubprocessError):
        return False


def get_current_version() -> Dict:
    """
    Gets the identity of the checked-out revision.

    Returns:
        dict: {'title', 'hash', 'description'} of the HEAD commit
    """
    app_dir = get_updater_config()['app_dir']
    if not validate_git_repo(app_dir):
        return dict(UNKNOWN_VERSION)

    try:
        result = subprocess.run(
            ['git', 'log', '-1', '--format=%h%n%s%n%b'],
            cwd=app_dir,
            capture_output=True,
            text=True,
            timeout=5
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.error(f"Error getting current version: {e}")
        return dict(UNKNOWN_VERSION)

    if result.returncode != 0:
        logger.warning(f"git log failed: {result.stderr.strip()}")
        return dict(UNKNOWN_VERSION)

    lines = result.stdout.split('\n')
    return {
        'title': lines[1].strip() if len(lines) > 1 else '',
        'hash': lines[0].strip(),
        'description': '\n'.join(lines[2:]).strip(),
    }


def classify(ahead: int, behind: int) -> UpdateStatus:
    """Map local/remote commit counts to an update status."""
    if ahead and behind:
        return UpdateStatus.DIVERGED
    if behind:
        return UpdateStatus.AVAILABLE
    if ahead:
        return UpdateStatus.AHEAD
    return UpdateStatus.UPTODATE


def _status_message(status: UpdateStatus, ahead: int, behind: int) -> str:
    if status == UpdateStatus.AVAILABLE:
        return f"An update is available ({behind} new commit(s))."
    if status == UpdateStatus.AHEAD:
        return f"Local checkout is {ahead} commit(s) ahead of the remote."
    if status == UpdateStatus.DIVERGED:
        return f"Local and remote histories have diverged ({ahead} local, {behind} remote commit(s))."
    return 'Application is up-to-date.'


async def _count_divergence(app_dir: str, ref: str, timeout: float) -> Tuple[int, int]:
    output = await run_command(
        ['git', 'rev-list', '--left-right', '--count', f'HEAD...{ref}'],
        cwd=app_dir,
        timeout=timeout
    )
    try:
        ahead, behind = (int(part) for part in output.split())
    except ValueError:
        raise UpdaterError(f"Could not parse git rev-list output: {output!r}")
    return ahead, behind


async def _new_version_info(app_dir: str, ref: str, timeout: float) -> Dict:
    head = await run_command(['git', 'log', '-1', '--format=%s%n%b', ref], cwd=app_dir, timeout=timeout)
    changelog = await run_command(
        ['git', 'log', '--format=%h %s', f'HEAD..{ref}'],
        cwd=app_dir,
        timeout=timeout
    )
    title, _, description = head.partition('\n')
    return {
        'title': title.strip(),
        'description': description.strip(),
        'changelog': changelog.strip(),
    }


async def stream_check() -> AsyncIterator[Dict]:
    """
    Fetch the remote and classify the local checkout against it.

    Yields progress events; the last event carries the resulting status
    ('uptodate', 'available', 'ahead', 'diverged' or 'error').
    """
    config = get_updater_config()
    app_dir = config['app_dir']
    remote = config['remote']
    branch = config['branch']
    ref = f'{remote}/{branch}'
    timeout = config.get('fetch_timeout_seconds') or None

    yield {'status': UpdateStatus.CHECKING.value, 'message': f'Connecting to {remote}...'}

    if not validate_git_repo(app_dir):
        message = f"{app_dir} is not a git checkout"
        logger.error(message)
        update_state(last_check=datetime.now().isoformat(), last_check_status=UpdateStatus.ERROR.value)
        yield {'status': UpdateStatus.ERROR.value, 'message': message}
        return

    try:
        yield {'log': f'$ git fetch {remote} {branch}'}
        async for line in stream_command(['git', 'fetch', remote, branch], cwd=app_dir, timeout=timeout):
            yield {'log': line}

        ahead, behind = await _count_divergence(app_dir, ref, timeout)
        local_hash = await run_command(['git', 'rev-parse', '--short', 'HEAD'], cwd=app_dir, timeout=timeout)
        remote_hash = await run_command(['git', 'rev-parse', '--short', ref], cwd=app_dir, timeout=timeout)

        status = classify(ahead, behind)
        event = {
            'status': status.value,
            'message': _status_message(status, ahead, behind),
            'local': local_hash.strip(),
            'remote': remote_hash.strip(),
        }
        if status == UpdateStatus.AVAILABLE:
            event['newVersionInfo'] = await _new_version_info(app_dir, ref, timeout)
    except UpdaterError as e:
        logger.error(f"Error checking for updates: {e}")
        update_state(last_check=datetime.now().isoformat(), last_check_status=UpdateStatus.ERROR.value)
        yield {'status': UpdateStatus.ERROR.value, 'message': e.message}
        return

    logger.info(f"Update check: {status.value} (ahead={ahead}, behind={behind})")
    update_state(last_check=datetime.now().isoformat(), last_check_status=status.value)
    yield event


async def check_status() -> Dict:
    """Run a check to completion and return its final event."""
    final = {}
    async for event in stream_check():
        if 'status' in event:
            final = event
    return final
