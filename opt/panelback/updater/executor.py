"""
Update and rollback execution.

Both operations are async generators of progress events. Each step's output
is forwarded line by line; the first failing step ends the operation with an
'error' event. There is no automatic compensation: the error message names
the backup the operator can restore.
"""

import os
import asyncio
import logging
from datetime import datetime
from typing import AsyncIterator, Dict, List

from ..config_loader import get_updater_config, update_state
from .backup import apply_retention, check_restorable, clear_app_dir, create_backup, extract_backup
from .errors import UpdaterError
from .health import mark_pending_restart, schedule_service_restart
from .process import stream_command
from .state import UpdateStatus
from .version import get_current_version

logger = logging.getLogger(__name__)


def get_pull_command(config: Dict) -> List[str]:
    return config.get('pull_command') or ['git', 'pull', '--ff-only', config['remote'], config['branch']]


def _error_message(error: Exception) -> str:
    return getattr(error, 'message', None) or str(error)


async def _run_step(command: List[str], cwd: str, timeout) -> AsyncIterator[Dict]:
    yield {'log': f"$ {' '.join(command)}"}
    async for line in stream_command(command, cwd=cwd, timeout=timeout):
        yield {'log': line}


async def _install_dependencies(config: Dict) -> AsyncIterator[Dict]:
    """Run the configured install step for each sub-application."""
    app_dir = os.path.abspath(config['app_dir'])
    timeout = config.get('step_timeout_seconds') or None

    for step in config.get('install_steps') or []:
        cwd = os.path.normpath(os.path.join(app_dir, step.get('cwd') or '.'))
        name = step.get('name') or os.path.relpath(cwd, app_dir)
        if not os.path.isdir(cwd):
            yield {'log': f"Skipping {name}: {cwd} does not exist."}
            continue
        required = step.get('requires')
        if required and not os.path.exists(os.path.join(cwd, required)):
            yield {'log': f"Skipping {name}: no {required} in {cwd}."}
            continue

        yield {'log': f"Installing {name}..."}
        async for event in _run_step(step['command'], cwd, timeout):
            yield event
        yield {'log': f"{name} done."}


async def _backup_step(kind: str, protect=()) -> AsyncIterator[Dict]:
    """Create a backup in a worker thread and apply the retention policy."""
    loop = asyncio.get_running_loop()

    yield {'log': 'Creating backup...'}
    backup = await loop.run_in_executor(None, create_backup, kind)
    yield {
        'log': f"Backup created: {backup['filename']} ({backup['sizeBytes']} bytes).",
        'backup': backup['filename'],
    }
    for arcname in backup.get('skipped') or []:
        yield {'log': f"Not archived, it could not be restored: {arcname}"}

    pruned = await loop.run_in_executor(None, apply_retention, (backup['filename'],) + tuple(protect))
    if pruned and pruned['removed']:
        yield {'log': f"Retention policy removed {pruned['removed']} old backup(s)."}


async def stream_update() -> AsyncIterator[Dict]:
    """
    Performs an update of the application checkout.

    Steps:
    1. Create a backup (abort if it fails)
    2. Pull the remote revision
    3. Reinstall dependencies for each sub-application
    4. Schedule the supervisor restart

    Yields:
        dict: Progress events, ending with status 'restarting' or 'error'
    """
    config = get_updater_config()
    app_dir = os.path.abspath(config['app_dir'])
    timeout = config.get('step_timeout_seconds') or None
    backup_name = None

    yield {'status': UpdateStatus.UPDATING.value, 'message': 'Starting update process...'}

    try:
        logger.info("Step 1/4: Creating backup...")
        async for event in _backup_step('update'):
            backup_name = event.get('backup', backup_name)
            yield event
    except UpdaterError as e:
        logger.error(f"Update aborted, backup failed: {e}")
        yield {'log': '--- UPDATE FAILED ---'}
        yield {'status': UpdateStatus.ERROR.value, 'message': f"Backup failed, nothing was changed: {e.message}"}
        return

    try:
        logger.info("Step 2/4: Pulling latest changes...")
        yield {'log': 'Pulling latest changes...'}
        async for event in _run_step(get_pull_command(config), app_dir, timeout):
            yield event

        logger.info("Step 3/4: Installing dependencies...")
        async for event in _install_dependencies(config):
            yield event
    except (UpdaterError, OSError) as e:
        message = f"Update failed: {_error_message(e)}. Restore backup {backup_name} to roll back."
        logger.error(message)
        update_state(last_update={
            'at': datetime.now().isoformat(),
            'status': UpdateStatus.ERROR.value,
            'backup': backup_name,
            'message': message,
        })
        yield {'log': '--- UPDATE FAILED ---'}
        yield {'status': UpdateStatus.ERROR.value, 'message': message}
        return

    logger.info("Step 4/4: Scheduling restart...")
    version = await asyncio.get_running_loop().run_in_executor(None, get_current_version)
    update_state(last_update={
        'at': datetime.now().isoformat(),
        'status': 'success',
        'backup': backup_name,
        'hash': version['hash'],
    })
    mark_pending_restart('update', version['hash'])
    schedule_service_restart()

    yield {'log': 'Update complete. Restarting application...'}
    yield {
        'status': UpdateStatus.RESTARTING.value,
        'message': 'Update complete! The server is restarting.',
    }


async def stream_rollback(backup_filename: str) -> AsyncIterator[Dict]:
    """
    Restores the application directory from a backup archive.

    Steps:
    1. Validate the archive name, its existence and that every member can be
       extracted (nothing is touched otherwise)
    2. Back up the current tree
    3. Remove current files except preserved paths
    4. Extract the archive
    5. Reinstall dependencies
    6. Schedule the supervisor restart

    Yields:
        dict: Progress events, ending with status 'restarting' or 'error'
    """
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(None, check_restorable, backup_filename)
    except UpdaterError as e:
        logger.error(f"Rollback rejected: {e}")
        yield {'status': UpdateStatus.ERROR.value, 'message': e.message}
        return

    config = get_updater_config()
    safety_backup = None

    yield {'status': UpdateStatus.ROLLINGBACK.value, 'message': f'Restoring from {backup_filename}...'}

    try:
        async for event in _backup_step('rollback', protect=(backup_filename,)):
            safety_backup = event.get('backup', safety_backup)
            yield event
    except UpdaterError as e:
        logger.error(f"Rollback aborted, backup failed: {e}")
        yield {'log': '--- RESTORE FAILED ---'}
        yield {'status': UpdateStatus.ERROR.value, 'message': f"Backup failed, nothing was changed: {e.message}"}
        return

    try:
        yield {'log': 'Removing current application files...'}
        removed = await loop.run_in_executor(None, clear_app_dir)
        yield {'log': f"Removed {removed} entries."}

        yield {'log': f'Restoring files from {backup_filename}...'}
        extracted = await loop.run_in_executor(None, extract_backup, backup_filename)
        yield {'log': f"Restored {extracted} entries."}

        yield {'log': 'Re-installing dependencies...'}
        async for event in _install_dependencies(config):
            yield event
    except (UpdaterError, OSError) as e:
        message = (
            f"Rollback failed: {_error_message(e)}. "
            f"The pre-rollback state was saved as {safety_backup}."
        )
        logger.error(message)
        update_state(last_rollback={
            'at': datetime.now().isoformat(),
            'status': UpdateStatus.ERROR.value,
            'backup': backup_filename,
            'message': message,
        })
        yield {'log': '--- RESTORE FAILED ---'}
        yield {'status': UpdateStatus.ERROR.value, 'message': message}
        return

    update_state(last_rollback={
        'at': datetime.now().isoformat(),
        'status': 'success',
        'backup': backup_filename,
        'safety_backup': safety_backup,
    })
    mark_pending_restart('rollback')
    schedule_service_restart()

    yield {'log': 'Restore complete. Restarting application...'}
    yield {
        'status': UpdateStatus.RESTARTING.value,
        'message': 'Rollback complete! The server is restarting.',
    }
