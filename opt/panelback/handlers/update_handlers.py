"""
Self-update API handlers.

This module provides HTTP request handlers for update checks, update and
rollback execution (streamed as server-sent events), backup management and
updater configuration. All of them require an admin session.
"""

import asyncio
import logging
from aiohttp import web

from ..auth.middleware import require_admin
from ..config_loader import get_updater_config, load_update_state, save_updater_config
from ..updater.backup import (
    apply_retention,
    create_backup,
    delete_backup,
    get_backup_path,
    list_backups,
    prune_backups,
    verify_backup,
)
from ..updater.errors import OperationInProgressError, UpdaterError
from ..updater.executor import stream_rollback, stream_update
from ..updater.state import UpdateStatus
from ..updater.stream import run_streamed
from ..updater.version import get_current_version, stream_check

logger = logging.getLogger(__name__)


def _error_response(error: UpdaterError) -> web.Response:
    return web.json_response({
        'status': 'error',
        'message': error.message
    }, status=error.http_status)


def _reject_if_busy(request):
    lock = request.app['operation_lock']
    if lock.busy:
        raise OperationInProgressError(
            f"Another operation is in progress: {lock.operation} ({lock.status.value})"
        )


# --- Version and status ---

@require_admin
async def get_version(request):
    """Returns the identity of the installed revision."""
    loop = asyncio.get_running_loop()
    version = await loop.run_in_executor(None, get_current_version)
    return web.json_response({
        'status': 'success',
        'version': version
    })


@require_admin
async def get_update_status(request):
    """Returns the operation state, the last check/update and the restart confirmation."""
    try:
        state = load_update_state()
        return web.json_response({
            'status': 'success',
            'state': request.app['operation_lock'].snapshot(),
            'last_check': state.get('last_check'),
            'last_check_status': state.get('last_check_status'),
            'last_update': state.get('last_update'),
            'last_rollback': state.get('last_rollback'),
            'pending_restart': state.get('pending_restart'),
            'restart': state.get('restart'),
        })
    except Exception as e:
        logger.error(f"Error getting update status: {e}")
        return web.json_response({
            'status': 'error',
            'message': str(e)
        }, status=500)


# --- Streamed operations ---

@require_admin
async def check_updates(request):
    """Streams an update check; ends with a 'finished' event."""
    try:
        return await run_streamed(request, 'check', UpdateStatus.CHECKING, stream_check(), send_finished=True)
    except OperationInProgressError as e:
        return _error_response(e)


@require_admin
async def apply_update(request):
    """Streams an update; ends with 'restarting' or 'error'."""
    logger.info(f"Update requested by {request['user']['username']}")
    try:
        return await run_streamed(request, 'update', UpdateStatus.UPDATING, stream_update())
    except OperationInProgressError as e:
        return _error_response(e)


@require_admin
async def perform_rollback(request):
    """Streams a rollback to ?backupFile=; ends with 'restarting' or 'error'."""
    backup_file = request.query.get('backupFile')
    logger.info(f"Rollback to {backup_file!r} requested by {request['user']['username']}")
    try:
        return await run_streamed(request, 'rollback', UpdateStatus.ROLLINGBACK, stream_rollback(backup_file))
    except OperationInProgressError as e:
        return _error_response(e)


# --- Backups ---

@require_admin
async def get_backups(request):
    """Lists backup archives, oldest first."""
    try:
        loop = asyncio.get_running_loop()
        backups = await loop.run_in_executor(None, list_backups)
        return web.json_response({
            'status': 'success',
            'backups': backups
        })
    except OSError as e:
        logger.error(f"Error listing backups: {e}")
        return web.json_response({
            'status': 'error',
            'message': str(e)
        }, status=500)


@require_admin
async def create_manual_backup(request):
    """Creates a manual backup under the operation lock."""
    lock = request.app['operation_lock']
    try:
        lock.acquire('backup', UpdateStatus.IDLE)
    except OperationInProgressError as e:
        return _error_response(e)

    loop = asyncio.get_running_loop()
    try:
        backup = await loop.run_in_executor(None, create_backup, 'manual')
        pruned = await loop.run_in_executor(None, apply_retention, (backup['filename'],))
    except UpdaterError as e:
        lock.release(message=e.message)
        logger.error(f"Manual backup failed: {e}")
        return _error_response(e)

    lock.release(message=f"Backup created: {backup['filename']}")
    return web.json_response({
        'status': 'success',
        'message': 'Backup created',
        'backup': backup,
        'retention': pruned
    }, status=201)


@require_admin
async def remove_backup(request):
    """Deletes a backup archive."""
    filename = request.match_info['filename']
    try:
        _reject_if_busy(request)
        delete_backup(filename)
    except UpdaterError as e:
        return _error_response(e)
    except OSError as e:
        logger.error(f"Error deleting backup {filename}: {e}")
        return web.json_response({
            'status': 'error',
            'message': f'Failed to delete backup: {e}'
        }, status=500)

    logger.info(f"Backup {filename} deleted by {request['user']['username']}")
    return web.json_response({
        'status': 'success',
        'message': f'Backup {filename} deleted'
    })


@require_admin
async def download_backup(request):
    """Sends a backup archive as an attachment."""
    filename = request.match_info['filename']
    try:
        path = get_backup_path(filename)
    except UpdaterError as e:
        return _error_response(e)

    return web.FileResponse(
        path,
        headers={
            'Content-Type': 'application/gzip',
            'Content-Disposition': f'attachment; filename="{path.name}"',
        }
    )


@require_admin
async def check_backup(request):
    """Verifies size, checksum and readability of a backup archive."""
    filename = request.match_info['filename']
    try:
        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, verify_backup, filename)
    except UpdaterError as e:
        return _error_response(e)

    return web.json_response({
        'status': 'success',
        'backup': result
    })


def _optional_non_negative_int(data, key, default):
    value = data.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"{key} must be a non-negative integer")
    return value


@require_admin
async def prune_old_backups(request):
    """
    Applies a retention policy on demand.

    POST /api/update/backups/prune
    Body (optional): {"keep_count": 5, "max_age_days": 30}
    Missing values fall back to the configured retention policy.
    """
    try:
        data = await request.json() if request.can_read_body else {}
        if not isinstance(data, dict):
            raise ValueError("Request body must be a JSON object")
        config = get_updater_config()
        keep_count = _optional_non_negative_int(data, 'keep_count', config.get('backup_retention_count'))
        max_age_days = _optional_non_negative_int(data, 'max_age_days', config.get('backup_retention_days'))
    except ValueError as e:
        return web.json_response({
            'status': 'error',
            'message': str(e)
        }, status=400)

    try:
        _reject_if_busy(request)
    except UpdaterError as e:
        return _error_response(e)

    loop = asyncio.get_running_loop()
    summary = await loop.run_in_executor(None, lambda: prune_backups(keep_count, max_age_days))
    return web.json_response({
        'status': 'success',
        'summary': summary
    })


# --- Configuration ---

def _is_text(value):
    # A leading '-' would be read as an option by git
    return isinstance(value, str) and bool(value.strip()) and not value.startswith('-')


def _is_command(value):
    return isinstance(value, list) and bool(value) and all(isinstance(part, str) and part for part in value)


def _is_number(value, minimum=0):
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= minimum


def _is_install_steps(value):
    if not isinstance(value, list):
        return False
    for step in value:
        if not isinstance(step, dict) or not _is_command(step.get('command')):
            return False
        if not isinstance(step.get('cwd', '.'), str):
            return False
        if step.get('requires') is not None and not isinstance(step['requires'], str):
            return False
    return True


# app_dir, backup_dir, host and port are only changed in the config file
CONFIG_VALIDATORS = {
    'remote': _is_text,
    'branch': _is_text,
    'pull_command': lambda v: v is None or _is_command(v),
    'install_steps': _is_install_steps,
    'preserve_paths': lambda v: isinstance(v, list) and all(isinstance(p, str) and p for p in v),
    'step_timeout_seconds': lambda v: _is_number(v) and v > 0,
    'fetch_timeout_seconds': lambda v: _is_number(v) and v > 0,
    'backup_retention_count': lambda v: isinstance(v, int) and not isinstance(v, bool) and v >= 0,
    'backup_retention_days': lambda v: v is None or (isinstance(v, int) and not isinstance(v, bool) and v >= 0),
    'service_name': _is_text,
    'restart_command': lambda v: v is None or _is_command(v),
    'restart_delay_seconds': _is_number,
    'health_check_attempts': lambda v: isinstance(v, int) and not isinstance(v, bool) and v >= 1,
    'health_check_initial_delay': _is_number,
    'health_check_max_delay': _is_number,
}


@require_admin
async def get_update_config(request):
    """Returns the updater configuration."""
    return web.json_response({
        'status': 'success',
        'config': get_updater_config()
    })


@require_admin
async def update_update_config(request):
    """
    Updates editable updater settings.

    PUT /api/update/config
    Body: any subset of the editable keys, e.g. {"branch": "stable"}
    """
    try:
        data = await request.json()
    except ValueError:
        return web.json_response({
            'status': 'error',
            'message': 'Request body must be JSON'
        }, status=400)

    if not isinstance(data, dict) or not data:
        return web.json_response({
            'status': 'error',
            'message': 'Request body must be a non-empty JSON object'
        }, status=400)

    unknown = sorted(key for key in data if key not in CONFIG_VALIDATORS)
    invalid = sorted(key for key in data if key in CONFIG_VALIDATORS and not CONFIG_VALIDATORS[key](data[key]))
    if unknown or invalid:
        return web.json_response({
            'status': 'error',
            'message': 'Invalid configuration',
            'unknown_keys': unknown,
            'invalid_keys': invalid
        }, status=400)

    try:
        _reject_if_busy(request)
    except UpdaterError as e:
        return _error_response(e)

    config = dict(get_updater_config())
    config.update(data)

    if not save_updater_config(config):
        return web.json_response({
            'status': 'error',
            'message': 'Failed to save configuration'
        }, status=500)

    logger.info(f"Updater configuration changed by {request['user']['username']}: {', '.join(sorted(data))}")
    return web.json_response({
        'status': 'success',
        'message': 'Configuration updated successfully',
        'config': config
    })
