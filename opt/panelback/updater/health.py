"""
Service restart and post-restart health confirmation.

The restart is fire-and-forget: the supervisor command is launched after a
short delay so the progress stream can be flushed first. Before that, a
pending-restart marker is written to the update state; the next process to
start polls its own liveness endpoint with bounded, backed-off retries and
records the outcome, which clients read from the status endpoint.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, List, Optional, Set

import aiohttp

from ..config_loader import get_updater_config, load_update_state, update_state
from .version import get_current_version

logger = logging.getLogger(__name__)

HEALTH_PATH = '/api/health'

# Strong references to scheduled restarts
_restart_tasks: Set[asyncio.Task] = set()


def get_restart_command(config: Optional[Dict] = None) -> List[str]:
    config = config or get_updater_config()
    return config.get('restart_command') or ['systemctl', 'restart', config['service_name']]


def mark_pending_restart(operation: str, expected_hash: Optional[str] = None) -> Dict:
    """Record that a restart is about to happen so the next process can confirm it."""
    pending = {
        'operation': operation,
        'expected_hash': expected_hash,
        'requested_at': datetime.now().isoformat(),
    }
    update_state(pending_restart=pending)
    return pending


def schedule_service_restart(delay_seconds: Optional[float] = None) -> asyncio.Task:
    """Schedules a service restart after a delay."""
    config = get_updater_config()
    command = get_restart_command(config)
    if delay_seconds is None:
        delay_seconds = config.get('restart_delay_seconds', 2)

    async def restart_service():
        await asyncio.sleep(delay_seconds)
        try:
            # New session so the supervisor command outlives this process
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                start_new_session=True
            )
            logger.info(f"Service restart triggered: {' '.join(command)}")
            returncode = await process.wait()
            if returncode != 0:
                logger.error(f"Restart command exited with code {returncode}")
        except OSError as e:
            logger.error(f"Failed to restart service: {e}")

    task = asyncio.create_task(restart_service())
    _restart_tasks.add(task)
    task.add_done_callback(_restart_tasks.discard)
    return task


async def wait_until_healthy(
    url: str,
    attempts: int = 8,
    initial_delay: float = 0.5,
    max_delay: float = 10,
    request_timeout: float = 5,
) -> Dict:
    """
    Poll a liveness endpoint until it reports healthy or attempts run out.

    The delay between attempts doubles after every failure, capped at
    max_delay.

    Returns:
        dict: {'healthy': bool, 'attempts': int, 'payload' or 'error': ...}
    """
    delay = initial_delay
    last_error = None
    timeout = aiohttp.ClientTimeout(total=request_timeout)

    async with aiohttp.ClientSession(timeout=timeout) as session:
        for attempt in range(1, attempts + 1):
            try:
                async with session.get(url) as response:
                    if response.status == 200:
                        payload = await response.json()
                        if payload.get('status') == 'healthy':
                            logger.info(f"Health check passed on attempt {attempt}: {url}")
                            return {'healthy': True, 'attempts': attempt, 'payload': payload}
                    last_error = f"HTTP {response.status}"
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                last_error = str(e) or type(e).__name__

            logger.debug(f"Health check attempt {attempt}/{attempts} failed: {last_error}")
            if attempt < attempts:
                await asyncio.sleep(delay)
                delay = min(delay * 2, max_delay)

    logger.error(f"Service did not become healthy after {attempts} attempts: {last_error}")
    return {'healthy': False, 'attempts': attempts, 'error': last_error}


def _local_health_url(config: Dict) -> str:
    host = config.get('host') or '127.0.0.1'
    if host in ('0.0.0.0', '::'):
        host = '127.0.0.1'
    return f"http://{host}:{config.get('port', 5000)}{HEALTH_PATH}"


async def confirm_restart(url: Optional[str] = None) -> Optional[Dict]:
    """
    Confirm a pending restart by polling this instance's liveness endpoint.

    Returns:
        dict: The recorded restart outcome, or None if no restart was pending
    """
    state = load_update_state()
    pending = state.get('pending_restart')
    if not pending:
        return None

    config = get_updater_config()
    result = await wait_until_healthy(
        url or _local_health_url(config),
        attempts=config.get('health_check_attempts', 8),
        initial_delay=config.get('health_check_initial_delay', 0.5),
        max_delay=config.get('health_check_max_delay', 10),
    )

    version = await asyncio.get_running_loop().run_in_executor(None, get_current_version)
    current_hash = version['hash']

    outcome = {
        'operation': pending.get('operation'),
        'healthy': result['healthy'],
        'attempts': result['attempts'],
        'hash': current_hash,
        'expected_hash': pending.get('expected_hash'),
        'requested_at': pending.get('requested_at'),
        'confirmed_at': datetime.now().isoformat(),
    }
    if not result['healthy']:
        outcome['error'] = result.get('error')

    update_state(pending_restart=None, restart=outcome)
    logger.info(f"Restart after {outcome['operation']} confirmed: healthy={outcome['healthy']}")
    return outcome


async def restart_confirmation_ctx(app):
    """aiohttp cleanup context: confirm a pending restart in the background."""
    task = None
    if load_update_state().get('pending_restart'):
        task = asyncio.create_task(confirm_restart())

    yield

    if task and not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
