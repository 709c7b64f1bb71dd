"""
Service liveness API handler.

The health endpoint is public; it is polled by a restarted instance to
confirm that it is serving and by external monitoring.
"""

import time
import logging
from aiohttp import web

logger = logging.getLogger(__name__)


async def health(request):
    """Reports that the service is up, with its uptime and operation state."""
    lock = request.app['operation_lock']
    return web.json_response({
        'status': 'healthy',
        'uptime_seconds': round(time.monotonic() - request.app['started_at'], 3),
        'operation': lock.operation,
    })
