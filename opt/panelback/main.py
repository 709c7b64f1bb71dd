"""
Panel Backend - Main Entry Point

This is the main entry point for the panel's self-update API server.
Functionality is organized into the auth, handlers and updater packages.
"""

import os
import time
import logging
from aiohttp import web
from aiohttp.abc import AbstractAccessLogger

from panelback.config_loader import ensure_config_directories, get_updater_config
from panelback.auth.middleware import auth_middleware
from panelback.auth.user_management import ensure_default_admin
from panelback.handlers.auth_handlers import login, verify, refresh
from panelback.handlers.system_handlers import health
from panelback.handlers.update_handlers import (
    get_version, get_update_status, check_updates, apply_update, perform_rollback,
    get_backups, create_manual_backup, remove_backup, download_backup, check_backup,
    prune_old_backups, get_update_config, update_update_config
)
from panelback.updater.health import restart_confirmation_ctx
from panelback.updater.state import OperationLock

logger = logging.getLogger(__name__)


CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'GET, POST, PUT, DELETE, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, Authorization',
    'Access-Control-Max-Age': '86400',  # 24 hours
}


@web.middleware
async def cors_middleware(request, handler):
    """Allow the panel frontend, served from another origin, to call the API."""
    # Handle OPTIONS preflight requests
    if request.method == 'OPTIONS':
        return web.Response()
    return await handler(request)


async def add_cors_headers(request, response):
    # Streamed responses send their headers before the handler returns
    response.headers.update(CORS_HEADERS)


class AccessLogger(AbstractAccessLogger):
    """Access log without query strings, which can carry the JWT for event streams."""

    def log(self, request, response, time):
        self.logger.info(
            f'{request.remote} "{request.method} {request.path}" '
            f'{response.status} {response.body_length} {time:.3f}s'
        )


def init_app():
    """Initializes the Aiohttp application with routes."""
    app = web.Application()
    app['operation_lock'] = OperationLock()
    app['started_at'] = time.monotonic()

    # Applied in order: CORS outermost, then auth
    app.middlewares.append(cors_middleware)
    app.middlewares.append(auth_middleware)
    app.on_response_prepare.append(add_cors_headers)

    app.cleanup_ctx.append(restart_confirmation_ctx)

    # ---< API Routes >---
    # Liveness
    app.router.add_get('/api/health', health)

    # Authentication
    app.router.add_post('/api/auth/login', login)
    app.router.add_get('/api/auth/verify', verify)
    app.router.add_post('/api/auth/refresh', refresh)

    # Updater
    app.router.add_get('/api/update/version', get_version)
    app.router.add_get('/api/update/status', get_update_status)
    app.router.add_get('/api/update/check', check_updates)
    app.router.add_get('/api/update/apply', apply_update)
    app.router.add_get('/api/update/rollback', perform_rollback)
    app.router.add_get('/api/update/config', get_update_config)
    app.router.add_put('/api/update/config', update_update_config)

    # Backups
    app.router.add_get('/api/update/backups', get_backups)
    app.router.add_post('/api/update/backups', create_manual_backup)
    app.router.add_post('/api/update/backups/prune', prune_old_backups)
    app.router.add_delete('/api/update/backups/{filename}', remove_backup)
    app.router.add_get('/api/update/backups/{filename}/download', download_backup)
    app.router.add_get('/api/update/backups/{filename}/verify', check_backup)

    return app


def main():
    level = os.environ.get('LOG_LEVEL', 'INFO').upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO),
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if not ensure_config_directories():
        logger.critical("Configuration directory is not writable; settings and users cannot be saved.")
    ensure_default_admin()

    config = get_updater_config()
    logger.info(f"Managing {config['app_dir']}, backups in {config['backup_dir']}")

    app = init_app()
    web.run_app(app, host=config.get('host', '0.0.0.0'), port=config.get('port', 5000),
                access_log_class=AccessLogger)


if __name__ == '__main__':
    main()
