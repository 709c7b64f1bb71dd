"""
Authentication HTTP Handlers

Handles HTTP requests for login, session verification and token refresh.
"""

import logging
from aiohttp import web

from ..auth.jwt_auth import generate_token, refresh_token
from ..auth.user_management import authenticate_user, get_user_role
from ..auth.middleware import extract_token_from_request, get_current_user

logger = logging.getLogger(__name__)


async def login(request: web.Request) -> web.Response:
    """
    Handle user login with username/password.

    POST /api/auth/login
    Body: {"username": "user", "password": "pass"}
    """
    try:
        data = await request.json()
    except ValueError:
        return web.json_response(
            {
                'status': 'error',
                'message': 'Request body must be JSON'
            },
            status=400
        )

    username = str(data.get('username') or '').strip()
    password = str(data.get('password') or '')

    if not username or not password:
        return web.json_response(
            {
                'status': 'error',
                'message': 'Username and password are required'
            },
            status=400
        )

    if not authenticate_user(username, password):
        logger.warning(f"Failed login attempt for user: {username}")
        return web.json_response(
            {
                'status': 'error',
                'message': 'Invalid username or password'
            },
            status=401
        )

    role = get_user_role(username) or 'user'
    token = generate_token(username, {'role': role})

    logger.info(f"Successful login for user: {username}")

    return web.json_response(
        {
            'status': 'success',
            'message': 'Login successful',
            'token': token,
            'user': {
                'username': username,
                'role': role
            }
        }
    )


async def verify(request: web.Request) -> web.Response:
    """
    Verify current authentication status.

    GET /api/auth/verify
    """
    user = get_current_user(request)

    return web.json_response(
        {
            'status': 'success',
            'authenticated': True,
            'user': {
                'username': user['username'],
                'role': get_user_role(user['username']) or user['role']
            }
        }
    )


async def refresh(request: web.Request) -> web.Response:
    """
    Refresh JWT token.

    POST /api/auth/refresh
    """
    new_token = refresh_token(extract_token_from_request(request))

    if not new_token:
        return web.json_response(
            {
                'status': 'error',
                'message': 'Invalid token for refresh'
            },
            status=401
        )

    return web.json_response(
        {
            'status': 'success',
            'token': new_token
        }
    )
