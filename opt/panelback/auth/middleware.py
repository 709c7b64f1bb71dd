"""
Authentication Middleware Module

Provides aiohttp middleware to protect API endpoints with
JWT token authentication.
"""

import logging
from functools import wraps
from aiohttp import web
from typing import Callable, Optional
from .jwt_auth import verify_token
from .user_management import is_admin

logger = logging.getLogger(__name__)

# Endpoints that don't require authentication
PUBLIC_ENDPOINTS = [
    '/api/auth/login',
    '/api/health',
]


def extract_token_from_request(request: web.Request) -> Optional[str]:
    """
    Extract the JWT from request headers or query parameters.

    Checks (in order):
    1. Authorization: Bearer <token>
    2. Query parameter: token=<token> (EventSource cannot set headers)

    Args:
        request: The aiohttp request object

    Returns:
        str: The token, or None
    """
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        return auth_header[7:]

    return request.query.get('token') or None


def is_public_endpoint(path: str) -> bool:
    """Check if an endpoint is public (doesn't require auth)."""
    for public_path in PUBLIC_ENDPOINTS:
        if path == public_path or path.startswith(public_path + '/'):
            return True
    return False


async def authenticate_request(request: web.Request) -> Optional[dict]:
    """
    Authenticate a request using its JWT.

    Args:
        request: The aiohttp request object

    Returns:
        dict: User information if authenticated, None otherwise
    """
    token = extract_token_from_request(request)
    if not token:
        return None

    payload = verify_token(token)
    if not payload or not payload.get('username'):
        return None

    return {
        'username': payload['username'],
        'role': payload.get('role', 'user'),
        'token_payload': payload
    }


@web.middleware
async def auth_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    """
    Authentication middleware for aiohttp.

    Checks authentication for all non-public endpoints and attaches user
    information to the request. CORS preflight requests pass through.
    """
    if request.method == 'OPTIONS' or is_public_endpoint(request.path):
        return await handler(request)

    user_info = await authenticate_request(request)

    if not user_info:
        logger.warning(f"Unauthorized access attempt to {request.path}")
        return web.json_response(
            {
                'status': 'error',
                'message': 'Authentication required. Please provide a valid JWT token.'
            },
            status=401
        )

    request['user'] = user_info
    logger.debug(f"Authenticated request to {request.path} by {user_info['username']}")

    return await handler(request)


def require_admin(handler: Callable) -> Callable:
    """
    Decorator to require admin role for a handler.

    Usage:
        @require_admin
        async def admin_only_handler(request):
            ...
    """
    @wraps(handler)
    async def wrapper(request: web.Request) -> web.StreamResponse:
        user_info = request.get('user')

        if not user_info:
            return web.json_response(
                {
                    'status': 'error',
                    'message': 'Authentication required'
                },
                status=401
            )

        if not is_admin(user_info['username']):
            logger.warning(f"User {user_info['username']} attempted to access admin-only endpoint: {request.path}")
            return web.json_response(
                {
                    'status': 'error',
                    'message': 'Admin privileges required'
                },
                status=403
            )

        return await handler(request)

    return wrapper


def get_current_user(request: web.Request) -> Optional[dict]:
    """
    Get the current authenticated user from the request.

    Args:
        request: The aiohttp request object

    Returns:
        dict: User information if authenticated, None otherwise
    """
    return request.get('user')
