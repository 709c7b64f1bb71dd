"""
JWT Token Authentication Module

Handles JWT token generation, validation, and session management
for web UI authentication.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any

import jwt

from ..config_loader import get_auth_config, save_auth_config

logger = logging.getLogger(__name__)

# Claims set by generate_token itself
STANDARD_CLAIMS = ('username', 'iat', 'exp', 'jti')


def load_auth_config() -> dict:
    """Load authentication configuration, generating a JWT secret on first use."""
    config = get_auth_config()

    if not config.get('jwt_secret'):
        # Set on the cached dict so the secret is stable even if saving fails
        config['jwt_secret'] = secrets.token_urlsafe(64)
        if not save_auth_config(config):
            logger.warning("Could not persist generated JWT secret; tokens will not survive a restart")
        logger.info("Created new authentication configuration with generated JWT secret")

    return config


def generate_token(username: str, additional_claims: Optional[Dict[str, Any]] = None) -> str:
    """
    Generate a JWT token for a user.

    Args:
        username: The username to create a token for
        additional_claims: Optional additional claims to include in the token

    Returns:
        str: The JWT token
    """
    config = load_auth_config()

    now = datetime.now(timezone.utc)
    expiration = now + timedelta(hours=config.get('session_timeout_hours', 24))

    payload = {
        'username': username,
        'iat': now,
        'exp': expiration,
        'jti': secrets.token_urlsafe(16)  # Unique token ID
    }

    if additional_claims:
        payload.update(additional_claims)

    token = jwt.encode(
        payload,
        config['jwt_secret'],
        algorithm=config.get('jwt_algorithm', 'HS256')
    )

    logger.info(f"Generated JWT token for user: {username}")
    return token


def verify_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Verify and decode a JWT token.

    Args:
        token: The JWT token to verify

    Returns:
        dict: The decoded token payload, or None if invalid
    """
    config = load_auth_config()

    try:
        return jwt.decode(
            token,
            config['jwt_secret'],
            algorithms=[config.get('jwt_algorithm', 'HS256')]
        )
    except jwt.ExpiredSignatureError:
        logger.warning("JWT token verification failed: token expired")
        return None
    except jwt.InvalidTokenError:
        logger.warning("JWT token verification failed: invalid token")
        return None


def refresh_token(old_token: str) -> Optional[str]:
    """
    Refresh a JWT token (generate a new one with updated expiration).

    Args:
        old_token: The current JWT token

    Returns:
        str: A new JWT token, or None if the old token is invalid
    """
    payload = verify_token(old_token)
    if not payload:
        return None

    username = payload.get('username')
    if not username:
        return None

    custom_claims = {k: v for k, v in payload.items() if k not in STANDARD_CLAIMS}

    return generate_token(username, custom_claims or None)
