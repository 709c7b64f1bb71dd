"""
User Management Module

Panel accounts live in a JSON file under the configuration directory with
bcrypt password hashes. On first start a single admin account is created
with a random password that is written to the log once.
"""

import json
import logging
import secrets
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict

import bcrypt

from ..config_loader import get_config_file_path

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_USERNAME = 'admin'
ROLES = ('admin', 'user')


def load_users() -> dict:
    """Load the users file."""
    users_path = Path(get_config_file_path('users'))

    if not users_path.exists():
        return {'users': {}}

    try:
        with open(users_path, 'r') as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Error loading users: {e}")
        return {'users': {}}

    data.setdefault('users', {})
    return data


def save_users(data: dict) -> bool:
    """Save the users file with owner-only permissions."""
    users_path = Path(get_config_file_path('users'))
    try:
        users_path.parent.mkdir(parents=True, exist_ok=True)
        with open(users_path, 'w') as f:
            json.dump(data, f, indent=2)
        users_path.chmod(0o600)
        return True
    except OSError as e:
        logger.error(f"Error saving users: {e}")
        return False


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except ValueError:
        # Malformed hash in the users file
        return False


def create_user(username: str, password: str, role: str = 'user') -> Dict[str, str]:
    """
    Create a panel user.

    Args:
        username: The username to create
        password: The user's password
        role: User role ('admin' or 'user')

    Returns:
        dict: Result with status and message
    """
    if role not in ROLES:
        return {'status': 'error', 'message': f'Invalid role: {role}'}

    data = load_users()
    if username in data['users']:
        return {'status': 'error', 'message': f'User {username} already exists'}

    data['users'][username] = {
        'password_hash': hash_password(password),
        'role': role,
        'created_at': datetime.now().isoformat(),
    }
    if not save_users(data):
        return {'status': 'error', 'message': 'Failed to save user'}

    logger.info(f"Created user: {username} with role: {role}")
    return {'status': 'success', 'message': f'User {username} created successfully'}


def authenticate_user(username: str, password: str) -> bool:
    """Check a username/password pair against the users file."""
    user = load_users()['users'].get(username)
    if not user or not user.get('password_hash'):
        return False
    return verify_password(password, user['password_hash'])


def get_user_role(username: str) -> Optional[str]:
    """
    Get a user's role.

    Returns:
        str: 'admin' or 'user', or None for unknown users
    """
    user = load_users()['users'].get(username)
    if user is None:
        return None
    return user.get('role', 'user')


def is_admin(username: str) -> bool:
    """
    Check if a user has admin role.

    Args:
        username: The username

    Returns:
        bool: True if user is admin, False otherwise
    """
    return get_user_role(username) == 'admin'


def ensure_default_admin() -> Optional[str]:
    """
    Create the default admin account if no users exist.

    Returns:
        str: The generated password, or None if users already existed
    """
    if load_users()['users']:
        return None

    password = secrets.token_urlsafe(12)
    result = create_user(DEFAULT_ADMIN_USERNAME, password, role='admin')
    if result['status'] != 'success':
        logger.error(f"Could not create default admin: {result['message']}")
        return None

    logger.warning(
        f"Created default user '{DEFAULT_ADMIN_USERNAME}' with password '{password}'. "
        f"Change it after the first login."
    )
    return password
