"""
Dynamic Configuration Loader for the panel backend.

This module provides runtime configuration loading from JSON files with:
- Default values if files don't exist
- Caching with ability to reload
- Path creation on save
- A base directory that can be relocated with PANELBACK_CONFIG_DIR
"""

import os
import sys
import json
import logging
from typing import Dict, Any, Optional
from pathlib import Path

logger = logging.getLogger(__name__)

# --- Configuration Directory Layout ---
CONFIG_DIR_ENV = 'PANELBACK_CONFIG_DIR'
DEFAULT_CONFIG_BASE_DIR = '/etc/panelback'

UPDATER_CONFIG_FILE = os.path.join('config', 'updater.json')
AUTH_CONFIG_FILE = os.path.join('config', 'auth.json')
UPDATE_STATE_FILE = os.path.join('data', 'update_state.json')
USERS_FILE = os.path.join('data', 'users.json')

# Application checkout: /path/to/repo/opt/panelback/config_loader.py -> /path/to/repo
DEFAULT_APP_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..'))

# --- Default Configurations ---
DEFAULT_UPDATER_CONFIG = {
    'app_dir': DEFAULT_APP_DIR,
    'backup_dir': os.path.join(DEFAULT_APP_DIR, 'backups'),
    'remote': 'origin',
    'branch': 'main',
    # None means "git pull --ff-only <remote> <branch>"
    'pull_command': None,
    # Run in order; a step is skipped when its cwd or its 'requires' file is missing
    'install_steps': [
        {'name': 'frontend dependencies', 'cwd': '.', 'requires': 'package.json',
         'command': ['npm', 'install']},
        {'name': 'api backend dependencies', 'cwd': 'api-backend', 'requires': 'package.json',
         'command': ['npm', 'install']},
        {'name': 'proxy dependencies', 'cwd': 'proxy', 'requires': 'package.json',
         'command': ['npm', 'install']},
        {'name': 'frontend build', 'cwd': '.', 'requires': 'package.json',
         'command': ['npm', 'run', 'build']},
        {'name': 'panel backend', 'cwd': '.', 'requires': 'pyproject.toml',
         'command': [sys.executable, '-m', 'pip', 'install', '-e', '.']},
    ],
    # Excluded from backups and left untouched by rollback
    'preserve_paths': [
        '.git',
        'node_modules',
        '__pycache__',
        'sessions',
        '*.db',
        '.env',
        'venv',
        '.venv',
    ],
    'step_timeout_seconds': 900,
    'fetch_timeout_seconds': 60,
    'backup_retention_count': 10,
    'backup_retention_days': None,
    'service_name': 'panelback',
    # None means "systemctl restart <service_name>"
    'restart_command': None,
    'restart_delay_seconds': 2,
    'health_check_attempts': 8,
    'health_check_initial_delay': 0.5,
    'health_check_max_delay': 10,
    'host': '0.0.0.0',
    'port': 5000,
}

DEFAULT_AUTH_CONFIG = {
    'jwt_secret': None,  # Will be auto-generated
    'jwt_algorithm': 'HS256',
    'session_timeout_hours': 24,
}

DEFAULT_UPDATE_STATE = {
    'last_check': None,
    'last_check_status': None,
    'last_update': None,
    'last_rollback': None,
    'pending_restart': None,
    'restart': None,
}

# --- Configuration Cache ---
_config_cache: Dict[str, Any] = {}


def get_config_base_dir() -> str:
    """Return the configuration base directory (env override or default)."""
    return os.environ.get(CONFIG_DIR_ENV) or DEFAULT_CONFIG_BASE_DIR


def get_config_file_path(config_type: str) -> str:
    """
    Get the file path for a specific configuration type.

    Args:
        config_type: One of 'updater', 'auth', 'update_state', 'users'

    Returns:
        str: The configuration file path
    """
    paths = {
        'updater': UPDATER_CONFIG_FILE,
        'auth': AUTH_CONFIG_FILE,
        'update_state': UPDATE_STATE_FILE,
        'users': USERS_FILE,
    }

    if config_type in paths:
        return os.path.join(get_config_base_dir(), paths[config_type])

    raise ValueError(f"Unknown config type: {config_type}")


def ensure_config_directories() -> bool:
    """
    Ensure the configuration directories exist.

    Returns:
        bool: True if all directories were created/exist successfully
    """
    base = get_config_base_dir()
    try:
        for directory in (os.path.join(base, 'config'), os.path.join(base, 'data')):
            Path(directory).mkdir(parents=True, exist_ok=True)
        return True
    except OSError as e:
        logger.error(f"Failed to create configuration directories: {e}")
        return False


def _load_config(path: str, default: Dict[str, Any]) -> Dict[str, Any]:
    """
    Load configuration from a JSON file merged over its defaults.

    Args:
        path: The configuration file path
        default: Default configuration values

    Returns:
        dict: The loaded configuration merged with defaults
    """
    config = json.loads(json.dumps(default))

    if os.path.exists(path):
        try:
            with open(path, 'r') as f:
                loaded = json.load(f)
            config.update(loaded)
        except (OSError, ValueError) as e:
            logger.warning(f"Error loading config from {path}: {e}")

    return config


def _save_config(path: str, config: Dict[str, Any], permissions: int = 0o644) -> bool:
    """
    Save configuration to a JSON file.

    Args:
        path: Path to save the configuration
        config: Configuration dictionary to save
        permissions: File permissions (default 0o644)

    Returns:
        bool: True if saved successfully
    """
    try:
        Path(path).parent.mkdir(parents=True, exist_ok=True)

        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w') as f:
            json.dump(config, f, indent=2)
        os.chmod(tmp_path, permissions)
        os.replace(tmp_path, path)
        return True
    except OSError as e:
        logger.error(f"Failed to save config to {path}: {e}")
        return False


def get_updater_config(force_reload: bool = False) -> Dict[str, Any]:
    """
    Get updater configuration.

    Args:
        force_reload: If True, bypass cache and reload from disk

    Returns:
        dict: Updater configuration with keys:
            - app_dir: Application checkout managed by the updater
            - backup_dir: Directory holding backup archives
            - remote / branch: Git tracking reference
            - install_steps: Dependency install commands per sub-application
            - preserve_paths: Patterns excluded from backups and rollback
            - step_timeout_seconds / fetch_timeout_seconds: Command deadlines
            - backup_retention_count / backup_retention_days: Retention policy
            - restart_command / restart_delay_seconds: Supervisor restart
    """
    cache_key = 'updater'

    if not force_reload and cache_key in _config_cache:
        return _config_cache[cache_key]

    config = _load_config(get_config_file_path('updater'), DEFAULT_UPDATER_CONFIG)

    _config_cache[cache_key] = config
    return config


def save_updater_config(config: Dict[str, Any]) -> bool:
    """
    Save updater configuration.

    Args:
        config: Updater configuration dictionary

    Returns:
        bool: True if saved successfully
    """
    full_config = json.loads(json.dumps(DEFAULT_UPDATER_CONFIG))
    full_config.update(config)

    if _save_config(get_config_file_path('updater'), full_config):
        _config_cache['updater'] = full_config
        return True
    return False


def get_auth_config(force_reload: bool = False) -> Dict[str, Any]:
    """
    Get authentication configuration.

    Args:
        force_reload: If True, bypass cache and reload from disk

    Returns:
        dict: Authentication configuration
    """
    cache_key = 'auth'

    if not force_reload and cache_key in _config_cache:
        return _config_cache[cache_key]

    config = _load_config(get_config_file_path('auth'), DEFAULT_AUTH_CONFIG)

    _config_cache[cache_key] = config
    return config


def save_auth_config(config: Dict[str, Any]) -> bool:
    """
    Save authentication configuration.

    Args:
        config: Authentication configuration dictionary

    Returns:
        bool: True if saved successfully
    """
    full_config = DEFAULT_AUTH_CONFIG.copy()
    full_config.update(config)

    # Use more restrictive permissions for auth config
    if _save_config(get_config_file_path('auth'), full_config, permissions=0o600):
        _config_cache['auth'] = full_config
        return True
    return False


def load_update_state() -> Dict[str, Any]:
    """Load the persisted updater state (never cached, it changes per operation)."""
    return _load_config(get_config_file_path('update_state'), DEFAULT_UPDATE_STATE)


def save_update_state(state: Dict[str, Any]) -> bool:
    """Persist the updater state."""
    full_state = DEFAULT_UPDATE_STATE.copy()
    full_state.update(state)
    return _save_config(get_config_file_path('update_state'), full_state)


def update_state(**changes) -> Dict[str, Any]:
    """Merge changes into the persisted updater state and return the result."""
    state = load_update_state()
    state.update(changes)
    save_update_state(state)
    return state


def clear_cache(config_type: Optional[str] = None):
    """
    Clear the configuration cache.

    Args:
        config_type: Specific configuration type to clear, or None to clear all
    """
    global _config_cache

    if config_type:
        _config_cache.pop(config_type, None)
    else:
        _config_cache = {}

