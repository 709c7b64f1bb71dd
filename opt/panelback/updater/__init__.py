"""
Updater package for the panel backend.

This package contains self-update functionality for:
- Version reading and update checks against the git remote
- Update execution and rollback
- Backup creation, verification, retention and restoration
- External command execution with deadlines
- Progress streaming and the single-operation lock
- Service restart and post-restart health confirmation
"""

from .errors import (
    UpdaterError,
    BackupError,
    InvalidBackupNameError,
    BackupNotFoundError,
    CommandFailedError,
    CommandTimeoutError,
    OperationInProgressError,
)

from .state import UpdateStatus, OperationLock

from .version import (
    validate_git_repo,
    get_current_version,
    stream_check,
    check_status,
)

from .backup import (
    create_backup,
    list_backups,
    get_backup_path,
    delete_backup,
    verify_backup,
    prune_backups,
    apply_retention,
)

from .executor import stream_update, stream_rollback

from .health import (
    schedule_service_restart,
    wait_until_healthy,
    confirm_restart,
    restart_confirmation_ctx,
)

from .stream import run_streamed

__all__ = [
    # Errors
    'UpdaterError',
    'BackupError',
    'InvalidBackupNameError',
    'BackupNotFoundError',
    'CommandFailedError',
    'CommandTimeoutError',
    'OperationInProgressError',
    # State
    'UpdateStatus',
    'OperationLock',
    # Version
    'validate_git_repo',
    'get_current_version',
    'stream_check',
    'check_status',
    # Backups
    'create_backup',
    'list_backups',
    'get_backup_path',
    'delete_backup',
    'verify_backup',
    'prune_backups',
    'apply_retention',
    # Operations
    'stream_update',
    'stream_rollback',
    # Restart
    'schedule_service_restart',
    'wait_until_healthy',
    'confirm_restart',
    'restart_confirmation_ctx',
    # Streaming
    'run_streamed',
]
