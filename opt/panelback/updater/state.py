"""
Updater status values and the single-operation lock.

Only one check, update, rollback or manual backup may run at a time per
process. A second start request is rejected instead of being queued.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from .errors import OperationInProgressError

logger = logging.getLogger(__name__)


class UpdateStatus(str, Enum):
    IDLE = 'idle'
    CHECKING = 'checking'
    UPTODATE = 'uptodate'
    AVAILABLE = 'available'
    DIVERGED = 'diverged'
    AHEAD = 'ahead'
    ERROR = 'error'
    UPDATING = 'updating'
    RESTARTING = 'restarting'
    ROLLINGBACK = 'rollingback'


class OperationLock:
    """
    Single-slot lock holding the process-wide operation state token.

    acquire() and release() are called from the event loop only, so the
    check-and-set needs no further synchronisation.
    """

    def __init__(self):
        self.operation: Optional[str] = None
        self.status = UpdateStatus.IDLE
        self.message = ''
        self.started_at: Optional[str] = None
        self.finished_at: Optional[str] = None

    @property
    def busy(self) -> bool:
        return self.operation is not None

    def acquire(self, operation: str, status: UpdateStatus):
        """
        Claim the lock for an operation.

        Raises:
            OperationInProgressError: If another operation holds the lock
        """
        if self.busy:
            logger.warning(f"Rejected '{operation}': '{self.operation}' is in progress")
            raise OperationInProgressError(
                f"Another operation is in progress: {self.operation} ({self.status.value})"
            )
        self.operation = operation
        self.status = status
        self.message = ''
        self.started_at = datetime.now().isoformat()
        self.finished_at = None
        logger.info(f"Operation '{operation}' started")

    def set_status(self, status: UpdateStatus, message: Optional[str] = None):
        self.status = status
        if message is not None:
            self.message = message

    def release(self, status: Optional[UpdateStatus] = None, message: Optional[str] = None):
        """Free the lock, keeping the final status for later status queries."""
        if status is not None:
            self.set_status(status, message)
        logger.info(f"Operation '{self.operation}' finished with status {self.status.value}")
        self.operation = None
        self.finished_at = datetime.now().isoformat()

    def snapshot(self) -> dict:
        return {
            'status': self.status.value,
            'operation': self.operation,
            'message': self.message,
            'startedAt': self.started_at,
            'finishedAt': self.finished_at,
        }
