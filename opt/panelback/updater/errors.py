"""
Exceptions raised by the updater package.

Each exception carries the HTTP status the handlers answer with, so the
same error can end a streamed operation or a plain JSON request.
"""


class UpdaterError(Exception):
    """Base class for updater failures."""

    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BackupError(UpdaterError):
    """Archive creation, verification or extraction failed."""


class InvalidBackupNameError(UpdaterError):
    """The requested backup name does not resolve inside the backup directory."""

    http_status = 400


class BackupNotFoundError(UpdaterError):
    http_status = 404


class CommandFailedError(UpdaterError):
    """An external command exited non-zero or could not be started."""

    def __init__(self, command, returncode: int, output: str = ''):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        detail = f": {output.strip()}" if output and output.strip() else ''
        super().__init__(f"Command '{' '.join(self.command)}' failed with exit code {returncode}{detail}")


class CommandTimeoutError(UpdaterError):
    """An external command did not finish before its deadline and was killed."""

    def __init__(self, command, timeout: float):
        self.command = list(command)
        self.timeout = timeout
        super().__init__(f"Command '{' '.join(self.command)}' timed out after {timeout:g}s")


class OperationInProgressError(UpdaterError):
    http_status = 409
