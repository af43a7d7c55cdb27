"""
Transfer Errors

Every failure raised by the custom transfer layer derives from
TransferError, so callers can catch the whole family in one place.

Which errors hurt what:
- ConfigurationError:  one adapter declaration, never the host
- WorkerStartError:    one worker, which never becomes usable
- WorkerIOError:       the in-flight transfer, worker is aborted
- ProtocolError:       the in-flight transfer, worker is aborted
- ObjectTransferError: one object only, worker stays usable
- MissingActionError:  one object only, not retried
- VerificationError:   one object only (bytes were transferred)
- WorkerExitError:     shutdown only, recovered by abort
"""

from typing import Optional


class TransferError(Exception):
    """Base class for custom transfer failures."""


class ConfigurationError(TransferError):
    """Malformed or conflicting adapter declaration."""


class WorkerStartError(TransferError):
    """The external process could not be launched or failed its init handshake."""


class WorkerIOError(TransferError):
    """Communication with the external process broke down."""


class WorkerTimeoutError(WorkerIOError):
    """The external process did not answer within the read timeout."""


class ProtocolError(TransferError):
    """The external process sent something we cannot accept."""


class WorkerExitError(TransferError):
    """The external process exited with a nonzero status on shutdown."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class MissingActionError(TransferError):
    """The object has no resolved action for the requested operation."""


class ObjectTransferError(TransferError):
    """The external process reported an error for a single object."""

    def __init__(self, oid: str, message: str, code: int = 0):
        super().__init__(f"Error transferring {oid!r}: {message}")
        self.oid = oid
        self.code = code
        self.error_message = message


class VerificationError(TransferError):
    """The server rejected (or could not confirm) an uploaded object."""
