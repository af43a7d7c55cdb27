"""
Transfer Module - Custom Transfer Adapters

Runs external agent processes and drives uploads/downloads through them.
"""

from .errors import (
    TransferError, ConfigurationError, WorkerStartError, WorkerIOError,
    WorkerTimeoutError, ProtocolError, WorkerExitError, MissingActionError,
    ObjectTransferError, VerificationError,
)
from .protocol import (
    Action, ObjectError, InitRequest, InitResponse, UploadRequest,
    DownloadRequest, TransferResponse, ProgressResponse, TerminateRequest,
    encode_message, decode_one_of,
)
from .worker import WorkerProcess
from .adapter import (
    Direction, TransferState, TransferObject, Transfer, TransferResult,
    TransferAdapter,
)
from .custom import CustomAdapter
from .registry import AdapterDefinition, AdapterRegistry, configure_custom_adapters

__all__ = [
    'TransferError',
    'ConfigurationError',
    'WorkerStartError',
    'WorkerIOError',
    'WorkerTimeoutError',
    'ProtocolError',
    'WorkerExitError',
    'MissingActionError',
    'ObjectTransferError',
    'VerificationError',
    'Action',
    'ObjectError',
    'InitRequest',
    'InitResponse',
    'UploadRequest',
    'DownloadRequest',
    'TransferResponse',
    'ProgressResponse',
    'TerminateRequest',
    'encode_message',
    'decode_one_of',
    'WorkerProcess',
    'Direction',
    'TransferState',
    'TransferObject',
    'Transfer',
    'TransferResult',
    'TransferAdapter',
    'CustomAdapter',
    'AdapterDefinition',
    'AdapterRegistry',
    'configure_custom_adapters',
]
