"""
Custom Transfer Adapter

Delegates the bytes of each transfer to an external agent process,
one process per worker, speaking the line protocol in protocol.py.

Per-transfer flow:
```
IDLE ──send request──> REQUESTED ──progress──> PROGRESS ──┐
                           │                      ^  │    │
                           │                      └──┘    │
                           └──────── terminal ────────────┴──> COMPLETED
```
- Progress and terminal responses must echo the request's oid;
  anything else is a protocol violation and the agent is aborted
- An error inside the terminal response fails only that object
- Successful uploads are verified with the server afterwards
"""

import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, Tuple

from .adapter import (
    AuthCallback, Direction, ProgressCallback, Transfer, TransferAdapter,
    TransferObject, TransferState,
)
from .errors import (
    MissingActionError, ObjectTransferError, ProtocolError, TransferError,
    VerificationError,
)
from .protocol import (
    TRANSFER_RESPONSES, DownloadRequest, InitRequest, ProgressResponse,
    TransferResponse, UploadRequest, WireMessage,
)
from .worker import DEFAULT_SHUTDOWN_TIMEOUT, WorkerProcess

logger = logging.getLogger(__name__)

# Concurrency reported to agents when begin() was never called
DEFAULT_CONCURRENT_TRANSFERS = 3

ObjectPathResolver = Callable[[str], Path]
UploadVerifier = Callable[[TransferObject], Awaitable[None]]


class CustomAdapter(TransferAdapter):
    """
    Transfer adapter backed by an external agent executable.

    Args:
        name: Adapter name (as configured)
        direction: Direction.UPLOAD or Direction.DOWNLOAD
        argv: Agent executable followed by its arguments
        concurrent: Whether more than one agent process may run at once
        object_path: Resolves an oid to its local file (uploads)
        verifier: Awaited with the object after each successful upload
        read_timeout: Seconds to wait for each agent response (None = forever)
        shutdown_timeout: Seconds to wait for the agent to exit on terminate
    """

    def __init__(self, name: str, direction: Direction, argv: Sequence[str],
                 concurrent: bool = True,
                 object_path: Optional[ObjectPathResolver] = None,
                 verifier: Optional[UploadVerifier] = None,
                 read_timeout: Optional[float] = None,
                 shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT):
        super().__init__(name, direction)
        if not argv:
            raise ValueError(f"Custom transfer {name!r} has no executable")
        self.argv = list(argv)
        self.concurrent = concurrent
        self.object_path = object_path
        self.verifier = verifier
        self.read_timeout = read_timeout
        self.shutdown_timeout = shutdown_timeout
        self.requested_concurrency = DEFAULT_CONCURRENT_TRANSFERS

    @property
    def path(self) -> str:
        return self.argv[0]

    # === Worker lifecycle ===

    def effective_concurrency(self, requested: int) -> int:
        # Record what the caller asked for; agents are told about it
        self.requested_concurrency = requested
        use_concurrency = requested if self.concurrent else 1
        logger.debug(f"xfer: Custom transfer adapter {self.name!r} using concurrency {use_concurrency}")
        return use_concurrency

    def init_request(self) -> InitRequest:
        return InitRequest(
            operation=self.direction.value,
            concurrent=self.concurrent,
            concurrent_transfers=self.requested_concurrency,
        )

    async def worker_starting(self, worker_num: int) -> WorkerProcess:
        """
        Start one agent process and complete its init handshake.

        Raises:
            WorkerStartError: the agent could not be started or initialized
        """
        logger.debug(f"xfer: starting up custom transfer process {self.name!r} for worker {worker_num}")
        worker = WorkerProcess(
            self.name, self.argv,
            read_timeout=self.read_timeout,
            shutdown_timeout=self.shutdown_timeout,
        )
        await worker.start(self.init_request())
        logger.debug(f"xfer: {self.name!r} for worker {worker_num} started OK")
        return worker

    async def worker_ending(self, worker_num: int, ctx: Optional[WorkerProcess]) -> None:
        if not isinstance(ctx, WorkerProcess):
            logger.error(f"Context object for custom transfer {self.name!r} was of the wrong type")
            return
        await ctx.close()
        logger.debug(f"xfer: {self.name!r} worker {worker_num} ended")

    def worker_usable(self, ctx: Optional[WorkerProcess]) -> bool:
        return isinstance(ctx, WorkerProcess) and ctx.is_running

    # === Transfer ===

    async def do_transfer(self, ctx: Optional[WorkerProcess], transfer: Transfer,
                          progress_cb: Optional[ProgressCallback] = None,
                          auth_ok: Optional[AuthCallback] = None) -> Optional[Path]:
        """
        Run a single transfer on a worker's agent.

        Returns:
            For downloads, the path the agent wrote the object to; else None

        Raises:
            TransferError: any failure of this transfer (see errors.py)
        """
        if ctx is None:
            raise TransferError(
                f"Custom transfer {self.name!r} was not properly initialized, see previous errors"
            )
        if not isinstance(ctx, WorkerProcess):
            raise TransferError(f"Context object for custom transfer {self.name!r} was of the wrong type")
        if not ctx.is_running:
            raise TransferError(f"Custom transfer process {self.name!r} is no longer running")

        request = self._build_request(transfer)
        try:
            completion, callback_error = await self._run(ctx, transfer, request, progress_cb, auth_ok)
        except BaseException:
            # Replies may still be pending; the agent can't be handed another transfer
            await ctx.abort()
            raise

        if completion.error is not None:
            raise ObjectTransferError(transfer.oid, completion.error.message, completion.error.code)
        if callback_error is not None:
            raise TransferError(
                f"Callback failed while transferring {transfer.oid!r}: {callback_error}"
            ) from callback_error

        if self.direction is Direction.UPLOAD:
            await self._verify(transfer)
            return None
        return Path(completion.path) if completion.path else None

    def _build_request(self, transfer: Transfer) -> WireMessage:
        obj = transfer.object
        action = obj.rel(self.direction.value)
        if action is None:
            raise MissingActionError("Object not found on the server.")

        if self.direction is Direction.DOWNLOAD:
            return DownloadRequest(oid=obj.oid, size=obj.size, action=action)

        local_path = transfer.path
        if local_path is None:
            if self.object_path is None:
                raise TransferError(f"No local path for object {obj.oid!r}")
            local_path = self.object_path(obj.oid)
        return UploadRequest(oid=obj.oid, size=obj.size, local_path=str(local_path), action=action)

    async def _run(self, ctx: WorkerProcess, transfer: Transfer, request: WireMessage,
                   progress_cb: Optional[ProgressCallback],
                   auth_ok: Optional[AuthCallback]) -> Tuple[TransferResponse, Optional[Exception]]:
        """
        Send the request and consume responses up to the terminal one.

        A failing callback does not stop the read loop: the agent's remaining
        replies are still consumed so the worker stays in step with it.

        Returns:
            (terminal response, first callback error or None)
        """
        auth_called = False
        callback_error: Optional[Exception] = None
        await ctx.send(request)
        transfer.state = TransferState.REQUESTED

        # 1..N replies: progress, then one terminal upload/download response
        while True:
            _, response = await ctx.read_response(TRANSFER_RESPONSES)
            self._check_oid(response.oid, transfer.oid)

            if isinstance(response, ProgressResponse):
                transfer.state = TransferState.PROGRESS
                if progress_cb and callback_error is None:
                    try:
                        progress_cb(transfer.name, transfer.size,
                                    response.bytes_so_far, response.bytes_since_last)
                    except Exception as e:
                        logger.warning(f"Progress callback failed for {transfer.name!r}: {e}")
                        callback_error = e
                was_auth_ok = response.bytes_so_far > 0
                completion = None
            else:
                transfer.state = TransferState.COMPLETED
                was_auth_ok = response.error is None
                completion = response

            # Call auth on first progress or success
            if was_auth_ok and auth_ok is not None and not auth_called:
                auth_called = True
                try:
                    auth_ok()
                except Exception as e:
                    logger.warning(f"Auth callback failed for {transfer.name!r}: {e}")
                    callback_error = callback_error or e

            if completion is not None:
                return completion, callback_error

    @staticmethod
    def _check_oid(got: str, expected: str) -> None:
        if got != expected:
            raise ProtocolError(f"Unexpected oid {got!r} in response, expecting {expected!r}")

    async def _verify(self, transfer: Transfer) -> None:
        if self.verifier is None:
            return
        try:
            await self.verifier(transfer.object)
        except VerificationError:
            raise
        except Exception as e:
            raise VerificationError(f"Failed to verify {transfer.oid!r}: {e}") from e
