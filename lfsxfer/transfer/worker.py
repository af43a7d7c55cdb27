"""
Worker Process

Design Decision: Process Supervision
====================================

Options Considered:
1. subprocess.Popen + one thread per worker
   - Works, but blocking reads pin a thread per agent
2. asyncio subprocesses
   - stdin/stdout become StreamWriter/StreamReader
   - readline() gives us the line-buffered reader for free
   - Timeouts are just asyncio.wait_for
3. multiprocessing
   - Wrong tool: agents are arbitrary executables, not Python

Decision: asyncio subprocesses, one per worker
- Each WorkerProcess owns exactly one agent process and its pipes
- Never shared between workers, so no locks
- A single cleanup path (abort) used by every failure site
- Usable as an async context manager: normal exit shuts the agent
  down gracefully, exceptional exit kills it

Lifecycle:
```
start() ──> [launch] ──> [init handshake] ──> running ──> shutdown() ──> closed
                │               │                │             │
                └── fail ───────┴──── fail ──────┴──> abort() <┘ (on failure)
```
"""

import asyncio
import logging
from typing import Optional, Sequence, Tuple, Type

from .errors import (
    ProtocolError, TransferError, WorkerExitError, WorkerIOError,
    WorkerStartError, WorkerTimeoutError,
)
from .protocol import (
    MAX_LINE_LENGTH, InitRequest, InitResponse, TerminateRequest,
    WireMessage, decode_one_of, encode_message,
)

logger = logging.getLogger(__name__)

# How long to wait for an agent to exit after terminate (seconds)
DEFAULT_SHUTDOWN_TIMEOUT = 10.0


class WorkerProcess:
    """
    One external transfer agent plus its stdin/stdout pipes.

    Valid from a successful init handshake until shutdown or abort;
    must not be reused afterwards.
    """

    def __init__(self, name: str, argv: Sequence[str],
                 read_timeout: Optional[float] = None,
                 shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT):
        """
        Args:
            name: Adapter name (for messages)
            argv: Executable followed by its arguments
            read_timeout: Seconds to wait for each response line (None = forever)
            shutdown_timeout: Seconds to wait for exit after terminate
        """
        if not argv:
            raise ValueError("argv must name an executable")
        self.name = name
        self.argv = list(argv)
        self.read_timeout = read_timeout
        self.shutdown_timeout = shutdown_timeout

        self.process: Optional[asyncio.subprocess.Process] = None
        self.stdin: Optional[asyncio.StreamWriter] = None
        self.stdout: Optional[asyncio.StreamReader] = None
        self._ready = False
        self._closed = False

    def __repr__(self) -> str:
        return f"<WorkerProcess {self.name!r} pid={self.pid} running={self.is_running}>"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def is_running(self) -> bool:
        """True between a successful handshake and shutdown/abort."""
        return (self._ready and not self._closed
                and self.process is not None and self.process.returncode is None)

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    # === Lifecycle ===

    async def start(self, init: InitRequest) -> None:
        """
        Launch the agent and perform the init handshake.

        On any failure the process is aborted before the error propagates,
        so a failed start never leaves a process behind.

        Raises:
            WorkerStartError: launch failed, handshake failed, or the agent
                answered the init request with an error
        """
        if self.process is not None or self._closed:
            raise RuntimeError(f"Worker process for {self.name!r} was already started")

        executable = self.argv[0]
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                limit=MAX_LINE_LENGTH,
            )
        except (OSError, ValueError) as e:
            self._closed = True
            raise WorkerStartError(
                f"Failed to start custom transfer command {executable!r} remote: {e}"
            ) from e

        self.stdin = self.process.stdin
        self.stdout = self.process.stdout
        logger.debug(f"xfer: custom transfer process {self.name!r} launched (pid {self.pid})")

        try:
            response = await self._exchange(init, InitResponse)
        except TransferError as e:
            await self.abort()
            raise WorkerStartError(
                f"Custom transfer {self.name!r} failed init handshake: {e}"
            ) from e
        except asyncio.CancelledError:
            await self.abort()
            raise

        if response.error is not None:
            await self.abort()
            raise WorkerStartError(
                f"Custom transfer {self.name!r} failed to initialize: {response.error}"
            )

        self._ready = True

    async def shutdown(self) -> None:
        """
        Terminate the agent gracefully.

        Sends a terminate request, closes stdin and waits for the process to
        exit. Raises if any of that fails; callers normally want close().

        Raises:
            WorkerIOError: the terminate request could not be sent
            WorkerExitError: the agent did not exit, or exited nonzero
        """
        if self.process is None or self._closed:
            return

        await self._exchange(TerminateRequest(complete=True))
        self._ready = False

        self.stdin.close()
        try:
            await self.stdin.wait_closed()
        except OSError:
            pass  # agent may have exited already

        try:
            returncode = await asyncio.wait_for(self.process.wait(), self.shutdown_timeout)
        except asyncio.TimeoutError as e:
            raise WorkerExitError(
                f"Custom transfer process {self.name!r} did not exit within "
                f"{self.shutdown_timeout}s"
            ) from e

        self._closed = True
        if returncode != 0:
            raise WorkerExitError(
                f"Custom transfer process {self.name!r} exited with status {returncode}",
                returncode,
            )
        logger.debug(f"xfer: custom transfer process {self.name!r} exited cleanly")

    async def abort(self) -> None:
        """
        Tear the agent down untidily: close pipes and kill the process.

        Safe to call more than once and on a process that already exited.
        """
        self._ready = False
        self._closed = True
        if self.process is None:
            return

        if self.stdin is not None:
            try:
                self.stdin.close()
            except OSError:
                pass

        if self.process.returncode is None:
            logger.debug(f"xfer: killing custom transfer process {self.name!r} (pid {self.pid})")
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

        try:
            await asyncio.wait_for(self.process.wait(), self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Custom transfer process {self.name!r} (pid {self.pid}) "
                           f"could not be reaped after kill")

    async def close(self) -> None:
        """Shut down gracefully, falling back to abort. Never raises."""
        if self._closed:
            return
        try:
            await self.shutdown()
        except TransferError as e:
            logger.warning(
                f"xfer: error finishing up custom transfer process {self.name!r}, aborting: {e}"
            )
            await self.abort()

    async def __aenter__(self) -> 'WorkerProcess':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.close()
        else:
            await self.abort()

    # === Message Exchange ===

    async def send(self, message: WireMessage) -> None:
        """
        Write one message line to the agent's stdin.

        Raises:
            WorkerIOError: the agent is gone or the pipe is broken
        """
        if not self.is_running:
            raise WorkerIOError(f"Custom transfer process {self.name!r} is not running")
        await self._send(message)

    async def read_response(self, candidates: Sequence[Type[WireMessage]]) -> Tuple[int, WireMessage]:
        """
        Read one line and decode it as the first matching candidate.

        Raises:
            WorkerIOError: the agent closed its output or the read timed out
            ProtocolError: the line matches none of the candidates
        """
        if not self.is_running:
            raise WorkerIOError(f"Custom transfer process {self.name!r} is not running")
        return await self._read_response(candidates)

    async def exchange(self, request: WireMessage,
                       response_type: Optional[Type[WireMessage]] = None) -> Optional[WireMessage]:
        """
        Send a request and, if a response type is given, read exactly one reply.

        Only communication failures raise; errors embedded in the reply
        are left for the caller to inspect.
        """
        if not self.is_running:
            raise WorkerIOError(f"Custom transfer process {self.name!r} is not running")
        return await self._exchange(request, response_type)

    async def _exchange(self, request: WireMessage,
                        response_type: Optional[Type[WireMessage]] = None) -> Optional[WireMessage]:
        await self._send(request)
        if response_type is None:
            return None
        _, response = await self._read_response([response_type])
        return response

    async def _send(self, message: WireMessage) -> None:
        data = encode_message(message)
        logger.debug(f"xfer: {self.name} <- {data.decode('utf-8').rstrip()}")
        try:
            self.stdin.write(data)
            await self.stdin.drain()
        except OSError as e:
            raise WorkerIOError(
                f"Failed to send message to custom transfer process {self.name!r}: {e}"
            ) from e

    async def _read_response(self, candidates: Sequence[Type[WireMessage]]) -> Tuple[int, WireMessage]:
        line = await self._read_line()
        logger.debug(f"xfer: {self.name} -> {line.decode('utf-8', 'replace').rstrip()}")
        return decode_one_of(line, candidates)

    async def _read_line(self) -> bytes:
        try:
            if self.read_timeout:
                line = await asyncio.wait_for(self.stdout.readline(), self.read_timeout)
            else:
                line = await self.stdout.readline()
        except asyncio.TimeoutError as e:
            raise WorkerTimeoutError(
                f"Custom transfer process {self.name!r} did not respond within "
                f"{self.read_timeout}s"
            ) from e
        except ValueError as e:
            # StreamReader converts an over-long line into ValueError
            raise ProtocolError(
                f"Custom transfer process {self.name!r} sent an invalid line: {e}"
            ) from e
        except OSError as e:
            raise WorkerIOError(
                f"Failed to read from custom transfer process {self.name!r}: {e}"
            ) from e

        if not line.endswith(b'\n'):
            raise WorkerIOError(
                f"Custom transfer process {self.name!r} closed its output unexpectedly"
            )
        return line
