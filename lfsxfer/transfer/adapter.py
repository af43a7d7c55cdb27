"""
Transfer Adapter Base

Design Decision: Worker Pool
============================

Options Considered:
1. One task per transfer, bounded by a semaphore
   - Simple, but per-worker state (an agent process) has no home
2. Fixed set of worker tasks pulling from a queue
   - Each worker owns its context for its whole lifetime
   - Matches "one agent process per worker"
3. Thread pool
   - Unnecessary, everything we wait on is an await

Decision: Fixed worker tasks over an asyncio.Queue
- begin(n) starts n workers (subclasses may downgrade n)
- Each worker gets a context from worker_starting() and hands it
  back to worker_ending() when the queue runs dry
- The first worker runs alone until its first transfer confirms
  authentication, so the user sees at most one credential prompt
- A worker whose context becomes unusable leaves the pool; anything
  still queued when no worker remains is failed, not dropped

Subclass hooks:
- effective_concurrency(requested) -> int
- worker_starting(worker_num) -> context
- worker_ending(worker_num, context)
- worker_usable(context) -> bool
- do_transfer(context, transfer, progress_cb, auth_ok) -> Optional[Path]
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .errors import TransferError, WorkerStartError
from .protocol import Action

logger = logging.getLogger(__name__)


class Direction(Enum):
    """Transfer direction. BOTH only appears in adapter definitions."""
    UPLOAD = "upload"
    DOWNLOAD = "download"
    BOTH = "both"

    def expand(self) -> List['Direction']:
        """Concrete directions this value stands for."""
        if self is Direction.BOTH:
            return [Direction.DOWNLOAD, Direction.UPLOAD]
        return [self]

    @classmethod
    def parse(cls, value: str) -> 'Direction':
        """Parse a direction name, case-insensitively."""
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Invalid direction {value!r} (expected upload, download or both)"
            ) from None


class TransferState(Enum):
    """Per-transfer state machine."""
    IDLE = "idle"
    REQUESTED = "requested"
    PROGRESS = "progress"
    COMPLETED = "completed"


# Progress callback: (transfer name, total size, bytes so far, bytes since last)
ProgressCallback = Callable[[str, int, int, int], None]
AuthCallback = Callable[[], None]


@dataclass
class TransferObject:
    """An object as described by the server, with its resolved actions."""
    oid: str
    size: int
    actions: Dict[str, Action] = field(default_factory=dict)

    def rel(self, name: str) -> Optional[Action]:
        """Get the action for an operation ('upload', 'download', 'verify')."""
        return self.actions.get(name)

    @classmethod
    def from_dict(cls, data: dict) -> 'TransferObject':
        """Build from a batch API object entry."""
        actions = {
            name: Action.model_validate(action)
            for name, action in (data.get('actions') or {}).items()
        }
        return cls(oid=data['oid'], size=int(data['size']), actions=actions)


@dataclass
class Transfer:
    """One unit of work: a single object moving in one direction."""
    name: str
    object: TransferObject
    path: Optional[Path] = None
    state: TransferState = TransferState.IDLE

    @property
    def oid(self) -> str:
        return self.object.oid

    @property
    def size(self) -> int:
        return self.object.size


@dataclass
class TransferResult:
    """Outcome of a single transfer."""
    transfer: Transfer
    error: Optional[BaseException] = None
    path: Optional[Path] = None  # where a download landed

    @property
    def ok(self) -> bool:
        return self.error is None


CompletionCallback = Callable[[TransferResult], None]


class TransferAdapter:
    """
    Base adapter: runs a pool of workers over a queue of transfers.

    Usage:
        await adapter.begin(4, progress_cb)
        for transfer in transfers:
            adapter.add(transfer)
        results = await adapter.end()
    """

    def __init__(self, name: str, direction: Direction):
        if direction is Direction.BOTH:
            raise ValueError("An adapter instance handles exactly one direction")
        self.name = name
        self.direction = direction

        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []
        self._contexts: Dict[int, Any] = {}
        self._results: List[TransferResult] = []
        self._progress_cb: Optional[ProgressCallback] = None
        self._on_complete: Optional[CompletionCallback] = None
        self._auth_event: Optional[asyncio.Event] = None
        self._auth_worker: Optional[int] = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name!r} {self.direction.value}>"

    @property
    def worker_count(self) -> int:
        """Number of workers that started successfully."""
        return len(self._contexts)

    # === Subclass hooks ===

    def effective_concurrency(self, requested: int) -> int:
        return requested

    async def worker_starting(self, worker_num: int) -> Any:
        return None

    async def worker_ending(self, worker_num: int, ctx: Any) -> None:
        pass

    def worker_usable(self, ctx: Any) -> bool:
        return True

    async def do_transfer(self, ctx: Any, transfer: Transfer,
                          progress_cb: Optional[ProgressCallback] = None,
                          auth_ok: Optional[AuthCallback] = None) -> Optional[Path]:
        raise NotImplementedError

    # === Pool ===

    async def begin(self, max_concurrency: int,
                    progress_cb: Optional[ProgressCallback] = None,
                    on_complete: Optional[CompletionCallback] = None) -> None:
        """
        Start the workers.

        Workers that fail to start are logged and left out.

        Raises:
            WorkerStartError: if not a single worker could be started
        """
        if self._queue is not None:
            raise RuntimeError(f"Adapter {self.name!r} already begun")

        count = max(1, self.effective_concurrency(max_concurrency))
        self._progress_cb = progress_cb
        self._on_complete = on_complete
        self._queue = asyncio.Queue()
        self._auth_event = asyncio.Event()

        logger.debug(f"xfer: adapter {self.name!r} starting {count} worker(s)")
        outcomes = await asyncio.gather(
            *(self.worker_starting(i) for i in range(count)),
            return_exceptions=True,
        )

        errors: List[BaseException] = []
        for worker_num, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Worker {worker_num} of adapter {self.name!r} failed to start: {outcome}")
                errors.append(outcome)
            else:
                self._contexts[worker_num] = outcome

        if not self._contexts:
            self._queue = None
            first = errors[0] if errors else None
            if isinstance(first, TransferError):
                raise first
            raise WorkerStartError(f"No workers could be started for {self.name!r}: {first}")

        self._auth_worker = min(self._contexts)
        self._workers = [
            asyncio.create_task(self._worker(num, ctx), name=f"xfer-{self.name}-{num}")
            for num, ctx in sorted(self._contexts.items())
        ]
        logger.info(f"Adapter {self.name!r} ({self.direction.value}) running "
                    f"{len(self._workers)} worker(s)")

    def add(self, transfer: Transfer) -> None:
        """Queue a transfer for the next free worker."""
        if self._queue is None:
            raise RuntimeError(f"Adapter {self.name!r} has not begun")
        self._queue.put_nowait(transfer)

    async def end(self) -> List[TransferResult]:
        """
        Finish all queued transfers and stop the workers.

        Returns:
            TransferResult for every transfer added, in completion order
        """
        if self._queue is None:
            return list(self._results)

        for _ in self._workers:
            self._queue.put_nowait(None)
        await asyncio.gather(*self._workers)

        # Whatever is left had no usable worker to run on
        while not self._queue.empty():
            transfer = self._queue.get_nowait()
            if transfer is not None:
                self._complete(TransferResult(
                    transfer,
                    error=TransferError(f"No usable workers left in adapter {self.name!r}"),
                ))

        self._queue = None
        self._workers = []
        logger.debug(f"xfer: adapter {self.name!r} finished {len(self._results)} transfer(s)")
        return list(self._results)

    async def _worker(self, worker_num: int, ctx: Any) -> None:
        """Pull transfers from the queue until told to stop."""
        is_auth_worker = worker_num == self._auth_worker
        try:
            if not is_auth_worker:
                logger.debug(f"xfer: adapter {self.name!r} worker {worker_num} waiting for auth")
                await self._auth_event.wait()

            while True:
                transfer = await self._queue.get()
                if transfer is None:
                    break

                auth_ok = self._auth_event.set if is_auth_worker and not self._auth_event.is_set() else None
                try:
                    path = await self.do_transfer(ctx, transfer, self._progress_cb, auth_ok)
                    result = TransferResult(transfer, path=path)
                except Exception as e:
                    logger.debug(f"xfer: transfer {transfer.name!r} failed: {e}")
                    result = TransferResult(transfer, error=e)

                # Only the first transfer gates the other workers
                self._auth_event.set()
                self._complete(result)

                if not self.worker_usable(ctx):
                    logger.warning(f"Worker {worker_num} of adapter {self.name!r} is no longer usable")
                    break
        finally:
            self._auth_event.set()
            await self.worker_ending(worker_num, ctx)

    def _complete(self, result: TransferResult) -> None:
        self._results.append(result)
        if self._on_complete:
            try:
                self._on_complete(result)
            except Exception as e:
                logger.error(f"Completion callback failed: {e}")
