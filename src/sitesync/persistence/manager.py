"""Debounced, retried, cancellable dispatch of pending operations.

One ``PersistenceManager`` serves one target (website). Operations queue up
until the debounce period passes without new ones, then the whole queue is
sent as one batch (split into chunks of at most ``max_batch_size``). At most
one request is in flight: a new send cancels the running request and carries
its operations, in order, at the head of the new batch. The backend applies
each batch all-or-nothing, so a cancelled batch counts as not applied.

Failures caused by transport or generic save errors are retried with
exponential backoff; the failed batch is put back at the head of the queue
so later operations stay behind it. When retries run out, or the error is
one that must not be retried automatically (conflicts, validation), the
status becomes ``error`` and only ``retry()`` resumes sending.

Status machine::

    idle -> saving -> saved -> idle   (after the display delay)
               \\-> error -> saving   (via retry())
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sitesync.config import SyncConfig
from sitesync.graph.errors import SaveError, SitemapError
from sitesync.graph.models import Operation, SaveResponse, SaveStatus
from sitesync.observability.logging import get_logger

if TYPE_CHECKING:
    from sitesync.persistence.client import SaveBackend

log = get_logger(__name__)

StatusCallback = Callable[[SaveStatus], None]
ErrorCallback = Callable[[SitemapError], None]
SaveCompleteCallback = Callable[[list[Operation], SaveResponse], None]
SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class PersistenceCallbacks:
    """Observers notified by the persistence manager."""

    on_status_change: StatusCallback | None = None
    on_error: ErrorCallback | None = None
    on_save_complete: SaveCompleteCallback | None = None


@dataclass
class _InFlight:
    """The request currently on the wire.

    ``remaining`` holds the chunks of the same queue snapshot not sent yet.
    Once ``superseded`` is set, another send owns these operations.
    """

    batch: list[Operation]
    task: asyncio.Future[SaveResponse]
    remaining: list[Operation] = field(default_factory=list)
    superseded: bool = False

    def operations(self) -> list[Operation]:
        return [*self.batch, *self.remaining]


class PersistenceManager:
    """Pending-operation queue for one target.

    Args:
        backend: Where batches are sent.
        config: Timing and retry settings.
        sleep: Coroutine used for every delay (debounce, backoff, saved
            display). Tests inject a fake to control time.
    """

    def __init__(
        self,
        backend: SaveBackend,
        config: SyncConfig | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._backend = backend
        self._config = config or SyncConfig()
        self._sleep = sleep

        self._target_id: str | None = None
        self._callbacks = PersistenceCallbacks()
        self._pending: list[Operation] = []
        self._status = SaveStatus.IDLE
        self._retry_count = 0
        self._last_error: SitemapError | None = None
        self._in_flight: _InFlight | None = None
        self._debounce_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._reset_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._disposed = False

    # -- Lifecycle ---------------------------------------------------------

    def initialize(
        self,
        target_id: str,
        *,
        on_status_change: StatusCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_save_complete: SaveCompleteCallback | None = None,
    ) -> None:
        """Bind to *target_id* and register observers.

        Re-initializing drops any queued operations and timers.
        """
        if not target_id:
            raise ValueError("target_id must not be empty")
        self._cancel_all()
        self._pending = []
        self._retry_count = 0
        self._last_error = None
        self._disposed = False
        self._target_id = target_id
        self._callbacks = PersistenceCallbacks(on_status_change, on_error, on_save_complete)
        self._status = SaveStatus.IDLE
        log.debug("persistence_initialized", target_id=target_id)

    def dispose(self) -> None:
        """Cancel timers and the in-flight request, and drop the queue."""
        if self._disposed:
            return
        dropped = len(self._pending)
        if self._in_flight is not None:
            dropped += len(self._in_flight.operations())
        self._cancel_all()
        self._pending = []
        self._disposed = True
        self._callbacks = PersistenceCallbacks()
        log.debug("persistence_disposed", target_id=self._target_id, dropped=dropped)

    # -- Queue -------------------------------------------------------------

    def add_operation(self, operation: Operation) -> None:
        self.add_operations([operation])

    def add_operations(self, operations: Sequence[Operation]) -> None:
        """Append to the queue and restart the debounce timer.

        While the status is ``error`` the operations are only queued; sending
        resumes with ``retry()``.

        Raises:
            RuntimeError: If the manager is not initialized or was disposed.
        """
        self._ensure_active()
        if not operations:
            return
        self._pending.extend(operations)
        log.debug("operations_queued", added=len(operations), pending=len(self._pending))

        if self._status == SaveStatus.ERROR:
            return
        self._cancel(self._debounce_task)
        self._debounce_task = self._spawn(self._debounced_send())

    def discard_pending(self) -> list[Operation]:
        """Drop every queued operation and clear the error state.

        Returns:
            The discarded operations.
        """
        self._cancel(self._debounce_task)
        self._cancel(self._retry_task)
        self._debounce_task = self._retry_task = None
        discarded, self._pending = self._pending, []
        self._retry_count = 0
        self._last_error = None
        if self._in_flight is None:
            self._set_status(SaveStatus.IDLE)
        if discarded:
            log.info("pending_discarded", target_id=self._target_id, operations=len(discarded))
        return discarded

    # -- Sending -----------------------------------------------------------

    async def save_now(self) -> None:
        """Cancel the debounce timer and send immediately if anything is queued."""
        self._ensure_active()
        await self._send()

    async def retry(self) -> None:
        """Reset the retry counter and resend after an error."""
        self._ensure_active()
        self._retry_count = 0
        self._last_error = None
        log.info("save_retry_requested", target_id=self._target_id, pending=len(self._pending))
        if not self._pending:
            self._set_status(SaveStatus.IDLE)
            return
        await self._send()

    async def wait_until_settled(self) -> None:
        """Wait for all timers and sends started so far, and any they start.

        Must not be awaited from one of the manager's own callbacks.
        """
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def retry_delay(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (1-based)."""
        delay = self._config.retry_base_delay * 2 ** (attempt - 1)
        return min(delay, self._config.retry_max_delay)

    async def _debounced_send(self) -> None:
        await self._sleep(self._config.debounce_seconds)
        self._debounce_task = None
        await self._send()

    async def _retry_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._retry_task = None
        await self._send()

    async def _reset_after_saved(self) -> None:
        await self._sleep(self._config.saved_display_seconds)
        self._reset_task = None
        if self._status == SaveStatus.SAVED:
            self._set_status(SaveStatus.IDLE)

    async def _send(self) -> None:
        target_id = self._target_id
        if target_id is None or self._disposed:
            return
        self._cancel(self._debounce_task)
        self._cancel(self._retry_task)
        self._debounce_task = self._retry_task = None

        carried = self._supersede_in_flight()
        if carried:
            self._pending[:0] = carried
        if not self._pending:
            return

        self._cancel(self._reset_task)
        self._reset_task = None
        self._set_status(SaveStatus.SAVING)

        queue, self._pending = self._pending, []
        size = self._config.max_batch_size
        chunks = [queue[i : i + size] for i in range(0, len(queue), size)]
        for index, chunk in enumerate(chunks):
            remaining = [op for later in chunks[index + 1 :] for op in later]
            if not await self._send_batch(target_id, chunk, remaining):
                return

        if self._pending:
            # Queued during the request; their debounce timer is running
            return
        self._set_status(SaveStatus.SAVED)
        self._reset_task = self._spawn(self._reset_after_saved())

    async def _send_batch(
        self, target_id: str, batch: list[Operation], remaining: list[Operation]
    ) -> bool:
        """Send one chunk. Returns False if the send stopped (failure or superseded)."""
        request = asyncio.ensure_future(self._backend.save(target_id, batch))
        in_flight = _InFlight(batch=batch, task=request, remaining=remaining)
        self._in_flight = in_flight
        log.info(
            "save_batch_sent",
            target_id=target_id,
            operations=len(batch),
            queued_after=len(remaining),
            attempt=self._retry_count,
        )

        try:
            response = await request
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if in_flight.superseded and (current is None or not current.cancelling()):
                return False
            raise
        except Exception as e:
            error = e if isinstance(e, SitemapError) else SaveError(detail=str(e) or type(e).__name__)
            self._clear_in_flight(in_flight)
            self._handle_failure(in_flight.operations(), error)
            return False

        self._clear_in_flight(in_flight)
        self._retry_count = 0
        self._last_error = None
        log.info("save_batch_saved", target_id=target_id, operations=len(batch))
        if self._callbacks.on_save_complete is not None:
            self._callbacks.on_save_complete(list(batch), response)
        return True

    def _supersede_in_flight(self) -> list[Operation]:
        """Cancel the running request; return the operations it carried."""
        in_flight = self._in_flight
        if in_flight is None or in_flight.task.done():
            return []
        in_flight.superseded = True
        in_flight.task.cancel()
        self._in_flight = None
        carried = in_flight.operations()
        log.info("save_superseded", target_id=self._target_id, carried=len(carried))
        return carried

    def _clear_in_flight(self, in_flight: _InFlight) -> None:
        if self._in_flight is in_flight:
            self._in_flight = None

    def _handle_failure(self, operations: list[Operation], error: SitemapError) -> None:
        self._pending[:0] = operations
        self._last_error = error

        if error.auto_retry and self._retry_count < self._config.max_retries:
            self._retry_count += 1
            delay = self.retry_delay(self._retry_count)
            log.warning(
                "save_retry_scheduled",
                target_id=self._target_id,
                code=str(error.code),
                attempt=self._retry_count,
                delay=delay,
                error=error.message,
            )
            self._retry_task = self._spawn(self._retry_after(delay))
            return

        if error.auto_retry:
            log.error(
                "save_retries_exhausted",
                target_id=self._target_id,
                code=str(error.code),
                retries=self._retry_count,
                error=error.message,
                pending=len(self._pending),
            )
        else:
            log.error(
                "save_failed",
                target_id=self._target_id,
                code=str(error.code),
                error=error.message,
                pending=len(self._pending),
            )
        self._set_status(SaveStatus.ERROR)
        self._cancel(self._debounce_task)
        self._debounce_task = None
        if self._callbacks.on_error is not None:
            self._callbacks.on_error(error)

    # -- State -------------------------------------------------------------

    @property
    def target_id(self) -> str | None:
        return self._target_id

    @property
    def status(self) -> SaveStatus:
        return self._status

    @property
    def last_error(self) -> SitemapError | None:
        return self._last_error

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def pending_count(self) -> int:
        """Operations not yet confirmed, including the in-flight batch."""
        in_flight = len(self._in_flight.operations()) if self._in_flight is not None else 0
        return len(self._pending) + in_flight

    @property
    def pending_operations(self) -> list[Operation]:
        """Value copies of the queued operations (waiting to be sent)."""
        return [op.model_copy(deep=True) for op in self._pending]

    @property
    def is_saving(self) -> bool:
        return self._in_flight is not None

    # -- Internals ---------------------------------------------------------

    def _ensure_active(self) -> None:
        if self._disposed:
            raise RuntimeError("PersistenceManager has been disposed")
        if self._target_id is None:
            raise RuntimeError("PersistenceManager.initialize() must be called first")

    def _set_status(self, status: SaveStatus) -> None:
        if status == self._status:
            return
        log.debug("save_status_changed", target_id=self._target_id, old=self._status, new=status)
        self._status = status
        if self._callbacks.on_status_change is not None:
            self._callbacks.on_status_change(status)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task[None] | None:
        """Run *coro* as a tracked background task.

        Without a running event loop nothing is scheduled; queued operations
        then wait for an explicit ``save_now()``.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            log.debug("no_running_loop", target_id=self._target_id)
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("background_task_failed", target_id=self._target_id, error=repr(exc))

    @staticmethod
    def _cancel(task: asyncio.Task[None] | None) -> None:
        if task is not None and not task.done():
            task.cancel()

    def _cancel_all(self) -> None:
        if self._in_flight is not None:
            self._in_flight.superseded = True
            self._in_flight.task.cancel()
            self._in_flight = None
        for task in list(self._tasks):
            self._cancel(task)
        self._debounce_task = self._retry_task = self._reset_task = None
