"""Party-context serializer.

The ledger session exposes one acting party at a time. Every operation
that depends on it is posted to a single FIFO mailbox and run by one
worker task, so operation N+1 never switches the acting party until
operation N (success or failure) has finished with the session.

Work that does not touch the session (executing an already prepared
transaction, signing, key lookups) stays outside the mailbox and runs
concurrently.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import structlog

from meridian.core.lifecycle import BaseComponent, HealthCheckResult
from meridian.integrations.ledger.session import LedgerSession
from meridian.services.metrics import MetricsEmitter

log = structlog.get_logger()

T = TypeVar("T")

SessionOperation = Callable[[LedgerSession], Awaitable[T]]


@dataclass
class _QueuedOperation:
    party: str
    operation: SessionOperation[Any]
    future: "asyncio.Future[Any]"
    label: str


class SerializerNotRunningError(RuntimeError):
    """Raised when work is posted to a serializer that is not running."""


class PartyContextSerializer(BaseComponent):
    """Single-worker mailbox guarding a LedgerSession.

    Usage:
        serializer = PartyContextSerializer(session)
        await serializer.start()
        holdings = await serializer.run_as(party, lambda s: s.list_holdings())
    """

    def __init__(
        self,
        session: LedgerSession,
        metrics: Optional[MetricsEmitter] = None,
    ) -> None:
        super().__init__(name="PartyContextSerializer")
        self._session = session
        self._metrics = metrics
        self._queue: "asyncio.Queue[_QueuedOperation]" = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self._completed = 0
        self._failed = 0
        self._log = log.bind(component="party_serializer")

    @property
    def session(self) -> LedgerSession:
        return self._session

    @property
    def queue_depth(self) -> int:
        return self._queue.qsize()

    async def _do_start(self) -> None:
        self._worker = asyncio.create_task(self._run_worker(), name="party-serializer")
        self._log.info("party_serializer_started")

    async def _do_stop(self) -> None:
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

        dropped = 0
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if not item.future.done():
                item.future.set_exception(SerializerNotRunningError("serializer stopped"))
                dropped += 1
        self._log.info(
            "party_serializer_stopped",
            completed=self._completed,
            failed=self._failed,
            dropped=dropped,
        )

    async def run_as(
        self,
        party: str,
        operation: SessionOperation[T],
        label: str = "operation",
    ) -> T:
        """Run ``operation`` against the session with ``party`` acting.

        The call waits its turn in the mailbox. Exceptions raised by the
        operation (or by the party switch) propagate to this caller only.

        Raises:
            SerializerNotRunningError: If the serializer is not started.
        """
        if not self.is_running or self._worker is None:
            raise SerializerNotRunningError("party serializer is not running")

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        await self._queue.put(_QueuedOperation(party, operation, future, label))
        self._report_depth()
        return await future

    async def _run_worker(self) -> None:
        while True:
            item = await self._queue.get()
            self._report_depth()
            try:
                if item.future.cancelled():
                    continue
                await self._execute(item)
            finally:
                self._queue.task_done()

    async def _execute(self, item: _QueuedOperation) -> None:
        try:
            if self._session.acting_party != item.party:
                await self._session.switch_party(item.party)
            result = await item.operation(self._session)
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            self._failed += 1
            self._log.debug(
                "serialized_operation_failed",
                label=item.label,
                party=item.party,
                error=str(e),
            )
            if not item.future.done():
                item.future.set_exception(e)
        else:
            self._completed += 1
            if not item.future.done():
                item.future.set_result(result)

    def _report_depth(self) -> None:
        if self._metrics:
            self._metrics.set_serializer_queue_depth(self._queue.qsize())

    async def _do_health_check(self) -> HealthCheckResult:
        if self._worker is None or self._worker.done():
            return HealthCheckResult.unhealthy("serializer worker not running")
        return HealthCheckResult.healthy(
            queue_depth=self.queue_depth,
            completed=self._completed,
            failed=self._failed,
            acting_party=self._session.acting_party,
        )
