"""Single-active long-running operations with cooperative cancellation.

An operation runs as an asyncio task and reports through a bounded queue of
:class:`ProgressEvent` records, consumed as an async iterator:

    stream = await controller.start_ancestor_crawl(Provider.FAMILYSEARCH, "KWQ7-ABC")
    async for event in stream:
        print(event.type, event.current, event.total)

Cancellation is a flag polled once per unit of work, so the unit in flight
always finishes and the terminal event reports what was actually done. A job
waiting for room in the progress queue stops waiting once cancel is requested.
"""
from __future__ import annotations

import asyncio
import itertools
import time
from contextlib import aclosing
from typing import TYPE_CHECKING, Awaitable, Callable

import structlog

from .auth import SessionGuard
from .config import SyncConfig
from .crawler import AncestorCrawler
from .errors import (
    AuthenticationError,
    CancellationSignal,
    CrawlHalted,
    InvalidTransition,
    OperationAlreadyRunning,
)
from .hints import HintProcessor
from .logging import bind_operation, clear_operation
from .models import (
    Operation,
    OperationKind,
    OperationState,
    ProgressCounters,
    ProgressEvent,
    ProgressEventType,
    Provider,
    utcnow,
)
from .net import ProviderGuards

if TYPE_CHECKING:
    from .browser import PagePool
    from .identity import IdentityResolver
    from .scrapers.registry import ScraperRegistry

logger = structlog.get_logger(__name__)

S = OperationState
ALLOWED_TRANSITIONS: dict[OperationState, frozenset[OperationState]] = {
    S.IDLE: frozenset({S.STARTED}),
    S.STARTED: frozenset({S.RUNNING, S.CANCELLING, S.CANCELLED, S.COMPLETED, S.ERROR}),
    S.RUNNING: frozenset({S.RUNNING, S.CANCELLING, S.CANCELLED, S.COMPLETED, S.ERROR}),
    # The unit in flight may still finish the whole job
    S.CANCELLING: frozenset({S.CANCELLED, S.COMPLETED, S.ERROR}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.ERROR: frozenset(),
}

HISTORY_SIZE = 50


# =============================================================================
# Registry
# =============================================================================


class OperationRegistry:
    """Holds at most one non-terminal operation.

    Finished operations are kept in a short history for status queries.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._counter = itertools.count(1)
        self._active: Operation | None = None
        self._cancel_events: dict[str, asyncio.Event] = {}
        self._history: dict[str, Operation] = {}

    def new_id(self, kind: OperationKind) -> str:
        return f"{kind.value}-{int(self._clock() * 1000)}-{next(self._counter)}"

    def start(self, kind: OperationKind) -> Operation:
        """Register a new operation in ``started`` state.

        Raises:
            OperationAlreadyRunning: another operation has not finished yet.
        """
        if self._active is not None:
            raise OperationAlreadyRunning(self._active.operation_id)
        operation = Operation(operation_id=self.new_id(kind), kind=kind)
        self._apply(operation, OperationState.STARTED)
        self._active = operation
        self._cancel_events[operation.operation_id] = asyncio.Event()
        self._remember(operation)
        return operation

    def _apply(self, operation: Operation, state: OperationState) -> None:
        if state not in ALLOWED_TRANSITIONS[operation.state]:
            raise InvalidTransition(
                f"{operation.operation_id}: {operation.state.value} -> {state.value} not allowed"
            )
        operation.state = state
        if state.is_terminal:
            operation.finished_at = utcnow()

    def transition(self, operation_id: str, state: OperationState, message: str | None = None) -> Operation:
        operation = self.get(operation_id)
        if operation is None:
            raise KeyError(operation_id)
        self._apply(operation, state)
        if message is not None:
            operation.message = message
        if state.is_terminal:
            self._cancel_events.pop(operation_id, None)
            if self._active is operation:
                self._active = None
        return operation

    def _remember(self, operation: Operation) -> None:
        self._history[operation.operation_id] = operation
        while len(self._history) > HISTORY_SIZE:
            self._history.pop(next(iter(self._history)))

    def get(self, operation_id: str) -> Operation | None:
        return self._history.get(operation_id)

    def request_cancel(self, operation_id: str | None = None) -> bool:
        """Flag the active operation for cancellation.

        Returns False when nothing is running or ``operation_id`` names a
        different operation.
        """
        active = self._active
        if active is None or (operation_id is not None and operation_id != active.operation_id):
            return False
        event = self._cancel_events[active.operation_id]
        if not event.is_set():
            self._apply(active, OperationState.CANCELLING)
            event.set()
        return True

    def cancel_requested(self, operation_id: str) -> bool:
        event = self._cancel_events.get(operation_id)
        return event is not None and event.is_set()

    def cancel_event(self, operation_id: str) -> asyncio.Event:
        """Set once a cancel is requested for ``operation_id``."""
        return self._cancel_events[operation_id]

    def is_running(self) -> bool:
        return self._active is not None

    def get_active_operation_id(self) -> str | None:
        return self._active.operation_id if self._active is not None else None


# =============================================================================
# Job context and progress stream
# =============================================================================


class OperationContext:
    """Handed to a running job: counters, progress emission and the cancel flag."""

    def __init__(self, registry: OperationRegistry, operation: Operation, queue: asyncio.Queue) -> None:
        self.registry = registry
        self.operation = operation
        self._queue = queue
        self._cancel = registry.cancel_event(operation.operation_id)

    @property
    def operation_id(self) -> str:
        return self.operation.operation_id

    @property
    def counters(self) -> ProgressCounters:
        return self.operation.counters

    def cancelled(self) -> bool:
        return self.registry.cancel_requested(self.operation_id)

    def check_cancelled(self) -> None:
        if self.cancelled():
            raise CancellationSignal(self.operation_id)

    async def emit(
        self,
        type: ProgressEventType,
        message: str = "",
        *,
        person_id: str | None = None,
        reauth_required: bool = False,
    ) -> None:
        """Queue a progress event, waiting while the consumer is behind.

        Once a cancel is requested the wait is abandoned: a non-terminal event
        raises :class:`CancellationSignal`, a terminal one displaces the oldest
        queued events.
        """
        c = self.counters
        event = ProgressEvent(
            type=type,
            operation_id=self.operation_id,
            current=c.current,
            total=c.total,
            processed=c.processed,
            skipped=c.skipped,
            errors=c.errors,
            message=message,
            person_id=person_id,
            reauth_required=reauth_required,
        )
        if await self._offer(event):
            return
        if not type.is_terminal:
            raise CancellationSignal(self.operation_id)
        # Nobody is draining the queue; the terminal event replaces the oldest ones
        dropped = 0
        while self._queue.full():
            self._queue.get_nowait()
            dropped += 1
        self._queue.put_nowait(event)
        logger.debug("operation.progress_dropped", operation_id=self.operation_id, dropped=dropped)

    async def _offer(self, event: ProgressEvent) -> bool:
        """Queue ``event``, waiting for room only until a cancel is requested."""
        if not self._queue.full():
            self._queue.put_nowait(event)
            return True
        if self._cancel.is_set():
            return False
        put = asyncio.ensure_future(self._queue.put(event))
        cancel = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait({put, cancel}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel.cancel()
            put.cancel()
        return put in done


class ProgressStream:
    """Async iterator over one operation's progress events.

    Ends after the terminal event and cannot be restarted. Because the queue
    is bounded, a job pauses when the consumer falls behind; a consumer that
    stops early should call :meth:`aclose` so the job is cancelled.
    """

    def __init__(
        self,
        operation: Operation,
        queue: asyncio.Queue,
        task: asyncio.Task | None = None,
        cancel: Callable[[], bool] | None = None,
    ) -> None:
        self.operation = operation
        self._queue = queue
        self._task = task
        self._cancel = cancel
        self._done = False

    @property
    def operation_id(self) -> str:
        return self.operation.operation_id

    def __aiter__(self) -> ProgressStream:
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._done:
            raise StopAsyncIteration
        if self._task is None or not self._task.done():
            getter = asyncio.ensure_future(self._queue.get())
            waiters = {getter} if self._task is None else {getter, self._task}
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            if getter.done():
                return self._accept(getter.result())
            getter.cancel()
        # The job task ended; drain what it left behind
        if self._queue.empty():
            self._done = True
            raise StopAsyncIteration
        return self._accept(self._queue.get_nowait())

    def _accept(self, event: ProgressEvent) -> ProgressEvent:
        if event.type.is_terminal:
            self._done = True
        return event

    async def collect(self) -> list[ProgressEvent]:
        return [event async for event in self]

    async def wait(self) -> Operation:
        """Drain remaining events and wait for the job task to finish."""
        async for _ in self:
            pass
        if self._task is not None:
            await self._task
        return self.operation

    async def aclose(self) -> None:
        """Stop consuming; cancel the operation if still running and wait for it to end."""
        self._done = True
        if self._task is None or self._task.done():
            return
        if self._cancel is not None:
            self._cancel()
        await self._task


Job = Callable[[OperationContext], Awaitable[str | None]]


# =============================================================================
# Controller
# =============================================================================


class OperationController:
    """Starts, tracks and cancels the process-wide long-running operation."""

    def __init__(
        self,
        registry: OperationRegistry | None = None,
        *,
        config: SyncConfig | None = None,
        pool: PagePool | None = None,
        scrapers: ScraperRegistry | None = None,
        resolver: IdentityResolver | None = None,
        session: SessionGuard | None = None,
        guards: ProviderGuards | None = None,
    ) -> None:
        self.registry = registry or OperationRegistry()
        self.config = config or SyncConfig()
        self.pool = pool
        self.scrapers = scrapers
        self.resolver = resolver
        self.session = session or SessionGuard(pool=pool)
        self.guards = guards or ProviderGuards(self.config)

    # -- status --------------------------------------------------------------

    def is_running(self) -> bool:
        return self.registry.is_running()

    def get_active_operation_id(self) -> str | None:
        return self.registry.get_active_operation_id()

    def request_cancel(self, operation_id: str | None = None) -> bool:
        requested = self.registry.request_cancel(operation_id)
        if requested:
            logger.warning("operation.cancel_requested", operation_id=self.get_active_operation_id())
        return requested

    # -- generic runner ------------------------------------------------------

    async def start(self, kind: OperationKind, job: Job) -> ProgressStream:
        """Register an operation and run ``job`` in the background.

        ``job`` may return a completion message. Raising
        :class:`CancellationSignal` ends the operation as cancelled.

        Raises:
            OperationAlreadyRunning: another operation is still active.
        """
        operation = self.registry.start(kind)
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=max(1, self.config.progress_buffer))
        ctx = OperationContext(self.registry, operation, queue)
        task = asyncio.create_task(self._run(ctx, job), name=operation.operation_id)
        return ProgressStream(
            operation, queue, task, cancel=lambda: self.request_cancel(operation.operation_id)
        )

    async def _run(self, ctx: OperationContext, job: Job) -> None:
        op_id = ctx.operation_id
        bind_operation(op_id, ctx.operation.kind.value)
        log = logger.bind(operation_id=op_id)
        try:
            await ctx.emit(ProgressEventType.STARTED, f"{ctx.operation.kind.value} started")
            if not ctx.cancelled():
                self.registry.transition(op_id, OperationState.RUNNING)
            message = await job(ctx)
            # Cancel requests the job never observed do not undo finished work
            self.registry.transition(op_id, OperationState.COMPLETED, message)
            log.info("operation.completed", **ctx.counters.model_dump())
            await ctx.emit(ProgressEventType.COMPLETED, message or "completed")
        except CancellationSignal:
            done = ctx.counters.current
            message = f"Cancelled after {done} of {ctx.counters.total} units"
            self.registry.transition(op_id, OperationState.CANCELLED, message)
            log.warning("operation.cancelled", **ctx.counters.model_dump())
            await ctx.emit(ProgressEventType.CANCELLED, message)
        except AuthenticationError as e:
            self.registry.transition(op_id, OperationState.ERROR, str(e))
            log.error("operation.auth_failed", error=str(e))
            await ctx.emit(ProgressEventType.ERROR, str(e), reauth_required=True)
        except Exception as e:
            self.registry.transition(op_id, OperationState.ERROR, str(e))
            log.exception("operation.failed")
            await ctx.emit(ProgressEventType.ERROR, str(e) or type(e).__name__)
        except asyncio.CancelledError:
            if not ctx.operation.state.is_terminal:
                self.registry.transition(op_id, OperationState.CANCELLED, "task cancelled")
            raise
        finally:
            clear_operation()

    # -- operations ----------------------------------------------------------

    def _require(self, provider: Provider | str):
        if self.pool is None or self.scrapers is None:
            raise RuntimeError("OperationController needs a page pool and scraper registry to run provider jobs")
        return self.scrapers.get(provider)

    async def start_ancestor_crawl(
        self,
        provider: Provider | str,
        root_external_id: str,
        max_generations: int | None = None,
    ) -> ProgressStream:
        scraper = self._require(provider)

        async def job(ctx: OperationContext) -> str:
            crawler = AncestorCrawler(
                scraper,
                self.pool,
                config=self.config,
                guards=self.guards,
                resolver=self.resolver,
                session=self.session,
                cancel_check=ctx.cancelled,
            )
            c = ctx.counters
            c.total = 1
            async with aclosing(crawler.crawl(root_external_id, max_generations)) as steps:
                async for step in steps:
                    c.current += 1
                    c.total = max(crawler.discovered, c.current)
                    if step.ok:
                        c.processed += 1
                        await ctx.emit(
                            ProgressEventType.PERSON_COMPLETE,
                            f"{step.record.name} (generation {step.generation})",
                            person_id=step.person_id or step.external_id,
                        )
                    else:
                        c.errors += 1
                        await ctx.emit(
                            ProgressEventType.PERSON_SKIPPED,
                            step.error or "extraction failed",
                            person_id=step.external_id,
                        )
            if crawler.stats.cancelled:
                raise CancellationSignal(ctx.operation_id)
            if crawler.stats.halted:
                raise CrawlHalted(self.guards.breaker(scraper.provider).consecutive_failures)
            return f"Crawled {c.processed} persons, {c.errors} failed"

        return await self.start(OperationKind.ANCESTOR_CRAWL, job)

    async def start_hint_processing(self, provider: Provider | str, person_ids: list[str]) -> ProgressStream:
        """Accept provider hints for each listed canonical person.

        Raises:
            ValueError: the provider has no hint support.
        """
        scraper = self._require(provider)
        if not scraper.supports_hints:
            raise ValueError(f"{scraper.display_name} does not support hints")
        if self.resolver is None:
            raise RuntimeError("hint processing needs an IdentityResolver")

        async def job(ctx: OperationContext) -> str:
            processor = HintProcessor(
                scraper,
                self.pool,
                config=self.config,
                guards=self.guards,
                session=self.session,
                cancel_check=ctx.cancelled,
            )
            c = ctx.counters
            for person_id in person_ids:
                ctx.check_cancelled()
                canonical_id = self.resolver.resolve_id(person_id) or person_id
                identity = self.resolver.get_external_id(canonical_id, scraper.provider)
                if identity is None:
                    c.skipped += 1
                    await ctx.emit(
                        ProgressEventType.PERSON_SKIPPED,
                        f"not linked to {scraper.display_name}",
                        person_id=person_id,
                    )
                    continue

                steps = processor.process_person(canonical_id, identity.external_id)
                async with aclosing(steps):
                    async for step in steps:
                        if step.kind == "found":
                            c.total += step.count
                            await ctx.emit(
                                ProgressEventType.PERSON_STARTED,
                                f"{step.count} hints found",
                                person_id=canonical_id,
                            )
                            continue
                        c.current += 1
                        if step.kind == "accepted":
                            c.processed += 1
                            await ctx.emit(
                                ProgressEventType.HINT_PROCESSED,
                                f"hint {step.index + 1} of {step.count} saved",
                                person_id=canonical_id,
                            )
                        else:
                            c.errors += 1
                            await ctx.emit(
                                ProgressEventType.PROGRESS,
                                f"hint {step.index + 1} failed: {step.error}",
                                person_id=canonical_id,
                            )
                if processor.cancelled:
                    raise CancellationSignal(ctx.operation_id)
                await ctx.emit(ProgressEventType.PERSON_COMPLETE, person_id=canonical_id)
            return f"Processed {c.processed} hints, {c.errors} failed, {c.skipped} persons skipped"

        return await self.start(OperationKind.HINT_PROCESSING, job)
