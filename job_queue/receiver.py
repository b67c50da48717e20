"""
SQS Receiver — bounded-concurrency poller for a single queue.

Runs ceil(max_concurrency / 10) worker loops inside the event loop. Each
loop repeatedly:

  ┌──────────────────┐  slots > 0   ┌──────────┐  ok   ┌──────────────────┐
  │ slots = max −    │─────────────▶│ receive  │──────▶│ dispatch handler │
  │   tracked tasks  │              │ (≤ 10)   │       │ per message,     │
  └────────┬─────────┘              └────┬─────┘       │ reset backoff    │
           │ slots ≤ 0                   │ error       └────────┬─────────┘
           │                             ▼                      │
           │                     ┌───────────────┐              │
           │                     │ fetch_error → │              │
           │                     │ backoff wait  │              │
           │                     └───────┬───────┘              │
           ▼                             ▼                      ▼
  ┌──────────────────────────────────────────────────────────────────────┐
  │ still saturated? → wait for any handler to settle, then loop again   │
  └──────────────────────────────────────────────────────────────────────┘

Waiting for a free slot is the only backpressure: fetch frequency follows
the rate at which handlers complete.

Usage:
    receiver = SQSReceiver(queue_url, handle_order, queue_client=client)
    await receiver.start()    # returns immediately, workers run as tasks
    ...
    await receiver.stop()     # joins workers and drains in-flight handlers
"""
from __future__ import annotations

import asyncio
import inspect
import math
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import structlog

from config.settings import ConfigError, ReceiverConfig
from job_queue.backoff import BackoffTimeout
from job_queue.message_queue import SQS_FETCH_LIMIT, QueueClient, create_queue_client
from job_queue.observers import LoggingObserver, ReceiverObserver
from job_queue.task_manager import TaskManager
from models.schemas import HandlerResult, Message

logger = structlog.get_logger()

MessageHandler = Callable[[Message], Union[Any, Awaitable[Any]]]


class SQSReceiver:
    """
    Consumes a queue and invokes ``message_handler`` for every message,
    keeping at most ``max_concurrency`` invocations in flight.

    The handler returns ``HandlerResult.ACK`` to have the message deleted
    (when ``auto_delete`` is on); anything else leaves it to the queue's
    visibility timeout. Coroutine handlers run on the event loop, plain
    functions on the default thread pool.
    """

    def __init__(
        self,
        queue_url: str,
        message_handler: MessageHandler,
        queue_client: QueueClient,
        max_concurrency: int = 10,
        wait_seconds: int = 20,
        include_attributes: bool = False,
        auto_delete: bool = True,
        observers: Optional[Iterable[ReceiverObserver]] = None,
        backoff: Optional[BackoffTimeout] = None,
    ):
        if max_concurrency <= 0:
            raise ConfigError(f"max_concurrency must be > 0, got {max_concurrency}")

        self.queue_url = queue_url
        self.message_handler = message_handler
        self.queue_client = queue_client
        self.max_concurrency = max_concurrency
        self.wait_seconds = wait_seconds
        self.include_attributes = include_attributes
        self.auto_delete = auto_delete

        self._observers: list[ReceiverObserver] = (
            list(observers) if observers is not None else [LoggingObserver(queue_url)]
        )
        self._backoff = backoff or BackoffTimeout()
        self._tasks = TaskManager()
        self._reserved = 0
        self._running = False
        self._generation = 0
        self._workers: list[asyncio.Task] = []
        self._interrupt = asyncio.Event()
        self.log = logger.bind(queue_url=queue_url)

    @classmethod
    def from_config(
        cls,
        config: ReceiverConfig,
        message_handler: MessageHandler,
        queue_client: Optional[QueueClient] = None,
        **kwargs,
    ) -> SQSReceiver:
        config.validate()
        return cls(
            queue_url=config.queue_url,
            message_handler=message_handler,
            queue_client=queue_client or create_queue_client(config),
            max_concurrency=config.max_concurrency,
            wait_seconds=config.wait_seconds,
            include_attributes=config.include_attributes,
            auto_delete=config.auto_delete,
            **kwargs,
        )

    # ── State ────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        """Tracked handler invocations, including settled ones not yet purged."""
        return self._tasks.count()

    @property
    def available_slots(self) -> int:
        """Slots neither running a handler nor reserved by a fetch in progress."""
        return self.max_concurrency - self._tasks.count() - self._reserved

    @property
    def worker_count(self) -> int:
        return math.ceil(self.max_concurrency / SQS_FETCH_LIMIT)

    def add_observer(self, observer: ReceiverObserver) -> None:
        self._observers.append(observer)

    def remove_observer(self, observer: ReceiverObserver) -> None:
        self._observers.remove(observer)

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self) -> None:
        """Launch the worker loops. No-op while already running."""
        if self._running:
            return

        await self.stop()
        if self._running:
            # another start() won the race while the drain was in progress
            return
        self._running = True
        self._generation += 1
        self._interrupt = asyncio.Event()

        self._workers = [
            asyncio.create_task(
                self._run_worker(self._generation, i, self._interrupt),
                name=f"sqs_receiver_worker_{self._generation}_{i}",
            )
            for i in range(self.worker_count)
        ]
        self.log.info("receiver_started",
                      workers=len(self._workers),
                      max_concurrency=self.max_concurrency)

    async def stop(self) -> None:
        """
        Stop fetching and wait until every dispatched handler has settled.

        Workers finish the fetch they are in (it is not aborted), dispatch
        whatever it returned, and exit; a worker sleeping in backoff wakes
        immediately. Only once all workers are gone is the tracker drained,
        so nothing is dispatched after stop() returns.
        """
        was_running = self._running
        self._running = False
        self._interrupt.set()

        workers, self._workers = self._workers, []
        if was_running:
            self.log.info("receiver_stopping", in_flight=self._tasks.count())
        if workers:
            await asyncio.wait(workers)

        await self._tasks.wait_all()
        if was_running:
            self.log.info("receiver_stopped")

    # ── Worker loop ──────────────────────────────────────────

    def _is_current(self, generation: int) -> bool:
        return self._running and generation == self._generation

    async def _run_worker(self, generation: int, worker_id: int, interrupt: asyncio.Event) -> None:
        log = self.log.bind(worker=worker_id, generation=generation)
        log.debug("receiver_worker_started")

        while self._is_current(generation):
            try:
                await self._poll_once(interrupt)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("receiver_worker_error", error=str(e), exc_info=True)
            # yield before the next iteration
            await asyncio.sleep(0)

        log.debug("receiver_worker_exited")

    async def _receive(self, request_size: int) -> list[Message]:
        # Slots asked for stay reserved until the batch is dispatched, so
        # workers fetching at the same time never overshoot the ceiling.
        self._reserved += request_size
        try:
            return await self.queue_client.receive(
                self.queue_url,
                request_size,
                self.wait_seconds,
                self.include_attributes,
            )
        finally:
            self._reserved -= request_size

    async def _poll_once(self, interrupt: asyncio.Event) -> None:
        available = self.available_slots

        # A saturated pool skips the fetch rather than sending an empty request.
        if available > 0:
            try:
                messages = await self._receive(min(available, SQS_FETCH_LIMIT))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._notify("on_fetch_error", e)
                await self._backoff.wait(interrupt)
            else:
                for message in messages:
                    if not self._tasks.add(message.id, self._handle_message(message)):
                        self.log.debug("duplicate_message_skipped", message_id=message.id)

                if not messages:
                    self._notify("on_empty_queue")

                self._backoff.reset()

        if self.available_slots <= 0 and self._tasks.count():
            await self._tasks.wait_one()

    # ── Dispatch ─────────────────────────────────────────────

    async def _invoke_handler(self, message: Message) -> Any:
        if inspect.iscoroutinefunction(self.message_handler):
            return await self.message_handler(message)
        result = await asyncio.to_thread(self.message_handler, message)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _handle_message(self, message: Message) -> None:
        """Run the handler for one message. Never raises, except on cancellation."""
        try:
            result = await self._invoke_handler(message)

            if result is HandlerResult.ACK:
                if self.auto_delete:
                    await self.queue_client.delete(self.queue_url, message.receipt_handle)
                    self.log.debug("message_deleted", message_id=message.id)
            elif result is not None and not isinstance(result, HandlerResult):
                self.log.warning("handler_result_unrecognized",
                                 message_id=message.id,
                                 result_type=type(result).__name__)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._notify("on_message_error", e, message)

    def _notify(self, event: str, *args) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, event)(*args)
            except Exception as e:
                self.log.error("receiver_observer_error",
                               observer=type(observer).__name__,
                               notification=event,
                               error=str(e))
