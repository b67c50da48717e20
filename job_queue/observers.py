"""
Receiver observers — the notification surface of SQSReceiver.

Three events are emitted:
  empty_queue     — a ReceiveMessage call returned no messages
  fetch_error     — ReceiveMessage raised; the worker backs off
  message_error   — the handler, or the delete that follows it, raised
"""
from __future__ import annotations

from typing import Callable, Optional

import structlog

from models.schemas import Message, ReceiverEvent

logger = structlog.get_logger()


class ReceiverObserver:
    """Base observer. Override the events you care about; the rest are no-ops."""

    def on_empty_queue(self) -> None:
        pass

    def on_fetch_error(self, error: BaseException) -> None:
        pass

    def on_message_error(self, error: BaseException, message: Message) -> None:
        pass


class LoggingObserver(ReceiverObserver):
    """Logs every receiver event. Installed on each receiver by default."""

    def __init__(self, queue_url: str = ""):
        self.log = logger.bind(queue_url=queue_url) if queue_url else logger

    def on_empty_queue(self) -> None:
        self.log.debug(ReceiverEvent.EMPTY_QUEUE.value)

    def on_fetch_error(self, error: BaseException) -> None:
        self.log.error(ReceiverEvent.FETCH_ERROR.value,
                       error=str(error),
                       error_type=type(error).__name__)

    def on_message_error(self, error: BaseException, message: Message) -> None:
        self.log.error(ReceiverEvent.MESSAGE_ERROR.value,
                       message_id=message.id,
                       error=str(error),
                       error_type=type(error).__name__)


class CallbackObserver(ReceiverObserver):
    """
    Adapts plain callables to the observer interface.

    Usage:
        receiver.add_observer(CallbackObserver(
            on_fetch_error=lambda err: alerts.append(err),
        ))
    """

    def __init__(
        self,
        on_empty_queue: Optional[Callable[[], None]] = None,
        on_fetch_error: Optional[Callable[[BaseException], None]] = None,
        on_message_error: Optional[Callable[[BaseException, Message], None]] = None,
    ):
        self._on_empty_queue = on_empty_queue
        self._on_fetch_error = on_fetch_error
        self._on_message_error = on_message_error

    def on_empty_queue(self) -> None:
        if self._on_empty_queue:
            self._on_empty_queue()

    def on_fetch_error(self, error: BaseException) -> None:
        if self._on_fetch_error:
            self._on_fetch_error(error)

    def on_message_error(self, error: BaseException, message: Message) -> None:
        if self._on_message_error:
            self._on_message_error(error, message)
