"""Shared test fixtures for the SQS receiver."""
import asyncio

import pytest

from job_queue.backoff import BackoffTimeout
from job_queue.message_queue import InMemoryQueueClient
from job_queue.observers import ReceiverObserver
from models.schemas import Message


QUEUE_URL = "https://sqs.eu-west-1.amazonaws.com/123456789012/orders"


class RecordingObserver(ReceiverObserver):
    """Collects every notification the receiver emits."""

    def __init__(self):
        self.empty_queue = 0
        self.fetch_errors: list[BaseException] = []
        self.message_errors: list[tuple[BaseException, Message]] = []

    def on_empty_queue(self) -> None:
        self.empty_queue += 1

    def on_fetch_error(self, error: BaseException) -> None:
        self.fetch_errors.append(error)

    def on_message_error(self, error: BaseException, message: Message) -> None:
        self.message_errors.append((error, message))


class RecordingBackoff(BackoffTimeout):
    """Backoff that records the delays it would have slept, without sleeping."""

    def __init__(self):
        super().__init__()
        self.waits: list[float] = []
        self.resets = 0

    def reset(self) -> None:
        self.resets += 1
        super().reset()

    async def wait(self, interrupt=None) -> bool:
        self.waits.append(self.delay)
        self.counter = min(self.counter + 1, self.max_counter)
        await asyncio.sleep(0)
        return True


@pytest.fixture
def queue_url() -> str:
    return QUEUE_URL


@pytest.fixture
def memory_queue() -> InMemoryQueueClient:
    return InMemoryQueueClient(visibility_timeout=30, poll_interval=0.01)


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def backoff() -> RecordingBackoff:
    return RecordingBackoff()


@pytest.fixture
def make_message():
    def _make(message_id: str, body: str = "{}") -> Message:
        return Message(id=message_id, receipt_handle=f"rh-{message_id}", body=body)
    return _make


@pytest.fixture
def wait_until():
    """Poll ``predicate`` on the running loop until it holds or the timeout hits."""
    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met within timeout")
            await asyncio.sleep(interval)
    return _wait
