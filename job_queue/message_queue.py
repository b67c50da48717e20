"""
Message Queue — client interface for the queue service, with SQS and in-memory backends.

Only the two calls the receiver needs are modelled:

  receive(queue_url, max_messages ≤ 10, wait_seconds, include_attributes)
      → list[Message]   (empty when the long poll times out)
  delete(queue_url, receipt_handle)

Network errors, request signing and serialization belong to the backend.
"""
from __future__ import annotations

import asyncio
import functools
import hashlib
import math
import time
import uuid
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Optional

import boto3
import structlog
from botocore.exceptions import ConnectionClosedError, EndpointConnectionError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import ReceiverConfig
from models.schemas import Message

logger = structlog.get_logger()

# Hard limit of ReceiveMessage's MaxNumberOfMessages.
SQS_FETCH_LIMIT = 10


class QueueClientError(Exception):
    """Base error raised by queue client backends."""


class ReceiptHandleError(QueueClientError):
    """The receipt handle is unknown or no longer current."""


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class QueueClient(ABC):
    """Abstract queue service client."""

    @abstractmethod
    async def receive(
        self,
        queue_url: str,
        max_messages: int,
        wait_seconds: int,
        include_attributes: bool = False,
    ) -> list[Message]:
        """Long-poll for up to ``max_messages`` messages."""
        ...

    @abstractmethod
    async def delete(self, queue_url: str, receipt_handle: str) -> None:
        """Delete one received message."""
        ...

    async def close(self) -> None:
        """Release backend resources."""


# ──────────────────────────────────────────────────────────────
#  AWS SQS Implementation
# ──────────────────────────────────────────────────────────────

class SQSQueueClient(QueueClient):
    """
    Production client backed by boto3.

    boto3 is blocking, so every call runs on a private thread pool; size it
    to at least the number of receiver workers, since each long poll holds
    a thread for up to ``wait_seconds``.
    """

    def __init__(
        self,
        client_options: Optional[dict[str, Any]] = None,
        client: Any = None,
        max_workers: int = 16,
    ):
        self._client = client or boto3.client("sqs", **(client_options or {}))
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="sqs")

    async def _call(self, fn, **kwargs) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, **kwargs))

    async def receive(
        self,
        queue_url: str,
        max_messages: int,
        wait_seconds: int,
        include_attributes: bool = False,
    ) -> list[Message]:
        params: dict[str, Any] = {
            "QueueUrl": queue_url,
            "MaxNumberOfMessages": max_messages,
            "WaitTimeSeconds": wait_seconds,
        }
        if include_attributes:
            params["AttributeNames"] = ["All"]
            params["MessageAttributeNames"] = ["All"]

        response = await self._call(self._client.receive_message, **params)
        return [Message.from_sqs(m) for m in response.get("Messages", [])]

    @retry(
        retry=retry_if_exception_type((EndpointConnectionError, ConnectionClosedError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, max=2),
        reraise=True,
    )
    async def delete(self, queue_url: str, receipt_handle: str) -> None:
        await self._call(
            self._client.delete_message,
            QueueUrl=queue_url,
            ReceiptHandle=receipt_handle,
        )

    async def close(self) -> None:
        self._executor.shutdown(wait=False)


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

@dataclass
class _StoredMessage:
    message_id: str
    body: str
    message_attributes: dict[str, Any] = field(default_factory=dict)
    sent_at: float = 0.0
    visible_at: float = 0.0
    receipt_handle: str = ""
    receive_count: int = 0


class InMemoryQueueClient(QueueClient):
    """
    Development/test queue with SQS delivery semantics.
    Received messages stay invisible for ``visibility_timeout`` seconds and
    are redelivered under a new receipt handle unless deleted first.
    """

    def __init__(self, visibility_timeout: float = 30.0, poll_interval: float = 0.05):
        self.visibility_timeout = visibility_timeout
        self.poll_interval = poll_interval
        self._queues: dict[str, list[_StoredMessage]] = {}
        self.receive_calls: list[dict[str, Any]] = []
        self.deleted: list[str] = []

    def _get_queue(self, queue_url: str) -> list[_StoredMessage]:
        if queue_url not in self._queues:
            self._queues[queue_url] = []
        return self._queues[queue_url]

    def send(
        self,
        queue_url: str,
        body: str,
        message_attributes: Optional[dict[str, Any]] = None,
        message_id: str = "",
    ) -> str:
        """Enqueue a message and return its ID."""
        stored = _StoredMessage(
            message_id=message_id or str(uuid.uuid4()),
            body=body,
            message_attributes=message_attributes or {},
            sent_at=time.time(),
        )
        self._get_queue(queue_url).append(stored)
        return stored.message_id

    def pending(self, queue_url: str) -> int:
        """Messages not yet deleted, visible or in flight."""
        return len(self._get_queue(queue_url))

    def _take(self, queue_url: str, max_messages: int, include_attributes: bool) -> list[Message]:
        now = time.monotonic()
        batch = []
        for stored in self._get_queue(queue_url):
            if len(batch) >= max_messages:
                break
            if stored.visible_at > now:
                continue
            stored.receipt_handle = uuid.uuid4().hex
            stored.visible_at = now + self.visibility_timeout
            stored.receive_count += 1

            data: dict[str, Any] = {
                "MessageId": stored.message_id,
                "ReceiptHandle": stored.receipt_handle,
                "Body": stored.body,
                "MD5OfBody": hashlib.md5(stored.body.encode()).hexdigest(),
            }
            if include_attributes:
                data["Attributes"] = {
                    "ApproximateReceiveCount": str(stored.receive_count),
                    "SentTimestamp": str(int(stored.sent_at * 1000)),
                }
                data["MessageAttributes"] = dict(stored.message_attributes)
            batch.append(Message.from_sqs(data))
        return batch

    async def receive(
        self,
        queue_url: str,
        max_messages: int,
        wait_seconds: int,
        include_attributes: bool = False,
    ) -> list[Message]:
        if not 1 <= max_messages <= SQS_FETCH_LIMIT:
            raise ValueError(
                f"max_messages must be between 1 and {SQS_FETCH_LIMIT}, got {max_messages}"
            )
        self.receive_calls.append({
            "queue_url": queue_url,
            "max_messages": max_messages,
            "wait_seconds": wait_seconds,
            "include_attributes": include_attributes,
        })

        loop = asyncio.get_running_loop()
        deadline = loop.time() + wait_seconds
        while True:
            batch = self._take(queue_url, max_messages, include_attributes)
            if batch:
                return batch
            remaining = deadline - loop.time()
            if remaining <= 0:
                return []
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def delete(self, queue_url: str, receipt_handle: str) -> None:
        queue = self._get_queue(queue_url)
        for stored in queue:
            if stored.receipt_handle == receipt_handle:
                queue.remove(stored)
                self.deleted.append(stored.message_id)
                return
        raise ReceiptHandleError(f"receipt handle is not current: {receipt_handle}")


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_queue_client(config: ReceiverConfig) -> QueueClient:
    """Factory: create the appropriate queue backend."""
    if config.backend == "memory":
        return InMemoryQueueClient(visibility_timeout=config.visibility_timeout)

    workers = math.ceil(config.max_concurrency / SQS_FETCH_LIMIT)
    logger.info("sqs_client_created",
                queue_url=config.queue_url,
                region=config.sqs.get("region_name", ""))
    # one thread per long-polling worker plus headroom for deletes
    return SQSQueueClient(client_options=config.sqs, max_workers=workers + 8)
