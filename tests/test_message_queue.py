"""
Tests for the queue clients.

Covers:
  - Message model parsing
  - InMemoryQueueClient delivery semantics
  - SQSQueueClient request shapes and delete retries (boto3 mocked)
  - Queue factory (memory vs sqs selection)
"""
import asyncio
import hashlib
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from config.settings import ReceiverConfig
from job_queue.message_queue import (
    InMemoryQueueClient, ReceiptHandleError, SQSQueueClient,
    create_queue_client,
)
from models.schemas import Message


# ──────────────────────────────────────────────────────────────
#  Message model
# ──────────────────────────────────────────────────────────────

class TestMessage:
    def test_from_sqs(self):
        raw = {
            "MessageId": "5fea7756-0ea4-451a-a703-a558b933e274",
            "ReceiptHandle": "MbZj6wDWli+JvwwJaBV+3dcjk2YW2vA3+STFFljTM8tJJg6HRG6PYSasuWXPJB+Cw",
            "MD5OfBody": "fafb00f5732ab283681e124bf8747ed1",
            "Body": "This is a test message",
            "Attributes": {"ApproximateReceiveCount": "3", "SentTimestamp": "1250700979248"},
        }
        message = Message.from_sqs(raw)
        assert message.id == raw["MessageId"]
        assert message.receipt_handle == raw["ReceiptHandle"]
        assert message.body == "This is a test message"
        assert message.receive_count == 3
        assert message.message_attributes == {}
        assert message.raw == raw

    def test_receive_count_defaults_to_zero(self):
        message = Message(id="m", receipt_handle="rh")
        assert message.receive_count == 0


# ──────────────────────────────────────────────────────────────
#  InMemoryQueueClient
# ──────────────────────────────────────────────────────────────

class TestInMemoryQueueClient:
    @pytest.mark.asyncio
    async def test_send_receive_delete(self, queue_url, memory_queue):
        message_id = memory_queue.send(queue_url, "hello")
        batch = await memory_queue.receive(queue_url, 10, 0)

        assert [m.id for m in batch] == [message_id]
        assert batch[0].body == "hello"
        assert batch[0].md5_of_body == hashlib.md5(b"hello").hexdigest()

        await memory_queue.delete(queue_url, batch[0].receipt_handle)
        assert memory_queue.pending(queue_url) == 0
        assert memory_queue.deleted == [message_id]

    @pytest.mark.asyncio
    async def test_batch_size_is_respected(self, queue_url, memory_queue):
        for i in range(15):
            memory_queue.send(queue_url, str(i))

        first = await memory_queue.receive(queue_url, 10, 0)
        second = await memory_queue.receive(queue_url, 10, 0)

        assert len(first) == 10
        assert len(second) == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("size", [0, -1, 11])
    async def test_rejects_out_of_range_batch_size(self, queue_url, memory_queue, size):
        with pytest.raises(ValueError):
            await memory_queue.receive(queue_url, size, 0)

    @pytest.mark.asyncio
    async def test_received_messages_are_invisible(self, queue_url, memory_queue):
        memory_queue.send(queue_url, "once")
        assert len(await memory_queue.receive(queue_url, 1, 0)) == 1
        assert await memory_queue.receive(queue_url, 1, 0) == []
        assert memory_queue.pending(queue_url) == 1

    @pytest.mark.asyncio
    async def test_redelivery_after_visibility_timeout(self, queue_url):
        queue = InMemoryQueueClient(visibility_timeout=0.05, poll_interval=0.01)
        queue.send(queue_url, "retry me")

        first = (await queue.receive(queue_url, 1, 0, include_attributes=True))[0]
        await asyncio.sleep(0.08)
        second = (await queue.receive(queue_url, 1, 0, include_attributes=True))[0]

        assert second.id == first.id
        assert second.receipt_handle != first.receipt_handle
        assert second.receive_count == 2

        with pytest.raises(ReceiptHandleError):
            await queue.delete(queue_url, first.receipt_handle)
        await queue.delete(queue_url, second.receipt_handle)
        assert queue.pending(queue_url) == 0

    @pytest.mark.asyncio
    async def test_long_poll_returns_message_sent_while_waiting(self, queue_url, memory_queue):
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, memory_queue.send, queue_url, "late arrival")

        batch = await asyncio.wait_for(memory_queue.receive(queue_url, 10, 2), timeout=1.0)
        assert [m.body for m in batch] == ["late arrival"]

    @pytest.mark.asyncio
    async def test_long_poll_times_out_empty(self, queue_url, memory_queue):
        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await memory_queue.receive(queue_url, 10, 0) == []
        assert loop.time() - started < 0.5

    @pytest.mark.asyncio
    async def test_attributes_only_when_requested(self, queue_url, memory_queue):
        memory_queue.send(queue_url, "x", message_attributes={"k": {"StringValue": "v"}})
        message = (await memory_queue.receive(queue_url, 1, 0))[0]
        assert message.attributes == {}
        assert message.message_attributes == {}
        assert memory_queue.receive_calls[-1]["include_attributes"] is False


# ──────────────────────────────────────────────────────────────
#  SQSQueueClient
# ──────────────────────────────────────────────────────────────

class TestSQSQueueClient:
    @pytest.fixture
    def boto_client(self):
        client = MagicMock()
        client.receive_message.return_value = {
            "Messages": [
                {"MessageId": "m-1", "ReceiptHandle": "rh-1", "Body": "one"},
                {"MessageId": "m-2", "ReceiptHandle": "rh-2", "Body": "two"},
            ]
        }
        client.delete_message.return_value = {}
        return client

    @pytest.mark.asyncio
    async def test_receive_request_shape(self, queue_url, boto_client):
        sqs = SQSQueueClient(client=boto_client)
        messages = await sqs.receive(queue_url, 7, 20)
        await sqs.close()

        boto_client.receive_message.assert_called_once_with(
            QueueUrl=queue_url,
            MaxNumberOfMessages=7,
            WaitTimeSeconds=20,
        )
        assert [m.id for m in messages] == ["m-1", "m-2"]
        assert messages[1].receipt_handle == "rh-2"

    @pytest.mark.asyncio
    async def test_receive_with_attributes(self, queue_url, boto_client):
        sqs = SQSQueueClient(client=boto_client)
        await sqs.receive(queue_url, 10, 5, include_attributes=True)
        await sqs.close()

        kwargs = boto_client.receive_message.call_args.kwargs
        assert kwargs["AttributeNames"] == ["All"]
        assert kwargs["MessageAttributeNames"] == ["All"]

    @pytest.mark.asyncio
    async def test_empty_response(self, queue_url, boto_client):
        boto_client.receive_message.return_value = {}
        sqs = SQSQueueClient(client=boto_client)
        assert await sqs.receive(queue_url, 10, 0) == []
        await sqs.close()

    @pytest.mark.asyncio
    async def test_delete(self, queue_url, boto_client):
        sqs = SQSQueueClient(client=boto_client)
        await sqs.delete(queue_url, "rh-1")
        await sqs.close()

        boto_client.delete_message.assert_called_once_with(QueueUrl=queue_url, ReceiptHandle="rh-1")

    @pytest.mark.asyncio
    async def test_delete_retries_connection_errors(self, queue_url, boto_client):
        boto_client.delete_message.side_effect = [
            EndpointConnectionError(endpoint_url="https://sqs.eu-west-1.amazonaws.com"),
            {},
        ]
        sqs = SQSQueueClient(client=boto_client)
        await sqs.delete(queue_url, "rh-1")
        await sqs.close()

        assert boto_client.delete_message.call_count == 2

    @pytest.mark.asyncio
    async def test_delete_does_not_retry_client_errors(self, queue_url, boto_client):
        boto_client.delete_message.side_effect = ClientError(
            {"Error": {"Code": "ReceiptHandleIsInvalid", "Message": "bad handle"}},
            "DeleteMessage",
        )
        sqs = SQSQueueClient(client=boto_client)
        with pytest.raises(ClientError):
            await sqs.delete(queue_url, "rh-1")
        await sqs.close()

        assert boto_client.delete_message.call_count == 1

    @pytest.mark.asyncio
    async def test_receive_errors_propagate(self, queue_url, boto_client):
        boto_client.receive_message.side_effect = EndpointConnectionError(endpoint_url="https://x")
        sqs = SQSQueueClient(client=boto_client)
        with pytest.raises(EndpointConnectionError):
            await sqs.receive(queue_url, 10, 0)
        await sqs.close()
        assert boto_client.receive_message.call_count == 1


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

class TestQueueFactory:
    def test_memory_backend(self, queue_url):
        client = create_queue_client(ReceiverConfig(queue_url=queue_url, backend="memory",
                                                    visibility_timeout=12))
        assert isinstance(client, InMemoryQueueClient)
        assert client.visibility_timeout == 12

    def test_sqs_backend_passes_client_options(self, queue_url):
        config = ReceiverConfig(
            queue_url=queue_url,
            max_concurrency=35,
            sqs={"region_name": "eu-west-1", "endpoint_url": "http://localhost:4566"},
        )
        with patch("job_queue.message_queue.boto3") as boto3_mock:
            client = create_queue_client(config)

        assert isinstance(client, SQSQueueClient)
        boto3_mock.client.assert_called_once_with(
            "sqs", region_name="eu-west-1", endpoint_url="http://localhost:4566",
        )
        assert client._executor._max_workers == 4 + 8
