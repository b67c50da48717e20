"""
Core data models for the SQS receiver.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class HandlerResult(str, Enum):
    """What the receiver should do with a message once the handler returns."""
    ACK = "ack"            # delete from the queue (when auto-delete is on)
    RETAIN = "retain"      # leave it; the visibility timeout redelivers it


class ReceiverEvent(str, Enum):
    EMPTY_QUEUE = "empty_queue"
    FETCH_ERROR = "fetch_error"
    MESSAGE_ERROR = "message_error"


# ──────────────────────────────────────────────────────────────
#  Message — one entry returned by ReceiveMessage
# ──────────────────────────────────────────────────────────────

class Message(BaseModel):
    """A message received from the queue service."""
    id: str                                       # MessageId, used as the dedup key
    receipt_handle: str                           # needed to delete this delivery
    body: str = ""
    md5_of_body: str = ""
    attributes: dict[str, str] = {}               # system attributes (ApproximateReceiveCount, …)
    message_attributes: dict[str, Any] = {}       # only set when attributes were requested
    raw: dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_sqs(cls, data: dict[str, Any]) -> Message:
        """Build from a raw ``Messages[]`` entry of a ReceiveMessage response."""
        return cls(
            id=data["MessageId"],
            receipt_handle=data["ReceiptHandle"],
            body=data.get("Body", ""),
            md5_of_body=data.get("MD5OfBody", ""),
            attributes=data.get("Attributes", {}),
            message_attributes=data.get("MessageAttributes", {}),
            raw=dict(data),
        )

    @property
    def receive_count(self) -> int:
        try:
            return int(self.attributes.get("ApproximateReceiveCount", "0"))
        except ValueError:
            return 0
