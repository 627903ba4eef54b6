"""Resend queue of numbered messages, trimmed as the peer acknowledges them."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

M = TypeVar("M")


@dataclass(frozen=True, order=True)
class MessageId:
    """Sequence number of a message sent to one peer."""

    value: int

    def increment(self) -> MessageId:
        """Return the id that follows this one."""
        return MessageId(self.value + 1)


@dataclass(frozen=True)
class UniqueMessage(Generic[M]):
    """A message tagged with its sequence number."""

    id: MessageId
    msg: M


class MessageQueue(Generic[M]):
    """Messages kept for resending until the peer acknowledges them."""

    def __init__(self) -> None:
        self._queue: deque[UniqueMessage[M]] = deque()
        self.next_id = MessageId(1)

    def push(self, msg: M) -> UniqueMessage[M]:
        """Number `msg`, keep it for resending and return the numbered message."""
        id_msg = UniqueMessage(self.next_id, msg)
        self._queue.append(id_msg)
        self.next_id = self.next_id.increment()
        return id_msg

    def ack(self, msg_id: MessageId) -> None:
        """Drop every queued message with an id up to and including `msg_id`."""
        logger.debug("Received ACK for %r", msg_id)
        while self._queue and self._queue[0].id <= msg_id:
            msg = self._queue.popleft()
            logger.debug("Removing message %r from resend buffer", msg.id)

    def __iter__(self) -> Iterator[UniqueMessage[M]]:
        return iter(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MessageQueue):
            return NotImplemented
        return list(self._queue) == list(other._queue) and self.next_id == other.next_id

    def __repr__(self) -> str:
        return f"MessageQueue(queue={list(self._queue)!r}, next_id={self.next_id!r})"