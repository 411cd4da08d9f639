"""Bounded in-process queue of (message_id, team_id) delivery work."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import NamedTuple

from teamchat.config import DELIVERY_QUEUE_SIZE

logger = logging.getLogger(__name__)


class DeliveryItem(NamedTuple):
    message_id: uuid.UUID
    team_id: uuid.UUID


class DeliveryQueue:
    """asyncio.Queue wrapper. A full queue makes enqueue wait; nothing is dropped."""

    def __init__(self, maxsize: int = DELIVERY_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue[DeliveryItem] = asyncio.Queue(maxsize=maxsize)

    async def enqueue(self, message_id: uuid.UUID, team_id: uuid.UUID) -> None:
        if self._queue.full():
            logger.warning("delivery queue full, waiting message_id=%s team_id=%s", message_id, team_id)
        await self._queue.put(DeliveryItem(message_id, team_id))

    async def get(self) -> DeliveryItem:
        return await self._queue.get()

    def task_done(self) -> None:
        self._queue.task_done()

    async def join(self) -> None:
        await self._queue.join()

    def qsize(self) -> int:
        return self._queue.qsize()

    @property
    def maxsize(self) -> int:
        return self._queue.maxsize

    def full(self) -> bool:
        return self._queue.full()
