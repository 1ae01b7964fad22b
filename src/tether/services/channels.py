"""In-process chunk channels: one append-only log per generation turn.

Each channel is namespaced by ``(chat_id, stream_id)`` so turns never collide.
Readers replay the log from any offset and then follow live writes, so a
client that reconnects mid-turn (or after it ended) sees the same chunks as
the first one. Writers are throttled by the slowest attached reader.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import AsyncIterator

from ..chunks import Chunk

logger = logging.getLogger(__name__)


class ChannelClosedError(RuntimeError):
    """Raised when writing to a channel that has been closed."""


class ChunkChannel:
    def __init__(self, chat_id: str, namespace: str, high_water_mark: int = 256) -> None:
        self.chat_id = chat_id
        self.namespace = namespace
        self.high_water_mark = max(1, high_water_mark)
        self._chunks: list[Chunk] = []
        self._closed = False
        self._cursors: dict[int, int] = {}
        self._reader_ids = itertools.count()
        self._changed = asyncio.Event()

    def __len__(self) -> int:
        return len(self._chunks)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def reader_count(self) -> int:
        return len(self._cursors)

    def _signal(self) -> None:
        # Wake everyone waiting on the current event; later waiters get a fresh one.
        self._changed.set()
        self._changed = asyncio.Event()

    def _has_room(self) -> bool:
        end = len(self._chunks)
        return all(end - pos < self.high_water_mark for pos in self._cursors.values())

    async def write(self, chunk: Chunk) -> None:
        while not self._closed and not self._has_room():
            await self._changed.wait()
        if self._closed:
            raise ChannelClosedError(f"Channel {self.chat_id}/{self.namespace} is closed")
        self._chunks.append(chunk)
        self._signal()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._signal()
        logger.debug("Closed channel %s/%s after %d chunks", self.chat_id, self.namespace, len(self._chunks))

    async def read(self, start: int = 0) -> AsyncIterator[Chunk]:
        """Yield chunks from ``start`` until the channel is closed and drained."""
        reader_id = next(self._reader_ids)
        pos = max(0, start)
        try:
            while True:
                self._cursors[reader_id] = pos
                self._signal()
                while pos >= len(self._chunks) and not self._closed:
                    await self._changed.wait()
                if pos >= len(self._chunks):
                    return
                chunk = self._chunks[pos]
                yield chunk
                pos += 1
        finally:
            self._cursors.pop(reader_id, None)
            self._signal()


class ChannelHub:
    """Registry of chunk channels keyed by chat and stream namespace."""

    def __init__(self, high_water_mark: int = 256, retained_streams: int = 64) -> None:
        self.high_water_mark = high_water_mark
        self.retained_streams = retained_streams
        self._channels: dict[tuple[str, str], ChunkChannel] = {}

    def get(self, chat_id: str, namespace: str) -> ChunkChannel | None:
        return self._channels.get((chat_id, namespace))

    def channel(self, chat_id: str, namespace: str) -> ChunkChannel:
        key = (chat_id, namespace)
        channel = self._channels.get(key)
        if channel is None:
            channel = ChunkChannel(chat_id, namespace, self.high_water_mark)
            self._channels[key] = channel
        return channel

    def open_writer(self, chat_id: str, namespace: str) -> ChunkChannel:
        return self.channel(chat_id, namespace)

    def open_reader(self, chat_id: str, namespace: str, start: int = 0) -> AsyncIterator[Chunk]:
        return self.channel(chat_id, namespace).read(start)

    def close(self, chat_id: str, namespace: str) -> None:
        """Close a namespace. A namespace nobody opened is recorded as closed."""
        self.channel(chat_id, namespace).close()
        self._evict()

    def subscriber_count(self, chat_id: str, namespace: str) -> int:
        channel = self._channels.get((chat_id, namespace))
        return channel.reader_count if channel else 0

    def close_all(self) -> None:
        for channel in self._channels.values():
            channel.close()

    def _evict(self) -> None:
        closed = [key for key, ch in self._channels.items() if ch.closed]
        excess = len(closed) - self.retained_streams
        for key in closed:
            if excess <= 0:
                break
            if self._channels[key].reader_count == 0:
                del self._channels[key]
                excess -= 1
