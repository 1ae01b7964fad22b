"""Filtered delivery of a chunk channel to one client connection.

The filter hides internal chunks, skips what a reconnecting client already
has, and ends the visible stream shortly after a ``finish`` chunk even if the
producer keeps the channel open for a queued follow-up turn.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncGenerator, AsyncIterator, Callable

from ..chunks import FINISH, STREAM_DONE, Chunk, chunk_type, is_internal

logger = logging.getLogger(__name__)

DEFAULT_GRACE_PERIOD = 0.5

RESUME_BY_CHUNKS = "chunks"
RESUME_BY_MESSAGES = "messages"
RESUME_MODES = (RESUME_BY_CHUNKS, RESUME_BY_MESSAGES)

TerminateCallback = Callable[[str], Any]


class _Terminator:
    """Fires the terminate callback at most once, whichever path gets there first."""

    def __init__(self, callback: TerminateCallback | None) -> None:
        self._callback = callback
        self.reason: str | None = None

    @property
    def fired(self) -> bool:
        return self.reason is not None

    def fire(self, reason: str) -> bool:
        if self.reason is not None:
            return False
        self.reason = reason
        if self._callback is not None:
            try:
                self._callback(reason)
            except Exception:
                logger.exception("Stream terminate callback failed")
        return True


async def _close_source(source: AsyncIterator[Chunk]) -> None:
    aclose = getattr(source, "aclose", None)
    if aclose is None:
        return
    try:
        await aclose()
    except Exception:
        logger.debug("Error closing upstream chunk source", exc_info=True)


async def filter_agent_stream(
    source: AsyncIterator[Chunk],
    *,
    start_index: int = 0,
    resume_by: str = RESUME_BY_CHUNKS,
    grace_period: float = DEFAULT_GRACE_PERIOD,
    abort_event: asyncio.Event | None = None,
    on_terminate: TerminateCallback | None = None,
) -> AsyncGenerator[Chunk, None]:
    """Yield the client-visible part of ``source``.

    ``start_index`` counts visible chunks (``resume_by="chunks"``) or completed
    ``finish`` boundaries (``resume_by="messages"``) the client already has.
    ``on_terminate`` receives ``"stream-done"``, ``"closed"`` or ``"aborted"``
    exactly once.
    """
    if resume_by not in RESUME_MODES:
        raise ValueError(f"resume_by must be one of {RESUME_MODES}, got {resume_by!r}")

    terminator = _Terminator(on_terminate)
    loop = asyncio.get_running_loop()
    source_iter = source.__aiter__()
    visible_count = 0
    finished_count = 0
    grace_deadline: float | None = None
    next_chunk: asyncio.Future[Chunk] | None = None
    abort_wait = asyncio.ensure_future(abort_event.wait()) if abort_event else None

    def _past_threshold() -> bool:
        if resume_by == RESUME_BY_CHUNKS:
            return visible_count >= start_index
        return finished_count >= start_index

    try:
        while True:
            if next_chunk is None:
                next_chunk = asyncio.ensure_future(source_iter.__anext__())
            wait_tasks: list[asyncio.Future[Any]] = [next_chunk]
            if abort_wait is not None:
                wait_tasks.append(abort_wait)

            timeout = None
            if grace_deadline is not None:
                timeout = max(0.0, grace_deadline - loop.time())

            done, _pending = await asyncio.wait(wait_tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if abort_wait is not None and abort_wait in done:
                logger.debug("Client aborted stream delivery")
                terminator.fire("aborted")
                return

            if not done:
                # Grace period after finish elapsed with no further activity
                if terminator.fire(STREAM_DONE):
                    yield {"type": STREAM_DONE}
                return

            finished = next_chunk
            next_chunk = None
            try:
                chunk = finished.result()
            except StopAsyncIteration:
                terminator.fire("closed")
                return

            # Any activity cancels a pending grace timer
            grace_deadline = None
            if is_internal(chunk):
                continue

            ctype = chunk_type(chunk)
            if resume_by == RESUME_BY_CHUNKS:
                deliver = visible_count >= start_index
                visible_count += 1
            else:
                deliver = finished_count >= start_index
                if ctype == FINISH:
                    finished_count += 1

            if deliver:
                yield chunk
            if ctype == FINISH and (deliver or _past_threshold()):
                grace_deadline = loop.time() + grace_period
    finally:
        if next_chunk is not None and not next_chunk.done():
            next_chunk.cancel()
            try:
                await next_chunk
            except (asyncio.CancelledError, Exception):
                pass  # the pending read only existed to be raced
        if abort_wait is not None and not abort_wait.done():
            abort_wait.cancel()
        if not terminator.fired:
            # Consumer went away (disconnect cancels the response generator)
            terminator.fire("aborted")
        await _close_source(source_iter)
