"""Client-side reconciliation: chunks to messages, and persisted plus local merge."""

from __future__ import annotations

import copy
import json
import logging
import re
from typing import Any, AsyncIterator, Callable, Iterable

from ..chunks import (
    FINISH,
    REASONING_DELTA,
    REASONING_START,
    SOURCE_URL,
    START,
    TEXT_DELTA,
    TEXT_START,
    TOOL_INPUT_AVAILABLE,
    TOOL_INPUT_START,
    TOOL_OUTPUT_AVAILABLE,
    Chunk,
    chunk_type,
)

logger = logging.getLogger(__name__)

Message = dict[str, Any]

_PREFIXED_LINE = re.compile(r"^\d+:")

_DELTA_KINDS = {
    TEXT_START: "text",
    TEXT_DELTA: "text",
    REASONING_START: "reasoning",
    REASONING_DELTA: "reasoning",
}


class MessageAssembler:
    """Folds a chunk stream into assistant messages.

    ``upsert`` is called with a snapshot of the message under construction
    every time it changes; callers replace any earlier snapshot with the same
    id.
    """

    def __init__(self, upsert: Callable[[Message], None], next_id: Callable[[], str] | None = None) -> None:
        self._upsert = upsert
        self._next_id = next_id or self._default_id
        self._counter = 0
        self.current: Message | None = None
        self._parts: dict[str, dict[str, Any]] = {}
        self.completed_turns = 0

    def _default_id(self) -> str:
        self._counter += 1
        return f"assistant-{self._counter}"

    def _begin(self) -> Message:
        self.current = {"id": self._next_id(), "role": "assistant", "parts": []}
        self._parts = {}
        return self.current

    def _message(self) -> Message:
        # A resumed stream may start past this message's ``start`` chunk
        return self.current if self.current is not None else self._begin()

    def flush(self) -> None:
        if self.current is not None:
            self._upsert(copy.deepcopy(self.current))

    def _add_part(self, key: str, part: dict[str, Any]) -> dict[str, Any]:
        self._message()["parts"].append(part)
        self._parts[key] = part
        return part

    def _tool_part(self, chunk: Chunk) -> dict[str, Any]:
        key = f"tool-{chunk['toolCallId']}"
        part = self._parts.get(key)
        if part is None:
            part = self._add_part(
                key,
                {
                    "type": "tool-invocation",
                    "toolInvocation": {
                        "state": "partial-call",
                        "toolCallId": chunk["toolCallId"],
                        "toolName": chunk.get("toolName", ""),
                        "args": {},
                    },
                },
            )
        return part

    def feed(self, chunk: Chunk) -> None:
        """Apply one chunk. Raises KeyError/TypeError on a malformed chunk."""
        ctype = chunk_type(chunk)

        if ctype == START:
            self.flush()
            self._begin()
        elif ctype == FINISH:
            self.flush()
            self.current = None
            self._parts = {}
            self.completed_turns += 1
            return
        elif ctype in (TEXT_START, REASONING_START):
            kind = _DELTA_KINDS[ctype]
            self._add_part(f"{kind}-{chunk['id']}", {"type": kind, "text": ""})
        elif ctype in (TEXT_DELTA, REASONING_DELTA):
            kind = _DELTA_KINDS[ctype]
            delta = chunk["delta"]
            if not isinstance(delta, str):
                raise TypeError(f"{ctype} delta must be a string")
            key = f"{kind}-{chunk['id']}"
            part = self._parts.get(key) or self._add_part(key, {"type": kind, "text": ""})
            part["text"] += delta
        elif ctype == TOOL_INPUT_START:
            self._tool_part(chunk)
        elif ctype == TOOL_INPUT_AVAILABLE:
            part = self._tool_part(chunk)
            invocation = part["toolInvocation"]
            part["toolInvocation"] = {
                "state": "call",
                "toolCallId": invocation["toolCallId"],
                "toolName": chunk.get("toolName") or invocation["toolName"],
                "args": chunk.get("input", {}),
            }
        elif ctype == TOOL_OUTPUT_AVAILABLE:
            part = self._parts.get(f"tool-{chunk['toolCallId']}")
            if part is None:
                return
            part["toolInvocation"] = {**part["toolInvocation"], "state": "result", "result": chunk.get("output")}
        elif ctype == SOURCE_URL:
            self._message()["parts"].append(
                {"type": "source-url", "sourceId": chunk["sourceId"], "url": chunk["url"], "title": chunk.get("title")}
            )
        else:
            # step markers, *-end, tool-input-delta, error variants, internal and unknown types
            return

        self.flush()


def merge_messages(
    persisted: Iterable[tuple[int, Message]],
    local: Iterable[Message],
    start: int = 0,
) -> list[Message]:
    """Combine server-confirmed messages with messages created locally.

    Persisted messages keep their stored index. Local messages are placed from
    ``start`` onward: each takes the slot under the cursor if it is free. A
    local user message whose slot is taken is assumed to be that stored
    message and only advances the cursor; any other local message scans
    forward to the next free slot.
    """
    slots: dict[int, Message] = {index: message for index, message in persisted}
    cursor = start
    for message in local:
        if cursor not in slots:
            slots[cursor] = message
        elif message.get("role") == "user":
            pass
        else:
            while cursor in slots:
                cursor += 1
            slots[cursor] = message
        cursor += 1
    return [slots[index] for index in sorted(slots)]


def trailing_assistant_count(messages: Iterable[Message]) -> int:
    """Number of assistant messages after the last user message."""
    count = 0
    for message in messages:
        if message.get("role") == "user":
            count = 0
        else:
            count += 1
    return count


def parse_stream_line(line: str) -> Chunk | str | None:
    """Decode one line of a chunk stream.

    Returns the chunk, the string ``"[DONE]"`` for the end marker, or None for
    lines to skip (blank, comments, unknown fields, malformed JSON).
    """
    line = line.strip()
    if not line:
        return None
    if line.startswith("data:"):
        payload = line[len("data:"):].strip()
    elif _PREFIXED_LINE.match(line):
        payload = line.split(":", 1)[1]
    else:
        return None
    if payload == "[DONE]":
        return payload
    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed stream line: %.80s", line)
        return None
    if not isinstance(chunk, dict):
        return None
    return chunk


async def iter_sse_chunks(lines: AsyncIterator[str]) -> AsyncIterator[Chunk]:
    async for line in lines:
        parsed = parse_stream_line(line)
        if parsed is None:
            continue
        if parsed == "[DONE]":
            return
        yield parsed
