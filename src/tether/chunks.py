"""Chunk wire protocol shared by the agent loop, the transport and the client.

A chunk is a JSON object with a ``type`` field. Types ending in ``.ignore``
are transport-internal: they prove the producer is alive but are never sent
to a client.
"""

from __future__ import annotations

from typing import Any

Chunk = dict[str, Any]

START = "start"
FINISH = "finish"
START_STEP = "start-step"
FINISH_STEP = "finish-step"
TEXT_START = "text-start"
TEXT_DELTA = "text-delta"
TEXT_END = "text-end"
REASONING_START = "reasoning-start"
REASONING_DELTA = "reasoning-delta"
REASONING_END = "reasoning-end"
TOOL_INPUT_START = "tool-input-start"
TOOL_INPUT_DELTA = "tool-input-delta"
TOOL_INPUT_AVAILABLE = "tool-input-available"
TOOL_INPUT_ERROR = "tool-input-error"
TOOL_OUTPUT_AVAILABLE = "tool-output-available"
TOOL_OUTPUT_ERROR = "tool-output-error"
SOURCE_URL = "source-url"
STREAM_DONE = "stream-done"

INTERNAL_SUFFIX = ".ignore"
CHECKPOINT = "checkpoint" + INTERNAL_SUFFIX

# Finish reasons meaning "the model wants another step"
CONTINUATION_REASONS = frozenset({"tool-calls"})

# Response header carrying the agent run id of a chat stream
RUN_ID_HEADER = "x-run-id"


def chunk_type(chunk: Chunk) -> str:
    return str(chunk.get("type", ""))


def is_internal(chunk: Chunk) -> bool:
    return chunk_type(chunk).endswith(INTERNAL_SUFFIX)


def text_chunks(part_id: str, text: str) -> list[Chunk]:
    """Chunks that stream ``text`` as one complete text part."""
    return [
        {"type": TEXT_START, "id": part_id},
        {"type": TEXT_DELTA, "id": part_id, "delta": text},
        {"type": TEXT_END, "id": part_id},
    ]
