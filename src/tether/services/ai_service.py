"""OpenAI SDK wrapper that turns one chat completion into one generation step.

A step streams chunks in the wire protocol (``start`` ... ``finish``), runs
any tool calls the model made, and reports a finish reason. Errors from the
provider propagate to the caller; retrying is not this layer's job.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any, AsyncGenerator, Protocol

import httpx
from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, AuthenticationError

from ..chunks import (
    FINISH,
    FINISH_STEP,
    REASONING_DELTA,
    REASONING_END,
    REASONING_START,
    START,
    START_STEP,
    TEXT_DELTA,
    TEXT_END,
    TEXT_START,
    TOOL_INPUT_AVAILABLE,
    TOOL_INPUT_DELTA,
    TOOL_INPUT_ERROR,
    TOOL_INPUT_START,
    TOOL_OUTPUT_AVAILABLE,
    TOOL_OUTPUT_ERROR,
    Chunk,
)
from ..config import AIConfig
from ..tools import ToolRegistry

logger = logging.getLogger(__name__)

_FINISH_REASONS = {
    "stop": "stop",
    "tool_calls": "tool-calls",
    "function_call": "tool-calls",
    "length": "length",
    "content_filter": "content-filter",
}


class CompletionStep(Protocol):
    """One streamed model call. ``finish_reason`` and ``response_message`` are
    set by the time the step yields its ``finish`` chunk."""

    finish_reason: str | None
    response_message: dict[str, Any] | None

    def __aiter__(self) -> Any: ...


class CompletionService(Protocol):
    def stream_step(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: ToolRegistry | None = None,
        model: str | None = None,
    ) -> CompletionStep: ...


def _new_id() -> str:
    return uuid.uuid4().hex


def map_finish_reason(reason: str | None) -> str:
    if reason is None:
        return "unknown"
    return _FINISH_REASONS.get(reason, "other")


def to_model_messages(messages: list[dict[str, Any]], system_prompt: str | None = None) -> list[dict[str, Any]]:
    """Convert stored UI messages (role + parts) into chat-completion messages.

    Reasoning and source parts are not sent back to the model. Tool calls are
    only replayed once they have a result, since the API rejects an assistant
    tool call with no matching tool message.
    """
    result: list[dict[str, Any]] = []
    if system_prompt:
        result.append({"role": "system", "content": system_prompt})

    for message in messages:
        parts = message.get("parts", [])
        texts = [p.get("text", "") for p in parts if p.get("type") == "text"]
        if message.get("role") == "user":
            result.append({"role": "user", "content": "\n".join(texts)})
            continue

        tool_calls: list[dict[str, Any]] = []
        tool_results: list[dict[str, Any]] = []
        for part in parts:
            if part.get("type") != "tool-invocation":
                continue
            invocation = part.get("toolInvocation", {})
            if invocation.get("state") != "result":
                continue
            tool_calls.append(
                {
                    "id": invocation["toolCallId"],
                    "type": "function",
                    "function": {
                        "name": invocation.get("toolName", ""),
                        "arguments": json.dumps(invocation.get("args", {})),
                    },
                }
            )
            tool_results.append(
                {
                    "role": "tool",
                    "tool_call_id": invocation["toolCallId"],
                    "content": json.dumps(invocation.get("result")),
                }
            )

        assistant: dict[str, Any] = {"role": "assistant", "content": "".join(texts)}
        if tool_calls:
            assistant["tool_calls"] = tool_calls
        result.append(assistant)
        result.extend(tool_results)
    return result


class _OpenAIStep:
    def __init__(
        self,
        service: AIService,
        messages: list[dict[str, Any]],
        tools: ToolRegistry | None,
        model: str,
    ) -> None:
        self._service = service
        self._messages = messages
        self._tools = tools
        self._model = model
        self.finish_reason: str | None = None
        self.response_message: dict[str, Any] | None = None

    async def __aiter__(self) -> AsyncGenerator[Chunk, None]:
        message_id = _new_id()
        parts: list[dict[str, Any]] = []
        yield {"type": START, "messageId": message_id}
        yield {"type": START_STEP}

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": to_model_messages(self._messages, self._service.config.system_prompt),
            "stream": True,
        }
        if self._tools and self._tools.list_tools():
            kwargs["tools"] = self._tools.get_openai_tools()

        stream = await self._service.client.chat.completions.create(**kwargs)

        text_id: str | None = None
        text_part: dict[str, Any] = {}
        reasoning_id: str | None = None
        reasoning_part: dict[str, Any] = {}
        current_tool_calls: dict[int, dict[str, Any]] = {}
        raw_finish: str | None = None

        try:
            async for chunk in stream:
                choice = chunk.choices[0] if chunk.choices else None
                if not choice:
                    continue
                delta = choice.delta

                reasoning = getattr(delta, "reasoning_content", None) if delta else None
                if reasoning:
                    if reasoning_id is None:
                        reasoning_id = _new_id()
                        reasoning_part = {"type": "reasoning", "text": ""}
                        parts.append(reasoning_part)
                        yield {"type": REASONING_START, "id": reasoning_id}
                    reasoning_part["text"] += reasoning
                    yield {"type": REASONING_DELTA, "id": reasoning_id, "delta": reasoning}

                if delta and delta.content:
                    if reasoning_id is not None:
                        yield {"type": REASONING_END, "id": reasoning_id}
                        reasoning_id = None
                    if text_id is None:
                        text_id = _new_id()
                        text_part = {"type": "text", "text": ""}
                        parts.append(text_part)
                        yield {"type": TEXT_START, "id": text_id}
                    text_part["text"] += delta.content
                    yield {"type": TEXT_DELTA, "id": text_id, "delta": delta.content}

                if delta and delta.tool_calls:
                    for tc in delta.tool_calls:
                        idx = tc.index
                        if idx not in current_tool_calls:
                            current_tool_calls[idx] = {"id": tc.id or "", "name": "", "arguments": "", "part": None}
                        entry = current_tool_calls[idx]
                        if tc.id:
                            entry["id"] = tc.id
                        if tc.function and tc.function.name:
                            entry["name"] = tc.function.name
                        if entry["part"] is None and entry["id"] and entry["name"]:
                            entry["part"] = {
                                "type": "tool-invocation",
                                "toolInvocation": {
                                    "state": "partial-call",
                                    "toolCallId": entry["id"],
                                    "toolName": entry["name"],
                                    "args": {},
                                },
                            }
                            parts.append(entry["part"])
                            yield {"type": TOOL_INPUT_START, "toolCallId": entry["id"], "toolName": entry["name"]}
                        if tc.function and tc.function.arguments:
                            entry["arguments"] += tc.function.arguments
                            if entry["part"] is not None:
                                yield {
                                    "type": TOOL_INPUT_DELTA,
                                    "toolCallId": entry["id"],
                                    "inputTextDelta": tc.function.arguments,
                                }

                if choice.finish_reason:
                    raw_finish = choice.finish_reason
                    break
        finally:
            if hasattr(stream, "close"):
                try:
                    await stream.close()
                except Exception:
                    logger.debug("Failed to close completion stream", exc_info=True)

        if reasoning_id is not None:
            yield {"type": REASONING_END, "id": reasoning_id}
        if text_id is not None:
            yield {"type": TEXT_END, "id": text_id}

        for _idx, entry in sorted(current_tool_calls.items()):
            async for tool_chunk in self._run_tool_call(entry, parts):
                yield tool_chunk

        self.finish_reason = map_finish_reason(raw_finish)
        self.response_message = {"id": message_id, "role": "assistant", "parts": parts}
        logger.debug("Step finished: %s (%d parts)", self.finish_reason, len(parts))
        yield {"type": FINISH_STEP}
        yield {"type": FINISH}

    async def _run_tool_call(self, entry: dict[str, Any], parts: list[dict[str, Any]]) -> AsyncGenerator[Chunk, None]:
        if entry["part"] is None:
            entry["id"] = entry["id"] or _new_id()
            entry["part"] = {
                "type": "tool-invocation",
                "toolInvocation": {"state": "partial-call", "toolCallId": entry["id"], "toolName": entry["name"]},
            }
            parts.append(entry["part"])
            yield {"type": TOOL_INPUT_START, "toolCallId": entry["id"], "toolName": entry["name"]}
        invocation = entry["part"]["toolInvocation"]

        try:
            args = json.loads(entry["arguments"]) if entry["arguments"] else {}
        except json.JSONDecodeError as e:
            error_text = f"Invalid tool arguments: {e}"
            invocation.update(state="result", args={}, result={"error": error_text})
            yield {
                "type": TOOL_INPUT_ERROR,
                "toolCallId": entry["id"],
                "toolName": entry["name"],
                "input": entry["arguments"],
                "errorText": error_text,
            }
            return

        invocation.update(state="call", args=args)
        yield {"type": TOOL_INPUT_AVAILABLE, "toolCallId": entry["id"], "toolName": entry["name"], "input": args}

        try:
            if self._tools is None:
                raise ValueError(f"No tools available for '{entry['name']}'")
            output = await self._tools.call_tool(entry["name"], args)
        except Exception as e:
            logger.warning("Tool %s failed: %s", entry["name"], e)
            invocation.update(state="result", result={"error": str(e)})
            yield {"type": TOOL_OUTPUT_ERROR, "toolCallId": entry["id"], "errorText": str(e)}
            return

        invocation.update(state="result", result=output)
        yield {"type": TOOL_OUTPUT_AVAILABLE, "toolCallId": entry["id"], "output": output}


class AIService:
    def __init__(self, config: AIConfig) -> None:
        self.config = config
        # SECURITY-REVIEW: verify=False only when user explicitly sets verify_ssl: false in config
        http_client = httpx.AsyncClient(
            verify=self.config.verify_ssl,
            timeout=httpx.Timeout(float(self.config.request_timeout)),
        )
        self.client = AsyncOpenAI(
            base_url=self.config.base_url,
            api_key=self.config.api_key,
            http_client=http_client,
        )

    def stream_step(
        self,
        messages: list[dict[str, Any]],
        *,
        tools: ToolRegistry | None = None,
        model: str | None = None,
    ) -> _OpenAIStep:
        return _OpenAIStep(self, messages, tools, model or self.config.model)

    async def validate_connection(self) -> tuple[bool, str, list[str]]:
        try:
            models = await self.client.models.list()
            model_ids = [m.id for m in models.data]
            return True, "Connected successfully", model_ids
        except AuthenticationError:
            logger.error("Authentication failed during connection validation")
            return False, "Authentication failed. Check your API key.", []
        except APITimeoutError:
            logger.warning("Connection validation timed out")
            return False, "Connection timed out. The API may be slow or unreachable.", []
        except APIConnectionError:
            logger.warning("Cannot connect to API at %s", self.config.base_url)
            return (
                False,
                f"Cannot connect to API at {self.config.base_url}. Check the URL and your network connection.",
                [],
            )
        except Exception as e:
            logger.error("AI connection validation failed: %s", e)
            return False, "Connection to AI service failed", []
