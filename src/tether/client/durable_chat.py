"""HTTP client for a durable chat: send, queue, interrupt, reload and resume."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

from ..chunks import RUN_ID_HEADER, STREAM_DONE, chunk_type
from .assembler import Message, MessageAssembler, iter_sse_chunks, merge_messages, trailing_assistant_count

logger = logging.getLogger(__name__)

READY = "ready"
SUBMITTED = "submitted"
STREAMING = "streaming"
ERROR = "error"

# Statuses in which a new submission is sent right away instead of queued
_IDLE = (READY, ERROR)


class ChatClientError(RuntimeError):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class PromptMessage:
    text: str = ""
    files: list[dict[str, Any]] = field(default_factory=list)

    @property
    def has_content(self) -> bool:
        return bool(self.text.strip()) or bool(self.files)


class DurableChat:
    """One chat as seen by a client.

    ``messages`` is the merge of the persisted history loaded from the server
    and the messages created locally since then. Submissions made while a
    response is in flight are queued, an interrupt is sent, and the queue is
    flushed as a single combined message once the engine is ready again.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8080",
        *,
        model: str | None = None,
        client: httpx.AsyncClient | None = None,
        on_change: Callable[[DurableChat], None] | None = None,
    ) -> None:
        self.model = model
        self.on_change = on_change
        self.chat_id: str | None = None
        self.run_id: str | None = None
        self.stream_id: str | None = None
        self.status = READY
        self.error: str | None = None
        self.persisted: list[tuple[int, Message]] = []
        self.local: list[Message] = []
        self.queued: list[PromptMessage] = []
        self.completed_turns = 0
        self._local_start = 0
        self._message_counter = 0
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=httpx.Timeout(30.0, read=None))

    @property
    def messages(self) -> list[Message]:
        return merge_messages(self.persisted, self.local, start=self._local_start)

    @property
    def busy(self) -> bool:
        return self.status not in _IDLE

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def _set_status(self, status: str) -> None:
        if status != self.status:
            self.status = status
            self._changed()

    def _next_message_id(self) -> str:
        self._message_counter += 1
        return f"assistant-{self._message_counter}"

    def _upsert_local(self, message: Message) -> None:
        for i, existing in enumerate(self.local):
            if existing["id"] == message["id"]:
                self.local[i] = message
                break
        else:
            self.local.append(message)
        self._changed()

    async def load(self, chat_id: str) -> dict[str, Any]:
        """Fetch the chat's persisted history and stream pointer."""
        response = await self._client.get(f"/api/chats/{chat_id}")
        if response.status_code >= 400:
            raise ChatClientError(f"Failed to load chat {chat_id}: {response.text}", response.status_code)
        detail = response.json()
        self.chat_id = detail["id"]
        self.run_id = detail.get("runId")
        self.stream_id = detail.get("streamId")
        self.model = detail.get("model") or self.model
        self.persisted = [(m["index"], m) for m in detail.get("messages", [])]
        # Only user messages the server has not stored yet survive a reload
        confirmed = {m.get("id") for _, m in self.persisted}
        self.local = [m for m in self.local if m.get("role") == "user" and m.get("id") not in confirmed]
        self._local_start = len(self.persisted)
        self._changed()
        return detail

    async def send_message(self, text: str = "", files: list[dict[str, Any]] | None = None) -> None:
        prompt = PromptMessage(text=text, files=list(files or []))

        if self.busy:
            if prompt.has_content:
                self.queued.append(prompt)
                self._changed()
            if self.run_id and self.chat_id:
                await self.interrupt()
            return

        if not prompt.has_content:
            return

        new_chat = self.chat_id is None
        if new_chat:
            self.chat_id = uuid.uuid4().hex
            self._local_start = len(self.persisted)

        parts: list[dict[str, Any]] = [{"type": "text", "text": prompt.text}]
        parts.extend(prompt.files)
        user_message: Message = {"id": str(uuid.uuid4()), "role": "user", "parts": parts}
        self.local.append(user_message)
        self.error = None
        self._set_status(SUBMITTED)

        body: dict[str, Any] = {"message": user_message}
        if new_chat:
            body["newChatId"] = self.chat_id
            if self.model:
                body["model"] = self.model
        else:
            body["followUp"] = {"chatId": self.chat_id}

        await self._request_stream("POST", "/api/chat", json=body)
        await self._drain_queue()

    async def resume_stream(self) -> bool:
        """Reattach to the chat's in-flight stream, skipping what is already persisted.

        Returns False when the server has no active stream for the chat.
        """
        if not self.chat_id or not self.stream_id or self.busy:
            return False
        start_index = trailing_assistant_count(m for _, m in sorted(self.persisted, key=lambda item: item[0]))
        self._set_status(SUBMITTED)
        resumed = await self._request_stream(
            "GET",
            f"/api/chat/{self.chat_id}",
            params={"startIndex": start_index, "resumeBy": "messages"},
            missing_ok=True,
        )
        await self._drain_queue()
        return resumed

    async def interrupt(self) -> None:
        if not self.chat_id:
            return
        try:
            response = await self._client.post(f"/api/chat/{self.chat_id}/interrupt", json={"chatId": self.chat_id})
            if response.status_code >= 400:
                logger.error("Interrupt for chat %s failed: HTTP %d", self.chat_id, response.status_code)
        except httpx.HTTPError as e:
            logger.error("Interrupt for chat %s failed: %s", self.chat_id, e)

    async def _request_stream(self, method: str, url: str, missing_ok: bool = False, **kwargs: Any) -> bool:
        try:
            async with self._client.stream(method, url, **kwargs) as response:
                if missing_ok and response.status_code == 404:
                    self.stream_id = None
                    self._set_status(READY)
                    return False
                if response.status_code >= 400:
                    await response.aread()
                    raise ChatClientError(
                        f"HTTP {response.status_code}: {response.text or 'request failed'}",
                        response.status_code,
                    )
                self.run_id = response.headers.get(RUN_ID_HEADER) or self.run_id
                await self._consume(response)
        except (ChatClientError, httpx.HTTPError) as e:
            logger.error("Chat stream for %s failed: %s", self.chat_id, e)
            self.error = str(e)
            self._set_status(ERROR)
            raise
        self._set_status(READY)
        return True

    async def _consume(self, response: httpx.Response) -> None:
        assembler = MessageAssembler(self._upsert_local, next_id=self._next_message_id)
        self._set_status(STREAMING)
        try:
            async for chunk in iter_sse_chunks(response.aiter_lines()):
                if chunk_type(chunk) == STREAM_DONE:
                    break
                try:
                    assembler.feed(chunk)
                except (KeyError, TypeError, AttributeError):
                    logger.debug("Skipping malformed chunk: %r", chunk)
        finally:
            assembler.flush()
            self.completed_turns += assembler.completed_turns

    async def _drain_queue(self) -> None:
        if self.status != READY or not self.queued:
            return
        queued, self.queued = self.queued, []
        text = "\n\n".join(p.text for p in queued)
        files = [f for p in queued for f in p.files]
        logger.debug("Sending %d queued message(s) as one", len(queued))
        await self.send_message(text, files)
