"""Per-chat agent loop: generation steps separated by interrupt checkpoints.

Each chat gets one actor (a mailbox plus a single worker task), so events for
a chat are handled strictly one after another. Every event runs one turn:

    WAITING_FOR_EVENT -> CHECKING_INTERRUPT
        -> INTERRUPTED_BEFORE_STREAM
        -> GENERATING <-> CHECKING_INTERRUPT_MID -> STOPPED | INTERRUPTED_MID_STREAM
    -> CLOSING -> WAITING_FOR_EVENT

Interrupts are polled, not preemptive: a step that has started runs to
completion, so cancellation latency is bounded by one step.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

from ..chunks import CHECKPOINT, CONTINUATION_REASONS, FINISH, chunk_type, text_chunks
from ..config import AgentSettings
from ..db import ThreadSafeConnection
from ..tools import ToolRegistry
from . import storage
from .ai_service import CompletionService, CompletionStep
from .channels import ChannelHub, ChunkChannel

logger = logging.getLogger(__name__)


class LoopState(str, enum.Enum):
    WAITING_FOR_EVENT = "waiting-for-event"
    CHECKING_INTERRUPT = "checking-interrupt"
    INTERRUPTED_BEFORE_STREAM = "interrupted-before-stream"
    GENERATING = "generating"
    CHECKING_INTERRUPT_MID = "checking-interrupt-mid"
    STOPPED = "stopped"
    INTERRUPTED_MID_STREAM = "interrupted-mid-stream"
    CLOSING = "closing"


class RunNotFoundError(LookupError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


@dataclass
class AgentEvent:
    now: int
    message: dict[str, Any] | None = None

    @property
    def stream_id(self) -> str:
        return str(self.now)


@dataclass
class TurnResult:
    stream_id: str
    outcome: LoopState
    finish_reason: str | None = None
    steps: int = 0


class ChatAgent:
    """Runs turns for one chat. Never called concurrently for the same chat."""

    def __init__(
        self,
        db: ThreadSafeConnection,
        hub: ChannelHub,
        completion: CompletionService,
        chat_id: str,
        model: str | None = None,
        tools: ToolRegistry | None = None,
        settings: AgentSettings | None = None,
    ) -> None:
        self.db = db
        self.hub = hub
        self.completion = completion
        self.chat_id = chat_id
        self.model = model
        self.tools = tools
        self.settings = settings or AgentSettings()
        self.state = LoopState.WAITING_FOR_EVENT

    def _interrupted(self, event: AgentEvent) -> bool:
        return storage.has_interrupt_since(self.db, self.chat_id, event.now)

    async def handle_event(self, event: AgentEvent) -> TurnResult:
        storage.require_chat(self.db, self.chat_id)
        stream_id = event.stream_id
        finish_reason: str | None = None
        steps = 0

        self.state = LoopState.CHECKING_INTERRUPT
        if self._interrupted(event):
            self.state = LoopState.INTERRUPTED_BEFORE_STREAM
            logger.info("Chat %s interrupted before stream %s", self.chat_id, stream_id)
        else:
            writer = self.hub.open_writer(self.chat_id, stream_id)
            while True:
                self.state = LoopState.GENERATING
                finish_reason = await self._generation_step(writer)
                steps += 1
                self.state = LoopState.CHECKING_INTERRUPT_MID
                if self._interrupted(event):
                    self.state = LoopState.INTERRUPTED_MID_STREAM
                    break
                if finish_reason not in CONTINUATION_REASONS:
                    self.state = LoopState.STOPPED
                    break
                if steps >= self.settings.max_steps:
                    logger.warning("Chat %s hit the step limit (%d)", self.chat_id, self.settings.max_steps)
                    self.state = LoopState.STOPPED
                    break
                await writer.write({"type": CHECKPOINT})

            if self.state == LoopState.INTERRUPTED_MID_STREAM:
                logger.info("Chat %s interrupted mid stream %s after %d step(s)", self.chat_id, stream_id, steps)
                await self._write_interruption(writer, event)

        result = TurnResult(stream_id=stream_id, outcome=self.state, finish_reason=finish_reason, steps=steps)
        self.close_stream(stream_id)
        return result

    async def _generation_step(self, writer: ChunkChannel) -> str:
        messages = storage.list_messages(self.db, self.chat_id)
        step = self.completion.stream_step(messages, tools=self.tools, model=self.model)
        persisted = False
        async for chunk in step:
            # Persist before the finish chunk goes out so a client that counts
            # finished messages never gets ahead of the stored log.
            if chunk_type(chunk) == FINISH and not persisted:
                self._persist_step(step)
                persisted = True
            await writer.write(chunk)
        if not persisted:
            self._persist_step(step)
        return step.finish_reason or "unknown"

    def _persist_step(self, step: CompletionStep) -> None:
        message = step.response_message
        if message and message.get("parts"):
            storage.push_messages(self.db, self.chat_id, [message])

    async def _write_interruption(self, writer: ChunkChannel, event: AgentEvent) -> None:
        part_id = f"interruption-{event.now}"
        text = self.settings.interrupt_text
        for chunk in text_chunks(part_id, text):
            await writer.write(chunk)
        storage.append_part_to_last_assistant(self.db, self.chat_id, {"type": "text", "text": text}, part_id)

    def close_stream(self, stream_id: str) -> None:
        self.state = LoopState.CLOSING
        self.hub.close(self.chat_id, stream_id)
        storage.clear_stream_id_if(self.db, self.chat_id, stream_id)
        self.state = LoopState.WAITING_FOR_EVENT


class ChatActor:
    """Mailbox and worker task for one chat's agent."""

    def __init__(self, run_id: str, agent: ChatAgent) -> None:
        self.run_id = run_id
        self.agent = agent
        self.last_result: TurnResult | None = None
        self.failures: list[str] = []
        self._queue: asyncio.Queue[AgentEvent] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def chat_id(self) -> str:
        return self.agent.chat_id

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"agent:{self.chat_id}")

    def deliver(self, event: AgentEvent) -> None:
        """Accept an event: record its message and stream pointer, then enqueue it."""
        if event.message is not None:
            storage.push_messages(self.agent.db, self.chat_id, [event.message])
        storage.set_stream_id(self.agent.db, self.chat_id, event.stream_id)
        self._queue.put_nowait(event)

    async def join(self) -> None:
        """Wait until every delivered event has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.last_result = await self.agent.handle_event(event)
            except Exception as e:
                logger.exception("Agent turn failed for chat %s (stream %s)", self.chat_id, event.stream_id)
                self.failures.append(str(e))
                self.agent.close_stream(event.stream_id)
            finally:
                self._queue.task_done()


class AgentRuntime:
    """In-process stand-in for the durable workflow runtime.

    ``start`` begins a run for a new chat, ``resume`` delivers a later event to
    the chat's run (respawning its actor if this process never had one).
    """

    def __init__(
        self,
        db: ThreadSafeConnection,
        hub: ChannelHub,
        completion: CompletionService,
        tools: ToolRegistry | None = None,
        settings: AgentSettings | None = None,
    ) -> None:
        self.db = db
        self.hub = hub
        self.completion = completion
        self.tools = tools
        self.settings = settings or AgentSettings()
        self._actors: dict[str, ChatActor] = {}
        self._runs: dict[str, ChatActor] = {}
        self._last_timestamp = 0
        self._stopped = False

    def next_timestamp(self) -> int:
        """Milliseconds since the epoch, strictly increasing per runtime."""
        now = int(time.time() * 1000)
        if now <= self._last_timestamp:
            now = self._last_timestamp + 1
        self._last_timestamp = now
        return now

    def _spawn(self, chat_id: str, run_id: str, model: str | None) -> ChatActor:
        agent = ChatAgent(
            self.db,
            self.hub,
            self.completion,
            chat_id,
            model=model,
            tools=self.tools,
            settings=self.settings,
        )
        actor = ChatActor(run_id, agent)
        self._actors[chat_id] = actor
        self._runs[run_id] = actor
        actor.start()
        return actor

    def start(self, chat_id: str, model: str | None, event: AgentEvent) -> str:
        if self._stopped:
            raise RuntimeError("Agent runtime is shut down")
        if storage.get_chat(self.db, chat_id) is not None:
            raise ValueError(f"Chat already exists: {chat_id}")
        run_id = f"run_{uuid.uuid4().hex}"
        storage.create_chat(self.db, chat_id, run_id, model)
        actor = self._spawn(chat_id, run_id, model)
        actor.deliver(event)
        logger.info("Started run %s for chat %s", run_id, chat_id)
        return run_id

    def resume(self, chat_id: str, event: AgentEvent) -> str | None:
        """Deliver ``event`` to the chat's run. Returns None if there is no run to resume."""
        if self._stopped:
            return None
        actor = self._actors.get(chat_id)
        if actor is None:
            chat = storage.get_chat(self.db, chat_id)
            if chat is None:
                return None
            actor = self._spawn(chat_id, chat["run_id"], chat.get("model"))
            logger.info("Respawned run %s for chat %s", actor.run_id, chat_id)
        actor.deliver(event)
        return actor.run_id

    def get_run(self, run_id: str) -> ChatActor:
        actor = self._runs.get(run_id)
        if actor is None:
            raise RunNotFoundError(run_id)
        return actor

    def get_actor(self, chat_id: str) -> ChatActor | None:
        return self._actors.get(chat_id)

    async def shutdown(self) -> None:
        self._stopped = True
        await asyncio.gather(*(actor.stop() for actor in self._actors.values()), return_exceptions=True)
        self.hub.close_all()
