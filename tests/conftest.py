"""Shared fixtures: in-memory store, channel hub and a scripted completion service."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable

import pytest

from tether.db import ThreadSafeConnection, connect_memory
from tether.services.channels import ChannelHub


@dataclass
class ScriptedStep:
    text: str = "Hello!"
    finish_reason: str = "stop"
    delay: float = 0.0
    on_step: Callable[[], Any] | None = None
    error: Exception | None = None


class FakeStep:
    def __init__(self, service: FakeCompletionService, number: int, script: ScriptedStep) -> None:
        self._service = service
        self._number = number
        self._script = script
        self.finish_reason: str | None = None
        self.response_message: dict[str, Any] | None = None

    async def __aiter__(self):
        script = self._script
        service = self._service
        service.active += 1
        service.max_active = max(service.max_active, service.active)
        try:
            message_id = f"msg-{self._number}"
            yield {"type": "start", "messageId": message_id}
            yield {"type": "start-step"}
            if script.error is not None:
                raise script.error
            text_id = f"text-{self._number}"
            yield {"type": "text-start", "id": text_id}
            yield {"type": "text-delta", "id": text_id, "delta": script.text}
            yield {"type": "text-end", "id": text_id}
            if script.delay:
                await asyncio.sleep(script.delay)
            if script.on_step is not None:
                script.on_step()
            self.finish_reason = script.finish_reason
            self.response_message = {
                "id": message_id,
                "role": "assistant",
                "parts": [{"type": "text", "text": script.text}],
            }
            yield {"type": "finish-step"}
            yield {"type": "finish"}
        finally:
            service.active -= 1


class FakeCompletionService:
    """Plays back one ScriptedStep per generation step, then repeats ``default``."""

    def __init__(self, steps: list[ScriptedStep], default: ScriptedStep | None = None) -> None:
        self._steps = list(steps)
        self._default = default or ScriptedStep()
        self.calls: list[list[dict[str, Any]]] = []
        self.models: list[str | None] = []
        self.active = 0
        self.max_active = 0

    def stream_step(self, messages, *, tools=None, model=None) -> FakeStep:
        self.calls.append([dict(m) for m in messages])
        self.models.append(model)
        script = self._steps.pop(0) if self._steps else self._default
        return FakeStep(self, len(self.calls), script)


@pytest.fixture()
def db() -> ThreadSafeConnection:
    return connect_memory()


@pytest.fixture()
def hub() -> ChannelHub:
    return ChannelHub(high_water_mark=64, retained_streams=16)


@pytest.fixture()
def make_completion() -> Callable[..., FakeCompletionService]:
    """Build a FakeCompletionService from ScriptedStep keyword dicts."""

    def _make(*steps: dict[str, Any], default: dict[str, Any] | None = None) -> FakeCompletionService:
        return FakeCompletionService(
            [ScriptedStep(**s) for s in steps],
            default=ScriptedStep(**default) if default else None,
        )

    return _make
