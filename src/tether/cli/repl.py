"""REPL loop and one-shot mode for the Tether CLI client."""

from __future__ import annotations

import asyncio
import logging

from ..client.durable_chat import READY, ChatClientError, DurableChat
from . import renderer

logger = logging.getLogger(__name__)

_EXIT_COMMANDS = ("/quit", "/exit")
_STOP_COMMAND = "/stop"


def _attach_renderer(chat: DurableChat) -> renderer.LiveRenderer:
    live = renderer.LiveRenderer()

    def _on_change(c: DurableChat) -> None:
        if c.local and c.local[-1].get("role") == "assistant":
            live.update(c.local[-1])
        if c.status == READY:
            live.flush()

    chat.on_change = _on_change
    return live


async def _send(chat: DurableChat, text: str) -> None:
    try:
        await chat.send_message(text)
    except ChatClientError as e:
        renderer.render_error(str(e))
    except Exception as e:
        logger.debug("Send failed", exc_info=True)
        renderer.render_error(f"Request failed: {e}")


async def _resume(chat: DurableChat, chat_id: str) -> None:
    await chat.load(chat_id)
    renderer.render_status(f"Resumed chat {chat_id}")
    for message in chat.messages:
        renderer.render_message(message)
    if chat.stream_id:
        renderer.render_status("Reattaching to the running response...")
        await chat.resume_stream()


async def run_cli(
    base_url: str,
    prompt: str | None = None,
    resume_id: str | None = None,
    model: str | None = None,
) -> None:
    chat = DurableChat(base_url, model=model)
    live = _attach_renderer(chat)
    try:
        if resume_id:
            try:
                await _resume(chat, resume_id)
            except ChatClientError as e:
                renderer.render_error(str(e))
                return
        if prompt is not None:
            renderer.render_user(prompt)
            await _send(chat, prompt)
            return
        await _run_repl(chat)
    finally:
        live.flush()
        await chat.aclose()


async def _run_repl(chat: DurableChat) -> None:
    from prompt_toolkit import PromptSession
    from prompt_toolkit.patch_stdout import patch_stdout

    session: PromptSession[str] = PromptSession()
    sends: set[asyncio.Task[None]] = set()
    renderer.render_status("Type a message. /stop interrupts, /quit exits.")

    with patch_stdout():
        while True:
            try:
                text = (await session.prompt_async("> ")).strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not text:
                continue
            if text in _EXIT_COMMANDS:
                break
            if text == _STOP_COMMAND:
                await chat.interrupt()
                continue
            if chat.busy:
                renderer.render_status("Message queued")
            # Sends run in the background so the prompt stays usable while streaming
            task = asyncio.create_task(_send(chat, text))
            sends.add(task)
            task.add_done_callback(sends.discard)

    if sends:
        await asyncio.gather(*sends, return_exceptions=True)
