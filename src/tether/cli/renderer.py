"""Rich-based terminal output for the CLI chat."""

from __future__ import annotations

import json
from typing import Any

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.padding import Padding

console = Console(stderr=True)
# Separate console for stdout markdown rendering (not stderr)
_stdout_console = Console()

GOLD = "#C5A059"
MUTED = "grey62"


def render_user(text: str) -> None:
    console.print(f"\n[bold {GOLD}]you[/bold {GOLD}] {escape(text)}")


def render_markdown(text: str) -> None:
    if not text.strip():
        return
    _stdout_console.print(Padding(Markdown(text), (0, 2, 0, 2)))


def render_tool(invocation: dict[str, Any]) -> None:
    name = invocation.get("toolName", "?")
    state = invocation.get("state")
    if state == "result":
        output = json.dumps(invocation.get("result"), default=str)
        if len(output) > 200:
            output = output[:200] + "..."
        console.print(f"  [green]< {escape(name)}: {escape(output)}[/green]")
    elif state == "call":
        args = json.dumps(invocation.get("args", {}), default=str)
        console.print(f"  [{MUTED}]> {escape(name)}({escape(args)})[/{MUTED}]")


def render_message(message: dict[str, Any]) -> None:
    """Print a complete message from history."""
    if message.get("role") == "user":
        text = "\n".join(p.get("text", "") for p in message.get("parts", []) if p.get("type") == "text")
        render_user(text)
        return
    for part in message.get("parts", []):
        ptype = part.get("type")
        if ptype == "text":
            render_markdown(part.get("text", ""))
        elif ptype == "reasoning":
            console.print(f"  [{MUTED} italic]{escape(part.get('text', ''))}[/{MUTED} italic]")
        elif ptype == "tool-invocation":
            render_tool(part.get("toolInvocation", {}))
        elif ptype == "source-url":
            console.print(f"  [{MUTED}]source: {escape(part.get('url', ''))}[/{MUTED}]")


class LiveRenderer:
    """Prints assistant messages as they settle.

    Text is rendered once per message, when the message is replaced by a
    newer one or the stream ends, so partial markdown is never shown. Tool
    progress is shown as it happens.
    """

    def __init__(self) -> None:
        self._seen_tools: dict[str, str] = {}
        self._pending: dict[str, Any] | None = None
        self._rendered: set[str] = set()

    def update(self, message: dict[str, Any]) -> None:
        if message.get("role") != "assistant":
            return
        if self._pending is not None and self._pending["id"] != message["id"]:
            self.flush()
        self._pending = message
        for part in message.get("parts", []):
            if part.get("type") != "tool-invocation":
                continue
            invocation = part.get("toolInvocation", {})
            key = invocation.get("toolCallId", "")
            state = invocation.get("state", "")
            if self._seen_tools.get(key) != state:
                self._seen_tools[key] = state
                render_tool(invocation)

    def flush(self) -> None:
        message, self._pending = self._pending, None
        if message is None or message["id"] in self._rendered:
            return
        self._rendered.add(message["id"])
        for part in message.get("parts", []):
            if part.get("type") == "text":
                render_markdown(part.get("text", ""))


def render_status(status: str) -> None:
    console.print(f"[{MUTED}]{escape(status)}[/{MUTED}]")


def render_error(message: str) -> None:
    console.print(f"\n[red bold]Error:[/red bold] {escape(message)}")
