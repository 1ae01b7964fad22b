"""Tests for the tool registry and built-in tools."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import pytest

from tether.tools import ToolRegistry, check_time, default_registry


class TestToolRegistry:
    def test_default_registry_has_check_time(self) -> None:
        registry = default_registry()
        assert registry.list_tools() == ["checkTime"]
        tools = registry.get_openai_tools()
        assert tools[0]["type"] == "function"
        assert tools[0]["function"]["name"] == "checkTime"

    @pytest.mark.asyncio
    async def test_call_registered_tool(self) -> None:
        registry = ToolRegistry()

        async def echo(**kwargs: Any) -> dict[str, Any]:
            return kwargs

        registry.register("echo", echo, {"name": "echo", "description": "Echo"})
        assert await registry.call_tool("echo", {"a": 1}) == {"a": 1}
        assert registry.list_tools() == ["echo"]

    @pytest.mark.asyncio
    async def test_unknown_tool(self) -> None:
        with pytest.raises(ValueError, match="Unknown tool"):
            await ToolRegistry().call_tool("nope", {})


class TestCheckTime:
    @pytest.mark.asyncio
    async def test_returns_iso_time(self) -> None:
        check_time.set_delay(0)
        try:
            result = await check_time.handle()
        finally:
            check_time.set_delay(2.0)
        assert datetime.fromisoformat(result["time"]).tzinfo is not None
