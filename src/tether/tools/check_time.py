"""Clock tool: reports the current time after a short pause."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

# The pause keeps a tool step long enough to be interrupted from another tab.
_delay_seconds: float = 2.0

DEFINITION: dict[str, Any] = {
    "name": "checkTime",
    "description": "Check the current time",
    "parameters": {"type": "object", "properties": {}},
}


def set_delay(seconds: float) -> None:
    global _delay_seconds
    _delay_seconds = seconds


async def handle(**_: Any) -> dict[str, Any]:
    if _delay_seconds > 0:
        await asyncio.sleep(_delay_seconds)
    return {"time": datetime.now(timezone.utc).isoformat()}
