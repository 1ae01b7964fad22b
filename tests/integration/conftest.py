from __future__ import annotations

import importlib

import pytest


@pytest.fixture(autouse=True)
def _reset_sse_exit_event():
    """sse-starlette caches an exit event bound to the first event loop; each TestClient gets a new loop."""
    sse = importlib.import_module("sse_starlette.sse")
    status = getattr(sse, "AppStatus", None)
    if status is not None and hasattr(status, "should_exit_event"):
        status.should_exit_event = None
    yield
