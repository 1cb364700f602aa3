"""HTTP + SSE front door for the toolbar agent."""
from __future__ import annotations

__all__ = [
    "AgentServer",
    "DevServerProxy",
    "should_proxy",
]

from toolbridge.server.proxy import DevServerProxy, should_proxy
from toolbridge.server.server import AgentServer
