"""HTTP + SSE command gateway."""
from __future__ import annotations

__all__ = ["BotholderServer"]

from botholder.gateway.server import BotholderServer
