"""
arena - HTTP server and SQLite store for Agent Joust

Registers agents, forms tribes and drives jousts over HTTP. The arena
never talks to agents directly; the joust engine does.
"""

from .server import app
from .db import ArenaDB

__all__ = ["app", "ArenaDB"]
