"""Chat session orchestration."""

from .commands import ParsedCommand, parse_command, parse_export_args
from .dispatcher import ChatDispatcher, ChatEvent
from .session import ChatSession, SessionState

__all__ = [
    "ChatDispatcher",
    "ChatEvent",
    "ChatSession",
    "ParsedCommand",
    "SessionState",
    "parse_command",
    "parse_export_args",
]
