"""
geminiweb - terminal client for the Gemini web chat service.

This package provides the conversation engine (transport, response parser,
session state machine, history store, gem registry) and a typer-based CLI
with an interactive chat shell.

Example usage:
    from geminiweb import ChatSession, HistoryStore, GeminiTransport

    store = HistoryStore(Path("~/.geminiweb").expanduser())
    session = ChatSession(backend, store=store)
    output = session.send("Hello")
    print(output.text)

CLI (after pip install):
    geminiweb chat --model gemini-2.5-pro
    geminiweb history list
"""

from geminiweb.version import VERSION

__version__ = VERSION
__all__ = [
    "ChatSession",
    "GeminiTransport",
    "HistoryStore",
    "VERSION",
    "__version__",
]


def __getattr__(name: str):
    """Lazy import to avoid loading httpx and friends at module import time."""
    if name == "ChatSession":
        from geminiweb.application.chat.session import ChatSession
        globals()["ChatSession"] = ChatSession
        return ChatSession
    if name == "GeminiTransport":
        from geminiweb.modules.transport.client import GeminiTransport
        globals()["GeminiTransport"] = GeminiTransport
        return GeminiTransport
    if name == "HistoryStore":
        from geminiweb.modules.chat_history.store import HistoryStore
        globals()["HistoryStore"] = HistoryStore
        return HistoryStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
