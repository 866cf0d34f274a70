"""Markdown and JSON renderings of a stored conversation."""

import json
from typing import List

from geminiweb.domain.conversations.models import Conversation, MessageRole

_DATETIME_FMT = "%Y-%m-%d %H:%M:%S"
_TIME_FMT = "%H:%M:%S"


def to_markdown(conversation: Conversation, include_thoughts: bool = True) -> str:
    """Render a conversation as Markdown.

    Layout: H1 title, a metadata block, then one H2 per message with the
    role and time, an optional collapsible thinking block, and the body.
    Messages are separated by horizontal rules.
    """
    parts: List[str] = [
        f"# {conversation.title}\n\n",
        f"**Model:** {conversation.model or 'unspecified'}\n",
        f"**Created:** {conversation.created_at.strftime(_DATETIME_FMT)}\n",
        f"**Updated:** {conversation.updated_at.strftime(_DATETIME_FMT)}\n",
        f"**Messages:** {len(conversation.messages)}\n",
    ]
    if conversation.gem_id:
        parts.append(f"**Gem:** {conversation.gem_id}\n")
    parts.append("\n---\n\n")

    last = len(conversation.messages) - 1
    for index, message in enumerate(conversation.messages):
        role = "User" if message.role is MessageRole.USER else "Assistant"
        parts.append(f"## {role} ({message.created_at.strftime(_TIME_FMT)})\n\n")

        if include_thoughts and message.thoughts:
            parts.append("<details>\n<summary>💭 Thinking</summary>\n\n")
            parts.append(message.thoughts)
            parts.append("\n\n</details>\n\n")

        if message.attachments:
            parts.append("".join(f"📎 {name}\n" for name in message.attachments) + "\n")

        if message.interrupted:
            parts.append("_(no response)_\n")
        else:
            parts.append(message.content + "\n")

        for image in message.images:
            parts.append(f"\n![{image.get('alt') or image.get('title', '')}]({image.get('url', '')})\n")

        if index < last:
            parts.append("\n---\n\n")

    return "".join(parts)


def to_json(conversation: Conversation) -> bytes:
    """The stored record, pretty-printed with two-space indentation."""
    return (json.dumps(conversation.to_dict(), indent=2, ensure_ascii=False) + "\n").encode("utf-8")
