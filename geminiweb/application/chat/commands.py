"""Parsing of in-chat slash commands."""

from dataclasses import dataclass
from typing import Optional, Tuple

from geminiweb.core.filenames import sanitize_filename
from geminiweb.domain.errors import ValidationError

KNOWN_COMMANDS = {
    "history": "List saved conversations; /history <ref> resumes one",
    "gems": "List available gems",
    "gem": "Bind a gem by id or name (/gem off to unbind)",
    "model": "Switch model for the next turns",
    "file": "Attach a file to the next message",
    "image": "Attach an image to the next message",
    "clear": "Drop pending attachments",
    "export": "Export this conversation: /export [path] [-f md|json]",
    "choose": "Pick another candidate of the last response",
    "download": "Save the images of the last response: /download [dir]",
    "help": "Show commands",
    "exit": "Leave the chat",
}

FORMAT_MARKDOWN = "markdown"
FORMAT_JSON = "json"


@dataclass
class ParsedCommand:
    """User input split into command name and argument string."""
    command: str = ""
    args: str = ""
    is_command: bool = False


def parse_command(text: str) -> ParsedCommand:
    """Detect ``/name args``. Case-insensitive name, whitespace-tolerant head."""
    text = text.strip()
    if not text.startswith("/"):
        return ParsedCommand()
    parts = text[1:].split(maxsplit=1)
    if not parts:
        return ParsedCommand(is_command=True)
    return ParsedCommand(
        command=parts[0].lower(),
        args=parts[1].strip() if len(parts) > 1 else "",
        is_command=True,
    )


def parse_export_args(args: str, default_name: Optional[str] = None) -> Tuple[str, str]:
    """Split ``/export`` arguments into ``(path, format)``.

    ``-f json|md|markdown`` selects the format; a ``.json`` path implies
    JSON. A path without a ``.md``/``.json`` suffix gets the format's one.
    With no path, ``default_name`` (usually the conversation title) names
    the file. An explicit ``-f`` that contradicts the suffix is rejected.
    """
    parts = args.split()
    if not parts and default_name is None:
        raise ValidationError("usage: /export <path> [-f json|md]")

    fmt: Optional[str] = None
    path_parts = []
    index = 0
    while index < len(parts):
        if parts[index] == "-f" and index + 1 < len(parts):
            fmt = parse_format(parts[index + 1])
            index += 2
            continue
        path_parts.append(parts[index])
        index += 1

    if path_parts:
        path = " ".join(path_parts)
    elif default_name is not None:
        path = sanitize_filename(default_name)
    else:
        raise ValidationError("missing filename")

    return export_target(path, fmt)


def parse_format(value: str) -> str:
    value = value.lower()
    if value == "json":
        return FORMAT_JSON
    if value in ("md", "markdown"):
        return FORMAT_MARKDOWN
    raise ValidationError(f"unknown format: {value} (use json or md)")


def export_target(path: str, fmt: Optional[str] = None) -> Tuple[str, str]:
    """Reconcile a destination path with an optional explicit format.

    A ``.json``/``.md`` suffix decides the format and must agree with ``fmt``;
    without one the format's suffix is appended (Markdown by default).
    """
    lowered = path.lower()
    if lowered.endswith(".json"):
        suffix_fmt = FORMAT_JSON
    elif lowered.endswith(".md"):
        suffix_fmt = FORMAT_MARKDOWN
    else:
        fmt = fmt or FORMAT_MARKDOWN
        return path + (".json" if fmt == FORMAT_JSON else ".md"), fmt

    if fmt is not None and fmt != suffix_fmt:
        raise ValidationError(f"-f {fmt} conflicts with the file extension of {path}")
    return path, suffix_fmt
