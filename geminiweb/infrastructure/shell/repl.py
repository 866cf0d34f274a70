"""Interactive chat shell rendered with rich."""

import logging
from pathlib import Path
from typing import Any, Callable, List, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from geminiweb.application.chat.commands import (
    FORMAT_JSON,
    KNOWN_COMMANDS,
    parse_command,
    parse_export_args,
)
from geminiweb.application.chat.dispatcher import ChatDispatcher, ChatEvent
from geminiweb.application.chat.error_handler import banner_for
from geminiweb.application.chat.session import ChatSession
from geminiweb.domain.attachments import UploadedFile
from geminiweb.domain.conversations.models import Conversation, MessageRole
from geminiweb.domain.errors import DomainError, ValidationError
from geminiweb.domain.model_catalog import available_models
from geminiweb.modules.attachments.manager import AttachmentManager
from geminiweb.modules.chat_history import ConversationResolver, HistoryStore
from geminiweb.modules.downloads import ImageDownloader
from geminiweb.modules.gems.registry import GemRegistry

logger = logging.getLogger(__name__)


class ChatShell:
    """
    Read-eval-print loop over a ``ChatSession``.

    Network and disk work runs on the dispatcher's workers; this thread only
    reads input, waits on completion events and renders.
    """

    def __init__(
        self,
        session: ChatSession,
        attachments: AttachmentManager,
        gems: GemRegistry,
        store: HistoryStore,
        dispatcher: ChatDispatcher,
        console: Optional[Console] = None,
        markdown_style: str = "dark",
        downloader: Optional[ImageDownloader] = None,
    ):
        self.session = session
        self.attachments = attachments
        self.gems = gems
        self.store = store
        self.dispatcher = dispatcher
        self.downloader = downloader
        self.console = console or Console()
        self.code_theme = "monokai" if markdown_style == "dark" else "friendly"
        self.pending: List[UploadedFile] = []

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _error(self, error: BaseException) -> None:
        self.console.print(f"[bold red]✗ {banner_for(error)}[/bold red]")

    def _render_assistant(self, text: str, thoughts: Optional[str] = None) -> None:
        if thoughts:
            self.console.print(f"[dim italic]💭 {thoughts}[/dim italic]")
        self.console.print(Markdown(text or "", code_theme=self.code_theme))

    def render_transcript(self) -> None:
        """Replay a resumed conversation; unanswered user turns are dimmed."""
        conversation_id = self.session.conversation_id
        if not conversation_id:
            return
        conversation: Conversation = self._call(
            "store", "Loading conversation…", self.store.get, conversation_id
        )
        self.console.rule(f"[bold]{conversation.title}[/bold]")
        messages = conversation.messages
        for index, message in enumerate(messages):
            if message.role is MessageRole.USER:
                answered = index + 1 < len(messages) and not messages[index + 1].interrupted
                style = "bold cyan" if answered else "dim"
                self.console.print(f"[{style}]You › {message.content}[/{style}]")
            elif not message.interrupted:
                self._render_assistant(message.content, message.thoughts)
        self.console.rule()

    # ------------------------------------------------------------------
    # Worker round-trips
    # ------------------------------------------------------------------

    def _await(self, request_id: int, label: str) -> ChatEvent:
        with self.console.status(label, spinner="dots"):
            while True:
                try:
                    return self.dispatcher.wait_for(request_id)
                except KeyboardInterrupt:
                    if self.dispatcher.cancel():
                        self.console.print("[yellow]Cancelling…[/yellow]")

    def _call(self, kind: str, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run ``fn`` on a worker and return its result; its exception is re-raised here."""
        event = self._await(self.dispatcher.submit(kind, fn, *args, **kwargs), label)
        if not event.ok:
            raise event.error
        return event.payload

    def send(self, prompt: str) -> bool:
        request_id = self.dispatcher.submit_send(self.session, prompt, list(self.pending))
        event = self._await(request_id, "Thinking…")
        if not event.ok:
            self._error(event.error)
            return False
        self.pending.clear()
        output = event.payload
        self._render_assistant(output.text, output.thoughts)
        for image in output.images:
            self.console.print(f"[blue]🖼  {image.title or image.alt}[/blue] {image.url}")
        if output.images and self.downloader is not None:
            self.console.print("[dim]/download saves the images[/dim]")
        if len(output.candidates) > 1:
            self.console.print(
                f"[dim]{len(output.candidates)} candidates; /choose <n> to switch[/dim]"
            )
        return True

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _cmd_history(self, args: str) -> None:
        if args:
            self._resume(args)
            return
        request_id = self.dispatcher.submit_store(self.store.list)
        event = self._await(request_id, "Loading history…")
        if not event.ok:
            self._error(event.error)
            return
        table = Table("#", "Title", "Model", "Updated", "★")
        for index, summary in enumerate(event.payload, start=1):
            table.add_row(
                str(index),
                summary.title,
                summary.model or "-",
                summary.updated_at.astimezone().strftime("%Y-%m-%d %H:%M"),
                "★" if summary.favorite else "",
            )
        self.console.print(table)

    def _restore(self, ref: str) -> ChatSession:
        conversation_id = ConversationResolver(self.store).resolve(ref)
        return ChatSession.restore(self.session.backend, self.store, conversation_id)

    def _resume(self, ref: str) -> None:
        """Switch the shell to a saved conversation and replay it."""
        session = self._call("store", "Loading conversation…", self._restore, ref)
        previous, self.session = self.session, session
        previous.close()
        logger.info("Shell switched to conversation %s", session.conversation_id)
        self.render_transcript()

    def _cmd_gems(self, args: str) -> None:
        request_id = self.dispatcher.submit_fetch_gems(self.gems, include_hidden=args == "--hidden")
        event = self._await(request_id, "Fetching gems…")
        if not event.ok:
            self._error(event.error)
            return
        table = Table("ID", "Name", "Type", "Description")
        for gem in event.payload.ordered():
            marker = "*" if gem.id == self.session.gem_id else ""
            table.add_row(
                gem.id + marker,
                gem.name,
                "system" if gem.predefined else "custom",
                gem.description,
            )
        self.console.print(table)

    def _cmd_gem(self, args: str) -> None:
        if args.lower() in ("", "off", "none"):
            self._call("store", "Saving…", self.session.set_gem, None)
            self.console.print("[green]Gem unbound[/green]")
            return
        gem = self._call("gems", "Looking up gem…", self.gems.get, args)
        if gem is None:
            self.console.print(f"[red]No gem matching '{args}'[/red]")
            return
        self._call("store", "Saving…", self.session.set_gem, gem.id)
        self.console.print(f"[green]Using gem {gem.name}[/green]")

    def _cmd_model(self, args: str) -> None:
        if not args:
            self.console.print(
                f"Current model: {self.session.model.value}. Available: {', '.join(available_models())}"
            )
            return
        self._call("store", "Saving…", self.session.set_model, args)
        self.console.print(f"[green]Model set to {self.session.model.value}[/green]")

    def _attach(self, args: str, as_image: Optional[bool]) -> None:
        if not args:
            raise ValidationError("usage: /file <path> or /image <path>")
        request_id = self.dispatcher.submit_upload(self.attachments, args, as_image=as_image)
        event = self._await(request_id, f"Uploading {Path(args).name}…")
        if not event.ok:
            self._error(event.error)
            return
        self.pending.append(event.payload)
        self.console.print(
            f"[green]📎 {event.payload.name} attached ({len(self.pending)} pending)[/green]"
        )

    def _cmd_clear(self, args: str) -> None:
        count = len(self.pending)
        self.pending.clear()
        self.console.print(f"[green]Cleared {count} attachment(s)[/green]")

    def _export(self, conversation_id: str, args: str) -> Path:
        title = self.store.get(conversation_id).title
        path_str, fmt = parse_export_args(args, default_name=title)
        path = Path(path_str).expanduser()
        if not path.parent.exists():
            raise ValidationError(f"Directory does not exist: {path.parent}")
        if fmt == FORMAT_JSON:
            path.write_bytes(self.store.export_json(conversation_id))
        else:
            path.write_text(self.store.export_markdown(conversation_id), encoding="utf-8")
        return path

    def _cmd_export(self, args: str) -> None:
        conversation_id = self.session.conversation_id
        if not conversation_id:
            raise ValidationError("Nothing to export yet")
        path = self._call("store", "Exporting…", self._export, conversation_id, args)
        self.console.print(f"[green]Exported to {path}[/green]")

    def _cmd_choose(self, args: str) -> None:
        if not args.isdigit():
            raise ValidationError("usage: /choose <n>")
        output = self._call("store", "Switching candidate…", self.session.choose_candidate, int(args) - 1)
        self._render_assistant(output.text, output.thoughts)

    def _cmd_download(self, args: str) -> None:
        if self.downloader is None:
            raise ValidationError("Image downloads are not available in this shell")
        output = self.session.last_output
        if output is None or not output.images:
            raise ValidationError("The last response has no images")
        paths = self._call(
            "download", "Downloading images…", self.downloader.download_all, output, args or None
        )
        for path in paths:
            self.console.print(f"[green]✓ Saved {path}[/green]")
        skipped = len(output.images) - len(paths)
        if skipped:
            self.console.print(f"[yellow]{skipped} image(s) could not be saved[/yellow]")

    def _cmd_help(self, args: str) -> None:
        table = Table("Command", "Description")
        for name, description in KNOWN_COMMANDS.items():
            table.add_row(f"/{name}", description)
        self.console.print(table)

    def handle_command(self, text: str) -> bool:
        """Run one slash command. Returns False when the shell should exit."""
        parsed = parse_command(text)
        handlers = {
            "history": self._cmd_history,
            "gems": self._cmd_gems,
            "gem": self._cmd_gem,
            "model": self._cmd_model,
            "file": lambda a: self._attach(a, as_image=False),
            "image": lambda a: self._attach(a, as_image=True),
            "clear": self._cmd_clear,
            "export": self._cmd_export,
            "choose": self._cmd_choose,
            "download": self._cmd_download,
            "help": self._cmd_help,
        }
        if parsed.command in ("exit", "quit"):
            return False
        handler = handlers.get(parsed.command)
        if handler is None:
            self.console.print(f"[red]Unknown command /{parsed.command}; /help lists commands[/red]")
            return True
        try:
            handler(parsed.args)
        except (DomainError, OSError) as exc:
            self._error(exc)
        return True

    def run(self) -> None:
        self.console.print(
            f"[bold]geminiweb[/bold] · model {self.session.model.value}"
            + (f" · gem {self.session.gem_id}" if self.session.gem_id else "")
            + " · /help for commands"
        )
        try:
            self.render_transcript()
        except (DomainError, OSError) as exc:
            self._error(exc)
        while True:
            try:
                text = self.console.input("[bold cyan]You › [/bold cyan]")
            except (EOFError, KeyboardInterrupt):
                self.console.print()
                break
            if not text.strip():
                continue
            if parse_command(text).is_command:
                if not self.handle_command(text):
                    break
                continue
            self.send(text)
        self.session.close()
