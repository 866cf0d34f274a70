"""
Command-line entry point for geminiweb.

Usage:
    geminiweb [PROMPT] [-f FILE] [-i IMAGE] [-o OUTPUT] [-m MODEL]
    geminiweb query [PROMPT] [-f FILE] [-i IMAGE] [-a FILE] [-o OUTPUT] [-m MODEL] [-g GEM] [--download DIR]
    geminiweb chat [-c REF] [-g GEM] [-m MODEL]
    geminiweb history list [--search QUERY] [--content] [--favorites]
    geminiweb history show REF
    geminiweb history export REF [PATH] [--format md|json]
    geminiweb history rename REF TITLE
    geminiweb history favorite REF
    geminiweb history move REF POSITION
    geminiweb history swap REF OTHER
    geminiweb history delete REF [--yes]
    geminiweb history clear [--yes]
    geminiweb history import FILE
    geminiweb gems list [--hidden]
    geminiweb gems show REF
    geminiweb gems create NAME (-p PROMPT | -f FILE) [-d DESCRIPTION]
    geminiweb gems update REF [-n NAME] [-p PROMPT | -f FILE] [-d DESCRIPTION]
    geminiweb gems delete REF [--yes]
    geminiweb config show
    geminiweb import-cookies FILE

A first argument that is not a command is sent as a one-shot prompt, and
piped standard input is read as the prompt (or attached when a prompt is
also given).

Global options:
    --env-file PATH   Load GEMINIWEB_* settings from a .env file first
    --verbose / -v    Debug logging

Exit codes: 0 success, 1 failure, 2 authentication required, 3 usage error.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table

from geminiweb.application.chat.commands import FORMAT_JSON, export_target, parse_format
from geminiweb.application.chat.dispatcher import ChatDispatcher
from geminiweb.application.chat.error_handler import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_USAGE,
    classify_error,
)
from geminiweb.application.chat.session import ChatSession
from geminiweb.domain.conversations.models import MessageRole
from geminiweb.domain.errors import (
    ConfigurationError,
    DomainError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from geminiweb.domain.gems.models import Gem
from geminiweb.domain.model_catalog import ModelTag
from geminiweb.infrastructure.shell import ChatShell
from geminiweb.modules.attachments import AttachmentManager
from geminiweb.modules.chat_history import ConversationResolver, HistoryStore
from geminiweb.modules.config import ConfigManager, CookieStore
from geminiweb.modules.downloads import ImageDownloader
from geminiweb.modules.gems import GemRegistry
from geminiweb.modules.transport import GeminiTransport
from geminiweb.version import VERSION

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

# Populated by the root callback for the subcommands
cli_state: Dict[str, Any] = {"config": None}

STDIN_ATTACHMENT_NAME = "stdin.txt"

app = typer.Typer(help="Terminal client for Gemini web chat.", no_args_is_help=True)
history_app = typer.Typer(help="Manage saved conversations.", no_args_is_help=True)
gems_app = typer.Typer(help="Browse and edit gems (personas).", no_args_is_help=True)
config_app = typer.Typer(help="Inspect configuration.", no_args_is_help=True)
app.add_typer(history_app, name="history")
app.add_typer(gems_app, name="gems")
app.add_typer(config_app, name="config")


def setup_logging(manager: ConfigManager, verbose: bool = False) -> None:
    """Configure the root logger once from settings and user config."""
    settings = manager.app_settings
    level = "DEBUG" if verbose or manager.user_config.verbose else settings.log_level
    kwargs: Dict[str, Any] = {
        "level": getattr(logging, level, logging.WARNING),
        "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    }
    if settings.log_file:
        kwargs["filename"] = str(settings.log_file.expanduser())
    logging.basicConfig(**kwargs)


def _manager() -> ConfigManager:
    manager = cli_state.get("config")
    if manager is None:
        manager = ConfigManager()
        cli_state["config"] = manager
    return manager


def _store() -> HistoryStore:
    return HistoryStore(_manager().history_dir)


def _read_text(path: Path) -> str:
    try:
        return path.expanduser().read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ValidationError(f"Cannot read {path}: {exc}") from exc


def _read_stdin() -> Optional[str]:
    """Piped standard input, or None when attached to a terminal."""
    if sys.stdin is None or sys.stdin.isatty():
        return None
    return sys.stdin.read()


def build_backend(manager: ConfigManager) -> GeminiTransport:
    """Authenticated transport wired to the cookie file; bootstraps before returning."""
    settings = manager.app_settings
    cookie_store = CookieStore(manager.cookies_path)
    transport = GeminiTransport(
        cookie_store.load(),
        refresh_callback=cookie_store.reload,
        request_timeout=settings.request_timeout,
        send_deadline=settings.send_deadline,
        upload_timeout=settings.upload_timeout,
        max_attempts=settings.max_attempts,
        backoff_base=settings.backoff_base,
        backoff_max=settings.backoff_max,
    )
    try:
        transport.bootstrap()
    except DomainError:
        transport.close()
        raise
    return transport


def _require_gem(registry: GemRegistry, ref: str) -> Gem:
    found = registry.get(ref)
    if found is None:
        raise NotFoundError(f"No gem matching '{ref}'")
    return found


@app.callback()
def root(
    env_file: Optional[Path] = typer.Option(
        None,
        "--env-file",
        help="Path to a .env file with GEMINIWEB_* settings.",
        dir_okay=False,
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
):
    """Terminal client for Gemini web chat."""
    if env_file is not None:
        if not env_file.exists():
            raise ConfigurationError(f"Env file not found: {env_file}")
        load_dotenv(dotenv_path=str(env_file), override=True)
    manager = ConfigManager()
    cli_state["config"] = manager
    setup_logging(manager, verbose)
    logger.debug("geminiweb %s, config root %s", VERSION, manager.home)


@app.command()
def chat(
    conversation: Optional[str] = typer.Option(
        None, "--conversation", "-c", help="Resume a conversation (@last, index, id or title)."
    ),
    gem: Optional[str] = typer.Option(None, "--gem", "-g", help="Gem id or name to bind."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name."),
):
    """Start the interactive chat shell."""
    manager = _manager()
    store = HistoryStore(manager.history_dir)
    conversation_id = ConversationResolver(store).resolve(conversation) if conversation else None
    selected_model = ModelTag.parse(model or manager.user_config.default_model)

    with build_backend(manager) as backend:
        if conversation_id:
            session = ChatSession.restore(backend, store, conversation_id)
            if model:
                session.set_model(selected_model)
        else:
            session = ChatSession(backend, store=store, model=selected_model)

        registry = GemRegistry(backend)
        if gem:
            session.set_gem(_require_gem(registry, gem).id)

        dispatcher = ChatDispatcher()
        shell = ChatShell(
            session,
            AttachmentManager(backend),
            registry,
            store,
            dispatcher,
            console=console,
            markdown_style=manager.user_config.markdown_style,
            downloader=ImageDownloader(backend, manager.images_dir),
        )
        try:
            shell.run()
        finally:
            dispatcher.shutdown(wait=False)


@app.command()
def query(
    prompt: Optional[str] = typer.Argument(None, help="Prompt text; read from --file or standard input when omitted."),
    prompt_file: Optional[Path] = typer.Option(
        None, "--file", "-f", help="Read the prompt from a file.", dir_okay=False
    ),
    images: Optional[List[Path]] = typer.Option(None, "--image", "-i", help="Attach an image (repeatable)."),
    files: Optional[List[Path]] = typer.Option(None, "--attach", "-a", help="Attach a file (repeatable)."),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the response text to a file."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name."),
    gem: Optional[str] = typer.Option(None, "--gem", "-g", help="Gem id or name to use."),
    download: Optional[Path] = typer.Option(
        None, "--download", help="Save the response's images into this directory.", file_okay=False
    ),
):
    """Send one prompt and print the response. Nothing is saved to history."""
    if prompt_file is not None and prompt:
        raise ValidationError("Give the prompt either as an argument or with --file, not both")

    piped = _read_stdin()
    piped = piped if piped and piped.strip() else None
    attach_stdin = False
    if prompt_file is not None:
        text = _read_text(prompt_file)
        attach_stdin = piped is not None
    elif prompt:
        text = prompt
        attach_stdin = piped is not None
    elif piped is not None:
        text = piped
    else:
        raise ValidationError("No prompt given (argument, --file or standard input)")

    manager = _manager()
    selected_model = ModelTag.parse(model or manager.user_config.default_model)
    with build_backend(manager) as backend:
        attachments = AttachmentManager(backend)
        handles = [attachments.upload(path, as_image=True) for path in images or []]
        handles += [attachments.upload(path, as_image=False) for path in files or []]
        if attach_stdin:
            handles.append(attachments.upload_bytes(piped.encode("utf-8"), STDIN_ATTACHMENT_NAME, "text/plain"))

        session = ChatSession(backend, model=selected_model)
        if gem:
            session.set_gem(_require_gem(GemRegistry(backend), gem).id)
        try:
            with err_console.status("Thinking…", spinner="dots"):
                response = session.send(text, handles)
        finally:
            session.close()

        if response.thoughts:
            err_console.print(f"[dim italic]💭 {response.thoughts}[/dim italic]")
        if output is not None:
            target = output.expanduser()
            try:
                target.write_text(response.text, encoding="utf-8")
            except OSError as exc:
                raise StorageError(f"Failed to write {target}: {exc}") from exc
            err_console.print(f"[green]✓ Response saved to {target}[/green]")
        else:
            console.print(Markdown(response.text or ""))

        if download is not None and response.images:
            for path in ImageDownloader(backend, manager.images_dir).download_all(response, download):
                err_console.print(f"[green]✓ Saved {path}[/green]")
        else:
            for image in response.images:
                err_console.print(f"[blue]🖼  {image.title or image.alt}[/blue] {image.url}")


@history_app.command("list")
def history_list(
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Filter by title."),
    content: bool = typer.Option(False, "--content", help="Also search message text."),
    favorites: bool = typer.Option(False, "--favorites", help="Only favorite conversations."),
):
    """List saved conversations, newest first with favorites on top."""
    store = _store()
    if search:
        results = store.search(search, search_content=content)
        if favorites:
            results = [result for result in results if result.summary.favorite]
        table = Table("ID", "Title", "Match", "Snippet")
        for result in results:
            table.add_row(result.summary.id, result.summary.title, result.match_type, result.snippet)
        console.print(table)
        return

    table = Table("#", "ID", "Title", "Model", "Messages", "Updated", "★")
    for index, summary in enumerate(store.list(), start=1):
        if favorites and not summary.favorite:
            continue
        table.add_row(
            str(index),
            summary.id,
            summary.title,
            summary.model or "-",
            str(summary.message_count),
            summary.updated_at.astimezone().strftime("%Y-%m-%d %H:%M"),
            "★" if summary.favorite else "",
        )
    console.print(table)


@history_app.command("show")
def history_show(
    ref: str = typer.Argument(..., help="Conversation reference."),
):
    """Print one conversation."""
    store = _store()
    conversation = store.get(ConversationResolver(store).resolve(ref))
    console.rule(f"[bold]{conversation.title}[/bold]")
    console.print(
        f"[dim]{conversation.id} · {conversation.model or 'default model'}"
        + (f" · gem {conversation.gem_id}" if conversation.gem_id else "")
        + "[/dim]"
    )
    for message in conversation.messages:
        if message.role is MessageRole.USER:
            console.print(f"[bold cyan]You › {message.content}[/bold cyan]")
        else:
            if message.thoughts:
                console.print(f"[dim italic]💭 {message.thoughts}[/dim italic]")
            console.print(Markdown(message.content or ""))
    console.rule()


@history_app.command("export")
def history_export(
    ref: str = typer.Argument(..., help="Conversation reference."),
    path: Optional[Path] = typer.Argument(None, help="Destination file (standard output when omitted)."),
    fmt: Optional[str] = typer.Option(None, "--format", "-f", help="md or json (default: from extension)."),
):
    """Export one conversation as Markdown or JSON."""
    store = _store()
    conversation_id = ConversationResolver(store).resolve(ref)
    selected = parse_format(fmt) if fmt else None

    if path is None:
        if selected == FORMAT_JSON:
            typer.echo(store.export_json(conversation_id).decode("utf-8"))
        else:
            typer.echo(store.export_markdown(conversation_id))
        return

    target_str, selected = export_target(str(path.expanduser()), selected)
    target = Path(target_str)
    if not target.parent.exists():
        raise ValidationError(f"Directory does not exist: {target.parent}")
    try:
        if selected == FORMAT_JSON:
            target.write_bytes(store.export_json(conversation_id))
        else:
            target.write_text(store.export_markdown(conversation_id), encoding="utf-8")
    except OSError as exc:
        raise StorageError(f"Failed to write {target}: {exc}") from exc
    console.print(f"[green]Exported {conversation_id} to {target}[/green]")


@history_app.command("rename")
def history_rename(
    ref: str = typer.Argument(..., help="Conversation reference."),
    title: str = typer.Argument(..., help="New title."),
):
    """Change a conversation's title."""
    store = _store()
    conversation_id = ConversationResolver(store).resolve(ref)
    store.update_title(conversation_id, title)
    console.print(f"[green]Renamed {conversation_id} to '{store.get(conversation_id).title}'[/green]")


@history_app.command("favorite")
def history_favorite(
    ref: str = typer.Argument(..., help="Conversation reference."),
):
    """Toggle the favorite flag of a conversation."""
    store = _store()
    conversation_id = ConversationResolver(store).resolve(ref)
    if store.toggle_favorite(conversation_id):
        console.print(f"[green]★ {conversation_id} added to favorites[/green]")
    else:
        console.print(f"[green]{conversation_id} removed from favorites[/green]")


@history_app.command("move")
def history_move(
    ref: str = typer.Argument(..., help="Conversation reference."),
    position: int = typer.Argument(..., min=1, help="New 1-based position in the list."),
):
    """Move a conversation to a position in the list."""
    store = _store()
    conversation_id = ConversationResolver(store).resolve(ref)
    store.set_order(conversation_id, position - 1)
    console.print(f"[green]Moved {conversation_id} to position {position}[/green]")


@history_app.command("swap")
def history_swap(
    ref: str = typer.Argument(..., help="Conversation reference."),
    other: str = typer.Argument(..., help="Conversation to swap places with."),
):
    """Swap the list positions of two conversations."""
    store = _store()
    resolver = ConversationResolver(store)
    first_id, second_id = resolver.resolve(ref), resolver.resolve(other)
    store.swap_order(first_id, second_id)
    console.print(f"[green]Swapped {first_id} and {second_id}[/green]")


@history_app.command("delete")
def history_delete(
    ref: str = typer.Argument(..., help="Conversation reference."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Delete one conversation."""
    store = _store()
    conversation_id = ConversationResolver(store).resolve(ref)
    if not yes and not typer.confirm(f"Delete {conversation_id}?"):
        console.print("Cancelled")
        return
    store.delete(conversation_id)
    console.print(f"[green]Deleted {conversation_id}[/green]")


@history_app.command("clear")
def history_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Delete every saved conversation."""
    store = _store()
    if not yes and not typer.confirm("Delete all conversations?"):
        console.print("Cancelled")
        return
    count = store.clear_all()
    console.print(f"[green]Deleted {count} conversation(s)[/green]")


@history_app.command("import")
def history_import(
    source: Path = typer.Argument(..., help="JSON export of a conversation.", exists=True, dir_okay=False),
):
    """Import a conversation from a JSON export."""
    try:
        data = source.read_bytes()
    except OSError as exc:
        raise ValidationError(f"Cannot read {source}: {exc}") from exc
    conversation = _store().import_json(data)
    console.print(f"[green]Imported '{conversation.title}' as {conversation.id}[/green]")


@gems_app.command("list")
def gems_list(
    hidden: bool = typer.Option(False, "--hidden", help="Include hidden system gems."),
):
    """List system and custom gems."""
    with build_backend(_manager()) as backend:
        jar = GemRegistry(backend).fetch(include_hidden=hidden)
    table = Table("ID", "Name", "Type", "Description")
    for gem in jar.ordered():
        table.add_row(gem.id, gem.name, "system" if gem.predefined else "custom", gem.description)
    console.print(table)


@gems_app.command("show")
def gems_show(
    ref: str = typer.Argument(..., help="Gem id or name."),
):
    """Show one gem with its prompt."""
    with build_backend(_manager()) as backend:
        gem = _require_gem(GemRegistry(backend), ref)
    table = Table("Field", "Value", show_header=False)
    table.add_row("ID", gem.id)
    table.add_row("Name", gem.name)
    table.add_row("Type", "system" if gem.predefined else "custom")
    table.add_row("Description", gem.description or "-")
    table.add_row("Prompt", gem.prompt or "-")
    console.print(table)


def _gem_prompt(prompt: Optional[str], prompt_file: Optional[Path]) -> Optional[str]:
    if prompt is not None and prompt_file is not None:
        raise ValidationError("Use either --prompt or --file, not both")
    if prompt_file is not None:
        return _read_text(prompt_file)
    return prompt


@gems_app.command("create")
def gems_create(
    name: str = typer.Argument(..., help="Gem name."),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="System prompt."),
    prompt_file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read the prompt from a file."),
    description: str = typer.Option("", "--description", "-d", help="Short description."),
):
    """Create a custom gem."""
    text = _gem_prompt(prompt, prompt_file)
    if not text or not text.strip():
        raise ValidationError("A prompt is required (--prompt or --file)")
    with build_backend(_manager()) as backend:
        gem = GemRegistry(backend).create(name, text, description=description)
    console.print(f"[green]Created gem {gem.name} ({gem.id})[/green]")


@gems_app.command("update")
def gems_update(
    ref: str = typer.Argument(..., help="Gem id or name."),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="New name."),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="New system prompt."),
    prompt_file: Optional[Path] = typer.Option(None, "--file", "-f", help="Read the new prompt from a file."),
    description: Optional[str] = typer.Option(None, "--description", "-d", help="New description."),
):
    """Change a custom gem; omitted fields are kept."""
    text = _gem_prompt(prompt, prompt_file)
    if name is None and text is None and description is None:
        raise ValidationError("Nothing to update (use --name, --prompt, --file or --description)")
    with build_backend(_manager()) as backend:
        registry = GemRegistry(backend)
        gem = registry.update(_require_gem(registry, ref).id, name=name, prompt=text, description=description)
    console.print(f"[green]Updated gem {gem.name} ({gem.id})[/green]")


@gems_app.command("delete")
def gems_delete(
    ref: str = typer.Argument(..., help="Gem id or name."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
):
    """Delete a custom gem."""
    with build_backend(_manager()) as backend:
        registry = GemRegistry(backend)
        gem = _require_gem(registry, ref)
        if not yes and not typer.confirm(f"Delete gem {gem.name}?"):
            console.print("Cancelled")
            return
        registry.delete(gem.id)
    console.print(f"[green]Deleted gem {gem.name}[/green]")


@config_app.command("show")
def config_show():
    """Show resolved paths and preferences."""
    manager = _manager()
    table = Table("Setting", "Value")
    table.add_row("home", str(manager.home))
    table.add_row("config file", str(manager.config_path))
    table.add_row("cookies", f"{manager.cookies_path} ({'present' if manager.cookies_path.exists() else 'missing'})")
    table.add_row("history", str(manager.history_dir))
    table.add_row("images", str(manager.images_dir))
    for key, value in manager.user_config.model_dump().items():
        table.add_row(key, str(value))
    console.print(table)


@app.command("import-cookies")
def import_cookies(
    source: Path = typer.Argument(..., help="Cookie export (JSON) to import."),
):
    """Import browser cookies into the config root."""
    manager = _manager()
    CookieStore(manager.cookies_path).import_from(source)
    console.print(f"[green]Cookies saved to {manager.cookies_path}[/green]")


def _command_names() -> set:
    names = {
        info.name or info.callback.__name__.replace("_", "-")
        for info in app.registered_commands
    }
    names.update(info.name for info in app.registered_groups)
    return names


def route_default_command(argv: List[str], stdin_piped: bool = False) -> List[str]:
    """Insert ``query`` when the arguments do not name a command.

    ``geminiweb "what is a tide?"`` and ``cat notes | geminiweb`` both
    become one-shot queries; global options stay in front.
    """
    index = 0
    while index < len(argv) and argv[index].startswith("-"):
        if argv[index] in ("--help", "--install-completion", "--show-completion"):
            return argv
        index += 2 if argv[index] == "--env-file" else 1
    if index >= len(argv):
        if stdin_piped:
            return [*argv, "query"]
        return argv
    if argv[index] in _command_names():
        return argv
    return [*argv[:index], "query", *argv[index:]]


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI and translate failures into exit codes."""
    args = list(sys.argv[1:] if argv is None else argv)
    stdin_piped = sys.stdin is not None and not sys.stdin.isatty()
    args = route_default_command(args, stdin_piped=stdin_piped)
    try:
        result = app(args=args, standalone_mode=False, prog_name="geminiweb")
    except click.exceptions.UsageError as exc:
        exc.show()
        return EXIT_USAGE
    except click.exceptions.Abort:
        err_console.print("Aborted")
        return EXIT_FAILURE
    except DomainError as exc:
        kind, banner, exit_code = classify_error(exc)
        logger.warning("Command failed: kind=%s message=%s", kind, exc.message)
        err_console.print(f"[bold red]✗ {banner}[/bold red]")
        return exit_code
    return result if isinstance(result, int) else EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
