import asyncio
import contextlib
import json
import os
import signal
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path

import click
from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from cairn.config import Config, get_config
from cairn.core.cancel import CancelToken
from cairn.database import Database
from cairn.llm import ModelCatalog, ProviderRegistry
from cairn.logging import configure_logging
from cairn.messages import ErrorContent, TextContent, ThinkingContent, ToolResultContent, ToolUseContent
from cairn.permissions import PermissionChecker, PermissionMode
from cairn.session import (
    Compactor,
    Session,
    SessionImportError,
    SessionProcessor,
    SessionStore,
    provider_summarizer,
)
from cairn.session.events import (
    CancelledEvent,
    CompactionEvent,
    ProcessorEvent,
    TextDeltaEvent,
    TextDoneEvent,
    ThinkingDeltaEvent,
    ToolDoneEvent,
    ToolStartEvent,
    TurnDoneEvent,
    TurnErrorEvent,
)
from cairn.tools import TOOL_SETS, create_registry
from cairn.utils import truncate

console = Console()


def _format_time(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M")


def _load_config(**overrides) -> Config:
    try:
        return get_config(**overrides)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from e


@contextlib.asynccontextmanager
async def _open_store(config: Config):
    db = Database(config.sessions_db_path)
    await db.connect()
    try:
        store = SessionStore(db.conn)
        await store.init_schema()
        yield store
    finally:
        await db.close()


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx):
    """cairn - a coding assistant in your terminal"""
    if ctx.invoked_subcommand is None:
        console.print("[bold]cairn[/bold] - a coding assistant in your terminal\n")
        console.print('Run [cyan]cairn run -p "..."[/cyan] to start a session.')
        console.print("\nUse [cyan]cairn --help[/cyan] for all commands.")


# --- run ---


class _Renderer:
    def __init__(self):
        self.streamed: set[str] = set()
        self.failed = False

    def render(self, event: ProcessorEvent) -> None:
        match event:
            case TextDeltaEvent(message_id=message_id, text=text):
                self.streamed.add(message_id)
                console.print(text, end="", markup=False, highlight=False)
            case TextDoneEvent(message_id=message_id, text=text):
                if message_id not in self.streamed:
                    console.print(text, markup=False, highlight=False)
                else:
                    console.print()
            case ThinkingDeltaEvent(text=text):
                console.print(text, end="", style="dim italic", markup=False, highlight=False)
            case ToolStartEvent(name=name, input=tool_input):
                args = truncate(json.dumps(tool_input), 80) if tool_input else ""
                console.print(f"[cyan]> {name}[/cyan] [dim]{args}[/dim]", highlight=False)
            case ToolDoneEvent(name=name, is_error=is_error, preview=preview, output=output):
                summary = preview or truncate(output.splitlines()[0] if output else "", 80)
                style = "red" if is_error else "dim"
                console.print(f"  [{style}]{name}: {summary}[/{style}]", highlight=False)
            case CompactionEvent(original_count=before, new_count=after):
                console.print(f"[dim]Compacted history: {before} -> {after} messages[/dim]")
            case TurnDoneEvent(session_id=session_id, turns=turns, usage=usage):
                console.print(
                    f"\n[dim]{session_id} | {turns} model calls | "
                    f"{usage['context_tokens']} in / {usage['output_tokens']} out | ${usage['cost']:.4f}[/dim]"
                )
            case TurnErrorEvent(kind=kind, message=message):
                self.failed = True
                console.print(f"\n[red]Error ({kind}):[/red] {message}")
            case CancelledEvent(reason=reason):
                self.failed = True
                console.print(f"\n[yellow]Cancelled:[/yellow] {reason}")


def _settle(future: asyncio.Future, answer: bool | None, error: Exception | None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(answer)


class _Prompter:
    """Asks permission questions on the terminal, one at a time.

    The blocking read runs on a daemon thread; a prompt abandoned by
    Ctrl-C never blocks interpreter exit.
    """

    def __init__(self, ask: Callable[..., bool] = Confirm.ask):
        self._ask = ask
        self._lock = asyncio.Lock()

    async def __call__(self, question: str) -> bool:
        async with self._lock:
            loop = asyncio.get_running_loop()
            future: asyncio.Future[bool] = loop.create_future()

            def read() -> None:
                answer, error = None, None
                try:
                    answer = self._ask(question, console=console, default=False)
                except Exception as e:
                    error = e
                with contextlib.suppress(RuntimeError):  # loop already closed
                    loop.call_soon_threadsafe(_settle, future, answer, error)

            threading.Thread(target=read, name="cairn-confirm", daemon=True).start()
            return await future


async def _pick_session(store: SessionStore, session_id: str | None, continue_last: bool) -> Session | None:
    project_path = os.getcwd()
    if session_id:
        return await store.resolve(session_id)
    if continue_last and (session := await store.resume(project_path)):
        return session
    return await store.create(project_path)


async def _run_headless(
    config: Config, prompt: str, session_id: str | None, tool_set: str, continue_last: bool = False
) -> bool:
    catalog = ModelCatalog()
    catalog.load_custom(config.models_path)
    providers = ProviderRegistry.default(config, catalog)

    async with _open_store(config) as store:
        try:
            session = await _pick_session(store, session_id, continue_last)
            if session is None:
                console.print(f"[red]Error:[/red] Session not found: {session_id}")
                return False
            if session.archived_at is not None:
                await store.restore(session.id)
            await store.track_last(session.id)

            provider = providers.get(config.provider)
            compactor = None
            if config.compaction:
                compactor = Compactor(
                    threshold=config.compaction_threshold,
                    keep_recent=config.compaction_keep_recent,
                    summarizer=provider_summarizer(provider, config.model),
                )
            processor = SessionProcessor(
                provider=provider,
                store=store,
                tools=create_registry(tool_set, bash_timeout=int(config.tool_timeout)),
                checker=PermissionChecker(config.permission_policy),
                compactor=compactor,
                model=config.model,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                max_turns=config.max_turns,
                tool_timeout=config.tool_timeout,
                ask_callback=_Prompter(),
                catalog=catalog,
            )

            cancel = CancelToken()
            loop = asyncio.get_running_loop()
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(signal.SIGINT, cancel.cancel, "interrupted")

            renderer = _Renderer()
            console.print(f"[dim]Running: {prompt}[/dim]\n")
            try:
                async for event in processor.process(session.id, prompt, cancel):
                    renderer.render(event)
            finally:
                with contextlib.suppress(NotImplementedError):
                    loop.remove_signal_handler(signal.SIGINT)
            return not renderer.failed
        finally:
            await providers.aclose()


@main.command()
@click.option("-p", "--prompt", required=True, help="The prompt to execute")
@click.option("-s", "--session", "session_id", default=None, help="Continue an existing session (id or id prefix)")
@click.option("-c", "--continue", "continue_last", is_flag=True, help="Continue the most recent session")
@click.option("--provider", default=None, help="Provider to use (overrides config)")
@click.option("--model", default=None, help="Model to use (overrides config)")
@click.option("--yes", "--allow-all", "allow_all", is_flag=True, help="Allow every tool call without asking")
@click.option("--deny-all", is_flag=True, help="Deny every tool call that is not explicitly allowed")
@click.option("--tools", "tool_set", type=click.Choice(list(TOOL_SETS)), default="build", help="Tool set to expose")
def run(
    prompt: str,
    session_id: str | None,
    continue_last: bool,
    provider: str | None,
    model: str | None,
    allow_all: bool,
    deny_all: bool,
    tool_set: str,
):
    """Run one turn with a prompt (headless)."""
    if allow_all and deny_all:
        raise click.UsageError("--allow-all and --deny-all are mutually exclusive")
    if session_id and continue_last:
        raise click.UsageError("--session and --continue are mutually exclusive")

    mode = None
    if allow_all:
        mode = PermissionMode.ALLOW_ALL
    elif deny_all:
        mode = PermissionMode.DENY_ALL

    config = _load_config(provider=provider, model=model, permission_mode=mode)
    configure_logging(config.log_level)
    if not asyncio.run(_run_headless(config, prompt, session_id, tool_set, continue_last)):
        raise SystemExit(1)


# --- sessions ---


@main.group()
def sessions():
    """Manage stored sessions."""


@sessions.command("list")
@click.option("--project", default=None, help="Only sessions for this project path")
@click.option("--limit", default=20, show_default=True, help="Maximum sessions to show")
@click.option("--search", "query", default=None, help="Only sessions whose title or id contains this text")
@click.option("--archived", is_flag=True, help="List archived sessions instead")
def list_sessions(project: str | None, limit: int, query: str | None, archived: bool):
    """List recent sessions."""
    config = _load_config()

    async def _list():
        async with _open_store(config) as store:
            if query:
                return await store.search(query, project_path=project, limit=limit)
            return await store.list(project_path=project, limit=limit, archived=archived)

    summaries = asyncio.run(_list())
    if not summaries:
        console.print("[dim]No sessions[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    for s in summaries:
        table.add_row(s.id, s.title, s.status.value, str(s.message_count), _format_time(s.updated_at))
    console.print(table)


@sessions.command("show")
@click.argument("session_id")
def show_session(session_id: str):
    """Print a session's messages."""
    config = _load_config()

    async def _get():
        async with _open_store(config) as store:
            return await store.resolve(session_id)

    session = asyncio.run(_get())
    if session is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise SystemExit(1)

    console.print(f"[bold]{session.display_title}[/bold] [dim]({session.id}, {session.status.value})[/dim]")
    console.print(f"[dim]{session.project_path} | created {_format_time(session.created_at)}[/dim]\n")
    for message in session.messages:
        console.print(f"[bold]{message.role.value}[/bold]")
        for block in message.content:
            match block:
                case TextContent(text=text):
                    console.print(text, markup=False, highlight=False)
                case ThinkingContent(text=text):
                    console.print(truncate(text, 500), style="dim italic", markup=False, highlight=False)
                case ToolUseContent(name=name, input=tool_input):
                    console.print(f"[cyan]> {name}[/cyan] [dim]{truncate(json.dumps(tool_input), 200)}[/dim]")
                case ToolResultContent(output=output, is_error=is_error):
                    style = "red" if is_error else "dim"
                    console.print(truncate(output, 500), style=style, markup=False, highlight=False)
                case ErrorContent(message=error, code=code):
                    console.print(f"[red]Error ({code or 'unknown'}):[/red] {error}")
        console.print()


@sessions.command("delete")
@click.argument("session_id")
def delete_session(session_id: str):
    """Delete a session."""
    config = _load_config()

    async def _delete():
        async with _open_store(config) as store:
            return await store.delete(session_id)

    if not asyncio.run(_delete()):
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise SystemExit(1)
    console.print(f"Deleted {session_id}")


@sessions.command("prune")
@click.option("--days", type=int, default=None, help="Delete sessions untouched for this many days")
def prune_sessions(days: int | None):
    """Delete old sessions."""
    config = _load_config()
    max_age = timedelta(days=days or config.session_max_age_days)

    async def _prune():
        async with _open_store(config) as store:
            return await store.prune(max_age)

    count = asyncio.run(_prune())
    console.print(f"Pruned {count} session{'s' if count != 1 else ''} older than {max_age.days} days")


@sessions.command("export")
@click.argument("session_id")
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Write to this file instead of stdout",
)
@click.option("--format", "export_format", type=click.Choice(["json", "markdown"]), default="json", show_default=True)
@click.option("--tool-results", is_flag=True, help="Include tool output in markdown exports")
@click.option("--no-metadata", is_flag=True, help="Leave session and message metadata out of JSON exports")
def export_session(session_id: str, output: Path | None, export_format: str, tool_results: bool, no_metadata: bool):
    """Export a session as JSON (importable) or markdown."""
    config = _load_config()

    async def _export():
        async with _open_store(config) as store:
            session = await store.resolve(session_id)
            if session is None:
                return None
            return await store.export(
                session.id,
                format=export_format,
                include_tool_results=tool_results,
                include_metadata=not no_metadata,
            )

    content = asyncio.run(_export())
    if content is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise SystemExit(1)
    if output is None:
        click.echo(content)
        return
    output.write_text(content, encoding="utf-8")
    console.print(f"Exported {session_id} to {output}")


@sessions.command("import")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_session(path: Path):
    """Import a session from a JSON export."""
    config = _load_config()
    data = path.read_text(encoding="utf-8")

    async def _import():
        async with _open_store(config) as store:
            return await store.import_session(data)

    try:
        session = asyncio.run(_import())
    except SessionImportError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise SystemExit(1) from e
    console.print(f"Imported {session.display_title} as [cyan]{session.id}[/cyan]")


@sessions.command("clone")
@click.argument("session_id")
@click.option("--up-to", "up_to", default=None, help="Copy history only up to this message id")
def clone_session(session_id: str, up_to: str | None):
    """Copy a session into a new one to branch the conversation."""
    config = _load_config()

    async def _clone():
        async with _open_store(config) as store:
            session = await store.resolve(session_id)
            if session is None:
                return None
            return await store.clone(session.id, up_to_message_id=up_to)

    try:
        clone = asyncio.run(_clone())
    except KeyError as e:
        console.print(f"[red]Error:[/red] {e.args[0]}")
        raise SystemExit(1) from e
    if clone is None:
        console.print(f"[red]Error:[/red] Session not found: {session_id}")
        raise SystemExit(1)
    console.print(f"Cloned into [cyan]{clone.id}[/cyan] ({len(clone.messages)} messages)")


@sessions.command("archive")
@click.argument("session_id", required=False)
@click.option("--days", type=int, default=None, help="Archive every session untouched for this many days")
def archive_sessions(session_id: str | None, days: int | None):
    """Hide a session, or every old session, from listings and --continue."""
    if (session_id is None) == (days is None):
        raise click.UsageError("Pass either a session id or --days")
    config = _load_config()

    async def _archive() -> list[str]:
        async with _open_store(config) as store:
            if days is not None:
                return await store.archive_older_than(timedelta(days=days))
            return [session_id] if await store.archive(session_id) else []

    archived = asyncio.run(_archive())
    if session_id is not None and not archived:
        console.print(f"[red]Error:[/red] No active session {session_id}")
        raise SystemExit(1)
    console.print(f"Archived {len(archived)} session{'s' if len(archived) != 1 else ''}")


@sessions.command("restore")
@click.argument("session_id")
def restore_session(session_id: str):
    """Bring an archived session back."""
    config = _load_config()

    async def _restore():
        async with _open_store(config) as store:
            return await store.restore(session_id)

    if not asyncio.run(_restore()):
        console.print(f"[red]Error:[/red] No archived session {session_id}")
        raise SystemExit(1)
    console.print(f"Restored {session_id}")


# --- info ---


@main.command()
def status():
    """Show the resolved configuration."""
    config = _load_config()
    catalog = ModelCatalog()
    catalog.load_custom(config.models_path)

    async def _configured() -> dict[str, bool]:
        providers = ProviderRegistry.default(config, catalog)
        try:
            return {name: providers.get(name).is_configured() for name in providers.names}
        finally:
            await providers.aclose()

    configured = asyncio.run(_configured())

    console.print("[bold]cairn status[/bold]")
    console.print()
    console.print(f"Provider: [cyan]{config.provider}[/cyan]")
    console.print(f"Model: {config.model or catalog.default_model(config.provider) or '[red]none[/red]'}")
    console.print(f"Permission mode: {config.permission_mode.value}")
    console.print(f"Compaction: {'on' if config.compaction else 'off'} (threshold {config.compaction_threshold} tokens)")
    console.print(f"Data dir: [cyan]{config.data_dir}[/cyan]")
    console.print()
    console.print("[bold]Providers[/bold]")
    for name, ok in configured.items():
        mark = "[green]configured[/green]" if ok else "[dim]no credentials[/dim]"
        console.print(f"  {name}: {mark}")


@main.command()
@click.option("--provider", default=None, help="Only models for this provider")
def models(provider: str | None):
    """List known models and their prices."""
    config = _load_config()
    catalog = ModelCatalog()
    catalog.load_custom(config.models_path)

    entries = catalog.models(provider)
    if not entries:
        console.print(f"[dim]No models for {provider}[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Model", style="cyan")
    table.add_column("Provider")
    table.add_column("Context", justify="right")
    table.add_column("$ in / out per 1M", justify="right")
    for m in entries:
        table.add_row(m.id, m.provider, f"{m.context_window:,}", f"{m.price_in:g} / {m.price_out:g}")
    console.print(table)


if __name__ == "__main__":
    main()
