"""Command-line interface for streamchat."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Coroutine

import click
from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from streamchat import __version__
from streamchat.config import load_config
from streamchat.engine import ChatEngine
from streamchat.errors import StreamChatError
from streamchat.types import ChatEvent, EventType, RunOptions, RunResult

console = Console()


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    return asyncio.run(coro)


class _LivePrinter:
    """Prints assistant text as flushes arrive."""

    def __init__(self) -> None:
        self._shown: dict[str, str] = {}

    def on_event(self, event: ChatEvent) -> None:
        data = event.data
        if data.get("role") != "assistant":
            return
        msg_id = data["message_id"]
        text = data.get("content") or ""
        shown = self._shown.get(msg_id, "")
        if text.startswith(shown):
            delta = text[len(shown):]
        else:
            # content restarted (retry)
            console.print()
            delta = text
        if delta:
            console.print(delta, end="", markup=False, highlight=False)
        self._shown[msg_id] = text

    def on_retry(self, event: ChatEvent) -> None:
        delay = event.data.get("delay") or 0
        console.print(
            f"\n[yellow]{event.data.get('error_kind')}: retrying in {delay:.1f}s "
            f"(attempt {event.data.get('attempt')})[/yellow]"
        )


def _report(result: RunResult) -> None:
    console.print()
    if result.success:
        metrics = result.metrics
        ttfc = metrics.get("time_to_first_chunk_ms")
        details = [f"{metrics.get('chunks', 0)} chunks"]
        if ttfc is not None:
            details.append(f"first chunk {ttfc:.0f}ms")
        if result.retries:
            details.append(f"{result.retries} retries")
        console.print(f"[dim]{', '.join(details)}[/dim]")
    elif result.cancelled:
        console.print("[yellow]Cancelled.[/yellow]")
    else:
        kind = result.error_kind.value if result.error_kind else "error"
        console.print(Panel(result.error_message or kind, title=kind, border_style="red"))


async def _stream(engine: ChatEngine, coro_factory) -> RunResult:
    printer = _LivePrinter()
    engine.subscribe(EventType.MESSAGE_UPDATED, printer.on_event)
    engine.subscribe(EventType.MESSAGE_COMPLETED, printer.on_event)
    engine.subscribe(EventType.RUN_RETRYING, printer.on_retry)
    try:
        return await coro_factory()
    finally:
        await engine.close()


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to streamchat.yaml (auto-detected from CWD or ~/.config/streamchat/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__, prog_name="streamchat")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """streamchat - streamed chat completions with retry and resumption."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)
    try:
        ctx.obj = load_config(config_path)
    except StreamChatError as e:
        raise click.ClickException(str(e)) from e


@main.command()
@click.option("--model", "-m", "model_id", default=None, help="Model id for the chat")
@click.option("--title", default="", help="Chat title")
@click.pass_obj
def new(config, model_id: str | None, title: str):
    """Create a chat and print its id."""
    async def _new():
        engine = ChatEngine.from_config(config)
        try:
            return await engine.new_chat(model_id, title)
        finally:
            await engine.close()

    chat = _run(_new())
    console.print(chat.id, markup=False, highlight=False)


@main.command()
@click.argument("chat_id")
@click.argument("text")
@click.option("--model", "-m", "model_id", default=None, help="Override the chat's model")
@click.option("--max-tokens", type=int, default=None, help="Maximum completion tokens")
@click.option("--web", is_flag=True, help="Enable the provider's web search plugin")
@click.pass_obj
def send(config, chat_id: str, text: str, model_id: str | None,
         max_tokens: int | None, web: bool):
    """Send TEXT to CHAT_ID and stream the reply."""
    options = RunOptions(
        max_tokens=max_tokens or config.defaults.max_tokens,
        temperature=config.defaults.temperature,
        web_search=web,
    )
    engine = ChatEngine.from_config(config)
    result = _run(_stream(engine, lambda: engine.run(chat_id, text, model_id, options)))
    _report(result)
    if not result.success:
        raise SystemExit(1)


@main.command()
@click.argument("chat_id")
@click.option("--model", "-m", "model_id", default=None, help="Override the chat's model")
@click.pass_obj
def retry(config, chat_id: str, model_id: str | None):
    """Regenerate the latest reply of CHAT_ID."""
    engine = ChatEngine.from_config(config)
    result = _run(_stream(engine, lambda: engine.retry(chat_id, model_id)))
    _report(result)
    if not result.success:
        raise SystemExit(1)


@main.command()
@click.option("--chat", "chat_id", default=None, help="Only resume this chat")
@click.pass_obj
def resume(config, chat_id: str | None):
    """Finalize replies left incomplete by an earlier session."""
    async def _resume():
        engine = ChatEngine.from_config(config)
        try:
            return await engine.resume(chat_id)
        finally:
            await engine.close()

    report = _run(_resume())
    console.print(f"[green]Completed:[/green] {len(report.completed)}")
    console.print(f"[green]Finalized without generation:[/green] {len(report.orphaned)}")
    if report.failed:
        console.print(f"[yellow]Still incomplete:[/yellow] {len(report.failed)}")
        for msg_id in report.failed:
            console.print(f"  [dim]{msg_id}[/dim]")


@main.command()
@click.argument("chat_id")
@click.pass_obj
def history(config, chat_id: str):
    """Show the messages of CHAT_ID."""
    async def _history():
        engine = ChatEngine.from_config(config)
        try:
            return await engine.get_chat(chat_id)
        finally:
            await engine.close()

    chat = _run(_history())
    if chat is None:
        raise click.ClickException(f"Chat '{chat_id}' not found.")

    console.print(f"[bold]{chat.title or chat.id}[/bold] [dim]({chat.model_id})[/dim]")
    for msg in chat.ordered_messages():
        stamp = time.strftime("%Y-%m-%d %H:%M", time.localtime(msg.created_at))
        if msg.role == "user":
            console.print(Panel(msg.content, title=f"user {stamp}", border_style="blue"))
            continue
        title = f"{msg.role} {stamp}"
        style = "green"
        if not msg.is_complete:
            title += " (incomplete)"
            style = "yellow"
        console.print(Panel(Markdown(msg.content or "_(empty)_"), title=title, border_style=style))
        for n, cite in enumerate(msg.url_citations(), 1):
            url = escape(str(cite.get("url") or ""))
            label = escape(str(cite.get("title") or "")) or url
            console.print(f"  [dim]{n}.[/dim] {label} [blue]{url}[/blue]")


@main.command()
@click.argument("generation_id")
@click.pass_obj
def generation(config, generation_id: str):
    """Show provider metadata for GENERATION_ID."""
    async def _generation():
        engine = ChatEngine.from_config(config)
        try:
            return await engine.generation_status(generation_id)
        finally:
            await engine.close()

    try:
        status = _run(_generation())
    except StreamChatError as e:
        raise click.ClickException(str(e)) from e

    table = Table(title=f"Generation {generation_id}", show_lines=False, border_style="dim")
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Model", status.model or "-")
    table.add_row("Finish reason", status.finish_reason or "[yellow]pending[/yellow]")
    table.add_row("Prompt tokens", str(status.tokens_prompt))
    table.add_row("Completion tokens", str(status.tokens_completion))
    table.add_row("Reasoning tokens", str(status.native_tokens_reasoning))
    table.add_row("Cost", f"${status.total_cost:.6f}")
    table.add_row("Generation time", f"{status.generation_time:.0f}ms")
    table.add_row("Cancelled", "yes" if status.cancelled else "no")
    console.print(table)


if __name__ == "__main__":
    main()
