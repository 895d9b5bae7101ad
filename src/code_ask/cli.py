import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

app = typer.Typer(name="code-ask", help="Ask questions about a codebase.")
threads_app = typer.Typer(name="threads", help="Stored conversations.")
app.add_typer(threads_app, name="threads")
console = Console()


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(level=level, format="%(name)s | %(levelname)s | %(message)s")


def _store():
    from code_ask.config import settings
    from code_ask.services.storage_service import JsonConversationStore

    return JsonConversationStore(settings.resolved_data_dir)


def _resources(work_dir: Path, paths: list[str]):
    from code_ask.models.schemas import Resource

    if not paths:
        return [Resource(name=work_dir.resolve().name or str(work_dir), path=".")]
    resources = []
    for p in paths:
        resolved = (work_dir / p).resolve()
        if not resolved.is_dir():
            console.print(f"[red]Not a directory: {p}[/red]")
            raise typer.Exit(1)
        resources.append(Resource(name=resolved.name, path=p))
    return resources


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question about the code"),
    path: list[str] = typer.Option([], "--path", "-p", help="Directories to search (relative to the work dir)"),
    model: str = typer.Option("", "--model", "-m", help="Named model config from models.yaml"),
    continue_id: str = typer.Option("", "--continue", "-c", help="Conversation id to continue, or 'last'"),
    no_stream: bool = typer.Option(False, "--no-stream", help="Print only the final answer"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging"),
) -> None:
    """Answer a question by letting the model search the code."""
    from code_ask.agents.ask_agent import AskAgent
    from code_ask.agents.console_callback import ConsoleCallback
    from code_ask.config import LoopLimits, get_model_config, settings
    from code_ask.models.agent_schemas import (
        ConversationLoadError,
        ConversationNotFoundError,
        MaxIterationsError,
        ProviderError,
    )
    from code_ask.search import RipgrepCapability, SearchEngine
    from code_ask.services.llm_service import create_provider
    from code_ask.tools import Truncator, create_default_registry

    _setup_logging(verbose)

    work_dir = Path(settings.work_dir)
    resources = _resources(work_dir, path)
    store = _store()

    try:
        config = get_model_config(model)
        provider = create_provider(config)
    except (ValueError, ProviderError) as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(1)

    engine = SearchEngine(RipgrepCapability(), timeout=settings.search_timeout)
    registry = create_default_registry(
        work_dir, engine=engine, truncator=Truncator(output_dir=settings.resolved_output_dir)
    )
    agent = AskAgent(
        provider=provider,
        registry=registry,
        store=store,
        resources=resources,
        limits=LoopLimits(max_rounds=settings.max_rounds),
        max_tokens=config.max_tokens,
    )

    if continue_id:
        try:
            existing = store.latest() if continue_id == "last" else store.load(continue_id)
        except ConversationNotFoundError:
            existing = None
        except ConversationLoadError as e:
            console.print(str(e), style="red", markup=False)
            raise typer.Exit(1)
        if existing is None:
            console.print(f"[red]No conversation found: {continue_id}[/red]")
            raise typer.Exit(1)
        agent.continue_conversation(existing)
        console.print(f"[dim]Continuing: {existing.title} ({existing.id})[/dim]")

    callback = ConsoleCallback(console, show_results=verbose)
    if verbose:
        callback.print_tools(registry)
    on_event = None if no_stream else callback

    try:
        answer = asyncio.run(agent.ask_streaming(question, on_event))
    except ProviderError as e:
        console.print(f"\n[red]Request failed: {e}[/red]")
        raise typer.Exit(1)
    except MaxIterationsError:
        console.print(f"\n[red]Max iterations ({settings.max_rounds}) reached without an answer.[/red]")
        raise typer.Exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        raise typer.Exit(130)

    callback.on_finish(answer, streamed=not no_stream)
    if agent.conversation is not None:
        console.print(f"[dim]Conversation: {agent.conversation.id}[/dim]")


@threads_app.command("list")
def threads_list() -> None:
    """List stored conversations, newest first."""
    conversations = _store().list()
    if not conversations:
        console.print("[dim]No conversations.[/dim]")
        return
    table = Table(border_style="dim")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Model", style="dim")
    table.add_column("Updated", style="dim")
    table.add_column("Messages", justify="right")
    for c in conversations:
        table.add_row(c.id, c.title, c.model, c.updated.strftime("%Y-%m-%d %H:%M"), str(len(c.messages)))
    console.print(table)


@threads_app.command("show")
def threads_show(conversation_id: str = typer.Argument(..., help="Conversation id")) -> None:
    """Print a stored conversation."""
    from code_ask.models.agent_schemas import ConversationLoadError, ConversationNotFoundError
    from code_ask.models.schemas import AssistantMessage, UserMessage

    try:
        conversation = _store().load(conversation_id)
    except ConversationNotFoundError:
        console.print(f"[red]No conversation found: {conversation_id}[/red]")
        raise typer.Exit(1)
    except ConversationLoadError as e:
        console.print(str(e), style="red", markup=False)
        raise typer.Exit(1)

    console.rule(f"[bold]{conversation.title}")
    for msg in conversation.messages:
        if isinstance(msg, UserMessage):
            console.print()
            console.print(Text(f"> {msg.content}", style="bold blue"))
        elif isinstance(msg, AssistantMessage):
            if msg.content:
                console.print(Markdown(msg.content))
            for call in msg.tool_calls:
                console.print(Text(f"  {call.name} {call.arguments}", style="dim"))


@threads_app.command("delete")
def threads_delete(conversation_id: str = typer.Argument(..., help="Conversation id")) -> None:
    """Delete a stored conversation."""
    from code_ask.models.agent_schemas import ConversationNotFoundError

    try:
        _store().delete(conversation_id)
    except ConversationNotFoundError:
        console.print(f"[red]No conversation found: {conversation_id}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Deleted {conversation_id}[/green]")


@app.command()
def cleanup(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable detailed logging")) -> None:
    """Remove saved tool outputs older than a day and empty conversation directories."""
    from code_ask.config import settings
    from code_ask.tools.truncation import cleanup_empty_conversation_dirs, cleanup_old_outputs

    _setup_logging(verbose)
    output_dir = settings.resolved_output_dir
    files = cleanup_old_outputs(output_dir)
    dirs = cleanup_empty_conversation_dirs(output_dir)
    console.print(f"Removed {files} output file(s) and {dirs} empty director{'y' if dirs == 1 else 'ies'}.")


if __name__ == "__main__":
    app()
