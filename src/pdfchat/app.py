# /pdfchat/app.py
"""
Main application file for the PDF Chat CLI.
Handles the Command-Line Interface (CLI), user interactions, and renders the
conversation session's snapshots while answers stream in.
"""
import asyncio
import os
import signal
import sys
import time
from collections import Counter
from pathlib import Path

# Rich UI Components
from rich.console import Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.spinner import Spinner
from rich.text import Text

# Local module imports
from .client import RagServiceClient
from .config import MAX_UPLOAD_MB, RAG_SERVICE_URL, console
from .errors import DocumentRegistrationError, TransportFailure
from .models import Citation, RegisteredDocument, Role, SessionSnapshot
from .observability import get_logger
from .session import ConversationSession, OutcomeKind, TurnOutcome

logger = get_logger(__name__)

BACK_COMMAND = "back"
NEW_DOCUMENT_COMMAND = "new"
THINKING_LABEL = "AI is analyzing your PDF..."


# --- UI & Formatting Functions ---

def display_welcome_banner():
    """Displays the application's welcome banner."""
    console.print(Panel(
        "[bold magenta]PDF Chat - Conversational Q&A over your documents[/bold magenta]",
        subtitle="[cyan]Streaming answers with source citations[/cyan]",
        expand=False
    ))
    console.print(f"[green]Chat service: {RAG_SERVICE_URL}[/green]")


def format_sources(citations: tuple[Citation, ...] | list[Citation]) -> str:
    """Formats citations for display, grouping repeated references to the same source."""
    if not citations:
        return "No sources found."

    counts: Counter[str] = Counter()
    order: list[str] = []
    for citation in citations:
        name = citation.display_name or citation.source_id
        if name not in counts:
            order.append(name)
        counts[name] += 1

    lines = []
    for name in order:
        if counts[name] > 1:
            lines.append(f"- {name} (cited {counts[name]}x)")
        else:
            lines.append(f"- {name}")
    return "\n".join(lines)


def render_live_snapshot(snapshot: SessionSnapshot):
    """Builds the renderable shown while a turn is streaming."""
    parts = []
    if snapshot.live_answer_text:
        parts.append(Panel(Markdown(snapshot.live_answer_text), title="Answer", border_style="blue"))
    else:
        parts.append(Spinner("dots", text=Text(THINKING_LABEL, style="cyan")))
    if snapshot.live_status:
        parts.append(Text(snapshot.live_status, style="dim"))
    return Group(*parts)


def render_outcome(outcome: TurnOutcome, elapsed_s: float):
    """Prints the finalized answer or the failure of a turn."""
    if outcome.succeeded and outcome.message is not None:
        message = outcome.message
        console.print(Panel(Markdown(message.text or "_(empty answer)_"), title="Answer", border_style="blue"))
        console.print(Panel(format_sources(message.citations), title="Sources", border_style="yellow"))
        tokens = message.usage.total_tokens if message.usage else 0
        console.print(f"[Perf] Total: {elapsed_s:.2f}s | Tokens: {tokens}", markup=False)
        return

    if outcome.kind is OutcomeKind.CANCELLED:
        console.print("[yellow]Response cancelled.[/yellow]")
        return

    console.print(f"[bold red]Failed to get AI response: {outcome.error}[/bold red]")
    if outcome.partial_text:
        console.print(Panel(
            Text(outcome.partial_text, style="dim"),
            title="Incomplete answer",
            border_style="red",
        ))
    console.print("[dim]You can resubmit the question.[/dim]")


# --- Main Application Flow ---

def _resolve_upload_path(raw_input: str) -> tuple[Path | None, str | None]:
    """Normalizes and validates user-provided upload path."""
    cleaned = str(raw_input or "").strip().strip('"').strip("'")
    if not cleaned:
        return None, "Error: Empty path provided."
    try:
        resolved = Path(cleaned).expanduser().resolve(strict=True)
    except FileNotFoundError:
        return None, f"Error: File not found at '{cleaned}'"
    except OSError as exc:
        return None, f"Error: Invalid path '{cleaned}' ({exc})"

    if os.name == "nt":
        is_reserved_fn = getattr(os.path, "isreserved", None)
        if callable(is_reserved_fn) and is_reserved_fn(str(resolved)):
            return None, f"Error: Reserved path is not allowed: '{resolved}'"
    if not resolved.is_file():
        return None, f"Error: Path is not a regular file: '{resolved}'"
    if resolved.suffix.lower() != ".pdf":
        return None, f"Error: Only PDF files are allowed: '{resolved.name}'"
    return resolved, None


async def handle_document_upload(client: RagServiceClient, session: ConversationSession) -> RegisteredDocument | None:
    """CLI flow for uploading a PDF and switching the session to it."""
    file_path_str = Prompt.ask("Enter the full path to your PDF")
    file_path, error_message = _resolve_upload_path(file_path_str)
    if file_path is None:
        console.print(f"[bold red]{error_message}[/bold red]")
        return None

    data = file_path.read_bytes()
    try:
        with console.status(f"[bold cyan]Uploading and indexing {file_path.name}...[/bold cyan]", spinner="dots"):
            document = await client.register_document(data, file_path.name)
    except DocumentRegistrationError as exc:
        console.print(f"[bold red]Upload failed: {exc.message}[/bold red]")
        console.print(f"[dim]PDF files up to {MAX_UPLOAD_MB} MB are supported.[/dim]")
        logger.warning("cli_upload_failed", file_name=file_path.name, error=exc.message, error_type=type(exc).__name__)
        return None

    session.reset_for_new_corpus(document.corpus_handle)
    console.print(
        Panel(
            f"[green]OK Document indexed: [bold]{document.file_name}[/bold]\n"
            f"       Pages: {document.page_count}\n"
            f"       Corpus: {document.corpus_handle}",
            title="Upload Success",
            border_style="green",
        )
    )
    return document


def show_active_document(document: RegisteredDocument | None, session: ConversationSession):
    if document is None:
        console.print("[yellow]No PDF uploaded yet.[/yellow]")
        return
    turns = sum(1 for message in session.transcript if message.role is Role.ASSISTANT)
    console.print(
        f"[cyan]{document.file_name}[/cyan] ({document.page_count} pages) "
        f"- corpus [bold]{document.corpus_handle}[/bold], {turns} answered question(s)"
    )


async def run_turn(session: ConversationSession, query: str) -> TurnOutcome | None:
    """Streams one turn to the console. Ctrl-C cancels the turn instead of the program."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.cancel_turn)
        sigint_installed = True
    except (NotImplementedError, RuntimeError):
        sigint_installed = False

    start = time.perf_counter()
    try:
        with Live(render_live_snapshot(session.snapshot()), console=console, refresh_per_second=12, transient=True) as live:
            unsubscribe = session.subscribe(lambda snap: live.update(render_live_snapshot(snap)))
            try:
                outcome = await session.send(query)
            finally:
                unsubscribe()
    finally:
        if sigint_installed:
            loop.remove_signal_handler(signal.SIGINT)

    if outcome is not None:
        render_outcome(outcome, time.perf_counter() - start)
    return outcome


async def handle_qa_session(client: RagServiceClient, session: ConversationSession) -> RegisteredDocument | None:
    """Enters the Q&A loop; returns a newly uploaded document if the user switched PDFs."""
    if not session.corpus_handle:
        console.print("[bold red]No PDF uploaded yet. Upload a PDF file to start chatting.[/bold red]")
        return None

    switched_to = None
    console.print(
        "\n[bold green]Q&A Session Started.[/bold green] "
        f"[italic]Type '{NEW_DOCUMENT_COMMAND}' to chat about another PDF or '{BACK_COMMAND}' to return to menu.[/italic]"
    )
    console.print('[dim]Try: "What is this document about?" or "Summarize the main points"[/dim]')
    while True:
        query = Prompt.ask("[bold cyan]Ask a question about your PDF[/bold cyan]")
        command = query.strip().lower()
        if command == BACK_COMMAND:
            break
        if command == NEW_DOCUMENT_COMMAND:
            document = await handle_document_upload(client, session)
            if document is not None:
                switched_to = document
            continue
        if query.strip():
            await run_turn(session, query)
    return switched_to


async def handle_service_check(client: RagServiceClient):
    """Verifies that the chat service and its upstream credentials work."""
    try:
        with console.status("[bold cyan]Checking chat service...[/bold cyan]", spinner="dots"):
            health = await client.check_health()
    except TransportFailure as exc:
        console.print(f"[bold red]Service check failed: {exc.message}[/bold red]")
        return
    console.print(
        f"[green]Service OK[/green] - model {health.get('chatModel')}, "
        f"{health.get('modelCount', 0)} models available"
    )


async def _main_loop():
    document: RegisteredDocument | None = None
    async with RagServiceClient() as client:
        session = ConversationSession(client)
        while True:
            console.print("\n[bold]Main Menu:[/bold]")
            console.print("[green]1. Upload PDF[/green]")
            console.print("[cyan]2. Show Active Document[/cyan]")
            console.print("[blue]3. Start Q&A Session[/blue]")
            console.print("[magenta]4. Check Chat Service[/magenta]")
            console.print("[red]5. Exit[/red]")

            choice = Prompt.ask("Choose an option", choices=["1", "2", "3", "4", "5"])

            if choice == "1":
                document = await handle_document_upload(client, session) or document
            elif choice == "2":
                show_active_document(document, session)
            elif choice == "3":
                document = await handle_qa_session(client, session) or document
            elif choice == "4":
                await handle_service_check(client)
            elif choice == "5":
                break


def main():
    """Main application loop."""
    display_welcome_banner()
    try:
        asyncio.run(_main_loop())
    except KeyboardInterrupt:
        pass

    console.print("\n[bold magenta]Goodbye! Hope you had a productive session.[/bold magenta]")
    sys.exit(0)

if __name__ == "__main__":
    main()
