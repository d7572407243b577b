#!/usr/bin/env python3
"""
Paper Chat — main entry point.

Usage:
    python -m paperchat.main ingest <file> [--title T] [--user U] [--tier T]   # extract, chunk & analyse a paper
    python -m paperchat.main papers [--user U]                               # list papers
    python -m paperchat.main summary <paper_id> [--user U]                   # hierarchical summary
    python -m paperchat.main ask <paper_id> "question" [--user U]            # one question about a paper
    python -m paperchat.main chat <paper_id> [--user U]                      # interactive chat about a paper
    python -m paperchat.main history <paper_id> [--user U]                   # chat history
    python -m paperchat.main delete <paper_id> [--user U]                    # delete paper, chunks & chat
"""

from __future__ import annotations

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.panel import Panel
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table
from rich.text import Text

from paperchat.core.config import DEFAULT_TIER, DEFAULT_USER_ID, LOG_LEVEL
from paperchat.core.errors import PaperChatError
from paperchat.service import PaperChatService

console = Console()

OPTIONS = ("--title", "--user", "--tier")


# ── Helpers ─────────────────────────────────────────────────────────────────── #

def setup_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )


def parse_args(args: list[str]) -> tuple[list[str], dict[str, str]]:
    """Split argv into positionals and ``--flag value`` options."""
    positional: list[str] = []
    options: dict[str, str] = {}
    i = 0
    while i < len(args):
        if args[i] in OPTIONS and i + 1 < len(args):
            options[args[i][2:]] = args[i + 1]
            i += 2
        else:
            positional.append(args[i])
            i += 1
    return positional, options


def _status_style(status: str) -> str:
    return {
        "completed": "green",
        "analyzing": "yellow",
        "failed": "red",
    }.get(status, "dim")


# ── Commands ────────────────────────────────────────────────────────────────── #

def cmd_ingest(service: PaperChatService, path: str, title: str | None, user_id: str, tier: str) -> None:
    console.print(Panel(f"[bold]Ingesting[/bold] {path}  [dim](tier: {tier})[/dim]"))

    with Progress(
        TextColumn("[bold blue]Analysing"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        console=console,
    ) as progress:
        task = progress.add_task("analyse", total=100)
        paper = service.ingest(
            user_id,
            path,
            title=title,
            tier=tier,
            on_progress=lambda pct: progress.update(task, completed=pct),
        )

    kb = service.store.get_knowledge_base(paper.id)
    n_chunks = len(kb.chunks) if kb else 0
    console.print(f"  ✓ [green]{paper.title}[/green] — {n_chunks} chunks analysed")
    console.print(f"[bold]Paper ID:[/bold] {paper.id}")
    if paper.keywords:
        console.print(f"[dim]Keywords: {', '.join(paper.keywords)}[/dim]")
    console.print(Panel(Markdown(paper.summary or "_no summary_"), title="[bold]SUMMARY[/bold]"))


def cmd_papers(service: PaperChatService, user_id: str) -> None:
    papers = service.store.list_papers(user_id)
    if not papers:
        console.print("[dim]No papers found.[/dim]")
        return

    table = Table(title=f"Papers for {user_id}")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Created", style="dim")
    for p in papers:
        style = _status_style(p.processing_status)
        table.add_row(
            p.id,
            p.title[:60],
            f"[{style}]{p.processing_status}[/{style}]",
            f"{p.processing_progress}%",
            p.created_at[:19],
        )
    console.print(table)


def cmd_summary(service: PaperChatService, paper_id: str, user_id: str) -> None:
    paper = service.store.get_owned_paper(paper_id, user_id)
    kb = service.store.get_knowledge_base(paper_id)
    if kb is None:
        console.print(f"[yellow]Paper {paper_id} has not been analysed yet.[/yellow]")
        console.print(Panel(Text(paper.content_preview), title=f"[bold]{paper.title}[/bold]"))
        return

    hs = kb.hierarchical_summary
    lines = [f"# {paper.title}", "", hs.overview, ""]
    for section in hs.sections:
        lines += [f"## {section.title}", section.summary, ""]
    if hs.keywords:
        lines.append(f"**Keywords:** {', '.join(hs.keywords)}")
    console.print(Panel(Markdown("\n".join(lines)), title="[bold]HIERARCHICAL SUMMARY[/bold]"))

    degraded = sum(1 for c in kb.chunks if not c.keywords)
    console.print(f"[dim]{len(kb.chunks)} chunks, {degraded} without keywords[/dim]")


def cmd_ask(service: PaperChatService, paper_id: str, question: str, user_id: str) -> None:
    console.print(Panel(f"[bold]Question:[/bold] {question}"))
    with console.status("Thinking …"):
        message = service.ask(paper_id, user_id, question)

    meta = message.metadata
    console.print(Panel(Markdown(message.content), title="[bold]ANSWER[/bold]"))
    calls = ", ".join(c["name"] for c in meta.get("tool_calls", [])) or "none"
    console.print(
        f"[dim]{meta.get('status')} — {meta.get('turns')} turn(s), "
        f"{meta.get('api_calls_made')} function call(s): {calls}[/dim]"
    )


def cmd_chat(service: PaperChatService, paper_id: str, user_id: str) -> None:
    paper = service.store.get_owned_paper(paper_id, user_id)
    console.print(
        f"\n[bold green]Chatting about:[/bold green] {paper.title}\n"
        "[dim]Type a question, 'history', or 'q' to quit[/dim]"
    )

    while True:
        try:
            raw = input("  → ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print("\n[dim]Exiting chat.[/dim]")
            return

        if not raw:
            continue
        low = raw.lower()
        if low in ("q", "quit", "exit"):
            return
        if low == "history":
            cmd_history(service, paper_id, user_id)
            continue

        try:
            cmd_ask(service, paper_id, raw, user_id)
        except PaperChatError as exc:
            console.print(f"[red]{exc}[/red]")


def cmd_history(service: PaperChatService, paper_id: str, user_id: str) -> None:
    messages = service.history(paper_id, user_id)
    if not messages:
        console.print("[dim]No messages yet.[/dim]")
        return

    table = Table(title="Chat History", show_lines=True)
    table.add_column("When", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Message")
    for m in messages:
        content = m.content if len(m.content) <= 300 else m.content[:300] + "…"
        table.add_row(m.created_at[:19], m.role, content)
    console.print(table)


def cmd_delete(service: PaperChatService, paper_id: str, user_id: str) -> None:
    service.delete_paper(paper_id, user_id)
    console.print(f"[green]Deleted paper {paper_id}[/green]")


# ── Entry point ─────────────────────────────────────────────────────────────── #

def main() -> None:
    if len(sys.argv) < 2:
        console.print(__doc__)
        return

    setup_logging()
    cmd = sys.argv[1].lower()
    args, opts = parse_args(sys.argv[2:])
    user_id = opts.get("user", DEFAULT_USER_ID)

    if cmd not in ("ingest", "papers", "summary", "ask", "chat", "history", "delete"):
        console.print(f"[red]Unknown command: {cmd}[/red]")
        console.print(__doc__)
        return
    if cmd != "papers" and not args:
        console.print(f"[red]Missing argument for '{cmd}'.[/red]")
        console.print(__doc__)
        return

    service = PaperChatService.from_config()
    try:
        if cmd == "ingest":
            cmd_ingest(service, args[0], opts.get("title"), user_id, opts.get("tier", DEFAULT_TIER))
        elif cmd == "papers":
            cmd_papers(service, user_id)
        elif cmd == "summary":
            cmd_summary(service, args[0], user_id)
        elif cmd == "ask":
            if len(args) < 2:
                console.print('[red]Usage: python -m paperchat.main ask <paper_id> "question"[/red]')
                return
            cmd_ask(service, args[0], " ".join(args[1:]), user_id)
        elif cmd == "chat":
            cmd_chat(service, args[0], user_id)
        elif cmd == "history":
            cmd_history(service, args[0], user_id)
        elif cmd == "delete":
            cmd_delete(service, args[0], user_id)
    except PaperChatError as exc:
        console.print(f"[red]{exc}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
