"""localkb chat: interactive multi-turn session through the conversation router."""

from __future__ import annotations

import uuid
from typing import Annotated

import typer

from localkb.cli.context import console, load_config_or_exit, make_backend
from localkb.cli.errors import err_no_databases
from localkb.rag.engine import Engine

_EXIT_WORDS = frozenset(["exit", "quit", ":q"])


def chat_cmd(
    session: Annotated[
        str | None,
        typer.Option("--session", help="Session id (default: a fresh random id)."),
    ] = None,
) -> None:
    """Chat with the knowledge bases. Follow-up questions keep their context."""
    cfg = load_config_or_exit()
    engine = Engine.from_config(cfg, make_backend(cfg))
    if not engine.knowledge_bases():
        console.print(err_no_databases(cfg.paths.db_dir))
    session_id = session or uuid.uuid4().hex

    console.print("[dim]Type 'exit' to quit.[/]")
    while True:
        try:
            question = console.input("[bold cyan]you>[/] ").strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            break
        if not question:
            continue
        if question.lower() in _EXIT_WORDS:
            break

        response = engine.handle_query(question, session_id=session_id)
        style = "red" if response["status"] == "error" else "default"
        console.print(f"[bold green]kb>[/] [{style}]{response['answer_text']}[/]")
        if response["mode"]:
            console.print(f"[dim]mode: {response['mode']}[/]")
