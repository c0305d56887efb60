"""localkb status: knowledge bases, their databases, and example indices."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from rich.panel import Panel
from rich.table import Table

from localkb.cli.context import console, load_config_or_exit
from localkb.db.connection import Database, db_path_for
from localkb.db.repository import Repository
from localkb.ingest.store import discover_knowledge_bases, list_source_files
from localkb.rag.examples import example_files


def status_cmd() -> None:
    """Show every knowledge base with its document, chunk and example counts."""
    cfg = load_config_or_exit()
    data_dir = Path(cfg.paths.data_dir)
    db_dir = Path(cfg.paths.db_dir)
    examples_dir = Path(cfg.paths.examples_dir)

    console.print(
        Panel(
            "\n".join(
                [
                    f"Mode:        [bold]{cfg.engine.mode}[/]",
                    f"Embedding:   {cfg.embedding.model}",
                    f"Generation:  {cfg.generation.model}",
                    f"Update:      {cfg.store.update_policy}",
                ]
            ),
            title="[bold]localkb[/]",
            expand=False,
        )
    )

    names = sorted(set(discover_knowledge_bases(data_dir)) | set(discover_knowledge_bases(examples_dir)))
    if not names:
        console.print(f"[yellow]No knowledge bases found in '{data_dir}' or '{examples_dir}'.[/]")
        return

    table = Table(title="Knowledge bases")
    table.add_column("KB")
    table.add_column("Files", justify="right")
    table.add_column("Indexed", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Next id", justify="right")
    table.add_column("Examples", justify="right")
    table.add_column("Embedded with")

    for name in names:
        files = list_source_files(data_dir / name)
        db_path = db_path_for(db_dir, name)
        indexed = chunks = next_id = "-"
        model = "[dim]not built[/]"
        if db_path.exists():
            try:
                with Database(db_path) as conn:
                    repo = Repository(conn)
                    indexed = str(len(repo.list_files()))
                    chunks = str(repo.count_chunks())
                    next_id = str(repo.high_water_mark() + 1)
                    model = repo.embedding_model or "?"
            except sqlite3.DatabaseError as exc:
                model = f"[red]unreadable ({exc})[/]"
        example_count = len(example_files(examples_dir / name))
        table.add_row(name, str(len(files)), indexed, chunks, next_id, f"{example_count} file(s)", model)

    console.print(table)
