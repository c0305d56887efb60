"""localkb build: rebuild knowledge-base databases from scratch.

Each KB under ``paths.data_dir`` is re-segmented and re-embedded into a
temporary database that replaces ``<db_dir>/<kb>.db`` only once complete.

Usage:
  localkb build            (every KB)
  localkb build acme hr    (selected KBs)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from localkb.cli.context import console, load_config_or_exit, make_backend
from localkb.cli.errors import err_backend, err_kb_not_found, err_no_data_dir, warn_failed_files
from localkb.config import LocalKBConfig
from localkb.ingest.store import KnowledgeStore, discover_knowledge_bases, list_source_files
from localkb.rag.llm_client import BackendError


def resolve_knowledge_bases(cfg: LocalKBConfig, names: list[str] | None) -> list[str]:
    """Validate requested KB names against the data directory (all when none given)."""
    data_dir = Path(cfg.paths.data_dir)
    if not data_dir.is_dir():
        console.print(err_no_data_dir(str(data_dir)))
        raise typer.Exit(1)
    available = discover_knowledge_bases(data_dir)
    if not names:
        return available
    for name in names:
        if name not in available:
            console.print(err_kb_not_found(name, available))
            raise typer.Exit(1)
    return names


def build_cmd(
    names: Annotated[
        list[str] | None,
        typer.Argument(help="Knowledge bases to rebuild (default: all under the data directory)."),
    ] = None,
) -> None:
    """Rebuild knowledge-base databases from their documents."""
    cfg = load_config_or_exit()
    backend = make_backend(cfg)
    kbs = resolve_knowledge_bases(cfg, names)
    if not kbs:
        console.print(f"[yellow]No knowledge bases found in '{cfg.paths.data_dir}'.[/]")
        raise typer.Exit(0)

    failed: dict[str, str] = {}
    for name in kbs:
        store = KnowledgeStore.from_config(name, cfg, backend)
        files = list_source_files(store.kb_dir)
        if not files:
            console.print(f"  [dim](skip) {name}: no documents[/]")
            continue

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task(f"Building {name}", total=len(files))
            try:
                report = store.rebuild(files, on_file=lambda _doc: progress.advance(task))
            except BackendError as exc:
                progress.stop()
                console.print(err_backend(str(exc), cfg.generation.api_base))
                raise typer.Exit(1) from exc

        console.print(
            f"[green]✓[/] Built [bold]{store.db_path}[/]: "
            f"{len(report.processed)} file(s), {report.chunks_added} chunk(s)"
            + (f", {len(report.empty)} empty" if report.empty else "")
        )
        failed.update({f"{name}/{doc}": reason for doc, reason in report.failed.items()})

    if failed:
        console.print(warn_failed_files(failed))
        raise typer.Exit(1)
