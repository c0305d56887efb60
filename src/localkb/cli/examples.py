"""localkb examples: (re)build the few-shot example embedding caches."""

from __future__ import annotations

from typing import Annotated

import typer

from localkb.cli.context import console, load_config_or_exit, make_backend
from localkb.cli.errors import err_backend
from localkb.rag.examples import ExampleSelector
from localkb.rag.llm_client import BackendError


def examples_cmd(
    force: Annotated[
        bool,
        typer.Option("--force", help="Re-embed every example even if its cache is current."),
    ] = False,
) -> None:
    """Index few-shot examples for every knowledge base that has them."""
    cfg = load_config_or_exit()
    selector = ExampleSelector.from_config(cfg, make_backend(cfg))
    kbs = selector.knowledge_bases()
    if not kbs:
        console.print(f"[yellow]No example directories found in '{cfg.paths.examples_dir}'.[/]")
        raise typer.Exit(0)

    if force:
        for kb in kbs:
            selector.cache_path(kb).unlink(missing_ok=True)

    try:
        for kb in kbs:
            index = selector.ensure_index(kb)
            console.print(f"[green]✓[/] {kb}: {len(index.examples)} example(s) → {selector.cache_path(kb)}")
    except BackendError as exc:
        console.print(err_backend(str(exc), cfg.generation.api_base))
        raise typer.Exit(1) from exc
