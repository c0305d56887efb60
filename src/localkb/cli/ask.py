"""localkb ask: answer one question without conversation state."""

from __future__ import annotations

from enum import Enum
from typing import Annotated

import typer
from rich.table import Table

from localkb.cli.context import console, load_config_or_exit, make_backend
from localkb.cli.errors import err_backend, err_embedding_model_mismatch
from localkb.ingest.store import EmbeddingModelMismatch
from localkb.rag.engine import Engine
from localkb.rag.llm_client import BackendError


class Mode(str, Enum):
    rag = "rag"
    llm = "llm"
    hybrid = "hybrid"


def ask_cmd(
    question: Annotated[str, typer.Argument(help="The question to answer.")],
    mode: Annotated[
        Mode | None,
        typer.Option("--mode", "-m", help="rag, llm (few-shot) or hybrid. Overrides engine.mode."),
    ] = None,
    show_sources: Annotated[
        bool,
        typer.Option("--sources", help="Also print the retrieved chunks and their scores."),
    ] = False,
) -> None:
    """Answer a single question from the built knowledge bases."""
    cfg = load_config_or_exit()
    engine = Engine.from_config(cfg, make_backend(cfg))
    try:
        answer = engine.answer_once(question, mode.value if mode else None)
    except BackendError as exc:
        console.print(err_backend(str(exc), cfg.generation.api_base))
        raise typer.Exit(1) from exc
    except EmbeddingModelMismatch as exc:
        console.print(err_embedding_model_mismatch(str(exc)))
        raise typer.Exit(1) from exc

    console.print(answer.text or "[dim](no answer)[/]")
    console.print(f"[dim]mode: {answer.mode}[/]")
    if show_sources and answer.hits:
        table = Table(title="Sources")
        table.add_column("KB")
        table.add_column("Document")
        table.add_column("Chunk", justify="right")
        table.add_column("Score", justify="right")
        for source in answer.sources():
            table.add_row(
                source["knowledge_base"],
                source["document"],
                str(source["chunk_position"]),
                f"{source['score']:.3f}",
            )
        console.print(table)
