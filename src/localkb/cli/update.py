"""localkb update: incrementally re-index changed documents.

Unchanged files (same SHA-256) are skipped. Changed or new files are
re-segmented and re-embedded. With ``--policy append`` (default) their earlier
chunks stay searchable; ``--policy replace`` deletes them first.
"""

from __future__ import annotations

from typing import Annotated

import typer
from rich.table import Table

from localkb.cli.build import resolve_knowledge_bases
from localkb.cli.context import console, load_config_or_exit, make_backend
from localkb.cli.errors import err_embedding_model_mismatch, warn_append_policy, warn_failed_files
from localkb.ingest.store import EmbeddingModelMismatch, KnowledgeStore, UpdatePolicy, list_source_files


def update_cmd(
    names: Annotated[
        list[str] | None,
        typer.Argument(help="Knowledge bases to update (default: all under the data directory)."),
    ] = None,
    policy: Annotated[
        UpdatePolicy | None,
        typer.Option("--policy", help="What to do with a changed file's old chunks (overrides store.update_policy)."),
    ] = None,
) -> None:
    """Re-index documents whose content changed since the last build or update."""
    cfg = load_config_or_exit()
    if policy is not None:
        cfg.store.update_policy = policy.value
    backend = make_backend(cfg)
    kbs = resolve_knowledge_bases(cfg, names)

    table = Table(title="Update")
    table.add_column("KB")
    table.add_column("Changed", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Chunks +", justify="right")
    table.add_column("Chunks -", justify="right")
    table.add_column("Failed", justify="right")

    failed: dict[str, str] = {}
    appended = False
    for name in kbs:
        store = KnowledgeStore.from_config(name, cfg, backend)
        try:
            report = store.incremental_update(list_source_files(store.kb_dir))
        except EmbeddingModelMismatch as exc:
            console.print(err_embedding_model_mismatch(str(exc)))
            raise typer.Exit(1) from exc
        table.add_row(
            name,
            str(len(report.processed) + len(report.empty)),
            str(len(report.unchanged)),
            str(report.chunks_added),
            str(report.chunks_removed),
            str(len(report.failed)),
        )
        failed.update({f"{name}/{doc}": reason for doc, reason in report.failed.items()})
        appended = appended or (store.update_policy is UpdatePolicy.APPEND and bool(report.processed))

    console.print(table)
    if appended:
        console.print(warn_append_policy())
    if failed:
        console.print(warn_failed_files(failed))
        raise typer.Exit(1)
