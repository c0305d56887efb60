"""localkb rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from localkb.cli.errors import err_no_databases
    console.print(err_no_databases("db"))
    raise typer.Exit(1)
"""

from __future__ import annotations

from rich.markup import escape


def err_config(message: str) -> str:
    """Config file could not be loaded or failed validation."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {escape(message)}\n"
        "  Fix localkb.yaml (or ~/.localkb/config.yaml) and retry."
    )


def err_no_data_dir(data_dir: str) -> str:
    """The documents root does not exist."""
    return (
        f"[red]Error:[/] No data directory found at '{data_dir}'.\n"
        f"  Create one sub-directory per knowledge base:  mkdir -p {data_dir}/<kb>"
    )


def err_kb_not_found(name: str, available: list[str]) -> str:
    """Named knowledge base has no data directory."""
    listed = ", ".join(available) if available else "(none)"
    return (
        f"[red]Error:[/] Knowledge base '{name}' not found.\n"
        f"  Available: {listed}"
    )


def err_no_databases(db_dir: str) -> str:
    """No built knowledge-base database."""
    return (
        f"[red]Error:[/] No knowledge-base databases found in '{db_dir}'.\n"
        "  Run:  localkb build"
    )


def err_embedding_model_mismatch(detail: str) -> str:
    """KB was embedded with a model other than the configured one."""
    return (
        "[red]Error:[/] Embedding model mismatch.\n"
        f"  {detail}\n"
        "  Run:  localkb build  to re-embed, or set embedding.model back to the database's model."
    )


def err_backend(detail: str, api_base: str | None) -> str:
    """Embedding/generation backend unreachable or failing."""
    where = api_base or "the default endpoint"
    return (
        f"[red]Error:[/] Model backend request failed ({where}).\n"
        f"  {detail}\n"
        "  Check the model server is running and the model is pulled,\n"
        "  or set generation.api_base / OLLAMA_HOST."
    )


def err_unknown_mode(mode: str) -> str:
    return (
        f"[red]Error:[/] Unknown mode '{mode}'.\n"
        "  Use one of:  rag, llm, hybrid"
    )


def warn_failed_files(failed: dict[str, str]) -> str:
    """Some files could not be read or embedded; they keep their previous state."""
    lines = "\n".join(f"    {escape(doc)}: {escape(reason)}" for doc, reason in sorted(failed.items()))
    return (
        f"[yellow]⚠[/] {len(failed)} file(s) could not be processed and were left out:\n"
        f"{lines}\n"
        "  Re-run:  localkb update"
    )


def warn_append_policy() -> str:
    """Append policy keeps superseded chunks searchable."""
    return (
        "[yellow]⚠[/] update_policy is 'append': earlier versions of changed files stay retrievable.\n"
        "  Use  --policy replace  or  localkb build  to drop them."
    )
