"""localkb CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.logging import RichHandler

from localkb.cli.ask import ask_cmd
from localkb.cli.build import build_cmd
from localkb.cli.chat import chat_cmd
from localkb.cli.context import console
from localkb.cli.examples import examples_cmd
from localkb.cli.status import status_cmd
from localkb.cli.update import update_cmd


def _version_callback(value: bool) -> None:
    if value:
        try:
            ver = importlib.metadata.version("localkb")
        except importlib.metadata.PackageNotFoundError:
            ver = "dev"
        typer.echo(f"localkb {ver}")
        raise typer.Exit()


def setup_logging(verbose: bool) -> None:
    """Route library logging through rich; DEBUG with --verbose, WARNING otherwise."""
    root = logging.getLogger()
    root.handlers = [RichHandler(console=console, show_path=False, rich_tracebacks=True)]
    root.setLevel(logging.DEBUG if verbose else logging.WARNING)
    # litellm and its HTTP stack are noisy at DEBUG.
    for name in ("LiteLLM", "litellm", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


app = typer.Typer(
    name="localkb",
    help=(
        "localkb: question answering over local document collections.\n\n"
        "  localkb build    Index data/<kb>/ documents into db/<kb>.db.\n"
        "  localkb ask      Answer one question (rag, llm or hybrid).\n"
        "  localkb chat     Multi-turn chat with follow-up context."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Show debug logging."),
    ] = False,
) -> None:
    """localkb: question answering over local document collections."""
    setup_logging(verbose)


app.command("build")(build_cmd)
app.command("update")(update_cmd)
app.command("ask")(ask_cmd)
app.command("chat")(chat_cmd)
app.command("status")(status_cmd)
app.command("examples")(examples_cmd)


if __name__ == "__main__":
    app()
