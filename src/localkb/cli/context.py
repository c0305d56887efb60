"""Shared CLI plumbing: config loading and backend construction."""

from __future__ import annotations

import typer
from rich.console import Console

from localkb.cli.errors import err_config
from localkb.config import ConfigError, LocalKBConfig, load_config
from localkb.rag.llm_client import LiteLLMBackend

console = Console()


def load_config_or_exit() -> LocalKBConfig:
    """Load config from the current directory, exiting with a message on error."""
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc


def make_backend(cfg: LocalKBConfig) -> LiteLLMBackend:
    return LiteLLMBackend(cfg.embedding.model, cfg.generation)
