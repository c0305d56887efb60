"""LiteLLM backend: the two collaborator calls the engine depends on.

Everything that needs an embedding or a completion goes through a
:class:`Backend`. :class:`LiteLLMBackend` is the production implementation;
tests substitute a deterministic fake. LiteLLM's built-in retry is used
(``num_retries``) and any failure that survives it is re-raised as
:class:`BackendError`.
"""

from __future__ import annotations

import logging
from typing import Protocol

import litellm

from localkb.config import GenerationCfg

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]

logger = logging.getLogger(__name__)


class BackendError(RuntimeError):
    """Raised when an embedding or generation call fails after retries."""


class Backend(Protocol):
    """Embedding + generation collaborator."""

    @property
    def embedding_model(self) -> str:
        """Identity of the embedding model; stored vectors are only comparable within one."""
        ...

    def embed(self, text: str) -> list[float]: ...

    def generate(
        self,
        prompt: str,
        *,
        temperature: float = 0.0,
        max_tokens: int = 64,
        model: str | None = None,
    ) -> str: ...


class LiteLLMBackend:
    """Backend that routes embedding and completion calls through litellm.

    Args:
        embedding_model: LiteLLM embedding model string (provider/model format).
        generation: Generation settings (default model, api_base, retries).
    """

    def __init__(self, embedding_model: str, generation: GenerationCfg | None = None) -> None:
        self._embedding_model = embedding_model
        self._generation = generation or GenerationCfg()

    @property
    def embedding_model(self) -> str:
        return self._embedding_model

    def _common_kwargs(self) -> dict:
        kwargs: dict = {"num_retries": self._generation.num_retries}
        if self._generation.api_base:
            kwargs["api_base"] = self._generation.api_base
        return kwargs

    def embed(self, text: str) -> list[float]:
        """Call litellm.embedding() with retry/backoff. Returns the embedding vector.

        Raises:
            BackendError: On persistent failure or an empty embedding.
        """
        try:
            response = litellm.embedding(
                model=self._embedding_model,
                input=[text],
                **self._common_kwargs(),
            )
            vector = response.data[0]["embedding"]
        except Exception as exc:
            raise BackendError(f"embedding failed ({self._embedding_model}): {exc}") from exc
        if not vector:
            raise BackendError(f"embedding model '{self._embedding_model}' returned an empty vector")
        return list(vector)

    def generate(
        self,
        prompt: str,
        *,
        temperature: float = 0.0,
        max_tokens: int = 64,
        model: str | None = None,
    ) -> str:
        """Call litellm.completion() with retry/backoff. Returns the stripped content.

        Args:
            prompt: Full prompt, sent as a single user message.
            temperature: Sampling temperature (0 = deterministic).
            max_tokens: Maximum output tokens.
            model: Override the configured generation model.

        Raises:
            BackendError: On persistent API failure after retries.
        """
        model = model or self._generation.model
        logger.debug("generate model=%s temperature=%s max_tokens=%s", model, temperature, max_tokens)
        try:
            response = litellm.completion(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
                **self._common_kwargs(),
            )
        except Exception as exc:
            raise BackendError(f"generation failed ({model}): {exc}") from exc
        return (response.choices[0].message.content or "").strip()
