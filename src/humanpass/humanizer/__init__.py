"""Rewrite engine adapter.

:class:`RewriteEngine` satisfies the :class:`~humanpass.core.protocols.Rewriter`
protocol: given the original text and a strategy hint it returns one
humanized candidate, or raises :class:`RewriteUnavailableError`.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING, Any, Self

from humanpass.humanizer.client import (
    CompletionOptions,
    RewriteClient,
    RewriteError,
    RewriteUnavailableError,
)
from humanpass.humanizer.prompts import PromptBuilder, clean_completion
from humanpass.humanizer.strategies import StrategyHint, select_hint

if TYPE_CHECKING:
    import httpx

    from humanpass.config import RewriteConfig

logger = logging.getLogger(__name__)

__all__ = ["RewriteEngine", "RewriteUnavailableError", "StrategyHint", "select_hint"]


class RewriteEngine:
    """Stateless adapter over the external rewrite model.

    Can be entered as an async context manager to reuse one HTTP connection
    pool across attempts; outside a context each call opens its own client.

    Args:
        config: Rewrite endpoint and sampling settings.
        transport: Optional httpx transport (tests inject ``MockTransport``).
    """

    def __init__(
        self,
        config: RewriteConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._prompt_builder = PromptBuilder()
        self._options = CompletionOptions(
            temperature=config.temperature, max_tokens=config.max_tokens
        )
        self._shared: RewriteClient | None = None

    def _make_client(self) -> RewriteClient:
        return RewriteClient(
            base_url=self._config.base_url,
            api_key=os.environ.get(self._config.api_key_env) if self._config.api_key_env else None,
            timeout=self._config.timeout_seconds,
            max_retries=self._config.max_retries,
            retry_backoff=self._config.retry_backoff_seconds,
            transport=self._transport,
        )

    async def __aenter__(self) -> Self:
        self._shared = await self._make_client().__aenter__()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._shared is not None:
            await self._shared.__aexit__(*exc)
            self._shared = None

    async def rewrite(self, text: str, hint: StrategyHint) -> str:
        """Produce one humanized candidate of ``text``.

        Args:
            text: The job's original text.
            hint: Strategy selected for this attempt.

        Returns:
            The cleaned candidate text.

        Raises:
            RewriteUnavailableError: On any failure, including the overall
                call timeout; the cause is chained.
        """
        system_prompt = self._prompt_builder.build(hint)
        # Budget covers every transport retry plus backoff
        budget = self._config.timeout_seconds * max(1, self._config.max_retries) + 5.0
        try:
            if self._shared is not None:
                result = await asyncio.wait_for(
                    self._shared.complete(
                        system_prompt, text, self._config.model, self._options
                    ),
                    timeout=budget,
                )
            else:
                async with self._make_client() as client:
                    result = await asyncio.wait_for(
                        client.complete(system_prompt, text, self._config.model, self._options),
                        timeout=budget,
                    )
        except TimeoutError as exc:
            raise RewriteUnavailableError(
                f"Rewrite exceeded {budget:.0f}s (strategy={hint.name})"
            ) from exc
        except RewriteError as exc:
            raise RewriteUnavailableError(f"{exc} (strategy={hint.name})") from exc

        candidate = clean_completion(result.text)
        if not candidate:
            raise RewriteUnavailableError(
                f"Completion was empty after cleanup (strategy={hint.name})"
            )
        logger.debug(
            "Rewrite produced %d chars with %s (%d completion tokens)",
            len(candidate),
            hint.name,
            result.completion_tokens,
        )
        return candidate
