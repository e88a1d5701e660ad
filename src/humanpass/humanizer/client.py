"""Async chat-completions HTTP client with retry logic."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Self

import httpx

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class RewriteError(Exception):
    """Base exception for rewrite engine errors."""


class RewriteConnectionError(RewriteError):
    """Rewrite endpoint is unreachable."""


class RewriteTimeoutError(RewriteError):
    """Request exceeded configured timeout."""


class RewriteRateLimitedError(RewriteError):
    """Endpoint answered HTTP 429."""


class RewriteProviderError(RewriteError):
    """Endpoint answered with an error status or a malformed body.

    Attributes:
        status_code: HTTP status, or None for malformed bodies.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class RewriteEmptyResponseError(RewriteError):
    """The model returned an empty completion."""


class RewriteUnavailableError(RewriteError):
    """No candidate could be produced for this attempt.

    Raised by :class:`~humanpass.humanizer.RewriteEngine`; the underlying
    client error is chained as ``__cause__``.
    """


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CompletionOptions:
    """Sampling parameters for a chat-completions request."""

    temperature: float = 0.7
    max_tokens: int = 2000

    def to_dict(self) -> dict[str, Any]:
        return {"temperature": self.temperature, "max_tokens": self.max_tokens}


@dataclass(frozen=True, slots=True)
class CompletionResult:
    """Result of a non-streaming completion."""

    text: str
    model: str
    prompt_tokens: int
    completion_tokens: int


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class RewriteClient:
    """Async HTTP client for an OpenAI-compatible ``/v1/chat/completions`` API.

    Usage::

        async with RewriteClient(base_url, api_key) as client:
            result = await client.complete(system, text, model="gpt-4.1-mini")
            print(result.text)
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 60.0,
        max_retries: int = 2,
        retry_backoff: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._retry_backoff = retry_backoff
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=httpx.Timeout(self._timeout, connect=10.0),
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *_: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Return the underlying httpx client, raising if not in context manager."""
        if self._client is None:
            raise RuntimeError("RewriteClient must be used as an async context manager")
        return self._client

    async def complete(
        self,
        system_prompt: str,
        user_text: str,
        model: str,
        options: CompletionOptions | None = None,
    ) -> CompletionResult:
        """Request one completion, retrying transient transport failures.

        Connection errors and timeouts are retried with exponential backoff
        (``retry_backoff * 2**n``). Error statuses are not retried: the
        orchestrator decides whether a new attempt is worth it.

        Raises:
            RewriteConnectionError: Endpoint unreachable after all retries.
            RewriteTimeoutError: Request timed out after all retries.
            RewriteRateLimitedError: HTTP 429.
            RewriteProviderError: Other error status or malformed body.
            RewriteEmptyResponseError: The completion was empty.
        """
        if options is None:
            options = CompletionOptions()

        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_text},
            ],
            **options.to_dict(),
        }

        last_error: RewriteError | None = None
        for attempt in range(self._max_retries):
            try:
                resp = await self.client.post("/v1/chat/completions", json=payload)
            except httpx.TimeoutException:
                last_error = RewriteTimeoutError(
                    f"Request timed out (attempt {attempt + 1}/{self._max_retries})"
                )
            except httpx.TransportError:
                last_error = RewriteConnectionError(f"Cannot connect to {self._base_url}")
            else:
                return self._parse(resp, model)

            logger.debug("Rewrite request failed: %s", last_error)
            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_backoff * 2**attempt)

        assert last_error is not None
        raise last_error

    @staticmethod
    def _parse(resp: httpx.Response, model: str) -> CompletionResult:
        if resp.status_code == 429:
            raise RewriteRateLimitedError("Rewrite endpoint rate limited the request")
        if resp.status_code >= 400:
            raise RewriteProviderError(
                f"Rewrite endpoint returned HTTP {resp.status_code}", resp.status_code
            )
        try:
            data = resp.json()
            text = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise RewriteProviderError(f"Invalid completion response: {exc}") from exc

        if not text.strip():
            raise RewriteEmptyResponseError("Empty completion received")

        usage = data.get("usage") or {}
        return CompletionResult(
            text=text,
            model=data.get("model", model),
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
        )
