"""Tests for the chat-completions rewrite client."""

from __future__ import annotations

import json

import httpx
import pytest

from humanpass.humanizer.client import (
    CompletionOptions,
    RewriteClient,
    RewriteConnectionError,
    RewriteEmptyResponseError,
    RewriteProviderError,
    RewriteRateLimitedError,
    RewriteTimeoutError,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _completion_json(content: str | None) -> dict[str, object]:
    """Build a /v1/chat/completions response body."""
    return {
        "model": "test-model",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 7},
    }


def _make_client(transport: httpx.MockTransport, max_retries: int = 2) -> RewriteClient:
    """Create a RewriteClient with injected transport and no backoff."""
    return RewriteClient(
        "http://rewrite.test",
        api_key="sk-test",
        max_retries=max_retries,
        retry_backoff=0.0,
        transport=transport,
    )


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestComplete:
    """RewriteClient.complete tests."""

    async def test_success(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=_completion_json("A rewritten text."))

        async with _make_client(httpx.MockTransport(handler)) as client:
            result = await client.complete(
                "system", "original", "gpt-test", CompletionOptions(temperature=0.9)
            )

        assert result.text == "A rewritten text."
        assert result.model == "test-model"
        assert result.completion_tokens == 7

        request = seen[0]
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "gpt-test"
        assert body["temperature"] == 0.9
        assert body["messages"] == [
            {"role": "system", "content": "system"},
            {"role": "user", "content": "original"},
        ]

    async def test_rate_limited(self) -> None:
        transport = httpx.MockTransport(lambda _: httpx.Response(429))
        async with _make_client(transport) as client:
            with pytest.raises(RewriteRateLimitedError):
                await client.complete("s", "t", "m")

    async def test_provider_error_keeps_status(self) -> None:
        transport = httpx.MockTransport(lambda _: httpx.Response(500, text="oops"))
        async with _make_client(transport) as client:
            with pytest.raises(RewriteProviderError) as exc_info:
                await client.complete("s", "t", "m")
        assert exc_info.value.status_code == 500

    async def test_malformed_body(self) -> None:
        transport = httpx.MockTransport(lambda _: httpx.Response(200, json={"choices": []}))
        async with _make_client(transport) as client:
            with pytest.raises(RewriteProviderError):
                await client.complete("s", "t", "m")

    @pytest.mark.parametrize("content", ["", "   ", None])
    async def test_empty_completion(self, content: str | None) -> None:
        transport = httpx.MockTransport(lambda _: httpx.Response(200, json=_completion_json(content)))
        async with _make_client(transport) as client:
            with pytest.raises(RewriteEmptyResponseError):
                await client.complete("s", "t", "m")

    async def test_retries_connect_errors_then_succeeds(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise httpx.ConnectError("refused")
            return httpx.Response(200, json=_completion_json("ok"))

        async with _make_client(httpx.MockTransport(handler)) as client:
            result = await client.complete("s", "t", "m")
        assert result.text == "ok"
        assert calls == 2

    async def test_gives_up_after_max_retries(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            raise httpx.ConnectError("refused")

        async with _make_client(httpx.MockTransport(handler), max_retries=3) as client:
            with pytest.raises(RewriteConnectionError):
                await client.complete("s", "t", "m")
        assert calls == 3

    async def test_timeout(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        async with _make_client(httpx.MockTransport(handler), max_retries=1) as client:
            with pytest.raises(RewriteTimeoutError):
                await client.complete("s", "t", "m")

    async def test_status_errors_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(502)

        async with _make_client(httpx.MockTransport(handler), max_retries=3) as client:
            with pytest.raises(RewriteProviderError):
                await client.complete("s", "t", "m")
        assert calls == 1

    async def test_requires_context_manager(self) -> None:
        client = RewriteClient("http://rewrite.test")
        with pytest.raises(RuntimeError):
            await client.complete("s", "t", "m")
