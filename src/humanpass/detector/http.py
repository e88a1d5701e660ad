"""Shared async HTTP plumbing for external detector services."""

from __future__ import annotations

import logging
import math
import os
from typing import Any, Self

import httpx

from humanpass.detector import (
    DetectorError,
    DetectorProviderError,
    DetectorRateLimitedError,
    DetectorTimeoutError,
    DetectorUnavailableError,
    NormalizationError,
)
from humanpass.models.job import DetectorOutcome

logger = logging.getLogger(__name__)


def clamp_unit(value: Any) -> float:
    """Coerce a provider number onto [0.0, 1.0].

    Raises:
        NormalizationError: If the value is not a finite number.
    """
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise NormalizationError(f"Expected a number, got {value!r}") from exc
    if not math.isfinite(number):
        raise NormalizationError(f"Expected a finite number, got {value!r}")
    return min(max(number, 0.0), 1.0)


class HTTPDetector:
    """Base class for detectors reached over HTTP.

    Subclasses set ``source_id`` and implement :meth:`build_payload` and
    :meth:`normalize`. The instance must be entered as an async context
    manager before :meth:`detect` is called.

    Args:
        url: Full endpoint URL.
        api_key: Credential sent by :meth:`build_headers`; None if not needed.
        timeout: Transport-level timeout in seconds.
        transport: Optional httpx transport (tests inject ``MockTransport``).
    """

    source_id: str = ""
    requires_api_key: bool = False

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_env(
        cls,
        url: str,
        api_key_env: str,
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> Self:
        """Build a detector whose credential is read from ``api_key_env``."""
        api_key = os.environ.get(api_key_env) if api_key_env else None
        return cls(url, api_key=api_key, timeout=timeout, transport=transport)

    async def __aenter__(self) -> Self:
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout, connect=min(self._timeout, 10.0)),
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
            raise RuntimeError(
                f"{type(self).__name__} must be used as an async context manager"
            )
        return self._client

    # -- Provider hooks --------------------------------------------------------

    def build_headers(self) -> dict[str, str]:
        return {}

    def build_payload(self, text: str) -> dict[str, Any]:
        raise NotImplementedError

    def normalize(self, data: Any) -> float:
        """Map the provider's JSON body onto an AI likelihood in [0, 1]."""
        raise NotImplementedError

    # -- Request cycle ---------------------------------------------------------

    async def fetch(self, text: str) -> Any:
        """POST ``text`` to the provider and return the decoded JSON body.

        Raises:
            DetectorUnavailableError: Missing credential or connection failure.
            DetectorTimeoutError: Transport timeout.
            DetectorRateLimitedError: HTTP 429.
            DetectorProviderError: Any other error status.
            NormalizationError: Body is not valid JSON.
        """
        if self.requires_api_key and not self._api_key:
            raise DetectorUnavailableError(f"{self.source_id}: no API key configured")
        if not self._url:
            raise DetectorUnavailableError(f"{self.source_id}: no endpoint configured")

        try:
            resp = await self.client.post(
                self._url, json=self.build_payload(text), headers=self.build_headers()
            )
        except httpx.TimeoutException as exc:
            raise DetectorTimeoutError(f"{self.source_id}: request timed out") from exc
        except httpx.TransportError as exc:
            raise DetectorUnavailableError(f"{self.source_id}: {exc}") from exc

        if resp.status_code == 429:
            raise DetectorRateLimitedError(f"{self.source_id}: rate limited")
        if resp.status_code == 503:
            raise DetectorUnavailableError(f"{self.source_id}: service unavailable")
        if resp.status_code >= 400:
            raise DetectorProviderError(
                f"{self.source_id}: HTTP {resp.status_code}: {resp.text[:200]}"
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise NormalizationError(f"{self.source_id}: response is not JSON") from exc

    async def detect(self, text: str) -> DetectorOutcome:
        """Score ``text``, returning a failed outcome instead of raising."""
        try:
            data = await self.fetch(text)
        except DetectorError as exc:
            logger.warning("Detector %s failed: %s", self.source_id, exc)
            return DetectorOutcome.failure(self.source_id, exc.error_kind)

        try:
            likelihood = self.normalize(data)
        except (NormalizationError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning(
                "Detector %s returned an unexpected shape: %s", self.source_id, exc
            )
            return DetectorOutcome.failure(
                self.source_id, NormalizationError.error_kind, raw=data
            )
        return DetectorOutcome.success(self.source_id, likelihood, raw=data)
