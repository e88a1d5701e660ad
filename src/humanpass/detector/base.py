"""Detector panel: concurrent fan-out over all configured detectors."""

from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING, Any, Self

from humanpass.detector import DetectorError
from humanpass.detector.gltr import GLTRDetector
from humanpass.detector.gptzero import GPTZeroDetector
from humanpass.detector.open_detector import OpenDetector
from humanpass.models.job import DetectorOutcome, ErrorKind

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    import httpx

    from humanpass.config import DetectionConfig
    from humanpass.core.protocols import Detector

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 20.0


class DetectorPanel:
    """Queries every detector concurrently and returns one outcome each.

    A slow or failing detector never blocks or corrupts the others: each
    call runs under its own timeout and its failure is recorded as a failed
    outcome. No retries happen here.

    Args:
        detectors: Detector instances, in reporting order.
        timeouts: Per ``source_id`` timeout in seconds.
        default_timeout: Timeout for detectors missing from ``timeouts``.
    """

    def __init__(
        self,
        detectors: Sequence[Detector],
        timeouts: Mapping[str, float] | None = None,
        default_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        ids = [d.source_id for d in detectors]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Detector source ids must be unique, got {ids}")
        self._detectors = list(detectors)
        self._timeouts = dict(timeouts or {})
        self._default_timeout = default_timeout
        self._stack: AsyncExitStack | None = None

    @classmethod
    def from_config(
        cls,
        config: DetectionConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> DetectorPanel:
        """Build the standard three-detector panel from configuration.

        Disabled detectors are left out of the panel entirely.
        """
        detectors: list[Detector] = []
        timeouts: dict[str, float] = {}
        for detector_cls, endpoint in (
            (GPTZeroDetector, config.gptzero),
            (OpenDetector, config.open_detector),
            (GLTRDetector, config.gltr),
        ):
            if not endpoint.enabled:
                logger.info("Detector %s disabled by configuration", detector_cls.source_id)
                continue
            detectors.append(
                detector_cls.from_env(
                    endpoint.url,
                    endpoint.api_key_env,
                    endpoint.timeout_seconds,
                    transport=transport,
                )
            )
            timeouts[detector_cls.source_id] = endpoint.timeout_seconds
        return cls(detectors, timeouts)

    @property
    def source_ids(self) -> list[str]:
        return [d.source_id for d in self._detectors]

    async def __aenter__(self) -> Self:
        self._stack = AsyncExitStack()
        for detector in self._detectors:
            if hasattr(detector, "__aenter__"):
                await self._stack.enter_async_context(detector)  # type: ignore[arg-type]
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._stack is not None:
            await self._stack.__aexit__(*exc)
            self._stack = None

    async def detect_all(self, text: str) -> list[DetectorOutcome]:
        """Score ``text`` with every detector in parallel.

        Returns once every detector has answered or timed out.

        Args:
            text: Candidate text to score.

        Returns:
            One DetectorOutcome per detector, in panel order.
        """
        return list(
            await asyncio.gather(*(self._detect_one(d, text) for d in self._detectors))
        )

    async def _detect_one(self, detector: Detector, text: str) -> DetectorOutcome:
        source_id = detector.source_id
        timeout = self._timeouts.get(source_id, self._default_timeout)
        try:
            outcome = await asyncio.wait_for(detector.detect(text), timeout=timeout)
        except TimeoutError:
            logger.warning("Detector %s timed out after %.1fs", source_id, timeout)
            return DetectorOutcome.failure(source_id, ErrorKind.TIMEOUT)
        except DetectorError as exc:
            logger.warning("Detector %s failed: %s", source_id, exc)
            return DetectorOutcome.failure(source_id, exc.error_kind)
        except Exception:
            logger.warning("Detector %s raised unexpectedly", source_id, exc_info=True)
            return DetectorOutcome.failure(source_id, ErrorKind.PROVIDER_ERROR)

        if outcome.source_id != source_id:
            logger.warning(
                "Detector %s reported foreign source id %r", source_id, outcome.source_id
            )
            return DetectorOutcome.failure(source_id, ErrorKind.MALFORMED)
        return outcome
