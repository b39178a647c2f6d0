"""Processor registry: one content analyzer per subscription type."""

from __future__ import annotations

import logging
from typing import Mapping, Protocol, runtime_checkable

from subscription_worker.config import Settings, settings as default_settings
from subscription_worker.connectors.analysis_client import AnalysisClient
from subscription_worker.errors import UnknownSubscriptionTypeError
from subscription_worker.schemas.analysis import AnalysisRequest, AnalysisResult

logger = logging.getLogger("subworker.processors.registry")


@runtime_checkable
class ContentAnalyzer(Protocol):
    """Capability every subscription type provides: prompts in, matches out."""

    type_slug: str

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult: ...

    async def aclose(self) -> None: ...


class ParserAnalyzer:
    """Analyzer backed by a remote parser service."""

    def __init__(self, type_slug: str, client: AnalysisClient):
        self.type_slug = type_slug
        self.client = client

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        return await self.client.analyze(request)

    async def aclose(self) -> None:
        await self.client.close()

    def __repr__(self) -> str:
        return f"ParserAnalyzer({self.type_slug!r}, {self.client.base_url!r})"


class ProcessorRegistry:
    """Fixed mapping of type slug → analyzer, built once at startup."""

    def __init__(self, analyzers: Mapping[str, ContentAnalyzer], default_type: str | None = None):
        self._analyzers = {slug.lower(): analyzer for slug, analyzer in analyzers.items()}
        self.default_type = (default_type or "").lower() or None

    @property
    def types(self) -> list[str]:
        return sorted(self._analyzers)

    def resolve(self, type_slug: str | None) -> ContentAnalyzer:
        """Return the analyzer for *type_slug*.

        Subscriptions without a type use the default type; a type with no
        registered analyzer raises :class:`UnknownSubscriptionTypeError`.
        """
        slug = (type_slug or self.default_type or "").lower()
        analyzer = self._analyzers.get(slug)
        if analyzer is None:
            raise UnknownSubscriptionTypeError(type_slug or "<none>")
        return analyzer

    async def aclose(self) -> None:
        for analyzer in self._analyzers.values():
            await analyzer.aclose()


def build_registry(cfg: Settings | None = None) -> ProcessorRegistry:
    """Build the registry from ``ANALYSIS_SERVICES``."""
    cfg = cfg or default_settings
    analyzers: dict[str, ContentAnalyzer] = {}
    for slug, url in cfg.ANALYSIS_SERVICES.items():
        client = AnalysisClient(
            slug,
            url,
            api_key=cfg.ANALYSIS_API_KEY,
            timeout=cfg.ANALYSIS_TIMEOUT_SECONDS,
            endpoint=cfg.ANALYSIS_ENDPOINT,
            max_retries=cfg.ANALYSIS_MAX_RETRIES,
            retry_base_delay=cfg.ANALYSIS_RETRY_BASE_DELAY_SECONDS,
            retry_max_delay=cfg.ANALYSIS_RETRY_MAX_DELAY_SECONDS,
        )
        analyzers[slug] = ParserAnalyzer(slug, client)
    logger.info("Registered analyzers: %s", ", ".join(sorted(analyzers)) or "none")
    return ProcessorRegistry(analyzers, default_type=cfg.DEFAULT_SUBSCRIPTION_TYPE)
