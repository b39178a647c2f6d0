"""Tests for the processor registry."""

from __future__ import annotations

import pytest

from subscription_worker.config import Settings
from subscription_worker.errors import UnknownSubscriptionTypeError
from subscription_worker.processors.registry import (
    ContentAnalyzer,
    ParserAnalyzer,
    ProcessorRegistry,
    build_registry,
)

from factories import FakeAnalyzer


class TestProcessorRegistry:
    def test_resolve_by_slug_case_insensitive(self):
        boe = FakeAnalyzer("boe")
        registry = ProcessorRegistry({"boe": boe, "doga": FakeAnalyzer("doga")})
        assert registry.resolve("BOE") is boe
        assert registry.types == ["boe", "doga"]

    def test_missing_type_uses_default(self):
        boe = FakeAnalyzer("boe")
        registry = ProcessorRegistry({"boe": boe}, default_type="boe")
        assert registry.resolve(None) is boe

    def test_unknown_type_raises(self):
        registry = ProcessorRegistry({"boe": FakeAnalyzer("boe")}, default_type="boe")
        with pytest.raises(UnknownSubscriptionTypeError) as exc_info:
            registry.resolve("bopa")
        assert exc_info.value.type_slug == "bopa"

    def test_missing_type_without_default_raises(self):
        registry = ProcessorRegistry({"boe": FakeAnalyzer("boe")})
        with pytest.raises(UnknownSubscriptionTypeError):
            registry.resolve(None)

    def test_fake_satisfies_protocol(self):
        assert isinstance(FakeAnalyzer(), ContentAnalyzer)

    @pytest.mark.asyncio
    async def test_aclose_closes_every_analyzer(self):
        analyzers = [FakeAnalyzer("boe"), FakeAnalyzer("doga")]
        registry = ProcessorRegistry({a.type_slug: a for a in analyzers})
        await registry.aclose()
        assert all(a.closed for a in analyzers)


class TestBuildRegistry:
    @pytest.mark.asyncio
    async def test_one_parser_analyzer_per_service(self):
        cfg = Settings(
            ANALYSIS_SERVICES={"boe": "http://boe:8000/", "doga": "http://doga:8000"},
            ANALYSIS_API_KEY="k",
            ANALYSIS_TIMEOUT_SECONDS=12,
            DEFAULT_SUBSCRIPTION_TYPE="doga",
        )
        registry = build_registry(cfg)

        assert registry.types == ["boe", "doga"]
        assert registry.default_type == "doga"
        boe = registry.resolve("boe")
        assert isinstance(boe, ParserAnalyzer)
        assert boe.client.base_url == "http://boe:8000"
        assert boe.client.timeout == 12
        assert registry.resolve(None).type_slug == "doga"
        await registry.aclose()
