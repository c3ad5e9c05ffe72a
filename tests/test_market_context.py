from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeProvider, search_result, treasury_result, unemployment_result
from services.errors import ProviderError
from services.market_context import (
    MarketContextOrchestrator,
    build_digest,
    format_data_point,
    merge_data_points,
    merge_snippets,
)
from services.providers.base import DataPoint, ProviderKind, SearchSnippet
from services.tier_gate import TierGate


def make_orchestrator(cache, *providers):
    return MarketContextOrchestrator(list(providers), cache, TierGate(strict=True))


async def test_premium_answer_uses_cached_indicator_without_provider_call(market_cache):
    fred = FakeProvider("fred", results={"indicators": unemployment_result()})
    market_cache.put("fred", "indicators", unemployment_result(), ttl=86400)
    orchestrator = make_orchestrator(market_cache, fred)

    summary = await orchestrator.get_market_context("premium", "What's the unemployment rate?")

    assert fred.calls == []
    assert "Unemployment Rate: 4.2% (as of 2025-07, FRED)" in summary.digest
    assert summary.providers_used == ["fred"]
    assert summary.available


async def test_starter_makes_no_provider_calls(market_cache):
    fred = FakeProvider("fred", results={"indicators": unemployment_result()})
    search = FakeProvider("search", kind=ProviderKind.search, results={"search:mortgage rates": search_result()})
    orchestrator = make_orchestrator(market_cache, fred, search)

    summary = await orchestrator.get_market_context("starter", "What are mortgage rates?")

    assert fred.calls == []
    assert search.calls == []
    assert summary.digest == ""
    assert not summary.available


async def test_standard_never_reaches_premium_providers(market_cache):
    fred = FakeProvider("fred", results={"indicators": unemployment_result()})
    alpha = FakeProvider("alpha_vantage", kind=ProviderKind.quote, results={"treasury_yields": treasury_result()})
    orchestrator = make_orchestrator(market_cache, fred, alpha)

    summary = await orchestrator.get_market_context("standard", "How are treasury yields?")

    assert fred.calls == ["indicators"]
    assert alpha.calls == []
    assert "Treasury" not in summary.digest


async def test_failed_provider_is_omitted_and_flagged(market_cache):
    fred = FakeProvider("fred", results={"indicators": unemployment_result()})
    alpha = FakeProvider("alpha_vantage", kind=ProviderKind.quote, queries=["treasury_yields"],
                         error=ProviderError("alpha_vantage", "API limit reached"))
    orchestrator = make_orchestrator(market_cache, fred, alpha)

    summary = await orchestrator.get_market_context("premium", "Rates?")

    assert summary.degraded_providers == ["alpha_vantage"]
    assert summary.providers_used == ["fred"]
    assert "Unemployment Rate" in summary.digest
    assert orchestrator.get_cache_stats()["degraded_providers"] == ["alpha_vantage"]


async def test_slow_provider_times_out(market_cache):
    slow = FakeProvider("fred", results={"indicators": unemployment_result()}, delay=0.5, timeout=0.05)
    orchestrator = make_orchestrator(market_cache, slow)

    summary = await orchestrator.get_market_context("premium", "inflation?")

    assert summary.degraded_providers == ["fred"]
    assert summary.digest == ""


async def test_stale_value_is_served_and_reported(market_cache, clock):
    fred = FakeProvider("fred", queries=["indicators"], error=ProviderError("fred", "HTTP 503"))
    market_cache.put("fred", "indicators", unemployment_result(), ttl=60)
    clock.advance(90)
    orchestrator = make_orchestrator(market_cache, fred)

    summary = await orchestrator.get_market_context("standard", "unemployment?")

    assert fred.calls == ["indicators"]
    assert summary.stale_providers == ["fred"]
    assert "Unemployment Rate: 4.2%" in summary.digest


async def test_search_provider_gets_no_question_for_non_financial_queries(market_cache):
    search = FakeProvider("search", kind=ProviderKind.search, queries=[])
    orchestrator = make_orchestrator(market_cache, search)

    summary = await orchestrator.get_market_context("premium", "Tell me a joke")

    assert search.calls == []
    assert summary.providers_used == []
    assert summary.degraded_providers == []


async def test_refresh_all_skips_search_and_forces_fetch(market_cache):
    fred = FakeProvider("fred", results={"indicators": unemployment_result()})
    search = FakeProvider("search", kind=ProviderKind.search, results={"search:x": search_result("search:x")})
    market_cache.put("fred", "indicators", unemployment_result(), ttl=86400)
    orchestrator = make_orchestrator(market_cache, fred, search)

    result = await orchestrator.refresh_all()

    assert result == {"refreshed": {"fred": 1}, "failed": []}
    assert fred.calls == ["indicators"]
    assert search.calls == []


async def test_refresh_all_reports_failures(market_cache):
    fred = FakeProvider("fred", queries=["indicators"], error=ProviderError("fred", "HTTP 500"))
    orchestrator = make_orchestrator(market_cache, fred)

    result = await orchestrator.refresh_all()

    assert result["failed"] == ["fred"]
    assert result["refreshed"] == {"fred": 0}


def test_invalidate_cache(market_cache):
    fred = FakeProvider("fred", results={"indicators": unemployment_result()})
    orchestrator = make_orchestrator(market_cache, fred)
    market_cache.put("fred", "indicators", unemployment_result(), ttl=100)

    with pytest.raises(ValueError):
        orchestrator.invalidate_cache("bloomberg")
    assert orchestrator.invalidate_cache("fred") == 1
    assert orchestrator.invalidate_cache("all") == 0


async def test_aclose_closes_providers(market_cache):
    fred = FakeProvider("fred")
    orchestrator = make_orchestrator(market_cache, fred)
    await orchestrator.aclose()
    assert fred.closed


def test_digest_is_bounded():
    points = [
        DataPoint(f"metric_{i}", f"Indicator number {i}", float(i), "%", "2025-07", "FRED")
        for i in range(50)
    ]
    digest = build_digest(points, [], max_chars=300)
    assert 0 < len(digest) <= 300
    assert digest.startswith("Economic indicators:")
    assert all(line.startswith(("Economic", "- ")) for line in digest.splitlines())


def test_digest_sections_and_formatting():
    points = [
        DataPoint("fed_funds_rate", "Federal Funds Rate", 4.33, "%", "2025-06", "FRED"),
        DataPoint("quote_spy", "SPY Price", 627.58, "USD", "2025-07-18", "Alpha Vantage"),
    ]
    snippets = [SearchSnippet("CD rates", "Top CDs pay 4.5%.", "https://www.bankrate.com/cds/", "Brave")]
    digest = build_digest(points, snippets)
    assert "- Federal Funds Rate: 4.33% (as of 2025-06, FRED)" in digest
    assert "Market data:\n- SPY Price: $627.58 (as of 2025-07-18, Alpha Vantage)" in digest
    assert "Recent financial news:" in digest
    assert format_data_point(DataPoint("x", "X", 1.0, "%", "", "FRED")) == "- X: 1% (as of unknown date, FRED)"


def test_merge_keeps_latest_value_per_metric():
    now = datetime.now(timezone.utc)
    old = DataPoint("treasury_10year", "10-Year Treasury Yield", 4.1, "%", "2025-07-01", "FRED")
    new = DataPoint("treasury_10year", "10-Year Treasury Yield", 4.4, "%", "2025-07-18", "Alpha Vantage")
    merged = merge_data_points([(now, new), (now - timedelta(hours=1), old)])
    assert merged == [new]


def test_merge_snippets_dedupes_by_url():
    a = SearchSnippet("A", "a", "https://www.bankrate.com/a", "Brave", relevance=0.9)
    b = SearchSnippet("B", "b", "https://www.bankrate.com/a", "Bing", relevance=0.5)
    c = SearchSnippet("C", "c", "https://www.nerdwallet.com/c", "Brave", relevance=1.0)
    assert merge_snippets([a, b, c]) == [c, a]
