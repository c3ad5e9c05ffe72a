"""
Market Context Orchestrator
Fans out to the providers a tier may use, through the shared cache, and
condenses the results into a bounded digest for the prompt
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union
import logging

from schemas import UserTier
from services.errors import ProviderError
from services.market_cache import CacheLookup, MarketCacheService
from services.providers.base import DataPoint, MarketDataProvider, ProviderKind, SearchSnippet
from services.tier_gate import TierCapabilities, TierGate, capabilities_for

logger = logging.getLogger(__name__)

MAX_DIGEST_CHARS = 2000
MAX_SNIPPETS = 3
MAX_SNIPPET_CHARS = 240


@dataclass
class MarketContextSummary:
    tier: UserTier
    digest: str = ""
    data_points: List[DataPoint] = field(default_factory=list)
    snippets: List[SearchSnippet] = field(default_factory=list)
    providers_used: List[str] = field(default_factory=list)
    degraded_providers: List[str] = field(default_factory=list)
    stale_providers: List[str] = field(default_factory=list)
    generated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def available(self) -> bool:
        return bool(self.data_points or self.snippets)


def format_value(point: DataPoint) -> str:
    if point.unit == "USD":
        return f"${point.value:,.2f}"
    if point.unit == "%":
        return f"{point.value:g}%"
    return f"{point.value:g} {point.unit}".strip()


def format_data_point(point: DataPoint) -> str:
    as_of = point.as_of or "unknown date"
    return f"- {point.label}: {format_value(point)} (as of {as_of}, {point.source})"


def format_snippet(snippet: SearchSnippet) -> str:
    text = snippet.snippet.strip()
    if len(text) > MAX_SNIPPET_CHARS:
        text = text[: MAX_SNIPPET_CHARS - 3].rstrip() + "..."
    return f"- {snippet.title}: {text} ({snippet.source}, {snippet.url})"


def build_digest(
    data_points: List[DataPoint],
    snippets: List[SearchSnippet],
    max_chars: int = MAX_DIGEST_CHARS,
) -> str:
    """
    Condense market data into prompt text no longer than ``max_chars``.

    Every figure is printed with its as-of date and source. Lines that would
    push the digest past the bound are dropped whole.
    """
    economic = [p for p in data_points if p.unit == "%" and not p.metric.startswith("quote_")]
    quotes = [p for p in data_points if p not in economic]
    sections = [
        ("Economic indicators:", [format_data_point(p) for p in economic]),
        ("Market data:", [format_data_point(p) for p in quotes]),
        ("Recent financial news:", [format_snippet(s) for s in snippets]),
    ]

    lines: List[str] = []
    length = 0
    for heading, items in sections:
        if not items:
            continue
        pending = [heading]
        for item in items:
            candidate = "\n".join(lines + pending + [item])
            if len(candidate) > max_chars:
                break
            pending.append(item)
        if len(pending) > 1:
            lines.extend(pending)
            length = len("\n".join(lines))
        if length >= max_chars:
            break
    return "\n".join(lines)


def merge_data_points(results: List[Tuple[datetime, DataPoint]]) -> List[DataPoint]:
    """Keep one value per metric: the most recently fetched one."""
    latest: Dict[str, Tuple[datetime, DataPoint]] = {}
    for fetched_at, point in results:
        current = latest.get(point.metric)
        if current is None or fetched_at > current[0]:
            latest[point.metric] = (fetched_at, point)
    return [point for _, point in latest.values()]


def merge_snippets(snippets: List[SearchSnippet], limit: int = MAX_SNIPPETS) -> List[SearchSnippet]:
    seen = set()
    unique = []
    for snippet in sorted(snippets, key=lambda s: s.relevance, reverse=True):
        if snippet.url in seen:
            continue
        seen.add(snippet.url)
        unique.append(snippet)
    return unique[:limit]


class MarketContextOrchestrator:
    """Builds tier-gated market context from independent, unreliable providers"""

    def __init__(
        self,
        providers: List[MarketDataProvider],
        cache: MarketCacheService,
        tier_gate: Optional[TierGate] = None,
        max_digest_chars: int = MAX_DIGEST_CHARS,
    ):
        self.providers: Dict[str, MarketDataProvider] = {p.name: p for p in providers}
        self.cache = cache
        self.tier_gate = tier_gate or TierGate()
        self.max_digest_chars = max_digest_chars
        self._degraded: Dict[str, str] = {}

    async def get_market_context(
        self,
        tier: Union[UserTier, str],
        query: Optional[str] = None,
    ) -> MarketContextSummary:
        """
        Build the market context for one request.

        Args:
            tier: Caller's tier; the Tier Gate is consulted before any provider call
            query: The user's question, used for query-dependent providers (search)

        Returns:
            MarketContextSummary; empty for tiers without market context
        """
        capabilities = capabilities_for(tier)
        summary = MarketContextSummary(tier=capabilities.tier)
        if not capabilities.market_context_allowed:
            return summary

        eligible = [p for name, p in self.providers.items() if capabilities.allows_provider(name)]
        if not eligible:
            return summary

        outcomes = await asyncio.gather(
            *(self._run_provider(p, capabilities, query) for p in eligible),
            return_exceptions=True,
        )

        points: List[Tuple[datetime, DataPoint]] = []
        snippets: List[SearchSnippet] = []
        for provider, outcome in zip(eligible, outcomes):
            if isinstance(outcome, BaseException):
                self._mark_degraded(provider.name, outcome)
                summary.degraded_providers.append(provider.name)
                continue
            lookups, failures = outcome
            if not lookups and not failures:
                # Nothing planned for this question
                continue
            if failures:
                self._mark_degraded(provider.name, failures[0])
                summary.degraded_providers.append(provider.name)
            else:
                self._degraded.pop(provider.name, None)
            if not lookups:
                continue
            summary.providers_used.append(provider.name)
            if any(lookup.stale for lookup in lookups):
                summary.stale_providers.append(provider.name)
            for lookup in lookups:
                points.extend((lookup.fetched_at, p) for p in lookup.value.data_points)
                snippets.extend(lookup.value.snippets)

        summary.data_points = merge_data_points(points)
        summary.snippets = merge_snippets(snippets)
        summary.digest = build_digest(summary.data_points, summary.snippets, self.max_digest_chars)
        logger.info(
            f"Market context for {capabilities.tier.value}: {len(summary.data_points)} data points, "
            f"{len(summary.snippets)} snippets, degraded={summary.degraded_providers}, "
            f"stale={summary.stale_providers}"
        )
        return summary

    async def _run_provider(
        self,
        provider: MarketDataProvider,
        capabilities: Optional[TierCapabilities],
        question: Optional[str],
        force: bool = False,
    ) -> Tuple[List[CacheLookup], List[BaseException]]:
        if capabilities is not None and not self.tier_gate.check_provider(capabilities, provider.name):
            return [], []

        keys = provider.plan_queries(question)
        results = await asyncio.gather(
            *(self._lookup(provider, key, force) for key in keys),
            return_exceptions=True,
        )
        lookups = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures:
            logger.warning(f"Provider {provider.name} failed: {failure}")
        return lookups, failures

    async def _lookup(self, provider: MarketDataProvider, key: str, force: bool) -> CacheLookup:
        async def fetcher():
            try:
                return await asyncio.wait_for(provider.fetch(key), timeout=provider.timeout_seconds)
            except asyncio.TimeoutError:
                raise ProviderError(provider.name, f"timed out after {provider.timeout_seconds}s") from None

        return await self.cache.get_or_fetch(provider.name, key, fetcher, provider.ttl_seconds, force=force)

    def _mark_degraded(self, provider: str, error: BaseException) -> None:
        self._degraded[provider] = str(error)

    # ------------------------------------------------------------------ operations

    def invalidate_cache(self, provider: Optional[str] = None) -> int:
        """Invalidate one provider's entries, or everything when provider is None or "all"."""
        if provider in (None, "all"):
            return self.cache.invalidate()
        if provider not in self.providers:
            raise ValueError(f"Unknown provider: {provider}")
        return self.cache.invalidate(provider)

    def get_cache_stats(self) -> Dict[str, Any]:
        stats = self.cache.stats()
        stats["degraded_providers"] = sorted(self._degraded)
        stats["registered_providers"] = sorted(self.providers)
        return stats

    async def refresh_all(self) -> Dict[str, Any]:
        """
        Re-query every question-independent key of every registered provider,
        ignoring TTL. Used by the scheduled refresh.
        """
        refreshed: Dict[str, int] = {}
        failed: List[str] = []
        providers = [p for p in self.providers.values() if p.kind != ProviderKind.search]
        outcomes = await asyncio.gather(
            *(self._run_provider(p, None, None, force=True) for p in providers),
            return_exceptions=True,
        )
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException):
                self._mark_degraded(provider.name, outcome)
                failed.append(provider.name)
                continue
            lookups, failures = outcome
            if failures:
                self._mark_degraded(provider.name, failures[0])
                failed.append(provider.name)
            elif any(lookup.stale for lookup in lookups):
                # upstream failed but an older value is still being served
                failed.append(provider.name)
            else:
                self._degraded.pop(provider.name, None)
            refreshed[provider.name] = sum(1 for lookup in lookups if not lookup.stale)
        logger.info(f"Market refresh complete: refreshed={refreshed}, failed={failed}")
        return {"refreshed": refreshed, "failed": failed}

    async def run_scheduled_refresh(self, interval: float) -> None:
        while True:
            try:
                await self.refresh_all()
            except Exception as e:
                logger.error(f"Scheduled market refresh failed: {e}")
            await asyncio.sleep(interval)

    async def aclose(self) -> None:
        for provider in self.providers.values():
            await provider.aclose()
