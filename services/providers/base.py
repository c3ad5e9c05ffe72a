"""
Market data provider interface
Adapters turn provider-specific payloads into NormalizedResult; raw shapes never leave them
"""
import asyncio
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
import logging

import httpx

from services.errors import ProviderError

logger = logging.getLogger(__name__)

FINANCIAL_KEYWORDS = [
    'mortgage', 'refinanc', 'cd rate', 'savings rate', 'interest rate', 'rates', 'apr', 'apy',
    'invest', 'retirement', '401k', 'ira', 'roth', 'tax', 'budget', 'credit card', 'loan',
    'heloc', 'home equity', 'money market', 'annuity', 'tariff', 'inflation', 'cpi',
    'unemployment', 'fed', 'treasury', 'bond', 'yield', 'stock', 'market', 'etf',
    'index fund', 'recession', 'economy', 'debt', 'savings',
]


class ProviderKind(str, Enum):
    economic = "economic"
    quote = "quote"
    search = "search"


@dataclass
class DataPoint:
    metric: str  # stable id used to dedupe across providers, e.g. "unemployment_rate"
    label: str
    value: float
    unit: str  # "%" or "USD"
    as_of: str
    source: str


@dataclass
class SearchSnippet:
    title: str
    snippet: str
    url: str
    source: str
    relevance: float = 1.0


@dataclass
class NormalizedResult:
    provider: str
    kind: ProviderKind
    query_key: str
    data_points: List[DataPoint] = field(default_factory=list)
    snippets: List[SearchSnippet] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def normalize_query_key(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace so equivalent queries share a cache entry."""
    lowered = (text or "").lower()
    cleaned = re.sub(r"[^\w\s:%$.-]", " ", lowered)
    return re.sub(r"\s+", " ", cleaned).strip()


def looks_financial(question: str) -> bool:
    lowered = (question or "").lower()
    return any(keyword in lowered for keyword in FINANCIAL_KEYWORDS)


class RateLimiter:
    """Spaces calls at least ``min_interval`` seconds apart."""

    def __init__(self, min_interval: float, clock=time.monotonic):
        self.min_interval = min_interval
        self._clock = clock
        self._last: Optional[float] = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            if self._last is not None:
                remaining = self.min_interval - (self._clock() - self._last)
                if remaining > 0:
                    await asyncio.sleep(remaining)
            self._last = self._clock()


class MarketDataProvider(ABC):
    """Base class for market/economic/search adapters"""

    name: str = ""
    kind: ProviderKind = ProviderKind.economic
    ttl_seconds: float = 300
    timeout_seconds: float = 8

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    @abstractmethod
    def plan_queries(self, question: Optional[str] = None) -> List[str]:
        """Query keys this provider should answer for ``question``."""

    @abstractmethod
    async def fetch(self, query_key: str) -> NormalizedResult:
        """Perform the upstream call for one query key."""

    async def _get_json(self, url: str, params: dict, headers: Optional[dict] = None) -> dict:
        try:
            response = await self.client.get(url, params=params, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(self.name, f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise ProviderError(self.name, f"request failed: {e.__class__.__name__}") from e
        except ValueError as e:
            raise ProviderError(self.name, "invalid JSON payload") from e

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
