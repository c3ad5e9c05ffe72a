"""
Web search adapter (Brave, Bing, Google Custom Search, SerpAPI)
"""
import os
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
import logging
from dotenv import load_dotenv

import httpx

from services.errors import ProviderError
from services.pii_masking import PIIMaskingService
from services.providers.base import (
    MarketDataProvider,
    NormalizedResult,
    ProviderKind,
    RateLimiter,
    SearchSnippet,
    looks_financial,
    normalize_query_key,
)

load_dotenv()

logger = logging.getLogger(__name__)

SEARCH_PREFIX = "search:"

SEARCH_BASE_URLS = {
    "bing": "https://api.bing.microsoft.com/v7.0/search",
    "google": "https://www.googleapis.com/customsearch/v1",
    "brave": "https://api.search.brave.com/res/v1/web/search",
    "serpapi": "https://serpapi.com/search",
}

ENHANCE_KEYWORDS = [
    'mortgage rates', 'cd rates', 'savings rates', 'investment advice',
    'retirement planning', 'tax strategies', 'budgeting tips',
    'credit card rates', 'loan rates', 'financial planning',
    'auto loan rate', 'personal loan rate', 'student loan rate',
    'home equity rate', 'heloc rate', 'money market rate',
    'ira rate', '401k rate', 'annuity rate',
    'tariffs', 'inflation', 'unemployment rate',
]

FINANCIAL_DOMAINS = [
    'bankrate.com', 'nerdwallet.com', 'investopedia.com',
    'fool.com', 'morningstar.com', 'finance.yahoo.com',
    'marketwatch.com', 'wsj.com', 'bloomberg.com',
    'reuters.com', 'cnbc.com', 'forbes.com', 'federalreserve.gov',
]


def enhance_financial_query(query: str, year: Optional[int] = None) -> str:
    lowered = query.lower()
    if any(keyword in lowered for keyword in ENHANCE_KEYWORDS):
        year = year or datetime.now(timezone.utc).year
        return f"{query} financial advice {year}"
    return query


def is_financial_domain(url: str) -> bool:
    lowered = (url or "").lower()
    return any(domain in lowered for domain in FINANCIAL_DOMAINS)


def prefer_financial_results(snippets: List[SearchSnippet]) -> List[SearchSnippet]:
    """Keep only results from financial domains when there are any, otherwise keep everything."""
    financial = [s for s in snippets if is_financial_domain(s.url)]
    return financial or snippets


def _format(items: List[Dict], source: str, title: str, snippet: str, url: str) -> List[SearchSnippet]:
    return [
        SearchSnippet(
            title=item.get(title, ""),
            snippet=item.get(snippet, ""),
            url=item.get(url, ""),
            source=source,
            relevance=round(1 - index * 0.1, 2),
        )
        for index, item in enumerate(items)
    ]


def format_brave_results(payload: Dict) -> List[SearchSnippet]:
    return _format((payload.get("web") or {}).get("results") or [], "Brave", "title", "description", "url")


def format_bing_results(payload: Dict) -> List[SearchSnippet]:
    return _format((payload.get("webPages") or {}).get("value") or [], "Bing", "name", "snippet", "url")


def format_google_results(payload: Dict) -> List[SearchSnippet]:
    return _format(payload.get("items") or [], "Google", "title", "snippet", "link")


def format_serpapi_results(payload: Dict) -> List[SearchSnippet]:
    return _format(payload.get("organic_results") or [], "SerpAPI", "title", "snippet", "link")


FORMATTERS: Dict[str, Callable[[Dict], List[SearchSnippet]]] = {
    "brave": format_brave_results,
    "bing": format_bing_results,
    "google": format_google_results,
    "serpapi": format_serpapi_results,
}


class SearchProvider(MarketDataProvider):
    name = "search"
    kind = ProviderKind.search

    def __init__(
        self,
        api_key: Optional[str] = None,
        engine: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        pii_masker: Optional[PIIMaskingService] = None,
        max_results: int = 5,
        min_interval: Optional[float] = None,
    ):
        super().__init__(client)
        self.api_key = api_key or os.getenv("SEARCH_API_KEY")
        if not self.api_key:
            raise ValueError("SEARCH_API_KEY not found in environment variables")
        self.engine = (engine or os.getenv("SEARCH_PROVIDER", "brave")).lower()
        if self.engine not in SEARCH_BASE_URLS:
            raise ValueError(f"Unsupported search provider: {self.engine}")
        self.ttl_seconds = float(os.getenv("SEARCH_CACHE_TTL_SECONDS", "1800"))
        self.timeout_seconds = float(os.getenv("SEARCH_TIMEOUT_SECONDS", "10"))
        self.max_results = max_results
        self.pii_masker = pii_masker or PIIMaskingService()
        if min_interval is None:
            min_interval = float(os.getenv("SEARCH_MIN_INTERVAL_SECONDS", "1"))
        self.rate_limiter = RateLimiter(min_interval)

    def plan_queries(self, question: Optional[str] = None) -> List[str]:
        if not question or not looks_financial(question):
            return []
        # Redact before the text becomes a cache key or leaves the process
        redacted = normalize_query_key(self.pii_masker.mask_text(question))
        if not redacted:
            return []
        return [f"{SEARCH_PREFIX}{redacted}"]

    async def fetch(self, query_key: str) -> NormalizedResult:
        if not query_key.startswith(SEARCH_PREFIX):
            raise ProviderError(self.name, f"unsupported query '{query_key}'")
        query = enhance_financial_query(query_key[len(SEARCH_PREFIX):])

        await self.rate_limiter.wait()
        url, params, headers = self._build_request(query)
        payload = await self._get_json(url, params, headers)

        snippets = prefer_financial_results(FORMATTERS[self.engine](payload))[: self.max_results]
        logger.info(f"Search ({self.engine}) returned {len(snippets)} results")
        return NormalizedResult(
            provider=self.name,
            kind=self.kind,
            query_key=query_key,
            snippets=snippets,
        )

    def _build_request(self, query: str):
        base_url = SEARCH_BASE_URLS[self.engine]
        count = str(self.max_results * 2)
        if self.engine == "brave":
            return base_url, {"q": query, "count": count, "country": "US", "search_lang": "en"}, {
                "Accept": "application/json",
                "X-Subscription-Token": self.api_key,
            }
        if self.engine == "bing":
            return base_url, {
                "q": query, "count": count, "mkt": "en-US", "freshness": "Day",
                "responseFilter": "Webpages", "textFormat": "Raw", "safeSearch": "Moderate",
            }, {"Ocp-Apim-Subscription-Key": self.api_key, "Accept": "application/json"}
        if self.engine == "google":
            return base_url, {
                "key": self.api_key, "cx": os.getenv("GOOGLE_SEARCH_ENGINE_ID", ""),
                "q": query, "num": str(min(self.max_results * 2, 10)), "dateRestrict": "d7", "lr": "lang_en",
            }, None
        return base_url, {"api_key": self.api_key, "q": query, "num": count, "tbs": "qdr:w"}, None
