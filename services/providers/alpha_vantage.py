"""
Alpha Vantage adapter: Treasury yields and global quotes
"""
import asyncio
import os
import re
from typing import List, Optional
import logging
from dotenv import load_dotenv

import httpx

from services.errors import ProviderError
from services.providers.base import (
    DataPoint,
    MarketDataProvider,
    NormalizedResult,
    ProviderKind,
    RateLimiter,
)

load_dotenv()

logger = logging.getLogger(__name__)

ALPHA_VANTAGE_BASE_URL = "https://www.alphavantage.co/query"
TREASURY_QUERY = "treasury_yields"
QUOTE_PREFIX = "quote:"

TREASURY_MATURITIES = {
    "3month": "3-Month Treasury Yield",
    "2year": "2-Year Treasury Yield",
    "10year": "10-Year Treasury Yield",
    "30year": "30-Year Treasury Yield",
}

TICKER_PATTERN = re.compile(r"\$([A-Z]{1,5})\b")


class AlphaVantageProvider(MarketDataProvider):
    name = "alpha_vantage"
    kind = ProviderKind.quote

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        symbols: Optional[List[str]] = None,
        min_interval: Optional[float] = None,
    ):
        super().__init__(client)
        self.api_key = api_key or os.getenv("ALPHA_VANTAGE_API_KEY")
        if not self.api_key:
            raise ValueError("ALPHA_VANTAGE_API_KEY not found in environment variables")
        self.ttl_seconds = float(os.getenv("ALPHA_VANTAGE_CACHE_TTL_SECONDS", "300"))
        self.timeout_seconds = float(os.getenv("ALPHA_VANTAGE_TIMEOUT_SECONDS", "8"))
        if symbols is None:
            symbols = [s.strip().upper() for s in os.getenv("ALPHA_VANTAGE_SYMBOLS", "SPY").split(",") if s.strip()]
        self.symbols = symbols
        if min_interval is None:
            min_interval = float(os.getenv("ALPHA_VANTAGE_MIN_INTERVAL_SECONDS", "0"))
        self.rate_limiter = RateLimiter(min_interval)

    def plan_queries(self, question: Optional[str] = None) -> List[str]:
        symbols = list(self.symbols)
        for ticker in TICKER_PATTERN.findall(question or ""):
            if ticker not in symbols:
                symbols.append(ticker)
        return [TREASURY_QUERY] + [f"{QUOTE_PREFIX}{s.lower()}" for s in symbols]

    async def fetch(self, query_key: str) -> NormalizedResult:
        if query_key == TREASURY_QUERY:
            data_points = await self._fetch_treasury_yields()
        elif query_key.startswith(QUOTE_PREFIX):
            data_points = [await self._fetch_quote(query_key[len(QUOTE_PREFIX):].upper())]
        else:
            raise ProviderError(self.name, f"unsupported query '{query_key}'")

        return NormalizedResult(
            provider=self.name,
            kind=self.kind,
            query_key=query_key,
            data_points=data_points,
        )

    async def _query(self, params: dict) -> dict:
        await self.rate_limiter.wait()
        payload = await self._get_json(ALPHA_VANTAGE_BASE_URL, {**params, "apikey": self.api_key})
        # Rate limiting is reported in a 200 response body
        for notice in ("Note", "Information"):
            if notice in payload:
                raise ProviderError(self.name, f"API limit reached: {payload[notice]}")
        if "Error Message" in payload:
            raise ProviderError(self.name, payload["Error Message"])
        return payload

    async def _fetch_treasury_yields(self) -> List[DataPoint]:
        results = await asyncio.gather(
            *(self._fetch_maturity(m, label) for m, label in TREASURY_MATURITIES.items()),
            return_exceptions=True,
        )
        data_points = []
        for maturity, result in zip(TREASURY_MATURITIES, results):
            if isinstance(result, BaseException):
                logger.warning(f"Treasury yield {maturity} dropped: {result}")
                continue
            data_points.append(result)
        if not data_points:
            failures = [r for r in results if isinstance(r, ProviderError)]
            raise failures[0] if failures else ProviderError(self.name, "no treasury yields returned")
        return data_points

    async def _fetch_maturity(self, maturity: str, label: str) -> DataPoint:
        payload = await self._query({"function": "TREASURY_YIELD", "interval": "daily", "maturity": maturity})
        for row in payload.get("data", []):
            raw = row.get("value")
            if raw in (None, "", "."):
                continue
            return DataPoint(
                metric=f"treasury_{maturity}",
                label=label,
                value=round(float(raw), 2),
                unit="%",
                as_of=row.get("date", ""),
                source="Alpha Vantage",
            )
        raise ProviderError(self.name, f"no data for {maturity} treasury")

    async def _fetch_quote(self, symbol: str) -> DataPoint:
        payload = await self._query({"function": "GLOBAL_QUOTE", "symbol": symbol})
        quote = payload.get("Global Quote") or {}
        price = quote.get("05. price")
        if not price:
            raise ProviderError(self.name, f"no quote for {symbol}")
        change = quote.get("10. change percent")
        label = f"{symbol} Price" + (f" ({change} today)" if change else "")
        return DataPoint(
            metric=f"quote_{symbol.lower()}",
            label=label,
            value=round(float(price), 2),
            unit="USD",
            as_of=quote.get("07. latest trading day", ""),
            source="Alpha Vantage",
        )
