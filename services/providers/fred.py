"""
FRED (Federal Reserve Economic Data) adapter
"""
import asyncio
import os
from dataclasses import dataclass
from typing import List, Optional
import logging
from dotenv import load_dotenv

import httpx

from services.errors import ProviderError
from services.providers.base import DataPoint, MarketDataProvider, NormalizedResult, ProviderKind

load_dotenv()

logger = logging.getLogger(__name__)

FRED_BASE_URL = "https://api.stlouisfed.org/fred/series/observations"
INDICATORS_QUERY = "indicators"


@dataclass(frozen=True)
class FredSeries:
    series_id: str
    metric: str
    label: str
    monthly: bool = False
    units: Optional[str] = None  # FRED transformation, e.g. "pc1" = percent change from a year ago


FRED_SERIES = [
    FredSeries("CPIAUCSL", "cpi_inflation", "CPI Inflation (YoY)", monthly=True, units="pc1"),
    FredSeries("FEDFUNDS", "fed_funds_rate", "Federal Funds Rate", monthly=True),
    FredSeries("MORTGAGE30US", "mortgage_30y", "30-Year Fixed Mortgage Rate"),
    FredSeries("UNRATE", "unemployment_rate", "Unemployment Rate", monthly=True),
    FredSeries("TERMCBCCALLNS", "credit_card_apr", "Credit Card APR"),
]


class FREDProvider(MarketDataProvider):
    name = "fred"
    kind = ProviderKind.economic

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        series: Optional[List[FredSeries]] = None,
    ):
        super().__init__(client)
        self.api_key = api_key or os.getenv("FRED_API_KEY")
        if not self.api_key:
            raise ValueError("FRED_API_KEY not found in environment variables")
        self.ttl_seconds = float(os.getenv("FRED_CACHE_TTL_SECONDS", "86400"))
        self.timeout_seconds = float(os.getenv("FRED_TIMEOUT_SECONDS", "8"))
        self.series = series or FRED_SERIES

    def plan_queries(self, question: Optional[str] = None) -> List[str]:
        # Indicators are question-independent and cached for a day
        return [INDICATORS_QUERY]

    async def fetch(self, query_key: str) -> NormalizedResult:
        if query_key != INDICATORS_QUERY:
            raise ProviderError(self.name, f"unsupported query '{query_key}'")

        results = await asyncio.gather(
            *(self._fetch_series(s) for s in self.series),
            return_exceptions=True,
        )

        data_points = []
        for series, result in zip(self.series, results):
            if isinstance(result, BaseException):
                logger.warning(f"FRED series {series.series_id} dropped: {result}")
                continue
            data_points.append(result)

        if not data_points:
            raise ProviderError(self.name, "all series failed")

        logger.info(f"FRED returned {len(data_points)}/{len(self.series)} indicators")
        return NormalizedResult(
            provider=self.name,
            kind=self.kind,
            query_key=query_key,
            data_points=data_points,
        )

    async def _fetch_series(self, series: FredSeries) -> DataPoint:
        params = {
            "series_id": series.series_id,
            "api_key": self.api_key,
            "file_type": "json",
            "sort_order": "desc",
            "limit": 5,
        }
        if series.units:
            params["units"] = series.units

        payload = await self._get_json(FRED_BASE_URL, params)
        for observation in payload.get("observations", []):
            raw = observation.get("value")
            # FRED marks missing observations with "."
            if raw in (None, "", "."):
                continue
            try:
                value = float(raw)
            except ValueError:
                continue
            as_of = observation.get("date", "")
            if series.monthly and len(as_of) >= 7:
                as_of = as_of[:7]
            return DataPoint(
                metric=series.metric,
                label=series.label,
                value=round(value, 2),
                unit="%",
                as_of=as_of,
                source="FRED",
            )
        raise ProviderError(self.name, f"no valid observation for {series.series_id}")
