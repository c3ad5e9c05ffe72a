import asyncio
import os

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  registers the tables on Base
from database import Base
from services.market_cache import MarketCacheService
from services.profile_encryption import ProfileEncryptionService, generate_key
from services.providers.base import (
    DataPoint,
    MarketDataProvider,
    NormalizedResult,
    ProviderKind,
    SearchSnippet,
)


class FakeClock:
    """Manually advanced monotonic clock"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLLM:
    """Records every call; answers with a fixed string, a callable or an exception"""

    def __init__(self, response="OK", delay: float = 0):
        self.response = response
        self.delay = delay
        self.calls = []

    async def complete(self, system_instruction: str, prompt: str, temperature: float = 0.3) -> str:
        self.calls.append((system_instruction, prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(self.response, BaseException):
            raise self.response
        if callable(self.response):
            return self.response(system_instruction, prompt)
        return self.response

    @property
    def last_system_instruction(self) -> str:
        return self.calls[-1][0]

    @property
    def last_prompt(self) -> str:
        return self.calls[-1][1]


class FakeProvider(MarketDataProvider):
    """Provider returning canned NormalizedResults per query key"""

    def __init__(self, name, kind=ProviderKind.economic, results=None, queries=None,
                 ttl=3600, error=None, delay=0, timeout=1.0):
        super().__init__()
        self.name = name
        self.kind = kind
        self.ttl_seconds = ttl
        self.timeout_seconds = timeout
        self.results = results or {}
        self.queries = queries
        self.error = error
        self.delay = delay
        self.calls = []
        self.closed = False

    def plan_queries(self, question=None):
        if self.queries is not None:
            return list(self.queries)
        return list(self.results)

    async def fetch(self, query_key):
        self.calls.append(query_key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.results[query_key]

    async def aclose(self):
        self.closed = True


def unemployment_result(value=4.2, as_of="2025-07") -> NormalizedResult:
    return NormalizedResult(
        provider="fred",
        kind=ProviderKind.economic,
        query_key="indicators",
        data_points=[DataPoint("unemployment_rate", "Unemployment Rate", value, "%", as_of, "FRED")],
    )


def treasury_result() -> NormalizedResult:
    return NormalizedResult(
        provider="alpha_vantage",
        kind=ProviderKind.quote,
        query_key="treasury_yields",
        data_points=[DataPoint("treasury_10year", "10-Year Treasury Yield", 4.31, "%", "2025-07-18", "Alpha Vantage")],
    )


def search_result(query_key="search:mortgage rates") -> NormalizedResult:
    return NormalizedResult(
        provider="search",
        kind=ProviderKind.search,
        query_key=query_key,
        snippets=[SearchSnippet("Mortgage rates today", "Rates edged lower this week.",
                                "https://www.bankrate.com/mortgages/", "Brave")],
    )


CHECKING_ACCOUNT_DATA = {
    "accounts": [
        {"name": "Everyday Checking", "type": "depository", "subtype": "checking",
         "balance": {"current": 8420.15, "available": 8120.15}, "institution": "Chase"},
    ],
    "transactions": [
        {"amount": 15.49, "date": "2025-07-05", "name": "Streaming Service",
         "merchant_name": "Netflix", "category": ["Entertainment"], "pending": False},
    ],
    "investments": [
        {"security_name": "Vanguard Total Stock Market ETF", "ticker_symbol": "VTI", "security_type": "etf",
         "quantity": 10, "institution_price": 281.40, "institution_value": 2814.00},
    ],
    "liabilities": [],
}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def encryption_key():
    return generate_key()


@pytest.fixture
def encryption_service(encryption_key):
    return ProfileEncryptionService(encryption_key, key_version=1)


@pytest.fixture
def market_cache(clock):
    return MarketCacheService(sweep_interval=60, stale_factor=2, clock=clock)
