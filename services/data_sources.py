"""
Data source registry
Describes every data source the assistant can draw on, which tiers may use it
and what an upgrade would unlock
"""
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

from schemas import UserTier
from services.tier_gate import TIER_ORDER, resolve_tier

ALL_TIERS = (UserTier.starter, UserTier.standard, UserTier.premium)
PAID_TIERS = (UserTier.standard, UserTier.premium)
PREMIUM_ONLY = (UserTier.premium,)


@dataclass(frozen=True)
class DataSource:
    id: str
    name: str
    description: str
    tiers: Tuple[UserTier, ...]
    category: str  # account | economic | market | external
    provider: str
    cache_seconds: int
    is_live: bool
    rate_limit_per_minute: Optional[int] = None
    upgrade_benefit: Optional[str] = None


DATA_SOURCES: List[DataSource] = [
    # Account data
    DataSource("account-balances", "Account Balances",
               "Current and available balances for all connected accounts",
               ALL_TIERS, "account", "plaid", 5 * 60, True),
    DataSource("account-transactions", "Transaction History",
               "Detailed transaction history with categories and merchants",
               ALL_TIERS, "account", "plaid", 5 * 60, True),
    DataSource("account-institutions", "Financial Institutions",
               "Connected banks and financial institutions",
               ALL_TIERS, "account", "plaid", 60 * 60, False),
    DataSource("plaid-investments", "Investment Holdings",
               "Investment portfolio holdings and securities information",
               PAID_TIERS, "account", "plaid", 15 * 60, True,
               upgrade_benefit="Track your investment portfolio and get diversification insights"),
    DataSource("plaid-investment-transactions", "Investment Transactions",
               "Buy/sell transactions and portfolio activity history",
               PAID_TIERS, "account", "plaid", 15 * 60, True,
               upgrade_benefit="Analyze your investment activity and trading patterns"),

    # Economic indicators
    DataSource("fred-cpi", "Consumer Price Index", "Inflation rate tracking via CPI data",
               PAID_TIERS, "economic", "fred", 24 * 60 * 60, False,
               upgrade_benefit="Track inflation impact on your savings"),
    DataSource("fred-fed-rate", "Federal Reserve Rate", "Current Federal Funds Rate",
               PAID_TIERS, "economic", "fred", 24 * 60 * 60, False,
               upgrade_benefit="Understand how Fed policy affects your loans and savings"),
    DataSource("fred-mortgage-rate", "Mortgage Rates", "Current 30-year fixed mortgage rates",
               PAID_TIERS, "economic", "fred", 24 * 60 * 60, False,
               upgrade_benefit="Compare mortgage rates for refinancing decisions"),
    DataSource("fred-unemployment", "Unemployment Rate", "National unemployment rate",
               PAID_TIERS, "economic", "fred", 24 * 60 * 60, False,
               upgrade_benefit="See how the job market affects your emergency fund needs"),
    DataSource("fred-credit-card-apr", "Credit Card APR", "Average credit card interest rates",
               PAID_TIERS, "economic", "fred", 24 * 60 * 60, False,
               upgrade_benefit="Understand credit card costs and debt management"),

    # Live market data
    DataSource("alpha-vantage-treasury-yields", "Treasury Yields",
               "Current Treasury bond yields across all maturities",
               PREMIUM_ONLY, "market", "alpha_vantage", 5 * 60, True, 5,
               upgrade_benefit="Compare Treasury yields for safe investment options"),
    DataSource("alpha-vantage-stock-data", "Stock Market Data",
               "Real-time stock prices and market data",
               PREMIUM_ONLY, "market", "alpha_vantage", 60, True, 5,
               upgrade_benefit="Track your investments with real-time market data"),

    # Search
    DataSource("web-search", "Real-time Financial Search",
               "Search for current financial information and rates",
               PAID_TIERS, "external", "search", 30 * 60, True,
               upgrade_benefit="Get real-time financial information and current rates"),
]

TIER_LIMITATIONS = {
    UserTier.starter: [
        "Limited to account data only",
        "No economic context for financial decisions",
        "No real-time search for current financial information",
        "No live market data for investment insights",
    ],
    UserTier.standard: [
        "No live Treasury yields",
        "No stock market tracking",
        "No real-time market data feeds",
    ],
    UserTier.premium: [
        "Full access to all data sources",
    ],
}

TierLike = Union[UserTier, str, None]


def get_source(source_id: str) -> Optional[DataSource]:
    return next((s for s in DATA_SOURCES if s.id == source_id), None)


def sources_for_tier(tier: TierLike) -> List[DataSource]:
    resolved = resolve_tier(tier)
    return [s for s in DATA_SOURCES if resolved in s.tiers]


def is_source_available(tier: TierLike, source_id: str) -> bool:
    source = get_source(source_id)
    return source is not None and resolve_tier(tier) in source.tiers


def next_tier(tier: TierLike) -> Optional[UserTier]:
    resolved = resolve_tier(tier)
    index = TIER_ORDER.index(resolved)
    return TIER_ORDER[index + 1] if index + 1 < len(TIER_ORDER) else None


UPGRADE_MESSAGES = {
    UserTier.standard: "Upgrade to Standard to access economic indicators like {sources}",
    UserTier.premium: "Upgrade to Premium for live market data including {sources}",
}


def upgrade_suggestions(tier: TierLike) -> List[str]:
    """
    Human-readable upgrade hints for sources the tier cannot use.

    Each higher tier gets one hint naming the sources it adds.

    Args:
        tier: Caller's tier

    Returns:
        List of suggestions, empty for premium
    """
    available = {s.id for s in sources_for_tier(tier)}
    suggestions = []
    upgrade = next_tier(tier)
    while upgrade is not None:
        gained = [s for s in sources_for_tier(upgrade) if s.id not in available]
        if gained:
            suggestions.append(UPGRADE_MESSAGES[upgrade].format(sources=", ".join(s.name for s in gained)))
            available.update(s.id for s in gained)
        upgrade = next_tier(upgrade)
    return suggestions


def tier_limitations(tier: TierLike) -> List[str]:
    return list(TIER_LIMITATIONS[resolve_tier(tier)])
