"""
Tier Gate
Static tier -> capability matrix and the guards every gated code path calls
"""
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Union
import logging

from schemas import UserTier
from services.errors import TierCapabilityViolation
from services.feature_flags import is_strict_environment

logger = logging.getLogger(__name__)

PROVIDER_FRED = "fred"
PROVIDER_ALPHA_VANTAGE = "alpha_vantage"
PROVIDER_SEARCH = "search"


@dataclass(frozen=True)
class TierCapabilities:
    tier: UserTier
    market_context_allowed: bool
    profile_enrichment_allowed: bool
    allowed_providers: FrozenSet[str]

    def allows_provider(self, provider: str) -> bool:
        return self.market_context_allowed and provider in self.allowed_providers


# starter <= standard <= premium on every field
CAPABILITY_MATRIX: Dict[UserTier, TierCapabilities] = {
    UserTier.starter: TierCapabilities(
        tier=UserTier.starter,
        market_context_allowed=False,
        profile_enrichment_allowed=False,
        allowed_providers=frozenset(),
    ),
    UserTier.standard: TierCapabilities(
        tier=UserTier.standard,
        market_context_allowed=True,
        profile_enrichment_allowed=True,
        allowed_providers=frozenset({PROVIDER_FRED, PROVIDER_SEARCH}),
    ),
    UserTier.premium: TierCapabilities(
        tier=UserTier.premium,
        market_context_allowed=True,
        profile_enrichment_allowed=True,
        allowed_providers=frozenset({PROVIDER_FRED, PROVIDER_SEARCH, PROVIDER_ALPHA_VANTAGE}),
    ),
}

TIER_ORDER = [UserTier.starter, UserTier.standard, UserTier.premium]


def resolve_tier(tier: Union[UserTier, str, None]) -> UserTier:
    """Map a tier value to UserTier; anything unknown is treated as starter."""
    if isinstance(tier, UserTier):
        return tier
    try:
        return UserTier(str(tier).strip().lower())
    except ValueError:
        logger.warning(f"Unknown tier {tier!r}, falling back to starter capabilities")
        return UserTier.starter


def capabilities_for(tier: Union[UserTier, str, None]) -> TierCapabilities:
    return CAPABILITY_MATRIX[resolve_tier(tier)]


class TierGate:
    """
    Guards called on every provider-call and enrichment path.

    In strict mode (development/test) a violation raises
    TierCapabilityViolation so the bug is caught early; otherwise the
    violation is logged and the capability is treated as denied.
    """

    def __init__(self, strict: Optional[bool] = None):
        self.strict = is_strict_environment() if strict is None else strict

    def _violation(self, message: str) -> bool:
        if self.strict:
            raise TierCapabilityViolation(message)
        logger.error(f"Tier capability violation: {message}")
        return False

    def check_market_context(self, capabilities: TierCapabilities) -> bool:
        if capabilities.market_context_allowed:
            return True
        return self._violation(f"market context requested for tier {capabilities.tier.value}")

    def check_provider(self, capabilities: TierCapabilities, provider: str) -> bool:
        if capabilities.allows_provider(provider):
            return True
        return self._violation(f"provider {provider} called for tier {capabilities.tier.value}")

    def check_profile_enrichment(self, capabilities: TierCapabilities) -> bool:
        if capabilities.profile_enrichment_allowed:
            return True
        return self._violation(f"profile enrichment requested for tier {capabilities.tier.value}")
