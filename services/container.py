"""
Service wiring
Builds the long-lived services once per application and tears them down on shutdown
"""
import os
from dataclasses import dataclass
from typing import List, Optional
import logging
from dotenv import load_dotenv

from database import SessionLocal
from services.context_assembler import ContextAssembler
from services.conversation_manager import ConversationManager
from services.gemini_service import GeminiService
from services.market_cache import MarketCacheService
from services.feature_flags import is_feature_enabled
from services.market_context import MarketContextOrchestrator
from services.market_news import MarketNewsService
from services.pii_masking import PIIMaskingService
from services.profile_encryption import ProfileEncryptionService, load_keyring
from services.profile_extractor import LLMProfileMerger, RuleBasedProfileMerger
from services.profile_manager import ProfileManager
from services.providers.alpha_vantage import AlphaVantageProvider
from services.providers.base import MarketDataProvider
from services.providers.fred import FREDProvider
from services.providers.search import SearchProvider
from services.tier_gate import TierGate
from services.token_vault import SessionVaultStore
from services.tokenization import TokenizationBoundary

load_dotenv()

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    assembler: ContextAssembler
    market_context: MarketContextOrchestrator
    market_cache: MarketCacheService
    profile_manager: ProfileManager
    conversation_manager: ConversationManager
    vault_store: Optional[SessionVaultStore] = None
    market_news: Optional[MarketNewsService] = None

    async def aclose(self) -> None:
        await self.assembler.drain()
        await self.market_context.aclose()
        await self.market_cache.close()
        if self.vault_store is not None:
            self.vault_store.clear()
        logger.info("Services shut down")


def build_providers_from_env(pii_masker: PIIMaskingService) -> List[MarketDataProvider]:
    """Register every provider that has an API key; a missing key disables that provider only."""
    providers: List[MarketDataProvider] = []
    factories = [
        ("fred", FREDProvider),
        ("alpha_vantage", AlphaVantageProvider),
        ("search", lambda: SearchProvider(pii_masker=pii_masker)),
    ]
    for name, factory in factories:
        try:
            providers.append(factory())
        except ValueError as e:
            logger.warning(f"Market provider {name} disabled: {e}")
    logger.info(f"Registered market providers: {[p.name for p in providers]}")
    return providers


def build_container_from_env(session_factory=SessionLocal) -> ServiceContainer:
    pii_masker = PIIMaskingService()
    tier_gate = TierGate()
    llm = GeminiService()

    cache = MarketCacheService()
    market_context = MarketContextOrchestrator(
        providers=build_providers_from_env(pii_masker),
        cache=cache,
        tier_gate=tier_gate,
    )

    strategy = os.getenv("PROFILE_MERGE_STRATEGY", "llm").lower()
    merger = LLMProfileMerger(llm, pii_masker) if strategy == "llm" else RuleBasedProfileMerger()
    profile_manager = ProfileManager(
        session_factory=session_factory,
        encryption_service=ProfileEncryptionService(),
        merger=merger,
        tier_gate=tier_gate,
        keyring=load_keyring(),
    )
    conversation_manager = ConversationManager(session_factory)

    market_news = None
    if is_feature_enabled("MARKET_NEWS"):
        market_news = MarketNewsService(market_context, llm=llm, session_factory=session_factory)

    vault_store = None
    if os.getenv("TOKEN_VAULT_SCOPE", "request").lower() == "session":
        vault_store = SessionVaultStore(
            ttl_seconds=float(os.getenv("TOKEN_VAULT_SESSION_TTL_SECONDS", "3600"))
        )

    assembler = ContextAssembler(
        llm=llm,
        profile_manager=profile_manager,
        market_context=market_context,
        tokenization=TokenizationBoundary(pii_masker),
        conversation_manager=conversation_manager,
        vault_store=vault_store,
        tier_gate=tier_gate,
        market_news=market_news,
    )
    return ServiceContainer(
        assembler=assembler,
        market_context=market_context,
        market_cache=cache,
        profile_manager=profile_manager,
        conversation_manager=conversation_manager,
        vault_store=vault_store,
        market_news=market_news,
    )
