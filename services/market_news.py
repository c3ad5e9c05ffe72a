"""
Market News Service
Keeps one LLM-written market summary per tier, with an edit history and a
manual override an operator can pin in place of the generated text
"""
import asyncio
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Union
import logging
from dotenv import load_dotenv

import models
from database import SessionLocal
from schemas import UserTier
from services.errors import LLMServiceError
from services.market_context import MarketContextOrchestrator, MarketContextSummary
from services.providers.base import DataPoint
from services.tier_gate import capabilities_for

load_dotenv()

logger = logging.getLogger(__name__)

AUTO_UPDATE = "auto_update"
MANUAL_EDIT = "manual_edit"

MAX_NEWS_CHARS = 4000
HISTORY_LIMIT = 50

SYNTHESIS_INSTRUCTION = """You are a financial market analyst. Summarize the market data you are given into a short, factual market context.

Use only the figures provided, with their as-of dates. Do not speculate and do not give personal advice.
Structure the summary with these headings: ECONOMIC INDICATORS, MARKET TRENDS, KEY DEVELOPMENTS, MARKET OUTLOOK.
Keep it under 400 words."""

TIER_FOCUS = {
    UserTier.standard: "Basic economic indicators and general market trends.",
    UserTier.premium: "Comprehensive market intelligence, including Treasury yields and live quotes.",
}

# metric, threshold, message
KEY_EVENT_RULES = [
    ("fed_funds_rate", 5.0, "Federal Reserve rate at {value}% - high interest rate environment"),
    ("cpi_inflation", 4.0, "Inflation elevated at {value}% - cost of living concerns"),
    ("mortgage_30y", 7.0, "Mortgage rates high at {value}% - housing market impact"),
]


@dataclass
class MarketNewsEntry:
    tier: UserTier
    context_text: str
    change_type: str
    data_sources: List[str]
    key_events: List[str]
    edited_by: Optional[str]
    is_active: bool
    created: Optional[datetime]


def extract_key_events(points: List[DataPoint]) -> List[str]:
    events = []
    by_metric = {p.metric: p for p in points}
    for metric, threshold, message in KEY_EVENT_RULES:
        point = by_metric.get(metric)
        if point is not None and point.value > threshold:
            events.append(message.format(value=f"{point.value:g}"))
    return events


def build_synthesis_prompt(tier: UserTier, summary: MarketContextSummary) -> str:
    return f"Tier focus: {TIER_FOCUS[tier]}\n\nAvailable data:\n{summary.digest}"


def _to_entry(row: models.MarketNewsContext) -> MarketNewsEntry:
    return MarketNewsEntry(
        tier=UserTier(row.tier),
        context_text=row.context_text,
        change_type=row.change_type,
        data_sources=[s for s in row.data_sources.split(",") if s],
        key_events=[e for e in row.key_events.splitlines() if e],
        edited_by=row.edited_by,
        is_active=row.is_active,
        created=row.created,
    )


class MarketNewsService:
    """Service for generating, storing and overriding per-tier market news context"""

    def __init__(
        self,
        market_context: MarketContextOrchestrator,
        llm=None,
        session_factory=SessionLocal,
        max_chars: int = MAX_NEWS_CHARS,
        llm_timeout: Optional[float] = None,
    ):
        """
        Initialize market news service.

        Args:
            market_context: Source of the tier-gated market digest
            llm: Object with ``async complete(system_instruction, prompt)``.
                Without one the digest itself is stored.
            session_factory: Callable returning a new SQLAlchemy session
            max_chars: Upper bound on a stored summary
            llm_timeout: Seconds to wait for the summary before storing the digest
        """
        self.market_context = market_context
        self.llm = llm
        self.session_factory = session_factory
        self.max_chars = max_chars
        self.llm_timeout = llm_timeout if llm_timeout is not None else float(
            os.getenv("LLM_TIMEOUT_SECONDS", "60")
        )

    @staticmethod
    def _tier(tier: Union[UserTier, str]) -> UserTier:
        capabilities = capabilities_for(tier)
        if not capabilities.market_context_allowed:
            raise ValueError(f"Tier {capabilities.tier.value} has no market news context")
        return capabilities.tier

    async def refresh(self, tier: Union[UserTier, str], force: bool = False) -> Optional[MarketNewsEntry]:
        """
        Regenerate the summary for one tier.

        A manual edit stays in place unless ``force`` is set.

        Args:
            tier: standard or premium
            force: Replace a manual edit as well

        Returns:
            The active entry, or None when no market data was available
        """
        resolved = self._tier(tier)
        current = self.get_active(resolved)
        if current is not None and current.change_type == MANUAL_EDIT and not force:
            logger.info(f"Keeping manual market news for {resolved.value}")
            return current

        summary = await self.market_context.get_market_context(resolved)
        if not summary.available:
            logger.warning(f"No market data for {resolved.value}; market news left unchanged")
            return current

        text = await self._synthesize(resolved, summary)
        return self._store(
            resolved,
            text,
            AUTO_UPDATE,
            data_sources=summary.providers_used,
            key_events=extract_key_events(summary.data_points),
        )

    async def refresh_all(self, force: bool = False) -> Dict[str, bool]:
        """Refresh every tier with market context; returns tier -> whether a summary is active."""
        results = {}
        for tier in (UserTier.standard, UserTier.premium):
            try:
                results[tier.value] = await self.refresh(tier, force=force) is not None
            except Exception as e:
                logger.error(f"Market news refresh failed for {tier.value}: {e.__class__.__name__}: {e}")
                results[tier.value] = False
        return results

    async def run_scheduled_refresh(self, interval: float) -> None:
        while True:
            await self.refresh_all()
            await asyncio.sleep(interval)

    def get_context(self, tier: Union[UserTier, str]) -> str:
        """Active summary text for the tier; empty for tiers without market context."""
        if not capabilities_for(tier).market_context_allowed:
            return ""
        entry = self.get_active(tier)
        return entry.context_text if entry is not None else ""

    def get_active(self, tier: Union[UserTier, str]) -> Optional[MarketNewsEntry]:
        resolved = capabilities_for(tier).tier
        db = self.session_factory()
        try:
            row = db.query(models.MarketNewsContext).filter(
                models.MarketNewsContext.tier == resolved.value,
                models.MarketNewsContext.is_active == True
            ).order_by(models.MarketNewsContext.context_id.desc()).first()
            return _to_entry(row) if row is not None else None
        finally:
            db.close()

    def update_manual(self, tier: Union[UserTier, str], context_text: str, edited_by: str) -> MarketNewsEntry:
        """
        Pin an operator-written summary for a tier.

        Raises:
            ValueError: Tier without market context, blank text or missing editor
        """
        resolved = self._tier(tier)
        text = (context_text or "").strip()
        if not text:
            raise ValueError("Market news text must not be blank")
        if not edited_by:
            raise ValueError("edited_by is required for a manual edit")
        entry = self._store(resolved, text[: self.max_chars], MANUAL_EDIT, edited_by=edited_by)
        logger.info(f"Manual market news set for {resolved.value} by {edited_by}")
        return entry

    def get_history(self, tier: Union[UserTier, str], limit: int = HISTORY_LIMIT) -> List[MarketNewsEntry]:
        """Entries for the tier, newest first."""
        resolved = capabilities_for(tier).tier
        db = self.session_factory()
        try:
            rows = db.query(models.MarketNewsContext).filter(
                models.MarketNewsContext.tier == resolved.value
            ).order_by(models.MarketNewsContext.context_id.desc()).limit(limit).all()
            return [_to_entry(row) for row in rows]
        finally:
            db.close()

    async def _synthesize(self, tier: UserTier, summary: MarketContextSummary) -> str:
        if self.llm is None:
            return summary.digest[: self.max_chars]
        try:
            text = await asyncio.wait_for(
                self.llm.complete(SYNTHESIS_INSTRUCTION, build_synthesis_prompt(tier, summary)),
                timeout=self.llm_timeout,
            )
        except (LLMServiceError, asyncio.TimeoutError) as e:
            logger.warning(f"Market news synthesis failed for {tier.value}, storing digest: {e.__class__.__name__}")
            return summary.digest[: self.max_chars]
        text = (text or "").strip()
        return (text or summary.digest)[: self.max_chars]

    def _store(
        self,
        tier: UserTier,
        text: str,
        change_type: str,
        data_sources: Optional[List[str]] = None,
        key_events: Optional[List[str]] = None,
        edited_by: Optional[str] = None,
    ) -> MarketNewsEntry:
        db = self.session_factory()
        try:
            db.query(models.MarketNewsContext).filter(
                models.MarketNewsContext.tier == tier.value,
                models.MarketNewsContext.is_active == True
            ).update({"is_active": False}, synchronize_session=False)
            row = models.MarketNewsContext(
                tier=tier.value,
                context_text=text,
                change_type=change_type,
                data_sources=",".join(data_sources or []),
                key_events="\n".join(key_events or []),
                edited_by=edited_by,
                is_active=True,
            )
            db.add(row)
            db.commit()
            db.refresh(row)
            return _to_entry(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
