"""
Context Assembler
Runs the per-question pipeline: capabilities -> profile -> account data ->
market context -> tokenize -> LLM -> detokenize -> background profile learning
"""
import asyncio
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set
import logging
from dotenv import load_dotenv

from schemas import UserTier
from services import data_sources
from services.account_data import (
    DEMO_PROFILE_TEXT,
    AccountDataSource,
    DemoAccountDataSource,
    StaticAccountDataSource,
    empty_account_data,
)
from services.conversation_manager import ConversationManager
from services.errors import LLMServiceError, ProfileDecryptionError
from services.feature_flags import require_feature
from services.market_context import MarketContextOrchestrator, MarketContextSummary
from services.market_news import MarketNewsService
from services.profile_enhancer import ProfileEnhancer
from services.profile_manager import ProfileManager
from services.tier_gate import TierGate, capabilities_for
from services.token_vault import SessionVaultStore
from services.tokenization import ContextPayload, ConversationTurn, TokenizationBoundary, TokenizedContext

load_dotenv()

logger = logging.getLogger(__name__)

MAX_TRANSACTIONS = 200

SYSTEM_INSTRUCTION = """You are a personal financial assistant. Answer the user's question using the data below.

Values written as ⟦TYPE_N⟧ (for example ⟦ACCOUNT_1⟧ or ⟦AMOUNT_3⟧) are placeholders for the user's private data.
Refer to them exactly as written, never alter or invent placeholders, and reason about them as the real values they stand for.

If the user asks to "show all transactions" or "list all transactions", provide a numbered list of individual transactions rather than summarizing them.
When economic indicators are provided, cite the figure together with its as-of date and source."""

TIER_DISCLOSURE = (
    "\n\n---\n*Note: this answer uses your account data only. Live economic indicators, "
    "market data and financial news are available on higher tiers.*"
)


@dataclass
class QuestionRequest:
    question: str
    tier: UserTier = UserTier.starter
    user_id: Optional[str] = None
    is_demo: bool = False
    demo_session_id: Optional[str] = None
    session_id: Optional[str] = None
    history: List[ConversationTurn] = field(default_factory=list)


@dataclass
class AssembledAnswer:
    answer: str
    tier: UserTier
    market_context_used: bool = False
    degraded_providers: List[str] = field(default_factory=list)
    stale_providers: List[str] = field(default_factory=list)
    upgrade_suggestions: List[str] = field(default_factory=list)
    limitations: List[str] = field(default_factory=list)
    profile_available: bool = False


def compose_system_instruction(context: TokenizedContext, market_digest: str, market_news: str = "") -> str:
    sections = [SYSTEM_INSTRUCTION]
    blocks = [
        ("User profile", context.profile_text),
        ("Accounts", context.accounts_text),
        ("Recent transactions", context.transactions_text),
        ("Investment holdings", context.investments_text),
        ("Liabilities", context.liabilities_text),
        ("Insights from linked accounts", context.insights_text),
        ("Current market context", market_digest),
        ("Market news summary", market_news),
    ]
    for title, body in blocks:
        if body and body.strip():
            sections.append(f"{title}:\n{body}")
    return "\n\n".join(sections)


def compose_prompt(context: TokenizedContext) -> str:
    if context.history_text:
        return f"Previous conversation:\n{context.history_text}\n\nCurrent question:\n{context.question}"
    return context.question


class ContextAssembler:
    """Prepares the context for one question and returns the detokenized answer"""

    def __init__(
        self,
        llm,
        profile_manager: Optional[ProfileManager],
        market_context: MarketContextOrchestrator,
        tokenization: Optional[TokenizationBoundary] = None,
        account_data_source: Optional[AccountDataSource] = None,
        demo_data_source: Optional[AccountDataSource] = None,
        conversation_manager: Optional[ConversationManager] = None,
        vault_store: Optional[SessionVaultStore] = None,
        tier_gate: Optional[TierGate] = None,
        profile_enhancer: Optional[ProfileEnhancer] = None,
        market_news: Optional[MarketNewsService] = None,
        llm_timeout: Optional[float] = None,
        history_turns: int = 5,
    ):
        self.llm = llm
        self.profile_manager = profile_manager
        self.market_context = market_context
        self.tokenization = tokenization or TokenizationBoundary()
        self.account_data_source = account_data_source or StaticAccountDataSource()
        self.demo_data_source = demo_data_source or DemoAccountDataSource()
        self.conversation_manager = conversation_manager
        self.vault_store = vault_store
        self.tier_gate = tier_gate or TierGate()
        self.profile_enhancer = profile_enhancer or ProfileEnhancer()
        self.market_news = market_news
        self.llm_timeout = llm_timeout if llm_timeout is not None else float(
            os.getenv("LLM_TIMEOUT_SECONDS", "60")
        )
        self.history_turns = history_turns
        self._background: Set[asyncio.Task] = set()

    async def answer_question(self, request: QuestionRequest) -> AssembledAnswer:
        """
        Answer one question.

        Args:
            request: Question, tier and identity of the caller

        Returns:
            AssembledAnswer with the detokenized answer and what data was used

        Raises:
            PermissionError: Demo request while demo mode is disabled
            LLMServiceError: The LLM failed or exceeded its timeout
        """
        if request.is_demo:
            require_feature("DEMO_MODE")
        elif not request.user_id:
            raise ValueError("user_id is required unless is_demo is true")

        capabilities = capabilities_for(request.tier)
        market_allowed = capabilities.market_context_allowed and self.tier_gate.check_market_context(capabilities)

        # Profile
        profile_text = ""
        profile_available = False
        learn_profile = False
        if request.is_demo:
            profile_text = DEMO_PROFILE_TEXT
        elif self.profile_manager is not None:
            try:
                profile_text = self.profile_manager.get_or_create_profile(request.user_id)
                profile_available = True
                learn_profile = True
            except ProfileDecryptionError:
                logger.error(f"Answering without profile for user {request.user_id}: stored profile unreadable")

        # Account data (its names are redacted from the market search query below)
        account_data = await self._load_account_data(request)
        if not data_sources.is_source_available(capabilities.tier, "plaid-investments"):
            account_data["investments"] = []

        enrich = capabilities.profile_enrichment_allowed and self.tier_gate.check_profile_enrichment(capabilities)
        insights = self.profile_enhancer.derive_insights(account_data) if enrich else []

        history = request.history or self._recent_turns(request)

        payload = ContextPayload(
            question=request.question,
            profile_text=profile_text,
            accounts=account_data.get("accounts") or [],
            transactions=(account_data.get("transactions") or [])[:MAX_TRANSACTIONS],
            investments=account_data.get("investments") or [],
            liabilities=account_data.get("liabilities") or [],
            insights=insights,
            history=history,
        )

        vault = None
        if self.vault_store is not None and request.session_id:
            owner = f"demo:{request.demo_session_id}" if request.is_demo else f"user:{request.user_id}"
            vault = self.vault_store.get(request.session_id, owner)

        # Market context
        market_news = ""
        if market_allowed:
            market = await self.market_context.get_market_context(
                capabilities.tier, self.tokenization.redact_for_search(payload, vault)
            )
            if self.market_news is not None:
                market_news = self.market_news.get_context(capabilities.tier)
        else:
            market = MarketContextSummary(tier=capabilities.tier)

        context = self.tokenization.tokenize(payload, vault)

        raw_answer = await self._call_llm(
            compose_system_instruction(context, market.digest, market_news),
            compose_prompt(context),
        )
        answer = self.tokenization.detokenize(raw_answer, context.vault)
        if not market_allowed:
            answer = answer.rstrip() + TIER_DISCLOSURE

        self._record_turn(request, answer, capabilities.tier)

        if learn_profile:
            turn = ConversationTurn(question=request.question, answer=answer)
            self._schedule(self.profile_manager.update_profile_from_conversation(request.user_id, turn))
            if enrich:
                self._schedule(
                    self.profile_manager.enhance_profile_from_account_data(
                        request.user_id, account_data, capabilities
                    )
                )

        return AssembledAnswer(
            answer=answer,
            tier=capabilities.tier,
            market_context_used=market.available or bool(market_news),
            degraded_providers=list(market.degraded_providers),
            stale_providers=list(market.stale_providers),
            upgrade_suggestions=data_sources.upgrade_suggestions(capabilities.tier),
            limitations=data_sources.tier_limitations(capabilities.tier),
            profile_available=profile_available,
        )

    async def _load_account_data(self, request: QuestionRequest) -> Dict[str, Any]:
        if request.is_demo:
            data = await self.demo_data_source.get_account_data(request.demo_session_id)
        else:
            data = await self.account_data_source.get_account_data(request.user_id)
        return {**empty_account_data(), **(data or {})}

    def _recent_turns(self, request: QuestionRequest) -> List[ConversationTurn]:
        if self.conversation_manager is None:
            return []
        return self.conversation_manager.recent_turns(
            user_id=None if request.is_demo else request.user_id,
            demo_session_id=request.demo_session_id if request.is_demo else None,
            limit=self.history_turns,
        )

    def _record_turn(self, request: QuestionRequest, answer: str, tier: UserTier) -> None:
        if self.conversation_manager is None:
            return
        try:
            self.conversation_manager.add_turn(
                question=request.question,
                answer=answer,
                tier=tier.value,
                user_id=None if request.is_demo else request.user_id,
                demo_session_id=request.demo_session_id if request.is_demo else None,
                session_id=request.session_id,
            )
        except Exception as e:
            # History storage is best-effort once the answer exists
            logger.error(f"Failed to store conversation turn: {e.__class__.__name__}: {e}")

    async def _call_llm(self, system_instruction: str, prompt: str) -> str:
        try:
            return await asyncio.wait_for(
                self.llm.complete(system_instruction, prompt),
                timeout=self.llm_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"LLM call exceeded {self.llm_timeout}s")
            raise LLMServiceError(f"LLM call timed out after {self.llm_timeout}s") from None
        except LLMServiceError:
            raise
        except Exception as e:
            logger.error(f"LLM call failed: {e.__class__.__name__}")
            raise LLMServiceError(f"LLM call failed: {e.__class__.__name__}") from e

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for outstanding background profile updates."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
