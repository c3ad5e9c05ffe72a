import httpx
import pytest

from conftest import CHECKING_ACCOUNT_DATA, FakeLLM, FakeProvider, search_result, unemployment_result
from schemas import UserTier
from services.account_data import StaticAccountDataSource
from services.context_assembler import TIER_DISCLOSURE, ContextAssembler, QuestionRequest
from services.conversation_manager import ConversationManager
from services.errors import LLMServiceError
from services.market_context import MarketContextOrchestrator
from services.market_news import MarketNewsService
from services.profile_encryption import ProfileEncryptionService, generate_key
from services.profile_extractor import RuleBasedProfileMerger
from services.profile_manager import ProfileManager
from services.providers.base import ProviderKind
from services.providers.search import SearchProvider
from services.tier_gate import TierGate
from services.token_vault import SessionVaultStore


@pytest.fixture
def fred():
    return FakeProvider("fred", results={"indicators": unemployment_result()})


@pytest.fixture
def search():
    return FakeProvider("search", kind=ProviderKind.search, results={"search:mortgage rates": search_result()})


@pytest.fixture
def profile_manager(session_factory, encryption_service):
    return ProfileManager(
        session_factory=session_factory,
        encryption_service=encryption_service,
        merger=RuleBasedProfileMerger(),
        tier_gate=TierGate(strict=True),
    )


@pytest.fixture
def build(session_factory, market_cache, profile_manager, fred, search):
    def _build(llm, vault_store=None, manager=None, llm_timeout=5.0):
        gate = TierGate(strict=True)
        return ContextAssembler(
            llm=llm,
            profile_manager=manager or profile_manager,
            market_context=MarketContextOrchestrator([fred, search], market_cache, gate),
            account_data_source=StaticAccountDataSource({"u1": CHECKING_ACCOUNT_DATA}),
            conversation_manager=ConversationManager(session_factory),
            vault_store=vault_store,
            tier_gate=gate,
            llm_timeout=llm_timeout,
        )
    return _build


async def test_starter_request_uses_account_data_only(build, fred, search):
    llm = FakeLLM("Your ⟦ACCOUNT_1⟧ holds ⟦AMOUNT_1⟧.")
    assembler = build(llm)

    result = await assembler.answer_question(
        QuestionRequest(question="What are mortgage rates right now?", tier=UserTier.starter, user_id="u1")
    )
    await assembler.drain()

    assert fred.calls == []
    assert search.calls == []
    assert result.answer == "Your Everyday Checking holds $8,420.15." + TIER_DISCLOSURE
    assert result.market_context_used is False
    assert result.upgrade_suggestions
    assert "Current market context" not in llm.last_system_instruction
    assert "Investment holdings" not in llm.last_system_instruction


async def test_outbound_prompt_carries_no_sensitive_values(build):
    llm = FakeLLM("OK")
    assembler = build(llm)

    await assembler.answer_question(QuestionRequest(
        question="Can Everyday Checking cover my Netflix bill?", tier=UserTier.standard, user_id="u1"
    ))
    await assembler.drain()

    outbound = llm.last_system_instruction + llm.last_prompt
    for value in ("Everyday Checking", "Chase", "8,420.15", "Netflix", "15.49", "2,814.00"):
        assert value not in outbound
    assert "Investment holdings" in llm.last_system_instruction


async def test_premium_request_cites_cached_indicator(build, fred, market_cache):
    market_cache.put("fred", "indicators", unemployment_result(), ttl=86400)
    llm = FakeLLM("Unemployment is 4.2% as of 2025-07 (FRED).")
    assembler = build(llm)

    result = await assembler.answer_question(
        QuestionRequest(question="What's the unemployment rate?", tier=UserTier.premium, user_id="u1")
    )
    await assembler.drain()

    assert fred.calls == []
    assert "Unemployment Rate: 4.2% (as of 2025-07, FRED)" in llm.last_system_instruction
    assert result.market_context_used is True
    assert TIER_DISCLOSURE not in result.answer
    assert result.upgrade_suggestions == []


async def test_profile_is_learned_and_reused(build, profile_manager):
    llm = FakeLLM("Noted.")
    assembler = build(llm)

    first = await assembler.answer_question(QuestionRequest(
        question="I am a 35-year-old engineer earning $150,000. How much should I save?",
        tier=UserTier.starter, user_id="u1",
    ))
    await assembler.drain()
    assert first.profile_available is True

    profile = profile_manager.get_profile("u1").profile_text
    assert "Age: 35." in profile
    assert "Occupation: engineer." in profile
    assert "Income: $150,000." in profile

    await assembler.answer_question(QuestionRequest(question="Can I afford a car?", tier=UserTier.starter, user_id="u1"))
    await assembler.drain()

    system_instruction = llm.last_system_instruction
    assert "Age: 35." in system_instruction
    assert "Occupation: engineer." in system_instruction
    assert "$150,000" not in system_instruction
    assert "$150,000" not in llm.last_prompt
    assert "Previous conversation:" in llm.last_prompt


async def test_unreadable_profile_does_not_block_the_answer(build, profile_manager, session_factory):
    profile_manager.update_profile("u1", "Age: 35.")
    wrong_key = ProfileManager(
        session_factory=session_factory,
        encryption_service=ProfileEncryptionService(generate_key(), key_version=1),
        merger=RuleBasedProfileMerger(),
    )
    llm = FakeLLM("Here is an answer.")
    assembler = build(llm, manager=wrong_key)

    result = await assembler.answer_question(
        QuestionRequest(question="I am a 40-year-old nurse", tier=UserTier.starter, user_id="u1")
    )
    await assembler.drain()

    assert result.answer.startswith("Here is an answer.")
    assert result.profile_available is False
    assert "User profile" not in llm.last_system_instruction
    assert profile_manager.get_profile("u1").profile_text == "Age: 35."


async def test_demo_mode(build, session_factory, monkeypatch):
    monkeypatch.setenv("ENABLE_DEMO_MODE", "true")
    llm = FakeLLM("Demo answer.")
    assembler = build(llm)

    result = await assembler.answer_question(QuestionRequest(
        question="How is my budget?", tier=UserTier.standard, is_demo=True, demo_session_id="demo-1"
    ))
    await assembler.drain()

    assert result.answer == "Demo answer."
    assert result.profile_available is False
    assert "Wells Fargo" not in llm.last_system_instruction
    assert "Austin" not in llm.last_system_instruction
    assert "⟦ACCOUNT_" in llm.last_system_instruction
    assert ConversationManager(session_factory).end_demo_session("demo-1") == 1


async def test_demo_mode_can_be_disabled(build, monkeypatch):
    monkeypatch.setenv("ENABLE_DEMO_MODE", "false")
    assembler = build(FakeLLM("unused"))
    with pytest.raises(PermissionError):
        await assembler.answer_question(QuestionRequest(
            question="How is my budget?", is_demo=True, demo_session_id="demo-1"
        ))


async def test_llm_failure_and_timeout_raise_service_error(build):
    failing = build(FakeLLM(RuntimeError("quota exceeded")))
    with pytest.raises(LLMServiceError):
        await failing.answer_question(QuestionRequest(question="Hi", user_id="u1"))

    slow = build(FakeLLM("late", delay=0.5), llm_timeout=0.05)
    with pytest.raises(LLMServiceError):
        await slow.answer_question(QuestionRequest(question="Hi", user_id="u1"))


async def test_missing_identity_is_rejected(build):
    with pytest.raises(ValueError):
        await build(FakeLLM()).answer_question(QuestionRequest(question="Hi"))


async def test_session_vault_keeps_tokens_stable(build):
    store = SessionVaultStore(ttl_seconds=600)
    llm = FakeLLM("OK")
    assembler = build(llm, vault_store=store)

    await assembler.answer_question(QuestionRequest(question="Hi", user_id="u1", session_id="s1"))
    first_accounts = llm.last_system_instruction
    second = await assembler.answer_question(QuestionRequest(
        question="Is ⟦ACCOUNT_1⟧ enough?", user_id="u1", session_id="s1"
    ))
    await assembler.drain()

    assert llm.last_system_instruction.split("Accounts:")[1].split("\n\n")[0] == \
        first_accounts.split("Accounts:")[1].split("\n\n")[0]
    assert store.get("s1", "user:u1").resolve("⟦ACCOUNT_1⟧") == "Everyday Checking"
    assert second.answer.startswith("OK")


async def test_session_vault_is_never_shared_between_users(build):
    store = SessionVaultStore(ttl_seconds=600)
    llm = FakeLLM(lambda system, prompt: prompt.split("Current question:\n")[-1])
    assembler = build(llm, vault_store=store)

    await assembler.answer_question(QuestionRequest(question="Hi", user_id="u1", session_id="s1"))
    result = await assembler.answer_question(QuestionRequest(
        question="Repeat ⟦ACCOUNT_1⟧ and ⟦AMOUNT_1⟧", user_id="u2", session_id="s1"
    ))
    await assembler.drain()

    assert "Everyday Checking" not in result.answer
    assert "8,420.15" not in result.answer
    assert result.answer.startswith("Repeat ⟦ACCOUNT_1⟧ and ⟦AMOUNT_1⟧")


async def test_search_query_never_carries_account_names(session_factory, market_cache, profile_manager):
    sent = []

    def handler(request):
        sent.append(request.url.params["q"])
        return httpx.Response(200, json={"web": {"results": []}})

    search = SearchProvider(
        api_key="search-key", engine="brave", min_interval=0,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    gate = TierGate(strict=True)
    assembler = ContextAssembler(
        llm=FakeLLM("OK"),
        profile_manager=profile_manager,
        market_context=MarketContextOrchestrator([search], market_cache, gate),
        account_data_source=StaticAccountDataSource({"u1": CHECKING_ACCOUNT_DATA}),
        tier_gate=gate,
    )

    await assembler.answer_question(QuestionRequest(
        question="Should I sell Vanguard Total Stock Market ETF and move Everyday Checking "
                 "into savings, given what I spend on Netflix and current savings rates?",
        tier=UserTier.standard, user_id="u1",
    ))
    await assembler.drain()

    [query] = sent
    assert "savings rates" in query
    for name in ("vanguard", "total stock market", "everyday checking", "netflix"):
        assert name not in query.lower()


async def test_market_news_summary_reaches_paid_tiers_only(build, session_factory, market_cache, fred):
    news = MarketNewsService(MarketContextOrchestrator([fred], market_cache), session_factory=session_factory)
    news.update_manual(UserTier.standard, "Rates held steady this month.", edited_by="ops")
    llm = FakeLLM("OK")
    assembler = build(llm)
    assembler.market_news = news

    result = await assembler.answer_question(QuestionRequest(question="Hi", tier=UserTier.standard, user_id="u1"))
    assert "Market news summary:\nRates held steady this month." in llm.last_system_instruction
    assert result.market_context_used is True

    await assembler.answer_question(QuestionRequest(question="Hi", tier=UserTier.starter, user_id="u1"))
    await assembler.drain()
    assert "Market news summary" not in llm.last_system_instruction
