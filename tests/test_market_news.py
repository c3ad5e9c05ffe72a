import pytest

from conftest import FakeLLM, FakeProvider, unemployment_result
from schemas import UserTier
from services.errors import LLMServiceError
from services.market_context import MarketContextOrchestrator
from services.market_news import AUTO_UPDATE, MANUAL_EDIT, MarketNewsService, extract_key_events
from services.providers.base import DataPoint


@pytest.fixture
def fred():
    return FakeProvider("fred", results={"indicators": unemployment_result()})


@pytest.fixture
def news_factory(session_factory, market_cache, fred):
    def _build(llm=None, providers=None):
        market = MarketContextOrchestrator(providers if providers is not None else [fred], market_cache)
        return MarketNewsService(market, llm=llm, session_factory=session_factory, llm_timeout=1.0)
    return _build


async def test_refresh_stores_llm_summary(news_factory):
    llm = FakeLLM("ECONOMIC INDICATORS:\nUnemployment held at 4.2%.")
    news = news_factory(llm)

    entry = await news.refresh(UserTier.standard)

    assert entry.change_type == AUTO_UPDATE
    assert entry.data_sources == ["fred"]
    assert news.get_context("standard") == "ECONOMIC INDICATORS:\nUnemployment held at 4.2%."
    system_instruction, prompt = llm.calls[0]
    assert "financial market analyst" in system_instruction
    assert "Unemployment Rate: 4.2% (as of 2025-07, FRED)" in prompt


async def test_refresh_falls_back_to_digest_when_llm_fails(news_factory):
    news = news_factory(FakeLLM(LLMServiceError("unavailable")))
    entry = await news.refresh(UserTier.premium)
    assert "Unemployment Rate: 4.2%" in entry.context_text


async def test_refresh_without_market_data_keeps_previous_summary(news_factory):
    news = news_factory(FakeLLM("First summary."))
    await news.refresh(UserTier.standard)

    empty = news_factory(FakeLLM("unused"), providers=[])
    entry = await empty.refresh(UserTier.standard)

    assert entry.context_text == "First summary."
    assert len(empty.get_history(UserTier.standard)) == 1


async def test_manual_edit_is_kept_until_forced_refresh(news_factory):
    llm = FakeLLM("Generated summary.")
    news = news_factory(llm)
    await news.refresh(UserTier.standard)
    news.update_manual(UserTier.standard, "  Hand-written outlook.  ", edited_by="ops@finsight")

    kept = await news.refresh(UserTier.standard)
    assert kept.change_type == MANUAL_EDIT
    assert kept.context_text == "Hand-written outlook."
    assert kept.edited_by == "ops@finsight"
    assert len(llm.calls) == 1

    replaced = await news.refresh(UserTier.standard, force=True)
    assert replaced.change_type == AUTO_UPDATE
    assert news.get_context(UserTier.standard) == "Generated summary."


async def test_history_is_newest_first_and_per_tier(news_factory):
    news = news_factory(FakeLLM("Generated summary."))
    await news.refresh(UserTier.standard)
    news.update_manual(UserTier.standard, "Edit one.", edited_by="ops")
    news.update_manual(UserTier.standard, "Edit two.", edited_by="ops")
    news.update_manual(UserTier.premium, "Premium edit.", edited_by="ops")

    history = news.get_history(UserTier.standard)
    assert [e.context_text for e in history] == ["Edit two.", "Edit one.", "Generated summary."]
    assert [e.is_active for e in history] == [True, False, False]
    assert len(news.get_history(UserTier.standard, limit=2)) == 2
    assert news.get_context(UserTier.premium) == "Premium edit."


async def test_starter_has_no_market_news(news_factory, fred):
    news = news_factory(FakeLLM("unused"))
    assert news.get_context(UserTier.starter) == ""
    with pytest.raises(ValueError):
        await news.refresh(UserTier.starter)
    with pytest.raises(ValueError):
        news.update_manual(UserTier.starter, "Anything.", edited_by="ops")
    assert fred.calls == []


@pytest.mark.parametrize("text,editor", [("   ", "ops"), ("Fine text.", "")])
def test_manual_edit_validation(news_factory, text, editor):
    with pytest.raises(ValueError):
        news_factory().update_manual(UserTier.standard, text, edited_by=editor)


async def test_refresh_all_reports_each_tier(news_factory):
    news = news_factory()
    assert await news.refresh_all() == {"standard": True, "premium": True}
    assert "Unemployment Rate: 4.2%" in news.get_context(UserTier.premium)


def test_key_events():
    points = [
        DataPoint("fed_funds_rate", "Federal Funds Rate", 5.33, "%", "2025-06", "FRED"),
        DataPoint("mortgage_30y", "30-Year Fixed Mortgage Rate", 6.75, "%", "2025-07-17", "FRED"),
    ]
    assert extract_key_events(points) == ["Federal Reserve rate at 5.33% - high interest rate environment"]
