import pytest
from fastapi.testclient import TestClient

from conftest import CHECKING_ACCOUNT_DATA, FakeLLM, FakeProvider, unemployment_result
from main import create_app
from services.account_data import StaticAccountDataSource
from services.container import ServiceContainer
from services.context_assembler import TIER_DISCLOSURE, ContextAssembler
from services.conversation_manager import ConversationManager
from services.errors import LLMServiceError
from services.market_context import MarketContextOrchestrator
from services.market_news import MarketNewsService
from services.profile_extractor import RuleBasedProfileMerger
from services.profile_manager import ProfileManager
from services.tier_gate import TierGate
from services.token_vault import SessionVaultStore


@pytest.fixture
def llm():
    return FakeLLM("Your ⟦ACCOUNT_1⟧ balance is ⟦AMOUNT_1⟧.")


@pytest.fixture
def fred():
    return FakeProvider("fred", results={"indicators": unemployment_result()})


@pytest.fixture
def container(session_factory, encryption_service, market_cache, llm, fred):
    gate = TierGate(strict=True)
    market_context = MarketContextOrchestrator([fred], market_cache, gate)
    profile_manager = ProfileManager(
        session_factory=session_factory,
        encryption_service=encryption_service,
        merger=RuleBasedProfileMerger(),
        tier_gate=gate,
    )
    conversation_manager = ConversationManager(session_factory)
    vault_store = SessionVaultStore(ttl_seconds=600)
    assembler = ContextAssembler(
        llm=llm,
        profile_manager=profile_manager,
        market_context=market_context,
        account_data_source=StaticAccountDataSource({"u1": CHECKING_ACCOUNT_DATA}),
        conversation_manager=conversation_manager,
        vault_store=vault_store,
        tier_gate=gate,
    )
    return ServiceContainer(
        assembler=assembler,
        market_context=market_context,
        market_cache=market_cache,
        profile_manager=profile_manager,
        conversation_manager=conversation_manager,
        vault_store=vault_store,
        market_news=MarketNewsService(market_context, session_factory=session_factory),
    )


@pytest.fixture
def client(container):
    with TestClient(create_app(container)) as test_client:
        yield test_client


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["docs"] == "/docs"


def test_ask_starter(client, fred):
    response = client.post("/ask", json={"question": "How much is in checking?", "tier": "starter", "user_id": "u1"})
    assert response.status_code == 200
    data = response.json()
    assert data["answer"] == "Your Everyday Checking balance is $8,420.15." + TIER_DISCLOSURE
    assert data["tier"] == "starter"
    assert data["market_context_used"] is False
    assert data["upgrade_suggestions"]
    assert fred.calls == []


def test_ask_premium_uses_market_context(client, llm):
    response = client.post("/ask", json={"question": "What's the unemployment rate?", "tier": "premium", "user_id": "u1"})
    assert response.status_code == 200
    assert response.json()["market_context_used"] is True
    assert "Unemployment Rate: 4.2% (as of 2025-07, FRED)" in llm.last_system_instruction


def test_ask_normalizes_legacy_tier_name(client):
    response = client.post("/ask", json={"question": "Hi", "tier": "Free", "user_id": "u1"})
    assert response.status_code == 200
    assert response.json()["tier"] == "starter"


@pytest.mark.parametrize("body", [
    {"question": "Hi", "tier": "starter"},
    {"question": "   ", "user_id": "u1"},
    {"question": "Hi", "tier": "gold", "user_id": "u1"},
    {"question": "Hi", "is_demo": True},
])
def test_ask_rejects_invalid_requests(client, body):
    assert client.post("/ask", json=body).status_code == 422


def test_ask_demo_disabled(client, monkeypatch):
    monkeypatch.setenv("ENABLE_DEMO_MODE", "false")
    response = client.post("/ask", json={"question": "Hi", "is_demo": True, "demo_session_id": "demo-1"})
    assert response.status_code == 403


def test_ask_llm_failure(client, llm):
    llm.response = LLMServiceError("upstream unavailable")
    response = client.post("/ask", json={"question": "Hi", "user_id": "u1"})
    assert response.status_code == 502


def test_market_context_endpoint(client, fred):
    response = client.get("/market/context", params={"tier": "premium"})
    assert response.status_code == 200
    data = response.json()
    assert data["providers_used"] == ["fred"]
    assert data["data_points"][0]["metric"] == "unemployment_rate"
    assert "Unemployment Rate: 4.2%" in data["digest"]

    starter = client.get("/market/context", params={"tier": "starter"}).json()
    assert starter["digest"] == ""
    assert fred.calls == ["indicators"]


def test_market_cache_endpoints(client):
    client.get("/market/context", params={"tier": "standard"})

    stats = client.get("/market/cache-stats").json()
    assert stats["keys"] == 1
    assert stats["providers"] == {"fred": 1}

    assert client.post("/market/invalidate", json={"provider": "bloomberg"}).status_code == 400
    response = client.post("/market/invalidate", json={"provider": "fred"})
    assert response.status_code == 200
    assert response.json()["details"]["removed"] == 1

    refreshed = client.post("/market/refresh").json()
    assert refreshed == {"refreshed": {"fred": 1}, "failed": []}


def test_profile_endpoints(client, container):
    assert client.get("/profile/u1").status_code == 404

    container.profile_manager.update_profile("u1", "Age: 35.")
    response = client.get("/profile/u1")
    assert response.status_code == 200
    assert response.json()["profile_text"] == "Age: 35."

    container.vault_store.get("s1", "user:u1")
    response = client.delete("/profile/u1")
    assert response.status_code == 200
    assert response.json() == {"user_id": "u1", "deleted": True}
    assert len(container.vault_store) == 0
    assert client.get("/profile/u1").status_code == 404
    assert client.delete("/profile/u1").status_code == 404


def test_end_session(client, container):
    client.post("/ask", json={"question": "Hi", "is_demo": True, "demo_session_id": "demo-1", "session_id": "demo-1"})
    assert len(container.vault_store) == 1

    response = client.post("/sessions/demo-1/end")
    assert response.status_code == 200
    assert response.json() == {"session_id": "demo-1", "vault_cleared": True, "conversations_deleted": 1}
    assert len(container.vault_store) == 0


def test_market_news_endpoints(client):
    assert client.get("/market/news/standard").status_code == 404

    refreshed = client.post("/market/news/refresh").json()
    assert refreshed == {"refreshed": {"standard": True, "premium": True}}
    generated = client.get("/market/news/standard").json()
    assert generated["change_type"] == "auto_update"
    assert "Unemployment Rate: 4.2%" in generated["context_text"]

    response = client.put("/market/news/standard", json={"context_text": "Rates are steady.", "edited_by": "ops"})
    assert response.status_code == 200
    assert response.json()["change_type"] == "manual_edit"
    assert client.put("/market/news/starter", json={"context_text": "x", "edited_by": "ops"}).status_code == 400
    assert client.put("/market/news/standard", json={"context_text": "", "edited_by": "ops"}).status_code == 422

    history = client.get("/market/news/standard/history").json()
    assert [entry["context_text"] for entry in history][0] == "Rates are steady."
    assert len(history) == 2

    client.post("/market/news/refresh", params={"force": "true"})
    assert client.get("/market/news/standard").json()["change_type"] == "auto_update"


def test_market_news_not_configured(client, container):
    container.market_news = None
    assert client.get("/market/news/standard").status_code == 503
