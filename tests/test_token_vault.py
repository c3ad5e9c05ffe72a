import pytest

from conftest import FakeClock
from services.token_vault import TOKEN_PATTERN, SessionVaultStore, TokenVault, make_token


def test_same_value_gets_same_token():
    vault = TokenVault()
    first = vault.tokenize("Everyday Checking", "ACCOUNT")
    second = vault.tokenize("Everyday Checking", "ACCOUNT")
    assert first == second == "⟦ACCOUNT_1⟧"
    assert len(vault) == 1


def test_counters_are_per_type():
    vault = TokenVault()
    assert vault.tokenize("Everyday Checking", "ACCOUNT") == "⟦ACCOUNT_1⟧"
    assert vault.tokenize("$8,420.15", "AMOUNT") == "⟦AMOUNT_1⟧"
    assert vault.tokenize("High-Yield Savings", "ACCOUNT") == "⟦ACCOUNT_2⟧"
    assert TOKEN_PATTERN.fullmatch(make_token("amount", 3))


def test_blank_values_and_existing_tokens_pass_through():
    vault = TokenVault()
    assert vault.tokenize("", "ACCOUNT") == ""
    assert vault.tokenize(None, "ACCOUNT") == ""
    token = vault.tokenize("Chase", "INSTITUTION")
    assert vault.tokenize(token, "INSTITUTION") == token
    assert len(vault) == 1


def test_detokenize_leaves_unknown_tokens_untouched():
    vault = TokenVault()
    vault.tokenize("Everyday Checking", "ACCOUNT")
    text = "Move money from ⟦ACCOUNT_1⟧ into ⟦ACCOUNT_7⟧."
    assert vault.detokenize(text) == "Move money from Everyday Checking into ⟦ACCOUNT_7⟧."
    assert vault.unresolved_tokens(text) == ["⟦ACCOUNT_7⟧"]


def test_mask_known_values_prefers_longest_match():
    vault = TokenVault()
    card = vault.tokenize("Chase Sapphire", "ACCOUNT")
    bank = vault.tokenize("Chase", "INSTITUTION")
    masked = vault.mask_known_values("My Chase Sapphire card is from Chase.")
    assert masked == f"My {card} card is from {bank}."


def test_mask_known_values_respects_word_boundaries():
    vault = TokenVault()
    vault.tokenize("Ally", "INSTITUTION")
    assert vault.mask_known_values("Totally fine") == "Totally fine"


def test_session_store_reuses_vault_until_ttl():
    clock = FakeClock()
    store = SessionVaultStore(ttl_seconds=60, clock=clock)
    vault = store.get("session-1", "u1")
    vault.tokenize("Everyday Checking", "ACCOUNT")

    clock.advance(30)
    assert store.get("session-1", "u1") is vault

    clock.advance(61)
    renewed = store.get("session-1", "u1")
    assert renewed is not vault
    assert len(renewed) == 0


def test_session_store_invalidation():
    store = SessionVaultStore(ttl_seconds=60, clock=FakeClock())
    store.get("a", "u1")
    store.get("a", "u2")
    store.get("b", "u1")
    assert store.invalidate("a") is True
    assert store.invalidate("a") is False
    assert store.invalidate_all() == 1
    assert len(store) == 0


def test_session_store_separates_owners_sharing_a_session_id():
    store = SessionVaultStore(ttl_seconds=60, clock=FakeClock())
    mine = store.get("shared", "u1")
    mine.tokenize("Everyday Checking", "ACCOUNT")

    theirs = store.get("shared", "u2")

    assert theirs is not mine
    assert theirs.resolve("⟦ACCOUNT_1⟧") is None
    assert theirs.detokenize("⟦ACCOUNT_1⟧") == "⟦ACCOUNT_1⟧"
    assert store.get("shared", "u1") is mine


def test_session_store_requires_owner():
    with pytest.raises(ValueError):
        SessionVaultStore().get("s1", "")
