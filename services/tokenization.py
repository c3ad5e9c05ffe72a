"""
Tokenization Boundary
Rewrites outbound LLM context into token form and rewrites LLM output back
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional
import json
import logging

from services.pii_masking import PIIMaskingService
from services.token_vault import TokenVault

logger = logging.getLogger(__name__)

# (value, token_type) -> text placed in the prompt
Masker = Callable[[Any, str], str]


@dataclass
class ConversationTurn:
    question: str
    answer: str = ""
    created_at: Optional[datetime] = None


@dataclass
class ContextPayload:
    """Everything that may go into a prompt, in real (untokenized) form"""
    question: str = ""
    profile_text: str = ""
    accounts: List[Dict[str, Any]] = field(default_factory=list)
    transactions: List[Dict[str, Any]] = field(default_factory=list)
    investments: List[Dict[str, Any]] = field(default_factory=list)
    liabilities: List[Dict[str, Any]] = field(default_factory=list)
    insights: List[str] = field(default_factory=list)
    history: List[ConversationTurn] = field(default_factory=list)


@dataclass
class TokenizedContext:
    question: str
    profile_text: str
    accounts_text: str
    transactions_text: str
    investments_text: str
    liabilities_text: str
    insights_text: str
    history_text: str
    vault: TokenVault

    def sections(self) -> Dict[str, str]:
        return {
            "question": self.question,
            "profile": self.profile_text,
            "accounts": self.accounts_text,
            "transactions": self.transactions_text,
            "investments": self.investments_text,
            "liabilities": self.liabilities_text,
            "insights": self.insights_text,
            "history": self.history_text,
        }


def format_money(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return None
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def format_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date().isoformat()
        except ValueError:
            return value
    return "Unknown"


def _categories(transaction: Dict[str, Any]) -> str:
    enriched = (transaction.get("enriched_data") or {}).get("category")
    for label, raw in (("Enhanced", enriched), ("Basic", transaction.get("category"))):
        if isinstance(raw, str):
            raw = [raw]
        if isinstance(raw, list):
            valid = [c for c in raw if c and str(c).strip() and c != "0"]
            if valid:
                return f" [{label}: {', '.join(valid)}]"
    return ""


def _city(transaction: Dict[str, Any]) -> str:
    location = (transaction.get("enriched_data") or {}).get("location") or transaction.get("location")
    if isinstance(location, str):
        try:
            location = json.loads(location)
        except ValueError:
            return ""
    if isinstance(location, dict) and location.get("city"):
        return f" at {location['city']}"
    return ""


def _balances(account: Dict[str, Any]):
    balance = account.get("balance")
    if isinstance(balance, dict):
        return balance.get("current"), balance.get("available")
    if balance is not None:
        return balance, account.get("available_balance")
    return account.get("current_balance"), account.get("available_balance")


def render_accounts(accounts: List[Dict[str, Any]], mask: Masker) -> str:
    lines = []
    for a in accounts:
        current, available = _balances(a)
        current_text = format_money(current)
        available_text = format_money(available)
        balance = mask(current_text, "AMOUNT") if current_text else "N/A"
        available_part = f" (Available: {mask(available_text, 'AMOUNT')})" if available_text else ""
        kind = a.get("type") or "account"
        if a.get("subtype"):
            kind = f"{kind}/{a['subtype']}"
        institution = f" at {mask(a['institution'], 'INSTITUTION')}" if a.get("institution") else ""
        name = mask(a.get("name") or "Unnamed Account", "ACCOUNT")
        lines.append(f"- {name} ({kind}): {balance}{available_part}{institution}")
    return "\n".join(lines)


def render_transactions(transactions: List[Dict[str, Any]], mask: Masker) -> str:
    lines = []
    for t in transactions:
        enriched = t.get("enriched_data") or {}
        name = enriched.get("transaction_name") or t.get("name") or "Unknown Transaction"
        merchant = enriched.get("merchant_name") or t.get("merchant_name")
        merchant_part = f" ({mask(merchant, 'MERCHANT')})" if merchant and merchant != name else ""
        amount_text = format_money(t.get("amount")) or "$0.00"
        pending = " [PENDING]" if t.get("pending") else ""
        payment_method = enriched.get("payment_method") or t.get("payment_method")
        payment = f" via {payment_method}" if payment_method else ""
        lines.append(
            f"- [{format_date(t.get('date'))}] {mask(name, 'MERCHANT')}{merchant_part}: "
            f"{mask(amount_text, 'AMOUNT')}{_categories(t)}{pending}{payment}{_city(t)}"
        )
    return "\n".join(lines)


def render_investments(investments: List[Dict[str, Any]], mask: Masker) -> str:
    lines = []
    for h in investments:
        security = mask(h.get("security_name") or "Unknown Security", "SECURITY")
        if h.get("ticker_symbol"):
            security = f"{security} ({h['ticker_symbol']})"
        type_info = f" ({h['security_type']})" if h.get("security_type") else ""
        quantity = h.get("quantity") or 0
        quantity_text = str(quantity) if float(quantity).is_integer() else f"{float(quantity):.4f}"
        price = format_money(h.get("institution_price"))
        value = format_money(h.get("institution_value"))
        lines.append(
            f"- {security}{type_info}: {quantity_text} shares @ "
            f"{mask(price, 'AMOUNT') if price else 'N/A'} = {mask(value, 'AMOUNT') if value else 'N/A'}"
        )
    return "\n".join(lines)


def render_liabilities(liabilities: List[Dict[str, Any]], mask: Masker) -> str:
    lines = []
    for liability in liabilities:
        name = mask(liability.get("name") or "Unknown Liability", "LIABILITY")
        type_info = f" ({liability['type']})" if liability.get("type") else ""
        institution = f" at {mask(liability['institution'], 'INSTITUTION')}" if liability.get("institution") else ""
        balance = format_money(liability.get("balance"))
        limit = format_money(liability.get("limit"))
        limit_part = f" (Limit: {mask(limit, 'AMOUNT')})" if limit else ""
        apr = f" - APR: {float(liability['apr']):.2f}%" if liability.get("apr") is not None else ""
        lines.append(
            f"- {name}{type_info}{institution}: {mask(balance, 'AMOUNT') if balance else 'N/A'}{limit_part}{apr}"
        )
    return "\n".join(lines)


def render_history(history: List[ConversationTurn], text: Callable[[str], str]) -> str:
    return "\n\n".join(
        f"User: {text(turn.question)}\nAssistant: {text(turn.answer)}" for turn in history
    )


class TokenizationBoundary:
    """Converts a ContextPayload into token form and LLM output back into real values"""

    def __init__(self, pii_masker: Optional[PIIMaskingService] = None):
        self.pii_masker = pii_masker or PIIMaskingService()

    def tokenize(self, payload: ContextPayload, vault: Optional[TokenVault] = None) -> TokenizedContext:
        """
        Tokenize every sensitive value in ``payload``.

        Structured data is tokenized first so that account names, merchants and
        institutions it introduces are also caught when they appear inside the
        profile, the question or earlier turns.

        Args:
            payload: Real context
            vault: Existing vault (session scope) or None for a fresh request vault

        Returns:
            TokenizedContext holding the tokenized sections and the vault
        """
        vault = vault if vault is not None else TokenVault()

        def mask(value, token_type):
            return vault.tokenize(value, token_type)

        def text(value):
            return self.pii_masker.tokenize_text(value or "", vault)

        accounts_text = render_accounts(payload.accounts, mask)
        transactions_text = render_transactions(payload.transactions, mask)
        investments_text = render_investments(payload.investments, mask)
        liabilities_text = render_liabilities(payload.liabilities, mask)

        tokenized = TokenizedContext(
            question=text(payload.question),
            profile_text=text(payload.profile_text),
            accounts_text=accounts_text,
            transactions_text=transactions_text,
            investments_text=investments_text,
            liabilities_text=liabilities_text,
            insights_text="\n".join(f"- {text(i)}" for i in payload.insights),
            history_text=render_history(payload.history, text),
            vault=vault,
        )
        logger.info(
            f"Tokenized context for scope {vault.scope_id}: {len(vault)} tokens, "
            f"{len(payload.accounts)} accounts, {len(payload.transactions)} transactions"
        )
        return tokenized

    def redact_for_search(self, payload: ContextPayload, vault: Optional[TokenVault] = None) -> str:
        """
        The question with every sensitive value removed, for non-LLM services.

        Names from the structured data and from ``vault`` (the session's
        earlier turns) are stripped as well as the pattern matches. ``vault``
        itself is never modified.
        """
        known = TokenVault()
        if vault is not None:
            for _, value in vault.items():
                known.tokenize(value, "KNOWN")

        def mask(value, token_type):
            return known.tokenize(value, token_type)

        render_accounts(payload.accounts, mask)
        render_transactions(payload.transactions, mask)
        render_investments(payload.investments, mask)
        render_liabilities(payload.liabilities, mask)
        return self.pii_masker.mask_text(payload.question, known)

    def render_plain(self, payload: ContextPayload) -> Dict[str, str]:
        """Render the same sections with real values (what detokenization must reproduce)."""
        def identity(value, token_type):
            return "" if value is None else str(value)

        return {
            "question": payload.question or "",
            "profile": payload.profile_text or "",
            "accounts": render_accounts(payload.accounts, identity),
            "transactions": render_transactions(payload.transactions, identity),
            "investments": render_investments(payload.investments, identity),
            "liabilities": render_liabilities(payload.liabilities, identity),
            "insights": "\n".join(f"- {i}" for i in payload.insights),
            "history": render_history(payload.history, lambda value: value or ""),
        }

    def detokenize(self, text: str, vault: TokenVault) -> str:
        """
        Restore real values in LLM output.

        Markers the vault does not know (hallucinated or mangled by the model)
        are left untouched; we never guess a mapping.
        """
        unresolved = vault.unresolved_tokens(text)
        if unresolved:
            logger.warning(
                f"LLM output for scope {vault.scope_id} contains {len(unresolved)} unmapped tokens: "
                f"{sorted(set(unresolved))}"
            )
        return vault.detokenize(text)
