"""
Profile Enhancer
Derives durable profile facts from linked-account data without storing the raw data
"""
from collections import Counter, defaultdict
from typing import Any, Dict, List, Tuple
import logging

logger = logging.getLogger(__name__)

DEPOSITORY_TYPES = {"depository", "checking", "savings"}
RECURRING_MIN_MONTHS = 3


def _balance(account: Dict[str, Any]) -> float:
    balance = account.get("balance")
    if isinstance(balance, dict):
        balance = balance.get("current")
    if balance is None:
        balance = account.get("current_balance")
    try:
        return float(balance or 0)
    except (TypeError, ValueError):
        return 0.0


def _category(transaction: Dict[str, Any]) -> str:
    category = transaction.get("category")
    if isinstance(category, list):
        category = category[0] if category else None
    return category or "Uncategorized"


class ProfileEnhancer:
    """Turns accounts and transactions into profile sentences"""

    def derive_facts(self, account_data: Dict[str, Any]) -> List[Tuple[str, str]]:
        """
        Analyze account data.

        Args:
            account_data: {"accounts": [...], "transactions": [...]} in the
                shape returned by the account data source

        Returns:
            (key, sentence) pairs, one per kind of insight
        """
        accounts = account_data.get("accounts") or []
        transactions = account_data.get("transactions") or []
        facts: List[Tuple[str, str]] = []

        by_type: Dict[str, float] = defaultdict(float)
        institutions = []
        for account in accounts:
            kind = (account.get("type") or "other").lower()
            if kind in DEPOSITORY_TYPES:
                kind = "depository"
            amount = _balance(account)
            # Credit balances are reported with either sign; track the amount owed
            by_type[kind] += abs(amount) if kind == "credit" else amount
            institution = account.get("institution")
            if institution and institution not in institutions:
                institutions.append(institution)

        if by_type.get("depository", 0) > 0:
            facts.append(("Cash savings", f"Cash savings: ${by_type['depository']:,.2f} in depository accounts."))
        if by_type.get("investment", 0) > 0:
            facts.append(("Investments", f"Investments: portfolio worth ${by_type['investment']:,.2f}."))
        if by_type.get("credit", 0) > 0:
            facts.append(("Credit card balances", f"Credit card balances: ${by_type['credit']:,.2f} outstanding."))
        if by_type.get("loan", 0) > 0:
            facts.append(("Loans", f"Loans: ${by_type['loan']:,.2f} outstanding."))
        if institutions:
            facts.append(("Institutions", f"Institutions: {', '.join(institutions)}."))

        spending: Dict[str, float] = defaultdict(float)
        monthly: Dict[str, float] = defaultdict(float)
        merchant_months: Dict[str, set] = defaultdict(set)
        for transaction in transactions:
            try:
                amount = float(transaction.get("amount") or 0)
            except (TypeError, ValueError):
                continue
            # Positive amounts are money leaving the account
            if amount <= 0:
                continue
            month = str(transaction.get("date") or "")[:7]
            spending[_category(transaction)] += amount
            if month:
                monthly[month] += amount
            merchant = transaction.get("merchant_name") or transaction.get("name")
            if merchant and month:
                merchant_months[merchant].add(month)

        if spending:
            top = Counter(spending).most_common(3)
            facts.append((
                "Top spending categories",
                "Top spending categories: " + ", ".join(f"{c} (${a:,.2f})" for c, a in top) + ".",
            ))
        if monthly:
            average = sum(monthly.values()) / len(monthly)
            facts.append(("Average monthly spending", f"Average monthly spending: ${average:,.2f}."))

        recurring = sorted(m for m, months in merchant_months.items() if len(months) >= RECURRING_MIN_MONTHS)
        if recurring:
            facts.append(("Recurring payments", f"Recurring payments: {', '.join(recurring[:5])}."))

        logger.info(
            f"Derived {len(facts)} account insights from {len(accounts)} accounts "
            f"and {len(transactions)} transactions"
        )
        return facts

    def derive_insights(self, account_data: Dict[str, Any]) -> List[str]:
        return [sentence for _, sentence in self.derive_facts(account_data)]
