"""
Account data sources
The linked-account (Plaid) integration lives outside this service; the
assembler only sees the AccountDataSource interface. Demo mode uses the
synthetic household below.
"""
import copy
from typing import Any, Dict, Optional, Protocol
import logging

logger = logging.getLogger(__name__)


class AccountDataSource(Protocol):
    async def get_account_data(self, user_id: str) -> Dict[str, Any]:
        """Return {"accounts", "transactions", "investments", "liabilities"} for the user."""
        ...


def empty_account_data() -> Dict[str, Any]:
    return {"accounts": [], "transactions": [], "investments": [], "liabilities": []}


DEMO_ACCOUNT_DATA: Dict[str, Any] = {
    "accounts": [
        {"id": "demo_checking", "name": "Everyday Checking", "type": "depository", "subtype": "checking",
         "balance": {"current": 8420.15, "available": 8120.15}, "institution": "Chase"},
        {"id": "demo_savings", "name": "High-Yield Savings", "type": "depository", "subtype": "savings",
         "balance": {"current": 31250.00, "available": 31250.00}, "institution": "Ally Bank"},
        {"id": "demo_401k", "name": "Workplace 401(k)", "type": "investment", "subtype": "401k",
         "balance": {"current": 142310.42}, "institution": "Fidelity"},
        {"id": "demo_ira", "name": "Roth IRA", "type": "investment", "subtype": "roth",
         "balance": {"current": 61875.90}, "institution": "Vanguard"},
        {"id": "demo_credit", "name": "Rewards Visa", "type": "credit", "subtype": "credit card",
         "balance": {"current": -2875.40}, "institution": "Chase"},
        {"id": "demo_mortgage", "name": "Home Mortgage", "type": "loan", "subtype": "mortgage",
         "balance": {"current": 412000.00}, "institution": "Wells Fargo"},
    ],
    "transactions": [
        {"account_id": "demo_checking", "amount": 2150.00, "date": "2025-07-01", "name": "Mortgage Payment",
         "merchant_name": "Wells Fargo", "category": ["Loan Payments"], "pending": False},
        {"account_id": "demo_credit", "amount": 186.42, "date": "2025-07-03", "name": "Grocery Store",
         "merchant_name": "H-E-B", "category": ["Food and Drink", "Groceries"], "pending": False},
        {"account_id": "demo_credit", "amount": 15.49, "date": "2025-07-05", "name": "Streaming Service",
         "merchant_name": "Netflix", "category": ["Entertainment"], "pending": False},
        {"account_id": "demo_checking", "amount": -4200.00, "date": "2025-07-15", "name": "Payroll Deposit",
         "merchant_name": None, "category": ["Income"], "pending": False},
        {"account_id": "demo_credit", "amount": 64.10, "date": "2025-07-18", "name": "Gas Station",
         "merchant_name": "Shell", "category": ["Transportation", "Gas"], "pending": True},
        {"account_id": "demo_checking", "amount": 2150.00, "date": "2025-06-01", "name": "Mortgage Payment",
         "merchant_name": "Wells Fargo", "category": ["Loan Payments"], "pending": False},
        {"account_id": "demo_credit", "amount": 15.49, "date": "2025-06-05", "name": "Streaming Service",
         "merchant_name": "Netflix", "category": ["Entertainment"], "pending": False},
        {"account_id": "demo_credit", "amount": 212.87, "date": "2025-06-12", "name": "Grocery Store",
         "merchant_name": "H-E-B", "category": ["Food and Drink", "Groceries"], "pending": False},
        {"account_id": "demo_checking", "amount": 2150.00, "date": "2025-05-01", "name": "Mortgage Payment",
         "merchant_name": "Wells Fargo", "category": ["Loan Payments"], "pending": False},
        {"account_id": "demo_credit", "amount": 15.49, "date": "2025-05-05", "name": "Streaming Service",
         "merchant_name": "Netflix", "category": ["Entertainment"], "pending": False},
    ],
    "investments": [
        {"security_name": "Vanguard Total Stock Market ETF", "ticker_symbol": "VTI", "security_type": "etf",
         "quantity": 210, "institution_price": 281.40, "institution_value": 59094.00},
        {"security_name": "Fidelity 500 Index Fund", "ticker_symbol": "FXAIX", "security_type": "mutual fund",
         "quantity": 612.3456, "institution_price": 201.15, "institution_value": 123173.32},
    ],
    "liabilities": [
        {"name": "Home Mortgage", "type": "mortgage", "institution": "Wells Fargo",
         "balance": 412000.00, "apr": 6.125},
        {"name": "Rewards Visa", "type": "credit", "institution": "Chase",
         "balance": 2875.40, "limit": 15000.00, "apr": 22.49},
    ],
}

DEMO_PROFILE_TEXT = (
    "Age: 38.\nOccupation: software engineer.\nMarital status: married.\nChildren: 2 kids.\n"
    "Location: Austin, TX.\nGoal: pay off the mortgage early.\nRisk tolerance: moderate."
)


class StaticAccountDataSource:
    """In-memory source keyed by user id; stands in until a linked-account integration is wired"""

    def __init__(self, data_by_user: Optional[Dict[str, Dict[str, Any]]] = None):
        self.data_by_user = data_by_user or {}

    async def get_account_data(self, user_id: str) -> Dict[str, Any]:
        data = self.data_by_user.get(user_id)
        if data is None:
            logger.info(f"No linked account data for user {user_id}")
            return empty_account_data()
        return {**empty_account_data(), **copy.deepcopy(data)}


class DemoAccountDataSource:
    async def get_account_data(self, user_id: str) -> Dict[str, Any]:
        return copy.deepcopy(DEMO_ACCOUNT_DATA)
