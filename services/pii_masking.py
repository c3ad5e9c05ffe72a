"""
PII (Personally Identifiable Information) Masking Service
Finds sensitive spans in free text and either tokenizes them through a vault
(reversible, for the LLM) or redacts them (irreversible, for other outbound calls)
"""
import re
from typing import Callable, Iterable, Optional
import logging

from services.token_vault import TOKEN_PATTERN, TokenVault, sub_outside_tokens

logger = logging.getLogger(__name__)

# Institutions commonly named in profiles and questions
KNOWN_INSTITUTIONS = [
    'Bank of America', 'Wells Fargo', 'Capital One', 'Navy Federal', 'TD Ameritrade',
    'State Employees', 'Charles Schwab', 'American Express', 'Goldman Sachs',
    'Chase', 'Citibank', 'Citi', 'US Bank', 'PNC', 'Ally Bank', 'Ally', 'Marcus',
    'Fidelity', 'Vanguard', 'Schwab', 'Robinhood', 'PenFed', 'Alliant', 'Discover',
    'SoFi', 'Wealthfront', 'Betterment', 'E*TRADE', 'Coinbase',
]


class PIIMaskingService:
    """Service for masking PII in free text before it leaves the process"""

    # Patterns for detecting sensitive information
    EMAIL_PATTERN = re.compile(r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b')
    CREDIT_CARD_PATTERN = re.compile(r'\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b')
    SSN_PATTERN = re.compile(r'\b\d{3}-\d{2}-\d{4}\b')
    PHONE_PATTERN = re.compile(
        r'(?:\+\d{1,3}[\s-]?)?\(?\b\d{3}\)?[-\s.]\d{3}[-\s.]\d{4}\b'
    )
    ACCOUNT_NUMBER_PATTERN = re.compile(r'\b\d{8,}\b')  # Account numbers typically 8+ digits
    AMOUNT_PATTERN = re.compile(
        r'-?\$\s?(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d+)?(?:\s?(?:k|K|m|M|million|billion)\b)?'
    )
    NAME_PATTERN = re.compile(r"\b(?:[Mm]y name is|I am|I'm)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*)")
    SPOUSE_PATTERN = re.compile(r"\b[Mm]y\s+(?:wife|husband|spouse|partner)\s+([A-Z][a-z]+)")
    LOCATION_PATTERN = re.compile(
        r"\b(?:(?:live|living|lives|based|located)\s+in|Location:)\s+([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*(?:,\s+[A-Z]{2}\b)?)"
    )

    def __init__(self, institutions: Optional[Iterable[str]] = None):
        names = sorted(institutions or KNOWN_INSTITUTIONS, key=len, reverse=True)
        self.institution_pattern = re.compile(
            r'(?<!\w)(?:' + '|'.join(re.escape(n) for n in names) + r')(?!\w)'
        )

    def _apply(self, text: str, handler: Callable[[str, str], str]) -> str:
        """
        Run every detector over ``text``, calling ``handler(value, type)`` for each match.

        The order matters: specific identifiers first, so that for example a
        card number is not half-consumed by the account-number pattern.
        """
        def whole(token_type):
            return lambda m: handler(m.group(0), token_type)

        def group(token_type):
            def repl(m):
                value = m.group(1)
                start = m.start(1) - m.start(0)
                full = m.group(0)
                return full[:start] + handler(value, token_type) + full[start + len(value):]
            return repl

        masked = text
        masked = sub_outside_tokens(masked, self.EMAIL_PATTERN, whole("EMAIL"))
        masked = sub_outside_tokens(masked, self.CREDIT_CARD_PATTERN, whole("CARD"))
        masked = sub_outside_tokens(masked, self.SSN_PATTERN, whole("SSN"))
        masked = sub_outside_tokens(masked, self.PHONE_PATTERN, whole("PHONE"))
        masked = sub_outside_tokens(masked, self.ACCOUNT_NUMBER_PATTERN, whole("ACCTNUM"))
        masked = sub_outside_tokens(masked, self.AMOUNT_PATTERN, whole("AMOUNT"))
        masked = sub_outside_tokens(masked, self.institution_pattern, whole("INSTITUTION"))
        masked = sub_outside_tokens(masked, self.NAME_PATTERN, group("PERSON"))
        masked = sub_outside_tokens(masked, self.SPOUSE_PATTERN, group("PERSON"))
        masked = sub_outside_tokens(masked, self.LOCATION_PATTERN, group("LOCATION"))
        return masked

    def tokenize_text(self, text: str, vault: TokenVault) -> str:
        """
        Replace sensitive spans with vault tokens.

        Values the vault already knows (account names, merchants from the
        structured data) are replaced first, then the pattern detectors run.

        Args:
            text: Free text (profile, question, conversation history)
            vault: Vault for the current request/session

        Returns:
            Tokenized text
        """
        if not text:
            return text
        tokenized = vault.mask_known_values(text)
        return self._apply(tokenized, lambda value, token_type: vault.tokenize(value, token_type))

    def mask_text(self, text: str, known: Optional[TokenVault] = None) -> str:
        """
        Irreversibly redact sensitive spans.

        Used for text sent to non-LLM services, e.g. search queries, where a
        token would be meaningless.

        Args:
            text: Free text to redact
            known: Vault whose values (account, merchant and security names)
                are removed along with the pattern matches
        """
        if not text:
            return text
        if known is not None:
            text = TOKEN_PATTERN.sub("", known.mask_known_values(text))
        redacted = self._apply(text, lambda value, token_type: "")
        return re.sub(r'\s{2,}', ' ', redacted).strip()
