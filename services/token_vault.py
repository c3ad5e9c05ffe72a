"""
Token Vault
Bidirectional mapping between real sensitive values and opaque tokens
"""
import re
import threading
import time
import uuid
from collections import defaultdict
from typing import Dict, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

# Markers use delimiters that never occur in the values we tokenize, so
# one token can never be a prefix/substring match of another.
TOKEN_OPEN = "⟦"
TOKEN_CLOSE = "⟧"
TOKEN_PATTERN = re.compile(TOKEN_OPEN + r"([A-Z]+)_(\d+)" + TOKEN_CLOSE)

# Shorter values are too ambiguous to replace inside free text
MIN_FREE_TEXT_VALUE_LENGTH = 3


def make_token(token_type: str, index: int) -> str:
    return f"{TOKEN_OPEN}{token_type.upper()}_{index}{TOKEN_CLOSE}"


def sub_outside_tokens(text: str, pattern: "re.Pattern", repl) -> str:
    """Apply ``pattern.sub`` only to the parts of ``text`` that are not token markers."""
    parts: List[str] = []
    last = 0
    for marker in TOKEN_PATTERN.finditer(text):
        parts.append(pattern.sub(repl, text[last:marker.start()]))
        parts.append(marker.group(0))
        last = marker.end()
    parts.append(pattern.sub(repl, text[last:]))
    return "".join(parts)


class TokenVault:
    """Bijective value <-> token map scoped to one request or conversation session"""

    def __init__(self, scope_id: Optional[str] = None):
        self.scope_id = scope_id or uuid.uuid4().hex
        self._token_by_value: Dict[str, str] = {}
        self._value_by_token: Dict[str, str] = {}
        self._counters: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._value_by_token)

    def __contains__(self, token: str) -> bool:
        return token in self._value_by_token

    def tokenize(self, value, token_type: str) -> str:
        """
        Return the token for ``value``, minting a new one if needed.

        Args:
            value: Real sensitive value (converted to str)
            token_type: Marker type, e.g. "ACCOUNT", "AMOUNT"

        Returns:
            Token marker, or the value unchanged when it is blank
        """
        real = "" if value is None else str(value)
        if not real.strip():
            return real
        if TOKEN_PATTERN.fullmatch(real):
            # Already a token (e.g. re-tokenizing tokenized text)
            return real

        with self._lock:
            existing = self._token_by_value.get(real)
            if existing is not None:
                return existing
            self._counters[token_type.upper()] += 1
            token = make_token(token_type, self._counters[token_type.upper()])
            self._token_by_value[real] = token
            self._value_by_token[token] = real
            return token

    def resolve(self, token: str) -> Optional[str]:
        return self._value_by_token.get(token)

    def detokenize(self, text: str) -> str:
        """Replace every known token marker with its real value; unknown markers stay as they are."""
        if not text:
            return text
        return TOKEN_PATTERN.sub(lambda m: self._value_by_token.get(m.group(0), m.group(0)), text)

    def unresolved_tokens(self, text: str) -> List[str]:
        if not text:
            return []
        return [m.group(0) for m in TOKEN_PATTERN.finditer(text) if m.group(0) not in self._value_by_token]

    def mask_known_values(self, text: str) -> str:
        """
        Replace occurrences of values already held by the vault inside free text.

        Longest values are matched first so "Chase Sapphire" wins over "Chase".
        """
        if not text or not self._token_by_value:
            return text

        with self._lock:
            candidates = sorted(
                (v for v in self._token_by_value if len(v) >= MIN_FREE_TEXT_VALUE_LENGTH),
                key=len,
                reverse=True,
            )
            lookup = dict(self._token_by_value)
        if not candidates:
            return text

        alternatives = []
        for value in candidates:
            escaped = re.escape(value)
            prefix = r"(?<!\w)" if value[0].isalnum() else ""
            suffix = r"(?!\w)" if value[-1].isalnum() else ""
            alternatives.append(f"{prefix}{escaped}{suffix}")
        pattern = re.compile("|".join(alternatives))
        return sub_outside_tokens(text, pattern, lambda m: lookup[m.group(0)])

    def items(self) -> List[Tuple[str, str]]:
        """(token, value) pairs. Never log these."""
        return list(self._value_by_token.items())


class SessionVaultStore:
    """
    Keeps one vault per (owner, conversation session) so tokens stay stable across turns.

    The owner is the user id, or the demo session id for demo traffic. Session
    ids come from the client, so two owners presenting the same session id
    always get separate vaults.
    """

    def __init__(self, ttl_seconds: float = 3600, clock=time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._vaults: Dict[Tuple[str, str], Tuple[TokenVault, float]] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str, owner: str) -> TokenVault:
        if not owner:
            raise ValueError("A session vault needs an owner")
        key = (owner, session_id)
        now = self._clock()
        with self._lock:
            entry = self._vaults.get(key)
            if entry is not None and now - entry[1] < self.ttl_seconds:
                self._vaults[key] = (entry[0], now)
                return entry[0]
            if entry is not None:
                logger.info(f"Token vault for session {session_id} expired, starting a new one")
            vault = TokenVault(scope_id=session_id)
            self._vaults[key] = (vault, now)
            return vault

    def invalidate(self, session_id: str) -> bool:
        """Drop every vault opened under ``session_id``, whoever owns it"""
        with self._lock:
            keys = [key for key in self._vaults if key[1] == session_id]
            for key in keys:
                del self._vaults[key]
        return bool(keys)

    def invalidate_all(self) -> int:
        """Drop every session vault, e.g. after account data changed"""
        with self._lock:
            count = len(self._vaults)
            self._vaults.clear()
        return count

    def clear(self) -> None:
        self.invalidate_all()

    def __len__(self) -> int:
        return len(self._vaults)
