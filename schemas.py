from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum

# ============ ENUMS ============
class UserTier(str, Enum):
    starter = "starter"
    standard = "standard"
    premium = "premium"


def _normalize_tier(value):
    if value is None or isinstance(value, UserTier):
        return value

    if isinstance(value, str):
        normalized = value.strip().lower()
        mapping = {
            "starter": UserTier.starter,
            "free": UserTier.starter,
            "standard": UserTier.standard,
            "premium": UserTier.premium,
        }
        if normalized in mapping:
            return mapping[normalized]

    raise ValueError("Tier must be one of: starter, standard, premium")


# ============ ASK SCHEMAS ============
class ConversationTurnSchema(BaseModel):
    question: str
    answer: str = ""

class AskRequest(BaseModel):
    question: str = Field(..., min_length=1, max_length=4000, description="Natural-language financial question")
    tier: UserTier = Field(UserTier.starter, description="Subscription tier of the caller")
    user_id: Optional[str] = Field(None, description="Authenticated user id (omit in demo mode)")
    is_demo: bool = Field(False, description="Answer from synthetic demo data")
    demo_session_id: Optional[str] = Field(None, description="Demo session identifier")
    session_id: Optional[str] = Field(None, description="Conversation session id (session-scoped token vault)")
    conversation_history: List[ConversationTurnSchema] = Field(default_factory=list, description="Client-held earlier turns")

    @field_validator("tier", mode="before")
    @classmethod
    def _normalize_tier_field(cls, value):
        return _normalize_tier(value)

    @field_validator("question")
    @classmethod
    def _strip_question(cls, value):
        if not value.strip():
            raise ValueError("Question must not be blank")
        return value.strip()

    @model_validator(mode="after")
    def _require_identity(self):
        if self.is_demo:
            if not self.demo_session_id:
                raise ValueError("demo_session_id is required when is_demo is true")
        elif not self.user_id:
            raise ValueError("user_id is required unless is_demo is true")
        return self

class AskResponse(BaseModel):
    answer: str
    tier: UserTier
    market_context_used: bool = False
    degraded_providers: List[str] = []
    stale_providers: List[str] = []
    upgrade_suggestions: List[str] = []
    limitations: List[str] = []
    profile_available: bool = False

# ============ MARKET SCHEMAS ============
class DataPointResponse(BaseModel):
    metric: str
    label: str
    value: float
    unit: str
    as_of: str
    source: str

class SearchSnippetResponse(BaseModel):
    title: str
    snippet: str
    url: str
    source: str

class MarketContextResponse(BaseModel):
    tier: UserTier
    digest: str
    data_points: List[DataPointResponse] = []
    snippets: List[SearchSnippetResponse] = []
    providers_used: List[str] = []
    degraded_providers: List[str] = []
    stale_providers: List[str] = []
    generated_at: datetime

class MarketInvalidateRequest(BaseModel):
    provider: Optional[str] = Field(None, description="Provider name, or omit to invalidate every provider")

class MarketRefreshResponse(BaseModel):
    refreshed: Dict[str, int]
    failed: List[str] = []

class CacheStatsResponse(BaseModel):
    keys: int
    hits: int
    misses: int
    stale_served: int
    refresh_failures: int
    coalesced: int
    providers: Dict[str, int] = {}
    degraded_providers: List[str] = []

class MarketNewsResponse(BaseModel):
    tier: UserTier
    context_text: str
    change_type: str
    data_sources: List[str] = []
    key_events: List[str] = []
    edited_by: Optional[str] = None
    is_active: bool = True
    created: Optional[datetime] = None

class MarketNewsUpdateRequest(BaseModel):
    context_text: str = Field(..., min_length=1, max_length=4000, description="Market summary to pin for the tier")
    edited_by: str = Field(..., min_length=1, description="Operator making the edit")

class MarketNewsRefreshResponse(BaseModel):
    refreshed: Dict[str, bool]

# ============ PROFILE SCHEMAS ============
class ProfileResponse(BaseModel):
    user_id: str
    profile_text: str
    conversation_count: int = 0
    last_updated: Optional[datetime] = None

class ProfileDeleteResponse(BaseModel):
    user_id: str
    deleted: bool

class SessionEndResponse(BaseModel):
    session_id: str
    vault_cleared: bool
    conversations_deleted: int = 0

class MessageResponse(BaseModel):
    message: str
    details: Optional[Dict[str, Any]] = None
