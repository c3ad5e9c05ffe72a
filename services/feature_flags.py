"""
Feature flags read from the environment
"""
import os
from typing import Dict
from dotenv import load_dotenv

load_dotenv()

STRICT_ENVIRONMENTS = {"development", "test"}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def get_features() -> Dict[str, bool]:
    return {
        "DEMO_MODE": _env_flag("ENABLE_DEMO_MODE", "true"),
        "MARKET_NEWS": _env_flag("ENABLE_MARKET_NEWS", "true"),
    }


def is_feature_enabled(feature: str) -> bool:
    return get_features().get(feature, False)


def require_feature(feature: str) -> None:
    """Raise PermissionError when ``feature`` is switched off."""
    if not is_feature_enabled(feature):
        raise PermissionError(f"Feature {feature} is not enabled")


def app_env() -> str:
    return os.getenv("APP_ENV", "development").strip().lower()


def is_strict_environment() -> bool:
    """Development and test environments fail loudly on capability violations."""
    return app_env() in STRICT_ENVIRONMENTS
