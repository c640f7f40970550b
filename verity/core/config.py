# verity/core/config.py

from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel

# Names the web client used before the core was split out.
LEGACY_ENV_NAMES = {
    "VERITY_API_URL": "NEXT_PUBLIC_API_URL",
}


def _env(name: str, default: str) -> str:
    legacy = LEGACY_ENV_NAMES.get(name)
    if legacy:
        return os.getenv(name, os.getenv(legacy, default))
    return os.getenv(name, default)


def _env_int(name: str, default: int) -> int:
    raw = _env(name, str(default))
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = _env(name, str(default))
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    return _env(name, "true" if default else "false").strip().lower() == "true"


def _env_optional_float(name: str, default: Optional[float]) -> Optional[float]:
    # Zero or a negative value disables the limit.
    raw = _env(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else None


class ApiConfig(BaseModel):
    """Backend location and transport defaults."""
    base_url: str = "http://localhost:8000"
    prefix: str = "/api/v1"
    timeout_s: float = 30.0


class AuthConfig(BaseModel):
    """Credential lifecycle settings."""
    login_path: str = "/auth/login"
    refresh_path: str = "/auth/refresh"
    logout_path: str = "/auth/logout"
    me_path: str = "/auth/me"
    token_store: str = "inmem"
    sqlite_path: str = "./verity_state.db"
    sqlite_busy_timeout_ms: int = 5000
    access_token_ttl_s: int = 30 * 60
    refresh_timeout_s: float = 10.0
    proactive_refresh: bool = True
    refresh_leeway_s: float = 30.0


class PollingConfig(BaseModel):
    """Workflow status polling."""
    interval_s: float = 2.0
    backoff_max_s: float = 30.0
    max_consecutive_failures: int = 3
    max_duration_s: Optional[float] = 15 * 60.0


class VerityConfig(BaseModel):
    """Top-level configuration of the client core."""
    api: ApiConfig = ApiConfig()
    auth: AuthConfig = AuthConfig()
    polling: PollingConfig = PollingConfig()
    debug: bool = False

    @classmethod
    def from_env(cls) -> "VerityConfig":
        """Loads configuration from environment variables."""
        return cls(
            api=ApiConfig(
                base_url=_env("VERITY_API_URL", "http://localhost:8000"),
                prefix=_env("VERITY_API_PREFIX", "/api/v1"),
                timeout_s=max(0.1, _env_float("VERITY_HTTP_TIMEOUT_S", 30.0)),
            ),
            auth=AuthConfig(
                login_path=_env("VERITY_LOGIN_PATH", "/auth/login"),
                refresh_path=_env("VERITY_REFRESH_PATH", "/auth/refresh"),
                logout_path=_env("VERITY_LOGOUT_PATH", "/auth/logout"),
                me_path=_env("VERITY_ME_PATH", "/auth/me"),
                token_store=_env("VERITY_TOKEN_STORE", "inmem").strip().lower(),
                sqlite_path=_env("VERITY_SQLITE_PATH", "./verity_state.db"),
                sqlite_busy_timeout_ms=max(0, _env_int("VERITY_SQLITE_BUSY_TIMEOUT_MS", 5000)),
                access_token_ttl_s=max(1, _env_int("VERITY_ACCESS_TOKEN_TTL_S", 30 * 60)),
                refresh_timeout_s=max(0.1, _env_float("VERITY_REFRESH_TIMEOUT_S", 10.0)),
                proactive_refresh=_env_bool("VERITY_PROACTIVE_REFRESH", True),
                refresh_leeway_s=max(0.0, _env_float("VERITY_REFRESH_LEEWAY_S", 30.0)),
            ),
            polling=PollingConfig(
                interval_s=max(0.0, _env_int("VERITY_POLL_INTERVAL_MS", 2000) / 1000.0),
                backoff_max_s=max(0.0, _env_int("VERITY_POLL_BACKOFF_MAX_MS", 30000) / 1000.0),
                max_consecutive_failures=max(1, _env_int("VERITY_POLL_MAX_FAILURES", 3)),
                max_duration_s=_env_optional_float("VERITY_POLL_MAX_DURATION_S", 15 * 60.0),
            ),
            debug=_env_bool("VERITY_DEBUG", False),
        )


config = VerityConfig.from_env()
