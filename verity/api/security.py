from __future__ import annotations

from typing import Optional

from verity.core.config import AuthConfig
from verity.core.stores import Credential


def authorization_headers(credential: Optional[Credential]) -> dict[str, str]:
    if credential is None or not credential.access_token:
        return {}
    return {"Authorization": f"Bearer {credential.access_token}"}


def credential_exempt_paths(auth: AuthConfig) -> set[str]:
    """Paths whose own 401 must never start a refresh (it would recurse)."""
    return {
        _normalize_path(auth.login_path),
        _normalize_path(auth.refresh_path),
    }


def is_credential_exempt(path: str, auth: AuthConfig) -> bool:
    return _normalize_path(path) in credential_exempt_paths(auth)


def _normalize_path(path: str) -> str:
    value = "/" + str(path or "").strip().lstrip("/")
    return value.rstrip("/") or "/"
