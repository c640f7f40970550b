from __future__ import annotations

from typing import Any, Optional

import httpx

DEFAULT_MESSAGES = {
    "session_expired": "Sua sessão expirou. Faça login novamente.",
    "validation_error": "Requisição inválida.",
    "conflict": "O registro foi alterado por outra sessão. Recarregue e tente novamente.",
    "server_error": "Erro interno do servidor. Tente novamente em instantes.",
    "network_error": "Erro de conexão. Verifique sua internet e tente novamente.",
    "poll_timeout": "Não foi possível confirmar a conclusão. Verifique novamente mais tarde.",
    "invalid_state": "Operação inválida para o estado atual do fluxo.",
    "draft_locked": "Este rascunho já foi enviado e não pode mais ser alterado.",
}

IDEMPOTENT_METHODS = {"GET", "HEAD", "OPTIONS"}


class VerityError(Exception):
    """Base class for every error surfaced by the client core."""

    code = "unknown_error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Any = None,
    ) -> None:
        self.message = message or DEFAULT_MESSAGES.get(self.code, "Ocorreu um erro inesperado.")
        self.status_code = status_code
        self.detail = detail
        super().__init__(self.message)


class AuthExpired(VerityError):
    """No usable credential: refresh failed or the user never logged in."""

    code = "session_expired"


class ValidationError(VerityError):
    """The backend rejected the request (4xx other than 401)."""

    code = "validation_error"


class ConflictError(ValidationError):
    code = "conflict"


class BackendError(VerityError):
    """5xx, or a body the client cannot understand."""

    code = "server_error"


class NetworkError(VerityError):
    """No response was received."""

    code = "network_error"

    def __init__(self, message: Optional[str] = None, *, method: str = "GET", path: str = "", detail: Any = None) -> None:
        super().__init__(message, detail=detail)
        self.method = method.upper()
        self.path = path

    @property
    def idempotent(self) -> bool:
        return self.method in IDEMPOTENT_METHODS


class PollTimeout(VerityError):
    code = "poll_timeout"

    def __init__(self, message: Optional[str] = None, *, session_id: str = "", attempts: int = 0, detail: Any = None) -> None:
        super().__init__(message, detail=detail)
        self.session_id = session_id
        self.attempts = attempts


class SessionStateError(VerityError):
    """A workflow operation was issued in a state that does not allow it."""

    code = "invalid_state"


class DraftLockedError(VerityError):
    code = "draft_locked"

    def __init__(self, draft_id: str, status: str) -> None:
        super().__init__(detail={"draft_id": draft_id, "status": status})
        self.draft_id = draft_id
        self.status = status


def detail_message(detail: Any) -> Optional[str]:
    """Turns a `detail` value into display text. FastAPI sends lists for 422s."""
    if detail is None:
        return None
    if isinstance(detail, str):
        return detail.strip() or None
    if isinstance(detail, list):
        parts = []
        for item in detail:
            if isinstance(item, dict):
                text = str(item.get("msg") or item.get("message") or "").strip()
            else:
                text = str(item).strip()
            if text:
                parts.append(text)
        return "; ".join(parts) or None
    if isinstance(detail, dict):
        text = detail.get("message") or detail.get("detail")
        return str(text).strip() if text else None
    return str(detail)


def response_detail(response: httpx.Response) -> Any:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("detail", body.get("message"))
    return None


def error_from_response(response: httpx.Response, fallback: Optional[str] = None) -> VerityError:
    status = response.status_code
    detail = response_detail(response)
    message = detail_message(detail) or fallback

    if status == 401:
        return AuthExpired(status_code=status, detail=detail)
    if status == 409:
        return ConflictError(message, status_code=status, detail=detail)
    if 400 <= status < 500:
        return ValidationError(message, status_code=status, detail=detail)
    # 5xx text is not display-safe; keep it in `detail` only.
    return BackendError(fallback, status_code=status, detail=detail)
