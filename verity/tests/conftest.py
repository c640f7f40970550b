"""
Fake Verity backend and shared fixtures.
"""

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI, Header, HTTPException, Request

from verity.api.client import AuthenticatedClient
from verity.core.config import ApiConfig, PollingConfig, VerityConfig
from verity.core.stores import InMemoryTokenStore

BASE_URL = "http://verity.test"
PASSWORD = "Senha@123"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FakeBackend:
    """In-process FastAPI stand-in for the Verity API (prefix /api/v1)."""

    def __init__(self) -> None:
        self.app = FastAPI()
        self.calls: List[tuple[str, str]] = []
        self.access_tokens: set[str] = set()
        self.refresh_tokens: set[str] = set()
        self.refresh_calls = 0
        self.refresh_delay_s = 0.0
        self.refresh_status: Optional[int] = None
        self.start_delay_s = 0.0
        self.continue_delay_s = 0.0
        self.patch_delay_s = 0.0
        self.status_tokens: List[str] = []
        self.organization = {"id": "org-1", "name": "Fazenda Boa Vista"}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.status_script: Dict[str, List[Any]] = {}
        self.continue_messages: List[Dict[str, Any]] = []
        self.drafts: Dict[str, Dict[str, Any]] = {}
        self.next_session_id: Optional[str] = None
        self._counter = 0
        self._install_routes()

    def _next(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}-{self._counter}"

    def issue_tokens(self) -> Dict[str, Any]:
        access = self._next("access")
        refresh = self._next("refresh")
        self.access_tokens.add(access)
        self.refresh_tokens.add(refresh)
        return {"access_token": access, "refresh_token": refresh, "token_type": "bearer", "expires_in": 1800}

    def expire_access_tokens(self) -> None:
        self.access_tokens.clear()

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    def calls_to(self, fragment: str) -> List[tuple[str, str]]:
        return [call for call in self.calls if fragment in call[1]]

    def _install_routes(self) -> None:
        app = self.app

        @app.middleware("http")
        async def record_calls(request: Request, call_next):
            self.calls.append((request.method, request.url.path))
            return await call_next(request)

        def require_token(authorization: Optional[str] = Header(default=None)) -> str:
            token = (authorization or "").replace("Bearer ", "", 1).strip()
            if token not in self.access_tokens:
                raise HTTPException(status_code=401, detail="Token inválido ou expirado")
            return token

        @app.post("/api/v1/auth/login")
        async def login(body: Dict[str, Any]):
            if body.get("password") != PASSWORD:
                raise HTTPException(status_code=401, detail="Credenciais inválidas")
            payload = self.issue_tokens()
            payload["user"] = {"email": body.get("email"), "name": "Maria Silva"}
            payload["organization"] = dict(self.organization)
            return payload

        @app.post("/api/v1/auth/refresh")
        async def refresh(body: Dict[str, Any]):
            self.refresh_calls += 1
            if self.refresh_delay_s:
                await asyncio.sleep(self.refresh_delay_s)
            if self.refresh_status is not None:
                raise HTTPException(status_code=self.refresh_status, detail="Refresh recusado")
            if body.get("refresh_token") not in self.refresh_tokens:
                raise HTTPException(status_code=401, detail="Refresh token inválido")
            access = self._next("access")
            self.access_tokens.add(access)
            return {"access_token": access, "token_type": "bearer", "expires_in": 1800}

        @app.post("/api/v1/auth/logout")
        async def logout(token: str = Depends(require_token)):
            self.access_tokens.discard(token)
            return {"ok": True}

        @app.get("/api/v1/auth/me")
        async def me(_: str = Depends(require_token)):
            return {"email": "maria@verity.test", "name": "Maria Silva Souza", "role": "analyst"}

        self._install_workflow_routes("analise", "analise_cpr", require_token)
        self._install_workflow_routes("criar", "criar_cpr", require_token)
        self._install_draft_routes(require_token)

    def _install_workflow_routes(self, segment: str, workflow_type: str, require_token) -> None:
        app = self.app

        @app.post(f"/api/v1/cpr/{segment}/start")
        async def start(body: Dict[str, Any], _: str = Depends(require_token)):
            if self.start_delay_s:
                await asyncio.sleep(self.start_delay_s)
            session_id = body.get("session_id")
            if session_id:
                if session_id not in self.sessions:
                    raise HTTPException(status_code=404, detail="Sessão não encontrada")
                return self.sessions[session_id]
            session_id = self.next_session_id or self._next("sess")
            self.next_session_id = None
            record = {
                "session_id": session_id,
                "workflow_type": workflow_type,
                "text": "Envie o texto do documento da CPR.",
                "current_step": "awaiting_document",
                "is_waiting_input": True,
            }
            if body.get("initial_data"):
                record["extracted_data"] = body["initial_data"]
            self.sessions[session_id] = record
            return record

        @app.post(f"/api/v1/cpr/{segment}/continue")
        async def continue_(body: Dict[str, Any], _: str = Depends(require_token)):
            session_id = body.get("session_id")
            if session_id not in self.sessions:
                raise HTTPException(status_code=404, detail="Sessão não encontrada")
            if not body.get("message"):
                raise HTTPException(status_code=422, detail=[{"msg": "message obrigatório"}])
            self.continue_messages.append(body)
            if self.continue_delay_s:
                await asyncio.sleep(self.continue_delay_s)
            record = dict(self.sessions[session_id])
            record.update(
                {
                    "text": "Gerando relatório...",
                    "current_step": "generating_report",
                    "is_waiting_input": False,
                }
            )
            self.sessions[session_id] = record
            return record

        @app.get(f"/api/v1/cpr/{segment}/status/{{session_id}}")
        async def status(session_id: str, token: str = Depends(require_token)):
            self.status_tokens.append(token)
            script = self.status_script.get(session_id)
            if script:
                entry = script.pop(0) if len(script) > 1 else script[0]
                if isinstance(entry, int):
                    raise HTTPException(status_code=entry, detail="Falha temporária")
                return entry
            if session_id not in self.sessions:
                raise HTTPException(status_code=404, detail="Sessão não encontrada")
            return self.sessions[session_id]

    def _install_draft_routes(self, require_token) -> None:
        app = self.app

        @app.post("/api/v1/cpr/drafts")
        async def create_draft(body: Dict[str, Any], _: str = Depends(require_token)):
            draft_id = self._next("draft")
            draft = {
                "draft_id": draft_id,
                "status": "draft",
                "wizard_data": body.get("wizard_data") or {},
                "current_step": body.get("current_step") or 0,
                "version": 1,
                "created_at": _now(),
                "updated_at": _now(),
            }
            self.drafts[draft_id] = draft
            return draft

        def load(draft_id: str) -> Dict[str, Any]:
            draft = self.drafts.get(draft_id)
            if draft is None:
                raise HTTPException(status_code=404, detail="Rascunho não encontrado")
            return draft

        @app.get("/api/v1/cpr/drafts/{draft_id}")
        async def get_draft(draft_id: str, _: str = Depends(require_token)):
            return load(draft_id)

        @app.patch("/api/v1/cpr/drafts/{draft_id}")
        async def patch_draft(draft_id: str, body: Dict[str, Any], _: str = Depends(require_token)):
            draft = load(draft_id)
            if draft["status"] != "draft":
                raise HTTPException(status_code=409, detail="Rascunho já enviado")
            version = body.get("version")
            if version is not None and version != draft["version"]:
                raise HTTPException(status_code=409, detail="Rascunho alterado em outra aba")
            wizard_data = dict(draft["wizard_data"])
            wizard_data.update(body.get("wizard_data") or {})
            draft.update(
                {
                    "wizard_data": wizard_data,
                    "current_step": body.get("current_step", draft["current_step"]),
                    "version": draft["version"] + 1,
                    "updated_at": _now(),
                }
            )
            response = dict(draft)
            if self.patch_delay_s:
                await asyncio.sleep(self.patch_delay_s)
            return response

        @app.post("/api/v1/cpr/drafts/{draft_id}/submit")
        async def submit_draft(draft_id: str, body: Dict[str, Any], _: str = Depends(require_token)):
            draft = load(draft_id)
            if not body.get("confirm"):
                raise HTTPException(status_code=422, detail="Confirmação obrigatória")
            if body.get("wizard_data"):
                draft["wizard_data"] = {**draft["wizard_data"], **body["wizard_data"]}
            draft["status"] = "submitted"
            draft["version"] += 1
            session_id = f"sess-{draft_id}"
            workflow = {
                "session_id": session_id,
                "workflow_type": "criar_cpr",
                "current_step": "gerar_documento",
                "is_waiting_input": False,
            }
            self.sessions[session_id] = dict(workflow, text="Gerando documento...")
            return {"draft": draft, "workflow": workflow}


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def settings() -> VerityConfig:
    return VerityConfig(
        api=ApiConfig(base_url=BASE_URL),
        polling=PollingConfig(interval_s=0.01, backoff_max_s=0.04, max_consecutive_failures=3, max_duration_s=5.0),
    )


@pytest.fixture
def password() -> str:
    return PASSWORD


@pytest.fixture
def token_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest_asyncio.fixture
async def client(backend, settings, token_store):
    """Client wired to the fake backend, not yet logged in."""
    http = httpx.AsyncClient(transport=httpx.ASGITransport(app=backend.app))
    async with AuthenticatedClient(token_store, settings=settings, http_client=http) as api:
        yield api
    await http.aclose()


@pytest_asyncio.fixture
async def logged_in(client):
    await client.login("maria@verity.test", PASSWORD)
    return client
