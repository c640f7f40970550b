from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set

from verity.api.client import AuthenticatedClient
from verity.api.schemas import (
    DraftCreateRequest,
    DraftResponse,
    DraftSubmitRequest,
    DraftSubmitResponse,
    DraftUpdateRequest,
)
from verity.core.errors import BackendError, ConflictError, DraftLockedError
from verity.workflow.state import WorkflowKind, WorkflowSnapshot, snapshot_from_response

logger = logging.getLogger(__name__)


class DraftStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    EXPIRED = "expired"


@dataclass
class Draft:
    draft_id: str
    status: str = DraftStatus.DRAFT.value
    wizard_data: Dict[str, Any] = field(default_factory=dict)
    current_step: int = 0
    version: Optional[int] = None
    document_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    expires_at: Optional[str] = None

    @property
    def fields(self) -> Dict[str, Any]:
        return self.wizard_data

    @property
    def is_locked(self) -> bool:
        return self.status != DraftStatus.DRAFT.value

    @classmethod
    def from_response(cls, response: DraftResponse) -> "Draft":
        return cls(
            draft_id=response.draft_id,
            status=str(response.status or DraftStatus.DRAFT.value),
            wizard_data=dict(response.wizard_data or {}),
            current_step=int(response.current_step or 0),
            version=response.version,
            document_url=response.document_url,
            created_at=response.created_at,
            updated_at=response.updated_at,
            expires_at=response.expires_at,
        )


@dataclass
class SubmitResult:
    draft: Draft
    workflow: Optional[WorkflowSnapshot] = None


class DraftRepository:
    """Server-persisted wizard drafts for CPR creation.

    The server representation is the source of truth: every response replaces
    the cached draft. Once submitted a draft is locked and further patch or
    submit calls fail locally without touching the network.
    """

    def __init__(self, client: AuthenticatedClient, base_path: str = "/cpr/drafts") -> None:
        self.client = client
        self.base_path = "/" + base_path.strip("/")
        self._cache: Dict[str, Draft] = {}
        self._submitting: Set[str] = set()

    def cached(self, draft_id: str) -> Optional[Draft]:
        return self._cache.get(draft_id)

    async def create(self, initial_fields: Optional[Dict[str, Any]] = None, current_step: Optional[int] = None) -> Draft:
        body = DraftCreateRequest(wizard_data=initial_fields, current_step=current_step).model_dump(exclude_none=True)
        data = await self.client.request_json("POST", self.base_path, json=body)
        draft = self._store(self._parse_draft(data, "create"))
        logger.info("Draft created (draft_id=%s)", draft.draft_id)
        return draft

    async def get(self, draft_id: str) -> Draft:
        data = await self.client.request_json("GET", self._draft_path(draft_id))
        return self._store(self._parse_draft(data, "get"))

    async def patch(
        self,
        draft_id: str,
        partial_fields: Optional[Dict[str, Any]] = None,
        current_step: Optional[int] = None,
    ) -> Draft:
        self._ensure_editable(draft_id)
        cached = self._cache.get(draft_id)
        body = DraftUpdateRequest(
            wizard_data=partial_fields,
            current_step=current_step,
            version=cached.version if cached is not None else None,
        ).model_dump(exclude_none=True)
        try:
            data = await self.client.request_json("PATCH", self._draft_path(draft_id), json=body)
        except ConflictError:
            logger.warning(
                "Draft update conflict (draft_id=%s version=%s)",
                draft_id,
                cached.version if cached is not None else None,
            )
            raise
        draft = self._parse_draft(data, "patch")
        current = self._cache.get(draft_id)
        if draft_id in self._submitting or (current is not None and current.is_locked):
            # A submit overtook this patch; the late response must not unlock the cache.
            logger.warning("Discarding late draft update (draft_id=%s)", draft_id)
            status = current.status if current is not None and current.is_locked else DraftStatus.SUBMITTED.value
            raise DraftLockedError(draft_id, status)
        return self._store(draft)

    async def submit(self, draft_id: str, final_fields: Optional[Dict[str, Any]] = None) -> SubmitResult:
        self._ensure_editable(draft_id)
        body = DraftSubmitRequest(confirm=True, wizard_data=final_fields).model_dump(exclude_none=True)
        self._submitting.add(draft_id)
        try:
            data = await self.client.request_json("POST", f"{self._draft_path(draft_id)}/submit", json=body)
        finally:
            self._submitting.discard(draft_id)

        try:
            response = DraftSubmitResponse.model_validate(data)
        except ValueError as exc:
            raise BackendError(detail="malformed submit response") from exc

        draft = Draft.from_response(response.draft)
        if not draft.is_locked:
            # Submission is terminal even if the backend echoes the old status.
            draft.status = DraftStatus.SUBMITTED.value
        self._store(draft)

        workflow = None
        if response.workflow is not None:
            workflow = snapshot_from_response(response.workflow, WorkflowKind.CREATE)
        logger.info(
            "Draft submitted (draft_id=%s status=%s session_id=%s)",
            draft.draft_id,
            draft.status,
            workflow.session_id if workflow is not None else None,
        )
        return SubmitResult(draft=draft, workflow=workflow)

    def _ensure_editable(self, draft_id: str) -> None:
        if draft_id in self._submitting:
            raise DraftLockedError(draft_id, DraftStatus.SUBMITTED.value)
        cached = self._cache.get(draft_id)
        if cached is not None and cached.is_locked:
            raise DraftLockedError(draft_id, cached.status)

    def _draft_path(self, draft_id: str) -> str:
        return f"{self.base_path}/{draft_id}"

    def _store(self, draft: Draft) -> Draft:
        self._cache[draft.draft_id] = draft
        return draft

    @staticmethod
    def _parse_draft(data: Any, action: str) -> Draft:
        try:
            return Draft.from_response(DraftResponse.model_validate(data))
        except ValueError as exc:
            raise BackendError(detail=f"malformed draft {action} response") from exc
