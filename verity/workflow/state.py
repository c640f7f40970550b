# verity/workflow/state.py

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from verity.api.schemas import WorkflowResponse

PAYLOAD_KEYS = ("extracted_data", "compliance_result", "risk_result", "document_url", "document_data")
FINAL_STEP = "finalizado"


class WorkflowKind(str, Enum):
    ANALYSE = "analise_cpr"
    CREATE = "criar_cpr"

    @property
    def path_segment(self) -> str:
        return "cpr/analise" if self is WorkflowKind.ANALYSE else "cpr/criar"

    @property
    def completion_step(self) -> Optional[str]:
        # Creation ends with an asynchronous document build, so only the
        # document itself marks it complete.
        return "calcular_risco" if self is WorkflowKind.ANALYSE else None


class WorkflowState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    WAITING_INPUT = "waiting_input"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = {WorkflowState.COMPLETED, WorkflowState.FAILED}


@dataclass
class WorkflowSnapshot:
    session_id: str
    workflow_type: WorkflowKind
    current_step: str
    is_waiting_input: bool
    text: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    document_url: Optional[str] = None
    document_ready: bool = False
    error: Optional[str] = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def state(self) -> WorkflowState:
        return derive_workflow_state(self)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def snapshot_from_response(response: WorkflowResponse, kind: WorkflowKind) -> WorkflowSnapshot:
    payload: Dict[str, Any] = {}
    for key in PAYLOAD_KEYS:
        value = getattr(response, key, None)
        if value is not None:
            payload[key] = value

    document_url = response.documento_url or response.document_url
    if document_url:
        payload["document_url"] = document_url

    return WorkflowSnapshot(
        session_id=response.session_id,
        workflow_type=kind,
        current_step=response.current_step or "unknown",
        is_waiting_input=bool(response.is_waiting_input),
        text=response.text or "",
        payload=payload,
        document_url=document_url,
        document_ready=bool(response.documento_gerado) or bool(document_url),
        error=response.error or None,
    )


def derive_workflow_state(snapshot: WorkflowSnapshot) -> WorkflowState:
    if snapshot.error:
        return WorkflowState.FAILED
    if snapshot.is_waiting_input:
        return WorkflowState.WAITING_INPUT
    if snapshot.document_ready:
        return WorkflowState.COMPLETED
    if snapshot.current_step == FINAL_STEP:
        return WorkflowState.COMPLETED
    if snapshot.current_step == snapshot.workflow_type.completion_step:
        return WorkflowState.COMPLETED
    return WorkflowState.PROCESSING


def status_path(kind: WorkflowKind, session_id: str) -> str:
    return f"/{kind.path_segment}/status/{session_id}"
