from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: Optional[str] = "bearer"
    expires_in: Optional[int] = None
    expires_at: Optional[str] = None
    user: Optional[Dict[str, Any]] = None
    organization: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(extra="allow")


class LoginRequest(BaseModel):
    email: str
    password: str
    remember_me: bool = False


class RefreshRequest(BaseModel):
    refresh_token: str


class WorkflowStartRequest(BaseModel):
    session_id: Optional[str] = None
    initial_data: Optional[Dict[str, Any]] = None


class WorkflowContinueRequest(BaseModel):
    session_id: str
    message: str
    step_data: Optional[Dict[str, Any]] = None


class WorkflowResponse(BaseModel):
    text: str = ""
    session_id: str
    workflow_type: Optional[str] = None
    is_waiting_input: bool = False
    current_step: str = "unknown"
    extracted_data: Optional[Dict[str, Any]] = None
    compliance_result: Optional[Dict[str, Any]] = None
    risk_result: Optional[Dict[str, Any]] = None
    document_url: Optional[str] = None
    document_data: Optional[Dict[str, Any]] = None
    # Status endpoint only.
    documento_url: Optional[str] = None
    documento_gerado: Optional[bool] = None
    error: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class DraftResponse(BaseModel):
    draft_id: str
    status: str = "draft"
    wizard_data: Optional[Dict[str, Any]] = None
    current_step: int = 0
    version: Optional[int] = None
    document_url: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    expires_at: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class DraftCreateRequest(BaseModel):
    wizard_data: Optional[Dict[str, Any]] = None
    current_step: Optional[int] = None
    source: Optional[str] = None


class DraftUpdateRequest(BaseModel):
    wizard_data: Optional[Dict[str, Any]] = None
    current_step: Optional[int] = None
    version: Optional[int] = None


class DraftSubmitRequest(BaseModel):
    confirm: bool = True
    wizard_data: Optional[Dict[str, Any]] = None


class DraftSubmitResponse(BaseModel):
    draft: DraftResponse
    workflow: Optional[WorkflowResponse] = None

    model_config = ConfigDict(extra="allow")
