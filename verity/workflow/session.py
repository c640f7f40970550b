from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from verity.api.client import AuthenticatedClient
from verity.api.schemas import WorkflowContinueRequest, WorkflowResponse, WorkflowStartRequest
from verity.core.errors import BackendError, SessionStateError, ValidationError, VerityError
from verity.workflow.conversation import ConversationLog
from verity.workflow.poller import PollHandle, WorkflowPoller, fetch_workflow_status
from verity.workflow.state import WorkflowKind, WorkflowSnapshot, WorkflowState, snapshot_from_response

logger = logging.getLogger(__name__)

EMPTY_MESSAGE = "Informe uma mensagem para continuar."


def infer_message(step_data: Optional[Dict[str, Any]]) -> Optional[str]:
    if not step_data:
        return None
    keys = [str(key) for key in step_data if str(key).strip()]
    if len(keys) == 1:
        return f"Dados de {keys[0]} preenchidos"
    if keys:
        return "Dados preenchidos"
    return None


class WorkflowSession:
    """Client-side view of one agent workflow (CPR analysis or creation).

    States move idle -> starting -> waiting_input <-> processing and end in
    completed or failed. Every backend response replaces the snapshot
    wholesale; the state is always derived from the latest snapshot.
    """

    def __init__(
        self,
        client: AuthenticatedClient,
        kind: WorkflowKind | str,
        *,
        poller: Optional[WorkflowPoller] = None,
        conversation: Optional[ConversationLog] = None,
    ) -> None:
        self.client = client
        self.kind = WorkflowKind(kind)
        self.conversation = conversation if conversation is not None else ConversationLog()
        self.last_error: Optional[VerityError] = None
        self._poller = poller
        self._state = WorkflowState.IDLE
        self._snapshot: Optional[WorkflowSnapshot] = None
        self._session_id: Optional[str] = None
        self._start_task: Optional[asyncio.Task[WorkflowSnapshot]] = None
        self._start_id: Optional[str] = None
        self._continuing = False
        self._handle: Optional[PollHandle] = None
        # Bumped by reset(); responses issued under an older epoch are dropped.
        self._epoch = 0

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def snapshot(self) -> Optional[WorkflowSnapshot]:
        return self._snapshot

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    @property
    def poller(self) -> WorkflowPoller:
        if self._poller is None:
            self._poller = WorkflowPoller(self.client)
        return self._poller

    # ------------------------------------------------------------------
    # start / resume
    # ------------------------------------------------------------------
    async def start(
        self,
        existing_session_id: Optional[str] = None,
        initial_data: Optional[Dict[str, Any]] = None,
    ) -> WorkflowSnapshot:
        if self._start_task is not None:
            if existing_session_id is not None and existing_session_id == self._start_id:
                return await self._join_start(self._start_task, self._epoch)
            raise SessionStateError(detail="start already in progress")

        if self._session_id is not None and existing_session_id != self._session_id:
            raise SessionStateError(detail=f"session already bound to {self._session_id}")
        if self._continuing:
            raise SessionStateError(detail="continue in progress")

        self._start_id = existing_session_id
        task = asyncio.get_running_loop().create_task(self._start(existing_session_id, initial_data))
        self._start_task = task
        task.add_done_callback(self._start_finished)
        return await self._join_start(task, self._epoch)

    async def _join_start(self, task: "asyncio.Task[WorkflowSnapshot]", epoch: int) -> WorkflowSnapshot:
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # reset() cancels the start task; callers see a state error, not a cancellation.
            if task.cancelled() and epoch != self._epoch:
                raise SessionStateError(detail="session was reset while starting") from None
            raise

    def _start_finished(self, task: "asyncio.Task[WorkflowSnapshot]") -> None:
        if self._start_task is task:
            self._start_task = None
            self._start_id = None
        if not task.cancelled():
            task.exception()

    async def _start(self, session_id: Optional[str], initial_data: Optional[Dict[str, Any]]) -> WorkflowSnapshot:
        epoch = self._epoch
        previous = self._state
        self._state = WorkflowState.STARTING
        body = WorkflowStartRequest(session_id=session_id, initial_data=initial_data).model_dump(exclude_none=True)
        try:
            snapshot = await self._post("start", body, expected_session_id=session_id)
        except VerityError as exc:
            if epoch == self._epoch:
                self._state = previous
                self.last_error = exc
            raise
        self._ensure_epoch(epoch)
        logger.info(
            "Workflow %s (kind=%s session_id=%s step=%s)",
            "resumed" if session_id else "started",
            self.kind.value,
            snapshot.session_id,
            snapshot.current_step,
        )
        return self.apply_snapshot(snapshot)

    # ------------------------------------------------------------------
    # continue
    # ------------------------------------------------------------------
    async def continue_(self, message: Optional[str] = None, step_data: Optional[Dict[str, Any]] = None) -> WorkflowSnapshot:
        if self._continuing:
            raise SessionStateError(detail="continue already in progress")
        if self._session_id is None or self._state is not WorkflowState.WAITING_INPUT:
            raise SessionStateError(detail=f"cannot continue in state {self._state.value}")

        text = str(message or "").strip() or infer_message(step_data)
        if not text:
            raise ValidationError(EMPTY_MESSAGE)

        epoch = self._epoch
        previous = self._state
        step = self._snapshot.current_step if self._snapshot is not None else None
        self.conversation.append("user", text, step=step)
        body = WorkflowContinueRequest(
            session_id=self._session_id,
            message=text,
            step_data=step_data,
        ).model_dump(exclude_none=True)

        self._continuing = True
        self._state = WorkflowState.PROCESSING
        try:
            snapshot = await self._post("continue", body, expected_session_id=self._session_id)
        except VerityError as exc:
            if epoch == self._epoch:
                self._state = previous
                self.last_error = exc
            raise
        except asyncio.CancelledError:
            if epoch == self._epoch:
                self._state = previous
            raise
        finally:
            if epoch == self._epoch:
                self._continuing = False
        self._ensure_epoch(epoch)
        return self.apply_snapshot(snapshot)

    async def submit_step_data(self, step_name: str, data: Dict[str, Any]) -> WorkflowSnapshot:
        return await self.continue_(f"Dados de {step_name} preenchidos", {step_name: data})

    # ------------------------------------------------------------------
    # status
    # ------------------------------------------------------------------
    async def refresh_status(self) -> WorkflowSnapshot:
        if self._session_id is None:
            raise SessionStateError(detail="no session to read")
        epoch = self._epoch
        try:
            snapshot = await fetch_workflow_status(self.client, self._session_id, self.kind)
        except VerityError as exc:
            self.last_error = exc
            raise
        self._ensure_epoch(epoch)
        return self.apply_snapshot(snapshot)

    def poll(self, poller: Optional[WorkflowPoller] = None) -> PollHandle:
        if self._session_id is None:
            raise SessionStateError(detail="no session to poll")
        poller = poller or self.poller
        self._handle = poller.attach(self._session_id, self.kind, on_snapshot=self._on_poll_snapshot)
        return self._handle

    async def wait_for_completion(self, poller: Optional[WorkflowPoller] = None) -> Optional[WorkflowSnapshot]:
        handle = self.poll(poller)
        try:
            return await handle.wait()
        except VerityError as exc:
            self.last_error = exc
            raise

    def _on_poll_snapshot(self, snapshot: WorkflowSnapshot) -> None:
        # The continue response is authoritative while one is outstanding.
        if self._continuing or snapshot.session_id != self._session_id:
            return
        self.apply_snapshot(snapshot)

    # ------------------------------------------------------------------
    # snapshots
    # ------------------------------------------------------------------
    def apply_snapshot(self, snapshot: WorkflowSnapshot) -> WorkflowSnapshot:
        if self._session_id is not None and snapshot.session_id != self._session_id:
            raise BackendError(detail=f"response for session {snapshot.session_id}, expected {self._session_id}")
        if snapshot.workflow_type is not self.kind:
            raise BackendError(detail=f"response for workflow {snapshot.workflow_type.value}, expected {self.kind.value}")

        self._session_id = snapshot.session_id
        self._snapshot = snapshot
        self._state = snapshot.state
        self.conversation.append("agent", snapshot.text, step=snapshot.current_step)
        if snapshot.error:
            self.last_error = BackendError(detail=snapshot.error)
        return snapshot

    def reset(self) -> None:
        self._epoch += 1
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._start_task is not None:
            self._start_task.cancel()
            self._start_task = None
            self._start_id = None
        self._state = WorkflowState.IDLE
        self._snapshot = None
        self._session_id = None
        self._continuing = False
        self.last_error = None
        self.conversation.clear()

    def _ensure_epoch(self, epoch: int) -> None:
        if epoch != self._epoch:
            raise SessionStateError(detail="session was reset while the request was in flight")

    async def _post(self, action: str, body: Dict[str, Any], *, expected_session_id: Optional[str]) -> WorkflowSnapshot:
        data = await self.client.request_json("POST", f"/{self.kind.path_segment}/{action}", json=body)
        if not isinstance(data, dict):
            raise BackendError(detail=f"{action} response is not an object")
        try:
            response = WorkflowResponse.model_validate(data)
        except ValueError as exc:
            raise BackendError(detail=f"malformed {action} response") from exc
        if expected_session_id is not None and response.session_id != expected_session_id:
            raise BackendError(detail=f"response for session {response.session_id}, expected {expected_session_id}")
        return snapshot_from_response(response, self.kind)
