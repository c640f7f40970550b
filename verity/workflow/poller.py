from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from verity.api.client import AuthenticatedClient
from verity.api.schemas import WorkflowResponse
from verity.core.config import PollingConfig
from verity.core.errors import BackendError, NetworkError, PollTimeout, VerityError
from verity.workflow.state import (
    WorkflowKind,
    WorkflowSnapshot,
    WorkflowState,
    snapshot_from_response,
    status_path,
)

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[WorkflowSnapshot], Any]

# Status reads are idempotent, so these are worth another try after a pause.
TRANSIENT_ERRORS = (NetworkError, BackendError)


class PollOutcome(str, Enum):
    PENDING = "pending"
    WAITING_INPUT = "waiting_input"
    DOCUMENT_READY = "document_ready"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


def backoff_delay_s(interval_s: float, failures: int, max_s: float) -> float:
    # failures is the 1-based consecutive failure count.
    if interval_s <= 0:
        return 0.0
    delay = interval_s * (2 ** max(0, failures))
    if max_s > 0:
        return min(delay, max_s)
    return delay


def stop_outcome(snapshot: WorkflowSnapshot) -> Optional[PollOutcome]:
    state = snapshot.state
    if state is WorkflowState.FAILED:
        return PollOutcome.FAILED
    if snapshot.is_waiting_input:
        return PollOutcome.WAITING_INPUT
    if snapshot.document_ready:
        return PollOutcome.DOCUMENT_READY
    if state is WorkflowState.COMPLETED:
        return PollOutcome.COMPLETED
    return None


async def fetch_workflow_status(
    client: AuthenticatedClient,
    session_id: str,
    kind: WorkflowKind,
    *,
    timeout: Optional[float] = None,
) -> WorkflowSnapshot:
    body = await client.request_json("GET", status_path(kind, session_id), timeout=timeout)
    if not isinstance(body, dict):
        raise BackendError(detail="status response is not an object")
    body = dict(body)
    body.setdefault("session_id", session_id)
    try:
        response = WorkflowResponse.model_validate(body)
    except ValueError as exc:
        raise BackendError(detail="malformed status response") from exc
    return snapshot_from_response(response, kind)


class PollHandle:
    """One status-polling loop bound to a workflow session.

    `start()` and `cancel()` are idempotent. After `cancel()` returns no new
    status request is issued and the in-flight one is abandoned.

    Subscribers are called with every successful snapshot. A subscriber that
    raises is logged and skipped; it never stops polling or reaches `wait()`.
    """

    def __init__(self, poller: "WorkflowPoller", session_id: str, kind: WorkflowKind) -> None:
        self.session_id = session_id
        self.kind = kind
        self._poller = poller
        self._task: Optional[asyncio.Task[WorkflowSnapshot]] = None
        self._cancelled = False
        self._subscribers: List[SnapshotCallback] = []
        self.latest: Optional[WorkflowSnapshot] = None
        self.outcome = PollOutcome.PENDING
        self.error: Optional[VerityError] = None
        self.requests = 0

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def finished(self) -> bool:
        return self._cancelled or (self._task is not None and self._task.done())

    def subscribe(self, callback: SnapshotCallback) -> SnapshotCallback:
        if callback not in self._subscribers:
            self._subscribers.append(callback)
        return callback

    def start(self) -> "PollHandle":
        if self._task is not None or self._cancelled:
            return self
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._task.add_done_callback(self._finished)
        logger.info(
            "Status polling started (session_id=%s kind=%s interval_s=%s)",
            self.session_id,
            self.kind.value,
            self._poller.settings.interval_s,
        )
        return self

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self.outcome is PollOutcome.PENDING:
            self.outcome = PollOutcome.CANCELLED
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info("Status polling cancelled (session_id=%s requests=%s)", self.session_id, self.requests)

    async def wait(self) -> Optional[WorkflowSnapshot]:
        """Waits for the terminal snapshot.

        Raises `PollTimeout` or the unrecoverable error that stopped polling.
        A cancelled handle returns the latest snapshot seen (possibly None).
        """
        if self._task is None:
            if self._cancelled:
                return self.latest
            self.start()
        task = self._task
        if task is None:
            return self.latest
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                return self.latest
            raise

    def _publish(self, snapshot: WorkflowSnapshot) -> None:
        self.latest = snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Snapshot subscriber failed (session_id=%s)", self.session_id)

    def _finished(self, task: "asyncio.Task[WorkflowSnapshot]") -> None:
        if task.cancelled():
            self.outcome = PollOutcome.CANCELLED
        else:
            # Mark the exception retrieved; waiters get it through wait().
            task.exception()
        self._poller._release(self)

    async def _run(self) -> WorkflowSnapshot:
        settings = self._poller.settings
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.max_duration_s if settings.max_duration_s else None
        failures = 0

        while True:
            self.requests += 1
            try:
                snapshot = await fetch_workflow_status(self._poller.client, self.session_id, self.kind)
            except TRANSIENT_ERRORS as exc:
                failures += 1
                attempts = settings.max_consecutive_failures
                if failures >= attempts:
                    logger.warning(
                        "Status polling failed (session_id=%s attempt=%s/%s): %s; giving up",
                        self.session_id,
                        failures,
                        attempts,
                        exc.message,
                    )
                    self.outcome = PollOutcome.TIMED_OUT
                    self.error = PollTimeout(session_id=self.session_id, attempts=failures, detail=exc.message)
                    raise self.error from exc
                delay = backoff_delay_s(settings.interval_s, failures, settings.backoff_max_s)
                logger.warning(
                    "Status polling failed (session_id=%s attempt=%s/%s): %s; retrying in %.2fs",
                    self.session_id,
                    failures,
                    attempts,
                    exc.message,
                    delay,
                )
            except VerityError as exc:
                logger.warning("Status polling stopped (session_id=%s): %s", self.session_id, exc.message)
                self.outcome = PollOutcome.FAILED
                self.error = exc
                raise
            else:
                failures = 0
                self._publish(snapshot)
                outcome = stop_outcome(snapshot)
                if outcome is not None:
                    self.outcome = outcome
                    logger.info(
                        "Status polling finished (session_id=%s outcome=%s requests=%s)",
                        self.session_id,
                        outcome.value,
                        self.requests,
                    )
                    return snapshot
                delay = settings.interval_s

            if deadline is not None and loop.time() + delay > deadline:
                logger.warning(
                    "Status polling exceeded %.0fs (session_id=%s requests=%s); giving up",
                    settings.max_duration_s,
                    self.session_id,
                    self.requests,
                )
                self.outcome = PollOutcome.TIMED_OUT
                self.error = PollTimeout(session_id=self.session_id, attempts=self.requests)
                raise self.error
            await asyncio.sleep(delay)


class WorkflowPoller:
    """Keeps at most one active `PollHandle` per session id."""

    def __init__(self, client: AuthenticatedClient, *, settings: Optional[PollingConfig] = None) -> None:
        self.client = client
        self.settings = settings or client.settings.polling
        self._handles: Dict[str, PollHandle] = {}

    def attach(
        self,
        session_id: str,
        kind: WorkflowKind | str,
        *,
        on_snapshot: Optional[SnapshotCallback] = None,
        start: bool = True,
    ) -> PollHandle:
        handle = self._handles.get(session_id)
        if handle is None or handle.finished:
            handle = PollHandle(self, session_id, WorkflowKind(kind))
            self._handles[session_id] = handle
        if on_snapshot is not None:
            handle.subscribe(on_snapshot)
        if start:
            handle.start()
        return handle

    def get(self, session_id: str) -> Optional[PollHandle]:
        return self._handles.get(session_id)

    def cancel(self, session_id: str) -> None:
        handle = self._handles.pop(session_id, None)
        if handle is not None:
            handle.cancel()

    def cancel_all(self) -> None:
        for session_id in list(self._handles):
            self.cancel(session_id)

    @property
    def active_sessions(self) -> list[str]:
        return [session_id for session_id, handle in self._handles.items() if handle.active]

    def _release(self, handle: PollHandle) -> None:
        if self._handles.get(handle.session_id) is handle:
            del self._handles[handle.session_id]
