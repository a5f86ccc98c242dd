"""Execution session lifecycle tracking."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from agent_controller.controller.models import (
    ExecutionSession,
    SessionLogEntry,
    SessionStatus,
    TaskView,
)
from agent_controller.controller.notifications import (
    EVENT_SESSION_LOG,
    EVENT_SESSION_UPDATED,
    Notifier,
)
from agent_controller.controller.repository import SessionRepository
from agent_controller.storage.common import utc_now

logger = logging.getLogger(__name__)

LOG_TOOL_CALL = "tool-call"

_STATUS_ORDER = {
    SessionStatus.STARTING: 0,
    SessionStatus.RUNNING: 1,
    SessionStatus.WAITING_INPUT: 1,
}


class SessionTracker:
    """Creates one session per attempt and keeps its status monotonic."""

    def __init__(self, repository: SessionRepository, notifier: Notifier) -> None:
        self.repository = repository
        self.notifier = notifier

    def start(self, task: TaskView, *, now: datetime | None = None) -> ExecutionSession:
        now = now or utc_now()
        session_id = f"session-{task.task_id}-{int(now.timestamp() * 1000)}"
        session = self.repository.create_session(
            session_id=session_id,
            task_id=task.task_id,
            task_title=task.title,
        )
        logger.info("Created session %s for task %r", session_id, task.title)
        self._publish(session)
        return session

    def log(
        self,
        session_id: str,
        entry_type: str,
        content: str,
        details: dict[str, Any] | None = None,
    ) -> SessionLogEntry | None:
        session = self.repository.get_session(session_id)
        if session is None:
            return None
        entry = self.repository.add_log(session_id, entry_type, content, details)
        changes: dict[str, Any] = {"last_activity_at": entry.created_at}
        if entry_type == LOG_TOOL_CALL:
            changes["tool_calls"] = session.tool_calls + 1
        self.repository.update_session(session_id, **changes)
        self.notifier.publish(EVENT_SESSION_LOG, {"session_id": session_id, "entry": entry})
        return entry

    def record_tool_call(self, session_id: str, name: str) -> SessionLogEntry | None:
        return self.log(session_id, LOG_TOOL_CALL, name)

    def mark(
        self,
        session_id: str,
        status: SessionStatus,
        *,
        error: str | None = None,
        result: str | None = None,
    ) -> ExecutionSession | None:
        """Move a session forward; terminal sessions and backward moves are ignored."""

        session = self.repository.get_session(session_id)
        if session is None:
            return None
        if session.status.is_terminal:
            logger.debug(
                "Session %s already %s, ignoring %s",
                session_id,
                session.status.value,
                status.value,
            )
            return session
        if not status.is_terminal and _STATUS_ORDER[status] < _STATUS_ORDER[session.status]:
            return session

        now = utc_now()
        changes: dict[str, Any] = {"status": status, "last_activity_at": now}
        if error:
            changes["error"] = error
        if result:
            changes["result"] = result
        if status.is_terminal:
            changes["ended_at"] = now
        updated = self.repository.update_session(session_id, **changes)
        if updated is not None:
            logger.info("Session %s status: %s", session_id, status.value)
            self._publish(updated)
        return updated

    def record_tokens(
        self,
        session_id: str,
        input_tokens: int,
        output_tokens: int,
        cost_usd: float | None = None,
    ) -> ExecutionSession | None:
        changes: dict[str, Any] = {"input_tokens": input_tokens, "output_tokens": output_tokens}
        if cost_usd is not None:
            changes["cost_usd"] = cost_usd
        updated = self.repository.update_session(session_id, **changes)
        if updated is not None:
            self._publish(updated)
        return updated

    def cancel(self, session_id: str) -> bool:
        session = self.repository.get_session(session_id)
        if session is None or session.status.is_terminal:
            return False
        self.mark(session_id, SessionStatus.CANCELLED)
        return True

    def get(self, session_id: str) -> ExecutionSession | None:
        return self.repository.get_session(session_id)

    def active(self) -> list[ExecutionSession]:
        return self.repository.list_active()

    def history(self, limit: int = 20) -> list[ExecutionSession]:
        return self.repository.list_history(limit=limit)

    def logs(self, session_id: str, limit: int = 50) -> list[SessionLogEntry]:
        return self.repository.list_logs(session_id, limit=limit)

    def _publish(self, session: ExecutionSession) -> None:
        self.notifier.publish(EVENT_SESSION_UPDATED, {"session": session})
