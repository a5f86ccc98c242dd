"""Live approval queue, auto-approval rules and timeout sweeps."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Protocol
from uuid import uuid4

from agent_controller.controller.classifier import ActionClassification
from agent_controller.controller.models import (
    ApprovalActionType,
    ApprovalRequest,
    ApprovalStatus,
    AutoApprovalRules,
    TaskView,
)
from agent_controller.storage.common import utc_now

logger = logging.getLogger(__name__)

APPROVAL_EXPIRY = timedelta(minutes=30)


class ApprovalStore(Protocol):
    def add_approval_request(self, request: ApprovalRequest) -> None: ...

    def update_approval_status(
        self,
        request_id: str,
        status: ApprovalStatus,
    ) -> ApprovalRequest | None: ...

    def remove_approval_request(self, request_id: str) -> None: ...

    def list_approval_requests(
        self,
        *,
        status: ApprovalStatus | None = None,
    ) -> list[ApprovalRequest]: ...

    def clear_approval_queue(self) -> int: ...

    def get_auto_approval_rules(self) -> AutoApprovalRules: ...

    def save_auto_approval_rules(self, rules: AutoApprovalRules) -> None: ...


@dataclass(slots=True)
class TimeoutSweep:
    """Result of one sweep: expired requests are already resolved, auto-approvals are not."""

    expired: list[ApprovalRequest] = field(default_factory=list)
    auto_approvable: list[ApprovalRequest] = field(default_factory=list)


class ApprovalQueue:
    """Queue of actions awaiting sign-off; resolved requests leave the live queue."""

    def __init__(self, store: ApprovalStore, *, expiry: timedelta = APPROVAL_EXPIRY) -> None:
        self.store = store
        self.expiry = expiry

    def create(
        self,
        task: TaskView,
        classification: ActionClassification,
        details: str,
        *,
        now: datetime | None = None,
    ) -> ApprovalRequest:
        if classification.approval_type is None:
            raise ValueError("Classification does not require approval.")
        now = now or utc_now()
        request = ApprovalRequest(
            request_id=str(uuid4()),
            task_id=task.task_id,
            task_title=task.title,
            action_type=classification.approval_type,
            description=classification.description,
            details=details,
            status=ApprovalStatus.PENDING,
            created_at=now,
            expires_at=now + self.expiry,
        )
        self.store.add_approval_request(request)
        logger.info(
            "Approval required (%s) for task %s: %s",
            request.action_type.value,
            task.task_id,
            request.request_id,
        )
        return request

    def resolve(self, request_id: str, status: ApprovalStatus) -> ApprovalRequest | None:
        """Move a live request to a terminal status and drop it from the queue."""

        if status == ApprovalStatus.PENDING:
            raise ValueError("Pending is not a terminal approval status.")
        request = self.store.update_approval_status(request_id, status)
        if request is None:
            return None
        self.store.remove_approval_request(request_id)
        logger.info("Approval %s resolved as %s", request_id, status.value)
        return request

    def list_pending(self) -> list[ApprovalRequest]:
        return self.store.list_approval_requests(status=ApprovalStatus.PENDING)

    def clear(self) -> int:
        removed = self.store.clear_approval_queue()
        if removed:
            logger.info("Discarded %s pending approval request(s)", removed)
        return removed

    def get_rules(self) -> AutoApprovalRules:
        return self.store.get_auto_approval_rules()

    def update_rules(self, **changes: Any) -> AutoApprovalRules:
        if "allowed_action_types" in changes:
            changes["allowed_action_types"] = tuple(
                ApprovalActionType(item) for item in changes["allowed_action_types"]
            )
        rules = replace(self.get_rules(), **changes)
        if rules.max_pending_time_minutes < 0:
            raise ValueError("max_pending_time_minutes must be >= 0.")
        self.store.save_auto_approval_rules(rules)
        return rules

    def should_auto_approve(
        self,
        action_type: ApprovalActionType,
        rules: AutoApprovalRules | None = None,
    ) -> bool:
        rules = rules or self.get_rules()
        if not rules.enabled:
            return False
        if action_type == ApprovalActionType.GIT_PUSH and rules.require_confirmation_for_git_push:
            return False
        return action_type in rules.allowed_action_types

    def sweep(self, *, now: datetime | None = None) -> TimeoutSweep:
        """Expire overdue requests and collect the ones due for auto-approval."""

        now = now or utc_now()
        rules = self.get_rules()
        result = TimeoutSweep()
        for request in self.list_pending():
            if request.expires_at < now:
                expired = self.resolve(request.request_id, ApprovalStatus.TIMED_OUT)
                if expired is not None:
                    result.expired.append(expired)
                continue

            if not rules.enabled or rules.max_pending_time_minutes <= 0:
                continue
            pending_for = now - request.created_at
            if pending_for >= timedelta(
                minutes=rules.max_pending_time_minutes,
            ) and self.should_auto_approve(request.action_type, rules):
                result.auto_approvable.append(request)
        return result
