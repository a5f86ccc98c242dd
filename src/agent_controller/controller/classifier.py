"""Heuristic classification of agent output into approval routes.

Rules are evaluated in order and the first match wins. Approval-requiring phrases
are checked before any safe pattern.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from agent_controller.controller.models import ApprovalActionType

ACTION_CLASSIFIER_VERSION = 1

_ARCHITECTURE_PATTERNS: tuple[str, ...] = (
    "architecture",
    "architectural",
)
_PLANNING_PATTERNS: tuple[str, ...] = (
    "plan",
    "design",
    "architect",
    "structure",
    "approach",
    "strategy",
    "implementation plan",
)
_GIT_PUSH_PATTERNS: tuple[str, ...] = (
    "git push",
    "push to remote",
    "push to origin",
)
_LARGE_EDIT_PATTERNS: tuple[str, ...] = (
    "multiple files",
    "refactor",
    "rewrite",
    "major changes",
    "restructure",
)


@dataclass(slots=True, frozen=True)
class ApprovalRule:
    """Substring rule that routes a response to human review."""

    name: str
    approval_type: ApprovalActionType
    patterns: tuple[str, ...]
    description: str


@dataclass(slots=True, frozen=True)
class SafeRule:
    """Regex rule for actions that can run without review."""

    action_type: str
    pattern: re.Pattern[str]


@dataclass(slots=True, frozen=True)
class ClassifierRules:
    approval_rules: tuple[ApprovalRule, ...]
    safe_rules: tuple[SafeRule, ...]
    default_action_type: str = "edit"


DEFAULT_RULES = ClassifierRules(
    approval_rules=(
        ApprovalRule(
            name="architecture",
            approval_type=ApprovalActionType.ARCHITECTURE,
            patterns=_ARCHITECTURE_PATTERNS,
            description='Architecture decision for "{title}"',
        ),
        ApprovalRule(
            name="planning",
            approval_type=ApprovalActionType.PLANNING,
            patterns=_PLANNING_PATTERNS,
            description='Planning/architecture decision for "{title}"',
        ),
        ApprovalRule(
            name="git_push",
            approval_type=ApprovalActionType.GIT_PUSH,
            patterns=_GIT_PUSH_PATTERNS,
            description='Git push requested for "{title}"',
        ),
        ApprovalRule(
            name="large_edit",
            approval_type=ApprovalActionType.LARGE_EDIT,
            patterns=_LARGE_EDIT_PATTERNS,
            description='Large-scale edit for "{title}"',
        ),
    ),
    safe_rules=(
        SafeRule("test", re.compile(r"npm test|pnpm test|yarn test|vitest|jest|pytest")),
        SafeRule("formatting", re.compile(r"prettier|eslint|lint|format")),
        SafeRule("git_local", re.compile(r"git commit|git add|git branch")),
        SafeRule("install", re.compile(r"npm install|pnpm install|yarn add")),
    ),
)


@dataclass(slots=True)
class ActionClassification:
    """Normalized classification result."""

    type: str
    requires_approval: bool
    description: str
    approval_type: ApprovalActionType | None = None
    matched_rule: str = "default"
    matched_pattern: str | None = None

    def to_log_details(self) -> dict[str, object]:
        return {
            "classifier_version": ACTION_CLASSIFIER_VERSION,
            "type": self.type,
            "requires_approval": self.requires_approval,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


class ActionClassifier:
    """Pluggable first-match classifier over an ordered rule set."""

    def __init__(self, rules: ClassifierRules = DEFAULT_RULES) -> None:
        self.rules = rules

    def classify(self, response: str, *, task_title: str) -> ActionClassification:
        haystack = response.lower()

        for rule in self.rules.approval_rules:
            pattern = _first_match(haystack, rule.patterns)
            if pattern is not None:
                return ActionClassification(
                    type=rule.approval_type.value,
                    requires_approval=True,
                    approval_type=rule.approval_type,
                    description=rule.description.format(title=task_title),
                    matched_rule=rule.name,
                    matched_pattern=pattern,
                )

        for safe in self.rules.safe_rules:
            match = safe.pattern.search(haystack)
            if match is not None:
                return ActionClassification(
                    type=safe.action_type,
                    requires_approval=False,
                    description=f"Auto-approved {safe.action_type} action",
                    matched_rule=safe.action_type,
                    matched_pattern=match.group(0),
                )

        return ActionClassification(
            type=self.rules.default_action_type,
            requires_approval=False,
            description=f'Code edit for "{task_title}"',
        )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
