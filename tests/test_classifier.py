from __future__ import annotations

import re

import allure
import pytest

from agent_controller.controller.classifier import (
    DEFAULT_RULES,
    ActionClassifier,
    ApprovalRule,
    ClassifierRules,
    SafeRule,
)
from agent_controller.controller.models import ApprovalActionType

pytestmark = [
    allure.epic("Controller"),
    allure.feature("Action Classification"),
]


@pytest.mark.parametrize(
    ("response", "approval_type"),
    [
        ("This needs an architectural decision first", ApprovalActionType.ARCHITECTURE),
        ("Here is the Implementation Plan", ApprovalActionType.PLANNING),
        ("I would like to redesign the module", ApprovalActionType.PLANNING),
        ("Ready to git push to main", ApprovalActionType.GIT_PUSH),
        ("This touches multiple files in the repo", ApprovalActionType.LARGE_EDIT),
        ("I will rewrite the importer", ApprovalActionType.LARGE_EDIT),
    ],
)
def test_risky_responses_require_approval(response, approval_type) -> None:
    result = ActionClassifier().classify(response, task_title="Cache")

    assert result.requires_approval is True
    assert result.approval_type == approval_type
    assert result.type == approval_type.value


def test_architecture_rule_wins_over_planning_phrases() -> None:
    result = ActionClassifier().classify(
        "Plan: revisit the architecture of the worker",
        task_title="Worker",
    )

    assert result.approval_type == ApprovalActionType.ARCHITECTURE
    assert result.description == 'Architecture decision for "Worker"'
    assert result.matched_pattern == "architecture"


def test_approval_phrases_win_over_safe_patterns() -> None:
    result = ActionClassifier().classify(
        "Ran pytest, then did git push origin main",
        task_title="Release",
    )

    assert result.approval_type == ApprovalActionType.GIT_PUSH
    assert result.description == 'Git push requested for "Release"'


@pytest.mark.parametrize(
    ("response", "action_type"),
    [
        ("Ran pytest: 12 passed", "test"),
        ("Ran prettier on the sources", "formatting"),
        ("Created a git commit with the fix", "git_local"),
        ("Ran npm install to fetch deps", "install"),
    ],
)
def test_safe_responses_are_auto_approved(response, action_type) -> None:
    result = ActionClassifier().classify(response, task_title="Chore")

    assert result.requires_approval is False
    assert result.approval_type is None
    assert result.type == action_type
    assert result.description == f"Auto-approved {action_type} action"


def test_unmatched_response_defaults_to_code_edit() -> None:
    result = ActionClassifier().classify("Fixed the off-by-one error", task_title="Pager")

    assert result.requires_approval is False
    assert result.type == "edit"
    assert result.description == 'Code edit for "Pager"'
    assert result.matched_rule == "default"


def test_classifier_accepts_custom_rule_set() -> None:
    rules = ClassifierRules(
        approval_rules=(
            ApprovalRule(
                name="deploy",
                approval_type=ApprovalActionType.GIT_PUSH,
                patterns=("deploy",),
                description='Deployment for "{title}"',
            ),
        ),
        safe_rules=(SafeRule("docs", re.compile(r"readme")),),
        default_action_type="misc",
    )
    classifier = ActionClassifier(rules)

    assert classifier.classify("Deploy to staging", task_title="Ship").description == (
        'Deployment for "Ship"'
    )
    assert classifier.classify("Updated README", task_title="Ship").type == "docs"
    assert classifier.classify("Here is my plan", task_title="Ship").type == "misc"
    assert DEFAULT_RULES.default_action_type == "edit"


def test_log_details_name_the_matched_rule() -> None:
    result = ActionClassifier().classify("Large refactor ahead", task_title="Core")

    details = result.to_log_details()

    assert details["matched_rule"] == "large_edit"
    assert details["matched_pattern"] == "refactor"
    assert details["requires_approval"] is True
