from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from agent_controller.controller.budget import (
    TokenUsageTracker,
    classify_usage,
    estimate_tokens,
)
from agent_controller.controller.machine import initial_state
from agent_controller.controller.models import (
    ControllerState,
    ControllerStatus,
    TokenHistoryEntry,
    UsageLimitConfig,
    UsageLimitStatus,
)

pytestmark = [
    allure.epic("Controller"),
    allure.feature("Token Budget"),
]

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


def _state(
    *,
    status: ControllerStatus = ControllerStatus.RUNNING,
    per_hour: int = 1000,
    auto_resume: bool = True,
) -> ControllerState:
    state = initial_state(
        UsageLimitConfig(
            max_tokens_per_hour=per_hour,
            max_tokens_per_day=per_hour * 5,
            auto_resume_on_reset=auto_resume,
        ),
        NOW,
    )
    state.status = status
    return state


def test_crossing_pause_threshold_starts_wind_down() -> None:
    state = _state()
    tracker = TokenUsageTracker()

    outcome = tracker.record(state, 850, 0, now=NOW + timedelta(minutes=1))

    assert state.usage_limit_status == UsageLimitStatus.APPROACHING_LIMIT
    assert state.status == ControllerStatus.WINDING_DOWN
    assert state.paused_due_to_limit is True
    assert outcome.wind_down_started is True
    assert outcome.should_warn is True
    assert outcome.percentage == 85


def test_threshold_crossing_does_not_change_idle_controller() -> None:
    state = _state(status=ControllerStatus.IDLE)

    TokenUsageTracker().record(state, 1000, 200, now=NOW)

    assert state.usage_limit_status == UsageLimitStatus.AT_LIMIT
    assert state.status == ControllerStatus.IDLE
    assert state.paused_due_to_limit is False


def test_warning_is_reported_once_per_status_change() -> None:
    state = _state()
    tracker = TokenUsageTracker()

    first = tracker.record(state, 300, 310, now=NOW)
    second = tracker.record(state, 10, 0, now=NOW)

    assert first.status == UsageLimitStatus.WARNING
    assert first.should_warn is True
    assert second.status == UsageLimitStatus.WARNING
    assert second.should_warn is False
    assert state.status == ControllerStatus.RUNNING


def test_hourly_rollover_resumes_wound_down_controller_exactly_once() -> None:
    archived: list[TokenHistoryEntry] = []
    state = _state()
    tracker = TokenUsageTracker(history_sink=archived.append)
    tracker.record(state, 900, 0, now=NOW)
    assert state.status == ControllerStatus.WINDING_DOWN

    later = NOW + timedelta(hours=1, seconds=1)
    outcome = tracker.record(state, 0, 0, now=later)

    assert outcome.rolled_over is True
    assert outcome.resumed is True
    assert state.status == ControllerStatus.RUNNING
    assert state.paused_due_to_limit is False
    assert state.token_usage.total == 0
    assert state.token_usage.reset_at == later + timedelta(hours=1)
    assert archived == [
        TokenHistoryEntry(hour_start=NOW, input_tokens=900, output_tokens=0),
    ]

    again = tracker.record(state, 0, 0, now=later + timedelta(seconds=5))
    assert again.rolled_over is False
    assert len(archived) == 1


def test_rollover_holds_controller_when_auto_resume_is_disabled() -> None:
    state = _state(auto_resume=False)
    tracker = TokenUsageTracker()
    tracker.record(state, 900, 0, now=NOW)

    outcome = tracker.record(state, 0, 0, now=NOW + timedelta(hours=2))

    assert outcome.held_for_operator is True
    assert outcome.resumed is False
    assert state.status == ControllerStatus.PAUSED
    assert state.paused_due_to_limit is True


def test_check_window_reset_only_acts_after_window_expires() -> None:
    state = _state()
    tracker = TokenUsageTracker()
    tracker.record(state, 950, 0, now=NOW)

    assert tracker.check_window_reset(state, now=NOW + timedelta(minutes=30)) is None
    assert state.status == ControllerStatus.WINDING_DOWN

    outcome = tracker.check_window_reset(state, now=NOW + timedelta(minutes=61))

    assert outcome is not None
    assert outcome.resumed is True
    assert state.status == ControllerStatus.RUNNING
    assert state.token_usage.total == 0
    # daily bucket keeps the 950 tokens: 950 / 5000 stays below every threshold
    assert state.daily_token_usage.total == 950
    assert state.usage_limit_status == UsageLimitStatus.OK


def test_check_window_reset_ignores_running_controller() -> None:
    state = _state()

    assert TokenUsageTracker().check_window_reset(state, now=NOW + timedelta(hours=3)) is None


def test_daily_bucket_restarts_on_new_utc_day() -> None:
    state = _state(per_hour=100_000)
    tracker = TokenUsageTracker()
    tracker.record(state, 100, 50, now=NOW)

    tracker.record(state, 7, 3, now=NOW + timedelta(days=1))

    assert state.daily_token_usage.day == (NOW + timedelta(days=1)).date()
    assert state.daily_token_usage.total == 10


def test_daily_limit_alone_can_trigger_wind_down() -> None:
    state = initial_state(
        UsageLimitConfig(max_tokens_per_hour=10_000, max_tokens_per_day=1_000),
        NOW,
    )
    state.status = ControllerStatus.RUNNING

    TokenUsageTracker().record(state, 1_000, 0, now=NOW)

    assert state.usage_limit_status == UsageLimitStatus.AT_LIMIT
    assert state.status == ControllerStatus.WINDING_DOWN


def test_reported_context_window_replaces_limits() -> None:
    state = _state()

    TokenUsageTracker().record(state, 10, 10, context_window=200_000, now=NOW)

    assert state.usage_limit_config.max_tokens_per_hour == 200_000
    assert state.usage_limit_config.max_tokens_per_day == 1_000_000
    assert state.token_usage.limit == 200_000
    assert state.usage_limit_status == UsageLimitStatus.OK


def test_context_window_restores_daily_limit_changed_on_its_own() -> None:
    state = _state(per_hour=200_000)
    state.usage_limit_config.max_tokens_per_day = 300_000

    TokenUsageTracker().record(state, 10, 10, context_window=200_000, now=NOW)

    assert state.usage_limit_config.max_tokens_per_hour == 200_000
    assert state.usage_limit_config.max_tokens_per_day == 1_000_000


def test_reset_zeroes_buckets_and_clears_limit_flag() -> None:
    state = _state()
    tracker = TokenUsageTracker()
    tracker.record(state, 900, 0, now=NOW)

    tracker.reset(state, now=NOW + timedelta(minutes=5))

    assert state.token_usage.total == 0
    assert state.daily_token_usage.total == 0
    assert state.usage_limit_status == UsageLimitStatus.OK
    assert state.paused_due_to_limit is False
    assert state.token_usage.reset_at == NOW + timedelta(minutes=65)


def test_update_config_reclassifies_current_usage() -> None:
    state = _state(per_hour=10_000)
    tracker = TokenUsageTracker()
    tracker.record(state, 500, 0, now=NOW)
    assert state.usage_limit_status == UsageLimitStatus.OK

    config = tracker.update_config(state, max_tokens_per_hour=600)

    assert config.max_tokens_per_hour == 600
    assert state.usage_limit_status == UsageLimitStatus.APPROACHING_LIMIT
    assert tracker.percentages(state) == {"hourly": 83, "daily": 1}


@pytest.mark.parametrize(
    "changes",
    [
        {"max_tokens_per_hour": 0},
        {"pause_threshold": 1.5},
        {"warning_threshold": 0.9, "pause_threshold": 0.8},
        {"warning_threshold": 0},
    ],
)
def test_update_config_rejects_invalid_values(changes) -> None:
    state = _state()

    with pytest.raises(ValueError):
        TokenUsageTracker().update_config(state, **changes)

    assert state.usage_limit_config.max_tokens_per_hour == 1000


def test_failing_history_sink_does_not_break_accounting() -> None:
    def _broken_sink(_: TokenHistoryEntry) -> None:
        raise RuntimeError("disk full")

    state = _state()
    tracker = TokenUsageTracker(history_sink=_broken_sink)

    outcome = tracker.record(state, 5, 5, now=NOW + timedelta(hours=2))

    assert outcome.rolled_over is True
    assert state.token_usage.total == 10


def test_classify_usage_boundaries() -> None:
    config = UsageLimitConfig(max_tokens_per_hour=100, max_tokens_per_day=1_000)

    assert classify_usage(59, 0, config) == UsageLimitStatus.OK
    assert classify_usage(60, 0, config) == UsageLimitStatus.WARNING
    assert classify_usage(80, 0, config) == UsageLimitStatus.APPROACHING_LIMIT
    assert classify_usage(100, 0, config) == UsageLimitStatus.AT_LIMIT


def test_estimate_tokens_rounds_up() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens("abcd") == 1
    assert estimate_tokens("abcde") == 2
