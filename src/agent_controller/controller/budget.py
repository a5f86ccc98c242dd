"""Hourly/daily token budget accounting with graceful wind-down."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any

from agent_controller.controller.models import (
    ControllerState,
    ControllerStatus,
    DailyTokenUsage,
    TokenHistoryEntry,
    TokenUsage,
    UsageLimitConfig,
    UsageLimitStatus,
)
from agent_controller.storage.common import utc_now

logger = logging.getLogger(__name__)

HOURLY_WINDOW = timedelta(hours=1)
DAILY_LIMIT_MULTIPLIER = 5

HistorySink = Callable[[TokenHistoryEntry], None]


@dataclass(slots=True)
class BudgetOutcome:
    """What one accounting step changed."""

    previous_status: UsageLimitStatus
    status: UsageLimitStatus
    percentage: int
    rolled_over: bool = False
    wind_down_started: bool = False
    resumed: bool = False
    held_for_operator: bool = False

    @property
    def should_warn(self) -> bool:
        return self.status != self.previous_status and self.status != UsageLimitStatus.OK


def classify_usage(
    hourly_total: int,
    daily_total: int,
    config: UsageLimitConfig,
) -> UsageLimitStatus:
    ratio = max(
        hourly_total / config.max_tokens_per_hour,
        daily_total / config.max_tokens_per_day,
    )
    if ratio >= 1.0:
        return UsageLimitStatus.AT_LIMIT
    if ratio >= config.pause_threshold:
        return UsageLimitStatus.APPROACHING_LIMIT
    if ratio >= config.warning_threshold:
        return UsageLimitStatus.WARNING
    return UsageLimitStatus.OK


def estimate_tokens(text: str) -> int:
    """Rough token estimate used when the agent reports no usage."""

    return math.ceil(len(text) / 4)


def fresh_token_usage(config: UsageLimitConfig, now: datetime) -> TokenUsage:
    return TokenUsage(
        input_tokens=0,
        output_tokens=0,
        limit=config.max_tokens_per_hour,
        reset_at=now + HOURLY_WINDOW,
    )


class TokenUsageTracker:
    """Mutates the budget fields of a `ControllerState` in place."""

    def __init__(self, *, history_sink: HistorySink | None = None) -> None:
        self.history_sink = history_sink

    def record(
        self,
        state: ControllerState,
        input_tokens: int,
        output_tokens: int,
        *,
        context_window: int | None = None,
        now: datetime | None = None,
    ) -> BudgetOutcome:
        """Account one execution's tokens and apply wind-down/resume transitions."""

        now = now or utc_now()
        config = state.usage_limit_config
        if context_window and (
            context_window != config.max_tokens_per_hour
            or context_window * DAILY_LIMIT_MULTIPLIER != config.max_tokens_per_day
        ):
            config = replace(
                config,
                max_tokens_per_hour=context_window,
                max_tokens_per_day=context_window * DAILY_LIMIT_MULTIPLIER,
            )
            logger.info(
                "Token limits updated from agent context window: %s per hour, %s per day",
                config.max_tokens_per_hour,
                config.max_tokens_per_day,
            )
            state.usage_limit_config = config

        usage = state.token_usage
        rolled_over = now > usage.reset_at
        if rolled_over:
            self._archive(usage)
            state.token_usage = TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                limit=context_window or config.max_tokens_per_hour,
                reset_at=now + HOURLY_WINDOW,
            )
        else:
            usage.input_tokens += input_tokens
            usage.output_tokens += output_tokens
            if context_window:
                usage.limit = context_window

        today = now.date()
        daily = state.daily_token_usage
        if daily.day != today:
            state.daily_token_usage = DailyTokenUsage(
                day=today,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
            )
        else:
            daily.input_tokens += input_tokens
            daily.output_tokens += output_tokens

        previous_status = state.usage_limit_status
        status = classify_usage(
            state.token_usage.total,
            state.daily_token_usage.total,
            config,
        )
        state.usage_limit_status = status
        outcome = BudgetOutcome(
            previous_status=previous_status,
            status=status,
            percentage=self._max_percentage(state),
            rolled_over=rolled_over,
        )

        if rolled_over and state.status == ControllerStatus.WINDING_DOWN:
            self._leave_wind_down(state, outcome)
        elif (
            status in (UsageLimitStatus.APPROACHING_LIMIT, UsageLimitStatus.AT_LIMIT)
            and state.status == ControllerStatus.RUNNING
        ):
            state.status = ControllerStatus.WINDING_DOWN
            state.paused_due_to_limit = True
            state.current_action = "Winding down - approaching token limit"
            outcome.wind_down_started = True
            minutes_left = math.ceil((state.token_usage.reset_at - now).total_seconds() / 60)
            logger.info(
                "Approaching token limit - winding down, resuming in ~%s minute(s)",
                minutes_left,
            )
        return outcome

    def check_window_reset(
        self,
        state: ControllerState,
        *,
        now: datetime | None = None,
    ) -> BudgetOutcome | None:
        """Top-of-tick safety net: leave wind-down once the hourly window expired."""

        now = now or utc_now()
        if state.status != ControllerStatus.WINDING_DOWN or now <= state.token_usage.reset_at:
            return None
        self._archive(state.token_usage)
        state.token_usage = fresh_token_usage(state.usage_limit_config, now)
        outcome = BudgetOutcome(
            previous_status=state.usage_limit_status,
            status=state.usage_limit_status,
            percentage=0,
            rolled_over=True,
        )
        self._leave_wind_down(state, outcome)
        state.usage_limit_status = classify_usage(
            0,
            state.daily_token_usage.total,
            state.usage_limit_config,
        )
        return outcome

    def reset(self, state: ControllerState, *, now: datetime | None = None) -> None:
        """Zero both buckets."""

        now = now or utc_now()
        state.token_usage = fresh_token_usage(state.usage_limit_config, now)
        state.daily_token_usage = DailyTokenUsage(day=now.date())
        state.usage_limit_status = UsageLimitStatus.OK
        state.paused_due_to_limit = False

    def update_config(self, state: ControllerState, **changes: Any) -> UsageLimitConfig:
        """Apply config changes and re-evaluate the status against new thresholds."""

        config = replace(state.usage_limit_config, **changes)
        _validate_config(config)
        state.usage_limit_config = config
        state.usage_limit_status = classify_usage(
            state.token_usage.total,
            state.daily_token_usage.total,
            config,
        )
        return config

    def percentages(self, state: ControllerState) -> dict[str, int]:
        config = state.usage_limit_config
        return {
            "hourly": round(state.token_usage.total / config.max_tokens_per_hour * 100),
            "daily": round(state.daily_token_usage.total / config.max_tokens_per_day * 100),
        }

    def _max_percentage(self, state: ControllerState) -> int:
        values = self.percentages(state)
        return max(values["hourly"], values["daily"])

    def _leave_wind_down(self, state: ControllerState, outcome: BudgetOutcome) -> None:
        if state.usage_limit_config.auto_resume_on_reset:
            state.status = ControllerStatus.RUNNING
            state.paused_due_to_limit = False
            state.current_action = "Resuming after token limit reset"
            outcome.resumed = True
            logger.info("Token limit reset - resuming normal operation")
            return
        state.status = ControllerStatus.PAUSED
        state.current_action = "Token limit reset - waiting for operator to resume"
        outcome.held_for_operator = True
        logger.info("Token limit reset - auto resume disabled, controller paused")

    def _archive(self, usage: TokenUsage) -> None:
        if self.history_sink is None:
            return
        entry = TokenHistoryEntry(
            hour_start=usage.reset_at - HOURLY_WINDOW,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        try:
            self.history_sink(entry)
        except Exception:
            logger.exception("Failed to archive hourly token usage")


def _validate_config(config: UsageLimitConfig) -> None:
    if config.max_tokens_per_hour <= 0 or config.max_tokens_per_day <= 0:
        raise ValueError("Token limits must be positive.")
    if not 0 < config.warning_threshold <= config.pause_threshold <= 1:
        raise ValueError(
            "Thresholds must satisfy 0 < warning_threshold <= pause_threshold <= 1.",
        )
