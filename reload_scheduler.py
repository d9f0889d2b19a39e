import logging
import time
from dataclasses import dataclass

from budgets import AttemptBudget, AttemptBudgetRecord, ReloadBudget, ReloadBudgetRecord
from scheduling_utils import (
    minute_bucket,
    seconds_of_minute,
    seconds_until_next_minute,
    seconds_until_window,
)


@dataclass(frozen=True)
class ReloadDecision:
    reload: bool
    reason: str = ""
    seconds_until_window: float = 0.0


class ReloadScheduler:
    """Allows a page reload only inside the per-minute window, within budget,
    and once the current reservation has been identified recently."""

    def __init__(
        self,
        reload_budget: ReloadBudget,
        attempt_budget: AttemptBudget,
        *,
        window_start: int,
        window_end: int,
    ) -> None:
        self.reload_budget = reload_budget
        self.attempt_budget = attempt_budget
        self.window_start = window_start
        self.window_end = window_end

    def in_window(self, now: float) -> bool:
        return self.window_start <= seconds_of_minute(now) < self.window_end

    def _roll_minute(self, now: float, bucket: int) -> ReloadBudgetRecord:
        record = self.reload_budget.load()
        if record.minute_bucket == bucket:
            return record

        record = ReloadBudgetRecord(minute_bucket=bucket, count=0, logged_minute=record.logged_minute)
        attempts = self.attempt_budget.load()
        if attempts.minute_bucket != bucket:
            self.attempt_budget.save(AttemptBudgetRecord(minute_bucket=bucket))
        if record.logged_minute != bucket:
            logging.info(
                "Minute changed -> %s / reloads left this minute: %d",
                time.strftime("%H:%M:%S", time.localtime(now)),
                self.reload_budget.max_per_minute,
            )
            record.logged_minute = bucket
        self.reload_budget.save(record)
        return record

    def decide(self, now: float, check_completed_recently: bool) -> ReloadDecision:
        bucket = minute_bucket(now)
        record = self._roll_minute(now, bucket)
        wait = seconds_until_window(now, self.window_start, self.window_end)

        if not self.in_window(now):
            return ReloadDecision(reload=False, seconds_until_window=wait)
        if record.count >= self.reload_budget.max_per_minute:
            wait = seconds_until_next_minute(now) + self.window_start
            return ReloadDecision(reload=False, seconds_until_window=wait)
        if not check_completed_recently:
            logging.debug("Reload deferred: current reservation not identified on this page yet")
            return ReloadDecision(reload=False, seconds_until_window=wait)

        record.count += 1
        self.reload_budget.save(record)
        reason = (
            f"server time {seconds_of_minute(now)}s "
            f"({record.count}/{self.reload_budget.max_per_minute} this minute)"
        )
        return ReloadDecision(reload=True, reason=reason)
