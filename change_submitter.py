import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Pattern

from budgets import EnabledFlag
from scheduling_utils import await_condition
from slot_scanner import SlotCandidate


class SubmissionStepTimeout(RuntimeError):
    """Raised when a submission step's control does not appear in time."""


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


@dataclass(frozen=True)
class SubmissionTexts:
    proceed: Pattern[str]
    confirm: Pattern[str]
    success: Pattern[str]
    failure: Pattern[str]


class ChangeSubmitter:
    """Runs select -> proceed -> confirm -> outcome against the page.

    Each step polls for up to ``action_timeout`` seconds. A missing control
    yields ``Outcome.ERROR`` and leaves reloading to the scheduler; the
    capacity-exceeded message schedules a reload after
    ``failure_reload_delay`` seconds; the success message disables the loop.
    """

    def __init__(
        self,
        page,
        texts: SubmissionTexts,
        enabled: EnabledFlag,
        schedule_reload: Callable[[str, float], None],
        *,
        action_timeout: float = 10.0,
        poll_interval: float = 0.15,
        failure_reload_delay: float = 0.6,
    ) -> None:
        self.page = page
        self.texts = texts
        self.enabled = enabled
        self.schedule_reload = schedule_reload
        self.action_timeout = action_timeout
        self.poll_interval = poll_interval
        self.failure_reload_delay = failure_reload_delay

    def _wait_for(self, finder: Callable[[], Optional[object]], description: str):
        found = await_condition(
            finder,
            timeout=self.action_timeout,
            interval=self.poll_interval,
            description=description,
        )
        if found is None:
            raise SubmissionStepTimeout(f"{description} did not appear within {self.action_timeout:.1f}s")
        return found

    def _read_outcome(self) -> Optional[Outcome]:
        body = self.page.body_text() or ""
        if self.texts.success.search(body):
            return Outcome.SUCCESS
        if self.texts.failure.search(body):
            return Outcome.FAILURE
        return None

    def submit(self, target: SlotCandidate) -> Outcome:
        logging.info("Selecting earlier slot %s (%s)", target.raw_label, target.display_text)
        self.page.activate(target.handle)

        try:
            proceed = self._wait_for(
                lambda: self.page.find_button_by_text(self.texts.proceed), "proceed button"
            )
            self.page.activate_with_events(proceed)
            logging.info("Pressed proceed button")

            confirm = self._wait_for(
                lambda: self.page.find_confirm_button(self.texts.confirm), "confirm button"
            )
            self.page.activate(confirm)
            logging.info("Pressed confirm button")
        except SubmissionStepTimeout as exc:
            logging.warning("Change submission aborted: %s", exc)
            return Outcome.ERROR

        outcome = await_condition(
            self._read_outcome,
            timeout=self.action_timeout,
            interval=self.poll_interval,
            description="change result message",
        )
        if outcome is Outcome.SUCCESS:
            logging.info("Reservation moved to %s; stopping automation", target.raw_label)
            self.enabled.set(False)
            return Outcome.SUCCESS
        if outcome is Outcome.FAILURE:
            logging.info("Slot %s already full", target.raw_label)
            self.schedule_reload("capacity exceeded", self.failure_reload_delay)
            return Outcome.FAILURE

        logging.warning("No result message after confirming the change")
        return Outcome.ERROR
