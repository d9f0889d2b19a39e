import logging
from typing import Any, Callable, Optional, TypeVar

from selenium.common.exceptions import TimeoutException
from selenium.webdriver.support.ui import WebDriverWait

T = TypeVar("T")


def minute_bucket(now: float) -> int:
    return int(now // 60)


def seconds_of_minute(now: float) -> int:
    return int(now % 60)


def seconds_until_next_minute(now: float) -> float:
    return max(0.0, (minute_bucket(now) + 1) * 60 - now)


def seconds_until_window(now: float, window_start: int, window_end: int) -> float:
    """Seconds until the reload window opens (0 while inside it)."""
    second = now % 60
    if window_start <= second < window_end:
        return 0.0
    if second < window_start:
        return window_start - second
    return 60 - second + window_start


def await_condition(
    predicate: Callable[[], Optional[T]],
    *,
    timeout: float,
    interval: float,
    description: str = "condition",
) -> Optional[T]:
    """Poll ``predicate`` until it returns something truthy or ``timeout`` elapses.

    Returns the predicate's value, or ``None`` on timeout. Uses the same
    ``WebDriverWait`` polling the browser helpers rely on, so a predicate is
    evaluated once immediately and then every ``interval`` seconds.
    """

    def _poll(_: Any) -> Optional[T]:
        return predicate()

    try:
        return WebDriverWait(None, timeout, poll_frequency=interval).until(_poll)
    except TimeoutException:
        logging.debug("Timed out after %.1fs waiting for %s", timeout, description)
        return None
