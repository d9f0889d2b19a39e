import logging
import threading
import time
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

import requests


class ClockUnavailableError(RuntimeError):
    """Raised when the server's Date header cannot be obtained."""


def fetch_server_date(origin: str, *, timeout: float = 5.0) -> float:
    """Issue a HEAD request against ``origin`` and return its Date header as epoch seconds."""
    url = origin.rstrip("/") + "/"
    try:
        response = requests.head(
            url,
            headers={"Cache-Control": "no-store"},
            allow_redirects=False,
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise ClockUnavailableError(f"time check against {url} failed: {exc}") from exc

    header = response.headers.get("Date")
    if not header:
        raise ClockUnavailableError(f"{url} returned no Date header (status {response.status_code})")
    try:
        return parsedate_to_datetime(header).timestamp()
    except (TypeError, ValueError) as exc:
        raise ClockUnavailableError(f"unparseable Date header {header!r}") from exc


class ServerClock:
    """Server-aligned clock for a single page load.

    The first call to :meth:`now` performs one time check and caches
    ``offset = remote - local_at_receipt``. Round-trip latency is not
    compensated. Callers arriving while the check is in flight wait for it
    instead of issuing their own. A failed check falls back to the local clock
    for the rest of the load and is never retried.
    """

    def __init__(
        self,
        origin: str,
        *,
        fetcher: Callable[[str], float] = fetch_server_date,
        time_fn: Callable[[], float] = time.time,
    ) -> None:
        self.origin = origin
        self._fetcher = fetcher
        self._time_fn = time_fn
        self._lock = threading.Lock()
        self._resolved = False
        self._offset: Optional[float] = None

    @property
    def offset(self) -> Optional[float]:
        return self._offset

    @property
    def synced(self) -> bool:
        return self._offset is not None

    def now(self) -> float:
        if not self._resolved:
            self._resolve()
        return self._time_fn() + (self._offset or 0.0)

    def _resolve(self) -> None:
        with self._lock:
            if self._resolved:
                return
            try:
                remote = self._fetcher(self.origin)
                self._offset = remote - self._time_fn()
                logging.info("Server clock offset: %+.3fs (%s)", self._offset, self.origin)
            except ClockUnavailableError as exc:
                logging.warning("Server time unavailable, using local clock for this page load: %s", exc)
                self._offset = None
            finally:
                self._resolved = True
