"""State shared across page reloads, restarts and the control panel.

Only the enabled flag and the two per-minute budgets go through a
:class:`StateStore`. Everything else belongs to one page load or to the
running advancer process.
"""

import json
import logging
import math
import os
import tempfile
import time
from contextlib import contextmanager, suppress
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from scheduling_utils import minute_bucket

ENABLED_KEY = "enabled"
ATTEMPT_BUDGET_KEY = "attempt_budget"
RELOAD_BUDGET_KEY = "reload_budget"

LOCK_TIMEOUT_SECONDS = 2.0
LOCK_POLL_SECONDS = 0.01


class StateStore:
    def get(self, key: str, default: Any = None) -> Any:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(StateStore):
    """Round-trips values through JSON so tests see the same contract as the file store."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return json.loads(self._data[key])

    def set(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStore(StateStore):
    """JSON file on disk shared with the control panel process.

    Every access re-reads the file. Writes hold ``<file>.lock`` across the
    read-modify-replace so a toggle from the panel is never overwritten with
    stale data, and each writer stages its own temporary file.
    """

    def __init__(self, path: str) -> None:
        self.path = Path(path).expanduser()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path = self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        deadline = time.monotonic() + LOCK_TIMEOUT_SECONDS
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                break
            except FileExistsError:
                if time.monotonic() >= deadline:
                    logging.warning("Removing stale state lock %s", self.lock_path)
                    with suppress(FileNotFoundError):
                        os.remove(self.lock_path)
                    deadline = time.monotonic() + LOCK_TIMEOUT_SECONDS
                    continue
                time.sleep(LOCK_POLL_SECONDS)
        try:
            yield
        finally:
            os.close(fd)
            with suppress(FileNotFoundError):
                os.remove(self.lock_path)

    def _read(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            logging.warning("State file %s unreadable, starting empty: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, Any]) -> None:
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=self.path.name + ".",
            suffix=".tmp",
            delete=False,
        ) as handle:
            json.dump(data, handle, ensure_ascii=False, indent=2)
        try:
            os.replace(handle.name, self.path)
        except OSError:
            with suppress(FileNotFoundError):
                os.remove(handle.name)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        return self._read().get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._locked():
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._locked():
            data = self._read()
            if key in data:
                del data[key]
                self._write(data)

    def clear(self) -> None:
        with self._locked():
            self._write({})


class EnabledFlag:
    def __init__(self, store: StateStore) -> None:
        self.store = store

    def get(self) -> bool:
        return bool(self.store.get(ENABLED_KEY, True))

    def set(self, enabled: bool) -> None:
        self.store.set(ENABLED_KEY, bool(enabled))


@dataclass
class AttemptBudgetRecord:
    minute_bucket: Optional[int] = None
    count: int = 0
    logged: bool = False


@dataclass
class ReloadBudgetRecord:
    minute_bucket: Optional[int] = None
    count: int = 0
    logged_minute: Optional[int] = None


@dataclass(frozen=True)
class AttemptDecision:
    allowed: bool
    wait_seconds: float = 0.0


def _load_record(store: StateStore, key: str, record_cls):
    raw = store.get(key) or {}
    if not isinstance(raw, dict):
        logging.warning("Discarding malformed %s record: %r", key, raw)
        return record_cls()
    record = record_cls()
    try:
        for name in record_cls.__dataclass_fields__:
            if name in raw:
                setattr(record, name, raw[name])
        record.count = int(record.count)
        if record.minute_bucket is not None:
            record.minute_bucket = int(record.minute_bucket)
    except (TypeError, ValueError):
        logging.warning("Discarding malformed %s record: %r", key, raw)
        return record_cls()
    return record


class AttemptBudget:
    """Caps change submissions per server minute."""

    def __init__(self, store: StateStore, max_per_minute: int) -> None:
        self.store = store
        self.max_per_minute = max_per_minute

    def load(self) -> AttemptBudgetRecord:
        return _load_record(self.store, ATTEMPT_BUDGET_KEY, AttemptBudgetRecord)

    def save(self, record: AttemptBudgetRecord) -> None:
        self.store.set(ATTEMPT_BUDGET_KEY, asdict(record))

    def reset(self) -> None:
        self.store.delete(ATTEMPT_BUDGET_KEY)
        logging.info("Attempt counter reset")

    def register(self, now: float) -> AttemptDecision:
        bucket = minute_bucket(now)
        record = self.load()
        if record.minute_bucket != bucket:
            record = AttemptBudgetRecord(minute_bucket=bucket)

        if record.count >= self.max_per_minute:
            wait_seconds = max(0.0, (bucket + 1) * 60 - now)
            if not record.logged:
                logging.info(
                    "Attempt limit for this minute reached (%d); waiting %ds",
                    self.max_per_minute,
                    math.ceil(wait_seconds),
                )
                record.logged = True
            self.save(record)
            return AttemptDecision(allowed=False, wait_seconds=wait_seconds)

        record.count += 1
        record.logged = False
        self.save(record)
        logging.info("Change attempt %d/%d this minute", record.count, self.max_per_minute)
        return AttemptDecision(allowed=True)


class ReloadBudget:
    """Caps forced page reloads per server minute."""

    def __init__(self, store: StateStore, max_per_minute: int) -> None:
        self.store = store
        self.max_per_minute = max_per_minute

    def load(self) -> ReloadBudgetRecord:
        return _load_record(self.store, RELOAD_BUDGET_KEY, ReloadBudgetRecord)

    def save(self, record: ReloadBudgetRecord) -> None:
        self.store.set(RELOAD_BUDGET_KEY, asdict(record))

    def reset(self) -> None:
        self.store.delete(RELOAD_BUDGET_KEY)
