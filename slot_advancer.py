import argparse
import configparser
import json
import logging
import os
import re
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from selenium.common.exceptions import WebDriverException

from budgets import AttemptBudget, EnabledFlag, JsonFileStore, ReloadBudget, StateStore
from candidate_selector import select_candidate
from change_submitter import ChangeSubmitter, Outcome, SubmissionTexts
from logging_utils import LogPanelHandler, configure_logging
from notification_utils import notify_change_success
from reload_scheduler import ReloadScheduler
from server_clock import ServerClock
from slot_resolver import ActiveSlotResolver
from slot_scanner import scan

DEFAULT_TARGET_URL = "https://ticket.expo2025.or.jp/"
HEARTBEAT_INTERVAL_SECONDS = 1.0


@dataclass
class AdvancerConfig:
    target_url: str = DEFAULT_TARGET_URL
    window_start: int = 43
    window_end: int = 53
    max_reloads_per_minute: int = 4
    max_attempts_per_minute: int = 3
    action_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 0.15
    tick_interval_seconds: float = 0.2
    check_recency_seconds: float = 10.0
    failure_reload_delay_seconds: float = 0.6
    proceed_text: str = "来場日時を設定する"
    confirm_text: str = "来場日時を変更する"
    success_text: str = "来場日時が設定されました"
    failure_text: str = "定員を超えたため、ご希望の時間帯は選択できませんでした"
    state_path: str = "state/advancer_state.json"
    heartbeat_path: str = "state/status.json"
    chrome_profile_dir: str = ""
    smtp_server: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    notify_email: str = ""

    @classmethod
    def load(cls, path: str = "config.ini") -> "AdvancerConfig":
        parser = configparser.ConfigParser(interpolation=None)
        parser.optionxform = str

        if not parser.read(path, encoding="utf-8"):
            raise FileNotFoundError(
                f"Unable to load configuration. Expected file at '{path}'. "
                "Run with --setup or copy config.ini.template to create one."
            )

        raw_defaults = {k.upper(): v for k, v in parser["DEFAULT"].items()}
        errors: List[str] = []

        def _get(key: str, fallback: str) -> str:
            return str(os.getenv(key, raw_defaults.get(key, fallback))).strip()

        def _get_int(key: str, fallback: int) -> int:
            try:
                return int(_get(key, str(fallback)))
            except ValueError:
                errors.append(f"{key} must be an integer")
                return fallback

        def _get_float(key: str, fallback: float) -> float:
            try:
                return float(_get(key, str(fallback)))
            except ValueError:
                errors.append(f"{key} must be a number")
                return fallback

        defaults = cls()
        cfg = cls(
            target_url=_get("TARGET_URL", defaults.target_url),
            window_start=_get_int("WINDOW_START", defaults.window_start),
            window_end=_get_int("WINDOW_END", defaults.window_end),
            max_reloads_per_minute=_get_int("MAX_RELOADS_PER_MINUTE", defaults.max_reloads_per_minute),
            max_attempts_per_minute=_get_int("MAX_ATTEMPTS_PER_MINUTE", defaults.max_attempts_per_minute),
            action_timeout_seconds=_get_float("ACTION_TIMEOUT_SECONDS", defaults.action_timeout_seconds),
            poll_interval_seconds=_get_float("POLL_INTERVAL_SECONDS", defaults.poll_interval_seconds),
            tick_interval_seconds=_get_float("TICK_INTERVAL_SECONDS", defaults.tick_interval_seconds),
            check_recency_seconds=_get_float("CHECK_RECENCY_SECONDS", defaults.check_recency_seconds),
            failure_reload_delay_seconds=_get_float(
                "FAILURE_RELOAD_DELAY_SECONDS", defaults.failure_reload_delay_seconds
            ),
            proceed_text=_get("PROCEED_TEXT", defaults.proceed_text),
            confirm_text=_get("CONFIRM_TEXT", defaults.confirm_text),
            success_text=_get("SUCCESS_TEXT", defaults.success_text),
            failure_text=_get("FAILURE_TEXT", defaults.failure_text),
            state_path=_get("STATE_PATH", defaults.state_path),
            heartbeat_path=_get("HEARTBEAT_PATH", defaults.heartbeat_path),
            chrome_profile_dir=_get("CHROME_PROFILE_DIR", ""),
            smtp_server=_get("SMTP_SERVER", ""),
            smtp_port=_get_int("SMTP_PORT", defaults.smtp_port),
            smtp_user=_get("SMTP_USER", ""),
            smtp_pass=_get("SMTP_PASS", ""),
            notify_email=_get("NOTIFY_EMAIL", ""),
        )
        errors.extend(cfg.validate())
        if errors:
            raise ValueError("Invalid configuration: " + "; ".join(errors))
        return cfg

    def validate(self) -> List[str]:
        problems: List[str] = []
        if not self.target_url.startswith(("http://", "https://")):
            problems.append("TARGET_URL must be an http(s) URL")
        if not 0 <= self.window_start < self.window_end <= 60:
            problems.append("WINDOW_START/WINDOW_END must satisfy 0 <= start < end <= 60")
        if self.max_reloads_per_minute < 1:
            problems.append("MAX_RELOADS_PER_MINUTE must be at least 1")
        if self.max_attempts_per_minute < 1:
            problems.append("MAX_ATTEMPTS_PER_MINUTE must be at least 1")
        for name in (
            "action_timeout_seconds",
            "poll_interval_seconds",
            "tick_interval_seconds",
            "check_recency_seconds",
        ):
            if getattr(self, name) <= 0:
                problems.append(f"{name.upper()} must be greater than 0")
        if self.failure_reload_delay_seconds < 0:
            problems.append("FAILURE_RELOAD_DELAY_SECONDS must not be negative")
        for name in ("proceed_text", "confirm_text", "success_text", "failure_text"):
            try:
                re.compile(getattr(self, name))
            except re.error as exc:
                problems.append(f"{name.upper()} is not a valid pattern ({exc})")
        return problems

    def submission_texts(self) -> SubmissionTexts:
        return SubmissionTexts(
            proceed=re.compile(self.proceed_text),
            confirm=re.compile(self.confirm_text),
            success=re.compile(self.success_text),
            failure=re.compile(self.failure_text),
        )

    def is_smtp_configured(self) -> bool:
        if not (self.smtp_server and self.smtp_user and self.smtp_pass and self.notify_email):
            return False
        return "your_email" not in self.smtp_user.lower()

    @staticmethod
    def _mask(value: str, *, keep: int = 2) -> str:
        if not value:
            return ""
        if len(value) <= keep * 2:
            return value[0] + "***" if len(value) > 1 else "*"
        return f"{value[:keep]}***{value[-keep:]}"

    def masked_summary(self) -> str:
        return (
            f"target={self.target_url} | window={self.window_start}-{self.window_end}s | "
            f"reloads/min={self.max_reloads_per_minute} | attempts/min={self.max_attempts_per_minute} | "
            f"notify={self._mask(self.notify_email) or 'off'}"
        )


class TickResult(str, Enum):
    DISABLED = "disabled"
    SKIPPED = "skipped"
    WAITING = "waiting"
    INCONCLUSIVE = "inconclusive"
    NO_CANDIDATE = "no-candidate"
    LIMIT = "limit"
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"
    EXCEPTION = "exception"
    RELOADED = "reloaded"


@dataclass
class AdvancerStatus:
    state: str = "idle"
    reservation_label: Optional[str] = None
    estimated: bool = False
    seconds_until_next_action: Optional[float] = None
    last_result: Optional[str] = None
    reloads_this_minute: int = 0
    attempts_this_minute: int = 0
    log_lines: List[str] = field(default_factory=list)

    def display_label(self) -> str:
        if not self.reservation_label:
            return "unknown"
        return f"{self.reservation_label} (estimated)" if self.estimated else self.reservation_label


class PageLoad:
    """Everything that lives only until the next reload."""

    def __init__(self, clock: ServerClock) -> None:
        self.clock = clock
        self.resolver = ActiveSlotResolver()
        self.checked = False


def write_heartbeat(path: Path, status: AdvancerStatus) -> None:
    payload = asdict(status)
    payload["timestamp"] = time.time()
    payload["display_label"] = status.display_label()
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    os.replace(tmp_path, path)


class SlotAdvancer:
    """Tick-driven control loop: identify, select, submit, then maybe reload."""

    def __init__(
        self,
        cfg: AdvancerConfig,
        page,
        store: StateStore,
        *,
        clock_factory: Optional[Callable[[str], ServerClock]] = None,
        time_fn: Callable[[], float] = time.time,
        monotonic_fn: Callable[[], float] = time.monotonic,
        log_panel: Optional[LogPanelHandler] = None,
        notifier: Callable[[AdvancerConfig, str, str], bool] = notify_change_success,
    ) -> None:
        self.cfg = cfg
        self.page = page
        self.store = store
        self._time_fn = time_fn
        self._monotonic = monotonic_fn
        self._clock_factory = clock_factory or (lambda origin: ServerClock(origin, time_fn=time_fn))
        self._log_panel = log_panel
        self._notifier = notifier

        self.enabled = EnabledFlag(store)
        self.attempt_budget = AttemptBudget(store, cfg.max_attempts_per_minute)
        self.reload_budget = ReloadBudget(store, cfg.max_reloads_per_minute)
        self.reload_scheduler = ReloadScheduler(
            self.reload_budget,
            self.attempt_budget,
            window_start=cfg.window_start,
            window_end=cfg.window_end,
        )
        self.submitter = ChangeSubmitter(
            page,
            cfg.submission_texts(),
            self.enabled,
            self.schedule_reload,
            action_timeout=cfg.action_timeout_seconds,
            poll_interval=cfg.poll_interval_seconds,
            failure_reload_delay=cfg.failure_reload_delay_seconds,
        )

        self.busy = False
        self.pending_reload = False
        self.stopped = False
        self._reload_due_at = 0.0
        self._reload_reason = ""
        self.status = AdvancerStatus()
        self._heartbeat_path = Path(cfg.heartbeat_path).expanduser() if cfg.heartbeat_path else None
        self._last_heartbeat = 0.0
        self.reloads_performed = 0
        # in memory only, kept across reloads
        self.last_resolved_at: Optional[float] = None
        self.attempt_blocked_until = 0.0
        self.load = self._start_page_load()

    # ------------------------------------------------------------------
    # Page-load lifecycle
    # ------------------------------------------------------------------
    def _start_page_load(self) -> PageLoad:
        self.load = PageLoad(self._clock_factory(self.page.origin))
        return self.load

    def schedule_reload(self, reason: str, delay: float = 0.0) -> None:
        if self.pending_reload:
            return
        self.pending_reload = True
        self._reload_due_at = self._monotonic() + max(0.0, delay)
        self._reload_reason = reason
        logging.info("Reload scheduled in %.1fs: %s", delay, reason)

    def _perform_reload(self) -> None:
        logging.info("Reloading page: %s", self._reload_reason or "scheduled")
        try:
            self.page.reload()
        except WebDriverException as exc:
            logging.warning("Page reload failed, retrying next tick: %s", exc)
            self._reload_due_at = self._monotonic() + 1.0
            return
        self.reloads_performed += 1
        self.pending_reload = False
        self._reload_reason = ""
        self._start_page_load()

    def _check_completed_recently(self) -> bool:
        if self.load.checked:
            return True
        last = self.last_resolved_at
        return last is not None and self._monotonic() - last <= self.cfg.check_recency_seconds

    def _attempts_blocked(self) -> bool:
        if self._time_fn() >= self.attempt_blocked_until:
            return False
        if self.attempt_budget.load().count < self.attempt_budget.max_per_minute:
            logging.info("Attempt counter was reset, lifting the wait")
            self.attempt_blocked_until = 0.0
            return False
        return True

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def tick(self) -> TickResult:
        if self.stopped or not self.enabled.get():
            self.status.state = "done" if self.stopped else "idle"
            self._publish_status()
            return TickResult.DISABLED

        if self.pending_reload:
            if self._monotonic() >= self._reload_due_at:
                self._perform_reload()
                self._publish_status()
                return TickResult.RELOADED
            return TickResult.SKIPPED

        if self.busy:
            return TickResult.SKIPPED

        self.busy = True
        self.status.state = "running"
        try:
            result = self._tick_body()
            self.status.last_result = result.value
            return result
        finally:
            self.busy = False
            self._publish_status()

    def _tick_body(self) -> TickResult:
        result = TickResult.WAITING
        if not self.load.checked and not self._attempts_blocked():
            try:
                result = self._try_change()
            except Exception as exc:  # noqa: BLE001
                logging.exception("Change attempt raised: %s", exc)
                self.schedule_reload("exception during change attempt", 0.0)
                self._perform_reload()
                return TickResult.EXCEPTION
            if self.stopped or self.pending_reload:
                return result
            if result in (TickResult.SUCCESS, TickResult.FAILURE):
                return result

        try:
            now = self.load.clock.now()
            decision = self.reload_scheduler.decide(now, self._check_completed_recently())
        except Exception as exc:  # noqa: BLE001
            logging.exception("Reload evaluation failed: %s", exc)
            return TickResult.ERROR
        blocked = self.attempt_blocked_until - self._time_fn()
        self.status.seconds_until_next_action = max(blocked, decision.seconds_until_window)
        if decision.reload:
            self.pending_reload = True
            self._reload_reason = decision.reason
            self._perform_reload()
            return TickResult.RELOADED
        return result

    def _try_change(self) -> TickResult:
        candidates = scan(self.page.snapshot_controls())
        resolution = self.load.resolver.resolve(candidates)
        if not resolution.resolved:
            return TickResult.INCONCLUSIVE

        active = resolution.active
        self.load.checked = True
        self.last_resolved_at = self._monotonic()
        self.status.reservation_label = active.raw_label
        self.status.estimated = resolution.used_fallback

        target = select_candidate(candidates, active)
        if target is None:
            logging.info("No selectable slot earlier than %s", active.raw_label)
            return TickResult.NO_CANDIDATE

        decision = self.attempt_budget.register(self.load.clock.now())
        if not decision.allowed:
            self.attempt_blocked_until = self._time_fn() + decision.wait_seconds
            self.status.seconds_until_next_action = decision.wait_seconds
            return TickResult.LIMIT
        self.attempt_blocked_until = 0.0

        outcome = self.submitter.submit(target)
        if outcome is Outcome.SUCCESS:
            self.stopped = True
            self.status.state = "done"
            self.status.reservation_label = target.raw_label
            self.status.estimated = False
            self._notifier(self.cfg, active.raw_label, target.raw_label)
        return TickResult(outcome.value)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    def _publish_status(self) -> None:
        attempts = self.attempt_budget.load()
        reloads = self.reload_budget.load()
        self.status.attempts_this_minute = attempts.count
        self.status.reloads_this_minute = reloads.count
        if self.pending_reload:
            self.status.seconds_until_next_action = max(0.0, self._reload_due_at - self._monotonic())
        if self._log_panel is not None:
            self.status.log_lines = self._log_panel.lines()[-50:]

        if self._heartbeat_path is None:
            return
        now = self._monotonic()
        if not self.stopped and now - self._last_heartbeat < HEARTBEAT_INTERVAL_SECONDS:
            return
        self._last_heartbeat = now
        try:
            write_heartbeat(self._heartbeat_path, self.status)
        except OSError as exc:
            logging.debug("Unable to write heartbeat file: %s", exc)

    def run(self) -> None:
        logging.info("Automation loop started (tick every %.0f ms)", self.cfg.tick_interval_seconds * 1000)
        while not self.stopped:
            started = self._monotonic()
            try:
                self.tick()
            except Exception as exc:  # noqa: BLE001
                logging.exception("Tick failed, continuing: %s", exc)
            elapsed = self._monotonic() - started
            time.sleep(max(0.0, self.cfg.tick_interval_seconds - elapsed))
        logging.info("Automation loop finished")


def main() -> None:
    parser = argparse.ArgumentParser(description="Move a reservation to an earlier free time slot")
    parser.add_argument("--config", default="config.ini", help="Path to config.ini")
    parser.add_argument("--setup", action="store_true", help="Run the interactive configuration wizard first")
    parser.add_argument(
        "--headless",
        action="store_true",
        help="Run Chrome headless (only useful with a logged-in CHROME_PROFILE_DIR)",
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--reset-state", action="store_true", help="Clear persisted budgets and re-enable automation")
    parser.add_argument(
        "--no-wait",
        dest="wait_for_user",
        action="store_false",
        help="Start immediately instead of waiting for Enter after the page opens",
    )
    args = parser.parse_args()

    log_panel = configure_logging(debug=args.debug, json_logs=args.json_logs)

    if args.setup:
        from config_wizard import run_cli_setup_wizard

        run_cli_setup_wizard(args.config)

    try:
        cfg = AdvancerConfig.load(args.config)
    except (FileNotFoundError, ValueError) as exc:
        logging.error("Configuration error: %s", exc)
        raise SystemExit(1) from exc

    from browser_session import SeleniumPage, open_browser
    from selector_registry import apply_selector_overrides

    store = JsonFileStore(cfg.state_path)
    if args.reset_state:
        store.clear()
        logging.info("Persisted state cleared (%s)", cfg.state_path)

    print("Earlier Slot Advancer")
    print("=" * 50)
    print(f"Page:           {cfg.target_url}")
    print(f"Reload window:  {cfg.window_start}-{cfg.window_end}s, max {cfg.max_reloads_per_minute}/min")
    print(f"Change attempts: max {cfg.max_attempts_per_minute}/min")
    print(f"Notifications:  {'Enabled' if cfg.is_smtp_configured() else 'Disabled'}")
    print("=" * 50)
    logging.info("Configuration summary: %s", cfg.masked_summary())

    apply_selector_overrides(SeleniumPage)
    driver = open_browser(headless=args.headless, profile_dir=cfg.chrome_profile_dir or None)
    page = SeleniumPage(driver)
    try:
        page.open(cfg.target_url)
        if args.wait_for_user:
            input("Log in, open the visit time selection, then press Enter to start... ")
        advancer = SlotAdvancer(cfg, page, store, log_panel=log_panel)
        advancer.run()
    except KeyboardInterrupt:
        print("\nStopping (KeyboardInterrupt)")
    finally:
        page.close()
        print("Browser session closed")


if __name__ == "__main__":
    main()
