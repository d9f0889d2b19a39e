from pathlib import Path
import json
import sys
from typing import Dict, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from budgets import MemoryStore, ReloadBudgetRecord
from fake_page import FakeClock, FakePage, make_control
from slot_advancer import AdvancerConfig, SlotAdvancer, TickResult

MINUTE = 29_000_000 * 60
FAILURE = "定員を超えたため、ご希望の時間帯は選択できませんでした"
SUCCESS = "来場日時が設定されました"


def _config(tmp_path: Path, **overrides) -> AdvancerConfig:
    values = dict(
        action_timeout_seconds=0.2,
        poll_interval_seconds=0.01,
        heartbeat_path=str(tmp_path / "status.json"),
        state_path=str(tmp_path / "state.json"),
    )
    values.update(overrides)
    return AdvancerConfig(**values)


def _advancer(tmp_path: Path, page: FakePage, clock: FakeClock, store: Optional[MemoryStore] = None, **overrides):
    notified = []
    advancer = SlotAdvancer(
        _config(tmp_path, **overrides),
        page,
        store or MemoryStore(),
        clock_factory=lambda origin: clock,
        time_fn=clock.time,
        monotonic_fn=clock.monotonic,
        notifier=lambda cfg, old, new: notified.append((old, new)) or True,
    )
    return advancer, notified


def _calendar() -> FakePage:
    return FakePage(
        [
            make_control("08:00", "a", disabled=True),
            make_control("09:00", "b"),
            make_control("09:30", "c"),
            make_control("10:00", "d", pressed=True),
        ]
    )


def test_step_timeout_is_error_without_reload(tmp_path: Path) -> None:
    page = _calendar()
    page.proceed_button = None
    clock = FakeClock(MINUTE + 10)
    advancer, _ = _advancer(tmp_path, page, clock)

    assert advancer.tick() is TickResult.ERROR
    assert page.activated == ["slot-09:30"]
    assert not advancer.pending_reload
    assert page.reloads == 0
    assert advancer.attempt_budget.load().count == 1
    assert advancer.status.reservation_label == "10:00"


def test_capacity_failure_reloads_after_delay_and_keeps_attempt_count(tmp_path: Path) -> None:
    page = _calendar()
    page.result_text = FAILURE
    clock = FakeClock(MINUTE + 10)
    advancer, _ = _advancer(tmp_path, page, clock)

    assert advancer.tick() is TickResult.FAILURE
    assert advancer.pending_reload
    assert advancer.attempt_budget.load().count == 1

    clock.advance(0.3)
    assert advancer.tick() is TickResult.SKIPPED
    assert page.reloads == 0

    clock.advance(0.4)
    assert advancer.tick() is TickResult.RELOADED
    assert page.reloads == 1
    assert not advancer.pending_reload
    assert not advancer.load.checked
    assert advancer.attempt_budget.load().count == 1


def test_success_stops_the_loop_and_notifies(tmp_path: Path) -> None:
    page = _calendar()
    page.result_text = SUCCESS
    clock = FakeClock(MINUTE + 10)
    advancer, notified = _advancer(tmp_path, page, clock)

    assert advancer.tick() is TickResult.SUCCESS
    assert advancer.stopped
    assert advancer.enabled.get() is False
    assert notified == [("10:00", "09:30")]
    assert advancer.tick() is TickResult.DISABLED
    assert advancer.status.state == "done"

    heartbeat = json.loads((tmp_path / "status.json").read_text(encoding="utf-8"))
    assert heartbeat["state"] == "done"
    assert heartbeat["display_label"] == "09:30"


def test_identification_runs_once_per_load(tmp_path: Path) -> None:
    page = FakePage([make_control("09:00", "a", pressed=True), make_control("09:30", "b")])
    clock = FakeClock(MINUTE + 10)
    advancer, _ = _advancer(tmp_path, page, clock)

    assert advancer.tick() is TickResult.NO_CANDIDATE
    assert advancer.load.checked
    page.snapshot_error = AssertionError("should not rescan after identification")
    assert advancer.tick() is TickResult.WAITING


def test_reload_budget_exhausted_inside_window_then_resumes_next_minute(tmp_path: Path) -> None:
    page = FakePage([make_control("09:00", "a", pressed=True), make_control("09:30", "b")])
    clock = FakeClock(MINUTE + 10)
    store = MemoryStore()
    advancer, _ = _advancer(tmp_path, page, clock, store)
    assert advancer.tick() is TickResult.NO_CANDIDATE

    bucket = MINUTE // 60
    advancer.reload_budget.save(ReloadBudgetRecord(minute_bucket=bucket, count=4, logged_minute=bucket))
    for second in (43, 46, 50, 52):
        clock.value = MINUTE + second
        assert advancer.tick() is TickResult.WAITING
    assert page.reloads == 0

    clock.value = MINUTE + 60 + 44
    assert advancer.tick() is TickResult.RELOADED
    assert page.reloads == 1
    assert advancer.reload_budget.load().count == 1


def test_no_reload_until_current_reservation_is_identified(tmp_path: Path) -> None:
    page = FakePage([make_control("10:00", "a", pressed=True), make_control("09:30", "b", pressed=True)])
    clock = FakeClock(MINUTE + 45)
    advancer, _ = _advancer(tmp_path, page, clock)

    for _ in range(3):
        assert advancer.tick() is TickResult.INCONCLUSIVE
    assert page.reloads == 0
    assert advancer.reload_budget.load().count == 0


def test_exception_during_change_triggers_recovery_reload(tmp_path: Path) -> None:
    page = _calendar()
    page.snapshot_error = RuntimeError("DOM detached")
    clock = FakeClock(MINUTE + 10)
    advancer, _ = _advancer(tmp_path, page, clock)

    assert advancer.tick() is TickResult.EXCEPTION
    assert page.reloads == 1
    assert not advancer.busy
    assert not advancer.pending_reload


def test_attempt_limit_blocks_submission(tmp_path: Path) -> None:
    page = _calendar()
    clock = FakeClock(MINUTE + 10)
    store = MemoryStore()
    store.set("attempt_budget", {"minute_bucket": MINUTE // 60, "count": 3, "logged": False})
    advancer, _ = _advancer(tmp_path, page, clock, store)

    assert advancer.tick() is TickResult.LIMIT
    assert page.activated == []
    assert advancer.status.seconds_until_next_action == pytest.approx(50)


def test_disabled_flag_skips_ticks(tmp_path: Path) -> None:
    page = _calendar()
    clock = FakeClock(MINUTE + 10)
    advancer, _ = _advancer(tmp_path, page, clock)
    advancer.enabled.set(False)

    assert advancer.tick() is TickResult.DISABLED
    assert page.activated == []
    assert advancer.status.state == "idle"


def test_busy_flag_prevents_overlapping_ticks(tmp_path: Path) -> None:
    page = _calendar()
    clock = FakeClock(MINUTE + 10)
    advancer, _ = _advancer(tmp_path, page, clock)
    advancer.busy = True

    assert advancer.tick() is TickResult.SKIPPED
    assert page.activated == []


def test_reload_discards_page_load_state(tmp_path: Path) -> None:
    page = FakePage([make_control("09:00", "a", pressed=True), make_control("09:30", "b")])
    clock = FakeClock(MINUTE + 10)
    advancer, _ = _advancer(tmp_path, page, clock)
    advancer.tick()
    first_load = advancer.load
    assert first_load.resolver.remembered is not None

    clock.value = MINUTE + 45
    assert advancer.tick() is TickResult.RELOADED
    assert advancer.load is not first_load
    assert advancer.load.resolver.remembered is None
    assert not advancer.load.checked


class FailingWritesStore(MemoryStore):
    def __init__(self) -> None:
        super().__init__()
        self.failing = False

    def set(self, key, value) -> None:
        if self.failing:
            raise OSError("No space left on device")
        super().set(key, value)


def test_store_failure_during_reload_evaluation_keeps_loop_alive(tmp_path: Path) -> None:
    page = FakePage([make_control("09:00", "a", pressed=True), make_control("09:30", "b")])
    clock = FakeClock(MINUTE + 10)
    store = FailingWritesStore()
    advancer, _ = _advancer(tmp_path, page, clock, store)
    assert advancer.tick() is TickResult.NO_CANDIDATE

    store.failing = True
    clock.value = MINUTE + 45
    assert advancer.tick() is TickResult.ERROR
    assert not advancer.busy
    assert page.reloads == 0

    store.failing = False
    assert advancer.tick() is TickResult.RELOADED
    assert page.reloads == 1


def test_recent_identification_allows_reload_from_a_fresh_load(tmp_path: Path) -> None:
    page = FakePage([make_control("09:00", "a", pressed=True), make_control("09:30", "b")])
    clock = FakeClock(MINUTE + 44)
    advancer, _ = _advancer(tmp_path, page, clock, check_recency_seconds=3.0)
    assert advancer.tick() is TickResult.RELOADED

    page.controls = [make_control("09:00", "a", pressed=True), make_control("09:30", "b", pressed=True)]
    clock.advance(2)
    assert advancer.tick() is TickResult.RELOADED
    assert not advancer.load.checked
    assert page.reloads == 2

    clock.advance(2)
    assert advancer.tick() is TickResult.INCONCLUSIVE
    assert page.reloads == 2


def test_attempt_wait_outlives_a_reload(tmp_path: Path) -> None:
    page = _calendar()
    clock = FakeClock(MINUTE + 10)
    store = MemoryStore()
    store.set("attempt_budget", {"minute_bucket": MINUTE // 60, "count": 3, "logged": False})
    advancer, _ = _advancer(tmp_path, page, clock, store)
    assert advancer.tick() is TickResult.LIMIT

    advancer.schedule_reload("test", 0.0)
    assert advancer.tick() is TickResult.RELOADED
    page.snapshot_error = AssertionError("scanned while attempts are blocked")
    assert advancer.tick() is TickResult.WAITING
    assert page.activated == []

    page.snapshot_error = None
    page.result_text = SUCCESS
    clock.value = MINUTE + 61
    assert advancer.tick() is TickResult.SUCCESS
    assert page.activated[0] == "slot-09:30"


def test_attempt_wait_lifted_when_counter_is_reset(tmp_path: Path) -> None:
    page = _calendar()
    clock = FakeClock(MINUTE + 10)
    store = MemoryStore()
    store.set("attempt_budget", {"minute_bucket": MINUTE // 60, "count": 3, "logged": False})
    advancer, _ = _advancer(tmp_path, page, clock, store)
    assert advancer.tick() is TickResult.LIMIT
    advancer.schedule_reload("test", 0.0)
    assert advancer.tick() is TickResult.RELOADED

    advancer.attempt_budget.reset()
    page.result_text = SUCCESS
    assert advancer.tick() is TickResult.SUCCESS
    assert advancer.attempt_blocked_until == 0.0


def _write_config(path: Path, overrides: Optional[Dict[str, str]] = None) -> Path:
    values = {
        "TARGET_URL": "https://ticket.example/",
        "WINDOW_START": "43",
        "WINDOW_END": "53",
        "MAX_RELOADS_PER_MINUTE": "4",
        "MAX_ATTEMPTS_PER_MINUTE": "3",
        "ACTION_TIMEOUT_SECONDS": "10",
        "PROCEED_TEXT": "来場日時を設定する",
    }
    if overrides:
        values.update(overrides)
    content = "[DEFAULT]\n" + "\n".join(f"{k} = {v}" for k, v in values.items()) + "\n"
    path.write_text(content, encoding="utf-8")
    return path


def test_config_load_smoke(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("WINDOW_START", raising=False)
    cfg = AdvancerConfig.load(str(_write_config(tmp_path / "config.ini")))
    assert cfg.target_url == "https://ticket.example/"
    assert cfg.window_start == 43
    assert cfg.poll_interval_seconds == pytest.approx(0.15)
    assert cfg.submission_texts().proceed.search("来場日時を設定する")


def test_config_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_RELOADS_PER_MINUTE", "2")
    cfg = AdvancerConfig.load(str(_write_config(tmp_path / "config.ini")))
    assert cfg.max_reloads_per_minute == 2


def test_config_validation_error_is_clear(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "config.ini",
        {"WINDOW_START": "55", "MAX_ATTEMPTS_PER_MINUTE": "zero", "FAILURE_TEXT": "("},
    )
    with pytest.raises(ValueError, match="Invalid configuration") as excinfo:
        AdvancerConfig.load(str(config_path))
    message = str(excinfo.value)
    assert "WINDOW_START" in message
    assert "MAX_ATTEMPTS_PER_MINUTE" in message
    assert "FAILURE_TEXT" in message


def test_missing_config_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        AdvancerConfig.load(str(tmp_path / "missing.ini"))


def test_masked_summary_hides_email() -> None:
    cfg = AdvancerConfig(notify_email="someone@example.com")
    assert "someone@example.com" not in cfg.masked_summary()
