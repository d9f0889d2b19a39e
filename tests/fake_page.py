from typing import Dict, List, Optional

from slot_signals import RawAncestor, RawControl


def make_control(
    label: str,
    node_id: str,
    *,
    pressed: bool = False,
    disabled: bool = False,
    date: str = "2025-09-24",
    attrs: Optional[Dict[str, str]] = None,
    text: Optional[str] = None,
) -> RawControl:
    control_attrs = {"role": "button", "class": "style_main__button__x1"}
    if pressed:
        control_attrs["aria-pressed"] = "true"
    else:
        control_attrs["aria-pressed"] = "false"
    if disabled:
        control_attrs["data-disabled"] = "true"
    control_attrs.update(attrs or {})
    return RawControl(
        node_id=node_id,
        tag="div",
        text=text if text is not None else f"{label} 空き",
        attrs=control_attrs,
        html=f"<div>{label}</div>",
        ancestors=(RawAncestor("div", {"class": "time-list", "data-date": date}),),
        handle=f"slot-{label}",
    )


class FakeClock:
    """Stands in for both the wall clock and the server clock."""

    def __init__(self, now: float) -> None:
        self.value = now
        self.mono = 1000.0

    def time(self) -> float:
        return self.value

    def monotonic(self) -> float:
        return self.mono

    def now(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds
        self.mono += seconds


class FakePage:
    origin = "https://reservations.example"

    def __init__(self, controls: Optional[List[RawControl]] = None) -> None:
        self.controls = list(controls or [])
        self.body = ""
        self.proceed_button: Optional[str] = "proceed"
        self.confirm_button: Optional[str] = "confirm"
        self.result_text: Optional[str] = None
        self.snapshot_error: Optional[Exception] = None
        self.activated: List[str] = []
        self.event_activated: List[str] = []
        self.reloads = 0

    def snapshot_controls(self) -> List[RawControl]:
        if self.snapshot_error is not None:
            raise self.snapshot_error
        return list(self.controls)

    def activate(self, handle) -> None:
        self.activated.append(handle)
        if handle == self.confirm_button and self.result_text is not None:
            self.body = self.result_text

    def activate_with_events(self, handle) -> None:
        self.event_activated.append(handle)

    def find_button_by_text(self, pattern):
        if self.proceed_button and "slot-" in "".join(self.activated):
            return self.proceed_button
        return None

    def find_confirm_button(self, pattern):
        if self.confirm_button and self.proceed_button in self.event_activated:
            return self.confirm_button
        return None

    def body_text(self) -> str:
        return self.body

    def reload(self) -> None:
        self.reloads += 1
        self.body = ""
