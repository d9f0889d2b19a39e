import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from slot_signals import RawControl, Signal, collect_signals, score_signals

TIME_PATTERN = re.compile(r"([0-1]?\d|2[0-3]):([0-5]\d)")

LABEL_ATTRIBUTES = ("aria-label", "title", "data-time", "data-label", "data-value", "value")
SCOPE_ATTRIBUTES = ("data-date", "data-day", "data-tab", "data-tab-id", "data-panel")
FULL_PATTERN = re.compile(r"予約不可|満員|full|unavailable|sold\s*out", re.IGNORECASE)
DISABLED_CLASSES = {"is-disabled", "disabled", "is-full", "soldout"}


@dataclass(frozen=True)
class SlotCandidate:
    raw_label: str
    minute_offset: int
    signals: Tuple[Signal, ...]
    confidence_score: int
    selectable: bool
    scope_signature: str
    display_text: str = ""
    node_id: str = ""
    handle: object = field(default=None, compare=False, repr=False)

    @property
    def label(self) -> str:
        return format_minute_offset(self.minute_offset)


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def parse_time_label(text: str) -> Optional[Tuple[str, int]]:
    """Return ``(matched_label, minutes_since_midnight)`` for the first HH:MM in ``text``."""
    match = TIME_PATTERN.search(text or "")
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    return match.group(0), hours * 60 + minutes


def format_minute_offset(minute_offset: int) -> str:
    hours, minutes = divmod(minute_offset, 60)
    return f"{hours:02d}:{minutes:02d}"


def _label_sources(control: RawControl) -> Iterable[str]:
    yield control.text
    for name in LABEL_ATTRIBUTES:
        value = control.attrs.get(name)
        if value:
            yield value
    yield control.html


def extract_label(control: RawControl) -> Optional[Tuple[str, int]]:
    for source in _label_sources(control):
        parsed = parse_time_label(_normalize(source))
        if parsed:
            return parsed
    return None


def is_selectable(control: RawControl) -> bool:
    attrs = control.attrs
    if attrs.get("aria-pressed", "").lower() == "true":
        return False
    if "disabled" in attrs:
        return False
    if attrs.get("data-disabled", "").lower() == "true":
        return False
    aria_disabled = attrs.get("aria-disabled")
    if aria_disabled is not None and aria_disabled.lower() != "false":
        return False
    if DISABLED_CLASSES.intersection(control.class_tokens):
        return False
    for ancestor in control.ancestors:
        if ancestor.tag == "td":
            if ancestor.attrs.get("data-gray-out", "").lower() == "true":
                return False
            break
    if any(FULL_PATTERN.search(alt) for alt in control.image_alts):
        return False
    if attrs.get("data-status", "").lower() in ("full", "unavailable"):
        return False
    return True


def scope_signature(control: RawControl) -> str:
    for ancestor in control.ancestors:
        for name in SCOPE_ATTRIBUTES:
            value = ancestor.attrs.get(name)
            if value:
                return f"{name}={value}"
        if ancestor.tag == "table":
            return f"table#{ancestor.table_index if ancestor.table_index is not None else 0}"
    return ""


def build_candidate(control: RawControl) -> Optional[SlotCandidate]:
    parsed = extract_label(control)
    if parsed is None:
        return None
    raw_label, minute_offset = parsed
    signals = tuple(collect_signals(control))
    return SlotCandidate(
        raw_label=raw_label,
        minute_offset=minute_offset,
        signals=signals,
        confidence_score=score_signals(signals),
        selectable=is_selectable(control),
        scope_signature=scope_signature(control),
        display_text=_normalize(control.text),
        node_id=control.node_id,
        handle=control.handle,
    )


def scan(controls: Sequence[RawControl]) -> List[SlotCandidate]:
    seen = set()
    candidates: List[SlotCandidate] = []
    for control in controls:
        if control.node_id and control.node_id in seen:
            continue
        seen.add(control.node_id)
        candidate = build_candidate(control)
        if candidate is not None:
            candidates.append(candidate)
    logging.debug("Scanned %d controls, %d carry a time label", len(controls), len(candidates))
    return candidates
