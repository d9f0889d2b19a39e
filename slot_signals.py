"""Evidence that a time-slot control represents the user's current reservation.

Signals are gathered from the control's own attributes first. Only when the
control carries no evidence at all are its ancestors consulted, nearest first,
up to :data:`MAX_ANCESTOR_DEPTH` levels; those signals are tagged
``INHERITED`` and lose :data:`INHERITED_DEPTH_PENALTY` points per level.

:func:`score_signals` is a pure function of the signal list so the weights
can be exercised without a page.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence


class SignalKind(str, Enum):
    STATE_ATTRIBUTE = "state-attribute"
    KEYWORD_MATCH = "keyword-match"
    INHERITED = "inherited"


SIGNAL_WEIGHTS: Dict[str, int] = {
    # exact state attributes, most specific first
    "aria-pressed": 100,
    "aria-current": 90,
    "aria-selected": 85,
    "aria-checked": 80,
    "data-state": 75,
    # descriptive keywords
    "data-attribute": 60,
    "class-name": 45,
    "label-text": 40,
}
UNRECOGNIZED_WEIGHT = 10
INHERITED_DEPTH_PENALTY = 15
MAX_ANCESTOR_DEPTH = 4

STATE_VALUE_ATTRIBUTES = ("data-state", "data-status")
ACTIVE_STATE_VALUES = {"active", "selected", "current", "checked", "on", "pressed", "reserved"}

ACTIVE_KEYWORD_PATTERN = re.compile(
    r"(?<![a-z])(selected|current|active|reserved|booked|chosen)(?![a-z])|予約中|選択中|現在",
    re.IGNORECASE,
)
FALSY_VALUES = {"", "false", "0", "no", "off", "null", "undefined"}


@dataclass(frozen=True)
class RawAncestor:
    tag: str
    attrs: Dict[str, str] = field(default_factory=dict)
    table_index: Optional[int] = None


@dataclass(frozen=True)
class RawControl:
    """One interactive control as captured from the page."""

    node_id: str
    tag: str
    text: str = ""
    attrs: Dict[str, str] = field(default_factory=dict)
    html: str = ""
    image_alts: Sequence[str] = ()
    ancestors: Sequence[RawAncestor] = ()
    handle: object = field(default=None, compare=False, repr=False)

    @classmethod
    def from_snapshot(cls, record: dict, handle: object = None) -> "RawControl":
        ancestors = tuple(
            RawAncestor(
                tag=str(item.get("tag", "")).lower(),
                attrs={str(k): str(v) for k, v in (item.get("attrs") or {}).items()},
                table_index=item.get("tableIndex"),
            )
            for item in record.get("ancestors") or []
        )
        return cls(
            node_id=str(record.get("nodeId", "")),
            tag=str(record.get("tag", "")).lower(),
            text=str(record.get("text") or ""),
            attrs={str(k): str(v) for k, v in (record.get("attrs") or {}).items()},
            html=str(record.get("html") or ""),
            image_alts=tuple(str(alt) for alt in record.get("imageAlts") or []),
            ancestors=ancestors,
            handle=handle,
        )

    @property
    def class_tokens(self) -> List[str]:
        return self.attrs.get("class", "").split()


@dataclass(frozen=True)
class Signal:
    kind: SignalKind
    source: str
    depth: int = 0
    detail: str = ""

    @property
    def strength(self) -> int:
        return signal_weight(self)


def signal_weight(signal: Signal) -> int:
    base = SIGNAL_WEIGHTS.get(signal.source, UNRECOGNIZED_WEIGHT)
    if signal.depth <= 0:
        return base
    return max(UNRECOGNIZED_WEIGHT, base - INHERITED_DEPTH_PENALTY * signal.depth)


def score_signals(signals: Iterable[Signal]) -> int:
    return sum(signal_weight(signal) for signal in signals)


def _is_truthy(value: str) -> bool:
    return value.strip().lower() not in FALSY_VALUES


def _state_signals(attrs: Dict[str, str]) -> List[Signal]:
    found: List[Signal] = []
    if attrs.get("aria-pressed", "").lower() == "true":
        found.append(Signal(SignalKind.STATE_ATTRIBUTE, "aria-pressed", detail="aria-pressed=true"))
    current = attrs.get("aria-current")
    if current is not None and _is_truthy(current):
        found.append(Signal(SignalKind.STATE_ATTRIBUTE, "aria-current", detail=f"aria-current={current}"))
    if attrs.get("aria-selected", "").lower() == "true":
        found.append(Signal(SignalKind.STATE_ATTRIBUTE, "aria-selected", detail="aria-selected=true"))
    if attrs.get("aria-checked", "").lower() == "true":
        found.append(Signal(SignalKind.STATE_ATTRIBUTE, "aria-checked", detail="aria-checked=true"))
    for name in STATE_VALUE_ATTRIBUTES:
        value = attrs.get(name, "").strip().lower()
        if value in ACTIVE_STATE_VALUES:
            found.append(Signal(SignalKind.STATE_ATTRIBUTE, "data-state", detail=f"{name}={value}"))
            break
    return found


def _keyword_signals(attrs: Dict[str, str], texts: Sequence[str]) -> List[Signal]:
    found: List[Signal] = []

    for name, value in attrs.items():
        if not name.startswith("data-") or name in STATE_VALUE_ATTRIBUTES:
            continue
        name_hit = ACTIVE_KEYWORD_PATTERN.search(name[5:]) and _is_truthy(value)
        if name_hit or ACTIVE_KEYWORD_PATTERN.search(value):
            found.append(Signal(SignalKind.KEYWORD_MATCH, "data-attribute", detail=f"{name}={value}"))
            break

    for token in attrs.get("class", "").split():
        if ACTIVE_KEYWORD_PATTERN.search(token):
            found.append(Signal(SignalKind.KEYWORD_MATCH, "class-name", detail=token))
            break

    for text in texts:
        match = ACTIVE_KEYWORD_PATTERN.search(text or "")
        if match:
            found.append(Signal(SignalKind.KEYWORD_MATCH, "label-text", detail=match.group(0)))
            break

    for name, value in attrs.items():
        if name.startswith(("data-", "aria-")) or name in ("class", "id", "style"):
            continue
        if ACTIVE_KEYWORD_PATTERN.fullmatch(name) and _is_truthy(value or "true"):
            found.append(Signal(SignalKind.KEYWORD_MATCH, "attribute-name", detail=name))
            break

    return found


def _direct_signals(attrs: Dict[str, str], texts: Sequence[str]) -> List[Signal]:
    return _state_signals(attrs) + _keyword_signals(attrs, texts)


def collect_signals(control: RawControl) -> List[Signal]:
    texts = [control.attrs.get("aria-label", ""), control.attrs.get("title", ""), control.text]
    texts.extend(control.image_alts)
    signals = _direct_signals(control.attrs, texts)
    if signals:
        return signals

    for depth, ancestor in enumerate(control.ancestors[:MAX_ANCESTOR_DEPTH], start=1):
        ancestor_texts = [ancestor.attrs.get("aria-label", ""), ancestor.attrs.get("title", "")]
        inherited = _direct_signals(ancestor.attrs, ancestor_texts)
        if inherited:
            return [
                Signal(SignalKind.INHERITED, signal.source, depth=depth, detail=signal.detail)
                for signal in inherited
            ]
    return []
