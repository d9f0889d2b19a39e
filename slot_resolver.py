"""Decide which scanned slot is the reservation the user already holds."""

import logging
import random
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from slot_scanner import SlotCandidate

MIN_ACTIVE_SCORE = 30

SCOPE_MATCH_WEIGHT = 8
MINUTE_MATCH_WEIGHT = 4
LABEL_MATCH_WEIGHT = 2
TEXT_MATCH_WEIGHT = 1

DIAGNOSTIC_INTERVAL_RANGE = (15.0, 25.0)


@dataclass(frozen=True)
class ActiveSlotDescriptor:
    scope_signature: str
    minute_offset: int
    label: str
    display_text: str

    @classmethod
    def from_candidate(cls, candidate: SlotCandidate) -> "ActiveSlotDescriptor":
        return cls(
            scope_signature=candidate.scope_signature,
            minute_offset=candidate.minute_offset,
            label=candidate.raw_label,
            display_text=candidate.display_text,
        )


@dataclass(frozen=True)
class Resolution:
    active: Optional[SlotCandidate]
    used_fallback: bool = False

    @property
    def resolved(self) -> bool:
        return self.active is not None


def _normalize(value: str) -> str:
    return re.sub(r"\s+", "", value or "").lower()


def pick_confident(candidates: Sequence[SlotCandidate]) -> Optional[SlotCandidate]:
    """Return the top scorer when it clearly stands out, otherwise ``None``.

    The top score must reach :data:`MIN_ACTIVE_SCORE` and be strictly higher
    than the runner-up. A tie is inconclusive at any score.
    """
    if not candidates:
        return None
    ranked = sorted(candidates, key=lambda c: c.confidence_score, reverse=True)
    top = ranked[0]
    if top.confidence_score < MIN_ACTIVE_SCORE:
        return None
    if len(ranked) > 1 and ranked[1].confidence_score >= top.confidence_score:
        return None
    return top


def match_descriptor(candidate: SlotCandidate, remembered: ActiveSlotDescriptor) -> Tuple[int, int]:
    """Return ``(score, threshold)`` of a partial match against the remembered slot."""
    score = 0
    scope_hit = bool(remembered.scope_signature) and candidate.scope_signature == remembered.scope_signature
    minute_hit = candidate.minute_offset == remembered.minute_offset
    if scope_hit:
        score += SCOPE_MATCH_WEIGHT
    if minute_hit:
        score += MINUTE_MATCH_WEIGHT
    if remembered.label and _normalize(candidate.raw_label) == _normalize(remembered.label):
        score += LABEL_MATCH_WEIGHT
    if remembered.display_text and _normalize(candidate.display_text) == _normalize(remembered.display_text):
        score += TEXT_MATCH_WEIGHT

    if scope_hit:
        threshold = SCOPE_MATCH_WEIGHT
    elif minute_hit:
        threshold = MINUTE_MATCH_WEIGHT
    else:
        threshold = LABEL_MATCH_WEIGHT
    return score, threshold


def pick_remembered(
    candidates: Sequence[SlotCandidate], remembered: ActiveSlotDescriptor
) -> Optional[SlotCandidate]:
    scored = [(match_descriptor(candidate, remembered), candidate) for candidate in candidates]
    if not scored:
        return None
    scored.sort(key=lambda item: item[0][0], reverse=True)
    (best_score, threshold), best = scored[0]
    if best_score < threshold:
        return None
    if len(scored) > 1 and scored[1][0][0] == best_score:
        return None
    return best


class ActiveSlotResolver:
    """Owns the remembered descriptor for one page load."""

    def __init__(self, *, time_fn: Callable[[], float] = time.monotonic) -> None:
        self.remembered: Optional[ActiveSlotDescriptor] = None
        self._time_fn = time_fn
        self._next_diagnostic_at = 0.0

    def resolve(self, candidates: Sequence[SlotCandidate]) -> Resolution:
        active = pick_confident(candidates)
        used_fallback = False

        if active is None and self.remembered is not None:
            active = pick_remembered(candidates, self.remembered)
            used_fallback = active is not None

        if active is None:
            self._report_inconclusive(candidates)
            return Resolution(active=None)

        self.remembered = ActiveSlotDescriptor.from_candidate(active)
        if used_fallback:
            logging.info("Current reservation estimated from last known slot: %s", active.raw_label)
        else:
            logging.debug(
                "Current reservation identified: %s (score=%d)", active.raw_label, active.confidence_score
            )
        return Resolution(active=active, used_fallback=used_fallback)

    def _report_inconclusive(self, candidates: Sequence[SlotCandidate]) -> None:
        now = self._time_fn()
        if now < self._next_diagnostic_at:
            return
        self._next_diagnostic_at = now + random.uniform(*DIAGNOSTIC_INTERVAL_RANGE)
        top: List[str] = [
            f"{c.raw_label}={c.confidence_score}"
            for c in sorted(candidates, key=lambda c: c.confidence_score, reverse=True)[:3]
        ]
        logging.info(
            "Unable to identify the current reservation among %d slots (top scores: %s)",
            len(candidates),
            ", ".join(top) or "none",
        )
