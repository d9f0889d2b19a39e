from typing import Optional, Sequence

from slot_scanner import SlotCandidate


def select_candidate(
    candidates: Sequence[SlotCandidate], active: SlotCandidate
) -> Optional[SlotCandidate]:
    """Pick the selectable slot closest before ``active``.

    Only slots in the active slot's scope (calendar day or tab) are compared,
    unless no other slot shares that scope.
    """
    pool = [c for c in candidates if c is not active and c.scope_signature == active.scope_signature]
    if not pool:
        pool = list(candidates)

    earlier = [c for c in pool if c.selectable and c.minute_offset < active.minute_offset]
    if not earlier:
        return None
    return max(earlier, key=lambda c: c.minute_offset)
