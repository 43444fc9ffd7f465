"""Hold lifecycle edges.

    pending ──► held ──► released
                 │  └──► refunded
                 ▼
              disputed ──► released | refunded

released and refunded are terminal. The table is the single source of truth
for which prior statuses a conditional UPDATE may match.
"""

from src.kb_common.enums import HoldStatus, ReleaseTrigger

TERMINAL_STATES: frozenset[str] = frozenset({HoldStatus.RELEASED, HoldStatus.REFUNDED})

TRANSITIONS: dict[str, frozenset[str]] = {
    HoldStatus.PENDING: frozenset({HoldStatus.HELD}),
    HoldStatus.HELD: frozenset({HoldStatus.RELEASED, HoldStatus.REFUNDED, HoldStatus.DISPUTED}),
    HoldStatus.DISPUTED: frozenset({HoldStatus.RELEASED, HoldStatus.REFUNDED}),
    HoldStatus.RELEASED: frozenset(),
    HoldStatus.REFUNDED: frozenset(),
}

# Buyer confirmation and the sweep must never settle a hold under dispute
_HELD_ONLY_TRIGGERS = frozenset({ReleaseTrigger.BUYER_CONFIRMATION, ReleaseTrigger.AUTO_RELEASE})


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def prior_states(target: str) -> tuple[str, ...]:
    """All statuses with an edge into ``target``, in a stable order."""
    return tuple(
        s.value
        for s in (HoldStatus.PENDING, HoldStatus.HELD, HoldStatus.DISPUTED)
        if target in TRANSITIONS[s]
    )


def release_prior_states(trigger: str) -> tuple[str, ...]:
    if trigger in _HELD_ONLY_TRIGGERS:
        return (HoldStatus.HELD.value,)
    return prior_states(HoldStatus.RELEASED)


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES
