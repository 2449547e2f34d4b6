"""
Trade State Machine
Pure transition table and role guards for the trade lifecycle.
Nothing in this module touches the database.
"""

from typing import Dict, FrozenSet, NamedTuple, Optional, Set, Union

from models import ActorRole, TradeEventType, TradeStatus


class Rejected(NamedTuple):
    """A refused transition and the reason for it"""
    reason: str


TERMINAL_STATES: FrozenSet[TradeStatus] = frozenset({TradeStatus.SETTLED, TradeStatus.CANCELLED})

# States in which escrow has been (or is being) funded; cancelling here moves money
FUNDED_STATES: FrozenSet[TradeStatus] = frozenset({
    TradeStatus.ESCROW_FUNDED,
    TradeStatus.SHIPPED,
    TradeStatus.DELIVERED,
    TradeStatus.DISPUTED,
    TradeStatus.RESOLVED,
})

DISPUTABLE_STATES: FrozenSet[TradeStatus] = frozenset({
    TradeStatus.ESCROW_FUNDED,
    TradeStatus.SHIPPED,
    TradeStatus.DELIVERED,
})

# Event -> {from_state: to_state}. CANCEL and RESUME are handled separately.
EVENT_TRANSITIONS: Dict[TradeEventType, Dict[TradeStatus, TradeStatus]] = {
    TradeEventType.MATCH: {TradeStatus.RFQ_CREATED: TradeStatus.MATCHED},
    TradeEventType.QUOTE: {TradeStatus.MATCHED: TradeStatus.QUOTED},
    TradeEventType.CONTRACT: {TradeStatus.QUOTED: TradeStatus.CONTRACTED},
    TradeEventType.FUND_ESCROW: {TradeStatus.CONTRACTED: TradeStatus.ESCROW_FUNDED},
    TradeEventType.SHIP: {TradeStatus.ESCROW_FUNDED: TradeStatus.SHIPPED},
    TradeEventType.DELIVER: {TradeStatus.SHIPPED: TradeStatus.DELIVERED},
    TradeEventType.DISPUTE: {state: TradeStatus.DISPUTED for state in DISPUTABLE_STATES},
    TradeEventType.RESOLVE_DISPUTE: {TradeStatus.DISPUTED: TradeStatus.RESOLVED},
    TradeEventType.SETTLE: {
        TradeStatus.DELIVERED: TradeStatus.SETTLED,
        TradeStatus.RESOLVED: TradeStatus.SETTLED,
    },
}

# Target state -> roles allowed to drive the trade into it
ROLE_GUARDS: Dict[TradeStatus, FrozenSet[ActorRole]] = {
    TradeStatus.MATCHED: frozenset({ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN}),
    TradeStatus.QUOTED: frozenset({ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN}),
    TradeStatus.CONTRACTED: frozenset({ActorRole.BUYER, ActorRole.ADMIN}),
    TradeStatus.ESCROW_FUNDED: frozenset({ActorRole.BUYER, ActorRole.ADMIN}),
    TradeStatus.SHIPPED: frozenset({ActorRole.SELLER, ActorRole.ADMIN}),
    TradeStatus.DELIVERED: frozenset({ActorRole.SELLER, ActorRole.ADMIN}),
    TradeStatus.DISPUTED: frozenset({ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN}),
    TradeStatus.RESOLVED: frozenset({ActorRole.ADMIN}),
    TradeStatus.SETTLED: frozenset({ActorRole.BUYER, ActorRole.ADMIN}),
    TradeStatus.CANCELLED: frozenset({ActorRole.BUYER, ActorRole.SELLER, ActorRole.ADMIN}),
}


def is_terminal(state: TradeStatus) -> bool:
    return state in TERMINAL_STATES


def apply_event(
    state: TradeStatus,
    event: TradeEventType,
    resume_to: Optional[TradeStatus] = None,
) -> Union[TradeStatus, Rejected]:
    """
    Compute the next state for an event: (state, event) -> state | Rejected.

    RESUME takes the trade from `resolved` back to the in-flight state it was
    disputed from (`resume_to`).
    """
    if is_terminal(state):
        return Rejected(f"trade is {state.value}; no further transitions")

    if event == TradeEventType.CANCEL:
        return TradeStatus.CANCELLED

    if event == TradeEventType.RESUME:
        if state != TradeStatus.RESOLVED:
            return Rejected(f"resume is only valid from resolved, not {state.value}")
        if resume_to not in DISPUTABLE_STATES:
            target = resume_to.value if resume_to else None
            return Rejected(f"cannot resume to {target}")
        return resume_to

    next_state = EVENT_TRANSITIONS.get(event, {}).get(state)
    if next_state is None:
        return Rejected(f"event {event.value} is not valid from {state.value}")
    return next_state


def check_role(current: TradeStatus, target: TradeStatus, role: ActorRole) -> Optional[Rejected]:
    """Return a rejection when `role` may not drive `current -> target`"""
    if role == ActorRole.SYSTEM:
        return None

    allowed = ROLE_GUARDS.get(target, frozenset())
    if role not in allowed:
        return Rejected(f"role {role.value} may not move a trade to {target.value}")

    if target == TradeStatus.CANCELLED and current in FUNDED_STATES and role != ActorRole.ADMIN:
        return Rejected("only an admin may cancel a trade after escrow funding")

    return None


def get_valid_events(state: TradeStatus) -> Set[TradeEventType]:
    """Events that have an edge out of `state` (ignoring role guards)"""
    if is_terminal(state):
        return set()
    events = {event for event, edges in EVENT_TRANSITIONS.items() if state in edges}
    events.add(TradeEventType.CANCEL)
    if state == TradeStatus.RESOLVED:
        events.add(TradeEventType.RESUME)
    return events
