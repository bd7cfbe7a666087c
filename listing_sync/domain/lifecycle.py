from __future__ import annotations

from enum import StrEnum

from listing_sync.domain.models import ItemOutcome, QueueState


class ItemState(StrEnum):
    # Derived from channel membership plus the last settled outcome; never stored as one column.
    UNKNOWN = "unknown"
    PENDING = "pending"
    CLAIMED = "claimed"
    MISSING_CANDIDATE = "missing_candidate"
    PROCESSED = "processed"
    VERIFIED_INACTIVE = "verified_inactive"
    DROPPED = "dropped"
    PERMANENTLY_FAILED = "permanently_failed"


ALLOWED_TRANSITIONS: dict[ItemState, frozenset[ItemState]] = {
    ItemState.UNKNOWN: frozenset({ItemState.PENDING}),
    ItemState.PENDING: frozenset({ItemState.CLAIMED}),
    ItemState.CLAIMED: frozenset(
        {
            ItemState.PROCESSED,
            ItemState.PENDING,
            ItemState.DROPPED,
            ItemState.PERMANENTLY_FAILED,
        }
    ),
    ItemState.PROCESSED: frozenset(
        {
            ItemState.PENDING,
            ItemState.MISSING_CANDIDATE,
            ItemState.VERIFIED_INACTIVE,
        }
    ),
    ItemState.MISSING_CANDIDATE: frozenset({ItemState.PROCESSED, ItemState.VERIFIED_INACTIVE}),
    ItemState.VERIFIED_INACTIVE: frozenset({ItemState.PROCESSED, ItemState.PENDING}),
    ItemState.DROPPED: frozenset({ItemState.PENDING}),
    ItemState.PERMANENTLY_FAILED: frozenset({ItemState.PENDING}),
}

_CHANNEL_STATES: dict[QueueState, ItemState] = {
    QueueState.PENDING: ItemState.PENDING,
    QueueState.IN_FLIGHT: ItemState.CLAIMED,
    QueueState.MISSING: ItemState.MISSING_CANDIDATE,
}

_OUTCOME_STATES: dict[ItemOutcome, ItemState] = {
    ItemOutcome.PROCESSED: ItemState.PROCESSED,
    ItemOutcome.INACTIVE: ItemState.VERIFIED_INACTIVE,
    ItemOutcome.DROPPED: ItemState.DROPPED,
    ItemOutcome.FAILED: ItemState.PERMANENTLY_FAILED,
}


def derive_item_state(queue_state: QueueState | str | None, outcome: ItemOutcome | str | None) -> ItemState:
    if queue_state is not None:
        return _CHANNEL_STATES[QueueState(queue_state)]
    if outcome is not None:
        return _OUTCOME_STATES[ItemOutcome(outcome)]
    return ItemState.UNKNOWN


def can_transition(from_state: ItemState, to_state: ItemState) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, frozenset())
