"""
Transaction status lifecycle.

    pending ──> succeeded ──> refunded
       │
       ├──> failed
       └──> cancelled

Every status other than ``pending`` is terminal. The only move out of a
terminal status is ``succeeded -> refunded``. Re-applying the status a
record already holds is a no-op, which is what makes late or duplicated
provider callbacks harmless.
"""
from enum import Enum
from typing import Dict, FrozenSet


class TransactionStatus(str, Enum):
    """Lifecycle status of one payment attempt."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class TransitionDecision(Enum):
    """What the store should do with a requested status change."""

    APPLY = "apply"
    NOOP = "noop"  # same status re-applied
    REJECT = "reject"  # illegal move out of a terminal status


TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {
        TransactionStatus.SUCCEEDED,
        TransactionStatus.FAILED,
        TransactionStatus.REFUNDED,
        TransactionStatus.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {
            TransactionStatus.SUCCEEDED,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
        }
    ),
    TransactionStatus.SUCCEEDED: frozenset({TransactionStatus.REFUNDED}),
    TransactionStatus.FAILED: frozenset(),
    TransactionStatus.REFUNDED: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}


def is_terminal(status: TransactionStatus | str) -> bool:
    """Return True if no provider outcome can move the status any more (except refund)."""
    return TransactionStatus(status) in TERMINAL_STATUSES


def can_transition(current: TransactionStatus | str, target: TransactionStatus | str) -> bool:
    """Return True if ``current -> target`` is a legal lifecycle move."""
    return TransactionStatus(target) in ALLOWED_TRANSITIONS[TransactionStatus(current)]


def classify_transition(
    current: TransactionStatus | str, target: TransactionStatus | str
) -> TransitionDecision:
    """
    Decide how a requested status change is handled.

    Args:
        current: Status currently stored
        target: Status requested by a trigger

    Returns:
        TransitionDecision: APPLY, NOOP or REJECT
    """
    current = TransactionStatus(current)
    target = TransactionStatus(target)

    if current == target:
        return TransitionDecision.NOOP
    if can_transition(current, target):
        return TransitionDecision.APPLY
    return TransitionDecision.REJECT
