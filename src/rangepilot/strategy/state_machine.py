"""
Strategy instance status transitions.

State Diagram:

    INITIALIZED ──> PREPARING ──> RUNNING ──> MONITORING ──> EXITING ──> EXITED
                        │            │         │    │                       │
                        └────────────┴──> ERROR│    └──> PAUSED             │
                                               └──> COMPLETED               │
                                                                            │
    EXITED / COMPLETED / ERROR ──> PREPARING (restart) or INITIALIZED (reset)

Every status change goes through transition(); nothing assigns
instance.status directly.
"""

from __future__ import annotations

from typing import Dict, FrozenSet

from rangepilot.core.errors import InvalidTransitionError
from rangepilot.strategy.models import StrategyInstance, StrategyStatus

S = StrategyStatus

VALID_TRANSITIONS: Dict[StrategyStatus, FrozenSet[StrategyStatus]] = {
    S.INITIALIZED: frozenset({S.PREPARING, S.COMPLETED, S.ERROR}),
    S.PREPARING: frozenset({S.RUNNING, S.ERROR}),
    S.RUNNING: frozenset({S.MONITORING, S.ERROR}),
    S.MONITORING: frozenset({S.EXITING, S.PAUSED, S.COMPLETED, S.ERROR}),
    S.PAUSED: frozenset({S.PREPARING, S.MONITORING, S.EXITING, S.COMPLETED, S.ERROR}),
    S.EXITING: frozenset({S.EXITED, S.ERROR}),
    # terminal: restart, reset, or unwind a position left open
    S.EXITED: frozenset({S.PREPARING, S.INITIALIZED}),
    S.COMPLETED: frozenset({S.PREPARING, S.INITIALIZED, S.EXITING}),
    S.ERROR: frozenset({S.PREPARING, S.INITIALIZED, S.EXITING}),
}


def can_transition(current: StrategyStatus, target: StrategyStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, frozenset())


def transition(instance: StrategyInstance, target: StrategyStatus) -> StrategyStatus:
    """
    Move instance to target. Returns the previous status.

    Raises:
        InvalidTransitionError: target is not reachable from the current status
    """
    previous = instance.status
    if not can_transition(previous, target):
        raise InvalidTransitionError(
            f"{instance.instance_id}: cannot go from {previous.value} to {target.value}"
        )
    instance.status = target
    return previous
