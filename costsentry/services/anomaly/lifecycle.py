"""Resolution status state machine for anomaly events."""

from types import MappingProxyType
from typing import FrozenSet, Mapping

from costsentry.core.exceptions import InvalidStatusTransitionError
from costsentry.schemas.anomalies import ResolutionStatus

TRANSITIONS: Mapping[ResolutionStatus, FrozenSet[ResolutionStatus]] = MappingProxyType({
    ResolutionStatus.OPEN: frozenset({
        ResolutionStatus.ACKNOWLEDGED,
        ResolutionStatus.INVESTIGATING,
        ResolutionStatus.FALSE_POSITIVE,
    }),
    ResolutionStatus.ACKNOWLEDGED: frozenset({ResolutionStatus.INVESTIGATING, ResolutionStatus.RESOLVED}),
    ResolutionStatus.INVESTIGATING: frozenset({ResolutionStatus.RESOLVED}),
    ResolutionStatus.RESOLVED: frozenset(),
    ResolutionStatus.FALSE_POSITIVE: frozenset(),
})


def is_terminal(status: ResolutionStatus) -> bool:
    return not TRANSITIONS[status]


def transition(current: ResolutionStatus, requested: ResolutionStatus) -> ResolutionStatus:
    current = ResolutionStatus(current)
    requested = ResolutionStatus(requested)
    if requested not in TRANSITIONS[current]:
        raise InvalidStatusTransitionError(current.value, requested.value)
    return requested
