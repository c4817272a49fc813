"""
Notification status transition table.

Shared by the delivery dispatcher, the sync reconciler and the maintenance
reapers so that every writer walks the same state graph. Pairs that are not
listed are invalid; EXPIRED is terminal.
"""

from typing import Dict, FrozenSet, Union

from fieldnotify.src.models.notification import NotificationStatus


VALID_TRANSITIONS: Dict[NotificationStatus, FrozenSet[NotificationStatus]] = {
    NotificationStatus.PENDING: frozenset({
        NotificationStatus.SENT,
        NotificationStatus.FAILED,
        NotificationStatus.EXPIRED,
    }),
    NotificationStatus.SENT: frozenset({
        NotificationStatus.DELIVERED,
        NotificationStatus.READ,
        NotificationStatus.FAILED,
        NotificationStatus.EXPIRED,
    }),
    NotificationStatus.DELIVERED: frozenset({
        NotificationStatus.READ,
        NotificationStatus.ACKNOWLEDGED,
        NotificationStatus.EXPIRED,
    }),
    NotificationStatus.READ: frozenset({
        NotificationStatus.ACKNOWLEDGED,
        NotificationStatus.EXPIRED,
    }),
    NotificationStatus.ACKNOWLEDGED: frozenset({
        NotificationStatus.EXPIRED,
    }),
    # Retry
    NotificationStatus.FAILED: frozenset({
        NotificationStatus.SENT,
    }),
    NotificationStatus.EXPIRED: frozenset(),
}


def _coerce(status: Union[NotificationStatus, str]) -> NotificationStatus:
    return status if isinstance(status, NotificationStatus) else NotificationStatus(status)


def is_valid_transition(
    from_status: Union[NotificationStatus, str],
    to_status: Union[NotificationStatus, str],
) -> bool:
    """
    Check whether ``from_status -> to_status`` is an edge of the graph.

    Unknown status strings are never valid.
    """
    try:
        source = _coerce(from_status)
        target = _coerce(to_status)
    except ValueError:
        return False
    return target in VALID_TRANSITIONS.get(source, frozenset())


def is_terminal(status: Union[NotificationStatus, str]) -> bool:
    return not VALID_TRANSITIONS.get(_coerce(status))
