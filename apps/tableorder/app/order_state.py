"""
Order lifecycle.

    live --acknowledge--> recurring --settle--> past
                             ^                    |
                             +------reopen--------+

`past` is only entered through settlement. Deletion is not a transition and is
allowed from every status.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from .errors import InvalidTransition, Unauthorized

LIVE = "live"
RECURRING = "recurring"
PAST = "past"

STATUSES = (LIVE, RECURRING, PAST)

ACKNOWLEDGE = "acknowledge"
SETTLE = "settle"
REOPEN = "reopen"

TRANSITIONS: Dict[Tuple[str, str], str] = {
    (LIVE, RECURRING): ACKNOWLEDGE,
    (RECURRING, PAST): SETTLE,
    (PAST, RECURRING): REOPEN,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_owner(order, restaurant_id: int) -> None:
    if int(order.restaurant_id) != int(restaurant_id):
        raise Unauthorized()


def transition_for(current: str, target: str) -> Optional[str]:
    return TRANSITIONS.get((current, target))


def advance(order, target: str, restaurant_id: int, *, action: Optional[str] = None, now: Optional[datetime] = None):
    """
    Move `order` to `target`. When `action` is given the edge must also be the
    one that action owns, so acknowledging a past order fails even though
    past -> recurring exists as a reopen.
    """
    check_owner(order, restaurant_id)
    edge = transition_for(order.status, target)
    if edge is None or (action is not None and edge != action):
        raise InvalidTransition(order.status, target)
    if edge == SETTLE and action != SETTLE:
        # Only the settlement step may close an order.
        raise InvalidTransition(order.status, target)
    order.status = target
    order.updated_at = now or utcnow()
    return order
