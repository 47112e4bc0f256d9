# transitions.py
import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from errors import ConflictError
from models import STATUS_TIMESTAMPS, Order, can_transition, utcnow

logger = logging.getLogger(__name__)


def transition_order(db: Session, order: Order, target: str, *guards, **values) -> None:
    """Move ``order`` to ``target`` with one conditional UPDATE.

    The UPDATE only matches while the row still has the status we read (plus
    any extra ``guards``), so of two concurrent writers exactly one wins and
    the other gets ConflictError. Runs inside the caller's transaction.
    """
    order_id = order.id
    current = order.order_status
    if not can_transition(current, target):
        raise ConflictError(
            f"Cannot move order from {current} to {target}",
            kind="invalid_transition",
        )

    if target in STATUS_TIMESTAMPS:
        values.setdefault(STATUS_TIMESTAMPS[target], utcnow())

    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.order_status == current, *guards)
        .values(order_status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount != 1:
        raise ConflictError("Order was updated by someone else, please refresh", kind="order_changed")

    # Reload from the row on next access
    db.expire(order)
    logger.info("Order %s: %s -> %s", order_id, current, target)
