# Overview: Service-layer operations for order numbering; allocates ORD-YYYYMMDD-NNNN atomically.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import OrderSequence
from ..time_utils import date_key as _date_key


ORDER_PREFIX = "ORD"
ORDER_NUMBER_PAD = 4


class SequenceError(Exception):
    """Raised when an order number cannot be allocated."""
    pass


def _bump(key: str) -> int | None:
    stmt = (
        update(OrderSequence)
        .where(OrderSequence.date_key == key)
        .values(next_number=OrderSequence.next_number + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    if not result.rowcount:
        return None
    current = (
        db.session.query(OrderSequence.next_number)
        .filter_by(date_key=key)
        .scalar()
    )
    return current - 1


def next_order_number(*, date_key: str | None = None) -> str:
    """
    Atomically allocate the next order number for a day.

    The counter row is bumped with a single UPDATE, so two checkouts on the
    same day can never read the same value. The first order of the day
    inserts the row; losing that insert race falls back to the UPDATE.

    Runs inside the caller's transaction: the number is consumed only if the
    order commits.
    """
    key = date_key or _date_key()
    if len(key) != 8 or not key.isdigit():
        raise SequenceError(f"Invalid date key {key!r}")

    number = _bump(key)
    if number is None:
        try:
            with db.session.begin_nested():
                db.session.add(OrderSequence(date_key=key, next_number=2))
            number = 1
        except IntegrityError:
            number = _bump(key)
            if number is None:
                raise SequenceError(f"Could not allocate order number for {key}")

    return f"{ORDER_PREFIX}-{key}-{number:0{ORDER_NUMBER_PAD}d}"
