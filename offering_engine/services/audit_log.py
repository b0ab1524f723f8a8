"""
audit_log.py — Append-only change log for line items and websites

Business Rules:
- append_change is the only write path; it never commits, so the entry
  lands in the same transaction as the state change it records
- Rows are never updated or deleted (mapper listeners refuse both)
- Per line item (or website) changed_at never goes backwards, even when
  the clock does
- Values are stored as JSON: datetimes become ISO strings, UUIDs strings,
  enums their value

Called by: services/line_item_lifecycle.py, services/relationship_resolver.py,
           services/derived_pricing.py
Depends on: models.LineItemChange
"""

import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..database import utcnow
from ..models import ChangeType, LineItemChange


def _json_safe(value):
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (uuid.UUID, Decimal)):
        return str(value)
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_json_safe(v) for v in value]
    return str(value)


def _latest_changed_at(db: Session, line_item_id, website_id) -> datetime | None:
    if line_item_id is not None:
        scope = LineItemChange.line_item_id == line_item_id
    elif website_id is not None:
        scope = LineItemChange.website_id == website_id
    else:
        return None
    return db.execute(select(func.max(LineItemChange.changed_at)).where(scope)).scalar()


def append_change(
    db: Session,
    line_item_id,
    order_id,
    change_type: ChangeType,
    previous_value,
    new_value,
    actor: str,
    reason: str | None = None,
    batch_id: uuid.UUID | None = None,
    website_id=None,
) -> LineItemChange:
    """Stage one audit row in the caller's transaction."""
    now = utcnow()
    latest = _latest_changed_at(db, line_item_id, website_id)
    if latest is not None and latest > now:
        now = latest

    entry = LineItemChange(
        line_item_id=line_item_id,
        order_id=order_id,
        website_id=website_id,
        change_type=ChangeType(change_type),
        previous_value=_json_safe(previous_value),
        new_value=_json_safe(new_value),
        changed_by=actor,
        change_reason=reason,
        batch_id=batch_id,
        changed_at=now,
    )
    db.add(entry)
    return entry


def history(db: Session, line_item_id) -> list[LineItemChange]:
    stmt = (
        select(LineItemChange)
        .where(LineItemChange.line_item_id == line_item_id)
        .order_by(LineItemChange.changed_at, LineItemChange.id)
    )
    return list(db.execute(stmt).scalars())


def by_batch(db: Session, batch_id) -> list[LineItemChange]:
    """Every change written by one bulk operation."""
    stmt = (
        select(LineItemChange)
        .where(LineItemChange.batch_id == batch_id)
        .order_by(LineItemChange.changed_at, LineItemChange.id)
    )
    return list(db.execute(stmt).scalars())


def website_history(db: Session, website_id) -> list[LineItemChange]:
    """Ownership resolutions and price promotions recorded against a website."""
    stmt = (
        select(LineItemChange)
        .where(
            LineItemChange.website_id == website_id,
            LineItemChange.line_item_id.is_(None),
        )
        .order_by(LineItemChange.changed_at, LineItemChange.id)
    )
    return list(db.execute(stmt).scalars())
