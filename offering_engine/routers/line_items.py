"""
line_items.py — Order line-item lifecycle API

Endpoints for adding line items to an order, moving them through the
fulfillment lifecycle, bulk transitions and cancellation, and reading
their audit history.

Business Rules:
- Every transition carries expected_version; a stale version is a 409
  and the caller should refetch and retry
- Bulk endpoints are all-or-nothing; a 409 BatchError lists each
  failing line item
- The acting user comes from the X-Actor-Id header

Called by: main.py (router mount)
Depends on: services/line_item_lifecycle, services/audit_log
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_actor
from ..schemas.line_items import (
    AddLineItemsRequest,
    BatchResultOut,
    BulkTransitionRequest,
    CancelLineItemsRequest,
    LineItemChangeOut,
    LineItemOut,
    OrderLineItemsOut,
    OrderSummaryOut,
    TransitionRequest,
)
from ..services import audit_log, line_item_lifecycle

router = APIRouter(tags=["line-items"])


def _batch_out(batch_id, items) -> BatchResultOut:
    return BatchResultOut(
        batch_id=batch_id,
        line_items=[LineItemOut.model_validate(i) for i in items],
    )


# ── Orders ───────────────────────────────────────────────────────────


@router.post("/api/orders/{order_id}/line-items", response_model=BatchResultOut, status_code=201)
def add_line_items(
    order_id: UUID,
    body: AddLineItemsRequest,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Add line items to an order in draft. One batch, all or nothing."""
    items = [i.model_dump(exclude_none=True) for i in body.items]
    batch_id, created = line_item_lifecycle.add_line_items(
        db, order_id, items, actor=actor, reason=body.reason
    )
    return _batch_out(batch_id, created)


@router.get("/api/orders/{order_id}/line-items", response_model=OrderLineItemsOut)
def list_order_line_items(
    order_id: UUID,
    status: str | None = None,
    client_id: UUID | None = None,
    db: Session = Depends(get_db),
):
    items = line_item_lifecycle.list_line_items(db, order_id, status=status, client_id=client_id)
    return OrderLineItemsOut(
        order_id=order_id,
        line_items=[LineItemOut.model_validate(i) for i in items],
        summary=OrderSummaryOut(**line_item_lifecycle.order_summary(db, order_id)),
    )


@router.get("/api/orders/{order_id}/line-items/summary", response_model=OrderSummaryOut)
def order_line_item_summary(order_id: UUID, db: Session = Depends(get_db)):
    return line_item_lifecycle.order_summary(db, order_id)


# ── Line Items ───────────────────────────────────────────────────────


@router.get("/api/line-items/{line_item_id}", response_model=LineItemOut)
def get_line_item(line_item_id: UUID, db: Session = Depends(get_db)):
    return line_item_lifecycle.get_line_item(db, line_item_id)


@router.post("/api/line-items/{line_item_id}/transitions", response_model=LineItemOut)
def transition_line_item(
    line_item_id: UUID,
    body: TransitionRequest,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Apply one lifecycle action under an optimistic version check."""
    return line_item_lifecycle.transition_line_item(
        db,
        line_item_id,
        body.expected_version,
        body.action,
        body.payload,
        actor=actor,
        reason=body.reason,
    )


@router.get("/api/line-items/{line_item_id}/history", response_model=list[LineItemChangeOut])
def line_item_history(line_item_id: UUID, db: Session = Depends(get_db)):
    line_item_lifecycle.get_line_item(db, line_item_id)
    return audit_log.history(db, line_item_id)


# ── Bulk ─────────────────────────────────────────────────────────────


@router.post("/api/line-items/bulk-transition", response_model=BatchResultOut)
def bulk_transition(
    body: BulkTransitionRequest,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
):
    targets = [(t.line_item_id, t.expected_version) for t in body.targets]
    batch_id, items = line_item_lifecycle.bulk_transition(
        db, targets, body.action, body.payload, actor=actor, reason=body.reason
    )
    return _batch_out(batch_id, items)


@router.post("/api/line-items/cancel", response_model=BatchResultOut)
def cancel_line_items(
    body: CancelLineItemsRequest,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
):
    targets = [(t.line_item_id, t.expected_version) for t in body.targets]
    batch_id, items = line_item_lifecycle.cancel_line_items(
        db, targets, body.reason, actor=actor
    )
    return _batch_out(batch_id, items)


@router.get("/api/batches/{batch_id}/changes", response_model=list[LineItemChangeOut])
def batch_changes(batch_id: UUID, db: Session = Depends(get_db)):
    """Every change written by one bulk operation."""
    return audit_log.by_batch(db, batch_id)
