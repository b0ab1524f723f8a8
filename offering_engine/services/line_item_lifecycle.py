"""
line_item_lifecycle.py — Order line-item state machine

Drives a line item from draft to a terminal state. Every successful call
bumps the item's version by exactly one and writes exactly one change row
in the same commit.

Business Rules:
- draft → pending_selection → selected → approved → in_progress
  → delivered → completed
- Any non-terminal status → cancelled (reason required)
- completed → refunded | disputed (reason required)
- expected_version must equal the stored version, else ConflictError and
  nothing is written
- approved_price is copied from estimated_price on approval and never
  changes afterwards. Assignment is frozen once approved
- Changing the assigned domain or offering re-prices the item; a pricing
  failure is recorded in metadata and does not block the transition
- A domain without an offering is priced from the website's current
  price; the derived price is only noted in metadata
- Bulk operations share one batch_id and one commit: all or nothing

Called by: routers/line_items.py
Depends on: services/pricing_rules.py, services/offering_repository.py,
            services/audit_log.py
"""

import uuid
from datetime import datetime
from typing import Callable, NamedTuple

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from ..config import settings
from ..database import utcnow
from ..exceptions import (
    BatchError,
    ComputationError,
    ConflictError,
    EngineError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from ..models import (
    TERMINAL_STATUSES,
    ChangeType,
    ClientReviewStatus,
    FulfillmentStatus,
    OfferingRelationship,
    OrderLineItem,
    PublisherAcceptanceStatus,
)
from ..utils.money import is_minor_units
from ..utils.normalization import normalize_domain
from . import audit_log
from .offering_repository import (
    _as_uuid,
    find_website_by_domain,
    get_offering,
    get_publisher,
    get_website,
)
from .pricing_rules import PricingContext, price_offering

S = FulfillmentStatus

EDITABLE_STATUSES = (S.DRAFT, S.PENDING_SELECTION, S.SELECTED)
ASSIGNMENT_KEYS = (
    "assigned_domain",
    "assigned_domain_id",
    "assigned_offering_id",
    "assigned_publisher_id",
)
EDIT_KEYS = ("target_page_id", "target_page_url", "anchor_text", "display_order")


class Outcome(NamedTuple):
    change_type: ChangeType
    previous: dict
    new: dict


def _reason(reason, payload: dict) -> str | None:
    value = reason or payload.get("reason")
    return value.strip() if isinstance(value, str) and value.strip() else None


def _snapshot(item: OrderLineItem, *fields) -> dict:
    return {f: getattr(item, f) for f in fields}


# ── Pricing ──────────────────────────────────────────────────────────


def _reprice(db: Session, item: OrderLineItem) -> None:
    """Recompute wholesale/estimated price from the current assignment."""
    meta = dict(item.meta or {})
    meta.pop("pricingError", None)
    wholesale = None
    try:
        if item.assigned_offering_id is not None:
            offering = get_offering(db, item.assigned_offering_id)
            application = price_offering(db, offering, PricingContext(quantity=1))
            wholesale = application.final_price
            item.currency = offering.currency
            meta["pricingStrategy"] = "offering_rules"
            meta["appliedRules"] = application.applied_rules
            meta.pop("derivedPrice", None)
            meta["attribution"] = {
                "source": "assigned_offering",
                "offeringId": str(offering.id),
                "publisherId": str(offering.publisher_id),
            }
        elif item.assigned_domain_id is not None:
            website = get_website(db, item.assigned_domain_id)
            item.currency = website.currency
            # Current price is authoritative; derived price is shadow only
            if website.derived_price is not None:
                meta["derivedPrice"] = website.derived_price
            else:
                meta.pop("derivedPrice", None)
            if website.current_price is None:
                raise ComputationError(
                    f"No price available for {website.domain}",
                    website_id=str(website.id),
                )
            wholesale = website.current_price
            meta["pricingStrategy"] = "current_price"
            meta["attribution"] = {"source": "website_current"}
            meta.pop("appliedRules", None)
        else:
            for key in ("pricingStrategy", "appliedRules", "attribution", "derivedPrice"):
                meta.pop(key, None)
    except ComputationError as e:
        wholesale = None
        meta["pricingError"] = e.message
        logger.warning(f"Line item {item.id} left unpriced: {e.message}")

    item.wholesale_price = wholesale
    if wholesale is None:
        item.estimated_price = None
    else:
        item.estimated_price = wholesale + (item.service_fee or 0)
    item.meta = meta


# ── Assignment ───────────────────────────────────────────────────────


def _resolve_assignment(db: Session, item: OrderLineItem, payload: dict) -> dict:
    """Merge payload assignment keys over the item's current assignment and validate."""
    current = {
        "assigned_domain_id": item.assigned_domain_id,
        "assigned_offering_id": item.assigned_offering_id,
        "assigned_publisher_id": item.assigned_publisher_id,
    }
    if "assigned_domain_id" in payload:
        current["assigned_domain_id"] = (
            _as_uuid(payload["assigned_domain_id"], "Website")
            if payload["assigned_domain_id"] is not None
            else None
        )
    elif payload.get("assigned_domain"):
        website = find_website_by_domain(db, payload["assigned_domain"])
        if website is None:
            raw = payload["assigned_domain"]
            raise ValidationError("Unknown domain", domain=normalize_domain(raw) or raw)
        current["assigned_domain_id"] = website.id
    elif "assigned_domain" in payload:
        current["assigned_domain_id"] = None

    for key, label in (("assigned_offering_id", "Offering"), ("assigned_publisher_id", "Publisher")):
        if key in payload:
            current[key] = _as_uuid(payload[key], label) if payload[key] is not None else None

    website_id = current["assigned_domain_id"]
    offering_id = current["assigned_offering_id"]
    publisher_id = current["assigned_publisher_id"]

    website = get_website(db, website_id) if website_id is not None else None
    if offering_id is not None:
        if website is None:
            raise ValidationError("An offering can only be assigned together with its domain")
        offering = get_offering(db, offering_id)
        if not offering.is_active:
            raise ValidationError("Offering is inactive", offering_id=str(offering.id))
        linked = db.execute(
            select(OfferingRelationship.id).where(
                OfferingRelationship.website_id == website.id,
                OfferingRelationship.offering_id == offering.id,
                OfferingRelationship.is_active.is_(True),
            )
        ).first()
        if not linked:
            raise ValidationError(
                "Offering is not available on the assigned domain",
                offering_id=str(offering.id),
                domain=website.domain,
            )
        if publisher_id is None or (
            "assigned_offering_id" in payload and "assigned_publisher_id" not in payload
        ):
            publisher_id = offering.publisher_id
        elif publisher_id != offering.publisher_id:
            raise ValidationError(
                "Assigned publisher does not own the assigned offering",
                offering_id=str(offering.id),
            )
    if publisher_id is not None:
        get_publisher(db, publisher_id)

    return {
        "assigned_domain": website.domain if website else None,
        "assigned_domain_id": website_id,
        "assigned_offering_id": offering_id,
        "assigned_publisher_id": publisher_id,
    }


def _apply_assignment(db: Session, item: OrderLineItem, payload: dict, actor: str, now) -> bool:
    """Write a new assignment onto the item; returns True when pricing inputs changed."""
    resolved = _resolve_assignment(db, item, payload)
    pricing_changed = (
        resolved["assigned_domain_id"] != item.assigned_domain_id
        or resolved["assigned_offering_id"] != item.assigned_offering_id
    )
    for key, value in resolved.items():
        setattr(item, key, value)
    if item.assigned_domain_id is None:
        item.assigned_at = None
        item.assigned_by = None
    else:
        item.assigned_at = now
        item.assigned_by = actor
    if pricing_changed:
        _reprice(db, item)
    return pricing_changed


def _has_full_assignment(item: OrderLineItem) -> bool:
    return all(
        v is not None
        for v in (item.assigned_domain_id, item.assigned_offering_id, item.assigned_publisher_id)
    )


_ASSIGNMENT_FIELDS = ASSIGNMENT_KEYS + ("wholesale_price", "estimated_price")


# ── Action handlers ──────────────────────────────────────────────────
# Each handler validates first, then mutates, and returns the audit payload.


def _submit(db, item, payload, actor, reason, now) -> Outcome:
    if not (item.target_page_id or item.target_page_url):
        raise ValidationError("A target page is required before submitting")
    if not item.anchor_text:
        raise ValidationError("Anchor text is required before submitting")
    item.status = S.PENDING_SELECTION
    return Outcome(ChangeType.STATUS_CHANGED, {"status": S.DRAFT}, {"status": item.status})


def _assign(db, item, payload, actor, reason, now) -> Outcome:
    if not any(key in payload for key in ASSIGNMENT_KEYS):
        raise ValidationError("No assignment fields supplied")
    previous = _snapshot(item, *_ASSIGNMENT_FIELDS)
    resolved = _resolve_assignment(db, item, payload)
    if item.status == S.SELECTED and not all(
        resolved[k] is not None
        for k in ("assigned_domain_id", "assigned_offering_id", "assigned_publisher_id")
    ):
        raise ValidationError("A selected line item must keep a domain, offering and publisher")
    _apply_assignment(db, item, payload, actor, now)
    return Outcome(
        ChangeType.ASSIGNMENT_CHANGED, previous, _snapshot(item, *_ASSIGNMENT_FIELDS)
    )


def _select(db, item, payload, actor, reason, now) -> Outcome:
    previous = {"status": item.status, **_snapshot(item, *_ASSIGNMENT_FIELDS)}
    if any(key in payload for key in ASSIGNMENT_KEYS):
        _apply_assignment(db, item, payload, actor, now)
    if not _has_full_assignment(item):
        raise ValidationError("Selecting requires an assigned domain, offering and publisher")
    item.status = S.SELECTED
    return Outcome(
        ChangeType.STATUS_CHANGED,
        previous,
        {"status": item.status, **_snapshot(item, *_ASSIGNMENT_FIELDS)},
    )


def _review(db, item, payload, actor, reason, now) -> Outcome:
    raw = payload.get("client_review_status")
    try:
        review = ClientReviewStatus(raw)
    except ValueError as e:
        raise ValidationError("client_review_status is required", value=raw) from e
    previous = _snapshot(item, "client_review_status", "client_review_notes")
    item.client_review_status = review
    item.client_review_notes = payload.get("notes", item.client_review_notes)
    return Outcome(
        ChangeType.MODIFIED, previous, _snapshot(item, "client_review_status", "client_review_notes")
    )


def _approve(db, item, payload, actor, reason, now) -> Outcome:
    if item.approved_price is not None:
        raise PolicyViolationError(
            "Approved price is already set; cancel and recreate to change it"
        )
    if item.estimated_price is None:
        raise ValidationError("Cannot approve a line item without an estimated price")
    if item.client_review_status in (ClientReviewStatus.REJECTED, ClientReviewStatus.CHANGE_REQUESTED):
        raise PolicyViolationError(
            f"Cannot approve while client review is {item.client_review_status.value}"
        )
    item.status = S.APPROVED
    item.approved_price = item.estimated_price
    item.approved_at = now
    item.approved_by = actor
    item.client_review_status = ClientReviewStatus.APPROVED
    return Outcome(
        ChangeType.STATUS_CHANGED,
        {"status": S.SELECTED},
        {"status": item.status, "approved_price": item.approved_price},
    )


def _publisher_accept(db, item, payload, actor, reason, now) -> Outcome:
    previous = _snapshot(item, "publisher_status", "publisher_accepted_at")
    item.publisher_status = PublisherAcceptanceStatus.ACCEPTED
    item.publisher_accepted_at = _timestamp(payload.get("accepted_at"), now)
    return Outcome(ChangeType.MODIFIED, previous, _snapshot(item, "publisher_status", "publisher_accepted_at"))


def _publisher_reject(db, item, payload, actor, reason, now) -> Outcome:
    previous = _snapshot(item, "publisher_status", "publisher_accepted_at")
    item.publisher_status = PublisherAcceptanceStatus.REJECTED
    item.publisher_accepted_at = None
    return Outcome(ChangeType.MODIFIED, previous, _snapshot(item, "publisher_status", "publisher_accepted_at"))


def _start(db, item, payload, actor, reason, now) -> Outcome:
    if (
        item.publisher_status != PublisherAcceptanceStatus.ACCEPTED
        or item.publisher_accepted_at is None
    ):
        raise ValidationError("Work cannot start before the publisher has accepted")
    item.status = S.IN_PROGRESS
    return Outcome(ChangeType.STATUS_CHANGED, {"status": S.APPROVED}, {"status": item.status})


def _deliver(db, item, payload, actor, reason, now) -> Outcome:
    url = str(payload.get("delivered_url") or "").strip()
    if not url.lower().startswith(("http://", "https://")):
        raise ValidationError("A published http(s) URL is required to deliver")
    item.status = S.DELIVERED
    item.delivered_url = url
    item.delivered_at = _timestamp(payload.get("delivered_at"), now)
    return Outcome(
        ChangeType.STATUS_CHANGED,
        {"status": S.IN_PROGRESS},
        {"status": item.status, "delivered_url": url, "delivered_at": item.delivered_at},
    )


def _complete(db, item, payload, actor, reason, now) -> Outcome:
    final = payload.get("final_price", item.approved_price)
    if not is_minor_units(final):
        raise ValidationError("Final price must be a non-negative integer in minor units", value=final)
    item.status = S.COMPLETED
    item.final_price = final
    item.completed_at = now
    return Outcome(
        ChangeType.STATUS_CHANGED,
        {"status": S.DELIVERED},
        {"status": item.status, "final_price": final},
    )


def _cancel(db, item, payload, actor, reason, now) -> Outcome:
    why = _reason(reason, payload)
    if not why:
        raise ValidationError("A cancellation reason is required")
    previous = {"status": item.status}
    item.status = S.CANCELLED
    item.cancelled_at = now
    item.cancellation_reason = why
    return Outcome(ChangeType.CANCELLED, previous, {"status": item.status})


def _exception_handler(target: FulfillmentStatus):
    def handler(db, item, payload, actor, reason, now) -> Outcome:
        why = _reason(reason, payload)
        if not why:
            raise ValidationError(f"A reason is required to mark a line item {target.value}")
        item.status = target
        item.exception_reason = why
        return Outcome(ChangeType.STATUS_CHANGED, {"status": S.COMPLETED}, {"status": target})

    return handler


def _edit(db, item, payload, actor, reason, now) -> Outcome:
    changes = {k: payload[k] for k in EDIT_KEYS if k in payload}
    if not changes:
        raise ValidationError("Nothing to edit", allowed=list(EDIT_KEYS))
    if "target_page_id" in changes and changes["target_page_id"] is not None:
        changes["target_page_id"] = _as_uuid(changes["target_page_id"], "Target page")
    if "display_order" in changes and not is_minor_units(changes["display_order"]):
        raise ValidationError("display_order must be a non-negative integer")
    if item.status != S.DRAFT:
        # Past draft the item has been submitted, so both must stay set
        page = changes.get("target_page_id", item.target_page_id) or changes.get(
            "target_page_url", item.target_page_url
        )
        if not page or not changes.get("anchor_text", item.anchor_text):
            raise ValidationError("Target page and anchor text cannot be cleared after submission")
    previous = _snapshot(item, *changes)
    for key, value in changes.items():
        setattr(item, key, value)
    return Outcome(ChangeType.MODIFIED, previous, _snapshot(item, *changes))


def _annotate(db, item, payload, actor, reason, now) -> Outcome:
    notes = payload.get("metadata")
    if not isinstance(notes, dict) or not notes:
        raise ValidationError("metadata must be a non-empty object")
    previous = {k: (item.meta or {}).get(k) for k in notes}
    item.meta = {**(item.meta or {}), **notes}
    return Outcome(ChangeType.ANNOTATED, previous, notes)


def _timestamp(value, default):
    if value is None:
        return default
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError("Timestamps must be ISO-8601", value=value) from e


class Transition(NamedTuple):
    sources: tuple
    handler: Callable


NON_TERMINAL = tuple(s for s in FulfillmentStatus if s not in TERMINAL_STATUSES)

TRANSITIONS: dict[str, Transition] = {
    "submit": Transition((S.DRAFT,), _submit),
    "assign": Transition(EDITABLE_STATUSES, _assign),
    "select": Transition((S.PENDING_SELECTION,), _select),
    "review": Transition((S.SELECTED,), _review),
    "approve": Transition((S.SELECTED,), _approve),
    "publisher_accept": Transition((S.APPROVED,), _publisher_accept),
    "publisher_reject": Transition((S.APPROVED,), _publisher_reject),
    "start": Transition((S.APPROVED,), _start),
    "deliver": Transition((S.IN_PROGRESS,), _deliver),
    "complete": Transition((S.DELIVERED,), _complete),
    "cancel": Transition(NON_TERMINAL, _cancel),
    "refund": Transition((S.COMPLETED,), _exception_handler(S.REFUNDED)),
    "dispute": Transition((S.COMPLETED,), _exception_handler(S.DISPUTED)),
    "edit": Transition(EDITABLE_STATUSES, _edit),
    "annotate": Transition(tuple(FulfillmentStatus), _annotate),
}


# ── Transition core ──────────────────────────────────────────────────


def _apply_transition(
    db: Session,
    item: OrderLineItem,
    expected_version,
    action: str,
    payload: dict | None,
    actor: str,
    reason: str | None,
    batch_id: uuid.UUID | None,
) -> None:
    """Validate and stage one transition. Flushes nothing, commits nothing."""
    # Version first: a stale caller always gets ConflictError
    if not isinstance(expected_version, int) or isinstance(expected_version, bool):
        raise ValidationError("expected_version must be an integer")
    if item.version != expected_version:
        raise ConflictError(
            "Line item has changed since it was read; refetch and retry",
            line_item_id=str(item.id),
            expected_version=expected_version,
            current_version=item.version,
        )
    transition = TRANSITIONS.get(action)
    if transition is None:
        raise ValidationError(
            f"Unknown action: {action}", allowed=sorted(TRANSITIONS)
        )
    if item.status not in transition.sources:
        raise PolicyViolationError(
            f"Cannot {action} line item in status: {item.status.value}",
            line_item_id=str(item.id),
        )
    if payload is not None and not isinstance(payload, dict):
        raise ValidationError("payload must be an object")
    now = utcnow()
    outcome = transition.handler(db, item, payload or {}, actor, reason, now)
    item.modified_at = now
    item.modified_by = actor
    audit_log.append_change(
        db,
        line_item_id=item.id,
        order_id=item.order_id,
        change_type=outcome.change_type,
        previous_value=outcome.previous,
        new_value=outcome.new,
        actor=actor,
        reason=_reason(reason, payload or {}),
        batch_id=batch_id,
    )


def _stale(item_ids) -> ConflictError:
    return ConflictError(
        "Line item was modified concurrently; refetch and retry",
        line_item_ids=[str(i) for i in item_ids],
    )


def transition_line_item(
    db: Session,
    line_item_id,
    expected_version: int,
    action: str,
    payload: dict | None = None,
    *,
    actor: str,
    reason: str | None = None,
    batch_id: uuid.UUID | None = None,
) -> OrderLineItem:
    """Apply one action to one line item under an optimistic version check."""
    item = get_line_item(db, line_item_id)
    try:
        _apply_transition(db, item, expected_version, action, payload, actor, reason, batch_id)
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise _stale([item.id]) from e
    except EngineError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Line item {item.id}: {action} failed to commit: {e}")
        raise
    logger.info(f"Line item {item.id}: {action} → {item.status.value} (v{item.version}) by {actor}")
    return item


# ── Bulk operations ──────────────────────────────────────────────────


def _check_batch_size(count: int) -> None:
    if count == 0:
        raise ValidationError("No line items supplied")
    if count > settings.bulk_max_items:
        raise ValidationError(
            f"At most {settings.bulk_max_items} line items per batch", count=count
        )


def bulk_transition(
    db: Session,
    targets: list[tuple],
    action: str,
    payload: dict | None = None,
    *,
    actor: str,
    reason: str | None = None,
) -> tuple[uuid.UUID, list[OrderLineItem]]:
    """Apply the same action to many line items in one transaction.

    targets is [(line_item_id, expected_version), ...]. Either every item
    transitions and is audited under one batch_id, or none does and
    BatchError lists each failing item.
    """
    _check_batch_size(len(targets))
    ids = [str(line_item_id) for line_item_id, _ in targets]
    if len(set(ids)) != len(ids):
        raise ValidationError("Each line item may appear only once per batch")

    batch_id = uuid.uuid4()
    items, failures = [], []
    for line_item_id, expected_version in targets:
        try:
            item = get_line_item(db, line_item_id)
            _apply_transition(db, item, expected_version, action, payload, actor, reason, batch_id)
            items.append(item)
        except EngineError as e:
            failures.append(
                {
                    "line_item_id": str(line_item_id),
                    "error": e.message,
                    "error_type": type(e).__name__,
                }
            )

    if failures:
        db.rollback()
        logger.warning(
            f"Bulk {action} rolled back: {len(failures)}/{len(targets)} line items failed"
        )
        raise BatchError(
            f"Bulk {action} failed for {len(failures)} of {len(targets)} line items",
            failures,
            batch_id=str(batch_id),
        )
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise _stale([i.id for i in items]) from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Bulk {action} failed to commit (batch {batch_id}): {e}")
        raise
    logger.info(f"Bulk {action}: {len(items)} line items (batch {batch_id}) by {actor}")
    return batch_id, items


def cancel_line_items(
    db: Session,
    targets: list[tuple],
    reason: str,
    *,
    actor: str,
) -> tuple[uuid.UUID, list[OrderLineItem]]:
    return bulk_transition(db, targets, "cancel", actor=actor, reason=reason)


_CREATE_FIELDS = {
    "client_id",
    "target_page_id",
    "target_page_url",
    "anchor_text",
    "assigned_domain",
    "assigned_domain_id",
    "metadata",
}


def _build_line_item(db: Session, order_id, spec: dict, actor: str, display_order: int, now):
    unknown = set(spec) - _CREATE_FIELDS
    if unknown:
        raise ValidationError("Unknown line item fields", fields=sorted(unknown))
    if not spec.get("client_id"):
        raise ValidationError("client_id is required")
    metadata = spec.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise ValidationError("metadata must be an object")

    item = OrderLineItem(
        id=uuid.uuid4(),
        order_id=order_id,
        client_id=_as_uuid(spec["client_id"], "Client"),
        target_page_id=(
            _as_uuid(spec["target_page_id"], "Target page") if spec.get("target_page_id") else None
        ),
        target_page_url=spec.get("target_page_url"),
        anchor_text=spec.get("anchor_text"),
        status=S.DRAFT,
        publisher_status=PublisherAcceptanceStatus.PENDING,
        client_review_status=ClientReviewStatus.PENDING,
        service_fee=settings.service_fee_cents,
        currency=settings.default_currency,
        meta={"inclusionStatus": "included", **metadata},
        display_order=display_order,
        created_at=now,
        created_by=actor,
    )
    if spec.get("assigned_domain_id") or spec.get("assigned_domain"):
        domain_payload = {
            k: spec[k] for k in ("assigned_domain", "assigned_domain_id") if spec.get(k)
        }
        _apply_assignment(db, item, domain_payload, actor, now)
    return item


def add_line_items(
    db: Session,
    order_id,
    items: list[dict],
    *,
    actor: str,
    reason: str | None = None,
) -> tuple[uuid.UUID, list[OrderLineItem]]:
    """Create line items in draft under one batch_id. All or nothing."""
    order_uuid = _as_uuid(order_id, "Order")
    _check_batch_size(len(items))

    last_order = db.execute(
        select(func.max(OrderLineItem.display_order)).where(OrderLineItem.order_id == order_uuid)
    ).scalar()
    next_order = -1 if last_order is None else last_order
    batch_id = uuid.uuid4()
    now = utcnow()

    created, failures = [], []
    for index, spec in enumerate(items):
        try:
            if not isinstance(spec, dict):
                raise ValidationError("Each line item must be an object")
            next_order += 1
            created.append(_build_line_item(db, order_uuid, spec, actor, next_order, now))
        except EngineError as e:
            failures.append({"index": index, "error": e.message, "error_type": type(e).__name__})

    if failures:
        db.rollback()
        raise BatchError(
            f"{len(failures)} of {len(items)} line items are invalid",
            failures,
            batch_id=str(batch_id),
        )

    try:
        db.add_all(created)
        db.flush()
        for item in created:
            audit_log.append_change(
                db,
                line_item_id=item.id,
                order_id=order_uuid,
                change_type=ChangeType.CREATED,
                previous_value=None,
                new_value={
                    "status": item.status,
                    "client_id": item.client_id,
                    "assigned_domain": item.assigned_domain,
                    "estimated_price": item.estimated_price,
                },
                actor=actor,
                reason=reason,
                batch_id=batch_id,
            )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Adding line items to order {order_uuid} failed to commit: {e}")
        raise
    logger.info(f"Added {len(created)} line items to order {order_uuid} (batch {batch_id})")
    return batch_id, created


# ── Queries ──────────────────────────────────────────────────────────


def get_line_item(db: Session, line_item_id) -> OrderLineItem:
    item = db.get(OrderLineItem, _as_uuid(line_item_id, "Line item"))
    if item is None:
        raise NotFoundError("Line item not found", id=str(line_item_id))
    return item


def list_line_items(db: Session, order_id, status=None, client_id=None) -> list[OrderLineItem]:
    stmt = select(OrderLineItem).where(OrderLineItem.order_id == _as_uuid(order_id, "Order"))
    if status is not None:
        try:
            stmt = stmt.where(OrderLineItem.status == FulfillmentStatus(status))
        except ValueError as e:
            raise ValidationError("Unknown status", status=status) from e
    if client_id is not None:
        stmt = stmt.where(OrderLineItem.client_id == _as_uuid(client_id, "Client"))
    stmt = stmt.order_by(OrderLineItem.display_order, OrderLineItem.created_at)
    return list(db.execute(stmt).scalars())


def order_summary(db: Session, order_id) -> dict:
    """Counts and value for one order; value uses approved price, else estimated."""
    items = list_line_items(db, order_id)
    by_status: dict[str, int] = {}
    for item in items:
        by_status[item.status.value] = by_status.get(item.status.value, 0) + 1
    return {
        "order_id": _as_uuid(order_id, "Order"),
        "total": len(items),
        "by_status": by_status,
        "total_value": sum(
            (i.approved_price if i.approved_price is not None else i.estimated_price) or 0
            for i in items
        ),
        "delivered_count": sum(
            1 for i in items if i.status in (S.DELIVERED, S.COMPLETED)
        ),
        "pending_count": sum(
            1 for i in items if i.status in (S.DRAFT, S.PENDING_SELECTION)
        ),
    }
