"""Order line items and their append-only change log."""

import uuid

from sqlalchemy import (
    JSON,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    event,
)

from ..database import UTCDateTime, utcnow
from ..exceptions import PolicyViolationError
from .base import Base
from .enums import (
    ChangeType,
    ClientReviewStatus,
    FulfillmentStatus,
    PublisherAcceptanceStatus,
    enum_column,
)


class OrderLineItem(Base):
    """One link placement inside an order.

    version is the optimistic lock: every UPDATE is issued with
    WHERE version = :old and bumps it by one.
    """

    __tablename__ = "order_line_items"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, nullable=False)
    client_id = Column(Uuid, nullable=False)

    target_page_id = Column(Uuid)
    target_page_url = Column(Text)
    anchor_text = Column(String(500))

    status = Column(
        enum_column(FulfillmentStatus), nullable=False, default=FulfillmentStatus.DRAFT
    )
    publisher_status = Column(
        enum_column(PublisherAcceptanceStatus, 20),
        nullable=False,
        default=PublisherAcceptanceStatus.PENDING,
    )
    client_review_status = Column(
        enum_column(ClientReviewStatus, 20),
        nullable=False,
        default=ClientReviewStatus.PENDING,
    )
    client_review_notes = Column(Text)

    # Assignment
    assigned_domain = Column(String(255))
    assigned_domain_id = Column(Uuid, ForeignKey("websites.id"))
    assigned_offering_id = Column(Uuid, ForeignKey("offerings.id"))
    assigned_publisher_id = Column(Uuid, ForeignKey("publishers.id"))
    assigned_at = Column(UTCDateTime)
    assigned_by = Column(String(100))

    # Price snapshots, minor units
    estimated_price = Column(Integer)
    approved_price = Column(Integer)
    wholesale_price = Column(Integer)
    final_price = Column(Integer)
    service_fee = Column(Integer)
    currency = Column(String(3), nullable=False, default="USD")

    # Fulfillment milestones
    approved_at = Column(UTCDateTime)
    approved_by = Column(String(100))
    publisher_accepted_at = Column(UTCDateTime)
    delivered_url = Column(Text)
    delivered_at = Column(UTCDateTime)
    completed_at = Column(UTCDateTime)
    cancelled_at = Column(UTCDateTime)
    cancellation_reason = Column(Text)
    exception_reason = Column(Text)  # refund / dispute

    # Non-authoritative annotations (pricing strategy used, attribution source)
    meta = Column("metadata", JSON, default=dict)

    display_order = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False)

    created_at = Column(UTCDateTime, default=utcnow)
    created_by = Column(String(100))
    modified_at = Column(UTCDateTime)
    modified_by = Column(String(100))

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_line_items_order", "order_id"),
        Index("ix_line_items_order_status", "order_id", "status"),
        Index("ix_line_items_client", "client_id"),
        Index("ix_line_items_domain", "assigned_domain_id"),
    )


class LineItemChange(Base):
    """Append-only audit row. Never updated, never deleted.

    line_item_id / order_id are empty for website-scoped entries
    (ownership resolution, price promotion), which carry website_id instead.
    """

    __tablename__ = "line_item_changes"
    id = Column(Integer, primary_key=True, autoincrement=True)
    line_item_id = Column(Uuid, ForeignKey("order_line_items.id"))
    order_id = Column(Uuid)
    website_id = Column(Uuid, ForeignKey("websites.id"))

    change_type = Column(enum_column(ChangeType), nullable=False)
    previous_value = Column(JSON)
    new_value = Column(JSON)
    changed_by = Column(String(100), nullable=False)
    change_reason = Column(Text)
    batch_id = Column(Uuid)
    changed_at = Column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_line_item_changes_item", "line_item_id", "changed_at"),
        Index("ix_line_item_changes_order", "order_id"),
        Index("ix_line_item_changes_batch", "batch_id"),
        Index("ix_line_item_changes_website", "website_id"),
    )


@event.listens_for(LineItemChange, "before_update")
def _refuse_update(mapper, connection, target):
    raise PolicyViolationError("Change log entries are immutable", change_id=target.id)


@event.listens_for(LineItemChange, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise PolicyViolationError("Change log entries cannot be deleted", change_id=target.id)
