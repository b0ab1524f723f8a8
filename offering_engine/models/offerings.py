"""Offering, OfferingRelationship and PricingRule models.

Entities reference each other by id only; services load what they need.
Nothing here is ever hard-deleted: is_active=False retires a row and keeps
pricing history intact.
"""

import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Uuid,
)

from ..database import UTCDateTime, utcnow
from .base import Base
from .enums import (
    Availability,
    OfferingType,
    RelationshipType,
    RuleType,
    VerificationStatus,
    enum_column,
)


class Offering(Base):
    """A publisher's sellable service definition."""

    __tablename__ = "offerings"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    publisher_id = Column(
        Uuid, ForeignKey("publishers.id", ondelete="CASCADE"), nullable=False
    )
    offering_type = Column(enum_column(OfferingType), nullable=False)
    offering_name = Column(String(255))

    base_price = Column(Integer)  # minor units
    currency = Column(String(3), nullable=False, default="USD")
    turnaround_days = Column(Integer, default=7)
    min_word_count = Column(Integer)
    max_word_count = Column(Integer)
    availability = Column(
        enum_column(Availability, 20), nullable=False, default=Availability.AVAILABLE
    )
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_offerings_publisher", "publisher_id"),
        Index("ix_offerings_type_active", "offering_type", "is_active"),
    )


class OfferingRelationship(Base):
    """The claim linking a publisher (and optionally an offering) to a website."""

    __tablename__ = "offering_relationships"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    publisher_id = Column(
        Uuid, ForeignKey("publishers.id", ondelete="CASCADE"), nullable=False
    )
    offering_id = Column(Uuid, ForeignKey("offerings.id"))
    website_id = Column(
        Uuid, ForeignKey("websites.id", ondelete="CASCADE"), nullable=False
    )

    relationship_type = Column(
        enum_column(RelationshipType, 20),
        nullable=False,
        default=RelationshipType.CONTACT,
    )
    verification_status = Column(
        enum_column(VerificationStatus, 20),
        nullable=False,
        default=VerificationStatus.CLAIMED,
    )
    verified_at = Column(UTCDateTime)
    resolution_notes = Column(Text)

    is_primary = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_preferred = Column(Boolean, nullable=False, default=False)
    priority_rank = Column(Integer, nullable=False, default=100)

    custom_price = Column(Integer)
    custom_terms = Column(JSON, default=dict)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_offering_rel_website", "website_id"),
        Index("ix_offering_rel_publisher", "publisher_id"),
        Index("ix_offering_rel_offering", "offering_id"),
        Index("ix_offering_rel_website_type", "website_id", "relationship_type"),
    )


class PricingRule(Base):
    """A conditional price adjustment attached to one offering.

    conditions / actions are JSON objects keyed the way the publisher portal
    writes them, e.g. {"minQuantity": 5} / {"discountPercent": 10}.
    """

    __tablename__ = "pricing_rules"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    offering_id = Column(
        Uuid, ForeignKey("offerings.id", ondelete="CASCADE"), nullable=False
    )
    rule_type = Column(enum_column(RuleType, 20), nullable=False)
    rule_name = Column(String(255), nullable=False)
    description = Column(Text)

    conditions = Column(JSON, nullable=False, default=dict)
    actions = Column(JSON, nullable=False, default=dict)

    priority = Column(Integer, nullable=False, default=100)
    is_cumulative = Column(Boolean, nullable=False, default=False)
    auto_apply = Column(Boolean, nullable=False, default=True)
    requires_approval = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    valid_from = Column(Date)
    valid_until = Column(Date)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_pricing_rules_offering", "offering_id"),
        Index("ix_pricing_rules_priority", "priority"),
    )
