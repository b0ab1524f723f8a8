"""Publisher and Website models."""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, Uuid

from ..database import UTCDateTime, utcnow
from .base import Base
from .enums import CalculationMethod, PricingStrategy, PublisherAccountStatus, enum_column


class Publisher(Base):
    """A seller of placements. Shadow publishers are unclaimed placeholders."""

    __tablename__ = "publishers"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), nullable=False, unique=True)
    company_name = Column(String(255))
    account_status = Column(
        enum_column(PublisherAccountStatus, 20),
        nullable=False,
        default=PublisherAccountStatus.ACTIVE,
    )
    email_verified = Column(Boolean, nullable=False, default=False)
    is_shadow = Column(Boolean, nullable=False, default=False)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class Website(Base):
    """A site placements are sold on.

    current_price is maintained by hand and is the authoritative sell price.
    derived_price is computed from offerings in shadow mode and only replaces
    current_price through an explicit promotion.
    """

    __tablename__ = "websites"
    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    domain = Column(String(255), nullable=False, unique=True)
    currency = Column(String(3), nullable=False, default="USD")

    current_price = Column(Integer)
    derived_price = Column(Integer)
    pricing_strategy = Column(enum_column(PricingStrategy, 20))
    price_calculation_method = Column(enum_column(CalculationMethod, 20))
    price_calculated_at = Column(UTCDateTime)
    price_override_offering_id = Column(Uuid, ForeignKey("offerings.id"))
    price_override_reason = Column(Text)
    selected_offering_id = Column(Uuid, ForeignKey("offerings.id"))
    selected_publisher_id = Column(Uuid, ForeignKey("publishers.id"))

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_websites_calc_method", "price_calculation_method"),
    )
