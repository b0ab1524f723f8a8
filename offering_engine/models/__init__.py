"""Database models — re-exports all models.

Import from here:  from offering_engine.models import Website, Offering, ...
Or from submodules: from offering_engine.models.offerings import Offering
"""

from .base import Base  # noqa: F401

# Enumerations
from .enums import (  # noqa: F401
    TERMINAL_STATUSES,
    Availability,
    CalculationMethod,
    ChangeType,
    ClientReviewStatus,
    FulfillmentStatus,
    OfferingType,
    PricingStrategy,
    PublisherAcceptanceStatus,
    PublisherAccountStatus,
    RelationshipType,
    RuleType,
    VerificationStatus,
)

# Publishers & Websites
from .publishers import Publisher, Website  # noqa: F401

# Offerings, Relationships, Pricing Rules
from .offerings import Offering, OfferingRelationship, PricingRule  # noqa: F401

# Order Line Items & Change Log
from .line_items import LineItemChange, OrderLineItem  # noqa: F401
