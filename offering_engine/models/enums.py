"""Enumerations stored on the models.

Fulfillment, publisher acceptance and client review are three separate
enums; a line item carries one value of each.
"""

import enum

from sqlalchemy import Enum


class OfferingType(str, enum.Enum):
    GUEST_POST = "guest_post"
    LINK_INSERTION = "link_insertion"
    HOMEPAGE_LINK = "homepage_link"
    BANNER_AD = "banner_ad"
    PRESS_RELEASE = "press_release"
    SPONSORED_POST = "sponsored_post"
    NICHE_EDIT = "niche_edit"


class Availability(str, enum.Enum):
    AVAILABLE = "available"
    LIMITED = "limited"
    BOOKED = "booked"
    PAUSED = "paused"


class RelationshipType(str, enum.Enum):
    OWNER = "owner"
    EDITOR = "editor"
    MANAGER = "manager"
    BROKER = "broker"
    CONTACT = "contact"


class VerificationStatus(str, enum.Enum):
    CLAIMED = "claimed"
    VERIFIED = "verified"
    PENDING = "pending"
    REJECTED = "rejected"
    DISPUTED = "disputed"


class PublisherAccountStatus(str, enum.Enum):
    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"


class RuleType(str, enum.Enum):
    DISCOUNT = "discount"
    SURCHARGE = "surcharge"
    OVERRIDE = "override"


class PricingStrategy(str, enum.Enum):
    MIN_PRICE = "min_price"
    MAX_PRICE = "max_price"
    OVERRIDE = "override"


class CalculationMethod(str, enum.Enum):
    AUTO_MIN = "auto_min"
    AUTO_MAX = "auto_max"
    MANUAL_OVERRIDE = "manual_override"


class FulfillmentStatus(str, enum.Enum):
    DRAFT = "draft"
    PENDING_SELECTION = "pending_selection"
    SELECTED = "selected"
    APPROVED = "approved"
    IN_PROGRESS = "in_progress"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    DISPUTED = "disputed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    FulfillmentStatus.COMPLETED,
    FulfillmentStatus.CANCELLED,
    FulfillmentStatus.REFUNDED,
    FulfillmentStatus.DISPUTED,
})


class PublisherAcceptanceStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ClientReviewStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGE_REQUESTED = "change_requested"


class ChangeType(str, enum.Enum):
    CREATED = "created"
    STATUS_CHANGED = "status_changed"
    ASSIGNMENT_CHANGED = "assignment_changed"
    MODIFIED = "modified"
    ANNOTATED = "annotated"
    CANCELLED = "cancelled"
    OWNERSHIP_RESOLVED = "ownership_resolved"
    PRICE_PROMOTED = "price_promoted"


def enum_column(enum_cls: type[enum.Enum], length: int = 30) -> Enum:
    """String-backed Enum type that persists the member's value."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )
