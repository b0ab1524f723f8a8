"""
offering_repository.py — CRUD for publishers, websites, offerings,
relationships and pricing rules.

Business Rules:
- Website domains are stored normalized and are globally unique
- Prices are non-negative int minor units, capped at settings.max_base_price
- Offerings and relationships are retired with is_active=False, never deleted
- A publisher holds at most one verified owner relationship per website
- Pricing rule conditions/actions only accept the keys the rule engine knows

Called by: services/relationship_resolver.py, services/derived_pricing.py,
           services/line_item_lifecycle.py, routers/pricing.py
Depends on: models, config, utils/normalization, utils/money
"""

import uuid
from datetime import date

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import settings
from ..database import utcnow
from ..exceptions import NotFoundError, ValidationError
from ..models import (
    Availability,
    Offering,
    OfferingRelationship,
    OfferingType,
    PricingRule,
    PricingStrategy,
    Publisher,
    PublisherAccountStatus,
    RelationshipType,
    RuleType,
    VerificationStatus,
    Website,
)
from ..utils.money import is_minor_units, to_decimal
from ..utils.normalization import normalize_domain, normalize_email

CONDITION_KEYS = {
    "minQuantity",
    "maxQuantity",
    "niches",
    "clientType",
    "orderUrgency",
    "dateRange",
    "totalSpend",
}
ACTION_KEYS = {
    "discountPercent",
    "surchargePercent",
    "priceMultiplier",
    "fixedDiscount",
    "addFee",
    "overridePrice",
}
_RATE_ACTIONS = {"discountPercent", "surchargePercent", "priceMultiplier"}
_AMOUNT_ACTIONS = {"fixedDiscount", "addFee", "overridePrice"}
_ORDER_URGENCIES = {"standard", "express", "rush"}


# ── Lookups ──────────────────────────────────────────────────────────


def _get(db: Session, model, entity_id, label: str):
    obj = db.get(model, _as_uuid(entity_id, label)) if entity_id is not None else None
    if obj is None:
        raise NotFoundError(f"{label} not found", id=str(entity_id))
    return obj


def _as_uuid(value, label: str) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as e:
        raise ValidationError(f"{label} id must be a valid UUID", id=str(value)) from e


def get_publisher(db: Session, publisher_id) -> Publisher:
    return _get(db, Publisher, publisher_id, "Publisher")


def get_website(db: Session, website_id) -> Website:
    return _get(db, Website, website_id, "Website")


def get_offering(db: Session, offering_id) -> Offering:
    return _get(db, Offering, offering_id, "Offering")


def get_relationship(db: Session, relationship_id) -> OfferingRelationship:
    return _get(db, OfferingRelationship, relationship_id, "Relationship")


def get_pricing_rule(db: Session, rule_id) -> PricingRule:
    return _get(db, PricingRule, rule_id, "Pricing rule")


def find_website_by_domain(db: Session, domain: str) -> Website | None:
    normalized = normalize_domain(domain)
    if not normalized:
        return None
    return db.execute(select(Website).where(Website.domain == normalized)).scalar_one_or_none()


# ── Publishers & Websites ────────────────────────────────────────────


def create_publisher(
    db: Session,
    email: str,
    *,
    company_name: str | None = None,
    is_shadow: bool = False,
    account_status: str = PublisherAccountStatus.ACTIVE,
    email_verified: bool = False,
) -> Publisher:
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("Publisher email is required", email=email)
    existing = db.execute(
        select(Publisher).where(Publisher.email == normalized)
    ).scalar_one_or_none()
    if existing:
        raise ValidationError("Publisher email already registered", email=normalized)

    publisher = Publisher(
        email=normalized,
        company_name=company_name,
        is_shadow=is_shadow,
        account_status=_coerce(PublisherAccountStatus, account_status, "account status"),
        email_verified=email_verified,
    )
    db.add(publisher)
    db.commit()
    logger.info(f"Publisher created: {normalized} (shadow={is_shadow})")
    return publisher


def create_website(
    db: Session,
    domain: str,
    *,
    current_price: int | None = None,
    currency: str | None = None,
    pricing_strategy: str | None = None,
) -> Website:
    normalized = normalize_domain(domain)
    if not normalized:
        raise ValidationError("A valid domain is required", domain=domain)
    if find_website_by_domain(db, normalized):
        raise ValidationError("Website domain already exists", domain=normalized)
    if current_price is not None:
        _validate_price(current_price, "Current price")

    website = Website(
        domain=normalized,
        current_price=current_price,
        currency=(currency or settings.default_currency).upper(),
        pricing_strategy=(
            _coerce(PricingStrategy, pricing_strategy, "pricing strategy")
            if pricing_strategy
            else None
        ),
    )
    db.add(website)
    db.commit()
    logger.info(f"Website created: {normalized}")
    return website


# ── Offerings ────────────────────────────────────────────────────────


def _validate_price(value, label: str) -> None:
    if not is_minor_units(value):
        raise ValidationError(f"{label} must be a non-negative integer in minor units", value=value)
    if value > settings.max_base_price:
        raise ValidationError(
            f"{label} cannot exceed {settings.max_base_price}", value=value
        )


def _validate_offering_fields(fields: dict) -> None:
    if "base_price" in fields:
        if fields["base_price"] is None:
            raise ValidationError("Base price is required")
        _validate_price(fields["base_price"], "Base price")

    turnaround = fields.get("turnaround_days")
    if turnaround is not None:
        if not isinstance(turnaround, int) or not 1 <= turnaround <= settings.max_turnaround_days:
            raise ValidationError(
                f"Turnaround days must be between 1 and {settings.max_turnaround_days}",
                turnaround_days=turnaround,
            )

    min_wc = fields.get("min_word_count")
    max_wc = fields.get("max_word_count")
    if min_wc is not None and (not isinstance(min_wc, int) or min_wc < 0):
        raise ValidationError("Minimum word count cannot be negative")
    if max_wc is not None:
        if not isinstance(max_wc, int) or max_wc < 0:
            raise ValidationError("Maximum word count cannot be negative")
        if min_wc and max_wc < min_wc:
            raise ValidationError("Maximum word count must be greater than minimum word count")


_OFFERING_FIELDS = {
    "offering_name",
    "base_price",
    "currency",
    "turnaround_days",
    "min_word_count",
    "max_word_count",
    "availability",
    "is_active",
}


def _offering_values(fields: dict) -> dict:
    unknown = set(fields) - _OFFERING_FIELDS
    if unknown:
        raise ValidationError("Unknown offering fields", fields=sorted(unknown))
    values = dict(fields)
    if "availability" in values:
        values["availability"] = _coerce(Availability, values["availability"], "availability")
    if values.get("currency"):
        values["currency"] = values["currency"].upper()
    return values


def create_offering(
    db: Session,
    publisher_id,
    offering_type: str,
    base_price: int,
    **fields,
) -> Offering:
    """Create an offering that is not yet linked to a website.

    Prefer create_offering_with_relationship; an unlinked offering never
    takes part in pricing until a relationship points at it.
    """
    offering = _build_offering(db, publisher_id, offering_type, base_price, fields)
    db.add(offering)
    db.commit()
    return offering


def create_offering_with_relationship(
    db: Session,
    relationship_id,
    offering_type: str,
    base_price: int,
    **fields,
) -> tuple[Offering, OfferingRelationship]:
    """Create an offering and link it to an existing publisher-website relationship."""
    relationship = get_relationship(db, relationship_id)
    offering = _build_offering(
        db, relationship.publisher_id, offering_type, base_price, fields
    )
    db.add(offering)
    db.flush()
    relationship.offering_id = offering.id
    db.commit()
    logger.info(
        f"Offering {offering.id} ({offering.offering_type.value}, {base_price}) "
        f"linked to website {relationship.website_id}"
    )
    return offering, relationship


def _build_offering(db, publisher_id, offering_type, base_price, fields) -> Offering:
    get_publisher(db, publisher_id)
    kind = _coerce(OfferingType, offering_type, "offering type")
    values = _offering_values(fields)
    _validate_offering_fields({"base_price": base_price, **values})
    values.setdefault("currency", settings.default_currency)
    return Offering(
        publisher_id=_as_uuid(publisher_id, "Publisher"),
        offering_type=kind,
        base_price=base_price,
        **values,
    )


def update_offering(db: Session, offering_id, **changes) -> Offering:
    offering = get_offering(db, offering_id)
    values = _offering_values(changes)
    merged = {
        "min_word_count": offering.min_word_count,
        "max_word_count": offering.max_word_count,
        **values,
    }
    _validate_offering_fields(merged)
    for key, value in values.items():
        setattr(offering, key, value)
    db.commit()
    return offering


def deactivate_offering(db: Session, offering_id) -> Offering:
    offering = get_offering(db, offering_id)
    offering.is_active = False
    db.commit()
    logger.info(f"Offering {offering.id} deactivated")
    return offering


# ── Relationships ────────────────────────────────────────────────────


def create_relationship(
    db: Session,
    publisher_id,
    website_id,
    *,
    offering_id=None,
    relationship_type: str = RelationshipType.CONTACT,
    verification_status: str = VerificationStatus.CLAIMED,
    is_primary: bool = False,
    is_preferred: bool = False,
    priority_rank: int = 100,
    custom_price: int | None = None,
    custom_terms: dict | None = None,
) -> OfferingRelationship:
    publisher = get_publisher(db, publisher_id)
    website = get_website(db, website_id)
    if offering_id is not None:
        offering = get_offering(db, offering_id)
        if offering.publisher_id != publisher.id:
            raise ValidationError(
                "Offering belongs to a different publisher",
                offering_id=str(offering.id),
            )
    rel_type = _coerce(RelationshipType, relationship_type, "relationship type")
    status = _coerce(VerificationStatus, verification_status, "verification status")
    if custom_price is not None:
        _validate_price(custom_price, "Custom price")

    if rel_type == RelationshipType.OWNER and status == VerificationStatus.VERIFIED:
        already = db.execute(
            select(OfferingRelationship.id).where(
                OfferingRelationship.publisher_id == publisher.id,
                OfferingRelationship.website_id == website.id,
                OfferingRelationship.relationship_type == RelationshipType.OWNER,
                OfferingRelationship.verification_status == VerificationStatus.VERIFIED,
                OfferingRelationship.is_active.is_(True),
            )
        ).first()
        if already:
            raise ValidationError(
                "Publisher already holds a verified owner relationship for this website",
                publisher_id=str(publisher.id),
                website_id=str(website.id),
            )

    relationship = OfferingRelationship(
        publisher_id=publisher.id,
        website_id=website.id,
        offering_id=_as_uuid(offering_id, "Offering") if offering_id is not None else None,
        relationship_type=rel_type,
        verification_status=status,
        verified_at=utcnow() if status == VerificationStatus.VERIFIED else None,
        is_primary=is_primary,
        is_preferred=is_preferred,
        priority_rank=priority_rank,
        custom_price=custom_price,
        custom_terms=custom_terms or {},
    )
    db.add(relationship)
    db.commit()
    logger.info(
        f"Relationship created: publisher {publisher.id} → {website.domain} "
        f"({rel_type.value}/{status.value})"
    )
    return relationship


def deactivate_relationship(db: Session, relationship_id) -> OfferingRelationship:
    relationship = get_relationship(db, relationship_id)
    relationship.is_active = False
    db.commit()
    logger.info(f"Relationship {relationship.id} deactivated")
    return relationship


def get_website_publishers(db: Session, website_id) -> list[tuple[OfferingRelationship, Publisher]]:
    """Active relationships on a website with their publishers, best rank first."""
    website = get_website(db, website_id)
    rows = db.execute(
        select(OfferingRelationship, Publisher)
        .join(Publisher, Publisher.id == OfferingRelationship.publisher_id)
        .where(
            OfferingRelationship.website_id == website.id,
            OfferingRelationship.is_active.is_(True),
        )
        .order_by(OfferingRelationship.priority_rank, OfferingRelationship.created_at)
    ).all()
    return [(rel, pub) for rel, pub in rows]


def get_preferred_publisher(db: Session, website_id) -> tuple[OfferingRelationship, Publisher] | None:
    for rel, pub in get_website_publishers(db, website_id):
        if rel.is_preferred:
            return rel, pub
    return None


# ── Pricing Rules ────────────────────────────────────────────────────


def _validate_conditions(conditions: dict) -> None:
    if not isinstance(conditions, dict):
        raise ValidationError("Rule conditions must be an object")
    unknown = set(conditions) - CONDITION_KEYS
    if unknown:
        raise ValidationError("Unknown rule conditions", conditions=sorted(unknown))

    for key in ("minQuantity", "maxQuantity"):
        if key in conditions and not is_minor_units(conditions[key]):
            raise ValidationError(f"{key} must be a non-negative integer")
    for key in ("niches", "clientType"):
        if key in conditions and not (
            isinstance(conditions[key], list) and all(isinstance(v, str) for v in conditions[key])
        ):
            raise ValidationError(f"{key} must be a list of strings")
    if "orderUrgency" in conditions and conditions["orderUrgency"] not in _ORDER_URGENCIES:
        raise ValidationError(
            "orderUrgency must be one of: " + ", ".join(sorted(_ORDER_URGENCIES))
        )
    if "dateRange" in conditions:
        rng = conditions["dateRange"]
        if not isinstance(rng, dict) or not {"start", "end"} <= set(rng):
            raise ValidationError("dateRange needs start and end")
        try:
            start = date.fromisoformat(rng["start"])
            end = date.fromisoformat(rng["end"])
        except (TypeError, ValueError) as e:
            raise ValidationError("dateRange bounds must be ISO dates") from e
        if end < start:
            raise ValidationError("dateRange end is before start")
    if "totalSpend" in conditions:
        spend = conditions["totalSpend"]
        if not isinstance(spend, dict) or not spend or set(spend) - {"min", "max"}:
            raise ValidationError("totalSpend accepts min and/or max")
        if not all(is_minor_units(v) for v in spend.values()):
            raise ValidationError("totalSpend bounds must be non-negative integers")


def _validate_actions(actions: dict) -> None:
    if not isinstance(actions, dict) or not actions:
        raise ValidationError("Rule actions must be a non-empty object")
    unknown = set(actions) - ACTION_KEYS
    if unknown:
        raise ValidationError("Unknown rule actions", actions=sorted(unknown))
    for key in _RATE_ACTIONS & set(actions):
        try:
            rate = to_decimal(actions[key])
        except ValueError as e:
            raise ValidationError(f"{key} must be a number") from e
        if rate < 0:
            raise ValidationError(f"{key} cannot be negative")
        if key == "discountPercent" and rate > 100:
            raise ValidationError("discountPercent cannot exceed 100")
    for key in _AMOUNT_ACTIONS & set(actions):
        if not is_minor_units(actions[key]):
            raise ValidationError(f"{key} must be a non-negative integer in minor units")


def add_pricing_rule(
    db: Session,
    offering_id,
    rule_name: str,
    rule_type: str,
    *,
    conditions: dict | None = None,
    actions: dict,
    priority: int = 100,
    is_cumulative: bool = False,
    auto_apply: bool = True,
    requires_approval: bool = False,
    description: str | None = None,
    valid_from: date | None = None,
    valid_until: date | None = None,
) -> PricingRule:
    offering = get_offering(db, offering_id)
    if not rule_name or not rule_name.strip():
        raise ValidationError("Rule name is required")
    kind = _coerce(RuleType, rule_type, "rule type")
    conditions = conditions or {}
    _validate_conditions(conditions)
    _validate_actions(actions)
    if valid_from and valid_until and valid_until < valid_from:
        raise ValidationError("valid_until is before valid_from")

    rule = PricingRule(
        offering_id=offering.id,
        rule_name=rule_name.strip(),
        rule_type=kind,
        description=description,
        conditions=conditions,
        actions=actions,
        priority=priority,
        is_cumulative=is_cumulative,
        auto_apply=auto_apply,
        requires_approval=requires_approval,
        valid_from=valid_from,
        valid_until=valid_until,
    )
    db.add(rule)
    db.commit()
    logger.info(f"Pricing rule '{rule.rule_name}' added to offering {offering.id}")
    return rule


def list_pricing_rules(db: Session, offering_id, active_only: bool = True) -> list[PricingRule]:
    """Rules for an offering in creation order."""
    stmt = select(PricingRule).where(PricingRule.offering_id == _as_uuid(offering_id, "Offering"))
    if active_only:
        stmt = stmt.where(PricingRule.is_active.is_(True))
    return list(db.execute(stmt.order_by(PricingRule.created_at)).scalars())


def deactivate_pricing_rule(db: Session, rule_id) -> PricingRule:
    rule = get_pricing_rule(db, rule_id)
    rule.is_active = False
    db.commit()
    return rule


# ── Helpers ──────────────────────────────────────────────────────────


def _coerce(enum_cls, value, label: str):
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {label}. Must be one of: {allowed}", value=value) from e
