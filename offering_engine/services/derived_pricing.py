"""
derived_pricing.py — Shadow-mode website pricing from publisher offerings

Derives a website's guest post price from the offerings attached to it and
compares it against the manually-maintained current price. Derivation writes
only the derived_* / price_calculation_* columns; current_price changes
through promote_derived_price and nothing else.

Business Rules:
- Eligible offerings: active guest_post offerings with a base price,
  availability not booked/paused, reached through an active relationship
- Each eligible offering is priced through its rules with quantity=1
- Strategy precedence: explicit argument, then the website's override
  offering, then website.pricing_strategy, then settings.default_pricing_strategy
- No eligible offering means derived_price = None. That is a normal result
- Every calculation stamps method and calculated_at
- Promotion is idempotent and always audited

Called by: routers/pricing.py, services/line_item_lifecycle.py (read-only)
Depends on: services/relationship_resolver.py, services/pricing_rules.py,
            services/audit_log.py
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..database import utcnow
from ..exceptions import ComputationError, EngineError, ValidationError
from ..models import (
    Availability,
    CalculationMethod,
    ChangeType,
    OfferingType,
    PricingStrategy,
    Website,
)
from ..utils.money import percent_difference
from . import audit_log
from .offering_repository import _as_uuid, _coerce, get_website
from .pricing_rules import PricingContext, price_offering
from .relationship_resolver import OfferingCandidate, active_offerings

_UNAVAILABLE = (Availability.BOOKED, Availability.PAUSED)

_METHOD_FOR_STRATEGY = {
    PricingStrategy.MIN_PRICE: CalculationMethod.AUTO_MIN,
    PricingStrategy.MAX_PRICE: CalculationMethod.AUTO_MAX,
    PricingStrategy.OVERRIDE: CalculationMethod.MANUAL_OVERRIDE,
}


@dataclass(frozen=True)
class DerivedPrice:
    website_id: object
    price: int | None
    method: CalculationMethod
    strategy: PricingStrategy
    selected_offering_id: object = None
    selected_publisher_id: object = None
    candidate_count: int = 0
    calculated_at: datetime | None = None


@dataclass(frozen=True)
class PriceComparison:
    website_id: object
    domain: str
    current_price: int | None
    derived_price: int | None
    status: str  # match | mismatch | derived_null | current_null | both_null
    difference: int | None
    percent_difference: Decimal | None
    calculation_method: CalculationMethod | None
    calculated_at: datetime | None
    override_offering_id: object = None
    override_reason: str | None = None


# ── Derivation ───────────────────────────────────────────────────────


def eligible_offerings(db: Session, website_id) -> list[OfferingCandidate]:
    return [
        c
        for c in active_offerings(db, website_id)
        if c.offering.offering_type == OfferingType.GUEST_POST
        and c.offering.base_price is not None
        and c.offering.availability not in _UNAVAILABLE
    ]


def _resolve_strategy(website: Website, strategy, override_offering_id):
    if strategy is not None:
        chosen = _coerce(PricingStrategy, strategy, "pricing strategy")
    elif website.price_override_offering_id is not None:
        chosen = PricingStrategy.OVERRIDE
    else:
        chosen = website.pricing_strategy or PricingStrategy(settings.default_pricing_strategy)

    if chosen == PricingStrategy.OVERRIDE:
        target = override_offering_id or website.price_override_offering_id
        if target is None:
            raise ValidationError(
                "The override strategy needs an offering id",
                website_id=str(website.id),
            )
        return chosen, _as_uuid(target, "Offering")
    return chosen, None


def _priced_candidates(db: Session, candidates) -> list[tuple[int, OfferingCandidate]]:
    priced = []
    context = PricingContext(quantity=1)
    for candidate in candidates:
        try:
            application = price_offering(db, candidate.offering, context)
        except ComputationError as e:
            logger.warning(
                f"Offering {candidate.offering.id} skipped in derivation: {e.message}"
            )
            continue
        priced.append((application.final_price, candidate))
    return priced


def calculate_derived_price(
    db: Session,
    website_id,
    strategy=None,
    override_offering_id=None,
) -> DerivedPrice:
    """Recompute and stamp a website's derived price. Never touches current_price."""
    website = get_website(db, website_id)
    chosen, override_id = _resolve_strategy(website, strategy, override_offering_id)
    priced = _priced_candidates(db, eligible_offerings(db, website.id))

    selected = None
    if chosen == PricingStrategy.OVERRIDE:
        selected = next((p for p in priced if p[1].offering.id == override_id), None)
    elif priced:
        # min()/max() keep the first of equal prices, i.e. the best-ranked relationship
        pick = max if chosen == PricingStrategy.MAX_PRICE else min
        selected = pick(priced, key=lambda p: p[0])

    price = selected[0] if selected else None
    method = _METHOD_FOR_STRATEGY[chosen]
    now = utcnow()

    website.derived_price = price
    website.price_calculation_method = method
    website.price_calculated_at = now
    website.selected_offering_id = selected[1].offering.id if selected else None
    website.selected_publisher_id = selected[1].offering.publisher_id if selected else None
    db.commit()

    if price is None:
        logger.info(f"No eligible offering for {website.domain} ({chosen.value})")
    else:
        logger.debug(f"Derived price for {website.domain}: {price} ({method.value})")
    return DerivedPrice(
        website_id=website.id,
        price=price,
        method=method,
        strategy=chosen,
        selected_offering_id=website.selected_offering_id,
        selected_publisher_id=website.selected_publisher_id,
        candidate_count=len(priced),
        calculated_at=now,
    )


# ── Shadow-mode comparison ───────────────────────────────────────────


def _status(current: int | None, derived: int | None) -> str:
    if current is None and derived is None:
        return "both_null"
    if current is None:
        return "current_null"
    if derived is None:
        return "derived_null"
    return "match" if current == derived else "mismatch"


def _comparison(website: Website) -> PriceComparison:
    current, derived = website.current_price, website.derived_price
    both = current is not None and derived is not None
    return PriceComparison(
        website_id=website.id,
        domain=website.domain,
        current_price=current,
        derived_price=derived,
        status=_status(current, derived),
        difference=derived - current if both else None,
        percent_difference=percent_difference(derived, current) if both else None,
        calculation_method=website.price_calculation_method,
        calculated_at=website.price_calculated_at,
        override_offering_id=website.price_override_offering_id,
        override_reason=website.price_override_reason,
    )


def compare_to_current(db: Session, website_id, *, refresh: bool = False) -> PriceComparison:
    """Classify the stored (derived, current) pair; refresh=True recalculates first."""
    if refresh:
        calculate_derived_price(db, website_id)
    return _comparison(get_website(db, website_id))


def _list_order(comparison: PriceComparison):
    rank = {"derived_null": 0, "mismatch": 1}.get(comparison.status, 2)
    return (rank, comparison.domain)


def list_comparisons(db: Session, status: str | None = None) -> list[PriceComparison]:
    """Every priced website; missing derived prices first, then mismatches."""
    websites = db.execute(
        select(Website).where(
            or_(Website.current_price.is_not(None), Website.derived_price.is_not(None))
        )
    ).scalars()
    comparisons = [_comparison(w) for w in websites]
    if status:
        comparisons = [c for c in comparisons if c.status == status]
    return sorted(comparisons, key=_list_order)


def pricing_stats(db: Session) -> dict:
    """Shadow-mode readiness over websites that have a current price."""
    websites = db.execute(
        select(Website).where(Website.current_price.is_not(None))
    ).scalars()
    statuses = [_status(w.current_price, w.derived_price) for w in websites]
    total = len(statuses)
    matching = statuses.count("match")
    ready = Decimal(0)
    if total:
        ready = (Decimal(matching) * 100 / Decimal(total)).quantize(
            Decimal("0.1"), rounding=ROUND_HALF_UP
        )
    return {
        "total_websites": total,
        "with_derived_prices": total - statuses.count("derived_null"),
        "matching_prices": matching,
        "mismatched_prices": statuses.count("mismatch"),
        "missing_derived": statuses.count("derived_null"),
        "ready_percentage": ready,
    }


def update_all_derived_prices(db: Session) -> dict:
    """Recalculate every website with a current price. One failure never stops the run."""
    website_ids = list(
        db.execute(
            select(Website.id).where(Website.current_price.is_not(None)).order_by(Website.domain)
        ).scalars()
    )
    updated = errors = 0
    logger.info(f"Derived price refresh starting for {len(website_ids)} websites")
    for website_id in website_ids:
        try:
            calculate_derived_price(db, website_id)
            updated += 1
        except (EngineError, SQLAlchemyError) as e:
            db.rollback()
            errors += 1
            logger.error(f"Derived price refresh failed for website {website_id}: {e}")
        if updated and updated % 100 == 0:
            logger.info(f"Derived price refresh: {updated}/{len(website_ids)}")
    logger.info(f"Derived price refresh done: {updated} updated, {errors} errors")
    return {"updated": updated, "errors": errors}


# ── Manual override ──────────────────────────────────────────────────


def set_manual_override(db: Session, website_id, offering_id, reason: str) -> DerivedPrice:
    website = get_website(db, website_id)
    target = _as_uuid(offering_id, "Offering")
    if not reason or not reason.strip():
        raise ValidationError("An override reason is required")
    if not any(c.offering.id == target for c in eligible_offerings(db, website.id)):
        raise ValidationError(
            "Override offering must be an active, available guest post on this website",
            offering_id=str(target),
        )
    website.price_override_offering_id = target
    website.price_override_reason = reason.strip()
    logger.info(f"Manual price override on {website.domain}: offering {target}")
    return calculate_derived_price(db, website.id, PricingStrategy.OVERRIDE, target)


def remove_manual_override(db: Session, website_id) -> DerivedPrice:
    website = get_website(db, website_id)
    website.price_override_offering_id = None
    website.price_override_reason = None
    logger.info(f"Manual price override removed on {website.domain}")
    return calculate_derived_price(db, website.id)


# ── Promotion ────────────────────────────────────────────────────────


def promote_derived_price(
    db: Session,
    website_id,
    *,
    actor: str,
    reason: str | None = None,
) -> PriceComparison:
    """Make the freshly derived price the website's current price.

    Safe to retry: when current already equals derived nothing is written
    beyond the calculation stamp.
    """
    derived = calculate_derived_price(db, website_id)
    website = get_website(db, website_id)
    if derived.price is None:
        raise ComputationError(
            "No derived price to promote", website_id=str(website.id)
        )
    if website.current_price == derived.price:
        return _comparison(website)

    previous = website.current_price
    website.current_price = derived.price
    audit_log.append_change(
        db,
        line_item_id=None,
        order_id=None,
        change_type=ChangeType.PRICE_PROMOTED,
        previous_value={"current_price": previous},
        new_value={
            "current_price": derived.price,
            "calculation_method": derived.method,
            "selected_offering_id": derived.selected_offering_id,
        },
        actor=actor,
        reason=reason,
        website_id=website.id,
    )
    db.commit()
    logger.info(
        f"Derived price promoted on {website.domain}: {previous} → {derived.price} by {actor}"
    )
    return _comparison(website)


def get_effective_price(db: Session, website_id, use_derived: bool = False) -> int | None:
    """Derived price when asked for and present; otherwise the current price."""
    website = get_website(db, website_id)
    if use_derived and website.derived_price is not None:
        return website.derived_price
    return website.current_price
