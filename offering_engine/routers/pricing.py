"""
pricing.py — Offering resolution, ownership and price derivation API

Endpoints for resolving a website's offerings, surfacing and resolving
ownership conflicts, pricing an offering through its rules, and running
shadow-mode derivation against the manually-maintained price.

Business Rules:
- Ownership conflicts are reported as data; only the resolve endpoint
  picks a winner, and only the one the caller names
- Derivation never changes current_price; the promote endpoint does, and
  audits it

Called by: main.py (router mount)
Depends on: services/relationship_resolver, services/pricing_rules,
            services/derived_pricing, services/audit_log
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import get_actor
from ..schemas.line_items import LineItemChangeOut
from ..schemas.pricing import (
    ApplyRulesRequest,
    DerivedPriceOut,
    DerivePriceRequest,
    EffectivePriceOut,
    ManualOverrideRequest,
    OfferingCandidateOut,
    OwnershipCheckOut,
    PriceComparisonOut,
    PricingStatsOut,
    PromoteRequest,
    ResolveConflictRequest,
    RuleApplicationOut,
)
from ..services import audit_log, derived_pricing, relationship_resolver
from ..services.offering_repository import get_offering, get_website
from ..services.pricing_rules import PricingContext, price_offering

router = APIRouter(tags=["pricing"])


def _candidate_out(candidate) -> OfferingCandidateOut:
    offering, rel = candidate.offering, candidate.relationship
    return OfferingCandidateOut(
        offering_id=offering.id,
        relationship_id=rel.id,
        publisher_id=offering.publisher_id,
        offering_type=offering.offering_type,
        offering_name=offering.offering_name,
        base_price=offering.base_price,
        currency=offering.currency,
        availability=offering.availability,
        relationship_type=rel.relationship_type,
        verification_status=rel.verification_status,
        priority_rank=rel.priority_rank,
        is_preferred=rel.is_preferred,
    )


# ── Offerings & Ownership ────────────────────────────────────────────


@router.get("/api/websites/{website_id}/offerings", response_model=list[OfferingCandidateOut])
def list_website_offerings(
    website_id: UUID,
    offering_type: str | None = None,
    db: Session = Depends(get_db),
):
    """Active offerings on a website, best-ranked relationship first."""
    if offering_type:
        candidates = relationship_resolver.offerings_by_type(db, website_id, offering_type)
    else:
        candidates = relationship_resolver.active_offerings(db, website_id)
    return [_candidate_out(c) for c in candidates]


@router.get("/api/websites/{website_id}/ownership", response_model=OwnershipCheckOut)
def check_ownership(website_id: UUID, db: Session = Depends(get_db)):
    return relationship_resolver.detect_conflicts(db, website_id)


@router.post("/api/websites/{website_id}/ownership/resolve", response_model=OwnershipCheckOut)
def resolve_ownership(
    website_id: UUID,
    body: ResolveConflictRequest,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Make the named publisher the verified owner; every other claim is rejected."""
    return relationship_resolver.resolve_conflict(
        db, website_id, body.winning_publisher_id, body.notes, actor=actor
    )


@router.get("/api/ownership/conflicts")
def list_ownership_conflicts(db: Session = Depends(get_db)):
    """Websites awaiting a manual ownership decision."""
    ids = relationship_resolver.list_conflicted_websites(db)
    return {"website_ids": [str(i) for i in ids], "count": len(ids)}


@router.get("/api/websites/{website_id}/history", response_model=list[LineItemChangeOut])
def website_history(website_id: UUID, db: Session = Depends(get_db)):
    get_website(db, website_id)
    return audit_log.website_history(db, website_id)


# ── Rule Engine ──────────────────────────────────────────────────────


@router.post("/api/offerings/{offering_id}/price", response_model=RuleApplicationOut)
def price_single_offering(
    offering_id: UUID,
    body: ApplyRulesRequest | None = None,
    db: Session = Depends(get_db),
):
    """Apply an offering's pricing rules for the given context."""
    offering = get_offering(db, offering_id)
    context = PricingContext(**(body or ApplyRulesRequest()).context.model_dump())
    return price_offering(db, offering, context)


# ── Derivation ───────────────────────────────────────────────────────


@router.post("/api/websites/{website_id}/derived-price", response_model=DerivedPriceOut)
def derive_price(
    website_id: UUID,
    body: DerivePriceRequest | None = None,
    db: Session = Depends(get_db),
):
    body = body or DerivePriceRequest()
    return derived_pricing.calculate_derived_price(
        db, website_id, body.strategy, body.override_offering_id
    )


@router.get("/api/websites/{website_id}/price-comparison", response_model=PriceComparisonOut)
def price_comparison(website_id: UUID, refresh: bool = False, db: Session = Depends(get_db)):
    return derived_pricing.compare_to_current(db, website_id, refresh=refresh)


@router.get("/api/pricing/comparisons", response_model=list[PriceComparisonOut])
def list_price_comparisons(status: str | None = None, db: Session = Depends(get_db)):
    return derived_pricing.list_comparisons(db, status)


@router.get("/api/pricing/stats", response_model=PricingStatsOut)
def pricing_stats(db: Session = Depends(get_db)):
    return derived_pricing.pricing_stats(db)


@router.post("/api/pricing/recalculate")
def recalculate_all(db: Session = Depends(get_db)):
    """Maintenance: refresh every website's derived price."""
    return derived_pricing.update_all_derived_prices(db)


@router.put("/api/websites/{website_id}/price-override", response_model=DerivedPriceOut)
def set_price_override(
    website_id: UUID,
    body: ManualOverrideRequest,
    db: Session = Depends(get_db),
):
    return derived_pricing.set_manual_override(db, website_id, body.offering_id, body.reason)


@router.delete("/api/websites/{website_id}/price-override", response_model=DerivedPriceOut)
def remove_price_override(website_id: UUID, db: Session = Depends(get_db)):
    return derived_pricing.remove_manual_override(db, website_id)


@router.post("/api/websites/{website_id}/promote-price", response_model=PriceComparisonOut)
def promote_price(
    website_id: UUID,
    body: PromoteRequest | None = None,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
):
    """Replace current_price with the freshly derived price. Audited."""
    reason = body.reason if body else None
    return derived_pricing.promote_derived_price(db, website_id, actor=actor, reason=reason)


@router.get("/api/websites/{website_id}/effective-price", response_model=EffectivePriceOut)
def effective_price(website_id: UUID, use_derived: bool = False, db: Session = Depends(get_db)):
    price = derived_pricing.get_effective_price(db, website_id, use_derived)
    return EffectivePriceOut(website_id=website_id, price=price, use_derived=use_derived)
