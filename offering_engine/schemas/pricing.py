"""
schemas/pricing.py — Pydantic models for pricing and ownership endpoints

Business Rules:
- Money is int minor units on the wire; percent differences are decimal strings
- quantity in a pricing context is at least 1
- strategy must be one of: min_price, max_price, override

Called by: routers/pricing.py
Depends on: pydantic
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..models import (
    Availability,
    CalculationMethod,
    OfferingType,
    PricingStrategy,
    RelationshipType,
    VerificationStatus,
)


# ── Rule engine ──────────────────────────────────────────────────────


class PricingContextIn(BaseModel):
    quantity: int = Field(default=1, ge=1)
    niche: str | None = None
    client_type: str | None = None
    order_urgency: str | None = None
    order_date: date | None = None
    total_spend: int | None = Field(default=None, ge=0)


class ApplyRulesRequest(BaseModel):
    context: PricingContextIn = Field(default_factory=PricingContextIn)


class RuleStepOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    rule_id: UUID | None = None
    rule_name: str
    rule_type: str
    price_before: int
    price_after: int


class RuleApplicationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    base_price: int
    final_price: int
    applied_rules: list[str] = Field(default_factory=list)
    applied_rule_ids: list[UUID] = Field(default_factory=list)
    pending_approval: list[str] = Field(default_factory=list)
    steps: list[RuleStepOut] = Field(default_factory=list)


# ── Offerings & ownership ────────────────────────────────────────────


class OfferingCandidateOut(BaseModel):
    offering_id: UUID
    relationship_id: UUID
    publisher_id: UUID
    offering_type: OfferingType
    offering_name: str | None = None
    base_price: int | None = None
    currency: str
    availability: Availability
    relationship_type: RelationshipType
    verification_status: VerificationStatus
    priority_rank: int
    is_preferred: bool = False


class ClaimantOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    relationship_id: UUID
    publisher_id: UUID
    publisher_email: str
    verification_status: VerificationStatus
    is_primary: bool = False


class OwnershipCheckOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    website_id: UUID
    status: str
    claimants: list[ClaimantOut] = Field(default_factory=list)


class ResolveConflictRequest(BaseModel):
    winning_publisher_id: UUID
    notes: str | None = None


# ── Derivation ───────────────────────────────────────────────────────


class DerivePriceRequest(BaseModel):
    strategy: str | None = None
    override_offering_id: UUID | None = None

    @field_validator("strategy")
    @classmethod
    def strategy_known(cls, v: str | None) -> str | None:
        if v is None:
            return v
        allowed = [s.value for s in PricingStrategy]
        if v not in allowed:
            raise ValueError(f"strategy must be one of: {', '.join(allowed)}")
        return v


class DerivedPriceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    website_id: UUID
    price: int | None = None
    method: CalculationMethod
    strategy: PricingStrategy
    selected_offering_id: UUID | None = None
    selected_publisher_id: UUID | None = None
    candidate_count: int = 0
    calculated_at: datetime | None = None


class PriceComparisonOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    website_id: UUID
    domain: str
    current_price: int | None = None
    derived_price: int | None = None
    status: str
    difference: int | None = None
    percent_difference: Decimal | None = None
    calculation_method: CalculationMethod | None = None
    calculated_at: datetime | None = None
    override_offering_id: UUID | None = None
    override_reason: str | None = None


class PricingStatsOut(BaseModel):
    total_websites: int
    with_derived_prices: int
    matching_prices: int
    mismatched_prices: int
    missing_derived: int
    ready_percentage: Decimal


class ManualOverrideRequest(BaseModel):
    offering_id: UUID
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("An override reason is required")
        return v


class PromoteRequest(BaseModel):
    reason: str | None = None


class EffectivePriceOut(BaseModel):
    website_id: UUID
    price: int | None = None
    use_derived: bool = False
