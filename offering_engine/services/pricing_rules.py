"""
pricing_rules.py — Turn an offering's base price into a final price

Business Rules:
- Only active, auto-apply rules run automatically; eligible rules that
  require approval are queued for a human and never change the price here
- A rule is eligible when every condition holds for the context and the
  order date is inside its validity window. A condition whose context value
  is missing does not hold
- Rules run by ascending priority, ties by creation order
- Per rule type only the first eligible non-cumulative rule applies;
  cumulative rules always stack on the running price
- Each rule's result is rounded half-up to a whole minor unit and floored
  at 0 before the next rule sees it, so application order matters

Action order inside a single rule:
    priceMultiplier → discountPercent → surchargePercent
    → fixedDiscount → addFee → overridePrice

Called by: services/derived_pricing.py, services/line_item_lifecycle.py,
           routers/pricing.py
Depends on: utils/money.py, services/offering_repository.py (rule loading)
"""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, Iterable

from loguru import logger
from sqlalchemy.orm import Session

from ..exceptions import ComputationError, ValidationError
from ..models import Offering, PricingRule
from ..utils.money import is_minor_units, percent_of, round_half_up, to_decimal
from .offering_repository import list_pricing_rules

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class PricingContext:
    """What the rule conditions are evaluated against."""

    quantity: int = 1
    niche: str | None = None
    client_type: str | None = None
    order_urgency: str | None = None
    order_date: date | None = None
    total_spend: int | None = None

    @property
    def effective_date(self) -> date:
        return self.order_date or datetime.now(timezone.utc).date()


@dataclass(frozen=True)
class RuleStep:
    rule_id: object
    rule_name: str
    rule_type: str
    price_before: int
    price_after: int


@dataclass
class RuleApplication:
    base_price: int
    final_price: int
    applied_rules: list[str] = field(default_factory=list)
    applied_rule_ids: list = field(default_factory=list)
    pending_approval: list[str] = field(default_factory=list)
    steps: list[RuleStep] = field(default_factory=list)


ApprovalQueue = Callable[[PricingRule, PricingContext], None]


# ── Conditions ───────────────────────────────────────────────────────


def _in_range(value, low, high) -> bool:
    if value is None:
        return False
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


def _condition_holds(key: str, expected, ctx: PricingContext) -> bool:
    if key == "minQuantity":
        return ctx.quantity >= expected
    if key == "maxQuantity":
        return ctx.quantity <= expected
    if key == "niches":
        return ctx.niche is not None and ctx.niche in expected
    if key == "clientType":
        return ctx.client_type is not None and ctx.client_type in expected
    if key == "orderUrgency":
        return ctx.order_urgency == expected
    if key == "dateRange":
        start = date.fromisoformat(expected["start"])
        end = date.fromisoformat(expected["end"])
        return _in_range(ctx.effective_date, start, end)
    if key == "totalSpend":
        return _in_range(ctx.total_spend, expected.get("min"), expected.get("max"))
    return False


def is_eligible(rule: PricingRule, ctx: PricingContext) -> bool:
    """True when the rule's validity window and every condition hold."""
    today = ctx.effective_date
    if rule.valid_from and today < rule.valid_from:
        return False
    if rule.valid_until and today > rule.valid_until:
        return False
    try:
        return all(
            _condition_holds(key, expected, ctx)
            for key, expected in (rule.conditions or {}).items()
        )
    except (TypeError, ValueError, KeyError, AttributeError):
        logger.warning(f"Pricing rule '{rule.rule_name}' has malformed conditions; skipped")
        return False


# ── Actions ──────────────────────────────────────────────────────────


def _amount(rule: PricingRule, key: str) -> int:
    value = rule.actions[key]
    if not is_minor_units(value):
        raise ComputationError(
            f"Pricing rule '{rule.rule_name}' has a non-integer {key}",
            rule_id=str(rule.id),
        )
    return value


def apply_rule(price: int, rule: PricingRule) -> int:
    """Apply one rule's actions to the running price."""
    actions = rule.actions or {}
    try:
        running = Decimal(price)
        if "priceMultiplier" in actions:
            running *= to_decimal(actions["priceMultiplier"])
        if "discountPercent" in actions:
            running -= percent_of(running, actions["discountPercent"])
        if "surchargePercent" in actions:
            running += percent_of(running, actions["surchargePercent"])
    except ValueError as e:
        raise ComputationError(
            f"Pricing rule '{rule.rule_name}' has a non-numeric rate",
            rule_id=str(rule.id),
        ) from e
    if "fixedDiscount" in actions:
        running -= _amount(rule, "fixedDiscount")
    if "addFee" in actions:
        running += _amount(rule, "addFee")
    if "overridePrice" in actions:
        running = Decimal(_amount(rule, "overridePrice"))
    return max(0, round_half_up(running))


# ── Engine ───────────────────────────────────────────────────────────


def _sort_key(indexed: tuple[int, PricingRule]):
    index, rule = indexed
    return (rule.priority, rule.created_at or _EPOCH, index)


def apply_rules(
    base_price: int,
    rules: Iterable[PricingRule],
    context: PricingContext | None = None,
    *,
    approval_queue: ApprovalQueue | None = None,
) -> RuleApplication:
    """Run the rule set over base_price.

    Returns the final price with the applied rule names in application
    order. With nothing applicable, final_price equals base_price and
    applied_rules is empty.
    """
    if not is_minor_units(base_price):
        raise ValidationError(
            "Base price must be a non-negative integer in minor units",
            base_price=base_price,
        )
    ctx = context or PricingContext()
    result = RuleApplication(base_price=base_price, final_price=base_price)

    ordered = [rule for _, rule in sorted(enumerate(rules), key=_sort_key)]
    used_types: set = set()
    price = base_price

    for rule in ordered:
        if not rule.is_active or not is_eligible(rule, ctx):
            continue
        if rule.requires_approval:
            result.pending_approval.append(rule.rule_name)
            if approval_queue is not None:
                approval_queue(rule, ctx)
            continue
        if not rule.auto_apply:
            continue
        if not rule.is_cumulative:
            if rule.rule_type in used_types:
                continue
            used_types.add(rule.rule_type)

        new_price = apply_rule(price, rule)
        result.steps.append(
            RuleStep(
                rule_id=rule.id,
                rule_name=rule.rule_name,
                rule_type=getattr(rule.rule_type, "value", rule.rule_type),
                price_before=price,
                price_after=new_price,
            )
        )
        result.applied_rules.append(rule.rule_name)
        result.applied_rule_ids.append(rule.id)
        price = new_price

    result.final_price = price
    if result.applied_rules:
        logger.debug(
            f"Pricing rules applied: {base_price} → {price} via {result.applied_rules}"
        )
    return result


def price_offering(
    db: Session,
    offering: Offering,
    context: PricingContext | None = None,
    *,
    approval_queue: ApprovalQueue | None = None,
) -> RuleApplication:
    """Apply an offering's active rules to its base price."""
    if offering.base_price is None:
        raise ComputationError(
            "Offering has no base price", offering_id=str(offering.id)
        )
    rules = list_pricing_rules(db, offering.id)
    return apply_rules(
        offering.base_price, rules, context, approval_queue=approval_queue
    )
