"""
relationship_resolver.py — Active offerings and ownership conflicts per website

Business Rules:
- An offering is active for a website only when both the offering and the
  relationship linking it are active
- Every active owner relationship in claimed/verified is a claimant; two or
  more claimants on one website is a conflict
- Conflicts are reported, never settled here. Only resolve_conflict picks a
  winner, and only when a human names one
- Resolution flips every claimant in one commit and writes one
  ownership_resolved audit entry against the website

Called by: services/derived_pricing.py, routers/pricing.py
Depends on: services/offering_repository.py, services/audit_log.py
"""

from dataclasses import dataclass, field

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ..database import utcnow
from ..exceptions import PolicyViolationError
from ..models import (
    ChangeType,
    Offering,
    OfferingRelationship,
    OfferingType,
    Publisher,
    RelationshipType,
    VerificationStatus,
)
from . import audit_log
from .offering_repository import _as_uuid, _coerce, get_website

CLAIM_STATUSES = (VerificationStatus.CLAIMED, VerificationStatus.VERIFIED)


@dataclass(frozen=True)
class OfferingCandidate:
    offering: Offering
    relationship: OfferingRelationship


@dataclass(frozen=True)
class Claimant:
    relationship_id: object
    publisher_id: object
    publisher_email: str
    verification_status: VerificationStatus
    is_primary: bool


@dataclass(frozen=True)
class OwnershipCheck:
    website_id: object
    status: str  # "conflict_detected" | "clear"
    claimants: list[Claimant] = field(default_factory=list)

    @property
    def has_conflict(self) -> bool:
        return self.status == "conflict_detected"


# ── Offerings ────────────────────────────────────────────────────────


def active_offerings(db: Session, website_id) -> list[OfferingCandidate]:
    """All (offering, relationship) pairs on a website where both are active.

    Ordered by relationship priority_rank, then base price, so callers that
    take the first candidate get a deterministic answer.
    """
    website = get_website(db, website_id)
    rows = db.execute(
        select(Offering, OfferingRelationship)
        .join(OfferingRelationship, OfferingRelationship.offering_id == Offering.id)
        .where(
            OfferingRelationship.website_id == website.id,
            OfferingRelationship.is_active.is_(True),
            Offering.is_active.is_(True),
        )
        .order_by(
            OfferingRelationship.priority_rank,
            Offering.base_price,
            Offering.created_at,
        )
    ).all()
    return [OfferingCandidate(offering=o, relationship=r) for o, r in rows]


def offerings_by_type(db: Session, website_id, offering_type) -> list[OfferingCandidate]:
    kind = _coerce(OfferingType, offering_type, "offering type")
    return [c for c in active_offerings(db, website_id) if c.offering.offering_type == kind]


# ── Ownership ────────────────────────────────────────────────────────


def _claimant_rows(db: Session, website_id) -> list[tuple[OfferingRelationship, Publisher]]:
    return db.execute(
        select(OfferingRelationship, Publisher)
        .join(Publisher, Publisher.id == OfferingRelationship.publisher_id)
        .where(
            OfferingRelationship.website_id == website_id,
            OfferingRelationship.relationship_type == RelationshipType.OWNER,
            OfferingRelationship.is_active.is_(True),
            OfferingRelationship.verification_status.in_(CLAIM_STATUSES),
        )
        .order_by(OfferingRelationship.created_at, OfferingRelationship.id)
    ).all()


def detect_conflicts(db: Session, website_id) -> OwnershipCheck:
    """Report every ownership claimant on a website. Read-only."""
    website = get_website(db, website_id)
    claimants = [
        Claimant(
            relationship_id=rel.id,
            publisher_id=pub.id,
            publisher_email=pub.email,
            verification_status=rel.verification_status,
            is_primary=rel.is_primary,
        )
        for rel, pub in _claimant_rows(db, website.id)
    ]
    status = "conflict_detected" if len(claimants) > 1 else "clear"
    if status == "conflict_detected":
        logger.warning(
            f"Ownership conflict on {website.domain}: {len(claimants)} claimants"
        )
    return OwnershipCheck(website_id=website.id, status=status, claimants=claimants)


def list_conflicted_websites(db: Session) -> list:
    """Ids of every website with more than one ownership claimant, for manual review."""
    stmt = (
        select(OfferingRelationship.website_id)
        .where(
            OfferingRelationship.relationship_type == RelationshipType.OWNER,
            OfferingRelationship.is_active.is_(True),
            OfferingRelationship.verification_status.in_(CLAIM_STATUSES),
        )
        .group_by(OfferingRelationship.website_id)
        .having(func.count(OfferingRelationship.id) > 1)
    )
    return sorted(db.execute(stmt).scalars(), key=str)


def resolve_conflict(
    db: Session,
    website_id,
    winning_publisher_id,
    notes: str | None = None,
    *,
    actor: str,
) -> OwnershipCheck:
    """Make one claimant the verified owner and reject everyone else."""
    website = get_website(db, website_id)
    winner_id = _as_uuid(winning_publisher_id, "Publisher")
    rows = _claimant_rows(db, website.id)

    winning = [rel for rel, _ in rows if rel.publisher_id == winner_id]
    if not winning:
        raise PolicyViolationError(
            "Winning publisher is not among the current ownership claimants",
            website_id=str(website.id),
            publisher_id=str(winner_id),
        )

    # A verified claim beats a bare claim; otherwise keep the oldest
    keep = next(
        (r for r in winning if r.verification_status == VerificationStatus.VERIFIED),
        winning[0],
    )
    before = {str(rel.id): rel.verification_status.value for rel, _ in rows}
    now = utcnow()
    for rel, _ in rows:
        if rel is keep:
            if rel.verification_status != VerificationStatus.VERIFIED:
                rel.verified_at = now
            rel.verification_status = VerificationStatus.VERIFIED
        else:
            rel.verification_status = VerificationStatus.REJECTED
        rel.resolution_notes = notes
    after = {str(rel.id): rel.verification_status.value for rel, _ in rows}

    audit_log.append_change(
        db,
        line_item_id=None,
        order_id=None,
        change_type=ChangeType.OWNERSHIP_RESOLVED,
        previous_value={"claimants": before},
        new_value={
            "claimants": after,
            "winning_publisher_id": winner_id,
            "winning_relationship_id": keep.id,
        },
        actor=actor,
        reason=notes,
        website_id=website.id,
    )
    db.commit()
    logger.info(
        f"Ownership of {website.domain} resolved to publisher {winner_id} "
        f"({len(rows) - 1} claim(s) rejected) by {actor}"
    )
    return detect_conflicts(db, website.id)
