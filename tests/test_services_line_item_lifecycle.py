"""
test_services_line_item_lifecycle.py — Tests for services/line_item_lifecycle.py

Covers the fulfillment state machine, optimistic version checks, the
one-change-row-per-transition rule, repricing on assignment, approved
price immutability and all-or-nothing bulk operations.

Called by: pytest
Depends on: conftest.py fixtures
"""

import uuid
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from offering_engine.exceptions import (
    BatchError,
    ConflictError,
    NotFoundError,
    PolicyViolationError,
    ValidationError,
)
from offering_engine.models import (
    ChangeType,
    ClientReviewStatus,
    FulfillmentStatus,
    PublisherAcceptanceStatus,
)
from offering_engine.services import audit_log
from offering_engine.services import line_item_lifecycle as lifecycle
from offering_engine.services import offering_repository as repo
from offering_engine.services.derived_pricing import calculate_derived_price


@pytest.fixture()
def priced_site(make_publisher, make_website, make_offering):
    """Website with a manual price of 20000 and one 15000 guest post offering."""
    site = make_website("blog.example.com", current_price=20000)
    offering = make_offering(make_publisher(), site, 15000)
    return site, offering


@pytest.fixture()
def other_session(db_session):
    """A second session on the same database, standing in for another worker."""
    session = Session(bind=db_session.get_bind(), autoflush=False, expire_on_commit=False)
    try:
        yield session
    finally:
        session.close()


def _step(db, item, action, payload=None, **kw):
    return lifecycle.transition_line_item(
        db, item.id, item.version, action, payload, actor="ops-1", **kw
    )


def _to_selected(db, item, offering):
    item = _step(db, item, "submit")
    return _step(db, item, "select", {"assigned_offering_id": str(offering.id)})


def _to_approved(db, item, offering):
    return _step(db, _to_selected(db, item, offering), "approve")


def _to_completed(db, item, offering):
    item = _to_approved(db, item, offering)
    item = _step(db, item, "publisher_accept")
    item = _step(db, item, "start")
    item = _step(db, item, "deliver", {"delivered_url": "https://blog.example.com/post"})
    return _step(db, item, "complete")


class TestCreation:
    def test_new_item_is_draft_at_version_one(self, db_session, make_line_item):
        item = make_line_item()
        assert item.status == FulfillmentStatus.DRAFT
        assert item.version == 1
        assert item.publisher_status == PublisherAcceptanceStatus.PENDING
        assert item.client_review_status == ClientReviewStatus.PENDING
        assert item.meta["inclusionStatus"] == "included"

        entries = audit_log.history(db_session, item.id)
        assert [e.change_type for e in entries] == [ChangeType.CREATED]
        assert entries[0].changed_by == "tester"

    def test_domain_on_creation_prices_from_current_price(
        self, db_session, make_line_item, priced_site
    ):
        site, _ = priced_site
        item = make_line_item(assigned_domain="https://www.Blog.example.com/")
        assert item.assigned_domain_id == site.id
        assert item.assigned_domain == "blog.example.com"
        assert item.wholesale_price == 20000
        assert item.service_fee == 7900
        assert item.estimated_price == 27900
        assert item.meta["pricingStrategy"] == "current_price"

    def test_current_price_stays_authoritative_over_derived(
        self, db_session, make_line_item, priced_site
    ):
        site, _ = priced_site
        calculate_derived_price(db_session, site.id)
        item = make_line_item(assigned_domain_id=str(site.id))
        assert item.wholesale_price == 20000
        assert item.estimated_price == 27900
        assert item.meta["pricingStrategy"] == "current_price"
        assert item.meta["attribution"] == {"source": "website_current"}
        assert item.meta["derivedPrice"] == 15000

    def test_deactivated_offering_never_prices_domain(
        self, db_session, make_line_item, priced_site
    ):
        site, offering = priced_site
        calculate_derived_price(db_session, site.id)
        repo.deactivate_offering(db_session, offering.id)
        item = make_line_item(assigned_domain=site.domain)
        assert item.wholesale_price == 20000
        assert "offeringId" not in item.meta["attribution"]

    def test_derived_price_alone_does_not_price(
        self, db_session, make_line_item, make_website, make_publisher, make_offering
    ):
        site = make_website("shadow.example.com")
        make_offering(make_publisher(), site, 15000)
        calculate_derived_price(db_session, site.id)
        item = make_line_item(assigned_domain=site.domain)
        assert item.wholesale_price is None
        assert item.estimated_price is None
        assert item.meta["derivedPrice"] == 15000
        assert "shadow.example.com" in item.meta["pricingError"]

    def test_unpriced_domain_records_pricing_error(
        self, db_session, make_line_item, make_website
    ):
        make_website("unpriced.example.com")
        item = make_line_item(assigned_domain="unpriced.example.com")
        assert item.estimated_price is None
        assert item.wholesale_price is None
        assert "unpriced.example.com" in item.meta["pricingError"]

    def test_display_order_continues_within_order(self, db_session, make_line_item):
        first, second = make_line_item(), make_line_item()
        assert (first.display_order, second.display_order) == (0, 1)

    def test_invalid_item_rolls_back_whole_batch(self, db_session, order_id, client_id):
        specs = [
            {"client_id": str(client_id), "anchor_text": "ok"},
            {"client_id": str(client_id), "assigned_domain": "nowhere.example.com"},
            {"anchor_text": "missing client"},
        ]
        with pytest.raises(BatchError) as exc:
            lifecycle.add_line_items(db_session, order_id, specs, actor="tester")
        assert [f["index"] for f in exc.value.failures] == [1, 2]
        assert lifecycle.list_line_items(db_session, order_id) == []

    def test_unknown_fields_rejected(self, db_session, order_id, client_id):
        with pytest.raises(BatchError):
            lifecycle.add_line_items(
                db_session, order_id, [{"client_id": str(client_id), "status": "approved"}],
                actor="tester",
            )

    def test_empty_batch(self, db_session, order_id):
        with pytest.raises(ValidationError):
            lifecycle.add_line_items(db_session, order_id, [], actor="tester")


class TestHappyPath:
    def test_draft_to_completed(self, db_session, make_line_item, priced_site):
        site, offering = priced_site
        item = make_line_item(assigned_domain=site.domain)

        item = _step(db_session, item, "submit")
        assert item.status == FulfillmentStatus.PENDING_SELECTION

        item = _step(db_session, item, "select", {"assigned_offering_id": str(offering.id)})
        assert item.status == FulfillmentStatus.SELECTED
        assert item.assigned_publisher_id == offering.publisher_id
        assert item.wholesale_price == 15000
        assert item.estimated_price == 22900
        assert item.meta["pricingStrategy"] == "offering_rules"
        assert item.meta["attribution"]["source"] == "assigned_offering"

        item = _step(db_session, item, "approve")
        assert item.status == FulfillmentStatus.APPROVED
        assert item.approved_price == 22900
        assert item.approved_by == "ops-1"
        assert item.client_review_status == ClientReviewStatus.APPROVED

        item = _step(db_session, item, "publisher_accept")
        assert item.publisher_status == PublisherAcceptanceStatus.ACCEPTED
        assert item.publisher_accepted_at is not None

        item = _step(db_session, item, "start")
        assert item.status == FulfillmentStatus.IN_PROGRESS

        item = _step(db_session, item, "deliver", {"delivered_url": "https://blog.example.com/p"})
        assert item.status == FulfillmentStatus.DELIVERED
        assert item.delivered_url == "https://blog.example.com/p"
        assert item.delivered_at is not None

        item = _step(db_session, item, "complete")
        assert item.status == FulfillmentStatus.COMPLETED
        assert item.final_price == 22900
        assert item.completed_at is not None
        assert item.version == 8

    def test_every_transition_writes_exactly_one_change(
        self, db_session, make_line_item, priced_site
    ):
        site, offering = priced_site
        item = _to_completed(db_session, make_line_item(assigned_domain=site.domain), offering)

        entries = audit_log.history(db_session, item.id)
        assert len(entries) == item.version  # created + one per transition
        stamps = [e.changed_at for e in entries]
        assert stamps == sorted(stamps)
        assert all(e.changed_by for e in entries)
        assert entries[-1].new_value == {"status": "completed", "final_price": 22900}

    def test_rules_flow_into_line_item_price(
        self, db_session, make_line_item, priced_site
    ):
        site, offering = priced_site
        repo.add_pricing_rule(
            db_session, offering.id, "Spring Promo", "discount", actions={"discountPercent": 10}
        )
        item = _to_selected(db_session, make_line_item(assigned_domain=site.domain), offering)
        assert item.wholesale_price == 13500
        assert item.estimated_price == 21400
        assert item.meta["appliedRules"] == ["Spring Promo"]


class TestVersionSafety:
    def test_stale_version_is_a_conflict_and_writes_nothing(
        self, db_session, make_line_item, priced_site
    ):
        site, offering = priced_site
        item = _to_approved(db_session, make_line_item(assigned_domain=site.domain), offering)
        version = item.version
        changes = len(audit_log.history(db_session, item.id))

        with pytest.raises(ConflictError) as exc:
            lifecycle.transition_line_item(
                db_session, item.id, version - 1, "deliver",
                {"delivered_url": "https://blog.example.com/p"}, actor="ops-1",
            )

        assert exc.value.retryable
        assert exc.value.details["current_version"] == version
        item = lifecycle.get_line_item(db_session, item.id)
        assert item.status == FulfillmentStatus.APPROVED
        assert item.version == version
        assert len(audit_log.history(db_session, item.id)) == changes

    def test_each_transition_bumps_version_by_one(self, db_session, make_line_item):
        item = make_line_item()
        before = item.version
        item = _step(db_session, item, "edit", {"anchor_text": "cheap widgets"})
        assert item.version == before + 1

    def test_non_integer_version_rejected(self, db_session, make_line_item):
        item = make_line_item()
        with pytest.raises(ValidationError):
            lifecycle.transition_line_item(db_session, item.id, "1", "submit", actor="ops-1")

    def test_stale_version_wins_over_unknown_action(self, db_session, make_line_item):
        item = _step(db_session, make_line_item(), "submit")
        with pytest.raises(ConflictError):
            lifecycle.transition_line_item(
                db_session, item.id, item.version - 1, "teleport", actor="ops-1"
            )

    def test_concurrent_write_between_read_and_commit(
        self, db_session, make_line_item, other_session
    ):
        item = make_line_item()
        lifecycle.transition_line_item(
            other_session, item.id, 1, "annotate", {"metadata": {"ticket": "OPS-1"}},
            actor="ops-2",
        )

        # db_session still holds the item at version 1
        with pytest.raises(ConflictError) as exc:
            lifecycle.transition_line_item(
                db_session, item.id, 1, "annotate", {"metadata": {"ticket": "OPS-2"}},
                actor="ops-1",
            )

        assert exc.value.details["line_item_ids"] == [str(item.id)]
        item = lifecycle.get_line_item(db_session, item.id)
        assert item.version == 2
        assert item.meta["ticket"] == "OPS-1"
        assert [e.changed_by for e in audit_log.history(db_session, item.id)] == [
            "tester",
            "ops-2",
        ]

    def test_concurrent_write_fails_whole_bulk_commit(
        self, db_session, make_line_item, other_session
    ):
        first, second = make_line_item(), make_line_item()
        lifecycle.transition_line_item(other_session, second.id, 1, "submit", actor="ops-2")

        with pytest.raises(ConflictError):
            lifecycle.bulk_transition(
                db_session, [(first.id, 1), (second.id, 1)], "cancel",
                actor="ops-1", reason="Order void",
            )

        first = lifecycle.get_line_item(db_session, first.id)
        second = lifecycle.get_line_item(db_session, second.id)
        assert (first.status, first.version) == (FulfillmentStatus.DRAFT, 1)
        assert (second.status, second.version) == (FulfillmentStatus.PENDING_SELECTION, 2)
        assert len(audit_log.history(db_session, first.id)) == 1

    def test_failed_commit_rolls_back_session(self, db_session, make_line_item):
        item = make_line_item()
        error = IntegrityError("UPDATE order_line_items", {}, Exception("constraint failed"))
        with patch.object(db_session, "commit", side_effect=error):
            with pytest.raises(IntegrityError):
                _step(db_session, item, "submit")

        item = lifecycle.get_line_item(db_session, item.id)
        assert item.status == FulfillmentStatus.DRAFT
        assert item.version == 1
        assert _step(db_session, item, "submit").version == 2

    def test_failed_commit_rolls_back_added_items(self, db_session, order_id, client_id):
        error = IntegrityError("INSERT INTO order_line_items", {}, Exception("constraint failed"))
        with patch.object(db_session, "commit", side_effect=error):
            with pytest.raises(IntegrityError):
                lifecycle.add_line_items(
                    db_session, order_id, [{"client_id": str(client_id)}], actor="tester"
                )
        assert lifecycle.list_line_items(db_session, order_id) == []


class TestTransitionRules:
    def test_unknown_action(self, db_session, make_line_item):
        item = make_line_item()
        with pytest.raises(ValidationError, match="Unknown action"):
            _step(db_session, item, "teleport")

    def test_wrong_source_status(self, db_session, make_line_item):
        item = make_line_item()
        with pytest.raises(PolicyViolationError, match="status: draft"):
            _step(db_session, item, "deliver", {"delivered_url": "https://x.example.com"})
        assert lifecycle.get_line_item(db_session, item.id).version == 1

    def test_submit_requires_anchor_text(self, db_session, make_line_item):
        item = make_line_item(anchor_text=None)
        with pytest.raises(ValidationError, match="Anchor text"):
            _step(db_session, item, "submit")

    def test_select_requires_full_assignment(self, db_session, make_line_item, priced_site):
        site, _ = priced_site
        item = _step(db_session, make_line_item(assigned_domain=site.domain), "submit")
        with pytest.raises(ValidationError):
            _step(db_session, item, "select")

    def test_offering_must_be_on_assigned_domain(
        self, db_session, make_line_item, make_publisher, make_website, make_offering, priced_site
    ):
        site, _ = priced_site
        elsewhere = make_offering(make_publisher(), make_website(), 900)
        item = _step(db_session, make_line_item(assigned_domain=site.domain), "submit")
        with pytest.raises(ValidationError, match="not available"):
            _step(db_session, item, "select", {"assigned_offering_id": str(elsewhere.id)})

    def test_publisher_must_own_offering(
        self, db_session, make_line_item, make_publisher, priced_site
    ):
        site, offering = priced_site
        item = _step(db_session, make_line_item(assigned_domain=site.domain), "submit")
        with pytest.raises(ValidationError, match="does not own"):
            _step(
                db_session, item, "select",
                {
                    "assigned_offering_id": str(offering.id),
                    "assigned_publisher_id": str(make_publisher().id),
                },
            )

    def test_start_requires_publisher_acceptance(self, db_session, make_line_item, priced_site):
        site, offering = priced_site
        item = _to_approved(db_session, make_line_item(assigned_domain=site.domain), offering)
        with pytest.raises(ValidationError, match="publisher has accepted"):
            _step(db_session, item, "start")

        item = _step(db_session, lifecycle.get_line_item(db_session, item.id), "publisher_reject")
        assert item.publisher_status == PublisherAcceptanceStatus.REJECTED
        with pytest.raises(ValidationError):
            _step(db_session, item, "start")

    def test_deliver_requires_http_url(self, db_session, make_line_item, priced_site):
        site, offering = priced_site
        item = _to_approved(db_session, make_line_item(assigned_domain=site.domain), offering)
        item = _step(db_session, item, "publisher_accept")
        item = _step(db_session, item, "start")
        with pytest.raises(ValidationError):
            _step(db_session, item, "deliver", {"delivered_url": "ftp://blog.example.com/p"})

    def test_edit_cannot_clear_anchor_after_submission(self, db_session, make_line_item):
        item = _step(db_session, make_line_item(), "submit")
        with pytest.raises(ValidationError, match="cannot be cleared"):
            _step(db_session, item, "edit", {"anchor_text": ""})

    def test_annotate_allowed_in_terminal_status(self, db_session, make_line_item):
        item = _step(db_session, make_line_item(), "cancel", reason="client withdrew")
        item = _step(db_session, item, "annotate", {"metadata": {"ticket": "OPS-12"}})
        assert item.meta["ticket"] == "OPS-12"
        assert item.meta["inclusionStatus"] == "included"
        assert audit_log.history(db_session, item.id)[-1].change_type == ChangeType.ANNOTATED


class TestApproval:
    def test_approved_price_includes_service_fee(
        self, db_session, make_line_item, make_website, make_publisher, make_offering
    ):
        site = make_website("zero.example.com")
        offering = make_offering(make_publisher(), site, 500)
        item = _to_selected(db_session, make_line_item(assigned_domain=site.domain), offering)
        assert _step(db_session, item, "approve").approved_price == 8400

    def test_change_requested_blocks_approval(self, db_session, make_line_item, priced_site):
        site, offering = priced_site
        item = _to_selected(db_session, make_line_item(assigned_domain=site.domain), offering)
        item = _step(
            db_session, item, "review",
            {"client_review_status": "change_requested", "notes": "Wrong niche"},
        )
        assert item.client_review_notes == "Wrong niche"
        with pytest.raises(PolicyViolationError):
            _step(db_session, item, "approve")

        item = lifecycle.get_line_item(db_session, item.id)
        item = _step(db_session, item, "review", {"client_review_status": "approved"})
        assert _step(db_session, item, "approve").status == FulfillmentStatus.APPROVED

    def test_approved_price_is_frozen(self, db_session, make_line_item, priced_site):
        site, offering = priced_site
        item = _to_approved(db_session, make_line_item(assigned_domain=site.domain), offering)
        approved = item.approved_price

        with pytest.raises(PolicyViolationError):
            _step(db_session, item, "assign", {"assigned_offering_id": None})
        repo.update_offering(db_session, offering.id, base_price=99000)

        item = lifecycle.get_line_item(db_session, item.id)
        item = _step(db_session, item, "publisher_accept")
        item = _step(db_session, item, "start")
        item = _step(db_session, item, "deliver", {"delivered_url": "https://blog.example.com/p"})
        item = _step(db_session, item, "complete", {"final_price": 21000})
        assert item.approved_price == approved
        assert item.final_price == 21000


class TestCancellationAndExceptions:
    def test_cancel_requires_reason(self, db_session, make_line_item):
        item = make_line_item()
        with pytest.raises(ValidationError):
            _step(db_session, item, "cancel")

    def test_cancel(self, db_session, make_line_item):
        item = _step(db_session, make_line_item(), "cancel", reason="Budget cut")
        assert item.status == FulfillmentStatus.CANCELLED
        assert item.cancellation_reason == "Budget cut"
        last = audit_log.history(db_session, item.id)[-1]
        assert last.change_type == ChangeType.CANCELLED
        assert last.change_reason == "Budget cut"

    def test_terminal_items_cannot_be_cancelled(self, db_session, make_line_item, priced_site):
        site, offering = priced_site
        item = _to_completed(db_session, make_line_item(assigned_domain=site.domain), offering)
        with pytest.raises(PolicyViolationError):
            _step(db_session, item, "cancel", reason="too late")

    @pytest.mark.parametrize(
        "action, status",
        [("refund", FulfillmentStatus.REFUNDED), ("dispute", FulfillmentStatus.DISPUTED)],
    )
    def test_refund_and_dispute_from_completed(
        self, db_session, make_line_item, priced_site, action, status
    ):
        site, offering = priced_site
        item = _to_completed(db_session, make_line_item(assigned_domain=site.domain), offering)
        with pytest.raises(ValidationError):
            _step(db_session, item, action)
        item = lifecycle.get_line_item(db_session, item.id)
        item = _step(db_session, item, action, reason="Link removed after 2 weeks")
        assert item.status == status
        assert item.exception_reason == "Link removed after 2 weeks"


class TestBulk:
    def test_bulk_transition_shares_batch(self, db_session, make_line_item):
        items = [make_line_item(), make_line_item()]
        batch_id, updated = lifecycle.bulk_transition(
            db_session, [(i.id, i.version) for i in items], "submit", actor="ops-1"
        )
        assert {i.status for i in updated} == {FulfillmentStatus.PENDING_SELECTION}

        entries = audit_log.by_batch(db_session, batch_id)
        assert {e.line_item_id for e in entries} == {i.id for i in items}
        assert all(e.change_type == ChangeType.STATUS_CHANGED for e in entries)

    def test_one_failure_rolls_back_everything(self, db_session, make_line_item):
        good, stale = make_line_item(), make_line_item()
        with pytest.raises(BatchError) as exc:
            lifecycle.bulk_transition(
                db_session, [(good.id, good.version), (stale.id, stale.version + 5)],
                "submit", actor="ops-1",
            )
        assert exc.value.failures == [
            {
                "line_item_id": str(stale.id),
                "error": exc.value.failures[0]["error"],
                "error_type": "ConflictError",
            }
        ]
        for item_id in (good.id, stale.id):
            item = lifecycle.get_line_item(db_session, item_id)
            assert item.status == FulfillmentStatus.DRAFT
            assert item.version == 1
            assert len(audit_log.history(db_session, item_id)) == 1

    def test_missing_item_reported(self, db_session, make_line_item):
        item = make_line_item()
        ghost = uuid.uuid4()
        with pytest.raises(BatchError) as exc:
            lifecycle.bulk_transition(
                db_session, [(item.id, 1), (ghost, 1)], "submit", actor="ops-1"
            )
        assert exc.value.failures[0]["error_type"] == "NotFoundError"

    def test_duplicate_targets_rejected(self, db_session, make_line_item):
        item = make_line_item()
        with pytest.raises(ValidationError):
            lifecycle.bulk_transition(
                db_session, [(item.id, 1), (item.id, 1)], "submit", actor="ops-1"
            )

    def test_cancel_line_items(self, db_session, make_line_item):
        items = [make_line_item(), make_line_item()]
        batch_id, cancelled = lifecycle.cancel_line_items(
            db_session, [(i.id, i.version) for i in items], "Order withdrawn", actor="ops-1"
        )
        assert all(i.status == FulfillmentStatus.CANCELLED for i in cancelled)
        assert len(audit_log.by_batch(db_session, batch_id)) == 2

    def test_cancel_line_items_without_reason(self, db_session, make_line_item):
        item = make_line_item()
        with pytest.raises(BatchError):
            lifecycle.cancel_line_items(db_session, [(item.id, 1)], "", actor="ops-1")


class TestQueries:
    def test_unknown_line_item(self, db_session):
        with pytest.raises(NotFoundError):
            lifecycle.get_line_item(db_session, uuid.uuid4())

    def test_list_filters(self, db_session, make_line_item, order_id):
        draft = make_line_item()
        submitted = _step(db_session, make_line_item(), "submit")
        assert [i.id for i in lifecycle.list_line_items(db_session, order_id)] == [
            draft.id,
            submitted.id,
        ]
        assert [
            i.id for i in lifecycle.list_line_items(db_session, order_id, "pending_selection")
        ] == [submitted.id]
        with pytest.raises(ValidationError):
            lifecycle.list_line_items(db_session, order_id, "lost")

    def test_order_summary(self, db_session, make_line_item, priced_site, order_id):
        site, offering = priced_site
        make_line_item()
        make_line_item(assigned_domain=site.domain)
        _to_approved(db_session, make_line_item(assigned_domain=site.domain), offering)

        summary = lifecycle.order_summary(db_session, order_id)
        assert summary["total"] == 3
        assert summary["by_status"] == {"draft": 2, "approved": 1}
        assert summary["total_value"] == 27900 + 22900
        assert summary["pending_count"] == 2
        assert summary["delivered_count"] == 0
