"""
tests/test_routers_pricing.py — Tests for routers/pricing.py

Covers: offering listing, ownership check/resolve, rule pricing,
derivation, shadow comparison, stats, overrides, promotion and the
error → status code mapping in main.py.

Called by: pytest
Depends on: routers/pricing.py, main.py, conftest.py fixtures
"""

import uuid

import pytest

from offering_engine.services import offering_repository as repo


@pytest.fixture()
def site_with_offers(make_publisher, make_website, make_offering):
    site = make_website("news.example.com", current_price=1500)
    high = make_offering(make_publisher(), site, 1500)
    low = make_offering(make_publisher(), site, 1200)
    return site, high, low


# ── Health & middleware ──────────────────────────────────────────────


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_request_id_generated_and_echoed(client):
    """Every response carries X-Request-ID; a caller-supplied one is kept."""
    assert client.get("/health").headers["X-Request-ID"]
    resp = client.get("/health", headers={"X-Request-ID": "trace-123"})
    assert resp.headers["X-Request-ID"] == "trace-123"


# ── Offerings & ownership ────────────────────────────────────────────


def test_list_offerings(client, site_with_offers):
    site, high, low = site_with_offers
    resp = client.get(f"/api/websites/{site.id}/offerings")
    assert resp.status_code == 200
    data = resp.json()
    assert {o["offering_id"] for o in data} == {str(high.id), str(low.id)}
    assert data[0]["offering_type"] == "guest_post"

    resp = client.get(f"/api/websites/{site.id}/offerings", params={"offering_type": "banner_ad"})
    assert resp.json() == []


def test_unknown_website_is_404(client):
    resp = client.get(f"/api/websites/{uuid.uuid4()}/offerings")
    assert resp.status_code == 404
    body = resp.json()
    assert body["error_type"] == "NotFoundError"
    assert body["retryable"] is False
    assert body["request_id"]


def test_bad_offering_type_is_400(client, site_with_offers):
    site, _, _ = site_with_offers
    resp = client.get(f"/api/websites/{site.id}/offerings", params={"offering_type": "billboard"})
    assert resp.status_code == 400
    assert resp.json()["error_type"] == "ValidationError"


def test_ownership_conflict_and_resolution(client, db_session, make_publisher, make_website):
    site = make_website()
    a, b = make_publisher(), make_publisher()
    for pub, status in ((a, "verified"), (b, "claimed")):
        repo.create_relationship(
            db_session, pub.id, site.id, relationship_type="owner", verification_status=status
        )

    check = client.get(f"/api/websites/{site.id}/ownership").json()
    assert check["status"] == "conflict_detected"
    assert len(check["claimants"]) == 2

    assert client.get("/api/ownership/conflicts").json() == {
        "website_ids": [str(site.id)],
        "count": 1,
    }

    resp = client.post(
        f"/api/websites/{site.id}/ownership/resolve",
        json={"winning_publisher_id": str(a.id), "notes": "WHOIS match"},
        headers={"X-Actor-Id": "admin-7"},
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "clear"

    history = client.get(f"/api/websites/{site.id}/history").json()
    assert [h["change_type"] for h in history] == ["ownership_resolved"]
    assert history[0]["changed_by"] == "admin-7"


def test_resolve_with_outsider_is_422(client, db_session, make_publisher, make_website):
    site = make_website()
    repo.create_relationship(
        db_session, make_publisher().id, site.id,
        relationship_type="owner", verification_status="claimed",
    )
    resp = client.post(
        f"/api/websites/{site.id}/ownership/resolve",
        json={"winning_publisher_id": str(make_publisher().id)},
    )
    assert resp.status_code == 422
    assert resp.json()["error_type"] == "PolicyViolationError"


# ── Rule engine ──────────────────────────────────────────────────────


def test_price_offering_with_context(client, db_session, make_publisher):
    offering = repo.create_offering(db_session, make_publisher().id, "guest_post", 50000)
    repo.add_pricing_rule(
        db_session, offering.id, "Volume Discount", "discount",
        conditions={"minQuantity": 5}, actions={"discountPercent": 10},
    )

    resp = client.post(f"/api/offerings/{offering.id}/price", json={"context": {"quantity": 5}})
    assert resp.status_code == 200
    data = resp.json()
    assert data["final_price"] == 45000
    assert data["applied_rules"] == ["Volume Discount"]
    assert data["steps"][0]["price_before"] == 50000

    resp = client.post(f"/api/offerings/{offering.id}/price")
    assert resp.json()["final_price"] == 50000


def test_price_offering_rejects_zero_quantity(client, db_session, make_publisher):
    offering = repo.create_offering(db_session, make_publisher().id, "guest_post", 100)
    resp = client.post(f"/api/offerings/{offering.id}/price", json={"context": {"quantity": 0}})
    assert resp.status_code == 422
    assert resp.json()["error_type"] == "RequestValidationError"


# ── Derivation & shadow mode ─────────────────────────────────────────


def test_derive_and_compare(client, site_with_offers):
    site, _, low = site_with_offers
    resp = client.post(f"/api/websites/{site.id}/derived-price", json={"strategy": "min_price"})
    assert resp.status_code == 200
    data = resp.json()
    assert data["price"] == 1200
    assert data["method"] == "auto_min"
    assert data["selected_offering_id"] == str(low.id)

    comparison = client.get(f"/api/websites/{site.id}/price-comparison").json()
    assert comparison["status"] == "mismatch"
    assert comparison["difference"] == -300
    assert comparison["percent_difference"] == "-20.00"


def test_unknown_strategy_is_422(client, site_with_offers):
    site, _, _ = site_with_offers
    resp = client.post(f"/api/websites/{site.id}/derived-price", json={"strategy": "average"})
    assert resp.status_code == 422


def test_comparisons_stats_and_recalculate(client, site_with_offers, make_website):
    make_website(current_price=900)
    assert client.post("/api/pricing/recalculate").json() == {"updated": 2, "errors": 0}

    comparisons = client.get("/api/pricing/comparisons").json()
    assert [c["status"] for c in comparisons] == ["derived_null", "mismatch"]
    assert len(client.get("/api/pricing/comparisons", params={"status": "mismatch"}).json()) == 1

    stats = client.get("/api/pricing/stats").json()
    assert stats["total_websites"] == 2
    assert stats["missing_derived"] == 1
    assert stats["ready_percentage"] == "0.0"


def test_override_set_and_remove(client, site_with_offers):
    site, high, _ = site_with_offers
    resp = client.put(
        f"/api/websites/{site.id}/price-override",
        json={"offering_id": str(high.id), "reason": "Contracted rate"},
    )
    assert resp.status_code == 200
    assert resp.json()["price"] == 1500
    assert resp.json()["method"] == "manual_override"

    resp = client.delete(f"/api/websites/{site.id}/price-override")
    assert resp.json()["price"] == 1200


def test_override_requires_reason(client, site_with_offers):
    site, high, _ = site_with_offers
    resp = client.put(
        f"/api/websites/{site.id}/price-override",
        json={"offering_id": str(high.id), "reason": "   "},
    )
    assert resp.status_code == 422


def test_promote_and_effective_price(client, site_with_offers):
    site, _, _ = site_with_offers
    assert client.get(f"/api/websites/{site.id}/effective-price").json()["price"] == 1500

    resp = client.post(
        f"/api/websites/{site.id}/promote-price",
        json={"reason": "Q3 repricing"},
        headers={"X-Actor-Id": "pricing-admin"},
    )
    assert resp.status_code == 200
    assert resp.json()["current_price"] == 1200
    assert resp.json()["status"] == "match"

    history = client.get(f"/api/websites/{site.id}/history").json()
    assert history[0]["change_type"] == "price_promoted"
    assert history[0]["change_reason"] == "Q3 repricing"

    effective = client.get(
        f"/api/websites/{site.id}/effective-price", params={"use_derived": True}
    ).json()
    assert effective == {"website_id": str(site.id), "price": 1200, "use_derived": True}


def test_promote_without_derived_price_is_422(client, make_website):
    site = make_website(current_price=1000)
    resp = client.post(f"/api/websites/{site.id}/promote-price")
    assert resp.status_code == 422
    assert resp.json()["error_type"] == "ComputationError"
