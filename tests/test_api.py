"""
Tests for the HTTP surface in `api/`.

Runs the FastAPI app against a fresh in-memory store per test:
- Deal submission, actual commission entry and stage walk up to
  live_confirm_ltr.
- Error mapping (404 unknown deal, 409 invalid transition).
- Invoicing and repeat payment over HTTP.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_policy, get_store
from api.main import app
from repositories.memory_store import InMemoryNetworkStore

API = "/api/v1"

STAGES_BEFORE_LIVE = (
    "quote_request_received",
    "quote_sent",
    "quote_approved",
    "signup_submitted",
    "agreement_sent",
    "signed_awaiting_docs",
    "under_review",
    "approved",
)


@pytest.fixture
def client(policy):
    # one store per test, shared by every request of that test
    store = InMemoryNetworkStore(lock_timeout=1.0)
    app.dependency_overrides[get_store] = lambda: store
    app.dependency_overrides[get_policy] = lambda: policy
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _recruit(client: TestClient, first: str, last: str, sponsor_code=None) -> dict:
    body = {"first_name": first, "last_name": last}
    if sponsor_code is not None:
        body["sponsor_referral_code"] = sponsor_code
    response = client.post(f"{API}/partners", json=body)
    assert response.status_code == 201
    return response.json()


def _live_deal(client: TestClient) -> tuple:
    a = _recruit(client, "Alice", "Archer")
    b = _recruit(client, "Bob", "Baker", a["referral_code"])
    c = _recruit(client, "Cara", "Cole", b["referral_code"])
    deal = client.post(f"{API}/deals", json={
        "owner_partner_id": c["partner_id"],
        "product_type": "card_payments",
        "business_name": "Corner Cafe Ltd",
        "total_amount": "4800.00",
    }).json()
    actual = client.put(f"{API}/deals/{deal['deal_id']}/actual-commission", json={"actual_commission": "1000.00"})
    assert actual.status_code == 200
    for stage in STAGES_BEFORE_LIVE:
        response = client.post(
            f"{API}/deals/{deal['deal_id']}/transitions",
            json={"target_stage": stage, "acting_role": "admin"},
        )
        assert response.status_code == 200
    live = client.post(
        f"{API}/deals/{deal['deal_id']}/transitions",
        json={"target_stage": "live_confirm_ltr", "acting_role": "admin"},
    )
    assert live.status_code == 200
    return (a, b, c), deal, live.json()


def test_health(client) -> None:
    """Verify the health endpoint reports the service."""

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["service"] == "partner-network-api"


def test_create_deal_starts_submitted(client) -> None:
    """Verify a new deal starts at submitted with version 0."""

    owner = _recruit(client, "Alice", "Archer")

    response = client.post(f"{API}/deals", json={
        "owner_partner_id": owner["partner_id"],
        "product_type": "websites",
        "business_name": "Shop",
    })

    assert response.status_code == 201
    body = response.json()
    assert body["stage"] == "submitted"
    assert body["version"] == 0


def test_create_deal_unknown_owner(client) -> None:
    """Verify submitting for a missing partner returns 404."""

    response = client.post(f"{API}/deals", json={
        "owner_partner_id": str(uuid4()),
        "product_type": "websites",
        "business_name": "Shop",
    })

    assert response.status_code == 404


def test_walk_to_live_creates_three_commissions(client) -> None:
    """Verify reaching live_confirm_ltr pays C, B and A at 60/20/10."""

    (a, b, c), _, live = _live_deal(client)

    created = live["attribution"]["created"]
    amounts = {r["beneficiary_partner_id"]: Decimal(r["amount"]) for r in created}
    assert live["deal"]["stage"] == "live_confirm_ltr"
    assert amounts == {
        c["partner_id"]: Decimal("600.00"),
        b["partner_id"]: Decimal("200.00"),
        a["partner_id"]: Decimal("100.00"),
    }


def test_actual_commission_endpoint(client) -> None:
    """Verify the admin-entered commission is stored, reported, and locked once records exist."""

    _, deal, live = _live_deal(client)

    stored = client.get(f"{API}/deals/{deal['deal_id']}").json()
    locked = client.put(
        f"{API}/deals/{deal['deal_id']}/actual-commission",
        json={"actual_commission": "2000.00"},
    )
    negative = client.put(
        f"{API}/deals/{deal['deal_id']}/actual-commission",
        json={"actual_commission": "-5"},
    )

    assert Decimal(stored["actual_commission"]) == Decimal("1000.00")
    assert Decimal(live["attribution"]["company_remainder"]) == Decimal("100.00")
    assert locked.status_code == 400
    assert negative.status_code == 422


def test_invalid_transition_returns_409(client) -> None:
    """Verify a disallowed move returns 409 naming both stages."""

    owner = _recruit(client, "Alice", "Archer")
    deal = client.post(f"{API}/deals", json={
        "owner_partner_id": owner["partner_id"],
        "product_type": "websites",
        "business_name": "Shop",
    }).json()

    response = client.post(
        f"{API}/deals/{deal['deal_id']}/transitions",
        json={"target_stage": "completed", "acting_role": "admin"},
    )

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["current_stage"] == "submitted"
    assert detail["attempted_stage"] == "completed"
    assert client.get(f"{API}/deals/{deal['deal_id']}").json()["version"] == 0


def test_unknown_deal_returns_404(client) -> None:
    """Verify reads on a missing deal return 404."""

    assert client.get(f"{API}/deals/{uuid4()}").status_code == 404
    assert client.get(f"{API}/deals/{uuid4()}/history").status_code == 404


def test_deal_actions_by_role(client) -> None:
    """Verify a partner sees quote actions at quote_sent and an admin does not."""

    owner = _recruit(client, "Alice", "Archer")
    deal = client.post(f"{API}/deals", json={
        "owner_partner_id": owner["partner_id"],
        "product_type": "websites",
        "business_name": "Shop",
    }).json()
    for stage in ("quote_request_received", "quote_sent"):
        client.post(
            f"{API}/deals/{deal['deal_id']}/transitions",
            json={"target_stage": stage, "acting_role": "admin"},
        )

    partner = client.get(f"{API}/deals/{deal['deal_id']}/actions", params={"role": "partner"}).json()
    admin = client.get(f"{API}/deals/{deal['deal_id']}/actions", params={"role": "admin"}).json()

    assert [a["action"] for a in partner["actions"]] == ["approve_quote", "request_rates"]
    assert [a["action"] for a in admin["actions"]] == ["resend_quote"]


def test_stage_catalogue_hides_admin_stages_from_partners(client) -> None:
    """Verify partners do not see invoice_received in the stage list."""

    partner = [s["stage"] for s in client.get(f"{API}/stages").json()]
    admin = [s["stage"] for s in client.get(f"{API}/stages", params={"role": "admin"}).json()]

    assert "invoice_received" not in partner
    assert "invoice_received" in admin
    assert partner[0] == "submitted"


def test_referral_tree(client) -> None:
    """Verify the tree nests recruits under their sponsors."""

    (a, b, c), _, _ = _live_deal(client)

    (root,) = client.get(f"{API}/partners/tree").json()

    assert root["partner"]["partner_id"] == a["partner_id"]
    assert root["total_downline"] == 2
    assert root["total_referrals"] == 1
    assert root["children"][0]["children"][0]["partner"]["partner_id"] == c["partner_id"]


def test_invoice_and_repeat_payment(client) -> None:
    """Verify a second payment call reports changed=false and keeps the first reference."""

    (_, b, _), _, _ = _live_deal(client)

    created = client.post(f"{API}/invoices", json={"partner_id": b["partner_id"]})
    assert created.status_code == 201
    invoice_id = created.json()["invoice"]["invoice_id"]

    first = client.post(f"{API}/invoices/{invoice_id}/payment", json={"payment_reference": "BACS-1"})
    second = client.post(f"{API}/invoices/{invoice_id}/payment", json={"payment_reference": "BACS-2"})

    assert first.json()["changed"] is True
    assert second.status_code == 200
    assert second.json()["changed"] is False
    assert second.json()["invoice"]["payment_reference"] == "BACS-1"
    assert [r["status"] for r in second.json()["commissions"]] == ["paid"]


def test_commission_summary(client) -> None:
    """Verify the summary reports per-status counts for the partner."""

    (a, _, _), _, _ = _live_deal(client)

    summary = client.get(f"{API}/partners/{a['partner_id']}/commissions/summary").json()

    assert summary["counts"]["payable"] == 1
    assert Decimal(summary["outstanding"]) == Decimal("100.00")
