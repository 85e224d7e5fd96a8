"""
Admin billing endpoints: auth (admin key / admin role token), grant / revoke,
failed-event listing and replay.
"""
import json
from unittest.mock import patch

import pytest
from sqlalchemy import insert, select

from quizcast.core.database import billing_admin_audit, billing_events, get_db_session
from quizcast.features.entitlements.store import EntitlementStore
from quizcast.models.entitlement import SubscriptionPlan

ADMIN_KEY = "admin-test-key"


@pytest.fixture
def admin_key(default_settings, monkeypatch):
    monkeypatch.setattr(default_settings, "ADMIN_KEY", ADMIN_KEY)
    return {"X-Admin-Key": ADMIN_KEY}


def _audit_rows():
    with get_db_session() as session:
        return session.execute(select(billing_admin_audit)).fetchall()


def _store_failed_event(event_id="evt_failed", payload=None, error="provider_unavailable: timeout"):
    payload = payload or {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {"object": {"metadata": {"uid": "alice", "plan": "monthly"}, "subscription": None}},
    }
    with get_db_session() as session:
        session.execute(
            insert(billing_events).values(
                stripe_event_id=event_id,
                event_type=payload["type"],
                payload_hash="0" * 64,
                payload_json=json.dumps(payload),
                processed=False,
                error=error,
            )
        )


def test_grant_with_admin_key(client, admin_key):
    resp = client.post("/admin/entitlements/alice/grant", json={"plan": "yearly"}, headers=admin_key)

    assert resp.status_code == 200
    body = resp.json()
    assert body["unlimited"] is True
    assert body["subscription"] == "yearly"
    assert body["valid_until"] is not None

    record = EntitlementStore().get("alice")
    assert record.subscription_plan == SubscriptionPlan.YEARLY

    rows = _audit_rows()
    assert [r.action for r in rows] == ["grant_unlimited"]
    assert rows[0].actor.startswith("key:")
    assert rows[0].target_user_id == "alice"


def test_grant_with_admin_role_token(client, auth_headers):
    resp = client.post(
        "/admin/entitlements/bob/grant",
        json={"plan": "monthly"},
        headers=auth_headers("root_admin", role="admin"),
    )

    assert resp.status_code == 200
    assert _audit_rows()[0].actor == "root_admin"


def test_grant_rejects_unknown_plan(client, admin_key):
    resp = client.post("/admin/entitlements/alice/grant", json={"plan": "lifetime"}, headers=admin_key)
    assert resp.status_code == 400
    assert EntitlementStore().get("alice") is None


def test_revoke_returns_user_to_credit_mode(client, admin_key):
    client.post("/admin/entitlements/alice/grant", json={"plan": "monthly"}, headers=admin_key)

    resp = client.post("/admin/entitlements/alice/revoke", headers=admin_key)

    assert resp.status_code == 200
    assert resp.json()["unlimited"] is False
    assert resp.json()["subscription"] == "none"


def test_revoke_unknown_user_is_404(client, admin_key):
    resp = client.post("/admin/entitlements/nobody/revoke", headers=admin_key)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "entitlement_not_found"


def test_non_admin_token_is_forbidden(client, auth_headers):
    resp = client.post("/admin/entitlements/alice/grant", json={"plan": "monthly"}, headers=auth_headers("alice"))
    assert resp.status_code == 403
    assert EntitlementStore().get("alice") is None


def test_missing_credentials_is_401(client, admin_key):
    resp = client.post("/admin/entitlements/alice/revoke")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "admin_unauthorized"


def test_wrong_admin_key_is_401(client, admin_key):
    resp = client.post("/admin/entitlements/alice/revoke", headers={"X-Admin-Key": "nope"})
    assert resp.status_code == 401


def test_admin_key_is_disabled_in_production(client, admin_key, default_settings, monkeypatch):
    monkeypatch.setattr(default_settings, "ENV", "production")
    resp = client.post("/admin/entitlements/alice/grant", json={"plan": "monthly"}, headers=admin_key)
    assert resp.status_code == 401


def test_unconfigured_admin_auth_is_503(client, default_settings, monkeypatch):
    monkeypatch.setattr(default_settings, "AUTH_JWT_SECRET", None)
    monkeypatch.setattr(default_settings, "AUTH_JWKS_URL", None)
    monkeypatch.setattr(default_settings, "AUTH_ISSUER", None)

    resp = client.get("/admin/billing/events/failed")

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "admin_auth_unconfigured"


def test_list_failed_events(client, admin_key):
    _store_failed_event("evt_failed")

    resp = client.get("/admin/billing/events/failed", headers=admin_key)

    assert resp.status_code == 200
    body = resp.json()
    assert body["total"] == 1
    assert body["events"][0]["stripe_event_id"] == "evt_failed"
    assert body["events"][0]["error"].startswith("provider_unavailable")


def test_list_failed_events_limit_is_bounded(client, admin_key):
    assert client.get("/admin/billing/events/failed?limit=0", headers=admin_key).status_code == 422
    assert client.get("/admin/billing/events/failed?limit=501", headers=admin_key).status_code == 422


def test_replay_applies_stored_event(client, admin_key, billing_settings):
    _store_failed_event("evt_failed")

    resp = client.post("/admin/billing/events/evt_failed/replay", headers=admin_key)

    assert resp.status_code == 200
    assert resp.json() == {"status": "applied", "event_id": "evt_failed", "user_id": "alice", "processed_at": None}
    assert EntitlementStore().get("alice").unlimited is True
    assert client.get("/admin/billing/events/failed", headers=admin_key).json()["total"] == 0
    assert "replay_webhook" in [r.action for r in _audit_rows()]


def test_replay_processed_event_is_duplicate(client, admin_key, billing_settings):
    _store_failed_event("evt_failed")
    client.post("/admin/billing/events/evt_failed/replay", headers=admin_key)

    resp = client.post("/admin/billing/events/evt_failed/replay", headers=admin_key)

    assert resp.status_code == 200
    assert resp.json()["status"] == "duplicate"


def test_replay_unknown_event_is_404(client, admin_key, billing_settings):
    resp = client.post("/admin/billing/events/evt_missing/replay", headers=admin_key)
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "event_not_found"


def test_replay_failing_again_keeps_event_listed(client, admin_key, billing_settings):
    payload = {
        "id": "evt_invoice",
        "type": "invoice.payment_succeeded",
        "data": {"object": {"subscription": "sub_1", "customer_email": "ghost@example.com"}},
    }
    _store_failed_event("evt_invoice", payload=payload, error="identity_missing: no user")

    with patch("stripe.Subscription.retrieve", return_value={"id": "sub_1", "metadata": {}, "current_period_end": 1900000000}):
        resp = client.post("/admin/billing/events/evt_invoice/replay", headers=admin_key)

    assert resp.status_code == 422
    failed = client.get("/admin/billing/events/failed", headers=admin_key).json()
    assert failed["events"][0]["stripe_event_id"] == "evt_invoice"
