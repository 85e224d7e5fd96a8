"""
GET /credits: read-only view of the caller's entitlement.
"""
from unittest.mock import patch

from quizcast.core.errors import StoreUnavailableError
from quizcast.features.entitlements import service as entitlement_service
from quizcast.features.entitlements.store import EntitlementStore


def test_credits_requires_token(client):
    resp = client.get("/credits")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthenticated"


def test_credits_rejects_bad_token(client):
    resp = client.get("/credits", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 401


def test_fresh_user_sees_full_allowance(client, auth_headers):
    resp = client.get("/credits", headers=auth_headers("alice"))

    assert resp.status_code == 200
    assert resp.json() == {"credits": 2, "unlimited": False, "subscription": "none", "valid_until": None}


def test_credits_does_not_consume(client, auth_headers):
    client.get("/credits", headers=auth_headers("alice"))
    client.get("/credits", headers=auth_headers("alice"))

    assert EntitlementStore().get("alice").credits == 2


def test_credits_reflect_consumption(client, auth_headers):
    entitlement_service.evaluate("alice")

    resp = client.get("/credits", headers=auth_headers("alice"))
    assert resp.json()["credits"] == 1


def test_unlimited_user(client, auth_headers):
    entitlement_service.grant_unlimited("alice", "monthly")

    body = client.get("/credits", headers=auth_headers("alice")).json()

    assert body["unlimited"] is True
    assert body["credits"] is None
    assert body["subscription"] == "monthly"
    assert body["valid_until"] is not None


def test_store_outage_is_503(client, auth_headers):
    with patch.object(EntitlementStore, "read_modify_write", side_effect=StoreUnavailableError("db down")):
        resp = client.get("/credits", headers=auth_headers("alice"))

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "store_unavailable"
    assert resp.headers["x-request-id"]
