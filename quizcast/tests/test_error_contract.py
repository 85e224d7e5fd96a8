"""Normalized error responses: {"error": {code, message, request_id}} plus x-request-id."""
import logging


def test_unauthenticated_error_shape(client):
    resp = client.get("/credits")

    assert resp.status_code == 401
    body = resp.json()
    rid = resp.headers.get("x-request-id")
    assert body["error"]["code"] == "unauthenticated"
    assert body["error"]["request_id"] == rid
    assert body["detail"] == body["error"]["message"]


def test_provided_request_id_is_echoed_in_error(client):
    resp = client.get("/credits", headers={"X-Request-Id": "rid-42"})
    assert resp.json()["error"]["request_id"] == "rid-42"
    assert resp.headers["x-request-id"] == "rid-42"


def test_unknown_route_is_normalized(client):
    resp = client.get("/no-such-route")
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_unhandled_exception_is_500_without_internals(client, auth_headers, caplog, monkeypatch):
    from fastapi.testclient import TestClient

    from quizcast.features.entitlements import service as entitlement_service
    from quizcast.main import app

    def boom(*args, **kwargs):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(entitlement_service, "query_status", boom)
    safe_client = TestClient(app, raise_server_exceptions=False)

    with caplog.at_level(logging.ERROR, logger="quizcast"):
        resp = safe_client.get("/credits", headers=auth_headers("alice"))

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "internal_error"
    assert "secret internals" not in resp.text
