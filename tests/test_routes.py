"""
HTTP-level tests for the connector, availability and one-time code routes.
"""

from datetime import timedelta
from unittest.mock import AsyncMock
from urllib.parse import parse_qs, urlparse

import httpx
import respx
from fastapi.testclient import TestClient

from conftest import (
    NOW,
    TEST_SECRET,
    acuity_payload,
    auth_headers,
    build_container,
    make_credential,
)
from auth.jwt import verify_token
from connectors.acuity import AcuityConnector
from connectors.base import ProviderError
from connectors.oauth_state import cookie_name


def _authorize(client, path, **params):
    response = client.get(path, params={"token": _token(), **params})
    assert response.status_code == 302
    state = parse_qs(urlparse(response.headers["location"]).query)["state"][0]
    return response, state


def _token(user_id="user-1"):
    return auth_headers(user_id)["Authorization"].split(" ", 1)[1]


class TestHealthAndErrors:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_unknown_route_renders_error_body(self, client):
        response = client.get("/api/nope")

        assert response.status_code == 404
        assert "error" in response.json()

    def test_auth_required(self, client):
        response = client.get("/api/acuity/status")

        assert response.status_code == 401
        assert response.json() == {"error": "Not authenticated"}

    def test_bad_token(self, client):
        response = client.get("/api/acuity/status", headers={"Authorization": "Bearer junk"})
        assert response.status_code == 401


class TestOAuthFlow:
    def test_authorize_redirects_with_state_cookie(self, client):
        response, state = _authorize(client, "/api/acuity/authorize")

        assert response.headers["location"].startswith("https://acuity.example/authorize")
        assert cookie_name("acuity") in response.cookies
        assert state

    def test_authorize_without_session_goes_to_login(self, client):
        response = client.get("/api/acuity/authorize")

        assert response.status_code == 302
        assert response.headers["location"] == "https://app.example/login"

    def test_callback_stores_credential(self, client, acuity, credential_store):
        _, state = _authorize(client, "/api/acuity/authorize", return_url="/settings")

        response = client.get("/api/acuity/callback", params={"code": "c1", "state": state})

        assert response.status_code == 302
        assert response.headers["location"] == "https://app.example/settings"
        assert acuity.callback_args == [("c1", None)]
        stored = credential_store.rows[("user-1", "acuity")]
        assert stored.access_token == "acuity-access"
        assert stored.account_id == "acct-1"

    def test_square_callback_sends_code_verifier(self, client, square):
        response, state = _authorize(client, "/api/square/connect")
        assert "code_challenge=" in response.headers["location"]

        client.get("/api/square/callback", params={"code": "c1", "state": state})

        code, verifier = square.callback_args[0]
        assert code == "c1"
        assert verifier

    def test_callback_state_mismatch(self, client, credential_store):
        _authorize(client, "/api/acuity/authorize")

        response = client.get("/api/acuity/callback", params={"code": "c1", "state": "forged"})

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid state parameter"}
        assert credential_store.rows == {}

    def test_callback_without_cookie(self, client):
        response = client.get("/api/acuity/callback", params={"code": "c1", "state": "s"})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing state cookie"}

    def test_callback_missing_code(self, client):
        response = client.get("/api/acuity/callback", params={"state": "s"})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing code/state"}

    def test_callback_provider_error_param(self, client):
        response = client.get(
            "/api/square/callback",
            params={"error": "access_denied", "error_description": "User said no"},
        )

        assert response.status_code == 400
        assert response.json() == {"error": "access_denied", "details": "User said no"}

    def test_token_exchange_failure(self, client, acuity, credential_store):
        acuity.callback_error = ProviderError(
            "acuity", "Acuity token exchange failed (400)", status_code=400, body="invalid_grant"
        )
        _, state = _authorize(client, "/api/acuity/authorize")

        response = client.get("/api/acuity/callback", params={"code": "c1", "state": state})

        assert response.status_code == 400
        assert response.json() == {"error": "Token exchange failed", "details": "invalid_grant"}
        assert credential_store.rows == {}

    def test_token_endpoint_non_json_is_400(
        self, settings, credential_store, slot_store, fake_redis
    ):
        from main import create_app

        http = httpx.AsyncClient()
        container = build_container(
            settings, [AcuityConnector(settings, http)], credential_store, slot_store, fake_redis
        )
        app = create_app(settings, container)

        with respx.mock, TestClient(app, follow_redirects=False) as client:
            respx.post("https://acuityscheduling.com/oauth2/token").respond(
                200, text="<html>oops</html>"
            )
            _, state = _authorize(client, "/api/acuity/authorize")
            response = client.get("/api/acuity/callback", params={"code": "c1", "state": state})

        assert response.status_code == 400
        assert response.json() == {"error": "Token exchange failed", "details": "<html>oops</html>"}
        assert credential_store.rows == {}

    def test_mobile_callback_renders_page(self, client):
        _, state = _authorize(client, "/api/acuity/authorize", mobile="true")

        response = client.get("/api/acuity/callback", params={"code": "c1", "state": state})

        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert "Connected" in response.text

    def test_unconfigured_provider(self, client, acuity):
        acuity._configured = False

        response = client.get("/api/acuity/authorize", params={"token": _token()})

        assert response.status_code == 503


class TestStatusAndSettings:
    def test_status_not_connected(self, client):
        response = client.get("/api/acuity/status", headers=auth_headers())
        assert response.json() == {"connected": False}

    def test_status_connected(self, client, credential_store):
        credential_store.put(make_credential("square", account_id="M1", account_label="Fade Lab"))

        body = client.get("/api/square/status", headers=auth_headers()).json()

        assert body["connected"] is True
        assert body["merchant_id"] == "M1"
        assert body["account_label"] == "Fade Lab"
        assert body["needs_reconnect"] is False

    def test_status_flags_failed_refresh(self, client, credential_store):
        credential_store.put(make_credential(status="refresh_failed", error_message="invalid_grant"))

        body = client.get("/api/acuity/status", headers=auth_headers()).json()

        assert body["needs_reconnect"] is True
        assert body["error"] == "invalid_grant"

    def test_refresh(self, client, acuity, credential_store):
        credential_store.put(make_credential(expires_at=NOW + timedelta(days=1)))

        response = client.post("/api/acuity/refresh", headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert acuity.refresh_calls == 1

    def test_refresh_not_connected(self, client):
        response = client.post("/api/acuity/refresh", headers=auth_headers())

        assert response.status_code == 400
        assert response.json() == {"error": "No Acuity connection found"}

    def test_refresh_failure_details(self, client, acuity, credential_store):
        acuity.refresh_error = ProviderError("acuity", "invalid_grant")
        credential_store.put(make_credential())

        response = client.post("/api/acuity/refresh", headers=auth_headers())

        assert response.status_code == 400
        assert response.json()["error"] == "Failed to refresh token"
        assert "invalid_grant" in response.json()["details"]

    def test_calendars(self, client, acuity, credential_store):
        acuity.list_calendars = AsyncMock(
            return_value=[{"id": "1", "name": "Main", "timezone": "America/New_York"}]
        )
        credential_store.put(make_credential(provider_meta={"calendar": "Main"}))

        body = client.get("/api/acuity/calendars", headers=auth_headers()).json()

        assert body == {"calendars": [{"id": "1", "name": "Main"}], "selected": "Main"}

    def test_calendars_provider_failure(self, client, acuity, credential_store):
        acuity.list_calendars = AsyncMock(side_effect=ProviderError("acuity", "boom"))
        credential_store.put(make_credential())

        response = client.get("/api/acuity/calendars", headers=auth_headers())

        assert response.status_code == 502
        assert response.json()["error"] == "Failed to fetch calendars"

    def test_select_calendar(self, client, credential_store):
        credential_store.put(make_credential())

        response = client.post(
            "/api/acuity/calendar", json={"calendar": " Second "}, headers=auth_headers()
        )

        assert response.json() == {"success": True, "calendar": "Second"}
        assert credential_store.rows[("user-1", "acuity")].provider_meta["calendar"] == "Second"

    def test_select_calendar_validation(self, client, credential_store):
        credential_store.put(make_credential())

        response = client.post("/api/acuity/calendar", json={}, headers=auth_headers())

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_square_locations(self, client, square, credential_store):
        square.list_locations = AsyncMock(
            return_value=[
                {"id": "L2", "name": "Uptown", "timezone": None, "status": "INACTIVE"},
                {"id": "L1", "name": "Downtown", "timezone": "America/Chicago", "status": "ACTIVE"},
            ]
        )
        credential_store.put(make_credential("square", provider_meta={"location_ids": ["L1"]}))

        locations = client.get("/api/square/locations", headers=auth_headers()).json()["locations"]

        assert [(l["location_id"], l["is_active"], l["selected"]) for l in locations] == [
            ("L1", True, True),
            ("L2", False, False),
        ]

    def test_select_square_locations(self, client, credential_store):
        credential_store.put(make_credential("square"))

        response = client.post(
            "/api/square/locations",
            json={"selectedLocationIds": ["L1", "L1", "L3"]},
            headers=auth_headers(),
        )

        assert response.json() == {"success": True, "selected": ["L1", "L3"]}
        assert credential_store.rows[("user-1", "square")].provider_meta["location_ids"] == [
            "L1",
            "L3",
        ]

    def test_disconnect(self, client, acuity, credential_store):
        credential_store.put(make_credential())

        response = client.post("/api/acuity/disconnect", headers=auth_headers())

        assert response.json() == {"success": True, "result": "success"}
        assert acuity.revoke_calls == 1
        assert credential_store.rows == {}

    def test_disconnect_partial(self, client, square, credential_store):
        square.revoke_result = False
        credential_store.put(make_credential("square"))

        response = client.post("/api/square/disconnect", headers=auth_headers())

        assert response.json() == {"success": True, "result": "partial"}
        assert credential_store.rows == {}


class TestIntegrations:
    def test_providers(self, client):
        providers = client.get("/api/integrations/providers").json()

        assert [p["provider"] for p in providers] == ["acuity", "square"]
        assert all(p["configured"] for p in providers)

    def test_connections_hide_tokens(self, client, credential_store):
        credential_store.put(make_credential())

        connections = client.get("/api/integrations/connections", headers=auth_headers()).json()

        assert [c["provider"] for c in connections] == ["acuity"]
        assert "access_token" not in connections[0]
        assert "refresh_token" not in connections[0]


class TestAvailabilityPull:
    def test_no_sources(self, client):
        response = client.get("/api/availability/pull", headers=auth_headers())

        assert response.status_code == 200
        body = response.json()
        assert body["endpoint"] == "availability"
        assert body["result"]["success"] is False
        assert body["result"]["errors"] == ["No booking sources connected"]

    def test_pull(self, client, acuity, credential_store, slot_store):
        acuity.slots = [acuity_payload("09:00"), acuity_payload("10:00")]
        credential_store.put(make_credential())

        body = client.get(
            "/api/availability/pull",
            params={"dryRun": "true", "start": "2025-03-03", "end": "2025-03-10"},
            headers=auth_headers(),
        ).json()

        assert body["dryRun"] is True
        assert body["result"]["success"] is True
        assert body["result"]["total_slots"] == 2
        assert slot_store.write_calls == 0

    def test_partial_failure_still_200(self, client, acuity, square, credential_store):
        acuity.slots = [acuity_payload("09:00")]
        square.fetch_error = ProviderError("square", "Square API 500")
        credential_store.put(make_credential("acuity"))
        credential_store.put(make_credential("square"))

        response = client.get("/api/availability/pull", headers=auth_headers())

        assert response.status_code == 200
        result = response.json()["result"]
        assert result["total_slots"] == 1
        assert result["errors"] == ["Square: Square API 500"]

    def test_inverted_range(self, client):
        response = client.get(
            "/api/availability/pull",
            params={"start": "2025-03-10", "end": "2025-03-01"},
            headers=auth_headers(),
        )

        assert response.status_code == 400
        assert response.json() == {"error": "start must not be after end"}

    def test_invalid_date(self, client):
        response = client.get(
            "/api/availability/pull", params={"start": "soon"}, headers=auth_headers()
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"

    def test_unknown_mode_rejected(self, client, acuity, credential_store, slot_store):
        credential_store.put(make_credential())

        response = client.get(
            "/api/availability/pull", params={"mode": "foo"}, headers=auth_headers()
        )

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid request"
        assert acuity.fetch_calls == 0
        assert slot_store.write_calls == 0

    def test_update_mode(self, client, acuity, credential_store):
        acuity.slots = [acuity_payload("09:00")]
        credential_store.put(make_credential())

        body = client.get(
            "/api/availability/pull", params={"mode": "update"}, headers=auth_headers()
        ).json()

        assert body["result"]["update_mode"] is True


class TestOneTimeCodeRoutes:
    def test_web_token_exchange(self, client):
        issued = client.post("/api/generate-web-token", headers=auth_headers()).json()

        assert issued["expiresIn"] == 300
        response = client.post("/api/verify-web-token", json={"code": issued["code"]})

        body = response.json()
        assert body["token_type"] == "bearer"
        assert body["user"] == {"id": "user-1"}
        assert verify_token(body["access_token"], TEST_SECRET) == "user-1"

    def test_code_single_use(self, client):
        code = client.post("/api/generate-web-token", headers=auth_headers()).json()["code"]

        assert client.post("/api/verify-web-token", json={"code": code}).status_code == 200
        second = client.post("/api/verify-web-token", json={"code": code})

        assert second.status_code == 401
        assert second.json() == {"error": "Invalid or expired code. Please try again from the app."}

    def test_generate_requires_auth(self, client):
        assert client.post("/api/generate-web-token").status_code == 401

    def test_verify_requires_code(self, client):
        response = client.post("/api/verify-web-token", json={"code": ""})
        assert response.status_code == 400

    def test_otp_not_exchangeable_for_session(self, client):
        code = client.post("/api/otp/generate-otp", headers=auth_headers()).json()["code"]

        response = client.post("/api/verify-web-token", json={"code": code})

        assert response.status_code == 401
        assert "access_token" not in response.json()
        # still redeemable where it belongs
        verified = client.post(
            "/api/otp/verify-otp", json={"code": code}, headers=auth_headers()
        )
        assert verified.status_code == 200
        assert verified.json()["success"] is True

    def test_verify_otp_requires_auth(self, client):
        assert client.post("/api/otp/verify-otp", json={"code": "123456"}).status_code == 401

    def test_verify_otp_format(self, client):
        response = client.post(
            "/api/otp/verify-otp", json={"code": "12ab56"}, headers=auth_headers()
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid code format. Code must be 6 digits."}

    def test_verify_otp_other_user(self, client):
        code = client.post("/api/otp/generate-otp", headers=auth_headers("user-1")).json()["code"]

        response = client.post(
            "/api/otp/verify-otp", json={"code": code}, headers=auth_headers("user-2")
        )

        assert response.status_code == 400
        assert response.json() == {"error": "Invalid or expired verification code"}

    def test_repeated_failures_rate_limited(self, client, settings):
        code = client.post("/api/generate-web-token", headers=auth_headers()).json()["code"]

        for attempt in range(settings.verify_attempts_per_minute):
            response = client.post("/api/verify-web-token", json={"code": f"{attempt:06d}"})
            assert response.status_code == 401

        limited = client.post("/api/verify-web-token", json={"code": code})

        assert limited.status_code == 429
        assert limited.json()["error"].startswith("Too many attempts")
        assert int(limited.headers["Retry-After"]) >= 1

    def test_limit_window_expires(self, client, settings, fake_redis):
        code = client.post("/api/generate-web-token", headers=auth_headers()).json()["code"]
        for attempt in range(settings.verify_attempts_per_minute):
            client.post("/api/verify-web-token", json={"code": f"{attempt:06d}"})

        fake_redis.advance(61)

        assert client.post("/api/verify-web-token", json={"code": code}).status_code == 200
