# tests/integration/test_api_endpoints.py
"""End-to-end tests of the HTTP surface with external services stubbed."""
import hashlib
import hmac
import itertools
import json
import time
from datetime import datetime
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient

from agent_admin.api import dependencies
from agent_admin.api.database_models import AgentDocument
from agent_admin.api.dependencies import (
    get_billing_service,
    get_calendar_factory,
    get_call_report_service,
    get_config_store,
    get_oauth_client,
    get_service_calendar,
    get_service_calendar_factory,
    get_token_minter,
    get_vapi_client,
)
from agent_admin.api_server import app
from agent_admin.auth import APIKeyManager
from agent_admin.billing import BillingService
from agent_admin.call_reports import CallReportService
from agent_admin.config import MissingConfigurationError
from agent_admin.google_auth import GoogleAuthError
from agent_admin.provisioning import TOOL_PARAMETER_OVERRIDES
from agent_admin.tool_calls import NOT_CONNECTED_MESSAGE
from agent_admin.vapi_client import RemoteAssistant, VapiAPIError

WEBHOOK_SECRET = "whsec_api_test"


def stripe_signature(payload: bytes) -> str:
    timestamp = int(time.time())
    digest = hmac.new(
        WEBHOOK_SECRET.encode(), f"{timestamp}.{payload.decode()}".encode(), hashlib.sha256
    ).hexdigest()
    return f"t={timestamp},v1={digest}"


def tool_call(name, arguments, call_id):
    return {"id": call_id, "type": "function", "function": {"name": name, "arguments": arguments}}


@pytest.fixture
def service_calendar(fake_calendar):
    return fake_calendar([])


@pytest.fixture
def agent_calendar(fake_calendar):
    return fake_calendar([])


@pytest.fixture
def vapi():
    return Mock()


@pytest.fixture
def oauth():
    return Mock()


@pytest.fixture
def minted():
    return []


@pytest.fixture
def client(store, vapi, oauth, service_calendar, agent_calendar, minted):
    """TestClient with every external dependency replaced."""
    def mint(uid):
        minted.append(uid)
        return f"token-for-{uid}"

    app.dependency_overrides[get_config_store] = lambda: store
    app.dependency_overrides[get_vapi_client] = lambda: vapi
    app.dependency_overrides[get_oauth_client] = lambda: oauth
    app.dependency_overrides[get_service_calendar] = lambda: service_calendar
    app.dependency_overrides[get_service_calendar_factory] = lambda: (lambda: service_calendar)
    app.dependency_overrides[get_calendar_factory] = lambda: Mock(return_value=agent_calendar)
    app.dependency_overrides[get_token_minter] = lambda: mint
    app.dependency_overrides[get_billing_service] = lambda: BillingService(
        store, secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET
    )
    app.dependency_overrides[get_call_report_service] = lambda: CallReportService(store, smtp_settings={})

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture
def saved_agent(client, business_document):
    response = client.patch("/api/agent/org-1/agent-1", json=business_document)
    assert response.status_code == 200
    return response


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["X-Request-ID"]


def test_request_id_is_echoed(client):
    response = client.get("/", headers={"X-Request-ID": "req-abc"})
    assert response.headers["X-Request-ID"] == "req-abc"


class TestAgentConfig:

    def test_unknown_agent_is_404(self, client):
        response = client.get("/api/agent/org-1/missing")

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"
        assert response.json()["error"] == "Agent not found"

    def test_first_patch_creates_version_one(self, saved_agent, client):
        assert saved_agent.headers["ETag"] == '"1"'
        assert saved_agent.json()["metadata"]["businessName"] == "Downtown Dental"
        assert saved_agent.json()["savedAt"]

        response = client.get("/api/agent/org-1/agent-1")
        assert response.headers["ETag"] == '"1"'

    def test_patch_with_current_etag(self, saved_agent, client):
        response = client.patch(
            "/api/agent/org-1/agent-1",
            json={"metadata": {"businessName": "Uptown Dental"}},
            headers={"If-Match": saved_agent.headers["ETag"]},
        )

        assert response.status_code == 200
        assert response.headers["ETag"] == '"2"'
        assert response.json()["metadata"]["businessName"] == "Uptown Dental"

    def test_weak_etag_is_accepted(self, saved_agent, client):
        response = client.patch(
            "/api/agent/org-1/agent-1",
            json={"operationMode": "Production"},
            headers={"If-Match": 'W/"1"'},
        )
        assert response.status_code == 200

    def test_stale_etag_is_409_with_current_version(self, saved_agent, client):
        client.patch("/api/agent/org-1/agent-1", json={"operationMode": "Production"})

        response = client.patch(
            "/api/agent/org-1/agent-1",
            json={"operationMode": "Training"},
            headers={"If-Match": '"1"'},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "VERSION_CONFLICT"
        assert response.headers["ETag"] == '"2"'
        assert client.get("/api/agent/org-1/agent-1").json()["operationMode"] == "Production"

    def test_invalid_config_is_422_and_not_stored(self, saved_agent, client):
        response = client.patch("/api/agent/org-1/agent-1", json={"operationMode": "Sleeping"})

        assert response.status_code == 422
        assert response.json()["code"] == "INVALID_CONFIG"
        assert client.get("/api/agent/org-1/agent-1").headers["ETag"] == '"1"'

    def test_partial_patch_keeps_other_sections(self, saved_agent, client):
        client.patch(
            "/api/agent/org-1/agent-1",
            json={"services": [{"id": "srv-3", "name": "Whitening", "durationMinutes": 90}]},
        )

        data = client.get("/api/agent/org-1/agent-1").json()
        assert [s["id"] for s in data["services"]] == ["srv-3"]
        assert data["locations"][0]["id"] == "loc-1"
        assert data["locations"][0]["operatingHours"] == "9:00 AM - 5:00 PM"

    def test_list_agents(self, saved_agent, client):
        response = client.get("/api/agent/org-1")

        assert response.status_code == 200
        assert response.json()["agents"] == [
            {"agentId": "agent-1", "version": "1", "businessName": "Downtown Dental", "assistantId": None}
        ]

    def test_unknown_organization_is_404(self, client):
        response = client.get("/api/organization/org-404")

        assert response.status_code == 404
        assert response.json()["error"] == "Organization not found"


class TestApiKeys:

    @pytest.fixture
    def key_manager(self, monkeypatch):
        monkeypatch.setenv("REQUIRE_API_KEY", "true")
        manager = APIKeyManager(database_url="sqlite:///:memory:")
        monkeypatch.setattr(dependencies, "_api_key_manager", manager)
        return manager

    def test_missing_key_is_401(self, client, key_manager):
        response = client.get("/api/agent/org-1")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "ApiKey"

    def test_invalid_key_is_401(self, client, key_manager):
        response = client.get("/api/agent/org-1", headers={"X-API-Key": "ak_nope"})
        assert response.status_code == 401

    def test_key_for_other_org_is_403(self, client, key_manager):
        api_key = key_manager.generate_api_key("org-2")
        response = client.get("/api/agent/org-1", headers={"X-API-Key": api_key})
        assert response.status_code == 403

    def test_key_for_org_is_accepted(self, client, key_manager):
        api_key = key_manager.generate_api_key("org-1")
        response = client.get("/api/agent/org-1", headers={"X-API-Key": api_key})
        assert response.status_code == 200

    def test_unscoped_routes_need_no_key(self, client, key_manager):
        assert client.get("/health").status_code == 200


class TestCalendar:

    def test_availability_metrics(self, client):
        response = client.get("/api/calendar/availability")

        assert response.status_code == 200
        metrics = response.json()["metrics"]
        assert metrics["totalEventsNext7Days"] == 0
        assert metrics["isHighlyAvailable"] is True

    def test_slots_use_default_hours(self, client, service_calendar, make_event):
        service_calendar.events.append(make_event(datetime(2030, 3, 4, 12), datetime(2030, 3, 4, 13)))

        response = client.get("/api/calendar/slots", params={"date": "2030-03-04", "duration": 60})

        assert response.status_code == 200
        data = response.json()
        assert data["durationMinutes"] == 60
        starts = [s["start"][11:16] for s in data["slots"]]
        assert starts[0] == "09:00"
        assert "11:30" not in starts
        assert "12:00" not in starts
        assert starts[-1] == "16:00"

    def test_slots_on_closed_day(self, client):
        response = client.get("/api/calendar/slots", params={"date": "2030-03-09"})

        assert response.status_code == 200
        assert response.json()["open"] is False
        assert response.json()["slots"] == []

    def test_slots_for_connected_agent(self, client, business_document, agent_calendar, service_calendar, make_event):
        business_document["integrations"] = {
            "googleCalendar": {"isConnected": True, "refreshToken": "rt-1", "calendarId": "cal-1"}
        }
        client.patch("/api/agent/org-1/agent-1", json=business_document)
        agent_calendar.events.append(make_event(datetime(2030, 3, 4, 9), datetime(2030, 3, 4, 16)))

        response = client.get(
            "/api/calendar/slots",
            params={"date": "2030-03-04", "orgId": "org-1", "agentId": "agent-1", "service": "checkup"},
        )

        data = response.json()
        assert data["durationMinutes"] == 30
        assert [s["start"][11:16] for s in data["slots"]] == ["16:00", "16:30"]
        assert service_calendar.list_calls == []

    def test_slots_require_date(self, client):
        response = client.get("/api/calendar/slots")

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestVapi:

    def test_provision_without_configuration_is_400(self, client):
        response = client.post("/api/vapi/assistant", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing configuration"

    def test_provision_inline_config(self, client, vapi, business_document):
        vapi.create_assistant.return_value = {"id": "asst-new"}

        response = client.post("/api/vapi/assistant", json={"config": business_document})

        assert response.status_code == 200
        assert response.json() == {"id": "asst-new"}
        payload = vapi.create_assistant.call_args[0][0]
        assert payload["name"]

    def test_provision_stored_agent_saves_assistant_id(self, saved_agent, client, vapi):
        vapi.create_assistant.return_value = {"id": "asst-new"}

        response = client.post("/api/vapi/assistant", json={"orgId": "org-1", "agentId": "agent-1"})

        assert response.status_code == 200
        stored = client.get("/api/agent/org-1/agent-1")
        assert stored.json()["vapi"]["assistantId"] == "asst-new"
        assert stored.headers["ETag"] == '"2"'

    def test_sync_gives_up_when_assistant_keeps_changing(self, client, vapi):
        versions = itertools.count(1)
        tools = [{"type": "function", "function": {"name": name, "parameters": {}}} for name in TOOL_PARAMETER_OVERRIDES]
        vapi.get_assistant.side_effect = lambda assistant_id: RemoteAssistant(
            data={"id": assistant_id, "model": {"tools": tools}}, version=str(next(versions))
        )

        response = client.post("/api/vapi/assistant/sync", json={"assistantId": "asst-1"})

        assert response.status_code == 409
        assert response.json()["code"] == "ASSISTANT_CONFLICT"
        vapi.update_assistant.assert_not_called()

    def test_sync_without_target_is_400(self, client):
        response = client.post("/api/vapi/assistant/sync", json={})
        assert response.status_code == 400

    def test_sync_agent_without_assistant_is_400(self, saved_agent, client):
        response = client.post("/api/vapi/assistant/sync", json={"orgId": "org-1", "agentId": "agent-1"})

        assert response.status_code == 400
        assert response.json()["error"] == "Agent has no provisioned assistant"

    def test_call_requires_number_and_assistant(self, client):
        response = client.post("/api/vapi/call", json={"assistantId": "asst-1"})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing phoneNumber or assistantId"

    def test_call(self, client, vapi):
        vapi.create_phone_call.return_value = {"id": "call-1", "status": "queued"}

        response = client.post("/api/vapi/call", json={"phoneNumber": "+15551234567", "assistantId": "asst-1"})

        assert response.json() == {"id": "call-1", "status": "queued"}
        vapi.create_phone_call.assert_called_once_with("asst-1", "+15551234567")

    def test_call_upstream_error_keeps_status(self, client, vapi):
        vapi.create_phone_call.side_effect = VapiAPIError("Couldn't Get Phone Number", status_code=400)

        response = client.post("/api/vapi/call", json={"phoneNumber": "+1", "assistantId": "asst-1"})

        assert response.status_code == 400
        assert response.json()["error"] == "Couldn't Get Phone Number"
        assert response.json()["code"] == "UPSTREAM_ERROR"

    def test_missing_vapi_key_is_500(self, client):
        def missing():
            raise MissingConfigurationError("VAPI Private Key is not configured on the server")

        app.dependency_overrides[get_vapi_client] = missing

        response = client.post("/api/vapi/call", json={"phoneNumber": "+1", "assistantId": "asst-1"})

        assert response.status_code == 500
        assert response.json()["code"] == "MISSING_CONFIGURATION"

    def test_tools_without_calls_is_400(self, client):
        response = client.post("/api/vapi/tools", json={"message": {}})

        assert response.status_code == 400
        assert response.json()["error"] == "No tool calls found in request"

    def test_tools_run_against_service_calendar(self, client):
        message = {"toolCalls": [
            tool_call("getCurrentDateTime", {}, "tc-1"),
            tool_call("noSuchTool", {}, "tc-2"),
        ]}

        response = client.post("/api/vapi/tools", json={"message": message})

        results = response.json()["results"]
        assert [r["toolCallId"] for r in results] == ["tc-1", "tc-2"]
        assert "dateTime" in json.loads(results[0]["result"])

    def test_webhook_tool_calls_use_agent_calendar(self, client, business_document, agent_calendar):
        business_document["vapi"] = {"assistantId": "asst-1"}
        business_document["integrations"] = {
            "googleCalendar": {"isConnected": True, "refreshToken": "rt-1", "calendarId": "cal-1"}
        }
        client.patch("/api/agent/org-1/agent-1", json=business_document)
        message = {
            "type": "tool-calls",
            "call": {"id": "call-1", "assistantId": "asst-1"},
            "toolCalls": [tool_call("findAvailableSlots", {"date": "2030-03-04"}, "tc-1")],
        }

        response = client.post("/api/vapi/webhook", json={"message": message})

        assert response.status_code == 200
        assert response.json()["results"][0]["toolCallId"] == "tc-1"
        assert agent_calendar.list_calls

    def test_webhook_tool_calls_for_unknown_assistant(self, client):
        message = {
            "type": "tool-calls",
            "call": {"assistantId": "asst-unknown"},
            "toolCalls": [tool_call("getCurrentDateTime", {}, "tc-1")],
        }

        response = client.post("/api/vapi/webhook", json={"message": message})

        assert response.json() == {"results": [{"toolCallId": "tc-1", "result": "Agent configuration not found"}]}

    def test_webhook_and_patch_accept_bare_integration_flags(self, client, store):
        with store.SessionLocal() as db:
            db.add(AgentDocument(
                org_id="org-1",
                agent_id="agent-1",
                data={"integrations": {"firebase": True, "googleCalendar": True}, "vapi": {"assistantId": "asst-1"}},
                version=1,
                assistant_id="asst-1",
            ))
            db.commit()
        message = {
            "type": "tool-calls",
            "call": {"assistantId": "asst-1"},
            "toolCalls": [tool_call("getCurrentDateTime", {}, "tc-1")],
        }

        response = client.post("/api/vapi/webhook", json={"message": message})

        assert response.status_code == 200
        assert response.json() == {"results": [{"toolCallId": "tc-1", "result": NOT_CONNECTED_MESSAGE}]}

        patched = client.patch("/api/agent/org-1/agent-1", json={"metadata": {"industry": "Dental"}})
        assert patched.status_code == 200
        assert patched.headers["ETag"] == '"2"'

    def test_webhook_end_of_call_report(self, client):
        message = {
            "type": "end-of-call-report",
            "call": {"id": "call-9"},
            "analysis": {"summary": "Booked a cleaning."},
        }

        response = client.post("/api/vapi/webhook", json={"message": message})

        assert response.json() == {"received": True, "callId": "call-9", "emailStatus": "skipped"}

    def test_webhook_other_messages_are_acknowledged(self, client):
        response = client.post("/api/vapi/webhook", json={"message": {"type": "status-update"}})
        assert response.json() == {"message": "Handled"}


class TestBilling:

    def test_checkout_requires_org_and_price(self, client):
        response = client.post("/api/stripe/checkout", json={"orgId": "org-1"})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing orgId or priceId"

    def test_checkout_returns_url(self, client):
        with patch("stripe.checkout.Session.create", return_value={"url": "https://checkout.stripe.com/c/1"}) as create:
            response = client.post("/api/stripe/checkout", json={"orgId": "org-1", "priceId": "price_1"})

        assert response.json() == {"url": "https://checkout.stripe.com/c/1"}
        assert create.call_args.kwargs["metadata"] == {"orgId": "org-1"}

    def test_webhook_with_bad_signature_changes_nothing(self, client, store):
        payload = json.dumps({
            "type": "checkout.session.completed",
            "data": {"object": {"metadata": {"orgId": "org-1"}}},
        }).encode()

        response = client.post(
            "/api/stripe/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=bad"}
        )

        assert response.status_code == 400
        assert response.json()["code"] == "INVALID_SIGNATURE"
        assert client.get("/api/organization/org-1").status_code == 404

    def test_webhook_without_signature_is_400(self, client):
        response = client.post("/api/stripe/webhook", content=b"{}")
        assert response.status_code == 400

    def test_checkout_completed_upgrades_plan(self, client):
        payload = json.dumps({
            "id": "evt_1",
            "type": "checkout.session.completed",
            "data": {"object": {"metadata": {"orgId": "org-1"}, "subscription": "sub_1", "customer": "cus_1"}},
        }).encode()

        response = client.post(
            "/api/stripe/webhook", content=payload, headers={"Stripe-Signature": stripe_signature(payload)}
        )

        assert response.json() == {"received": True, "orgId": "org-1", "plan": "PRO"}
        organization = client.get("/api/organization/org-1")
        assert organization.json()["plan"] == "PRO"
        assert organization.json()["stripeCustomerId"] == "cus_1"


class TestAuthBootstrap:

    def test_google_requires_code(self, client):
        response = client.post("/api/auth/google", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "Missing auth code"

    def test_google_code_exchange(self, client, oauth):
        oauth.exchange_code.return_value = {"access_token": "at", "refresh_token": "rt"}

        response = client.post("/api/auth/google", json={"code": "4/abc"})

        assert response.json() == {"access_token": "at", "refresh_token": "rt"}
        oauth.exchange_code.assert_called_once_with("4/abc")

    def test_google_error_keeps_status(self, client, oauth):
        oauth.exchange_code.side_effect = GoogleAuthError("invalid_grant", status_code=400)

        response = client.post("/api/auth/google", json={"code": "4/expired"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"

    def test_custom_token_requires_uid(self, client):
        response = client.post("/api/auth/create-custom-token", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "User ID is required"

    def test_custom_token(self, client, minted):
        response = client.post("/api/auth/create-custom-token", json={"uid": "user-1"})

        assert response.json() == {"customToken": "token-for-user-1"}
        assert minted == ["user-1"]

    def test_custom_token_failure_is_500(self, client):
        app.dependency_overrides[get_token_minter] = lambda: Mock(side_effect=ValueError("bad uid"))

        response = client.post("/api/auth/create-custom-token", json={"uid": "user-1"})

        assert response.status_code == 500
        assert response.json()["code"] == "TOKEN_ERROR"
