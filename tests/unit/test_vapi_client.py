"""Tests for the VAPI REST client."""
from unittest.mock import Mock

import pytest
import requests

from agent_admin.config import MissingConfigurationError
from agent_admin.vapi_client import VapiAPIError, VapiClient


def response(status=200, body=None, headers=None):
    resp = Mock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = body if body is not None else {}
    resp.headers = headers or {}
    resp.text = ""
    return resp


@pytest.fixture
def session():
    return Mock()


@pytest.fixture
def client(session):
    return VapiClient(api_key="vapi-secret", base_url="https://api.vapi.test/", session=session)


def test_missing_api_key(monkeypatch):
    monkeypatch.delenv("VAPI_PRIVATE_KEY", raising=False)
    with pytest.raises(MissingConfigurationError) as exc_info:
        VapiClient()
    assert "VAPI Private Key" in str(exc_info.value)


def test_get_assistant_prefers_etag(client, session):
    session.get.return_value = response(
        body={"id": "asst-1", "updatedAt": "2030-01-01T00:00:00Z"}, headers={"ETag": 'W/"abc"'}
    )

    remote = client.get_assistant("asst-1")

    assert remote.id == "asst-1"
    assert remote.version == 'W/"abc"'
    url = session.get.call_args[0][0]
    assert url == "https://api.vapi.test/assistant/asst-1"
    assert session.get.call_args[1]["headers"]["Authorization"] == "Bearer vapi-secret"


def test_get_assistant_falls_back_to_updated_at(client, session):
    session.get.return_value = response(body={"id": "asst-1", "updatedAt": "2030-01-01T00:00:00Z"})
    assert client.get_assistant("asst-1").version == "2030-01-01T00:00:00Z"


def test_update_sends_if_match(client, session):
    session.patch.return_value = response(body={"id": "asst-1"})

    client.update_assistant("asst-1", {"model": {}}, if_match="v1")

    headers = session.patch.call_args[1]["headers"]
    assert headers["If-Match"] == "v1"
    assert session.patch.call_args[1]["json"] == {"model": {}}


def test_update_without_version_has_no_if_match(client, session):
    session.patch.return_value = response(body={"id": "asst-1"})
    client.update_assistant("asst-1", {"name": "x"})
    assert "If-Match" not in session.patch.call_args[1]["headers"]


def test_upstream_error_carries_status_and_message(client, session):
    failed = response(status=400, body={"message": "voiceId is invalid"})
    session.post.return_value = failed

    with pytest.raises(VapiAPIError) as exc_info:
        client.create_assistant({"name": "x"})

    assert exc_info.value.status_code == 400
    assert exc_info.value.message == "voiceId is invalid"


def test_unreachable_upstream_is_a_502(client, session):
    session.patch.side_effect = requests.exceptions.ConnectionError("connection refused")

    with pytest.raises(VapiAPIError) as exc_info:
        client.update_assistant("asst-1", {"name": "x"})

    assert exc_info.value.status_code == 502
    assert "connection refused" in exc_info.value.message


def test_create_phone_call(client, session):
    session.post.return_value = response(status=201, body={"id": "call-1", "status": "queued"})

    result = client.create_phone_call("asst-1", "+15551234567")

    assert result["id"] == "call-1"
    assert session.post.call_args[0][0] == "https://api.vapi.test/call/phone"
    assert session.post.call_args[1]["json"] == {
        "assistantId": "asst-1", "customer": {"number": "+15551234567"}
    }


def test_list_assistants(client, session):
    session.get.return_value = response(body=[{"id": "a"}, {"id": "b"}])
    assert [a["id"] for a in client.list_assistants(limit=2)] == ["a", "b"]
    assert session.get.call_args[1]["params"] == {"limit": 2}
