"""Tests for the Firestore config store with a mocked client."""
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from google.api_core import exceptions as gexc

from agent_admin.config_store import (
    ConfigNotFoundError,
    ConfigStoreError,
    FirestoreConfigStore,
    VersionConflictError,
)

UPDATED = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


def snapshot(data, exists=True, update_time=UPDATED, doc_id="agent-1"):
    snap = Mock()
    snap.exists = exists
    snap.id = doc_id
    snap.update_time = update_time
    snap.to_dict.return_value = data
    return snap


@pytest.fixture
def client():
    return Mock()


@pytest.fixture
def agent_ref(client):
    return client.collection.return_value.document.return_value.collection.return_value.document.return_value


def test_get_agent_config_uses_update_time_as_version(client, agent_ref, business_document):
    agent_ref.get.return_value = snapshot(business_document)
    store = FirestoreConfigStore(client=client)

    document = store.get_agent_config("org-1", "agent-1")

    assert document.version == UPDATED.isoformat()
    assert document.data == business_document
    client.collection.assert_called_with("organizations")


def test_missing_document_is_not_found(client, agent_ref):
    agent_ref.get.return_value = snapshot(None, exists=False)
    with pytest.raises(ConfigNotFoundError):
        FirestoreConfigStore(client=client).get_agent_config("org-1", "agent-1")


def test_transport_error_is_store_error(client, agent_ref):
    agent_ref.get.side_effect = gexc.ServiceUnavailable("down")
    with pytest.raises(ConfigStoreError):
        FirestoreConfigStore(client=client).get_agent_config("org-1", "agent-1")


def test_merge_creates_missing_document(client, agent_ref, business_document):
    agent_ref.get.side_effect = [snapshot(None, exists=False), snapshot(business_document)]

    FirestoreConfigStore(client=client).merge_agent_config("org-1", "agent-1", business_document)

    written = agent_ref.create.call_args[0][0]
    assert written["metadata"]["businessName"] == "Downtown Dental"
    agent_ref.update.assert_not_called()


def test_merge_update_carries_precondition(client, agent_ref, business_document):
    agent_ref.get.return_value = snapshot(business_document)

    FirestoreConfigStore(client=client).merge_agent_config(
        "org-1", "agent-1", {"operationMode": "Production"}
    )

    client.write_option.assert_called_once_with(last_update_time=UPDATED)
    document, = agent_ref.update.call_args[0]
    assert document["operationMode"] == "Production"
    assert document["locations"][0]["id"] == "loc-1"
    assert agent_ref.update.call_args[1]["option"] is client.write_option.return_value


def test_failed_precondition_retries_with_fresh_read(client, agent_ref, business_document):
    agent_ref.get.return_value = snapshot(business_document)
    agent_ref.update.side_effect = [gexc.FailedPrecondition("changed"), None]

    FirestoreConfigStore(client=client).merge_agent_config(
        "org-1", "agent-1", {"operationMode": "Production"}
    )

    assert agent_ref.update.call_count == 2


def test_stale_expected_version_conflicts(client, agent_ref, business_document):
    agent_ref.get.return_value = snapshot(business_document)

    with pytest.raises(VersionConflictError) as exc_info:
        FirestoreConfigStore(client=client).merge_agent_config(
            "org-1", "agent-1", {"operationMode": "Production"}, expected_version="2020-01-01T00:00:00+00:00"
        )

    assert exc_info.value.current_version == UPDATED.isoformat()
    agent_ref.update.assert_not_called()


def test_find_agent_by_assistant_id(client, business_document):
    snap = snapshot(business_document, doc_id="agent-7")
    snap.reference.parent.parent.id = "org-3"
    query = client.collection_group.return_value.where.return_value.limit.return_value
    query.stream.return_value = iter([snap])

    found = FirestoreConfigStore(client=client).find_agent_by_assistant_id("asst-1")

    assert (found.org_id, found.agent_id) == ("org-3", "agent-7")
    client.collection_group.assert_called_once_with("agents")
