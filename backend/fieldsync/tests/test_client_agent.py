from uuid import UUID

import pytest

from fieldsync import models
from fieldsync.client import LocalStore, SyncAgent
from fieldsync.exceptions import NetworkInterruption
from .conftest import TestingSessionLocal, lab_headers, sample_payload


class ClientTransport:
    """Routes agent calls through the in-process test client."""

    def __init__(self, client, headers):
        self.client = client
        self.headers = headers
        self.bodies = []
        self.responses = []
        self.fail_next_pull = False

    def sync(self, device_id, body):
        self.bodies.append(body)
        if self.fail_next_pull and not body["records"]:
            self.fail_next_pull = False
            raise NetworkInterruption("connection dropped")
        resp = self.client.post(f"/api/sync/{device_id}", json=body, headers=self.headers)
        assert resp.status_code == 200, resp.text
        self.responses.append(resp.json())
        return self.responses[-1]


def _agent(client, lab_id, actor_id, device_id, path=None):
    transport = ClientTransport(client, lab_headers(lab_id, actor_id))
    return SyncAgent(LocalStore(path), transport, device_id), transport


def test_two_devices_editing_the_same_sample(client, lab_id):
    agent_a, _ = _agent(client, lab_id, "tech-a", "device-a")
    agent_b, _ = _agent(client, lab_id, "tech-b", "device-b")

    sample_id = agent_a.record_local_edit("sample", sample_payload())
    first = agent_a.sync()
    assert first.applied == 1
    assert agent_a.store.version_of(sample_id) == 1

    agent_b.sync()
    assert agent_b.store.version_of(sample_id) == 1
    assert agent_b.store.get(sample_id)["payload"]["collector_name"] == "Abebe"

    agent_a.record_local_edit("sample", {"collector_name": "Ana"}, entity_id=sample_id)
    agent_a.sync()
    assert agent_a.store.version_of(sample_id) == 2

    agent_b.record_local_edit("sample", {"notes": "sediment visible"}, entity_id=sample_id)
    summary = agent_b.sync()
    assert summary.conflicts == 1

    local = agent_b.store.get(sample_id)
    assert local["version"] == 2
    assert local["payload"]["collector_name"] == "Ana"
    assert local["payload"]["notes"] is None
    assert "version" not in local["payload"]
    assert not agent_b.store.is_dirty(sample_id)

    notification = agent_b.store.notifications[-1]
    assert notification["kind"] == "conflict"
    assert notification["entity_id"] == sample_id

    session = TestingSessionLocal()
    stored = session.get(models.Sample, UUID(sample_id))
    assert stored.collector_name == "Ana"
    assert stored.notes is None
    backup = session.get(models.ConflictBackup, UUID(notification["conflict_backup_id"]))
    assert backup.device_id == "device-b"
    assert backup.client_token == 1
    session.close()


def test_repeated_local_edits_collapse_into_one_write(client, lab_id):
    agent, transport = _agent(client, lab_id, "tech-a", "device-a")
    sample_id = agent.record_local_edit("sample", sample_payload())
    agent.record_local_edit("sample", {"notes": "first"}, entity_id=sample_id)
    agent.record_local_edit("sample", {"notes": "second"}, entity_id=sample_id)

    agent.sync()
    pushed = transport.bodies[0]["records"]
    assert len(pushed) == 1
    assert pushed[0]["payload"]["notes"] == "second"
    assert pushed[0]["presented_token"] is None


def test_interrupted_pull_resumes_without_repush(client, lab_id):
    agent, transport = _agent(client, lab_id, "tech-a", "device-a")
    sample_id = agent.record_local_edit("sample", sample_payload())
    agent.sync()
    agent.record_local_edit("sample", {"notes": "after storm"}, entity_id=sample_id)

    transport.fail_next_pull = True
    with pytest.raises(NetworkInterruption):
        agent.sync()
    assert agent.store.version_of(sample_id) == 2
    assert not agent.store.is_dirty(sample_id)
    watermark_before = agent.store.watermark

    transport.bodies.clear()
    agent.sync()
    assert [body["records"] for body in transport.bodies] == [[]]
    assert agent.store.watermark is not None
    assert agent.store.watermark >= watermark_before

    history = client.get(f"/api/audit/entity/sample/{sample_id}", headers=lab_headers(lab_id)).json()
    assert [entry["action"] for entry in history] == ["create", "update"]


def test_unpushed_local_edit_wins_over_pull(client, lab_id):
    agent_a, _ = _agent(client, lab_id, "tech-a", "device-a")
    agent_b, _ = _agent(client, lab_id, "tech-b", "device-b")
    sample_id = agent_a.record_local_edit("sample", sample_payload())
    agent_a.sync()
    agent_b.sync()

    agent_a.record_local_edit("sample", {"notes": "server side"}, entity_id=sample_id)
    agent_a.sync()
    agent_b.record_local_edit("sample", {"notes": "still typing"}, entity_id=sample_id)

    summary = agent_b.pull()
    assert summary.skipped >= 1
    assert agent_b.store.get(sample_id)["payload"]["notes"] == "still typing"
    assert agent_b.store.is_dirty(sample_id)


def test_store_persists_between_sessions(client, lab_id, tmp_path):
    path = tmp_path / "device" / "store.json"
    agent, _ = _agent(client, lab_id, "tech-a", "device-a", path=path)
    sample_id = agent.record_local_edit("sample", sample_payload())
    agent.sync()

    reopened = LocalStore(path)
    assert reopened.version_of(sample_id) == 1
    assert reopened.watermark == agent.store.watermark
    assert reopened.dirty == {}


def test_pull_does_not_echo_own_push(client, lab_id):
    agent, transport = _agent(client, lab_id, "tech-a", "device-a")
    sample_id = agent.record_local_edit("sample", sample_payload())
    agent.sync()

    agent.record_local_edit("sample", {"notes": "reading taken twice"}, entity_id=sample_id)
    transport.responses.clear()
    summary = agent.sync()
    assert summary.applied == 1
    push_response, pull_response = transport.responses
    assert sample_id not in {change["entity_id"] for change in pull_response["server_changes"]}
    assert agent.store.version_of(sample_id) == 2
    assert agent.store.get(sample_id)["payload"]["notes"] == "reading taken twice"


def test_invalid_edit_is_reverted_after_rejection(client, lab_id):
    agent, _ = _agent(client, lab_id, "tech-a", "device-a")
    sample_id = agent.record_local_edit("sample", sample_payload())
    agent.sync()

    agent.record_local_edit("sample", {"location_latitude": 123.0}, entity_id=sample_id)
    summary = agent.sync()
    assert summary.rejected == 1
    local = agent.store.get(sample_id)
    assert local["payload"]["location_latitude"] == 9.03
    assert local["version"] == 1
    assert not agent.store.is_dirty(sample_id)
    assert agent.store.notifications[-1]["reason"] == "validation_failure"

    orphan_id = agent.record_local_edit("sample", sample_payload(location_latitude=-200.0))
    agent.sync()
    assert agent.store.get(orphan_id) is None
    assert not agent.store.is_dirty(orphan_id)
