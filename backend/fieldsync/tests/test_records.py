import uuid

from fieldsync import models
from fieldsync.services.records import compute_compliance
from .conftest import TestingSessionLocal, create_parameter, create_sample, create_test_result


def test_create_and_update_with_current_token(client, headers):
    sample = create_sample(client, headers)
    assert sample["version"] == 1
    assert sample["payload"]["collector_name"] == "Abebe"

    resp = client.put(
        f"/api/records/samples/{sample['entity_id']}",
        json={"payload": {"notes": "clear"}, "presented_token": 1},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["version"] == 2
    assert resp.json()["payload"]["notes"] == "clear"


def test_stale_direct_edit_returns_conflict_without_backup(client, headers):
    sample = create_sample(client, headers)
    url = f"/api/records/samples/{sample['entity_id']}"
    client.put(url, json={"payload": {"notes": "first"}, "presented_token": 1}, headers=headers)

    stale = client.put(url, json={"payload": {"notes": "second"}, "presented_token": 1}, headers=headers)
    assert stale.status_code == 409
    detail = stale.json()["detail"]
    assert detail["error"] == "version_conflict"
    assert detail["current_version"] == 2
    assert detail["current_state"]["notes"] == "first"

    backups = client.get("/api/conflicts", params={"entity_id": sample["entity_id"]}, headers=headers).json()
    assert backups == []


def test_invalid_payload_is_rejected(client, headers):
    resp = client.post(
        "/api/records/samples",
        json={"payload": {"sample_type": "seawater", "collector_name": ""}},
        headers=headers,
    )
    assert resp.status_code == 422
    assert resp.json()["detail"]["error"] == "validation_failure"

    unknown = client.post("/api/records/widgets", json={"payload": {}}, headers=headers)
    assert unknown.status_code == 404


def test_soft_delete_keeps_row(client, headers):
    sample = create_sample(client, headers)
    resp = client.delete(
        f"/api/records/samples/{sample['entity_id']}",
        params={"presented_token": 1},
        headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["is_deleted"] is True

    session = TestingSessionLocal()
    stored = session.get(models.Sample, uuid.UUID(sample["entity_id"]))
    assert stored is not None
    assert stored.deleted_by == "tech-a"
    session.close()


def test_result_unit_must_match_parameter(client, headers):
    parameter = create_parameter(client, headers)
    sample = create_sample(client, headers)
    resp = client.post(
        "/api/records/test-results",
        json={
            "payload": {
                "sample_id": sample["entity_id"],
                "parameter_id": parameter["entity_id"],
                "value": 3.0,
                "unit": "ppm",
                "test_date": "2026-03-02T11:00:00+00:00",
                "technician_name": "Hana",
            }
        },
        headers=headers,
    )
    assert resp.status_code == 422


def test_compliance_follows_measurement(client, headers):
    parameter = create_parameter(client, headers)
    sample = create_sample(client, headers)
    result = create_test_result(client, headers, sample["entity_id"], parameter["entity_id"], value=47.0)
    assert result["payload"]["compliance_status"] == "warning"

    resp = client.put(
        f"/api/records/test-results/{result['entity_id']}",
        json={"payload": {"value": 61.0}, "presented_token": 1},
        headers=headers,
    )
    assert resp.json()["payload"]["compliance_status"] == "fail"


def test_compute_compliance_thresholds():
    parameter = models.Parameter(
        name="Fluoride",
        unit="mg/L",
        who_threshold=1.5,
        national_threshold=1.2,
        min_value=0.0,
        max_value=10.0,
        is_active=True,
    )
    assert compute_compliance(parameter, 0.8) == "pass"
    assert compute_compliance(parameter, 1.3) == "warning"
    assert compute_compliance(parameter, 1.6) == "fail"
    assert compute_compliance(parameter, -0.1) == "fail"
    assert compute_compliance(None, 1.0) == "warning"
    parameter.is_active = False
    assert compute_compliance(parameter, 0.8) == "warning"


def test_central_parameter_is_read_only(client, headers, lab_id):
    session = TestingSessionLocal()
    central = models.Parameter(
        name="pH",
        unit="pH",
        min_value=6.5,
        max_value=8.5,
        lab_id=None,
        last_modified_by="catalog",
    )
    session.add(central)
    session.commit()
    central_id = central.id
    session.close()

    resp = client.put(
        f"/api/records/parameters/{central_id}",
        json={"payload": {"max_value": 9.0}, "presented_token": 1},
        headers=headers,
    )
    assert resp.status_code == 422

    sample = create_sample(client, headers)
    result = create_test_result(client, headers, sample["entity_id"], str(central_id), unit="pH", value=9.1)
    assert result["payload"]["compliance_status"] == "fail"


def test_submitted_result_is_locked_for_direct_edits(client, headers):
    parameter = create_parameter(client, headers)
    sample = create_sample(client, headers)
    result = create_test_result(
        client, headers, sample["entity_id"], parameter["entity_id"], status="submitted"
    )
    resp = client.put(
        f"/api/records/test-results/{result['entity_id']}",
        json={"payload": {"value": 1.0}, "presented_token": 1},
        headers=headers,
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "immutable_record"


def test_submitted_result_is_locked_whatever_the_token(client, headers):
    parameter = create_parameter(client, headers)
    sample = create_sample(client, headers)
    result = create_test_result(
        client, headers, sample["entity_id"], parameter["entity_id"], status="submitted"
    )
    resp = client.put(
        f"/api/records/test-results/{result['entity_id']}",
        json={"payload": {"value": 99.0}, "presented_token": 0},
        headers=headers,
    )
    assert resp.status_code == 409
    assert resp.json()["detail"]["error"] == "immutable_record"


def test_client_compliance_status_is_ignored(client, headers):
    parameter = create_parameter(client, headers)
    sample = create_sample(client, headers)
    result = create_test_result(
        client,
        headers,
        sample["entity_id"],
        parameter["entity_id"],
        value=61.0,
        compliance_status="pass",
    )
    assert result["payload"]["compliance_status"] == "fail"


def test_void_links_correction_and_locks_original(client, headers):
    parameter = create_parameter(client, headers)
    sample = create_sample(client, headers)
    original = create_test_result(
        client, headers, sample["entity_id"], parameter["entity_id"], status="submitted"
    )
    resp = client.post(
        f"/api/records/test-results/{original['entity_id']}/void",
        json={
            "presented_token": 1,
            "reason": "pipette calibration drift",
            "replacement": {
                "value": 11.9,
                "unit": "mg/L",
                "test_date": "2026-03-03T08:00:00+00:00",
                "technician_name": "Hana",
                "status": "submitted",
            },
        },
        headers=headers,
    )
    assert resp.status_code == 200, resp.text
    voided, replacement = resp.json()
    assert voided["version"] == 2
    assert voided["payload"]["status"] == "voided"
    assert voided["payload"]["replaced_by_test_result_id"] == replacement["entity_id"]
    assert voided["payload"]["value"] == 12.5
    assert replacement["payload"]["voided_test_result_id"] == original["entity_id"]
    assert replacement["payload"]["sample_id"] == sample["entity_id"]

    again = client.put(
        f"/api/records/test-results/{original['entity_id']}",
        json={"payload": {"void_reason": "typo"}, "presented_token": 2},
        headers=headers,
    )
    assert again.status_code == 409

    history = client.get(f"/api/audit/entity/test_result/{original['entity_id']}", headers=headers).json()
    assert [entry["action"] for entry in history] == ["create", "update"]
    assert set(history[-1]["changed_fields"]) >= {"status", "replaced_by_test_result_id", "void_reason"}


def test_void_requires_submitted_result(client, headers):
    parameter = create_parameter(client, headers)
    sample = create_sample(client, headers)
    draft = create_test_result(client, headers, sample["entity_id"], parameter["entity_id"])
    resp = client.post(
        f"/api/records/test-results/{draft['entity_id']}/void",
        json={"presented_token": 1, "reason": "wrong", "replacement": {}},
        headers=headers,
    )
    assert resp.status_code == 422
