import os
os.environ["TESTING"] = "1"
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import sys
from pathlib import Path
import shutil

import uuid

sys.path.append(str(Path(__file__).resolve().parents[2]))

from fieldsync.main import app
from fieldsync.database import Base, get_db
from fieldsync import models
from fieldsync.scope import RequestScope

SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base.metadata.drop_all(bind=engine)
Base.metadata.create_all(bind=engine)

def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db


@pytest.fixture(autouse=True)
def upload_dir(tmp_path):
    d = tmp_path / "uploads"
    d.mkdir()
    os.environ["UPLOAD_DIR"] = str(d)
    yield d
    shutil.rmtree(d, ignore_errors=True)

@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def lab_id():
    """A fresh lab per test keeps lab-scoped assertions isolated."""

    session = TestingSessionLocal()
    lab = models.Lab(name=f"Lab {uuid.uuid4().hex[:8]}")
    session.add(lab)
    session.commit()
    lab_id = lab.id
    session.close()
    return lab_id


def lab_headers(lab_id, actor_id="tech-a"):
    return {"X-Actor-Id": actor_id, "X-Lab-Id": str(lab_id)}


@pytest.fixture
def headers(lab_id):
    return lab_headers(lab_id)


def device_scope(lab_id, actor_id="tech-a", device_id="device-a"):
    return RequestScope(actor_id=actor_id, lab_id=lab_id, device_id=device_id)


def sample_payload(**overrides):
    payload = {
        "sample_type": "drinking_water",
        "location_latitude": 9.03,
        "location_longitude": 38.74,
        "location_description": "Borehole 4",
        "location_hierarchy": None,
        "collection_date": "2026-03-01T09:30:00+00:00",
        "collector_name": "Abebe",
        "notes": None,
        "status": "pending",
    }
    payload.update(overrides)
    return payload


def create_parameter(client, headers, **overrides):
    payload = {"name": "Nitrate", "unit": "mg/L", "who_threshold": 50.0, "national_threshold": 45.0}
    payload.update(overrides)
    resp = client.post("/api/records/parameters", json={"payload": payload}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def create_sample(client, headers, **overrides):
    resp = client.post("/api/records/samples", json={"payload": sample_payload(**overrides)}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


def create_test_result(client, headers, sample_id, parameter_id, **overrides):
    payload = {
        "sample_id": sample_id,
        "parameter_id": parameter_id,
        "value": 12.5,
        "unit": "mg/L",
        "test_date": "2026-03-02T11:00:00+00:00",
        "technician_name": "Hana",
        "test_method": "spectrophotometry",
    }
    payload.update(overrides)
    resp = client.post("/api/records/test-results", json={"payload": payload}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()
