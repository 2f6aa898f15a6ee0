import json
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
import sqlalchemy as sa
from typer.testing import CliRunner

from fieldsync import models, tasks
from fieldsync.cli import archive_audit
from fieldsync.exceptions import ArchivalBatchFailure
from .conftest import TestingSessionLocal

AGED = datetime(2001, 1, 1, tzinfo=timezone.utc)
CUTOFF = datetime(2002, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def aged_window(db):
    """Clear every entry older than the cutoff so counts only see this test's rows."""

    def clear():
        for table in (models.AuditEntry.__table__, models.AuditArchiveEntry.__table__):
            db.execute(table.delete().where(table.c.timestamp < CUTOFF))
        db.commit()

    clear()
    yield
    clear()


def _seed_aged_entries(db, count, lab_id=None):
    rows = [
        {
            "id": uuid4(),
            "actor_id": "tech-a",
            "lab_id": lab_id,
            "entity_type": "sample",
            "entity_id": uuid4(),
            "action": "update",
            "old_value": json.dumps({"notes": None}),
            "new_value": json.dumps({"notes": f"visit {index}"}),
            "changed_fields": ["notes"],
            "is_truncated": False,
            "timestamp": AGED + timedelta(seconds=index),
        }
        for index in range(count)
    ]
    db.execute(sa.insert(models.AuditEntry.__table__), rows)
    db.commit()
    return rows


def _count(db, model):
    return db.execute(sa.select(sa.func.count(model.id)).where(model.timestamp < CUTOFF)).scalar_one()


def test_archives_in_batches_and_is_idempotent(db, aged_window):
    seeded = _seed_aged_entries(db, 5000)

    report = tasks.archive_audit_entries(db, cutoff=CUTOFF, batch_size=1000)
    assert report.batch_counts == [1000] * 5
    assert report.archived == 5000
    assert _count(db, models.AuditEntry) == 0
    assert _count(db, models.AuditArchiveEntry) == 5000

    archived = db.get(models.AuditArchiveEntry, seeded[42]["id"])
    assert archived.new_value == seeded[42]["new_value"]
    assert archived.changed_fields == ["notes"]
    assert archived.archived_at is not None

    rerun = tasks.archive_audit_entries(db, cutoff=CUTOFF, batch_size=1000)
    assert rerun.batches == 0
    assert _count(db, models.AuditArchiveEntry) == 5000


def test_recent_entries_stay_hot(db, aged_window):
    _seed_aged_entries(db, 3)
    fresh_id = uuid4()
    db.add(
        models.AuditEntry(
            id=fresh_id,
            actor_id="tech-a",
            entity_type="sample",
            entity_id=uuid4(),
            action="create",
            changed_fields=[],
            timestamp=datetime.now(timezone.utc),
        )
    )
    db.commit()
    tasks.archive_audit_entries(db, cutoff=CUTOFF, batch_size=10)
    assert db.get(models.AuditEntry, fresh_id) is not None


def test_failed_batch_rolls_back_and_next_run_resumes(db, aged_window, monkeypatch):
    _seed_aged_entries(db, 2500)
    original_delete = tasks._delete_batch
    calls = {"count": 0}

    def flaky_delete(session, ids):
        calls["count"] += 1
        if calls["count"] == 2:
            raise RuntimeError("disk full")
        return original_delete(session, ids)

    monkeypatch.setattr(tasks, "_delete_batch", flaky_delete)
    with pytest.raises(ArchivalBatchFailure) as excinfo:
        tasks.archive_audit_entries(db, cutoff=CUTOFF, batch_size=1000)
    assert excinfo.value.batch_index == 1
    assert excinfo.value.archived_so_far == 1000
    # the failed batch is neither copied nor deleted
    assert _count(db, models.AuditEntry) == 1500
    assert _count(db, models.AuditArchiveEntry) == 1000

    monkeypatch.setattr(tasks, "_delete_batch", original_delete)
    report = tasks.archive_audit_entries(db, cutoff=CUTOFF, batch_size=1000)
    assert report.batch_counts == [1000, 500]
    assert _count(db, models.AuditEntry) == 0
    assert _count(db, models.AuditArchiveEntry) == 2500


def test_archived_entries_remain_in_entity_history(client, db, lab_id, aged_window):
    rows = _seed_aged_entries(db, 1, lab_id=lab_id)
    tasks.archive_audit_entries(db, cutoff=CUTOFF)
    entity_id = rows[0]["entity_id"]
    headers = {"X-Actor-Id": "tech-a", "X-Lab-Id": str(lab_id)}
    history = client.get(f"/api/audit/entity/sample/{entity_id}", headers=headers).json()
    assert len(history) == 1
    assert history[0]["archived"] is True
    hot_only = client.get(
        f"/api/audit/entity/sample/{entity_id}", params={"include_archive": "false"}, headers=headers
    ).json()
    assert hot_only == []


def test_scheduled_task_reports_outcome(db, aged_window, monkeypatch):
    _seed_aged_entries(db, 30)
    monkeypatch.setattr(tasks, "SessionLocal", TestingSessionLocal)
    monkeypatch.setattr(tasks, "default_cutoff", lambda retention_days=None: CUTOFF)
    result = tasks.archive_audit_log(batch_size=20)
    assert result["status"] == "completed"
    assert result["batch_counts"] == [20, 10]
    assert "nightly-audit-archival" in tasks.celery_app.conf.beat_schedule


def test_cli_pending_and_run(db, aged_window, monkeypatch):
    _seed_aged_entries(db, 7)
    monkeypatch.setattr(archive_audit, "SessionLocal", TestingSessionLocal)
    runner = CliRunner()

    pending = runner.invoke(archive_audit.app, ["pending", "--cutoff", CUTOFF.isoformat()])
    assert pending.exit_code == 0, pending.output
    assert json.loads(pending.output)["pending"] == 7

    run = runner.invoke(archive_audit.app, ["run", "--cutoff", CUTOFF.isoformat(), "--batch-size", "5"])
    assert run.exit_code == 0, run.output
    summary = json.loads(run.output)
    assert summary["batch_counts"] == [5, 2]

    bad = runner.invoke(archive_audit.app, ["run", "--cutoff", "yesterday"])
    assert bad.exit_code != 0
