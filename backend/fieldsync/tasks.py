import os
import datetime
from dataclasses import dataclass, field
from datetime import timezone
from celery import Celery
from celery.schedules import crontab
from celery.utils.log import get_task_logger
from prometheus_client import Counter
import sqlalchemy as sa
from sqlalchemy.orm import Session

from .database import SessionLocal
from .exceptions import ArchivalBatchFailure
from . import models

CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", "memory://")
celery_app = Celery("fieldsync", broker=CELERY_BROKER_URL)
celery_app.conf.task_always_eager = (
    CELERY_BROKER_URL == "memory://" or os.getenv("TESTING") == "1"
)

AUDIT_RETENTION_DAYS = int(os.getenv("AUDIT_RETENTION_DAYS", "90"))
AUDIT_ARCHIVE_BATCH_SIZE = int(os.getenv("AUDIT_ARCHIVE_BATCH_SIZE", "1000"))
AUDIT_ARCHIVAL_HOUR = int(os.getenv("AUDIT_ARCHIVAL_HOUR", "2"))

logger = get_task_logger(__name__)

ARCHIVED_ENTRIES = Counter("audit_archived_entries_total", "Audit entries moved to the archive")
ARCHIVAL_BATCHES = Counter("audit_archival_batches_total", "Audit archival batches", ["outcome"])

celery_app.conf.beat_schedule = {
    "nightly-audit-archival": {
        "task": "fieldsync.tasks.archive_audit_log",
        "schedule": crontab(hour=AUDIT_ARCHIVAL_HOUR, minute=0),
    },
}


@dataclass
class ArchivalReport:
    cutoff: datetime.datetime
    batch_size: int
    batch_counts: list[int] = field(default_factory=list)

    @property
    def batches(self) -> int:
        return len(self.batch_counts)

    @property
    def archived(self) -> int:
        return sum(self.batch_counts)


def default_cutoff(retention_days: int | None = None) -> datetime.datetime:
    days = AUDIT_RETENTION_DAYS if retention_days is None else retention_days
    return datetime.datetime.now(timezone.utc) - datetime.timedelta(days=days)


def _next_batch_ids(db: Session, cutoff: datetime.datetime, batch_size: int) -> list:
    hot = models.AuditEntry
    return list(
        db.execute(
            sa.select(hot.id)
            .where(hot.timestamp < cutoff)
            .order_by(hot.timestamp.asc(), hot.id.asc())
            .limit(batch_size)
        ).scalars()
    )


def _copy_batch(db: Session, ids: list, archived_at: datetime.datetime) -> None:
    hot = models.AuditEntry.__table__
    cold = models.AuditArchiveEntry.__table__
    already_archived = sa.select(cold.c.id).where(cold.c.id.in_(ids))
    source = sa.select(
        *[hot.c[name] for name in models.AUDIT_COLUMNS],
        sa.literal(archived_at, type_=cold.c.archived_at.type).label("archived_at"),
    ).where(hot.c.id.in_(ids), hot.c.id.not_in(already_archived))
    db.execute(cold.insert().from_select([*models.AUDIT_COLUMNS, "archived_at"], source))


def _delete_batch(db: Session, ids: list) -> int:
    hot = models.AuditEntry.__table__
    return db.execute(hot.delete().where(hot.c.id.in_(ids))).rowcount


def archive_audit_entries(
    db: Session,
    cutoff: datetime.datetime | None = None,
    batch_size: int | None = None,
) -> ArchivalReport:
    """Move hot audit entries older than ``cutoff`` into the archive table.

    Each batch is copied and then deleted inside one transaction, so a
    failed batch leaves both tables as they were. Rows already present in
    the archive are not copied twice, which makes a rerun after a crash safe.
    """

    report = ArchivalReport(
        cutoff=cutoff or default_cutoff(),
        batch_size=batch_size or AUDIT_ARCHIVE_BATCH_SIZE,
    )
    if report.batch_size < 1:
        raise ValueError("batch_size must be positive")

    while True:
        ids = _next_batch_ids(db, report.cutoff, report.batch_size)
        if not ids:
            break
        try:
            _copy_batch(db, ids, datetime.datetime.now(timezone.utc))
            moved = _delete_batch(db, ids)
            db.commit()
        except Exception as exc:
            db.rollback()
            ARCHIVAL_BATCHES.labels("failed").inc()
            logger.error(
                "Audit archival batch %d failed after %d entries: %s",
                report.batches + 1,
                report.archived,
                exc,
            )
            raise ArchivalBatchFailure(
                f"Archival batch {report.batches + 1} rolled back: {exc}",
                batch_index=report.batches,
                archived_so_far=report.archived,
            ) from exc
        report.batch_counts.append(moved)
        ARCHIVAL_BATCHES.labels("completed").inc()
        ARCHIVED_ENTRIES.inc(moved)
        logger.info("Archived audit batch %d (%d entries)", report.batches, moved)
    return report


@celery_app.task(name="fieldsync.tasks.archive_audit_log")
def archive_audit_log(retention_days: int | None = None, batch_size: int | None = None) -> dict:
    db = SessionLocal()
    try:
        report = archive_audit_entries(db, default_cutoff(retention_days), batch_size)
    except ArchivalBatchFailure as exc:
        # the next scheduled run picks up from the first unarchived batch
        logger.warning("Audit archival stopped at batch %d: %s", exc.batch_index + 1, exc)
        return {"status": "failed", "archived": exc.archived_so_far, "batches": exc.batch_index}
    finally:
        db.close()
    logger.info("Audit archival finished: %d entries in %d batches", report.archived, report.batches)
    return {
        "status": "completed",
        "archived": report.archived,
        "batches": report.batches,
        "batch_counts": report.batch_counts,
    }
