"""CLI utilities for moving aged audit entries into the archive table."""

# purpose: let operators run or preview audit archival outside the beat schedule
# status: active
# depends_on: backend.fieldsync.tasks, backend.fieldsync.database

from __future__ import annotations

import json
from datetime import datetime, timezone

import typer
import sqlalchemy as sa

from .. import models
from ..database import SessionLocal
from ..exceptions import ArchivalBatchFailure
from ..tasks import archive_audit_entries, default_cutoff

app = typer.Typer(help="Audit trail archival commands")


def _resolve_cutoff(cutoff: str | None, retention_days: int | None) -> datetime:
    if cutoff is None:
        return default_cutoff(retention_days)
    try:
        parsed = datetime.fromisoformat(cutoff)
    except ValueError as exc:
        raise typer.BadParameter(f"Invalid cutoff timestamp {cutoff!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def count_pending(cutoff: datetime) -> dict[str, int | str]:
    """Count hot entries older than ``cutoff`` without moving them."""

    session = SessionLocal()
    try:
        pending = session.execute(
            sa.select(sa.func.count(models.AuditEntry.id)).where(models.AuditEntry.timestamp < cutoff)
        ).scalar_one()
        archived = session.execute(sa.select(sa.func.count(models.AuditArchiveEntry.id))).scalar_one()
    finally:
        session.close()
    return {"cutoff": cutoff.isoformat(), "pending": pending, "archived": archived}


@app.command("run")
def run_command(
    cutoff: str = typer.Option(None, help="ISO timestamp; entries older than this are archived"),
    retention_days: int = typer.Option(None, help="Retention window used when no cutoff is given"),
    batch_size: int = typer.Option(None, help="Entries moved per transaction"),
) -> None:
    """Archive aged audit entries in batches."""

    resolved = _resolve_cutoff(cutoff, retention_days)
    session = SessionLocal()
    try:
        report = archive_audit_entries(session, resolved, batch_size)
    except ArchivalBatchFailure as exc:
        typer.echo(
            json.dumps(
                {
                    "status": "failed",
                    "error": str(exc),
                    "archived": exc.archived_so_far,
                    "batches": exc.batch_index,
                }
            ),
            err=True,
        )
        raise typer.Exit(code=1)
    finally:
        session.close()
    typer.echo(
        json.dumps(
            {
                "status": "completed",
                "cutoff": report.cutoff.isoformat(),
                "archived": report.archived,
                "batches": report.batches,
                "batch_counts": report.batch_counts,
            }
        )
    )


@app.command("pending")
def pending_command(
    cutoff: str = typer.Option(None, help="ISO timestamp; entries older than this are counted"),
    retention_days: int = typer.Option(None, help="Retention window used when no cutoff is given"),
) -> None:
    """Report how many hot entries the next run would archive."""

    typer.echo(json.dumps(count_pending(_resolve_cutoff(cutoff, retention_days))))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
