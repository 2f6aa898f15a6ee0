"""Push/pull driver run on the device when the user triggers a sync."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol
from uuid import UUID, uuid4

from .store import LocalStore

# purpose: collapse local edits, push them with held tokens, apply results and pulled changes
# inputs: LocalStore, a transport exposing sync(device_id, body), device identifier
# outputs: SyncSummary per cycle; conflict notifications recorded in the store
# status: active

logger = logging.getLogger(__name__)

# rejections worth retrying; anything else is final for the pushed payload
_RETRYABLE_REJECTIONS = {"error"}


class Transport(Protocol):
    def sync(self, device_id: str, body: dict) -> dict: ...


@dataclass
class SyncSummary:
    pushed: int = 0
    applied: int = 0
    conflicts: int = 0
    rejected: int = 0
    pulled: int = 0
    skipped: int = 0


class SyncAgent:
    def __init__(self, store: LocalStore, transport: Transport, device_id: str) -> None:
        self.store = store
        self.transport = transport
        self.device_id = device_id

    def record_local_edit(
        self,
        entity_type: str,
        changes: dict[str, Any],
        entity_id: str | UUID | None = None,
    ) -> str:
        """Edit (or create, without ``entity_id``) a record locally."""

        key = str(entity_id or uuid4())
        self.store.record_edit(entity_type, key, changes)
        self.store.save()
        return key

    def delete_local(self, entity_type: str, entity_id: str | UUID) -> None:
        self.store.record_edit(entity_type, entity_id, {}, deleted=True)
        self.store.save()

    def sync(self) -> SyncSummary:
        """Run one push/pull cycle.

        A NetworkInterruption propagates to the caller. Whatever was
        acknowledged before the interruption is already persisted, so the
        next call neither re-pushes accepted records nor loses the pull.
        """

        summary = SyncSummary()
        self.push(summary)
        self.pull(summary)
        logger.info(
            "Device %s sync pushed=%d applied=%d conflicts=%d rejected=%d pulled=%d",
            self.device_id,
            summary.pushed,
            summary.applied,
            summary.conflicts,
            summary.rejected,
            summary.pulled,
        )
        return summary

    def push(self, summary: SyncSummary | None = None) -> SyncSummary:
        """Send the dirty set with held tokens and apply the outcomes locally."""

        summary = summary or SyncSummary()
        snapshot = self.store.dirty_snapshot()
        if not snapshot:
            return summary
        sequences = {key: seq for key, _, seq in snapshot}
        pushed = {key: record for key, record, _ in snapshot}
        body = {
            "last_watermark": self.store.watermark,
            "include_changes": False,
            "records": [
                {
                    "entity_type": record["entity_type"],
                    "entity_id": key,
                    "payload": {**record["payload"], "is_deleted": record["is_deleted"]},
                    "presented_token": record["version"],
                }
                for key, record, _ in snapshot
            ],
        }
        summary.pushed = len(snapshot)
        response = self.transport.sync(self.device_id, body)

        for item in response.get("applied", []):
            key = str(item["entity_id"])
            self.store.mark_accepted(key, item["version"], sequences.get(key, -1), pushed.get(key))
            summary.applied += 1

        for item in response.get("conflicts", []):
            self._overwrite_with_server(item["entity_type"], item["entity_id"], item["server_payload"], item["server_token"])
            self.store.add_notification(
                "conflict",
                item["entity_type"],
                item["entity_id"],
                conflict_backup_id=item["conflict_backup_id"],
                server_token=item["server_token"],
            )
            summary.conflicts += 1

        for item in response.get("rejected", []):
            key = str(item["entity_id"])
            if item.get("server_payload") is not None and item.get("server_token") is not None:
                self._overwrite_with_server(item["entity_type"], key, item["server_payload"], item["server_token"])
            elif item["reason"] not in _RETRYABLE_REJECTIONS:
                self.store.revert_to_server(key)
            self.store.add_notification(
                "rejected",
                item["entity_type"],
                key,
                reason=item["reason"],
                detail=item.get("detail"),
                conflict_backup_id=item.get("conflict_backup_id"),
            )
            logger.warning("Device %s record %s rejected: %s", self.device_id, key, item.get("detail"))
            summary.rejected += 1

        self.store.save()
        return summary

    def _overwrite_with_server(self, entity_type: str, entity_id, snapshot: dict[str, Any], token: int) -> None:
        self.store.apply_server_state(
            entity_type,
            entity_id,
            snapshot,
            token,
            is_deleted=bool(snapshot.get("is_deleted", False)),
        )

    def pull(self, summary: SyncSummary | None = None) -> SyncSummary:
        summary = summary or SyncSummary()
        body = {"last_watermark": self.store.watermark, "include_changes": True, "records": []}
        response = self.transport.sync(self.device_id, body)
        for change in response.get("server_changes", []):
            key = str(change["entity_id"])
            local_version = self.store.version_of(key)
            # unpushed local edits win locally until they go out
            if self.store.is_dirty(key) or (local_version is not None and local_version >= change["version"]):
                summary.skipped += 1
                continue
            self.store.apply_server_state(
                change["entity_type"],
                key,
                change["payload"],
                change["version"],
                is_deleted=change.get("is_deleted", False),
            )
            summary.pulled += 1
        self.store.watermark = response.get("new_watermark") or self.store.watermark
        self.store.save()
        return summary
