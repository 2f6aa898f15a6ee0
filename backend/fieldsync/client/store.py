"""Local record store kept on the device between syncs."""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from uuid import UUID

# purpose: hold local records, held server tokens, the dirty set and the watermark
# inputs: optional JSON file path; without one the store lives in memory only
# outputs: plain dict records consumed by the sync agent
# status: active

# server-owned keys present in conflict snapshots but never written by clients
SERVER_METADATA_FIELDS = (
    "id",
    "lab_id",
    "version",
    "is_deleted",
    "deleted_at",
    "deleted_by",
    "last_modified_at",
    "last_modified_by",
    "last_synced_at",
)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Cannot serialize {type(value).__name__}")


def _normalize(value: Any) -> Any:
    return json.loads(json.dumps(value, default=_json_default))


def domain_payload(snapshot: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in snapshot.items() if key not in SERVER_METADATA_FIELDS}


class LocalStore:
    """Records keyed by entity id plus sync bookkeeping."""

    def __init__(self, path: str | os.PathLike | None = None) -> None:
        self.path = Path(path) if path else None
        self.records: dict[str, dict[str, Any]] = {}
        self.dirty: dict[str, dict[str, Any]] = {}
        self.watermark: str | None = None
        self.notifications: list[dict[str, Any]] = []
        self._edit_seq = 0
        if self.path and self.path.exists():
            self._load()

    def _load(self) -> None:
        with self.path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        self.records = data.get("records", {})
        self.dirty = data.get("dirty", {})
        self.watermark = data.get("watermark")
        self.notifications = data.get("notifications", [])
        self._edit_seq = data.get("edit_seq", 0)

    def save(self) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "records": self.records,
            "dirty": self.dirty,
            "watermark": self.watermark,
            "notifications": self.notifications,
            "edit_seq": self._edit_seq,
        }
        # write then rename so an interrupted save never leaves half a file
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, default=_json_default)
        os.replace(tmp_name, self.path)

    def get(self, entity_id: str | UUID) -> dict[str, Any] | None:
        return self.records.get(str(entity_id))

    def version_of(self, entity_id: str | UUID) -> int | None:
        record = self.get(entity_id)
        return record["version"] if record else None

    def is_dirty(self, entity_id: str | UUID) -> bool:
        return str(entity_id) in self.dirty

    def record_edit(
        self,
        entity_type: str,
        entity_id: str | UUID,
        changes: dict[str, Any],
        *,
        deleted: bool | None = None,
    ) -> dict[str, Any]:
        """Apply a local edit; repeated edits collapse into one dirty entry."""

        key = str(entity_id)
        record = self.records.setdefault(
            key,
            {"entity_type": entity_type, "payload": {}, "version": None, "is_deleted": False, "server": None},
        )
        if record["entity_type"] != entity_type:
            raise ValueError(f"{key} is a {record['entity_type']}, not a {entity_type}")
        record["payload"].update(_normalize(changes))
        if deleted is not None:
            record["is_deleted"] = deleted
        self._edit_seq += 1
        self.dirty[key] = {"entity_type": entity_type, "seq": self._edit_seq}
        return record

    def dirty_snapshot(self) -> list[tuple[str, dict[str, Any], int]]:
        """Return (entity id, record copy, edit sequence) for every dirty entity."""

        snapshot = []
        for key, marker in self.dirty.items():
            record = self.records[key]
            snapshot.append((key, json.loads(json.dumps(record)), marker["seq"]))
        return snapshot

    def mark_accepted(
        self,
        entity_id: str | UUID,
        version: int,
        seq: int,
        accepted: dict[str, Any] | None = None,
    ) -> None:
        """Store the new token; ``accepted`` is the pushed record the server took."""

        key = str(entity_id)
        record = self.records.get(key)
        if record is not None:
            record["version"] = version
            if accepted is not None:
                record["server"] = {"payload": accepted["payload"], "is_deleted": accepted["is_deleted"]}
        marker = self.dirty.get(key)
        # a later local edit stays dirty and goes out with the new token next time
        if marker is not None and marker["seq"] == seq:
            del self.dirty[key]

    def apply_server_state(
        self,
        entity_type: str,
        entity_id: str | UUID,
        payload: dict[str, Any],
        version: int,
        is_deleted: bool = False,
    ) -> None:
        key = str(entity_id)
        server_payload = domain_payload(_normalize(payload))
        self.records[key] = {
            "entity_type": entity_type,
            "payload": server_payload,
            "version": version,
            "is_deleted": is_deleted,
            "server": {"payload": json.loads(json.dumps(server_payload)), "is_deleted": is_deleted},
        }
        self.dirty.pop(key, None)

    def revert_to_server(self, entity_id: str | UUID) -> None:
        """Drop local edits the server refused, back to the last state it held."""

        key = str(entity_id)
        self.dirty.pop(key, None)
        record = self.records.get(key)
        if record is None:
            return
        held = record.get("server")
        if held is None:
            if record["version"] is None:
                # never reached the server
                del self.records[key]
            return
        record["payload"] = json.loads(json.dumps(held["payload"]))
        record["is_deleted"] = held["is_deleted"]

    def add_notification(self, kind: str, entity_type: str, entity_id: str | UUID, **details: Any) -> dict[str, Any]:
        notification = _normalize(
            {
                "kind": kind,
                "entity_type": entity_type,
                "entity_id": str(entity_id),
                "created_at": datetime.now(timezone.utc),
                **details,
            }
        )
        self.notifications.append(notification)
        return notification
