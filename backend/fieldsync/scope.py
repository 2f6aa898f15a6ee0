"""Explicit request scope threaded through every guard and coordinator call."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

# purpose: replace ambient "current lab" state with a value passed by callers
# status: active


@dataclass(frozen=True)
class RequestScope:
    """Resolved identity claims for one unit of work."""

    actor_id: str
    lab_id: UUID
    device_id: str | None = None
    ip_address: str | None = None

    def for_device(self, device_id: str) -> "RequestScope":
        return RequestScope(
            actor_id=self.actor_id,
            lab_id=self.lab_id,
            device_id=device_id,
            ip_address=self.ip_address,
        )


SYSTEM_ACTOR = "system"
