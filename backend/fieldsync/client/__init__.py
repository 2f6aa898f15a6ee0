"""Device-side sync agent for offline field and lab clients."""

from .agent import SyncAgent, SyncSummary
from .store import LocalStore
from .transport import RequestsTransport

__all__ = ["SyncAgent", "SyncSummary", "LocalStore", "RequestsTransport"]
