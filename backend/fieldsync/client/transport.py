import requests

from ..exceptions import NetworkInterruption, SyncError


class RequestsTransport:
    """HTTP transport for the sync endpoint."""

    def __init__(self, base_url: str, actor_id: str, lab_id: str, timeout: float = 30, session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {"X-Actor-Id": actor_id, "X-Lab-Id": str(lab_id)}

    def sync(self, device_id: str, body: dict) -> dict:
        url = f"{self.base_url}/api/sync/{device_id}"
        try:
            r = self.session.post(url, json=body, headers=self.headers, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            raise NetworkInterruption(f"Sync request to {url} failed: {exc}") from exc
        if r.status_code >= 500:
            raise NetworkInterruption(f"Sync server returned {r.status_code}")
        if r.status_code >= 400:
            raise SyncError(f"Sync rejected with {r.status_code}: {r.text}")
        return r.json()
