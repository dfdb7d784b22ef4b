"""Test data helpers shared across the suite."""

import json

import httpx

from services.backend import BackendClient
from services.credential_pool import CredentialPool
from services.sync import SyncService
from services.youtube import StatsFetcher

HOUR_MS = 60 * 60 * 1000
MINUTE_MS = 60 * 1000
T0 = 1_760_000_000_000  # fixed epoch millis used as "now" in most tests


class FakeClock:
    """Callable clock returning epoch millis; advance() moves it forward."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def channel_item(
    channel_id: str = "UCabc",
    title: str = "Kamz Inkzone",
    subscribers: int = 173445,
    views: int = 1000,
    videos: int = 12,
    custom_url: str = None,
) -> dict:
    """A channels.list item as the YouTube Data API returns it."""
    snippet = {
        "title": title,
        "thumbnails": {"default": {"url": f"https://yt3.example/{channel_id}.jpg"}},
    }
    if custom_url:
        snippet["customUrl"] = custom_url
    return {
        "id": channel_id,
        "snippet": snippet,
        "statistics": {
            "subscriberCount": str(subscribers),
            "viewCount": str(views),
            "videoCount": str(videos),
        },
        "contentDetails": {"relatedPlaylists": {"uploads": "UU" + channel_id[2:]}},
    }


class FakeStudio:
    """
    In-memory stand-in for the studio backend, served through
    httpx.MockTransport. Flip `fail` to make every request answer 500.
    """

    def __init__(self, clients=None, stats=None, pulse=None):
        self.clients = list(clients or [])
        self.stats = list(stats or [])
        self.pulse = pulse or {"activities": [], "meta": {}, "ts": T0}
        self.fail = False
        self.requests = []

    def handler(self, request):
        self.requests.append((request.method, request.url.path))
        if self.fail:
            return httpx.Response(500, json={"error": "D1 unavailable"})

        path, method = request.url.path, request.method
        if path == "/clients" and method == "GET":
            return httpx.Response(200, json={"clients": self.clients})
        if path == "/clients" and method == "POST":
            body = json.loads(request.content)
            new_id = f"new-{len(self.clients) + 1}"
            self.clients.append({**body, "id": new_id})
            return httpx.Response(200, json={"success": True, "id": new_id})
        if path == "/clients/bulk" and method == "DELETE":
            ids = set(json.loads(request.content)["ids"])
            self.clients = [c for c in self.clients if c["id"] not in ids]
            return httpx.Response(200, json={"success": True})
        if path == "/clients/stats":
            return httpx.Response(200, json={"stats": self.stats})
        if path == "/clients/pulse":
            return httpx.Response(200, json=self.pulse)
        if path == "/admin/yt-quota":
            return httpx.Response(200, json={"keys": [{"masked": "AIza...beef", "status": "ACTIVE"}]})
        if path.startswith("/clients/"):
            client_id = path.rsplit("/", 1)[1]
            existing = [c for c in self.clients if c["id"] == client_id]
            if not existing:
                return httpx.Response(404, json={"error": "Client not found"})
            if method == "DELETE":
                self.clients.remove(existing[0])
            elif method == "PUT":
                existing[0].update(json.loads(request.content))
            return httpx.Response(200, json={"success": True})
        return httpx.Response(404, json={"error": "Not found"})


class FakeYouTube:
    """
    channels.list stand-in: `channels` maps an id or @handle to an item;
    requests using a key in `quota_keys`, or asking for an identifier in
    `quota_ids`, answer with a 403 quota error.
    """

    def __init__(self, channels=None):
        self.channels = dict(channels or {})
        self.quota_keys = set()
        self.quota_ids = set()
        self.calls = 0

    def handler(self, request):
        self.calls += 1
        params = request.url.params
        identifier = params.get("id") or "@" + params.get("forHandle", "")
        if params.get("key") in self.quota_keys or identifier in self.quota_ids:
            return httpx.Response(403, json={"error": {"message": "You have exceeded your quota."}})
        item = self.channels.get(identifier)
        return httpx.Response(200, json={"items": [item] if item else []})


def make_service(store, clock, studio, youtube, keys=("AIzaKEYONE1234",), **kwargs):
    """SyncService wired to the fakes above."""
    backend = BackendClient(
        base_url="https://backend.test",
        token="backend-secret",
        client=httpx.AsyncClient(transport=httpx.MockTransport(studio.handler)),
    )
    fetcher = StatsFetcher(
        CredentialPool(list(keys), clock=clock),
        client=httpx.AsyncClient(transport=httpx.MockTransport(youtube.handler)),
        base_url="https://yt.test/youtube/v3",
    )
    kwargs.setdefault("clients_interval_s", 60)
    kwargs.setdefault("pulse_interval_s", 60)
    return SyncService(backend, fetcher, store, clock=clock, **kwargs)
