"""
Tests for services/youtube.py — the batched channel-stats fetcher.

Tests verify:
  1. Request shape: id= for canonical ids (any case), forHandle= (without @)
     for handles
  2. Parsing: counts from strings, logo, handle, uploads playlist
  3. Partial failure: one identifier failing never aborts the batch
  4. Quota: 403 quota reports the key; the next identifier uses the next key
  5. Pool exhaustion mid-batch: remaining identifiers fail with the quota
     error and quota_exceeded is set, also when the last identifier hit it
  6. Deduplication of identifiers
"""

import sys
import os
import asyncio

import httpx

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from helpers import channel_item
from models.schemas import KeyStatus
from services.credential_pool import CredentialPool
from services.youtube import QUOTA_EXCEEDED_ERROR, StatsFetcher, is_canonical_id

BASE = "https://yt.test/youtube/v3"


def make_fetcher(handler, keys=("AIzaKEYONE1234",)):
    pool = CredentialPool(list(keys))
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StatsFetcher(pool, client=client, base_url=BASE), pool


def quota_response():
    return httpx.Response(403, json={"error": {"code": 403, "message": "The request cannot be completed because you have exceeded your quota."}})


# ===========================================================================
# 1–2. Request shape and parsing
# ===========================================================================

class TestSingleLookup:

    def test_canonical_id_uses_id_param(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"items": [channel_item("UCabc")]})

        fetcher, _ = make_fetcher(handler)
        result = asyncio.run(fetcher.fetch(["UCabc"]))

        assert seen[0]["id"] == "UCabc"
        assert "forHandle" not in seen[0]
        assert seen[0]["key"] == "AIzaKEYONE1234"
        assert seen[0]["part"] == "snippet,statistics,contentDetails"
        assert "UCabc" in result.stats

    def test_lower_case_canonical_id_uses_id_param(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"items": [channel_item("UCabc")]})

        fetcher, _ = make_fetcher(handler)
        result = asyncio.run(fetcher.fetch(["ucabc"]))

        assert seen[0]["id"] == "ucabc"
        assert "forHandle" not in seen[0]
        assert result.stats["ucabc"].external_id == "UCabc"

    def test_is_canonical_id(self):
        assert is_canonical_id("UCabc")
        assert is_canonical_id(" ucabc")
        assert not is_canonical_id("@ucabc")
        assert not is_canonical_id("kamz")

    def test_handle_uses_for_handle_without_at(self):
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            return httpx.Response(200, json={"items": [channel_item("UCxyz", "Gamer Guy")]})

        fetcher, _ = make_fetcher(handler)
        result = asyncio.run(fetcher.fetch(["@GamerGuy"]))

        assert seen[0]["forHandle"] == "GamerGuy"
        record = result.stats["@GamerGuy"]
        assert record.external_id == "UCxyz"
        assert record.handle == "@GamerGuy"

    def test_parses_counts_and_metadata(self):
        def handler(request):
            return httpx.Response(200, json={"items": [
                channel_item("UCabc", "Kamz Inkzone", subscribers=173445, views=999, videos=42, custom_url="@kamz")
            ]})

        fetcher, _ = make_fetcher(handler)
        result = asyncio.run(fetcher.fetch(["UCabc"]))
        record = result.stats["UCabc"]

        assert record.subscriber_count == 173445
        assert record.view_count == 999
        assert record.upload_count == 42
        assert record.display_title == "Kamz Inkzone"
        assert record.handle == "@kamz"
        assert record.logo_url == "https://yt3.example/UCabc.jpg"
        assert record.uploads_playlist_id == "UUabc"

    def test_hidden_subscriber_count_defaults_to_zero(self):
        item = channel_item("UCabc")
        del item["statistics"]["subscriberCount"]

        fetcher, _ = make_fetcher(lambda request: httpx.Response(200, json={"items": [item]}))
        result = asyncio.run(fetcher.fetch(["UCabc"]))
        assert result.stats["UCabc"].subscriber_count == 0

    def test_success_trace_entry(self):
        fetcher, _ = make_fetcher(
            lambda request: httpx.Response(200, json={"items": [channel_item("UCabc", videos=7)]})
        )
        result = asyncio.run(fetcher.fetch(["UCabc"]))
        assert len(result.trace) == 1
        entry = result.trace[0]
        assert entry.status == "success"
        assert entry.id == "UCabc"
        assert entry.name == "Kamz Inkzone"
        assert entry.count == 7
        assert entry.error is None


# ===========================================================================
# 3. Partial failure isolation
# ===========================================================================

class TestPartialFailure:

    def test_not_found_does_not_abort_batch(self):
        def handler(request):
            if request.url.params.get("id") == "UCmissing":
                return httpx.Response(200, json={"items": []})
            return httpx.Response(200, json={"items": [channel_item(request.url.params["id"])]})

        fetcher, _ = make_fetcher(handler)
        result = asyncio.run(fetcher.fetch(["UCone", "UCmissing", "UCtwo"], names={"UCmissing": "Ghost"}))

        assert set(result.stats) == {"UCone", "UCtwo"}
        errors = [t for t in result.trace if t.status == "error"]
        assert len(errors) == 1
        assert errors[0].id == "UCmissing"
        assert errors[0].name == "Ghost"
        assert errors[0].error == "Channel not found"
        assert result.quota_exceeded is False

    def test_network_error_isolated(self):
        def handler(request):
            if request.url.params.get("id") == "UCdown":
                raise httpx.ConnectError("connection refused")
            return httpx.Response(200, json={"items": [channel_item(request.url.params["id"])]})

        fetcher, _ = make_fetcher(handler)
        result = asyncio.run(fetcher.fetch(["UCdown", "UCup"]))

        assert list(result.stats) == ["UCup"]
        assert result.errors_by_id()["UCdown"].startswith("Fetch failed")

    def test_server_error_message_in_trace(self):
        fetcher, _ = make_fetcher(
            lambda request: httpx.Response(400, json={"error": {"message": "Invalid channel id"}})
        )
        result = asyncio.run(fetcher.fetch(["UCbad"]))
        assert result.errors_by_id() == {"UCbad": "YouTube API 400: Invalid channel id"}

    def test_identifiers_deduplicated(self):
        calls = []

        def handler(request):
            calls.append(request.url.params.get("id"))
            return httpx.Response(200, json={"items": [channel_item("UCabc")]})

        fetcher, _ = make_fetcher(handler)
        asyncio.run(fetcher.fetch(["UCabc", " UCabc ", "", "UCabc"]))
        assert calls == ["UCabc"]


# ===========================================================================
# 4–5. Quota handling
# ===========================================================================

class TestQuota:

    def test_quota_403_reports_key_and_rotates(self):
        used_keys = []

        def handler(request):
            key = request.url.params["key"]
            used_keys.append(key)
            if key == "AIzaKEYONE1234":
                return quota_response()
            return httpx.Response(200, json={"items": [channel_item(request.url.params["id"])]})

        fetcher, pool = make_fetcher(handler, keys=("AIzaKEYONE1234", "AIzaKEYTWO5678"))
        result = asyncio.run(fetcher.fetch(["UCone", "UCtwo"]))

        # UCone failed on key one and is not retried this cycle; UCtwo used key two
        assert used_keys == ["AIzaKEYONE1234", "AIzaKEYTWO5678"]
        assert "UCone" not in result.stats
        assert "UCtwo" in result.stats
        assert result.quota_exceeded is False
        assert pool.list_status()[0].status == KeyStatus.EXHAUSTED

    def test_pool_exhausted_mid_batch_marks_remaining(self):
        def handler(request):
            if request.url.params.get("id") == "UCtwo":
                return quota_response()
            return httpx.Response(200, json={"items": [channel_item(request.url.params["id"])]})

        fetcher, _ = make_fetcher(handler)
        result = asyncio.run(fetcher.fetch(["UCone", "UCtwo", "UCthree", "UCfour"]))

        assert list(result.stats) == ["UCone"]
        assert result.quota_exceeded is True
        errors = result.errors_by_id()
        assert errors["UCthree"] == QUOTA_EXCEEDED_ERROR
        assert errors["UCfour"] == QUOTA_EXCEEDED_ERROR
        assert errors["UCtwo"].startswith("YouTube API 403")
        assert len(result.trace) == 4

    def test_quota_on_last_identifier_sets_flag(self):
        fetcher, pool = make_fetcher(lambda request: quota_response())

        result = asyncio.run(fetcher.fetch(["UCone"]))

        assert result.stats == {}
        assert result.quota_exceeded is True
        assert result.errors_by_id()["UCone"].startswith("YouTube API 403")
        assert pool.has_active_key() is False

    def test_quota_with_spare_key_left_is_not_flagged(self):
        def handler(request):
            if request.url.params["key"] == "AIzaKEYONE1234":
                return quota_response()
            return httpx.Response(200, json={"items": [channel_item(request.url.params["id"])]})

        fetcher, _ = make_fetcher(handler, keys=("AIzaKEYONE1234", "AIzaKEYTWO5678"))
        result = asyncio.run(fetcher.fetch(["UCone"]))

        assert result.stats == {}
        assert result.quota_exceeded is False

    def test_no_keys_at_all(self):
        def handler(request):
            raise AssertionError("no request should be made")

        fetcher, _ = make_fetcher(handler, keys=())
        result = asyncio.run(fetcher.fetch(["UCone", "@two"]))
        assert result.stats == {}
        assert result.quota_exceeded is True
        assert [t.error for t in result.trace] == [QUOTA_EXCEEDED_ERROR, QUOTA_EXCEEDED_ERROR]

    def test_non_quota_403_does_not_exhaust_key(self):
        fetcher, pool = make_fetcher(
            lambda request: httpx.Response(403, json={"error": {"message": "API key not valid"}})
        )
        asyncio.run(fetcher.fetch(["UCone"]))
        assert pool.list_status()[0].status == KeyStatus.ACTIVE
