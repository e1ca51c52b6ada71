"""Tests for the HTTP trigger routes."""
import pytest
from aiohttp import test_utils

from cursor_sync.exceptions import ServerError, StorageError
from cursor_sync.server import create_app

from tests.conftest import make_record


@pytest.fixture
async def http(ctx):
    client = test_utils.TestClient(test_utils.TestServer(create_app(ctx)))
    await client.start_server()
    yield client
    await client.close()


class TestCronSync:

    async def test_open_when_no_secret_configured(self, http, fake_client):
        fake_client.records = [make_record("alice@example.com", "2025-07-14")]

        resp = await http.get("/api/cron/sync")

        assert resp.status == 200
        body = await resp.json()
        assert body["success"] is True
        assert body["processed"] == 1
        assert body["newAchievements"]["individual"] == ["first-steps"]
        assert "syncedAt" in body

    @pytest.mark.parametrize("headers, expected", [
        ({}, 401),
        ({"X-Cron-Secret": "wrong"}, 401),
        ({"X-Cron-Secret": "s3cret"}, 200),
        ({"Authorization": "Bearer s3cret"}, 200),
        ({"X-Cron-Trigger": "1"}, 200),
    ])
    async def test_secret_checks(self, http, ctx, headers, expected):
        ctx.settings.cron_secret = "s3cret"
        resp = await http.get("/api/cron/sync", headers=headers)
        assert resp.status == expected

    async def test_skips_when_rate_limited(self, http):
        await http.get("/api/cron/sync")
        resp = await http.get("/api/cron/sync")

        assert resp.status == 200
        body = await resp.json()
        assert body == {"skipped": True, "reason": "Rate limited. Try again in 3000s"}

    async def test_failure_is_500(self, http, fake_client):
        fake_client.error = ServerError("API request failed: 500 boom", 500)
        resp = await http.get("/api/cron/sync")
        assert resp.status == 500
        assert (await resp.json())["error"] == "API request failed: 500 boom"

    async def test_missing_api_key(self, http, ctx):
        ctx.settings.api_key = ""
        resp = await http.get("/api/cron/sync")
        assert resp.status == 500
        assert await resp.json() == {"error": "API key not configured"}


class TestStatus:

    async def test_reports_metadata_and_lock(self, http, ctx):
        await ctx.state.write_metadata(last_sync_date="2025-07-14")
        await ctx.state.acquire_lock()

        resp = await http.get("/api/sync/status")

        body = await resp.json()
        assert body["lastSyncDate"] == "2025-07-14"
        assert body["syncStatus"] == "idle"
        assert body["isLocked"] is True


class TestRefresh:

    async def test_refresh_runs_incremental_sync(self, http):
        resp = await http.post("/api/achievements/refresh")
        assert resp.status == 200
        assert (await resp.json())["success"] is True

    async def test_conflict_while_running(self, http, ctx):
        await ctx.state.acquire_lock()
        resp = await http.post("/api/achievements/refresh")
        assert resp.status == 409
        assert await resp.json() == {"error": "A sync is already in progress"}

    async def test_rate_limited(self, http):
        await http.post("/api/achievements/refresh")
        resp = await http.post("/api/achievements/refresh")
        assert resp.status == 429
        assert (await resp.json())["error"] == "Rate limited. Try again in 300s"


class TestBackfill:

    async def test_backfill_into_empty_database(self, http, fake_client):
        fake_client.records = [make_record("alice@example.com", "2025-07-01")]
        resp = await http.post("/api/achievements/backfill")
        assert resp.status == 200
        body = await resp.json()
        assert body["processed"] == 1
        assert body["message"] == "Backfill completed successfully"

    async def test_backfill_rejected_when_data_exists(self, http, ctx, fake_client):
        await ctx.snapshots.upsert_snapshot(make_record("alice@example.com", "2025-07-01"))
        resp = await http.post("/api/achievements/backfill")
        assert resp.status == 400
        assert (await resp.json())["error"] == (
            "Backfill already completed. Use /api/achievements/refresh for updates."
        )
        assert fake_client.calls == []

    async def test_storage_failure_is_500(self, http, ctx, monkeypatch):
        async def locked_database():
            raise StorageError("SnapshotStore operation failed: database is locked")

        monkeypatch.setattr(ctx.snapshots, "has_any", locked_database)
        resp = await http.post("/api/achievements/backfill")
        assert resp.status == 500
        assert "database is locked" in (await resp.json())["error"]

    async def test_historical_backfill_reports_range(self, http):
        resp = await http.post("/api/achievements/backfill-complete")
        assert resp.status == 200
        body = await resp.json()
        assert body["dataFrom"] == "2025-06-16"
        assert body["dataTo"] == "2025-07-15"
        assert body["stats"] == {"individualAchievements": 0, "teamAchievements": 0}


class TestClearAll:

    async def test_clears_data_and_metadata(self, http, ctx, fake_client):
        fake_client.records = [make_record("alice@example.com", "2025-07-14")]
        await ctx.orchestrator.run_incremental_sync()

        resp = await http.post("/api/data/clear-all")

        assert resp.status == 200
        assert await ctx.snapshots.has_any() is False
        assert (await ctx.state.read_metadata()).last_sync_date is None

    async def test_requires_secret_when_configured(self, http, ctx):
        ctx.settings.cron_secret = "s3cret"
        assert (await http.post("/api/data/clear-all")).status == 401
        resp = await http.post("/api/data/clear-all", headers={"X-Cron-Secret": "s3cret"})
        assert resp.status == 200


class TestLeaderboard:

    async def test_ranks_users(self, http, fake_client):
        fake_client.records = [
            make_record("bob@example.com", "2025-07-14", accepted_lines_added=5),
            make_record("alice@example.com", "2025-07-14", accepted_lines_added=50),
        ]
        resp = await http.get("/api/leaderboard", params={"days": "7"})
        assert resp.status == 200
        body = await resp.json()
        assert [e["name"] for e in body["entries"]] == ["Alice Example", "Bob Example"]

    @pytest.mark.parametrize("days", ["0", "31", "abc"])
    async def test_invalid_days(self, http, days):
        resp = await http.get("/api/leaderboard", params={"days": days})
        assert resp.status == 400
