"""API tests against an in-memory performance store."""

import asyncio

import pytest
from conftest import SEASON, FakeClock, make_result
from fastapi.testclient import TestClient

from gridpilot import __version__
from gridpilot.api.dependencies import get_db, get_redis
from gridpilot.errors import DataUnavailable, GridPilotError
from gridpilot.main import create_app
from gridpilot.services.monitoring import PerformanceMonitor
from gridpilot.services.recommendations import CacheStore, RecommendationCoordinator
from gridpilot.services.store import InMemoryPerformanceStore


class DownStore(InMemoryPerformanceStore):
    async def list_race_results(self, driver_id, filters=None):
        raise DataUnavailable("database unreachable", driver_id=driver_id)


class SlowStore(InMemoryPerformanceStore):
    async def list_race_results(self, driver_id, filters=None):
        await asyncio.sleep(1)
        return await super().list_race_results(driver_id, filters)


class BrokenStore(InMemoryPerformanceStore):
    async def list_schedule_entries(self, season_year, season_quarter):
        raise GridPilotError("schedule table missing")


class FakeSession:
    def __init__(self, fail: bool = False):
        self.fail = fail

    async def execute(self, statement):
        if self.fail:
            raise ConnectionRefusedError("db down")


class FakeRedis:
    async def ping(self):
        raise ConnectionRefusedError("redis down")


def make_client(store, waiter_timeout: float = 30.0) -> TestClient:
    monitor = PerformanceMonitor()
    coordinator = RecommendationCoordinator(
        store=store,
        cache=CacheStore(ttl_seconds=900, clock=FakeClock()),
        monitor=monitor,
        waiter_timeout=waiter_timeout,
        season=SEASON,
    )
    app = create_app(coordinator=coordinator, monitor=monitor, listen_for_invalidations=False)
    return TestClient(app)


@pytest.fixture
def store(five_opportunities):
    results = [make_result(series_id=1, track_id=10, days_ago=d) for d in (1, 2, 3)]
    return InMemoryPerformanceStore(results=results, schedule=five_opportunities)


class TestRecommendationsEndpoint:
    def test_miss_then_hit(self, store):
        with make_client(store) as client:
            first = client.get("/api/recommendations/driver-1")
            second = client.get("/api/recommendations/driver-1")

        assert first.status_code == 200
        body = first.json()
        assert len(body["recommendations"]) == 5
        assert body["metadata"]["cache_status"] == "miss"
        assert second.json()["metadata"]["cache_status"] == "hit"

        item = body["recommendations"][0]
        assert 0 <= item["score"]["overall"] <= 100
        assert len(item["score"]["reasoning"]) >= 2
        assert set(item["score"]["factors"]) >= {"performance", "safety", "attrition_risk"}

    def test_filters(self, store):
        with make_client(store) as client:
            limited = client.get("/api/recommendations/driver-1", params={"max_results": 2})
            ovals = client.get("/api/recommendations/driver-1", params={"category": "oval"})

        assert len(limited.json()["recommendations"]) == 2
        assert [r["key"] for r in ovals.json()["recommendations"]] == ["3:30"]

    def test_invalid_filters_are_rejected(self, store):
        with make_client(store) as client:
            zero = client.get("/api/recommendations/driver-1", params={"max_results": 0})
            backwards = client.get(
                "/api/recommendations/driver-1",
                params={"start_date": "2026-02-01T00:00:00Z", "end_date": "2026-01-01T00:00:00Z"},
            )

        assert zero.status_code == 422
        assert backwards.status_code == 422

    def test_mode_is_cached_separately(self, store):
        with make_client(store) as client:
            balanced = client.get("/api/recommendations/driver-1")
            recovery = client.get("/api/recommendations/driver-1", params={"mode": "safety_recovery"})
            unknown = client.get("/api/recommendations/driver-1", params={"mode": "qualifying_only"})

        assert balanced.json()["metadata"]["mode"] == "balanced"
        assert recovery.status_code == 200
        assert recovery.json()["metadata"]["mode"] == "safety_recovery"
        assert recovery.json()["metadata"]["cache_status"] == "miss"
        assert unknown.status_code == 422

    def test_store_unavailable(self, five_opportunities):
        with make_client(DownStore(schedule=five_opportunities)) as client:
            response = client.get("/api/recommendations/driver-1")
        assert response.status_code == 503

    def test_wait_timeout(self, five_opportunities):
        with make_client(SlowStore(schedule=five_opportunities), waiter_timeout=0.05) as client:
            response = client.get("/api/recommendations/driver-1")
        assert response.status_code == 504

    def test_unexpected_domain_error(self, five_opportunities):
        with make_client(BrokenStore(schedule=five_opportunities)) as client:
            response = client.get("/api/recommendations/driver-1")
        assert response.status_code == 500
        assert "schedule table missing" in response.json()["detail"]

    def test_prefetch(self, store):
        with make_client(store) as client:
            warmed = client.post("/api/recommendations/driver-1/prefetch")
            served = client.get("/api/recommendations/driver-1")

        assert warmed.json() == {"driver_id": "driver-1", "warmed": True}
        assert served.json()["metadata"]["cache_status"] == "hit"


class TestCacheEndpoints:
    def test_invalidate_and_metrics(self, store):
        with make_client(store) as client:
            client.get("/api/recommendations/driver-1")
            metrics = client.get("/api/cache/metrics").json()
            dropped = client.post("/api/cache/invalidate", json={"driver_id": "driver-1"})
            after = client.get("/api/recommendations/driver-1")

        assert metrics["size"] == 1
        assert metrics["stats"]["misses"] == 1
        assert dropped.json() == {"dropped": 1}
        assert after.json()["metadata"]["cache_status"] == "miss"

    def test_invalidate_needs_one_target(self, store):
        with make_client(store) as client:
            response = client.post("/api/cache/invalidate", json={})
        assert response.status_code == 400

    def test_clear(self, store):
        with make_client(store) as client:
            client.get("/api/recommendations/driver-1")
            cleared = client.post("/api/cache/clear")
            metrics = client.get("/api/cache/metrics").json()

        assert cleared.json() == {"status": "cleared"}
        assert metrics["size"] == 0
        assert metrics["global_stats_entries"] == 0


class TestMonitoringEndpoints:
    def test_summary_counts_api_requests(self, store):
        with make_client(store) as client:
            client.get("/api/recommendations/driver-1")
            client.get("/api/recommendations/driver-1")
            summary = client.get("/api/monitoring/summary", params={"window_minutes": 10}).json()
            alerts = client.get("/api/monitoring/alerts")

        assert summary["metrics"]["api"]["count"] >= 2
        assert summary["metrics"]["cache"]["hit_rate"] == pytest.approx(0.5)
        assert alerts.status_code == 200

    def test_summary_window_is_validated(self, store):
        with make_client(store) as client:
            response = client.get("/api/monitoring/summary", params={"window_minutes": 0})
        assert response.status_code == 422


class TestHealthEndpoints:
    def test_health(self, store):
        with make_client(store) as client:
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["version"] == __version__

    @pytest.mark.parametrize("db_fails,expected", [(False, True), (True, False)])
    def test_ready(self, store, db_fails, expected):
        client = make_client(store)

        async def fake_db():
            yield FakeSession(fail=db_fails)

        async def fake_redis():
            yield FakeRedis()

        client.app.dependency_overrides[get_db] = fake_db
        client.app.dependency_overrides[get_redis] = fake_redis
        with client:
            body = client.get("/ready").json()

        assert body["ready"] is expected
        assert body["checks"]["invalidation_channel"]["status"] == "warning"
        assert body["checks"]["recommendation_cache"]["status"] == "ok"
