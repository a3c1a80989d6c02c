"""Tests for the oracle HTTP API."""

import httpx
import pytest
from starlette.requests import Request
from starlette.testclient import TestClient

from energy_oracle.src.CircuitBreaker import CircuitBreakerBoard
from energy_oracle.src.ConsensusEngine import ConsensusConfig, ConsensusEngine
from energy_oracle.src.FeedFetcher import FeedFetcher, RetryPolicy
from energy_oracle.src.OracleApi import caller_identity, create_app
from energy_oracle.src.OracleOrchestrator import OracleOrchestrator
from energy_oracle.src.ProviderRegistry import ProviderConfig, ProviderRegistry
from energy_oracle.src.RateLimiter import DEFAULT_RATE_LIMITS, RateLimiter, RateLimitRule
from energy_oracle.src.ReputationTracker import ReputationTracker

TS = 1_700_000_000_000

VALUES = {"a": 100.0, "b": 102.0, "c": 99.0, "d": 500.0}


async def no_sleep(delay: float) -> None:
    return None


def handler(request: httpx.Request) -> httpx.Response:
    pid = request.url.host.removesuffix(".local")
    return httpx.Response(200, json={"value": VALUES[pid], "timestamp": TS})


@pytest.fixture
def orchestrator() -> OracleOrchestrator:
    registry = ProviderRegistry(
        [ProviderConfig(pid, f"http://{pid}.local/latest", max_retries=0) for pid in VALUES]
    )
    fetcher = FeedFetcher(
        RetryPolicy(jitter=0.0),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=no_sleep,
    )
    return OracleOrchestrator(
        registry,
        ReputationTracker(registry),
        CircuitBreakerBoard(),
        fetcher,
        ConsensusEngine(ConsensusConfig()),
    )


@pytest.fixture
def client(orchestrator) -> TestClient:
    app = create_app(orchestrator, RateLimiter(), close_http_client=False)
    return TestClient(app, raise_server_exceptions=False)


class TestVerifyEndpoint:
    """Test POST /oracle/verify."""

    def test_verify(self, client) -> None:
        response = client.post("/oracle/verify", json={"milestoneId": "m-1"})

        assert response.status_code == 200
        data = response.json()
        assert data["milestoneId"] == "m-1"
        assert data["status"] == "VERIFIED"
        assert data["consensusResult"]["outliers"] == ["d"]
        assert data["consensusResult"]["value"] == pytest.approx(100.333, abs=1e-3)
        assert response.headers["X-RateLimit-Limit"] == "20"
        assert response.headers["X-RateLimit-Remaining"] == "19"

    def test_verify_subset(self, client) -> None:
        response = client.post("/oracle/verify", json={"milestoneId": "m-2", "providerIds": ["a", "b"]})

        data = response.json()
        assert data["providerIds"] == ["a", "b"]
        assert data["status"] == "FAILED"
        assert data["failureReason"] == "INSUFFICIENT_SOURCES"

    def test_verify_requires_milestone(self, client) -> None:
        response = client.post("/oracle/verify", json={})
        assert response.status_code == 400
        assert "milestoneId" in response.json()["error"]

    def test_verify_rejects_blank_milestone(self, client) -> None:
        response = client.post("/oracle/verify", json={"milestoneId": "   "})
        assert response.status_code == 400
        assert response.json()["error"].startswith("milestoneId:")

    @pytest.mark.parametrize("provider_ids", ["a", [1, 2], {"a": True}])
    def test_verify_rejects_bad_provider_ids(self, client, provider_ids) -> None:
        response = client.post("/oracle/verify", json={"milestoneId": "m", "providerIds": provider_ids})
        assert response.status_code == 400
        assert "providerIds" in response.json()["error"]

    def test_verify_rejects_non_object_body(self, client) -> None:
        response = client.post("/oracle/verify", json=["m-1"])
        assert response.status_code == 400
        assert response.json() == {"error": "Request body must be a JSON object"}

    def test_verify_rejects_invalid_json(self, client) -> None:
        response = client.post(
            "/oracle/verify",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Request body must be valid JSON"}

    def test_saved_records(self, client) -> None:
        client.post("/oracle/verify", json={"milestoneId": "m-3"})
        client.post("/oracle/verify", json={"milestoneId": "m-3"})

        response = client.get("/oracle/verification/m-3")

        assert response.status_code == 200
        assert len(response.json()["records"]) == 2


class TestRateLimiting:
    """Test limiting at the HTTP boundary."""

    def test_limit_exceeded_returns_429(self, orchestrator) -> None:
        limiter = RateLimiter({**DEFAULT_RATE_LIMITS, "verify": RateLimitRule(60_000, 2, "Too many verifications")})
        client = TestClient(create_app(orchestrator, limiter, close_http_client=False))

        for _ in range(2):
            assert client.post("/oracle/verify", json={"milestoneId": "m"}).status_code == 200

        response = client.post("/oracle/verify", json={"milestoneId": "m"})

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "Too many verifications"
        assert body["retryAfterSeconds"] > 0
        assert response.headers["Retry-After"] == str(body["retryAfterSeconds"])
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_rejected_call_does_not_run_cycle(self, orchestrator) -> None:
        limiter = RateLimiter({**DEFAULT_RATE_LIMITS, "verify": RateLimitRule(60_000, 1)})
        client = TestClient(create_app(orchestrator, limiter, close_http_client=False))

        client.post("/oracle/verify", json={"milestoneId": "m"})
        client.post("/oracle/verify", json={"milestoneId": "m"})

        assert len(orchestrator.store.find_by_milestone("m")) == 1

    def test_liveness_not_limited(self, orchestrator) -> None:
        limiter = RateLimiter({"verify": RateLimitRule(60_000, 1)})
        client = TestClient(create_app(orchestrator, limiter, close_http_client=False))

        for _ in range(5):
            response = client.get("/health")
            assert response.status_code == 200
        assert response.json() == {"status": "ok", "providers": 4}

    def test_caller_identity(self) -> None:
        request = Request({"type": "http", "client": ("10.0.0.7", 5000), "headers": []})
        assert caller_identity(request) == "ip:10.0.0.7"

        request.state.user_id = "alice"
        assert caller_identity(request) == "user:alice"


class TestProviderEndpoints:
    """Test provider health and reset."""

    def test_health(self, client) -> None:
        client.post("/oracle/verify", json={"milestoneId": "m"})

        response = client.get("/oracle/health/a")

        assert response.status_code == 200
        data = response.json()
        assert data["providerId"] == "a"
        assert data["isConnected"] is True
        assert data["reliability"] == 100.0
        assert data["circuitState"] == "CLOSED"
        assert "X-RateLimit-Limit" in response.headers

    def test_health_unknown_provider(self, client) -> None:
        response = client.get("/oracle/health/ghost")
        assert response.status_code == 404
        assert response.json() == {"error": "Unknown oracle provider 'ghost'"}

    def test_reset(self, client, orchestrator) -> None:
        orchestrator.reputation.record_failure("b")

        response = client.post("/oracle/providers/b/reset")

        assert response.status_code == 200
        assert response.json()["reliability"] == 100.0


class TestFeedEndpoints:
    """Test subscriptions and feed listing."""

    def test_subscribe_and_list(self, client) -> None:
        response = client.post("/oracle/subscribe", json={
            "projectId": "solar-1",
            "feedType": "ENERGY_PRODUCTION",
            "webhookUrl": "https://example.com/hook",
            "budget": 50,
            "location": "Lagos",
            "equipmentType": "solar",
        })
        assert response.status_code == 201
        created = response.json()
        assert created["isActive"] is True
        assert created["feedType"] == "ENERGY_PRODUCTION"

        client.post("/oracle/subscribe", json={"projectId": "solar-1", "feedType": "weather"})

        all_feeds = client.get("/oracle/feeds/solar-1").json()["feeds"]
        filtered = client.get("/oracle/feeds/solar-1", params={"location": "lagos", "equipmentType": "SOLAR"}).json()["feeds"]
        other = client.get("/oracle/feeds/wind-9").json()["feeds"]

        assert len(all_feeds) == 2
        assert [f["id"] for f in filtered] == [created["id"]]
        assert other == []

    @pytest.mark.parametrize(
        "body, field",
        [
            ({"feedType": "WEATHER"}, "projectId"),
            ({"projectId": "p"}, "feedType"),
            ({"projectId": " ", "feedType": "WEATHER"}, "projectId"),
            ({"projectId": "p", "feedType": "PRICES"}, "feedType"),
            ({"projectId": "p", "feedType": "WEATHER", "webhookUrl": "ftp://x"}, "webhookUrl"),
            ({"projectId": "p", "feedType": "WEATHER", "budget": -5}, "budget"),
            ({"projectId": "p", "feedType": "WEATHER", "budget": "lots"}, "budget"),
            ({"projectId": "p", "feedType": "WEATHER", "budget": True}, "budget"),
        ],
    )
    def test_subscribe_validation(self, client, body, field) -> None:
        response = client.post("/oracle/subscribe", json=body)
        assert response.status_code == 400
        assert response.json()["error"].startswith(f"{field}:")

    def test_subscribe_blank_optionals_are_unset(self, client) -> None:
        response = client.post("/oracle/subscribe", json={
            "projectId": " solar-2 ",
            "feedType": " equipment_status ",
            "webhookUrl": "",
            "location": "  ",
        })

        assert response.status_code == 201
        created = response.json()
        assert created["projectId"] == "solar-2"
        assert created["feedType"] == "EQUIPMENT_STATUS"
        assert created["webhookUrl"] is None
        assert created["location"] is None


class TestAlertEndpoints:
    """Test alert listing and acknowledgement."""

    def test_outlier_alert_listed(self, client) -> None:
        client.post("/oracle/verify", json={"milestoneId": "m"})

        response = client.get("/oracle/alerts")

        assert response.status_code == 200
        data = response.json()
        assert [(a["type"], a["providerId"], a["severity"]) for a in data["alerts"]] == [
            ("DATA_ANOMALY", "d", "CRITICAL")
        ]
        assert data["summary"]["total"] == 1
        assert data["summary"]["unacknowledged"] == 1
        assert "X-RateLimit-Limit" in response.headers

    def test_filters(self, client) -> None:
        client.post("/oracle/verify", json={"milestoneId": "m"})

        assert client.get("/oracle/alerts", params={"type": "feed_failure"}).json()["alerts"] == []
        assert len(client.get("/oracle/alerts", params={"providerId": "d"}).json()["alerts"]) == 1
        assert client.get("/oracle/alerts", params={"providerId": "a"}).json()["alerts"] == []
        assert len(client.get("/oracle/alerts", params={"severity": "critical"}).json()["alerts"]) == 1

    def test_unknown_filter_value(self, client) -> None:
        response = client.get("/oracle/alerts", params={"severity": "URGENT"})
        assert response.status_code == 400
        assert response.json()["error"].startswith("severity:")

    def test_acknowledge(self, client) -> None:
        client.post("/oracle/verify", json={"milestoneId": "m"})
        alert_id = client.get("/oracle/alerts").json()["alerts"][0]["id"]

        response = client.post(f"/oracle/alerts/{alert_id}/acknowledge", json={"acknowledgedBy": "ops"})

        assert response.status_code == 200
        assert response.json()["acknowledged"] is True
        assert response.json()["acknowledgedBy"] == "ops"
        assert client.get("/oracle/alerts", params={"unacknowledged": "true"}).json()["alerts"] == []

    def test_acknowledge_defaults_to_caller(self, client) -> None:
        client.post("/oracle/verify", json={"milestoneId": "m"})
        alert_id = client.get("/oracle/alerts").json()["alerts"][0]["id"]

        response = client.post(f"/oracle/alerts/{alert_id}/acknowledge")

        assert response.status_code == 200
        assert response.json()["acknowledgedBy"] == "ip:testclient"

    def test_acknowledge_unknown_alert(self, client) -> None:
        response = client.post("/oracle/alerts/nope/acknowledge")
        assert response.status_code == 404
        assert response.json() == {"error": "Unknown alert 'nope'"}


class TestLifespan:
    """Test startup and shutdown."""

    def test_lifespan_runs(self, orchestrator) -> None:
        app = create_app(orchestrator, RateLimiter(), sweep_interval=0.01, close_http_client=False)
        with TestClient(app) as client:
            assert client.get("/health").status_code == 200
