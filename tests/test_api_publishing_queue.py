"""
API tests for publishing queue endpoints.

Uses FastAPI's TestClient against the app with a queue service backed by the
in-memory database (the lifespan is not run).
"""

import pytest
from fastapi.testclient import TestClient

from publisher.main import app
from publisher.services.connectors import PublishResult


@pytest.fixture
def client(queue):
    app.state.publishing_queue = queue
    yield TestClient(app)
    del app.state.publishing_queue


def _create(client, **overrides):
    payload = {"product_id": "prod_1", "platform": "etsy", "priority": 7}
    payload.update(overrides)
    return client.post("/api/v1/publishing-queue", json=payload)


class TestCreate:
    def test_create_item(self, client):
        response = _create(client, quality_score=88)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["priority"] == 7
        assert data["quality_score"] == 88
        assert data["retry_count"] == 0

    def test_unknown_platform_is_400(self, client):
        response = _create(client, platform="myspace")

        assert response.status_code == 400
        assert "myspace" in response.json()["detail"]

    @pytest.mark.parametrize("priority", [0, 11])
    def test_priority_validated(self, client, priority):
        assert _create(client, priority=priority).status_code == 422

    def test_quality_score_validated(self, client):
        assert _create(client, quality_score=101).status_code == 422

    def test_batch(self, client):
        response = client.post(
            "/api/v1/publishing-queue/batch",
            json={"product_id": "prod_1", "platforms": ["etsy", "printify"]},
        )

        assert response.status_code == 201
        assert sorted(item["platform"] for item in response.json()) == ["etsy", "printify"]

    def test_batch_unknown_platform_is_400(self, client):
        response = client.post(
            "/api/v1/publishing-queue/batch",
            json={"product_id": "prod_1", "platforms": ["etsy", "myspace"]},
        )

        assert response.status_code == 400
        assert client.get("/api/v1/publishing-queue/product/prod_1").json() == []


class TestRead:
    def test_get_item(self, client):
        item_id = _create(client).json()["id"]

        response = client.get(f"/api/v1/publishing-queue/{item_id}")

        assert response.status_code == 200
        assert response.json()["id"] == item_id

    def test_get_missing_item_is_404(self, client):
        assert client.get("/api/v1/publishing-queue/missing").status_code == 404

    def test_list_due_and_by_status(self, client):
        _create(client, product_id="prod_1")
        _create(client, product_id="prod_2", priority=9)

        due = client.get("/api/v1/publishing-queue").json()
        assert [item["product_id"] for item in due] == ["prod_2", "prod_1"]

        assert len(client.get("/api/v1/publishing-queue", params={"status": "pending"}).json()) == 2
        assert client.get("/api/v1/publishing-queue", params={"status": "failed"}).json() == []

    def test_product_queue(self, client):
        _create(client, platform="etsy")
        _create(client, platform="printify")
        _create(client, product_id="prod_2")

        response = client.get("/api/v1/publishing-queue/product/prod_1")

        assert response.status_code == 200
        assert len(response.json()) == 2

    def test_stats(self, client):
        _create(client)

        data = client.get("/api/v1/publishing-queue/stats").json()

        assert data["queue"]["pending"] == 1
        assert data["queue"]["total"] == 1
        assert data["processor"]["running"] is False


class TestOperatorActions:
    def test_patch_status(self, client):
        item_id = _create(client).json()["id"]

        response = client.patch(
            f"/api/v1/publishing-queue/{item_id}/status",
            json={"status": "published", "external_id": "987"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "published"
        assert response.json()["external_id"] == "987"
        assert response.json()["published_at"] is not None

    def test_patch_missing_item_is_404(self, client):
        response = client.patch("/api/v1/publishing-queue/missing/status", json={"status": "failed"})
        assert response.status_code == 404

    def test_cancel(self, client):
        item_id = _create(client).json()["id"]

        assert client.delete(f"/api/v1/publishing-queue/{item_id}").status_code == 200
        assert client.get(f"/api/v1/publishing-queue/{item_id}").json()["status"] == "rejected"
        assert client.delete(f"/api/v1/publishing-queue/{item_id}").status_code == 400

    def test_retry_requires_failed(self, client):
        item_id = _create(client).json()["id"]
        assert client.post(f"/api/v1/publishing-queue/{item_id}/retry").status_code == 400

        client.patch(f"/api/v1/publishing-queue/{item_id}/status", json={"status": "failed"})
        response = client.post(f"/api/v1/publishing-queue/{item_id}/retry")

        assert response.status_code == 200
        assert client.get(f"/api/v1/publishing-queue/{item_id}").json()["status"] == "pending"

    def test_process_now(self, client, etsy_connector):
        item_id = _create(client).json()["id"]

        response = client.post("/api/v1/publishing-queue/process")

        assert response.status_code == 200
        assert response.json() == {"processed": 1, "succeeded": 1, "failed": 0, "deferred": 0}
        assert etsy_connector.calls == [item_id]


class TestResilienceEndpoints:
    def test_rate_limit_status(self, client):
        response = client.get("/api/v1/publishing-queue/rate-limit/etsy")

        assert response.status_code == 200
        data = response.json()
        assert data["platform"] == "etsy"
        assert data["endpoint"] == "default"
        assert data["limit_per_minute"] == 10
        assert data["can_make_request"] is True

    def test_circuit_breakers(self, client, etsy_connector):
        etsy_connector.outcomes = [PublishResult(success=False, error="503")]
        _create(client)
        client.post("/api/v1/publishing-queue/process")

        breakers = client.get("/api/v1/publishing-queue/circuit-breakers").json()
        assert breakers["etsy"]["state"] == "closed"
        assert breakers["etsy"]["failure_count"] == 1

        response = client.post("/api/v1/publishing-queue/circuit-breakers/etsy/reset")
        assert response.status_code == 200
        assert client.get("/api/v1/publishing-queue/circuit-breakers").json()["etsy"]["failure_count"] == 0

    def test_reset_unknown_breaker_is_404(self, client):
        assert client.post("/api/v1/publishing-queue/circuit-breakers/nope/reset").status_code == 404


class TestUninitialized:
    def test_503_without_queue(self):
        client = TestClient(app)
        assert client.get("/api/v1/publishing-queue/stats").status_code == 503
