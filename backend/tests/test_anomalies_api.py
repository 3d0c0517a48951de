"""
API Integration Tests — Anomaly endpoints with seeded sales.
"""

import uuid

import pytest
from httpx import ASGITransport, AsyncClient


@pytest.fixture
async def detected(client: AsyncClient, seeded_sales):
    """Run the pipeline once through the API so the log has rows."""
    resp = await client.post("/api/v1/anomalies/detect")
    assert resp.status_code == 200
    return seeded_sales


@pytest.mark.asyncio
class TestAnomaliesIntegration:
    async def test_detect_returns_summary(self, client: AsyncClient, seeded_sales, published):
        resp = await client.post("/api/v1/anomalies/detect")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "success"
        assert body["processed_channels"] == 4
        assert body["detected_anomalies"] == 4
        assert body["inserted_anomalies"] == 4
        assert body["detected_at"] == "2026-10-17"
        assert len(published) == 4

    async def test_detect_twice_inserts_nothing_new(self, client: AsyncClient, detected):
        resp = await client.post("/api/v1/anomalies/detect")
        assert resp.status_code == 200
        assert resp.json()["inserted_anomalies"] == 0
        assert resp.json()["skipped_existing"] == 4

        listed = await client.get("/api/v1/anomalies")
        assert len(listed.json()) == 4

    async def test_detect_unavailable_sources(self, client: AsyncClient, seeded_sales, monkeypatch):
        from alerts.errors import DataUnavailable

        async def _unavailable(db):
            raise DataUnavailable("Could not read channel catalog")

        monkeypatch.setattr("alerts.sources.list_active_channels", _unavailable)
        resp = await client.post("/api/v1/anomalies/detect")
        assert resp.status_code == 503

    async def test_list_active_shape(self, client: AsyncClient, detected):
        resp = await client.get("/api/v1/anomalies")
        assert resp.status_code == 200
        data = resp.json()
        assert len(data) == 4

        drop = next(a for a in data if a["channel_name"] == "Loja Própria")
        assert drop["type"] == "ABRUPT_DROP"
        assert drop["type_label"] == "Queda abrupta"
        assert drop["icon"] == "trending-down"
        assert drop["severity"] == "HIGH"
        assert drop["severity_label"] == "Alto"
        assert drop["current_value"] == 60.0
        assert drop["expected_value"] == 100.0
        assert drop["variation_percentage"] == pytest.approx(-40.0)
        assert drop["detected_at"] == "2026-10-17"
        assert drop["dismissed_at"] is None

    async def test_summary_counts(self, client: AsyncClient, detected):
        resp = await client.get("/api/v1/anomalies/summary")
        assert resp.status_code == 200
        assert resp.json() == {"total": 4, "critical": 1, "high": 2, "medium": 0, "info": 1}

    async def test_dismiss_removes_from_active(self, client: AsyncClient, detected, mock_user):
        anomaly_id = (await client.get("/api/v1/anomalies")).json()[0]["id"]

        resp = await client.post(f"/api/v1/anomalies/{anomaly_id}/dismiss")
        assert resp.status_code == 200
        assert resp.json()["dismissed_at"] is not None
        assert resp.json()["dismissed_by"] == mock_user["sub"]

        active_ids = [a["id"] for a in (await client.get("/api/v1/anomalies")).json()]
        assert anomaly_id not in active_ids
        summary = (await client.get("/api/v1/anomalies/summary")).json()
        assert summary["total"] == 3

    async def test_dismiss_twice_keeps_first_timestamp(self, client: AsyncClient, detected):
        anomaly_id = (await client.get("/api/v1/anomalies")).json()[0]["id"]

        first = await client.post(f"/api/v1/anomalies/{anomaly_id}/dismiss")
        second = await client.post(f"/api/v1/anomalies/{anomaly_id}/dismiss")
        assert second.status_code == 200
        assert second.json()["dismissed_at"] == first.json()["dismissed_at"]

    async def test_dismiss_unknown_is_404(self, client: AsyncClient):
        resp = await client.post(f"/api/v1/anomalies/{uuid.uuid4()}/dismiss")
        assert resp.status_code == 404

    async def test_history_includes_dismissed(self, client: AsyncClient, detected):
        anomaly_id = (await client.get("/api/v1/anomalies")).json()[0]["id"]
        await client.post(f"/api/v1/anomalies/{anomaly_id}/dismiss")

        resp = await client.get("/api/v1/anomalies/history")
        assert resp.status_code == 200
        history = resp.json()
        assert len(history) == 4
        assert any(a["id"] == anomaly_id and a["dismissed_at"] for a in history)

    async def test_history_filters(self, client: AsyncClient, detected):
        wholesale_id = str(detected["wholesale"].id)

        by_channel = (await client.get(f"/api/v1/anomalies/history?channel_id={wholesale_id}")).json()
        assert {a["type"] for a in by_channel} == {"NO_SALES", "ABRUPT_DROP"}

        critical = (await client.get("/api/v1/anomalies/history?severity=CRITICAL")).json()
        assert [a["channel_name"] for a in critical] == ["Atacado"]

        spikes = (await client.get("/api/v1/anomalies/history?anomaly_type=SALES_SPIKE")).json()
        assert [a["channel_name"] for a in spikes] == ["Marketplace"]

    async def test_history_rejects_unknown_severity(self, client: AsyncClient):
        resp = await client.get("/api/v1/anomalies/history?severity=URGENT")
        assert resp.status_code == 422

    async def test_preview_before_and_after_persisting(self, client: AsyncClient, seeded_sales):
        before = (await client.get("/api/v1/anomalies/preview")).json()
        assert before["available"] is True
        assert before["evaluation_date"] == "2026-10-18"
        assert len(before["anomalies"]) == 4
        assert before["anomalies"][0]["severity"] == "CRITICAL"
        assert not any(a["already_saved"] for a in before["anomalies"])

        # Preview never persists
        assert (await client.get("/api/v1/anomalies")).json() == []

        await client.post("/api/v1/anomalies/detect")
        after = (await client.get("/api/v1/anomalies/preview")).json()
        assert all(a["already_saved"] for a in after["anomalies"])

    async def test_preview_degrades_when_sources_unavailable(self, client: AsyncClient, detected, monkeypatch):
        from alerts.errors import DataUnavailable

        async def _unavailable(db, start, end):
            raise DataUnavailable("Could not read daily sales")

        monkeypatch.setattr("alerts.sources.list_sales_in_range", _unavailable)
        resp = await client.get("/api/v1/anomalies/preview")
        assert resp.status_code == 200
        assert resp.json()["available"] is False
        assert resp.json()["anomalies"] == []

        # The persisted list is still served
        assert len((await client.get("/api/v1/anomalies")).json()) == 4

    async def test_health(self, client: AsyncClient):
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"


@pytest.fixture
async def anon_client(test_db, frozen_today, published):
    """Client with a database override but no authenticated user."""
    from api.deps import get_db
    from api.main import app

    async def override_get_db():
        yield test_db

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.mark.asyncio
class TestAnomaliesAuth:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/v1/anomalies"),
            ("get", "/api/v1/anomalies/summary"),
            ("get", "/api/v1/anomalies/history"),
            ("get", "/api/v1/anomalies/preview"),
            ("post", "/api/v1/anomalies/detect"),
        ],
    )
    async def test_requires_token(self, anon_client: AsyncClient, seeded_sales, method, path):
        resp = await getattr(anon_client, method)(path)
        assert resp.status_code == 401

    async def test_detect_without_token_persists_nothing(self, anon_client: AsyncClient, seeded_sales, test_db):
        from sqlalchemy import func, select

        from db.models import AnomalyLog

        resp = await anon_client.post("/api/v1/anomalies/detect")
        assert resp.status_code == 401
        assert (await test_db.execute(select(func.count()).select_from(AnomalyLog))).scalar_one() == 0

    async def test_invalid_token_is_rejected(self, anon_client: AsyncClient):
        resp = await anon_client.get("/api/v1/anomalies", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 401

    async def test_issued_token_is_accepted(self, anon_client: AsyncClient, seeded_sales):
        from core.security import create_access_token

        token = create_access_token({"sub": "analyst@salesdash.local"})
        headers = {"Authorization": f"Bearer {token}"}

        resp = await anon_client.post("/api/v1/anomalies/detect", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["inserted_anomalies"] == 4

        anomaly_id = (await anon_client.get("/api/v1/anomalies", headers=headers)).json()[0]["id"]
        dismissed = await anon_client.post(f"/api/v1/anomalies/{anomaly_id}/dismiss", headers=headers)
        assert dismissed.json()["dismissed_by"] == "analyst@salesdash.local"
