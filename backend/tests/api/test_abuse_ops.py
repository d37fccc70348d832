import pytest

from readguard.infra import postgres
from readguard.settings import settings


@pytest.mark.asyncio
async def test_health_endpoints(api_client):
	response = await api_client.get("/health/live")
	assert response.status_code == 200
	assert response.json()["status"] == "ok"

	response = await api_client.get("/health/ready")
	assert response.status_code == 200
	assert response.json() == {"status": "ok", "storage": "memory"}


@pytest.mark.asyncio
async def test_metrics_expose_abuse_counters(api_client, verdicts):
	await verdicts.check_ip_activity("192.0.2.80", "/api/titles", "GET")

	response = await api_client.get("/metrics")

	assert response.status_code == 200
	assert "readguard_abuse_ip_checks_total" in response.text


@pytest.mark.asyncio
async def test_private_metrics_need_admin(api_client, admin_headers, monkeypatch):
	monkeypatch.setattr(settings, "obs_metrics_public", False)

	assert (await api_client.get("/metrics")).status_code == 401
	assert (await api_client.get("/metrics", headers={"X-User-Id": "reader-1"})).status_code == 403
	assert (await api_client.get("/metrics", headers=admin_headers)).status_code == 200


@pytest.mark.asyncio
async def test_readiness_checks_redis_history(api_client, monkeypatch):
	monkeypatch.setattr(settings, "abuse_history_backend", "redis")

	response = await api_client.get("/health/ready")

	assert response.status_code == 200
	assert response.json() == {"status": "ok", "storage": "memory", "history": "redis"}


@pytest.mark.asyncio
async def test_readiness_reports_unavailable_store(api_client, monkeypatch):
	async def _down() -> bool:
		return False

	monkeypatch.setattr(settings, "abuse_storage", "postgres")
	monkeypatch.setattr(postgres, "ping", _down)

	response = await api_client.get("/health/ready")

	assert response.status_code == 503
	assert response.json()["status"] == "unavailable"
