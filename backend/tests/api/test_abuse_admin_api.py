import pytest

from readguard.abuse.domain.user_scorer import BotDetectionResult

TARGET_IP = "198.51.100.77"


@pytest.mark.asyncio
async def test_admin_endpoints_require_identity(api_client):
	response = await api_client.get("/api/abuse/v1/ips/blocked")
	assert response.status_code == 401
	assert response.json()["detail"] == "unauthenticated"


@pytest.mark.asyncio
async def test_admin_endpoints_require_admin_role(api_client):
	headers = {"X-User-Id": "reader-1", "X-User-Roles": "reader"}
	for path in ("/api/abuse/v1/ips/stats", "/api/abuse/v1/users/suspicious", "/api/abuse/v1/users/stats"):
		response = await api_client.get(path, headers=headers)
		assert response.status_code == 403
		assert response.json()["detail"] == "insufficient_role"


@pytest.mark.asyncio
async def test_block_list_and_unblock_ip(api_client, admin_headers):
	response = await api_client.post(
		f"/api/abuse/v1/ips/{TARGET_IP}/block",
		json={"reason": "credential stuffing", "duration_minutes": 30},
		headers=admin_headers,
	)
	assert response.status_code == 200
	body = response.json()
	assert body["is_blocked"] is True
	assert body["blocked_reason"] == "credential stuffing"

	response = await api_client.get("/api/abuse/v1/ips/blocked", headers=admin_headers)
	assert [row["ip_address"] for row in response.json()] == [TARGET_IP]

	response = await api_client.get("/api/abuse/v1/ips/stats", headers=admin_headers)
	assert response.json()["blocked_ips"] == 1

	response = await api_client.post(f"/api/abuse/v1/ips/{TARGET_IP}/unblock", headers=admin_headers)
	assert response.status_code == 204

	response = await api_client.get(f"/api/abuse/v1/ips/{TARGET_IP}", headers=admin_headers)
	assert response.status_code == 200
	assert response.json()["is_blocked"] is False


@pytest.mark.asyncio
async def test_block_rejects_bad_duration(api_client, admin_headers):
	response = await api_client.post(
		f"/api/abuse/v1/ips/{TARGET_IP}/block",
		json={"duration_minutes": 0},
		headers=admin_headers,
	)
	assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_ip_returns_404(api_client, admin_headers):
	for method, path in (
		("get", f"/api/abuse/v1/ips/{TARGET_IP}"),
		("post", f"/api/abuse/v1/ips/{TARGET_IP}/unblock"),
		("post", f"/api/abuse/v1/ips/{TARGET_IP}/reset"),
	):
		response = await getattr(api_client, method)(path, headers=admin_headers)
		assert response.status_code == 404
		assert response.json()["detail"] == "ip_not_tracked"


@pytest.mark.asyncio
async def test_reset_ip_keeps_activity_log(api_client, admin_headers, verdicts):
	await verdicts.check_ip_activity(TARGET_IP, "/api/titles", "GET")
	await verdicts.block_ip(TARGET_IP, "manual", 10)

	response = await api_client.post(f"/api/abuse/v1/ips/{TARGET_IP}/reset", headers=admin_headers)
	assert response.status_code == 204

	response = await api_client.get(f"/api/abuse/v1/ips/{TARGET_IP}", headers=admin_headers)
	body = response.json()
	assert body["is_blocked"] is False
	assert body["bot_score"] == 0
	assert len(body["activity_log"]) == 1
	assert body["activity_log"][0]["endpoint"] == "/api/titles"


@pytest.mark.asyncio
async def test_whitelist_endpoint(api_client, admin_headers, ip_repo):
	response = await api_client.post(
		f"/api/abuse/v1/ips/{TARGET_IP}/whitelist",
		json={"endpoint": "/api/feed"},
		headers=admin_headers,
	)
	assert response.status_code == 204
	assert ip_repo.records[TARGET_IP].whitelisted_endpoints == ["/api/feed"]


@pytest.mark.asyncio
async def test_suspicious_users_and_reset(api_client, admin_headers, verdicts):
	await verdicts.update_bot_status(
		"reader-9",
		BotDetectionResult(is_bot=False, is_suspicious=True, bot_score=55, reasons=["Reading speed too fast"]),
	)

	response = await api_client.get("/api/abuse/v1/users/suspicious", headers=admin_headers)
	assert response.status_code == 200
	assert [row["user_id"] for row in response.json()] == ["reader-9"]
	assert response.json()[0]["bot_score"] == 55

	response = await api_client.post("/api/abuse/v1/users/reader-9/reset", headers=admin_headers)
	assert response.status_code == 204

	response = await api_client.get("/api/abuse/v1/users/reader-9", headers=admin_headers)
	body = response.json()
	assert body["bot_score"] == 0
	assert body["is_suspicious"] is False
	assert body["suspicious_activity_log"] == []


@pytest.mark.asyncio
async def test_user_stats(api_client, admin_headers):
	response = await api_client.get("/api/abuse/v1/users/stats", headers=admin_headers)
	assert response.status_code == 200
	assert response.json() == {
		"total_users": 0,
		"suspected_bots": 0,
		"confirmed_bots": 0,
		"recent_suspicious_activities": 0,
	}


@pytest.mark.asyncio
async def test_unknown_user_returns_404(api_client, admin_headers):
	response = await api_client.get("/api/abuse/v1/users/nobody", headers=admin_headers)
	assert response.status_code == 404
	assert response.json()["detail"] == "user_not_tracked"


@pytest.mark.asyncio
async def test_blank_identifier_is_rejected(api_client, admin_headers):
	response = await api_client.post("/api/abuse/v1/users/%20%20/reset", headers=admin_headers)
	assert response.status_code == 400
	assert response.json()["detail"] == "invalid_identifier"
