import pytest
from starlette.requests import Request

from readguard.abuse.domain.config import DetectionConfig
from readguard.abuse.middleware.ip_gate import resolve_client_ip, retry_after_seconds
from readguard.obs import metrics

BLOCKED_IP = "198.51.100.20"


def _request(headers: dict[str, str], client: tuple[str, int] | None = ("10.0.0.5", 4242)) -> Request:
	scope = {
		"type": "http",
		"method": "GET",
		"path": "/",
		"headers": [(key.lower().encode(), value.encode()) for key, value in headers.items()],
		"client": client,
	}
	return Request(scope)


def test_resolve_client_ip_prefers_forwarded_first_hop():
	request = _request({"X-Forwarded-For": "203.0.113.1, 10.0.0.1", "X-Real-IP": "203.0.113.2"})
	assert resolve_client_ip(request) == "203.0.113.1"


def test_resolve_client_ip_falls_back_to_real_ip_then_peer():
	assert resolve_client_ip(_request({"X-Real-IP": "203.0.113.2"})) == "203.0.113.2"
	assert resolve_client_ip(_request({})) == "10.0.0.5"
	assert resolve_client_ip(_request({}, client=None)) is None


def test_resolve_client_ip_strips_mapped_prefix():
	assert resolve_client_ip(_request({}, client=("::ffff:192.0.2.9", 80))) == "192.0.2.9"
	assert resolve_client_ip(_request({"X-Forwarded-For": "::FFFF:192.0.2.10"})) == "192.0.2.10"


def test_resolve_client_ip_ignores_headers_when_untrusted():
	request = _request({"X-Forwarded-For": "203.0.113.1"})
	assert resolve_client_ip(request, trust_forwarded=False) == "10.0.0.5"


def test_retry_after_rounds_up():
	assert retry_after_seconds(0) == 1
	assert retry_after_seconds(1500) == 2
	assert retry_after_seconds(3_600_000) == 3600


@pytest.mark.asyncio
async def test_blocked_address_gets_429(api_client, admin_headers, verdicts):
	await verdicts.block_ip(BLOCKED_IP, "scraping", 60)
	before = metrics.ABUSE_IP_CHECKS.labels(outcome="blocked")._value.get()

	response = await api_client.get("/health/live", headers={"X-Forwarded-For": BLOCKED_IP})
	assert response.status_code == 429

	response = await api_client.get("/api/abuse/v1/ips/stats", headers={**admin_headers, "X-Forwarded-For": BLOCKED_IP})
	assert response.status_code == 429
	assert response.headers["Retry-After"] == "3600"
	detail = response.json()["detail"]
	assert detail == {"code": "ip_blocked", "reason": "scraping", "retry_after": 3600}
	after = metrics.ABUSE_IP_CHECKS.labels(outcome="blocked")._value.get()
	assert after == before + 1


@pytest.mark.asyncio
async def test_preflight_paths_are_not_recorded(api_client, ip_repo):
	response = await api_client.get("/health/live", headers={"X-Forwarded-For": "192.0.2.50"})
	assert response.status_code == 200
	assert "192.0.2.50" not in ip_repo.records


@pytest.mark.asyncio
@pytest.mark.parametrize("detection_config", [DetectionConfig(rate_limit_anonymous=2)])
async def test_rate_limited_address_gets_429(api_client):
	headers = {"X-Forwarded-For": "192.0.2.60"}

	for _ in range(2):
		response = await api_client.get("/api/abuse/v1/ips/stats", headers=headers)
		assert response.status_code == 401

	response = await api_client.get("/api/abuse/v1/ips/stats", headers=headers)
	assert response.status_code == 429
	assert response.json()["detail"]["code"] == "rate_limited"
	assert int(response.headers["Retry-After"]) >= 1


@pytest.mark.asyncio
async def test_options_requests_skip_the_gate(api_client, verdicts, ip_repo):
	await verdicts.block_ip(BLOCKED_IP, "scraping", 60)
	response = await api_client.options("/health/live", headers={"X-Forwarded-For": BLOCKED_IP})
	assert response.status_code != 429
	assert ip_repo.records[BLOCKED_IP].total_requests == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("detection_config", [DetectionConfig(ip_block_threshold=25)])
async def test_automatic_block_body_hides_detection_thresholds(api_client, clock):
	headers = {"X-Forwarded-For": "192.0.2.70"}

	for _ in range(4):
		response = await api_client.get("/api/abuse/v1/ips/stats", headers=headers)
		assert response.status_code == 401
		clock.advance(milliseconds=100)

	response = await api_client.get("/api/abuse/v1/ips/stats", headers=headers)
	assert response.status_code == 429
	detail = response.json()["detail"]
	assert detail["code"] == "ip_blocked"
	assert detail["reason"] == "Automatic block: automated traffic detected"
	for leaked in ("500ms", "min:", "Request burst", "score"):
		assert leaked not in detail["reason"]
