import pytest

from readguard.abuse.domain.config import DetectionConfig

READ_PATH = "/api/abuse/v1/titles/t1/chapters/{chapter}/read"
READER = {"X-User-Id": "reader-1"}


@pytest.mark.asyncio
async def test_anonymous_read_is_left_to_the_ip_gate(api_client, verdicts):
	response = await api_client.post(READ_PATH.format(chapter="c1"))
	assert response.status_code == 200
	assert response.json() == {"allowed": True, "is_bot": False, "is_suspicious": False}
	assert verdicts.history.tracked_users() == 0


@pytest.mark.asyncio
async def test_reader_verdict_hides_scoring_details(api_client, clock):
	await api_client.post(READ_PATH.format(chapter="c1"), headers=READER)
	clock.advance(seconds=5)

	response = await api_client.post(READ_PATH.format(chapter="c2"), headers=READER)

	assert response.status_code == 200
	body = response.json()
	assert body == {"allowed": True, "is_bot": False, "is_suspicious": False}
	assert "reasons" not in body
	assert "bot_score" not in body


@pytest.mark.asyncio
@pytest.mark.parametrize("detection_config", [DetectionConfig(bot_score_threshold=20, suspicious_score_threshold=20)])
async def test_bot_reads_are_paused(api_client, clock, user_repo, verdicts):
	await api_client.post(READ_PATH.format(chapter="c1"), headers=READER)
	clock.advance(seconds=1)

	response = await api_client.post(READ_PATH.format(chapter="c2"), headers=READER)
	await verdicts.drain()

	assert response.status_code == 429
	assert response.headers["Retry-After"] == "10"
	assert response.json()["detail"] == {
		"code": "reading_paused",
		"reason": "Automated reading suspected",
		"retry_after": 10,
	}
	assert user_repo.records["reader-1"].is_bot is True


@pytest.mark.asyncio
@pytest.mark.parametrize("detection_config", [DetectionConfig(rate_limit_normal=2)])
async def test_reader_over_rate_limit(api_client, clock):
	for index, chapter in enumerate(("c1", "c2")):
		headers = {**READER, "X-Forwarded-For": f"192.0.2.{index + 1}"}
		response = await api_client.post(READ_PATH.format(chapter=chapter), headers=headers)
		assert response.status_code == 200
		clock.advance(seconds=1)

	headers = {**READER, "X-Forwarded-For": "192.0.2.3"}
	response = await api_client.post(READ_PATH.format(chapter="c3"), headers=headers)

	assert response.status_code == 429
	detail = response.json()["detail"]
	assert detail["code"] == "rate_limited"
	assert detail["reason"] == "Too many chapters requested"
	assert response.headers["Retry-After"] == "58"
