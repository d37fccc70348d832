import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from readguard.abuse.domain import container
from readguard.abuse.domain.clock import FrozenClock
from readguard.abuse.domain.config import DetectionConfig
from readguard.abuse.domain.ip_risk import InMemoryIpRiskRepository
from readguard.abuse.domain.user_risk import InMemoryUserRiskRepository
from readguard.infra import postgres
from readguard.settings import settings

# Noon UTC keeps scenarios clear of the off-hours window.
NOON = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from readguard.infra.redis import redis_client, set_redis_client

	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Run the app against in-memory storage with no store timeout."""
	original = (settings.abuse_storage, settings.abuse_store_timeout_seconds, settings.abuse_config_path)
	settings.abuse_storage = "memory"
	settings.abuse_store_timeout_seconds = 0
	settings.abuse_config_path = None
	try:
		yield
	finally:
		settings.abuse_storage, settings.abuse_store_timeout_seconds, settings.abuse_config_path = original


@pytest.fixture
def clock() -> FrozenClock:
	return FrozenClock(NOON)


@pytest.fixture
def detection_config() -> DetectionConfig:
	return DetectionConfig()


@pytest.fixture
def user_repo() -> InMemoryUserRiskRepository:
	return InMemoryUserRiskRepository()


@pytest.fixture
def ip_repo() -> InMemoryIpRiskRepository:
	return InMemoryIpRiskRepository()


@pytest_asyncio.fixture
async def verdicts(clock, detection_config, user_repo, ip_repo):
	service = container.configure(
		config=detection_config,
		user_repository=user_repo,
		ip_repository=ip_repo,
		clock=clock,
		store_timeout_seconds=0,
	)
	try:
		yield service
	finally:
		await service.aclose()


@pytest.fixture
def admin_headers() -> dict[str, str]:
	return {"X-User-Id": "staff-1", "X-User-Roles": "admin"}


@pytest_asyncio.fixture
async def api_client(verdicts):
	from readguard.main import create_app

	app = create_app(use_lifespan=False)
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
