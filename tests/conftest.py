import fakeredis
import pytest

from serval_run.config import ServalSettings
from serval_run.control_plane.memory_queue import InMemoryJobQueue
from serval_run.control_plane.redis_queue import RedisJobQueue
from serval_run.control_plane.result_handler import ResultHandler
from serval_run.database import Database


@pytest.fixture
def settings(tmp_path):
    return ServalSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'serval.db'}",
        queue_backend="memory",
        worker_dequeue_timeout=0.05,
        job_lease_seconds=30,
        recovery_interval_seconds=60,
    )


@pytest.fixture
async def database(settings):
    db = Database(settings)
    await db.init_models()
    yield db
    await db.dispose()


@pytest.fixture
def result_handler(database):
    return ResultHandler(database)


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def memory_queue():
    return InMemoryJobQueue(lease_seconds=30)


@pytest.fixture
def redis_queue(redis_client):
    return RedisJobQueue(redis_client, key_prefix="test:jobs", lease_seconds=30)


@pytest.fixture(params=["memory", "redis"])
def queue(request):
    """Every queue contract test runs against both backends."""
    return request.getfixturevalue(f"{request.param}_queue")
