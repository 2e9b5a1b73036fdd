from __future__ import annotations

import os
import uuid
from collections.abc import Iterator

import pytest
from redis import Redis
from redis.exceptions import RedisError

from pendwrite.config import StoreConfig
from pendwrite.store.redis_store import RedisQueueStore

from ..fakes import FakeClock


@pytest.fixture(scope="session")
def redis_client() -> Iterator[Redis]:
    """
    Redis connection for the Redis store tests.

    Set PENDWRITE_TEST_REDIS_URL to point at a disposable server; the tests
    are skipped when nothing answers there.
    """
    url = os.getenv("PENDWRITE_TEST_REDIS_URL", "redis://localhost:6379/15")
    client = Redis.from_url(url, socket_connect_timeout=1)
    try:
        client.ping()
    except RedisError as exc:
        client.close()
        pytest.skip(f"Redis not reachable at {url}: {exc}")
    yield client
    client.close()


@pytest.fixture
def redis_store(redis_client: Redis, clock: FakeClock) -> Iterator[RedisQueueStore]:
    # Unique prefix per test so runs never see each other's keys.
    config = StoreConfig(key_prefix=f"pendwrite-test-{uuid.uuid4().hex[:8]}")
    store = RedisQueueStore(redis_client, config, default_max_retries=3, clock=clock)
    yield store
    store.clear()
