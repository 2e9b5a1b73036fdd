from __future__ import annotations

from collections.abc import Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from pendwrite.cache import QueryCache
from pendwrite.config import QueueConfig
from pendwrite.connectivity import Connectivity
from pendwrite.processor import QueueProcessor
from pendwrite.store.sql import SqlQueueStore

from .fakes import FakeClock, RecordingRemote


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(tmp_path) -> Iterator[Engine]:
    """
    File-backed SQLite engine per test.

    A file (not :memory:) so that separate connections, threads and store
    instances all see the same queue, the way a restarted process would.
    """
    eng = create_engine(
        f"sqlite:///{tmp_path / 'mutations.db'}",
        connect_args={"check_same_thread": False},
    )
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine: Engine, clock: FakeClock) -> SqlQueueStore:
    sql_store = SqlQueueStore(engine, default_max_retries=3, lease_ms=30_000, clock=clock)
    sql_store.create_schema()
    return sql_store


@pytest.fixture
def remote() -> RecordingRemote:
    return RecordingRemote()


@pytest.fixture
def cache() -> QueryCache:
    return QueryCache()


@pytest.fixture
def connectivity() -> Connectivity:
    return Connectivity(online=True)


@pytest.fixture
def queue_config() -> QueueConfig:
    """Immediate retries and no background work, so tests drive every pass."""
    return QueueConfig(
        max_retries=3,
        retry_delay_ms=0,
        retry_ceiling_ms=0,
        process_on_enqueue=False,
        keep_completed=None,
    )


@pytest.fixture
def processor(
    store: SqlQueueStore,
    remote: RecordingRemote,
    queue_config: QueueConfig,
    cache: QueryCache,
    connectivity: Connectivity,
    clock: FakeClock,
) -> Iterator[QueueProcessor]:
    proc = QueueProcessor(
        store,
        remote,
        config=queue_config,
        cache=cache,
        connectivity=connectivity,
        clock=clock,
    )
    yield proc
    proc.close()
