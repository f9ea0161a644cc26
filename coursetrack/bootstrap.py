"""Storage backend selection shared by the API and the reconcile command."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from coursetrack.config.settings import Settings
from coursetrack.content.repository import (
    CassandraContentRepository,
    InMemoryContentRepository,
)
from coursetrack.core.database import init_async_cassandra, shutdown_async_cassandra
from coursetrack.core.logging import get_logger
from coursetrack.progress.factory import ProgressServices, build_progress_services
from coursetrack.progress.repository import (
    CassandraProgressRepository,
    InMemoryProgressRepository,
)


logger = get_logger(__name__)


@asynccontextmanager
async def open_progress_services(settings: Settings) -> AsyncIterator[ProgressServices]:
    """Open the configured storage backend and build the progress services.

    The Cassandra connection is shut down on exit. The memory backend starts
    empty and is meant for development and tests.
    """
    if settings.storage_backend == "memory":
        logger.info("storage_backend_selected", backend="memory")
        yield build_progress_services(
            InMemoryContentRepository(), InMemoryProgressRepository(), settings
        )
        return

    session = await init_async_cassandra()
    logger.info("storage_backend_selected", backend="cassandra")
    try:
        yield build_progress_services(
            CassandraContentRepository(session, settings.cassandra_keyspace),
            CassandraProgressRepository(session, settings.cassandra_keyspace),
            settings,
        )
    finally:
        await shutdown_async_cassandra()
