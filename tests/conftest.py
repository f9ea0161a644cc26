"""Shared fixtures.

The suite runs against the in-memory repositories; nothing needs Cassandra
or Redis.
"""

import os


os.environ["ENVIRONMENT"] = "testing"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["REDIS_ENABLED"] = "false"
os.environ["LOG_TO_FILE"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"

from collections.abc import Awaitable, Callable  # noqa: E402
from uuid import UUID, uuid4  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from coursetrack.auth.permissions import UserRole  # noqa: E402
from coursetrack.auth.security import create_access_token  # noqa: E402
from coursetrack.config import Settings, get_settings  # noqa: E402
from coursetrack.content import ContentItem, InMemoryContentRepository  # noqa: E402
from coursetrack.progress.factory import (  # noqa: E402
    ProgressServices,
    build_progress_services,
)
from coursetrack.progress.repository import InMemoryProgressRepository  # noqa: E402


SeedModule = Callable[..., Awaitable[list[ContentItem]]]


@pytest.fixture
def settings() -> Settings:
    get_settings.cache_clear()
    return get_settings()


@pytest.fixture
def progress_repo() -> InMemoryProgressRepository:
    return InMemoryProgressRepository()


@pytest.fixture
def content_repo() -> InMemoryContentRepository:
    return InMemoryContentRepository()


@pytest.fixture
def services(
    settings: Settings,
    content_repo: InMemoryContentRepository,
    progress_repo: InMemoryProgressRepository,
) -> ProgressServices:
    """Progress services over empty in-memory repositories."""
    return build_progress_services(content_repo, progress_repo, settings)


@pytest.fixture
def user_id() -> UUID:
    return uuid4()


@pytest.fixture
def module_id() -> UUID:
    return uuid4()


@pytest.fixture
def seed_module(services: ProgressServices) -> SeedModule:
    """Register ``count`` active content items in a module, one per section."""

    async def seed(
        module_id: UUID,
        count: int = 4,
        *,
        content_type: str = "document",
        sections: list[str] | None = None,
    ) -> list[ContentItem]:
        items = []
        for i in range(count):
            item = ContentItem(
                id=uuid4(),
                module_id=module_id,
                section=sections[i] if sections else f"section-{i + 1}",
                order=i,
                content_type=content_type,
                title=f"Item {i + 1}",
            )
            await services.registry.register(item)
            items.append(item)
        return items

    return seed


# ==============================================================================
# HTTP
# ==============================================================================


@pytest.fixture
def app(services: ProgressServices):
    """Application with the in-memory services installed, lifespan skipped."""
    from coursetrack.main import create_app

    application = create_app()
    application.state.settings = services.settings
    application.state.redis = None
    application.state.progress = services
    return application


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


def _auth_headers(user_id: UUID, role: UserRole = UserRole.STUDENT) -> dict[str, str]:
    token = create_access_token(
        {"sub": str(user_id), "email": "learner@example.com", "role": role.value}
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def make_auth_headers() -> Callable[..., dict[str, str]]:
    return _auth_headers


@pytest.fixture
def student_headers(user_id: UUID) -> dict[str, str]:
    return _auth_headers(user_id)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return _auth_headers(uuid4(), UserRole.ADMIN)
