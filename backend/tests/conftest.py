import uuid

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docrecon.core.config import get_settings


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    # Some tests mutate env vars and clear the settings cache. Ensure we don't leak
    # a cached Settings instance (e.g. with a different threshold) across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture(autouse=True)
def _reset_retry_scheduler():
    from docrecon.services.retry_scheduler import reset_retry_scheduler

    reset_retry_scheduler()
    yield
    reset_retry_scheduler()


@pytest.fixture
def session_factory():
    from docrecon.models.extraction import Base

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine)
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest_asyncio.fixture
async def admin_client(session_factory):
    """In-process ASGI client authenticated as ADMIN over an in-memory database."""
    from docrecon.core.auth import CurrentUser, get_current_user
    from docrecon.core.dependencies import get_db, get_session_factory
    from docrecon.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_current_user] = lambda: CurrentUser(id=str(uuid.uuid4()), role="ADMIN")

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
