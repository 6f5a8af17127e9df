"""API-specific test fixtures."""

import pytest
from httpx import ASGITransport, AsyncClient

import storefront.db.base as db_mod
import storefront.db.redis as redis_mod
from storefront.main import create_app


@pytest.fixture
async def api_client(session_factory, redis_client):
    """In-process client with the shared session factory and Redis pointed at test stores.

    ASGITransport does not run the lifespan, so init_db()/init_redis() are
    bypassed and the module globals are set directly.
    """
    db_mod._session_factory = session_factory
    redis_mod._redis = redis_client

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    db_mod._session_factory = None
    redis_mod._redis = None
