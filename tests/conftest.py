import os
from types import SimpleNamespace
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pymongo.errors import ConnectionFailure

# Use test DB
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017")
os.environ.setdefault("MONGODB_DB_NAME", "shadownews_repositories_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("VALIDATION_MX_CHECK", "false")


@pytest.fixture
def fake_user():
    """A duck-typed user for code paths that only read id, karma and role."""
    return SimpleNamespace(id="507f1f77bcf86cd799439011", karma=10, role="user", session_version=0)


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def db():
    """Beanie on a clean test database; skips the test when MongoDB is not reachable."""
    from app.db.init import DOCUMENT_MODELS, get_client, init_db

    ping_client = get_client(serverSelectionTimeoutMS=1000)
    try:
        await ping_client.admin.command("ping")
    except ConnectionFailure:
        pytest.skip("MongoDB not available")
    finally:
        ping_client.close()

    client = await init_db(serverSelectionTimeoutMS=1000)
    for model in DOCUMENT_MODELS:
        await model.get_motor_collection().delete_many({})
    yield client
    client.close()


@pytest_asyncio.fixture
async def make_user(db):
    from app.models.user import User

    async def _make(email: str, karma: int = 10, role: str = "user") -> User:
        user = User(email=email, username=email.split("@")[0], name=email.split("@")[0], karma=karma, role=role)
        await user.insert()
        return user

    return _make
