import os

os.environ.setdefault("TESTING", "True")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from typing import AsyncGenerator
from httpx import AsyncClient, ASGITransport
from medivault.main import app, get_attachment_manager
from medivault.database import Base, get_db
from medivault.services.attachments import AttachmentManager
from medivault.services.credential_store import CredentialStore


@pytest.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a test database engine backed by a per-test SQLite file."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        future=True
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture(scope="function")
async def test_db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture(scope="function")
def attachments(tmp_path) -> AttachmentManager:
    return AttachmentManager(tmp_path / "uploads")


@pytest.fixture(scope="function")
async def client(session_factory, attachments) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client; every request gets its own session, like production."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_attachment_manager] = lambda: attachments

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        follow_redirects=True
    ) as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
async def ann(test_db):
    return await CredentialStore(test_db).register_patient("Ann", "Lee", "ann@example.com", "ann-secret")


@pytest.fixture
async def ben(test_db):
    return await CredentialStore(test_db).register_patient("Ben", "Ode", "ben@example.com", "ben-secret")


@pytest.fixture
async def city_lab(test_db):
    return await CredentialStore(test_db).register_lab(
        "CityLab",
        "lab@citylab.example",
        "lab-secret",
        phone="555-0100",
        address="1 Main St",
        license_number="LIC-001",
        description="Pathology",
    )
