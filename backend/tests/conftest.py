# tests/conftest.py — Shared test fixtures
import os

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Use SQLite for tests
TEST_DB_URL = "sqlite+aiosqlite:///./test.db"
os.environ["DATABASE_URL"] = TEST_DB_URL
os.environ["JWT_SECRET_KEY"] = "test-secret-key-for-unit-tests-only-min-32-chars"
os.environ["ENVIRONMENT"] = "test"
os.environ["BCRYPT_ROUNDS"] = "4"

from models import Base, User, GlobalRole
from auth import AuthService, reset_login_attempts
from database import build_engine, get_db_session
from services import create_user, seed_access_control
from main import app

PASSWORD = "TestPassword123!"


@pytest.fixture(autouse=True)
def clear_login_attempts():
    reset_login_attempts()
    yield
    reset_login_attempts()


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    engine = build_engine(TEST_DB_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    async with session_factory() as session:
        await seed_access_control(session)
        await session.commit()
    yield engine
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def client(session_factory):
    """HTTP test client with overridden DB dependency"""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def _make_user(db_session, email: str, first_name: str, role: GlobalRole) -> User:
    return await create_user(
        db_session,
        email=email,
        password=PASSWORD,
        first_name=first_name,
        last_name="Tester",
        roles=(role,),
    )


@pytest_asyncio.fixture
async def super_admin(db_session):
    """Create a super admin user"""
    return await _make_user(db_session, "root@scrum-pm.dev", "Root", GlobalRole.SUPER_ADMIN)


@pytest_asyncio.fixture
async def admin_user(db_session):
    """Create an admin user"""
    return await _make_user(db_session, "admin@scrum-pm.dev", "Admin", GlobalRole.ADMIN)


@pytest_asyncio.fixture
async def owner_user(db_session):
    """Create a project owner (global role)"""
    return await _make_user(db_session, "owner@scrum-pm.dev", "Olivia", GlobalRole.PROJECT_OWNER)


@pytest_asyncio.fixture
async def test_user(db_session):
    """Create a team member"""
    return await _make_user(db_session, "testuser@scrum-pm.dev", "Terry", GlobalRole.TEAM_MEMBER)


@pytest_asyncio.fixture
async def other_user(db_session):
    """A second team member, not added to any project"""
    return await _make_user(db_session, "other@scrum-pm.dev", "Otto", GlobalRole.TEAM_MEMBER)


@pytest_asyncio.fixture
async def viewer_user(db_session):
    """Create a read-only user"""
    return await _make_user(db_session, "viewer@scrum-pm.dev", "Vera", GlobalRole.VIEWER)


def get_auth_headers(user: User) -> dict:
    """Generate auth headers for a user"""
    token = AuthService.create_access_token({"sub": user.id, "email": user.email})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return get_auth_headers


@pytest_asyncio.fixture
async def project(client, admin_user, test_user):
    """A private project created by ``admin_user`` with ``test_user`` as MEMBER"""
    headers = get_auth_headers(admin_user)
    res = await client.post("/api/v1/projects", json={"name": "Scrum Board", "key": "SB"}, headers=headers)
    assert res.status_code == 201, res.text
    data = res.json()
    res = await client.post(
        f"/api/v1/projects/{data['id']}/members",
        json={"user_id": test_user.id, "role": "MEMBER"},
        headers=headers,
    )
    assert res.status_code == 201, res.text
    return data
