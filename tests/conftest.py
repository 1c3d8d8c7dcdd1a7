"""
Shared fixtures: a throwaway SQLite database per test, the seeded catalog,
and an HTTP client with authentication replaced by an X-User-Id header.
"""
import pytest
from fastapi import Depends, FastAPI, HTTPException, Request, status
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database.engine import build_engine, get_db, init_db
from app.features.organizations.models import OrganizationMember
from app.features.organizations.service import create_organization
from app.features.permissions.dependencies import require_module_access
from app.features.permissions.models import Permission, Role
from app.features.permissions.schemas import RoleCreate
from app.features.permissions.service import RoleAdministration
from app.features.users.dependencies import get_current_user
from app.features.users.models import User
from scripts.seed_catalog import seed_catalog


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def catalog(db):
    """Modules, plans (free allows one paid module), permissions and system roles."""
    await seed_catalog(db)
    await db.commit()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    async def _make_user(name: str = "user", is_admin: bool = False) -> User:
        counter["n"] += 1
        user = User(
            appwrite_id=f"aw-{name}-{counter['n']}",
            email=f"{name}{counter['n']}@example.com",
            name=name,
            is_admin=is_admin,
        )
        db.add(user)
        await db.commit()
        return user

    return _make_user


@pytest.fixture
async def owner(make_user):
    return await make_user("owner")


@pytest.fixture
async def organization(db, catalog, owner):
    org = await create_organization(db, "Acme", owner_id=owner.id)
    await db.commit()
    return org


@pytest.fixture
def add_member(db):
    async def _add_member(organization_id: str, user: User, role: Role | None = None,
                          is_super_admin: bool = False, is_active: bool = True) -> OrganizationMember:
        member = OrganizationMember(
            user_id=user.id,
            organization_id=organization_id,
            role_id=role.id if role else None,
            is_super_admin=is_super_admin,
            is_active=is_active,
        )
        db.add(member)
        await db.commit()
        return member

    return _add_member


@pytest.fixture
def make_role(db):
    async def _make_role(name: str, organization_id: str | None, codes: list[str]) -> Role:
        admin = RoleAdministration(db)
        role = await admin.create_role(RoleCreate(name=name, organization_id=organization_id))
        ids = [p.id for p in await _permissions_by_code(db, codes)]
        await admin.set_role_permissions(role.id, ids)
        await db.commit()
        return role

    return _make_role


async def _permissions_by_code(db: AsyncSession, codes: list[str]):
    if not codes:
        return []
    result = await db.execute(select(Permission).where(Permission.code.in_(codes)))
    permissions = list(result.scalars().all())
    assert len(permissions) == len(set(codes)), "unknown permission code in test setup"
    return permissions


def _override_dependencies(app: FastAPI, session_factory) -> None:
    """Serve each request from the test database; authenticate from X-User-Id."""
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def override_current_user(request: Request, db: AsyncSession = Depends(get_db)) -> User:
        user_id = request.headers.get("X-User-Id")
        user = await db.get(User, user_id) if user_id else None
        if user is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid authentication credentials")
        return user

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_current_user


@pytest.fixture
async def client(session_factory, catalog):
    """
    Async HTTP client against the real application.

    Requests authenticate as the user whose id is sent in X-User-Id.
    """
    from app.main import app

    _override_dependencies(app, session_factory)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client

    app.dependency_overrides.clear()


@pytest.fixture
async def inventory_client(session_factory, catalog):
    """Client for a small app whose only route is guarded by access to the inventory module."""
    app = FastAPI()

    @app.get("/organizations/{organization_id}/inventory/products")
    async def list_products(user: User = Depends(require_module_access("inventory"))):
        return {"user_id": user.id, "products": []}

    _override_dependencies(app, session_factory)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client
