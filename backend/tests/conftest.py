"""
Centralized Test Configuration.
"""

import itertools
from datetime import datetime

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from backend.app.main import app
from backend.app.db.session import get_db, Base
from backend.app.core.config import settings
from backend.app.core.jwt import create_user_token
from backend.app.models.user import User
from backend.app.models.enums import UserRole
from backend.app.models.technician import Technician
from backend.app.models.work_order import WorkOrder, WorkOrderEvidence
from backend.app.models.finance_enums import CustomerStatus, PaymentType, WorkOrderStatus
from backend.app.domain.settlement.pricing import PricingStore
from backend.app.domain.settlement.runtime import build_settlement_components

# Setup In-Memory Test Database
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Event handler to enable foreign keys for SQLite
from sqlalchemy import event
from sqlalchemy.pool import Pool

@event.listens_for(Pool, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable foreign key constraints for SQLite."""
    if 'sqlite' in str(type(dbapi_conn)):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False
)

# Default verification time of test work orders
VERIFIED_AT = datetime(2024, 5, 10, 12, 0)


# Mock Redis for reliability in CI/CD
class MockRedis:
    def __init__(self):
        self.store = {}
        self.expirations = {}
        self._closed = False

    async def ping(self):
        if self._closed:
            return False
        return True

    async def get(self, key):
        if self._closed:
            return None
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self._closed:
            return False
        self.store[key] = value
        self.expirations[key] = ex
        return True

    async def incr(self, key):
        value = int(self.store.get(key) or 0) + 1
        self.store[key] = str(value)
        return value

    async def delete(self, key):
        if self._closed:
            return 0
        if key in self.store:
            del self.store[key]
            return 1
        return 0

    async def flushdb(self):
        if not self._closed:
            self.store = {}
            self.expirations = {}

    async def aclose(self):
        self._closed = True
        self.store = {}


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture(scope="session", autouse=True)
def apply_overrides():
    """Apply overrides once for the session."""
    async def override_get_db():
        async with TestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield

    app.dependency_overrides = {}


@pytest.fixture(autouse=True)
async def setup_database():
    """Create tables before each test function and drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(autouse=True)
def components(setup_database):
    """Fresh settlement components per test, attached to the app like the lifespan does."""
    built = build_settlement_components(settings, TestingSessionLocal)
    # All sessions share the single SQLite connection; keep bulk runs sequential
    built.recalculation.concurrency = 1
    built.attach(app)
    return built


@pytest.fixture
def settlement_service(components):
    return components.settlement


@pytest.fixture
def recalculation(components):
    return components.recalculation


@pytest.fixture
def reporting(components):
    return components.reporting


@pytest.fixture
async def client():
    """Async client for testing."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


# Shared session for fixture data creation
@pytest.fixture
async def db_session():
    async with TestingSessionLocal() as session:
        yield session


# --- Users ---

async def _create_user(db_session, username, role, is_active=True):
    user = User(
        email=f"{username}@fieldservice.test",
        username=username,
        full_name=username.replace("_", " ").title(),
        role=role,
        is_active=is_active,
    )
    db_session.add(user)
    await db_session.commit()
    return user


@pytest.fixture
async def superadmin(db_session):
    return await _create_user(db_session, "super_admin", UserRole.SUPERADMIN)


@pytest.fixture
async def admin_user(db_session):
    return await _create_user(db_session, "plain_admin", UserRole.ADMIN)


@pytest.fixture
def superadmin_headers(superadmin):
    return {"Authorization": f"Bearer {create_user_token(superadmin)}"}


@pytest.fixture
def admin_headers(admin_user):
    return {"Authorization": f"Bearer {create_user_token(admin_user)}"}


# --- Domain data factories ---

@pytest.fixture
def make_technician(db_session):
    counter = itertools.count(1)

    async def _make(name=None, payment_type=PaymentType.PER_JOB, monthly_salary=0.0, is_admin=False):
        tech = Technician(
            name=name or f"Technician {next(counter)}",
            payment_type=payment_type,
            monthly_salary=monthly_salary,
            is_admin=is_admin,
        )
        db_session.add(tech)
        await db_session.commit()
        return tech

    return _make


@pytest.fixture
def make_work_order(db_session):
    counter = itertools.count(1)

    async def _make(
        technicians=(),
        municipality="Zemun",
        status=WorkOrderStatus.COMPLETED,
        verified=True,
        verified_at=VERIFIED_AT,
        customer_status=CustomerStatus.NEW_CUSTOMER.value,
        with_evidence=True,
        tis_job_id=None,
    ):
        technicians = list(technicians)
        work_order = WorkOrder(
            tis_job_id=tis_job_id or f"TIS-{next(counter):05d}",
            municipality=municipality,
            address="Glavna 1",
            status=status,
            verified=verified,
            verified_at=verified_at if verified else None,
            technician_id=technicians[0].id if technicians else None,
            technician2_id=technicians[1].id if len(technicians) > 1 else None,
        )
        db_session.add(work_order)
        await db_session.flush()

        if with_evidence:
            db_session.add(WorkOrderEvidence(work_order_id=work_order.id, customer_status=customer_status))

        await db_session.commit()
        return work_order

    return _make


@pytest.fixture
def configure_pricing(db_session):
    async def _configure(prices=None, discounts=None, technician_prices=None):
        return await PricingStore.update_settings(
            db_session,
            prices_by_customer_status=prices or {},
            discounts_by_municipality=discounts or [],
            technician_prices=technician_prices or [],
        )

    return _configure
