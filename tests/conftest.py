"""
Payroll Recon - Test Configuration

Pytest fixtures and configuration.
"""

from datetime import datetime
from io import BytesIO
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from openpyxl import Workbook
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import payroll_recon.models  # noqa: F401
from payroll_recon.database import Base, enable_sqlite_savepoints, get_async_session
from payroll_recon.services.esignature_provider import (
    EnvelopeRequest,
    EnvelopeResult,
    EnvelopeStatus,
    ESignatureProvider,
    get_esignature_provider,
)
from payroll_recon.utils.error_handling import ESignatureAPIException
from main import app


TEST_DATABASE_URL = "sqlite+aiosqlite://"

# Create test engine
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
enable_sqlite_savepoints(test_engine)

# Create test session factory
TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ===========================================
# E-SIGNATURE PROVIDER DOUBLE
# ===========================================

class FakeESignatureProvider(ESignatureProvider):
    """Records requests instead of calling HelloSign."""

    def __init__(self):
        self.requests: List[EnvelopeRequest] = []
        self.fail_for: Dict[str, str] = {}
        self.crash_for: Dict[str, Exception] = {}
        self.remote_status: Dict[str, str] = {}
        self.missing: List[str] = []

    def missing_configuration(self) -> List[str]:
        return list(self.missing)

    async def send_with_template(self, request: EnvelopeRequest) -> EnvelopeResult:
        self.requests.append(request)
        if request.recipient_email in self.crash_for:
            raise self.crash_for[request.recipient_email]
        if request.recipient_email in self.fail_for:
            raise ESignatureAPIException(self.fail_for[request.recipient_email], status_code=400)
        envelope_id = f"sig-{len(self.requests)}"
        return EnvelopeResult(envelope_id=envelope_id, status="sent", raw={"signature_request_id": envelope_id})

    async def get_request_status(self, envelope_id: str) -> EnvelopeStatus:
        status = self.remote_status.get(envelope_id, "sent")
        return EnvelopeStatus(envelope_id=envelope_id, status=status, is_complete=status == "completed")


@pytest.fixture
def fake_provider() -> FakeESignatureProvider:
    return FakeESignatureProvider()


@pytest_asyncio.fixture(scope="function")
async def client(
    db_session: AsyncSession,
    fake_provider: FakeESignatureProvider,
) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session and provider overrides."""

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_session
    app.dependency_overrides[get_esignature_provider] = lambda: fake_provider

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def manager_headers() -> Dict[str, str]:
    """Headers for an operator who may run payroll and edit master data."""
    return {
        "X-Actor-Id": "operator-1",
        "X-Actor-Capabilities": "payroll:manage,payroll:master-data",
    }


@pytest.fixture
def viewer_headers() -> Dict[str, str]:
    return {"X-Actor-Id": "viewer-1", "X-Actor-Capabilities": ""}


# ===========================================
# WORKBOOK FIXTURES
# ===========================================

def build_workbook(sheets: Dict[str, List[List[Optional[object]]]]) -> bytes:
    """Write rows per sheet into an in-memory xlsx."""
    wb = Workbook()
    wb.remove(wb.active)
    for sheet_name, rows in sheets.items():
        ws = wb.create_sheet(sheet_name)
        for row in rows:
            ws.append(row)
    buffer = BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def make_workbook():
    return build_workbook


@pytest.fixture
def payroll_workbook() -> bytes:
    """
    Two months for two people.

    Salaries outranks Basic Salaries, so Ali Raza's February basic is 52000.
    """
    jan = datetime(2026, 1, 1)
    feb = datetime(2026, 2, 1)
    return build_workbook({
        "Salaries": [
            ["#", "Name", jan, feb],
            [1, "Ali Raza", 50000, 52000],
            [2, "Sara Ahmed", 80000, 80000],
        ],
        "Basic Salaries": [
            ["#", "Name", jan, feb],
            [1, "Ali Raza", 50000, 50000],
        ],
        "Medical": [
            ["#", "Name", jan, feb],
            [1, "Ali Raza", 5000, 5000],
        ],
        "Final Payments": [
            ["#", "Name", jan, feb],
            [1, "Ali Raza", 55000, 57000],
            [2, "Sara Ahmed", 80000, 80000],
        ],
        "Scratch": [
            ["ignored", "sheet"],
        ],
    })
