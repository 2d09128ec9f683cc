"""
PayGuard - Test Configuration

Pytest fixtures and configuration.
Database-backed tests run against an in-memory SQLite database.
"""

import itertools
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import payguard.models  # noqa: F401  register mappers
from payguard.database import Base
from payguard.models.staff import EmploymentType, StaffIdentity
from payguard.services.identity_hasher import hash_field, hash_identity
from payguard.services.ledger_client import LedgerClient
from payguard.utils.pii_security import PIICategory, PIIEncryptionEngine, get_pii_engine
from tests.fixtures.ledger_mock import FakeLedgerGateway


TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Distinct enough that no pair crosses the fuzzy-match threshold
STAFF_NAMES = [
    "Adaeze Okafor",
    "Babatunde Adeyemi",
    "Chinedu Eze",
    "Funmilayo Bello",
    "Ibrahim Musa",
    "Ngozi Nwosu",
    "Tunde Bakare",
    "Yusuf Garba",
]


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


# ===========================================
# COLLABORATORS
# ===========================================

@pytest.fixture
def pii_engine() -> PIIEncryptionEngine:
    """The process-wide engine, so services built with defaults can decrypt."""
    return get_pii_engine()


@pytest.fixture
def fake_gateway() -> FakeLedgerGateway:
    return FakeLedgerGateway()


@pytest.fixture
def ledger(fake_gateway) -> LedgerClient:
    """Ledger client over the fake contract, without confirmation polling."""
    return LedgerClient(fake_gateway)


class FakeEnricher:
    """Enricher that prefixes the fallback text, or fails on demand."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.enrich_calls = 0
        self.summary_calls = 0

    async def enrich(self, flag_type, context, fallback_text: str) -> str:
        self.enrich_calls += 1
        if self.fail:
            raise RuntimeError("enrichment provider unavailable")
        return f"[enriched] {fallback_text}"

    async def summarize_batch(self, summary, fallback_text: str) -> str:
        self.summary_calls += 1
        return f"[summary] {fallback_text}"


@pytest.fixture
def fake_enricher() -> FakeEnricher:
    return FakeEnricher()


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest.fixture
def make_staff(db_session: AsyncSession, pii_engine: PIIEncryptionEngine):
    """Factory persisting registry entries with unique BVN/NIN by default."""
    counter = itertools.count(1)

    async def _make(
        name: Optional[str] = None,
        dob: str = "1985-03-12",
        bvn: Optional[str] = None,
        nin: Optional[str] = None,
        grade: Optional[str] = "Grade Level 8",
        department: Optional[str] = "Finance",
        verified: bool = True,
        is_active: bool = True,
    ) -> StaffIdentity:
        n = next(counter)
        name = name or STAFF_NAMES[(n - 1) % len(STAFF_NAMES)]
        bvn = bvn or str(22100000000 + n)
        nin = nin or str(33100000000 + n)
        staff = StaffIdentity(
            identity_hash=hash_identity(name, dob, bvn, nin),
            bvn_hash=hash_field(bvn, "bvn"),
            nin_hash=hash_field(nin, "nin"),
            phone_hash=None,
            name_encrypted=pii_engine.encrypt(name, PIICategory.FULL_NAME),
            dob_encrypted=pii_engine.encrypt(dob, PIICategory.DATE_OF_BIRTH),
            staff_number=f"PG/2026/{n:04d}",
            grade=grade,
            department=department,
            employment_type=EmploymentType.PERMANENT,
            is_active=is_active,
            verified=verified,
            ledger_tx_hashes=[f"{n:064x}"] if verified else [],
        )
        db_session.add(staff)
        await db_session.commit()
        return staff

    return _make
