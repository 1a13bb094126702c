"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from typing import AsyncGenerator, List, Optional

from bulk_export.jobs import build_export_job
from bulk_export.lookup import InMemoryRecordLookup
from models.base import Base, EntityType, IdentifierType, OutputFormat
from models.export_job import ExportJob  # noqa: F401
from schemas.formats import FieldSpec
from storage.local import LocalStorage
from tests.factories import SIMPLE_USER_FIELDS, make_user

@pytest.fixture
def users() -> List[dict]:
    """Users resolvable by barcode A, C, D, E, F, G (B is missing on purpose)"""
    return [make_user(b) for b in ["A", "C", "D", "E", "F", "G"]]

@pytest.fixture
def lookup(users) -> InMemoryRecordLookup:
    return InMemoryRecordLookup({EntityType.USER: users})

@pytest.fixture
def storage(tmp_path) -> LocalStorage:
    return LocalStorage(tmp_path / "storage")

@pytest.fixture
def staging_dir(tmp_path) -> str:
    return str(tmp_path / "staging")

@pytest.fixture
def make_runner(lookup, storage, staging_dir):
    """Factory building a USER-by-barcode runner over an in-memory identifiers file"""

    def _make(
        identifiers: List[str],
        chunk_size: int = 2,
        skip_limit: int = 5,
        formats=(OutputFormat.CSV, OutputFormat.JSON),
        job_id: str = "job-1",
        field_specs: Optional[List[FieldSpec]] = None,
        **kwargs
    ):
        content = "\n".join(identifiers).encode("utf-8")
        runner_lookup = kwargs.pop("lookup", lookup)
        prefetch = kwargs.pop("prefetch", False)
        return build_export_job(
            entity_type=EntityType.USER,
            identifier_type=IdentifierType.BARCODE,
            source=content,
            lookup=runner_lookup,
            storage=storage,
            job_id=job_id,
            formats=formats,
            field_specs=field_specs or SIMPLE_USER_FIELDS,
            chunk_size=chunk_size,
            skip_limit=skip_limit,
            staging_dir=staging_dir,
            prefix="bulk-edit",
            prefetch=prefetch,
            **kwargs
        )

    return _make

@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create test database engine (SQLite file, one per test)"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()

@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()
