"""
FastAPI dependencies
"""

from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession

from bulk_export.lookup import HttpRecordLookup, RecordLookup
from core.database import async_session_maker
from storage import get_storage as build_storage
from storage.base import Storage


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session per request"""
    async with async_session_maker() as session:
        yield session


def get_session_factory():
    """Session factory used by background jobs to store outcomes"""
    return async_session_maker


def get_storage() -> Storage:
    return build_storage()


def get_lookup() -> RecordLookup:
    """Lookup collaborator for a new job; the job closes it when done"""
    return HttpRecordLookup()
