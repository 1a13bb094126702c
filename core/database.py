"""
Job status store connection: one async engine per process and the session
factory shared by request handlers and background export jobs
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings

# Background jobs outlive the request that started them, so connections are
# not pooled across event loops
engine = create_async_engine(settings.DATABASE_URL, echo=False, poolclass=NullPool)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False
)
