"""
Async engine management for the SQL warehouse
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)


def make_engine(url: str = None, echo: bool = False) -> AsyncEngine:
    """Create the warehouse engine"""
    url = url or settings.DATABASE_URL
    logger.info(f"Creating warehouse engine for {url.split('@')[-1]}")
    return create_async_engine(
        url,
        echo=echo,
        poolclass=NullPool,  # The loop holds a connection only for the duration of a load
        future=True
    )
