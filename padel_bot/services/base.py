"""
Base service class for the padel settlement services.

Provides async database session management and retry logic for transient
store failures.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Any
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from padel_bot.config import Config
from padel_bot.utils.settlement_exceptions import SettlementIntegrityError, TransientStoreError

logger = logging.getLogger(__name__)

def is_transient_error(error: Exception) -> bool:
    """Write conflicts, lock timeouts and dropped connections are worth retrying."""
    if isinstance(error, OperationalError):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated

class BaseService:
    """Base class for all services with async database session management."""

    def __init__(self, session_factory, retry_attempts: int = None, retry_backoff: float = None):
        """
        Initialize base service with session factory.

        Args:
            session_factory: Async session factory from Database class
            retry_attempts: Attempts for transient failures (default from Config)
            retry_backoff: Linear backoff step in seconds (default from Config)
        """
        self.session_factory = session_factory
        self.retry_attempts = retry_attempts or Config.SETTLEMENT_RETRY_ATTEMPTS
        self.retry_backoff = Config.SETTLEMENT_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for async database operations."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def execute_with_retry(self, func: Callable[[], Awaitable[Any]], operation: str = None) -> Any:
        """
        Execute a function with automatic retry on transient database errors.

        Only transient errors are retried, with a linear backoff between
        attempts. Anything else propagates on the first failure.

        Raises:
            TransientStoreError: If every attempt failed with a transient error
        """
        operation = operation or getattr(func, '__name__', 'operation')
        for attempt in range(1, self.retry_attempts + 1):
            try:
                return await func()
            except (KeyError, IndexError):
                raise
            except LookupError as e:
                # SQLAlchemy raises a bare LookupError for a stored enum value it does not know
                logger.error(f"{operation} read an unknown enum value: {e}")
                raise SettlementIntegrityError(operation, f"unknown enum value ({e})") from e
            except Exception as e:
                if not is_transient_error(e):
                    raise
                if attempt == self.retry_attempts:
                    logger.error(f"{operation} failed after {attempt} attempts: {e}")
                    raise TransientStoreError(operation, attempt, str(e)) from e
                logger.warning(f"Retry attempt {attempt} for {operation}: {e}")
                await asyncio.sleep(self.retry_backoff * attempt)
