"""
SQL transforms run after the loads of a run succeeded
"""

import asyncio
import logging
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, ProgrammingError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.exceptions import LoadRejected, WarehouseUnavailable
from schemas.source import TransformConfig

logger = logging.getLogger(__name__)


class TransformRunner:
    """Execute a transform's statements in one warehouse transaction"""

    def __init__(self, session_maker: async_sessionmaker, timeout: Optional[float] = None):
        self.session_maker = session_maker
        self.timeout = timeout

    async def run(self, transform: TransformConfig) -> int:
        """
        Returns:
            Number of statements executed

        Raises:
            LoadRejected: A statement failed (bad SQL, constraint violation)
            WarehouseUnavailable: Connection failure or deadline exceeded
        """
        try:
            if self.timeout:
                return await asyncio.wait_for(self._run(transform), timeout=self.timeout)
            return await self._run(transform)
        except asyncio.TimeoutError as e:
            raise WarehouseUnavailable(
                f"Transform {transform.name} exceeded deadline",
                context={"transform": transform.name, "timeout": self.timeout},
                original_exception=e
            )

    async def _run(self, transform: TransformConfig) -> int:
        statement_index = 0
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    for statement_index, sql in enumerate(transform.sql):
                        await session.execute(text(sql))
        except (IntegrityError, ProgrammingError) as e:
            raise LoadRejected(
                f"Transform {transform.name} failed at statement {statement_index + 1}",
                context={"transform": transform.name, "statement": statement_index + 1},
                original_exception=e
            )
        except (OperationalError, InterfaceError, DBAPIError, OSError) as e:
            raise WarehouseUnavailable(
                f"Warehouse unavailable while running transform {transform.name}",
                context={"transform": transform.name, "statement": statement_index + 1},
                original_exception=e
            )

        logger.info(f"Transform {transform.name} executed {len(transform.sql)} statements")
        return len(transform.sql)
