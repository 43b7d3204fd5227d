"""
PostgreSQL Client Wrapper

Centralized PostgreSQL client wrapper over an asyncpg connection pool.
Provides a consistent database access pattern for repositories.

Usage:
    from core.postgres_client import get_postgres_client

    # Get client instance
    db = await get_postgres_client("campaign_service")

    # Execute queries
    async with db:
        rows = await db.query("SELECT * FROM campaign.campaigns WHERE owner_id = $1", [owner_id])
"""

import logging
from typing import Any, Dict, List, Optional

import asyncpg

from core.config import InfraConfig

logger = logging.getLogger(__name__)


class PostgresClientWrapper:
    """
    PostgreSQL client wrapper.

    Wraps an asyncpg pool and provides:
    - Lazy pool creation from InfraConfig
    - Dict rows instead of asyncpg Records
    - Consistent initialization pattern
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[InfraConfig] = None,
    ):
        """
        Initialize PostgreSQL client wrapper.

        Args:
            service_name: Name of the service using this client
            config: Infrastructure config (defaults to environment)
        """
        self.service_name = service_name
        self.config = config or InfraConfig.from_env()
        self._pool: Optional[asyncpg.Pool] = None

        logger.info(
            f"PostgreSQL client initialized for {service_name}: "
            f"{self.config.postgres_host}:{self.config.postgres_port}/{self.config.postgres_db}"
        )

    async def connect(self) -> None:
        """Create the connection pool"""
        if self._pool is not None:
            return
        self._pool = await asyncpg.create_pool(
            host=self.config.postgres_host,
            port=self.config.postgres_port,
            database=self.config.postgres_db,
            user=self.config.postgres_user,
            password=self.config.postgres_password,
            min_size=self.config.postgres_min_pool,
            max_size=self.config.postgres_max_pool,
            server_settings={"application_name": self.service_name},
        )

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgreSQL pool not initialized. Call connect() first.")
        return self._pool

    async def __aenter__(self):
        """Async context manager entry"""
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.close()

    async def health_check(self) -> bool:
        """Check database health"""
        try:
            return await self.pool.fetchval("SELECT 1") == 1
        except Exception as e:
            logger.warning(f"PostgreSQL health check failed: {e}")
            return False

    async def query(self, sql: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]:
        """Execute query and return results"""
        rows = await self.pool.fetch(sql, *(params or []))
        return [dict(row) for row in rows]

    async def query_row(self, sql: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]:
        """Execute query and return single row"""
        row = await self.pool.fetchrow(sql, *(params or []))
        return dict(row) if row else None

    async def fetchval(self, sql: str, params: Optional[List[Any]] = None) -> Any:
        """Execute query and return the first column of the first row"""
        return await self.pool.fetchval(sql, *(params or []))

    async def execute(self, sql: str, params: Optional[List[Any]] = None) -> int:
        """Execute SQL statement and return the number of affected rows"""
        status = await self.pool.execute(sql, *(params or []))
        # asyncpg returns a command tag such as "UPDATE 3"
        try:
            return int(status.split()[-1])
        except (ValueError, IndexError):
            return 0

    async def execute_many(self, sql: str, params_list: List[List[Any]]) -> None:
        """Execute SQL statement with multiple parameter sets"""
        await self.pool.executemany(sql, params_list)

    async def close(self):
        """Close connection pool"""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None


# Singleton instances per service
_postgres_clients: Dict[str, PostgresClientWrapper] = {}


async def get_postgres_client(
    service_name: str,
    config: Optional[InfraConfig] = None,
) -> PostgresClientWrapper:
    """
    Get or create PostgreSQL client for a service.

    Args:
        service_name: Service name
        config: Optional infrastructure config override

    Returns:
        Connected PostgresClientWrapper instance
    """
    global _postgres_clients

    if service_name not in _postgres_clients:
        client = PostgresClientWrapper(service_name=service_name, config=config)
        await client.connect()
        _postgres_clients[service_name] = client

    return _postgres_clients[service_name]
