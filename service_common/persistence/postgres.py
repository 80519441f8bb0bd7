"""
PostgreSQL persistence layer.

Each collection is a table of ``(id, version, document JSONB)`` rows. Filters
are equality predicates matched with JSONB containment; ``id`` and
``version`` address their own columns. All calls share one asyncpg pool and
rely on the per-row version check for consistency, never on locks.
"""

import asyncio
import json
from typing import Any, Awaitable, Dict, Generic, List, Mapping, Optional, Tuple, Type

import asyncpg

from ..config import BaseConfig
from ..errors import (
    DuplicateKeyError,
    EditConflictError,
    NotFoundError,
    RepositoryError,
    RepositoryTimeoutError,
)
from ..filters import Filters, Metadata, SortDirection, calculate_metadata
from ..logging import get_logger
from .base import KEY_FIELD, VERSION_FIELD, K, Repository, T

DEFAULT_TIMEOUT = 3.0

logger = get_logger("service_common.persistence.postgres")


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        "jsonb",
        encoder=json.dumps,
        decoder=json.loads,
        schema="pg_catalog",
    )


async def create_pool(config: BaseConfig) -> asyncpg.Pool:
    """Create the shared connection pool and make sure the database answers."""
    try:
        pool = await asyncpg.create_pool(
            config.postgres_dsn,
            min_size=config.db_min_connections,
            max_size=config.db_max_connections,
            max_inactive_connection_lifetime=config.db_max_idle_seconds,
            command_timeout=config.repository_timeout,
            init=_init_connection,
        )
        await asyncio.wait_for(pool.fetchval("SELECT 1"), timeout=config.repository_timeout)
    except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
        logger.error("Failed to connect to PostgreSQL", error=str(e))
        raise RepositoryError(e, "database unavailable") from e

    logger.info(
        "PostgreSQL pool started",
        min_size=config.db_min_connections,
        max_size=config.db_max_connections,
    )
    return pool


async def create_collection(pool: asyncpg.Pool, table: str, key_type: Type = int) -> None:
    """Create the table backing a collection if it does not exist."""
    if key_type is int:
        key_column = "id BIGINT GENERATED BY DEFAULT AS IDENTITY PRIMARY KEY"
    else:
        key_column = "id TEXT PRIMARY KEY DEFAULT gen_random_uuid()::text"

    await pool.execute(f"""
        CREATE TABLE IF NOT EXISTS {table} (
            {key_column},
            version INTEGER NOT NULL DEFAULT 1,
            document JSONB NOT NULL DEFAULT '{{}}'
        );
    """)
    await pool.execute(f"""
        CREATE INDEX IF NOT EXISTS idx_{table}_document ON {table} USING GIN (document);
    """)


def _affected_rows(status: str) -> int:
    """Row count from an asyncpg command status such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class PostgresRepository(Repository[K, T], Generic[K, T]):
    """Repository for documents of ``model`` stored in ``table``."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        table: str,
        model: Type[T],
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.pool = pool
        self.table = table
        self.model = model
        self.timeout = timeout
        self.logger = get_logger(f"service_common.persistence.{table}")

    async def get_by_key(self, key: K) -> T:
        row = await self._run(
            "get_by_key",
            self.pool.fetchrow(
                f"SELECT id, version, document FROM {self.table} WHERE id = $1",
                key,
            ),
        )
        if row is None:
            raise NotFoundError(details={"collection": self.table})
        return self._to_entity(row)

    async def get_by_filter(self, filter: Mapping[str, Any]) -> T:
        where, args = self._where(filter)
        row = await self._run(
            "get_by_filter",
            self.pool.fetchrow(
                f"SELECT id, version, document FROM {self.table} WHERE {where} LIMIT 1",
                *args,
            ),
        )
        if row is None:
            raise NotFoundError(details={"collection": self.table})
        return self._to_entity(row)

    async def list(self, filter: Mapping[str, Any], filters: Filters) -> Tuple[List[T], Metadata]:
        # Resolve the sort column first: an unchecked value must fail before any SQL exists.
        order_by = self._order_by(filters.sort_column(), filters.sort_direction())
        where, args = self._where(filter)
        limit_index = len(args) + 1

        rows = await self._run(
            "list",
            self.pool.fetch(
                f"SELECT id, version, document FROM {self.table} WHERE {where} "
                f"ORDER BY {order_by}, id ASC "
                f"LIMIT ${limit_index} OFFSET ${limit_index + 1}",
                *args,
                filters.limit(),
                filters.offset(),
            ),
        )

        # Counted separately from the page fetch, outside any shared transaction.
        total = await self._run(
            "count",
            self.pool.fetchval(f"SELECT COUNT(*) FROM {self.table} WHERE {where}", *args),
        )

        items = [self._to_entity(row) for row in rows]
        return items, calculate_metadata(int(total or 0), filters.page, filters.page_size)

    async def create(self, entity: T) -> K:
        key = entity.get_key()
        if key is None:
            query = f"INSERT INTO {self.table} (version, document) VALUES ($1, $2) RETURNING id"
            args: Tuple[Any, ...] = (entity.get_version(), entity.to_document())
        else:
            query = f"INSERT INTO {self.table} (id, version, document) VALUES ($1, $2, $3) RETURNING id"
            args = (key, entity.get_version(), entity.to_document())

        try:
            return await self._run("create", self.pool.fetchval(query, *args))
        except RepositoryError as e:
            if isinstance(e.cause, asyncpg.UniqueViolationError):
                raise DuplicateKeyError(details={"collection": self.table, "key": key}) from e
            raise

    async def update(self, entity: T) -> None:
        status = await self._run(
            "update",
            self.pool.execute(
                f"UPDATE {self.table} SET version = version + 1, document = $3 "
                f"WHERE id = $1 AND version = $2",
                entity.get_key(),
                entity.get_version(),
                entity.to_document(),
            ),
        )
        # Zero rows: the version moved on or the row is gone.
        if _affected_rows(status) == 0:
            raise EditConflictError(details={"collection": self.table})

    async def delete(self, key: K) -> None:
        status = await self._run(
            "delete",
            self.pool.execute(f"DELETE FROM {self.table} WHERE id = $1", key),
        )
        if _affected_rows(status) == 0:
            raise NotFoundError(details={"collection": self.table})

    async def _run(self, operation: str, call: Awaitable[Any]) -> Any:
        """Await a driver call under the repository deadline."""
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self.logger.error("Repository call timed out", operation=operation, timeout=self.timeout)
            raise RepositoryTimeoutError(e, f"{operation} on {self.table} timed out") from e
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            self.logger.error("Repository call failed", operation=operation, error=str(e))
            raise RepositoryError(e, f"{operation} on {self.table} failed") from e

    def _where(self, filter: Mapping[str, Any]) -> Tuple[str, List[Any]]:
        clauses: List[str] = []
        args: List[Any] = []
        body: Dict[str, Any] = {}

        for field, value in filter.items():
            if field in (KEY_FIELD, VERSION_FIELD):
                args.append(value)
                clauses.append(f"{field} = ${len(args)}")
            else:
                body[field] = value

        if body:
            args.append(body)
            clauses.append(f"document @> ${len(args)}")

        return (" AND ".join(clauses) or "TRUE"), args

    @staticmethod
    def _order_by(column: str, direction: SortDirection) -> str:
        order = "DESC" if direction is SortDirection.DESCENDING else "ASC"
        if column in (KEY_FIELD, VERSION_FIELD):
            return f"{column} {order}"
        escaped = column.replace("'", "''")
        return f"document -> '{escaped}' {order}"

    def _to_entity(self, row: Mapping[str, Any]) -> T:
        document = row["document"]
        if isinstance(document, str):
            document = json.loads(document)
        return self.model.from_document(row["id"], row["version"], document or {})
