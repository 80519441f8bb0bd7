"""
Unit tests for PostgresRepository against a mocked asyncpg pool.
"""

import asyncio
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from service_common.errors import (
    DuplicateKeyError,
    EditConflictError,
    NotFoundError,
    RepositoryError,
    RepositoryTimeoutError,
    UnsafeSortParameterError,
)
from service_common.filters import Filters
from service_common.persistence.base import Document
from service_common.persistence.postgres import PostgresRepository, _affected_rows

SAFELIST = ("id", "title", "year", "-id", "-title", "-year")


class Movie(Document):
    id: Optional[int] = None
    title: str
    year: int
    genres: List[str] = []


def movie_row(key: int, version: int = 1, title: str = "Moana", year: int = 2016):
    return {
        "id": key,
        "version": version,
        "document": {"title": title, "year": year, "genres": ["animation"]},
    }


class TestPostgresRepository:
    """Test cases for PostgresRepository."""

    @pytest.fixture
    def pool(self):
        """Create mock pool."""
        pool = MagicMock()
        pool.fetchrow = AsyncMock()
        pool.fetch = AsyncMock(return_value=[])
        pool.fetchval = AsyncMock(return_value=0)
        pool.execute = AsyncMock()
        return pool

    @pytest.fixture
    def repository(self, pool):
        """Create repository instance."""
        return PostgresRepository(pool, "movies", Movie)

    @pytest.mark.asyncio
    async def test_get_by_key(self, repository, pool):
        """Test a row is mapped back to the model."""
        pool.fetchrow.return_value = movie_row(7, version=3)

        movie = await repository.get_by_key(7)

        assert movie == Movie(id=7, version=3, title="Moana", year=2016, genres=["animation"])
        query, key = pool.fetchrow.call_args.args
        assert "WHERE id = $1" in query
        assert key == 7

    @pytest.mark.asyncio
    async def test_get_by_key_not_found(self, repository, pool):
        """Test a missing row is NotFoundError."""
        pool.fetchrow.return_value = None

        with pytest.raises(NotFoundError):
            await repository.get_by_key(99)

    @pytest.mark.asyncio
    async def test_get_by_filter_uses_containment(self, repository, pool):
        """Test document fields become a JSONB containment predicate."""
        pool.fetchrow.return_value = movie_row(1, version=2)

        await repository.get_by_filter({"version": 2, "title": "Moana"})

        query, *args = pool.fetchrow.call_args.args
        assert "WHERE version = $1 AND document @> $2 LIMIT 1" in query
        assert args == [2, {"title": "Moana"}]

    @pytest.mark.asyncio
    async def test_list_sorts_pages_and_counts(self, repository, pool):
        """Test list orders by the safelisted column with an id tiebreak."""
        pool.fetch.return_value = [movie_row(4, year=2020), movie_row(2, year=2019)]
        pool.fetchval.return_value = 45
        filters = Filters(page=2, page_size=20, sort="-year", sort_safelist=SAFELIST)

        movies, metadata = await repository.list({"genres": ["animation"]}, filters)

        assert [m.id for m in movies] == [4, 2]
        assert metadata.current_page == 2
        assert metadata.last_page == 3
        assert metadata.total_records == 45

        query, *args = pool.fetch.call_args.args
        assert "ORDER BY document -> 'year' DESC, id ASC LIMIT $2 OFFSET $3" in query
        assert args == [{"genres": ["animation"]}, 20, 20]

        count_query, *count_args = pool.fetchval.call_args.args
        assert count_query.startswith("SELECT COUNT(*) FROM movies WHERE document @> $1")
        assert count_args == [{"genres": ["animation"]}]

    @pytest.mark.asyncio
    async def test_list_by_key_column(self, repository, pool):
        """Test sorting on id uses the key column."""
        filters = Filters(page=1, page_size=10, sort="id", sort_safelist=SAFELIST)

        movies, metadata = await repository.list({}, filters)

        assert movies == []
        assert metadata.total_records == 0
        query, *args = pool.fetch.call_args.args
        assert "WHERE TRUE ORDER BY id ASC, id ASC LIMIT $1 OFFSET $2" in query
        assert args == [10, 0]

    @pytest.mark.asyncio
    async def test_list_unsafe_sort_never_reaches_database(self, repository, pool):
        """Test an unchecked sort value fails before any query is issued."""
        filters = Filters(sort="year DESC; DROP TABLE movies", sort_safelist=SAFELIST)

        with pytest.raises(UnsafeSortParameterError):
            await repository.list({}, filters)

        pool.fetch.assert_not_called()
        pool.fetchval.assert_not_called()

    @pytest.mark.asyncio
    async def test_create_returns_generated_key(self, repository, pool):
        """Test create omits the id column when the entity has no key."""
        pool.fetchval.return_value = 12

        key = await repository.create(Movie(title="Up", year=2009))

        assert key == 12
        query, *args = pool.fetchval.call_args.args
        assert query.startswith("INSERT INTO movies (version, document)")
        assert args == [1, {"title": "Up", "year": 2009, "genres": []}]

    @pytest.mark.asyncio
    async def test_create_duplicate_key(self, repository, pool):
        """Test a unique violation is DuplicateKeyError."""
        pool.fetchval.side_effect = asyncpg.UniqueViolationError("duplicate key value")

        with pytest.raises(DuplicateKeyError):
            await repository.create(Movie(id=1, title="Up", year=2009))

    @pytest.mark.asyncio
    async def test_update_is_conditional_on_version(self, repository, pool):
        """Test update matches both key and version."""
        pool.execute.return_value = "UPDATE 1"

        await repository.update(Movie(id=5, version=3, title="Up", year=2009))

        query, *args = pool.execute.call_args.args
        assert "SET version = version + 1" in query
        assert "WHERE id = $1 AND version = $2" in query
        assert args[:2] == [5, 3]

    @pytest.mark.asyncio
    async def test_update_stale_version_conflicts(self, repository, pool):
        """Test zero updated rows is an edit conflict."""
        pool.execute.return_value = "UPDATE 0"

        with pytest.raises(EditConflictError) as exc_info:
            await repository.update(Movie(id=5, version=3, title="Up", year=2009))

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_delete_missing_row(self, repository, pool):
        """Test deleting nothing is NotFoundError."""
        pool.execute.return_value = "DELETE 0"

        with pytest.raises(NotFoundError):
            await repository.delete(5)

    @pytest.mark.asyncio
    async def test_delete(self, repository, pool):
        """Test a successful delete."""
        pool.execute.return_value = "DELETE 1"

        await repository.delete(5)

        pool.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout(self, pool):
        """Test a slow call is abandoned after the repository deadline."""
        async def slow(*args):
            await asyncio.sleep(1)

        pool.fetchrow.side_effect = slow
        repository = PostgresRepository(pool, "movies", Movie, timeout=0.01)

        with pytest.raises(RepositoryTimeoutError) as exc_info:
            await repository.get_by_key(1)

        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_driver_error_is_sanitized(self, repository, pool):
        """Test driver failures become RepositoryError with a generic message."""
        pool.fetchrow.side_effect = asyncpg.InterfaceError("connection is closed")

        with pytest.raises(RepositoryError) as exc_info:
            await repository.get_by_key(1)

        assert "connection is closed" not in exc_info.value.message
        assert isinstance(exc_info.value.cause, asyncpg.InterfaceError)

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self, repository, pool):
        """Test cancelling the caller cancels the driver call."""
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def hang(*args):
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        pool.fetchrow.side_effect = hang
        task = asyncio.create_task(repository.get_by_key(1))
        await started.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert cancelled.is_set()


class TestAffectedRows:
    """Test cases for command status parsing."""

    @pytest.mark.parametrize("status,expected", [
        ("UPDATE 1", 1),
        ("DELETE 0", 0),
        ("INSERT 0 3", 3),
        ("", 0),
        (None, 0),
    ])
    def test_affected_rows(self, status, expected):
        """Test row counts are read from the status tag."""
        assert _affected_rows(status) == expected
