"""
Pagination and sort helpers for list endpoints.

A ``Filters`` value is built from the client's ``page``, ``page_size`` and
``sort`` query parameters plus a per-resource safelist of sort values.
Handlers call ``ensure_valid()`` first; repositories then read
``offset()``, ``limit()``, ``sort_column()`` and ``sort_direction()``.
"""

import math
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Dict, Sequence

from .errors import UnsafeSortParameterError, ValidationError

MAX_PAGE = 10_000_000
MAX_PAGE_SIZE = 100
DESCENDING_PREFIX = "-"


class SortDirection(IntEnum):
    """Sort order understood by the repositories."""
    ASCENDING = 1
    DESCENDING = -1


@dataclass(frozen=True)
class Metadata:
    """Pagination metadata returned alongside a page of results."""

    current_page: int = 0
    page_size: int = 0
    first_page: int = 0
    last_page: int = 0
    total_records: int = 0


@dataclass(frozen=True)
class Filters:
    """Client paging and sort parameters."""

    page: int = 1
    page_size: int = 20
    sort: str = "id"
    sort_safelist: Sequence[str] = field(default_factory=lambda: ("id", "-id"))

    def validate(self) -> Dict[str, str]:
        """Return a field -> message map of validation errors (empty when valid)."""
        errors: Dict[str, str] = {}

        if not 0 <= self.page <= MAX_PAGE:
            errors["page"] = "must be greater or equal to 0 and lower or equal to 10 million"

        if not 0 <= self.page_size <= MAX_PAGE_SIZE:
            errors["page_size"] = "must be greater or equal to 0 and lower or equal to 100"

        if self.sort not in self.sort_safelist:
            errors["sort"] = "invalid sort value"

        return errors

    def ensure_valid(self) -> "Filters":
        """Raise ``ValidationError`` unless the parameters are acceptable."""
        errors = self.validate()
        if errors:
            raise ValidationError("invalid pagination parameters", details=errors)
        return self

    def offset(self) -> int:
        """Number of records to skip. Page 0 reads the same rows as page 1."""
        return max(self.page - 1, 0) * self.page_size

    def limit(self) -> int:
        """Number of records to return."""
        return self.page_size

    def sort_column(self) -> str:
        """Column named by ``sort``, without the descending prefix.

        Only values present verbatim in the safelist are ever returned. Anything
        else means the handler skipped validation, which is a bug, so this
        raises instead of letting the value near a query.
        """
        for safe_value in self.sort_safelist:
            if self.sort == safe_value:
                return self.sort[len(DESCENDING_PREFIX):] if self.sort.startswith(DESCENDING_PREFIX) else self.sort

        raise UnsafeSortParameterError(self.sort)

    def sort_direction(self) -> SortDirection:
        """Descending when ``sort`` carries the prefix, ascending otherwise."""
        if self.sort.startswith(DESCENDING_PREFIX):
            return SortDirection.DESCENDING
        return SortDirection.ASCENDING


def calculate_metadata(total_records: int, page: int, page_size: int) -> Metadata:
    """Build pagination metadata for a result set."""
    if total_records == 0:
        return Metadata()

    last_page = math.ceil(total_records / page_size) if page_size > 0 else 0

    return Metadata(
        current_page=page,
        page_size=page_size,
        first_page=1,
        last_page=last_page,
        total_records=total_records,
    )
