"""
Generic repository contract.

Every persisted record carries a key and a version counter. Writes are
conditional on the version the caller read: ``update`` bumps the stored
version by exactly one or fails with ``EditConflictError``, so callers
re-fetch and retry instead of overwriting someone else's change.
"""

from abc import ABC, abstractmethod
from typing import Any, Generic, List, Mapping, Optional, Protocol, Tuple, TypeVar

from pydantic import BaseModel, ConfigDict

from ..filters import Filters, Metadata

K = TypeVar("K")
T = TypeVar("T", bound="Document")

KEY_FIELD = "id"
VERSION_FIELD = "version"


class Entity(Protocol):
    """Anything the repository can persist."""

    def get_key(self) -> Any:
        ...

    def get_version(self) -> int:
        ...

    def set_version(self, version: int) -> "Entity":
        ...


class Document(BaseModel):
    """Pydantic base for repository entities.

    ``id`` is ``None`` until the document has been created. Everything other
    than ``id`` and ``version`` is stored as the document body.
    """

    model_config = ConfigDict(frozen=True)

    id: Optional[Any] = None
    version: int = 1

    def get_key(self) -> Any:
        return self.id

    def get_version(self) -> int:
        return self.version

    def set_version(self, version: int):
        return self.model_copy(update={VERSION_FIELD: version})

    def to_document(self) -> dict:
        """Body stored alongside the key and version columns."""
        return self.model_dump(mode="json", exclude={KEY_FIELD, VERSION_FIELD})

    @classmethod
    def from_document(cls, key: Any, version: int, document: Mapping[str, Any]):
        return cls.model_validate({**document, KEY_FIELD: key, VERSION_FIELD: version})


class Repository(ABC, Generic[K, T]):
    """Data access for one collection of ``T`` keyed by ``K``."""

    @abstractmethod
    async def get_by_key(self, key: K) -> T:
        """Return the document with ``key`` or raise ``NotFoundError``."""

    @abstractmethod
    async def get_by_filter(self, filter: Mapping[str, Any]) -> T:
        """Return the first document matching ``filter`` or raise ``NotFoundError``."""

    @abstractmethod
    async def list(self, filter: Mapping[str, Any], filters: Filters) -> Tuple[List[T], Metadata]:
        """Return one page of matching documents and its pagination metadata.

        The page and the total count are read separately; under concurrent
        writes the metadata may describe a slightly different result set.
        """

    @abstractmethod
    async def create(self, entity: T) -> K:
        """Insert ``entity`` and return its key."""

    @abstractmethod
    async def update(self, entity: T) -> None:
        """Write ``entity`` if its version still matches, else ``EditConflictError``."""

    @abstractmethod
    async def delete(self, key: K) -> None:
        """Remove the document with ``key`` or raise ``NotFoundError``."""
