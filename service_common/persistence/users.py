"""
Caller identities.

Services keep a local copy of each user (key, permission codes, activation
flag, version) that the identity service publishes through
``UserUpdatedEvent`` messages. The auth stages only read it.
"""

from typing import Any, FrozenSet, Iterable, Optional, Protocol

import asyncpg
from pydantic import BaseModel, Field

from ..errors import DuplicateKeyError, EditConflictError, NotFoundError
from ..logging import get_logger
from .base import Document, Repository
from .postgres import create_collection

USERS_TABLE = "users"
MAX_SYNC_ATTEMPTS = 3

logger = get_logger("service_common.persistence.users")


class Identity(Protocol):
    """What the auth stages need from a caller record."""

    def get_key(self) -> Any:
        ...

    def get_permissions(self) -> FrozenSet[str]:
        ...


def includes(permissions: Iterable[str], code: str) -> bool:
    """Check whether ``permissions`` grants ``code``."""
    return code in frozenset(permissions)


class User(Document):
    """Local copy of a caller identity."""

    id: Optional[int] = None
    permissions: FrozenSet[str] = Field(default_factory=frozenset)
    activated: bool = False
    # Version of the last identity service event applied to this copy.
    source_version: int = 0

    def get_permissions(self) -> FrozenSet[str]:
        return self.permissions


class UserUpdatedEvent(BaseModel):
    """Published by the identity service whenever a user is created or changed."""

    id: int
    email: str = ""
    permissions: FrozenSet[str] = Field(default_factory=frozenset)
    activated: bool = False
    version: int

    def to_user(self) -> User:
        return User(
            id=self.id,
            permissions=self.permissions,
            activated=self.activated,
            source_version=self.version,
        )


async def create_users_table(pool: asyncpg.Pool) -> None:
    """Create the users collection."""
    await create_collection(pool, USERS_TABLE, key_type=int)


async def apply_user_updated(repository: Repository[int, User], event: UserUpdatedEvent) -> bool:
    """Bring the local copy of a user in line with ``event``.

    Returns ``True`` when something was written. Events not newer than the
    last one applied are ignored. Concurrent writers are resolved by
    re-reading and trying again.
    """
    for attempt in range(1, MAX_SYNC_ATTEMPTS + 1):
        try:
            current = await repository.get_by_key(event.id)
        except NotFoundError:
            try:
                await repository.create(event.to_user())
            except DuplicateKeyError:
                logger.info("User created concurrently, retrying", user_id=event.id, attempt=attempt)
                continue
            logger.info("User created", user_id=event.id, version=event.version)
            return True

        if current.source_version >= event.version:
            logger.debug(
                "Ignoring stale user event",
                user_id=event.id,
                event_version=event.version,
                applied_version=current.source_version,
            )
            return False

        updated = current.model_copy(update={
            "permissions": event.permissions,
            "activated": event.activated,
            "source_version": event.version,
        })
        try:
            await repository.update(updated)
        except EditConflictError:
            logger.info("User changed concurrently, retrying", user_id=event.id, attempt=attempt)
            continue

        logger.info("User updated", user_id=event.id, source_version=event.version)
        return True

    raise EditConflictError(details={"user_id": event.id, "attempts": MAX_SYNC_ATTEMPTS})
