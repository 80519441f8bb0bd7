"""
Persistence package.

- base: Entity contract, pydantic ``Document`` base and ``Repository`` ABC
- postgres: asyncpg pool and JSONB-backed ``PostgresRepository``
- users: caller identity model and identity event sync
"""

from .base import Document, Entity, Repository
from .postgres import PostgresRepository, create_collection, create_pool
from .users import Identity, User, UserUpdatedEvent, apply_user_updated, create_users_table

__all__ = [
    "Document",
    "Entity",
    "Repository",
    "PostgresRepository",
    "create_collection",
    "create_pool",
    "Identity",
    "User",
    "UserUpdatedEvent",
    "apply_user_updated",
    "create_users_table",
]
