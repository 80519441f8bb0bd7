"""
Test helpers for services built on service_common.

``InMemoryRepository`` stands in for ``PostgresRepository`` with the same
version and pagination semantics. ``MockTokenGenerator`` owns an RSA key
pair and signs tokens the ``Authenticator`` will verify.
"""

import asyncio
import time
import uuid
from typing import Any, Dict, Generic, Iterable, List, Mapping, Optional, Tuple, Type

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jose import jwk, jwt

from .auth.keys import PublicKeyStore
from .errors import DuplicateKeyError, EditConflictError, NotFoundError
from .filters import Filters, Metadata, SortDirection, calculate_metadata
from .persistence.base import KEY_FIELD, VERSION_FIELD, K, Repository, T
from .persistence.users import User

TEST_ISSUER = "http://localhost:4444"
TEST_AUDIENCE = "http://localhost:4445"


class InMemoryRepository(Repository[K, T], Generic[K, T]):
    """Dict-backed repository for unit tests."""

    def __init__(self, model: Type[T], key_type: Type = int, entities: Iterable[T] = ()):
        self.model = model
        self.key_type = key_type
        self._rows: Dict[Any, Tuple[int, Dict[str, Any]]] = {}
        self._next_key = 1
        self._lock = asyncio.Lock()

        for entity in entities:
            self._insert(entity)

    async def get_by_key(self, key: K) -> T:
        async with self._lock:
            if key not in self._rows:
                raise NotFoundError()
            return self._load(key)

    async def get_by_filter(self, filter: Mapping[str, Any]) -> T:
        async with self._lock:
            for key in sorted(self._rows):
                if self._matches(key, filter):
                    return self._load(key)
        raise NotFoundError()

    async def list(self, filter: Mapping[str, Any], filters: Filters) -> Tuple[List[T], Metadata]:
        column = filters.sort_column()
        descending = filters.sort_direction() is SortDirection.DESCENDING

        async with self._lock:
            keys = sorted(key for key in self._rows if self._matches(key, filter))
            # Stable sort on top of key order: ties ascend by id either way.
            keys.sort(key=lambda key: _sort_value(self._field(key, column)), reverse=descending)

            start = filters.offset()
            page = keys[start:start + filters.limit()]
            items = [self._load(key) for key in page]

        return items, calculate_metadata(len(keys), filters.page, filters.page_size)

    async def create(self, entity: T) -> K:
        async with self._lock:
            return self._insert(entity)

    async def update(self, entity: T) -> None:
        async with self._lock:
            key = entity.get_key()
            row = self._rows.get(key)
            if row is None or row[0] != entity.get_version():
                raise EditConflictError()
            self._rows[key] = (row[0] + 1, entity.to_document())

    async def delete(self, key: K) -> None:
        async with self._lock:
            if self._rows.pop(key, None) is None:
                raise NotFoundError()

    def _insert(self, entity: T) -> Any:
        key = entity.get_key()
        if key is None:
            key = self._generate_key()
        elif key in self._rows:
            raise DuplicateKeyError(details={"key": key})

        self._rows[key] = (entity.get_version(), entity.to_document())
        return key

    def _generate_key(self) -> Any:
        if self.key_type is int:
            while self._next_key in self._rows:
                self._next_key += 1
            key = self._next_key
            self._next_key += 1
            return key
        return uuid.uuid4().hex

    def _load(self, key: Any) -> T:
        version, document = self._rows[key]
        return self.model.from_document(key, version, document)

    def _field(self, key: Any, field: str) -> Any:
        if field == KEY_FIELD:
            return key
        if field == VERSION_FIELD:
            return self._rows[key][0]
        return self._rows[key][1].get(field)

    def _matches(self, key: Any, filter: Mapping[str, Any]) -> bool:
        for field, expected in filter.items():
            actual = self._field(key, field)
            if isinstance(expected, (list, tuple, set, frozenset)) and isinstance(actual, list):
                if not set(expected) <= set(actual):
                    return False
            elif actual != expected:
                return False
        return True


def _sort_value(value: Any) -> Tuple[bool, Any]:
    # NULLs last, as in PostgreSQL ascending order.
    return (value is None, value if value is not None else 0)


class MockTokenGenerator:
    """Sign bearer tokens with a throwaway RSA key."""

    def __init__(self, issuer: str = TEST_ISSUER, audience: str = TEST_AUDIENCE, kid: str = "test-key"):
        self.issuer = issuer
        self.audience = audience
        self.kid = kid

        private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self.private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode()
        self.public_pem = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ).decode()

    def generate_access_token(
        self,
        subject: Any,
        expires_in: int = 3600,
        issuer: Optional[str] = None,
        audience: Any = None,
        **claims: Any,
    ) -> str:
        """Token for ``subject``; negative ``expires_in`` gives an expired token."""
        now = int(time.time())
        payload = {
            "iss": issuer if issuer is not None else self.issuer,
            "sub": str(subject),
            "aud": audience if audience is not None else [self.audience],
            "iat": now,
            "exp": now + expires_in,
        }
        payload.update(claims)
        return jwt.encode(payload, self.private_pem, algorithm="RS256", headers={"kid": self.kid})

    def public_jwk(self) -> Dict[str, Any]:
        key = jwk.construct(self.public_pem, "RS256").to_dict()
        key.update({"kid": self.kid, "use": "sig"})
        return key

    def jwks(self) -> Dict[str, Any]:
        return {"keys": [self.public_jwk()]}

    def key_store(self) -> PublicKeyStore:
        """Key store holding this generator's public key as PEM."""
        return PublicKeyStore(pem=self.public_pem)


def create_test_users() -> List[User]:
    """A reader, a writer and a caller with no permissions."""
    return [
        User(id=1, permissions=frozenset({"movies:read"}), activated=True, source_version=1),
        User(id=2, permissions=frozenset({"movies:read", "movies:write"}), activated=True, source_version=1),
        User(id=3, permissions=frozenset(), activated=False, source_version=1),
    ]


def create_user_repository(users: Optional[List[User]] = None) -> InMemoryRepository[int, User]:
    """In-memory users collection seeded with ``users`` (default: ``create_test_users()``)."""
    return InMemoryRepository(User, entities=users if users is not None else create_test_users())
