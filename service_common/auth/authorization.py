"""
Permission checks.

Permissions are re-read from the repository on every request rather than
taken from the token, so a revoked permission stops working on the very
next request instead of when the token expires.
"""

from typing import Awaitable, Callable, Optional

from fastapi import Depends, Request

from ..errors import ForbiddenError, InvalidTokenError, NotFoundError, ServerError, ServiceException
from ..logging import get_logger
from ..metrics import MetricsCollector
from ..persistence.base import Repository
from ..persistence.users import includes
from .authenticator import VARY_HEADER, Authenticator
from .context import AuthContext, set_auth_context


class Authorizer:
    """Authorization stage, layered on top of an ``Authenticator``."""

    def __init__(
        self,
        repository: Repository,
        authenticator: Authenticator,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.authenticator = authenticator
        self.metrics = metrics
        self.logger = get_logger("service_common.auth.authorization")

    async def authorize(self, context: AuthContext, code: str) -> AuthContext:
        """Return a context with fresh permissions, or raise if ``code`` is not granted."""
        try:
            identity = await self.repository.get_by_key(context.key)
        except NotFoundError:
            # Caller vanished between authentication and now.
            self._record("unknown_subject")
            raise InvalidTokenError()
        except ServerError:
            raise
        except Exception as e:
            raise ServerError(e, "failed to refresh caller permissions") from e

        if not includes(identity.get_permissions(), code):
            self.logger.warning("Permission denied", user_id=context.key, permission=code)
            self._record("missing_permission")
            raise ForbiddenError()

        return AuthContext(identity=identity, claims=context.claims, token=context.token)

    def require(self, code: str) -> Callable[..., Awaitable[AuthContext]]:
        """FastAPI dependency allowing only callers holding ``code``."""
        authenticator = self.authenticator

        async def require_permission(
            request: Request,
            context: AuthContext = Depends(authenticator),
        ) -> AuthContext:
            try:
                refreshed = await self.authorize(context, code)
            except ServiceException as e:
                e.headers.setdefault("Vary", VARY_HEADER)
                raise
            set_auth_context(request, refreshed)
            return refreshed

        require_permission.__name__ = f"require_{code}"
        return require_permission

    def _record(self, reason: str) -> None:
        if self.metrics is not None:
            self.metrics.record_auth_failure(reason)
