"""
Bearer token authentication.

Stages, in order, each ending the request on failure:

1. ``Authorization: Bearer <token>`` header present and well formed
2. signature checks out against the pre-loaded public key
3. token is inside its validity window
4. issuer is the trusted authority
5. this service is among the token's audiences
6. subject parses into the caller key type (failure here is a server error)
7. caller exists in the repository (unknown callers look like bad tokens)

The resolved caller is attached to the request as an ``AuthContext``.
"""

from typing import Any, Callable, Dict, Optional

from fastapi import Request, Response
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from ..errors import InvalidTokenError, NotFoundError, ServerError, ServiceException
from ..logging import get_logger, set_user_context
from ..metrics import MetricsCollector
from ..persistence.base import Repository
from .context import AuthContext, set_auth_context
from .keys import PublicKeyStore

VARY_HEADER = "Authorization"


class Authenticator:
    """Authentication stage, usable directly as a FastAPI dependency."""

    def __init__(
        self,
        repository: Repository,
        key_store: Optional[PublicKeyStore],
        issuer: str,
        audience: str,
        *,
        key_parser: Callable[[str], Any] = int,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.key_store = key_store
        self.issuer = issuer
        self.audience = audience
        self.key_parser = key_parser
        self.metrics = metrics
        self.logger = get_logger("service_common.auth.authenticator")

    async def __call__(self, request: Request, response: Response) -> AuthContext:
        response.headers.append("Vary", VARY_HEADER)
        try:
            return await self.authenticate(request)
        except ServiceException as e:
            e.headers.setdefault("Vary", VARY_HEADER)
            raise

    async def authenticate(self, request: Request) -> AuthContext:
        """Run every stage for ``request`` and attach the resulting context."""
        token = self._bearer_token(request.headers.get("Authorization"))
        claims = self.verify_token(token)
        key = self._parse_subject(claims)

        try:
            identity = await self.repository.get_by_key(key)
        except NotFoundError:
            # Indistinguishable from a forged token.
            raise self._reject("unknown_subject")
        except ServerError:
            raise
        except Exception as e:
            raise ServerError(e, "failed to resolve token subject") from e

        context = AuthContext(identity=identity, claims=claims, token=token)
        set_auth_context(request, context)
        set_user_context(key)
        return context

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Check signature, validity window, issuer and audience; return the claims."""
        if self.key_store is None:
            raise ServerError(message="token verification keys are not loaded")

        try:
            claims = jwt.decode(
                token,
                self.key_store.key_for(token),
                algorithms=self.key_store.algorithms,
                options={
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iat": False,
                    "verify_aud": False,
                    "verify_iss": False,
                    "verify_sub": False,
                    "require_exp": True,
                },
            )
        except ExpiredSignatureError:
            raise self._reject("expired")
        except JWTError as e:
            # Covers bad signatures, unknown keys, malformed tokens and nbf/exp format.
            raise self._reject("invalid_token", error=str(e))

        if claims.get("iss") != self.issuer:
            raise self._reject("wrong_issuer", issuer=claims.get("iss"))

        audience = claims.get("aud")
        if isinstance(audience, str):
            audience = [audience]
        if not isinstance(audience, list) or self.audience not in audience:
            raise self._reject("wrong_audience")

        return claims

    def _bearer_token(self, authorization: Optional[str]) -> str:
        if not authorization:
            raise self._reject("missing_header")

        parts = authorization.split(" ")
        if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
            raise self._reject("malformed_header")

        return parts[1]

    def _parse_subject(self, claims: Dict[str, Any]) -> Any:
        subject = claims.get("sub")
        try:
            return self.key_parser(subject)
        except (TypeError, ValueError) as e:
            # Signed by the authority yet unparseable: an internal inconsistency.
            self.logger.error("Token subject does not parse as a caller key", subject=subject)
            raise ServerError(e, f"unparseable token subject {subject!r}") from e

    def _reject(self, reason: str, **details: Any) -> InvalidTokenError:
        self.logger.warning("Authentication failed", reason=reason, **details)
        if self.metrics is not None:
            self.metrics.record_auth_failure(reason)
        return InvalidTokenError()
