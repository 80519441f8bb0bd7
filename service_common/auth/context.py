"""
Request-scoped authentication context.
"""

from dataclasses import dataclass, field
from typing import Any, Dict

from fastapi import Request

from ..persistence.users import Identity

STATE_ATTRIBUTE = "auth_context"


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller attached to a single request."""

    identity: Identity
    claims: Dict[str, Any] = field(default_factory=dict)
    token: str = ""

    @property
    def key(self) -> Any:
        return self.identity.get_key()


def set_auth_context(request: Request, context: AuthContext) -> None:
    setattr(request.state, STATE_ATTRIBUTE, context)


def get_auth_context(request: Request) -> AuthContext:
    """Return the caller attached by the authenticator.

    Only valid on routes protected by the authenticator; anywhere else this is
    a wiring bug and raises ``RuntimeError``.
    """
    context = getattr(request.state, STATE_ATTRIBUTE, None)
    if not isinstance(context, AuthContext):
        raise RuntimeError("missing auth context on request; is the route protected?")
    return context
