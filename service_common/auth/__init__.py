"""
Authentication and authorization for incoming requests.

- keys: verification keys loaded once at startup (PEM file or JWKS URL)
- authenticator: bearer token checks and caller lookup
- authorization: per-route permission checks against fresh permissions
- context: typed request-scoped ``AuthContext``

Typical wiring in a service::

    authenticator = Authenticator(users, key_store, config.authority, config.audience)
    authorizer = Authorizer(users, authenticator)

    @app.post("/items")
    async def create_item(context: AuthContext = Depends(authorizer.require("items:write"))):
        ...
"""

from .authenticator import Authenticator
from .authorization import Authorizer
from .context import AuthContext, get_auth_context
from .keys import PublicKeyStore

__all__ = ["Authenticator", "Authorizer", "AuthContext", "get_auth_context", "PublicKeyStore"]
