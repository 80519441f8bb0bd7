"""
Token signing keys.

Keys are loaded once when the service starts, either from a PEM public key
file or from the issuer's JWKS endpoint, and kept in memory. Request
handling never goes to the network for keys.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx
from jose import jwt
from jose.exceptions import JWTError

from ..config import BaseConfig
from ..logging import get_logger
from ..retry import RetryConfig, retry_on_exception

Key = Union[str, Dict[str, Any]]

logger = get_logger("service_common.auth.keys")


class PublicKeyStore:
    """Verification keys for bearer tokens."""

    def __init__(
        self,
        pem: Optional[str] = None,
        jwks: Optional[Dict[str, Any]] = None,
        algorithms: Sequence[str] = ("RS256",),
    ):
        if pem is None and not jwks:
            raise ValueError("a PEM public key or a JWKS document is required")
        self.pem = pem
        self.keys: List[Dict[str, Any]] = list((jwks or {}).get("keys", []))
        self.algorithms = list(algorithms)

    @classmethod
    def from_pem_file(cls, path: Union[str, Path], algorithms: Sequence[str] = ("RS256",)) -> "PublicKeyStore":
        pem = Path(path).read_text()
        logger.info("Loaded public key", path=str(path))
        return cls(pem=pem, algorithms=algorithms)

    @classmethod
    async def from_jwks_url(
        cls,
        jwks_url: str,
        algorithms: Sequence[str] = ("RS256",),
        http_timeout: float = 10.0,
        retry: Optional[RetryConfig] = None,
    ) -> "PublicKeyStore":
        @retry_on_exception((httpx.HTTPError,), retry)
        async def _fetch_jwks() -> Dict[str, Any]:
            async with httpx.AsyncClient(timeout=http_timeout) as client:
                response = await client.get(jwks_url)
                response.raise_for_status()
                return response.json()

        payload = await _fetch_jwks()
        if not isinstance(payload.get("keys"), list):
            raise ValueError("JWKS response missing 'keys' array")

        logger.info("JWKS loaded", jwks_url=jwks_url, keys_count=len(payload["keys"]))
        return cls(jwks=payload, algorithms=algorithms)

    @classmethod
    async def from_config(cls, config: BaseConfig) -> "PublicKeyStore":
        if config.public_key_path:
            return cls.from_pem_file(config.public_key_path, config.token_algorithms)
        if config.jwks_url:
            return await cls.from_jwks_url(config.jwks_url, config.token_algorithms)
        raise ValueError("configure either public_key_path or jwks_url")

    def key_for(self, token: str) -> Key:
        """Pick the key that should have signed ``token``.

        Raises ``JWTError`` when the header is unreadable or names an unknown key.
        """
        if self.pem is not None:
            return self.pem

        header = jwt.get_unverified_header(token)
        kid = header.get("kid")
        if kid is None and len(self.keys) == 1:
            return self.keys[0]

        for key in self.keys:
            if key.get("kid") == kid:
                return key

        raise JWTError(f"signing key not found: {kid}")
