"""Authentication for the Courier API.

Provides:
- Signed Bearer tokens that identify a caller and, optionally, its tenant
- Tenant scoping rules shared by all routes
- A FastAPI dependency for route protection
"""

from __future__ import annotations

import hashlib
import hmac
import time
from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from courier.exceptions import AuthenticationError, AuthorizationError, ValidationError
from courier.logging import get_logger

if TYPE_CHECKING:
    from courier.config import Settings

logger = get_logger(__name__)

# Security scheme for OpenAPI docs
security = HTTPBearer(auto_error=False)

TENANT_HEADER = "X-Tenant-ID"


class AuthenticatedCaller(BaseModel):
    """Represents an authenticated API caller.

    Attributes:
        subject: Who is calling (user or service name).
        tenant_id: Tenant the caller is bound to. None for service
            callers, which may act on any tenant.
    """

    model_config = ConfigDict(extra="forbid")

    subject: str = Field(description="Caller identity")
    tenant_id: str | None = Field(default=None, description="Bound tenant, if any")

    @property
    def is_service(self) -> bool:
        return self.tenant_id is None

    def scope(self, requested: str | None) -> str:
        """The tenant this caller acts on.

        Tenant-bound callers act on their own tenant and may not name
        another one. Service callers must name the tenant.

        Raises:
            AuthorizationError: If a tenant-bound caller names another tenant.
            ValidationError: If a service caller names no tenant.
        """
        if self.tenant_id is not None:
            if requested and requested != self.tenant_id:
                raise AuthorizationError(
                    f"Caller bound to tenant {self.tenant_id} cannot act on {requested}"
                )
            return self.tenant_id
        if not requested:
            raise ValidationError("tenant_id", f"required (send the {TENANT_HEADER} header)")
        return requested


class TokenValidator:
    """Creates and validates HMAC-SHA256 signed Bearer tokens.

    Token format: subject:tenant_id:expires_at:signature
    where signature = HMAC(secret, subject:tenant_id:expires_at). An empty
    tenant_id marks a service token.
    """

    def __init__(self, secret_key: str) -> None:
        self.secret_key = secret_key.encode()

    def _sign(self, payload: str) -> str:
        return hmac.new(self.secret_key, payload.encode(), hashlib.sha256).hexdigest()

    def create_token(
        self,
        subject: str,
        tenant_id: str | None = None,
        expire_minutes: int = 60,
    ) -> str:
        """Create a signed token.

        Args:
            subject: Caller identity.
            tenant_id: Tenant to bind the token to; None for a service token.
            expire_minutes: Token validity in minutes.

        Returns:
            Signed token string.
        """
        if ":" in subject or ":" in (tenant_id or ""):
            raise ValueError("subject and tenant_id must not contain ':'")
        expires_at = int(time.time()) + (expire_minutes * 60)
        payload = f"{subject}:{tenant_id or ''}:{expires_at}"
        return f"{payload}:{self._sign(payload)}"

    def validate_token(self, token: str) -> AuthenticatedCaller:
        """Validate a token and return the caller.

        Raises:
            AuthenticationError: If the token is malformed, forged or expired.
        """
        parts = token.split(":")
        if len(parts) != 4:
            raise AuthenticationError("Invalid token format")

        subject, tenant_id, expires_at_str, signature = parts
        payload = f"{subject}:{tenant_id}:{expires_at_str}"

        if not hmac.compare_digest(signature, self._sign(payload)):
            raise AuthenticationError("Invalid token signature")

        try:
            expires_at = int(expires_at_str)
        except ValueError as e:
            raise AuthenticationError(f"Invalid token expiry: {expires_at_str}") from e
        if time.time() > expires_at:
            raise AuthenticationError("Token has expired")

        if not subject:
            raise AuthenticationError("Token has no subject")

        return AuthenticatedCaller(subject=subject, tenant_id=tenant_id or None)


@lru_cache(maxsize=1)
def get_token_validator(secret_key: str) -> TokenValidator:
    """Get or create the token validator singleton.

    The secret_key parameter ensures a new validator is created if the key changes.
    """
    return TokenValidator(secret_key)


def reset_auth_singletons() -> None:
    """Reset auth singletons (for testing)."""
    get_token_validator.cache_clear()


class AuthDependency:
    """Resolves the caller of a request.

    With auth enabled the caller comes from the Bearer token. With auth
    disabled every caller is a service caller, and the tenant is taken
    from the ``X-Tenant-ID`` header when present.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    async def __call__(
        self,
        credentials: HTTPAuthorizationCredentials | None,
        tenant_header: str | None = None,
    ) -> AuthenticatedCaller:
        if not self.settings.is_auth_enabled:
            return AuthenticatedCaller(subject="anonymous", tenant_id=tenant_header or None)

        if credentials is None:
            raise AuthenticationError("Missing authentication credentials")

        validator = get_token_validator(self.settings.effective_auth_secret_key)
        caller = validator.validate_token(credentials.credentials)

        logger.debug(
            "Caller authenticated",
            subject=caller.subject,
            tenant_id=caller.tenant_id,
        )
        return caller
