import logging
from typing import Any, Dict

import httpx
from pydantic import BaseModel, Field
from supabase import AuthApiError, AuthError, AuthRetryableError

from backend.app.errors import Unauthorized, UpstreamError


logger = logging.getLogger(__name__)


class AuthUser(BaseModel):
    id: str
    email: str | None = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)


def read_bearer_token(header: str | None) -> str | None:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


class SupabaseIdentityVerifier:
    """Resolves access tokens to users through Supabase Auth."""

    def __init__(self, client: Any):
        self.client = client

    def verify(self, access_token: str) -> AuthUser | None:
        try:
            response = self.client.auth.get_user(access_token)
        except (AuthRetryableError, httpx.HTTPError) as exc:
            logger.warning("Supabase Auth unreachable: %s", exc)
            raise UpstreamError("Identity provider unavailable") from exc
        except AuthApiError as exc:
            if (exc.status or 0) >= 500:
                logger.warning("Supabase Auth failed with status %s: %s", exc.status, exc)
                raise UpstreamError("Identity provider unavailable") from exc
            logger.info("Access token rejected by Supabase Auth: %s", exc)
            return None
        except AuthError as exc:
            logger.info("Access token rejected by Supabase Auth: %s", exc)
            return None

        user = getattr(response, "user", None)
        if user is None:
            return None
        return AuthUser(
            id=str(user.id),
            email=getattr(user, "email", None),
            user_metadata=getattr(user, "user_metadata", None) or {},
        )

    def authenticate(self, authorization: str | None) -> AuthUser:
        token = read_bearer_token(authorization)
        if not token:
            raise Unauthorized("Missing or invalid Supabase access token")
        user = self.verify(token)
        if user is None:
            raise Unauthorized("Missing or invalid Supabase access token")
        return user
