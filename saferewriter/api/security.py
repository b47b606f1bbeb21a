"""
Security dependencies for the API: API token, bearer-token users, rate limits.
"""

import time
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import jwt
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from saferewriter.api.deps import get_db, get_settings
from saferewriter.config import Settings
from saferewriter.errors import AuthenticationError, AuthorizationError, NotFoundError, RateLimitError
from saferewriter.models.user import User
from saferewriter.services import user_service
from saferewriter.utils.logging_config import StructuredLogger, metrics, user_id_var

logger = StructuredLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# ============== API TOKEN ==============


async def verify_api_token(request: Request, settings: Settings = Depends(get_settings)):
    """
    Verify the API token from the configured header (X-API-Key by default).

    In development mode (no token configured), this is bypassed.
    In production, a valid token is required.
    """
    # If no token is configured, allow all requests (dev mode)
    if not settings.api_token:
        if settings.is_production:
            logger.warning("API token not configured in production mode!")
        return None

    api_key = request.headers.get(settings.api_token_header)
    if not api_key:
        logger.warning("Missing API key", client_ip=_client_ip(request))
        raise AuthenticationError(f"Missing API key. Provide {settings.api_token_header} header.")

    if api_key != settings.api_token:
        logger.warning("Invalid API key attempt", client_ip=_client_ip(request))
        raise AuthenticationError("Invalid API key.")

    return api_key


# ============== USER TOKENS ==============


def create_access_token(user_id: str, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.utcnow()
    expires = now + (expires_delta or timedelta(hours=settings.jwt_expires_hours))
    payload = {"sub": user_id, "iat": now, "exp": expires}
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> str:
    """Return the user id carried by a token; raises AuthenticationError if invalid or expired."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError("Invalid token")
    return subject


def _load_user(db: Session, token: str, settings: Settings) -> User:
    user = user_service.get_user(db, decode_access_token(token, settings))
    if user is None:
        raise NotFoundError("User")
    if not user.is_active:
        raise AuthorizationError("User account is deactivated")
    user_id_var.set(user.id)
    return user


async def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Optional[User]:
    """Resolve the bearer user if one is sent; anonymous callers get None."""
    if credentials is None:
        return None
    try:
        return _load_user(db, credentials.credentials, settings)
    except (AuthenticationError, NotFoundError) as e:
        logger.debug("Ignoring unusable bearer token", error=e.message)
        return None


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> User:
    if credentials is None:
        raise AuthenticationError("User authentication required")
    return _load_user(db, credentials.credentials, settings)


# ============== RATE LIMITING ==============


class RateLimiter:
    """
    Sliding-window in-memory rate limiter.
    One instance per app; state is lost on restart.
    """

    def __init__(self, clock=time.time):
        self._requests: dict = defaultdict(list)
        self._clock = clock

    def _clean_old_requests(self, key: str, window: int):
        """Remove requests outside the current window."""
        now = self._clock()
        self._requests[key] = [
            ts for ts in self._requests[key]
            if now - ts < window
        ]

    def is_allowed(self, key: str, limit: int, window: int) -> Tuple[bool, int]:
        """
        Check if a request is allowed.

        Returns:
            (allowed: bool, remaining: int)
        """
        self._clean_old_requests(key, window)

        current_count = len(self._requests[key])

        if current_count >= limit:
            return False, 0

        self._requests[key].append(self._clock())
        return True, limit - current_count - 1

    def get_retry_after(self, key: str, window: int) -> int:
        """Get seconds until the oldest request expires."""
        if not self._requests[key]:
            return 0
        oldest = min(self._requests[key])
        return max(0, int(window - (self._clock() - oldest)))

    def reset(self):
        self._requests.clear()


# policy name -> (limit setting, window setting)
RATE_LIMIT_POLICIES: Dict[str, Tuple[str, str]] = {
    "general": ("rate_limit_requests", "rate_limit_window"),
    "rewrite": ("rewrite_rate_limit", "rewrite_rate_window"),
    "user": ("user_rate_limit", "user_rate_window"),
    "analytics": ("analytics_rate_limit", "analytics_rate_window"),
    "pattern": ("pattern_rate_limit", "pattern_rate_window"),
}


class RateLimit:
    """
    Rate limiting dependency for one named policy.

    Keys on client IP; with per_user=True a valid bearer token's subject
    is used instead.
    """

    def __init__(self, policy: str, per_user: bool = False):
        if policy not in RATE_LIMIT_POLICIES:
            raise ValueError(f"Unknown rate limit policy: {policy}")
        self.policy = policy
        self.per_user = per_user

    def _identity(self, request: Request, settings: Settings) -> str:
        if self.per_user:
            auth = request.headers.get("authorization", "")
            scheme, _, token = auth.partition(" ")
            if scheme.lower() == "bearer" and token:
                try:
                    return "user:" + decode_access_token(token, settings)
                except AuthenticationError:
                    pass
        return "ip:" + _client_ip(request)

    async def __call__(self, request: Request, settings: Settings = Depends(get_settings)):
        limit_attr, window_attr = RATE_LIMIT_POLICIES[self.policy]
        limit = getattr(settings, limit_attr)
        window = getattr(settings, window_attr)
        if not limit:
            return  # Rate limiting disabled

        limiter: RateLimiter = request.app.state.rate_limiter
        key = f"{self.policy}:{self._identity(request, settings)}"
        allowed, remaining = limiter.is_allowed(key=key, limit=limit, window=window)

        # Picked up by the rate limit headers middleware
        request.state.rate_limit_remaining = remaining
        request.state.rate_limit_limit = limit

        if not allowed:
            retry_after = limiter.get_retry_after(key, window)
            metrics.increment(f"rate_limit.{self.policy}.rejected")
            logger.warning("Rate limit exceeded", policy=self.policy, key=key, retry_after=retry_after)
            raise RateLimitError(
                f"Too many requests. Try again in {retry_after} seconds.",
                retry_after=retry_after,
            )
