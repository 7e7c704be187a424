"""Operator authentication for the grant intake admin routes.

A single operator account comes from ``ADMIN_USER`` / ``ADMIN_PASS``.
The password is bcrypt-hashed at load time and login issues an HS256 JWT
signed with ``JWT_SECRET`` via python-jose.

When no operator account is configured the admin routes answer 404 so
their existence is not advertised.
"""

import hmac
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from fastapi import HTTPException, status
from jose import JWTError, jwt

from grant_intake.config import IS_PRODUCTION

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# JWT configuration
# ---------------------------------------------------------------------------
DEV_JWT_SECRET = "grant-intake-dev-secret-change-in-production"
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 12
TOKEN_SCOPE = "operator"


# ---------------------------------------------------------------------------
# Password hashing (direct bcrypt)
# ---------------------------------------------------------------------------
def _hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def _verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


class OperatorAuth:
    """Credential check and token issue/verify for the operator account."""

    def __init__(
        self,
        username: Optional[str],
        password: Optional[str],
        jwt_secret: Optional[str],
        expiry_hours: int = JWT_EXPIRY_HOURS,
    ) -> None:
        self.username = (username or "").strip() or None
        # Plain-text password is not kept after construction.
        self._hashed_password = _hash_password(password) if password else None
        self.jwt_secret = jwt_secret
        self.expiry_hours = expiry_hours

    @classmethod
    def from_env(cls) -> "OperatorAuth":
        secret = os.getenv("JWT_SECRET")
        if not secret:
            if IS_PRODUCTION:
                logger.error("JWT_SECRET is not set; operator routes are disabled")
            else:
                secret = DEV_JWT_SECRET
        return cls(os.getenv("ADMIN_USER"), os.getenv("ADMIN_PASS"), secret)

    @property
    def configured(self) -> bool:
        return bool(self.username and self._hashed_password and self.jwt_secret)

    def authenticate(self, username: str, password: str) -> bool:
        if not self.configured:
            return False
        user_ok = hmac.compare_digest(username.strip().encode(), self.username.encode())
        # Always run bcrypt so timing does not reveal a wrong username.
        password_ok = _verify_password(password, self._hashed_password)
        return user_ok and password_ok

    def create_access_token(self, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        payload = {
            "sub": self.username,
            "scope": TOKEN_SCOPE,
            "exp": now + timedelta(hours=self.expiry_hours),
            "iat": now,
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=JWT_ALGORITHM)

    def verify_token(self, token: Optional[str]) -> str:
        """Return the operator name for a valid token, or raise 401."""
        if not token:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
                headers={"WWW-Authenticate": "Bearer"},
            )
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[JWT_ALGORITHM])
        except JWTError as exc:
            logger.warning("JWT validation failed: %s", exc)
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid or expired token",
                headers={"WWW-Authenticate": "Bearer"},
            ) from exc

        subject = payload.get("sub", "")
        if payload.get("scope") != TOKEN_SCOPE or subject != self.username:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid token payload",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return subject


_operator_auth: Optional[OperatorAuth] = None


def get_operator_auth() -> OperatorAuth:
    global _operator_auth
    if _operator_auth is None:
        _operator_auth = OperatorAuth.from_env()
    return _operator_auth
