"""Authentication module for BaaS-issued session tokens.

Sessions are created by the external auth service; this module only verifies
the signed access token it hands out and resolves the caller's role.

This module provides:
1. Token verification (HS256 JWT, ``sub`` is the user id)
2. FastAPI dependencies for authenticated and admin-only routes
"""

import logging
from typing import Optional, Dict, Any

from fastapi import HTTPException, status, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError, ExpiredSignatureError

from config import settings_conf
from database import get_pool

logger = logging.getLogger(__name__)

ADMIN_ROLE = 'admin'

class AuthError(Exception):
    """Base exception for authentication errors."""
    pass

class InvalidTokenError(AuthError):
    """Raised when a token is malformed or its signature does not verify."""
    pass

class SessionExpiredError(AuthError):
    """Raised when a token has expired."""
    pass

class AuthManager:
    """Verifies access tokens and looks up user roles."""

    def __init__(self, pool=None, secret: Optional[str] = None,
                 algorithm: Optional[str] = None, audience: Optional[str] = None):
        """Initialize auth manager.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
            secret: Token signing secret, defaults to settings
            algorithm: Signing algorithm, defaults to settings
            audience: Expected ``aud`` claim, defaults to settings
        """
        self.pool = pool
        self.secret = secret if secret is not None else settings_conf['jwt_secret']
        self.algorithm = algorithm or settings_conf['jwt_algorithm']
        self.audience = audience if audience is not None else settings_conf['jwt_audience']

    async def ensure_pool(self):
        """Ensure database pool is available."""
        if not self.pool:
            self.pool = await get_pool()

    def verify_token(self, token: str) -> Dict[str, Any]:
        """Verify an access token.

        Args:
            token: Encoded JWT

        Returns:
            Dict containing user_id, email and role claims

        Raises:
            SessionExpiredError: If the token has expired
            InvalidTokenError: If the token fails verification
        """
        if not self.secret:
            raise InvalidTokenError("Token verification is not configured")

        try:
            options = {'verify_aud': bool(self.audience)}
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience or None,
                options=options
            )
        except ExpiredSignatureError:
            raise SessionExpiredError("Session has expired")
        except JWTError as e:
            raise InvalidTokenError(f"Invalid token: {e}")

        user_id = payload.get('sub')
        if not user_id:
            raise InvalidTokenError("Token has no subject")

        return {
            'user_id': user_id,
            'email': payload.get('email'),
            'role': payload.get('role')
        }

    async def is_admin(self, user_id: str) -> bool:
        """Check whether a user's profile carries the admin role."""
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            role = await conn.fetchval(
                'SELECT role FROM profiles WHERE id = $1',
                user_id
            )
        return role == ADMIN_ROLE

# Create global instance
manager = AuthManager()

# FastAPI security scheme
auth_scheme = HTTPBearer(
    auto_error=True,
    description="Access token issued by the auth service"
)

async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme)
) -> str:
    """FastAPI dependency for getting the authenticated user id.

    Raises:
        HTTPException: If authentication fails
    """
    try:
        return manager.verify_token(credentials.credentials)['user_id']
    except SessionExpiredError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Session has expired"
        )
    except AuthError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e)
        )

async def require_admin(user_id: str = Depends(get_current_user)) -> str:
    """FastAPI dependency restricting a route to admins.

    Returns:
        The admin's user id

    Raises:
        HTTPException: 403 if the caller is not an admin
    """
    try:
        admin = await manager.is_admin(user_id)
    except Exception as e:
        logger.error(f"Error checking admin role for {user_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Could not verify permissions"
        )

    if not admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden: Admins only"
        )
    return user_id

# Export public interface
__all__ = [
    'manager',
    'AuthManager',
    'get_current_user',
    'require_admin',
    'AuthError',
    'InvalidTokenError',
    'SessionExpiredError'
]
