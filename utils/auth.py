"""
Request Authentication
Bearer JWT verification for API callers and shared-secret checks for cron triggers.
Token issuance belongs to the marketplace; this module only verifies.
"""

import hmac
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import jwt
from fastapi import HTTPException, Request

from config import Config
from utils.payment_errors import UnauthorizedError

logger = logging.getLogger(__name__)


@dataclass
class AuthenticatedUser:
    """Caller identity decoded from a verified access token"""
    user_id: str
    role: str = "user"
    wallet_address: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def identities(self) -> List[str]:
        """Identifiers that may appear as a party on an escrow or order"""
        return [value for value in (self.user_id, self.wallet_address) if value]


def decode_access_token(token: str) -> AuthenticatedUser:
    if not Config.JWT_SECRET:
        logger.error("❌ AUTH: JWT_SECRET not configured")
        raise UnauthorizedError("Authentication is not configured")
    try:
        payload = jwt.decode(token, Config.JWT_SECRET, algorithms=[Config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise UnauthorizedError("Token expired")
    except jwt.InvalidTokenError as e:
        logger.warning(f"AUTH: invalid token: {e}")
        raise UnauthorizedError("Invalid or expired token")

    user_id = payload.get("userId") or payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Invalid or expired token")
    return AuthenticatedUser(
        user_id=str(user_id),
        role=payload.get("role", "user"),
        wallet_address=payload.get("walletAddress"),
        claims=payload,
    )


def authenticate_request(request: Request) -> AuthenticatedUser:
    """Resolve the bearer token on request; HTTP 401 when missing or invalid"""
    auth_header = request.headers.get("authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="No authorization token provided")
    try:
        return decode_access_token(auth_header[7:].strip())
    except UnauthorizedError as e:
        raise HTTPException(status_code=401, detail=e.message)


def require_admin(request: Request) -> AuthenticatedUser:
    user = authenticate_request(request)
    if not user.is_admin:
        logger.warning(f"🚫 AUTH: user {user.user_id} attempted an admin action")
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def verify_cron_secret(provided: Optional[str]) -> bool:
    """Constant-time comparison against CRON_SECRET; always False when unset"""
    if not Config.CRON_SECRET or not provided:
        return False
    return hmac.compare_digest(provided.encode(), Config.CRON_SECRET.encode())
