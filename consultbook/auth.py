import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError
from jose import jwt as jose_jwt

from .config import IDENTITY_TOKEN_ISSUER, IDENTITY_TOKEN_SECRET

logger = logging.getLogger(__name__)

security = HTTPBearer()

ALGORITHM = "HS256"
ROLES = ("client", "provider", "admin")


@dataclass(frozen=True)
class Caller:
    """Authenticated principal handed over by the identity service"""

    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def issue_caller_token(caller_id: str, role: str, expires_in: int = 3600, secret: str = None) -> str:
    """Mint an HS256 identity token (used by tooling and tests)"""
    now = datetime.utcnow()
    claims = {
        "sub": caller_id,
        "role": role,
        "iss": IDENTITY_TOKEN_ISSUER,
        "iat": now,
        "exp": now + timedelta(seconds=expires_in),
    }
    return jose_jwt.encode(claims, secret or IDENTITY_TOKEN_SECRET, algorithm=ALGORITHM)


def verify_caller_token(token: str, secret: str = None) -> dict:
    """
    Verify an identity token signed with the shared HS256 secret.

    Signature, issuer and expiry are checked by jose; the role claim is checked here.
    """
    try:
        payload = jose_jwt.decode(
            token,
            secret or IDENTITY_TOKEN_SECRET,
            algorithms=[ALGORITHM],
            issuer=IDENTITY_TOKEN_ISSUER,
            options={"require_exp": True, "require_sub": True},
        )
    except ExpiredSignatureError as e:
        raise HTTPException(
            status_code=401,
            detail="Token has expired. Please refresh your session.",
            headers={"X-Token-Expired": "true"},
        ) from e
    except JWTError as e:
        logger.warning(f"⚠️ Identity token rejected: {e}")
        raise HTTPException(status_code=401, detail="Invalid identity token") from e

    if not payload.get("sub") or payload.get("role") not in ROLES:
        raise HTTPException(status_code=401, detail="Invalid token claims")

    return payload


async def get_current_caller(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Caller:
    """Resolve the caller from the identity token"""
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Not authenticated. Please provide a valid Bearer token in the Authorization header.",
        )

    claims = verify_caller_token(credentials.credentials)
    caller = Caller(id=str(claims["sub"]), role=claims["role"])
    logger.debug(f"✅ Caller authenticated: {caller.id} ({caller.role})")
    return caller


def require_role(*roles: str):
    """Dependency factory restricting a route to the given roles"""

    async def dependency(caller: Caller = Depends(get_current_caller)) -> Caller:
        if caller.role not in roles:
            logger.warning(f"⚠️ {caller.role} {caller.id} attempted a {'/'.join(roles)} route")
            raise HTTPException(status_code=403, detail=f"Requires role: {', '.join(roles)}")
        return caller

    return dependency
