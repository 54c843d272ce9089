"""Authentication: bearer JWT -> account id.

Token issuance belongs to the login service; this module only decodes.
``create_access_token`` is kept for operators and tests.
"""
from datetime import datetime, timedelta
from typing import Optional
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from synexa_gateway.config import Settings

# JWT token bearer scheme
security = HTTPBearer(auto_error=False)


def create_access_token(data: dict, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=settings.jwt_access_token_expire_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings) -> Optional[dict]:
    """Decode and verify a JWT access token."""
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def account_id_from_token(token: Optional[str], settings: Settings) -> Optional[str]:
    """Return the account id carried by a valid token, else None."""
    if not token:
        return None
    payload = decode_access_token(token, settings)
    if payload is None:
        return None
    account_id = payload.get("sub") or payload.get("userId")
    return str(account_id) if account_id else None


async def get_current_account(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> str:
    """FastAPI dependency: authenticate the caller and make sure their account exists."""
    services = request.app.state.services
    account_id = account_id_from_token(credentials.credentials if credentials else None, services.settings)
    if account_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    services.repository.get_or_create_account(account_id, services.settings.initial_credits)
    return account_id
