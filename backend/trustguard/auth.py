from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from trustguard.config import settings
from trustguard.security import decode_access_token, is_bcrypt_hash, verify_password

security = HTTPBearer()


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)):
    """Get current user from JWT token"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise credentials_exception

    username = payload.get("sub")
    if username is None or username != settings.ADMIN:
        raise credentials_exception

    return {"username": username}


def admin_login_enabled() -> bool:
    return bool(settings.MASTER_KEY and settings.ADMIN_PASSWORD)


def verify_admin_password(username: str, password: str) -> bool:
    if username != settings.ADMIN or not settings.ADMIN_PASSWORD:
        return False

    if is_bcrypt_hash(settings.ADMIN_PASSWORD):
        return verify_password(password, settings.ADMIN_PASSWORD)
    return password == settings.ADMIN_PASSWORD
