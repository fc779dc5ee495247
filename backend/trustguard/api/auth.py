from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, status

from trustguard.auth import admin_login_enabled, verify_admin_password
from trustguard.config import settings
from trustguard.schemas.auth import LoginRequest, LoginResponse
from trustguard.security import create_access_token

router = APIRouter(prefix="/api/auth", tags=["Authentication"])


@router.post(
    "/login",
    response_model=LoginResponse,
    summary="Admin login",
    description="Authenticate the admin account and return a JWT access token.",
)
def login(request: LoginRequest):
    if not admin_login_enabled():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin API disabled: MASTER_KEY and ADMIN_PASSWORD must be set",
        )

    if not verify_admin_password(request.username, request.password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid username or password",
        )

    token = create_access_token(data={"sub": request.username})

    expires_at = datetime.now(timezone.utc) + timedelta(
        minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES
    )

    return LoginResponse(token=token, username=request.username, expires_at=expires_at.isoformat())
