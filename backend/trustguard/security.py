import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from jose import JWTError, jwt

from trustguard.config import settings


# ============================================
# Password Hashing (bcrypt)
# ============================================


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode(), salt)
    return hashed.decode()


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a bcrypt hash"""
    return bcrypt.checkpw(plain_password.encode(), hashed_password.encode())


def is_bcrypt_hash(password: Optional[str]) -> bool:
    if not isinstance(password, str):
        return False
    if not password.startswith(("$2b$", "$2a$", "$2y$")):
        return False
    return len(password) >= 60


# ============================================
# JWT Token Management
# ============================================


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token signed with the master key"""
    if not settings.MASTER_KEY:
        raise RuntimeError("MASTER_KEY is not configured")

    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.MASTER_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    if not settings.MASTER_KEY:
        return None
    try:
        return jwt.decode(token, settings.MASTER_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


# ============================================
# Fingerprint Calculation
# ============================================


def calculate_fingerprint(data: bytes) -> str:
    """Calculate SHA-256 fingerprint of data"""
    return hashlib.sha256(data).hexdigest()
