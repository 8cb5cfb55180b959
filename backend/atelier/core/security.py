from datetime import datetime, timedelta
from typing import Optional
from jose import jwt, JWTError
from .config import settings

# Tokens are issued by the external auth service. create_access_token is kept
# for scripts and tests that need to mint a token for a known user.


def create_access_token(
    subject: str,              # user id (string)
    role_name: str,            # "user" | "admin"
    expires_minutes: Optional[int] = None
) -> str:
    expire = datetime.utcnow() + timedelta(
        minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    payload = {"sub": subject, "role": role_name, "exp": expire}
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError as e:
        raise ValueError("Invalid token") from e
