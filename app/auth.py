from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import settings
from .exceptions import InvalidTokenError, TokenExpiredError, to_http_exception
from .schemas import TokenData

security = HTTPBearer(auto_error=False)

def create_access_token(sub: str, email: Optional[str] = None, expires_minutes: int = 60) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": sub,
        "aud": settings.jwt_audience,
        "exp": now + timedelta(minutes=expires_minutes),
        "iat": now,
    }
    if email:
        payload["email"] = email
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)

def decode_access_token(token: str) -> TokenData:
    """Validate an access token issued by the auth backend."""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        raise TokenExpiredError()
    except jwt.InvalidTokenError as e:
        raise InvalidTokenError(str(e))

    user_id = payload.get("sub")
    if not user_id:
        raise InvalidTokenError("missing subject")
    return TokenData(user_id=user_id, email=payload.get("email"))

async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> TokenData:
    if credentials is None:
        raise to_http_exception(InvalidTokenError("missing bearer token"))
    try:
        return decode_access_token(credentials.credentials)
    except (TokenExpiredError, InvalidTokenError) as e:
        raise to_http_exception(e)
