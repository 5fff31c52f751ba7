from fastapi import Depends, Header, HTTPException
from jose import JWTError, jwt

from kinddraw.config import Settings, get_settings


def verify_token(authorization: str = Header(...), settings: Settings = Depends(get_settings)):
    """Bearer JWT guard for operator-only routes."""
    if not settings.jwt_secret:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise ValueError("not a bearer token")
        return jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])
    except (ValueError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
