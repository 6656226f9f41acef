from fastapi import Header, HTTPException
from jose import jwt, JWTError

from paybord import config


def user_from_token(token: str):
    """Subject of a raw JWT, or None when the token does not verify."""
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except JWTError:
        return None
    return claims.get("sub")


def verify_token(authorization: str = Header(...)) -> str:
    """Check the bearer token and return the caller's user id."""
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    user_id = user_from_token(token) if scheme.lower() == "bearer" else None
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    return str(user_id)
