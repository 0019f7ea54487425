from typing import NamedTuple, Optional

from fastapi import Header
from jose import JWTError, jwt

from . import config
from .errors import Unauthenticated


class User(NamedTuple):
    id: str
    email: Optional[str] = None


def decode_token(token: str) -> User:
    try:
        claims = jwt.decode(token, config.JWT_SECRET, algorithms=["HS256"])
    except JWTError:
        raise Unauthenticated("Invalid or missing token")
    uid = claims.get("sub")
    if not uid or not isinstance(uid, str):
        raise Unauthenticated("Invalid or missing token")
    return User(id=uid, email=claims.get("email"))


def optional_user(
    authorization: Optional[str] = Header(None),
) -> Optional[User]:
    if not authorization:
        return None
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise Unauthenticated("Invalid or missing token")
    if scheme.lower() != "bearer":
        raise Unauthenticated("Invalid or missing token")
    return decode_token(token)


def current_user(authorization: Optional[str] = Header(None)) -> User:
    user = optional_user(authorization)
    if user is None:
        raise Unauthenticated("login required")
    return user


def issue_token(user_id: str, email: Optional[str] = None) -> str:
    claims = {"sub": user_id}
    if email:
        claims["email"] = email
    return jwt.encode(claims, config.JWT_SECRET, algorithm="HS256")
