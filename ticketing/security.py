import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import bcrypt
from fastapi import Depends, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from ticketing.config import Settings
from ticketing.constants import Role
from ticketing.core import APIError
from ticketing.logging_config import get_request_id

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
SPECIAL_CHARACTERS = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")


def hash_password(password: str, rounds: int = 12) -> str:
    """Hash password with bcrypt"""
    # Bcrypt has a 72 byte limit
    password_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(password_bytes, bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    password_bytes = plain_password.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(password_bytes, hashed_password.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage
        return False


def validate_password_strength(password: str) -> List[str]:
    """
    Returns the list of unmet requirements, empty when the password is strong
    """
    errors = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"\d", password):
        errors.append("Password must contain at least one number")
    if not SPECIAL_CHARACTERS.search(password):
        errors.append("Password must contain at least one special character")
    return errors


def create_access_token(data: Dict[str, Any],
                        secret: str,
                        algorithm: str = "HS256",
                        expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta
                                           or timedelta(minutes=60))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, secret, algorithm=algorithm)


def decode_access_token(token: str,
                        secret: str,
                        algorithm: str = "HS256") -> Dict[str, Any]:
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except JWTError:
        raise APIError(status_code=status.HTTP_401_UNAUTHORIZED,
                       error_code="INVALID_TOKEN")

    if payload.get("type") != "access" or not payload.get("sub"):
        raise APIError(status_code=status.HTTP_401_UNAUTHORIZED,
                       error_code="INVALID_TOKEN")
    return payload


class CurrentUser(BaseModel):
    """
    Identity carried by the bearer token
    """
    id: str
    role: Role
    name: str = ""
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


bearer_scheme = HTTPBearer(auto_error=False)


class Authenticator():
    """
    Issues tokens and provides the FastAPI dependencies that resolve the
    caller from the "Authorization: Bearer" header
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def issue_token(self, *, user_id: str, role: str, name: str,
                    email: str) -> str:
        return create_access_token(
            {
                "sub": user_id,
                "role": role,
                "name": name,
                "email": email
            },
            self.settings.jwt_secret,
            self.settings.jwt_algorithm,
            timedelta(minutes=self.settings.access_token_expire_minutes),
        )

    async def __call__(
        self,
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(
            bearer_scheme)
    ) -> CurrentUser:
        if credentials is None:
            raise APIError(status_code=status.HTTP_401_UNAUTHORIZED,
                           error_code="MISSING_TOKEN")

        payload = decode_access_token(credentials.credentials,
                                      self.settings.jwt_secret,
                                      self.settings.jwt_algorithm)
        user = CurrentUser(id=payload["sub"],
                           role=payload.get("role", "user"),
                           name=payload.get("name", ""),
                           email=payload.get("email", ""))
        request.state.user = user
        return user

    async def optional(
        self,
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(
            bearer_scheme)
    ) -> Optional[CurrentUser]:
        """
        Same as calling the authenticator, but anonymous callers get None
        """
        if credentials is None:
            return None
        return await self(request, credentials)

    def require(self, *roles: str):
        """
        Dependency factory: the caller must hold one of the given roles
        """

        async def dependency(user: CurrentUser = Depends(self)) -> CurrentUser:
            if user.role not in roles:
                logger.warning("role %s denied (needs %s) request=%s",
                               user.role, ",".join(roles), get_request_id())
                raise APIError(status_code=status.HTTP_403_FORBIDDEN,
                               error_code="FORBIDDEN")
            return user

        return dependency


def current_user(request: Request) -> CurrentUser:
    """
    Caller resolved by the route's authentication dependency
    """
    user = getattr(request.state, "user", None)
    if user is None:
        raise APIError(status_code=status.HTTP_401_UNAUTHORIZED,
                       error_code="MISSING_TOKEN")
    return user


def optional_current_user(request: Request) -> Optional[CurrentUser]:
    return getattr(request.state, "user", None)
