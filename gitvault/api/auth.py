"""Signed-token access gate for the public routes."""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Annotated, Any

import jwt
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from fastapi.security import (
    HTTPAuthorizationCredentials,
    HTTPBasic,
    HTTPBasicCredentials,
    HTTPBearer,
)

from gitvault.directory import RepositoryDirectory
from gitvault.exceptions import ConfigError

logger = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)

ALGORITHM = "RS256"
ISSUER = "gitvault"
TOKEN_LIFETIME = timedelta(hours=1)
# Tolerate clocks that run slightly behind ours
NOT_BEFORE_SKEW = timedelta(minutes=1)


def _read_key(path: str | Path, kind: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise ConfigError(f"unable to read jwt {kind} key {path}: {e}") from e


class TokenIssuer:
    """Signs short-lived RS256 tokens."""

    def __init__(
        self,
        private_key: str | bytes,
        *,
        issuer: str = ISSUER,
        lifetime: timedelta = TOKEN_LIFETIME,
    ) -> None:
        self.private_key = private_key
        self.issuer = issuer
        self.lifetime = lifetime

    @classmethod
    def from_file(cls, path: str | Path, **kwargs: Any) -> "TokenIssuer":
        return cls(_read_key(path, "private"), **kwargs)

    def issue(self, subject: str, now: datetime | None = None) -> str:
        now = now or datetime.now(tz=timezone.utc)
        claims = {
            "iss": self.issuer,
            "sub": subject,
            "iat": now,
            "nbf": now - NOT_BEFORE_SKEW,
            "exp": now + self.lifetime,
        }
        try:
            return jwt.encode(claims, self.private_key, algorithm=ALGORITHM)
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise ConfigError(f"unable to sign token: {e}") from e


class TokenVerifier:
    """Checks signature, expiry, not-before and issuer of a token."""

    def __init__(self, public_key: str | bytes, *, issuer: str = ISSUER) -> None:
        self.public_key = public_key
        self.issuer = issuer

    @classmethod
    def from_file(cls, path: str | Path, **kwargs: Any) -> "TokenVerifier":
        return cls(_read_key(path, "public"), **kwargs)

    def verify(self, token: str) -> dict[str, Any]:
        """Return the token's claims, or raise ``jwt.InvalidTokenError``."""
        return jwt.decode(
            token,
            self.public_key,
            algorithms=[ALGORITHM],
            issuer=self.issuer,
            options={"require": ["exp", "iss", "nbf"]},
        )


class PublicAccess:
    """Dependency guarding the public routes.

    A missing or invalid bearer token is a 403. A valid token for a
    repository not marked public is a 404, so private repositories stay
    hidden.
    """

    def __init__(self, directory: RepositoryDirectory, verifier: TokenVerifier) -> None:
        self.directory = directory
        self.verifier = verifier

    def __call__(
        self,
        repo: str,
        credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer)],
    ) -> dict[str, Any]:
        if credentials is None:
            raise HTTPException(status_code=403, detail="no bearer token")
        try:
            claims = self.verifier.verify(credentials.credentials)
        except jwt.InvalidTokenError as e:
            logger.info(f"Rejected token for {repo}: {e}")
            raise HTTPException(status_code=403, detail="invalid token")
        if not self.directory.is_public(repo):
            raise HTTPException(status_code=404, detail=f"unable to find repo {repo}")
        return claims


def create_signin_router(
    issuer: TokenIssuer,
    username: str,
    password: str,
    *,
    prefix: str = "/public",
    tags: list[str] | None = None,
) -> APIRouter:
    """Router exposing ``POST {prefix}/signin``: basic auth in, token out."""
    router = APIRouter(prefix=prefix, tags=tags or ["auth"])
    basic = HTTPBasic(auto_error=False)

    @router.post("/signin", response_class=PlainTextResponse)
    def signin(
        credentials: Annotated[HTTPBasicCredentials | None, Depends(basic)],
    ) -> str:
        """Exchange basic-auth credentials for a signed token."""
        if credentials is None:
            raise HTTPException(status_code=403, detail="no basic auth information")
        user_ok = secrets.compare_digest(credentials.username.encode(), username.encode())
        pass_ok = secrets.compare_digest(credentials.password.encode(), password.encode())
        if not (user_ok and pass_ok):
            logger.info(f"Bad sign-in for user {credentials.username}")
            raise HTTPException(status_code=403, detail="incorrect credentials")
        try:
            token = issuer.issue(credentials.username)
        except ConfigError as e:
            logger.warning(f"Unable to sign token: {e}")
            raise HTTPException(status_code=500, detail="unable to sign token")
        logger.info(f"Signed token for user {credentials.username}")
        return token

    return router
