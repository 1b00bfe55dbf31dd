import os
import time
import string
import secrets
import logging
from dataclasses import dataclass

from fastapi import Header

from roseram.database import get_supabase, get_user_github_token
from roseram.errors import AuthenticationError
from roseram.services.github import Credential

logger = logging.getLogger(__name__)


@dataclass
class User:
    id: str
    email: str | None = None
    is_guest: bool = False


def _guest_user() -> User:
    suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(9))
    return User(id=f"guest-{int(time.time() * 1000)}-{suffix}", is_guest=True)


def _bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[7:].strip() or None


async def get_user_from_token(token: str) -> User | None:
    """Resolve a Supabase access token to a user, or None if it is not valid."""
    client = get_supabase()
    if client is None:
        return None

    try:
        response = client.auth.get_user(token)
    except Exception as e:
        logger.info(f"[auth] Token rejected: {e}")
        return None

    user = getattr(response, "user", None)
    if user is None:
        return None
    return User(id=user.id, email=getattr(user, "email", None))


async def optional_user(authorization: str | None = Header(None)) -> User:
    """Signed-in user, or a fresh guest identity when there is none."""
    token = _bearer_token(authorization)
    user = await get_user_from_token(token) if token else None
    if user is None:
        user = _guest_user()
        logger.info(f"[auth] Unauthenticated request, using guest id {user.id}")
    return user


async def require_user(authorization: str | None = Header(None)) -> User:
    token = _bearer_token(authorization)
    if not token:
        raise AuthenticationError("Missing or invalid authorization header")
    user = await get_user_from_token(token)
    if user is None:
        raise AuthenticationError("Invalid or expired session")
    return user


async def resolve_github_credential(user: User) -> Credential | None:
    """The user's connected GitHub token, else GITHUB_ACCESS_TOKEN, else None."""
    token = None if user.is_guest else await get_user_github_token(user.id)
    if not token:
        token = os.getenv("GITHUB_ACCESS_TOKEN")
    if not token:
        logger.warning(f"[auth] No GitHub token for {user.id}, repository calls will be unauthenticated")
        return None
    return Credential(token)
