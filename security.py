"""
Access control: password hashing, token issuance, identity resolution and the
role / ownership policies every router relies on.

Tokens carry only `sub` (user id), `role`, `iat` and `exp`; the user row is
re-read on every request so profile or role changes apply immediately.
"""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Tuple

from fastapi import Cookie, Depends, Response
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import select
from starlette.concurrency import run_in_threadpool

import config
from database import get_db
from errors import Forbidden, Unauthorized
from logging_config import get_logger
from models import UserModel
from schemas import ADMIN_ROLES, Role

logger = get_logger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=config.BCRYPT_ROUNDS)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{config.API_PREFIX}/auth/login", auto_error=False)

TOKEN_COOKIE = "token"


# ----------------------------------------------------------------------------
# Passwords
# ----------------------------------------------------------------------------
async def hash_password(password: str) -> str:
    return await run_in_threadpool(pwd_context.hash, password)


async def verify_password(plain_password: str, password_hash: str) -> bool:
    return await run_in_threadpool(pwd_context.verify, plain_password, password_hash)


def generate_reset_token() -> Tuple[str, str]:
    """Return (plaintext, digest); only the digest is stored."""
    token = secrets.token_hex(20)
    return token, hash_reset_token(token)


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ----------------------------------------------------------------------------
# Tokens
# ----------------------------------------------------------------------------
def create_access_token(user: UserModel, expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    claims = {
        "sub": str(user.id),
        "role": Role(user.role).value,
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(claims, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_access_token(token: str) -> dict:
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
    except JWTError as exc:
        raise Unauthorized("Not authorized to access this route") from exc


def set_token_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        TOKEN_COOKIE,
        token,
        expires=datetime.now(timezone.utc) + timedelta(days=config.COOKIE_EXPIRE_DAYS),
        httponly=True,
        secure=config.IS_PRODUCTION,
        samesite="lax",
    )


def clear_token_cookie(response: Response) -> None:
    response.set_cookie(
        TOKEN_COOKIE,
        "none",
        expires=datetime.now(timezone.utc) + timedelta(seconds=10),
        httponly=True,
        secure=config.IS_PRODUCTION,
        samesite="lax",
    )


# ----------------------------------------------------------------------------
# Identity
# ----------------------------------------------------------------------------
def extract_token(bearer: Optional[str], cookie: Optional[str]) -> Optional[str]:
    # The header wins; the cookie only applies when no bearer token was sent
    if bearer:
        return bearer
    if cookie:
        return cookie
    return None


async def get_current_user(
    bearer: Optional[str] = Depends(oauth2_scheme),
    token_cookie: Optional[str] = Cookie(None, alias=TOKEN_COOKIE),
    db: AsyncSession = Depends(get_db),
) -> UserModel:
    token = extract_token(bearer, token_cookie)
    if not token:
        raise Unauthorized("Not authorized to access this route")

    payload = decode_access_token(token)
    user_id = payload.get("sub")
    try:
        user_id = int(user_id)
    except (TypeError, ValueError):
        raise Unauthorized("Not authorized to access this route")

    result = await db.execute(select(UserModel).where(UserModel.id == user_id))
    user = result.scalar_one_or_none()
    if user is None or not user.active:
        logger.debug("Token for user %s rejected: user missing or inactive", user_id)
        raise Unauthorized("Not authorized to access this route")
    return user


def require_roles(*roles: Role):
    allowed = {Role(r) for r in roles}

    async def _checker(current_user: UserModel = Depends(get_current_user)) -> UserModel:
        authorize(current_user, allowed)
        return current_user

    return _checker


require_admin = require_roles(*ADMIN_ROLES)


def authorize(user: UserModel, allowed_roles: Iterable[Role]) -> None:
    role = Role(user.role)
    if role not in set(allowed_roles):
        logger.info("Role %s denied for user %s", role.value, user.id)
        raise Forbidden(f"Role {role.value} is not allowed to access this route")


# ----------------------------------------------------------------------------
# Ownership policy
# ----------------------------------------------------------------------------
def is_admin(user: UserModel) -> bool:
    return Role(user.role) in ADMIN_ROLES


def is_owner_or_admin(user: UserModel, owner_id: Optional[int]) -> bool:
    return is_admin(user) or (owner_id is not None and owner_id == user.id)


def ensure_owner_or_admin(user: UserModel, owner_id: Optional[int], message: str) -> None:
    if not is_owner_or_admin(user, owner_id):
        logger.info("Ownership check failed for user %s (owner %s)", user.id, owner_id)
        raise Forbidden(message)
