"""
Authentication endpoints: registration, login/logout, profile and password
management.

Register, login and the password flows answer with the signed token in the
body and also set it as an http-only `token` cookie.
"""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, Depends, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql import select

import config
from database import get_db
from errors import Conflict, NotFound, Unauthorized, ValidationError
from logging_config import get_logger
from models import UserModel
from query import serialize
from schemas import (
    ForgotPassword,
    PasswordReset,
    PasswordUpdate,
    Role,
    UserDetailsUpdate,
    UserLogin,
    UserRegister,
)
from security import (
    clear_token_cookie,
    create_access_token,
    generate_reset_token,
    get_current_user,
    hash_password,
    hash_reset_token,
    set_token_cookie,
    verify_password,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])


# ----------------------------------------------------------------------------
# Reset token delivery
# ----------------------------------------------------------------------------
async def log_reset_token_sender(user: UserModel, token: str, reset_url: str) -> None:
    logger.warning("Password reset requested for user %s but no delivery transport is configured", user.id)


def get_reset_token_sender():
    """Override this dependency to deliver reset links out of band (mail, SMS...)."""
    return log_reset_token_sender


def _token_response(user: UserModel, response: Response) -> dict:
    token = create_access_token(user)
    set_token_cookie(response, token)
    return {"success": True, "token": token, "data": serialize(user)}


async def _find_by_email(db: AsyncSession, email: str):
    result = await db.execute(select(UserModel).where(UserModel.email == email.lower()))
    return result.scalar_one_or_none()


# ----------------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------------
@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(payload: UserRegister, response: Response, db: AsyncSession = Depends(get_db)):
    if await _find_by_email(db, payload.email):
        raise Conflict("This email is already in use")

    user = UserModel(
        name=payload.name,
        surname=payload.surname,
        email=payload.email.lower(),
        phone=payload.phone,
        address=payload.address,
        role=Role.MEMBER,
        password_hash=await hash_password(payload.password),
    )
    db.add(user)
    await db.commit()
    await db.refresh(user)
    logger.info("Registered user %s", user.id)
    return _token_response(user, response)


@router.post("/login")
async def login(payload: UserLogin, response: Response, db: AsyncSession = Depends(get_db)):
    user = await _find_by_email(db, payload.email)
    if not user or not await verify_password(payload.password, user.password_hash):
        raise Unauthorized("Invalid credentials")
    if not user.active:
        raise Unauthorized("Account disabled")
    logger.info("User %s logged in", user.id)
    return _token_response(user, response)


@router.get("/logout")
async def logout(response: Response, current_user: UserModel = Depends(get_current_user)):
    clear_token_cookie(response)
    return {"success": True, "data": {}}


@router.get("/me")
async def me(current_user: UserModel = Depends(get_current_user)):
    return {"success": True, "data": serialize(current_user)}


@router.put("/updatedetails")
async def update_details(
    payload: UserDetailsUpdate,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    for key, value in payload.model_dump().items():
        setattr(current_user, key, value)
    await db.commit()
    await db.refresh(current_user)
    return {"success": True, "data": serialize(current_user)}


@router.put("/updatepassword")
async def update_password(
    payload: PasswordUpdate,
    response: Response,
    current_user: UserModel = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not await verify_password(payload.current_password, current_user.password_hash):
        raise Unauthorized("Current password is incorrect")
    current_user.password_hash = await hash_password(payload.new_password)
    await db.commit()
    await db.refresh(current_user)
    return _token_response(current_user, response)


@router.post("/forgotpassword")
async def forgot_password(
    payload: ForgotPassword,
    request: Request,
    db: AsyncSession = Depends(get_db),
    send_reset_token=Depends(get_reset_token_sender),
):
    user = await _find_by_email(db, payload.email)
    if not user:
        raise NotFound("There is no user with that email")

    token, digest = generate_reset_token()
    user.reset_password_token = digest
    user.reset_password_expire = datetime.now(timezone.utc) + timedelta(minutes=config.RESET_TOKEN_EXPIRE_MINUTES)
    await db.commit()

    reset_url = str(request.url_for("reset_password", token=token))
    await send_reset_token(user, token, reset_url)

    data = {"message": "Password reset instructions issued"}
    if config.RESET_TOKEN_IN_RESPONSE:
        data.update(reset_token=token, reset_url=reset_url)
    return {"success": True, "data": data}


@router.put("/resetpassword/{token}")
async def reset_password(
    token: str,
    payload: PasswordReset,
    response: Response,
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(UserModel).where(
            UserModel.reset_password_token == hash_reset_token(token),
            UserModel.reset_password_expire > datetime.now(timezone.utc),
        )
    )
    user = result.scalar_one_or_none()
    if not user:
        raise ValidationError("Invalid token")

    user.password_hash = await hash_password(payload.password)
    user.reset_password_token = None
    user.reset_password_expire = None
    await db.commit()
    await db.refresh(user)
    logger.info("Password reset completed for user %s", user.id)
    return _token_response(user, response)
