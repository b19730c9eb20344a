import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from .db import get_session
from .events import log_event
from .models import User

router = APIRouter()

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=True)
oauth2_optional = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

JWT_SECRET = os.environ.get("JWT_SECRET", "CHANGE_ME_SECRET").strip()
JWT_EXPIRES_MINUTES = int(os.environ.get("JWT_EXPIRES_MINUTES", "10080").strip() or 10080)

ROLES = ("customer", "admin")


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: dict


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class RegisterBody(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)
    name: str = Field(min_length=1)
    phone: Optional[str] = None


def hash_password(pw: str) -> str:
    return pwd_context.hash(pw)


def verify_password(pw: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(pw, hashed)
    except (ValueError, TypeError):
        return False


def issue_token(user: User) -> str:
    exp = datetime.now(timezone.utc) + timedelta(minutes=JWT_EXPIRES_MINUTES)
    payload = {"sub": str(user.id), "role": user.role, "exp": exp}
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def public_user(user: User) -> dict:
    return {"id": user.id, "email": user.email, "name": user.name, "phone": user.phone, "role": user.role}


def _token_subject(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except JWTError:
        return None
    return payload.get("sub") or None


async def get_current_user(token: str = Depends(oauth2_scheme), db: AsyncSession = Depends(get_session)) -> User:
    uid = _token_subject(token)
    user = await db.get(User, uid) if uid else None
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")
    return user


async def get_current_user_optional(token: str = Depends(oauth2_optional), db: AsyncSession = Depends(get_session)) -> Optional[User]:
    uid = _token_subject(token)
    user = await db.get(User, uid) if uid else None
    return user if user and user.is_active else None


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin required")
    return user


@router.post("/api/auth/login", response_model=TokenResponse)
async def login(body: LoginBody, db: AsyncSession = Depends(get_session)):
    email = body.email.lower().strip()
    user = await db.scalar(select(User).where(User.email == email))
    if not user or not user.is_active or not verify_password(body.password, user.password_hash):
        log_event("auth", "login_failed", logging.WARNING, email=email)
        raise HTTPException(status_code=401, detail="invalid credentials")
    user.last_login_at = datetime.now(timezone.utc)
    await db.commit()
    await db.refresh(user)
    return {"access_token": issue_token(user), "token_type": "bearer", "user": public_user(user)}


@router.post("/api/auth/register", response_model=TokenResponse, status_code=201)
async def register(body: RegisterBody, db: AsyncSession = Depends(get_session)):
    email = body.email.lower().strip()
    if await db.scalar(select(User.id).where(User.email == email)):
        raise HTTPException(status_code=409, detail="user already exists")

    # Self-registration always yields a customer; admins come from bootstrap or another admin
    user = User(
        email=email,
        name=body.name.strip(),
        phone=(body.phone or "").strip() or None,
        password_hash=hash_password(body.password),
        role="customer",
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=409, detail="user already exists")
    await db.refresh(user)
    log_event("auth", "registered", user_id=user.id)
    return {"access_token": issue_token(user), "token_type": "bearer", "user": public_user(user)}


@router.get("/api/auth/me")
async def me(user: User = Depends(get_current_user)):
    return public_user(user)
