from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import select
from passlib.context import CryptContext
from jose import JWTError, jwt
from pydantic import BaseModel
import logging

from . import config
from .models import User
from .db import async_session

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

# prefer a pure-Python, widely-available scheme for tests and portability;
# keep bcrypt as a fallback if available.
pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token", auto_error=False)


class TokenData(BaseModel):
    username: Optional[str] = None


async def get_user_by_username(username: str) -> Optional[User]:
    async with async_session() as sess:
        q = await sess.exec(select(User).where(User.username == username))
        return q.first()


async def create_user(username: str, password: str) -> User:
    async with async_session() as sess:
        user = User(username=username, password_hash=pwd_context.hash(password))
        sess.add(user)
        await sess.commit()
        await sess.refresh(user)
    logger.info("created user %s", username)
    return user


async def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


async def authenticate_user(username: str, password: str) -> Optional[User]:
    user = await get_user_by_username(username)
    if not user:
        return None
    if not await verify_password(password, user.password_hash):
        return None
    return user


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES)
    # RFC 7519 NumericDate
    to_encode.update({"exp": int(expire.timestamp())})
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=ALGORITHM)


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme)) -> Optional[User]:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if not token:
        return None
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[ALGORITHM])
        username: str = payload.get("sub")
        if username is None:
            raise credentials_exception
        token_data = TokenData(username=username)
    except JWTError:
        raise credentials_exception
    user = await get_user_by_username(token_data.username)
    if user is None:
        raise credentials_exception
    return user


async def require_login(user: Optional[User] = Depends(get_current_user)) -> User:
    """Dependency that enforces an authenticated user.

    Returns the User when present, otherwise raises 401 Unauthorized.
    """
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="authentication required")
    return user
