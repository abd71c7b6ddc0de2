"""
Хэширование паролей (bcrypt с предварительным SHA-256) и токены доступа.

Bcrypt обрезает вход на 72 байтах, поэтому пароль сначала хэшируется SHA-256.
"""

import base64
import hashlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
from jose import JWTError, jwt

from config.settings import get_settings
from .exceptions import AuthenticationError


def _prehash(password: str) -> bytes:
    """SHA-256 до bcrypt, чтобы длинные пароли не обрезались."""
    return base64.b64encode(hashlib.sha256(password.encode("utf-8")).digest())


def get_password_hash(password: str) -> str:
    """Возвращает bcrypt-хэш пароля."""
    hashed = bcrypt.hashpw(_prehash(password), bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Проверяет пароль по хэшу."""
    if not hashed_password:
        return False
    try:
        return bool(bcrypt.checkpw(_prehash(plain_password), hashed_password.encode("utf-8")))
    except (ValueError, TypeError):
        return False


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Создает подписанный токен доступа.

    Args:
        data: Утверждения токена (sub, role)
        expires_delta: Время жизни, по умолчанию из настроек

    Returns:
        str: Закодированный токен
    """
    settings = get_settings()
    to_encode = data.copy()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    to_encode["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str) -> Dict[str, Any]:
    """
    Проверяет и декодирует токен доступа.

    Raises:
        AuthenticationError: Если токен недействителен, истек или без sub
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"require_exp": True, "require_sub": True},
        )
    except JWTError as e:
        raise AuthenticationError(f"Invalid token: {e}") from e
    if "sub" not in payload:
        raise AuthenticationError("Token missing required claim: sub")
    return payload
