from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Tuple

import jwt
from passlib.context import CryptContext

from devicehub.core.config import settings

password_context = CryptContext(schemes=['bcrypt'], deprecated='auto')

ACCESS_TOKEN_TYPE = 'access'


def _legacy_digest(password: str) -> str:
    return hashlib.sha256(password.encode('utf-8')).hexdigest()


def is_legacy_hash(hashed_password: str) -> bool:
    return not hashed_password.startswith('$2')


def verify_password(plain_password: str, hashed_password: str) -> bool:
    if is_legacy_hash(hashed_password):
        return hmac.compare_digest(_legacy_digest(plain_password), hashed_password)
    return password_context.verify(plain_password, hashed_password)


def hash_password(password: str) -> str:
    return password_context.hash(password)


def _create_token(data: Dict[str, Any], expires_delta: timedelta) -> Tuple[str, datetime]:
    to_encode = data.copy()
    issued = datetime.now(timezone.utc)
    expire = issued + expires_delta
    to_encode.update({'iat': issued, 'exp': expire})
    token = jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    return token, expire


def create_access_token(subject: str, claims: Dict[str, Any]) -> Tuple[str, datetime]:
    payload = {'sub': subject, **claims, 'type': ACCESS_TOKEN_TYPE}
    expires = timedelta(minutes=settings.access_token_expire_minutes)
    return _create_token(payload, expires)


def decode_token(token: str) -> Dict[str, Any]:
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        options={'require': ['exp', 'iat', 'sub']},
    )


def generate_refresh_token() -> str:
    return secrets.token_hex(64)


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()
