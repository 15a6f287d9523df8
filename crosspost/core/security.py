import base64
import hashlib
from datetime import UTC, datetime, timedelta
from uuid import UUID, uuid4

import jwt
from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from crosspost.core.config import settings
from crosspost.core.errors import AuthError

ACCESS_TOKEN_TYPE = "access"


def _derive_key(secret: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())


def _get_fernet() -> MultiFernet:
    """Fernet keys for stored OAuth tokens.

    ``TOKEN_ENCRYPTION_KEY`` may hold several comma-separated secrets; the
    first encrypts and every one of them decrypts, so keys can be rotated
    without reconnecting accounts.
    """
    secrets = [value.strip() for value in (settings.token_encryption_key or "").split(",") if value.strip()]
    if not secrets:
        secrets = [settings.jwt_secret_key]
    return MultiFernet([Fernet(_derive_key(secret)) for secret in secrets])


def create_access_token(user_id: UUID, expires_minutes: int | None = None) -> str:
    expire = datetime.now(UTC) + timedelta(
        minutes=expires_minutes if expires_minutes is not None else settings.jwt_access_token_expire_minutes
    )
    payload = {
        "sub": str(user_id),
        "exp": expire,
        "type": ACCESS_TOKEN_TYPE,
        "jti": str(uuid4()),
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> UUID:
    """Return the user id carried by a bearer token or raise AuthError."""
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid token") from exc
    if claims.get("type") != ACCESS_TOKEN_TYPE:
        raise AuthError("Invalid token type")
    try:
        return UUID(claims["sub"])
    except (KeyError, ValueError) as exc:
        raise AuthError("Invalid token payload") from exc


def encrypt_secret(secret: str) -> str:
    if not secret:
        return ""
    return _get_fernet().encrypt(secret.encode("utf-8")).decode("utf-8")


def decrypt_secret(encrypted_secret: str) -> str:
    if not encrypted_secret:
        return ""
    try:
        return _get_fernet().decrypt(encrypted_secret.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Invalid encrypted secret") from exc
