from datetime import datetime, timedelta, timezone

from jose import jwt

from unconf.core.config import get_settings
from unconf.core.exceptions import ConfigurationError


def _signing_key() -> str:
    key = get_settings().jwt_secret_key
    if not key:
        raise ConfigurationError("jwt_secret_key must be configured")
    return key


def create_access_token(subject: str, expires_minutes: int | None = None, extra_claims: dict | None = None) -> str:
    """Issue a bearer token for ``subject`` (a user id).

    Token issuance belongs to the identity service; this helper exists so that
    service, scripts and tests mint tokens the API accepts.
    """
    settings = get_settings()
    lifetime = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    expire = datetime.now(timezone.utc) + timedelta(minutes=lifetime)
    claims = {"sub": subject, "exp": expire}
    if extra_claims:
        claims.update(extra_claims)
    return jwt.encode(claims, _signing_key(), algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict:
    settings = get_settings()
    return jwt.decode(token, _signing_key(), algorithms=[settings.jwt_algorithm])
