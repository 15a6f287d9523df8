"""OAuth state rows: issue, consume exactly once, and expire.

The outward ``state`` query parameter is ``<token>:<platform>:<redirect>``;
only the token is secret and it is looked up in ``oauth_states``.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from urllib.parse import quote, unquote
from uuid import UUID

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crosspost.core.errors import PersistenceError
from crosspost.domain.models.oauth_state import OAuthState, OAuthStateStatus
from crosspost.integrations.platform_registry import PlatformSpec

logger = logging.getLogger(__name__)

STATE_TTL_SECONDS = 600


@dataclass(frozen=True)
class GeneratedState:
    state_token: str
    code_verifier: str | None
    code_challenge: str | None
    expires_at: datetime


@dataclass(frozen=True)
class CompositeState:
    state_token: str
    platform: str
    redirect_uri: str


def _urlsafe_b64encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def build_code_challenge(code_verifier: str) -> str:
    return _urlsafe_b64encode(hashlib.sha256(code_verifier.encode("utf-8")).digest())


def generate_state(
    db: Session,
    *,
    user_id: UUID,
    platform: str,
    redirect_uri: str,
    scopes: list[str],
    use_pkce: bool = True,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> GeneratedState:
    now = datetime.now(UTC)
    state_token = secrets.token_urlsafe(32)
    code_verifier = secrets.token_urlsafe(48) if use_pkce else None
    code_challenge = build_code_challenge(code_verifier) if code_verifier else None
    expires_at = now + timedelta(seconds=STATE_TTL_SECONDS)

    db.add(
        OAuthState(
            state_token=state_token,
            user_id=user_id,
            platform=platform,
            code_verifier=code_verifier,
            code_challenge=code_challenge,
            redirect_uri=redirect_uri,
            scopes=list(scopes),
            status=OAuthStateStatus.PENDING.value,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512] or None,
            expires_at=expires_at,
        )
    )
    try:
        db.flush()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Unable to initialize OAuth state") from exc

    logger.info("oauth_state_generated platform=%s user_id=%s", platform, user_id)
    return GeneratedState(
        state_token=state_token,
        code_verifier=code_verifier,
        code_challenge=code_challenge,
        expires_at=expires_at,
    )


def validate_state(db: Session, state_token: str, platform: str) -> OAuthState | None:
    """Consume a pending, unexpired state for ``platform``.

    The pending -> completed transition is a single conditional UPDATE, so of
    two concurrent callbacks carrying the same token at most one gets a row
    back. The transition is committed before returning; a failure later in
    the callback still leaves the state consumed.
    """
    if not state_token or not platform:
        return None
    now = datetime.now(UTC)
    try:
        result = db.execute(
            update(OAuthState)
            .where(
                OAuthState.state_token == state_token,
                OAuthState.platform == platform,
                OAuthState.status == OAuthStateStatus.PENDING.value,
                OAuthState.expires_at >= now,
            )
            .values(status=OAuthStateStatus.COMPLETED.value, completed_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            db.rollback()
            logger.info("oauth_state_rejected platform=%s", platform)
            return None
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Unable to validate OAuth state") from exc

    return db.execute(select(OAuthState).where(OAuthState.state_token == state_token)).scalar_one()


def cleanup_expired_states(db: Session) -> int:
    now = datetime.now(UTC)
    result = db.execute(
        delete(OAuthState).where(OAuthState.expires_at < now).execution_options(synchronize_session=False)
    )
    db.commit()
    removed = int(result.rowcount or 0)
    if removed:
        logger.info("oauth_states_cleaned removed=%s", removed)
    return removed


def build_composite_state(state_token: str, platform: str, redirect_uri: str) -> str:
    return f"{state_token}:{platform}:{quote(redirect_uri, safe='')}"


def parse_composite_state(raw: str | None) -> CompositeState | None:
    parts = (raw or "").split(":", 2)
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    redirect_uri = unquote(parts[2]) if len(parts) == 3 else ""
    return CompositeState(state_token=parts[0], platform=parts[1], redirect_uri=redirect_uri)


def build_authorization_url(
    spec: PlatformSpec,
    *,
    client_id: str,
    callback_url: str,
    scopes: list[str],
    state: str,
    code_challenge: str | None = None,
) -> str:
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": callback_url,
        "scope": " ".join(scopes),
        "state": state,
    }
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    return str(httpx.URL(spec.oauth.authorize_url, params=params))
