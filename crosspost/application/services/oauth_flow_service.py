import logging
import re
from dataclasses import dataclass
from uuid import UUID

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crosspost.application.services.connected_account_service import upsert_connected_account
from crosspost.core.config import settings
from crosspost.core.errors import (
    PersistenceError,
    PlatformClientError,
    PlatformNotConfiguredError,
    ProfileFetchError,
    StateError,
    TokenExchangeError,
    ValidationError,
)
from crosspost.domain.platform import Platform, parse_platform
from crosspost.infrastructure.observability.metrics import OAUTH_CALLBACKS_TOTAL
from crosspost.integrations.oauth_state import (
    build_authorization_url,
    build_composite_state,
    generate_state,
    parse_composite_state,
    validate_state,
)
from crosspost.integrations.platform_clients import fetch_profile, get_platform_client
from crosspost.integrations.platform_registry import get_platform_credentials, get_platform_spec
from crosspost.integrations.token_client import exchange_code_for_token

logger = logging.getLogger(__name__)

MAX_REDIRECT_MESSAGE_LENGTH = 200
_ERROR_CODE_PATTERN = re.compile(r"[^a-z0-9_]+")


@dataclass(frozen=True)
class AuthorizationRequest:
    platform: Platform
    authorization_url: str
    expires_at: str


class CallbackFailure(Exception):
    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


def _is_allowed_redirect(redirect_uri: str) -> bool:
    url = httpx.URL(redirect_uri)
    if url.scheme not in {"http", "https"} or not url.host:
        return False
    origin = f"{url.scheme}://{url.netloc.decode('ascii')}"
    return origin in settings.cors_allowed_origins


def sanitize_message(message: str | None) -> str:
    text = " ".join(str(message or "").split())
    return text[:MAX_REDIRECT_MESSAGE_LENGTH]


def _sanitize_error_code(code: str | None) -> str:
    cleaned = _ERROR_CODE_PATTERN.sub("_", str(code or "").strip().lower()).strip("_")
    return cleaned[:64] or "oauth_failed"


def _with_params(url: str, params: dict[str, str]) -> str:
    return str(httpx.URL(url).copy_merge_params(params))


def error_redirect(error_code: str, message: str) -> str:
    return _with_params(
        settings.dashboard_accounts_url,
        {"error": error_code, "message": sanitize_message(message)},
    )


def start_connection(
    db: Session,
    *,
    user_id: UUID,
    platform: Platform,
    redirect_uri: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuthorizationRequest:
    spec = get_platform_spec(platform)
    credentials = get_platform_credentials(platform)
    if credentials is None:
        raise PlatformNotConfiguredError(f"{spec.display_name} OAuth is not configured")

    redirect_uri = redirect_uri or settings.dashboard_accounts_url
    if not _is_allowed_redirect(redirect_uri):
        raise ValidationError("redirect_uri must point to an allowed frontend origin", error_code="invalid_redirect_uri")

    generated = generate_state(
        db,
        user_id=user_id,
        platform=platform.value,
        redirect_uri=redirect_uri,
        scopes=credentials.scopes,
        use_pkce=spec.oauth.use_pkce,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Unable to initialize OAuth state") from exc

    authorization_url = build_authorization_url(
        spec,
        client_id=credentials.client_id,
        callback_url=settings.oauth_callback_url,
        scopes=credentials.scopes,
        state=build_composite_state(generated.state_token, platform.value, redirect_uri),
        code_challenge=generated.code_challenge,
    )
    logger.info("oauth_connection_started platform=%s user_id=%s", platform.value, user_id)
    return AuthorizationRequest(
        platform=platform,
        authorization_url=authorization_url,
        expires_at=generated.expires_at.isoformat(),
    )


def _complete_callback(
    db: Session,
    *,
    code: str | None,
    state: str | None,
    http_client: httpx.Client | None,
) -> str:
    if not code or not state:
        raise CallbackFailure("missing_params", "Missing authorization code or state")

    composite = parse_composite_state(state)
    platform = parse_platform(composite.platform) if composite else None
    if composite is None or platform is None:
        raise StateError("Invalid state parameter")

    oauth_state = validate_state(db, composite.state_token, platform.value)
    if oauth_state is None:
        raise StateError("Invalid or expired OAuth state. Please try connecting again.")
    if composite.redirect_uri and composite.redirect_uri != oauth_state.redirect_uri:
        logger.warning("oauth_callback_redirect_mismatch platform=%s", platform.value)

    display_name = get_platform_spec(platform).display_name
    try:
        tokens = exchange_code_for_token(
            platform,
            code,
            settings.oauth_callback_url,
            oauth_state.code_verifier,
            http_client=http_client,
        )
    except TokenExchangeError as exc:
        logger.warning("oauth_callback_token_exchange_failed platform=%s error=%s", platform.value, exc.message)
        raise CallbackFailure("token_exchange_failed", f"Could not connect {display_name}. Please try again.") from exc

    try:
        profile = fetch_profile(get_platform_client(platform, access_token=tokens.access_token))
    except (ProfileFetchError, PlatformClientError) as exc:
        logger.warning("oauth_callback_profile_fetch_failed platform=%s error=%s", platform.value, exc.message)
        raise CallbackFailure("profile_fetch_failed", f"Could not load your {display_name} profile") from exc

    try:
        account, created = upsert_connected_account(
            db,
            user_id=oauth_state.user_id,
            platform=platform,
            profile=profile,
            tokens=tokens,
            scopes=tokens.scopes or list(oauth_state.scopes or []),
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("oauth_callback_persist_failed platform=%s", platform.value)
        raise CallbackFailure("oauth_failed", f"Could not save your {display_name} account") from exc

    logger.info(
        "oauth_callback_completed platform=%s account_id=%s created=%s",
        platform.value,
        account.id,
        created,
    )
    return _with_params(
        oauth_state.redirect_uri,
        {"connected": platform.value, "message": f"{display_name} account connected successfully!"},
    )


def handle_oauth_callback(
    db: Session,
    *,
    code: str | None,
    state: str | None,
    error: str | None = None,
    error_description: str | None = None,
    http_client: httpx.Client | None = None,
) -> str:
    """Return the URL the browser is redirected to. Never raises."""
    if error:
        error_code = _sanitize_error_code(error)
        logger.warning("oauth_callback_provider_error error=%s description=%s", error, error_description)
        OAUTH_CALLBACKS_TOTAL.labels(outcome="provider_error").inc()
        return error_redirect(error_code, error_description or "Authorization was not granted")

    try:
        redirect_url = _complete_callback(db, code=code, state=state, http_client=http_client)
    except (CallbackFailure, StateError) as failure:
        OAUTH_CALLBACKS_TOTAL.labels(outcome=failure.error_code).inc()
        return error_redirect(failure.error_code, failure.message)
    except Exception:
        db.rollback()
        logger.exception("oauth_callback_unexpected_error")
        OAUTH_CALLBACKS_TOTAL.labels(outcome="oauth_failed").inc()
        return error_redirect("oauth_failed", "Something went wrong while connecting your account")
    OAUTH_CALLBACKS_TOTAL.labels(outcome="connected").inc()
    return redirect_url
