import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import httpx

from crosspost.core.config import settings
from crosspost.core.errors import TokenExchangeError
from crosspost.domain.platform import Platform
from crosspost.integrations.platform_registry import (
    PlatformCredentials,
    get_platform_credentials,
    get_platform_spec,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scopes: list[str] = field(default_factory=list)


def _require_credentials(platform: Platform) -> PlatformCredentials:
    credentials = get_platform_credentials(platform)
    if credentials is None:
        raise TokenExchangeError(
            f"{get_platform_spec(platform).display_name} OAuth is not configured",
            error_code="platform_not_configured",
        )
    return credentials


def _split_scopes(raw) -> list[str]:
    if isinstance(raw, list):
        return [str(value) for value in raw if value]
    if isinstance(raw, str):
        return [value for value in raw.replace(",", " ").split() if value]
    return []


def _expires_at(raw, *, now: datetime) -> datetime | None:
    if raw in (None, ""):
        return None
    try:
        seconds = int(raw)
    except (TypeError, ValueError):
        return None
    return now + timedelta(seconds=max(1, seconds))


def _post_token_request(
    platform: Platform,
    data: dict,
    *,
    http_client: httpx.Client | None = None,
) -> dict:
    spec = get_platform_spec(platform)
    grant_type = data.get("grant_type")
    headers = {"Accept": "application/json", "Content-Type": "application/x-www-form-urlencoded"}
    try:
        if http_client is None:
            with httpx.Client(timeout=settings.oauth_http_timeout_seconds) as client:
                response = client.post(spec.oauth.token_url, data=data, headers=headers)
        else:
            response = http_client.post(spec.oauth.token_url, data=data, headers=headers)
    except httpx.HTTPError as exc:
        logger.warning("oauth_token_request_error platform=%s grant_type=%s error=%s", platform.value, grant_type, exc)
        raise TokenExchangeError(f"{spec.display_name} token endpoint unreachable") from exc

    if response.status_code >= 400:
        logger.warning(
            "oauth_token_request_rejected platform=%s grant_type=%s status=%s body=%s",
            platform.value,
            grant_type,
            response.status_code,
            response.text[:500],
        )
        raise TokenExchangeError(f"{spec.display_name} token request failed: {response.status_code}")

    try:
        payload = response.json()
    except ValueError as exc:
        raise TokenExchangeError(f"{spec.display_name} token response is not JSON") from exc
    if not isinstance(payload, dict):
        raise TokenExchangeError(f"{spec.display_name} token response is malformed")

    # Some providers answer 200 with an error body.
    if payload.get("error"):
        logger.warning(
            "oauth_token_request_rejected platform=%s grant_type=%s error=%s description=%s",
            platform.value,
            grant_type,
            payload.get("error"),
            payload.get("error_description"),
        )
        raise TokenExchangeError(f"{spec.display_name} token request rejected: {payload.get('error')}")
    return payload


def _to_token_response(payload: dict, *, fallback_refresh_token: str | None = None) -> TokenResponse:
    access_token = str(payload.get("access_token") or "")
    if not access_token:
        raise TokenExchangeError("Token response did not include an access token")
    return TokenResponse(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or fallback_refresh_token,
        expires_at=_expires_at(payload.get("expires_in"), now=datetime.now(UTC)),
        token_type=str(payload.get("token_type") or "Bearer"),
        scopes=_split_scopes(payload.get("scope")),
    )


def exchange_code_for_token(
    platform: Platform,
    code: str,
    redirect_uri: str,
    code_verifier: str | None = None,
    *,
    http_client: httpx.Client | None = None,
) -> TokenResponse:
    credentials = _require_credentials(platform)
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": redirect_uri,
        "client_id": credentials.client_id,
        "client_secret": credentials.client_secret,
    }
    if code_verifier:
        data["code_verifier"] = code_verifier
    payload = _post_token_request(platform, data, http_client=http_client)
    logger.info("oauth_code_exchanged platform=%s", platform.value)
    return _to_token_response(payload)


def refresh_access_token(
    platform: Platform,
    refresh_token: str,
    *,
    http_client: httpx.Client | None = None,
) -> TokenResponse:
    """Providers that do not rotate refresh tokens get the previous one back."""
    credentials = _require_credentials(platform)
    data = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": credentials.client_id,
        "client_secret": credentials.client_secret,
    }
    payload = _post_token_request(platform, data, http_client=http_client)
    logger.info("oauth_token_refreshed platform=%s", platform.value)
    return _to_token_response(payload, fallback_refresh_token=refresh_token)
