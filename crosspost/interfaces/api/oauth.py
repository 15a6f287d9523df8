import logging
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from crosspost.application.services.oauth_flow_service import handle_oauth_callback, start_connection
from crosspost.domain.platform import Platform
from crosspost.infrastructure.db.session import get_db
from crosspost.interfaces.api.deps import get_current_user_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/oauth", tags=["oauth"])


def get_token_http_client() -> httpx.Client | None:
    """Token endpoint client; None lets the token client open its own."""
    return None


@router.get("/callback", include_in_schema=False)
def oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    error_description: str | None = Query(default=None),
    db: Session = Depends(get_db),
    http_client: httpx.Client | None = Depends(get_token_http_client),
) -> RedirectResponse:
    redirect_url = handle_oauth_callback(
        db,
        code=code,
        state=state,
        error=error,
        error_description=error_description,
        http_client=http_client,
    )
    return RedirectResponse(url=redirect_url, status_code=status.HTTP_302_FOUND)


@router.get("/{platform}/start")
def start_oauth(
    platform: Platform,
    request: Request,
    redirect_uri: str | None = Query(default=None),
    redirect: bool = Query(default=True),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
):
    authorization = start_connection(
        db,
        user_id=user_id,
        platform=platform,
        redirect_uri=redirect_uri,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    if redirect:
        return RedirectResponse(url=authorization.authorization_url, status_code=status.HTTP_302_FOUND)
    return {
        "platform": authorization.platform.value,
        "authorization_url": authorization.authorization_url,
        "expires_at": authorization.expires_at,
    }
