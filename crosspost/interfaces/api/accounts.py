from typing import Literal
from uuid import UUID

import httpx
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel
from redis import Redis
from sqlalchemy.orm import Session

from crosspost.application.services.connected_account_service import (
    disconnect_account,
    get_account,
    list_accounts,
    refresh_account_token,
    requires_reconnect,
    sync_account_profile,
)
from crosspost.domain.models.connected_account import ConnectedAccount
from crosspost.domain.platform import Platform
from crosspost.infrastructure.cache.redis_client import get_redis
from crosspost.infrastructure.db.session import get_db
from crosspost.interfaces.api.deps import get_current_user_id
from crosspost.interfaces.api.oauth import get_token_http_client

router = APIRouter(prefix="/accounts", tags=["accounts"])


class AccountActionRequest(BaseModel):
    action: Literal["refresh_token", "sync_profile"]


def _serialize_account(account: ConnectedAccount) -> dict:
    return {
        "id": str(account.id),
        "platform": account.platform,
        "platform_user_id": account.platform_user_id,
        "username": account.username,
        "display_name": account.display_name,
        "avatar_url": account.avatar_url,
        "profile_url": account.profile_url,
        "follower_count": account.follower_count,
        "following_count": account.following_count,
        "posts_count": account.posts_count,
        "status": account.status,
        "error_count": account.error_count,
        "error_message": account.error_message,
        "requires_reconnect": requires_reconnect(account),
        "scopes": list(account.scopes or []),
        "permissions": dict(account.permissions or {}),
        "token_expires_at": account.token_expires_at.isoformat() if account.token_expires_at else None,
        "last_sync_at": account.last_sync_at.isoformat() if account.last_sync_at else None,
        "last_error_at": account.last_error_at.isoformat() if account.last_error_at else None,
        "created_at": account.created_at.isoformat() if account.created_at else None,
    }


@router.get("")
def get_accounts(
    platform: Platform | None = Query(default=None),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> list[dict]:
    return [_serialize_account(account) for account in list_accounts(db, user_id=user_id, platform=platform)]


@router.get("/{account_id}")
def get_account_detail(
    account_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    return _serialize_account(get_account(db, user_id=user_id, account_id=account_id))


@router.patch("/{account_id}")
def run_account_action(
    account_id: UUID,
    payload: AccountActionRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    redis_client: Redis = Depends(get_redis),
    http_client: httpx.Client | None = Depends(get_token_http_client),
) -> dict:
    account = get_account(db, user_id=user_id, account_id=account_id)
    if payload.action == "refresh_token":
        account = refresh_account_token(db, account=account, redis_client=redis_client, http_client=http_client)
    else:
        account = sync_account_profile(db, account=account)
    return _serialize_account(account)


@router.delete("/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_account(
    account_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> None:
    disconnect_account(db, user_id=user_id, account_id=account_id)
