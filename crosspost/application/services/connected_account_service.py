import logging
from datetime import UTC, datetime
from uuid import UUID

import httpx
from redis import Redis
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from crosspost.core.config import settings
from crosspost.core.errors import (
    NotFoundError,
    PersistenceError,
    PlatformClientError,
    ProfileFetchError,
    ReconnectRequiredError,
    RefreshInProgressError,
    TokenExchangeError,
)
from crosspost.core.security import decrypt_secret, encrypt_secret
from crosspost.domain.models.connected_account import AccountStatus, ConnectedAccount
from crosspost.domain.models.queue_entry import QueueEntry, QueueEntryStatus
from crosspost.domain.platform import Platform
from crosspost.infrastructure.cache.locks import account_refresh_lock_key, acquire_lock, release_lock
from crosspost.infrastructure.observability.metrics import TOKEN_REFRESH_FAILURES_TOTAL
from crosspost.integrations.platform_clients import PlatformProfile, fetch_profile, get_platform_client
from crosspost.integrations.token_client import TokenResponse, refresh_access_token

logger = logging.getLogger(__name__)

UNREADABLE_REFRESH_TOKEN_MESSAGE = "Stored refresh token is unreadable; reconnect the account"


def _commit(db: Session, *, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Unable to {action}") from exc


def _apply_profile(account: ConnectedAccount, profile: PlatformProfile) -> None:
    account.username = profile.username
    account.display_name = profile.display_name
    account.avatar_url = profile.avatar_url
    account.profile_url = profile.profile_url
    account.follower_count = int(profile.follower_count or 0)
    account.following_count = int(profile.following_count or 0)
    account.posts_count = int(profile.posts_count or 0)
    account.platform_data = dict(profile.platform_data or {})


def _clear_errors(account: ConnectedAccount, *, now: datetime) -> None:
    account.status = AccountStatus.CONNECTED.value
    account.error_count = 0
    account.error_message = None
    account.last_sync_at = now


def _record_account_error(account: ConnectedAccount, message: str, *, now: datetime) -> None:
    account.status = AccountStatus.ERROR.value
    account.error_count = int(account.error_count or 0) + 1
    account.error_message = message[:1000]
    account.last_error_at = now


def requires_reconnect(account: ConnectedAccount) -> bool:
    return int(account.error_count or 0) >= settings.account_error_threshold


def upsert_connected_account(
    db: Session,
    *,
    user_id: UUID,
    platform: Platform,
    profile: PlatformProfile,
    tokens: TokenResponse,
    scopes: list[str] | None = None,
    permissions: dict | None = None,
) -> tuple[ConnectedAccount, bool]:
    """Insert or update the account keyed by (user, platform, external id).

    A successful connection resets the error bookkeeping. Returns the row and
    whether it was created. The caller commits.
    """
    now = datetime.now(UTC)
    query = select(ConnectedAccount).where(
        ConnectedAccount.user_id == user_id,
        ConnectedAccount.platform == platform.value,
        ConnectedAccount.platform_user_id == profile.platform_user_id,
    )
    account = db.execute(query).scalar_one_or_none()
    created = account is None

    if account is None:
        account = ConnectedAccount(
            user_id=user_id,
            platform=platform.value,
            platform_user_id=profile.platform_user_id,
            access_token=encrypt_secret(tokens.access_token),
            refresh_token=encrypt_secret(tokens.refresh_token) if tokens.refresh_token else None,
        )
        db.add(account)
        try:
            db.flush()
        except IntegrityError:
            # A concurrent callback inserted the same identity first.
            db.rollback()
            account = db.execute(query).scalar_one()
            created = False
    if not created:
        account.access_token = encrypt_secret(tokens.access_token)
        if tokens.refresh_token:
            account.refresh_token = encrypt_secret(tokens.refresh_token)

    account.token_type = tokens.token_type or "Bearer"
    account.token_expires_at = tokens.expires_at
    account.scopes = list(scopes if scopes is not None else tokens.scopes)
    account.permissions = dict(permissions or account.permissions or {})
    _apply_profile(account, profile)
    _clear_errors(account, now=now)
    db.add(account)
    logger.info(
        "connected_account_upserted platform=%s user_id=%s created=%s",
        platform.value,
        user_id,
        created,
    )
    return account, created


def list_accounts(db: Session, *, user_id: UUID, platform: Platform | None = None) -> list[ConnectedAccount]:
    query = select(ConnectedAccount).where(ConnectedAccount.user_id == user_id)
    if platform is not None:
        query = query.where(ConnectedAccount.platform == platform.value)
    return list(db.execute(query.order_by(ConnectedAccount.created_at.asc())).scalars().all())


def get_account(db: Session, *, user_id: UUID, account_id: UUID) -> ConnectedAccount:
    account = db.execute(
        select(ConnectedAccount).where(ConnectedAccount.id == account_id, ConnectedAccount.user_id == user_id)
    ).scalar_one_or_none()
    if account is None:
        raise NotFoundError("Account not found")
    return account


def get_account_for_dispatch(db: Session, *, user_id: UUID, platform: Platform) -> ConnectedAccount | None:
    return db.execute(
        select(ConnectedAccount)
        .where(ConnectedAccount.user_id == user_id, ConnectedAccount.platform == platform.value)
        .order_by(ConnectedAccount.created_at.asc())
    ).scalars().first()


def refresh_account_token(
    db: Session,
    *,
    account: ConnectedAccount,
    redis_client: Redis,
    http_client: httpx.Client | None = None,
) -> ConnectedAccount:
    """Exchange the stored refresh token for new tokens.

    Serialized per account by a Redis lock. On provider failure the stored
    tokens are left as they were and the error is recorded on the account.
    """
    if requires_reconnect(account):
        raise ReconnectRequiredError("Account must be reconnected")
    if not account.refresh_token:
        raise TokenExchangeError("No refresh token available for this account", error_code="no_refresh_token")

    lock_key = account_refresh_lock_key(account.id)
    token = acquire_lock(redis_client, key=lock_key, ttl_seconds=settings.account_refresh_lock_ttl_seconds)
    if token is None:
        raise RefreshInProgressError("A token refresh for this account is already running")

    try:
        # Re-read under the lock; a previous holder may have rotated the tokens.
        db.refresh(account)
        platform = Platform(account.platform)
        now = datetime.now(UTC)
        try:
            refresh_token = decrypt_secret(account.refresh_token)
        except ValueError as exc:
            _record_account_error(account, UNREADABLE_REFRESH_TOKEN_MESSAGE, now=now)
            db.add(account)
            _commit(db, action="record token refresh failure")
            TOKEN_REFRESH_FAILURES_TOTAL.labels(platform=platform.value).inc()
            logger.warning("account_refresh_token_unreadable account_id=%s platform=%s", account.id, platform.value)
            raise TokenExchangeError(
                UNREADABLE_REFRESH_TOKEN_MESSAGE, error_code="refresh_token_unreadable"
            ) from exc

        try:
            tokens = refresh_access_token(platform, refresh_token, http_client=http_client)
        except TokenExchangeError as exc:
            _record_account_error(account, exc.message, now=now)
            db.add(account)
            _commit(db, action="record token refresh failure")
            TOKEN_REFRESH_FAILURES_TOTAL.labels(platform=platform.value).inc()
            logger.warning(
                "account_token_refresh_failed account_id=%s platform=%s error_count=%s",
                account.id,
                platform.value,
                account.error_count,
            )
            raise

        account.access_token = encrypt_secret(tokens.access_token)
        if tokens.refresh_token:
            account.refresh_token = encrypt_secret(tokens.refresh_token)
        account.token_expires_at = tokens.expires_at
        if tokens.scopes:
            account.scopes = tokens.scopes
        _clear_errors(account, now=now)
        db.add(account)
        _commit(db, action="store refreshed tokens")
        logger.info("account_token_refreshed account_id=%s platform=%s", account.id, platform.value)
        return account
    finally:
        release_lock(redis_client, key=lock_key, token=token)


def sync_account_profile(db: Session, *, account: ConnectedAccount) -> ConnectedAccount:
    if requires_reconnect(account):
        raise ReconnectRequiredError("Account must be reconnected")

    platform = Platform(account.platform)
    now = datetime.now(UTC)
    try:
        client = get_platform_client(
            platform,
            access_token=decrypt_secret(account.access_token),
            platform_user_id=account.platform_user_id,
        )
        profile = fetch_profile(client)
    except (ProfileFetchError, PlatformClientError, ValueError) as exc:
        message = str(exc) if isinstance(exc, ValueError) else exc.message
        _record_account_error(account, message, now=now)
        db.add(account)
        _commit(db, action="record profile sync failure")
        logger.warning("account_profile_sync_failed account_id=%s platform=%s", account.id, platform.value)
        if isinstance(exc, ProfileFetchError):
            raise
        raise ProfileFetchError(message) from exc

    _apply_profile(account, profile)
    _clear_errors(account, now=now)
    db.add(account)
    _commit(db, action="store synced profile")
    logger.info("account_profile_synced account_id=%s platform=%s", account.id, platform.value)
    return account


def disconnect_account(db: Session, *, user_id: UUID, account_id: UUID) -> None:
    account = get_account(db, user_id=user_id, account_id=account_id)
    remaining = db.execute(
        select(func.count(ConnectedAccount.id)).where(
            ConnectedAccount.user_id == user_id,
            ConnectedAccount.platform == account.platform,
            ConnectedAccount.id != account.id,
        )
    ).scalar_one()
    orphaned = 0
    if not remaining:
        orphaned = db.execute(
            select(func.count(QueueEntry.id)).where(
                QueueEntry.user_id == user_id,
                QueueEntry.platform == account.platform,
                QueueEntry.status == QueueEntryStatus.PENDING.value,
            )
        ).scalar_one()
    db.delete(account)
    _commit(db, action="disconnect account")
    logger.info(
        "connected_account_disconnected account_id=%s platform=%s orphaned_entries=%s",
        account_id,
        account.platform,
        orphaned,
    )
