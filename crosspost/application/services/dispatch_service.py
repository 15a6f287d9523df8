"""Publish dispatcher: claim due queue entries and publish them per platform.

A tick claims due entries by bumping their version and taking a lease,
publishes each claimed entry concurrently under a semaphore, and then
re-aggregates every touched post once. An entry whose platform call
outlived its lease is failed as "outcome unknown" instead of being
published a second time.
"""

import asyncio
import logging
import os
import socket
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from time import perf_counter
from uuid import UUID, uuid4

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from crosspost.application.services.connected_account_service import get_account_for_dispatch
from crosspost.application.services.scheduling_service import (
    aggregate_post_status,
    compose_publish_text,
    queue_post_now,
)
from crosspost.core.config import settings
from crosspost.core.errors import CrosspostError, PlatformClientError, ValidationError
from crosspost.core.security import decrypt_secret
from crosspost.domain.models.connected_account import AccountStatus
from crosspost.domain.models.post import Post
from crosspost.domain.models.queue_entry import QueueEntry, QueueEntryStatus
from crosspost.domain.platform import Platform, parse_platform
from crosspost.infrastructure.db.session import SessionLocal
from crosspost.infrastructure.logging.context import reset_claim_token, set_claim_token
from crosspost.infrastructure.observability.metrics import (
    PUBLISH_ATTEMPTS_TOTAL,
    PUBLISH_FAILURES_TOTAL,
    SCHEDULED_JOBS_CHECKED_TOTAL,
    increment_background_counter,
)
from crosspost.integrations.platform_clients import PublishResult, get_platform_client, safe_publish
from crosspost.integrations.platform_clients.metadata import decode_platform_metadata
from crosspost.integrations.platform_registry import validate_content_for_platform

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]

PUBLISH_OUTCOME_UNKNOWN = "Publish outcome unknown: the dispatcher lease expired during the platform call"
PUBLISH_TIMEOUT_LEASE_FRACTION = 0.8


@dataclass(frozen=True)
class ClaimedEntry:
    entry_id: UUID
    post_id: UUID
    platform: str


@dataclass(frozen=True)
class EntryDispatchResult:
    entry_id: UUID
    post_id: UUID
    platform: str
    status: str
    attempted: bool
    duration_ms: int
    error: str | None = None
    platform_post_id: str | None = None


@dataclass(frozen=True)
class DispatchTickResult:
    claimed: int
    completed: int
    failed: int
    skipped: int
    posts_aggregated: int
    errored: int = 0
    abandoned: int = 0


def new_claim_token() -> str:
    return f"{socket.gethostname()[:32]}:{os.getpid()}:{uuid4().hex[:12]}"


def publish_timeout_for(lease_seconds: int) -> float:
    """Upper bound for one platform call, kept below the lease."""
    return min(settings.dispatcher_publish_timeout_seconds, lease_seconds * PUBLISH_TIMEOUT_LEASE_FRACTION)


def expire_abandoned_publishes(db: Session, *, now: datetime, post_id: UUID | None = None) -> list[UUID]:
    """Fail entries whose platform call started but whose lease ran out.

    Such an entry may or may not have been published, so it is never
    published again. The dispatcher that started the call can still record
    its real outcome afterwards.
    """
    filters = [
        QueueEntry.status == QueueEntryStatus.PENDING.value,
        QueueEntry.attempts > 0,
        QueueEntry.claimed_until < now,
    ]
    if post_id is not None:
        filters.append(QueueEntry.post_id == post_id)
    rows = db.execute(select(QueueEntry.id, QueueEntry.post_id, QueueEntry.version).where(*filters)).all()

    post_ids: list[UUID] = []
    for row in rows:
        result = db.execute(
            update(QueueEntry)
            .where(QueueEntry.id == row.id, QueueEntry.version == row.version, *filters)
            .values(
                version=row.version + 1,
                status=QueueEntryStatus.FAILED.value,
                error_message=PUBLISH_OUTCOME_UNKNOWN,
                processed_at=now,
                claimed_until=None,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.warning("dispatch_entry_abandoned entry_id=%s post_id=%s", row.id, row.post_id)
            if row.post_id not in post_ids:
                post_ids.append(row.post_id)
    db.commit()
    return post_ids


def claim_due_entries(
    db: Session,
    *,
    now: datetime,
    claim_token: str,
    limit: int,
    lease_seconds: int,
    post_id: UUID | None = None,
) -> list[ClaimedEntry]:
    """Claim up to ``limit`` due entries whose lease is free.

    Each claim is a conditional UPDATE on (id, version, status); an entry
    another dispatcher claimed first yields zero rows and is skipped.
    Entries with a started platform call are never claimed again.
    """
    query = select(QueueEntry.id, QueueEntry.post_id, QueueEntry.platform, QueueEntry.version).where(
        QueueEntry.status == QueueEntryStatus.PENDING.value,
        QueueEntry.scheduled_for <= now,
        QueueEntry.attempts == 0,
        or_(QueueEntry.claimed_until.is_(None), QueueEntry.claimed_until < now),
    )
    if post_id is not None:
        query = query.where(QueueEntry.post_id == post_id)
    candidates = db.execute(query.order_by(QueueEntry.scheduled_for.asc()).limit(limit)).all()
    SCHEDULED_JOBS_CHECKED_TOTAL.inc(len(candidates))
    increment_background_counter("scheduled_jobs_checked_total", len(candidates))

    claimed: list[ClaimedEntry] = []
    lease_until = now + timedelta(seconds=lease_seconds)
    for row in candidates:
        result = db.execute(
            update(QueueEntry)
            .where(
                QueueEntry.id == row.id,
                QueueEntry.version == row.version,
                QueueEntry.status == QueueEntryStatus.PENDING.value,
            )
            .values(version=row.version + 1, claimed_by=claim_token, claimed_until=lease_until)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            claimed.append(ClaimedEntry(entry_id=row.id, post_id=row.post_id, platform=row.platform))
    db.commit()
    if candidates:
        logger.info(
            "dispatch_entries_claimed claim_token=%s due=%s claimed=%s",
            claim_token,
            len(candidates),
            len(claimed),
        )
    return claimed


def _begin_publish(db: Session, *, entry_id: UUID, claim_token: str, lease_seconds: int) -> bool:
    # Counts the attempt and renews the lease before the platform call.
    result = db.execute(
        update(QueueEntry)
        .where(
            QueueEntry.id == entry_id,
            QueueEntry.status == QueueEntryStatus.PENDING.value,
            QueueEntry.claimed_by == claim_token,
            QueueEntry.attempts == 0,
        )
        .values(
            attempts=QueueEntry.attempts + 1,
            claimed_until=datetime.now(UTC) + timedelta(seconds=lease_seconds),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def _finish_entry(
    db: Session,
    *,
    entry_id: UUID,
    claim_token: str,
    status: str,
    error: str | None = None,
    platform_post_id: str | None = None,
    platform_post_url: str | None = None,
) -> bool:
    result = db.execute(
        update(QueueEntry)
        .where(
            QueueEntry.id == entry_id,
            QueueEntry.claimed_by == claim_token,
            or_(
                QueueEntry.status == QueueEntryStatus.PENDING.value,
                and_(
                    QueueEntry.status == QueueEntryStatus.FAILED.value,
                    QueueEntry.error_message == PUBLISH_OUTCOME_UNKNOWN,
                ),
            ),
        )
        .values(
            status=status,
            error_message=error[:2000] if error else None,
            platform_post_id=platform_post_id,
            platform_post_url=platform_post_url,
            processed_at=datetime.now(UTC),
            claimed_until=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


async def _publish_with_timeout(client, *, timeout: float, **payload) -> PublishResult:
    try:
        return await asyncio.wait_for(safe_publish(client, **payload), timeout=timeout)
    except TimeoutError:
        logger.warning("platform_publish_timeout client=%s timeout=%s", client.__class__.__name__, timeout)
        return PublishResult(success=False, error=f"Publish timed out after {timeout:g}s; outcome unknown")


async def dispatch_entry(
    claimed: ClaimedEntry,
    *,
    claim_token: str,
    semaphore: asyncio.Semaphore,
    session_factory: SessionFactory = SessionLocal,
    lease_seconds: int | None = None,
) -> EntryDispatchResult:
    lease_seconds = lease_seconds or settings.dispatcher_lease_seconds
    async with semaphore:
        started_at = perf_counter()

        def _result(status: str, *, attempted: bool = False, error: str | None = None, **extra) -> EntryDispatchResult:
            return EntryDispatchResult(
                entry_id=claimed.entry_id,
                post_id=claimed.post_id,
                platform=claimed.platform,
                status=status,
                attempted=attempted,
                duration_ms=int((perf_counter() - started_at) * 1000),
                error=error,
                **extra,
            )

        with session_factory() as db:

            def _fail_without_attempt(message: str) -> EntryDispatchResult:
                if not _finish_entry(
                    db,
                    entry_id=claimed.entry_id,
                    claim_token=claim_token,
                    status=QueueEntryStatus.FAILED.value,
                    error=message,
                ):
                    return _result("skipped", error="entry_no_longer_claimed")
                logger.warning(
                    "dispatch_entry_failed entry_id=%s platform=%s attempted=false error=%s",
                    claimed.entry_id,
                    claimed.platform,
                    message,
                )
                return _result(QueueEntryStatus.FAILED.value, error=message)

            entry = db.execute(select(QueueEntry).where(QueueEntry.id == claimed.entry_id)).scalar_one_or_none()
            if (
                entry is None
                or entry.status != QueueEntryStatus.PENDING.value
                or entry.claimed_by != claim_token
            ):
                logger.info("dispatch_entry_skipped entry_id=%s reason=not_claimed", claimed.entry_id)
                return _result("skipped", error="entry_no_longer_claimed")

            platform = parse_platform(entry.platform)
            if platform is None:
                return _fail_without_attempt(f"Unsupported platform '{entry.platform}'")

            post = db.execute(select(Post).where(Post.id == entry.post_id)).scalar_one_or_none()
            if post is None:
                return _fail_without_attempt("Post not found")

            account = get_account_for_dispatch(db, user_id=entry.user_id, platform=platform)
            if account is None:
                return _fail_without_attempt(f"{platform.value} account not found")
            if account.status != AccountStatus.CONNECTED.value:
                return _fail_without_attempt(f"{platform.value} account is not connected (status={account.status})")

            content = compose_publish_text(post.content, post.hashtags)
            media_urls = list(post.media_urls or [])
            violations = validate_content_for_platform(platform, content=content, media_urls=media_urls)
            if violations:
                return _fail_without_attempt("; ".join(violations))

            try:
                metadata = decode_platform_metadata(platform, (post.platform_metadata or {}).get(platform.value))
            except ValidationError as exc:
                return _fail_without_attempt(exc.message)

            try:
                access_token = decrypt_secret(account.access_token)
            except ValueError:
                return _fail_without_attempt(f"Stored {platform.value} credentials are unreadable; reconnect the account")

            try:
                client = get_platform_client(
                    platform,
                    access_token=access_token,
                    platform_user_id=account.platform_user_id,
                )
            except PlatformClientError as exc:
                return _fail_without_attempt(exc.message)

            # The post may have been unscheduled while the checks above ran.
            if not _begin_publish(db, entry_id=entry.id, claim_token=claim_token, lease_seconds=lease_seconds):
                logger.info("dispatch_entry_skipped entry_id=%s reason=unscheduled", claimed.entry_id)
                return _result("skipped", error="entry_no_longer_claimed")

            PUBLISH_ATTEMPTS_TOTAL.labels(platform=platform.value).inc()
            increment_background_counter("publish_attempts_total", platform=platform.value)
            publish_result = await _publish_with_timeout(
                client,
                timeout=publish_timeout_for(lease_seconds),
                content=content,
                media_urls=media_urls,
                metadata=metadata,
            )

            if publish_result.success:
                status = QueueEntryStatus.COMPLETED.value
            else:
                status = QueueEntryStatus.FAILED.value
                PUBLISH_FAILURES_TOTAL.labels(platform=platform.value).inc()
                increment_background_counter("publish_failures_total", platform=platform.value)

            recorded = _finish_entry(
                db,
                entry_id=claimed.entry_id,
                claim_token=claim_token,
                status=status,
                error=publish_result.error if not publish_result.success else None,
                platform_post_id=publish_result.platform_post_id,
                platform_post_url=publish_result.platform_post_url,
            )
            if not recorded:
                logger.warning(
                    "dispatch_entry_result_discarded entry_id=%s platform=%s success=%s platform_post_id=%s",
                    claimed.entry_id,
                    platform.value,
                    publish_result.success,
                    publish_result.platform_post_id,
                )
                return _result("skipped", attempted=True, error="entry_removed_during_publish")

            logger.info(
                "dispatch_entry_%s entry_id=%s post_id=%s platform=%s platform_post_id=%s error=%s",
                status,
                claimed.entry_id,
                claimed.post_id,
                platform.value,
                publish_result.platform_post_id,
                publish_result.error,
            )
            return _result(
                status,
                attempted=True,
                error=publish_result.error,
                platform_post_id=publish_result.platform_post_id,
            )


async def dispatch_claimed_entries(
    claimed: list[ClaimedEntry],
    *,
    claim_token: str,
    max_concurrency: int,
    session_factory: SessionFactory = SessionLocal,
    lease_seconds: int | None = None,
) -> list[EntryDispatchResult]:
    """Dispatch every claimed entry; an entry that raises is reported, not fatal."""
    semaphore = asyncio.Semaphore(max(1, max_concurrency))
    tasks = [
        dispatch_entry(
            entry,
            claim_token=claim_token,
            semaphore=semaphore,
            session_factory=session_factory,
            lease_seconds=lease_seconds,
        )
        for entry in claimed
    ]
    outcomes = await asyncio.gather(*tasks, return_exceptions=True)

    results: list[EntryDispatchResult] = []
    for entry, outcome in zip(claimed, outcomes):
        if isinstance(outcome, BaseException):
            logger.error(
                "dispatch_entry_crashed entry_id=%s post_id=%s platform=%s",
                entry.entry_id,
                entry.post_id,
                entry.platform,
                exc_info=outcome,
            )
            outcome = EntryDispatchResult(
                entry_id=entry.entry_id,
                post_id=entry.post_id,
                platform=entry.platform,
                status="errored",
                attempted=False,
                duration_ms=0,
                error=f"{outcome.__class__.__name__}: {outcome}",
            )
        results.append(outcome)
    return results


def run_dispatch_tick(
    *,
    session_factory: SessionFactory = SessionLocal,
    now: datetime | None = None,
    claim_token: str | None = None,
    batch_size: int | None = None,
    max_concurrency: int | None = None,
    lease_seconds: int | None = None,
    post_id: UUID | None = None,
) -> DispatchTickResult:
    claim_token = claim_token or new_claim_token()
    context_token = set_claim_token(claim_token)
    try:
        return _run_tick(
            session_factory=session_factory,
            now=now or datetime.now(UTC),
            claim_token=claim_token,
            batch_size=batch_size or settings.dispatcher_batch_size,
            max_concurrency=max_concurrency or settings.dispatcher_max_concurrency,
            lease_seconds=lease_seconds or settings.dispatcher_lease_seconds,
            post_id=post_id,
        )
    finally:
        reset_claim_token(context_token)


def _run_tick(
    *,
    session_factory: SessionFactory,
    now: datetime,
    claim_token: str,
    batch_size: int,
    max_concurrency: int,
    lease_seconds: int,
    post_id: UUID | None,
) -> DispatchTickResult:
    with session_factory() as db:
        abandoned_post_ids = expire_abandoned_publishes(db, now=now, post_id=post_id)
        claimed = claim_due_entries(
            db,
            now=now,
            claim_token=claim_token,
            limit=batch_size,
            lease_seconds=lease_seconds,
            post_id=post_id,
        )
    if not claimed and not abandoned_post_ids:
        return DispatchTickResult(claimed=0, completed=0, failed=0, skipped=0, posts_aggregated=0)

    results: list[EntryDispatchResult] = []
    if claimed:
        results = asyncio.run(
            dispatch_claimed_entries(
                claimed,
                claim_token=claim_token,
                max_concurrency=max_concurrency,
                session_factory=session_factory,
                lease_seconds=lease_seconds,
            )
        )

    post_ids = list(abandoned_post_ids)
    for entry in claimed:
        if entry.post_id not in post_ids:
            post_ids.append(entry.post_id)
    aggregated = 0
    for touched_post_id in post_ids:
        with session_factory() as db:
            try:
                if aggregate_post_status(db, post_id=touched_post_id) is not None:
                    aggregated += 1
            except CrosspostError:
                logger.exception("dispatch_post_aggregation_failed post_id=%s", touched_post_id)

    tick = DispatchTickResult(
        claimed=len(claimed),
        completed=sum(1 for result in results if result.status == QueueEntryStatus.COMPLETED.value),
        failed=sum(1 for result in results if result.status == QueueEntryStatus.FAILED.value),
        skipped=sum(1 for result in results if result.status == "skipped"),
        posts_aggregated=aggregated,
        errored=sum(1 for result in results if result.status == "errored"),
        abandoned=len(abandoned_post_ids),
    )
    logger.info(
        "dispatch_tick_completed claim_token=%s claimed=%s completed=%s failed=%s skipped=%s errored=%s",
        claim_token,
        tick.claimed,
        tick.completed,
        tick.failed,
        tick.skipped,
        tick.errored,
    )
    return tick


def publish_post_now(
    *,
    post_id: UUID,
    user_id: UUID,
    platforms: list[Platform] | None = None,
    session_factory: SessionFactory = SessionLocal,
) -> DispatchTickResult:
    """Queue the post for immediate publishing and dispatch it in this process."""
    now = datetime.now(UTC)
    with session_factory() as db:
        queue_post_now(db, post_id=post_id, user_id=user_id, platforms=platforms, now=now)
    return run_dispatch_tick(session_factory=session_factory, now=now, post_id=post_id)
