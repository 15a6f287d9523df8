import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crosspost.core.errors import NotFoundError, PersistenceError, ValidationError
from crosspost.domain.models.post import Post, PostStatus
from crosspost.domain.models.queue_entry import QueueEntry, QueueEntryStatus
from crosspost.domain.platform import Platform
from crosspost.integrations.platform_clients.metadata import encode_metadata_map
from crosspost.integrations.platform_registry import validate_content_for_platform

logger = logging.getLogger(__name__)

AGGREGATION_MAX_ATTEMPTS = 3


@dataclass(frozen=True)
class QueueStats:
    total: int
    pending: int
    completed: int
    failed: int
    next_scheduled: datetime | None


@dataclass(frozen=True)
class QueueListing:
    entries: list[QueueEntry]
    stats: QueueStats


def _commit(db: Session, *, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Unable to {action}") from exc


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _unique_platforms(platforms: list[Platform]) -> list[Platform]:
    unique: list[Platform] = []
    for platform in platforms:
        if platform not in unique:
            unique.append(platform)
    return unique


def _normalize_hashtags(hashtags: list[str] | None) -> list[str]:
    normalized: list[str] = []
    for tag in hashtags or []:
        cleaned = tag.strip().lstrip("#")
        if cleaned and cleaned not in normalized:
            normalized.append(cleaned)
    return normalized


def compose_publish_text(content: str, hashtags: list[str] | None) -> str:
    tags = " ".join(f"#{tag}" for tag in _normalize_hashtags(hashtags))
    if not tags:
        return content
    return f"{content}\n\n{tags}" if content else tags


def validate_post_content(
    platforms: list[Platform],
    *,
    content: str,
    media_urls: list[str] | None = None,
    hashtags: list[str] | None = None,
) -> dict[str, list[str]]:
    text = compose_publish_text(content, hashtags)
    return {
        platform.value: validate_content_for_platform(platform, content=text, media_urls=media_urls)
        for platform in _unique_platforms(platforms)
    }


def create_post(
    db: Session,
    *,
    user_id: UUID,
    title: str,
    content: str,
    platforms: list[Platform],
    media_urls: list[str] | None = None,
    hashtags: list[str] | None = None,
    platform_metadata: dict[str, dict] | None = None,
) -> Post:
    platforms = _unique_platforms(platforms)
    if not platforms:
        raise ValidationError("At least one platform is required")
    post = Post(
        user_id=user_id,
        title=title.strip(),
        content=content,
        platforms=[platform.value for platform in platforms],
        media_urls=list(media_urls or []),
        hashtags=_normalize_hashtags(hashtags),
        platform_metadata=encode_metadata_map(platform_metadata, platforms=platforms),
        status=PostStatus.DRAFT.value,
    )
    db.add(post)
    _commit(db, action="create post")
    db.refresh(post)
    logger.info("post_created post_id=%s user_id=%s platforms=%s", post.id, user_id, ",".join(post.platforms))
    return post


def get_post(db: Session, *, user_id: UUID, post_id: UUID) -> Post:
    post = db.execute(select(Post).where(Post.id == post_id, Post.user_id == user_id)).scalar_one_or_none()
    if post is None:
        raise NotFoundError("Post not found")
    return post


def list_posts(db: Session, *, user_id: UUID, status: PostStatus | None = None, limit: int = 100) -> list[Post]:
    query = select(Post).where(Post.user_id == user_id)
    if status is not None:
        query = query.where(Post.status == status.value)
    return list(db.execute(query.order_by(Post.created_at.desc()).limit(limit)).scalars().all())


def _targets_for(post: Post, platforms: list[Platform] | None) -> list[Platform]:
    if post.status == PostStatus.PUBLISHED.value:
        raise ValidationError("Published posts cannot be rescheduled", error_code="post_already_published")
    targets = _unique_platforms(platforms or [Platform(value) for value in post.platforms])
    if not targets:
        raise ValidationError("At least one platform is required")
    return targets


def _replace_queue_entries(
    db: Session,
    *,
    post: Post,
    user_id: UUID,
    targets: list[Platform],
    scheduled_for: datetime,
    action: str,
) -> list[QueueEntry]:
    target_values = {platform.value for platform in targets}
    post.platform_metadata = {
        key: value for key, value in (post.platform_metadata or {}).items() if key in target_values
    }

    db.execute(delete(QueueEntry).where(QueueEntry.post_id == post.id).execution_options(synchronize_session=False))
    entries = [
        QueueEntry(
            post_id=post.id,
            user_id=user_id,
            platform=platform.value,
            scheduled_for=scheduled_for,
            status=QueueEntryStatus.PENDING.value,
            attempts=0,
        )
        for platform in targets
    ]
    db.add_all(entries)
    post.platforms = [platform.value for platform in targets]
    post.status = PostStatus.SCHEDULED.value
    post.scheduled_for = scheduled_for
    post.published_at = None
    post.platform_post_id = None
    post.platform_post_url = None
    post.version = int(post.version or 1) + 1
    db.add(post)
    _commit(db, action=action)
    return entries


def schedule_post(
    db: Session,
    *,
    post_id: UUID,
    user_id: UUID,
    platforms: list[Platform] | None,
    scheduled_for: datetime,
    now: datetime | None = None,
) -> list[QueueEntry]:
    """Replace every queue entry of the post with one pending entry per platform."""
    now = now or datetime.now(UTC)
    scheduled_for = _as_utc(scheduled_for)
    if scheduled_for <= now:
        raise ValidationError("Scheduled time must be in the future")

    post = get_post(db, user_id=user_id, post_id=post_id)
    targets = _targets_for(post, platforms)
    entries = _replace_queue_entries(
        db, post=post, user_id=user_id, targets=targets, scheduled_for=scheduled_for, action="schedule post"
    )
    logger.info(
        "post_scheduled post_id=%s platforms=%s scheduled_for=%s",
        post.id,
        ",".join(post.platforms),
        scheduled_for.isoformat(),
    )
    return entries


def queue_post_now(
    db: Session,
    *,
    post_id: UUID,
    user_id: UUID,
    platforms: list[Platform] | None = None,
    now: datetime | None = None,
) -> list[QueueEntry]:
    """Replace the post's entries with entries that are due immediately."""
    now = _as_utc(now or datetime.now(UTC))
    post = get_post(db, user_id=user_id, post_id=post_id)
    targets = _targets_for(post, platforms)
    entries = _replace_queue_entries(
        db, post=post, user_id=user_id, targets=targets, scheduled_for=now, action="queue post for publishing"
    )
    logger.info("post_queued_now post_id=%s platforms=%s", post.id, ",".join(post.platforms))
    return entries


@dataclass(frozen=True)
class BulkScheduleItem:
    content: str
    platforms: list[Platform]
    scheduled_for: datetime
    title: str | None = None
    media_urls: list[str] | None = None
    hashtags: list[str] | None = None
    platform_metadata: dict[str, dict] | None = None

    @property
    def display_title(self) -> str:
        if self.title and self.title.strip():
            return self.title.strip()
        content = self.content.strip()
        return f"{content[:50].rstrip()}..." if len(content) > 50 else content


@dataclass(frozen=True)
class BulkScheduleOutcome:
    scheduled: list[tuple[Post, list[QueueEntry]]]
    errors: list[dict]


def bulk_schedule_posts(
    db: Session,
    *,
    user_id: UUID,
    items: list[BulkScheduleItem],
    now: datetime | None = None,
) -> BulkScheduleOutcome:
    """Create and schedule each item independently; one bad item does not stop the rest."""
    if not items:
        raise ValidationError("At least one post is required")
    now = now or datetime.now(UTC)
    scheduled: list[tuple[Post, list[QueueEntry]]] = []
    errors: list[dict] = []
    for index, item in enumerate(items):
        title = item.display_title
        try:
            if not item.content.strip():
                raise ValidationError("Content is required")
            if _as_utc(item.scheduled_for) <= now:
                raise ValidationError("Scheduled time must be in the future")
            post = create_post(
                db,
                user_id=user_id,
                title=title,
                content=item.content,
                platforms=item.platforms,
                media_urls=item.media_urls,
                hashtags=item.hashtags,
                platform_metadata=item.platform_metadata,
            )
            entries = schedule_post(
                db,
                post_id=post.id,
                user_id=user_id,
                platforms=None,
                scheduled_for=item.scheduled_for,
                now=now,
            )
        except (ValidationError, PersistenceError) as exc:
            errors.append({"index": index, "title": title, "error_code": exc.error_code, "message": exc.message})
            continue
        scheduled.append((post, entries))
    logger.info("posts_bulk_scheduled user_id=%s scheduled=%s failed=%s", user_id, len(scheduled), len(errors))
    return BulkScheduleOutcome(scheduled=scheduled, errors=errors)


def unschedule_post(db: Session, *, post_id: UUID, user_id: UUID) -> int:
    post = get_post(db, user_id=user_id, post_id=post_id)
    result = db.execute(
        delete(QueueEntry)
        .where(QueueEntry.post_id == post.id, QueueEntry.status == QueueEntryStatus.PENDING.value)
        .execution_options(synchronize_session=False)
    )
    post.status = PostStatus.DRAFT.value
    post.scheduled_for = None
    post.version = int(post.version or 1) + 1
    db.add(post)
    _commit(db, action="unschedule post")
    removed = int(result.rowcount or 0)
    logger.info("post_unscheduled post_id=%s removed_entries=%s", post.id, removed)
    return removed


def list_queue(
    db: Session,
    *,
    user_id: UUID,
    post_id: UUID | None = None,
    now: datetime | None = None,
) -> QueueListing:
    now = now or datetime.now(UTC)
    filters = [QueueEntry.user_id == user_id]
    if post_id is not None:
        filters.append(QueueEntry.post_id == post_id)

    entries = list(
        db.execute(select(QueueEntry).where(*filters).order_by(QueueEntry.scheduled_for.asc())).scalars().all()
    )
    counts = dict(
        db.execute(select(QueueEntry.status, func.count(QueueEntry.id)).where(*filters).group_by(QueueEntry.status)).all()
    )
    next_scheduled = db.execute(
        select(func.min(QueueEntry.scheduled_for)).where(
            *filters,
            QueueEntry.status == QueueEntryStatus.PENDING.value,
            QueueEntry.scheduled_for > now,
        )
    ).scalar_one_or_none()
    if next_scheduled is not None:
        next_scheduled = _as_utc(next_scheduled)
    stats = QueueStats(
        total=sum(int(value) for value in counts.values()),
        pending=int(counts.get(QueueEntryStatus.PENDING.value, 0)),
        completed=int(counts.get(QueueEntryStatus.COMPLETED.value, 0)),
        failed=int(counts.get(QueueEntryStatus.FAILED.value, 0)),
        next_scheduled=next_scheduled,
    )
    return QueueListing(entries=entries, stats=stats)


def remove_queue_entry(db: Session, *, user_id: UUID, post_id: UUID, platform: Platform) -> int:
    result = db.execute(
        delete(QueueEntry)
        .where(
            QueueEntry.user_id == user_id,
            QueueEntry.post_id == post_id,
            QueueEntry.platform == platform.value,
        )
        .execution_options(synchronize_session=False)
    )
    _commit(db, action="remove queue entry")
    removed = int(result.rowcount or 0)
    if not removed:
        raise NotFoundError("Queue entry not found")
    logger.info("queue_entry_removed post_id=%s platform=%s", post_id, platform.value)
    aggregate_post_status(db, post_id=post_id)
    return removed


def _aggregate_values(entries, *, now: datetime) -> dict:
    completed = [entry for entry in entries if entry.status == QueueEntryStatus.COMPLETED.value]
    if completed:
        first = completed[0]
        return {
            "status": PostStatus.PUBLISHED.value,
            "published_at": first.processed_at or now,
            "platform_post_id": first.platform_post_id,
            "platform_post_url": first.platform_post_url,
        }
    if any(entry.status == QueueEntryStatus.PENDING.value for entry in entries):
        return {"status": PostStatus.SCHEDULED.value}
    return {"status": PostStatus.FAILED.value}


def aggregate_post_status(db: Session, *, post_id: UUID) -> str | None:
    """Derive the post status from its queue entries ("any success wins").

    The post row is written with an optimistic version check; on conflict
    the entries are re-read and the update retried. Returns the resulting
    status, or None when the post no longer exists. A scheduled post whose
    entries were all removed goes back to draft.
    """
    for attempt in range(1, AGGREGATION_MAX_ATTEMPTS + 1):
        current = db.execute(select(Post.version, Post.status).where(Post.id == post_id)).one_or_none()
        if current is None:
            return None
        entries = db.execute(
            select(
                QueueEntry.status,
                QueueEntry.platform_post_id,
                QueueEntry.platform_post_url,
                QueueEntry.processed_at,
            )
            .where(QueueEntry.post_id == post_id)
            .order_by(QueueEntry.processed_at.asc().nulls_last(), QueueEntry.created_at.asc())
        ).all()
        if entries:
            values = _aggregate_values(entries, now=datetime.now(UTC))
        elif current.status == PostStatus.SCHEDULED.value:
            # Nothing left to publish.
            values = {"status": PostStatus.DRAFT.value, "scheduled_for": None}
        else:
            db.rollback()
            return current.status

        result = db.execute(
            update(Post)
            .where(Post.id == post_id, Post.version == current.version)
            .values(**values, version=current.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            _commit(db, action="aggregate post status")
            logger.info("post_status_aggregated post_id=%s status=%s", post_id, values["status"])
            return values["status"]
        db.rollback()
        logger.info("post_status_aggregation_conflict post_id=%s attempt=%s", post_id, attempt)

    raise PersistenceError("Post status changed concurrently; aggregation gave up")
