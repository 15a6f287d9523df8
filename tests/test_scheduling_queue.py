from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select

from crosspost.application.services.scheduling_service import (
    BulkScheduleItem,
    bulk_schedule_posts,
    compose_publish_text,
    create_post,
    get_post,
    list_queue,
    queue_post_now,
    remove_queue_entry,
    schedule_post,
    unschedule_post,
    validate_post_content,
)
from crosspost.core.errors import NotFoundError, ValidationError
from crosspost.domain.models.post import PostStatus
from crosspost.domain.models.queue_entry import QueueEntry, QueueEntryStatus
from crosspost.domain.platform import Platform


def _post(db, user_id, platforms=(Platform.TWITTER, Platform.LINKEDIN), **fields):
    return create_post(
        db,
        user_id=user_id,
        title=fields.pop("title", "Launch"),
        content=fields.pop("content", "We are live"),
        platforms=list(platforms),
        **fields,
    )


def _utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


def _entries(db, post_id):
    return db.execute(select(QueueEntry).where(QueueEntry.post_id == post_id)).scalars().all()


def test_reschedule_replaces_all_entries(db_session, user_id):
    post = _post(db_session, user_id)
    t1 = datetime.now(UTC) + timedelta(hours=1)
    t2 = datetime.now(UTC) + timedelta(hours=2)

    schedule_post(
        db_session,
        post_id=post.id,
        user_id=user_id,
        platforms=[Platform.TWITTER, Platform.LINKEDIN],
        scheduled_for=t1,
    )
    schedule_post(db_session, post_id=post.id, user_id=user_id, platforms=[Platform.TWITTER], scheduled_for=t2)

    entries = _entries(db_session, post.id)
    assert len(entries) == 1
    assert entries[0].platform == "twitter"
    assert entries[0].status == QueueEntryStatus.PENDING.value
    assert abs((_utc(entries[0].scheduled_for) - t2).total_seconds()) < 1
    post = get_post(db_session, user_id=user_id, post_id=post.id)
    assert post.status == PostStatus.SCHEDULED.value
    assert post.platforms == ["twitter"]


def test_schedule_defaults_to_post_platforms_and_dedupes(db_session, user_id):
    post = _post(db_session, user_id, platforms=[Platform.TWITTER, Platform.TWITTER, Platform.LINKEDIN])

    entries = schedule_post(
        db_session,
        post_id=post.id,
        user_id=user_id,
        platforms=None,
        scheduled_for=datetime.now(UTC) + timedelta(minutes=5),
    )

    assert sorted(entry.platform for entry in entries) == ["linkedin", "twitter"]


def test_schedule_rejects_past_time_and_foreign_post(db_session, user_id):
    post = _post(db_session, user_id)

    with pytest.raises(ValidationError):
        schedule_post(
            db_session,
            post_id=post.id,
            user_id=user_id,
            platforms=None,
            scheduled_for=datetime.now(UTC) - timedelta(minutes=1),
        )
    with pytest.raises(NotFoundError):
        schedule_post(
            db_session,
            post_id=post.id,
            user_id=uuid4(),
            platforms=None,
            scheduled_for=datetime.now(UTC) + timedelta(minutes=1),
        )
    assert _entries(db_session, post.id) == []


def test_unschedule_removes_pending_entries_and_returns_to_draft(db_session, user_id):
    post = _post(db_session, user_id)
    schedule_post(
        db_session,
        post_id=post.id,
        user_id=user_id,
        platforms=None,
        scheduled_for=datetime.now(UTC) + timedelta(hours=1),
    )

    removed = unschedule_post(db_session, post_id=post.id, user_id=user_id)

    assert removed == 2
    assert _entries(db_session, post.id) == []
    post = get_post(db_session, user_id=user_id, post_id=post.id)
    assert post.status == PostStatus.DRAFT.value
    assert post.scheduled_for is None


def test_queue_listing_and_stats(db_session, user_id):
    first = _post(db_session, user_id)
    second = _post(db_session, user_id, platforms=[Platform.FACEBOOK])
    soon = datetime.now(UTC) + timedelta(minutes=30)
    later = datetime.now(UTC) + timedelta(hours=3)
    schedule_post(db_session, post_id=first.id, user_id=user_id, platforms=None, scheduled_for=later)
    schedule_post(db_session, post_id=second.id, user_id=user_id, platforms=None, scheduled_for=soon)
    entry = _entries(db_session, first.id)[0]
    entry.status = QueueEntryStatus.FAILED.value
    db_session.commit()

    listing = list_queue(db_session, user_id=user_id)

    assert listing.stats.total == 3
    assert listing.stats.pending == 2
    assert listing.stats.failed == 1
    assert listing.stats.completed == 0
    assert abs((listing.stats.next_scheduled - soon).total_seconds()) < 1
    assert listing.entries[0].platform == "facebook"

    scoped = list_queue(db_session, user_id=user_id, post_id=first.id)
    assert scoped.stats.total == 2
    assert list_queue(db_session, user_id=uuid4()).stats.total == 0


def test_remove_queue_entry(db_session, user_id):
    post = _post(db_session, user_id)
    schedule_post(
        db_session,
        post_id=post.id,
        user_id=user_id,
        platforms=None,
        scheduled_for=datetime.now(UTC) + timedelta(hours=1),
    )

    assert remove_queue_entry(db_session, user_id=user_id, post_id=post.id, platform=Platform.LINKEDIN) == 1

    assert [entry.platform for entry in _entries(db_session, post.id)] == ["twitter"]
    with pytest.raises(NotFoundError):
        remove_queue_entry(db_session, user_id=user_id, post_id=post.id, platform=Platform.LINKEDIN)


def test_removing_last_entry_returns_post_to_draft(db_session, user_id):
    post = _post(db_session, user_id, platforms=[Platform.TWITTER])
    schedule_post(
        db_session,
        post_id=post.id,
        user_id=user_id,
        platforms=None,
        scheduled_for=datetime.now(UTC) + timedelta(hours=1),
    )

    remove_queue_entry(db_session, user_id=user_id, post_id=post.id, platform=Platform.TWITTER)

    db_session.expire_all()
    post = get_post(db_session, user_id=user_id, post_id=post.id)
    assert post.status == PostStatus.DRAFT.value
    assert post.scheduled_for is None


def test_create_post_validates_metadata(db_session, user_id):
    post = _post(
        db_session,
        user_id,
        platforms=[Platform.LINKEDIN],
        platform_metadata={"linkedin": {"visibility": "CONNECTIONS"}},
        hashtags=["#launch", "launch", "news"],
    )
    assert post.platform_metadata["linkedin"]["visibility"] == "CONNECTIONS"
    assert post.hashtags == ["launch", "news"]

    with pytest.raises(ValidationError):
        _post(db_session, user_id, platforms=[Platform.LINKEDIN], platform_metadata={"twitter": {}})
    with pytest.raises(ValidationError):
        _post(db_session, user_id, platforms=[Platform.LINKEDIN], platform_metadata={"linkedin": {"visibility": "X"}})


def test_validate_post_content_reports_per_platform_errors():
    errors = validate_post_content(
        [Platform.TWITTER, Platform.INSTAGRAM, Platform.LINKEDIN],
        content="x" * 281,
        media_urls=[],
    )

    assert errors["twitter"] == ["Content exceeds twitter character limit of 280"]
    assert errors["instagram"] == ["instagram requires at least one media file"]
    assert errors["linkedin"] == []


def test_hashtags_count_toward_length():
    assert compose_publish_text("Hello", ["news", "#tech"]) == "Hello\n\n#news #tech"
    errors = validate_post_content([Platform.TWITTER], content="x" * 275, hashtags=["longtag"])
    assert errors["twitter"]


def test_queue_post_now_makes_entries_due_and_rejects_published(db_session, user_id):
    post = _post(db_session, user_id)
    now = datetime.now(UTC)

    entries = queue_post_now(db_session, post_id=post.id, user_id=user_id, platforms=[Platform.LINKEDIN], now=now)

    assert [entry.platform for entry in entries] == ["linkedin"]
    assert _utc(entries[0].scheduled_for) == now
    assert get_post(db_session, user_id=user_id, post_id=post.id).status == PostStatus.SCHEDULED.value

    post.status = PostStatus.PUBLISHED.value
    db_session.commit()
    with pytest.raises(ValidationError) as exc_info:
        queue_post_now(db_session, post_id=post.id, user_id=user_id)
    assert exc_info.value.error_code == "post_already_published"


def test_bulk_schedule_reports_each_bad_post_and_keeps_the_rest(db_session, user_id):
    future = datetime.now(UTC) + timedelta(hours=2)
    items = [
        BulkScheduleItem(content="First", platforms=[Platform.TWITTER], scheduled_for=future),
        BulkScheduleItem(content="   ", platforms=[Platform.TWITTER], scheduled_for=future, title="Blank"),
        BulkScheduleItem(
            content="A rather long announcement that will not fit in a fifty character title",
            platforms=[Platform.LINKEDIN],
            scheduled_for=datetime.now(UTC) - timedelta(minutes=1),
        ),
    ]

    outcome = bulk_schedule_posts(db_session, user_id=user_id, items=items)

    assert len(outcome.scheduled) == 1
    post, entries = outcome.scheduled[0]
    assert post.title == "First"
    assert post.status == PostStatus.SCHEDULED.value
    assert [entry.platform for entry in entries] == ["twitter"]
    assert [error["index"] for error in outcome.errors] == [1, 2]
    assert outcome.errors[0]["title"] == "Blank"
    assert outcome.errors[0]["message"] == "Content is required"
    assert outcome.errors[1]["title"] == "A rather long announcement that will not fit in a..."
    assert outcome.errors[1]["message"] == "Scheduled time must be in the future"


def test_bulk_schedule_requires_items(db_session, user_id):
    with pytest.raises(ValidationError):
        bulk_schedule_posts(db_session, user_id=user_id, items=[])
