import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from crosspost.application.services import dispatch_service
from crosspost.application.services.dispatch_service import (
    PUBLISH_OUTCOME_UNKNOWN,
    claim_due_entries,
    dispatch_claimed_entries,
    publish_post_now,
    run_dispatch_tick,
)
from crosspost.application.services.scheduling_service import create_post, schedule_post, unschedule_post
from crosspost.core.security import encrypt_secret
from crosspost.domain.models.connected_account import AccountStatus, ConnectedAccount
from crosspost.domain.models.post import Post, PostStatus
from crosspost.domain.models.queue_entry import QueueEntry, QueueEntryStatus
from crosspost.domain.platform import Platform
from crosspost.integrations.platform_clients import PublishResult
from crosspost.integrations.platform_clients.metadata import LinkedInMetadata


@pytest.fixture(autouse=True)
def _redis(fake_redis):
    return fake_redis


def _connect(db, user_id, platform: Platform, status: str = AccountStatus.CONNECTED.value) -> None:
    db.add(
        ConnectedAccount(
            user_id=user_id,
            platform=platform.value,
            platform_user_id=f"{platform.value}-user-1",
            access_token=encrypt_secret(f"token-{platform.value}"),
            status=status,
        )
    )
    db.commit()


def _scheduled_post(db, user_id, platforms, *, content="Hello world", media_urls=None, platform_metadata=None):
    post = create_post(
        db,
        user_id=user_id,
        title="Post",
        content=content,
        platforms=list(platforms),
        media_urls=media_urls,
        platform_metadata=platform_metadata,
    )
    schedule_post(
        db,
        post_id=post.id,
        user_id=user_id,
        platforms=None,
        scheduled_for=datetime.now(UTC) + timedelta(minutes=1),
    )
    return post.id


def _tick(session_factory, **kwargs):
    return run_dispatch_tick(session_factory=session_factory, now=datetime.now(UTC) + timedelta(minutes=5), **kwargs)


def _entry(db, post_id, platform: Platform) -> QueueEntry:
    return db.execute(
        select(QueueEntry).where(QueueEntry.post_id == post_id, QueueEntry.platform == platform.value)
    ).scalar_one()


def _post(db, post_id) -> Post:
    db.expire_all()
    return db.execute(select(Post).where(Post.id == post_id)).scalar_one()


def test_any_success_wins_and_failure_is_isolated(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER)
    _connect(db_session, user_id, Platform.LINKEDIN)
    platform_clients[Platform.LINKEDIN].publish_outcome = PublishResult(success=False, error="rate limited")
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER, Platform.LINKEDIN])

    tick = _tick(session_factory)

    assert tick.claimed == 2
    assert tick.completed == 1
    assert tick.failed == 1
    post = _post(db_session, post_id)
    assert post.status == PostStatus.PUBLISHED.value
    assert post.platform_post_id == "twitter-post-1"
    assert post.platform_post_url == "https://twitter.example/posts/1"
    assert post.published_at is not None
    twitter = _entry(db_session, post_id, Platform.TWITTER)
    linkedin = _entry(db_session, post_id, Platform.LINKEDIN)
    assert twitter.status == QueueEntryStatus.COMPLETED.value
    assert twitter.attempts == 1
    assert twitter.platform_post_id == "twitter-post-1"
    assert linkedin.status == QueueEntryStatus.FAILED.value
    assert linkedin.attempts == 1
    assert linkedin.error_message == "rate limited"
    assert platform_clients[Platform.TWITTER].publish_calls[0]["access_token"] == "token-twitter"


def test_content_violation_fails_only_that_platform_without_attempt(
    db_session, session_factory, user_id, platform_clients
):
    _connect(db_session, user_id, Platform.TWITTER)
    _connect(db_session, user_id, Platform.LINKEDIN)
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER, Platform.LINKEDIN], content="x" * 300)

    _tick(session_factory)

    twitter = _entry(db_session, post_id, Platform.TWITTER)
    linkedin = _entry(db_session, post_id, Platform.LINKEDIN)
    assert twitter.status == QueueEntryStatus.FAILED.value
    assert twitter.attempts == 0
    assert "character limit of 280" in twitter.error_message
    assert platform_clients[Platform.TWITTER].publish_calls == []
    assert linkedin.status == QueueEntryStatus.COMPLETED.value
    assert _post(db_session, post_id).status == PostStatus.PUBLISHED.value


def test_all_failed_marks_post_failed(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER)
    _connect(db_session, user_id, Platform.FACEBOOK)
    platform_clients[Platform.TWITTER].publish_outcome = RuntimeError("socket closed")
    platform_clients[Platform.FACEBOOK].publish_outcome = PublishResult(success=False)
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER, Platform.FACEBOOK])

    _tick(session_factory)

    post = _post(db_session, post_id)
    assert post.status == PostStatus.FAILED.value
    assert post.platform_post_id is None
    assert _entry(db_session, post_id, Platform.TWITTER).error_message == "socket closed"
    assert _entry(db_session, post_id, Platform.FACEBOOK).error_message == "Platform rejected the post"


def test_pending_entries_keep_post_scheduled(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER)
    _connect(db_session, user_id, Platform.LINKEDIN)
    platform_clients[Platform.TWITTER].publish_outcome = PublishResult(success=False, error="duplicate")
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER, Platform.LINKEDIN])
    later = _entry(db_session, post_id, Platform.LINKEDIN)
    later.scheduled_for = datetime.now(UTC) + timedelta(days=1)
    db_session.commit()

    tick = _tick(session_factory)

    assert tick.claimed == 1
    assert _post(db_session, post_id).status == PostStatus.SCHEDULED.value
    assert _entry(db_session, post_id, Platform.LINKEDIN).status == QueueEntryStatus.PENDING.value


def test_orphaned_entry_fails_fast_after_disconnect(db_session, session_factory, user_id, platform_clients):
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER])

    _tick(session_factory)

    entry = _entry(db_session, post_id, Platform.TWITTER)
    assert entry.status == QueueEntryStatus.FAILED.value
    assert entry.attempts == 0
    assert "account not found" in entry.error_message
    assert platform_clients[Platform.TWITTER].publish_calls == []
    assert _post(db_session, post_id).status == PostStatus.FAILED.value


def test_account_in_error_state_is_not_used(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER, status=AccountStatus.ERROR.value)
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER])

    _tick(session_factory)

    entry = _entry(db_session, post_id, Platform.TWITTER)
    assert entry.status == QueueEntryStatus.FAILED.value
    assert "not connected" in entry.error_message
    assert platform_clients[Platform.TWITTER].publish_calls == []


def test_second_claimer_gets_nothing_until_lease_expires(db_session, session_factory, user_id):
    _scheduled_post(db_session, user_id, [Platform.TWITTER, Platform.LINKEDIN])
    now = datetime.now(UTC) + timedelta(minutes=5)

    with session_factory() as db:
        first = claim_due_entries(db, now=now, claim_token="worker-a", limit=10, lease_seconds=60)
    with session_factory() as db:
        second = claim_due_entries(db, now=now, claim_token="worker-b", limit=10, lease_seconds=60)
    with session_factory() as db:
        after_lease = claim_due_entries(
            db,
            now=now + timedelta(seconds=61),
            claim_token="worker-c",
            limit=10,
            lease_seconds=60,
        )

    assert len(first) == 2
    assert second == []
    assert {entry.entry_id for entry in after_lease} == {entry.entry_id for entry in first}


def test_entry_unscheduled_after_claim_is_not_published(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER)
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER])
    with session_factory() as db:
        claimed = claim_due_entries(
            db,
            now=datetime.now(UTC) + timedelta(minutes=5),
            claim_token="worker-a",
            limit=10,
            lease_seconds=60,
        )
    unschedule_post(db_session, post_id=post_id, user_id=user_id)

    results = asyncio.run(
        dispatch_claimed_entries(claimed, claim_token="worker-a", max_concurrency=2, session_factory=session_factory)
    )

    assert [result.status for result in results] == ["skipped"]
    assert platform_clients[Platform.TWITTER].publish_calls == []
    assert _post(db_session, post_id).status == PostStatus.DRAFT.value


def test_result_is_discarded_when_entry_removed_during_publish(
    db_session, session_factory, user_id, platform_clients
):
    _connect(db_session, user_id, Platform.TWITTER)
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER])

    def unschedule_mid_flight():
        with session_factory() as db:
            unschedule_post(db, post_id=post_id, user_id=user_id)

    platform_clients[Platform.TWITTER].before_publish = unschedule_mid_flight

    tick = _tick(session_factory)

    assert tick.skipped == 1
    db_session.expire_all()
    assert db_session.execute(select(QueueEntry).where(QueueEntry.post_id == post_id)).scalars().all() == []
    assert _post(db_session, post_id).status == PostStatus.DRAFT.value


def test_typed_metadata_and_hashtags_reach_the_client(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.LINKEDIN)
    post = create_post(
        db_session,
        user_id=user_id,
        title="Post",
        content="Big news",
        platforms=[Platform.LINKEDIN],
        hashtags=["launch"],
        platform_metadata={"linkedin": {"visibility": "CONNECTIONS"}},
    )
    schedule_post(
        db_session,
        post_id=post.id,
        user_id=user_id,
        platforms=None,
        scheduled_for=datetime.now(UTC) + timedelta(minutes=1),
    )

    _tick(session_factory)

    call = platform_clients[Platform.LINKEDIN].publish_calls[0]
    assert call["content"] == "Big news\n\n#launch"
    assert isinstance(call["metadata"], LinkedInMetadata)
    assert call["metadata"].visibility == "CONNECTIONS"


def test_instagram_without_media_fails_validation(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.INSTAGRAM)
    post_id = _scheduled_post(db_session, user_id, [Platform.INSTAGRAM])

    _tick(session_factory)

    entry = _entry(db_session, post_id, Platform.INSTAGRAM)
    assert entry.status == QueueEntryStatus.FAILED.value
    assert entry.error_message == "instagram requires at least one media file"
    assert entry.attempts == 0


def test_nothing_due_is_a_noop(db_session, session_factory, user_id):
    _scheduled_post(db_session, user_id, [Platform.TWITTER])

    tick = run_dispatch_tick(session_factory=session_factory, now=datetime.now(UTC))

    assert tick.claimed == 0


def test_client_construction_failure_fails_only_that_entry(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER)
    _connect(db_session, user_id, Platform.LINKEDIN)
    platform_clients[Platform.TWITTER].factory_error = RuntimeError("missing consumer key")
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER, Platform.LINKEDIN])

    tick = _tick(session_factory)

    assert tick.failed == 1
    assert tick.completed == 1
    twitter = _entry(db_session, post_id, Platform.TWITTER)
    assert twitter.status == QueueEntryStatus.FAILED.value
    assert twitter.attempts == 0
    assert "Could not initialise twitter client" in twitter.error_message
    assert _entry(db_session, post_id, Platform.LINKEDIN).status == QueueEntryStatus.COMPLETED.value
    assert _post(db_session, post_id).status == PostStatus.PUBLISHED.value


def test_crashing_entry_does_not_stop_the_tick(db_session, session_factory, user_id, platform_clients, monkeypatch):
    _connect(db_session, user_id, Platform.TWITTER)
    _connect(db_session, user_id, Platform.LINKEDIN)
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER, Platform.LINKEDIN])

    def validate(platform, *, content, media_urls):
        if platform == Platform.TWITTER:
            raise RuntimeError("boom")
        return []

    monkeypatch.setattr(dispatch_service, "validate_content_for_platform", validate)

    tick = _tick(session_factory)

    assert tick.claimed == 2
    assert tick.errored == 1
    assert tick.completed == 1
    assert tick.posts_aggregated == 1
    assert _entry(db_session, post_id, Platform.TWITTER).status == QueueEntryStatus.PENDING.value
    assert _post(db_session, post_id).status == PostStatus.PUBLISHED.value


def test_lease_expiry_during_publish_does_not_publish_twice(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER)
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER])
    later_ticks = []

    def second_dispatcher_after_lease():
        later_ticks.append(
            run_dispatch_tick(session_factory=session_factory, now=datetime.now(UTC) + timedelta(minutes=25))
        )

    platform_clients[Platform.TWITTER].before_publish = second_dispatcher_after_lease

    tick = _tick(session_factory)

    assert len(platform_clients[Platform.TWITTER].publish_calls) == 1
    assert later_ticks[0].claimed == 0
    assert later_ticks[0].abandoned == 1
    assert tick.completed == 1
    entry = _entry(db_session, post_id, Platform.TWITTER)
    assert entry.status == QueueEntryStatus.COMPLETED.value
    assert entry.attempts == 1
    assert entry.platform_post_id == "twitter-post-1"
    assert _post(db_session, post_id).status == PostStatus.PUBLISHED.value


def test_abandoned_publish_is_failed_without_retry(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER)
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER])
    entry = _entry(db_session, post_id, Platform.TWITTER)
    entry.attempts = 1
    entry.claimed_by = "crashed-worker"
    entry.claimed_until = datetime.now(UTC)
    db_session.commit()

    tick = _tick(session_factory)

    assert tick.claimed == 0
    assert tick.abandoned == 1
    assert platform_clients[Platform.TWITTER].publish_calls == []
    db_session.expire_all()
    entry = _entry(db_session, post_id, Platform.TWITTER)
    assert entry.status == QueueEntryStatus.FAILED.value
    assert entry.error_message == PUBLISH_OUTCOME_UNKNOWN
    assert _post(db_session, post_id).status == PostStatus.FAILED.value


def test_slow_publish_times_out_inside_the_lease(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER)
    platform_clients[Platform.TWITTER].publish_delay = 5
    post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER])

    tick = _tick(session_factory, lease_seconds=1)

    assert tick.failed == 1
    entry = _entry(db_session, post_id, Platform.TWITTER)
    assert entry.status == QueueEntryStatus.FAILED.value
    assert entry.attempts == 1
    assert "timed out" in entry.error_message


def test_publish_now_dispatches_only_that_post(db_session, session_factory, user_id, platform_clients):
    _connect(db_session, user_id, Platform.TWITTER)
    other_post_id = _scheduled_post(db_session, user_id, [Platform.TWITTER])
    post = create_post(db_session, user_id=user_id, title="Now", content="Right now", platforms=[Platform.TWITTER])

    tick = publish_post_now(post_id=post.id, user_id=user_id, session_factory=session_factory)

    assert tick.claimed == 1
    assert tick.completed == 1
    assert [call["content"] for call in platform_clients[Platform.TWITTER].publish_calls] == ["Right now"]
    assert _post(db_session, post.id).status == PostStatus.PUBLISHED.value
    assert _post(db_session, other_post_id).status == PostStatus.SCHEDULED.value
