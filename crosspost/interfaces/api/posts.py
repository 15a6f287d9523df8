from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from crosspost.application.services.dispatch_service import publish_post_now
from crosspost.application.services.scheduling_service import (
    BulkScheduleItem,
    bulk_schedule_posts,
    create_post,
    get_post,
    list_posts,
    list_queue,
    schedule_post,
    unschedule_post,
    validate_post_content,
)
from crosspost.domain.models.post import Post, PostStatus
from crosspost.domain.models.queue_entry import QueueEntry
from crosspost.domain.platform import Platform
from crosspost.infrastructure.db.session import get_db, get_session_factory
from crosspost.interfaces.api.deps import get_current_user_id

router = APIRouter(prefix="/posts", tags=["posts"])


class PostCreateRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    content: str = Field(min_length=1)
    platforms: list[Platform] = Field(min_length=1)
    media_urls: list[str] = Field(default_factory=list)
    hashtags: list[str] = Field(default_factory=list)
    platform_metadata: dict[str, dict] = Field(default_factory=dict)


class SchedulePostRequest(BaseModel):
    scheduled_for: datetime
    platforms: list[Platform] | None = None


class PublishNowRequest(BaseModel):
    platforms: list[Platform] | None = None


class BulkPostItem(BaseModel):
    title: str | None = Field(default=None, max_length=255)
    content: str
    platforms: list[Platform] = Field(min_length=1)
    scheduled_for: datetime
    media_urls: list[str] = Field(default_factory=list)
    hashtags: list[str] = Field(default_factory=list)
    platform_metadata: dict[str, dict] = Field(default_factory=dict)


class BulkScheduleRequest(BaseModel):
    posts: list[BulkPostItem] = Field(min_length=1, max_length=100)


class ValidateContentRequest(BaseModel):
    platforms: list[Platform] = Field(min_length=1)
    content: str
    media_urls: list[str] = Field(default_factory=list)
    hashtags: list[str] = Field(default_factory=list)


def _serialize_post(post: Post) -> dict:
    return {
        "id": str(post.id),
        "title": post.title,
        "content": post.content,
        "platforms": list(post.platforms or []),
        "media_urls": list(post.media_urls or []),
        "hashtags": list(post.hashtags or []),
        "platform_metadata": dict(post.platform_metadata or {}),
        "status": post.status,
        "scheduled_for": post.scheduled_for.isoformat() if post.scheduled_for else None,
        "published_at": post.published_at.isoformat() if post.published_at else None,
        "platform_post_id": post.platform_post_id,
        "platform_post_url": post.platform_post_url,
        "created_at": post.created_at.isoformat() if post.created_at else None,
        "updated_at": post.updated_at.isoformat() if post.updated_at else None,
    }


def _serialize_entry(entry: QueueEntry) -> dict:
    return {
        "id": str(entry.id),
        "post_id": str(entry.post_id),
        "platform": entry.platform,
        "scheduled_for": entry.scheduled_for.isoformat(),
        "status": entry.status,
        "attempts": entry.attempts,
        "error_message": entry.error_message,
        "platform_post_url": entry.platform_post_url,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
def create_post_endpoint(
    payload: PostCreateRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    post = create_post(
        db,
        user_id=user_id,
        title=payload.title,
        content=payload.content,
        platforms=payload.platforms,
        media_urls=payload.media_urls,
        hashtags=payload.hashtags,
        platform_metadata=payload.platform_metadata,
    )
    return _serialize_post(post)


@router.get("")
def list_posts_endpoint(
    status_filter: PostStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> list[dict]:
    return [_serialize_post(post) for post in list_posts(db, user_id=user_id, status=status_filter, limit=limit)]


@router.post("/validate")
def validate_content_endpoint(
    payload: ValidateContentRequest,
    user_id: UUID = Depends(get_current_user_id),
) -> dict:
    errors = validate_post_content(
        payload.platforms,
        content=payload.content,
        media_urls=payload.media_urls,
        hashtags=payload.hashtags,
    )
    return {"valid": not any(errors.values()), "errors": errors}


@router.post("/bulk-schedule")
def bulk_schedule_endpoint(
    payload: BulkScheduleRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    outcome = bulk_schedule_posts(
        db,
        user_id=user_id,
        items=[
            BulkScheduleItem(
                title=item.title,
                content=item.content,
                platforms=item.platforms,
                scheduled_for=item.scheduled_for,
                media_urls=item.media_urls,
                hashtags=item.hashtags,
                platform_metadata=item.platform_metadata,
            )
            for item in payload.posts
        ],
    )
    return {
        "success": not outcome.errors,
        "scheduled": len(outcome.scheduled),
        "errors": outcome.errors,
        "results": [
            {"post": _serialize_post(post), "entries": [_serialize_entry(entry) for entry in entries]}
            for post, entries in outcome.scheduled
        ],
    }


@router.get("/{post_id}")
def get_post_endpoint(
    post_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    return _serialize_post(get_post(db, user_id=user_id, post_id=post_id))


@router.post("/{post_id}/schedule")
def schedule_post_endpoint(
    post_id: UUID,
    payload: SchedulePostRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    entries = schedule_post(
        db,
        post_id=post_id,
        user_id=user_id,
        platforms=payload.platforms,
        scheduled_for=payload.scheduled_for,
    )
    post = get_post(db, user_id=user_id, post_id=post_id)
    return {"post": _serialize_post(post), "entries": [_serialize_entry(entry) for entry in entries]}


@router.post("/{post_id}/unschedule")
def unschedule_post_endpoint(
    post_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    removed = unschedule_post(db, post_id=post_id, user_id=user_id)
    post = get_post(db, user_id=user_id, post_id=post_id)
    return {"post": _serialize_post(post), "removed_entries": removed}


@router.post("/{post_id}/publish")
def publish_post_endpoint(
    post_id: UUID,
    payload: PublishNowRequest | None = None,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    session_factory: sessionmaker = Depends(get_session_factory),
) -> dict:
    tick = publish_post_now(
        post_id=post_id,
        user_id=user_id,
        platforms=payload.platforms if payload else None,
        session_factory=session_factory,
    )
    db.expire_all()
    post = get_post(db, user_id=user_id, post_id=post_id)
    entries = list_queue(db, user_id=user_id, post_id=post_id).entries
    return {
        "post": _serialize_post(post),
        "entries": [_serialize_entry(entry) for entry in entries],
        "result": {
            "completed": tick.completed,
            "failed": tick.failed,
            "skipped": tick.skipped + tick.errored,
        },
    }
