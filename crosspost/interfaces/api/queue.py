from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from crosspost.application.services.scheduling_service import list_queue, remove_queue_entry
from crosspost.domain.models.queue_entry import QueueEntry
from crosspost.domain.platform import Platform
from crosspost.infrastructure.db.session import get_db
from crosspost.interfaces.api.deps import get_current_user_id

router = APIRouter(prefix="/queue", tags=["queue"])


class QueueEntryRemoveRequest(BaseModel):
    post_id: UUID
    platform: Platform


def _serialize_entry(entry: QueueEntry) -> dict:
    return {
        "id": str(entry.id),
        "post_id": str(entry.post_id),
        "platform": entry.platform,
        "scheduled_for": entry.scheduled_for.isoformat(),
        "status": entry.status,
        "attempts": entry.attempts,
        "error_message": entry.error_message,
        "platform_post_id": entry.platform_post_id,
        "platform_post_url": entry.platform_post_url,
        "processed_at": entry.processed_at.isoformat() if entry.processed_at else None,
    }


@router.get("")
def get_queue(
    post_id: UUID | None = Query(default=None),
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    listing = list_queue(db, user_id=user_id, post_id=post_id)
    stats = listing.stats
    return {
        "entries": [_serialize_entry(entry) for entry in listing.entries],
        "stats": {
            "total": stats.total,
            "pending": stats.pending,
            "completed": stats.completed,
            "failed": stats.failed,
            "next_scheduled": stats.next_scheduled.isoformat() if stats.next_scheduled else None,
        },
    }


@router.delete("")
def delete_queue_entry(
    payload: QueueEntryRemoveRequest,
    user_id: UUID = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    removed = remove_queue_entry(db, user_id=user_id, post_id=payload.post_id, platform=payload.platform)
    return {"removed": removed}
