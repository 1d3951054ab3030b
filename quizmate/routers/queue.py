from typing import Literal

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from ..dependencies import get_competition_store
from ..models import RandomQueueEntry
from ..store.competition_store import CompetitionStore

router = APIRouter(prefix="/api/queue")


class QueueJoin(BaseModel):
    """Schema for entering random matchmaking."""
    topic: str
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    language: str = "English"


@router.post("", response_model=RandomQueueEntry, status_code=status.HTTP_201_CREATED)
def join_queue(
    body: QueueJoin,
    store: CompetitionStore = Depends(get_competition_store)
):
    """Queue for a random match. A live ticket is returned instead of a new one."""
    return store.join_random_queue(body.topic, body.difficulty, body.language)


@router.delete("")
def leave_queue(store: CompetitionStore = Depends(get_competition_store)):
    return {"cancelled": store.leave_random_queue()}
