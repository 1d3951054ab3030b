from datetime import datetime
from enum import Enum
from typing import Optional
from sqlmodel import SQLModel, Field


class QueueStatus(str, Enum):
    WAITING = "waiting"
    MATCHED = "matched"
    CANCELLED = "cancelled"


class RandomQueueEntry(SQLModel, table=True):
    __tablename__ = "random_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    topic: str
    difficulty: str = Field(default="medium")  # easy, medium, hard
    language: str = Field(default="English")
    status: str = Field(default=QueueStatus.WAITING.value, index=True)  # waiting, matched, cancelled

    # Set by the matcher once two tickets are paired
    competition_id: Optional[int] = Field(default=None, foreign_key="competitions.id")

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
