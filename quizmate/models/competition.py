from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field, UniqueConstraint


class CompetitionStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class CompetitionType(str, Enum):
    PRIVATE = "private"
    RANDOM = "random"


class ParticipantStatus(str, Enum):
    JOINED = "joined"
    COMPLETED = "completed"
    DECLINED = "declined"


class InviteStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class Competition(SQLModel, table=True):
    __tablename__ = "competitions"

    id: Optional[int] = Field(default=None, primary_key=True)
    title: str
    description: str = Field(default="")
    competition_code: str = Field(unique=True, index=True, max_length=12)
    type: str = Field(default=CompetitionType.PRIVATE.value)  # private, random
    status: str = Field(default=CompetitionStatus.WAITING.value, index=True)  # waiting, active, completed, cancelled
    quiz_preferences: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    max_participants: int = Field(default=100)
    creator_id: int = Field(foreign_key="users.id", index=True)

    # Filled in when the creator starts the competition
    questions: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSON))
    start_time: Optional[datetime] = Field(default=None)
    end_time: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CompetitionParticipant(SQLModel, table=True):
    __tablename__ = "competition_participants"
    __table_args__ = (UniqueConstraint("competition_id", "user_id", name="unique_competition_user"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    competition_id: int = Field(foreign_key="competitions.id", index=True)
    user_id: int = Field(foreign_key="users.id", index=True)
    status: str = Field(default=ParticipantStatus.JOINED.value)  # joined, completed, declined

    # Progress, pushed after every answered question
    score: float = Field(default=0)
    correct_answers: int = Field(default=0)
    questions_answered: int = Field(default=0)
    time_taken: int = Field(default=0)  # seconds
    current_question: int = Field(default=0)
    answers: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))

    # Assigned once every participant has completed
    rank: Optional[int] = Field(default=None)

    joined_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = Field(default=None)
    last_activity: Optional[datetime] = Field(default=None)


class CompetitionInvite(SQLModel, table=True):
    __tablename__ = "competition_invites"
    __table_args__ = (UniqueConstraint("competition_id", "email", name="unique_competition_email"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    competition_id: int = Field(foreign_key="competitions.id", index=True)
    email: str = Field(index=True)
    invited_by: int = Field(foreign_key="users.id")
    status: str = Field(default=InviteStatus.PENDING.value)  # pending, accepted, declined
    created_at: datetime = Field(default_factory=datetime.utcnow)
