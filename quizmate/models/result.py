from datetime import datetime
from typing import Any, Dict, Optional
from sqlalchemy import Column, JSON
from sqlmodel import SQLModel, Field, UniqueConstraint


class CompetitionResult(SQLModel, table=True):
    """Write-once snapshot of one participant's outcome in a completed competition."""
    __tablename__ = "competition_results"
    __table_args__ = (UniqueConstraint("competition_id", "user_id", name="unique_result_competition_user"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    competition_id: int = Field(foreign_key="competitions.id", index=True)
    user_id: int = Field(foreign_key="users.id", index=True)

    # Denormalized competition details
    competition_title: str
    competition_type: str
    competition_code: str

    final_rank: int
    total_participants: int
    score: float = Field(default=0)
    correct_answers: int = Field(default=0)
    incorrect_answers: int = Field(default=0)
    skipped_answers: int = Field(default=0)
    total_questions: int = Field(default=0)
    time_taken: int = Field(default=0)
    average_time_per_question: float = Field(default=0)
    percentage_score: float = Field(default=0)
    accuracy_rate: float = Field(default=0)
    answers: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))

    competition_date: datetime
    joined_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
