from datetime import datetime
from typing import Optional
from sqlmodel import SQLModel, Field


class ChatMessage(SQLModel, table=True):
    __tablename__ = "competition_chat"

    id: Optional[int] = Field(default=None, primary_key=True)
    competition_id: int = Field(foreign_key="competitions.id", index=True)
    user_id: int = Field(foreign_key="users.id")
    message: str = Field(max_length=500)
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
