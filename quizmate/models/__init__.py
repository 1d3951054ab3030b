from .user import User
from .session import Session
from .competition import (
    Competition,
    CompetitionParticipant,
    CompetitionInvite,
    CompetitionStatus,
    CompetitionType,
    ParticipantStatus,
    InviteStatus,
)
from .chat import ChatMessage
from .result import CompetitionResult
from .queue import RandomQueueEntry, QueueStatus
from .quiz import ApiKey, QuizPreferenceRecord, QuizHistory

__all__ = [
    "User",
    "Session",
    "Competition",
    "CompetitionParticipant",
    "CompetitionInvite",
    "CompetitionStatus",
    "CompetitionType",
    "ParticipantStatus",
    "InviteStatus",
    "ChatMessage",
    "CompetitionResult",
    "RandomQueueEntry",
    "QueueStatus",
    "ApiKey",
    "QuizPreferenceRecord",
    "QuizHistory",
]
