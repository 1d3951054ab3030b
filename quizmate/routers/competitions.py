from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel
from sqlmodel import Session

from ..config import DEFAULT_MAX_PARTICIPANTS
from ..database import get_session
from ..dependencies import get_competition_store, get_feed, get_quiz_store, require_user
from ..errors import ValidationError
from ..models import Competition, CompetitionParticipant, User
from ..realtime import ChangeFeed
from ..services.finish_competition import finish_competition
from ..services.grading import parse_questions
from ..services.preferences import QuizPreferences
from ..services.scoring import QuizResult, score_quiz
from ..store.competition_store import CompetitionStore
from ..store.quiz_store import QuizStore

router = APIRouter(prefix="/api/competitions")


class CompetitionCreate(BaseModel):
    """Schema for creating a competition."""
    title: str
    description: str = ""
    type: str = "private"
    preferences: QuizPreferences = QuizPreferences()
    emails: List[str] = []
    max_participants: int = DEFAULT_MAX_PARTICIPANTS


class JoinRequest(BaseModel):
    code: str


class StartRequest(BaseModel):
    """The creator's API key; their saved key is used when omitted."""
    api_key: Optional[str] = None


class ProgressUpdate(BaseModel):
    answers: Dict[str, str] = {}
    time_taken: int = 0
    current_question_index: int = 0


class FinishRequest(BaseModel):
    """Completion payload; the score is computed from the answers when omitted."""
    answers: Optional[Dict[str, str]] = None
    score: Optional[float] = None
    time_taken: Optional[int] = None


class ChatCreate(BaseModel):
    message: str


class InviteCreate(BaseModel):
    emails: List[str]


class LeaderboardEntry(BaseModel):
    position: int
    user_id: int
    full_name: Optional[str] = None
    status: str
    score: float
    correct_answers: int
    questions_answered: int
    time_taken: int
    rank: Optional[int] = None


def _score_answers(competition: Competition, answers: Dict[str, str]) -> QuizResult:
    if not competition.questions:
        raise ValidationError("This competition has no questions yet.")
    preferences = QuizPreferences(**(competition.quiz_preferences or {}))
    return score_quiz(parse_questions(competition.questions), answers, preferences.penalty)


# Collections

@router.post("", response_model=Competition, status_code=status.HTTP_201_CREATED)
def create_competition(
    body: CompetitionCreate,
    store: CompetitionStore = Depends(get_competition_store)
):
    """Create a waiting competition; the creator joins it and invites go out."""
    store.create_competition(
        body.preferences,
        body.title,
        description=body.description,
        type=body.type,
        emails=body.emails,
        max_participants=body.max_participants
    )
    return store.current_competition


@router.post("/join", response_model=Competition)
def join_competition(
    body: JoinRequest,
    store: CompetitionStore = Depends(get_competition_store)
):
    return store.join_competition(body.code)


@router.get("/active", response_model=List[Competition])
def get_active_competitions(store: CompetitionStore = Depends(get_competition_store)):
    """Waiting or running competitions the caller is still part of."""
    return store.load_user_active_competitions()


@router.get("/mine", response_model=List[Competition])
def get_my_competitions(store: CompetitionStore = Depends(get_competition_store)):
    return store.load_user_competitions()


@router.get("/history")
def get_competition_history(store: CompetitionStore = Depends(get_competition_store)):
    return store.load_competition_results_history()


@router.get("/invites")
def get_pending_invites(store: CompetitionStore = Depends(get_competition_store)):
    return store.load_pending_invites()


# Single competition

@router.get("/{competition_id}")
def get_competition(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    competition = store.load_competition(competition_id)
    participants = store.load_participants(competition_id)
    return {
        "competition": competition,
        "participants": participants,
        "profiles": {str(user_id): name for user_id, name in store.profiles.items()},
    }


@router.post("/{competition_id}/start", response_model=Competition)
def start_competition(
    competition_id: int,
    body: StartRequest,
    store: CompetitionStore = Depends(get_competition_store),
    quiz_store: QuizStore = Depends(get_quiz_store)
):
    api_key = body.api_key or quiz_store.load_api_key()
    return store.start_competition(competition_id, api_key)


@router.post("/{competition_id}/progress", response_model=CompetitionParticipant)
def update_progress(
    competition_id: int,
    body: ProgressUpdate,
    store: CompetitionStore = Depends(get_competition_store)
):
    """Score the answers given so far and record them on the caller's row."""
    competition = store.load_competition(competition_id)
    result = _score_answers(competition, body.answers)
    return store.update_participant_progress(
        competition_id,
        answers=body.answers,
        score=result.final_score,
        correct_answers=result.correct_answers,
        questions_answered=result.questions_attempted,
        time_taken=body.time_taken,
        current_question_index=body.current_question_index
    )


@router.post("/{competition_id}/complete", response_model=CompetitionParticipant)
def complete_competition(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    return store.complete_competition(competition_id)


@router.post("/{competition_id}/finish")
def finish(
    competition_id: int,
    body: FinishRequest,
    current_user: User = Depends(require_user),
    db: Session = Depends(get_session),
    feed: ChangeFeed = Depends(get_feed)
):
    """
    Record the caller's completion and, once nobody is still playing, rank
    everyone. Safe to call repeatedly.
    """
    score = body.score
    if body.answers is not None and score is None:
        competition = db.get(Competition, competition_id)
        if competition is not None and competition.questions:
            score = _score_answers(competition, body.answers).final_score

    outcome = finish_competition(
        db,
        competition_id,
        user_id=current_user.id,
        score=score,
        answers=body.answers,
        time_taken=body.time_taken,
        feed=feed
    )
    return {
        "competition_id": outcome.competition_id,
        "status": outcome.status,
        "remaining": outcome.remaining,
        "rankings": outcome.rankings,
    }


@router.get("/{competition_id}/leaderboard", response_model=List[LeaderboardEntry])
def get_leaderboard(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    """Live standings: score descending, then fastest first."""
    store.load_participants(competition_id)
    return [
        LeaderboardEntry(
            position=position,
            user_id=participant.user_id,
            full_name=store.profiles.get(participant.user_id),
            status=participant.status,
            score=participant.score,
            correct_answers=participant.correct_answers,
            questions_answered=participant.questions_answered,
            time_taken=participant.time_taken,
            rank=participant.rank
        )
        for position, participant in enumerate(store.get_live_leaderboard(competition_id), start=1)
    ]


@router.get("/{competition_id}/results")
def get_results(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    return store.load_competition_results(competition_id)


@router.post("/{competition_id}/leave")
def leave_competition(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    store.leave_competition(competition_id)
    return {"status": "success"}


@router.post("/{competition_id}/cancel")
def cancel_competition(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    store.cancel_competition(competition_id)
    return {"status": "success"}


@router.delete("/{competition_id}")
def delete_competition(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    store.delete_competition(competition_id)
    return {"status": "success"}


# Chat

@router.get("/{competition_id}/chat")
def get_chat(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    return store.load_chat_messages(competition_id)


@router.post("/{competition_id}/chat", status_code=status.HTTP_201_CREATED)
def post_chat(
    competition_id: int,
    body: ChatCreate,
    store: CompetitionStore = Depends(get_competition_store)
):
    return store.send_chat_message(competition_id, body.message)


# Invites

@router.post("/{competition_id}/invites", status_code=status.HTTP_201_CREATED)
def invite(
    competition_id: int,
    body: InviteCreate,
    store: CompetitionStore = Depends(get_competition_store)
) -> List[Dict[str, Any]]:
    invites = store.invite_participants(competition_id, body.emails)
    return [invite.model_dump() for invite in invites]


@router.post("/{competition_id}/invites/accept", response_model=Competition)
def accept_invite(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    return store.accept_invite(competition_id)


@router.post("/{competition_id}/invites/decline")
def decline_invite(
    competition_id: int,
    store: CompetitionStore = Depends(get_competition_store)
):
    store.decline_invite(competition_id)
    return {"status": "success"}
