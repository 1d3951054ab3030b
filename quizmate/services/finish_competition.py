"""
Authoritative end-of-competition aggregation.

This is the single place final ranks are computed. It is safe to call any
number of times: each participant's completion may trigger it, and re-running
rewrites the same result rows (one per competition + user) instead of adding
new ones.

A finisher's completion is committed before anyone is counted, and the count
runs with the competition row locked. Two players finishing at the same time
therefore can't both see the other still playing.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, select

from ..errors import NotFoundError, ValidationError
from ..models.competition import (
    Competition,
    CompetitionParticipant,
    CompetitionStatus,
    ParticipantStatus,
)
from ..models.result import CompetitionResult
from ..realtime import ChangeFeed, INSERT, UPDATE
from .lifecycle import is_fully_completed, transition_competition, transition_participant
from .ranking import assign_ranks

logger = logging.getLogger(__name__)

# Completion is recorded and ranked while playing; re-runs land on completed
FINISHABLE_STATUSES = (CompetitionStatus.ACTIVE, CompetitionStatus.COMPLETED)

Change = Tuple[str, str, Dict[str, Any]]


@dataclass
class FinishOutcome:
    competition_id: int
    status: str  # "pending" until every participant is done, then "completed"
    remaining: int = 0
    rankings: List[Dict[str, Any]] = field(default_factory=list)


def _percentage(part: float, whole: float) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def _change(event_type: str, row: SQLModel) -> Change:
    # Captured before commit; committed rows are expired and dump empty
    return row.__tablename__, event_type, row.model_dump()


def _publish(feed: Optional[ChangeFeed], changes: List[Change]) -> None:
    if feed is None:
        return
    for table, event_type, record in changes:
        feed.publish(table, event_type, record)


def _lock_competition(db: Session, competition_id: int) -> Competition:
    competition = db.exec(
        select(Competition)
        .where(Competition.id == competition_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if competition is None:
        raise NotFoundError("Competition not found")
    if competition.status not in FINISHABLE_STATUSES:
        raise ValidationError(
            f"Competition {competition_id} is {competition.status}; only a competition in progress can finish."
        )
    return competition


def _find_result(db: Session, competition_id: int, user_id: int) -> Optional[CompetitionResult]:
    return db.exec(
        select(CompetitionResult).where(
            CompetitionResult.competition_id == competition_id,
            CompetitionResult.user_id == user_id
        )
    ).first()


def _upsert_result(
    db: Session,
    competition: Competition,
    participant: CompetitionParticipant,
    rank: int,
    total_participants: int
) -> CompetitionResult:
    total_questions = len(competition.questions or [])
    answered = participant.questions_answered or 0
    correct = participant.correct_answers or 0

    result = _find_result(db, competition.id, participant.user_id)
    if result is None:
        result = CompetitionResult(
            competition_id=competition.id,
            user_id=participant.user_id,
            competition_title=competition.title,
            competition_type=competition.type,
            competition_code=competition.competition_code,
            final_rank=rank,
            total_participants=total_participants,
            competition_date=competition.created_at
        )

    result.final_rank = rank
    result.total_participants = total_participants
    result.score = participant.score or 0
    result.correct_answers = correct
    result.incorrect_answers = max(0, answered - correct)
    result.skipped_answers = max(0, total_questions - answered)
    result.total_questions = total_questions
    result.time_taken = participant.time_taken or 0
    result.average_time_per_question = (
        (participant.time_taken or 0) / total_questions if total_questions else 0
    )
    result.percentage_score = _percentage(participant.score or 0, total_questions)
    result.accuracy_rate = _percentage(correct, answered)
    result.answers = dict(participant.answers or {})
    result.joined_at = participant.joined_at
    result.completed_at = participant.completed_at or datetime.utcnow()

    db.add(result)
    return result


def record_completion(
    db: Session,
    competition_id: int,
    user_id: int,
    score: Optional[float] = None,
    answers: Optional[Dict[str, str]] = None,
    time_taken: Optional[int] = None,
    feed: Optional[ChangeFeed] = None
) -> CompetitionParticipant:
    """Store ``user_id``'s final payload and mark them completed, in its own transaction."""
    _lock_competition(db, competition_id)
    participant = db.exec(
        select(CompetitionParticipant).where(
            CompetitionParticipant.competition_id == competition_id,
            CompetitionParticipant.user_id == user_id
        )
    ).first()
    if participant is None:
        raise NotFoundError("Participant not found")

    if score is not None:
        participant.score = score
    if answers is not None:
        participant.answers = dict(answers)
    if time_taken is not None:
        participant.time_taken = time_taken
    if participant.status == ParticipantStatus.JOINED:
        transition_participant(participant, ParticipantStatus.COMPLETED)
    db.add(participant)
    db.flush()
    changes = [_change(UPDATE, participant)]
    db.commit()

    _publish(feed, changes)
    return participant


def _rank(db: Session, competition_id: int, feed: Optional[ChangeFeed]) -> FinishOutcome:
    competition = _lock_competition(db, competition_id)
    participants = db.exec(
        select(CompetitionParticipant).where(CompetitionParticipant.competition_id == competition_id)
    ).all()

    if not is_fully_completed(participants):
        remaining = sum(1 for p in participants if p.status == ParticipantStatus.JOINED)
        db.commit()
        logger.info("Competition %s: waiting on %d participant(s)", competition_id, remaining)
        return FinishOutcome(competition_id=competition_id, status="pending", remaining=remaining)

    finished = [p for p in participants if p.status == ParticipantStatus.COMPLETED]
    ranked = assign_ranks(finished)
    results = []
    for rank, participant in ranked:
        participant.rank = rank
        db.add(participant)
        result = _upsert_result(db, competition, participant, rank, len(ranked))
        results.append((result.id is None, result))

    if competition.status == CompetitionStatus.ACTIVE:
        transition_competition(competition, CompetitionStatus.COMPLETED)
        db.add(competition)

    db.flush()
    changes = [_change(UPDATE, participant) for _, participant in ranked]
    changes += [_change(INSERT if new else UPDATE, result) for new, result in results]
    changes.append(_change(UPDATE, competition))
    rankings = [
        {
            "user_id": participant.user_id,
            "rank": rank,
            "score": participant.score,
            "time_taken": participant.time_taken,
        }
        for rank, participant in ranked
    ]
    db.commit()
    logger.info("Competition %s: ranked %d participant(s)", competition_id, len(ranked))

    _publish(feed, changes)
    return FinishOutcome(competition_id=competition_id, status="completed", rankings=rankings)


def rank_competition(db: Session, competition_id: int, feed: Optional[ChangeFeed] = None) -> FinishOutcome:
    """Rank everyone and write result rows once no participant is still playing."""
    try:
        return _rank(db, competition_id, feed)
    except IntegrityError:
        # A concurrent finisher inserted the same result rows first
        db.rollback()
        logger.info("Competition %s: results written concurrently, updating them", competition_id)
        return _rank(db, competition_id, feed)


def finish_competition(
    db: Session,
    competition_id: int,
    user_id: Optional[int] = None,
    score: Optional[float] = None,
    answers: Optional[Dict[str, str]] = None,
    time_taken: Optional[int] = None,
    feed: Optional[ChangeFeed] = None
) -> FinishOutcome:
    """
    Record ``user_id``'s completion (when given) and, once every joined
    participant has completed, rank everyone and write result rows.
    """
    if user_id is not None:
        record_completion(db, competition_id, user_id, score, answers, time_taken, feed=feed)
    return rank_competition(db, competition_id, feed)
