"""Forward-only status transitions for competitions, participants and queue tickets."""
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Union

from ..errors import InvalidTransitionError
from ..models.competition import (
    Competition,
    CompetitionParticipant,
    CompetitionStatus,
    ParticipantStatus,
)
from ..models.queue import QueueStatus, RandomQueueEntry

logger = logging.getLogger(__name__)

Status = Union[str, Enum]


def _value(status: Status) -> str:
    # Columns hold plain strings; tables are keyed by the raw value
    return status.value if isinstance(status, Enum) else status


def _table(transitions) -> Dict[str, FrozenSet[str]]:
    return {
        _value(current): frozenset(_value(new) for new in allowed)
        for current, allowed in transitions.items()
    }


COMPETITION_TRANSITIONS = _table({
    CompetitionStatus.WAITING: {CompetitionStatus.ACTIVE, CompetitionStatus.CANCELLED},
    CompetitionStatus.ACTIVE: {CompetitionStatus.COMPLETED, CompetitionStatus.CANCELLED},
    CompetitionStatus.COMPLETED: set(),
    CompetitionStatus.CANCELLED: set(),
})

PARTICIPANT_TRANSITIONS = _table({
    ParticipantStatus.JOINED: {ParticipantStatus.COMPLETED, ParticipantStatus.DECLINED},
    ParticipantStatus.COMPLETED: set(),
    ParticipantStatus.DECLINED: set(),
})

QUEUE_TRANSITIONS = _table({
    QueueStatus.WAITING: {QueueStatus.MATCHED, QueueStatus.CANCELLED},
    QueueStatus.MATCHED: {QueueStatus.CANCELLED},
    QueueStatus.CANCELLED: set(),
})

# Statuses that still count towards "everyone has finished"
COUNTED_PARTICIPANT_STATUSES = frozenset({
    ParticipantStatus.JOINED.value,
    ParticipantStatus.COMPLETED.value,
})


def can_transition(table: Dict[str, FrozenSet[str]], current: Status, new: Status) -> bool:
    return _value(new) in table.get(_value(current), frozenset())


def _check(kind: str, table: Dict[str, FrozenSet[str]], current: Status, new: Status) -> None:
    if not can_transition(table, current, new):
        raise InvalidTransitionError(
            f"Cannot move {kind} from '{_value(current)}' to '{_value(new)}'",
            details={"from": _value(current), "to": _value(new)}
        )


def transition_competition(competition: Competition, new_status: CompetitionStatus) -> None:
    """Move a competition forward; raises InvalidTransitionError otherwise."""
    _check("competition", COMPETITION_TRANSITIONS, competition.status, new_status)
    logger.info("Competition %s: %s -> %s", competition.id, competition.status, new_status.value)
    competition.status = new_status.value
    competition.updated_at = datetime.utcnow()
    if new_status in (CompetitionStatus.COMPLETED, CompetitionStatus.CANCELLED):
        competition.end_time = competition.updated_at


def transition_participant(participant: CompetitionParticipant, new_status: ParticipantStatus) -> None:
    _check("participant", PARTICIPANT_TRANSITIONS, participant.status, new_status)
    participant.status = new_status.value
    if new_status == ParticipantStatus.COMPLETED:
        participant.completed_at = datetime.utcnow()


def transition_ticket(entry: RandomQueueEntry, new_status: QueueStatus) -> None:
    _check("queue ticket", QUEUE_TRANSITIONS, entry.status, new_status)
    entry.status = new_status.value
    entry.updated_at = datetime.utcnow()


def is_fully_completed(participants) -> bool:
    """True when every joined/completed participant has completed."""
    counted = [p for p in participants if _value(p.status) in COUNTED_PARTICIPANT_STATUSES]
    return bool(counted) and all(_value(p.status) == ParticipantStatus.COMPLETED.value for p in counted)
