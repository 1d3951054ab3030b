from typing import Iterable, List, Tuple

from ..models.competition import CompetitionParticipant


def ranking_key(participant: CompetitionParticipant) -> Tuple[float, int]:
    """Score descending, then time taken ascending."""
    return (-(participant.score or 0), participant.time_taken or 0)


def live_leaderboard(participants: Iterable[CompetitionParticipant]) -> List[CompetitionParticipant]:
    """Sorted copy of the participants; the input is left untouched."""
    return sorted(participants, key=ranking_key)


def assign_ranks(participants: Iterable[CompetitionParticipant]) -> List[Tuple[int, CompetitionParticipant]]:
    """Pair each participant with its final rank, 1..N."""
    return [(index + 1, participant) for index, participant in enumerate(live_leaderboard(participants))]
