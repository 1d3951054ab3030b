from typing import Iterable, Optional

from pydantic import BaseModel

from ..models.quiz import QuizHistory
from ..models.result import CompetitionResult


class OverallStats(BaseModel):
    best_overall_rank: Optional[int] = None
    overall_points: float = 0
    overall_win_rate: float = 0
    total_quizzes_played: int = 0
    total_competitions: int = 0
    wins: int = 0


def calculate_overall_stats(
    solo_history: Iterable[QuizHistory],
    competition_history: Iterable[CompetitionResult]
) -> OverallStats:
    """
    Combine solo and competition history.

    Solo quizzes contribute their percentage, competitions their score.
    Win rate is the share of competitions finished in first place.
    """
    stats = OverallStats()

    for quiz in solo_history:
        stats.total_quizzes_played += 1
        stats.overall_points += quiz.percentage or 0

    for result in competition_history:
        stats.total_quizzes_played += 1
        stats.total_competitions += 1
        stats.overall_points += result.score or 0
        if result.final_rank == 1:
            stats.wins += 1
        if result.final_rank is not None and (
            stats.best_overall_rank is None or result.final_rank < stats.best_overall_rank
        ):
            stats.best_overall_rank = result.final_rank

    if stats.total_competitions:
        stats.overall_win_rate = round(stats.wins / stats.total_competitions * 100, 1)

    return stats
