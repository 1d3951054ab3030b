from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel

from .grading import Question, grade, is_answered


class QuestionOutcome(BaseModel):
    question_id: int
    type: str
    user_answer: Optional[str] = None
    answered: bool
    is_correct: bool


class TypePerformance(BaseModel):
    correct: int = 0
    total: int = 0


class QuizResult(BaseModel):
    total_questions: int
    correct_answers: int
    incorrect_answers: int
    questions_attempted: int
    questions_skipped: int
    raw_score: int
    final_score: float
    percentage: int
    negative_marks_deducted: float
    question_type_performance: Dict[str, TypePerformance]
    questions: List[QuestionOutcome]


def answer_for(answers: Mapping, question_id: int) -> Optional[str]:
    """Answers are keyed by question id; JSON round trips turn the keys into strings."""
    if question_id in answers:
        return answers[question_id]
    return answers.get(str(question_id))


def score_quiz(
    questions: List[Question],
    answers: Mapping,
    penalty: float = 0.0
) -> QuizResult:
    """
    Score a set of answers.

    Scoring:
    - +1 for every correct answer
    - answered but incorrect: -penalty (pass 0 when negative marking is off)
    - skipped: 0, whatever the negative marking setting
    The final score never drops below 0.
    """
    penalty = abs(penalty)
    correct = 0
    incorrect = 0
    skipped = 0
    performance: Dict[str, TypePerformance] = {}
    outcomes = []

    for question in questions:
        user_answer = answer_for(answers, question.id)
        answered = is_answered(user_answer)
        is_correct = grade(question, user_answer)

        type_stats = performance.setdefault(question.type, TypePerformance())
        type_stats.total += 1

        if is_correct:
            correct += 1
            type_stats.correct += 1
        elif answered:
            incorrect += 1
        else:
            skipped += 1

        outcomes.append(QuestionOutcome(
            question_id=question.id,
            type=question.type,
            user_answer=user_answer,
            answered=answered,
            is_correct=is_correct
        ))

    deducted = incorrect * penalty
    final_score = max(0.0, correct - deducted)
    total = len(questions)

    return QuizResult(
        total_questions=total,
        correct_answers=correct,
        incorrect_answers=incorrect,
        questions_attempted=correct + incorrect,
        questions_skipped=skipped,
        raw_score=correct,
        final_score=final_score,
        percentage=round(final_score / total * 100) if total else 0,
        negative_marks_deducted=deducted,
        question_type_performance=performance,
        questions=outcomes
    )
