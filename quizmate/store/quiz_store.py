"""
Solo quiz store.

Owns one user's solo quiz: their API key and preferences, the generated
questions, answers as they are given, the countdown and the final result.
Finishing a quiz is guarded so it happens once however many paths (the
countdown, the last "next", an explicit finish) race to it.
"""
import logging
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from ..config import QUIZ_SESSION_MAX_AGE_SECONDS
from ..errors import APIError, AuthenticationError, BackendError, NotFoundError, ValidationError
from ..models.quiz import ApiKey, QuizHistory, QuizPreferenceRecord
from ..services.grading import (
    ChoiceQuestion,
    MultiSelectQuestion,
    Question,
    SequenceQuestion,
    TextQuestion,
    dump_questions,
    parse_questions,
)
from ..services.preferences import QuizPreferences
from ..services.question_service import QuestionServiceClient
from ..services.scoring import QuizResult, score_quiz
from ..services.timers import QuizTimer, TimerMode

logger = logging.getLogger(__name__)


@dataclass
class QuizSession:
    """Wall-clock bookkeeping for a running quiz, in seconds."""
    is_active: bool
    start_time: float
    total_elapsed: float = 0
    paused_time: Optional[float] = None


def _correct_answer_text(question: Question) -> str:
    if isinstance(question, (ChoiceQuestion, TextQuestion)):
        return question.correct_answer
    if isinstance(question, MultiSelectQuestion):
        return ", ".join(question.correct_options)
    if isinstance(question, SequenceQuestion):
        return ", ".join(question.correct_sequence)
    return "N/A"


class QuizStore:
    def __init__(
        self,
        bind: Engine,
        question_service: Optional[QuestionServiceClient] = None,
        user_id: Optional[int] = None,
        clock: Callable[[], float] = time.time
    ):
        self.bind = bind
        self.question_service = question_service
        self.user_id = user_id
        self.clock = clock

        self.api_key: Optional[str] = None
        self.preferences: Optional[QuizPreferences] = None
        self.questions: List[Question] = []
        self.current_question_index = 0
        self.answers: Dict[int, str] = {}
        self.result: Optional[QuizResult] = None
        self.explanation: Optional[str] = None
        self.session: Optional[QuizSession] = None
        self.timer: Optional[QuizTimer] = None
        self.is_loading = False
        self.error: Optional[str] = None

        self.initialized = False

    def init(self) -> "QuizStore":
        self.initialized = True
        return self

    def teardown(self) -> None:
        self._stop_timer()
        self.initialized = False

    # Helpers

    def _session(self) -> Session:
        return Session(self.bind, expire_on_commit=False)

    @contextmanager
    def _operation(self, description: str):
        self.is_loading = True
        self.error = None
        try:
            yield
        except APIError as exc:
            self.error = exc.message
            logger.warning("Failed to %s: %s", description, exc.message)
            raise
        except SQLAlchemyError as exc:
            self.error = f"Failed to {description}"
            logger.exception("Database error while trying to %s", description)
            raise BackendError(self.error) from exc
        finally:
            self.is_loading = False

    def _require_user(self) -> int:
        if self.user_id is None:
            raise AuthenticationError("User not authenticated.")
        return self.user_id

    def _stop_timer(self) -> None:
        if self.timer is not None:
            self.timer.stop()
            self.timer = None

    @property
    def current_question(self) -> Optional[Question]:
        if not self.questions:
            return None
        return self.questions[self.current_question_index]

    @property
    def finished(self) -> bool:
        return self.result is not None

    # API key and preferences

    def load_api_key(self) -> Optional[str]:
        with self._operation("load API key"):
            user_id = self._require_user()
            with self._session() as db:
                record = db.exec(select(ApiKey).where(ApiKey.user_id == user_id)).first()
            self.api_key = record.api_key if record else None
            return self.api_key

    def save_api_key(self, api_key: str) -> None:
        with self._operation("save API key"):
            user_id = self._require_user()
            if not api_key or not api_key.strip():
                raise ValidationError("API key is required.")

            with self._session() as db:
                record = db.exec(select(ApiKey).where(ApiKey.user_id == user_id)).first()
                if record is None:
                    record = ApiKey(user_id=user_id, api_key=api_key.strip())
                else:
                    record.api_key = api_key.strip()
                    record.updated_at = datetime.utcnow()
                db.add(record)
                db.commit()
            self.api_key = api_key.strip()

    def load_preferences(self) -> Optional[QuizPreferences]:
        with self._operation("load preferences"):
            user_id = self._require_user()
            with self._session() as db:
                record = db.exec(
                    select(QuizPreferenceRecord).where(QuizPreferenceRecord.user_id == user_id)
                ).first()
            self.preferences = QuizPreferences(**record.preferences) if record else None
            return self.preferences

    def save_preferences(self, preferences: Union[QuizPreferences, Dict[str, Any]]) -> QuizPreferences:
        """Validate, normalize and store the caller's preferences."""
        with self._operation("save preferences"):
            user_id = self._require_user()
            if isinstance(preferences, QuizPreferences):
                preferences = preferences.model_dump()
            try:
                validated = QuizPreferences(**preferences)
            except PydanticValidationError as exc:
                raise ValidationError(
                    "Invalid quiz preferences.",
                    details={"errors": exc.errors(include_url=False, include_context=False)}
                ) from exc

            with self._session() as db:
                record = db.exec(
                    select(QuizPreferenceRecord).where(QuizPreferenceRecord.user_id == user_id)
                ).first()
                if record is None:
                    record = QuizPreferenceRecord(user_id=user_id)
                record.preferences = validated.model_dump()
                record.updated_at = datetime.utcnow()
                db.add(record)
                db.commit()

            self.preferences = validated
            return validated

    # Running a quiz

    def generate_quiz(self) -> List[Question]:
        """Fetch a fresh question set and start a new quiz with it."""
        with self._operation("generate quiz"):
            self._require_user()
            self.reset_quiz()
            if self.preferences is None:
                raise ValidationError("Quiz preferences not set.")
            if not self.api_key:
                raise ValidationError("API key not set.")
            if self.question_service is None:
                raise BackendError("Question service is not configured.")

            questions = self.question_service.generate_quiz(self.api_key, self.preferences)

            self.questions = questions
            self.current_question_index = 0
            self.answers = {}
            self.session = QuizSession(is_active=True, start_time=self.clock())
            self.timer = QuizTimer.from_preferences(self.preferences, on_expire=self._on_timer_expired)
            logger.info("User %s started a %d question quiz", self.user_id, len(questions))
            return questions

    def start_timer(self, interval: float = 1.0):
        """Drive the countdown from the running event loop, if the quiz is timed."""
        if self.timer is None:
            return None
        return self.timer.start(interval)

    def _on_timer_expired(self, mode: TimerMode) -> None:
        if mode == TimerMode.PER_QUESTION and self.current_question_index < len(self.questions) - 1:
            self.next_question()
        else:
            logger.info("Time is up for user %s", self.user_id)
            self.finish_quiz()

    def answer_question(self, question_id: int, answer: str) -> None:
        if self.finished:
            raise ValidationError("This quiz is already finished.")
        if not any(question.id == question_id for question in self.questions):
            raise NotFoundError(f"Question {question_id} is not part of the current quiz.")
        self.answers[question_id] = answer

    def next_question(self) -> int:
        if self.current_question_index < len(self.questions) - 1:
            self.current_question_index += 1
            if self.timer is not None:
                self.timer.next_question()
        return self.current_question_index

    def prev_question(self) -> int:
        if self.current_question_index > 0:
            self.current_question_index -= 1
        return self.current_question_index

    def finish_quiz(self) -> Optional[QuizResult]:
        """
        Score the quiz and record it in the caller's history.

        Runs once per quiz: later calls return the result already computed.
        Returns None when there is no quiz to finish.
        """
        if self.result is not None:
            return self.result
        if not self.questions:
            logger.warning("No questions available to finish quiz")
            return None

        preferences = self.preferences or QuizPreferences()
        self.result = score_quiz(self.questions, self.answers, preferences.penalty)
        self.current_question_index = 0
        self.session = None
        self._stop_timer()

        if self.user_id is not None:
            self._save_history(self.result, preferences)
        return self.result

    def _save_history(self, result: QuizResult, preferences: QuizPreferences) -> None:
        with self._operation("save quiz result"):
            with self._session() as db:
                db.add(QuizHistory(
                    user_id=self.user_id,
                    topic=preferences.subject,
                    total_questions=result.total_questions,
                    correct_answers=result.correct_answers,
                    questions_attempted=result.questions_attempted,
                    questions_skipped=result.questions_skipped,
                    final_score=result.final_score,
                    percentage=result.percentage,
                    negative_marks_deducted=result.negative_marks_deducted,
                    preferences=preferences.model_dump(),
                    result=result.model_dump()
                ))
                db.commit()

    def reset_quiz(self) -> None:
        self._stop_timer()
        self.questions = []
        self.current_question_index = 0
        self.answers = {}
        self.result = None
        self.error = None
        self.explanation = None
        self.session = None

    def pause_quiz(self) -> None:
        if self.session is None or not self.session.is_active:
            return
        now = self.clock()
        self.session.total_elapsed += now - self.session.start_time
        self.session.is_active = False
        self.session.paused_time = now
        if self.timer is not None:
            self.timer.pause()

    def resume_quiz(self) -> None:
        if self.session is None or self.session.is_active:
            return
        self.session.is_active = True
        self.session.start_time = self.clock()
        self.session.paused_time = None
        if self.timer is not None:
            self.timer.resume()

    @property
    def elapsed(self) -> float:
        """Seconds spent on the quiz, pauses excluded."""
        if self.session is None:
            return 0
        if self.session.is_active:
            return self.session.total_elapsed + self.clock() - self.session.start_time
        return self.session.total_elapsed

    # Saving and resuming

    def snapshot(self) -> Optional[Dict[str, Any]]:
        """A JSON-serializable picture of the running quiz, or None when idle."""
        if not self.questions or self.session is None:
            return None

        session = QuizSession(**asdict(self.session))
        if session.is_active:
            now = self.clock()
            session.total_elapsed += now - session.start_time
            session.start_time = now

        return {
            "questions": dump_questions(self.questions),
            "current_question_index": self.current_question_index,
            "answers": {str(key): value for key, value in self.answers.items()},
            "session": asdict(session),
            "preferences": self.preferences.model_dump() if self.preferences else None,
            "timer_remaining": self.timer.remaining if self.timer is not None else None,
            "timestamp": self.clock(),
        }

    def restore(self, data: Optional[Dict[str, Any]]) -> bool:
        """
        Resume a quiz from ``snapshot()`` output.

        Snapshots older than QUIZ_SESSION_MAX_AGE_SECONDS, or that cannot be
        read back, are discarded and False is returned.
        """
        if not data:
            return False

        age = self.clock() - data.get("timestamp", 0)
        if age >= QUIZ_SESSION_MAX_AGE_SECONDS:
            logger.info("Discarding saved quiz for user %s (%.0fs old)", self.user_id, age)
            return False

        try:
            questions = parse_questions(data["questions"])
            answers = {int(key): value for key, value in data.get("answers", {}).items()}
            session = QuizSession(**data["session"])
            preferences = QuizPreferences(**data["preferences"]) if data.get("preferences") else self.preferences
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable saved quiz for user %s: %s", self.user_id, exc)
            return False

        self.reset_quiz()
        self.questions = questions
        self.current_question_index = min(data.get("current_question_index", 0), len(questions) - 1)
        self.answers = answers
        self.session = session
        self.preferences = preferences

        if preferences is not None:
            self.timer = QuizTimer.from_preferences(preferences, on_expire=self._on_timer_expired)
            if data.get("timer_remaining") is not None:
                self.timer.remaining = data["timer_remaining"]

        if session.is_active:
            session.start_time = self.clock()
        elif self.timer is not None:
            self.timer.pause()
        return True

    # Explanations and history

    def get_explanation(self, question_id: int) -> str:
        with self._operation("get explanation"):
            question = next((q for q in self.questions if q.id == question_id), None)
            if question is None:
                raise NotFoundError("Question not found.")
            if not self.api_key:
                raise ValidationError("API key not set.")
            if self.preferences is None:
                raise ValidationError("Quiz preferences not set.")
            if self.question_service is None:
                raise BackendError("Question service is not configured.")

            self.explanation = None
            self.explanation = self.question_service.explain(
                self.api_key,
                question.text,
                _correct_answer_text(question),
                self.preferences.subject,
                self.preferences.language
            )
            return self.explanation

    def reset_explanation(self) -> None:
        self.explanation = None

    def load_history(self, limit: Optional[int] = None) -> List[QuizHistory]:
        """The caller's finished solo quizzes, newest first."""
        with self._operation("load quiz history"):
            user_id = self._require_user()
            statement = (
                select(QuizHistory)
                .where(QuizHistory.user_id == user_id)
                .order_by(col(QuizHistory.created_at).desc(), col(QuizHistory.id).desc())
            )
            if limit:
                statement = statement.limit(limit)
            with self._session() as db:
                return list(db.exec(statement).all())
