from typing import List, Literal, Optional

from pydantic import BaseModel, model_validator

DEFAULT_PENALTY = 0.25
MIN_QUESTIONS = 1
MAX_QUESTIONS = 50


class QuizPreferences(BaseModel):
    """
    Settings for generating and running a quiz.

    A quiz is timed per question (``time_limit``) or as a whole
    (``total_time_limit``), never both. Limits are in seconds and only apply
    when ``time_limit_enabled`` is set.
    """
    course: str = ""
    topic: str = ""
    subtopic: str = ""
    question_count: int = 5
    question_types: List[str] = ["multiple-choice"]
    language: str = "English"
    difficulty: Literal["easy", "medium", "hard"] = "medium"
    time_limit_enabled: bool = False
    time_limit: Optional[int] = None
    total_time_limit: Optional[int] = None
    negative_marking: bool = False
    negative_marks: float = 0
    mode: Literal["practice", "exam"] = "practice"
    answer_mode: Literal["immediate", "end"] = "immediate"

    @model_validator(mode="after")
    def normalize(self) -> "QuizPreferences":
        self.question_count = max(MIN_QUESTIONS, min(MAX_QUESTIONS, self.question_count))
        if not self.question_types:
            self.question_types = ["multiple-choice"]

        if self.time_limit_enabled:
            if self.time_limit and self.total_time_limit:
                raise ValueError("Choose either a per-question or a total time limit, not both")
        else:
            self.time_limit = None
            self.total_time_limit = None

        if self.negative_marking:
            self.negative_marks = abs(self.negative_marks) or DEFAULT_PENALTY
        else:
            self.negative_marks = 0

        self.answer_mode = "immediate" if self.mode == "practice" else "end"
        return self

    @property
    def penalty(self) -> float:
        """Points subtracted for an answered but incorrect question."""
        return self.negative_marks if self.negative_marking else 0.0

    @property
    def subject(self) -> str:
        return self.topic or self.course


DEFAULT_PREFERENCES = QuizPreferences()
