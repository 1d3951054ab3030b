"""
Question variants and per-variant grading.

Questions arrive from the question service as JSON objects tagged by
``type``. They are parsed into one model per answer shape, and ``grade``
branches on the model class, so adding a question type means adding a model
and a branch here.
"""
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class QuestionBase(BaseModel):
    # The question service speaks camelCase (correctAnswer, correctOptions, ...)
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    text: str
    explanation: Optional[str] = None


class ChoiceQuestion(QuestionBase):
    """Single correct option: multiple choice, true/false and scenario questions."""
    type: Literal["multiple-choice", "true-false", "case-study", "situation"]
    options: List[str] = []
    correct_answer: str
    scenario: Optional[str] = None


class MultiSelectQuestion(QuestionBase):
    type: Literal["multi-select"]
    options: List[str] = []
    correct_options: List[str]


class SequenceQuestion(QuestionBase):
    type: Literal["sequence"]
    items: List[str] = []
    correct_sequence: List[str]


class TextQuestion(QuestionBase):
    """Free text answer, accepted on exact match or on any keyword."""
    type: Literal["short-answer", "fill-blank"]
    correct_answer: str
    keywords: List[str] = []


Question = Annotated[
    Union[ChoiceQuestion, MultiSelectQuestion, SequenceQuestion, TextQuestion],
    Field(discriminator="type")
]

_question_list = TypeAdapter(List[Question])


def parse_questions(raw: List[Dict[str, Any]]) -> List[Question]:
    """Parse question dicts; raises pydantic.ValidationError on unknown shapes."""
    return _question_list.validate_python(raw)


def dump_questions(questions: List[Question]) -> List[Dict[str, Any]]:
    return [question.model_dump(by_alias=True) for question in questions]


def _split(answer: str) -> List[str]:
    return [part.strip() for part in answer.split(",") if part.strip()]


def is_answered(answer: Optional[str]) -> bool:
    return bool(answer and answer.strip())


def grade(question: Question, answer: Optional[str]) -> bool:
    """Return True when ``answer`` is correct for ``question``."""
    if not is_answered(answer):
        return False

    if isinstance(question, ChoiceQuestion):
        return answer.strip().lower() == question.correct_answer.strip().lower()

    if isinstance(question, MultiSelectQuestion):
        return sorted(_split(answer)) == sorted(question.correct_options)

    if isinstance(question, SequenceQuestion):
        return _split(answer) == question.correct_sequence

    if isinstance(question, TextQuestion):
        given = answer.lower().strip()
        if given == question.correct_answer.lower().strip():
            return True
        return any(keyword.lower() in given for keyword in question.keywords)

    raise TypeError(f"Unsupported question type: {type(question).__name__}")
