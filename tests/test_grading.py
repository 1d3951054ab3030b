import pytest
from pydantic import ValidationError

from quizmate.services.grading import (
    ChoiceQuestion,
    MultiSelectQuestion,
    SequenceQuestion,
    TextQuestion,
    dump_questions,
    grade,
    parse_questions,
)


def test_parse_questions_picks_variant_by_type():
    questions = parse_questions([
        {"id": 1, "type": "multiple-choice", "text": "Q1", "options": ["a", "b"], "correctAnswer": "a"},
        {"id": 2, "type": "case-study", "text": "Q2", "scenario": "A shop...", "correctAnswer": "b"},
        {"id": 3, "type": "multi-select", "text": "Q3", "options": ["x", "y"], "correctOptions": ["x"]},
        {"id": 4, "type": "sequence", "text": "Q4", "items": ["1", "2"], "correctSequence": ["2", "1"]},
        {"id": 5, "type": "fill-blank", "text": "Q5", "correctAnswer": "mitochondria"},
    ])

    assert [type(q) for q in questions] == [
        ChoiceQuestion, ChoiceQuestion, MultiSelectQuestion, SequenceQuestion, TextQuestion
    ]
    assert questions[1].scenario == "A shop..."


def test_unknown_question_type_is_rejected():
    with pytest.raises(ValidationError):
        parse_questions([{"id": 1, "type": "essay", "text": "Discuss."}])


def test_dump_questions_uses_camel_case():
    questions = parse_questions([
        {"id": 1, "type": "true-false", "text": "Q", "options": ["True", "False"], "correctAnswer": "True"}
    ])
    dumped = dump_questions(questions)
    assert dumped[0]["correctAnswer"] == "True"
    assert parse_questions(dumped) == questions


def test_choice_grading_ignores_case_and_whitespace():
    question = ChoiceQuestion(id=1, type="multiple-choice", text="Q", options=["Paris"], correct_answer="Paris")
    assert grade(question, "  paris ") is True
    assert grade(question, "Rome") is False


def test_unanswered_is_never_correct():
    question = ChoiceQuestion(id=1, type="true-false", text="Q", correct_answer="True")
    assert grade(question, None) is False
    assert grade(question, "   ") is False


def test_multi_select_is_order_insensitive():
    question = MultiSelectQuestion(id=1, type="multi-select", text="Q", correct_options=["2", "3", "5"])
    assert grade(question, "5, 2,3") is True
    assert grade(question, "2,3") is False


def test_sequence_requires_exact_order():
    question = SequenceQuestion(id=1, type="sequence", text="Q", correct_sequence=["a", "b", "c"])
    assert grade(question, "a, b, c") is True
    assert grade(question, "b, a, c") is False


def test_text_answers_accept_keywords():
    question = TextQuestion(
        id=1,
        type="short-answer",
        text="Q",
        correct_answer="HyperText Transfer Protocol",
        keywords=["hypertext transfer"]
    )
    assert grade(question, "hypertext transfer protocol") is True
    assert grade(question, "It is the HyperText Transfer thing") is True
    assert grade(question, "File transfer") is False
