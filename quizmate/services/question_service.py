"""
HTTP client for the question service.

The question service wraps the LLM: it generates competition question sets
(``start-competition``), solo quizzes (``generate-quiz``) and answer
explanations (``explain-answer``). Calls are attempted once; any failure is
raised as QuestionGenerationError with the most useful message the response
offers.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from pydantic import ValidationError as PydanticValidationError

from ..config import QUESTION_SERVICE_KEY, QUESTION_SERVICE_TIMEOUT, QUESTION_SERVICE_URL
from ..errors import QuestionGenerationError
from .grading import Question, parse_questions
from .preferences import QuizPreferences

logger = logging.getLogger(__name__)


@dataclass
class GeneratedQuiz:
    questions: List[Question]
    start_time: datetime


def _error_message(response: requests.Response) -> str:
    message = f"HTTP {response.status_code}: {response.reason}"
    try:
        data = response.json()
    except ValueError:
        if response.text:
            message += f" - Response: {response.text}"
        return message

    if isinstance(data, dict):
        if data.get("error"):
            return f"Question service error: {data['error']}"
        if data.get("details"):
            return f"{message} - Details: {data['details']}"
        if data.get("message"):
            return f"{message} - Message: {data['message']}"
    return message


def _parse_start_time(value: Optional[str]) -> datetime:
    if not value:
        return datetime.utcnow()
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


class QuestionServiceClient:
    def __init__(
        self,
        base_url: str = QUESTION_SERVICE_URL,
        service_key: str = QUESTION_SERVICE_KEY,
        timeout: float = QUESTION_SERVICE_TIMEOUT,
        http: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.timeout = timeout
        self.http = http or requests.Session()

    def _post(self, function: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}/{function}"
        headers = {"Content-Type": "application/json"}
        if self.service_key:
            headers["Authorization"] = f"Bearer {self.service_key}"

        try:
            response = self.http.post(url, json=payload, headers=headers, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Question service %s unreachable: %s", function, exc)
            raise QuestionGenerationError(f"Question service unreachable: {exc}") from exc

        if not response.ok:
            message = _error_message(response)
            logger.warning("Question service %s failed: %s", function, message)
            raise QuestionGenerationError(message)

        try:
            return response.json()
        except ValueError as exc:
            raise QuestionGenerationError("Question service returned invalid JSON") from exc

    def _questions(self, data: Dict[str, Any]) -> List[Question]:
        raw = data.get("questions")
        if not raw:
            raise QuestionGenerationError("Question service returned no questions")
        try:
            return parse_questions(raw)
        except PydanticValidationError as exc:
            raise QuestionGenerationError(f"Question service returned malformed questions: {exc}") from exc

    def start_competition(
        self,
        competition_id: int,
        api_key: str,
        preferences: Dict[str, Any]
    ) -> GeneratedQuiz:
        """Generate the shared question set for a competition."""
        data = self._post("start-competition", {
            "competitionId": competition_id,
            "apiKey": api_key,
            "preferences": preferences,
        })
        return GeneratedQuiz(
            questions=self._questions(data),
            start_time=_parse_start_time(data.get("startTime"))
        )

    def generate_quiz(self, api_key: str, preferences: QuizPreferences) -> List[Question]:
        data = self._post("generate-quiz", {
            "apiKey": api_key,
            "preferences": preferences.model_dump(),
        })
        return self._questions(data)

    def explain(
        self,
        api_key: str,
        question_text: str,
        correct_answer: str,
        topic: str,
        language: str
    ) -> str:
        data = self._post("explain-answer", {
            "apiKey": api_key,
            "question": question_text,
            "correctAnswer": correct_answer,
            "topic": topic,
            "language": language,
        })
        explanation = data.get("explanation")
        if not explanation:
            raise QuestionGenerationError("Question service returned no explanation")
        return explanation

    def close(self) -> None:
        self.http.close()
