import secrets
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from main import app
from quizmate.controller.reconciler import ControllerRegistry
from quizmate.database import get_engine
from quizmate.models import Session as UserSession
from quizmate.models import User
from quizmate.realtime import ChangeFeed
from quizmate.services.auth import hash_password
from quizmate.services.grading import parse_questions
from quizmate.services.question_service import GeneratedQuiz
from quizmate.store.competition_store import CompetitionStore
from quizmate.store.quiz_store import QuizStore

# Create in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

SAMPLE_QUESTIONS = [
    {
        "id": 1,
        "type": "multiple-choice",
        "text": "What is the capital of France?",
        "options": ["Paris", "Rome", "Madrid", "Berlin"],
        "correctAnswer": "Paris",
    },
    {
        "id": 2,
        "type": "true-false",
        "text": "Python lists are immutable.",
        "options": ["True", "False"],
        "correctAnswer": "False",
    },
    {
        "id": 3,
        "type": "multi-select",
        "text": "Which of these are prime?",
        "options": ["2", "3", "4", "5"],
        "correctOptions": ["2", "3", "5"],
    },
    {
        "id": 4,
        "type": "short-answer",
        "text": "What does HTTP stand for?",
        "correctAnswer": "HyperText Transfer Protocol",
        "keywords": ["hypertext transfer"],
    },
]


class FakeQuestionService:
    """Stands in for the HTTP question service."""

    def __init__(self, questions=None):
        self.questions = questions if questions is not None else SAMPLE_QUESTIONS
        self.error = None
        self.calls = []
        self.closed = False

    def start_competition(self, competition_id, api_key, preferences):
        self.calls.append(("start-competition", competition_id))
        if self.error:
            raise self.error
        return GeneratedQuiz(questions=parse_questions(self.questions), start_time=datetime.utcnow())

    def generate_quiz(self, api_key, preferences):
        self.calls.append(("generate-quiz", preferences.subject))
        if self.error:
            raise self.error
        return parse_questions(self.questions)[:preferences.question_count]

    def explain(self, api_key, question_text, correct_answer, topic, language):
        self.calls.append(("explain-answer", question_text))
        if self.error:
            raise self.error
        return f"The answer is {correct_answer}."

    def close(self):
        self.closed = True


@pytest.fixture(name="session")
def session_fixture():
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="feed")
def feed_fixture():
    feed = ChangeFeed()
    yield feed
    feed.close()


@pytest.fixture(name="question_service")
def question_service_fixture():
    return FakeQuestionService()


@pytest.fixture(name="make_user")
def make_user_fixture(session: Session):
    """Factory for users: make_user("alice") -> alice@example.com."""
    def make_user(name: str = "testuser", password: str = "password123") -> User:
        user = User(
            email=f"{name}@example.com",
            password_hash=hash_password(password),
            full_name=name.title()
        )
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    return make_user


@pytest.fixture(name="competition_store")
def competition_store_fixture(session: Session, feed: ChangeFeed, question_service: FakeQuestionService):
    """Factory for a competition store acting as ``user``."""
    stores = []

    def competition_store(user: User) -> CompetitionStore:
        store = CompetitionStore(
            engine,
            feed,
            question_service,
            user_id=user.id,
            user_email=user.email,
        ).init()
        stores.append(store)
        return store

    yield competition_store
    for store in stores:
        store.teardown()


@pytest.fixture(name="quiz_store")
def quiz_store_fixture(session: Session, question_service: FakeQuestionService):
    def quiz_store(user: User, clock=None) -> QuizStore:
        if clock is None:
            return QuizStore(engine, question_service, user_id=user.id).init()
        return QuizStore(engine, question_service, user_id=user.id, clock=clock).init()

    return quiz_store


@pytest.fixture(name="client")
def client_fixture(session: Session, question_service: FakeQuestionService):
    def get_engine_override():
        return engine

    app.dependency_overrides[get_engine] = get_engine_override
    with TestClient(app) as client:
        app.state.question_service = question_service
        # Background reconciliation off: each request reconciles explicitly
        app.state.controllers = ControllerRegistry(app.state.feed, question_service, poll_interval=0)
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(name="login")
def login_fixture(session: Session):
    """Create a session for ``user`` and put its cookie on ``client``."""
    def login(client: TestClient, user: User) -> str:
        token = secrets.token_urlsafe(32)
        session.add(UserSession(
            user_id=user.id,
            session_token=token,
            expires_at=datetime.utcnow() + timedelta(days=7)
        ))
        session.commit()
        client.cookies.set("session_token", token)
        return token

    return login


@pytest.fixture(name="user_token")
def user_token_fixture(client: TestClient, make_user, login):
    """Create a test user, log them in on ``client`` and return the token."""
    return login(client, make_user("testuser"))
