from datetime import datetime
from typing import Optional
from fastapi import Request, Depends
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from .database import get_engine, get_session
from .errors import AuthenticationError
from .models.user import User
from .models.session import Session as UserSession
from .config import SESSION_COOKIE_NAME
from .realtime import ChangeFeed
from .services.question_service import QuestionServiceClient
from .store.competition_store import CompetitionStore
from .store.quiz_store import QuizStore
from .controller.reconciler import ControllerRegistry, StepController


def get_user_for_token(db: Session, session_token: Optional[str]) -> Optional[User]:
    """The user behind an unexpired session token, if any."""
    if not session_token:
        return None

    # Find valid session
    statement = select(UserSession).where(
        UserSession.session_token == session_token,
        UserSession.expires_at > datetime.utcnow()
    )
    user_session = db.exec(statement).first()

    if not user_session:
        return None

    statement = select(User).where(User.id == user_session.user_id)
    return db.exec(statement).first()


async def get_current_user(
    request: Request,
    db: Session = Depends(get_session)
) -> Optional[User]:
    """Get the current logged-in user from session cookie."""
    return get_user_for_token(db, request.cookies.get(SESSION_COOKIE_NAME))


async def require_user(
    current_user: Optional[User] = Depends(get_current_user)
) -> User:
    """Require a logged-in user."""
    if not current_user:
        raise AuthenticationError("Not authenticated")
    return current_user


def get_feed(request: Request) -> ChangeFeed:
    return request.app.state.feed


def get_question_service(request: Request) -> QuestionServiceClient:
    return request.app.state.question_service


def get_controllers(request: Request) -> ControllerRegistry:
    return request.app.state.controllers


def get_competition_store(
    current_user: User = Depends(require_user),
    bind: Engine = Depends(get_engine),
    feed: ChangeFeed = Depends(get_feed),
    question_service: QuestionServiceClient = Depends(get_question_service)
) -> CompetitionStore:
    """A request-scoped competition store acting as the current user."""
    return CompetitionStore(
        bind,
        feed,
        question_service,
        user_id=current_user.id,
        user_email=current_user.email
    )


def get_quiz_store(
    current_user: User = Depends(require_user),
    bind: Engine = Depends(get_engine),
    question_service: QuestionServiceClient = Depends(get_question_service)
) -> QuizStore:
    return QuizStore(bind, question_service, user_id=current_user.id)


def get_step_controller(
    current_user: User = Depends(require_user),
    bind: Engine = Depends(get_engine),
    controllers: ControllerRegistry = Depends(get_controllers)
) -> StepController:
    """The caller's long-lived step controller, created on first use."""
    return controllers.get_or_create(current_user, bind)
