from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..controller.reconciler import ControllerRegistry
from ..dependencies import get_competition_store, get_controllers, get_quiz_store, require_user
from ..models import QuizHistory, User
from ..services.preferences import QuizPreferences
from ..services.stats import OverallStats
from ..store.competition_store import CompetitionStore
from ..store.quiz_store import QuizStore

router = APIRouter(prefix="/api/quiz")


class ApiKeyUpdate(BaseModel):
    api_key: str


class ApiKeyStatus(BaseModel):
    has_api_key: bool


@router.get("/api-key", response_model=ApiKeyStatus)
def get_api_key(store: QuizStore = Depends(get_quiz_store)):
    """Whether the caller has a key on file. The key itself is never returned."""
    return ApiKeyStatus(has_api_key=store.load_api_key() is not None)


@router.put("/api-key", response_model=ApiKeyStatus)
def put_api_key(
    body: ApiKeyUpdate,
    current_user: User = Depends(require_user),
    store: QuizStore = Depends(get_quiz_store),
    controllers: ControllerRegistry = Depends(get_controllers)
):
    controller = controllers.get(current_user.id)
    if controller is not None:
        controller.save_api_key(body.api_key)
    else:
        store.save_api_key(body.api_key)
    return ApiKeyStatus(has_api_key=True)


@router.get("/preferences", response_model=Optional[QuizPreferences])
def get_preferences(store: QuizStore = Depends(get_quiz_store)):
    return store.load_preferences()


@router.put("/preferences", response_model=QuizPreferences)
def put_preferences(
    body: dict,
    current_user: User = Depends(require_user),
    store: QuizStore = Depends(get_quiz_store),
    controllers: ControllerRegistry = Depends(get_controllers)
):
    """Validate and save preferences; invalid combinations are rejected with 400."""
    preferences = store.save_preferences(body)
    controller = controllers.get(current_user.id)
    if controller is not None:
        controller.quiz_store.preferences = preferences
    return preferences


@router.get("/history", response_model=List[QuizHistory])
def get_history(
    limit: Optional[int] = None,
    store: QuizStore = Depends(get_quiz_store)
):
    return store.load_history(limit)


@router.get("/stats", response_model=OverallStats)
def get_stats(
    store: QuizStore = Depends(get_quiz_store),
    competition_store: CompetitionStore = Depends(get_competition_store)
):
    """Combined solo and competition statistics."""
    competition_store.load_competition_results_history()
    return competition_store.calculate_overall_stats(store.load_history())
