"""
The caller's place in the quiz flow.

Every endpoint works on the caller's StepController, so local actions and
background checks go through the same reducer. The solo quiz in progress
lives on that controller's QuizStore between requests.
"""
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlmodel import Session

from ..controller.reconciler import ControllerRegistry, StepController
from ..controller.steps import Mode
from ..database import get_session
from ..dependencies import get_controllers, get_feed, get_step_controller, require_user
from ..models import User
from ..realtime import ChangeFeed
from ..services.finish_competition import finish_competition
from ..services.grading import dump_questions

router = APIRouter(prefix="/api/session")


class ModeSelect(BaseModel):
    mode: Mode


class CompetitionSelect(BaseModel):
    competition_id: int


class AnswerSubmit(BaseModel):
    question_id: int
    answer: str


class ExplanationRequest(BaseModel):
    question_id: int


def _quiz_view(controller: StepController) -> Dict[str, Any]:
    store = controller.quiz_store
    return {
        "step": controller.step.value,
        "questions": dump_questions(store.questions),
        "current_question_index": store.current_question_index,
        "answers": {str(key): value for key, value in store.answers.items()},
        "paused": store.session is not None and not store.session.is_active,
        "elapsed": store.elapsed,
        "time_remaining": store.timer.remaining if store.timer is not None and store.timer.active else None,
        "result": store.result.model_dump() if store.result else None,
    }


# Steps

@router.get("/step")
async def get_step(controller: StepController = Depends(get_step_controller)):
    """Reconcile now and return the step the caller should be on."""
    controller.start()
    await controller.reconcile()
    return controller.as_dict()


@router.post("/mode")
async def select_mode(
    body: ModeSelect,
    controller: StepController = Depends(get_step_controller)
):
    controller.start()
    controller.select_mode(body.mode)
    return controller.as_dict()


@router.post("/competition")
async def enter_competition(
    body: CompetitionSelect,
    controller: StepController = Depends(get_step_controller)
):
    """Enter a competition after creating, joining or picking it."""
    controller.start()
    controller.enter_competition(body.competition_id)
    return controller.as_dict()


@router.post("/complete")
async def complete_competition(
    body: CompetitionSelect,
    controller: StepController = Depends(get_step_controller),
    db: Session = Depends(get_session),
    feed: ChangeFeed = Depends(get_feed)
):
    """Finish the caller's competition quiz and show results without waiting for the others."""
    controller.complete_competition(body.competition_id)
    outcome = finish_competition(db, body.competition_id, feed=feed)
    state = controller.as_dict()
    state["competition_status"] = outcome.status
    return state


@router.post("/reset")
async def reset(controller: StepController = Depends(get_step_controller)):
    controller.reset()
    return controller.as_dict()


@router.delete("")
async def end_session(
    current_user: User = Depends(require_user),
    controllers: ControllerRegistry = Depends(get_controllers)
):
    """Tear the caller's controller down: cancel its tasks and close its subscriptions."""
    return {"removed": controllers.remove(current_user.id)}


# Solo quiz

@router.post("/quiz")
async def start_quiz(controller: StepController = Depends(get_step_controller)):
    """Generate a quiz from the saved preferences and start it."""
    controller.start()
    await controller.generate_solo_quiz()
    return _quiz_view(controller)


@router.get("/quiz")
async def get_quiz(controller: StepController = Depends(get_step_controller)):
    return _quiz_view(controller)


@router.post("/quiz/answers")
async def answer(
    body: AnswerSubmit,
    controller: StepController = Depends(get_step_controller)
):
    controller.quiz_store.answer_question(body.question_id, body.answer)
    return _quiz_view(controller)


@router.post("/quiz/next")
async def next_question(controller: StepController = Depends(get_step_controller)):
    controller.quiz_store.next_question()
    return _quiz_view(controller)


@router.post("/quiz/prev")
async def prev_question(controller: StepController = Depends(get_step_controller)):
    controller.quiz_store.prev_question()
    return _quiz_view(controller)


@router.post("/quiz/pause")
async def pause(controller: StepController = Depends(get_step_controller)):
    controller.quiz_store.pause_quiz()
    return _quiz_view(controller)


@router.post("/quiz/resume")
async def resume(controller: StepController = Depends(get_step_controller)):
    controller.quiz_store.resume_quiz()
    return _quiz_view(controller)


@router.post("/quiz/finish")
async def finish_quiz(controller: StepController = Depends(get_step_controller)):
    controller.finish_solo_quiz()
    return _quiz_view(controller)


@router.get("/quiz/snapshot")
async def get_snapshot(controller: StepController = Depends(get_step_controller)) -> Optional[Dict[str, Any]]:
    """A saved copy of the running quiz the client can hand back to /quiz/restore."""
    return controller.quiz_store.snapshot()


@router.post("/quiz/restore")
async def restore(
    body: Dict[str, Any],
    controller: StepController = Depends(get_step_controller)
):
    restored = controller.quiz_store.restore(body)
    if restored:
        controller.start()
        controller.quiz_store.start_timer()
    view = _quiz_view(controller)
    view["restored"] = restored
    return view


@router.post("/quiz/explanation")
async def explain(
    body: ExplanationRequest,
    controller: StepController = Depends(get_step_controller)
):
    return {"explanation": controller.quiz_store.get_explanation(body.question_id)}
