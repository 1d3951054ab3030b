"""
The I/O half of step reconciliation.

``StepController`` owns one viewer's ``SessionState``. Local actions are
dispatched straight into the reducer; background checks (a poll every
``poll_interval`` seconds and a push whenever the followed competition
changes) fetch a ``Snapshot`` from the stores off the event loop and
dispatch it tagged with the revision it started from.
"""
import asyncio
import logging
import threading
from typing import Callable, Dict, Optional, Set

from sqlalchemy.engine import Engine

from ..config import RECONCILE_INTERVAL_SECONDS
from ..errors import NotFoundError, ValidationError
from ..models.competition import ParticipantStatus
from ..models.user import User
from ..realtime import ChangeEvent, ChangeFeed
from ..services.question_service import QuestionServiceClient
from ..store.competition_store import CompetitionStore
from ..store.quiz_store import QuizStore
from .steps import (
    ApiKeySaved,
    CompetitionEntered,
    Event,
    GenerationFinished,
    GenerationStarted,
    LocalCompletion,
    Mode,
    ModeSelected,
    Reset,
    SessionExpired,
    SessionState,
    Snapshot,
    SnapshotObserved,
    SoloFinished,
    SoloQuizReady,
    Step,
    Unmounted,
    transition,
)

logger = logging.getLogger(__name__)


class StepController:
    def __init__(
        self,
        competition_store: CompetitionStore,
        quiz_store: QuizStore,
        on_step: Optional[Callable[[Step], None]] = None,
        on_redirect: Optional[Callable[[str], None]] = None,
        poll_interval: float = RECONCILE_INTERVAL_SECONDS
    ):
        self.competition_store = competition_store
        self.quiz_store = quiz_store
        self.on_step = on_step
        self.on_redirect = on_redirect
        self.poll_interval = poll_interval

        self.state = SessionState()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._followed_competition: Optional[int] = None

    @property
    def step(self) -> Step:
        return self.state.step

    @property
    def mounted(self) -> bool:
        return self.state.mounted

    @property
    def background(self) -> bool:
        """Polling and push-triggered checks are off when poll_interval <= 0."""
        return self.poll_interval > 0

    def dispatch(self, event: Event) -> SessionState:
        """Fold ``event`` in; listeners hear about actual step changes only."""
        with self._lock:
            previous = self.state
            self.state = current = transition(previous, event)

        if current.step != previous.step:
            logger.info("Step %s -> %s", previous.step.value, current.step.value)
            if self.on_step:
                self.on_step(current.step)

        if current.redirect and current.redirect != previous.redirect:
            if self.on_redirect:
                self.on_redirect(current.redirect)

        if previous.competition_id is not None and current.competition_id is None:
            self.competition_store.clear_current_competition()

        if current.mounted:
            self._follow(current.competition_id)
        return current

    # Realtime

    def _follow(self, competition_id: Optional[int]) -> None:
        if competition_id == self._followed_competition:
            return
        self._close_subscription()
        if competition_id is not None:
            self._unsubscribe = self.competition_store.subscribe_to_competition(
                competition_id, on_change=self._competition_changed
            )
        self._followed_competition = competition_id

    def _close_subscription(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._followed_competition = None

    def _competition_changed(self, event: ChangeEvent) -> None:
        # Feed callbacks run on whichever thread published the change
        loop = self._loop
        if not self.mounted or not self.background or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._schedule_reconcile)

    def _schedule_reconcile(self) -> None:
        if not self.mounted:
            return
        task = asyncio.get_running_loop().create_task(self.reconcile())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # Reconciliation

    def take_snapshot(self, competition_id: Optional[int]) -> Snapshot:
        has_api_key = self.quiz_store.load_api_key() is not None

        status = participant_status = None
        missing = False
        if competition_id is not None:
            try:
                competition = self.competition_store.load_competition(competition_id)
            except NotFoundError:
                missing = True
            else:
                status = competition.status
                participant_status = self.competition_store.load_participant_status(competition_id)

        active = self.competition_store.load_user_active_competitions()
        return Snapshot(
            has_api_key=has_api_key,
            competition_id=competition_id,
            competition_status=status,
            competition_missing=missing,
            participant_status=participant_status,
            active_competitions=tuple((c.id, c.status) for c in active),
            solo_has_questions=bool(self.quiz_store.questions),
            solo_has_result=self.quiz_store.result is not None
        )

    async def reconcile(self) -> SessionState:
        """Fetch a snapshot and apply it unless a local event overtook it."""
        state = self.state
        if not state.mounted or state.generating or state.terminal:
            return state

        try:
            snapshot = await asyncio.to_thread(self.take_snapshot, state.competition_id)
        except (NotFoundError, ValidationError) as exc:
            logger.warning("Competition check failed: %s", exc.message)
            return self.state
        except Exception:
            if not self.mounted:
                return self.state
            logger.exception("Step reconciliation failed, redirecting to login")
            return self.dispatch(SessionExpired())

        if not self.mounted:
            return self.state
        if snapshot.competition_missing:
            logger.info("Competition %s no longer exists", state.competition_id)
        return self.dispatch(SnapshotObserved(snapshot, state.revision))

    async def _poll(self) -> None:
        while self.mounted:
            await self.reconcile()
            await asyncio.sleep(self.poll_interval)

    def start(self) -> "StepController":
        """Bind to the running loop and start polling. Safe to call repeatedly."""
        self._loop = asyncio.get_running_loop()
        if self.background and self.mounted and (self._poll_task is None or self._poll_task.done()):
            self._poll_task = self._loop.create_task(self._poll())
        return self

    # Local actions

    def save_api_key(self, api_key: str) -> SessionState:
        self.quiz_store.save_api_key(api_key)
        return self.dispatch(ApiKeySaved())

    def select_mode(self, mode: Mode) -> SessionState:
        self.quiz_store.reset_quiz()
        return self.dispatch(ModeSelected(mode))

    def enter_competition(self, competition_id: int) -> SessionState:
        competition = self.competition_store.load_competition(competition_id)
        return self.dispatch(CompetitionEntered(competition_id, competition.status))

    async def generate_solo_quiz(self) -> SessionState:
        """Generate a quiz without letting background checks move the step meanwhile."""
        self.dispatch(GenerationStarted())
        try:
            await asyncio.to_thread(self.quiz_store.generate_quiz)
        finally:
            if self.mounted:
                self.dispatch(GenerationFinished())

        if not self.mounted:
            return self.state
        self.quiz_store.start_timer()
        return self.dispatch(SoloQuizReady())

    def finish_solo_quiz(self) -> SessionState:
        self.quiz_store.finish_quiz()
        return self.dispatch(SoloFinished())

    def complete_competition(self, competition_id: int) -> SessionState:
        """Record the viewer's own completion and show results straight away."""
        if self.competition_store.load_participant_status(competition_id) != ParticipantStatus.COMPLETED:
            self.competition_store.complete_competition(competition_id)
        return self.dispatch(LocalCompletion(competition_id))

    def reset(self) -> SessionState:
        self.quiz_store.reset_quiz()
        self.competition_store.clear_current_competition()
        return self.dispatch(Reset())

    def teardown(self) -> None:
        """Stop every task and subscription; later async work becomes a no-op."""
        self.dispatch(Unmounted())
        tasks = list(self._tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
        for task in tasks:
            if not task.done():
                task.cancel()
        self._tasks.clear()
        self._poll_task = None
        self._close_subscription()
        self.quiz_store.teardown()
        self.competition_store.teardown()

    def as_dict(self) -> Dict[str, object]:
        state = self.state
        return {
            "step": state.step.value,
            "manual_mode": state.manual_mode.value if state.manual_mode else None,
            "competition_id": state.competition_id,
            "generating": state.generating,
            "terminal": state.terminal,
            "redirect": state.redirect,
        }


class ControllerRegistry:
    """One live StepController per signed-in user."""

    def __init__(
        self,
        feed: ChangeFeed,
        question_service: Optional[QuestionServiceClient] = None,
        poll_interval: float = RECONCILE_INTERVAL_SECONDS
    ):
        self.feed = feed
        self.question_service = question_service
        self.poll_interval = poll_interval
        self._controllers: Dict[int, StepController] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._controllers)

    def get(self, user_id: int) -> Optional[StepController]:
        return self._controllers.get(user_id)

    def get_or_create(self, user: User, bind: Engine) -> StepController:
        with self._lock:
            controller = self._controllers.get(user.id)
            if controller is None or not controller.mounted:
                competition_store = CompetitionStore(
                    bind,
                    self.feed,
                    self.question_service,
                    user_id=user.id,
                    user_email=user.email
                ).init()
                quiz_store = QuizStore(bind, self.question_service, user_id=user.id).init()
                quiz_store.load_api_key()
                quiz_store.load_preferences()
                controller = StepController(
                    competition_store,
                    quiz_store,
                    poll_interval=self.poll_interval
                )
                self._controllers[user.id] = controller
                logger.debug("Created step controller for user %s", user.id)
            return controller

    def remove(self, user_id: int) -> bool:
        with self._lock:
            controller = self._controllers.pop(user_id, None)
        if controller is None:
            return False
        controller.teardown()
        return True

    def close(self) -> None:
        with self._lock:
            controllers = list(self._controllers.values())
            self._controllers.clear()
        for controller in controllers:
            controller.teardown()
