"""
Step reconciliation as a pure reducer.

A viewer is always on exactly one ``Step``. Local actions (choosing a mode,
finishing a quiz, a reset) and observations fetched in the background
(``Snapshot``) are both events; ``transition`` folds one event into the
current ``SessionState`` and returns the next one. It does no I/O, so every
ordering rule can be exercised directly.

Rules for an observed snapshot, first match wins:

1. while a generation is in flight nothing moves;
2. once latched terminal the step stays ``competition-results``;
3. without an API key the step is ``api-key``;
4. the loaded competition decides: gone or cancelled falls back to the mode
   selector, completed (globally or for this viewer) latches results,
   waiting is the lobby and active is the competition quiz;
5. local solo progress: a result shows results, questions show the quiz;
6. an explicit mode choice keeps the current step;
7. active competitions: one is entered, several need a choice, none leads
   to the mode selector.

Snapshots are tagged with the revision they were requested at; any local
event bumps the revision, so an observation that raced a local action is
dropped.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple, Union

from ..models.competition import CompetitionStatus, ParticipantStatus

AUTH_REDIRECT = "/auth"


class Step(str, Enum):
    API_KEY = "api-key"
    MODE_SELECTOR = "mode-selector"
    SOLO_PREFERENCES = "solo-preferences"
    CREATE_COMPETITION = "create-competition"
    JOIN_COMPETITION = "join-competition"
    RANDOM_MATCH = "random-match"
    QUIZ = "quiz"
    RESULTS = "results"
    COMPETITION_LOBBY = "competition-lobby"
    COMPETITION_QUIZ = "competition-quiz"
    COMPETITION_RESULTS = "competition-results"
    COMPETITION_MANAGEMENT = "competition-management"
    ACTIVE_COMPETITIONS_SELECTOR = "active-competitions-selector"


class Mode(str, Enum):
    SOLO = "solo"
    CREATE = "create-competition"
    JOIN = "join-competition"
    RANDOM = "random-match"
    MANAGEMENT = "competition-management"


MODE_STEPS = {
    Mode.SOLO: Step.SOLO_PREFERENCES,
    Mode.CREATE: Step.CREATE_COMPETITION,
    Mode.JOIN: Step.JOIN_COMPETITION,
    Mode.RANDOM: Step.RANDOM_MATCH,
    Mode.MANAGEMENT: Step.COMPETITION_MANAGEMENT,
}

# Where an open competition puts its participants
OPEN_STATUS_STEPS = {
    CompetitionStatus.WAITING.value: Step.COMPETITION_LOBBY,
    CompetitionStatus.ACTIVE.value: Step.COMPETITION_QUIZ,
}


@dataclass(frozen=True)
class SessionState:
    step: Step = Step.MODE_SELECTOR
    manual_mode: Optional[Mode] = None
    competition_id: Optional[int] = None
    generating: bool = False
    terminal: bool = False
    mounted: bool = True
    redirect: Optional[str] = None
    revision: int = 0


@dataclass(frozen=True)
class Snapshot:
    """What a background check saw. Competition fields refer to ``competition_id``."""
    has_api_key: bool
    competition_id: Optional[int] = None
    competition_status: Optional[str] = None
    competition_missing: bool = False
    participant_status: Optional[str] = None
    # (id, status) of every waiting/active competition the viewer is still in
    active_competitions: Tuple[Tuple[int, str], ...] = ()
    solo_has_questions: bool = False
    solo_has_result: bool = False


# Events

@dataclass(frozen=True)
class ApiKeySaved:
    pass


@dataclass(frozen=True)
class ModeSelected:
    mode: Mode


@dataclass(frozen=True)
class CompetitionEntered:
    """Created, joined, matched or picked from the selector."""
    competition_id: int
    status: str = CompetitionStatus.WAITING.value


@dataclass(frozen=True)
class GenerationStarted:
    pass


@dataclass(frozen=True)
class GenerationFinished:
    pass


@dataclass(frozen=True)
class SoloQuizReady:
    pass


@dataclass(frozen=True)
class SoloFinished:
    pass


@dataclass(frozen=True)
class LocalCompletion:
    """The viewer finished their own competition quiz."""
    competition_id: int


@dataclass(frozen=True)
class Reset:
    """Explicit "back to mode selection" / "new competition"."""
    pass


@dataclass(frozen=True)
class SnapshotObserved:
    snapshot: Snapshot
    revision: int


@dataclass(frozen=True)
class SessionExpired:
    pass


@dataclass(frozen=True)
class Unmounted:
    pass


Event = Union[
    ApiKeySaved, ModeSelected, CompetitionEntered, GenerationStarted,
    GenerationFinished, SoloQuizReady, SoloFinished, LocalCompletion, Reset,
    SnapshotObserved, SessionExpired, Unmounted,
]

# Accepted while latched on competition results
_TERMINAL_EVENTS = (Reset, SessionExpired, Unmounted, SnapshotObserved)


def _latched(state: SessionState) -> SessionState:
    return replace(state, step=Step.COMPETITION_RESULTS, terminal=True, generating=False)


def _observe(state: SessionState, event: SnapshotObserved) -> SessionState:
    snap = event.snapshot

    if event.revision != state.revision:
        return state
    if state.generating:
        return state
    if state.terminal:
        return _latched(state)
    if not snap.has_api_key:
        return replace(state, step=Step.API_KEY)

    if state.competition_id is not None:
        if snap.competition_id != state.competition_id:
            return state
        status = snap.competition_status
        if snap.competition_missing or status == CompetitionStatus.CANCELLED.value:
            return replace(state, step=Step.MODE_SELECTOR, competition_id=None, manual_mode=None)
        if snap.participant_status == ParticipantStatus.DECLINED.value:
            return replace(state, step=Step.MODE_SELECTOR, competition_id=None, manual_mode=None)
        if (status == CompetitionStatus.COMPLETED.value
                or snap.participant_status == ParticipantStatus.COMPLETED.value):
            return _latched(state)
        if status in OPEN_STATUS_STEPS:
            return replace(state, step=OPEN_STATUS_STEPS[status])
        return state

    if snap.solo_has_result:
        return replace(state, step=Step.RESULTS)
    if snap.solo_has_questions:
        return replace(state, step=Step.QUIZ)

    if state.manual_mode is not None:
        return state

    if len(snap.active_competitions) == 1:
        competition_id, status = snap.active_competitions[0]
        return replace(
            state,
            competition_id=competition_id,
            step=OPEN_STATUS_STEPS.get(status, Step.COMPETITION_LOBBY)
        )
    if len(snap.active_competitions) > 1:
        return replace(state, step=Step.ACTIVE_COMPETITIONS_SELECTOR)
    return replace(state, step=Step.MODE_SELECTOR)


def _apply(state: SessionState, event: Event) -> SessionState:
    if isinstance(event, ApiKeySaved):
        # Only the api-key step waits on a key; anywhere else it changes nothing
        if state.step != Step.API_KEY:
            return state
        return replace(state, step=Step.MODE_SELECTOR)
    if isinstance(event, ModeSelected):
        return replace(state, step=MODE_STEPS[event.mode], manual_mode=event.mode, competition_id=None)
    if isinstance(event, CompetitionEntered):
        return replace(
            state,
            competition_id=event.competition_id,
            step=OPEN_STATUS_STEPS.get(event.status, Step.COMPETITION_LOBBY)
        )
    if isinstance(event, GenerationStarted):
        return replace(state, generating=True)
    if isinstance(event, GenerationFinished):
        return replace(state, generating=False)
    if isinstance(event, SoloQuizReady):
        return replace(state, step=Step.QUIZ, generating=False)
    if isinstance(event, SoloFinished):
        return replace(state, step=Step.RESULTS)
    if isinstance(event, LocalCompletion):
        return _latched(replace(state, competition_id=event.competition_id))
    if isinstance(event, Reset):
        return replace(
            state,
            step=Step.MODE_SELECTOR,
            manual_mode=None,
            competition_id=None,
            generating=False,
            terminal=False
        )
    if isinstance(event, SessionExpired):
        return replace(state, redirect=AUTH_REDIRECT)
    if isinstance(event, Unmounted):
        return replace(state, mounted=False, generating=False)
    raise TypeError(f"Unsupported event: {type(event).__name__}")


def transition(state: SessionState, event: Event) -> SessionState:
    """Return the state after ``event``. Unmounted sessions never change."""
    if not state.mounted:
        return state
    if isinstance(event, SnapshotObserved):
        return _observe(state, event)
    if state.terminal and not isinstance(event, _TERMINAL_EVENTS):
        return state
    return replace(_apply(state, event), revision=state.revision + 1)
