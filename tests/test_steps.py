import pytest

from quizmate.controller.steps import (
    ApiKeySaved,
    CompetitionEntered,
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


def observe(state, **snapshot):
    snapshot.setdefault("has_api_key", True)
    return transition(state, SnapshotObserved(Snapshot(**snapshot), state.revision))


def run(*events, state=None):
    state = state or SessionState()
    for event in events:
        state = transition(state, event)
    return state


def test_missing_api_key_goes_to_api_key_step():
    state = observe(SessionState(), has_api_key=False)
    assert state.step == Step.API_KEY

    state = transition(state, ApiKeySaved())
    assert state.step == Step.MODE_SELECTOR


def test_saving_a_key_keeps_the_loaded_competition():
    state = run(CompetitionEntered(5, "active"), ApiKeySaved())

    assert state.step == Step.COMPETITION_QUIZ
    assert state.competition_id == 5


def test_no_activity_is_mode_selector():
    assert observe(SessionState(step=Step.QUIZ)).step == Step.MODE_SELECTOR


@pytest.mark.parametrize("mode,step", [
    (Mode.SOLO, Step.SOLO_PREFERENCES),
    (Mode.CREATE, Step.CREATE_COMPETITION),
    (Mode.JOIN, Step.JOIN_COMPETITION),
    (Mode.RANDOM, Step.RANDOM_MATCH),
    (Mode.MANAGEMENT, Step.COMPETITION_MANAGEMENT),
])
def test_mode_selection(mode, step):
    state = transition(SessionState(), ModeSelected(mode))
    assert state.step == step
    assert state.manual_mode == mode


def test_manual_mode_wins_over_active_competitions():
    state = transition(SessionState(), ModeSelected(Mode.CREATE))

    state = observe(state, active_competitions=((7, "waiting"),))

    assert state.step == Step.CREATE_COMPETITION
    assert state.competition_id is None


def test_single_active_competition_is_entered():
    state = observe(SessionState(), active_competitions=((7, "active"),))
    assert state.step == Step.COMPETITION_QUIZ
    assert state.competition_id == 7

    state = observe(SessionState(), active_competitions=((8, "waiting"),))
    assert state.step == Step.COMPETITION_LOBBY


def test_several_active_competitions_need_a_choice():
    state = observe(SessionState(), active_competitions=((7, "active"), (8, "waiting")))
    assert state.step == Step.ACTIVE_COMPETITIONS_SELECTOR
    assert state.competition_id is None

    state = transition(state, CompetitionEntered(8, "waiting"))
    assert state.step == Step.COMPETITION_LOBBY
    assert state.competition_id == 8


def test_loaded_competition_follows_its_status():
    state = transition(SessionState(), CompetitionEntered(5))
    assert state.step == Step.COMPETITION_LOBBY

    state = observe(state, competition_id=5, competition_status="active", participant_status="joined")
    assert state.step == Step.COMPETITION_QUIZ


@pytest.mark.parametrize("snapshot", [
    {"competition_missing": True},
    {"competition_status": "cancelled", "participant_status": "joined"},
    {"competition_status": "waiting", "participant_status": "declined"},
])
def test_gone_competition_falls_back_to_mode_selector(snapshot):
    state = transition(SessionState(), CompetitionEntered(5))

    state = observe(state, competition_id=5, **snapshot)

    assert state.step == Step.MODE_SELECTOR
    assert state.competition_id is None


def test_snapshot_for_another_competition_is_ignored():
    state = transition(SessionState(), CompetitionEntered(5))
    assert observe(state, competition_id=6, competition_status="cancelled") == state


def test_competition_completion_latches_results():
    state = transition(SessionState(), CompetitionEntered(5, "active"))

    state = observe(state, competition_id=5, competition_status="completed", participant_status="completed")
    assert state.step == Step.COMPETITION_RESULTS
    assert state.terminal

    # Nothing observed later moves a latched session
    state = observe(state, has_api_key=False)
    assert state.step == Step.COMPETITION_RESULTS
    state = observe(state, active_competitions=((9, "waiting"),))
    assert state.step == Step.COMPETITION_RESULTS


def test_own_completion_latches_before_others_finish():
    state = transition(SessionState(), CompetitionEntered(5, "active"))
    state = observe(state, competition_id=5, competition_status="active", participant_status="completed")
    assert state.step == Step.COMPETITION_RESULTS
    assert state.terminal


def test_local_completion_latches():
    state = run(CompetitionEntered(5, "active"), LocalCompletion(5))
    assert state.step == Step.COMPETITION_RESULTS
    assert state.terminal

    # Local navigation is ignored while latched
    assert transition(state, ModeSelected(Mode.SOLO)).step == Step.COMPETITION_RESULTS
    assert transition(state, CompetitionEntered(6)).step == Step.COMPETITION_RESULTS


def test_reset_releases_the_latch():
    state = run(CompetitionEntered(5, "active"), LocalCompletion(5), Reset())
    assert state.step == Step.MODE_SELECTOR
    assert not state.terminal
    assert state.competition_id is None
    assert state.manual_mode is None


def test_session_expiry_redirects_even_when_latched():
    state = run(LocalCompletion(5), SessionExpired())
    assert state.redirect == "/auth"


def test_generation_freezes_the_step():
    state = run(ModeSelected(Mode.SOLO), GenerationStarted())

    # Before the questions arrive the solo store looks idle
    observed = observe(state)
    assert observed.step == Step.SOLO_PREFERENCES

    state = run(SoloQuizReady(), state=state)
    assert state.step == Step.QUIZ
    assert not state.generating


def test_generation_failure_unfreezes():
    state = run(ModeSelected(Mode.SOLO), GenerationStarted(), GenerationFinished())
    assert not state.generating
    assert observe(state).step == Step.SOLO_PREFERENCES


def test_solo_progress_wins_over_manual_mode():
    state = run(ModeSelected(Mode.SOLO), SoloQuizReady())
    assert observe(state, solo_has_questions=True).step == Step.QUIZ
    # A timed-out quiz finishes in the background
    assert observe(state, solo_has_questions=True, solo_has_result=True).step == Step.RESULTS


def test_solo_finished():
    state = run(ModeSelected(Mode.SOLO), SoloQuizReady(), SoloFinished())
    assert state.step == Step.RESULTS


def test_stale_snapshot_is_dropped():
    state = SessionState()
    stale_revision = state.revision

    state = transition(state, ModeSelected(Mode.JOIN))
    stale = SnapshotObserved(Snapshot(has_api_key=True, active_competitions=((7, "active"),)), stale_revision)

    assert transition(state, stale) == state


def test_local_events_bump_revision_and_snapshots_do_not():
    state = run(ModeSelected(Mode.SOLO), Reset())
    assert state.revision == 2
    assert observe(state).revision == 2


def test_mode_selection_leaves_the_competition():
    state = run(CompetitionEntered(5), ModeSelected(Mode.JOIN))
    assert state.competition_id is None


def test_unmounted_session_never_changes():
    state = run(CompetitionEntered(5), Unmounted())
    assert not state.mounted

    assert run(Reset(), LocalCompletion(5), SessionExpired(), state=state) == state
    assert observe(state, has_api_key=False) == state


def test_unknown_event():
    with pytest.raises(TypeError):
        transition(SessionState(), object())
