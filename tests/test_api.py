from quizmate.errors import QuestionGenerationError
from quizmate.models import Competition

PREFERENCES = {"course": "Geography", "question_count": 4}


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_unauthorized_access(client):
    response = client.get("/api/competitions/active")
    assert response.status_code == 401
    assert response.json()["code"] == "AUTH_REQUIRED"
    assert response.json()["success"] is False


def test_api_key_is_never_returned(client, user_token):
    assert client.get("/api/quiz/api-key").json() == {"has_api_key": False}

    response = client.put("/api/quiz/api-key", json={"api_key": "sk-secret"})
    assert response.status_code == 200
    assert response.json() == {"has_api_key": True}
    assert "sk-secret" not in client.get("/api/quiz/api-key").text


def test_preferences(client, user_token):
    assert client.get("/api/quiz/preferences").json() is None

    response = client.put("/api/quiz/preferences", json={"course": "Math", "question_count": 0})
    assert response.status_code == 200
    assert response.json()["question_count"] == 1

    response = client.put("/api/quiz/preferences", json={
        "time_limit_enabled": True,
        "time_limit": 30,
        "total_time_limit": 600
    })
    assert response.status_code == 400
    assert "errors" in response.json()["details"]
    assert client.get("/api/quiz/preferences").json()["course"] == "Math"


def test_competition_flow(client, session, make_user, login):
    alice, bob = make_user("alice"), make_user("bob")

    login(client, alice)
    client.put("/api/quiz/api-key", json={"api_key": "sk-alice"})
    response = client.post("/api/competitions", json={"title": "Capitals", "preferences": PREFERENCES})
    assert response.status_code == 201
    competition = response.json()
    competition_id = competition["id"]
    assert competition["status"] == "waiting"

    # Not enough players yet
    response = client.post(f"/api/competitions/{competition_id}/start", json={})
    assert response.status_code == 400

    login(client, bob)
    response = client.post("/api/competitions/join", json={"code": competition["competition_code"]})
    assert response.status_code == 200
    response = client.get(f"/api/competitions/{competition_id}")
    assert len(response.json()["participants"]) == 2
    assert response.json()["profiles"][str(alice.id)] == "Alice"

    # Only the creator starts
    assert client.post(f"/api/competitions/{competition_id}/start", json={"api_key": "sk-bob"}).status_code == 403

    login(client, alice)
    response = client.post(f"/api/competitions/{competition_id}/start", json={})
    assert response.status_code == 200
    assert response.json()["status"] == "active"

    response = client.post(f"/api/competitions/{competition_id}/progress", json={
        "answers": {"1": "Paris", "2": "False"},
        "time_taken": 40,
        "current_question_index": 2
    })
    assert response.status_code == 200
    assert response.json()["score"] == 2
    assert response.json()["status"] == "joined"

    response = client.post(f"/api/competitions/{competition_id}/finish", json={
        "answers": {"1": "Paris", "2": "False", "3": "2, 3, 5"},
        "time_taken": 120
    })
    assert response.json()["status"] == "pending"
    assert response.json()["remaining"] == 1

    login(client, bob)
    response = client.post(f"/api/competitions/{competition_id}/finish", json={
        "answers": {"1": "Paris", "2": "False", "3": "2, 3, 5"},
        "time_taken": 90
    })
    outcome = response.json()
    assert outcome["status"] == "completed"
    assert [r["user_id"] for r in outcome["rankings"]] == [bob.id, alice.id]

    leaderboard = client.get(f"/api/competitions/{competition_id}/leaderboard").json()
    assert [entry["position"] for entry in leaderboard] == [1, 2]
    assert leaderboard[0]["full_name"] == "Bob"

    results = client.get(f"/api/competitions/{competition_id}/results").json()
    assert [r["final_rank"] for r in results] == [1, 2]

    history = client.get("/api/competitions/history").json()
    assert len(history) == 1
    stats = client.get("/api/quiz/stats").json()
    assert stats["wins"] == 1
    assert stats["total_competitions"] == 1

    competition_row = session.get(Competition, competition_id)
    assert competition_row.status == "completed"


def test_join_started_competition(client, make_user, login):
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")
    login(client, alice)
    competition = client.post("/api/competitions", json={"title": "Q", "preferences": PREFERENCES}).json()
    login(client, bob)
    client.post("/api/competitions/join", json={"code": competition["competition_code"]})
    login(client, alice)
    client.post(f"/api/competitions/{competition['id']}/start", json={"api_key": "sk-alice"})

    login(client, carol)
    response = client.post("/api/competitions/join", json={"code": competition["competition_code"]})

    assert response.status_code == 400
    assert response.json()["code"] == "ALREADY_STARTED"


def test_unknown_competition(client, user_token):
    response = client.get("/api/competitions/999")
    assert response.status_code == 404
    assert response.json()["code"] == "COMPETITION_NOT_FOUND"


def test_chat_and_invites(client, make_user, login):
    alice, bob = make_user("alice"), make_user("bob")
    login(client, alice)
    competition = client.post("/api/competitions", json={"title": "Q", "preferences": PREFERENCES}).json()
    competition_id = competition["id"]

    response = client.post(f"/api/competitions/{competition_id}/invites", json={"emails": ["bob@example.com"]})
    assert response.status_code == 201
    response = client.post(f"/api/competitions/{competition_id}/chat", json={"message": "hello"})
    assert response.status_code == 201

    login(client, bob)
    assert [i["competition_id"] for i in client.get("/api/competitions/invites").json()] == [competition_id]
    assert client.post(f"/api/competitions/{competition_id}/invites/accept").status_code == 200
    messages = client.get(f"/api/competitions/{competition_id}/chat").json()
    assert [m["message"] for m in messages] == ["hello"]


def test_cancel_and_delete(client, make_user, login):
    alice = make_user("alice")
    login(client, alice)
    first = client.post("/api/competitions", json={"title": "One", "preferences": PREFERENCES}).json()
    second = client.post("/api/competitions", json={"title": "Two", "preferences": PREFERENCES}).json()

    assert client.post(f"/api/competitions/{first['id']}/cancel").status_code == 200
    assert client.delete(f"/api/competitions/{second['id']}").status_code == 200

    assert client.get("/api/competitions/active").json() == []
    assert [c["status"] for c in client.get("/api/competitions/mine").json()] == ["cancelled"]


def test_random_queue(client, user_token):
    response = client.post("/api/queue", json={"topic": "History", "difficulty": "easy"})
    assert response.status_code == 201
    ticket = response.json()
    assert ticket["status"] == "waiting"
    assert client.post("/api/queue", json={"topic": "History"}).json()["id"] == ticket["id"]

    assert client.delete("/api/queue").json() == {"cancelled": 1}
    assert client.delete("/api/queue").json() == {"cancelled": 0}


def test_step_flow(client, make_user, login):
    alice = make_user("alice")
    login(client, alice)

    assert client.get("/api/session/step").json()["step"] == "api-key"

    client.put("/api/quiz/api-key", json={"api_key": "sk-alice"})
    assert client.get("/api/session/step").json()["step"] == "mode-selector"

    state = client.post("/api/session/mode", json={"mode": "create-competition"}).json()
    assert state["step"] == "create-competition"
    assert state["manual_mode"] == "create-competition"

    competition = client.post("/api/competitions", json={"title": "Q", "preferences": PREFERENCES}).json()
    state = client.post("/api/session/competition", json={"competition_id": competition["id"]}).json()
    assert state["step"] == "competition-lobby"
    assert state["competition_id"] == competition["id"]

    # Cancelled behind the viewer's back
    client.post(f"/api/competitions/{competition['id']}/cancel")
    assert client.get("/api/session/step").json()["step"] == "mode-selector"

    assert client.delete("/api/session").json() == {"removed": True}


def test_step_resumes_single_active_competition(client, make_user, login):
    alice = make_user("alice")
    login(client, alice)
    client.put("/api/quiz/api-key", json={"api_key": "sk-alice"})
    competition = client.post("/api/competitions", json={"title": "Q", "preferences": PREFERENCES}).json()

    state = client.get("/api/session/step").json()
    assert state["step"] == "competition-lobby"
    assert state["competition_id"] == competition["id"]

    client.post("/api/competitions", json={"title": "Q2", "preferences": PREFERENCES})
    client.post("/api/session/reset")
    assert client.get("/api/session/step").json()["step"] == "active-competitions-selector"


def test_local_completion_shows_results(client, make_user, login):
    alice, bob = make_user("alice"), make_user("bob")
    login(client, alice)
    client.put("/api/quiz/api-key", json={"api_key": "sk-alice"})
    competition = client.post("/api/competitions", json={"title": "Q", "preferences": PREFERENCES}).json()
    login(client, bob)
    client.post("/api/competitions/join", json={"code": competition["competition_code"]})
    login(client, alice)
    client.post(f"/api/competitions/{competition['id']}/start", json={})
    assert client.get("/api/session/step").json()["step"] == "competition-quiz"

    state = client.post("/api/session/complete", json={"competition_id": competition["id"]}).json()

    assert state["step"] == "competition-results"
    assert state["terminal"] is True
    assert state["competition_status"] == "pending"
    assert client.get("/api/session/step").json()["step"] == "competition-results"


def test_session_complete_after_finish(client, make_user, login):
    alice, bob = make_user("alice"), make_user("bob")
    login(client, alice)
    client.put("/api/quiz/api-key", json={"api_key": "sk-alice"})
    competition = client.post("/api/competitions", json={"title": "Q", "preferences": PREFERENCES}).json()
    login(client, bob)
    client.post("/api/competitions/join", json={"code": competition["competition_code"]})
    login(client, alice)
    client.post(f"/api/competitions/{competition['id']}/start", json={})
    assert client.get("/api/session/step").json()["step"] == "competition-quiz"

    client.post(f"/api/competitions/{competition['id']}/finish", json={"answers": {"1": "Paris"}, "time_taken": 60})

    for _ in range(2):
        response = client.post("/api/session/complete", json={"competition_id": competition["id"]})
        assert response.status_code == 200
        assert response.json()["step"] == "competition-results"
        assert response.json()["competition_status"] == "pending"


def test_finishing_an_unstarted_competition_is_rejected(client, make_user, login):
    alice, bob = make_user("alice"), make_user("bob")
    login(client, alice)
    competition = client.post("/api/competitions", json={"title": "Q", "preferences": PREFERENCES}).json()
    login(client, bob)
    client.post("/api/competitions/join", json={"code": competition["competition_code"]})

    response = client.post(f"/api/competitions/{competition['id']}/finish", json={"score": 1, "time_taken": 10})

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_INPUT"
    assert client.get(f"/api/competitions/{competition['id']}/results").json() == []


def test_solo_quiz_flow(client, user_token, question_service):
    client.put("/api/quiz/api-key", json={"api_key": "sk-test"})
    client.put("/api/quiz/preferences", json={"course": "General", "question_count": 4})
    client.post("/api/session/mode", json={"mode": "solo"})

    view = client.post("/api/session/quiz").json()
    assert view["step"] == "quiz"
    assert len(view["questions"]) == 4
    assert view["time_remaining"] is None

    client.post("/api/session/quiz/answers", json={"question_id": 1, "answer": "Paris"})
    view = client.post("/api/session/quiz/next").json()
    assert view["current_question_index"] == 1
    assert view["answers"] == {"1": "Paris"}

    response = client.post("/api/session/quiz/answers", json={"question_id": 99, "answer": "x"})
    assert response.status_code == 404

    explanation = client.post("/api/session/quiz/explanation", json={"question_id": 1}).json()
    assert explanation == {"explanation": "The answer is Paris."}

    view = client.post("/api/session/quiz/finish").json()
    assert view["step"] == "results"
    assert view["result"]["correct_answers"] == 1
    assert view["result"]["total_questions"] == 4

    history = client.get("/api/quiz/history").json()
    assert len(history) == 1
    assert history[0]["topic"] == "General"


def test_solo_quiz_snapshot_restore(client, user_token):
    client.put("/api/quiz/api-key", json={"api_key": "sk-test"})
    client.put("/api/quiz/preferences", json={"course": "General", "question_count": 4})
    client.post("/api/session/quiz")
    client.post("/api/session/quiz/answers", json={"question_id": 2, "answer": "False"})
    client.post("/api/session/quiz/pause")

    snapshot = client.get("/api/session/quiz/snapshot").json()
    assert snapshot["answers"] == {"2": "False"}

    client.post("/api/session/reset")
    assert client.get("/api/session/quiz").json()["questions"] == []

    view = client.post("/api/session/quiz/restore", json=snapshot).json()
    assert view["restored"] is True
    assert view["paused"] is True
    assert view["answers"] == {"2": "False"}

    stale = dict(snapshot, timestamp=snapshot["timestamp"] - 2 * 24 * 60 * 60)
    assert client.post("/api/session/quiz/restore", json=stale).json()["restored"] is False


def test_generation_failure_is_reported(client, user_token, question_service):
    client.put("/api/quiz/api-key", json={"api_key": "sk-test"})
    client.put("/api/quiz/preferences", json={"course": "General"})
    question_service.error = QuestionGenerationError("Question service error: quota exceeded")

    response = client.post("/api/session/quiz")

    assert response.status_code == 502
    assert response.json()["code"] == "QUESTION_SERVICE_ERROR"
    assert client.get("/api/session/step").json()["step"] == "mode-selector"
