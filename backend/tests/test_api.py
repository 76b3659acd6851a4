import pytest
from fastapi.testclient import TestClient

from attempt_engine.core.clock import ManualClock
from attempt_engine.main import app
from attempt_engine.services.persistence import SqlPersistence
from attempt_engine.services.sessions import SessionRegistry, get_registry

from conftest import template_payload


@pytest.fixture
def clocks():
    return []


@pytest.fixture
def background_sync():
    return False


@pytest.fixture
def client(database, clocks, background_sync):
    def clock_factory():
        clock = ManualClock()
        clocks.append(clock)
        return clock

    registry = SessionRegistry(SqlPersistence(), clock_factory=clock_factory,
                               background_sync=background_sync)
    app.dependency_overrides[get_registry] = lambda: registry
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def template(client):
    response = client.post("/api/templates", json=template_payload().model_dump(mode="json"))
    assert response.status_code == 201
    return response.json()


def _open(client, template, user_id):
    response = client.post("/api/sessions", json={"user_id": user_id, "template_id": template["id"]})
    assert response.status_code == 200
    return response.json()


def test_health_and_root(client):
    assert client.get("/health").json()["status"] == "healthy"
    assert "open_session" in client.get("/").json()["endpoints"]


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_create_and_get_template(client, template):
    assert [s["name"] for s in template["sections"]] == ["Verbal", "Writing"]
    assert template["sections"][0]["duration_seconds"] == 60
    assert template["sections"][1]["timed"] is False
    assert len(template["sections"][0]["question_ids"]) == 2

    fetched = client.get("/api/templates/{}".format(template["id"])).json()
    assert fetched == template

    missing = client.get("/api/templates/nope")
    assert missing.status_code == 404
    assert missing.json()["error"] == "NotFound"


def test_template_validation(client):
    response = client.post("/api/templates", json={"title": "Empty", "sections": []})
    assert response.status_code == 422
    response = client.post("/api/templates", json={"title": "No questions", "sections": [{"name": "S"}]})
    assert response.status_code == 400


def test_full_session_flow(client, template, clocks):
    view = _open(client, template, "learner-1")
    attempt_id = view["id"]
    session = view["session"]
    assert view["status"] == "in_progress"
    assert session["section_index"] == 0
    assert session["remaining_seconds"] == 60
    assert session["clock"] == "01:00"
    assert session["question"]["question"]["correct_option_index"] is None

    url = "/api/sessions/{}".format(attempt_id)
    view = client.post(url + "/answer", json={"selected_option_index": 1}).json()
    assert view["session"]["question"]["selected_option_index"] == 1

    clocks[-1].advance(5)
    view = client.post(url + "/review").json()
    assert view["session"]["question"]["marked_for_review"] is True

    view = client.post(url + "/navigate", json={"question_index": 1}).json()
    assert view["session"]["question_index"] == 1
    assert view["session"]["remaining_seconds"] == 55
    palette = view["session"]["palette"]
    assert [entry["marked_for_review"] for entry in palette] == [True, False]

    bad = client.post(url + "/answer", json={"selected_option_index": 9})
    assert bad.status_code == 400
    assert bad.json()["error"] == "InvalidOperation"

    unconfirmed = client.post(url + "/end-section", json={})
    assert unconfirmed.status_code == 400
    assert unconfirmed.json()["error"] == "ConfirmationRequired"

    view = client.post(url + "/end-section", json={"confirm": True}).json()
    assert view["session"]["section_index"] == 1
    assert view["session"]["remaining_seconds"] is None
    assert view["session"]["clock"] == "--:--"
    assert view["sections"][0]["status"] == "completed"

    view = client.post(url + "/answer", json={"text": "Essay about time"}).json()
    assert view["session"]["question"]["answer_text"] == "Essay about time"

    view = client.post(url + "/submit").json()
    assert view["status"] == "completed"
    assert view["overall_stats"]["total_correct"] == 1
    assert view["overall_stats"]["total_attempted"] == 2
    assert view["overall_stats"]["raw_score"] == pytest.approx(2.0)

    stale = client.post(url + "/answer", json={"selected_option_index": 0})
    assert stale.status_code == 409
    assert stale.json()["retryable"] is False

    stored = client.get("/api/attempts/{}".format(attempt_id)).json()
    assert stored["status"] == "completed"
    first = stored["sections"][0]["questions"][0]
    assert first["is_correct"] is True
    assert first["time_spent_seconds"] == 5
    assert first["question"]["correct_option_index"] == 1
    breakdown = stored["score_breakdown"]["sections"]
    assert [s["name"] for s in breakdown] == ["Verbal", "Writing"]


@pytest.mark.parametrize("background_sync", [False, True])
def test_closed_session_resumes_from_storage(client, template, clocks):
    attempt_id = _open(client, template, "learner-2")["id"]
    url = "/api/sessions/{}".format(attempt_id)
    client.post(url + "/answer", json={"selected_option_index": 3})
    clocks[-1].advance(10)

    assert client.delete(url).json() == {"attempt_id": attempt_id, "closed": True}
    assert client.delete(url).status_code == 404

    view = client.get(url).json()
    assert len(clocks) == 2
    assert view["session"]["remaining_seconds"] == 50
    assert view["session"]["question"]["selected_option_index"] == 3

    # Opening again returns the hosted session instead of a second engine
    again = _open(client, template, "learner-2")
    assert again["id"] == attempt_id
    assert len(clocks) == 2


def test_pause_flush_and_cancel(client, template, clocks):
    attempt_id = _open(client, template, "learner-3")["id"]
    url = "/api/sessions/{}".format(attempt_id)

    view = client.post(url + "/pause").json()
    assert view["session"]["timer_running"] is False
    clocks[-1].advance(20)
    view = client.post(url + "/resume").json()
    assert view["session"]["timer_running"] is True
    assert view["session"]["remaining_seconds"] == 60

    client.post(url + "/answer", json={"selected_option_index": 0})
    flushed = client.post(url + "/flush").json()
    assert flushed["sequence"] > 0
    assert flushed["pending_flushes"] == 0

    view = client.post(url + "/cancel").json()
    assert view["status"] == "cancelled"
    assert client.post(url + "/submit").status_code == 409


def test_unknown_session_is_404(client):
    response = client.get("/api/sessions/missing")
    assert response.status_code == 404
    assert response.json()["error"] == "AttemptNotFound"


def test_save_progress_endpoint_discards_late_flushes(client, template):
    attempt = client.post("/api/attempts/start",
                          json={"user_id": "remote-1", "template_id": template["id"]}).json()
    url = "/api/attempts/{}/save-progress".format(attempt["id"])
    update = {"sequence": 5, "updates": [
        {"section_index": 0, "question_index": 0, "selected_option_index": 2, "is_answered": True},
    ]}

    first = client.patch(url, json=update).json()
    assert first == {"attempt_id": attempt["id"], "applied": True, "last_sync_seq": 5}

    late = client.patch(url, json=dict(update, sequence=3)).json()
    assert late["applied"] is False
    assert late["last_sync_seq"] == 5

    result = client.post("/api/attempts/{}/submit".format(attempt["id"]),
                         json={"trigger": "auto_timeout"}).json()
    assert result["status"] == "completed"
    assert result["overall_stats"]["total_incorrect"] == 1
    assert client.patch(url, json=dict(update, sequence=6)).status_code == 409


def test_list_attempts_filters(client, template):
    for user_id in ("lister-a", "lister-b"):
        client.post("/api/attempts/start", json={"user_id": user_id, "template_id": template["id"]})

    listed = client.get("/api/attempts", params={"template_id": template["id"]}).json()
    assert listed["pagination"]["total"] == 2
    assert {row["user_id"] for row in listed["data"]} == {"lister-a", "lister-b"}

    only_a = client.get("/api/attempts", params={"user_id": "lister-a", "status": "NOT_STARTED"}).json()
    assert [row["user_id"] for row in only_a["data"]] == ["lister-a"]
    assert only_a["data"][0]["raw_score"] is None

    paged = client.get("/api/attempts", params={"template_id": template["id"], "per_page": 1}).json()
    assert len(paged["data"]) == 1
    assert paged["pagination"]["total_pages"] == 2
