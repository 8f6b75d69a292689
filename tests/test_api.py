from datetime import timedelta
from io import BytesIO

from paper_app.models import utc_now

from conftest import PASSWORD, THESIS_PAGES, make_user


def login(client, username):
    r = client.post("/login", json={"username": username, "password": PASSWORD})
    assert r.status_code == 200, r.get_json()
    return r.get_json()["data"]["user"]


def setup_accounts(app):
    with app.app_context():
        advisor = make_user("advisor", role="advisor")
        make_user("alice", advisor=advisor)
        make_user("admin", role="admin")
        make_user("verifier", role="verifier")
        make_user("examiner", role="examiner")


def create_assignment(client):
    r = client.post("/assignments/templates", json={"name": "Thesis", "pages": THESIS_PAGES})
    assert r.status_code == 201
    template_id = r.get_json()["data"]["template"]["id"]
    r = client.post("/assignments/", json={
        "title": "Capstone",
        "subject": "Research",
        "template_id": template_id,
        "deadline": (utc_now() + timedelta(days=10)).isoformat() + "Z",
    })
    assert r.status_code == 201, r.get_json()
    return r.get_json()["data"]["assignment"]


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.get_json()["data"]["status"] == "ok"


def test_login_required(client):
    r = client.get("/papers/")
    assert r.status_code == 401
    assert r.get_json()["error"]["code"] == "unauthorized"


def test_bad_credentials(app, client):
    setup_accounts(app)
    r = client.post("/login", json={"username": "alice", "password": "wrong"})
    assert r.status_code == 401
    assert r.get_json()["success"] is False


def test_students_cannot_create_assignments(app, client):
    setup_accounts(app)
    login(client, "alice")
    r = client.post("/assignments/", json={"title": "x"})
    assert r.status_code == 403


def test_validation_errors_render_as_json(app, client):
    setup_accounts(app)
    login(client, "admin")
    r = client.post("/assignments/", json={"title": "Only a title"})
    assert r.status_code == 400
    body = r.get_json()
    assert body["error"]["code"] == "validation_failed"
    assert "deadline" in body["error"]["message"]


def test_full_workflow_over_http(app, client):
    setup_accounts(app)
    login(client, "admin")
    assignment = create_assignment(client)
    assert assignment["paper_count"] == 1
    r = client.get(f"/assignments/{assignment['id']}/chapters")
    assert [row["match"] for row in r.get_json()["data"]["items"]] == ["none", "none"]
    client.post("/logout")

    login(client, "alice")
    r = client.get("/assignments/")
    mine = r.get_json()["data"]["items"][0]
    paper_id = mine["my_paper_id"]
    assert mine["status"] == "DRAFT"

    r = client.post(f"/papers/{paper_id}/chapters/0/submit")
    assert r.status_code == 400
    assert "need 5, have 0" in r.get_json()["error"]["message"]

    sentence = ("Each chapter of this paper was drafted in the editor and later exported "
                "into the final document that the advisor reviewed in full detail")
    for index in (0, 1):
        r = client.put(f"/papers/{paper_id}/chapters/{index}", json={"content": f"<p>{sentence}.</p>"})
        assert r.status_code == 200
        assert r.get_json()["data"]["paper"]["chapters"][index]["status"] == "DRAFT"
        assert client.post(f"/papers/{paper_id}/chapters/{index}/submit").status_code == 200

    r = client.post(f"/papers/{paper_id}/final", data={"file": (BytesIO(b"x"), "final.txt")},
                    content_type="multipart/form-data")
    assert r.status_code == 409
    assert r.get_json()["error"]["code"] == "gate_violation"
    client.post("/logout")

    login(client, "advisor")
    for index in (0, 1):
        r = client.post(f"/papers/{paper_id}/chapters/{index}/decision", json={"decision": "APPROVED"})
        assert r.status_code == 200
    assert r.get_json()["data"]["paper"]["final_submission_unlocked"] is True
    client.post("/logout")

    login(client, "alice")
    body = f"{sentence}. {sentence}.".encode()
    r = client.post(f"/papers/{paper_id}/final", data={"file": (BytesIO(body), "final.txt")},
                    content_type="multipart/form-data")
    assert r.status_code == 201
    assert r.get_json()["data"]["paper"]["final_status"] == "UPLOADED"
    client.post("/logout")

    login(client, "advisor")
    r = client.post(f"/papers/{paper_id}/final/decision", json={"decision": "APPROVED"})
    assert r.status_code == 200
    assert r.get_json()["data"]["paper"]["integrity"]["score"] == 100.0
    client.post("/logout")

    login(client, "verifier")
    r = client.get("/integrity/queue")
    assert [i["paper_id"] for i in r.get_json()["data"]["items"]] == [paper_id]
    r = client.post(f"/integrity/{paper_id}/decision", json={"decision": "VERIFIED"})
    assert r.get_json()["data"]["integrity"]["status"] == "VERIFIED"
    client.post("/logout")

    login(client, "examiner")
    r = client.post(f"/papers/{paper_id}/grade", json={"grade": 90, "feedback": "Excellent"})
    assert r.status_code == 200
    paper = r.get_json()["data"]["paper"]
    assert paper["grade"] == 90
    assert paper["passed"] is True


def test_violation_lock_over_http(app, client):
    setup_accounts(app)
    login(client, "alice")
    for _ in range(3):
        r = client.post("/violations/", json={"type": "TAB_SWITCH"})
        assert r.status_code == 201
    assert client.get("/violations/me").get_json()["data"]["locked"] is True
    alice_id = client.get("/me").get_json()["data"]["user"]["id"]
    client.post("/logout")

    login(client, "admin")
    r = client.get("/violations/summary")
    assert r.get_json()["data"]["items"][0]["locked"] is True
    r = client.post(f"/violations/{alice_id}/reset")
    assert r.get_json()["data"] == {"affected": 3, "reset_count": 1}
    r = client.get(f"/violations/{alice_id}")
    assert len(r.get_json()["data"]["items"]) == 3
    assert r.get_json()["meta"]["locked"] is False


def test_settings_admin_only(app, client):
    setup_accounts(app)
    login(client, "alice")
    assert client.put("/settings", json={"passing_grade": 70}).status_code == 403
    client.post("/logout")
    login(client, "admin")
    r = client.put("/settings", json={"passing_grade": 70})
    assert r.get_json()["data"]["settings"]["passing_grade"] == 70
    assert client.get("/settings").get_json()["data"]["settings"]["passing_grade"] == 70
